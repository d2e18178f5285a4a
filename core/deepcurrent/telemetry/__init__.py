"""
Telemetry for strategy executions.

Components:
- Episode: One execution's inputs, outputs and outcome counts
- TelemetryRecorder: Writes episodes through their lifecycle
- PerformanceAnalyzer: Per-episode verdicts and per-version aggregates
"""

from deepcurrent.telemetry.episode import Episode, EpisodeStatus, SourceRef
from deepcurrent.telemetry.analyzer import (
    AggregateMetrics,
    EpisodeAnalysis,
    PerformanceAnalyzer,
    Recommendation,
)
from deepcurrent.telemetry.recorder import TelemetryRecorder

__all__ = [
    "AggregateMetrics",
    "Episode",
    "EpisodeAnalysis",
    "EpisodeStatus",
    "PerformanceAnalyzer",
    "Recommendation",
    "SourceRef",
    "TelemetryRecorder",
]
