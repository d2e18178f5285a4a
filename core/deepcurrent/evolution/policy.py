"""Evolution Policy - decides whether a strategy version should evolve.

``evaluate`` is a pure function of its inputs: the same aggregate and
minimum episode count always yield the same decision. Rules are checked
in order and the first match wins:

1. fewer than ``min_episodes`` finished episodes: maintain ("insufficient data")
2. nothing saved at all: evolve ("no sources saved")
3. average save rate below ``low_save_rate``: evolve ("low save rate")
4. average follow-ups above ``max_avg_followups``: evolve ("excessive follow-ups")
5. otherwise maintain ("performance within thresholds")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from deepcurrent.settings import EvolutionThresholds
from deepcurrent.telemetry.analyzer import AggregateMetrics, PerformanceAnalyzer

logger = logging.getLogger(__name__)

INSUFFICIENT_DATA = "insufficient data"
WITHIN_THRESHOLDS = "performance within thresholds"


class EvolutionTrigger(StrEnum):
    """Rule that fired an evolution. Values double as the decision reason."""

    NO_SOURCES_SAVED = "no sources saved"
    LOW_SAVE_RATE = "low save rate"
    EXCESSIVE_FOLLOWUPS = "excessive follow-ups"


@dataclass(frozen=True)
class EvolutionDecision:
    """Outcome of a policy evaluation."""

    should_evolve: bool
    reason: str
    metrics: AggregateMetrics
    trigger: EvolutionTrigger | None = None
    detail: str = ""
    thresholds: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "should_evolve": self.should_evolve,
            "reason": self.reason,
            "trigger": self.trigger.value if self.trigger else None,
            "detail": self.detail,
            "metrics": self.metrics.to_dict(),
            "thresholds": self.thresholds,
        }


class EvolutionPolicy:
    """Threshold-driven evolve/maintain decisions.

    Usage:
        policy = EvolutionPolicy(analyzer, EvolutionThresholds())
        decision = await policy.should_evolve(topic_id, current_version=3)
        if decision.should_evolve:
            ...
    """

    def __init__(
        self,
        analyzer: PerformanceAnalyzer,
        thresholds: EvolutionThresholds | None = None,
    ) -> None:
        self._analyzer = analyzer
        self.thresholds = thresholds or EvolutionThresholds()

    def evaluate(self, metrics: AggregateMetrics, min_episodes: int | None = None) -> EvolutionDecision:
        t = self.thresholds
        minimum = t.min_episodes if min_episodes is None else min_episodes
        limits = {
            "min_episodes": minimum,
            "low_save_rate": t.low_save_rate,
            "max_avg_followups": t.max_avg_followups,
        }

        if metrics.total_episodes < minimum:
            return EvolutionDecision(
                should_evolve=False,
                reason=INSUFFICIENT_DATA,
                metrics=metrics,
                detail=f"{metrics.total_episodes} of {minimum} episodes recorded",
                thresholds=limits,
            )

        if metrics.avg_save_rate == 0:
            return self._evolve(
                EvolutionTrigger.NO_SOURCES_SAVED,
                metrics,
                f"no sources saved across {metrics.total_episodes} episodes",
                limits,
            )

        if metrics.avg_save_rate < t.low_save_rate:
            return self._evolve(
                EvolutionTrigger.LOW_SAVE_RATE,
                metrics,
                f"average save rate {metrics.avg_save_rate:.2f} < {t.low_save_rate}",
                limits,
            )

        if metrics.avg_followup_count > t.max_avg_followups:
            return self._evolve(
                EvolutionTrigger.EXCESSIVE_FOLLOWUPS,
                metrics,
                f"average follow-ups {metrics.avg_followup_count:.1f} > {t.max_avg_followups}",
                limits,
            )

        return EvolutionDecision(
            should_evolve=False,
            reason=WITHIN_THRESHOLDS,
            metrics=metrics,
            thresholds=limits,
        )

    async def should_evolve(
        self,
        topic_id: str,
        current_version: int,
        min_episodes: int | None = None,
    ) -> EvolutionDecision:
        """Aggregate *current_version* and evaluate it."""
        metrics = await self._analyzer.aggregate(topic_id, current_version)
        decision = self.evaluate(metrics, min_episodes)
        logger.debug(
            f"Policy for topic {topic_id} v{current_version}: "
            f"evolve={decision.should_evolve} ({decision.reason})"
        )
        return decision

    def _evolve(
        self,
        trigger: EvolutionTrigger,
        metrics: AggregateMetrics,
        detail: str,
        limits: dict[str, Any],
    ) -> EvolutionDecision:
        return EvolutionDecision(
            should_evolve=True,
            reason=trigger.value,
            metrics=metrics,
            trigger=trigger,
            detail=detail,
            thresholds=limits,
        )
