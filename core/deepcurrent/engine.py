"""Wiring for a complete strategy evolution engine.

Builds every component around one injected repository and event bus so
callers (CLI, services, tests) do not assemble them by hand.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from deepcurrent.dashboard import StrategyDashboard
from deepcurrent.evolution.mutation import Mutator
from deepcurrent.evolution.pipeline import EvolutionEngine
from deepcurrent.evolution.policy import EvolutionPolicy
from deepcurrent.governance.audit import AuditLog
from deepcurrent.runtime.event_bus import EventBus
from deepcurrent.settings import EngineSettings
from deepcurrent.strategy.rollout import RolloutManager
from deepcurrent.strategy.store import ConfigStore
from deepcurrent.telemetry.analyzer import PerformanceAnalyzer
from deepcurrent.telemetry.recorder import TelemetryRecorder
from deepcurrent.topics import TopicRegistry

if TYPE_CHECKING:
    from deepcurrent.storage.repository import StrategyRepository

logger = logging.getLogger(__name__)


@dataclass
class StrategyEngine:
    """All engine components sharing one repository."""

    repository: StrategyRepository
    settings: EngineSettings
    event_bus: EventBus
    topics: TopicRegistry
    config_store: ConfigStore
    audit_log: AuditLog
    rollout: RolloutManager
    recorder: TelemetryRecorder
    analyzer: PerformanceAnalyzer
    policy: EvolutionPolicy
    mutator: Mutator
    evolution: EvolutionEngine
    dashboard: StrategyDashboard

    @classmethod
    def create(
        cls,
        repository: StrategyRepository,
        settings: EngineSettings | None = None,
        event_bus: EventBus | None = None,
        attach: bool = True,
    ) -> "StrategyEngine":
        """Build the engine.

        Args:
            repository: Storage backend shared by every component.
            settings: Engine tunables, defaults when omitted.
            event_bus: Bus for episode and transition events.
            attach: Subscribe the evolution engine to episode completions.
        """
        settings = settings or EngineSettings()
        event_bus = event_bus or EventBus()

        config_store = ConfigStore(repository, settings.max_allocation_retries)
        audit_log = AuditLog(repository, event_bus)
        rollout = RolloutManager(repository, config_store, audit_log)
        recorder = TelemetryRecorder(
            repository,
            event_bus,
            retry_attempts=settings.telemetry_retry_attempts,
            retry_base_delay=settings.telemetry_retry_base_delay,
        )
        analyzer = PerformanceAnalyzer(repository, settings.thresholds)
        policy = EvolutionPolicy(analyzer, settings.thresholds)
        mutator = Mutator(low_senso_usage=settings.thresholds.low_senso_usage)
        evolution = EvolutionEngine(
            repository, config_store, rollout, policy, mutator, audit_log, settings
        )
        if attach:
            evolution.attach(event_bus)

        return cls(
            repository=repository,
            settings=settings,
            event_bus=event_bus,
            topics=TopicRegistry(repository),
            config_store=config_store,
            audit_log=audit_log,
            rollout=rollout,
            recorder=recorder,
            analyzer=analyzer,
            policy=policy,
            mutator=mutator,
            evolution=evolution,
            dashboard=StrategyDashboard(repository, analyzer, audit_log),
        )
