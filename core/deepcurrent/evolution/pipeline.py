"""Evolution Engine - closes the loop from telemetry to candidates.

The EvolutionEngine coordinates:
1. Reacting to completed episodes (via the event bus or a direct call)
2. Aggregating the active version's telemetry
3. Asking the policy whether to evolve
4. Deriving a candidate config with the mutator
5. Registering the candidate and recording the transition
6. Optionally promoting it when auto-promotion is enabled

Checks for one topic are serialised with a per-topic lock. Episodes for a
version that is no longer active are ignored, and no new candidate is made
while one derived from the active version is still pending, so concurrent
completions yield at most one candidate per decision window.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from deepcurrent.errors import MutationError, NotFoundError, TransientStoreError, ValidationError
from deepcurrent.evolution.mutation import Mutator
from deepcurrent.evolution.policy import EvolutionDecision, EvolutionPolicy
from deepcurrent.governance.audit import AuditLog
from deepcurrent.governance.schemas import EvolutionLogEntry
from deepcurrent.runtime.event_bus import EngineEvent, EventBus, EventType
from deepcurrent.settings import EngineSettings
from deepcurrent.storage.models import StrategyStatus, StrategyVersion
from deepcurrent.strategy.rollout import RolloutManager
from deepcurrent.strategy.store import ConfigStore

if TYPE_CHECKING:
    from deepcurrent.storage.repository import StrategyRepository

logger = logging.getLogger(__name__)


class CheckOutcome(StrEnum):
    """What an evolution check ended up doing."""

    EVOLVED = "evolved"
    MAINTAINED = "maintained"
    SKIPPED = "skipped"


@dataclass
class EvolutionOutcome:
    """Result of one evolution check."""

    topic_id: str
    outcome: CheckOutcome
    reason: str
    decision: EvolutionDecision | None = None
    candidate: StrategyVersion | None = None
    log_entry: EvolutionLogEntry | None = None
    promoted: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def evolved(self) -> bool:
        return self.outcome == CheckOutcome.EVOLVED


class EvolutionEngine:
    """Runs evolution checks after episodes complete.

    Usage:
        engine = EvolutionEngine(repository, config_store, rollout, policy, mutator, audit_log)
        engine.attach(event_bus)

        # or directly:
        outcome = await engine.on_episode_completed(episode_id)
    """

    def __init__(
        self,
        repository: StrategyRepository,
        config_store: ConfigStore,
        rollout: RolloutManager,
        policy: EvolutionPolicy,
        mutator: Mutator,
        audit_log: AuditLog,
        settings: EngineSettings | None = None,
    ) -> None:
        self._repo = repository
        self._store = config_store
        self._rollout = rollout
        self._policy = policy
        self._mutator = mutator
        self._audit = audit_log
        self.settings = settings or EngineSettings()
        self._locks: dict[str, asyncio.Lock] = {}

    def attach(self, event_bus: EventBus) -> None:
        """Subscribe to episode completions on *event_bus*."""
        event_bus.subscribe(EventType.EPISODE_COMPLETED, self._handle_event)

    def detach(self, event_bus: EventBus) -> None:
        event_bus.unsubscribe(EventType.EPISODE_COMPLETED, self._handle_event)

    async def _handle_event(self, event: EngineEvent) -> None:
        episode_id = event.data.get("episode_id")
        if not episode_id:
            logger.warning(f"Episode event for topic {event.topic_id} has no episode_id")
            return
        try:
            await self.on_episode_completed(episode_id)
        except Exception:
            logger.exception(f"Evolution check failed for episode {episode_id}")

    def _lock_for(self, topic_id: str) -> asyncio.Lock:
        lock = self._locks.get(topic_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[topic_id] = lock
        return lock

    async def on_episode_completed(self, episode_id: str) -> EvolutionOutcome | None:
        """Run an evolution check for the topic of a completed episode.

        Returns ``None`` when the episode is unknown or still running.
        Store outages skip the check; it is not retried.
        """
        try:
            episode = await self._repo.get_episode(episode_id)
        except TransientStoreError as e:
            logger.warning(f"Skipping evolution check for episode {episode_id}: {e}")
            return None

        if episode is None:
            logger.warning(f"Episode {episode_id} not found, skipping evolution check")
            return None
        if not episode.is_terminal:
            logger.debug(f"Episode {episode_id} not finished, skipping evolution check")
            return None

        return await self.check_topic(episode.topic_id, episode.strategy_version)

    async def check_topic(
        self,
        topic_id: str,
        strategy_version: int | None = None,
    ) -> EvolutionOutcome:
        """Evaluate the active version of *topic_id* and evolve it if needed.

        Args:
            topic_id: Topic to check.
            strategy_version: Version the triggering episode ran under. The
                check is skipped unless it is still the active version.
        """
        async with self._lock_for(topic_id):
            try:
                return await self._check_locked(topic_id, strategy_version)
            except TransientStoreError as e:
                logger.warning(f"Store unavailable, skipping evolution check for topic {topic_id}: {e}")
                return EvolutionOutcome(topic_id, CheckOutcome.SKIPPED, f"store unavailable: {e}")

    async def _check_locked(
        self,
        topic_id: str,
        strategy_version: int | None,
    ) -> EvolutionOutcome:
        try:
            active = await self._store.get_active(topic_id)
        except NotFoundError:
            return EvolutionOutcome(topic_id, CheckOutcome.SKIPPED, "topic not found")

        if active is None:
            return EvolutionOutcome(topic_id, CheckOutcome.SKIPPED, "no active strategy")

        if strategy_version is not None and strategy_version != active.version:
            return EvolutionOutcome(
                topic_id,
                CheckOutcome.SKIPPED,
                f"episode ran under v{strategy_version}, active is v{active.version}",
            )

        pending = await self._pending_candidate(topic_id, active.version)
        if pending is not None:
            return EvolutionOutcome(
                topic_id,
                CheckOutcome.SKIPPED,
                f"candidate v{pending.version} already derived from v{active.version}",
                candidate=pending,
            )

        decision = await self._policy.should_evolve(topic_id, active.version)
        if not decision.should_evolve:
            return EvolutionOutcome(
                topic_id, CheckOutcome.MAINTAINED, decision.reason, decision=decision
            )

        return await self.evolve_strategy(topic_id, active, decision)

    async def evolve_strategy(
        self,
        topic_id: str,
        active: StrategyVersion,
        decision: EvolutionDecision,
    ) -> EvolutionOutcome:
        """Derive a candidate from *active* and register it.

        The caller is expected to hold the topic's evolution lock; use
        ``check_topic`` for the locked entry point.
        """
        try:
            current = self._store.load_config(active)
        except ValidationError as e:
            logger.error(
                f"Cannot evolve corrupt strategy: {e}",
                extra={"topic_id": topic_id, "version": active.version, "detail": e.detail},
            )
            return EvolutionOutcome(
                topic_id, CheckOutcome.SKIPPED, "active config is corrupt", decision=decision
            )

        try:
            mutation = self._mutator.derive(current, decision.reason, decision.metrics)
        except MutationError as e:
            logger.warning(f"No candidate derived for topic {topic_id} v{active.version}: {e}")
            return EvolutionOutcome(
                topic_id, CheckOutcome.SKIPPED, str(e), decision=decision
            )

        candidate, entry = await self._rollout.derive_candidate(
            topic_id,
            mutation.config,
            active.version,
            f"{decision.reason}: {decision.detail}" if decision.detail else decision.reason,
            changes={
                "before": current.to_payload(),
                "after": mutation.config.to_payload(),
                "diff": mutation.diff,
                "metrics": decision.metrics.to_dict(),
            },
            rollout_percentage=self.settings.candidate_rollout_percentage,
        )

        promoted = False
        if self.settings.auto_promote:
            candidate = await self._rollout.promote(
                topic_id, candidate.version, reason=f"Auto-promoted after {decision.reason}"
            )
            promoted = True

        logger.info(
            f"Evolved topic {topic_id}: v{active.version} -> v{candidate.version} "
            f"({decision.reason}, changed {', '.join(mutation.fields_changed)})"
        )
        return EvolutionOutcome(
            topic_id,
            CheckOutcome.EVOLVED,
            decision.reason,
            decision=decision,
            candidate=candidate,
            log_entry=entry,
            promoted=promoted,
            details={"diff": mutation.diff},
        )

    async def _pending_candidate(self, topic_id: str, parent: int) -> StrategyVersion | None:
        for row in await self._repo.list_versions(topic_id):
            if row.status == StrategyStatus.CANDIDATE and row.parent_version == parent:
                return row
        return None
