"""RolloutManager - lifecycle state machine for strategy versions.

States:
    candidate(rollout%) --promote--> active(100%) --promote other--> archived
    candidate --archive--> archived

Archived is terminal. ``promote`` is the only operation that changes a
topic's active pointer, and it does so in a single repository transaction:
every other version is archived, the target becomes active at 100% and the
pointer moves, all visible at once.

Every transition stages its evolution log entry on the same transaction,
so a transition and its entry are committed together or not at all. Events
are published only after the commit.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from deepcurrent.errors import InvalidTransitionError, NotFoundError
from deepcurrent.governance.audit import AuditLog
from deepcurrent.governance.schemas import EvolutionLogEntry, TransitionKind
from deepcurrent.storage.models import StrategyStatus, StrategyVersion
from deepcurrent.strategy.config import DEFAULT_STRATEGY_CONFIG, StrategyConfig, config_diff
from deepcurrent.strategy.store import ConfigStore

if TYPE_CHECKING:
    from deepcurrent.storage.repository import StrategyRepository, TopicTransaction

logger = logging.getLogger(__name__)


class RolloutManager:
    """Owns strategy version transitions and the active pointer.

    Usage:
        rollout = RolloutManager(repository, config_store, audit_log)

        v1 = await rollout.bootstrap(topic_id)
        v2 = await rollout.create_candidate(topic_id, new_config, parent_version=1)
        await rollout.update_rollout(topic_id, 2, 50)
        await rollout.promote(topic_id, 2)
    """

    def __init__(
        self,
        repository: StrategyRepository,
        config_store: ConfigStore,
        audit_log: AuditLog,
    ) -> None:
        self._repo = repository
        self._store = config_store
        self._audit = audit_log

    async def create_candidate(
        self,
        topic_id: str,
        config: StrategyConfig,
        parent_version: int | None,
        rollout_percentage: int = 20,
    ) -> StrategyVersion:
        """Insert a new candidate version. The active pointer is untouched."""
        _check_percentage(rollout_percentage)
        return await self._store.create_version(
            topic_id,
            config,
            parent_version=parent_version,
            status=StrategyStatus.CANDIDATE,
            rollout_percentage=rollout_percentage,
        )

    async def derive_candidate(
        self,
        topic_id: str,
        config: StrategyConfig,
        parent_version: int,
        reason: str,
        changes: dict[str, Any] | None = None,
        rollout_percentage: int = 20,
    ) -> tuple[StrategyVersion, EvolutionLogEntry]:
        """Insert an evolved candidate and its evolution log entry in one commit."""
        _check_percentage(rollout_percentage)
        staged: list[EvolutionLogEntry] = []

        def entry_for(row: StrategyVersion) -> EvolutionLogEntry:
            entry = self._audit.build_entry(
                topic_id,
                parent_version,
                row.version,
                reason,
                changes=changes,
                kind=TransitionKind.EVOLUTION,
            )
            staged.append(entry)
            return entry

        candidate = await self._store.create_version(
            topic_id,
            config,
            parent_version=parent_version,
            status=StrategyStatus.CANDIDATE,
            rollout_percentage=rollout_percentage,
            log_entry=entry_for,
        )
        # Conflicting attempts build entries too; the last one was committed.
        entry = staged[-1]
        await self._audit.announce(entry)
        return candidate, entry

    async def promote(
        self,
        topic_id: str,
        version: int,
        reason: str = "",
        kind: TransitionKind = TransitionKind.PROMOTION,
    ) -> StrategyVersion:
        """Make *version* the topic's sole active version.

        Promoting the version that is already active changes nothing and
        writes no log entry.

        Raises:
            NotFoundError: If the topic or version does not exist.
            InvalidTransitionError: If the version is archived.
        """
        async with self._repo.transaction(topic_id) as txn:
            target = txn.get_version(version)
            if target.status == StrategyStatus.ACTIVE and txn.topic.active_version == version:
                logger.info(f"Strategy v{version} already active for topic {topic_id}")
                return target
            promoted, entry = self._stage_promotion(txn, version, reason, kind)

        await self._audit.announce(entry)
        return promoted

    async def archive(self, topic_id: str, version: int, reason: str = "") -> StrategyVersion:
        """Archive a candidate that will not be promoted.

        Raises:
            InvalidTransitionError: If the version is active or already archived.
        """
        async with self._repo.transaction(topic_id) as txn:
            row = txn.get_version(version)
            if row.status == StrategyStatus.ACTIVE:
                raise InvalidTransitionError(
                    f"Cannot archive active strategy v{version}; promote another version instead"
                )
            if row.status == StrategyStatus.ARCHIVED:
                raise InvalidTransitionError(f"Strategy v{version} is already archived")
            archived = row.model_copy(update={"status": StrategyStatus.ARCHIVED})
            txn.put_version(archived)
            entry = self._audit.build_entry(
                topic_id,
                version,
                version,
                reason or f"Archived candidate v{version}",
                kind=TransitionKind.ARCHIVE,
            )
            txn.record(entry)

        await self._audit.announce(entry)
        return archived

    async def update_rollout(self, topic_id: str, version: int, percentage: int) -> StrategyVersion:
        """Adjust a candidate's declared traffic exposure.

        The engine stores the value; traffic splitting is up to callers.

        Raises:
            ValueError: If *percentage* is outside 0-100.
            InvalidTransitionError: If the version is not a candidate.
        """
        _check_percentage(percentage)
        async with self._repo.transaction(topic_id) as txn:
            row = txn.get_version(version)
            if row.status != StrategyStatus.CANDIDATE:
                raise InvalidTransitionError(
                    f"Rollout can only change for candidates, v{version} is {row.status.value}"
                )
            previous = row.rollout_percentage
            updated = row.model_copy(update={"rollout_percentage": percentage})
            txn.put_version(updated)
            entry = self._audit.build_entry(
                topic_id,
                version,
                version,
                f"Rollout changed from {previous}% to {percentage}%",
                changes={"rollout_percentage": {"before": previous, "after": percentage}},
                kind=TransitionKind.ROLLOUT,
            )
            txn.record(entry)

        await self._audit.announce(entry)
        return updated

    async def bootstrap(
        self,
        topic_id: str,
        config: StrategyConfig | None = None,
    ) -> StrategyVersion:
        """Give a topic with no strategy its first active version.

        Raises:
            InvalidTransitionError: If the topic already has versions.
        """
        async with self._repo.transaction(topic_id) as txn:
            if txn.versions:
                raise InvalidTransitionError(f"Topic {topic_id} already has strategy versions")
            number = txn.next_version()
            txn.add_version(
                StrategyVersion(
                    topic_id=topic_id,
                    version=number,
                    rollout_percentage=100,
                    config=(config or DEFAULT_STRATEGY_CONFIG).to_payload(),
                )
            )
            promoted, entry = self._stage_promotion(
                txn, number, "Initial strategy", TransitionKind.BOOTSTRAP
            )

        await self._audit.announce(entry)
        return promoted

    async def rollback(self, topic_id: str, reason: str = "") -> StrategyVersion:
        """Re-issue the config that preceded the active one as a new active version.

        Archived versions are terminal, so the earlier config comes back
        under a fresh version number rather than being reactivated. A
        version created by a rollback stands in for the version it
        restored, so repeated rollbacks keep walking back through the
        lineage instead of bouncing between two configs.

        Raises:
            NotFoundError: If there is no active version or nothing precedes it.
            ValidationError: If the config to restore is corrupt.
        """
        async with self._repo.transaction(topic_id) as txn:
            if txn.topic.active_version is None:
                raise NotFoundError("Active strategy", topic_id)
            active = txn.get_version(txn.topic.active_version)

            origin = _lineage_origin(txn, active)
            if origin.parent_version is None:
                raise NotFoundError("Parent strategy", f"{topic_id}@v{origin.version}")
            source = txn.get_version(origin.parent_version)
            config = self._store.load_config(source)

            number = txn.next_version()
            txn.add_version(
                StrategyVersion(
                    topic_id=topic_id,
                    version=number,
                    rollout_percentage=100,
                    parent_version=active.version,
                    restored_from=source.version,
                    config=config.to_payload(),
                )
            )
            promoted, entry = self._stage_promotion(
                txn,
                number,
                reason or f"Rolled back to config of v{source.version}",
                TransitionKind.ROLLBACK,
                extra_changes={"restored_from": source.version},
            )

        await self._audit.announce(entry)
        return promoted

    def _stage_promotion(
        self,
        txn: TopicTransaction,
        version: int,
        reason: str,
        kind: TransitionKind,
        extra_changes: dict[str, Any] | None = None,
    ) -> tuple[StrategyVersion, EvolutionLogEntry]:
        topic_id = txn.topic.topic_id
        target = txn.get_version(version)
        if target.status == StrategyStatus.ARCHIVED:
            raise InvalidTransitionError(
                f"Cannot promote archived strategy v{version} for topic {topic_id}"
            )

        previous = txn.topic.active_version
        prev_config = txn.versions[previous].config if previous in txn.versions else None
        archived: list[int] = []
        for row in list(txn.versions.values()):
            if row.version != version and row.status != StrategyStatus.ARCHIVED:
                txn.put_version(row.model_copy(update={"status": StrategyStatus.ARCHIVED}))
                archived.append(row.version)

        promoted = target.model_copy(
            update={"status": StrategyStatus.ACTIVE, "rollout_percentage": 100}
        )
        txn.put_version(promoted)
        txn.set_active_pointer(version)

        changes: dict[str, Any] = {"archived": sorted(archived)}
        diff = self._safe_diff(prev_config, promoted.config)
        if diff is not None:
            changes["diff"] = diff
        changes.update(extra_changes or {})

        entry = self._audit.build_entry(
            topic_id,
            previous,
            version,
            reason or f"Promoted v{version} to active",
            changes=changes,
            kind=kind,
        )
        txn.record(entry)

        logger.info(
            f"Promoted strategy v{version} for topic {topic_id} "
            f"(previous=v{previous}, archived={sorted(archived)})"
        )
        return promoted, entry

    def _safe_diff(
        self,
        before: dict[str, Any] | None,
        after: dict[str, Any],
    ) -> dict[str, Any] | None:
        if before is None:
            return None
        try:
            return config_diff(StrategyConfig.from_payload(before), StrategyConfig.from_payload(after))
        except ValueError as e:
            logger.warning(f"Could not diff strategy configs: {e}")
            return None


def _lineage_origin(txn: TopicTransaction, version: StrategyVersion) -> StrategyVersion:
    """Follow ``restored_from`` links back to the version a config first came from."""
    seen = {version.version}
    while version.restored_from is not None and version.restored_from not in seen:
        version = txn.get_version(version.restored_from)
        seen.add(version.version)
    return version


def _check_percentage(percentage: int) -> None:
    if not 0 <= percentage <= 100:
        raise ValueError(f"Rollout percentage must be between 0 and 100, got {percentage}")
