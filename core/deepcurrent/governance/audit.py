"""
Audit Log for Strategy Version Transitions

Append-only trail of every strategy lifecycle change: evolutions,
promotions, archives, rollout changes, rollbacks and bootstraps. Each entry
carries the before/after config diff and the metrics that justified it.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from deepcurrent.governance.schemas import EvolutionLogEntry, TransitionKind
from deepcurrent.runtime.event_bus import EngineEvent, EventBus, EventType

if TYPE_CHECKING:
    from deepcurrent.storage.repository import StrategyRepository

logger = logging.getLogger(__name__)


_EVENT_FOR_KIND: dict[TransitionKind, EventType] = {
    TransitionKind.EVOLUTION: EventType.STRATEGY_EVOLVED,
    TransitionKind.PROMOTION: EventType.STRATEGY_PROMOTED,
    TransitionKind.BOOTSTRAP: EventType.STRATEGY_PROMOTED,
    TransitionKind.ARCHIVE: EventType.STRATEGY_ARCHIVED,
    TransitionKind.ROLLOUT: EventType.STRATEGY_ROLLOUT_CHANGED,
    TransitionKind.ROLLBACK: EventType.STRATEGY_ROLLED_BACK,
}


class AuditLog:
    """
    Append-only evolution log.

    Features:
    - Repository-backed persistence (survives restarts with a file repository)
    - Event Bus integration for real-time alerts
    - Chronological timeline and transition lookup
    - Explicit retention purge, the only way entries are removed
    """

    def __init__(
        self,
        repository: StrategyRepository,
        event_bus: EventBus | None = None,
    ) -> None:
        self._repo = repository
        self._event_bus = event_bus

    def build_entry(
        self,
        topic_id: str,
        from_version: int | None,
        to_version: int,
        reason: str,
        changes: dict[str, Any] | None = None,
        kind: TransitionKind = TransitionKind.EVOLUTION,
    ) -> EvolutionLogEntry:
        """Create an entry without writing it.

        Lifecycle changes stage the entry on their repository transaction
        and call ``announce`` once it has committed.
        """
        return EvolutionLogEntry(
            topic_id=topic_id,
            from_version=from_version,
            to_version=to_version,
            kind=kind,
            reason=reason,
            changes=changes or {},
        )

    async def record(
        self,
        topic_id: str,
        from_version: int | None,
        to_version: int,
        reason: str,
        changes: dict[str, Any] | None = None,
        kind: TransitionKind = TransitionKind.EVOLUTION,
    ) -> EvolutionLogEntry:
        """Append a standalone entry and publish it."""
        entry = self.build_entry(topic_id, from_version, to_version, reason, changes, kind)
        stored = await self._repo.append_log_entry(entry)
        await self.announce(stored)
        return stored

    async def announce(self, entry: EvolutionLogEntry) -> None:
        """Log and publish an entry that has been committed."""
        logger.info(
            f"Strategy transition for topic {entry.topic_id}: "
            f"v{entry.from_version} -> v{entry.to_version} ({entry.kind.value}): {entry.reason}"
        )

        if self._event_bus is not None:
            await self._event_bus.publish(
                EngineEvent(
                    type=_EVENT_FOR_KIND[entry.kind],
                    topic_id=entry.topic_id,
                    data=entry.to_dict(),
                )
            )

    async def list_entries(
        self,
        topic_id: str,
        kind: TransitionKind | None = None,
        limit: int | None = None,
    ) -> list[EvolutionLogEntry]:
        """Entries for a topic, newest first."""
        entries = (await self._repo.list_log_entries(topic_id))[::-1]
        if kind is not None:
            entries = [e for e in entries if e.kind == kind]
        if limit is not None:
            entries = entries[:limit]
        return entries

    async def timeline(self, topic_id: str) -> list[EvolutionLogEntry]:
        """All entries for a topic in chronological order."""
        return await self._repo.list_log_entries(topic_id)

    async def latest(self, topic_id: str) -> EvolutionLogEntry | None:
        entries = await self._repo.list_log_entries(topic_id)
        return entries[-1] if entries else None

    async def get_transition(
        self,
        topic_id: str,
        from_version: int | None,
        to_version: int,
    ) -> EvolutionLogEntry | None:
        """First entry recording the given transition."""
        for entry in await self._repo.list_log_entries(topic_id):
            if entry.from_version == from_version and entry.to_version == to_version:
                return entry
        return None

    async def purge(
        self,
        before: datetime | None = None,
        retention_days: int | None = None,
        topic_id: str | None = None,
    ) -> int:
        """Remove entries older than *before* (or *retention_days* ago).

        Returns:
            Number of entries removed.
        """
        if before is None:
            if retention_days is None:
                raise ValueError("purge requires either before or retention_days")
            before = datetime.now(UTC) - timedelta(days=retention_days)

        removed = await self._repo.purge_log_entries(before, topic_id=topic_id)
        if removed:
            logger.info(f"Purged {removed} evolution log entries older than {before.isoformat()}")
        return removed

    async def get_statistics(self, topic_id: str) -> dict[str, Any]:
        """Counts of entries by kind for a topic."""
        entries = await self._repo.list_log_entries(topic_id)
        by_kind: dict[str, int] = {}
        for entry in entries:
            by_kind[entry.kind.value] = by_kind.get(entry.kind.value, 0) + 1
        return {
            "total_entries": len(entries),
            "entries_by_kind": by_kind,
            "first_entry": entries[0].created_at.isoformat() if entries else None,
            "last_entry": entries[-1].created_at.isoformat() if entries else None,
        }
