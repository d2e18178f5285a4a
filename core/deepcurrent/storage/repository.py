"""Repository Protocol and in-memory implementation.

Provides the storage seam every engine component is constructed with:
- StrategyRepository: Protocol for all backends
- TopicTransaction: staged, all-or-nothing edit of one topic's strategy rows
- InMemoryRepository: process-local backend, also used in tests

Invariants enforced here rather than at call sites:
- version numbers per topic are allocated strictly as ``latest + 1``
- a transaction's writes become visible in one step on commit, or not at all,
  together with the evolution log entries staged on it
- new version rows enter as candidates; only a transaction can activate one
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from deepcurrent.errors import ConflictError, InvalidTransitionError, NotFoundError
from deepcurrent.governance.schemas import EvolutionLogEntry
from deepcurrent.storage.models import StrategyStatus, StrategyVersion, Topic
from deepcurrent.telemetry.episode import Episode

logger = logging.getLogger(__name__)


class TopicTransaction:
    """Staged copy of a topic row and its strategy versions.

    Mutations apply to the copy. The repository swaps the copy in when the
    ``transaction()`` block exits cleanly and discards it on error. Log
    entries staged with ``record`` are committed in the same step.
    """

    def __init__(self, topic: Topic, versions: dict[int, StrategyVersion]) -> None:
        self.topic = topic.model_copy(deep=True)
        self.versions = {n: v.model_copy(deep=True) for n, v in versions.items()}
        self.log_entries: list[EvolutionLogEntry] = []

    def next_version(self) -> int:
        return max(self.versions, default=0) + 1

    def add_version(self, version: StrategyVersion) -> None:
        """Stage a new candidate row numbered ``next_version()``."""
        if version.version != self.next_version():
            raise ConflictError(self.topic.topic_id, version.version)
        _require_candidate(version)
        self.versions[version.version] = version

    def record(self, entry: EvolutionLogEntry) -> None:
        """Stage a log entry to commit with this transaction."""
        if entry.topic_id != self.topic.topic_id:
            raise ValueError(
                f"Log entry for topic {entry.topic_id} staged on topic {self.topic.topic_id}"
            )
        self.log_entries.append(entry)

    def get_version(self, version: int) -> StrategyVersion:
        try:
            return self.versions[version]
        except KeyError:
            raise NotFoundError("StrategyVersion", f"{self.topic.topic_id}@v{version}") from None

    def put_version(self, version: StrategyVersion) -> None:
        if version.version not in self.versions:
            raise NotFoundError("StrategyVersion", f"{self.topic.topic_id}@v{version.version}")
        self.versions[version.version] = version

    def set_active_pointer(self, version: int | None) -> None:
        self.topic.active_version = version
        self.topic.updated_at = datetime.now(UTC)

    def active_versions(self) -> list[StrategyVersion]:
        return [v for v in self.versions.values() if v.status == StrategyStatus.ACTIVE]


def _require_candidate(version: StrategyVersion) -> None:
    if version.status != StrategyStatus.CANDIDATE:
        raise InvalidTransitionError(
            f"New strategy v{version.version} for topic {version.topic_id} must be a "
            f"candidate, got {version.status.value}; use promote to activate it"
        )


class StrategyRepository(Protocol):
    """Protocol for persistent stores used by the engine.

    All backends must implement these methods for unified access.
    """

    async def create_topic(self, topic: Topic) -> Topic:
        """Insert a new topic."""
        ...

    async def get_topic(self, topic_id: str) -> Topic | None:
        """Get a topic by ID."""
        ...

    async def list_topics(self) -> list[Topic]:
        """List all topics, newest first."""
        ...

    async def delete_topic(self, topic_id: str) -> bool:
        """Delete a topic and cascade to versions, episodes and log entries."""
        ...

    async def list_versions(self, topic_id: str) -> list[StrategyVersion]:
        """List strategy versions in ascending version order."""
        ...

    async def get_version(self, topic_id: str, version: int) -> StrategyVersion | None:
        """Get one strategy version."""
        ...

    async def latest_version_number(self, topic_id: str) -> int:
        """Highest allocated version number, 0 when none exists."""
        ...

    async def insert_version(
        self,
        version: StrategyVersion,
        log_entries: Sequence[EvolutionLogEntry] = (),
    ) -> StrategyVersion:
        """Insert a candidate if its number is exactly ``latest + 1``.

        *log_entries* are committed together with the row.

        Raises:
            NotFoundError: If the topic does not exist.
            ConflictError: If the number was already claimed.
            InvalidTransitionError: If the row is not a candidate.
        """
        ...

    def transaction(self, topic_id: str) -> "AsyncTransactionContext":
        """Open an all-or-nothing edit of one topic's strategy rows."""
        ...

    async def save_episode(self, episode: Episode) -> Episode:
        """Insert or replace an episode."""
        ...

    async def get_episode(self, episode_id: str) -> Episode | None:
        """Get an episode by ID."""
        ...

    async def list_episodes(
        self,
        topic_id: str,
        strategy_version: int | None = None,
        limit: int | None = None,
    ) -> list[Episode]:
        """List episodes, newest first."""
        ...

    async def append_log_entry(self, entry: EvolutionLogEntry) -> EvolutionLogEntry:
        """Append an evolution log entry."""
        ...

    async def list_log_entries(self, topic_id: str) -> list[EvolutionLogEntry]:
        """List log entries in chronological order."""
        ...

    async def purge_log_entries(self, before: datetime, topic_id: str | None = None) -> int:
        """Delete log entries older than *before*. Returns the count removed."""
        ...


class AsyncTransactionContext(Protocol):
    async def __aenter__(self) -> TopicTransaction: ...

    async def __aexit__(self, *exc_info: object) -> bool | None: ...


@dataclass
class _TopicState:
    topic: Topic
    versions: dict[int, StrategyVersion] = field(default_factory=dict)
    episodes: dict[str, Episode] = field(default_factory=dict)
    log: list[EvolutionLogEntry] = field(default_factory=list)


class InMemoryRepository:
    """Process-local repository.

    Writes to a topic's strategy rows are serialised by a per-topic
    ``asyncio.Lock``. Readers never take the lock; they see either the
    state before a transaction or the state after it.

    Subclasses persist state by overriding the ``_persist_*`` hooks, which
    run before the in-memory swap so a failed write leaves nothing visible.
    ``_persist_strategy`` receives the log entries staged with a strategy
    change and must write both or neither.
    """

    def __init__(self) -> None:
        self._topics: dict[str, _TopicState] = {}
        self._episode_index: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, topic_id: str) -> asyncio.Lock:
        lock = self._locks.get(topic_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[topic_id] = lock
        return lock

    def _state(self, topic_id: str) -> _TopicState:
        state = self._topics.get(topic_id)
        if state is None:
            raise NotFoundError("Topic", topic_id)
        return state

    # ------------------------------------------------------------------
    # Persistence hooks
    # ------------------------------------------------------------------

    async def _persist_strategy(
        self,
        topic: Topic,
        versions: dict[int, StrategyVersion],
        log_entries: Sequence[EvolutionLogEntry] = (),
    ) -> None:
        return None

    async def _persist_episode(self, episode: Episode) -> None:
        return None

    async def _persist_log_entry(self, entry: EvolutionLogEntry) -> None:
        return None

    async def _rewrite_log(self, topic_id: str, entries: list[EvolutionLogEntry]) -> None:
        return None

    async def _remove_topic(self, topic_id: str) -> None:
        return None

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------

    async def create_topic(self, topic: Topic) -> Topic:
        async with self._lock_for(topic.topic_id):
            if topic.topic_id in self._topics:
                raise ValueError(f"Topic '{topic.topic_id}' already exists")
            stored = topic.model_copy(deep=True)
            await self._persist_strategy(stored, {})
            self._topics[stored.topic_id] = _TopicState(topic=stored)
        return stored.model_copy(deep=True)

    async def get_topic(self, topic_id: str) -> Topic | None:
        state = self._topics.get(topic_id)
        return state.topic.model_copy(deep=True) if state else None

    async def list_topics(self) -> list[Topic]:
        topics = [s.topic.model_copy(deep=True) for s in self._topics.values()]
        topics.sort(key=lambda t: t.created_at, reverse=True)
        return topics

    async def delete_topic(self, topic_id: str) -> bool:
        async with self._lock_for(topic_id):
            state = self._topics.get(topic_id)
            if state is None:
                return False
            await self._remove_topic(topic_id)
            del self._topics[topic_id]
            for episode_id in state.episodes:
                self._episode_index.pop(episode_id, None)
        logger.info(f"Deleted topic {topic_id} with {len(state.versions)} versions")
        return True

    # ------------------------------------------------------------------
    # Strategy versions
    # ------------------------------------------------------------------

    async def list_versions(self, topic_id: str) -> list[StrategyVersion]:
        state = self._state(topic_id)
        return [state.versions[n].model_copy(deep=True) for n in sorted(state.versions)]

    async def get_version(self, topic_id: str, version: int) -> StrategyVersion | None:
        state = self._state(topic_id)
        row = state.versions.get(version)
        return row.model_copy(deep=True) if row else None

    async def latest_version_number(self, topic_id: str) -> int:
        state = self._state(topic_id)
        return max(state.versions, default=0)

    async def insert_version(
        self,
        version: StrategyVersion,
        log_entries: Sequence[EvolutionLogEntry] = (),
    ) -> StrategyVersion:
        _require_candidate(version)
        async with self._lock_for(version.topic_id):
            state = self._state(version.topic_id)
            expected = max(state.versions, default=0) + 1
            if version.version != expected:
                raise ConflictError(version.topic_id, version.version)

            stored = version.model_copy(deep=True)
            versions = dict(state.versions)
            versions[stored.version] = stored
            entries = [e.model_copy(deep=True) for e in log_entries]
            await self._persist_strategy(state.topic, versions, entries)
            state.versions = versions
            state.log.extend(entries)
        return stored.model_copy(deep=True)

    @asynccontextmanager
    async def transaction(self, topic_id: str) -> AsyncIterator[TopicTransaction]:
        async with self._lock_for(topic_id):
            state = self._state(topic_id)
            txn = TopicTransaction(state.topic, state.versions)
            yield txn
            entries = [e.model_copy(deep=True) for e in txn.log_entries]
            await self._persist_strategy(txn.topic, txn.versions, entries)
            state.topic = txn.topic
            state.versions = txn.versions
            state.log.extend(entries)

    # ------------------------------------------------------------------
    # Episodes
    # ------------------------------------------------------------------

    async def save_episode(self, episode: Episode) -> Episode:
        state = self._state(episode.topic_id)
        stored = episode.model_copy(deep=True)
        await self._persist_episode(stored)
        state.episodes[stored.episode_id] = stored
        self._episode_index[stored.episode_id] = stored.topic_id
        return stored.model_copy(deep=True)

    async def get_episode(self, episode_id: str) -> Episode | None:
        topic_id = self._episode_index.get(episode_id)
        if topic_id is None or topic_id not in self._topics:
            return None
        episode = self._topics[topic_id].episodes.get(episode_id)
        return episode.model_copy(deep=True) if episode else None

    async def list_episodes(
        self,
        topic_id: str,
        strategy_version: int | None = None,
        limit: int | None = None,
    ) -> list[Episode]:
        state = self._state(topic_id)
        # Newest insertion first so equal timestamps keep recording order.
        episodes = [
            e
            for e in reversed(state.episodes.values())
            if strategy_version is None or e.strategy_version == strategy_version
        ]
        episodes.sort(key=lambda e: e.created_at, reverse=True)
        if limit is not None:
            episodes = episodes[:limit]
        return [e.model_copy(deep=True) for e in episodes]

    # ------------------------------------------------------------------
    # Evolution log
    # ------------------------------------------------------------------

    async def append_log_entry(self, entry: EvolutionLogEntry) -> EvolutionLogEntry:
        state = self._state(entry.topic_id)
        stored = entry.model_copy(deep=True)
        await self._persist_log_entry(stored)
        state.log.append(stored)
        return stored.model_copy(deep=True)

    async def list_log_entries(self, topic_id: str) -> list[EvolutionLogEntry]:
        state = self._state(topic_id)
        entries = sorted(state.log, key=lambda e: e.created_at)
        return [e.model_copy(deep=True) for e in entries]

    async def purge_log_entries(self, before: datetime, topic_id: str | None = None) -> int:
        topic_ids = [topic_id] if topic_id else list(self._topics)
        removed = 0
        for tid in topic_ids:
            state = self._state(tid)
            kept = [e for e in state.log if e.created_at >= before]
            if len(kept) == len(state.log):
                continue
            await self._rewrite_log(tid, kept)
            removed += len(state.log) - len(kept)
            state.log = kept
        return removed
