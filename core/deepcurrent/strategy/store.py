"""ConfigStore - versioned, immutable strategy configurations per topic.

Version numbers are allocated optimistically: read the latest number, try
to insert ``latest + 1``, and retry with a fresh read when the repository
reports a ConflictError. The repository's check-and-set keeps numbering
strictly increasing and gap-free under concurrent writers.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from deepcurrent.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from deepcurrent.governance.schemas import EvolutionLogEntry
from deepcurrent.storage.models import StrategyStatus, StrategyVersion
from deepcurrent.strategy.config import (
    DEFAULT_STRATEGY_CONFIG,
    StrategyConfig,
    parse_config,
)

if TYPE_CHECKING:
    from deepcurrent.storage.repository import StrategyRepository

logger = logging.getLogger(__name__)


class ConfigStore:
    """Read/append access to strategy versions.

    Usage:
        store = ConfigStore(repository)

        v1 = await store.create_version(topic_id, StrategyConfig())
        active = await store.get_active(topic_id)
        version, config = await store.resolve_config(topic_id)
    """

    def __init__(
        self,
        repository: StrategyRepository,
        max_allocation_retries: int = 10,
    ) -> None:
        self._repo = repository
        self._max_retries = max_allocation_retries

    async def create_version(
        self,
        topic_id: str,
        config: StrategyConfig | dict,
        parent_version: int | None = None,
        status: StrategyStatus = StrategyStatus.CANDIDATE,
        rollout_percentage: int = 100,
        log_entry: Callable[[StrategyVersion], EvolutionLogEntry] | None = None,
    ) -> StrategyVersion:
        """Allocate the next version number for *topic_id* and persist it.

        New versions always enter as candidates; ``RolloutManager.promote``
        is the only way to activate one.

        Args:
            log_entry: Builds the evolution log entry for the allocated row.
                It is committed together with the row, so a version never
                exists without its entry.

        Raises:
            NotFoundError: If the topic does not exist.
            ConflictError: If allocation kept losing races after all retries.
            InvalidTransitionError: If *status* is not candidate.
        """
        if status != StrategyStatus.CANDIDATE:
            raise InvalidTransitionError(
                f"New strategy versions for topic {topic_id} must be candidates, "
                f"got {StrategyStatus(status).value}; promote to activate"
            )

        if isinstance(config, StrategyConfig):
            payload = config.to_payload()
        else:
            payload = parse_config(config, topic_id, None).to_payload()

        if parent_version is not None:
            parent = await self._repo.get_version(topic_id, parent_version)
            if parent is None:
                raise NotFoundError("StrategyVersion", f"{topic_id}@v{parent_version}")

        last_conflict: ConflictError | None = None
        for attempt in range(1, self._max_retries + 1):
            latest = await self._repo.latest_version_number(topic_id)
            row = StrategyVersion(
                topic_id=topic_id,
                version=latest + 1,
                status=status,
                rollout_percentage=rollout_percentage,
                parent_version=parent_version,
                config=payload,
            )
            entries = [log_entry(row)] if log_entry is not None else []
            try:
                created = await self._repo.insert_version(row, entries)
            except ConflictError as e:
                last_conflict = e
                logger.debug(
                    f"Version {row.version} for topic {topic_id} claimed concurrently "
                    f"(attempt {attempt}/{self._max_retries})"
                )
                await asyncio.sleep(0)
                continue

            logger.info(
                f"Created strategy v{created.version} for topic {topic_id} "
                f"(status={created.status.value}, parent={parent_version})"
            )
            return created

        assert last_conflict is not None
        logger.error(
            f"Version allocation for topic {topic_id} failed after {self._max_retries} attempts"
        )
        raise last_conflict

    async def get_version(self, topic_id: str, version: int) -> StrategyVersion:
        """Get a specific version.

        Raises:
            NotFoundError: If the topic or version does not exist.
        """
        await self._require_topic(topic_id)
        row = await self._repo.get_version(topic_id, version)
        if row is None:
            raise NotFoundError("StrategyVersion", f"{topic_id}@v{version}")
        return row

    async def list_versions(self, topic_id: str) -> list[StrategyVersion]:
        """All versions for a topic, newest first."""
        await self._require_topic(topic_id)
        versions = await self._repo.list_versions(topic_id)
        return list(reversed(versions))

    async def get_active(self, topic_id: str) -> StrategyVersion | None:
        """The version the topic's active pointer refers to.

        Returns ``None`` if the topic never had an active strategy.

        Raises:
            NotFoundError: If the topic does not exist.
        """
        topic = await self._require_topic(topic_id)
        if topic.active_version is None:
            return None
        row = await self._repo.get_version(topic_id, topic.active_version)
        if row is None:
            logger.error(
                f"Topic {topic_id} points at missing strategy v{topic.active_version}"
            )
            return None
        return row

    def load_config(self, version: StrategyVersion) -> StrategyConfig:
        """Parse a version's payload.

        Raises:
            ValidationError: If the payload is corrupt.
        """
        return parse_config(version.config, version.topic_id, version.version)

    async def resolve_config(self, topic_id: str) -> tuple[StrategyVersion | None, StrategyConfig]:
        """Active version and its config, or the compiled-in default.

        This is the only place behavior exists without a version record:
        unknown topics, topics with no active strategy and corrupt active
        payloads all fall back to ``DEFAULT_STRATEGY_CONFIG``.
        """
        try:
            active = await self.get_active(topic_id)
        except NotFoundError:
            logger.warning(f"Topic {topic_id} not found, using default strategy")
            return None, DEFAULT_STRATEGY_CONFIG

        if active is None:
            return None, DEFAULT_STRATEGY_CONFIG

        try:
            return active, self.load_config(active)
        except ValidationError as e:
            logger.error(
                f"Active strategy is corrupt, using default: {e}",
                extra={"topic_id": topic_id, "version": active.version, "detail": e.detail},
            )
            return None, DEFAULT_STRATEGY_CONFIG

    async def _require_topic(self, topic_id: str):
        topic = await self._repo.get_topic(topic_id)
        if topic is None:
            raise NotFoundError("Topic", topic_id)
        return topic
