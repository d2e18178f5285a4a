"""TelemetryRecorder - one Episode per execution.

Episodes are written at execution start and once more at completion.
Store writes retry on TransientStoreError with exponential backoff; after
the last attempt the error is logged and re-raised so a valid episode is
never dropped silently.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar

from deepcurrent.errors import InvalidTransitionError, NotFoundError, TransientStoreError
from deepcurrent.runtime.event_bus import EngineEvent, EventBus, EventType
from deepcurrent.telemetry.episode import Episode, EpisodeStatus, SourceRef, can_transition

if TYPE_CHECKING:
    from deepcurrent.storage.repository import StrategyRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

SourceInput = SourceRef | dict[str, Any] | str


def _coerce_sources(sources: Iterable[SourceInput]) -> list[SourceRef]:
    """Accept SourceRefs, plain dicts or bare URLs."""
    refs: list[SourceRef] = []
    for item in sources:
        if isinstance(item, SourceRef):
            refs.append(item)
        elif isinstance(item, str):
            refs.append(SourceRef(url=item))
        else:
            refs.append(SourceRef.model_validate(item))
    return refs


class TelemetryRecorder:
    """Records episode lifecycle transitions.

    Usage:
        recorder = TelemetryRecorder(repository, event_bus)

        episode = await recorder.start(topic_id, strategy_version=2, query="...")
        await recorder.mark_running(episode.episode_id)
        await recorder.mark_completed(
            episode.episode_id,
            sources_returned=[...],
            sources_saved=[...],
            followup_count=3,
        )
    """

    def __init__(
        self,
        repository: StrategyRepository,
        event_bus: EventBus | None = None,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.05,
    ) -> None:
        self._repo = repository
        self._event_bus = event_bus
        self._retry_attempts = max(1, retry_attempts)
        self._retry_base_delay = retry_base_delay

    async def start(
        self,
        topic_id: str,
        strategy_version: int,
        query: str,
        user_id: str | None = None,
    ) -> Episode:
        """Create a pending episode at execution start."""
        episode = Episode(
            topic_id=topic_id,
            strategy_version=strategy_version,
            query=query,
            user_id=user_id,
        )
        stored = await self._save(episode)
        logger.debug(f"Started episode {stored.episode_id} for topic {topic_id} v{strategy_version}")
        return stored

    async def mark_running(self, episode_id: str) -> Episode:
        episode = await self._load(episode_id)
        self._check_transition(episode, EpisodeStatus.RUNNING)
        return await self._save(episode.model_copy(update={"status": EpisodeStatus.RUNNING}))

    async def mark_completed(
        self,
        episode_id: str,
        sources_returned: Sequence[SourceInput],
        sources_saved: Sequence[SourceInput],
        followup_count: int,
        tool_usage: dict[str, Any] | None = None,
        result_note_id: str | None = None,
        senso_search_used: bool = False,
        senso_generate_used: bool = False,
    ) -> Episode:
        """Record final counts. Completed episodes are immutable afterwards."""
        episode = await self._load(episode_id)
        self._check_transition(episode, EpisodeStatus.COMPLETED)
        updated = Episode.model_validate(
            {
                **episode.model_dump(),
                "status": EpisodeStatus.COMPLETED,
                "sources_returned": _coerce_sources(sources_returned),
                "sources_saved": _coerce_sources(sources_saved),
                "followup_count": followup_count,
                "tool_usage": tool_usage,
                "result_note_id": result_note_id,
                "senso_search_used": senso_search_used,
                "senso_generate_used": senso_generate_used,
                "completed_at": datetime.now(UTC),
            }
        )
        return await self._finish(updated)

    async def mark_failed(
        self,
        episode_id: str,
        error_message: str,
        followup_count: int = 0,
        sources_returned: Sequence[SourceInput] = (),
    ) -> Episode:
        """Record a failed execution.

        Failed episodes still count toward aggregates with a save rate of 0
        and the follow-up count observed before failure.
        """
        episode = await self._load(episode_id)
        self._check_transition(episode, EpisodeStatus.FAILED)
        updated = Episode.model_validate(
            {
                **episode.model_dump(),
                "status": EpisodeStatus.FAILED,
                "error_message": error_message,
                "sources_returned": _coerce_sources(sources_returned),
                "sources_saved": [],
                "followup_count": followup_count,
                "completed_at": datetime.now(UTC),
            }
        )
        return await self._finish(updated)

    async def record(
        self,
        topic_id: str,
        strategy_version: int,
        query: str,
        sources_returned: Sequence[SourceInput],
        sources_saved: Sequence[SourceInput],
        followup_count: int,
        status: EpisodeStatus = EpisodeStatus.COMPLETED,
        error_message: str | None = None,
        user_id: str | None = None,
        tool_usage: dict[str, Any] | None = None,
        senso_search_used: bool = False,
        senso_generate_used: bool = False,
    ) -> Episode:
        """One-shot record of a finished execution."""
        if not status.is_terminal:
            raise InvalidTransitionError(
                f"record() requires a terminal status, got {status.value}"
            )
        saved = _coerce_sources(sources_saved) if status == EpisodeStatus.COMPLETED else []
        episode = Episode(
            topic_id=topic_id,
            strategy_version=strategy_version,
            query=query,
            user_id=user_id,
            status=status,
            error_message=error_message,
            sources_returned=_coerce_sources(sources_returned),
            sources_saved=saved,
            followup_count=followup_count,
            tool_usage=tool_usage,
            senso_search_used=senso_search_used,
            senso_generate_used=senso_generate_used,
            completed_at=datetime.now(UTC),
        )
        return await self._finish(episode)

    # ------------------------------------------------------------------

    async def _finish(self, episode: Episode) -> Episode:
        stored = await self._save(episode)
        logger.info(
            f"Episode {stored.episode_id} {stored.status.value} for topic {stored.topic_id} "
            f"v{stored.strategy_version}: save_rate={stored.save_rate:.2f}, "
            f"followups={stored.followup_count}"
        )
        if self._event_bus is not None:
            await self._event_bus.publish(
                EngineEvent(
                    type=EventType.EPISODE_COMPLETED,
                    topic_id=stored.topic_id,
                    data={
                        "episode_id": stored.episode_id,
                        "strategy_version": stored.strategy_version,
                        "status": stored.status.value,
                    },
                )
            )
        return stored

    def _check_transition(self, episode: Episode, target: EpisodeStatus) -> None:
        if not can_transition(episode.status, target):
            raise InvalidTransitionError(
                f"Episode {episode.episode_id} cannot move from "
                f"{episode.status.value} to {target.value}"
            )

    async def _load(self, episode_id: str) -> Episode:
        episode = await self._with_retry(
            lambda: self._repo.get_episode(episode_id), f"load episode {episode_id}"
        )
        if episode is None:
            raise NotFoundError("Episode", episode_id)
        return episode

    async def _save(self, episode: Episode) -> Episode:
        return await self._with_retry(
            lambda: self._repo.save_episode(episode), f"save episode {episode.episode_id}"
        )

    async def _with_retry(self, op: Callable[[], Awaitable[T]], what: str) -> T:
        for attempt in range(1, self._retry_attempts + 1):
            try:
                return await op()
            except TransientStoreError as e:
                if attempt == self._retry_attempts:
                    logger.error(
                        f"Failed to {what} after {attempt} attempts: {e}",
                        extra={"attempts": attempt, "operation": what},
                    )
                    raise
                delay = self._retry_base_delay * (2 ** (attempt - 1))
                logger.warning(f"Store unavailable ({e}), retrying {what} in {delay:.2f}s")
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")
