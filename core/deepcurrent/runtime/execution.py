"""Strategy execution service.

Runs a query for a topic under its active strategy and turns the
executor's outcome into an episode. Telemetry is best effort from the
caller's point of view: if the store fails, the outcome is still
returned and only the feedback loop is degraded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from deepcurrent.strategy.config import DEFAULT_STRATEGY_VERSION, StrategyContext
from deepcurrent.strategy.store import ConfigStore
from deepcurrent.telemetry.episode import Episode, EpisodeStatus, SourceRef
from deepcurrent.telemetry.recorder import TelemetryRecorder

logger = logging.getLogger(__name__)


@dataclass
class ExecutionOutcome:
    """What the executor reports back for one run."""

    sources_returned: list[SourceRef | dict[str, Any] | str] = field(default_factory=list)
    sources_saved: list[SourceRef | dict[str, Any] | str] = field(default_factory=list)
    followup_count: int = 0
    status: EpisodeStatus = EpisodeStatus.COMPLETED
    error_message: str | None = None
    result: Any = None
    tool_usage: dict[str, Any] | None = None
    result_note_id: str | None = None
    senso_search_used: bool = False
    senso_generate_used: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == EpisodeStatus.COMPLETED


class StrategyExecutor(Protocol):
    """Runs a research query under a strategy context."""

    async def execute(self, query: str, context: StrategyContext) -> ExecutionOutcome: ...


@dataclass
class ExecutionResult:
    """Outcome of a run plus the telemetry written for it, if any."""

    outcome: ExecutionOutcome
    context: StrategyContext
    episode: Episode | None = None
    telemetry_error: str | None = None


class StrategyExecutionService:
    """Resolves the strategy, executes, and records the episode.

    Usage:
        service = StrategyExecutionService(store, recorder, executor)
        result = await service.run(topic_id, "latest fusion results")
        print(result.outcome.result)
    """

    def __init__(
        self,
        config_store: ConfigStore,
        recorder: TelemetryRecorder,
        executor: StrategyExecutor,
    ) -> None:
        self._store = config_store
        self._recorder = recorder
        self._executor = executor

    async def run(self, topic_id: str, query: str, user_id: str | None = None) -> ExecutionResult:
        active, config = await self._store.resolve_config(topic_id)
        version = active.version if active is not None else None
        context = StrategyContext.from_config(config, topic_id, version)

        episode: Episode | None = None
        telemetry_error: str | None = None
        try:
            episode = await self._recorder.start(
                topic_id,
                version if version is not None else DEFAULT_STRATEGY_VERSION,
                query,
                user_id=user_id,
            )
            episode = await self._recorder.mark_running(episode.episode_id)
            context = context.with_episode(episode.episode_id)
        except Exception as e:
            telemetry_error = str(e)
            logger.exception(
                f"Could not start episode for topic {topic_id}: {e}",
                extra={"topic_id": topic_id, "strategy_version": version},
            )

        try:
            outcome = await self._executor.execute(query, context)
        except Exception as e:
            logger.exception(f"Executor failed for topic {topic_id}")
            outcome = ExecutionOutcome(status=EpisodeStatus.FAILED, error_message=str(e))

        if episode is not None:
            try:
                episode = await self._finish(episode, outcome)
            except Exception as e:
                telemetry_error = str(e)
                logger.exception(
                    f"Could not record episode {episode.episode_id}: {e}",
                    extra={"topic_id": topic_id, "episode_id": episode.episode_id},
                )
            else:
                # The episode reached a terminal state, so earlier start-up errors no longer apply.
                telemetry_error = None

        return ExecutionResult(
            outcome=outcome,
            context=context,
            episode=episode,
            telemetry_error=telemetry_error,
        )

    async def _finish(self, episode: Episode, outcome: ExecutionOutcome) -> Episode:
        if outcome.succeeded:
            return await self._recorder.mark_completed(
                episode.episode_id,
                sources_returned=outcome.sources_returned,
                sources_saved=outcome.sources_saved,
                followup_count=outcome.followup_count,
                tool_usage=outcome.tool_usage,
                result_note_id=outcome.result_note_id,
                senso_search_used=outcome.senso_search_used,
                senso_generate_used=outcome.senso_generate_used,
            )
        return await self._recorder.mark_failed(
            episode.episode_id,
            error_message=outcome.error_message or "execution failed",
            followup_count=outcome.followup_count,
            sources_returned=outcome.sources_returned,
        )
