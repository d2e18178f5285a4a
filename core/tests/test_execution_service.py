"""
Unit tests for StrategyExecutionService

Tests for:
- Strategy context handed to the executor
- Episode recording for successful and failed runs
- Outcomes returned even when telemetry fails
"""

from unittest.mock import AsyncMock, patch

import pytest

from deepcurrent.errors import TransientStoreError
from deepcurrent.runtime.execution import ExecutionOutcome, StrategyExecutionService
from deepcurrent.strategy import DEFAULT_STRATEGY_VERSION, StrategyConfig
from deepcurrent.telemetry import EpisodeStatus


class RecordingExecutor:
    """Executor double that returns a fixed outcome and keeps the contexts it saw."""

    def __init__(self, outcome: ExecutionOutcome | None = None, error: Exception | None = None):
        self.outcome = outcome or ExecutionOutcome(
            sources_returned=["https://a", "https://b"],
            sources_saved=["https://a"],
            followup_count=2,
            result="summary",
        )
        self.error = error
        self.contexts = []

    async def execute(self, query, context):
        self.contexts.append(context)
        if self.error is not None:
            raise self.error
        return self.outcome


def _service(engine, executor):
    return StrategyExecutionService(engine.config_store, engine.recorder, executor)


class TestStrategyExecutionService:
    @pytest.mark.asyncio
    async def test_runs_under_active_strategy(self, engine, topic):
        await engine.rollout.bootstrap(topic.topic_id, StrategyConfig().evolve(max_followups=2))
        executor = RecordingExecutor()

        result = await _service(engine, executor).run(topic.topic_id, "fusion news", user_id="u1")

        context = executor.contexts[0]
        assert context.strategy_version == 1
        assert context.max_followups == 2
        assert context.episode_id == result.episode.episode_id
        assert result.outcome.result == "summary"
        assert result.episode.status == EpisodeStatus.COMPLETED
        assert result.episode.save_rate == 0.5
        assert result.episode.user_id == "u1"
        assert result.telemetry_error is None

    @pytest.mark.asyncio
    async def test_default_strategy_when_none_active(self, engine, topic):
        executor = RecordingExecutor()

        result = await _service(engine, executor).run(topic.topic_id, "q")

        assert executor.contexts[0].is_default
        assert executor.contexts[0].search_depth == "standard"
        assert result.episode.strategy_version == DEFAULT_STRATEGY_VERSION

    @pytest.mark.asyncio
    async def test_executor_failure_recorded(self, engine, active_topic):
        executor = RecordingExecutor(error=RuntimeError("search API down"))

        result = await _service(engine, executor).run(active_topic.topic_id, "q")

        assert result.outcome.status == EpisodeStatus.FAILED
        assert result.episode.status == EpisodeStatus.FAILED
        assert result.episode.error_message == "search API down"

    @pytest.mark.asyncio
    async def test_failed_outcome_recorded(self, engine, active_topic):
        outcome = ExecutionOutcome(
            status=EpisodeStatus.FAILED, error_message="rate limited", followup_count=4
        )

        result = await _service(engine, RecordingExecutor(outcome)).run(active_topic.topic_id, "q")

        assert result.episode.status == EpisodeStatus.FAILED
        assert result.episode.followup_count == 4

    @pytest.mark.asyncio
    async def test_unknown_topic_still_returns_result(self, engine):
        executor = RecordingExecutor()

        result = await _service(engine, executor).run("missing", "q")

        assert result.outcome.result == "summary"
        assert result.episode is None
        assert "not found" in result.telemetry_error
        assert executor.contexts[0].is_default

    @pytest.mark.asyncio
    async def test_telemetry_outage_still_returns_result(self, engine, repository, active_topic):
        executor = RecordingExecutor()
        outage = AsyncMock(side_effect=TransientStoreError("store offline"))

        with patch.object(repository, "save_episode", outage):
            result = await _service(engine, executor).run(active_topic.topic_id, "q")

        assert result.outcome.result == "summary"
        assert result.episode is None
        assert "store offline" in result.telemetry_error
        assert outage.await_count == engine.settings.telemetry_retry_attempts

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "outcome",
        [
            ExecutionOutcome(sources_returned=[{"title": "no url"}], result="summary"),
            ExecutionOutcome(followup_count=-1, result="summary"),
        ],
        ids=["source-without-url", "negative-followups"],
    )
    async def test_malformed_outcome_still_returns_result(self, engine, active_topic, outcome):
        result = await _service(engine, RecordingExecutor(outcome)).run(active_topic.topic_id, "q")

        assert result.outcome.result == "summary"
        assert result.telemetry_error
        assert result.episode.status == EpisodeStatus.RUNNING

    @pytest.mark.asyncio
    async def test_completion_clears_start_up_telemetry_error(self, engine, active_topic):
        executor = RecordingExecutor()
        hiccup = AsyncMock(side_effect=TransientStoreError("store offline"))

        with patch.object(engine.recorder, "mark_running", hiccup):
            result = await _service(engine, executor).run(active_topic.topic_id, "q")

        assert hiccup.await_count == 1
        assert result.episode.status == EpisodeStatus.COMPLETED
        assert result.telemetry_error is None

    @pytest.mark.asyncio
    async def test_senso_usage_is_recorded(self, engine, active_topic):
        outcome = ExecutionOutcome(
            sources_returned=["https://a"],
            sources_saved=["https://a"],
            senso_search_used=True,
            tool_usage={"search": 2, "extract": 1},
        )

        result = await _service(engine, RecordingExecutor(outcome)).run(active_topic.topic_id, "q")

        assert result.episode.senso_search_used is True
        assert result.episode.senso_generate_used is False
        assert result.episode.used_senso
        assert result.episode.tool_usage_count == 2
