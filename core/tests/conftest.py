"""
Shared fixtures for engine tests.

This module provides reusable pytest fixtures to reduce
code duplication in test files.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence

import pytest
import pytest_asyncio

from deepcurrent.engine import StrategyEngine
from deepcurrent.errors import TransientStoreError
from deepcurrent.governance import EvolutionLogEntry
from deepcurrent.settings import EngineSettings
from deepcurrent.storage import InMemoryRepository, StrategyVersion, Topic
from deepcurrent.telemetry import Episode, EpisodeStatus


class YieldingRepository(InMemoryRepository):
    """In-memory repository that yields to the event loop while persisting.

    Simulates store latency so concurrent writers interleave inside
    version allocation and promotion.
    """

    async def _persist_strategy(
        self,
        topic: Topic,
        versions: dict[int, StrategyVersion],
        log_entries: Sequence[EvolutionLogEntry] = (),
    ) -> None:
        await asyncio.sleep(0)


class FlakyLogRepository(InMemoryRepository):
    """In-memory repository that fails strategy writes carrying log entries.

    Set ``failures_left`` to the number of such writes that should fail.
    """

    def __init__(self) -> None:
        super().__init__()
        self.failures_left = 0

    async def _persist_strategy(
        self,
        topic: Topic,
        versions: dict[int, StrategyVersion],
        log_entries: Sequence[EvolutionLogEntry] = (),
    ) -> None:
        if log_entries and self.failures_left:
            self.failures_left -= 1
            raise TransientStoreError("evolution log unavailable")


@pytest.fixture
def repository() -> InMemoryRepository:
    """Create a fresh in-memory repository."""
    return InMemoryRepository()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(telemetry_retry_base_delay=0.0)


@pytest.fixture
def engine(repository: InMemoryRepository, settings: EngineSettings) -> StrategyEngine:
    """Engine with the evolution engine detached from the event bus.

    Tests trigger evolution checks explicitly unless they attach it.
    """
    return StrategyEngine.create(repository, settings, attach=False)


@pytest_asyncio.fixture
async def topic(engine: StrategyEngine) -> Topic:
    """A topic with no strategy versions."""
    return await engine.topics.create_topic("Fusion energy", description="Reactor research")


@pytest_asyncio.fixture
async def active_topic(engine: StrategyEngine, topic: Topic) -> Topic:
    """A topic bootstrapped to an active v1 running the default config."""
    await engine.rollout.bootstrap(topic.topic_id)
    return await engine.topics.get_topic(topic.topic_id)


RecordEpisodes = Callable[..., Awaitable[list[Episode]]]


@pytest.fixture
def record_episodes(engine: StrategyEngine) -> RecordEpisodes:
    """
    Factory fixture recording N finished episodes against a version.

    ``followups`` may be an int or a list cycled across episodes.
    """

    async def _record(
        topic_id: str,
        version: int,
        count: int,
        returned: int = 4,
        saved: int = 2,
        followups: int | list[int] = 1,
        status: EpisodeStatus = EpisodeStatus.COMPLETED,
    ) -> list[Episode]:
        pattern = followups if isinstance(followups, list) else [followups]
        episodes = []
        for i in range(count):
            urls = [f"https://example.com/{i}/{n}" for n in range(returned)]
            episodes.append(
                await engine.recorder.record(
                    topic_id,
                    version,
                    f"query {i}",
                    sources_returned=urls,
                    sources_saved=urls[:saved],
                    followup_count=pattern[i % len(pattern)],
                    status=status,
                )
            )
        return episodes

    return _record
