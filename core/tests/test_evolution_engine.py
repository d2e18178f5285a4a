"""
Integration tests for the EvolutionEngine

Tests for:
- Evolving a poorly performing version into a candidate
- Holding back when data is insufficient
- Duplicate-evolution protection under concurrent completions
- Event bus wiring and auto-promotion
- Store outages skipping the check
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from deepcurrent.engine import StrategyEngine
from deepcurrent.errors import TransientStoreError
from deepcurrent.evolution import CheckOutcome
from deepcurrent.governance import TransitionKind
from deepcurrent.runtime import EventType
from deepcurrent.settings import EngineSettings
from deepcurrent.storage import InMemoryRepository, StrategyStatus
from deepcurrent.strategy import StrategyConfig

from conftest import FlakyLogRepository


class TestEvolveStrategy:
    @pytest.mark.asyncio
    async def test_poor_version_evolves_to_candidate(self, engine, repository, active_topic, record_episodes):
        """Six low-quality episodes on v1 produce candidate v2 and a log entry."""
        tid = active_topic.topic_id
        await record_episodes(tid, 1, 6, returned=4, saved=1, followups=[10, 12])

        decision = await engine.policy.should_evolve(tid, 1, min_episodes=5)
        assert decision.should_evolve is True
        assert decision.reason in ("low save rate", "excessive follow-ups")

        outcome = await engine.evolution.check_topic(tid)

        assert outcome.outcome == CheckOutcome.EVOLVED
        assert outcome.candidate.version == 2
        assert outcome.candidate.status == StrategyStatus.CANDIDATE
        assert outcome.candidate.parent_version == 1
        assert outcome.candidate.rollout_percentage == engine.settings.candidate_rollout_percentage
        assert (await repository.get_topic(tid)).active_version == 1

        entry = await engine.audit_log.get_transition(tid, 1, 2)
        assert entry is not None
        assert entry.kind == TransitionKind.EVOLUTION
        assert entry.changes["metrics"]["total_episodes"] == 6
        assert entry.changes["before"]["searchDepth"] == "standard"
        assert entry.changes["after"]["searchDepth"] == "deep"
        assert "searchDepth" in entry.changes["diff"]

    @pytest.mark.asyncio
    async def test_insufficient_data_does_not_evolve(self, engine, repository, active_topic, record_episodes):
        tid = active_topic.topic_id
        await record_episodes(tid, 1, 2, returned=4, saved=0, followups=15)

        decision = await engine.policy.should_evolve(tid, 1, min_episodes=5)
        outcome = await engine.evolution.check_topic(tid)

        assert decision.should_evolve is False
        assert decision.reason == "insufficient data"
        assert outcome.outcome == CheckOutcome.MAINTAINED
        assert [v.version for v in await repository.list_versions(tid)] == [1]

    @pytest.mark.asyncio
    async def test_healthy_version_is_maintained(self, engine, active_topic, record_episodes):
        tid = active_topic.topic_id
        await record_episodes(tid, 1, 5, returned=4, saved=3, followups=2)

        outcome = await engine.evolution.check_topic(tid)

        assert outcome.outcome == CheckOutcome.MAINTAINED
        assert outcome.reason == "performance within thresholds"

    @pytest.mark.asyncio
    async def test_no_active_strategy_is_skipped(self, engine, topic):
        outcome = await engine.evolution.check_topic(topic.topic_id)

        assert outcome.outcome == CheckOutcome.SKIPPED

    @pytest.mark.asyncio
    async def test_saturated_config_is_skipped(self, engine, topic, record_episodes):
        tid = topic.topic_id

        await engine.rollout.bootstrap(
            tid,
            StrategyConfig().evolve(
                search_depth="deep",
                time_window="all",
                ranking="precision",
                model="gpt-4o",
                senso_first=True,
            ),
        )
        await record_episodes(tid, 1, 5, returned=4, saved=1)

        outcome = await engine.evolution.check_topic(tid)

        assert outcome.outcome == CheckOutcome.SKIPPED
        assert outcome.decision.should_evolve is True
        assert len(await engine.config_store.list_versions(tid)) == 1


class TestEpisodeCompleted:
    @pytest.mark.asyncio
    async def test_stale_version_is_ignored(self, engine, active_topic, record_episodes):
        tid = active_topic.topic_id
        episodes = await record_episodes(tid, 1, 5, returned=4, saved=0)

        await engine.rollout.create_candidate(tid, StrategyConfig().evolve(model="gpt-4o"), 1)
        await engine.rollout.promote(tid, 2)

        outcome = await engine.evolution.on_episode_completed(episodes[-1].episode_id)

        assert outcome.outcome == CheckOutcome.SKIPPED
        assert "active is v2" in outcome.reason

    @pytest.mark.asyncio
    async def test_pending_episode_is_ignored(self, engine, active_topic):
        episode = await engine.recorder.start(active_topic.topic_id, 1, "q")

        assert await engine.evolution.on_episode_completed(episode.episode_id) is None
        assert await engine.evolution.on_episode_completed("missing") is None

    @pytest.mark.asyncio
    async def test_concurrent_completions_create_one_candidate(self, engine, repository, active_topic, record_episodes):
        tid = active_topic.topic_id
        episodes = await record_episodes(tid, 1, 6, returned=4, saved=0)

        outcomes = await asyncio.gather(
            *(engine.evolution.on_episode_completed(e.episode_id) for e in episodes)
        )

        evolved = [o for o in outcomes if o.outcome == CheckOutcome.EVOLVED]
        assert len(evolved) == 1
        candidates = [
            v for v in await repository.list_versions(tid) if v.status == StrategyStatus.CANDIDATE
        ]
        assert len(candidates) == 1
        assert len(await engine.audit_log.list_entries(tid, kind=TransitionKind.EVOLUTION)) == 1

    @pytest.mark.asyncio
    async def test_failed_log_write_leaves_no_orphan_candidate(self, topic):
        """A candidate is never stored without its evolution log entry."""
        repo = FlakyLogRepository()
        engine = StrategyEngine.create(repo, EngineSettings(telemetry_retry_base_delay=0.0), attach=False)
        await repo.create_topic(topic)
        tid = topic.topic_id
        await engine.rollout.bootstrap(tid)
        urls = ["https://a", "https://b", "https://c", "https://d"]
        for i in range(5):
            await engine.recorder.record(tid, 1, f"q{i}", urls, [], 1)

        repo.failures_left = 1
        first = await engine.evolution.check_topic(tid, 1)

        assert first.outcome == CheckOutcome.SKIPPED
        assert "store unavailable" in first.reason
        assert [v.version for v in await repo.list_versions(tid)] == [1]
        assert await engine.audit_log.list_entries(tid, kind=TransitionKind.EVOLUTION) == []

        second = await engine.evolution.check_topic(tid, 1)

        assert second.outcome == CheckOutcome.EVOLVED
        assert second.candidate.version == 2
        entries = await engine.audit_log.list_entries(tid, kind=TransitionKind.EVOLUTION)
        assert len(entries) == 1
        assert (entries[0].from_version, entries[0].to_version) == (1, 2)
        assert entries[0] == second.log_entry

    @pytest.mark.asyncio
    async def test_store_outage_skips_check(self, engine, repository, active_topic, record_episodes):
        tid = active_topic.topic_id
        episodes = await record_episodes(tid, 1, 5, returned=4, saved=0)
        outage = AsyncMock(side_effect=TransientStoreError("store offline"))

        with patch.object(repository, "list_versions", outage):
            outcome = await engine.evolution.on_episode_completed(episodes[0].episode_id)

        assert outcome.outcome == CheckOutcome.SKIPPED
        assert "store unavailable" in outcome.reason


class TestEventDrivenEvolution:
    @pytest.mark.asyncio
    async def test_recording_episodes_triggers_evolution(self, topic):
        repo = InMemoryRepository()
        engine = StrategyEngine.create(repo, EngineSettings(telemetry_retry_base_delay=0.0))
        await repo.create_topic(topic)
        tid = topic.topic_id
        await engine.rollout.bootstrap(tid)
        evolved_events = []

        async def on_evolved(event):
            evolved_events.append(event)

        engine.event_bus.subscribe(EventType.STRATEGY_EVOLVED, on_evolved)

        urls = ["https://a", "https://b", "https://c", "https://d"]
        for i in range(6):
            await engine.recorder.record(tid, 1, f"q{i}", urls, urls[:1], 11)

        versions = await repo.list_versions(tid)
        assert [v.version for v in versions] == [1, 2]
        assert versions[1].status == StrategyStatus.CANDIDATE
        assert len(evolved_events) == 1
        assert evolved_events[0].data["to_version"] == 2

    @pytest.mark.asyncio
    async def test_auto_promote(self, topic):
        repo = InMemoryRepository()
        settings = EngineSettings(auto_promote=True, telemetry_retry_base_delay=0.0)
        engine = StrategyEngine.create(repo, settings)
        await repo.create_topic(topic)
        tid = topic.topic_id
        await engine.rollout.bootstrap(tid)

        for i in range(5):
            await engine.recorder.record(tid, 1, f"q{i}", ["https://a"], [], 1)

        topic_row = await repo.get_topic(tid)
        assert topic_row.active_version == 2
        assert (await repo.get_version(tid, 1)).status == StrategyStatus.ARCHIVED
        kinds = [e.kind for e in await engine.audit_log.timeline(tid)]
        assert kinds == [TransitionKind.BOOTSTRAP, TransitionKind.EVOLUTION, TransitionKind.PROMOTION]

    @pytest.mark.asyncio
    async def test_detach(self, topic):
        repo = InMemoryRepository()
        engine = StrategyEngine.create(repo)
        engine.evolution.detach(engine.event_bus)
        await repo.create_topic(topic)
        await engine.rollout.bootstrap(topic.topic_id)

        for i in range(6):
            await engine.recorder.record(topic.topic_id, 1, f"q{i}", ["https://a"], [], 1)

        assert len(await repo.list_versions(topic.topic_id)) == 1
