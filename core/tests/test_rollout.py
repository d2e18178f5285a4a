"""
Unit tests for RolloutManager

Tests for:
- Promotion (atomicity, single-active invariant, archived siblings)
- Candidate archive and rollout updates
- Bootstrap and rollback
- Audit entries for every transition
"""

import asyncio

import pytest

from deepcurrent.engine import StrategyEngine
from deepcurrent.errors import InvalidTransitionError, NotFoundError, TransientStoreError
from deepcurrent.governance import TransitionKind
from deepcurrent.runtime import EventType
from deepcurrent.storage import StrategyStatus
from deepcurrent.strategy import StrategyConfig

from conftest import FlakyLogRepository, YieldingRepository


async def _assert_single_active(repository, topic_id):
    versions = await repository.list_versions(topic_id)
    active = [v for v in versions if v.status == StrategyStatus.ACTIVE]
    topic = await repository.get_topic(topic_id)
    assert len(active) <= 1
    if active:
        assert topic.active_version == active[0].version
    return active


class TestPromote:
    @pytest.mark.asyncio
    async def test_promote_candidate_over_active(self, engine, repository, active_topic):
        """Promoting v2 archives v1 and moves the pointer in one step."""
        tid = active_topic.topic_id
        await engine.rollout.create_candidate(tid, StrategyConfig().evolve(search_depth="deep"), 1)

        promoted = await engine.rollout.promote(tid, 2)

        v1 = await repository.get_version(tid, 1)
        v2 = await repository.get_version(tid, 2)
        topic = await repository.get_topic(tid)
        assert v1.status == StrategyStatus.ARCHIVED
        assert v2.status == StrategyStatus.ACTIVE
        assert v2.rollout_percentage == 100
        assert promoted.version == 2
        assert topic.active_version == 2
        await _assert_single_active(repository, tid)

    @pytest.mark.asyncio
    async def test_promote_archives_sibling_candidates(self, engine, repository, active_topic):
        tid = active_topic.topic_id
        await engine.rollout.create_candidate(tid, StrategyConfig().evolve(model="gpt-4o"), 1)
        await engine.rollout.create_candidate(tid, StrategyConfig().evolve(ranking="recall"), 1)

        await engine.rollout.promote(tid, 3)

        statuses = {v.version: v.status for v in await repository.list_versions(tid)}
        assert statuses == {
            1: StrategyStatus.ARCHIVED,
            2: StrategyStatus.ARCHIVED,
            3: StrategyStatus.ACTIVE,
        }

    @pytest.mark.asyncio
    async def test_cannot_promote_archived(self, engine, active_topic):
        tid = active_topic.topic_id
        await engine.rollout.create_candidate(tid, StrategyConfig().evolve(model="gpt-4o"), 1)
        await engine.rollout.promote(tid, 2)

        with pytest.raises(InvalidTransitionError):
            await engine.rollout.promote(tid, 1)

    @pytest.mark.asyncio
    async def test_promote_missing_version(self, engine, active_topic):
        with pytest.raises(NotFoundError):
            await engine.rollout.promote(active_topic.topic_id, 9)

    @pytest.mark.asyncio
    async def test_promote_records_audit_entry(self, engine, active_topic):
        tid = active_topic.topic_id
        await engine.rollout.create_candidate(tid, StrategyConfig().evolve(search_depth="deep"), 1)

        await engine.rollout.promote(tid, 2, reason="operator approved")

        entry = await engine.audit_log.latest(tid)
        assert entry.kind == TransitionKind.PROMOTION
        assert entry.from_version == 1
        assert entry.to_version == 2
        assert entry.reason == "operator approved"
        assert entry.changes["archived"] == [1]
        assert entry.changes["diff"]["searchDepth"] == {"before": "standard", "after": "deep"}

    @pytest.mark.asyncio
    async def test_readers_never_see_intermediate_state(self, topic):
        """Concurrent readers observe either the old or the new state."""
        repo = YieldingRepository()
        engine = StrategyEngine.create(repo, attach=False)
        await repo.create_topic(topic)
        tid = topic.topic_id
        await engine.rollout.bootstrap(tid)

        observations = []
        done = asyncio.Event()

        async def reader():
            while not done.is_set():
                versions = await repo.list_versions(tid)
                topic_row = await repo.get_topic(tid)
                observations.append((topic_row.active_version, versions))
                await asyncio.sleep(0)

        async def promoter():
            # Each promotion archives every other version, so candidates are made one at a time.
            for n in range(3):
                candidate = await engine.rollout.create_candidate(
                    tid, StrategyConfig().evolve(max_followups=n + 1), n + 1
                )
                await engine.rollout.promote(tid, candidate.version)
            done.set()

        await asyncio.gather(reader(), promoter())

        assert observations
        for pointer, versions in observations:
            active = [v.version for v in versions if v.status == StrategyStatus.ACTIVE]
            assert len(active) == 1
            assert active == [pointer]

    @pytest.mark.asyncio
    async def test_concurrent_promotes_leave_one_active(self, engine, repository, active_topic):
        tid = active_topic.topic_id
        for n in range(4):
            await engine.rollout.create_candidate(tid, StrategyConfig().evolve(max_followups=n + 1), 1)

        results = await asyncio.gather(
            *(engine.rollout.promote(tid, v) for v in (2, 3, 4, 5)),
            return_exceptions=True,
        )

        # The first promote archives the others, so later ones are rejected.
        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert all(
            isinstance(r, InvalidTransitionError) for r in results if isinstance(r, Exception)
        )
        active = await _assert_single_active(repository, tid)
        assert len(active) == 1

    @pytest.mark.asyncio
    async def test_promote_active_version_is_noop(self, engine, repository, active_topic):
        tid = active_topic.topic_id
        log_before = await engine.audit_log.timeline(tid)
        events_before = engine.event_bus.get_history(EventType.STRATEGY_PROMOTED, tid)

        version = await engine.rollout.promote(tid, 1, reason="again")

        assert version.version == 1
        assert version.status == StrategyStatus.ACTIVE
        assert await engine.audit_log.timeline(tid) == log_before
        assert engine.event_bus.get_history(EventType.STRATEGY_PROMOTED, tid) == events_before
        await _assert_single_active(repository, tid)


class TestArchiveAndRollout:
    @pytest.mark.asyncio
    async def test_archive_candidate(self, engine, repository, active_topic):
        tid = active_topic.topic_id
        await engine.rollout.create_candidate(tid, StrategyConfig().evolve(model="gpt-4o"), 1)

        archived = await engine.rollout.archive(tid, 2, reason="abandoned")

        assert archived.status == StrategyStatus.ARCHIVED
        assert (await repository.get_topic(tid)).active_version == 1
        entry = await engine.audit_log.latest(tid)
        assert entry.kind == TransitionKind.ARCHIVE

    @pytest.mark.asyncio
    async def test_cannot_archive_active(self, engine, active_topic):
        with pytest.raises(InvalidTransitionError):
            await engine.rollout.archive(active_topic.topic_id, 1)

    @pytest.mark.asyncio
    async def test_archived_is_terminal(self, engine, active_topic):
        tid = active_topic.topic_id
        await engine.rollout.create_candidate(tid, StrategyConfig().evolve(model="gpt-4o"), 1)
        await engine.rollout.archive(tid, 2)

        with pytest.raises(InvalidTransitionError):
            await engine.rollout.archive(tid, 2)
        with pytest.raises(InvalidTransitionError):
            await engine.rollout.update_rollout(tid, 2, 50)

    @pytest.mark.asyncio
    async def test_update_rollout(self, engine, active_topic):
        tid = active_topic.topic_id
        created = await engine.rollout.create_candidate(
            tid, StrategyConfig().evolve(model="gpt-4o"), 1, rollout_percentage=10
        )
        assert created.rollout_percentage == 10

        updated = await engine.rollout.update_rollout(tid, 2, 50)

        assert updated.rollout_percentage == 50
        assert updated.status == StrategyStatus.CANDIDATE
        entry = await engine.audit_log.latest(tid)
        assert entry.kind == TransitionKind.ROLLOUT
        assert entry.changes["rollout_percentage"] == {"before": 10, "after": 50}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("percentage", [-1, 101])
    async def test_update_rollout_range(self, engine, active_topic, percentage):
        tid = active_topic.topic_id
        await engine.rollout.create_candidate(tid, StrategyConfig().evolve(model="gpt-4o"), 1)

        with pytest.raises(ValueError):
            await engine.rollout.update_rollout(tid, 2, percentage)

    @pytest.mark.asyncio
    async def test_update_rollout_rejects_active(self, engine, active_topic):
        with pytest.raises(InvalidTransitionError):
            await engine.rollout.update_rollout(active_topic.topic_id, 1, 50)


class TestBootstrapAndRollback:
    @pytest.mark.asyncio
    async def test_bootstrap(self, engine, repository, topic):
        version = await engine.rollout.bootstrap(topic.topic_id)

        assert version.version == 1
        assert version.status == StrategyStatus.ACTIVE
        assert (await repository.get_topic(topic.topic_id)).active_version == 1
        entry = await engine.audit_log.latest(topic.topic_id)
        assert entry.kind == TransitionKind.BOOTSTRAP
        assert entry.from_version is None
        assert entry.to_version == 1

    @pytest.mark.asyncio
    async def test_bootstrap_twice_rejected(self, engine, active_topic):
        with pytest.raises(InvalidTransitionError):
            await engine.rollout.bootstrap(active_topic.topic_id)

    @pytest.mark.asyncio
    async def test_rollback_restores_parent_config(self, engine, repository, active_topic):
        tid = active_topic.topic_id
        deep = StrategyConfig().evolve(search_depth="deep")
        await engine.rollout.create_candidate(tid, deep, 1)
        await engine.rollout.promote(tid, 2)

        restored = await engine.rollout.rollback(tid, reason="regressed")

        assert restored.version == 3
        assert restored.parent_version == 2
        assert restored.status == StrategyStatus.ACTIVE
        config = engine.config_store.load_config(restored)
        assert config.search_depth == "standard"
        assert (await repository.get_version(tid, 2)).status == StrategyStatus.ARCHIVED
        entry = await engine.audit_log.latest(tid)
        assert entry.kind == TransitionKind.ROLLBACK
        assert entry.reason == "regressed"

    @pytest.mark.asyncio
    async def test_rollback_without_parent(self, engine, active_topic):
        with pytest.raises(NotFoundError):
            await engine.rollout.rollback(active_topic.topic_id)

    @pytest.mark.asyncio
    async def test_rollback_without_active(self, engine, topic):
        with pytest.raises(NotFoundError):
            await engine.rollout.rollback(topic.topic_id)

    @pytest.mark.asyncio
    async def test_repeated_rollback_walks_back_the_lineage(self, engine, repository, active_topic):
        """v1 default -> v2 deep -> v3 deep+gpt-4o; rolling back twice must not return to v3."""
        tid = active_topic.topic_id
        deep = StrategyConfig().evolve(search_depth="deep")
        await engine.rollout.create_candidate(tid, deep, 1)
        await engine.rollout.promote(tid, 2)
        await engine.rollout.create_candidate(tid, deep.evolve(model="gpt-4o"), 2)
        await engine.rollout.promote(tid, 3)

        first = await engine.rollout.rollback(tid)
        second = await engine.rollout.rollback(tid)

        assert (first.version, first.restored_from) == (4, 2)
        assert (second.version, second.restored_from) == (5, 1)
        assert second.parent_version == 4
        first_config = engine.config_store.load_config(first)
        second_config = engine.config_store.load_config(second)
        assert (first_config.search_depth, first_config.model) == ("deep", "gpt-4o-mini")
        assert second_config.search_depth == "standard"
        entry = await engine.audit_log.latest(tid)
        assert entry.changes["restored_from"] == 1
        assert entry.reason == "Rolled back to config of v1"
        await _assert_single_active(repository, tid)

        with pytest.raises(NotFoundError):
            await engine.rollout.rollback(tid)
        assert (await repository.get_topic(tid)).active_version == 5

    @pytest.mark.asyncio
    async def test_bootstrap_and_rollback_write_log_with_versions(self, topic):
        """A failed log write leaves neither the version nor its log entry behind."""
        repo = FlakyLogRepository()
        engine = StrategyEngine.create(repo, attach=False)
        await repo.create_topic(topic)
        tid = topic.topic_id

        repo.failures_left = 1
        with pytest.raises(TransientStoreError):
            await engine.rollout.bootstrap(tid)
        assert await repo.list_versions(tid) == []
        assert await repo.list_log_entries(tid) == []

        await engine.rollout.bootstrap(tid)
        await engine.rollout.create_candidate(tid, StrategyConfig().evolve(model="gpt-4o"), 1)
        await engine.rollout.promote(tid, 2)

        repo.failures_left = 1
        with pytest.raises(TransientStoreError):
            await engine.rollout.rollback(tid)
        assert [v.version for v in await repo.list_versions(tid)] == [1, 2]
        assert (await repo.get_topic(tid)).active_version == 2
        kinds = [e.kind for e in await repo.list_log_entries(tid)]
        assert kinds == [TransitionKind.BOOTSTRAP, TransitionKind.PROMOTION]
