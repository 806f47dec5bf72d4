"""
Scope Coordinator Tests

AXIOM UNDER TEST:
=================
Newest token wins per target. A late completion of a superseded write
never replaces the state of a newer one, and failures never touch
committed state.

Async code is driven with asyncio.run; no event-loop plugin is needed.
"""

import asyncio

import pytest

from ruleset_engine.contracts.base import ErrorCode, Scope
from ruleset_engine.contracts.events import TargetKey, TargetState, WriteStatus
from ruleset_engine.coordination import (
    CoordinatorConfig, ScopeCoordinator, SessionOverrideStore, StorageWriter,
)
from ruleset_engine.storage import InMemoryStorageBackend, RulesetStorageEngine

from .fixtures import (
    FEATURE, PROJECT, SESSION, FailingStorageBackend, GatedStorageWriter,
    SlowStorageBackend, target_bpm_batch,
)

KEY = TargetKey(PROJECT, FEATURE, "pacing_profile")


def _coordinator(backend=None, writer_cls=StorageWriter, timeout=5.0):
    storage = RulesetStorageEngine(backend=backend or InMemoryStorageBackend())
    writer = writer_cls(storage, timeout)
    return ScopeCoordinator(writer, SessionOverrideStore(), CoordinatorConfig(timeout)), writer, storage


class TestTokens:

    def test_tokens_strictly_increase(self):
        coordinator, _, _ = _coordinator()
        tokens = [coordinator.issue_token(KEY) for _ in range(5)]
        assert tokens == sorted(set(tokens))

    def test_tokens_start_above_stored_high_water(self):
        backend = InMemoryStorageBackend()
        backend.write_override_batch(target_bpm_batch(41, 3.0))
        coordinator, _, _ = _coordinator(backend)
        assert coordinator.issue_token(KEY) == 42


class TestOutOfOrderCompletion:

    def test_late_completion_of_older_write_is_discarded(self):
        """R1 then R2 issued; R2 completes first; final state reflects R2."""
        coordinator, writer, storage = _coordinator(writer_cls=GatedStorageWriter)

        async def scenario():
            r1 = target_bpm_batch(coordinator.issue_token(KEY), 3.0)
            r2 = target_bpm_batch(coordinator.issue_token(KEY), 3.5)
            t1 = asyncio.create_task(coordinator.submit(r1))
            t2 = asyncio.create_task(coordinator.submit(r2))
            await asyncio.sleep(0)

            writer.release(r2.token)
            second = await t2
            writer.release(r1.token)
            first = await t1
            return first, second

        first, second = asyncio.run(scenario())

        assert second.status is WriteStatus.COMMITTED
        assert first.status is WriteStatus.DISCARDED_STALE
        assert first.error is None
        assert writer.completed == [2, 1]
        assert coordinator.state(KEY) is TargetState.COMMITTED
        batches = storage.override_batches(PROJECT, FEATURE)
        assert [b.token for b in batches] == [2]
        assert batches[0].patches[0].value == 3.5

    def test_in_order_completion_commits_both(self):
        coordinator, _, storage = _coordinator()

        async def scenario():
            r1 = target_bpm_batch(coordinator.issue_token(KEY), 3.0)
            r2 = target_bpm_batch(coordinator.issue_token(KEY), 3.5)
            return await coordinator.submit(r1), await coordinator.submit(r2)

        first, second = asyncio.run(scenario())

        assert first.committed and second.committed
        assert [b.token for b in storage.override_batches(PROJECT, FEATURE)] == [1, 2]

    def test_state_is_writing_while_in_flight(self):
        coordinator, writer, _ = _coordinator(writer_cls=GatedStorageWriter)

        async def scenario():
            batch = target_bpm_batch(coordinator.issue_token(KEY), 3.0)
            task = asyncio.create_task(coordinator.submit(batch))
            await asyncio.sleep(0)
            during = coordinator.state(KEY)
            writer.release(batch.token)
            await task
            return during

        assert asyncio.run(scenario()) is TargetState.WRITING
        assert coordinator.state(KEY) is TargetState.COMMITTED


class TestLockAndScope:

    def test_locked_project_default_write_is_skipped(self):
        coordinator, _, storage = _coordinator()
        outcome = asyncio.run(coordinator.submit(target_bpm_batch(1, 3.0), locked=True))

        assert outcome.status is WriteStatus.SKIPPED_LOCKED
        assert outcome.error.code is ErrorCode.RULESET_LOCKED
        assert storage.override_batches(PROJECT, FEATURE) == []
        assert coordinator.state(KEY) is TargetState.IDLE

    def test_run_scope_ignores_lock_and_stays_in_session(self):
        coordinator, _, storage = _coordinator()
        batch = target_bpm_batch(1, 3.0, scope=Scope.RUN, session_id=SESSION)
        outcome = asyncio.run(coordinator.submit(batch, locked=True))

        assert outcome.committed
        assert storage.override_batches(PROJECT, FEATURE) == []
        assert coordinator.sessions.batches(SESSION, PROJECT, FEATURE) == [batch]

    def test_session_store_refuses_stale_token(self):
        sessions = SessionOverrideStore()
        assert sessions.write(target_bpm_batch(2, 3.0, scope=Scope.RUN, session_id=SESSION)).success
        stale = sessions.write(target_bpm_batch(1, 3.5, scope=Scope.RUN, session_id=SESSION))
        assert stale.stale

    def test_end_session_drops_batches(self):
        sessions = SessionOverrideStore()
        sessions.write(target_bpm_batch(1, 3.0, scope=Scope.RUN, session_id=SESSION))
        sessions.write(target_bpm_batch(2, 3.5, scope=Scope.RUN, session_id=SESSION))

        assert sessions.sessions() == [SESSION]
        assert sessions.end_session(SESSION) == 2
        assert not sessions.has_session(SESSION)
        assert sessions.batches(SESSION, PROJECT, FEATURE) == []


class TestFailures:

    def test_persistence_error_reports_failed(self):
        coordinator, _, _ = _coordinator(FailingStorageBackend())
        outcome = asyncio.run(coordinator.submit(target_bpm_batch(1, 3.0)))

        assert outcome.status is WriteStatus.FAILED
        assert outcome.error.code is ErrorCode.PERSISTENCE_FAILED
        assert coordinator.state(KEY) is TargetState.FAILED

    def test_timeout_reports_failed_with_timeout_code(self):
        coordinator, _, _ = _coordinator(SlowStorageBackend(delay=0.3), timeout=0.05)
        outcome = asyncio.run(coordinator.submit(target_bpm_batch(1, 3.0)))

        assert outcome.status is WriteStatus.FAILED
        assert outcome.error.code is ErrorCode.WRITE_TIMEOUT

    def test_timed_out_write_is_never_committed_late(self):
        """The worker outlives the timeout; the store must refuse its batch."""
        coordinator, _, storage = _coordinator(SlowStorageBackend(delay=0.3), timeout=0.05)
        batch = target_bpm_batch(1, 3.0)
        outcome = asyncio.run(coordinator.submit(batch))

        # asyncio.run returns only after the worker thread has finished
        actions = [(e.action, e.entity_id) for e in storage.get_audit_log()]
        assert ("override_batch_abandoned", batch.batch_id) in actions
        assert ("override_batch_refused", batch.batch_id) in actions

        assert outcome.status is WriteStatus.FAILED
        assert storage.override_batches(PROJECT, FEATURE) == []
        assert storage.high_water_mark(KEY) == 0

    def test_failure_of_superseded_write_is_discarded(self):
        coordinator, _, _ = _coordinator(FailingStorageBackend())

        async def scenario():
            coordinator.issue_token(KEY)
            newer = target_bpm_batch(coordinator.issue_token(KEY), 3.5)
            older = target_bpm_batch(1, 3.0)
            run_batch = target_bpm_batch(newer.token, 3.5, scope=Scope.RUN, session_id=SESSION)
            await coordinator.submit(run_batch)
            return await coordinator.submit(older)

        outcome = asyncio.run(scenario())
        assert outcome.status is WriteStatus.DISCARDED_STALE
        assert coordinator.state(KEY) is TargetState.COMMITTED

    def test_every_submission_is_audited(self):
        coordinator, _, _ = _coordinator()
        asyncio.run(coordinator.submit(target_bpm_batch(1, 3.0)))
        actions = [e.action for e in coordinator.get_audit_log()]
        assert actions == ["write_started", "write_committed"]

    @pytest.mark.parametrize("locked", [True, False])
    def test_outcome_carries_target_and_token(self, locked):
        coordinator, _, _ = _coordinator()
        outcome = asyncio.run(coordinator.submit(target_bpm_batch(7, 3.0), locked=locked))
        assert outcome.key == KEY
        assert outcome.token == 7
        assert outcome.to_dict()["target"] == f"{PROJECT}/{FEATURE}/pacing_profile"
