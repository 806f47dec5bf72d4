"""
Storage Layer Tests

Append-only semantics for both backends; the file backend must rebuild
the same state from its JSONL files.
"""

import threading

import pytest

from ruleset_engine.contracts.base import ErrorCode, PersistenceError, Scope, Timestamp
from ruleset_engine.contracts.events import (
    CompsCandidate, CompsRecord, ProjectSettings, TargetKey,
)
from ruleset_engine.lanes.policy import lookup_lane
from ruleset_engine.resolution import resolve
from ruleset_engine.storage import (
    FileStorageBackend, InMemoryStorageBackend, RulesetStorageEngine, StorageConfig,
)

from .fixtures import (
    BPM_TARGET, CANDIDATES, FEATURE, PROJECT, SESSION, comps_pacing, target_bpm_batch,
)


def _profile(target=None):
    batches = [target_bpm_batch(1, target)] if target is not None else []
    return resolve(lookup_lane(FEATURE), None, batches, [], project_id=PROJECT)


def _comps_record():
    return CompsRecord(
        project_id=PROJECT,
        lane=FEATURE,
        candidates=tuple(CompsCandidate.from_dict(c) for c in CANDIDATES),
        suggestion=comps_pacing(2.5),
        recorded_at=Timestamp.now()
    )


@pytest.fixture(params=["memory", "file"])
def storage(request, tmp_path):
    if request.param == "file":
        return RulesetStorageEngine(StorageConfig(backend_type="file", storage_dir=str(tmp_path)))
    return RulesetStorageEngine()


class TestProfiles:

    def test_publication_assigns_versions_and_parents(self, storage):
        first, _ = storage.publish_profile(_profile())
        second, result = storage.publish_profile(_profile(3.0))

        assert result.success
        assert (first.version, first.parent_id) == (1, None)
        assert (second.version, second.parent_id) == (2, first.id)
        assert storage.latest_profile(PROJECT, FEATURE).revision_key == second.revision_key

    def test_history_is_append_only(self, storage):
        storage.publish_profile(_profile())
        storage.publish_profile(_profile())
        history = storage.profile_history(PROJECT, FEATURE)

        assert [p.version for p in history] == [1, 2]
        assert history[0].id == history[1].id
        assert history[0].revision_key != history[1].revision_key

    def test_unknown_project_has_no_profile(self, storage):
        assert storage.latest_profile("nobody", FEATURE) is None
        assert storage.profile_history("nobody", FEATURE) == []


class TestOverrideBatches:

    def test_newer_token_accepted_older_refused(self, storage):
        assert storage.store_override_batch(target_bpm_batch(2, 3.0)).success

        stale = storage.store_override_batch(target_bpm_batch(1, 2.5))
        assert not stale.success
        assert stale.stale
        assert [b.token for b in storage.override_batches(PROJECT, FEATURE)] == [2]

    def test_high_water_mark_per_target(self, storage):
        storage.store_override_batch(target_bpm_batch(5, 3.0))
        assert storage.high_water_mark(TargetKey(PROJECT, FEATURE, "pacing_profile")) == 5
        assert storage.high_water_mark(TargetKey(PROJECT, FEATURE, "budgets")) == 0

    def test_run_scope_is_never_persisted(self, storage):
        batch = target_bpm_batch(1, 3.0, scope=Scope.RUN, session_id=SESSION)
        with pytest.raises(PersistenceError):
            storage.store_override_batch(batch)


class TestCompsAndSettings:

    def test_settings_default_when_absent(self, storage):
        assert storage.settings(PROJECT, FEATURE) == ProjectSettings()

    def test_latest_settings_win(self, storage):
        storage.store_settings(PROJECT, FEATURE, ProjectSettings(lock_ruleset=True))
        storage.store_settings(PROJECT, FEATURE, ProjectSettings(bypass_clamps=True))
        assert storage.settings(PROJECT, FEATURE) == ProjectSettings(bypass_clamps=True)

    def test_comps_round_trip(self, storage):
        storage.store_comps(_comps_record())
        stored = storage.comps(PROJECT, FEATURE)

        assert [c.title for c in stored.candidates] == ["Succession", "Industry"]
        assert stored.suggestion.to_partial() == comps_pacing(2.5).to_partial()

    def test_writes_are_audited(self, storage):
        storage.publish_profile(_profile())
        storage.store_override_batch(target_bpm_batch(1, 3.0))
        actions = [e.action for e in storage.get_audit_log()]

        assert actions == ["profile_published", "override_batch_stored"]
        assert all(e.layer == "storage" for e in storage.get_audit_log())


class TestFileBackendRecovery:

    def test_state_is_rebuilt_from_files(self, tmp_path):
        first = FileStorageBackend(str(tmp_path))
        engine = RulesetStorageEngine(backend=first)
        published, _ = engine.publish_profile(_profile(3.0))
        engine.store_override_batch(target_bpm_batch(4, 3.0))
        engine.store_comps(_comps_record())
        engine.store_settings(PROJECT, FEATURE, ProjectSettings(pacing_feel="punchy"))

        reopened = RulesetStorageEngine(backend=FileStorageBackend(str(tmp_path)))
        latest = reopened.latest_profile(PROJECT, FEATURE)

        assert latest.revision_key == published.revision_key
        assert latest.rules == published.rules
        assert latest.rules.get(BPM_TARGET) == 3.0
        assert latest.provenance == published.provenance
        assert reopened.high_water_mark(TargetKey(PROJECT, FEATURE, "pacing_profile")) == 4
        assert reopened.comps(PROJECT, FEATURE).suggestion.titles == ("Succession", "Industry")
        assert reopened.settings(PROJECT, FEATURE).pacing_feel == "punchy"

    def test_stale_batch_not_appended_to_file(self, tmp_path):
        backend = FileStorageBackend(str(tmp_path))
        backend.write_override_batch(target_bpm_batch(2, 3.0))
        backend.write_override_batch(target_bpm_batch(1, 2.5))

        lines = (tmp_path / "overrides.jsonl").read_text().strip().split("\n")
        assert len(lines) == 1

    def test_memory_backend_is_default(self):
        assert isinstance(RulesetStorageEngine().backend, InMemoryStorageBackend)
        assert not isinstance(RulesetStorageEngine().backend, FileStorageBackend)


class _PausingFileBackend(FileStorageBackend):
    """Holds the durable append of one token until the test releases it."""

    def __init__(self, storage_dir: str, pause_token: int):
        super().__init__(storage_dir)
        self.pause_token = pause_token
        self.appending = threading.Event()
        self.resume = threading.Event()

    def _append_line(self, path, record):
        if record.get("token") == self.pause_token:
            self.appending.set()
            self.resume.wait(timeout=5)
        super()._append_line(path, record)


class TestConcurrentFileWrites:

    def test_check_append_and_index_are_one_step(self, tmp_path):
        backend = _PausingFileBackend(str(tmp_path), pause_token=5)
        results = {}

        def write(token, value):
            results[token] = backend.write_override_batch(target_bpm_batch(token, value))

        older = threading.Thread(target=write, args=(5, 3.0))
        older.start()
        assert backend.appending.wait(timeout=5)

        newer = threading.Thread(target=write, args=(6, 3.5))
        newer.start()
        newer.join(timeout=0.2)
        assert newer.is_alive()

        backend.resume.set()
        older.join(timeout=5)
        newer.join(timeout=5)

        assert results[5].success and results[6].success
        live = [b.token for b in backend.get_override_batches(PROJECT, FEATURE)]
        reopened = FileStorageBackend(str(tmp_path))
        assert live == [5, 6]
        assert [b.token for b in reopened.get_override_batches(PROJECT, FEATURE)] == live

    def test_concurrent_writers_agree_with_file(self, tmp_path):
        backend = FileStorageBackend(str(tmp_path))
        threads = [
            threading.Thread(
                target=backend.write_override_batch, args=(target_bpm_batch(token, 3.0),)
            )
            for token in range(1, 21)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        live = [b.token for b in backend.get_override_batches(PROJECT, FEATURE)]
        reopened = FileStorageBackend(str(tmp_path))
        assert live == sorted(live)
        assert [b.token for b in reopened.get_override_batches(PROJECT, FEATURE)] == live


class TestAbandonedBatches:

    def test_abandoned_batch_is_refused(self, storage):
        batch = target_bpm_batch(1, 3.0)
        assert storage.abandon_override_batch(batch)

        result = storage.store_override_batch(batch)
        assert not result.success
        assert result.error.code is ErrorCode.WRITE_TIMEOUT
        assert storage.override_batches(PROJECT, FEATURE) == []
        assert storage.high_water_mark(TargetKey(PROJECT, FEATURE, "pacing_profile")) == 0

    def test_committed_batch_cannot_be_abandoned(self, storage):
        batch = target_bpm_batch(1, 3.0)
        storage.store_override_batch(batch)

        assert not storage.abandon_override_batch(batch)
        assert [b.token for b in storage.override_batches(PROJECT, FEATURE)] == [1]
