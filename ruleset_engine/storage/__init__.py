"""
Ruleset Storage Layer

RESPONSIBILITY: Append-only persistence of engine profiles, project-default
override batches, comps inputs and project settings
ALLOWED INPUTS: Immutable contract records
OUTPUTS: StorageWriteResult, stored records, profile history

WHAT THIS LAYER MUST NOT DO:
============================
- Resolve, clamp or interpret rulesets
- Modify or delete stored records (append-only; "current" = latest)
- Persist run-scoped overrides (those live in the session store only)
- Accept an override batch whose token is not newer than the target's
  committed high-water mark

BOUNDARY ENFORCEMENT:
=====================
- Reads return the stored immutable records
- Stale tokens are refused with StorageWriteResult(success=False, stale=True)
- Abandoned batches (timed out at the writer) are refused, never appended
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple
import hashlib
import json
import os
import threading

from ..contracts.base import Timestamp, Error, ErrorCode, PersistenceError, Scope
from ..contracts.events import (
    EngineProfile, OverrideBatch, CompsRecord, ProjectSettings, TargetKey,
    StorageWriteResult, AuditLogEntry, AuditEventType,
)

ProjectLane = Tuple[str, str]


def _stale_result(key: TargetKey, token: int, high_water: int) -> StorageWriteResult:
    return StorageWriteResult(
        success=False,
        stale=True,
        error=Error(
            code=ErrorCode.PERSISTENCE_FAILED,
            message=f"Token {token} for {key} is not newer than committed token {high_water}",
            timestamp=Timestamp.now().value,
            context=(("target", str(key)), ("token", str(token)))
        )
    )


def _abandoned_result(batch: OverrideBatch) -> StorageWriteResult:
    return StorageWriteResult(
        success=False,
        error=Error(
            code=ErrorCode.WRITE_TIMEOUT,
            message=f"Batch {batch.batch_id} was abandoned after a write timeout",
            timestamp=Timestamp.now().value,
            context=(("batch_id", batch.batch_id), ("target", batch.target))
        )
    )


def _key_for(batch: OverrideBatch) -> TargetKey:
    return TargetKey(batch.project_id, batch.lane, batch.target)


# =============================================================================
# STORAGE INTERFACES (Dependency Inversion)
# =============================================================================

class StorageBackend:
    """
    Abstract storage backend interface.

    Implementations can use different storage systems (memory, file, database)
    while maintaining the same append-only semantics.
    """

    def write_profile(self, profile: EngineProfile) -> StorageWriteResult:
        """Append a published profile."""
        raise NotImplementedError

    def get_latest_profile(self, project_id: str, lane: str) -> Optional[EngineProfile]:
        raise NotImplementedError

    def get_profile_history(self, project_id: str, lane: str) -> List[EngineProfile]:
        """All published profiles for (project, lane), oldest first."""
        raise NotImplementedError

    def write_override_batch(self, batch: OverrideBatch) -> StorageWriteResult:
        """Append a project-default batch if its token beats the high-water mark."""
        raise NotImplementedError

    def get_override_batches(self, project_id: str, lane: str) -> List[OverrideBatch]:
        """Committed project-default batches in commit order."""
        raise NotImplementedError

    def abandon_override_batch(self, batch_id: str) -> bool:
        """
        Refuse any later write of `batch_id`.

        Returns False if the batch was already committed.
        """
        raise NotImplementedError

    def high_water_mark(self, key: TargetKey) -> int:
        raise NotImplementedError

    def write_comps(self, record: CompsRecord) -> StorageWriteResult:
        raise NotImplementedError

    def get_comps(self, project_id: str, lane: str) -> Optional[CompsRecord]:
        raise NotImplementedError

    def write_settings(self, project_id: str, lane: str, settings: ProjectSettings) -> StorageWriteResult:
        raise NotImplementedError

    def get_settings(self, project_id: str, lane: str) -> Optional[ProjectSettings]:
        raise NotImplementedError


# =============================================================================
# IN-MEMORY STORAGE BACKEND (Reference Implementation)
# =============================================================================

class InMemoryStorageBackend(StorageBackend):
    """
    In-memory implementation of storage backend.

    Uses append-only data structures. No mutation of stored records.
    Suitable for testing and small-scale deployments.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._profiles: Dict[ProjectLane, List[EngineProfile]] = {}
        self._batches: Dict[ProjectLane, List[OverrideBatch]] = {}
        self._high_water: Dict[TargetKey, int] = {}
        self._committed_ids: Set[str] = set()
        self._abandoned_ids: Set[str] = set()
        self._comps: Dict[ProjectLane, List[CompsRecord]] = {}
        self._settings: Dict[ProjectLane, List[ProjectSettings]] = {}
        self._write_sequence: int = 0

    def write_profile(self, profile: EngineProfile) -> StorageWriteResult:
        with self._lock:
            self._profiles.setdefault((profile.project_id or "", profile.lane), []).append(profile)
            self._write_sequence += 1
        return StorageWriteResult(
            success=True, record_id=profile.revision_key, write_timestamp=Timestamp.now()
        )

    def get_latest_profile(self, project_id: str, lane: str) -> Optional[EngineProfile]:
        history = self._profiles.get((project_id, lane), [])
        return history[-1] if history else None

    def get_profile_history(self, project_id: str, lane: str) -> List[EngineProfile]:
        return list(self._profiles.get((project_id, lane), []))

    def write_override_batch(self, batch: OverrideBatch) -> StorageWriteResult:
        return self._index_override(batch)

    def _index_override(
        self,
        batch: OverrideBatch,
        persist: Optional[Callable[[OverrideBatch], None]] = None
    ) -> StorageWriteResult:
        """
        Check and append one batch under the backend lock.

        `persist` runs inside the same critical section, after every
        refusal check and before the batch becomes visible.
        """
        key = _key_for(batch)
        with self._lock:
            if batch.batch_id in self._abandoned_ids:
                return _abandoned_result(batch)
            high_water = self._high_water.get(key, 0)
            if batch.token <= high_water:
                return _stale_result(key, batch.token, high_water)
            if persist is not None:
                persist(batch)
            self._batches.setdefault((batch.project_id, batch.lane), []).append(batch)
            self._high_water[key] = batch.token
            self._committed_ids.add(batch.batch_id)
            self._write_sequence += 1
        return StorageWriteResult(
            success=True, record_id=batch.batch_id, write_timestamp=Timestamp.now()
        )

    def abandon_override_batch(self, batch_id: str) -> bool:
        with self._lock:
            if batch_id in self._committed_ids:
                return False
            self._abandoned_ids.add(batch_id)
        return True

    def get_override_batches(self, project_id: str, lane: str) -> List[OverrideBatch]:
        return list(self._batches.get((project_id, lane), []))

    def high_water_mark(self, key: TargetKey) -> int:
        return self._high_water.get(key, 0)

    def write_comps(self, record: CompsRecord) -> StorageWriteResult:
        with self._lock:
            self._comps.setdefault((record.project_id, record.lane), []).append(record)
            self._write_sequence += 1
        return StorageWriteResult(success=True, write_timestamp=Timestamp.now())

    def get_comps(self, project_id: str, lane: str) -> Optional[CompsRecord]:
        records = self._comps.get((project_id, lane), [])
        return records[-1] if records else None

    def write_settings(self, project_id: str, lane: str, settings: ProjectSettings) -> StorageWriteResult:
        with self._lock:
            self._settings.setdefault((project_id, lane), []).append(settings)
            self._write_sequence += 1
        return StorageWriteResult(success=True, write_timestamp=Timestamp.now())

    def get_settings(self, project_id: str, lane: str) -> Optional[ProjectSettings]:
        records = self._settings.get((project_id, lane), [])
        return records[-1] if records else None


# =============================================================================
# FILE-BASED STORAGE BACKEND
# =============================================================================

class FileStorageBackend(InMemoryStorageBackend):
    """
    File-based implementation of storage backend.

    Uses append-only JSONL files, one per record kind. In-memory indices
    are rebuilt from the files on start-up, so reads never touch disk.
    """

    def __init__(self, storage_dir: str):
        super().__init__()
        self._storage_dir = storage_dir
        self._profiles_file = os.path.join(storage_dir, "profiles.jsonl")
        self._overrides_file = os.path.join(storage_dir, "overrides.jsonl")
        self._comps_file = os.path.join(storage_dir, "comps.jsonl")
        self._settings_file = os.path.join(storage_dir, "settings.jsonl")

        os.makedirs(storage_dir, exist_ok=True)
        self._rebuild_indices()

    @staticmethod
    def _read_lines(path: str) -> List[dict]:
        if not os.path.exists(path):
            return []
        records = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    records.append(json.loads(line))
        return records

    def _append_line(self, path: str, record: dict):
        try:
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            raise PersistenceError(
                f"Failed to append to {os.path.basename(path)}: {exc}",
                context=(("path", path),)
            ) from exc

    def _rebuild_indices(self):
        """Rebuild in-memory indices from storage files."""
        for data in self._read_lines(self._profiles_file):
            InMemoryStorageBackend.write_profile(self, EngineProfile.from_dict(data))
        for data in self._read_lines(self._overrides_file):
            self._index_override(OverrideBatch.from_dict(data))
        for data in self._read_lines(self._comps_file):
            InMemoryStorageBackend.write_comps(self, CompsRecord.from_dict(data))
        for data in self._read_lines(self._settings_file):
            InMemoryStorageBackend.write_settings(
                self, data["project_id"], data["lane"], ProjectSettings.from_dict(data["settings"])
            )

    def write_profile(self, profile: EngineProfile) -> StorageWriteResult:
        self._append_line(self._profiles_file, profile.to_dict())
        return super().write_profile(profile)

    def write_override_batch(self, batch: OverrideBatch) -> StorageWriteResult:
        return self._index_override(
            batch, persist=lambda b: self._append_line(self._overrides_file, b.to_dict())
        )

    def write_comps(self, record: CompsRecord) -> StorageWriteResult:
        self._append_line(self._comps_file, record.to_dict())
        return super().write_comps(record)

    def write_settings(self, project_id: str, lane: str, settings: ProjectSettings) -> StorageWriteResult:
        self._append_line(self._settings_file, {
            "project_id": project_id,
            "lane": lane,
            "settings": settings.to_dict(),
        })
        return super().write_settings(project_id, lane, settings)


# =============================================================================
# RULESET STORAGE ENGINE (Orchestrates storage operations)
# =============================================================================

@dataclass
class StorageConfig:
    """Configuration for ruleset storage."""
    backend_type: str = "memory"  # "memory" or "file"
    storage_dir: Optional[str] = None


class RulesetStorageEngine:
    """
    Ruleset Storage Engine.

    BOUNDARY ENFORCEMENT:
    - ONLY performs append operations
    - Assigns profile versions and parent links at publication
    - Maintains an audit trail of every write
    """

    def __init__(self, config: Optional[StorageConfig] = None, backend: Optional[StorageBackend] = None):
        self._config = config or StorageConfig()
        self._backend = backend or self._create_backend()
        self._audit_log: List[AuditLogEntry] = []

    def _create_backend(self) -> StorageBackend:
        """Create storage backend based on configuration."""
        if self._config.backend_type == "file" and self._config.storage_dir:
            return FileStorageBackend(self._config.storage_dir)
        return InMemoryStorageBackend()

    # -------------------------------------------------------------------------
    # Profiles
    # -------------------------------------------------------------------------

    def publish_profile(self, profile: EngineProfile) -> Tuple[EngineProfile, StorageWriteResult]:
        """Stamp version/parent onto a resolved profile and append it."""
        project_id = profile.project_id or ""
        latest = self._backend.get_latest_profile(project_id, profile.lane)
        published = profile.with_publication(
            version=(latest.version + 1) if latest else 1,
            parent_id=latest.id if latest else None
        )
        result = self._backend.write_profile(published)
        if result.success:
            self._log_audit(
                action="profile_published",
                entity_id=published.revision_key,
                metadata=(
                    ("project_id", project_id),
                    ("lane", published.lane),
                    ("version", str(published.version)),
                )
            )
        return published, result

    def latest_profile(self, project_id: str, lane: str) -> Optional[EngineProfile]:
        return self._backend.get_latest_profile(project_id, lane)

    def profile_history(self, project_id: str, lane: str) -> List[EngineProfile]:
        return self._backend.get_profile_history(project_id, lane)

    # -------------------------------------------------------------------------
    # Project-default overrides
    # -------------------------------------------------------------------------

    def store_override_batch(self, batch: OverrideBatch) -> StorageWriteResult:
        if batch.scope is not Scope.PROJECT_DEFAULT:
            raise PersistenceError(
                "Only project_default batches are persisted",
                context=(("batch_id", batch.batch_id), ("scope", batch.scope.value))
            )
        result = self._backend.write_override_batch(batch)
        self._log_audit(
            action="override_batch_stored" if result.success else "override_batch_refused",
            entity_id=batch.batch_id,
            metadata=(("target", batch.target), ("token", str(batch.token)))
        )
        return result

    def abandon_override_batch(self, batch: OverrideBatch) -> bool:
        """Mark a timed-out batch so a late worker cannot commit it."""
        abandoned = self._backend.abandon_override_batch(batch.batch_id)
        self._log_audit(
            action="override_batch_abandoned" if abandoned else "override_batch_landed_late",
            entity_id=batch.batch_id,
            metadata=(("target", batch.target), ("token", str(batch.token)))
        )
        return abandoned

    def override_batches(self, project_id: str, lane: str) -> List[OverrideBatch]:
        return self._backend.get_override_batches(project_id, lane)

    def high_water_mark(self, key: TargetKey) -> int:
        return self._backend.high_water_mark(key)

    # -------------------------------------------------------------------------
    # Comps & settings
    # -------------------------------------------------------------------------

    def store_comps(self, record: CompsRecord) -> StorageWriteResult:
        result = self._backend.write_comps(record)
        self._log_audit(
            action="comps_stored",
            entity_id=f"{record.project_id}/{record.lane}",
            metadata=(("candidates", str(len(record.candidates))),)
        )
        return result

    def comps(self, project_id: str, lane: str) -> Optional[CompsRecord]:
        return self._backend.get_comps(project_id, lane)

    def store_settings(self, project_id: str, lane: str, settings: ProjectSettings) -> StorageWriteResult:
        result = self._backend.write_settings(project_id, lane, settings)
        self._log_audit(
            action="settings_stored",
            entity_id=f"{project_id}/{lane}",
            metadata=tuple((k, str(v)) for k, v in settings.to_dict().items())
        )
        return result

    def settings(self, project_id: str, lane: str) -> ProjectSettings:
        return self._backend.get_settings(project_id, lane) or ProjectSettings()

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    def _log_audit(
        self,
        action: str,
        entity_id: Optional[str] = None,
        metadata: tuple = ()
    ):
        """Add entry to internal audit log."""
        entry_id = hashlib.sha256(
            f"storage_{action}|{len(self._audit_log)}|{Timestamp.now().value.timestamp()}".encode()
        ).hexdigest()[:16]

        entry = AuditLogEntry(
            entry_id=f"audit_{entry_id}",
            event_type=AuditEventType.WRITE,
            timestamp=Timestamp.now(),
            layer="storage",
            action=action,
            entity_id=entity_id,
            metadata=metadata
        )
        self._audit_log.append(entry)

    def get_audit_log(self) -> List[AuditLogEntry]:
        """Return copy of audit log entries."""
        return list(self._audit_log)

    @property
    def backend(self) -> StorageBackend:
        """Access to the underlying storage backend."""
        return self._backend
