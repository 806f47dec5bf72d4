"""
Scope & Persistence Coordinator

RESPONSIBILITY: Route override writes to run or project_default scope and
guarantee newest-token-wins per write target
ALLOWED INPUTS: OverrideBatch (already validated), lock flag
OUTPUTS: WriteOutcome

STATE MACHINE (per target key = project, lane, logical target):
===============================================================
idle -> writing -> committed
                -> failed

WHAT THIS LAYER MUST NOT DO:
============================
- Promote run-scoped writes to durable storage
- Let a superseded request clear the in-flight state of its target
- Touch committed state when a write fails
- Resolve or clamp rulesets (the engine does that on commit)

BOUNDARY ENFORCEMENT:
=====================
- Durable writes go through StorageWriter, the only async I/O boundary,
  which owns the write timeout
- Durable and session stores refuse tokens at or below the committed
  high-water mark of the target
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
import asyncio
import hashlib
import threading
import time

from ..contracts.base import (
    Timestamp, Error, ErrorCode, Scope, PersistenceError, WriteTimeout,
)
from ..contracts.events import (
    OverrideBatch, TargetKey, TargetState, WriteStatus, WriteOutcome,
    StorageWriteResult, AuditLogEntry, AuditEventType,
)
from ..storage import RulesetStorageEngine


# =============================================================================
# SESSION STORE (run scope, memory only)
# =============================================================================

class SessionOverrideStore:
    """
    Run-scoped override batches, keyed by session.

    Nothing here is ever persisted; ending a session drops its batches.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._batches: Dict[str, List[OverrideBatch]] = {}
        self._high_water: Dict[Tuple[str, TargetKey], int] = {}

    def write(self, batch: OverrideBatch) -> StorageWriteResult:
        session_id = batch.session_id or ""
        key = TargetKey(batch.project_id, batch.lane, batch.target)
        with self._lock:
            high_water = self._high_water.get((session_id, key), 0)
            if batch.token <= high_water:
                return StorageWriteResult(success=False, stale=True)
            self._batches.setdefault(session_id, []).append(batch)
            self._high_water[(session_id, key)] = batch.token
        return StorageWriteResult(
            success=True, record_id=batch.batch_id, write_timestamp=Timestamp.now()
        )

    def batches(self, session_id: str, project_id: str, lane: str) -> List[OverrideBatch]:
        return [
            b for b in self._batches.get(session_id, [])
            if b.project_id == project_id and b.lane == lane
        ]

    def has_session(self, session_id: str) -> bool:
        return session_id in self._batches

    def end_session(self, session_id: str) -> int:
        """Drop a session; returns the number of batches discarded."""
        with self._lock:
            dropped = self._batches.pop(session_id, [])
            for key in [k for k in self._high_water if k[0] == session_id]:
                del self._high_water[key]
        return len(dropped)

    def sessions(self) -> List[str]:
        return sorted(self._batches)


# =============================================================================
# STORAGE WRITER (async I/O boundary)
# =============================================================================

class StorageWriter:
    """
    Async wrapper around the synchronous storage engine.

    The blocking write runs in a worker thread; a write that does not
    settle within `timeout_seconds` raises WriteTimeout. The worker thread
    cannot be cancelled, so on timeout the batch is abandoned in the store:
    either the late worker is refused, or the batch had already committed
    and the write is reported as successful.
    """

    def __init__(self, storage: RulesetStorageEngine, timeout_seconds: float = 5.0):
        self._storage = storage
        self._timeout = timeout_seconds

    async def write_batch(self, batch: OverrideBatch) -> StorageWriteResult:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._storage.store_override_batch, batch),
                timeout=self._timeout
            )
        except asyncio.TimeoutError:
            abandoned = await asyncio.to_thread(self._storage.abandon_override_batch, batch)
            if not abandoned:
                return StorageWriteResult(
                    success=True, record_id=batch.batch_id, write_timestamp=Timestamp.now()
                )
            raise WriteTimeout(
                f"Durable write timed out after {self._timeout}s",
                context=(("batch_id", batch.batch_id), ("target", batch.target))
            ) from None

    def high_water_mark(self, key: TargetKey) -> int:
        return self._storage.high_water_mark(key)


# =============================================================================
# COORDINATOR
# =============================================================================

@dataclass
class CoordinatorConfig:
    """Configuration for the scope coordinator."""
    write_timeout_seconds: float = 5.0


@dataclass
class _TargetRecord:
    state: TargetState = TargetState.IDLE
    latest_token: int = 0
    committed_token: int = 0


class ScopeCoordinator:
    """
    Token-guarded write coordinator.

    GUARANTEES:
    ===========
    1. Tokens issued here are strictly increasing
    2. Only the latest token of a target settles its state
    3. A completion refused by the store as stale, or a failure of a
       superseded request, reports DISCARDED_STALE and changes nothing
    4. project_default writes under lock report SKIPPED_LOCKED and
       change nothing
    """

    def __init__(
        self,
        writer: StorageWriter,
        sessions: Optional[SessionOverrideStore] = None,
        config: Optional[CoordinatorConfig] = None
    ):
        self._writer = writer
        self._sessions = sessions or SessionOverrideStore()
        self._config = config or CoordinatorConfig()
        self._targets: Dict[TargetKey, _TargetRecord] = {}
        self._counter = 0
        self._audit_log: List[AuditLogEntry] = []

    # -------------------------------------------------------------------------
    # Tokens & state
    # -------------------------------------------------------------------------

    def issue_token(self, key: TargetKey) -> int:
        """Next token, above anything issued or committed for this target."""
        self._counter = max(self._counter, self._writer.high_water_mark(key)) + 1
        return self._counter

    def state(self, key: TargetKey) -> TargetState:
        record = self._targets.get(key)
        return record.state if record else TargetState.IDLE

    def latest_token(self, key: TargetKey) -> int:
        record = self._targets.get(key)
        return record.latest_token if record else 0

    @property
    def sessions(self) -> SessionOverrideStore:
        return self._sessions

    # -------------------------------------------------------------------------
    # Submit
    # -------------------------------------------------------------------------

    async def submit(self, batch: OverrideBatch, locked: bool = False) -> WriteOutcome:
        key = TargetKey(batch.project_id, batch.lane, batch.target)

        if batch.scope is Scope.PROJECT_DEFAULT and locked:
            self._log_audit("write_skipped_locked", batch, (("token", str(batch.token)),))
            return WriteOutcome(
                status=WriteStatus.SKIPPED_LOCKED,
                key=key,
                token=batch.token,
                scope=batch.scope,
                batch_id=batch.batch_id,
                error=Error(
                    code=ErrorCode.RULESET_LOCKED,
                    message="Ruleset is locked; project_default write skipped",
                    timestamp=Timestamp.now().value,
                    context=(("target", str(key)),)
                )
            )

        record = self._targets.setdefault(key, _TargetRecord())
        self._counter = max(self._counter, batch.token)
        record.latest_token = max(record.latest_token, batch.token)
        record.state = TargetState.WRITING
        self._log_audit("write_started", batch, (("token", str(batch.token)),))

        started = time.perf_counter()
        error: Optional[Error] = None
        result: Optional[StorageWriteResult] = None
        try:
            if batch.scope is Scope.RUN:
                result = self._sessions.write(batch)
            else:
                result = await self._writer.write_batch(batch)
        except PersistenceError as exc:
            error = exc.to_error()
        latency_ms = (time.perf_counter() - started) * 1000.0

        is_latest = batch.token >= record.latest_token

        if result is not None and result.success:
            record.committed_token = max(record.committed_token, batch.token)
            if is_latest:
                record.state = TargetState.COMMITTED
            status = WriteStatus.COMMITTED
        elif (result is not None and result.stale) or not is_latest:
            if is_latest:
                record.state = TargetState.COMMITTED if record.committed_token else TargetState.IDLE
            status = WriteStatus.DISCARDED_STALE
            error = None
        else:
            if error is None and result is not None:
                error = result.error
            record.state = TargetState.FAILED
            status = WriteStatus.FAILED

        self._log_audit(
            f"write_{status.value}",
            batch,
            (("token", str(batch.token)), ("latency_ms", f"{latency_ms:.2f}"))
        )
        return WriteOutcome(
            status=status,
            key=key,
            token=batch.token,
            scope=batch.scope,
            batch_id=batch.batch_id,
            error=error,
            latency_ms=latency_ms
        )

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    def _log_audit(
        self,
        action: str,
        batch: OverrideBatch,
        metadata: tuple = ()
    ):
        """Add entry to internal audit log."""
        entry_id = hashlib.sha256(
            f"coordination_{action}|{batch.batch_id}|{len(self._audit_log)}".encode()
        ).hexdigest()[:16]

        entry = AuditLogEntry(
            entry_id=f"audit_{entry_id}",
            event_type=AuditEventType.STATE_CHANGE,
            timestamp=Timestamp.now(),
            layer="coordination",
            action=action,
            entity_id=batch.batch_id,
            entity_type=batch.scope.value,
            metadata=(("target", batch.target),) + tuple(metadata)
        )
        self._audit_log.append(entry)

    def get_audit_log(self) -> List[AuditLogEntry]:
        """Return copy of audit log entries."""
        return list(self._audit_log)
