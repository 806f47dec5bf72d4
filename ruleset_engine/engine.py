"""
Engine Orchestration Module

This module provides the unified interface for coordinating all
layers while maintaining strict boundary separation.

DESIGN PRINCIPLES:
==================
1. Layers communicate ONLY through contracts
2. The ONLY write path is: validate -> Scope Coordinator -> Resolution
   Policy (-> Clamp) -> publish
3. All operations are traceable through observability
4. Published profiles are appended, never mutated
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .contracts.base import (
    Provenance, Scope, MalformedPatch, MissingSession, PersistenceError, Timestamp,
)
from .contracts.rules import Ruleset
from .contracts.events import (
    AuditEventType, ClampResult, CompsCandidate, CompsRecord, CompsSuggestion,
    EngineProfile, OverrideBatch, OverrideWriteRequest, OverrideWriteResponse,
    ProjectSettings, ResolutionStrategy, TargetKey, WriteStatus,
)
from .lanes.policy import DEFAULT_LANE, KnobBounds, LanePolicy, lookup_lane, lane_clamp_bounds
from .lanes.presets import PacingFeel, StyleBenchmark, preset_values
from .clamp import clamp_and_validate
from .patching import apply_patches, coerce_patches, derive_target, patch_summary
from .resolution import RecommendedPlan, plan_recommended, resolve
from .storage import RulesetStorageEngine, StorageBackend, StorageConfig
from .coordination import (
    CoordinatorConfig, ScopeCoordinator, SessionOverrideStore, StorageWriter,
)
from .observability import ObservabilityEngine, ObservabilityConfig


@dataclass
class BackendConfig:
    """Unified configuration for the entire backend."""
    storage: StorageConfig = None
    coordinator: CoordinatorConfig = None
    observability: ObservabilityConfig = None
    default_lane: str = DEFAULT_LANE

    def __post_init__(self):
        self.storage = self.storage or StorageConfig()
        self.coordinator = self.coordinator or CoordinatorConfig()
        self.observability = self.observability or ObservabilityConfig()


class RulesetBackend:
    """
    Unified backend for ruleset resolution and overrides.

    LAYER FLOW:
    ===========
    1. Lane Policy: lane id -> LanePolicy (bounds + defaults)
    2. Patch Applier: validates each override batch atomically
    3. Scope Coordinator: routes the batch to run or project_default scope
    4. Resolution Policy: merges tiers, detects conflicts, clamps
    5. Storage: appends the new EngineProfile
    6. Observability: records all layer activity

    NO WRITE BYPASSES THIS FLOW.
    """

    def __init__(
        self,
        config: Optional[BackendConfig] = None,
        storage_backend: Optional[StorageBackend] = None,
        writer: Optional[StorageWriter] = None
    ):
        self._config = config or BackendConfig()
        self._storage = RulesetStorageEngine(self._config.storage, backend=storage_backend)
        self._sessions = SessionOverrideStore()
        self._writer = writer or StorageWriter(
            self._storage, self._config.coordinator.write_timeout_seconds
        )
        self._coordinator = ScopeCoordinator(self._writer, self._sessions, self._config.coordinator)
        self._observability = ObservabilityEngine(self._config.observability)

    # =========================================================================
    # READ INTERFACE
    # =========================================================================

    def get_profile(
        self,
        project_id: str,
        lane: Optional[str] = None,
        session_id: Optional[str] = None
    ) -> EngineProfile:
        """
        Latest published profile for (project, lane).

        With a session that holds run overrides, returns the
        session-effective profile (resolved on read, never published).
        """
        policy = lookup_lane(lane or self._config.default_lane)
        if session_id and self._sessions.batches(session_id, project_id, policy.lane_id):
            return self._resolve(project_id, policy, session_id=session_id)
        latest = self._storage.latest_profile(project_id, policy.lane_id)
        if latest is None:
            latest = self._publish(self._resolve(project_id, policy))
        return latest

    def profile_history(self, project_id: str, lane: str) -> List[EngineProfile]:
        lookup_lane(lane)
        return self._storage.profile_history(project_id, lane)

    def lane_bounds(self, lane: str) -> Dict[str, KnobBounds]:
        return lane_clamp_bounds(lane)

    def settings(self, project_id: str, lane: str) -> ProjectSettings:
        lookup_lane(lane)
        return self._storage.settings(project_id, lane)

    def preview(
        self,
        candidate: Union[Ruleset, Mapping[str, Any]],
        lane: str,
        bypass: bool = False
    ) -> ClampResult:
        """Preview clamp: the same pure function the write path uses."""
        result = clamp_and_validate(candidate, lane, bypass=bypass)
        self._observability.collect_metric(
            "clamp_warnings_total", len(result.warnings), {"lane": lane}
        )
        self._observability.log_audit(
            "clamp_previewed",
            event_type=AuditEventType.CLAMP,
            layer="clamp",
            metadata=(("lane", lane), ("warnings", str(len(result.warnings))), ("bypass", str(bypass)))
        )
        return result

    # =========================================================================
    # WRITE INTERFACE
    # =========================================================================

    async def apply_override(self, request: OverrideWriteRequest) -> OverrideWriteResponse:
        """
        Validate, coordinate and publish one override batch.

        Raises UnknownLane, MalformedPatch or MissingSession before anything
        is written. Persistence failures are reported in the outcome.
        """
        policy = lookup_lane(request.lane)
        session_id = request.session_id if request.scope is Scope.RUN else None
        if request.scope is Scope.RUN and not request.session_id:
            raise MissingSession(None)

        try:
            patches = coerce_patches(request.patches)
            if not patches:
                raise MalformedPatch("Override batch contains no patches")
            current = self.get_profile(request.project_id, policy.lane_id, session_id)
            apply_patches(current.rules, patches)
        except MalformedPatch as exc:
            self._observability.collect_metric("patch_batches_rejected_total", 1)
            self._observability.log_audit(
                "override_rejected",
                event_type=AuditEventType.ERROR,
                layer="patching",
                metadata=(("project_id", request.project_id), ("reason", exc.message))
            )
            raise

        target = request.target or derive_target(patches)
        key = TargetKey(request.project_id, policy.lane_id, target)
        token = request.token if request.token is not None else self._coordinator.issue_token(key)
        batch = OverrideBatch.create(
            project_id=request.project_id,
            lane=policy.lane_id,
            scope=request.scope,
            target=target,
            token=token,
            patches=patches,
            patch_summary=patch_summary(patches),
            created_by=request.user_id,
            session_id=session_id
        )

        settings = self._storage.settings(request.project_id, policy.lane_id)
        outcome = await self._coordinator.submit(batch, locked=settings.lock_ruleset)

        labels = {"scope": request.scope.value}
        self._observability.collect_metric("write_latency_ms", outcome.latency_ms, labels)
        if outcome.status is WriteStatus.DISCARDED_STALE:
            self._observability.collect_metric("stale_writes_discarded_total", 1)
        elif outcome.status is WriteStatus.FAILED:
            self._observability.collect_metric("failed_writes_total", 1, labels)

        if outcome.committed:
            if request.scope is Scope.PROJECT_DEFAULT:
                profile = self._publish(self._resolve(request.project_id, policy))
            else:
                profile = self._resolve(request.project_id, policy, session_id=session_id)
        else:
            profile = self.get_profile(request.project_id, policy.lane_id, session_id)

        return OverrideWriteResponse(outcome=outcome, profile=profile)

    def set_comps(
        self,
        project_id: str,
        lane: str,
        candidates: Sequence[Union[CompsCandidate, Mapping[str, Any]]] = (),
        suggestion: Union[CompsSuggestion, Mapping[str, Any], None] = None
    ) -> EngineProfile:
        """Record new comps input and republish."""
        policy = lookup_lane(lane)
        parsed = tuple(
            c if isinstance(c, CompsCandidate) else CompsCandidate.from_dict(c)
            for c in candidates
        )
        if not isinstance(suggestion, CompsSuggestion):
            suggestion = CompsSuggestion.from_partial(suggestion or {})
        if not suggestion.titles and parsed:
            suggestion = CompsSuggestion(
                payload=suggestion.payload, titles=tuple(c.title for c in parsed)
            )
        record = CompsRecord(
            project_id=project_id,
            lane=policy.lane_id,
            candidates=parsed,
            suggestion=suggestion,
            recorded_at=Timestamp.now()
        )
        result = self._storage.store_comps(record)
        if not result.success:
            raise PersistenceError("Failed to store comps", context=(("project_id", project_id),))
        self._observability.log_audit(
            "comps_recorded",
            entity_id=f"{project_id}/{policy.lane_id}",
            event_type=AuditEventType.WRITE,
            layer="engine",
            metadata=(
                ("candidates", str(len(parsed))),
                ("suggestion", "empty" if suggestion.is_empty else "present"),
            )
        )
        return self._publish(self._resolve(project_id, policy))

    def update_settings(self, project_id: str, lane: str, **changes: Any) -> EngineProfile:
        """Change lock / bypass / preset preferences and republish."""
        policy = lookup_lane(lane)
        if changes.get("pacing_feel") is not None:
            PacingFeel(changes["pacing_feel"])
        if changes.get("style_benchmark") is not None:
            StyleBenchmark(changes["style_benchmark"])
        settings = self._storage.settings(project_id, policy.lane_id).with_changes(**changes)
        result = self._storage.store_settings(project_id, policy.lane_id, settings)
        if not result.success:
            raise PersistenceError("Failed to store settings", context=(("project_id", project_id),))
        return self._publish(self._resolve(project_id, policy))

    def rebuild(
        self,
        project_id: str,
        lane: str,
        strategy: Optional[ResolutionStrategy] = None
    ) -> EngineProfile:
        """Explicit rebuild; optionally switches the resolution strategy."""
        policy = lookup_lane(lane)
        return self._publish(self._resolve(project_id, policy, strategy=strategy))

    def apply_recommended(self, project_id: str, lane: str) -> Tuple[EngineProfile, RecommendedPlan]:
        profile = self.rebuild(project_id, lane, ResolutionStrategy.APPLY_RECOMMENDED)
        return profile, plan_recommended(profile.conflicts)

    def end_session(self, session_id: str) -> int:
        """Drop all run overrides of a session."""
        if not self._sessions.has_session(session_id):
            raise MissingSession(session_id)
        dropped = self._sessions.end_session(session_id)
        self._observability.log_audit(
            "session_ended",
            entity_id=session_id,
            event_type=AuditEventType.STATE_CHANGE,
            layer="coordination",
            metadata=(("dropped_batches", str(dropped)),)
        )
        return dropped

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _current_strategy(self, project_id: str, lane: str) -> ResolutionStrategy:
        latest = self._storage.latest_profile(project_id, lane)
        return latest.strategy if latest else ResolutionStrategy.PRECEDENCE

    def _resolve(
        self,
        project_id: str,
        policy: LanePolicy,
        session_id: Optional[str] = None,
        strategy: Optional[ResolutionStrategy] = None
    ) -> EngineProfile:
        lane = policy.lane_id
        settings = self._storage.settings(project_id, lane)
        comps = self._storage.comps(project_id, lane)
        preset = None
        if settings.pacing_feel or settings.style_benchmark:
            preset = preset_values(lane, settings.pacing_feel, settings.style_benchmark)
        run_batches: List[OverrideBatch] = (
            self._sessions.batches(session_id, project_id, lane) if session_id else []
        )

        profile = resolve(
            policy,
            comps.suggestion if comps else None,
            self._storage.override_batches(project_id, lane),
            run_batches,
            bypass=settings.bypass_clamps,
            strategy=strategy or self._current_strategy(project_id, lane),
            preset=preset,
            project_id=project_id,
            derived_from=(f"comps:{project_id}/{lane}@{comps.recorded_at.to_iso()}",) if comps else ()
        )

        self._observability.collect_metric(
            "resolutions_total", 1, {"lane": lane, "strategy": profile.strategy.value}
        )
        clamp_warnings = sum(
            1 for p in profile.provenance
            if p.provenance is Provenance.CLAMPED or p.clamp_bypassed
        )
        self._observability.collect_metric("clamp_warnings_total", clamp_warnings, {"lane": lane})
        for conflict in profile.conflicts:
            self._observability.collect_metric(
                "conflicts_detected_total", 1, {"severity": conflict.severity.value}
            )
        self._observability.log_audit(
            "profile_resolved",
            entity_id=profile.id,
            event_type=AuditEventType.RESOLUTION,
            layer="resolution",
            metadata=(
                ("project_id", project_id),
                ("lane", lane),
                ("session_id", session_id or ""),
                ("conflicts", str(len(profile.conflicts))),
                ("warnings", str(len(profile.warnings))),
            )
        )
        return profile

    def _publish(self, profile: EngineProfile) -> EngineProfile:
        previous = self._storage.latest_profile(profile.project_id or "", profile.lane)
        published, result = self._storage.publish_profile(profile)
        if not result.success:
            raise PersistenceError(
                "Failed to publish profile", context=(("profile_id", profile.id),)
            )
        parents = [previous.revision_key] if previous else []
        parents.extend(published.derived_from)
        self._observability.record_lineage(
            entity_id=published.revision_key,
            entity_type="engine_profile",
            parent_ids=parents,
            metadata={"project_id": published.project_id or "", "lane": published.lane}
        )
        return published

    # =========================================================================
    # OBSERVABILITY INTERFACE
    # =========================================================================

    def get_audit_log(self, layers: Optional[List[str]] = None) -> List:
        """Get unified audit log."""
        self._sync_audit_logs()
        return self._observability.get_unified_log(layers=layers)

    def get_audit_report(self) -> Dict:
        """Generate audit report."""
        self._sync_audit_logs()
        return self._observability.generate_audit_report()

    def get_metrics(self):
        """Get metrics collector."""
        return self._observability.get_metrics()

    def get_lineage(self):
        """Get lineage tracker."""
        return self._observability.get_lineage()

    def _sync_audit_logs(self):
        """Sync audit logs from all layers to observability."""
        for entry in self._storage.get_audit_log():
            self._observability.collect_audit(entry)
        for entry in self._coordinator.get_audit_log():
            self._observability.collect_audit(entry)

    # =========================================================================
    # DIRECT LAYER ACCESS
    # =========================================================================

    @property
    def config(self) -> BackendConfig:
        return self._config

    @property
    def storage_layer(self) -> RulesetStorageEngine:
        return self._storage

    @property
    def coordinator(self) -> ScopeCoordinator:
        return self._coordinator

    @property
    def sessions(self) -> SessionOverrideStore:
        return self._sessions
