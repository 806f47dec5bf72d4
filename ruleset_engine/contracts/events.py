"""
Layer-Specific Contracts

These contracts define the explicit interfaces between layers.
Each layer exposes its contracts here, and other layers consume only these.

FLOW OF TYPES:
==============
OverridePatch / OverrideBatch   -> Patch Applier, Scope Coordinator
CompsCandidate / CompsSuggestion -> Conflict Detector, Resolution Policy
ClampResult                     <- Clamp & Validate Engine
RuleConflict, FieldProvenance   -> EngineProfile
WriteOutcome                    <- Scope Coordinator
AuditLogEntry, MetricPoint      -> Observability
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Tuple, Union
from enum import Enum
import json

from .base import (
    Timestamp, Error, content_id,
    Dimension, Severity, Provenance, Scope, SuggestedAction,
    MalformedPatch,
)
from .rules import Ruleset


def canonical(value: Any) -> str:
    """Canonical JSON used for ids, comparisons and serialized conflict values."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


# Every creative dimension is keyed to exactly one ruleset field.
DIMENSION_FIELD_PATHS: Dict[Dimension, str] = {
    Dimension.PACING: "pacing_profile.beats_per_minute.target",
    Dimension.STAKES_LADDER: "stakes_ladder.no_global_before_pct",
    Dimension.DIALOGUE_STYLE: "dialogue_rules.subtext_ratio_target",
    Dimension.TWIST_BUDGET: "budgets.twist_cap",
    Dimension.TEXTURE_REALISM: "texture_rules.realism",
    Dimension.ANTAGONISM_MODEL: "antagonism_model.primary",
    Dimension.FORBIDDEN_MOVES: "forbidden_moves",
}


# =============================================================================
# PATCH CONTRACTS
# =============================================================================

class PatchOp(Enum):
    REPLACE = "replace"
    ADD = "add"
    REMOVE = "remove"


@dataclass(frozen=True)
class OverridePatch:
    """
    One edit to a ruleset document.

    `path` is a JSON-pointer-like path. `value` is ignored for REMOVE.
    """
    op: PatchOp
    path: str
    value: Any = None

    @staticmethod
    def replace(path: str, value: Any) -> OverridePatch:
        return OverridePatch(op=PatchOp.REPLACE, path=path, value=value)

    @staticmethod
    def add(path: str, value: Any) -> OverridePatch:
        return OverridePatch(op=PatchOp.ADD, path=path, value=value)

    @staticmethod
    def remove(path: str) -> OverridePatch:
        return OverridePatch(op=PatchOp.REMOVE, path=path)

    @staticmethod
    def from_dict(data: Mapping[str, Any], index: Optional[int] = None) -> OverridePatch:
        if not isinstance(data, Mapping):
            raise MalformedPatch("Patch must be an object", patch_index=index)
        try:
            op = PatchOp(data.get("op", "replace"))
        except ValueError:
            raise MalformedPatch(
                f"Unsupported patch op {data.get('op')!r}", patch_index=index
            ) from None
        path = data.get("path")
        if not isinstance(path, str):
            raise MalformedPatch("Patch path must be a string", patch_index=index)
        if op is not PatchOp.REMOVE and "value" not in data:
            raise MalformedPatch(
                f"'{op.value}' patch requires a value", patch_index=index, path=path
            )
        return OverridePatch(op=op, path=path, value=data.get("value"))

    def to_dict(self) -> Dict[str, Any]:
        result = {"op": self.op.value, "path": self.path}
        if self.op is not PatchOp.REMOVE:
            result["value"] = self.value
        return result


@dataclass(frozen=True)
class OverrideBatch:
    """
    IMMUTABLE record of one accepted override write.

    A batch is the unit of write: it is applied atomically or not at all.
    """
    batch_id: str
    project_id: str
    lane: str
    scope: Scope
    target: str
    token: int
    patches: Tuple[OverridePatch, ...]
    patch_summary: str
    created_by: Optional[str] = None
    session_id: Optional[str] = None
    created_at: Optional[Timestamp] = None

    @staticmethod
    def create(
        project_id: str,
        lane: str,
        scope: Scope,
        target: str,
        token: int,
        patches: Tuple[OverridePatch, ...],
        patch_summary: str,
        created_by: Optional[str] = None,
        session_id: Optional[str] = None
    ) -> OverrideBatch:
        """Factory with a deterministic batch id."""
        body = canonical([p.to_dict() for p in patches])
        batch_id = content_id(
            "batch", project_id, lane, scope.value, target, str(token),
            session_id or "", body
        )
        return OverrideBatch(
            batch_id=batch_id,
            project_id=project_id,
            lane=lane,
            scope=scope,
            target=target,
            token=token,
            patches=tuple(patches),
            patch_summary=patch_summary,
            created_by=created_by,
            session_id=session_id,
            created_at=Timestamp.now()
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "project_id": self.project_id,
            "lane": self.lane,
            "scope": self.scope.value,
            "target": self.target,
            "token": self.token,
            "patches": [p.to_dict() for p in self.patches],
            "patch_summary": self.patch_summary,
            "created_by": self.created_by,
            "session_id": self.session_id,
            "created_at": self.created_at.to_iso() if self.created_at else None,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> OverrideBatch:
        return OverrideBatch(
            batch_id=data["batch_id"],
            project_id=data["project_id"],
            lane=data["lane"],
            scope=Scope(data["scope"]),
            target=data["target"],
            token=int(data["token"]),
            patches=tuple(
                OverridePatch.from_dict(p, index=i) for i, p in enumerate(data["patches"])
            ),
            patch_summary=data.get("patch_summary", ""),
            created_by=data.get("created_by"),
            session_id=data.get("session_id"),
            created_at=Timestamp.from_iso(data["created_at"]) if data.get("created_at") else None
        )


# =============================================================================
# CLAMP CONTRACTS
# =============================================================================

class AdjustmentKind(Enum):
    FLOOR = "floor"
    CEILING = "ceiling"
    NON_NUMERIC = "non_numeric"
    ORDERING = "ordering"


@dataclass(frozen=True)
class ClampAdjustment:
    """A single value the clamp engine altered (or would have altered)."""
    path: str
    original: Any
    applied: Any
    bound: Any
    kind: AdjustmentKind
    bypassed: bool = False

    @property
    def changed(self) -> bool:
        return not self.bypassed


@dataclass(frozen=True)
class ClampResult:
    """Output of clamp_and_validate: rules plus the full list of warnings."""
    rules: Ruleset
    warnings: Tuple[str, ...] = ()
    adjustments: Tuple[ClampAdjustment, ...] = ()

    @property
    def clamped_paths(self) -> Tuple[str, ...]:
        return tuple(sorted({a.path for a in self.adjustments if a.changed}))

    @property
    def bypassed_paths(self) -> Tuple[str, ...]:
        return tuple(sorted({a.path for a in self.adjustments if a.bypassed}))


# =============================================================================
# COMPS CONTRACTS (untrusted, advisory input)
# =============================================================================

@dataclass(frozen=True)
class CompsCandidate:
    """A comparable title offered as a style reference."""
    id: str
    title: str
    year: Optional[int] = None
    format: Optional[str] = None
    region: Optional[str] = None
    genres: Tuple[str, ...] = ()
    rationale: str = ""
    confidence: float = 0.0
    query: Optional[str] = None

    def __post_init__(self):
        if not 0.0 <= float(self.confidence) <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")
        object.__setattr__(self, "genres", tuple(self.genres))

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> CompsCandidate:
        return CompsCandidate(
            id=str(data["id"]),
            title=str(data["title"]),
            year=data.get("year"),
            format=data.get("format"),
            region=data.get("region"),
            genres=tuple(data.get("genres") or ()),
            rationale=data.get("rationale") or "",
            confidence=float(data.get("confidence", 0.0)),
            query=data.get("query")
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "year": self.year,
            "format": self.format,
            "region": self.region,
            "genres": list(self.genres),
            "rationale": self.rationale,
            "confidence": self.confidence,
            "query": self.query,
        }


@dataclass(frozen=True)
class CompsSuggestion:
    """
    Partial ruleset suggested from the selected comps.

    Stored as canonical JSON so the record stays immutable and hashable.
    The payload is NOT validated here; resolution drops what it cannot trust.
    """
    payload: str = "{}"
    titles: Tuple[str, ...] = ()

    @staticmethod
    def from_partial(partial: Mapping[str, Any], titles: Tuple[str, ...] = ()) -> CompsSuggestion:
        return CompsSuggestion(payload=canonical(dict(partial)), titles=tuple(titles))

    @staticmethod
    def from_dimensions(
        values: Mapping[Union[Dimension, str], Any],
        titles: Tuple[str, ...] = ()
    ) -> CompsSuggestion:
        """Build from a Dimension -> value mapping."""
        partial: Dict[str, Any] = {}
        for dimension, value in values.items():
            dim = dimension if isinstance(dimension, Dimension) else Dimension(dimension)
            segments = DIMENSION_FIELD_PATHS[dim].split(".")
            node = partial
            for segment in segments[:-1]:
                node = node.setdefault(segment, {})
            node[segments[-1]] = value
        return CompsSuggestion.from_partial(partial, titles)

    def to_partial(self) -> Dict[str, Any]:
        data = json.loads(self.payload)
        return data if isinstance(data, dict) else {}

    @property
    def is_empty(self) -> bool:
        return not self.to_partial()


@dataclass(frozen=True)
class CompsRecord:
    """Persisted comps input for one (project, lane)."""
    project_id: str
    lane: str
    candidates: Tuple[CompsCandidate, ...]
    suggestion: CompsSuggestion
    recorded_at: Timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "lane": self.lane,
            "candidates": [c.to_dict() for c in self.candidates],
            "suggestion": self.suggestion.to_partial(),
            "titles": list(self.suggestion.titles),
            "recorded_at": self.recorded_at.to_iso(),
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> CompsRecord:
        return CompsRecord(
            project_id=data["project_id"],
            lane=data["lane"],
            candidates=tuple(CompsCandidate.from_dict(c) for c in data.get("candidates", [])),
            suggestion=CompsSuggestion.from_partial(
                data.get("suggestion") or {}, tuple(data.get("titles") or ())
            ),
            recorded_at=Timestamp.from_iso(data["recorded_at"])
        )


# =============================================================================
# CONFLICT / PROVENANCE / PROFILE CONTRACTS
# =============================================================================

@dataclass(frozen=True)
class RuleConflict:
    """
    IMMUTABLE disagreement between a comps suggestion and an override.

    Conflicts are advisory: they never block resolution.
    """
    id: str
    dimension: Dimension
    severity: Severity
    message: str
    field_path: str
    expected_value: str
    override_value: str
    suggested_actions: Tuple[SuggestedAction, ...]
    applied_action: Optional[SuggestedAction] = None

    def with_applied(self, action: SuggestedAction) -> RuleConflict:
        return replace(self, applied_action=action)

    def sort_key(self) -> Tuple[int, int, str]:
        return (self.dimension.order, self.severity.rank, self.field_path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "dimension": self.dimension.value,
            "severity": self.severity.value,
            "message": self.message,
            "field_path": self.field_path,
            "expected_value": self.expected_value,
            "override_value": self.override_value,
            "suggested_actions": [a.value for a in self.suggested_actions],
            "applied_action": self.applied_action.value if self.applied_action else None,
        }


@dataclass(frozen=True)
class FieldProvenance:
    """Origin label for one numeric leaf of a resolved ruleset."""
    path: str
    provenance: Provenance
    source: Provenance
    scope: Optional[Scope] = None
    clamp_bypassed: bool = False
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "provenance": self.provenance.value,
            "source": self.source.value,
            "scope": self.scope.value if self.scope else None,
            "clamp_bypassed": self.clamp_bypassed,
            "note": self.note,
        }


class ResolutionStrategy(Enum):
    PRECEDENCE = "precedence"
    APPLY_RECOMMENDED = "apply_recommended"
    HONOR_OVERRIDES = "honor_overrides"
    HONOR_COMPS = "honor_comps"


@dataclass(frozen=True)
class EngineProfile:
    """
    IMMUTABLE result of one resolution.

    Profiles are superseded, never mutated. `id` is a content hash of the
    resolved document and its inputs; `version`, `parent_id` and
    `created_at` are assigned when the profile is published.
    """
    id: str
    project_id: Optional[str]
    lane: str
    rules: Ruleset
    rules_summary: str
    conflicts: Tuple[RuleConflict, ...]
    provenance: Tuple[FieldProvenance, ...]
    warnings: Tuple[str, ...]
    strategy: ResolutionStrategy = ResolutionStrategy.PRECEDENCE
    bypass: bool = False
    derived_from: Tuple[str, ...] = ()
    parent_id: Optional[str] = None
    version: int = 0
    created_at: Optional[Timestamp] = None

    def provenance_for(self, path: str) -> Optional[FieldProvenance]:
        dotted = path.lstrip("/").replace("/", ".")
        for entry in self.provenance:
            if entry.path == dotted:
                return entry
        return None

    def with_publication(
        self,
        version: int,
        parent_id: Optional[str],
        created_at: Optional[Timestamp] = None
    ) -> EngineProfile:
        return replace(
            self,
            version=version,
            parent_id=parent_id,
            created_at=created_at or Timestamp.now()
        )

    @property
    def revision_key(self) -> str:
        """Unique per published revision (ids repeat when content repeats)."""
        return f"{self.id}@{self.version}"

    @property
    def has_hard_conflicts(self) -> bool:
        return any(c.severity is Severity.HARD for c in self.conflicts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "lane": self.lane,
            "rules": self.rules.to_dict(),
            "quarantined": self.rules.quarantined,
            "rules_summary": self.rules_summary,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "provenance": [p.to_dict() for p in self.provenance],
            "warnings": list(self.warnings),
            "strategy": self.strategy.value,
            "bypass": self.bypass,
            "derived_from": list(self.derived_from),
            "parent_id": self.parent_id,
            "version": self.version,
            "created_at": self.created_at.to_iso() if self.created_at else None,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> EngineProfile:
        rules = Ruleset.from_dict(data["rules"])
        if data.get("quarantined"):
            rules = Ruleset(rules.to_dict(), data["quarantined"])
        return EngineProfile(
            id=data["id"],
            project_id=data.get("project_id"),
            lane=data["lane"],
            rules=rules,
            rules_summary=data.get("rules_summary", ""),
            conflicts=tuple(
                RuleConflict(
                    id=c["id"],
                    dimension=Dimension(c["dimension"]),
                    severity=Severity(c["severity"]),
                    message=c["message"],
                    field_path=c["field_path"],
                    expected_value=c["expected_value"],
                    override_value=c["override_value"],
                    suggested_actions=tuple(SuggestedAction(a) for a in c["suggested_actions"]),
                    applied_action=SuggestedAction(c["applied_action"]) if c.get("applied_action") else None
                )
                for c in data.get("conflicts", [])
            ),
            provenance=tuple(
                FieldProvenance(
                    path=p["path"],
                    provenance=Provenance(p["provenance"]),
                    source=Provenance(p["source"]),
                    scope=Scope(p["scope"]) if p.get("scope") else None,
                    clamp_bypassed=bool(p.get("clamp_bypassed")),
                    note=p.get("note")
                )
                for p in data.get("provenance", [])
            ),
            warnings=tuple(data.get("warnings", [])),
            strategy=ResolutionStrategy(data.get("strategy", "precedence")),
            bypass=bool(data.get("bypass", False)),
            derived_from=tuple(data.get("derived_from", [])),
            parent_id=data.get("parent_id"),
            version=int(data.get("version", 0)),
            created_at=Timestamp.from_iso(data["created_at"]) if data.get("created_at") else None
        )


# =============================================================================
# PROJECT SETTINGS
# =============================================================================

@dataclass(frozen=True)
class ProjectSettings:
    """Per (project, lane) switches that steer resolution and writes."""
    lock_ruleset: bool = False
    bypass_clamps: bool = False
    pacing_feel: Optional[str] = None
    style_benchmark: Optional[str] = None

    def with_changes(self, **changes: Any) -> ProjectSettings:
        unknown = set(changes) - set(self.to_dict())
        if unknown:
            raise ValueError(f"Unknown settings: {sorted(unknown)}")
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lock_ruleset": self.lock_ruleset,
            "bypass_clamps": self.bypass_clamps,
            "pacing_feel": self.pacing_feel,
            "style_benchmark": self.style_benchmark,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> ProjectSettings:
        return ProjectSettings(
            lock_ruleset=bool(data.get("lock_ruleset", False)),
            bypass_clamps=bool(data.get("bypass_clamps", False)),
            pacing_feel=data.get("pacing_feel"),
            style_benchmark=data.get("style_benchmark")
        )


# =============================================================================
# WRITE PATH CONTRACTS
# =============================================================================

@dataclass(frozen=True)
class TargetKey:
    """Logical write target: one field group (or the whole document)."""
    project_id: str
    lane: str
    target: str

    def __str__(self) -> str:
        return f"{self.project_id}/{self.lane}/{self.target}"


class TargetState(Enum):
    IDLE = "idle"
    WRITING = "writing"
    COMMITTED = "committed"
    FAILED = "failed"


class WriteStatus(Enum):
    COMMITTED = "committed"
    FAILED = "failed"
    DISCARDED_STALE = "discarded_stale"
    SKIPPED_LOCKED = "skipped_locked"


@dataclass(frozen=True)
class OverrideWriteRequest:
    """Inbound override write, before a token is issued."""
    project_id: str
    lane: str
    patches: Tuple[OverridePatch, ...]
    scope: Scope = Scope.RUN
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    target: Optional[str] = None
    token: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "patches", tuple(self.patches))


@dataclass(frozen=True)
class WriteOutcome:
    """Settled result of one write through the coordinator."""
    status: WriteStatus
    key: TargetKey
    token: int
    scope: Scope
    batch_id: Optional[str] = None
    error: Optional[Error] = None
    latency_ms: float = 0.0

    @property
    def committed(self) -> bool:
        return self.status is WriteStatus.COMMITTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "target": str(self.key),
            "token": self.token,
            "scope": self.scope.value,
            "batch_id": self.batch_id,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass(frozen=True)
class OverrideWriteResponse:
    """Outcome of an override write plus the profile it produced."""
    outcome: WriteOutcome
    profile: Optional[EngineProfile] = None

    @property
    def conflicts(self) -> Tuple[RuleConflict, ...]:
        return self.profile.conflicts if self.profile else ()


# =============================================================================
# STORAGE / OBSERVABILITY CONTRACTS
# =============================================================================

@dataclass(frozen=True)
class StorageWriteResult:
    """Immutable result of a storage write operation."""
    success: bool
    record_id: Optional[str] = None
    error: Optional[Error] = None
    write_timestamp: Optional[Timestamp] = None
    stale: bool = False


class AuditEventType(Enum):
    """Explicit audit event types."""
    RESOLUTION = "resolution"
    CLAMP = "clamp"
    PATCH = "patch"
    CONFLICT = "conflict"
    WRITE = "write"
    STATE_CHANGE = "state_change"
    QUERY = "query"
    ERROR = "error"
    SYSTEM = "system"


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable audit log entry."""
    entry_id: str
    event_type: AuditEventType
    timestamp: Timestamp
    layer: str  # Which layer generated this
    action: str
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    metadata: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    parent_entry_id: Optional[str] = None


@dataclass(frozen=True)
class MetricPoint:
    """Immutable metric data point."""
    metric_name: str
    value: float
    timestamp: Timestamp
    labels: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
