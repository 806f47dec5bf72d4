"""
Resolution Policy

RESPONSIBILITY: Merge lane defaults, comps, presets and overrides by a
documented precedence; label every numeric value with its provenance
ALLOWED INPUTS: Lane policy/defaults, comps partial, preset partial,
override batches per scope
OUTPUTS: EngineProfile (immutable)

WHAT THIS LAYER MUST NOT DO:
============================
- Persist anything (the Scope Coordinator owns writes)
- Fail because of a conflict (conflicts are advisory)
- Trust comps payloads (unknown paths and type mismatches are dropped)

PRECEDENCE (highest first):
===========================
run overrides > project overrides > preset > comps suggestions > lane defaults

The merged document is always passed through clamp_and_validate; a field
the clamp engine alters is labelled `clamped`, whatever its tier.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from .contracts.base import (
    Provenance, Scope, Severity, SuggestedAction, MalformedPatch, content_id,
)
from .contracts.rules import FIELD_GROUPS, Ruleset, is_finite_number, is_number
from .contracts.events import (
    CompsSuggestion, EngineProfile, FieldProvenance, OverrideBatch,
    OverridePatch, ResolutionStrategy, RuleConflict, AdjustmentKind,
)
from .lanes.policy import LanePolicy, resolve_lane
from .clamp import clamp_and_validate
from .conflicts import detect_conflicts
from .patching import apply_patches, touched_paths, path_touched
from .summary import render_rules_summary

BatchLike = Union[OverrideBatch, Sequence[Union[OverridePatch, Mapping[str, Any]]]]

# Groups that identify the document itself and cannot be suggested.
_UNSUGGESTIBLE = ("version", "lane")


# =============================================================================
# PLAN TYPES
# =============================================================================

@dataclass(frozen=True)
class RecommendedPlan:
    """Which overridden paths survive APPLY_RECOMMENDED and which retract."""
    keep: Tuple[str, ...]
    retract: Tuple[str, ...]

    def to_dict(self) -> Dict[str, List[str]]:
        return {"keep": list(self.keep), "retract": list(self.retract)}


def plan_recommended(conflicts: Iterable[RuleConflict]) -> RecommendedPlan:
    """Hard conflicts keep the override; warn/info adopt the comps value."""
    keep, retract = set(), set()
    for conflict in conflicts:
        if conflict.severity is Severity.HARD:
            keep.add(conflict.field_path)
        else:
            retract.add(conflict.field_path)
    return RecommendedPlan(keep=tuple(sorted(keep)), retract=tuple(sorted(retract - keep)))


def _action_for(strategy: ResolutionStrategy, conflict: RuleConflict) -> SuggestedAction:
    if strategy is ResolutionStrategy.HONOR_COMPS:
        return SuggestedAction.HONOR_COMPS
    if strategy is ResolutionStrategy.APPLY_RECOMMENDED and conflict.severity is not Severity.HARD:
        return SuggestedAction.HONOR_COMPS
    return SuggestedAction.HONOR_OVERRIDES


# =============================================================================
# UNTRUSTED PARTIAL RULESETS (comps, presets)
# =============================================================================

def _walk(value: Any, prefix: str) -> Iterable[Tuple[str, Any]]:
    if isinstance(value, Mapping):
        for key in sorted(value, key=str):
            yield from _walk(value[key], f"{prefix}.{key}")
    else:
        yield prefix, value


def _same_kind(existing: Any, candidate: Any) -> bool:
    if isinstance(existing, bool) or isinstance(candidate, bool):
        return isinstance(existing, bool) and isinstance(candidate, bool)
    if is_number(existing):
        return is_finite_number(candidate)
    if isinstance(existing, str):
        return isinstance(candidate, str)
    if isinstance(existing, list):
        return isinstance(candidate, list) and all(isinstance(v, str) for v in candidate)
    return False


def sanitize_partial(
    partial: Any,
    current: Ruleset,
    label: str
) -> Tuple[List[Tuple[str, Any]], List[str]]:
    """
    Split an untrusted partial ruleset into accepted (path, value) leaves
    and warnings for everything dropped.
    """
    accepted: List[Tuple[str, Any]] = []
    warnings: List[str] = []
    if not isinstance(partial, Mapping):
        if partial:
            warnings.append(f"{label} suggestion is not an object; dropped")
        return accepted, warnings
    for group in sorted(partial, key=str):
        if group not in FIELD_GROUPS:
            warnings.append(f"{label} suggestion for unknown field group '{group}' dropped")
            continue
        if group in _UNSUGGESTIBLE:
            warnings.append(f"{label} suggestion for '{group}' dropped (not suggestible)")
            continue
        for path, value in _walk(partial[group], group):
            if not current.has(path):
                warnings.append(f"{label} suggestion for unknown field '{path}' dropped")
                continue
            if not _same_kind(current.get(path), value):
                warnings.append(f"{label} suggestion for '{path}' has the wrong type; dropped")
                continue
            accepted.append((path, list(value) if isinstance(value, list) else value))
    return accepted, warnings


def _nest(leaves: Iterable[Tuple[str, Any]]) -> Dict[str, Any]:
    tree: Dict[str, Any] = {}
    for path, value in leaves:
        segments = path.split(".")
        node = tree
        for segment in segments[:-1]:
            node = node.setdefault(segment, {})
        node[segments[-1]] = value
    return tree


def _apply_leaves(ruleset: Ruleset, leaves: Iterable[Tuple[str, Any]]) -> Ruleset:
    for path, value in leaves:
        ruleset = ruleset.with_value(path, value)
    return ruleset


# =============================================================================
# OVERRIDE TIERS
# =============================================================================

def _batch_parts(batch: BatchLike, index: int) -> Tuple[str, Sequence[Any], Optional[str]]:
    if isinstance(batch, OverrideBatch):
        return batch.batch_id, batch.patches, batch.batch_id
    return f"#{index}", batch, None


def _apply_tier(
    current: Ruleset,
    batches: Sequence[BatchLike],
    scope: Scope
) -> Tuple[Ruleset, Set[str], List[str], List[str]]:
    """Apply batches in order; a batch that no longer applies is skipped whole."""
    touched: Set[str] = set()
    warnings: List[str] = []
    applied_ids: List[str] = []
    for index, batch in enumerate(batches or ()):
        label, patches, batch_id = _batch_parts(batch, index)
        try:
            current = apply_patches(current, patches)
        except MalformedPatch as exc:
            warnings.append(f"{scope.value} override batch {label} skipped: {exc.message}")
            continue
        touched.update(touched_paths(patches))
        if batch_id:
            applied_ids.append(batch_id)
    return current, touched, warnings, applied_ids


# =============================================================================
# RESOLVE
# =============================================================================

def _defaults_and_policy(
    lane_defaults: Union[LanePolicy, Ruleset, Mapping[str, Any]],
    lane: Optional[Union[str, LanePolicy]]
) -> Tuple[Ruleset, LanePolicy]:
    if isinstance(lane_defaults, LanePolicy):
        return lane_defaults.defaults, lane_defaults
    defaults = lane_defaults if isinstance(lane_defaults, Ruleset) else Ruleset.from_dict(lane_defaults)
    return defaults, resolve_lane(lane if lane is not None else (defaults.lane or ""))


def resolve(
    lane_defaults: Union[LanePolicy, Ruleset, Mapping[str, Any]],
    comps_suggested: Union[CompsSuggestion, Mapping[str, Any], None],
    project_overrides: Sequence[BatchLike],
    run_overrides: Sequence[BatchLike],
    bypass: bool = False,
    strategy: ResolutionStrategy = ResolutionStrategy.PRECEDENCE,
    preset: Optional[Mapping[str, Any]] = None,
    lane: Optional[Union[str, LanePolicy]] = None,
    project_id: Optional[str] = None,
    derived_from: Sequence[str] = (),
    comps_titles: Sequence[str] = ()
) -> EngineProfile:
    """
    Produce the effective EngineProfile for one (project, lane).

    Raises UnknownLane if the lane cannot be determined. Never raises
    because of conflicts, bad comps or stale override batches; those are
    reported as conflicts and warnings.
    """
    defaults, policy = _defaults_and_policy(lane_defaults, lane)
    warnings: List[str] = []

    # Comps tier
    if isinstance(comps_suggested, CompsSuggestion):
        comps_titles = tuple(comps_titles) or comps_suggested.titles
        comps_partial: Any = comps_suggested.to_partial()
    else:
        comps_partial = comps_suggested or {}
    comps_leaves, dropped = sanitize_partial(comps_partial, defaults, "comps")
    warnings.extend(dropped)
    current = _apply_leaves(defaults, comps_leaves)
    comps_paths = {path for path, _ in comps_leaves}

    # Preset tier
    preset_paths: Set[str] = set()
    if preset:
        preset_leaves, dropped = sanitize_partial(preset, current, "preset")
        warnings.extend(dropped)
        current = _apply_leaves(current, preset_leaves)
        preset_paths = {path for path, _ in preset_leaves}

    pre_override = current

    # Override tiers
    current, project_touched, skipped, project_ids = _apply_tier(
        current, project_overrides, Scope.PROJECT_DEFAULT
    )
    warnings.extend(skipped)
    current, run_touched, skipped, run_ids = _apply_tier(current, run_overrides, Scope.RUN)
    warnings.extend(skipped)

    # Conflicts and strategy
    conflicts = detect_conflicts(
        pre_override,
        _nest(comps_leaves),
        current,
        overridden_paths=sorted(project_touched | run_touched)
    )
    comps_values = dict(comps_leaves)
    adopted: Set[str] = set()
    resolved_conflicts = []
    for conflict in conflicts:
        action = _action_for(strategy, conflict)
        if action is SuggestedAction.HONOR_COMPS:
            current = current.with_value(conflict.field_path, comps_values[conflict.field_path])
            adopted.add(conflict.field_path)
        resolved_conflicts.append(conflict.with_applied(action))

    if current.get("lane") != policy.lane_id:
        warnings.append(f"lane field {current.get('lane')!r} reset to '{policy.lane_id}'")
        current = current.with_value("lane", policy.lane_id)

    # Clamp
    clamped = clamp_and_validate(current, policy, bypass=bypass)
    warnings.extend(clamped.warnings)
    rules = clamped.rules
    adjustments = {}
    for adjustment in clamped.adjustments:
        adjustments.setdefault(adjustment.path, adjustment)

    # Provenance
    provenance = []
    for path, _value in rules.numeric_leaves():
        scope = None
        if path_touched(path, adopted):
            tier = Provenance.SUGGESTED
        elif path_touched(path, run_touched):
            tier, scope = Provenance.OVERRIDDEN, Scope.RUN
        elif path_touched(path, project_touched):
            tier, scope = Provenance.OVERRIDDEN, Scope.PROJECT_DEFAULT
        elif path in preset_paths:
            tier = Provenance.PRESET
        elif path in comps_paths:
            tier = Provenance.SUGGESTED
        else:
            tier = Provenance.DERIVED

        adjustment = adjustments.get(path)
        if adjustment is None:
            provenance.append(FieldProvenance(path=path, provenance=tier, source=tier, scope=scope))
        elif adjustment.bypassed:
            provenance.append(FieldProvenance(
                path=path, provenance=tier, source=tier, scope=scope,
                clamp_bypassed=True,
                note=f"clamp bypassed: {adjustment.original} outside lane bounds (nearest {adjustment.bound})"
            ))
        else:
            if adjustment.kind is AdjustmentKind.ORDERING:
                note = f"ordering repair: {adjustment.original} -> {adjustment.applied}"
            else:
                note = f"clamped: {adjustment.original} -> {adjustment.applied}"
            provenance.append(FieldProvenance(
                path=path, provenance=Provenance.CLAMPED, source=tier, scope=scope, note=note
            ))

    for group in sorted(rules.quarantined):
        warnings.append(f"unknown field group '{group}' quarantined")

    lane_id = policy.lane_id
    conflicts_out = tuple(resolved_conflicts)
    lineage = tuple(derived_from) + tuple(project_ids) + tuple(run_ids)
    profile_id = content_id(
        "profile",
        project_id or "",
        lane_id,
        rules.fingerprint(),
        strategy.value,
        str(bool(bypass)),
        ",".join(c.id for c in conflicts_out),
        ",".join(lineage)
    )
    return EngineProfile(
        id=profile_id,
        project_id=project_id,
        lane=lane_id,
        rules=rules,
        rules_summary=render_rules_summary(rules, comps_titles),
        conflicts=conflicts_out,
        provenance=tuple(provenance),
        warnings=tuple(warnings),
        strategy=strategy,
        bypass=bool(bypass),
        derived_from=lineage
    )
