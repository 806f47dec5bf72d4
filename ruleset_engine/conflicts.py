"""
Conflict Detector

RESPONSIBILITY: Compare comps suggestions with user overrides per Dimension
ALLOWED INPUTS: Baseline ruleset, comps partial ruleset, overridden ruleset
OUTPUTS: Deterministically ordered tuple of RuleConflict

WHAT THIS LAYER MUST NOT DO:
============================
- Apply any suggested action
- Block resolution (conflicts are advisory)
- Trust the comps payload (wrong-typed suggestions are ignored)

SEVERITY TABLE (fixed):
=======================
- categorical and set dimensions (incl. forbidden_moves) -> hard
- numeric, |delta| <= moderate range                     -> warn
- numeric, |delta| beyond moderate range                 -> info
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Tuple, Union

from .contracts.base import Dimension, Severity, SuggestedAction, content_id
from .contracts.rules import Ruleset, is_finite_number
from .contracts.events import (
    DIMENSION_FIELD_PATHS, CompsSuggestion, RuleConflict, canonical,
)
from .patching import path_touched


class DimensionKind(Enum):
    NUMERIC = "numeric"
    CATEGORICAL = "categorical"
    SET = "set"


@dataclass(frozen=True)
class DimensionPolicy:
    """How one Dimension is compared."""
    dimension: Dimension
    field_path: str
    kind: DimensionKind
    epsilon: float = 0.0
    moderate_range: float = 0.0

    @property
    def suggested_actions(self) -> Tuple[SuggestedAction, ...]:
        if self.kind is DimensionKind.NUMERIC:
            return (SuggestedAction.HONOR_COMPS, SuggestedAction.HONOR_OVERRIDES, SuggestedAction.BLEND)
        return (SuggestedAction.HONOR_COMPS, SuggestedAction.HONOR_OVERRIDES)

    def accepts(self, value: Any) -> bool:
        if self.kind is DimensionKind.NUMERIC:
            return is_finite_number(value)
        if self.kind is DimensionKind.CATEGORICAL:
            return isinstance(value, str)
        return isinstance(value, list) and all(isinstance(v, str) for v in value)


_D = Dimension

DIMENSION_POLICIES: Tuple[DimensionPolicy, ...] = (
    DimensionPolicy(_D.PACING, DIMENSION_FIELD_PATHS[_D.PACING], DimensionKind.NUMERIC, 0.05, 1.0),
    DimensionPolicy(_D.STAKES_LADDER, DIMENSION_FIELD_PATHS[_D.STAKES_LADDER], DimensionKind.NUMERIC, 0.01, 0.1),
    DimensionPolicy(_D.DIALOGUE_STYLE, DIMENSION_FIELD_PATHS[_D.DIALOGUE_STYLE], DimensionKind.NUMERIC, 0.01, 0.15),
    DimensionPolicy(_D.TWIST_BUDGET, DIMENSION_FIELD_PATHS[_D.TWIST_BUDGET], DimensionKind.NUMERIC, 0.0, 1.0),
    DimensionPolicy(_D.TEXTURE_REALISM, DIMENSION_FIELD_PATHS[_D.TEXTURE_REALISM], DimensionKind.CATEGORICAL),
    DimensionPolicy(_D.ANTAGONISM_MODEL, DIMENSION_FIELD_PATHS[_D.ANTAGONISM_MODEL], DimensionKind.CATEGORICAL),
    DimensionPolicy(_D.FORBIDDEN_MOVES, DIMENSION_FIELD_PATHS[_D.FORBIDDEN_MOVES], DimensionKind.SET),
)

_MISSING = object()


def policy_for(dimension: Dimension) -> DimensionPolicy:
    for policy in DIMENSION_POLICIES:
        if policy.dimension is dimension:
            return policy
    raise KeyError(dimension)


def _partial_get(partial: Mapping[str, Any], path: str) -> Any:
    node: Any = partial
    for segment in path.split("."):
        if not isinstance(node, Mapping) or segment not in node:
            return _MISSING
        node = node[segment]
    return node


def _as_partial(source: Union[Ruleset, CompsSuggestion, Mapping[str, Any], None]) -> Mapping[str, Any]:
    if source is None:
        return {}
    if isinstance(source, Ruleset):
        return source.to_dict()
    if isinstance(source, CompsSuggestion):
        return source.to_partial()
    return source


def _compare(policy: DimensionPolicy, comps_value: Any, override_value: Any) -> Optional[Tuple[Severity, str]]:
    path = policy.field_path
    if policy.kind is DimensionKind.NUMERIC:
        delta = abs(comps_value - override_value)
        if delta <= policy.epsilon:
            return None
        severity = Severity.WARN if delta <= policy.moderate_range else Severity.INFO
        return severity, (
            f"{path}: comps suggest {comps_value}, override sets {override_value} "
            f"(difference {delta:g})"
        )
    if policy.kind is DimensionKind.CATEGORICAL:
        if comps_value == override_value:
            return None
        return Severity.HARD, f"{path}: comps suggest '{comps_value}', override sets '{override_value}'"
    suggested, overridden = set(comps_value), set(override_value)
    if suggested == overridden:
        return None
    added = sorted(overridden - suggested)
    dropped = sorted(suggested - overridden)
    details = []
    if added:
        details.append(f"override adds {added}")
    if dropped:
        details.append(f"override drops {dropped}")
    return Severity.HARD, f"{path}: " + " and ".join(details) + " relative to comps"


def detect_conflicts(
    baseline: Union[Ruleset, Mapping[str, Any]],
    comps_suggested: Union[Ruleset, CompsSuggestion, Mapping[str, Any], None],
    overrides: Union[Ruleset, Mapping[str, Any]],
    overridden_paths: Optional[Iterable[str]] = None
) -> Tuple[RuleConflict, ...]:
    """
    Report every Dimension where comps and an override disagree.

    `overrides` is the ruleset with override batches applied. A field counts
    as overridden when it falls under `overridden_paths` (dotted prefixes),
    or, when those are not given, when its value differs from `baseline`.

    Result order: (Dimension order, severity rank, field path).
    """
    base = baseline if isinstance(baseline, Ruleset) else Ruleset.from_dict(baseline)
    effective = overrides if isinstance(overrides, Ruleset) else Ruleset.from_dict(overrides)
    partial = _as_partial(comps_suggested)
    prefixes = tuple(overridden_paths) if overridden_paths is not None else None

    conflicts = []
    for policy in DIMENSION_POLICIES:
        path = policy.field_path
        comps_value = _partial_get(partial, path)
        if comps_value is _MISSING or not policy.accepts(comps_value):
            continue
        if not effective.has(path):
            continue
        override_value = effective.get(path)
        if not policy.accepts(override_value):
            continue
        if prefixes is not None:
            if not path_touched(path, prefixes):
                continue
        elif override_value == base.get(path):
            continue

        outcome = _compare(policy, comps_value, override_value)
        if outcome is None:
            continue
        severity, message = outcome
        expected, actual = canonical(comps_value), canonical(override_value)
        conflicts.append(RuleConflict(
            id=content_id("conflict", policy.dimension.value, path, expected, actual),
            dimension=policy.dimension,
            severity=severity,
            message=message,
            field_path=path,
            expected_value=expected,
            override_value=actual,
            suggested_actions=policy.suggested_actions
        ))

    return tuple(sorted(conflicts, key=RuleConflict.sort_key))
