"""
Clamp & Validate Engine

RESPONSIBILITY: Enforce lane numeric bounds and ordering of BPM-like groups
ALLOWED INPUTS: Candidate Ruleset (or mapping), lane id or LanePolicy
OUTPUTS: ClampResult (rules + warnings + adjustments)

WHAT THIS LAYER MUST NOT DO:
============================
- Hold state between calls
- Raise for out-of-bounds values (clamp and warn instead)
- Touch knobs the candidate does not carry
- Alter the `target` of an ordered group during ordering repair

GUARANTEES:
===========
1. Pure: same candidate + lane + bypass -> same result
2. Idempotent: clamp(clamp(x).rules).rules == clamp(x).rules
3. Every alteration, or bypassed alteration, produces one warning
"""

from __future__ import annotations
from typing import Any, Dict, List, Mapping, Optional, Union

from .contracts.rules import Ruleset, is_finite_number
from .contracts.events import ClampAdjustment, ClampResult, AdjustmentKind
from .lanes.policy import ORDERED_GROUPS, LanePolicy, resolve_lane


def _fmt(value: Any) -> str:
    return repr(value) if isinstance(value, str) else str(value)


def _node(tree: Dict[str, Any], segments: List[str]) -> Optional[Dict[str, Any]]:
    node: Any = tree
    for segment in segments:
        if not isinstance(node, dict) or segment not in node:
            return None
        node = node[segment]
    return node if isinstance(node, dict) else None


def clamp_and_validate(
    candidate: Union[Ruleset, Mapping[str, Any]],
    lane: Union[str, LanePolicy],
    bypass: bool = False
) -> ClampResult:
    """
    Clamp every bounded knob of `candidate` to the lane bounds.

    With bypass=True, out-of-bounds values are kept but still reported,
    with the warning suffixed "(clamp bypassed)". Non-numeric values and
    ordering violations are repaired in both modes.

    Raises UnknownLane for an unregistered lane id.
    """
    policy = resolve_lane(lane)
    rules = candidate if isinstance(candidate, Ruleset) else Ruleset.from_dict(candidate)
    tree = rules.to_dict()
    warnings: List[str] = []
    adjustments: List[ClampAdjustment] = []

    # Per-field bounds
    for path, bound in policy.bounds:
        segments = path.split(".")
        parent = _node(tree, segments[:-1])
        leaf = segments[-1]
        if parent is None or leaf not in parent:
            continue
        value = parent[leaf]

        if not is_finite_number(value):
            default = policy.default_for(path)
            parent[leaf] = default
            warnings.append(
                f"{path}: non-numeric value {_fmt(value)} replaced with lane default {_fmt(default)}"
            )
            adjustments.append(ClampAdjustment(
                path=path, original=value, applied=default, bound=default,
                kind=AdjustmentKind.NON_NUMERIC
            ))
            continue

        nearest = bound.nearest(value)
        if nearest == value:
            continue
        if value < bound.floor:
            kind, reason = AdjustmentKind.FLOOR, f"is below lane floor {_fmt(nearest)}"
        else:
            kind, reason = AdjustmentKind.CEILING, f"exceeds lane ceiling {_fmt(nearest)}"

        if bypass:
            warnings.append(f"{path}: {_fmt(value)} {reason} (clamp bypassed)")
            adjustments.append(ClampAdjustment(
                path=path, original=value, applied=value, bound=nearest,
                kind=kind, bypassed=True
            ))
        else:
            parent[leaf] = nearest
            warnings.append(f"{path}: {_fmt(value)} {reason}; clamped to {_fmt(nearest)}")
            adjustments.append(ClampAdjustment(
                path=path, original=value, applied=nearest, bound=nearest, kind=kind
            ))

    # Ordering repair (structural, applied regardless of bypass)
    for group, members in ORDERED_GROUPS:
        node = _node(tree, group.split("."))
        if node is None or not is_finite_number(node.get("target")):
            continue
        target = node["target"]
        target_index = members.index("target")
        for index, member in enumerate(members):
            if member == "target" or not is_finite_number(node.get(member)):
                continue
            value = node[member]
            if index < target_index and value > target:
                relation = "above"
            elif index > target_index and value < target:
                relation = "below"
            else:
                continue
            node[member] = target
            path = f"{group}.{member}"
            warnings.append(
                f"{path}: {_fmt(value)} {relation} {group}.target {_fmt(target)}; set to {_fmt(target)}"
            )
            adjustments.append(ClampAdjustment(
                path=path, original=value, applied=target, bound=target,
                kind=AdjustmentKind.ORDERING
            ))

    return ClampResult(
        rules=Ruleset(tree, rules.quarantined),
        warnings=tuple(warnings),
        adjustments=tuple(adjustments)
    )
