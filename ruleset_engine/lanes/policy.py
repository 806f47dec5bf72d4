"""
Lane Policy Table

RESPONSIBILITY: Per-lane structural defaults and numeric knob bounds
ALLOWED INPUTS: Lane ids
OUTPUTS: LanePolicy (immutable, built and validated at import time)

WHAT THIS LAYER MUST NOT DO:
============================
- Depend on project state, comps or overrides
- Clamp anything (the clamp engine consumes these bounds)
- Fall back silently: lookup_lane raises UnknownLane, and the fallback
  variant reports that it fell back

INVARIANTS:
===========
- Every bounded default lies inside its bounds
- Ordered knob groups have nested bounds, so ordering repair can never
  push a value outside its own bounds
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union
import copy

from ..contracts.base import UnknownLane
from ..contracts.rules import Ruleset, is_number


DEFAULT_LANE = "feature_film"

# Ordered ("BPM-like") knob groups: members listed from low to high.
ORDERED_GROUPS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("pacing_profile.beats_per_minute", ("min", "target", "max")),
    ("pacing_profile.cliffhanger_rate", ("target", "max")),
)


# =============================================================================
# TYPES
# =============================================================================

@dataclass(frozen=True)
class KnobBounds:
    """Closed numeric interval [floor, ceiling] for one knob."""
    floor: float
    ceiling: float

    def __post_init__(self):
        if self.floor > self.ceiling:
            raise ValueError(f"floor {self.floor} exceeds ceiling {self.ceiling}")

    def contains(self, value: float) -> bool:
        return self.floor <= value <= self.ceiling

    def nearest(self, value: float) -> float:
        if value < self.floor:
            return self.floor
        if value > self.ceiling:
            return self.ceiling
        return value

    def to_dict(self) -> Dict[str, float]:
        return {"floor": self.floor, "ceiling": self.ceiling}


@dataclass(frozen=True)
class LanePolicy:
    """
    IMMUTABLE policy for one lane.

    `bounds` is a tuple of (dotted_knob_path, KnobBounds) pairs, sorted by
    path, and is exactly the table the clamp engine enforces.
    """
    lane_id: str
    label: str
    defaults: Ruleset
    bounds: Tuple[Tuple[str, KnobBounds], ...]

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Raise ValueError if the policy contradicts itself."""
        for path, bound in self.bounds:
            value = self.defaults.get(path)
            if not is_number(value):
                raise ValueError(f"{self.lane_id}: bounded knob '{path}' has no numeric default")
            if not bound.contains(value):
                raise ValueError(
                    f"{self.lane_id}: default {value} for '{path}' outside "
                    f"[{bound.floor}, {bound.ceiling}]"
                )
        for group, members in ORDERED_GROUPS:
            member_bounds = [self.bounds_for(f"{group}.{m}") for m in members]
            if any(b is None for b in member_bounds):
                continue
            for lower, upper in zip(member_bounds, member_bounds[1:]):
                if lower.floor > upper.floor or lower.ceiling > upper.ceiling:
                    raise ValueError(f"{self.lane_id}: bounds for '{group}' are not nested")
            values = [self.defaults.get(f"{group}.{m}") for m in members]
            if values != sorted(values):
                raise ValueError(f"{self.lane_id}: defaults for '{group}' are out of order")

    def bounds_for(self, path: str) -> Optional[KnobBounds]:
        for knob, bound in self.bounds:
            if knob == path:
                return bound
        return None

    def bounds_map(self) -> Dict[str, KnobBounds]:
        return dict(self.bounds)

    def default_for(self, path: str) -> Any:
        return self.defaults.get(path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lane": self.lane_id,
            "label": self.label,
            "bounds": {path: b.to_dict() for path, b in self.bounds},
            "defaults": self.defaults.to_dict(),
        }


# =============================================================================
# TABLE CONSTRUCTION
# =============================================================================

_BASE_DEFAULTS: Dict[str, Any] = {
    "version": "1.0",
    "engine": {
        "story_engine": "pressure_cooker",
        "causal_grammar": "accumulation",
        "conflict_mode": "moral_trap",
    },
    "pacing_profile": {
        "beats_per_minute": {"min": 1.0, "target": 2.0, "max": 3.2},
        "cliffhanger_rate": {"target": 0.5, "max": 0.7},
        "quiet_beats_min": 3,
        "subtext_scenes_min": 4,
        "meaning_shifts_min_per_act": 1,
    },
    "stakes_ladder": {
        "early_allowed": ["personal"],
        "no_global_before_pct": 0.20,
        "late_allowed": ["systemic"],
        "notes": "Personal stakes only until final 20%",
    },
    "budgets": {
        "drama_budget": 2,
        "twist_cap": 1,
        "big_reveal_cap": 1,
        "plot_thread_cap": 3,
        "core_character_cap": 5,
        "faction_cap": 1,
        "coincidence_cap": 1,
    },
    "dialogue_rules": {
        "subtext_ratio_target": 0.55,
        "monologue_max_lines": 6,
        "no_speeches": True,
        "absolute_words_penalty": True,
    },
    "texture_rules": {
        "realism": "grounded",
        "money_time_institution_required": True,
        "cost_of_action_required": True,
        "admin_violence_preferred": True,
    },
    "antagonism_model": {
        "primary": "system",
        "legitimacy_required": True,
        "no_omnipotence": True,
    },
    "forbidden_moves": [
        "secret_organization",
        "omniscient_surveillance",
        "sniper_assassination",
        "helicopter_extraction",
        "villain_monologue",
        "everything_is_connected",
    ],
    "signature_devices": [
        "meaning_shift_instead_of_twist",
        "leverage_over_violence",
        "polite_threats",
        "status_choreography",
    ],
    "gate_thresholds": {
        "melodrama_max": 0.50,
        "similarity_max": 0.60,
        "complexity_threads_max": 3,
        "complexity_factions_max": 1,
        "complexity_core_chars_max": 5,
    },
}

# Per-lane deltas merged over the base document (nested dicts merge).
_LANE_DELTAS: Dict[str, Dict[str, Any]] = {
    "vertical_drama": {
        "engine": {"conflict_mode": "status_reputation"},
        "pacing_profile": {
            "beats_per_minute": {"min": 3.2, "target": 4.2, "max": 5.5},
            "cliffhanger_rate": {"target": 0.9, "max": 1.0},
            "quiet_beats_min": 1,
            "subtext_scenes_min": 2,
        },
        "stakes_ladder": {
            "early_allowed": ["personal", "social"],
            "no_global_before_pct": 0.25,
            "notes": "Allow personal/social early; NO global before final 25%",
        },
        "budgets": {"drama_budget": 3, "twist_cap": 2, "core_character_cap": 6, "faction_cap": 2},
        "texture_rules": {"realism": "heightened"},
        "gate_thresholds": {
            "melodrama_max": 0.62,
            "similarity_max": 0.70,
            "complexity_factions_max": 2,
            "complexity_core_chars_max": 6,
        },
    },
    "feature_film": {},
    "series": {
        "engine": {"conflict_mode": "family_obligation"},
        "pacing_profile": {
            "beats_per_minute": {"min": 1.5, "target": 2.5, "max": 3.8},
            "quiet_beats_min": 2,
            "subtext_scenes_min": 3,
        },
        "gate_thresholds": {
            "melodrama_max": 0.35,
            "similarity_max": 0.65,
            "complexity_factions_max": 2,
        },
    },
    "documentary": {
        "engine": {
            "story_engine": "slow_burn_investigation",
            "conflict_mode": "legal_procedural",
        },
        "pacing_profile": {
            "beats_per_minute": {"min": 0.5, "target": 1.0, "max": 1.8},
            "subtext_scenes_min": 2,
        },
        "budgets": {"drama_budget": 1, "twist_cap": 0, "big_reveal_cap": 0},
        "texture_rules": {"realism": "observational"},
        "gate_thresholds": {"melodrama_max": 0.15, "similarity_max": 0.70},
    },
}

_LANE_LABELS: Dict[str, str] = {
    "vertical_drama": "Vertical Drama",
    "feature_film": "Feature Film",
    "series": "Series",
    "documentary": "Documentary",
}

_COMMON_BOUNDS: Dict[str, Tuple[float, float]] = {
    "pacing_profile.cliffhanger_rate.target": (0.0, 1.0),
    "pacing_profile.cliffhanger_rate.max": (0.0, 1.0),
    "pacing_profile.quiet_beats_min": (0, 6),
    "pacing_profile.subtext_scenes_min": (0, 8),
    "pacing_profile.meaning_shifts_min_per_act": (0, 4),
    "stakes_ladder.no_global_before_pct": (0.05, 0.5),
    "budgets.drama_budget": (0, 5),
    "budgets.twist_cap": (0, 3),
    "budgets.big_reveal_cap": (0, 3),
    "budgets.plot_thread_cap": (1, 6),
    "budgets.core_character_cap": (2, 10),
    "budgets.faction_cap": (0, 4),
    "budgets.coincidence_cap": (0, 2),
    "dialogue_rules.subtext_ratio_target": (0.2, 0.85),
    "dialogue_rules.monologue_max_lines": (1, 12),
    "gate_thresholds.melodrama_max": (0.0, 1.0),
    "gate_thresholds.similarity_max": (0.0, 1.0),
}

_BPM = "pacing_profile.beats_per_minute"

_LANE_BOUNDS: Dict[str, Dict[str, Tuple[float, float]]] = {
    "vertical_drama": {
        f"{_BPM}.min": (1.5, 5.5),
        f"{_BPM}.target": (2.0, 6.0),
        f"{_BPM}.max": (2.5, 7.0),
    },
    "feature_film": {
        f"{_BPM}.min": (0.5, 3.5),
        f"{_BPM}.target": (0.8, 4.0),
        f"{_BPM}.max": (1.2, 5.0),
    },
    "series": {
        f"{_BPM}.min": (0.5, 4.0),
        f"{_BPM}.target": (1.0, 4.5),
        f"{_BPM}.max": (1.5, 6.0),
    },
    "documentary": {
        f"{_BPM}.min": (0.3, 2.5),
        f"{_BPM}.target": (0.5, 3.0),
        f"{_BPM}.max": (0.8, 4.0),
        "budgets.twist_cap": (0, 1),
        "budgets.big_reveal_cap": (0, 1),
    },
}


def _deep_merge(base: Dict[str, Any], delta: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in delta.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _build_policy(lane_id: str) -> LanePolicy:
    document = _deep_merge(_BASE_DEFAULTS, _LANE_DELTAS[lane_id])
    document["lane"] = lane_id
    raw_bounds = dict(_COMMON_BOUNDS)
    raw_bounds.update(_LANE_BOUNDS[lane_id])
    return LanePolicy(
        lane_id=lane_id,
        label=_LANE_LABELS[lane_id],
        defaults=Ruleset.from_dict(document, strict=True),
        bounds=tuple(
            (path, KnobBounds(floor=lo, ceiling=hi))
            for path, (lo, hi) in sorted(raw_bounds.items())
        )
    )


LANE_POLICIES: Dict[str, LanePolicy] = {
    lane_id: _build_policy(lane_id) for lane_id in _LANE_DELTAS
}


# =============================================================================
# LOOKUPS
# =============================================================================

def registered_lanes() -> List[str]:
    return sorted(LANE_POLICIES)


def lookup_lane(lane_id: str) -> LanePolicy:
    """Return the policy for a lane, or raise UnknownLane."""
    policy = LANE_POLICIES.get(lane_id)
    if policy is None:
        raise UnknownLane(lane_id)
    return policy


def lookup_lane_or_default(lane_id: Optional[str]) -> Tuple[LanePolicy, bool]:
    """
    Documented fallback lookup.

    Returns (policy, fell_back). Callers must surface fell_back to users.
    """
    policy = LANE_POLICIES.get(lane_id) if lane_id else None
    if policy is None:
        return LANE_POLICIES[DEFAULT_LANE], True
    return policy, False


def resolve_lane(lane: Union[str, LanePolicy]) -> LanePolicy:
    if isinstance(lane, LanePolicy):
        return lane
    return lookup_lane(lane)


def lane_clamp_bounds(lane_id: str) -> Dict[str, KnobBounds]:
    """Exactly the bounds table clamp_and_validate enforces for this lane."""
    return lookup_lane(lane_id).bounds_map()
