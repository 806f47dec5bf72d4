"""
Lane Policy Layer

Static, import-time tables: lane bounds and defaults (policy.py) and
pacing feel / style benchmark presets (presets.py).
"""

from .policy import (
    DEFAULT_LANE, ORDERED_GROUPS, LANE_POLICIES,
    KnobBounds, LanePolicy,
    registered_lanes, lookup_lane, lookup_lane_or_default,
    resolve_lane, lane_clamp_bounds,
)
from .presets import (
    PacingFeel, StyleBenchmark, BENCHMARK_LABELS,
    preset_values, default_feel, default_benchmark,
)

__all__ = [
    "DEFAULT_LANE", "ORDERED_GROUPS", "LANE_POLICIES",
    "KnobBounds", "LanePolicy",
    "registered_lanes", "lookup_lane", "lookup_lane_or_default",
    "resolve_lane", "lane_clamp_bounds",
    "PacingFeel", "StyleBenchmark", "BENCHMARK_LABELS",
    "preset_values", "default_feel", "default_benchmark",
]
