"""
Lane Policy Tests

The lane table is configuration, so these tests pin the values the rest
of the engine relies on.
"""

import pytest

from ruleset_engine.contracts.base import ErrorCode, UnknownLane
from ruleset_engine.contracts.rules import Ruleset
from ruleset_engine.lanes.policy import (
    DEFAULT_LANE, KnobBounds, LanePolicy, lane_clamp_bounds, lookup_lane,
    lookup_lane_or_default, registered_lanes,
)

from .fixtures import BPM_TARGET, DOCUMENTARY, FEATURE, SERIES, TWIST_CAP, VERTICAL


class TestRegistry:

    def test_registered_lanes(self):
        assert registered_lanes() == [DOCUMENTARY, FEATURE, SERIES, VERTICAL]

    def test_unknown_lane_raises_typed_error(self):
        with pytest.raises(UnknownLane) as exc_info:
            lookup_lane("radio_play")
        assert exc_info.value.code is ErrorCode.UNKNOWN_LANE
        assert exc_info.value.to_error().context == (("lane", "radio_play"),)

    def test_fallback_lookup_reports_fallback(self):
        policy, fell_back = lookup_lane_or_default("radio_play")
        assert policy.lane_id == DEFAULT_LANE
        assert fell_back

        policy, fell_back = lookup_lane_or_default(None)
        assert policy.lane_id == DEFAULT_LANE
        assert fell_back

    def test_known_lane_does_not_fall_back(self):
        policy, fell_back = lookup_lane_or_default(SERIES)
        assert policy.lane_id == SERIES
        assert not fell_back


class TestLaneTables:

    @pytest.mark.parametrize("lane,bounds", [
        (VERTICAL, (2.0, 6.0)),
        (FEATURE, (0.8, 4.0)),
        (SERIES, (1.0, 4.5)),
        (DOCUMENTARY, (0.5, 3.0)),
    ])
    def test_target_bpm_bounds(self, lane, bounds):
        assert lane_clamp_bounds(lane)[BPM_TARGET] == KnobBounds(*bounds)

    @pytest.mark.parametrize("lane,target", [
        (VERTICAL, 4.2),
        (FEATURE, 2.0),
        (SERIES, 2.5),
        (DOCUMENTARY, 1.0),
    ])
    def test_default_target_bpm(self, lane, target):
        assert lookup_lane(lane).default_for(BPM_TARGET) == target

    @pytest.mark.parametrize("lane", [VERTICAL, FEATURE, SERIES, DOCUMENTARY])
    def test_defaults_carry_their_lane(self, lane):
        assert lookup_lane(lane).defaults.lane == lane

    @pytest.mark.parametrize("lane", [VERTICAL, FEATURE, SERIES, DOCUMENTARY])
    def test_every_bounded_default_is_in_bounds(self, lane):
        policy = lookup_lane(lane)
        for path, bound in policy.bounds:
            assert bound.contains(policy.default_for(path)), path

    def test_documentary_twist_budget_is_tight(self):
        assert lane_clamp_bounds(DOCUMENTARY)[TWIST_CAP] == KnobBounds(0, 1)
        assert lookup_lane(DOCUMENTARY).default_for(TWIST_CAP) == 0

    def test_texture_realism_per_lane(self):
        assert lookup_lane(VERTICAL).default_for("texture_rules.realism") == "heightened"
        assert lookup_lane(FEATURE).default_for("texture_rules.realism") == "grounded"
        assert lookup_lane(DOCUMENTARY).default_for("texture_rules.realism") == "observational"

    def test_bounds_table_is_a_copy(self):
        bounds = lane_clamp_bounds(FEATURE)
        bounds.clear()
        assert lane_clamp_bounds(FEATURE)


class TestPolicyValidation:

    def test_inverted_bounds_rejected(self):
        with pytest.raises(ValueError):
            KnobBounds(floor=3, ceiling=1)

    def test_default_outside_bounds_rejected(self):
        with pytest.raises(ValueError, match="outside"):
            LanePolicy(
                lane_id="broken",
                label="Broken",
                defaults=Ruleset.from_dict({"budgets": {"twist_cap": 2}}),
                bounds=((TWIST_CAP, KnobBounds(0, 1)),)
            )

    def test_bounded_knob_without_default_rejected(self):
        with pytest.raises(ValueError, match="no numeric default"):
            LanePolicy(
                lane_id="broken",
                label="Broken",
                defaults=Ruleset.from_dict({"budgets": {}}),
                bounds=((TWIST_CAP, KnobBounds(0, 1)),)
            )

    def test_nearest(self):
        bound = KnobBounds(2.0, 6.0)
        assert bound.nearest(7.5) == 6.0
        assert bound.nearest(1.0) == 2.0
        assert bound.nearest(4.2) == 4.2
