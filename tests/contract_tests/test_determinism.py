"""
Deterministic Resolution Test
Verifies that resolve() is a pure function of its inputs.

Batches carry creation timestamps, but neither batch ids nor profile ids
depend on them, so rebuilding the same inputs must reproduce the same
profile exactly.
"""

import pytest
from hypothesis import given, strategies as st

from ruleset_engine.contracts.events import OverridePatch, ResolutionStrategy
from ruleset_engine.lanes.policy import lookup_lane, registered_lanes
from ruleset_engine.resolution import resolve

from ..fixtures import BPM_TARGET_PTR, FEATURE, PROJECT, comps_pacing, make_batch


def _inputs(target, twist):
    return dict(
        lane_defaults=lookup_lane(FEATURE),
        comps_suggested=comps_pacing(2.5),
        project_overrides=[
            make_batch(1, [OverridePatch.replace(BPM_TARGET_PTR, target)]),
            make_batch(2, [OverridePatch.replace("/budgets/twist_cap", twist)]),
        ],
        run_overrides=[],
        project_id=PROJECT,
    )


def extract_structure(profile):
    """Everything observable about a profile except publication metadata."""
    return {
        "id": profile.id,
        "rules": profile.rules.canonical_json(),
        "summary": profile.rules_summary,
        "conflicts": [c.to_dict() for c in profile.conflicts],
        "provenance": [p.to_dict() for p in profile.provenance],
        "warnings": list(profile.warnings),
        "derived_from": list(profile.derived_from),
    }


@pytest.mark.parametrize("strategy", list(ResolutionStrategy))
def test_rebuild_is_identical(strategy):
    first = resolve(**_inputs(3.0, 2), strategy=strategy)
    second = resolve(**_inputs(3.0, 2), strategy=strategy)
    assert extract_structure(first) == extract_structure(second)


@pytest.mark.parametrize("lane", registered_lanes())
def test_defaults_only_is_identical_per_lane(lane):
    first = resolve(lookup_lane(lane), None, [], [])
    second = resolve(lookup_lane(lane), None, [], [])
    assert first.id == second.id
    assert first.rules == lookup_lane(lane).defaults


@given(
    st.floats(min_value=-10, max_value=10, allow_nan=False, allow_infinity=False),
    st.integers(min_value=0, max_value=6),
)
def test_any_override_inputs_resolve_deterministically(target, twist):
    first = resolve(**_inputs(target, twist))
    second = resolve(**_inputs(target, twist))
    assert extract_structure(first) == extract_structure(second)


def test_different_inputs_produce_different_ids():
    assert resolve(**_inputs(3.0, 2)).id != resolve(**_inputs(3.5, 2)).id


def test_bypass_changes_identity():
    assert resolve(**_inputs(9.0, 2)).id != resolve(**_inputs(9.0, 2), bypass=True).id
