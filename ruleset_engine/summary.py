"""
Rules summary rendering.

Deterministic, human readable lines describing a resolved ruleset.
Regenerated on every resolution; never parsed back.
"""

from __future__ import annotations
from typing import Any, Sequence

from .contracts.rules import Ruleset


def _show(value: Any) -> str:
    if value is None:
        return "?"
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def render_rules_summary(rules: Ruleset, comps_titles: Sequence[str] = ()) -> str:
    get = rules.get
    bpm = get("pacing_profile.beats_per_minute") or {}
    early = get("stakes_ladder.early_allowed") or []
    global_pct = get("stakes_ladder.no_global_before_pct")
    if not isinstance(global_pct, (int, float)) or isinstance(global_pct, bool):
        global_pct = 0.2

    lines = [
        f"Lane: {_show(get('lane'))}",
        "Engine: {} / {} / {}".format(
            _show(get("engine.story_engine")),
            _show(get("engine.causal_grammar")),
            _show(get("engine.conflict_mode")),
        ),
        "Pacing: {} beats/min (range {}-{})".format(
            _show(bpm.get("target") if isinstance(bpm, dict) else None),
            _show(bpm.get("min") if isinstance(bpm, dict) else None),
            _show(bpm.get("max") if isinstance(bpm, dict) else None),
        ),
        "Drama: {}, Twists: {}, Reveals: {}".format(
            _show(get("budgets.drama_budget")),
            _show(get("budgets.twist_cap")),
            _show(get("budgets.big_reveal_cap")),
        ),
        "Chars: max {}, Threads: max {}".format(
            _show(get("budgets.core_character_cap")),
            _show(get("budgets.plot_thread_cap")),
        ),
        "Quiet beats: min {}, Subtext: min {}".format(
            _show(get("pacing_profile.quiet_beats_min")),
            _show(get("pacing_profile.subtext_scenes_min")),
        ),
        "Stakes: {} early; no global before {}%".format(
            "/".join(early) if isinstance(early, list) else _show(early),
            round(global_pct * 100),
        ),
    ]
    forbidden = get("forbidden_moves")
    if isinstance(forbidden, list) and forbidden:
        lines.append(f"Forbidden: {', '.join(forbidden)}")
    if comps_titles:
        lines.append(f"Comps: {', '.join(comps_titles)}")
    return "\n".join(lines)
