"""
Pacing Presets (pacing feel x style benchmark)

Users pick a style benchmark (creative archetype) and a pacing feel.
The pair yields a partial ruleset for the pacing and dialogue knobs,
which resolution applies at the `preset` tier.

Comps may suggest a benchmark or feel, but presets never bypass the
lane bounds: their output still goes through the clamp engine.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from .policy import DEFAULT_LANE


class PacingFeel(Enum):
    CALM = "calm"
    STANDARD = "standard"
    PUNCHY = "punchy"
    FRENETIC = "frenetic"


class StyleBenchmark(Enum):
    GLOSSY_COMEDY = "glossy_comedy"
    ROMANTIC_BANTER = "romantic_banter"
    KDRAMA_ROMANCE = "kdrama_romance"
    WORKPLACE_POWER_GAMES = "workplace_power_games"
    THRILLER_MYSTERY = "thriller_mystery"
    PRESTIGE_INTIMATE = "prestige_intimate"
    SOAP_MELODRAMA = "soap_melodrama"
    YOUTH_ASPIRATIONAL = "youth_aspirational"
    SATIRE_SYSTEMS = "satire_systems"
    ACTION_PULSE = "action_pulse"


BENCHMARK_LABELS: Dict[StyleBenchmark, Tuple[str, str]] = {
    StyleBenchmark.GLOSSY_COMEDY: ("Glossy Comedy", "Light, fast, aspirational comedy energy"),
    StyleBenchmark.ROMANTIC_BANTER: ("Romantic Banter", "Dialogue-driven romance with verbal sparring"),
    StyleBenchmark.KDRAMA_ROMANCE: ("K-Drama Romance", "Yearning, misalignment and emotional beats"),
    StyleBenchmark.WORKPLACE_POWER_GAMES: ("Workplace Power Games", "Leverage, status moves and subtext-heavy scenes"),
    StyleBenchmark.THRILLER_MYSTERY: ("Thriller / Mystery", "Controlled reveals and suspense architecture"),
    StyleBenchmark.PRESTIGE_INTIMATE: ("Prestige Intimate", "Restrained, character-driven, high subtext"),
    StyleBenchmark.SOAP_MELODRAMA: ("Soap / Melodrama", "High emotion turns, cliffhangers, fast reversals"),
    StyleBenchmark.YOUTH_ASPIRATIONAL: ("Youth Aspirational", "Glossy coming-of-age, micro-turns, identity"),
    StyleBenchmark.SATIRE_SYSTEMS: ("Satire / Systems", "Institutional antagonists, dark comedy, irony"),
    StyleBenchmark.ACTION_PULSE: ("Action Pulse", "Obstacle/solution cadence, physical tension"),
}


@dataclass(frozen=True)
class FeelBaseline:
    bpm: Tuple[float, float, float]  # (min, target, max)
    quiet: int
    subtext: int
    meaning: int


@dataclass(frozen=True)
class BenchmarkModifier:
    """
    Adjustments a benchmark makes on top of a feel baseline.

    target_delta is keyed by delta family (vertical, feature, other);
    min/max move by half the target delta.
    """
    target_delta: Tuple[float, float, float]
    quiet_delta: int = 0
    subtext_delta: int = 0
    meaning_min: Optional[int] = None
    dialogue: Optional[Tuple[float, int]] = None  # (subtext_ratio_target, monologue_max_lines)


_F = PacingFeel

LANE_BASELINES: Dict[str, Dict[PacingFeel, FeelBaseline]] = {
    "vertical_drama": {
        _F.CALM: FeelBaseline((2.5, 3.0, 4.0), 2, 3, 1),
        _F.STANDARD: FeelBaseline((2.8, 3.6, 4.8), 1, 2, 1),
        _F.PUNCHY: FeelBaseline((3.2, 4.2, 5.5), 1, 2, 1),
        _F.FRENETIC: FeelBaseline((4.0, 5.2, 6.2), 0, 1, 1),
    },
    "feature_film": {
        _F.CALM: FeelBaseline((0.8, 1.4, 2.4), 4, 5, 1),
        _F.STANDARD: FeelBaseline((1.0, 2.0, 3.2), 3, 4, 1),
        _F.PUNCHY: FeelBaseline((1.6, 2.6, 4.0), 2, 3, 1),
        _F.FRENETIC: FeelBaseline((2.0, 3.2, 4.8), 1, 2, 1),
    },
    "series": {
        _F.CALM: FeelBaseline((1.0, 2.0, 3.0), 3, 4, 1),
        _F.STANDARD: FeelBaseline((1.5, 2.5, 3.8), 2, 3, 1),
        _F.PUNCHY: FeelBaseline((2.0, 3.0, 4.5), 1, 2, 1),
        _F.FRENETIC: FeelBaseline((2.5, 3.8, 5.5), 1, 1, 1),
    },
    "documentary": {
        _F.CALM: FeelBaseline((0.5, 1.0, 1.8), 4, 3, 1),
        _F.STANDARD: FeelBaseline((0.8, 1.4, 2.2), 3, 2, 1),
        _F.PUNCHY: FeelBaseline((1.0, 1.8, 3.0), 2, 2, 1),
        _F.FRENETIC: FeelBaseline((1.2, 2.2, 3.5), 1, 1, 1),
    },
}

_B = StyleBenchmark

BENCHMARK_MODIFIERS: Dict[StyleBenchmark, BenchmarkModifier] = {
    _B.GLOSSY_COMEDY: BenchmarkModifier((0.3, 0.2, 0.2), dialogue=(0.40, 4)),
    _B.ROMANTIC_BANTER: BenchmarkModifier((0.1, 0.1, 0.1), subtext_delta=1, dialogue=(0.60, 4)),
    _B.KDRAMA_ROMANCE: BenchmarkModifier(
        (0.0, 0.0, 0.0), quiet_delta=1, subtext_delta=1, meaning_min=1, dialogue=(0.55, 5)
    ),
    _B.WORKPLACE_POWER_GAMES: BenchmarkModifier((0.0, 0.0, 0.0), subtext_delta=1, dialogue=(0.65, 5)),
    _B.THRILLER_MYSTERY: BenchmarkModifier((0.0, 0.0, 0.0), meaning_min=1, dialogue=(0.50, 6)),
    _B.PRESTIGE_INTIMATE: BenchmarkModifier(
        (-0.4, -0.4, -0.3), quiet_delta=1, subtext_delta=1, dialogue=(0.70, 8)
    ),
    _B.SOAP_MELODRAMA: BenchmarkModifier((0.6, 0.4, 0.5), dialogue=(0.35, 5)),
    _B.YOUTH_ASPIRATIONAL: BenchmarkModifier((0.0, 0.0, 0.0), subtext_delta=1, dialogue=(0.45, 4)),
    _B.SATIRE_SYSTEMS: BenchmarkModifier(
        (0.0, 0.0, 0.0), subtext_delta=1, meaning_min=2, dialogue=(0.55, 6)
    ),
    _B.ACTION_PULSE: BenchmarkModifier((0.4, 0.4, 0.3), quiet_delta=-1, dialogue=(0.30, 3)),
}


def _delta_index(lane: str) -> int:
    if lane == "vertical_drama":
        return 0
    if lane == "feature_film":
        return 1
    return 2


def _round1(value: float) -> float:
    # Half-up on the exact binary value, one decimal place.
    return float(Decimal(value).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def default_feel(lane: str) -> PacingFeel:
    if lane == "vertical_drama":
        return PacingFeel.PUNCHY
    if lane == "documentary":
        return PacingFeel.CALM
    return PacingFeel.STANDARD


def default_benchmark(lane: str) -> StyleBenchmark:
    if lane == "vertical_drama":
        return StyleBenchmark.WORKPLACE_POWER_GAMES
    if lane == "documentary":
        return StyleBenchmark.PRESTIGE_INTIMATE
    return StyleBenchmark.THRILLER_MYSTERY


def preset_values(
    lane: str,
    feel: Union[PacingFeel, str, None] = None,
    benchmark: Union[StyleBenchmark, str, None] = None
) -> Dict[str, Any]:
    """
    Partial ruleset for a lane + feel + optional benchmark.

    Unknown lanes use the feature_film baselines. A missing feel uses the
    lane's default feel; a missing benchmark applies no modifier.
    Raises ValueError for unknown feel or benchmark names.
    """
    feel = PacingFeel(feel) if feel is not None else default_feel(lane)
    baseline = LANE_BASELINES.get(lane, LANE_BASELINES[DEFAULT_LANE])[feel]
    bpm_min, bpm_target, bpm_max = baseline.bpm
    quiet, subtext, meaning = baseline.quiet, baseline.subtext, baseline.meaning
    dialogue = None

    if benchmark is not None:
        modifier = BENCHMARK_MODIFIERS[StyleBenchmark(benchmark)]
        delta = modifier.target_delta[_delta_index(lane)]
        bpm_target = _round1(bpm_target + delta)
        bpm_min = _round1(bpm_min + delta * 0.5)
        bpm_max = _round1(bpm_max + delta * 0.5)
        if modifier.quiet_delta:
            quiet = max(0, quiet + modifier.quiet_delta)
        if modifier.subtext_delta:
            subtext = max(0, subtext + modifier.subtext_delta)
        if modifier.meaning_min is not None:
            meaning = max(meaning, modifier.meaning_min)
        dialogue = modifier.dialogue

    partial: Dict[str, Any] = {
        "pacing_profile": {
            "beats_per_minute": {"min": bpm_min, "target": bpm_target, "max": bpm_max},
            "quiet_beats_min": quiet,
            "subtext_scenes_min": subtext,
            "meaning_shifts_min_per_act": meaning,
        }
    }
    if dialogue is not None:
        partial["dialogue_rules"] = {
            "subtext_ratio_target": dialogue[0],
            "monologue_max_lines": dialogue[1],
        }
    return partial
