"""
Test Fixtures

Explicit, deterministic fixtures shared by the unit and integration tests.
No random generation here; property tests draw their own inputs.
"""

import asyncio
import time
from typing import Dict, Optional

from ruleset_engine.contracts.base import PersistenceError, Scope
from ruleset_engine.contracts.events import (
    CompsSuggestion, OverrideBatch, OverridePatch, StorageWriteResult,
)
from ruleset_engine.coordination import StorageWriter
from ruleset_engine.engine import BackendConfig, RulesetBackend
from ruleset_engine.lanes.policy import lookup_lane
from ruleset_engine.patching import derive_target, patch_summary
from ruleset_engine.storage import InMemoryStorageBackend, RulesetStorageEngine


# =============================================================================
# IDENTIFIERS
# =============================================================================

PROJECT = "proj_alpha"
SESSION = "session_001"
USER = "writer_01"

VERTICAL = "vertical_drama"
FEATURE = "feature_film"
SERIES = "series"
DOCUMENTARY = "documentary"

BPM_TARGET = "pacing_profile.beats_per_minute.target"
BPM_TARGET_PTR = "/pacing_profile/beats_per_minute/target"
TWIST_CAP = "budgets.twist_cap"
TWIST_CAP_PTR = "/budgets/twist_cap"


# =============================================================================
# RULESETS & PARTIALS
# =============================================================================

def lane_defaults(lane: str = FEATURE):
    return lookup_lane(lane).defaults


def with_target_bpm(lane: str, value: float):
    """Lane defaults with the target BPM replaced."""
    return lane_defaults(lane).with_value(BPM_TARGET, value)


def comps_without_miracle_cure() -> Dict:
    """Comps suggestion keeping the default forbidden list (no 'miracle_cure')."""
    return {"forbidden_moves": list(lane_defaults(FEATURE).get("forbidden_moves"))}


def comps_pacing(target: float, titles=("Succession", "Industry")) -> CompsSuggestion:
    return CompsSuggestion.from_partial(
        {"pacing_profile": {"beats_per_minute": {"target": target}}}, titles
    )


CANDIDATES = [
    {
        "id": "comp_001",
        "title": "Succession",
        "year": 2018,
        "format": "series",
        "region": "US",
        "genres": ["drama", "satire"],
        "rationale": "Family power games, status choreography",
        "confidence": 0.82,
    },
    {
        "id": "comp_002",
        "title": "Industry",
        "year": 2020,
        "format": "series",
        "region": "UK",
        "genres": ["drama"],
        "rationale": "Workplace leverage",
        "confidence": 0.64,
    },
]


# =============================================================================
# BATCHES
# =============================================================================

def make_batch(
    token: int,
    patches,
    scope: Scope = Scope.PROJECT_DEFAULT,
    lane: str = FEATURE,
    project_id: str = PROJECT,
    session_id: Optional[str] = None
) -> OverrideBatch:
    patches = tuple(patches)
    return OverrideBatch.create(
        project_id=project_id,
        lane=lane,
        scope=scope,
        target=derive_target(patches),
        token=token,
        patches=patches,
        patch_summary=patch_summary(patches),
        created_by=USER,
        session_id=session_id
    )


def target_bpm_batch(token: int, value: float, **kwargs) -> OverrideBatch:
    return make_batch(token, [OverridePatch.replace(BPM_TARGET_PTR, value)], **kwargs)


# =============================================================================
# STORAGE DOUBLES
# =============================================================================

class GatedStorageWriter(StorageWriter):
    """
    StorageWriter whose durable writes wait for an explicit release.

    Lets a test decide the completion order of concurrent writes.
    """

    def __init__(self, storage: RulesetStorageEngine, timeout_seconds: float = 5.0):
        super().__init__(storage, timeout_seconds)
        self._gates: Dict[int, asyncio.Event] = {}
        self.completed = []

    def gate(self, token: int) -> asyncio.Event:
        return self._gates.setdefault(token, asyncio.Event())

    def release(self, token: int):
        self.gate(token).set()

    async def write_batch(self, batch: OverrideBatch) -> StorageWriteResult:
        await self.gate(batch.token).wait()
        result = await super().write_batch(batch)
        self.completed.append(batch.token)
        return result


class FailingStorageBackend(InMemoryStorageBackend):
    """Refuses every durable override write with an I/O error."""

    def write_override_batch(self, batch: OverrideBatch) -> StorageWriteResult:
        raise PersistenceError("disk full", context=(("batch_id", batch.batch_id),))


class SlowStorageBackend(InMemoryStorageBackend):
    """Durable override writes block the worker thread for `delay` seconds."""

    def __init__(self, delay: float = 0.3):
        super().__init__()
        self._delay = delay

    def write_override_batch(self, batch: OverrideBatch) -> StorageWriteResult:
        time.sleep(self._delay)
        return super().write_override_batch(batch)


def make_gated_backend():
    """
    RulesetBackend whose durable writes go through a GatedStorageWriter.

    The writer and the backend share one storage backend instance.
    """
    store = InMemoryStorageBackend()
    writer = GatedStorageWriter(RulesetStorageEngine(backend=store))
    return RulesetBackend(BackendConfig(), storage_backend=store, writer=writer), writer
