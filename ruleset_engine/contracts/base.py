"""
Base Contracts and Shared Types

These are the foundational types used across all layers.
All types here are IMMUTABLE and represent pure data.

BOUNDARY ENFORCEMENT:
=====================
- This module is READ-ONLY from all layers
- Layers may import types but MUST NOT modify this module
- All types are frozen dataclasses or enums
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Tuple
from enum import Enum, auto
import hashlib


# =============================================================================
# ERROR STATES (Explicit, never silent)
# =============================================================================

class ErrorCode(Enum):
    """
    Explicit error codes for deterministic error handling.
    No silent fallbacks - every error state is enumerated.
    """
    # Lane policy errors
    UNKNOWN_LANE = auto()

    # Document errors
    MALFORMED_PATCH = auto()
    MALFORMED_RULESET = auto()
    UNKNOWN_FIELD_GROUP = auto()

    # Write path errors
    PERSISTENCE_FAILED = auto()
    WRITE_TIMEOUT = auto()
    RULESET_LOCKED = auto()

    # Session errors
    SESSION_NOT_FOUND = auto()


@dataclass(frozen=True)
class Error:
    """
    Immutable error representation with full context.
    Errors are data, not exceptions - they can be stored and queried.
    """
    code: ErrorCode
    message: str
    timestamp: datetime
    context: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "code": self.code.name,
            "message": self.message,
            "context": {k: v for k, v in self.context},
        }


# =============================================================================
# EXCEPTIONS (Pure-function failures propagate to the immediate caller)
# =============================================================================

class RulesetError(Exception):
    """
    Base class for failures raised by the pure layers.

    Every exception carries an ErrorCode so that callers at the API
    boundary can convert it back into an Error record without guessing.
    """
    code: ErrorCode = ErrorCode.MALFORMED_RULESET

    def __init__(self, message: str, context: Tuple[Tuple[str, str], ...] = ()):
        super().__init__(message)
        self.message = message
        self.context = tuple(context)

    def to_error(self) -> Error:
        return Error(
            code=self.code,
            message=self.message,
            timestamp=datetime.now(timezone.utc),
            context=self.context
        )


class UnknownLane(RulesetError):
    """Lane id is not registered in the lane policy table."""
    code = ErrorCode.UNKNOWN_LANE

    def __init__(self, lane_id: str):
        super().__init__(
            f"Unknown lane '{lane_id}'",
            context=(("lane", str(lane_id)),)
        )
        self.lane_id = lane_id


class MalformedPatch(RulesetError):
    """A patch in a batch cannot be applied; the whole batch is rejected."""
    code = ErrorCode.MALFORMED_PATCH

    def __init__(self, message: str, patch_index: Optional[int] = None, path: Optional[str] = None):
        context = []
        if patch_index is not None:
            context.append(("patch_index", str(patch_index)))
        if path is not None:
            context.append(("path", path))
        super().__init__(message, context=tuple(context))
        self.patch_index = patch_index
        self.path = path


class MalformedRuleset(RulesetError):
    """A ruleset document contains a value of an unsupported type."""
    code = ErrorCode.MALFORMED_RULESET


class PersistenceError(RulesetError):
    """Durable write failed at the I/O boundary."""
    code = ErrorCode.PERSISTENCE_FAILED


class WriteTimeout(PersistenceError):
    """Durable write did not settle within the I/O boundary timeout."""
    code = ErrorCode.WRITE_TIMEOUT


class MissingSession(RulesetError):
    """A run-scoped operation named no session, or an unknown one."""
    code = ErrorCode.SESSION_NOT_FOUND

    def __init__(self, session_id: Optional[str]):
        super().__init__(
            f"Session '{session_id}' not found" if session_id else "Run-scoped write requires a session_id",
            context=(("session_id", str(session_id)),)
        )
        self.session_id = session_id


# =============================================================================
# TEMPORAL TYPES (Immutable, explicit semantics)
# =============================================================================

@dataclass(frozen=True)
class Timestamp:
    """
    Immutable timestamp with explicit semantics.
    All timestamps are UTC, never local time.
    """
    value: datetime

    def __post_init__(self):
        if self.value.tzinfo is None:
            object.__setattr__(self, 'value', self.value.replace(tzinfo=timezone.utc))

    @staticmethod
    def now() -> Timestamp:
        return Timestamp(value=datetime.now(timezone.utc))

    @staticmethod
    def from_iso(iso_string: str) -> Timestamp:
        dt = datetime.fromisoformat(iso_string.replace('Z', '+00:00'))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return Timestamp(value=dt)

    def to_iso(self) -> str:
        return self.value.isoformat()


def content_id(prefix: str, *parts: str, length: int = 16) -> str:
    """Deterministic identifier derived from content."""
    seed = "|".join(parts)
    digest = hashlib.sha256(seed.encode('utf-8')).hexdigest()[:length]
    return f"{prefix}_{digest}"


# =============================================================================
# CLOSED-WORLD ENUMS
# =============================================================================

class Dimension(Enum):
    """
    Creative axes used to key suggestions, conflicts and provenance.
    Declaration order is the canonical sort order for conflicts.
    """
    PACING = "pacing"
    STAKES_LADDER = "stakes_ladder"
    DIALOGUE_STYLE = "dialogue_style"
    TWIST_BUDGET = "twist_budget"
    TEXTURE_REALISM = "texture_realism"
    ANTAGONISM_MODEL = "antagonism_model"
    FORBIDDEN_MOVES = "forbidden_moves"  # non-dimensional bucket

    @property
    def order(self) -> int:
        return list(Dimension).index(self)


class Severity(Enum):
    """Conflict severity. Rank drives sort order (hard first)."""
    HARD = "hard"
    WARN = "warn"
    INFO = "info"

    @property
    def rank(self) -> int:
        return {"hard": 0, "warn": 1, "info": 2}[self.value]


class Provenance(Enum):
    """Labeled origin of a resolved numeric value."""
    DERIVED = "derived"        # lane defaults
    SUGGESTED = "suggested"    # comps
    PRESET = "preset"          # named style/benchmark preset
    OVERRIDDEN = "overridden"  # explicit user edit
    CLAMPED = "clamped"        # altered to satisfy lane bounds


class Scope(Enum):
    """Where an override write lands."""
    RUN = "run"
    PROJECT_DEFAULT = "project_default"


class SuggestedAction(Enum):
    """Fixed vocabulary of conflict resolution actions."""
    HONOR_COMPS = "honor_comps"
    HONOR_OVERRIDES = "honor_overrides"
    BLEND = "blend"
