"""
Ruleset Document Contract

The ruleset is a tree keyed by a FIXED, enumerated set of field groups.
Leaf values are numbers, strings, booleans or lists of strings; inner
nodes are objects.

WHY A CLASS AND NOT A DICT:
- Consumers must never mutate a published ruleset in place
- Every read returns a copy, every change produces a new Ruleset
- Equality and hashing go through canonical JSON, so two rulesets built
  along different paths compare equal when their content is equal

UNKNOWN FIELDS:
Top-level keys outside FIELD_GROUPS are QUARANTINED: kept aside on the
document for inspection, never merged into the effective rules.
"""

from __future__ import annotations
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple
import copy
import hashlib
import json
import math

from .base import MalformedRuleset, ErrorCode


FIELD_GROUPS: Tuple[str, ...] = (
    "version",
    "lane",
    "engine",
    "pacing_profile",
    "stakes_ladder",
    "budgets",
    "dialogue_rules",
    "texture_rules",
    "antagonism_model",
    "forbidden_moves",
    "signature_devices",
    "gate_thresholds",
)

_MISSING = object()


# =============================================================================
# VALUE HELPERS
# =============================================================================

def is_number(value: Any) -> bool:
    """True for int/float, excluding bool."""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_finite_number(value: Any) -> bool:
    return is_number(value) and math.isfinite(value)


def normalize_value(value: Any, path: str = "") -> Any:
    """
    Validate a candidate value and return a detached copy of it.

    Raises MalformedRuleset for anything outside the supported shapes.
    """
    if isinstance(value, (bool, str)) or is_number(value):
        return value
    if isinstance(value, (list, tuple)):
        items = list(value)
        for item in items:
            if not isinstance(item, str):
                raise MalformedRuleset(
                    f"List at '{path or '/'}' must contain only strings",
                    context=(("path", path or "/"),)
                )
        return items
    if isinstance(value, Mapping):
        result = {}
        for key, child in value.items():
            if not isinstance(key, str):
                raise MalformedRuleset(
                    f"Non-string key under '{path or '/'}'",
                    context=(("path", path or "/"),)
                )
            result[key] = normalize_value(child, f"{path}.{key}" if path else key)
        return result
    raise MalformedRuleset(
        f"Unsupported value type {type(value).__name__} at '{path or '/'}'",
        context=(("path", path or "/"),)
    )


# =============================================================================
# PATH HELPERS
# =============================================================================

def split_pointer(path: str) -> List[str]:
    """
    Split a JSON-pointer-like path into segments.

    "/" and "" address the whole document and return [].
    """
    if path in ("", "/"):
        return []
    if not path.startswith("/"):
        raise ValueError(f"Pointer path must start with '/': {path!r}")
    return [
        segment.replace("~1", "/").replace("~0", "~")
        for segment in path[1:].split("/")
    ]


def split_path(path: str) -> List[str]:
    """Accept either a pointer path ('/a/b') or a dotted path ('a.b')."""
    if path.startswith("/") or path == "":
        return split_pointer(path)
    return path.split(".")


def to_pointer(segments: List[str]) -> str:
    if not segments:
        return "/"
    return "/" + "/".join(s.replace("~", "~0").replace("/", "~1") for s in segments)


def to_dotted(segments: List[str]) -> str:
    return ".".join(segments)


def pointer_to_dotted(path: str) -> str:
    return to_dotted(split_pointer(path))


def dotted_to_pointer(path: str) -> str:
    return to_pointer(path.split(".")) if path else "/"


def _descend(node: Any, segment: str) -> Any:
    if isinstance(node, dict):
        return node.get(segment, _MISSING)
    if isinstance(node, list):
        if segment.isdigit() and int(segment) < len(node):
            return node[int(segment)]
    return _MISSING


def _walk_leaves(node: Any, prefix: List[str]) -> Iterator[Tuple[str, Any]]:
    if isinstance(node, dict):
        for key in sorted(node):
            yield from _walk_leaves(node[key], prefix + [key])
    else:
        yield to_dotted(prefix), node


# =============================================================================
# RULESET
# =============================================================================

class Ruleset:
    """
    Immutable ruleset document.

    GUARANTEES:
    ===========
    1. No method mutates the document
    2. Readers receive copies, never internal references
    3. Equal content -> equal rulesets -> equal hashes
    """

    __slots__ = ("_tree", "_quarantined", "_canonical")

    def __init__(self, tree: Optional[Mapping[str, Any]] = None,
                 quarantined: Optional[Mapping[str, Any]] = None):
        self._tree: Dict[str, Any] = copy.deepcopy(dict(tree or {}))
        self._quarantined: Dict[str, Any] = copy.deepcopy(dict(quarantined or {}))
        self._canonical = json.dumps(self._tree, sort_keys=True, separators=(",", ":"))

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @staticmethod
    def from_dict(data: Mapping[str, Any], strict: bool = False) -> Ruleset:
        """
        Build a ruleset from a loosely typed mapping.

        Unknown top-level groups are quarantined, or rejected when strict.
        """
        if not isinstance(data, Mapping):
            raise MalformedRuleset("Ruleset document must be an object")
        tree: Dict[str, Any] = {}
        quarantined: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in FIELD_GROUPS:
                if strict:
                    error = MalformedRuleset(
                        f"Unknown field group '{key}'",
                        context=(("group", str(key)),)
                    )
                    error.code = ErrorCode.UNKNOWN_FIELD_GROUP
                    raise error
                quarantined[str(key)] = copy.deepcopy(value)
                continue
            tree[key] = normalize_value(value, key)
        return Ruleset(tree, quarantined)

    @staticmethod
    def empty() -> Ruleset:
        return Ruleset()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Deep, detached copy of the effective document."""
        return copy.deepcopy(self._tree)

    def get(self, path: str, default: Any = None) -> Any:
        """Read a node by pointer or dotted path (copy)."""
        node: Any = self._tree
        for segment in split_path(path):
            node = _descend(node, segment)
            if node is _MISSING:
                return default
        return copy.deepcopy(node)

    def has(self, path: str) -> bool:
        node: Any = self._tree
        for segment in split_path(path):
            node = _descend(node, segment)
            if node is _MISSING:
                return False
        return True

    @property
    def groups(self) -> Tuple[str, ...]:
        return tuple(g for g in FIELD_GROUPS if g in self._tree)

    @property
    def quarantined(self) -> Dict[str, Any]:
        return copy.deepcopy(self._quarantined)

    @property
    def lane(self) -> Optional[str]:
        lane = self._tree.get("lane")
        return lane if isinstance(lane, str) else None

    def leaves(self) -> Iterator[Tuple[str, Any]]:
        """All leaves as (dotted_path, value), sorted by path."""
        for group in sorted(self._tree):
            yield from _walk_leaves(copy.deepcopy(self._tree[group]), [group])

    def numeric_leaves(self) -> Iterator[Tuple[str, Any]]:
        for path, value in self.leaves():
            if is_number(value):
                yield path, value

    def canonical_json(self) -> str:
        return self._canonical

    def fingerprint(self) -> str:
        return hashlib.sha256(self._canonical.encode("utf-8")).hexdigest()

    # -------------------------------------------------------------------------
    # Derivation (always returns a new Ruleset)
    # -------------------------------------------------------------------------

    def with_value(self, path: str, value: Any) -> Ruleset:
        """
        Return a copy with one existing-parent leaf set.

        Used by trusted internal callers (clamp, resolution). User edits go
        through the patch applier, which enforces full patch semantics.
        """
        segments = split_path(path)
        if not segments:
            raise MalformedRuleset("with_value requires a non-root path")
        tree = self.to_dict()
        node: Any = tree
        for segment in segments[:-1]:
            node = _descend(node, segment)
            if node is _MISSING or not isinstance(node, (dict, list)):
                raise MalformedRuleset(
                    f"Parent of '{to_dotted(segments)}' does not exist",
                    context=(("path", to_dotted(segments)),)
                )
        leaf = segments[-1]
        detached = normalize_value(value, to_dotted(segments))
        if isinstance(node, list):
            node[int(leaf)] = detached
        else:
            node[leaf] = detached
        return Ruleset(tree, self._quarantined)

    # -------------------------------------------------------------------------
    # Dunder
    # -------------------------------------------------------------------------

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Ruleset):
            return NotImplemented
        return self._canonical == other._canonical

    def __hash__(self) -> int:
        return hash(self._canonical)

    def __repr__(self) -> str:
        return f"Ruleset(groups={list(self.groups)}, fingerprint={self.fingerprint()[:12]})"
