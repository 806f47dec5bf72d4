"""
Patch Applier

RESPONSIBILITY: Apply an ordered batch of override patches to a ruleset
ALLOWED INPUTS: Ruleset, sequence of OverridePatch (or patch mappings)
OUTPUTS: A NEW Ruleset, or MalformedPatch

WHAT THIS LAYER MUST NOT DO:
============================
- Mutate the base ruleset
- Partially apply a batch (any failure rejects the whole batch)
- Create intermediate objects implicitly
- Merge unknown top-level groups

PATH SYNTAX:
============
JSON-pointer-like: "/pacing_profile/beats_per_minute/target".
"~1" decodes to "/" and "~0" to "~". "/" (or "") addresses the whole
document. In lists, a numeric segment addresses an existing element and
"-" appends (add only).
"""

from __future__ import annotations
from typing import Any, Iterable, List, Mapping, Sequence, Tuple, Union

from .contracts.base import MalformedPatch, MalformedRuleset
from .contracts.rules import (
    FIELD_GROUPS, Ruleset, normalize_value, split_pointer, to_dotted,
)
from .contracts.events import OverridePatch, PatchOp, canonical

PatchLike = Union[OverridePatch, Mapping[str, Any]]

DOCUMENT_TARGET = "document"


def coerce_patches(patches: Iterable[PatchLike]) -> Tuple[OverridePatch, ...]:
    """Convert raw patch mappings to OverridePatch, reporting the bad index."""
    result = []
    for index, patch in enumerate(patches):
        if isinstance(patch, OverridePatch):
            result.append(patch)
        else:
            result.append(OverridePatch.from_dict(patch, index=index))
    return tuple(result)


def _segments(patch: OverridePatch, index: int) -> List[str]:
    try:
        return split_pointer(patch.path)
    except ValueError as exc:
        raise MalformedPatch(str(exc), patch_index=index, path=patch.path) from None


def _list_index(segment: str, size: int, allow_end: bool) -> int:
    if not segment.isdigit():
        return -1
    position = int(segment)
    limit = size if allow_end else size - 1
    return position if position <= limit else -1


def _apply_one(document: dict, patch: OverridePatch, index: int) -> None:
    segments = _segments(patch, index)
    dotted = to_dotted(segments)

    if any(segment == "" for segment in segments):
        raise MalformedPatch("Empty path segment", patch_index=index, path=patch.path)
    if segments[0] not in FIELD_GROUPS:
        raise MalformedPatch(
            f"Unknown field group '{segments[0]}'", patch_index=index, path=patch.path
        )

    value = None
    if patch.op is not PatchOp.REMOVE:
        try:
            value = normalize_value(patch.value, dotted)
        except MalformedRuleset as exc:
            raise MalformedPatch(exc.message, patch_index=index, path=patch.path) from None

    parent: Any = document
    for depth, segment in enumerate(segments[:-1]):
        if isinstance(parent, dict) and segment in parent:
            child = parent[segment]
        elif isinstance(parent, list) and _list_index(segment, len(parent), False) >= 0:
            child = parent[int(segment)]
        else:
            missing = to_dotted(segments[:depth + 1])
            raise MalformedPatch(
                f"Intermediate path '{missing}' does not exist", patch_index=index, path=patch.path
            )
        if not isinstance(child, (dict, list)):
            raise MalformedPatch(
                f"'{to_dotted(segments[:depth + 1])}' is not an object or list",
                patch_index=index, path=patch.path
            )
        parent = child

    leaf = segments[-1]
    if isinstance(parent, dict):
        if patch.op is PatchOp.REMOVE:
            if leaf not in parent:
                raise MalformedPatch(
                    f"Cannot remove missing field '{dotted}'", patch_index=index, path=patch.path
                )
            del parent[leaf]
        else:
            parent[leaf] = value
        return

    # List element
    if patch.op is not PatchOp.REMOVE and not isinstance(value, str):
        raise MalformedPatch(
            f"List elements at '{dotted}' must be strings", patch_index=index, path=patch.path
        )
    if patch.op is PatchOp.ADD:
        if leaf == "-":
            parent.append(value)
            return
        position = _list_index(leaf, len(parent), True)
        if position < 0:
            raise MalformedPatch(
                f"List index '{leaf}' out of range", patch_index=index, path=patch.path
            )
        parent.insert(position, value)
        return
    position = _list_index(leaf, len(parent), False)
    if position < 0:
        raise MalformedPatch(
            f"List index '{leaf}' out of range", patch_index=index, path=patch.path
        )
    if patch.op is PatchOp.REMOVE:
        parent.pop(position)
    else:
        parent[position] = value


def apply_patches(base: Union[Ruleset, Mapping[str, Any]], patches: Sequence[PatchLike]) -> Ruleset:
    """
    Apply `patches` in order and return a new Ruleset.

    Raises MalformedPatch (with the failing patch index) if any patch
    cannot be applied; `base` is never modified.
    """
    ruleset = base if isinstance(base, Ruleset) else Ruleset.from_dict(base)
    document = ruleset.to_dict()
    quarantined = ruleset.quarantined

    for index, patch in enumerate(coerce_patches(patches)):
        if split_pointer_safe(patch.path) == []:
            if patch.op is not PatchOp.REPLACE:
                raise MalformedPatch(
                    "Only 'replace' may target the whole document", patch_index=index, path=patch.path
                )
            if not isinstance(patch.value, Mapping):
                raise MalformedPatch(
                    "Whole-document replacement requires an object", patch_index=index, path=patch.path
                )
            try:
                replacement = Ruleset.from_dict(patch.value)
            except MalformedRuleset as exc:
                raise MalformedPatch(exc.message, patch_index=index, path=patch.path) from None
            document = replacement.to_dict()
            quarantined = replacement.quarantined
            continue
        _apply_one(document, patch, index)

    return Ruleset(document, quarantined)


def split_pointer_safe(path: str) -> List[str]:
    try:
        return split_pointer(path)
    except ValueError:
        return ["<invalid>"]


# =============================================================================
# PATCH INSPECTION
# =============================================================================

def patch_summary(patches: Sequence[PatchLike]) -> str:
    """Human readable one-line summary: 'replace /a/b = 3; remove /c'."""
    parts = []
    for patch in coerce_patches(patches):
        if patch.op is PatchOp.REMOVE:
            parts.append(f"remove {patch.path}")
        else:
            parts.append(f"{patch.op.value} {patch.path} = {canonical(patch.value)}")
    return "; ".join(parts)


def touched_paths(patches: Sequence[PatchLike]) -> Tuple[str, ...]:
    """
    Dotted paths the batch writes to, truncated at list elements.

    "" stands for the whole document.
    """
    touched = set()
    for patch in coerce_patches(patches):
        segments = split_pointer_safe(patch.path)
        kept = []
        for segment in segments:
            if segment == "-" or segment.isdigit():
                break
            kept.append(segment)
        touched.add(to_dotted(kept))
    return tuple(sorted(touched))


def path_touched(path: str, prefixes: Iterable[str]) -> bool:
    """True if dotted `path` equals, or sits below, any touched prefix."""
    for prefix in prefixes:
        if prefix == "" or path == prefix or path.startswith(prefix + "."):
            return True
    return False


def derive_target(patches: Sequence[PatchLike]) -> str:
    """Logical write target: the single field group touched, or a join of them."""
    groups = set()
    for path in touched_paths(patches):
        if path == "":
            return DOCUMENT_TARGET
        groups.add(path.split(".")[0])
    return "+".join(sorted(groups)) or DOCUMENT_TARGET
