"""
API Mapper
==========

Transforms internal contract records into JSON-ready DTOs, and inbound
request models into contract records.
"""
from typing import Any, Dict, List

from ..contracts.base import Scope, RulesetError
from ..contracts.events import (
    ClampResult, CompsCandidate, CompsSuggestion, EngineProfile,
    OverridePatch, OverrideWriteRequest, OverrideWriteResponse,
)
from ..lanes.policy import KnobBounds
from ..resolution import RecommendedPlan
from .schemas import CompsRequestModel, OverrideRequestModel


def map_profile_to_dto(profile: EngineProfile) -> Dict[str, Any]:
    """Resolved ruleset read: {id, rules, rules_summary, conflicts, ...}."""
    return profile.to_dict()


def map_history_to_dto(history: List[EngineProfile]) -> Dict[str, Any]:
    return {
        "versions": [
            {
                "id": p.id,
                "version": p.version,
                "parent_id": p.parent_id,
                "strategy": p.strategy.value,
                "conflicts": len(p.conflicts),
                "hard_conflicts": p.has_hard_conflicts,
                "created_at": p.created_at.to_iso() if p.created_at else None,
            }
            for p in history
        ]
    }


def map_write_response_to_dto(response: OverrideWriteResponse) -> Dict[str, Any]:
    return {
        "outcome": response.outcome.to_dict(),
        "profile": map_profile_to_dto(response.profile) if response.profile else None,
        "conflicts": [c.to_dict() for c in response.conflicts],
    }


def map_clamp_result_to_dto(result: ClampResult) -> Dict[str, Any]:
    return {
        "rules": result.rules.to_dict(),
        "warnings": list(result.warnings),
        "adjustments": [
            {
                "path": a.path,
                "original": a.original,
                "applied": a.applied,
                "bound": a.bound,
                "kind": a.kind.value,
                "bypassed": a.bypassed,
            }
            for a in result.adjustments
        ],
    }


def map_bounds_to_dto(lane: str, bounds: Dict[str, KnobBounds]) -> Dict[str, Any]:
    return {"lane": lane, "bounds": {path: b.to_dict() for path, b in sorted(bounds.items())}}


def map_plan_to_dto(plan: RecommendedPlan) -> Dict[str, Any]:
    return plan.to_dict()


def map_error_to_dto(error: RulesetError) -> Dict[str, Any]:
    return {"error": error.to_error().to_dict()}


def map_override_request(model: OverrideRequestModel) -> OverrideWriteRequest:
    patches = tuple(
        OverridePatch.from_dict(p.model_dump(exclude_unset=True), index=i)
        for i, p in enumerate(model.patch)
    )
    return OverrideWriteRequest(
        project_id=model.project_id,
        lane=model.lane,
        patches=patches,
        scope=Scope(model.scope),
        user_id=model.user_id,
        session_id=model.session_id,
        target=model.target,
        token=model.token
    )


def map_comps_request(model: CompsRequestModel):
    candidates = tuple(CompsCandidate.from_dict(c.model_dump()) for c in model.candidates)
    titles = tuple(model.titles) or tuple(c.title for c in candidates)
    return candidates, CompsSuggestion.from_partial(model.suggestion, titles)
