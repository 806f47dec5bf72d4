"""
API request models (pydantic).

These validate the shape of inbound JSON only. Domain validation (lanes,
patch paths, value types) stays in the engine so that HTTP callers and
in-process callers get the same errors.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class PatchModel(BaseModel):
    op: Literal["replace", "add", "remove"] = "replace"
    path: str
    value: Any = None


class OverrideRequestModel(BaseModel):
    project_id: str
    lane: str
    user_id: Optional[str] = None
    scope: Literal["run", "project_default"] = "run"
    patch: List[PatchModel]
    session_id: Optional[str] = None
    target: Optional[str] = None
    token: Optional[int] = Field(default=None, ge=1)


class CompsCandidateModel(BaseModel):
    id: str
    title: str
    year: Optional[int] = None
    format: Optional[str] = None
    region: Optional[str] = None
    genres: List[str] = Field(default_factory=list)
    rationale: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    query: Optional[str] = None


class CompsRequestModel(BaseModel):
    candidates: List[CompsCandidateModel] = Field(default_factory=list)
    suggestion: Dict[str, Any] = Field(default_factory=dict)
    titles: List[str] = Field(default_factory=list)


class SettingsRequestModel(BaseModel):
    lock_ruleset: Optional[bool] = None
    bypass_clamps: Optional[bool] = None
    pacing_feel: Optional[str] = None
    style_benchmark: Optional[str] = None


class RebuildRequestModel(BaseModel):
    strategy: Literal[
        "precedence", "apply_recommended", "honor_overrides", "honor_comps"
    ] = "precedence"


class PreviewRequestModel(BaseModel):
    rules: Dict[str, Any]
    bypass: bool = False
