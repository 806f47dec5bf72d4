"""
Ruleset Engine: API Server
==========================

HTTP surface over RulesetBackend.

Endpoints:
- GET    /health
- GET    /api/v1/lanes                                        -> Lane registry
- GET    /api/v1/lanes/{lane}/bounds                          -> Clamp table
- GET    /api/v1/projects/{project_id}/lanes/{lane}/profile   -> Resolved ruleset
- GET    /api/v1/projects/{project_id}/lanes/{lane}/history   -> Published versions
- GET    /api/v1/projects/{project_id}/lanes/{lane}/settings  -> Project settings
- PUT    /api/v1/projects/{project_id}/lanes/{lane}/settings  -> Lock / bypass / presets
- PUT    /api/v1/projects/{project_id}/lanes/{lane}/comps     -> Comps input
- POST   /api/v1/projects/{project_id}/lanes/{lane}/rebuild   -> Rebuild with strategy
- POST   /api/v1/projects/{project_id}/lanes/{lane}/apply-recommended
- POST   /api/v1/lanes/{lane}/preview                         -> Preview clamp
- POST   /api/v1/overrides                                    -> Override write
- DELETE /api/v1/sessions/{session_id}                        -> End a run session
- GET    /api/v1/audit                                        -> Audit report

Usage:
    uvicorn ruleset_engine.api.server:app --reload
"""
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..engine import RulesetBackend, BackendConfig
from ..storage import StorageConfig
from ..contracts.base import (
    RulesetError, UnknownLane, MalformedPatch, MalformedRuleset,
    MissingSession, PersistenceError, WriteTimeout,
)
from ..contracts.events import ResolutionStrategy, WriteStatus
from ..lanes.policy import LANE_POLICIES, registered_lanes
from .mapper import (
    map_bounds_to_dto, map_clamp_result_to_dto, map_comps_request, map_error_to_dto,
    map_history_to_dto, map_override_request, map_plan_to_dto, map_profile_to_dto,
    map_write_response_to_dto,
)
from .schemas import (
    CompsRequestModel, OverrideRequestModel, PreviewRequestModel,
    RebuildRequestModel, SettingsRequestModel,
)

# =============================================================================
# INFRASTRUCTURE SETUP
# =============================================================================

# Global Backend Instance
backend_instance: Optional[RulesetBackend] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize backend on startup."""
    global backend_instance

    backend_type = os.environ.get("RULESET_STORAGE_BACKEND", "memory")
    storage_dir = os.environ.get(
        "RULESET_STORAGE_DIR", os.path.join(os.getcwd(), "data", "rulesets")
    )
    timeout = float(os.environ.get("RULESET_WRITE_TIMEOUT", "5.0"))

    print(f"[*] Initializing Ruleset Backend ({backend_type}) at: {storage_dir}")

    config = BackendConfig(
        storage=StorageConfig(
            backend_type=backend_type,
            storage_dir=storage_dir if backend_type == "file" else None
        )
    )
    config.coordinator.write_timeout_seconds = timeout

    try:
        backend_instance = RulesetBackend(config)
        print("[*] Backend initialized successfully.")
    except Exception as e:
        print(f"[!] FAILED to initialize backend: {e}")
        raise e

    yield

    print("[*] Shutting down backend.")
    backend_instance = None

app = FastAPI(
    title="Ruleset Engine API",
    version="0.1.0",
    description="Lane-bounded ruleset resolution with comps and user overrides",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)


def _backend() -> RulesetBackend:
    if not backend_instance:
        raise HTTPException(status_code=503, detail="Backend not initialized")
    return backend_instance


# =============================================================================
# ERROR MAPPING
# =============================================================================

def _status_for(exc: RulesetError) -> int:
    if isinstance(exc, (UnknownLane, MissingSession)):
        return 404
    if isinstance(exc, (MalformedPatch, MalformedRuleset)):
        return 422
    if isinstance(exc, WriteTimeout):
        return 504
    if isinstance(exc, PersistenceError):
        return 503
    return 400


@app.exception_handler(RulesetError)
async def ruleset_error_handler(request: Request, exc: RulesetError):
    return JSONResponse(status_code=_status_for(exc), content=map_error_to_dto(exc))


# =============================================================================
# LANES
# =============================================================================

@app.get("/health")
async def health_check():
    """System status."""
    _backend()
    return {"status": "online", "lanes": len(LANE_POLICIES)}


@app.get("/api/v1/lanes")
async def get_lanes():
    return {
        "lanes": [
            {"id": lane, "label": LANE_POLICIES[lane].label} for lane in registered_lanes()
        ]
    }


@app.get("/api/v1/lanes/{lane}/bounds")
async def get_lane_bounds(lane: str):
    """The exact table the clamp engine enforces for this lane."""
    return map_bounds_to_dto(lane, _backend().lane_bounds(lane))


@app.post("/api/v1/lanes/{lane}/preview")
async def preview_clamp(lane: str, body: PreviewRequestModel):
    """Preview clamp. Nothing is written."""
    result = _backend().preview(body.rules, lane, bypass=body.bypass)
    return map_clamp_result_to_dto(result)


# =============================================================================
# PROFILES
# =============================================================================

@app.get("/api/v1/projects/{project_id}/lanes/{lane}/profile")
async def get_profile(project_id: str, lane: str, session_id: Optional[str] = Query(None)):
    """
    Resolved ruleset read.
    With session_id, run overrides of that session are layered on top.
    """
    return map_profile_to_dto(_backend().get_profile(project_id, lane, session_id))


@app.get("/api/v1/projects/{project_id}/lanes/{lane}/history")
async def get_profile_history(project_id: str, lane: str):
    return map_history_to_dto(_backend().profile_history(project_id, lane))


@app.get("/api/v1/projects/{project_id}/lanes/{lane}/settings")
async def get_settings(project_id: str, lane: str):
    return _backend().settings(project_id, lane).to_dict()


@app.put("/api/v1/projects/{project_id}/lanes/{lane}/settings")
async def put_settings(project_id: str, lane: str, body: SettingsRequestModel):
    try:
        profile = _backend().update_settings(
            project_id, lane, **body.model_dump(exclude_unset=True)
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return map_profile_to_dto(profile)


@app.put("/api/v1/projects/{project_id}/lanes/{lane}/comps")
async def put_comps(project_id: str, lane: str, body: CompsRequestModel):
    candidates, suggestion = map_comps_request(body)
    profile = _backend().set_comps(project_id, lane, candidates, suggestion)
    return map_profile_to_dto(profile)


@app.post("/api/v1/projects/{project_id}/lanes/{lane}/rebuild")
async def rebuild_profile(project_id: str, lane: str, body: RebuildRequestModel):
    profile = _backend().rebuild(project_id, lane, ResolutionStrategy(body.strategy))
    return map_profile_to_dto(profile)


@app.post("/api/v1/projects/{project_id}/lanes/{lane}/apply-recommended")
async def apply_recommended(project_id: str, lane: str):
    profile, plan = _backend().apply_recommended(project_id, lane)
    return {"profile": map_profile_to_dto(profile), "plan": map_plan_to_dto(plan)}


# =============================================================================
# OVERRIDES & SESSIONS
# =============================================================================

@app.post("/api/v1/overrides")
async def post_override(body: OverrideRequestModel):
    """
    Override write.

    Committed and stale-discarded writes answer 200 with the outcome.
    A write skipped under lock answers 409; a failed durable write 503.
    Both still carry the current effective profile.
    """
    request = map_override_request(body)
    response = await _backend().apply_override(request)
    payload = map_write_response_to_dto(response)
    status = response.outcome.status
    if status is WriteStatus.SKIPPED_LOCKED:
        return JSONResponse(status_code=409, content=payload)
    if status is WriteStatus.FAILED:
        return JSONResponse(status_code=503, content=payload)
    return payload


@app.delete("/api/v1/sessions/{session_id}")
async def end_session(session_id: str):
    dropped = _backend().end_session(session_id)
    return {"session_id": session_id, "dropped_batches": dropped}


# =============================================================================
# OBSERVABILITY
# =============================================================================

@app.get("/api/v1/audit")
async def get_audit_report():
    return _backend().get_audit_report()
