"""
Deployment API Router.

Provides REST API for the deployment controller:
- Register targets
- Start, inspect and cancel rollouts
- Read the current traffic split of a target
- Tail recent state transition events

Usage:
    from api.deployment_router import router as deployment_router, set_controller
    set_controller(controller)
    app.include_router(deployment_router, tags=["deployments"])
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from deployctl.config import AppConfig, get_environment_config
from deployctl.config_schemas import TargetDeploymentSchema, validate_target_config
from deployctl.core.exceptions import (
    ConcurrentDeploymentError,
    ConfigError,
    SessionNotFoundError,
)
from deployctl.deployment.builder import Controller
from deployctl.deployment.models import DeploymentSession, TrafficSplit, Version

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/deployments")

_controller: Optional[Controller] = None
_config: Optional[AppConfig] = None


def set_controller(controller: Optional[Controller], config: Optional[AppConfig] = None) -> None:
    """Install the controller served by this router (None to detach)."""
    global _controller, _config
    _controller = controller
    _config = config


def get_controller() -> Optional[Controller]:
    return _controller


def _require_controller() -> Controller:
    if _controller is None:
        raise HTTPException(
            status_code=503,
            detail="Deployment controller not available",
        )
    return _controller


# Pydantic models for API
class TargetRequest(BaseModel):
    """Request model for registering a target."""

    name: str = Field(..., min_length=1, max_length=200)
    stable_version: str = Field(..., min_length=1, max_length=200)
    environment: Optional[str] = None


class RolloutRequest(BaseModel):
    """Request model for starting a rollout."""

    target: str = Field(..., min_length=1, max_length=200)
    candidate_version: str = Field(..., min_length=1, max_length=200)
    environment: Optional[str] = None
    config: Optional[Dict[str, Any]] = None  # Inline target deployment config


class HistoryEntryResponse(BaseModel):
    step_index: int
    percentage: float
    verdict: Optional[str]
    timestamp: str
    event: str
    detail: Optional[str] = None


class SessionResponse(BaseModel):
    """Response model for a deployment session."""

    session_id: str
    target: str
    stable_version: str
    candidate_version: str
    strategy: Dict[str, Any]
    state: str
    current_step_index: int
    steps: List[Dict[str, float]]
    started_at: str
    finished_at: Optional[str] = None
    error: Optional[str] = None
    escalated: bool = False
    alarm_name: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    history: List[HistoryEntryResponse] = Field(default_factory=list)


class SplitResponse(BaseModel):
    target: str
    stable: float
    candidate: float


def _session_response(session: DeploymentSession) -> SessionResponse:
    data = session.to_dict()
    data["stable_version"] = session.stable_version.id
    data["candidate_version"] = session.candidate_version.id
    return SessionResponse(**{k: v for k, v in data.items() if k != "alarm"})


def _resolve_target_config(
    environment: Optional[str],
    inline: Optional[Dict[str, Any]],
) -> Optional[TargetDeploymentSchema]:
    if inline is not None:
        return validate_target_config(inline)
    if environment is not None:
        return get_environment_config(environment, _config)
    return None


@router.post("/targets")
async def register_target(request: TargetRequest):
    """
    Register a deployable target.

    Args:
        request: Target name, stable version and optional environment

    Returns:
        Registered target details
    """
    controller = _require_controller()

    try:
        target_config = _resolve_target_config(request.environment, None)
        controller.register_target(
            request.name, Version(request.stable_version), target_config
        )
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except ConcurrentDeploymentError as e:
        raise HTTPException(status_code=409, detail=e.message)

    pool = controller.pools.get(request.name)
    return {
        "name": request.name,
        "stable_version": request.stable_version,
        "warm_pool": pool.to_dict() if pool else None,
    }


@router.post("/rollouts", response_model=SessionResponse, status_code=201)
async def start_rollout(request: RolloutRequest):
    """
    Start a rollout.

    Either ``environment`` (a configured environment name) or ``config``
    (an inline deployment configuration) selects strategy and alarm.
    """
    controller = _require_controller()

    try:
        target_config = _resolve_target_config(request.environment, request.config)
        if target_config is None:
            raise ConfigError("Either environment or config is required")
        handle = await controller.start_rollout(
            request.target, Version(request.candidate_version), target_config
        )
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except ConcurrentDeploymentError as e:
        raise HTTPException(status_code=409, detail=e.message)

    logger.info(f"Rollout {handle.session_id} started via API on {request.target}")
    return _session_response(controller.orchestrator.get_session_status(handle.session_id))


@router.get("/rollouts", response_model=List[SessionResponse])
async def list_rollouts(active_only: bool = Query(False)):
    """List sessions, archived first."""
    controller = _require_controller()
    sessions = controller.orchestrator.list_sessions(active_only=active_only)
    return [_session_response(s) for s in sessions]


@router.get("/rollouts/{session_id}", response_model=SessionResponse)
async def get_rollout(session_id: str):
    """
    Get a rollout's current status.

    Args:
        session_id: Session to retrieve

    Returns:
        Session snapshot
    """
    controller = _require_controller()

    try:
        session = controller.orchestrator.get_session_status(session_id)
    except SessionNotFoundError:
        raise HTTPException(
            status_code=404,
            detail=f"Session '{session_id}' not found",
        )
    return _session_response(session)


@router.post("/rollouts/{session_id}/cancel")
async def cancel_rollout(session_id: str):
    """
    Request cancellation of a rollout.

    Returns:
        Whether the cancellation was accepted
    """
    controller = _require_controller()

    try:
        cancelled = controller.orchestrator.cancel(session_id)
    except SessionNotFoundError:
        raise HTTPException(
            status_code=404,
            detail=f"Session '{session_id}' not found",
        )
    return {"session_id": session_id, "cancelled": cancelled}


@router.get("/targets/{name}/split", response_model=SplitResponse)
async def get_split(name: str):
    """Current traffic split of a target."""
    controller = _require_controller()

    if name not in controller.orchestrator.targets():
        raise HTTPException(
            status_code=404,
            detail=f"Target '{name}' not found",
        )

    split = controller.orchestrator.router.current_split(name) or TrafficSplit.all_stable()
    return SplitResponse(target=name, stable=split.stable, candidate=split.candidate)


@router.get("/events")
async def recent_events(limit: int = Query(50, ge=1, le=500)):
    """Most recent state transition events, oldest first."""
    controller = _require_controller()
    return [event.to_dict() for event in controller.events.recent(limit)]
