"""
Execution endpoints.

Start plan runs in the background and track them by session id.
"""

import logging
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from ralph.api.dependencies import get_registry, get_run_manager
from ralph.api.models import (
    DeleteSessionResponse,
    ExecuteRequest,
    ExecuteResponse,
    PlanInfo,
    RunOptions,
    SessionsResponse,
    SessionSummary,
    StatusResponse,
)
from ralph.api.run_manager import RunManager
from ralph.models import RegisteredPlan
from ralph.registry import PlanRegistry, derive_plan_id

logger = logging.getLogger(__name__)

router = APIRouter()


def looks_like_path(plan_ref: str) -> bool:
    """Whether an /execute ``plan`` value names a file rather than a registry id."""
    return (
        Path(plan_ref).is_absolute()
        or plan_ref.startswith("plans/")
        or plan_ref.endswith(".md")
        or "/" in plan_ref
        or "\\" in plan_ref
    )


def _unused_plan_id(registry: PlanRegistry, plan_id: str) -> str:
    candidate, n = plan_id, 2
    while registry.get(candidate, touch=False) is not None:
        candidate = f"{plan_id}-{n}"
        n += 1
    return candidate


def resolve_plan_reference(
    registry: PlanRegistry, plan_ref: str, directory: str | None
) -> RegisteredPlan:
    """Registered plan for an id or a file path, registering new files on the fly."""
    registered = registry.get(plan_ref)
    if registered is not None:
        return registered
    if not looks_like_path(plan_ref):
        raise HTTPException(
            status_code=404,
            detail=f"Plan {plan_ref} is not registered. Register it or pass a file path.",
        )

    root = Path(directory).expanduser() if directory else Path.cwd()
    path = Path(plan_ref).expanduser()
    path = path if path.is_absolute() else root / path
    if not path.is_file():
        raise HTTPException(status_code=404, detail=f"Plan file not found: {path}")

    existing = registry.find_by_path(path)
    if existing is not None:
        return existing
    plan_id = _unused_plan_id(registry, derive_plan_id(path))
    logger.info(f"Auto-registering {path} as {plan_id}")
    return registry.register(plan_id, root, path)


def run_overrides(options: RunOptions) -> dict[str, Any]:
    """RalphConfig overrides for request options; unset options keep server defaults."""
    return {
        "project_root": options.directory,
        "auto_commit": False if options.no_commit else None,
        "auto_test": True if options.auto_test else None,
        "require_acceptance_criteria": True if options.require_acceptance_criteria else None,
        "max_retries": options.max_retries,
        "max_parallel_tasks": options.max_parallel,
        "model": options.model,
        "resume": True if options.resume else None,
    }


async def launch_run(
    runs: RunManager, plan: RegisteredPlan, options: RunOptions, message: str
) -> ExecuteResponse:
    if runs.active_for_plan(plan.plan_id) is not None:
        raise HTTPException(status_code=409, detail=f"Plan {plan.plan_id} is already running")

    config = runs.config_for(plan, **run_overrides(options))
    handle = await runs.start(plan, config)
    assert handle.engine.plan is not None
    return ExecuteResponse(
        session_id=handle.session_id,
        plan=PlanInfo(
            title=handle.engine.plan.project_name,
            total_tasks=handle.engine.plan.total_tasks,
        ),
        plan_id=plan.plan_id,
        project_root=str(handle.engine.project_root),
        message=message,
    )


@router.post("/execute", response_model=ExecuteResponse)
async def execute_plan(
    request: ExecuteRequest,
    registry: PlanRegistry = Depends(get_registry),
    runs: RunManager = Depends(get_run_manager),
) -> ExecuteResponse:
    """
    Start executing a plan in the background.

    ``plan`` is a registered plan id or a path to a plan file; unknown files
    are registered automatically. Poll ``/status/{sessionId}`` or subscribe
    to ``/events/stream`` for progress.
    """
    plan = resolve_plan_reference(registry, request.plan, request.directory)
    return await launch_run(runs, plan, request, "Execution started in background")


@router.get("/status/{session_id}", response_model=StatusResponse, response_model_exclude_none=True)
async def get_run_status(
    session_id: str, runs: RunManager = Depends(get_run_manager)
) -> StatusResponse:
    handle = runs.get(session_id)
    if handle is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return StatusResponse.model_validate(handle.to_status())


@router.get("/sessions", response_model=SessionsResponse)
async def list_sessions(runs: RunManager = Depends(get_run_manager)) -> SessionsResponse:
    """Runs started by this server, oldest first."""
    return SessionsResponse(
        sessions=[
            SessionSummary(
                session_id=handle.session_id,
                plan_id=handle.plan_id,
                status=handle.status,
                error=handle.error,
            )
            for handle in runs.list()
        ]
    )


@router.delete("/sessions/{session_id}", response_model=DeleteSessionResponse)
async def delete_session(
    session_id: str, runs: RunManager = Depends(get_run_manager)
) -> DeleteSessionResponse:
    """Stop a run if it is still going and forget it.

    The session file stays on disk so the plan can be resumed.
    """
    if not await runs.delete(session_id):
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return DeleteSessionResponse(session_id=session_id, message="Session stopped and removed")
