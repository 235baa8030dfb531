"""
Plan endpoints.

Registered plans with their runtime status, reconciled from the plan
document, the latest session file and git history.
"""

from pathlib import Path
from typing import Any

from fastapi import APIRouter, Body, Depends

from ralph.api.dependencies import get_registry, get_run_manager
from ralph.api.endpoints.execution import launch_run
from ralph.api.models import ExecuteResponse, RunOptions
from ralph.api.run_manager import RunManager
from ralph.errors import PlanError
from ralph.models import RegisteredPlan, Session, to_iso
from ralph.plan_parser import load_plan
from ralph.registry import PlanRegistry
from ralph.state import SessionStore
from ralph.status import PlanRuntimeStatus, plan_runtime_status

router = APIRouter()


def _latest_session(runs: RunManager, plan: RegisteredPlan) -> Session | None:
    config = runs.config_for(plan)
    return SessionStore(config.resolved_state_dir).load(plan.plan_path)


def _registry_fields(plan: RegisteredPlan) -> dict[str, Any]:
    return {
        "id": plan.plan_id,
        "path": plan.plan_path,
        "projectRoot": plan.project_root,
        "registeredAt": to_iso(plan.registered_at),
        "lastAccessed": to_iso(plan.last_accessed),
    }


def _counts(status: PlanRuntimeStatus) -> dict[str, Any]:
    return {
        "totalTasks": status.total,
        "completedTasks": status.completed,
        "inProgressTasks": status.in_progress,
        "blockedTasks": status.blocked,
        "pendingTasks": status.pending,
        "failedTasks": status.failed,
        "progress": status.progress,
    }


def plan_summary(runs: RunManager, registered: RegisteredPlan) -> dict[str, Any]:
    """List entry for one registered plan.

    A plan whose file is gone or unparsable is still listed, with zero
    counts and an ``error``.
    """
    summary = _registry_fields(registered)
    try:
        plan = load_plan(registered.plan_path, Path(registered.project_root))
    except PlanError as e:
        summary.update(
            title=registered.title,
            description="",
            totalTasks=0,
            completedTasks=0,
            inProgressTasks=0,
            blockedTasks=0,
            pendingTasks=0,
            failedTasks=0,
            progress=0,
            error=e.message,
        )
        return summary
    status = plan_runtime_status(
        plan, _latest_session(runs, registered), Path(registered.project_root)
    )
    summary.update(title=plan.project_name, description=plan.description, **_counts(status))
    return summary


@router.get("/plans")
def list_plans(
    registry: PlanRegistry = Depends(get_registry),
    runs: RunManager = Depends(get_run_manager),
) -> dict[str, Any]:
    """
    List registered plans with progress.

    Returns:
        dict: ``{"plans": [...]}``, most recently accessed first
    """
    return {"plans": [plan_summary(runs, registered) for registered in registry.list()]}


@router.get("/plans/{plan_id}")
def get_plan(
    plan_id: str,
    registry: PlanRegistry = Depends(get_registry),
    runs: RunManager = Depends(get_run_manager),
) -> dict[str, Any]:
    """
    Full plan with a runtime status per task.

    Raises 404 if the plan is not registered and 400 if its document
    cannot be parsed.
    """
    registered = registry.resolve(plan_id)
    root = Path(registered.project_root)
    plan = load_plan(registered.plan_path, root)
    session = _latest_session(runs, registered)
    status = plan_runtime_status(plan, session, root)

    tasks = []
    for task in plan.tasks:
        entry = task.to_dict()
        entry["runtimeStatus"] = status.tasks[task.id]
        tasks.append(entry)

    detail = _registry_fields(registered)
    detail.update(
        title=plan.project_name,
        projectName=plan.project_name,
        description=plan.description,
        generatedAt=to_iso(plan.generated_at),
        tasks=tasks,
        runtimeStatus=status.to_dict(),
        sessionId=session.session_id if session else None,
        **_counts(status),
    )
    return {"plan": detail}


@router.post("/plans/{plan_id}/restart", response_model=ExecuteResponse)
async def restart_plan(
    plan_id: str,
    options: RunOptions | None = Body(None),
    registry: PlanRegistry = Depends(get_registry),
    runs: RunManager = Depends(get_run_manager),
) -> ExecuteResponse:
    """
    Start a fresh run of a registered plan.

    A run of the same plan that is still going is stopped first.
    """
    registered = registry.resolve(plan_id)
    active = runs.active_for_plan(registered.plan_id)
    if active is not None:
        await runs.cancel(active.session_id)
    return await launch_run(
        runs, registered, options or RunOptions(), "Execution restarted in background"
    )
