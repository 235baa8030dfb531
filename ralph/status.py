"""Runtime status reconciliation.

Merges the plan document, the session file and (as a last resort) git
history into one status per task. Precedence, highest first:

1. Document marks the task Implemented/Verified -> completed
2. Session's current task -> in-progress
3. Session completed or skipped -> completed
4. Session failed -> failed
5. No session at all: a ``[task-id]`` tagged commit exists -> completed
6. Otherwise -> pending

A second pass relabels pending tasks whose dependencies are not all
completed as blocked. Nothing here is persisted.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ralph import git
from ralph.models import Plan, RuntimeStatus, Session, Task

GitLookup = Callable[[str], bool]


def git_task_lookup(project_root: Path) -> GitLookup:
    """Lookup answering "does a commit tagged with this task id exist?".

    History is scanned once per lookup object.
    """
    cache: set[str] | None = None

    def lookup(task_id: str) -> bool:
        nonlocal cache
        if cache is None:
            cache = git.task_commit_ids(project_root)
        return task_id in cache

    return lookup


def task_runtime_status(
    task: Task,
    session: Session | None,
    project_root: Path,
    git_lookup: GitLookup | None = None,
) -> RuntimeStatus:
    """Base status of one task, before blocked derivation."""
    if task.is_done:
        return "completed"
    if session is not None:
        if session.current_task_id == task.id or task.id in session.in_progress_tasks():
            return "in-progress"
        if task.id in session.completed_tasks or task.id in session.skipped_tasks:
            return "completed"
        if task.id in session.failed_tasks:
            return "failed"
        return "pending"
    lookup = git_lookup or git_task_lookup(project_root)
    if lookup(task.id):
        return "completed"
    return "pending"


def tasks_runtime_status(
    plan: Plan,
    session: Session | None,
    project_root: Path,
    git_lookup: GitLookup | None = None,
) -> dict[str, RuntimeStatus]:
    """Status of every task, with blocked derivation applied."""
    if session is None and git_lookup is None:
        git_lookup = git_task_lookup(project_root)
    statuses: dict[str, RuntimeStatus] = {
        task.id: task_runtime_status(task, session, project_root, git_lookup)
        for task in plan.tasks
    }
    for task in plan.tasks:
        if statuses[task.id] != "pending":
            continue
        if any(statuses.get(dep_id) != "completed" for dep_id in task.dependencies):
            statuses[task.id] = "blocked"
    return statuses


@dataclass
class PlanRuntimeStatus:
    """Aggregated runtime view of one plan."""

    total: int
    completed: int
    in_progress: int
    pending: int
    blocked: int
    failed: int
    progress: int
    tasks: dict[str, RuntimeStatus] = field(default_factory=dict)
    current_task_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "inProgress": self.in_progress,
            "pending": self.pending,
            "blocked": self.blocked,
            "failed": self.failed,
            "progress": self.progress,
            "currentTaskId": self.current_task_id,
            "tasks": dict(self.tasks),
        }


def compute_progress(completed: int, total: int) -> int:
    """Percent complete, halves rounded up; zero for an empty plan."""
    if total == 0:
        return 0
    return int(100 * completed / total + 0.5)


def plan_runtime_status(
    plan: Plan,
    session: Session | None,
    project_root: Path,
    git_lookup: GitLookup | None = None,
) -> PlanRuntimeStatus:
    statuses = tasks_runtime_status(plan, session, project_root, git_lookup)
    counts = {status: 0 for status in ("pending", "in-progress", "completed", "blocked", "failed")}
    for status in statuses.values():
        counts[status] += 1
    total = len(plan.tasks)
    return PlanRuntimeStatus(
        total=total,
        completed=counts["completed"],
        in_progress=counts["in-progress"],
        pending=counts["pending"],
        blocked=counts["blocked"],
        failed=counts["failed"],
        progress=compute_progress(counts["completed"], total),
        tasks=statuses,
        current_task_id=session.current_task_id if session else None,
    )
