"""Dependency resolution over a plan's task graph.

Provides a stable topological order and next-runnable-task selection.
Ties between ready tasks are always broken by document order so execution
is deterministic across runs.
"""

import heapq
from collections.abc import Collection, Iterable

from ralph.errors import PlanError
from ralph.models import Plan, Task


def topological_sort(tasks: list[Task]) -> list[Task]:
    """Order tasks so each appears after all of its dependencies.

    Dependencies on ids not present in ``tasks`` are ignored (validate_plan
    reports them).

    Raises:
        PlanError: If the graph contains a cycle
    """
    index = {task.id: i for i, task in enumerate(tasks)}
    indegree = [0] * len(tasks)
    dependents: dict[int, list[int]] = {i: [] for i in range(len(tasks))}

    for i, task in enumerate(tasks):
        for dep_id in set(task.dependencies):
            if dep_id in index:
                indegree[i] += 1
                dependents[index[dep_id]].append(i)

    ready = [i for i, degree in enumerate(indegree) if degree == 0]
    heapq.heapify(ready)
    ordered: list[Task] = []
    while ready:
        i = heapq.heappop(ready)
        ordered.append(tasks[i])
        for j in dependents[i]:
            indegree[j] -= 1
            if indegree[j] == 0:
                heapq.heappush(ready, j)

    if len(ordered) != len(tasks):
        stuck = [tasks[i].id for i, degree in enumerate(indegree) if degree > 0]
        raise PlanError(
            f"Dependency cycle among tasks: {', '.join(stuck)}", errors=stuck
        )
    return ordered


def ready_tasks(
    plan: Plan,
    completed_ids: Collection[str],
    exclude: Iterable[str] = (),
    limit: int | None = None,
    skip_done: bool = True,
) -> list[Task]:
    """All runnable tasks in document order.

    A task is runnable when it is not in ``completed_ids`` or ``exclude``,
    every dependency is in ``completed_ids``, and (with ``skip_done``) the
    document does not already mark it Implemented or Verified.
    """
    completed = set(completed_ids)
    excluded = set(exclude)
    found: list[Task] = []
    for task in plan.tasks:
        if task.id in completed or task.id in excluded or (skip_done and task.is_done):
            continue
        if all(dep_id in completed for dep_id in task.dependencies):
            found.append(task)
            if limit is not None and len(found) >= limit:
                break
    return found


def next_task(
    plan: Plan, completed_ids: Collection[str], exclude: Iterable[str] = ()
) -> Task | None:
    """First runnable task in document order, or None.

    None means either everything is done or everything left is blocked;
    callers use blocked_tasks to tell the two apart.
    """
    found = ready_tasks(plan, completed_ids, exclude, limit=1)
    return found[0] if found else None


def blocked_tasks(
    plan: Plan, completed_ids: Collection[str], failed_ids: Collection[str]
) -> list[str]:
    """Ids of tasks that can never run because a dependency failed.

    Blocking is transitive: a dependent of a blocked task is blocked too.
    """
    completed = set(completed_ids)
    unreachable = set(failed_ids)
    blocked: list[str] = []
    changed = True
    while changed:
        changed = False
        for task in plan.tasks:
            if task.id in unreachable or task.id in completed or task.is_done:
                continue
            if any(dep_id in unreachable for dep_id in task.dependencies):
                unreachable.add(task.id)
                blocked.append(task.id)
                changed = True
    order = {task.id: i for i, task in enumerate(plan.tasks)}
    return sorted(blocked, key=order.__getitem__)
