"""Tests for dependency ordering and next-task selection."""

import pytest

from fakes import make_plan_document
from ralph.errors import PlanError
from ralph.models import Plan, Task
from ralph.plan_parser import parse_plan
from ralph.resolver import blocked_tasks, next_task, ready_tasks, topological_sort


def _plan(*tasks: Task) -> Plan:
    return Plan(project_name="Test", tasks=list(tasks))


class TestTopologicalSort:
    """Tests for topological_sort()."""

    def test_dependencies_come_first(self) -> None:
        tasks = [
            Task(id="task-003", title="C", dependencies=["task-002"]),
            Task(id="task-002", title="B", dependencies=["task-001"]),
            Task(id="task-001", title="A"),
        ]

        ordered = [task.id for task in topological_sort(tasks)]

        assert ordered == ["task-001", "task-002", "task-003"]

    def test_ties_keep_document_order(self) -> None:
        """Independent tasks stay in the order they were written."""
        tasks = [
            Task(id="task-002", title="B"),
            Task(id="task-001", title="A"),
            Task(id="task-003", title="C", dependencies=["task-001"]),
        ]

        ordered = [task.id for task in topological_sort(tasks)]

        assert ordered == ["task-002", "task-001", "task-003"]

    def test_unknown_dependencies_are_ignored(self) -> None:
        tasks = [Task(id="task-001", title="A", dependencies=["task-404"])]

        assert [task.id for task in topological_sort(tasks)] == ["task-001"]

    def test_cycle_raises(self) -> None:
        tasks = [
            Task(id="task-001", title="A", dependencies=["task-002"]),
            Task(id="task-002", title="B", dependencies=["task-001"]),
        ]

        with pytest.raises(PlanError, match="cycle") as exc_info:
            topological_sort(tasks)

        assert sorted(exc_info.value.errors) == ["task-001", "task-002"]


class TestNextTask:
    """Tests for next_task() and ready_tasks()."""

    def test_first_task_without_dependencies(self) -> None:
        plan = parse_plan(
            make_plan_document([{"id": "task-001"}, {"id": "task-002", "deps": ["task-001"]}])
        )

        assert next_task(plan, set()).id == "task-001"
        assert next_task(plan, {"task-001"}).id == "task-002"

    def test_none_when_everything_completed(self) -> None:
        plan = _plan(Task(id="task-001", title="A"))

        assert next_task(plan, {"task-001"}) is None

    def test_document_done_status_is_skipped(self) -> None:
        plan = _plan(
            Task(id="task-001", title="A", status="Implemented"),
            Task(id="task-002", title="B"),
        )

        assert next_task(plan, set()).id == "task-002"

    def test_excluded_tasks_are_skipped(self) -> None:
        plan = _plan(Task(id="task-001", title="A"), Task(id="task-002", title="B"))

        assert next_task(plan, set(), exclude={"task-001"}).id == "task-002"

    def test_ready_tasks_lists_all_runnable(self) -> None:
        plan = _plan(
            Task(id="task-001", title="A"),
            Task(id="task-002", title="B"),
            Task(id="task-003", title="C", dependencies=["task-001"]),
        )

        assert [t.id for t in ready_tasks(plan, set())] == ["task-001", "task-002"]
        assert [t.id for t in ready_tasks(plan, set(), limit=1)] == ["task-001"]
        assert [t.id for t in ready_tasks(plan, {"task-001"})] == ["task-002", "task-003"]

    def test_done_status_can_be_included(self) -> None:
        plan = _plan(Task(id="task-001", title="A", status="Verified"))

        assert ready_tasks(plan, set()) == []
        assert [t.id for t in ready_tasks(plan, set(), skip_done=False)] == ["task-001"]


class TestBlockedTasks:
    """Tests for blocked_tasks()."""

    def test_blocking_is_transitive(self) -> None:
        plan = _plan(
            Task(id="task-001", title="A"),
            Task(id="task-002", title="B", dependencies=["task-001"]),
            Task(id="task-003", title="C", dependencies=["task-002"]),
            Task(id="task-004", title="D"),
        )

        assert blocked_tasks(plan, set(), {"task-001"}) == ["task-002", "task-003"]

    def test_completed_tasks_are_not_blocked(self) -> None:
        plan = _plan(
            Task(id="task-001", title="A"),
            Task(id="task-002", title="B", dependencies=["task-001"]),
        )

        assert blocked_tasks(plan, {"task-002"}, {"task-001"}) == []

    def test_nothing_failed(self) -> None:
        plan = _plan(Task(id="task-001", title="A"))

        assert blocked_tasks(plan, set(), set()) == []
