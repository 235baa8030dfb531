"""Tests for runtime status reconciliation."""

from pathlib import Path

from fakes import make_plan_document
from ralph.models import Session, TaskExecution, utcnow
from ralph.plan_parser import parse_plan
from ralph.status import compute_progress, plan_runtime_status, tasks_runtime_status


def _never(task_id: str) -> bool:
    return False


def _chain_plan(statuses: dict[str, str] | None = None):
    statuses = statuses or {}
    return parse_plan(
        make_plan_document(
            [
                {"id": "task-001", "status": statuses.get("task-001")},
                {"id": "task-002", "deps": ["task-001"], "status": statuses.get("task-002")},
                {"id": "task-003"},
            ]
        )
    )


class TestComputeProgress:
    def test_rounds_to_whole_percent(self) -> None:
        assert compute_progress(2, 5) == 40
        assert compute_progress(1, 3) == 33
        assert compute_progress(2, 3) == 67
        assert compute_progress(1, 8) == 13

    def test_empty_plan(self) -> None:
        assert compute_progress(0, 0) == 0


class TestTasksRuntimeStatus:
    """Tests for tasks_runtime_status()."""

    def test_no_session_everything_pending_or_blocked(self, tmp_path: Path) -> None:
        statuses = tasks_runtime_status(_chain_plan(), None, tmp_path, _never)

        assert statuses == {"task-001": "pending", "task-002": "blocked", "task-003": "pending"}

    def test_document_status_wins(self, tmp_path: Path) -> None:
        """A task marked Implemented is completed even if the session says failed."""
        session = Session(session_id="s", plan_path="p", failed_tasks={"task-001"})

        statuses = tasks_runtime_status(
            _chain_plan({"task-001": "Implemented"}), session, tmp_path
        )

        assert statuses["task-001"] == "completed"
        assert statuses["task-002"] == "pending"

    def test_session_states(self, tmp_path: Path) -> None:
        session = Session(
            session_id="s",
            plan_path="p",
            completed_tasks={"task-001"},
            failed_tasks={"task-003"},
            current_task_id="task-002",
            task_history=[
                TaskExecution(task_id="task-002", status="in_progress", started_at=utcnow())
            ],
        )

        statuses = tasks_runtime_status(_chain_plan(), session, tmp_path)

        assert statuses == {
            "task-001": "completed",
            "task-002": "in-progress",
            "task-003": "failed",
        }

    def test_dependents_of_failed_task_are_blocked(self, tmp_path: Path) -> None:
        session = Session(session_id="s", plan_path="p", failed_tasks={"task-001"})

        statuses = tasks_runtime_status(_chain_plan(), session, tmp_path)

        assert statuses["task-002"] == "blocked"

    def test_git_history_used_only_without_session(self, tmp_path: Path) -> None:
        def tagged(task_id: str) -> bool:
            return task_id == "task-001"

        without_session = tasks_runtime_status(_chain_plan(), None, tmp_path, tagged)
        with_session = tasks_runtime_status(
            _chain_plan(), Session(session_id="s", plan_path="p"), tmp_path, tagged
        )

        assert without_session["task-001"] == "completed"
        assert without_session["task-002"] == "pending"
        assert with_session["task-001"] == "pending"


class TestPlanRuntimeStatus:
    """Tests for plan_runtime_status()."""

    def test_counts_and_progress(self, tmp_path: Path) -> None:
        session = Session(session_id="s", plan_path="p", completed_tasks={"task-001"})

        status = plan_runtime_status(_chain_plan(), session, tmp_path)

        assert (status.total, status.completed, status.pending, status.blocked) == (3, 1, 2, 0)
        assert status.progress == 33
        assert status.to_dict()["inProgress"] == 0

    def test_ten_tasks_four_completed_one_failed(self, tmp_path: Path) -> None:
        """Failed and pending tasks do not count toward progress."""
        plan = parse_plan(make_plan_document([{"id": f"task-{n:03d}"} for n in range(1, 11)]))
        session = Session(
            session_id="s",
            plan_path="p",
            completed_tasks={"task-001", "task-002", "task-003", "task-004"},
            failed_tasks={"task-005"},
        )

        status = plan_runtime_status(plan, session, tmp_path)

        assert (status.total, status.completed, status.failed) == (10, 4, 1)
        assert (status.pending, status.blocked, status.in_progress) == (5, 0, 0)
        assert status.progress == 40

    def test_empty_plan(self, tmp_path: Path) -> None:
        status = plan_runtime_status(parse_plan("## Tasks\n"), None, tmp_path, _never)

        assert status.total == 0
        assert status.progress == 0
        assert status.tasks == {}
