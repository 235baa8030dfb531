"""Data models for Ralph.

Defines dataclasses for plans, tasks, sessions and execution results.
Sessions and registry entries serialize to JSON with camelCase keys so the
on-disk files match what the HTTP API and dashboard read.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

TaskStatus = Literal["To Do", "In Progress", "Implemented", "Needs Re-Work", "Verified"]
Priority = Literal["high", "medium", "low"]
RuntimeStatus = Literal["pending", "in-progress", "completed", "blocked", "failed"]
ExecutionStatus = Literal["pending", "in_progress", "completed", "failed", "skipped"]

TASK_STATUSES: tuple[str, ...] = (
    "To Do",
    "In Progress",
    "Implemented",
    "Needs Re-Work",
    "Verified",
)
DONE_STATUSES: frozenset[str] = frozenset({"Implemented", "Verified"})
PRIORITIES: tuple[str, ...] = ("high", "medium", "low")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass
class AcceptanceCriterion:
    """One checkbox item under a task's acceptance criteria."""

    text: str
    completed: bool = False


@dataclass
class Task:
    """A task parsed from a plan document.

    Status is written by the execution engine (or by hand-editing the
    document); the parser only reads it back.
    """

    id: str
    title: str
    description: str = ""
    priority: Priority = "medium"
    dependencies: list[str] = field(default_factory=list)
    acceptance_criteria: list[AcceptanceCriterion] = field(default_factory=list)
    spec_reference: str | None = None
    complexity: int = 3
    tags: list[str] = field(default_factory=list)
    status: TaskStatus = "To Do"

    @property
    def is_done(self) -> bool:
        """True when the document marks the task Implemented or Verified."""
        return self.status in DONE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "acceptanceCriteria": [
                {"text": c.text, "completed": c.completed} for c in self.acceptance_criteria
            ],
            "specReference": self.spec_reference,
            "estimatedComplexity": self.complexity,
            "tags": list(self.tags),
            "status": self.status,
        }


@dataclass
class Plan:
    """An implementation plan: tasks in authoring order."""

    project_name: str
    description: str = ""
    tasks: list[Task] = field(default_factory=list)
    generated_at: datetime | None = None

    @property
    def total_tasks(self) -> int:
        return len(self.tasks)

    def get_task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class TaskResult:
    """Outcome of one task attempt.

    completion_source records which signal ended the agent stream:
    "side_channel" for an explicit task_complete call, "result_message"
    for the agent's own terminal message.
    """

    success: bool
    output: str = ""
    error: str | None = None
    commit_hash: str | None = None
    files_added: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    cost_usd: float = 0.0
    num_turns: int = 0
    agent_session_id: str | None = None
    completion_source: Literal["side_channel", "result_message"] | None = None
    notes: str | None = None
    criteria_met: dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskResult":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class TaskExecution:
    """Append-only record of one task attempt within a session."""

    task_id: str
    status: ExecutionStatus
    started_at: datetime
    completed_at: datetime | None = None
    attempts: int = 1
    result: TaskResult | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "status": self.status,
            "startedAt": to_iso(self.started_at),
            "completedAt": to_iso(self.completed_at),
            "attempts": self.attempts,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskExecution":
        result = data.get("result")
        return cls(
            task_id=data["taskId"],
            status=data["status"],
            started_at=from_iso(data["startedAt"]) or utcnow(),
            completed_at=from_iso(data.get("completedAt")),
            attempts=int(data.get("attempts", 1)),
            result=TaskResult.from_dict(result) if isinstance(result, dict) else None,
            error=data.get("error"),
        )


@dataclass
class Session:
    """Persistent record of one execution run.

    A task id lives in at most one of completed_tasks, failed_tasks and
    skipped_tasks. current_task_id, when set, names a task whose latest
    TaskExecution is in_progress.

    Attributes:
        session_id: Unique id, also the session file stem
        plan_path: Absolute path of the plan document
        completed_tasks: Tasks finished by this session
        skipped_tasks: Tasks already done in the document at run start
        failed_tasks: Tasks that exhausted their retries
        current_task_id: Task being executed, if any
        task_history: Every TaskExecution record in order
        agent_session_id: Agent conversation id for continuity across tasks
        total_cost: Sum of agent cost across all attempts (USD)
    """

    session_id: str
    plan_path: str
    started_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    completed_tasks: set[str] = field(default_factory=set)
    skipped_tasks: set[str] = field(default_factory=set)
    failed_tasks: set[str] = field(default_factory=set)
    current_task_id: str | None = None
    task_history: list[TaskExecution] = field(default_factory=list)
    agent_session_id: str | None = None
    total_cost: float = 0.0

    @property
    def done_tasks(self) -> set[str]:
        """Tasks whose dependents may run: completed or skipped."""
        return self.completed_tasks | self.skipped_tasks

    def latest_execution(self, task_id: str) -> TaskExecution | None:
        for record in reversed(self.task_history):
            if record.task_id == task_id:
                return record
        return None

    def attempts_for(self, task_id: str) -> int:
        return sum(
            1
            for record in self.task_history
            if record.task_id == task_id and record.status == "in_progress"
        )

    def in_progress_tasks(self) -> list[str]:
        """Tasks whose latest record is still in_progress."""
        latest: dict[str, str] = {}
        for record in self.task_history:
            latest[record.task_id] = record.status
        return [tid for tid, status in latest.items() if status == "in_progress"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "planPath": self.plan_path,
            "startedAt": to_iso(self.started_at),
            "lastActivity": to_iso(self.last_activity),
            "completedTasks": sorted(self.completed_tasks),
            "skippedTasks": sorted(self.skipped_tasks),
            "failedTasks": sorted(self.failed_tasks),
            "currentTaskId": self.current_task_id,
            "taskHistory": [record.to_dict() for record in self.task_history],
            "agentSessionId": self.agent_session_id,
            "totalCost": self.total_cost,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        return cls(
            session_id=data["sessionId"],
            plan_path=data["planPath"],
            started_at=from_iso(data.get("startedAt")) or utcnow(),
            last_activity=from_iso(data.get("lastActivity")) or utcnow(),
            completed_tasks=set(data.get("completedTasks", [])),
            skipped_tasks=set(data.get("skippedTasks", [])),
            failed_tasks=set(data.get("failedTasks", [])),
            current_task_id=data.get("currentTaskId"),
            task_history=[
                TaskExecution.from_dict(item) for item in data.get("taskHistory", [])
            ],
            agent_session_id=data.get("agentSessionId"),
            total_cost=float(data.get("totalCost", 0.0)),
        )


@dataclass
class ExecutionResult:
    """Summary returned by ExecutionEngine.run().

    Always reports completed and failed tasks, including on partial failure
    or cancellation.
    """

    session_id: str
    total_tasks: int
    completed_tasks: list[str] = field(default_factory=list)
    failed_tasks: list[str] = field(default_factory=list)
    skipped_tasks: list[str] = field(default_factory=list)
    blocked_tasks: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    ended_at: datetime = field(default_factory=utcnow)
    status: Literal["completed", "cancelled"] = "completed"

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def success(self) -> bool:
        return self.status == "completed" and not self.failed_tasks and not self.blocked_tasks

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "status": self.status,
            "totalTasks": self.total_tasks,
            "completedTasks": self.completed_tasks,
            "failedTasks": self.failed_tasks,
            "skippedTasks": self.skipped_tasks,
            "blockedTasks": self.blocked_tasks,
            "startedAt": to_iso(self.started_at),
            "endedAt": to_iso(self.ended_at),
            "duration": self.duration_seconds,
        }


@dataclass
class RegisteredPlan:
    """Registry entry mapping a short plan id to a project root and plan path."""

    plan_id: str
    project_root: str
    plan_path: str
    title: str
    total_tasks: int
    registered_at: datetime = field(default_factory=utcnow)
    last_accessed: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "planId": self.plan_id,
            "projectRoot": self.project_root,
            "planPath": self.plan_path,
            "title": self.title,
            "totalTasks": self.total_tasks,
            "registeredAt": to_iso(self.registered_at),
            "lastAccessed": to_iso(self.last_accessed),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RegisteredPlan":
        return cls(
            plan_id=data["planId"],
            project_root=data["projectRoot"],
            plan_path=data["planPath"],
            title=data.get("title", data["planId"]),
            total_tasks=int(data.get("totalTasks", 0)),
            registered_at=from_iso(data.get("registeredAt")) or utcnow(),
            last_accessed=from_iso(data.get("lastAccessed")) or utcnow(),
        )
