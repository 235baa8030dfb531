"""
Request and response models for the Ralph API.

Fields are snake_case in Python and camelCase on the wire.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RunOptions(_CamelModel):
    """Per-run options accepted by /execute and /plans/{id}/restart."""

    directory: str | None = Field(None, description="Project root override")
    no_commit: bool = Field(False, alias="noCommit", description="Disable auto-commit")
    auto_test: bool = Field(False, alias="autoTest", description="Run tests after each task")
    require_acceptance_criteria: bool = Field(
        False,
        alias="requireAcceptanceCriteria",
        description="Treat unmet acceptance criteria as a retryable failure",
    )
    max_retries: int | None = Field(None, ge=1, alias="maxRetries", description="Attempts per task")
    max_parallel: int | None = Field(
        None, ge=1, alias="maxParallel", description="Tasks run concurrently"
    )
    model: str | None = Field(None, description="Agent model override")
    resume: bool = Field(False, description="Resume the plan's latest session")


class ExecuteRequest(RunOptions):
    plan: str = Field(..., min_length=1, description="Registered plan id or path to a plan file")


class PlanInfo(_CamelModel):
    title: str = Field(..., description="Project name from the plan")
    total_tasks: int = Field(..., alias="totalTasks", description="Number of tasks")


class ExecuteResponse(_CamelModel):
    session_id: str = Field(..., alias="sessionId", description="Session id of the new run")
    status: Literal["started"] = "started"
    plan: PlanInfo
    plan_id: str = Field(..., alias="planId", description="Registry id of the plan")
    project_root: str = Field(..., alias="projectRoot", description="Project root of the run")
    message: str = Field("Execution started in background")


class StatusResponse(_CamelModel):
    session_id: str = Field(..., alias="sessionId")
    status: Literal["running", "completed", "failed"]
    result: dict[str, Any] | None = Field(None, description="Run summary once finished")
    error: str | None = Field(None, description="Error message if the run crashed")


class SessionSummary(_CamelModel):
    session_id: str = Field(..., alias="sessionId")
    plan_id: str = Field(..., alias="planId")
    status: Literal["running", "completed", "failed"]
    error: str | None = None


class SessionsResponse(_CamelModel):
    sessions: list[SessionSummary] = Field(default_factory=list)


class DeleteSessionResponse(_CamelModel):
    session_id: str = Field(..., alias="sessionId")
    status: Literal["deleted"] = "deleted"
    message: str = "Session removed"


class HealthResponse(_CamelModel):
    status: Literal["healthy"] = "healthy"
    timestamp: str
    active_sessions: int = Field(..., alias="activeSessions")
    project_root: str = Field(..., alias="projectRoot")
    version: str
