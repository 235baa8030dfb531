"""Shared error types for the ralph package.

The taxonomy follows how far an error is allowed to propagate:

- PlanError aborts a run before any task starts.
- TaskExecutionError is recorded against one task and retried; it never
  unwinds the run.
- SessionIOError makes resume fail open (a fresh session is created).
- SideChannelError downgrades completion detection to the agent's own
  result message.
"""


class RalphError(Exception):
    """Base exception for ralph errors.

    Use this for user-facing errors that should have actionable messages.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class PlanError(RalphError):
    """Plan document missing, malformed, or failing validation."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class TaskExecutionError(RalphError):
    """A single task attempt failed (agent error, timeout, verification)."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class SessionIOError(RalphError):
    """Session file unreadable or corrupt."""


class SideChannelError(RalphError):
    """Completion side channel unreachable or bound to the wrong task."""


class RegistryError(RalphError):
    """Plan registry unreadable, or a plan id is unknown or already taken."""
