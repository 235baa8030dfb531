"""Configuration for Ralph runs.

Provides centralized configuration with sensible defaults and environment
variable overrides for retry policy, parallelism, the agent command, and
telemetry.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any


@dataclass
class RalphConfig:
    """Configuration for a plan execution run.

    All settings have sensible defaults but can be overridden via environment
    variables using the from_env() factory method. Relative paths are
    resolved against project_root.
    """

    # Project layout
    project_root: Path = field(default_factory=Path.cwd)
    plan_path: Path = field(default_factory=lambda: Path("IMPLEMENTATION_PLAN.md"))
    state_dir: Path = field(default_factory=lambda: Path(".ralph/sessions"))
    checkpoint_dir: Path = field(default_factory=lambda: Path(".ralph/checkpoints"))
    signal_dir: Path = field(default_factory=lambda: Path(".ralph/signals"))
    log_dir: Path = field(default_factory=lambda: Path(".ralph/logs"))

    # Execution policy
    max_retries: int = 3
    max_parallel_tasks: int = 1
    auto_commit: bool = True
    auto_test: bool = False
    test_command: str = "npm run test:run"
    require_acceptance_criteria: bool = False
    resume: bool = False
    skip_completed_tasks: bool = True
    continue_agent_session: bool = True
    rewind_on_retry: bool = False
    side_channel: bool = True

    # Agent settings
    model: str | None = None
    claude_command: str = "claude"
    task_timeout_seconds: float = 1800
    test_timeout_seconds: float = 600
    completion_poll_interval: float = 0.5
    spec_context_chars: int = 8000

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "ralph"

    @classmethod
    def from_env(cls, **overrides: Any) -> "RalphConfig":
        """Load config with environment variable overrides.

        Environment variables:
            RALPH_MAX_RETRIES: Override max_retries (default: 3)
            RALPH_MAX_PARALLEL: Override max_parallel_tasks (default: 1)
            RALPH_TASK_TIMEOUT: Override task_timeout_seconds (default: 1800)
            RALPH_TEST_COMMAND: Override test_command (default: npm run test:run)
            RALPH_MODEL: Override model (default: agent's own default)
            CLAUDE_COMMAND: Override claude_command (default: claude)
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)

        Keyword arguments take precedence over the environment.
        """
        config = cls(
            max_retries=int(os.getenv("RALPH_MAX_RETRIES", "3")),
            max_parallel_tasks=int(os.getenv("RALPH_MAX_PARALLEL", "1")),
            task_timeout_seconds=float(os.getenv("RALPH_TASK_TIMEOUT", "1800")),
            test_command=os.getenv("RALPH_TEST_COMMAND", "npm run test:run"),
            model=os.getenv("RALPH_MODEL") or None,
            claude_command=os.getenv("CLAUDE_COMMAND", "claude"),
            otlp_endpoint=os.getenv("OTLP_ENDPOINT", "http://localhost:4317"),
        )
        return config.with_overrides(**overrides)

    def with_overrides(self, **overrides: Any) -> "RalphConfig":
        """Return a copy with the given fields replaced.

        None values are ignored so callers can pass optional CLI/HTTP
        options straight through.
        """
        values = {k: v for k, v in overrides.items() if v is not None}
        for key in ("project_root", "plan_path"):
            if key in values:
                values[key] = Path(values[key])
        return replace(self, **values)

    def resolve_path(self, path: str | Path) -> Path:
        """Resolve a path relative to the project root."""
        path = Path(path).expanduser()
        if path.is_absolute():
            return path
        return (Path(self.project_root) / path).resolve()

    @property
    def resolved_plan_path(self) -> Path:
        return self.resolve_path(self.plan_path)

    @property
    def resolved_state_dir(self) -> Path:
        return self.resolve_path(self.state_dir)

    @property
    def resolved_checkpoint_dir(self) -> Path:
        return self.resolve_path(self.checkpoint_dir)

    @property
    def resolved_signal_dir(self) -> Path:
        return self.resolve_path(self.signal_dir)

    @property
    def resolved_log_dir(self) -> Path:
        return self.resolve_path(self.log_dir)
