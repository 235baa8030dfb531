"""Completion side channel: an MCP server with a single task_complete tool.

The engine spawns this server (via ``--mcp-config``) alongside each agent
run. Which session and task the tool completes comes only from environment
variables set at spawn time; tool arguments can add notes and criteria
results but can never redirect the completion to another task.

On a valid call the server writes a signal file
``<signal_dir>/<session_id>-<task_id>.json``. The engine owns the session
file and is the only writer; it picks up the signal with
CompletionChannel.wait().

Run as ``python -m ralph.side_channel``. Stdout carries JSON-RPC, so all
logging goes to stderr.
"""

import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import structlog
from mcp.server.fastmcp import FastMCP

from ralph.errors import SessionIOError, SideChannelError
from ralph.models import utcnow
from ralph.state import SessionStore
from ralph.telemetry import trace_side_channel_tool

logger = structlog.get_logger()

SERVER_NAME = "ralph"
ENV_SESSION_ID = "RALPH_SESSION_ID"
ENV_PLAN_PATH = "RALPH_PLAN_PATH"
ENV_PROJECT_ROOT = "RALPH_PROJECT_ROOT"
ENV_CURRENT_TASK_ID = "RALPH_CURRENT_TASK_ID"
ENV_STATE_DIR = "RALPH_STATE_DIR"
ENV_SIGNAL_DIR = "RALPH_SIGNAL_DIR"


@dataclass(frozen=True)
class SideChannelBinding:
    """The session/task a side-channel server instance is bound to."""

    session_id: str
    plan_path: str
    project_root: str
    task_id: str
    state_dir: str
    signal_dir: str

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "SideChannelBinding":
        """Read the binding from environment variables.

        Raises:
            SideChannelError: If any binding variable is missing
        """
        env = os.environ if environ is None else environ
        names = {
            "session_id": ENV_SESSION_ID,
            "plan_path": ENV_PLAN_PATH,
            "project_root": ENV_PROJECT_ROOT,
            "task_id": ENV_CURRENT_TASK_ID,
        }
        values = {key: env.get(name, "") for key, name in names.items()}
        missing = [names[key] for key, value in values.items() if not value]
        if missing:
            raise SideChannelError(
                f"Side channel not bound: missing {', '.join(missing)}"
            )
        root = Path(values["project_root"])
        return cls(
            **values,
            state_dir=env.get(ENV_STATE_DIR) or str(root / ".ralph" / "sessions"),
            signal_dir=env.get(ENV_SIGNAL_DIR) or str(root / ".ralph" / "signals"),
        )

    def to_env(self) -> dict[str, str]:
        return {
            ENV_SESSION_ID: self.session_id,
            ENV_PLAN_PATH: self.plan_path,
            ENV_PROJECT_ROOT: self.project_root,
            ENV_CURRENT_TASK_ID: self.task_id,
            ENV_STATE_DIR: self.state_dir,
            ENV_SIGNAL_DIR: self.signal_dir,
        }


def build_mcp_config(binding: SideChannelBinding) -> dict[str, Any]:
    """MCP client config that spawns this server bound to one task."""
    return {
        "mcpServers": {
            SERVER_NAME: {
                "command": sys.executable,
                "args": ["-m", "ralph.side_channel"],
                "env": binding.to_env(),
            }
        }
    }


@dataclass
class CompletionSignal:
    session_id: str
    task_id: str
    notes: str | None = None
    acceptance_criteria: dict[str, bool] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CompletionSignal":
        return cls(
            session_id=data["session_id"],
            task_id=data["task_id"],
            notes=data.get("notes"),
            acceptance_criteria=dict(data.get("acceptance_criteria") or {}),
            timestamp=data.get("timestamp", ""),
        )


class CompletionChannel:
    """File-based handoff of completion signals from server to engine."""

    def __init__(self, signal_dir: Path) -> None:
        self.signal_dir = Path(signal_dir)

    def signal_path(self, session_id: str, task_id: str) -> Path:
        return self.signal_dir / f"{session_id}-{task_id}.json"

    def write_signal(self, signal: CompletionSignal) -> Path:
        self.signal_dir.mkdir(parents=True, exist_ok=True)
        path = self.signal_path(signal.session_id, signal.task_id)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(asdict(signal), indent=2), encoding="utf-8")
        os.replace(tmp, path)
        return path

    def read_signal(self, session_id: str, task_id: str) -> CompletionSignal | None:
        path = self.signal_path(session_id, task_id)
        if not path.exists():
            return None
        try:
            return CompletionSignal.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError) as e:
            raise SideChannelError(f"Unreadable completion signal {path.name}: {e}") from e

    async def wait(
        self, session_id: str, task_id: str, poll_interval: float = 0.5
    ) -> CompletionSignal:
        """Poll until a signal for the task appears. Cancel to stop waiting."""
        while True:
            signal = self.read_signal(session_id, task_id)
            if signal is not None:
                return signal
            await asyncio.sleep(poll_interval)

    def clear(self, session_id: str, task_id: str) -> None:
        self.signal_path(session_id, task_id).unlink(missing_ok=True)


def handle_task_complete(
    binding: SideChannelBinding,
    notes: str | None = None,
    acceptance_criteria: dict[str, bool] | None = None,
) -> dict[str, Any]:
    """Validate the binding against the session file and emit the signal.

    Returns:
        Dict with success flag, bound task id, and a message or error
    """
    store = SessionStore(Path(binding.state_dir))
    try:
        session = store.load_by_id(binding.session_id)
    except SessionIOError as e:
        return {"success": False, "taskId": binding.task_id, "error": str(e)}
    if session is None:
        return {
            "success": False,
            "taskId": binding.task_id,
            "error": f"Session {binding.session_id} not found",
        }

    latest = session.latest_execution(binding.task_id)
    if latest is None or latest.status != "in_progress":
        logger.warning(
            "Completion for task not in progress",
            task_id=binding.task_id,
            current_task_id=session.current_task_id,
        )
        return {
            "success": False,
            "taskId": binding.task_id,
            "error": f"Task {binding.task_id} is not in progress in session {binding.session_id}",
        }

    channel = CompletionChannel(Path(binding.signal_dir))
    channel.write_signal(
        CompletionSignal(
            session_id=binding.session_id,
            task_id=binding.task_id,
            notes=notes,
            acceptance_criteria=acceptance_criteria or {},
        )
    )
    logger.info("Task completion signalled", task_id=binding.task_id)
    return {
        "success": True,
        "taskId": binding.task_id,
        "message": f"Task {binding.task_id} marked complete. Stop working now.",
    }


mcp = FastMCP(SERVER_NAME)


@mcp.tool()
@trace_side_channel_tool("task_complete")
def task_complete(
    notes: str | None = None,
    acceptance_criteria: dict[str, bool] | None = None,
) -> dict[str, Any]:
    """Declare that the current task is finished.

    Call this exactly once, after the work is done and the acceptance
    criteria are met. The task being completed is fixed by the harness;
    you do not need to name it.

    Args:
        notes: Optional short summary of what was done
        acceptance_criteria: Optional map of criterion text to whether it is met
    """
    try:
        binding = SideChannelBinding.from_env()
    except SideChannelError as e:
        logger.error("Side channel not bound", error=e.message)
        return {"success": False, "error": e.message}
    return handle_task_complete(binding, notes, acceptance_criteria)


def setup_logging() -> None:
    """Route stdlib logging and structlog to stderr as JSON."""
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    """Run the side-channel server over stdio."""
    setup_logging()
    try:
        binding = SideChannelBinding.from_env()
        logger.info("Side channel starting", session_id=binding.session_id, task_id=binding.task_id)
    except SideChannelError as e:
        # Still serve so the agent gets a clear error from the tool
        logger.warning("Side channel starting unbound", error=e.message)
    mcp.run()


if __name__ == "__main__":
    main()
