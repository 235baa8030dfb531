"""Agent process driver and message stream protocol.

The agent is an external CLI (Claude Code) run with
``--output-format stream-json``. Each stdout line is one JSON message,
parsed here into a tagged union:

    SystemMessage | AssistantMessage | UserMessage | ResultMessage | RawMessage

Unknown or malformed lines become RawMessage instead of being dropped.
"""

import asyncio
import json
import logging
import os
import shlex
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from ralph.errors import TaskExecutionError

logger = logging.getLogger(__name__)

AUTONOMY_PROMPT = (
    "You are running autonomously inside the Ralph execution harness. "
    "Do not ask the user questions; make reasonable decisions and continue. "
    "Work only on the task you are given. When the task is finished and its "
    "acceptance criteria are met, call the task_complete tool exactly once."
)

# stream-json lines can carry whole file contents
STREAM_LINE_LIMIT = 16 * 1024 * 1024


@dataclass
class ToolUse:
    id: str
    name: str
    input: dict[str, Any]


@dataclass
class SystemMessage:
    subtype: str
    session_id: str | None
    raw: dict[str, Any]


@dataclass
class AssistantMessage:
    text: str
    tool_uses: list[ToolUse]
    session_id: str | None
    raw: dict[str, Any]


@dataclass
class UserMessage:
    content: list[dict[str, Any]]
    session_id: str | None
    raw: dict[str, Any]


@dataclass
class ResultMessage:
    """Terminal message of an agent run."""

    is_error: bool
    result: str
    total_cost_usd: float
    duration_ms: int
    num_turns: int
    session_id: str | None
    subtype: str
    raw: dict[str, Any]


@dataclass
class RawMessage:
    """A line that is not a recognized message type."""

    type: str
    raw: dict[str, Any]


AgentMessage = SystemMessage | AssistantMessage | UserMessage | ResultMessage | RawMessage


def parse_message(data: dict[str, Any]) -> AgentMessage:
    """Convert one decoded stream-json object into a typed message."""
    session_id = data.get("session_id")
    match data.get("type"):
        case "system":
            return SystemMessage(
                subtype=str(data.get("subtype", "")), session_id=session_id, raw=data
            )
        case "assistant":
            content = (data.get("message") or {}).get("content") or []
            texts = []
            tool_uses = []
            for item in content:
                if not isinstance(item, dict):
                    continue
                if item.get("type") == "text":
                    texts.append(item.get("text", ""))
                elif item.get("type") == "tool_use":
                    tool_uses.append(
                        ToolUse(
                            id=item.get("id", ""),
                            name=item.get("name", ""),
                            input=item.get("input") or {},
                        )
                    )
            return AssistantMessage(
                text="\n".join(texts),
                tool_uses=tool_uses,
                session_id=session_id,
                raw=data,
            )
        case "user":
            content = (data.get("message") or {}).get("content") or []
            if isinstance(content, str):
                content = [{"type": "text", "text": content}]
            return UserMessage(content=content, session_id=session_id, raw=data)
        case "result":
            return ResultMessage(
                is_error=bool(data.get("is_error", False)),
                result=str(data.get("result") or ""),
                total_cost_usd=float(data.get("total_cost_usd") or 0.0),
                duration_ms=int(data.get("duration_ms") or 0),
                num_turns=int(data.get("num_turns") or 0),
                session_id=session_id,
                subtype=str(data.get("subtype", "")),
                raw=data,
            )
        case other:
            return RawMessage(type=str(other or "unknown"), raw=data)


def parse_stream_line(line: str) -> AgentMessage | None:
    """Parse one stdout line. Blank lines yield None."""
    line = line.strip()
    if not line:
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return RawMessage(type="invalid", raw={"line": line})
    if not isinstance(data, dict):
        return RawMessage(type="invalid", raw={"line": line})
    return parse_message(data)


def message_session_id(message: AgentMessage) -> str | None:
    if isinstance(message, RawMessage):
        value = message.raw.get("session_id")
        return value if isinstance(value, str) else None
    return message.session_id


def format_tool_call(tool_name: str, tool_input: dict) -> str:
    """Format a tool call for human-readable display.

    Returns:
        Formatted string like "→ Reading config.py..."
    """
    if tool_name in ("Read", "Write", "Edit"):
        file_path = tool_input.get("file_path", "")
        filename = Path(file_path).name if file_path else "file"
        verb = {"Read": "Reading", "Write": "Writing", "Edit": "Editing"}[tool_name]
        return f"→ {verb} {filename}..."
    elif tool_name == "Bash":
        command = tool_input.get("command", "")
        if len(command) > 50:
            command = command[:50] + "..."
        return f"→ Running: {command}"
    elif tool_name in ("Grep", "Glob"):
        return f"→ Searching for {tool_input.get('pattern', '')}..."
    elif tool_name.endswith("task_complete"):
        return "→ Declaring task complete"
    return f"→ {tool_name}..."


@dataclass
class AgentRequest:
    """Everything needed to launch one agent run for one task attempt."""

    prompt: str
    cwd: Path
    resume_session_id: str | None = None
    model: str | None = None
    system_prompt: str = AUTONOMY_PROMPT
    env: dict[str, str] = field(default_factory=dict)
    mcp_config: dict[str, Any] | None = None
    log_path: Path | None = None


class AgentProcess(Protocol):
    """A running agent: an async stream of messages that can be stopped."""

    def messages(self) -> AsyncIterator[AgentMessage]: ...

    async def terminate(self) -> None: ...


class Agent(Protocol):
    async def start(self, request: AgentRequest) -> AgentProcess: ...


class ClaudeCodeAgent:
    """Launches the Claude Code CLI in stream-json mode.

    The prompt is written to stdin; the command may carry extra arguments
    (e.g. ``CLAUDE_COMMAND="npx claude"``).
    """

    def __init__(self, command: str = "claude") -> None:
        self.command = command

    def build_command(self, request: AgentRequest) -> list[str]:
        cmd = shlex.split(self.command)
        cmd.extend(
            [
                "--print",
                "--output-format",
                "stream-json",
                "--verbose",  # Required for stream-json with --print
                "--dangerously-skip-permissions",
            ]
        )
        if request.model:
            cmd.extend(["--model", request.model])
        if request.resume_session_id:
            cmd.extend(["--resume", request.resume_session_id])
        if request.system_prompt:
            cmd.extend(["--append-system-prompt", request.system_prompt])
        if request.mcp_config:
            cmd.extend(["--mcp-config", json.dumps(request.mcp_config)])
        return cmd

    async def start(self, request: AgentRequest) -> "ClaudeCodeProcess":
        cmd = self.build_command(request)
        logger.debug(f"Starting agent: {cmd[0]} (cwd={request.cwd})")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(request.cwd),
                env={**os.environ, **request.env},
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LINE_LIMIT,
            )
        except OSError as e:
            raise TaskExecutionError(f"Failed to start agent '{cmd[0]}': {e}") from e

        assert process.stdin is not None
        process.stdin.write(request.prompt.encode("utf-8"))
        await process.stdin.drain()
        process.stdin.close()
        return ClaudeCodeProcess(process, request.log_path)


class ClaudeCodeProcess:
    """A running Claude Code subprocess.

    Raw stdout lines are appended to ``log_path`` as they arrive.
    """

    def __init__(self, process: asyncio.subprocess.Process, log_path: Path | None) -> None:
        self.process = process
        self.log_path = log_path

    async def messages(self) -> AsyncIterator[AgentMessage]:
        assert self.process.stdout is not None
        stderr_task = asyncio.create_task(self._read_stderr())
        saw_result = False
        log_file = None
        if self.log_path is not None:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            log_file = open(self.log_path, "a", encoding="utf-8")
        try:
            async for raw_line in self.process.stdout:
                line = raw_line.decode("utf-8", errors="replace")
                if log_file is not None and line.strip():
                    log_file.write(line if line.endswith("\n") else line + "\n")
                    log_file.flush()
                message = parse_stream_line(line)
                if message is None:
                    continue
                if isinstance(message, ResultMessage):
                    saw_result = True
                yield message

            returncode = await self.process.wait()
            stderr = await stderr_task
            if returncode != 0 and not saw_result:
                tail = stderr.strip().splitlines()[-5:]
                raise TaskExecutionError(
                    f"Agent exited with code {returncode}: {' '.join(tail) or 'no output'}"
                )
        finally:
            if log_file is not None:
                log_file.close()
            if not stderr_task.done():
                stderr_task.cancel()
                await asyncio.gather(stderr_task, return_exceptions=True)

    async def _read_stderr(self) -> str:
        assert self.process.stderr is not None
        data = await self.process.stderr.read()
        return data.decode("utf-8", errors="replace")

    async def terminate(self) -> None:
        if self.process.returncode is not None:
            return
        self.process.terminate()
        try:
            await asyncio.wait_for(self.process.wait(), timeout=5)
        except asyncio.TimeoutError:
            self.process.kill()
            await self.process.wait()
