"""Test doubles and sample plan documents shared across the test modules."""

import asyncio
import textwrap
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ralph.agent import AgentRequest, parse_message
from ralph.side_channel import ENV_CURRENT_TASK_ID, SideChannelBinding, handle_task_complete

TWO_TASK_PLAN = textwrap.dedent(
    """\
    # Implementation Plan

    **Project:** Todo API

    ## Overview

    A tiny todo service.

    ## Tasks

    ### Task 1: Create models

    **ID:** task-001
    **Priority:** high

    **Description:**
    Define the todo model.

    **Acceptance Criteria:**
    - [ ] Model file exists

    **Dependencies:** none

    ---

    ### Task 2: Add endpoints

    **ID:** task-002
    **Priority:** medium

    **Description:**
    Expose CRUD endpoints for todos.

    **Acceptance Criteria:**
    - [ ] Endpoints respond

    **Dependencies:** task-001

    ---
    """
)


def make_plan_document(tasks: list[dict[str, Any]], project: str = "Sample") -> str:
    """Render a plan document from task dicts (id, title, deps, status)."""
    lines = ["# Implementation Plan", "", f"**Project:** {project}", "", "## Tasks", ""]
    for n, task in enumerate(tasks, start=1):
        lines += [
            f"### Task {n}: {task.get('title', 'Task ' + str(n))}",
            "",
            f"**ID:** {task['id']}",
            f"**Priority:** {task.get('priority', 'medium')}",
        ]
        if task.get("status"):
            lines.append(f"**Status:** {task['status']}")
        lines += [
            "",
            "**Description:**",
            task.get("description", f"Do step {n}."),
            "",
            "**Acceptance Criteria:**",
        ]
        for criterion in task.get("criteria", [f"Step {n} works"]):
            lines.append(f"- [ ] {criterion}")
        deps = task.get("deps") or []
        lines += ["", f"**Dependencies:** {', '.join(deps) if deps else 'none'}", "", "---", ""]
    return "\n".join(lines)


def result_message(
    text: str = "Done",
    is_error: bool = False,
    cost: float = 0.01,
    session_id: str = "agent-session-1",
) -> dict[str, Any]:
    return {
        "type": "result",
        "subtype": "error" if is_error else "success",
        "is_error": is_error,
        "result": text,
        "total_cost_usd": cost,
        "duration_ms": 10,
        "num_turns": 1,
        "session_id": session_id,
    }


def assistant_message(text: str = "Working", tool: str | None = None) -> dict[str, Any]:
    content: list[dict[str, Any]] = [{"type": "text", "text": text}]
    if tool:
        content.append({"type": "tool_use", "id": "t1", "name": tool, "input": {"file_path": "a.py"}})
    return {"type": "assistant", "session_id": "agent-session-1", "message": {"content": content}}


@dataclass
class AgentScript:
    """What the fake agent does for one start() call."""

    messages: list[dict[str, Any]] = field(default_factory=lambda: [result_message()])
    call_task_complete: bool = False
    criteria: dict[str, bool] = field(default_factory=dict)
    notes: str | None = None
    hang: bool = False
    action: Callable[[AgentRequest], None] | None = None


class FakeProcess:
    def __init__(self, request: AgentRequest, script: AgentScript) -> None:
        self.request = request
        self.script = script
        self.terminated = False
        self._stop = asyncio.Event()
        self.tool_response: dict[str, Any] | None = None

    async def messages(self):
        if self.script.action is not None:
            self.script.action(self.request)
        if self.script.call_task_complete:
            binding = SideChannelBinding.from_env(self.request.env)
            self.tool_response = handle_task_complete(
                binding, self.script.notes, self.script.criteria
            )
        for data in self.script.messages:
            await asyncio.sleep(0)
            yield parse_message(data)
        if self.script.hang:
            await self._stop.wait()

    async def terminate(self) -> None:
        self.terminated = True
        self._stop.set()


class FakeAgent:
    """Agent double driven by a per-task script.

    ``scripts`` maps a task id to a list of AgentScripts consumed one per
    attempt; the last one repeats. Unlisted tasks use ``default``.
    """

    def __init__(
        self,
        scripts: dict[str, list[AgentScript]] | None = None,
        default: AgentScript | None = None,
    ) -> None:
        self.scripts = scripts or {}
        self.default = default or AgentScript()
        self.requests: list[AgentRequest] = []
        self.processes: list[FakeProcess] = []

    def task_ids(self) -> list[str]:
        return [request.env[ENV_CURRENT_TASK_ID] for request in self.requests]

    async def start(self, request: AgentRequest) -> FakeProcess:
        self.requests.append(request)
        task_id = request.env[ENV_CURRENT_TASK_ID]
        queue = self.scripts.get(task_id)
        if queue:
            script = queue.pop(0) if len(queue) > 1 else queue[0]
        else:
            script = self.default
        process = FakeProcess(request, script)
        self.processes.append(process)
        return process
