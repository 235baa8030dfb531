"""Execution engine: drives the agent through a plan's tasks.

Per task the engine moves through dispatch, awaiting the completion
signal, verification and commit. Failed attempts are retried up to
max_retries; a task that exhausts its retries is recorded as failed and the
run continues with independent tasks. Dependents of a failed task are
reported as blocked.

Completion of an agent run is decided by, in order of preference:

1. an explicit task_complete call through the side channel
2. the agent's own terminal result message
3. the per-task wall-clock timeout (failure)
4. an error from the agent stream (failure)
"""

import asyncio
import logging
import os
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from opentelemetry import trace

from ralph import git, telemetry
from ralph.agent import (
    Agent,
    AgentProcess,
    AgentRequest,
    AssistantMessage,
    ClaudeCodeAgent,
    RawMessage,
    ResultMessage,
    format_tool_call,
    message_session_id,
)
from ralph.config import RalphConfig
from ralph.errors import PlanError, SideChannelError, TaskExecutionError
from ralph.events import EventBus
from ralph.models import (
    ExecutionResult,
    Plan,
    Session,
    Task,
    TaskExecution,
    TaskResult,
    utcnow,
)
from ralph.plan_parser import load_plan, update_task_in_document, validate_plan
from ralph.resolver import blocked_tasks, ready_tasks
from ralph.side_channel import (
    CompletionChannel,
    CompletionSignal,
    SideChannelBinding,
    build_mcp_config,
)
from ralph.state import SessionStore
from ralph.status import compute_progress
from ralph.verification import evaluate_criteria, run_test_command

logger = logging.getLogger(__name__)

AgentFactory = Callable[[RalphConfig], Agent]

# How long to let the agent finish its result message after task_complete
RESULT_GRACE_SECONDS = 10.0


def default_agent_factory(config: RalphConfig) -> Agent:
    return ClaudeCodeAgent(config.claude_command)


def _read_spec_context(task: Task, project_root: Path, limit: int) -> str | None:
    if not task.spec_reference or limit <= 0:
        return None
    reference = task.spec_reference.split("#", 1)[0]
    if not reference or "://" in reference:
        return None
    path = (project_root / reference).resolve()
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
    if len(content) > limit:
        content = content[:limit] + "\n\n[... truncated ...]"
    return content


def build_task_prompt(
    plan: Plan,
    task: Task,
    project_root: Path,
    spec_context_chars: int = 8000,
    side_channel: bool = True,
    attempt: int = 1,
    previous_error: str | None = None,
) -> str:
    """Build the prompt sent to the agent for one task attempt."""
    lines = [
        "# Task Execution - IMPLEMENT THIS TASK",
        "",
        "## Project Context",
        "",
        f"**Project:** {plan.project_name}",
        "",
    ]
    if plan.description:
        lines += ["**Overview:**", plan.description, ""]
    lines += [
        "You MUST implement the following task by creating, modifying or deleting "
        "files. Do not just describe what should be done.",
        "",
        f"**Task ID:** {task.id}",
        f"**Title:** {task.title}",
        f"**Priority:** {task.priority}",
        "",
    ]
    if task.dependencies:
        lines += [
            f"**Dependencies:** {', '.join(task.dependencies)}",
            "(These tasks are complete and their changes are already in the codebase)",
            "",
        ]
    lines += ["## Task Description", "", task.description or task.title, ""]

    if task.acceptance_criteria:
        lines += ["## Acceptance Criteria (MUST BE MET)", ""]
        for criterion in task.acceptance_criteria:
            mark = "x" if criterion.completed else " "
            lines.append(f"- [{mark}] {criterion.text}")
        lines.append("")

    if task.spec_reference:
        lines += ["## Specification Reference", "", f"Refer to: {task.spec_reference}", ""]
        spec = _read_spec_context(task, project_root, spec_context_chars)
        if spec:
            lines += ["```", spec, "```", ""]

    if attempt > 1:
        lines += [
            "## Previous Attempt",
            "",
            f"This is attempt {attempt}. The previous attempt failed:",
            "",
            previous_error or "(no error details)",
            "",
            "Fix the cause of that failure as part of this attempt.",
            "",
        ]

    lines += [
        "## Implementation Instructions",
        "",
        "1. Explore the codebase to understand the current implementation",
        "2. Make only the changes needed for this task",
        "3. Verify every acceptance criterion is met",
        "4. Run relevant tests or checks if possible",
        "",
    ]
    if side_channel:
        lines += [
            "## Completion",
            "",
            "When the task is done, call the `task_complete` tool exactly once. "
            "You may pass short `notes` and an `acceptance_criteria` map of "
            "criterion text to true/false. Stop working after calling it.",
            "",
        ]
    lines.append("BEGIN IMPLEMENTATION NOW.")
    return "\n".join(lines) + "\n"


class ExecutionEngine:
    """Runs one plan to completion (or cancellation) in one session.

    Usage:
        engine = ExecutionEngine(config, bus=bus)
        engine.prepare()          # raises PlanError before anything runs
        result = await engine.run()

    Attributes:
        config: Run configuration
        bus: Event bus receiving task/session/progress events
        store: Session store (sole writer of the session file)
        plan: Plan loaded by prepare()
        session: Session created or resumed by prepare()
    """

    def __init__(
        self,
        config: RalphConfig,
        agent_factory: AgentFactory | None = None,
        bus: EventBus | None = None,
        store: SessionStore | None = None,
        tracer: trace.Tracer | None = None,
        plan_id: str | None = None,
    ) -> None:
        self.config = config
        self.agent = (agent_factory or default_agent_factory)(config)
        self.bus = bus or EventBus()
        self.store = store or SessionStore(
            config.resolved_state_dir, config.resolved_checkpoint_dir
        )
        self.tracer = tracer or trace.get_tracer("ralph")
        self.channel = CompletionChannel(config.resolved_signal_dir)
        self.plan_id = plan_id or config.resolved_plan_path.stem
        self.plan: Plan | None = None
        self.session: Session | None = None
        self._cancel_event = asyncio.Event()
        self._active: dict[str, AgentProcess] = {}
        self._document_lock = asyncio.Lock()
        self._git_checkpoints: dict[str, git.GitCheckpoint | None] = {}
        self._is_git_repo: bool | None = None

    @property
    def project_root(self) -> Path:
        return Path(self.config.project_root).resolve()

    @property
    def plan_path(self) -> Path:
        return self.config.resolved_plan_path

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def prepare(self) -> Session:
        """Load and validate the plan, then create or resume the session.

        Raises:
            PlanError: If the plan is missing or invalid
        """
        plan = load_plan(self.plan_path, self.project_root)
        validation = validate_plan(plan)
        if not validation.valid:
            raise PlanError(
                "Plan validation failed: " + "; ".join(validation.errors),
                errors=validation.errors,
            )
        for warning in validation.warnings:
            logger.warning(warning)

        session = self.store.load(self.plan_path) if self.config.resume else None
        if session is None:
            session = self.store.create(self.plan_path)
        else:
            logger.info(f"Resuming session {session.session_id}")
            self._reset_for_resume(session)

        if self.config.skip_completed_tasks:
            for task in plan.tasks:
                if task.is_done and task.id not in session.completed_tasks:
                    session.failed_tasks.discard(task.id)
                    session.skipped_tasks.add(task.id)
        self.store.persist(session)

        self.plan = plan
        self.session = session
        return session

    def _reset_for_resume(self, session: Session) -> None:
        """Clear interrupted work and give failed tasks another run."""
        for task_id in session.in_progress_tasks():
            session.task_history.append(
                TaskExecution(
                    task_id=task_id,
                    status="pending",
                    started_at=utcnow(),
                    attempts=session.attempts_for(task_id),
                    error="Interrupted before completion",
                )
            )
        session.current_task_id = None
        if session.failed_tasks:
            logger.info(f"Retrying previously failed tasks: {sorted(session.failed_tasks)}")
            session.failed_tasks.clear()

    def cancel(self) -> None:
        """Stop dispatching and terminate running agents.

        Interrupted tasks stay in_progress in the session so a resume can
        pick them up.
        """
        self._cancel_event.set()

    async def run(self) -> ExecutionResult:
        """Execute every runnable task and return the run summary."""
        if self.session is None or self.plan is None:
            self.prepare()
        assert self.session is not None and self.plan is not None
        session, plan = self.session, self.plan

        started_at = utcnow()
        status = "completed"
        in_flight: dict[asyncio.Task, str] = {}
        max_parallel = max(1, self.config.max_parallel_tasks)

        self.bus.publish("session.started", self._payload(totalTasks=plan.total_tasks))
        logger.info(
            f"Running {plan.total_tasks} tasks from {self.plan_path} "
            f"(session {session.session_id})"
        )

        with self.tracer.start_as_current_span("ralph.run") as span:
            span.set_attribute("ralph.session_id", session.session_id)
            span.set_attribute("ralph.plan_path", str(self.plan_path))
            span.set_attribute("ralph.total_tasks", plan.total_tasks)
            span.set_attribute("ralph.max_parallel", max_parallel)

            try:
                while True:
                    if self.cancelled:
                        status = "cancelled"
                        break

                    slots = max_parallel - len(in_flight)
                    if slots > 0:
                        runnable = ready_tasks(
                            plan,
                            session.done_tasks,
                            exclude=set(in_flight.values()) | session.failed_tasks,
                            limit=slots,
                            skip_done=self.config.skip_completed_tasks,
                        )
                        for task in runnable:
                            worker = asyncio.create_task(self._execute_task(task))
                            in_flight[worker] = task.id

                    if not in_flight:
                        break

                    cancel_wait = asyncio.create_task(self._cancel_event.wait())
                    done, _ = await asyncio.wait(
                        [*in_flight, cancel_wait], return_when=asyncio.FIRST_COMPLETED
                    )
                    cancel_wait.cancel()
                    for worker in done:
                        if worker in in_flight:
                            in_flight.pop(worker)
                            worker.result()
            finally:
                if in_flight:
                    await self._abort(in_flight)

            span.set_attribute("ralph.status", status)
            span.set_attribute("ralph.completed", len(session.completed_tasks))
            span.set_attribute("ralph.failed", len(session.failed_tasks))

        result = self._build_result(started_at, status)
        self.bus.publish(
            "session.completed", self._payload(status=status, result=result.to_dict())
        )
        logger.info(
            f"Run {status}: {len(result.completed_tasks)} completed, "
            f"{len(result.failed_tasks)} failed, {len(result.blocked_tasks)} blocked"
        )
        return result

    async def _abort(self, in_flight: dict[asyncio.Task, str]) -> None:
        for process in list(self._active.values()):
            await process.terminate()
        for worker in in_flight:
            worker.cancel()
        await asyncio.gather(*in_flight, return_exceptions=True)

    def _build_result(self, started_at: datetime, status: str) -> ExecutionResult:
        assert self.session is not None and self.plan is not None
        session, plan = self.session, self.plan
        order = [task.id for task in plan.tasks]
        return ExecutionResult(
            session_id=session.session_id,
            total_tasks=plan.total_tasks,
            completed_tasks=[tid for tid in order if tid in session.completed_tasks],
            failed_tasks=[tid for tid in order if tid in session.failed_tasks],
            skipped_tasks=[tid for tid in order if tid in session.skipped_tasks],
            blocked_tasks=blocked_tasks(plan, session.done_tasks, session.failed_tasks),
            started_at=started_at,
            ended_at=utcnow(),
            status="cancelled" if status == "cancelled" else "completed",
        )

    def _payload(self, task_id: str | None = None, **extra: Any) -> dict[str, Any]:
        assert self.session is not None and self.plan is not None
        session = self.session
        task_ids = {task.id for task in self.plan.tasks}
        done = session.done_tasks & task_ids
        payload: dict[str, Any] = {
            "planId": self.plan_id,
            "sessionId": session.session_id,
            "progress": compute_progress(len(done), len(task_ids)),
            "completedTasks": sorted(done),
            "failedTasks": sorted(session.failed_tasks),
            "inProgressTasks": session.in_progress_tasks(),
        }
        if task_id is not None:
            payload["taskId"] = task_id
        payload.update(extra)
        return payload

    async def _execute_task(self, task: Task) -> None:
        """Run all attempts of one task and record the outcome."""
        assert self.session is not None
        session = self.session
        max_attempts = max(1, self.config.max_retries)
        previous_error: str | None = None

        if self.config.rewind_on_retry and await self._in_git_repo():
            self._git_checkpoints[task.id] = await asyncio.to_thread(
                git.create_checkpoint, self.project_root
            )

        for attempt in range(1, max_attempts + 1):
            if self.cancelled:
                return
            if attempt > 1 and self._git_checkpoints.get(task.id):
                await asyncio.to_thread(
                    git.restore_checkpoint, self.project_root, self._git_checkpoints[task.id]
                )

            self.store.record_task_start(session, task.id)
            self.bus.publish(
                "task.started", self._payload(task.id, title=task.title, attempt=attempt)
            )
            logger.info(f"[{task.id}] {task.title} (attempt {attempt}/{max_attempts})")

            result = TaskResult(success=False)
            started = asyncio.get_running_loop().time()
            with self.tracer.start_as_current_span("ralph.task") as span:
                span.set_attribute("task.id", task.id)
                span.set_attribute("task.title", task.title)
                span.set_attribute("task.attempt", attempt)
                try:
                    await self._attempt(task, attempt, previous_error, result)
                except TaskExecutionError as e:
                    result.success = False
                    result.error = e.message
                    result.duration_seconds = asyncio.get_running_loop().time() - started
                    permanent = not e.retryable or attempt >= max_attempts
                    span.set_attribute("task.status", "failed" if permanent else "retrying")
                    span.set_attribute("task.error", e.message)
                    self.store.record_task_result(
                        session, task.id, result=result, error=e.message, retrying=not permanent
                    )
                    _record_metrics(result, "failed" if permanent else "retrying", task.id)
                    previous_error = e.message
                    if not permanent:
                        logger.warning(f"[{task.id}] attempt {attempt} failed: {e.message}")
                        self.bus.publish(
                            "task.retrying",
                            self._payload(task.id, attempt=attempt, error=e.message),
                        )
                        continue

                    logger.error(f"[{task.id}] failed after {attempt} attempt(s): {e.message}")
                    await self._write_document(task, "Needs Re-Work")
                    self.bus.publish(
                        "task.failed", self._payload(task.id, attempt=attempt, error=e.message)
                    )
                    self._after_resolution()
                    return

                result.success = True
                result.duration_seconds = asyncio.get_running_loop().time() - started
                span.set_attribute("task.status", "completed")
                span.set_attribute("claude.cost_usd", result.cost_usd)
                if result.commit_hash:
                    span.set_attribute("git.commit", result.commit_hash)

            self.store.record_task_result(session, task.id, result=result)
            task.status = "Implemented"
            _record_metrics(result, "completed", task.id)
            logger.info(f"[{task.id}] completed ({result.completion_source})")
            self.bus.publish(
                "task.completed",
                self._payload(task.id, attempt=attempt, commitHash=result.commit_hash),
            )
            self._after_resolution()
            return

    def _after_resolution(self) -> None:
        assert self.session is not None
        path = self.store.save_checkpoint(self.session)
        self.bus.publish("checkpoint.created", self._payload(checkpointPath=str(path)))
        self.bus.publish("progress", self._payload())

    async def _in_git_repo(self) -> bool:
        if self._is_git_repo is None:
            self._is_git_repo = await asyncio.to_thread(git.is_git_repo, self.project_root)
        return self._is_git_repo

    async def _attempt(
        self, task: Task, attempt: int, previous_error: str | None, result: TaskResult
    ) -> None:
        """One attempt: agent run, verification, document update and commit.

        Raises:
            TaskExecutionError: If any step fails
        """
        use_git = await self._in_git_repo()
        before = await asyncio.to_thread(git.status_snapshot, self.project_root) if use_git else None

        await self._drive_agent(task, attempt, previous_error, result)

        if self.config.auto_test:
            test = await asyncio.to_thread(
                run_test_command,
                self.config.test_command,
                self.project_root,
                self.config.test_timeout_seconds,
            )
            if not test.passed:
                tail = "\n".join(test.output.splitlines()[-20:])
                raise TaskExecutionError(f"Tests failed ({self.config.test_command}):\n{tail}")

        if self.config.require_acceptance_criteria:
            report = await asyncio.to_thread(
                evaluate_criteria,
                task,
                self.project_root,
                result.criteria_met,
                self.config.test_timeout_seconds,
            )
            met = report.met
            if not report.all_met:
                raise TaskExecutionError(
                    "Acceptance criteria not met: " + "; ".join(report.unmet)
                )
        else:
            met = [
                criterion.text
                for criterion in task.acceptance_criteria
                if criterion.completed or result.criteria_met.get(criterion.text) is True
            ]
        result.criteria_met = {
            criterion.text: criterion.text in met for criterion in task.acceptance_criteria
        }

        after = await asyncio.to_thread(git.status_snapshot, self.project_root) if use_git else None
        changes = git.diff_snapshots(before, after)
        result.files_added = changes.added
        result.files_modified = changes.modified
        result.files_deleted = changes.deleted

        async with self._document_lock:
            await self._write_document(task, "Implemented", met, locked=True)
            if self.config.auto_commit and use_git:
                result.commit_hash = await asyncio.to_thread(
                    git.commit_task, self.project_root, task, changes
                )

    async def _write_document(
        self,
        task: Task,
        status: str,
        criteria: list[str] | None = None,
        locked: bool = False,
    ) -> None:
        if not locked:
            async with self._document_lock:
                await asyncio.to_thread(self._rewrite_document, task.id, status, criteria)
            return
        await asyncio.to_thread(self._rewrite_document, task.id, status, criteria)

    def _rewrite_document(self, task_id: str, status: str, criteria: list[str] | None) -> None:
        try:
            original = self.plan_path.read_text(encoding="utf-8")
            updated = update_task_in_document(original, task_id, status, criteria)
            if updated != original:
                tmp = self.plan_path.with_name(f".{self.plan_path.name}.tmp")
                tmp.write_text(updated, encoding="utf-8")
                os.replace(tmp, self.plan_path)
        except (OSError, PlanError) as e:
            logger.warning(f"Could not update plan document for {task_id}: {e}")

    async def _drive_agent(
        self, task: Task, attempt: int, previous_error: str | None, result: TaskResult
    ) -> None:
        """Run the agent until completion is signalled, it finishes, or time runs out."""
        assert self.session is not None and self.plan is not None
        session = self.session
        config = self.config

        binding = SideChannelBinding(
            session_id=session.session_id,
            plan_path=str(self.plan_path),
            project_root=str(self.project_root),
            task_id=task.id,
            state_dir=str(self.store.state_dir),
            signal_dir=str(self.channel.signal_dir),
        )
        resume_id = (
            session.agent_session_id
            if config.continue_agent_session and config.max_parallel_tasks <= 1
            else None
        )
        request = AgentRequest(
            prompt=build_task_prompt(
                self.plan,
                task,
                self.project_root,
                config.spec_context_chars,
                config.side_channel,
                attempt,
                previous_error,
            ),
            cwd=self.project_root,
            resume_session_id=resume_id,
            model=config.model,
            env=binding.to_env(),
            mcp_config=build_mcp_config(binding) if config.side_channel else None,
            log_path=config.resolved_log_dir / f"session-{session.session_id}-{task.id}.log",
        )

        self.channel.clear(session.session_id, task.id)
        try:
            process = await self.agent.start(request)
        except OSError as e:
            raise TaskExecutionError(f"Failed to start agent: {e}") from e

        self._active[task.id] = process
        consumer = asyncio.create_task(self._consume(process, task, result))
        listener = (
            asyncio.create_task(
                self.channel.wait(session.session_id, task.id, config.completion_poll_interval)
            )
            if config.side_channel
            else None
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + config.task_timeout_seconds

        try:
            waiters = {consumer} | ({listener} if listener else set())
            done, _ = await asyncio.wait(
                waiters, timeout=config.task_timeout_seconds, return_when=asyncio.FIRST_COMPLETED
            )
            if not done:
                raise TaskExecutionError(
                    f"Task timed out after {config.task_timeout_seconds:g}s"
                )

            signal: CompletionSignal | None = None
            if listener is not None and listener in done:
                try:
                    signal = listener.result()
                except SideChannelError as e:
                    logger.warning(f"[{task.id}] side channel failed, using agent result: {e}")

            if signal is None:
                if not consumer.done():
                    remaining = max(0.0, deadline - loop.time())
                    finished, _ = await asyncio.wait({consumer}, timeout=remaining)
                    if not finished:
                        raise TaskExecutionError(
                            f"Task timed out after {config.task_timeout_seconds:g}s"
                        )
                signal = self._late_signal(task.id)
                if signal is None:
                    final = consumer.result()
                    if final is None:
                        raise TaskExecutionError("Agent stream ended without a result message")
                    if final.is_error:
                        raise TaskExecutionError(f"Agent reported an error: {final.result[:500]}")
                    result.completion_source = "result_message"
                    logger.info(f"[{task.id}] no task_complete call; using agent result message")

            if signal is not None:
                result.completion_source = "side_channel"
                result.notes = signal.notes
                result.criteria_met = dict(signal.acceptance_criteria)
                if not consumer.done():
                    try:
                        await asyncio.wait_for(asyncio.shield(consumer), RESULT_GRACE_SECONDS)
                    except (asyncio.TimeoutError, TaskExecutionError):
                        pass
        finally:
            if listener is not None:
                listener.cancel()
            if not consumer.done():
                await process.terminate()
                consumer.cancel()
            await asyncio.gather(
                consumer, *([listener] if listener else []), return_exceptions=True
            )
            self._active.pop(task.id, None)
            self.channel.clear(session.session_id, task.id)

    def _late_signal(self, task_id: str) -> CompletionSignal | None:
        """A signal written just before the agent exited."""
        if not self.config.side_channel:
            return None
        assert self.session is not None
        try:
            return self.channel.read_signal(self.session.session_id, task_id)
        except SideChannelError as e:
            logger.warning(f"[{task_id}] {e}")
            return None

    async def _consume(
        self, process: AgentProcess, task: Task, result: TaskResult
    ) -> ResultMessage | None:
        """Read the agent's message stream, collecting session id, cost and output."""
        final: ResultMessage | None = None
        try:
            async for message in process.messages():
                session_id = message_session_id(message)
                if session_id and not result.agent_session_id:
                    result.agent_session_id = session_id

                if isinstance(message, AssistantMessage):
                    for tool_use in message.tool_uses:
                        self.bus.publish(
                            "log",
                            self._payload(task.id, message=format_tool_call(tool_use.name, tool_use.input)),
                        )
                    if message.text:
                        result.output = message.text
                elif isinstance(message, ResultMessage):
                    final = message
                    result.cost_usd += message.total_cost_usd
                    result.num_turns += message.num_turns
                    if message.result:
                        result.output = message.result
                elif isinstance(message, RawMessage):
                    logger.debug(f"[{task.id}] unrecognized agent message: {message.type}")
        except TaskExecutionError:
            raise
        except (OSError, ValueError) as e:
            raise TaskExecutionError(f"Agent stream error: {e}") from e
        return final


def _record_metrics(result: TaskResult, status: str, task_id: str) -> None:
    """Record metrics if instruments are initialized."""
    try:
        if status == "retrying":
            telemetry.retries_counter.add(1, {"task_id": task_id})
        else:
            telemetry.tasks_counter.add(1, {"status": status})
            telemetry.task_duration.record(result.duration_seconds, {"status": status})
        telemetry.cost_counter.add(result.cost_usd)
    except (AttributeError, NameError):
        # Instruments not created - telemetry disabled
        pass
