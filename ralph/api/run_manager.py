"""Background run tracking for the HTTP server.

Each ``POST /execute`` starts an ExecutionEngine on the server's event loop
and returns immediately; the RunManager keeps a handle per session so
``/status``, ``/sessions`` and ``DELETE /sessions`` can find it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from ralph.config import RalphConfig
from ralph.engine import AgentFactory, ExecutionEngine
from ralph.events import EventBus
from ralph.models import ExecutionResult, RegisteredPlan, utcnow

logger = logging.getLogger(__name__)

RunStatus = Literal["running", "completed", "failed"]


@dataclass
class RunHandle:
    """One background run."""

    session_id: str
    plan_id: str
    engine: ExecutionEngine
    task: asyncio.Task | None = None
    status: RunStatus = "running"
    result: ExecutionResult | None = None
    error: str | None = None
    started_at: datetime = field(default_factory=utcnow)

    def to_status(self) -> dict[str, Any]:
        data: dict[str, Any] = {"sessionId": self.session_id, "status": self.status}
        if self.result is not None:
            data["result"] = self.result.to_dict()
        if self.error is not None:
            data["error"] = self.error
        return data


class RunManager:
    """Starts engines in the background and tracks them by session id."""

    def __init__(
        self,
        bus: EventBus,
        base_config: RalphConfig | None = None,
        agent_factory: AgentFactory | None = None,
    ) -> None:
        self.bus = bus
        self.base_config = base_config or RalphConfig.from_env()
        self.agent_factory = agent_factory
        self._runs: dict[str, RunHandle] = {}

    def config_for(self, plan: RegisteredPlan, **options: Any) -> RalphConfig:
        """Run configuration for a registered plan with per-request options applied.

        A request's ``project_root`` replaces the registered root; unset
        (``None``) options keep the registered and server values.
        """
        values: dict[str, Any] = {"project_root": plan.project_root, "plan_path": plan.plan_path}
        values.update({key: value for key, value in options.items() if value is not None})
        return self.base_config.with_overrides(**values)

    async def start(self, plan: RegisteredPlan, config: RalphConfig) -> RunHandle:
        """Prepare the engine and launch its run in the background.

        Raises:
            PlanError: If the plan fails to load or validate
        """
        engine = ExecutionEngine(
            config, agent_factory=self.agent_factory, bus=self.bus, plan_id=plan.plan_id
        )
        session = await asyncio.to_thread(engine.prepare)
        handle = RunHandle(session_id=session.session_id, plan_id=plan.plan_id, engine=engine)
        handle.task = asyncio.create_task(self._run(handle))
        self._runs[session.session_id] = handle
        logger.info(f"Started session {session.session_id} for plan {plan.plan_id}")
        return handle

    async def _run(self, handle: RunHandle) -> None:
        try:
            handle.result = await handle.engine.run()
            handle.status = "completed"
        except asyncio.CancelledError:
            handle.status = "failed"
            handle.error = "Run cancelled"
            raise
        except Exception as e:
            logger.exception(f"Session {handle.session_id} crashed")
            handle.status = "failed"
            handle.error = str(e)

    def get(self, session_id: str) -> RunHandle | None:
        return self._runs.get(session_id)

    def list(self) -> list[RunHandle]:
        return sorted(self._runs.values(), key=lambda h: h.started_at)

    def active_count(self) -> int:
        return sum(1 for handle in self._runs.values() if handle.status == "running")

    def active_for_plan(self, plan_id: str) -> RunHandle | None:
        for handle in self._runs.values():
            if handle.plan_id == plan_id and handle.status == "running":
                return handle
        return None

    async def cancel(self, session_id: str, timeout: float = 30.0) -> bool:
        """Ask a run to stop and wait for it. Returns False if unknown."""
        handle = self._runs.get(session_id)
        if handle is None:
            return False
        if handle.task is not None and not handle.task.done():
            handle.engine.cancel()
            try:
                await asyncio.wait_for(asyncio.shield(handle.task), timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Session {session_id} did not stop in {timeout:g}s; cancelling")
                handle.task.cancel()
                await asyncio.gather(handle.task, return_exceptions=True)
        return True

    async def delete(self, session_id: str) -> bool:
        """Stop a run if needed and forget it."""
        if not await self.cancel(session_id):
            return False
        del self._runs[session_id]
        return True

    async def shutdown(self) -> None:
        for session_id in [h.session_id for h in self._runs.values() if h.status == "running"]:
            await self.cancel(session_id)
