"""Tests for the HTTP API."""

import time
from collections.abc import Callable, Iterator
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from fakes import AgentScript, FakeAgent
from ralph.api.config import APIConfig
from ralph.api.endpoints.events import _sse_frames
from ralph.api.main import create_application
from ralph.config import RalphConfig
from ralph.events import EventBus
from ralph.registry import PlanRegistry

pytestmark = pytest.mark.api


@pytest.fixture
def registry(tmp_path: Path, plan_file: Path) -> PlanRegistry:
    registry = PlanRegistry(tmp_path / "registry.json")
    registry.register("todo", tmp_path, plan_file)
    return registry


@pytest.fixture
def make_app(
    registry: PlanRegistry, run_config: RalphConfig
) -> Callable[[FakeAgent], FastAPI]:
    def make(agent: FakeAgent) -> FastAPI:
        return create_application(
            config=APIConfig(registry_path=registry.path, environment="development"),
            registry=registry,
            run_config=run_config,
            agent_factory=lambda c: agent,
            watch=False,
        )

    return make


@pytest.fixture
def client(make_app: Callable[[FakeAgent], FastAPI], fake_agent: FakeAgent) -> Iterator[TestClient]:
    with TestClient(make_app(fake_agent)) as client:
        yield client


@pytest.fixture
def hanging_client(make_app: Callable[[FakeAgent], FastAPI]) -> Iterator[TestClient]:
    agent = FakeAgent(default=AgentScript(messages=[], hang=True))
    with TestClient(make_app(agent)) as client:
        yield client


def wait_finished(client: TestClient, session_id: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/status/{session_id}").json()
        if body["status"] != "running":
            return body
        time.sleep(0.02)
    raise AssertionError(f"Session {session_id} still running")


class TestHealth:
    def test_health(self, client: TestClient, tmp_path: Path) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["activeSessions"] == 0
        assert body["projectRoot"] == str(tmp_path.resolve())
        assert "timestamp" in body


class TestExecute:
    """Tests for POST /execute and the session endpoints."""

    def test_execute_registered_plan(self, client: TestClient, fake_agent: FakeAgent) -> None:
        response = client.post("/execute", json={"plan": "todo"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "started"
        assert body["planId"] == "todo"
        assert body["plan"] == {"title": "Todo API", "totalTasks": 2}

        final = wait_finished(client, body["sessionId"])
        assert final["status"] == "completed"
        assert final["result"]["completedTasks"] == ["task-001", "task-002"]
        assert "error" not in final
        assert fake_agent.task_ids() == ["task-001", "task-002"]

    def test_execute_file_path_auto_registers(
        self, client: TestClient, registry: PlanRegistry, tmp_path: Path, plan_file: Path
    ) -> None:
        other = tmp_path / "billing" / "IMPLEMENTATION_PLAN.md"
        other.parent.mkdir()
        other.write_text(plan_file.read_text())

        response = client.post(
            "/execute",
            json={"plan": "billing/IMPLEMENTATION_PLAN.md", "directory": str(tmp_path)},
        )

        assert response.status_code == 200
        assert response.json()["planId"] == "billing"
        assert registry.get("billing", touch=False) is not None
        wait_finished(client, response.json()["sessionId"])

    def test_known_file_uses_existing_registration(
        self, client: TestClient, plan_file: Path
    ) -> None:
        response = client.post("/execute", json={"plan": str(plan_file)})

        assert response.json()["planId"] == "todo"
        wait_finished(client, response.json()["sessionId"])

    def test_unknown_plan_id(self, client: TestClient) -> None:
        response = client.post("/execute", json={"plan": "nope"})

        assert response.status_code == 404
        assert response.json()["error"] == "Not Found"
        assert "nope" in response.json()["message"]

    def test_missing_plan_file(self, client: TestClient, tmp_path: Path) -> None:
        response = client.post("/execute", json={"plan": str(tmp_path / "gone.md")})

        assert response.status_code == 404
        assert "not found" in response.json()["message"]

    def test_invalid_body(self, client: TestClient) -> None:
        response = client.post("/execute", json={"maxRetries": 0})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Bad Request"
        assert "plan" in body["message"]

    def test_invalid_plan_document(self, client: TestClient, plan_file: Path) -> None:
        plan_file.write_text("## Tasks\n")

        response = client.post("/execute", json={"plan": "todo"})

        assert response.status_code == 400
        assert "at least one task" in response.json()["errors"][0]

    def test_status_unknown_session(self, client: TestClient) -> None:
        response = client.get("/status/session-missing")

        assert response.status_code == 404

    def test_second_run_of_same_plan_conflicts(self, hanging_client: TestClient) -> None:
        first = hanging_client.post("/execute", json={"plan": "todo"})
        assert first.status_code == 200

        second = hanging_client.post("/execute", json={"plan": "todo"})

        assert second.status_code == 409
        assert hanging_client.get("/health").json()["activeSessions"] == 1

    def test_sessions_list_and_delete(self, hanging_client: TestClient) -> None:
        session_id = hanging_client.post("/execute", json={"plan": "todo"}).json()["sessionId"]

        sessions = hanging_client.get("/sessions").json()["sessions"]
        assert sessions == [{"sessionId": session_id, "planId": "todo", "status": "running", "error": None}]

        deleted = hanging_client.delete(f"/sessions/{session_id}")
        assert deleted.status_code == 200
        assert deleted.json()["status"] == "deleted"
        assert hanging_client.get(f"/status/{session_id}").status_code == 404
        assert hanging_client.delete(f"/sessions/{session_id}").status_code == 404


class TestPlans:
    """Tests for the /plans endpoints."""

    def test_list_plans(self, client: TestClient) -> None:
        plans = client.get("/plans").json()["plans"]

        assert len(plans) == 1
        assert plans[0]["id"] == "todo"
        assert plans[0]["title"] == "Todo API"
        assert plans[0]["totalTasks"] == 2
        assert plans[0]["progress"] == 0

    def test_unparsable_plan_is_listed_with_error(
        self, client: TestClient, plan_file: Path
    ) -> None:
        plan_file.unlink()

        plans = client.get("/plans").json()["plans"]

        assert plans[0]["totalTasks"] == 0
        assert "not found" in plans[0]["error"]

    def test_plan_detail_after_run(self, client: TestClient) -> None:
        session_id = client.post("/execute", json={"plan": "todo"}).json()["sessionId"]
        wait_finished(client, session_id)

        plan = client.get("/plans/todo").json()["plan"]

        assert plan["sessionId"] == session_id
        assert plan["progress"] == 100
        assert plan["completedTasks"] == 2
        assert [task["runtimeStatus"] for task in plan["tasks"]] == ["completed", "completed"]
        assert plan["tasks"][1]["dependencies"] == ["task-001"]

    def test_plan_detail_before_run(self, client: TestClient) -> None:
        plan = client.get("/plans/todo").json()["plan"]

        assert plan["sessionId"] is None
        assert plan["runtimeStatus"]["tasks"] == {"task-001": "pending", "task-002": "blocked"}

    def test_unknown_plan(self, client: TestClient) -> None:
        response = client.get("/plans/nope")

        assert response.status_code == 404
        assert "not registered" in response.json()["message"]

    def test_restart_replaces_running_session(self, hanging_client: TestClient) -> None:
        first = hanging_client.post("/execute", json={"plan": "todo"}).json()["sessionId"]

        response = hanging_client.post("/plans/todo/restart")

        assert response.status_code == 200
        second = response.json()["sessionId"]
        assert second != first
        assert response.json()["message"] == "Execution restarted in background"
        assert hanging_client.get(f"/status/{first}").json()["status"] == "completed"
        assert hanging_client.get(f"/status/{first}").json()["result"]["status"] == "cancelled"


class TestEvents:
    """Tests for the SSE and WebSocket event streams."""

    def test_sse_replay(self, client: TestClient) -> None:
        session_id = client.post("/execute", json={"plan": "todo"}).json()["sessionId"]
        wait_finished(client, session_id)

        with client.stream(
            "GET", "/events/stream", params={"planId": "todo", "replay": "true", "limit": 2}
        ) as response:
            assert response.headers["content-type"].startswith("text/event-stream")
            text = "".join(response.iter_text())

        event_types = [
            line.removeprefix("event: ") for line in text.splitlines() if line.startswith("event: ")
        ]
        assert text.startswith(": connected")
        assert event_types == ["session.started", "task.started"]

    def test_websocket_receives_run_events(self, hanging_client: TestClient) -> None:
        with hanging_client.websocket_connect("/events/ws?planId=todo") as websocket:
            session_id = hanging_client.post("/execute", json={"plan": "todo"}).json()["sessionId"]
            event = websocket.receive_json()

        assert event["type"] in {"session.started", "task.started"}
        assert event["planId"] == "todo"
        assert event["sessionId"] == session_id

    @pytest.mark.asyncio
    async def test_event_published_while_connecting_is_sent_once(self) -> None:
        bus = EventBus()
        bus.publish("progress", {"planId": "todo", "n": 1})
        request = MagicMock()
        request.is_disconnected = AsyncMock(return_value=False)
        frames = _sse_frames(request, bus, "todo", replay=True, limit=None, heartbeat=0.05)

        assert await frames.__anext__() == ": connected\n\n"
        bus.publish("progress", {"planId": "todo", "n": 2})
        sent = [await frames.__anext__() for _ in range(3)]
        await frames.aclose()

        assert [frame.splitlines()[0] for frame in sent[:2]] == ["id: 1", "id: 2"]
        assert sent[2] == ": keepalive\n\n"
        assert bus.subscriber_count == 0


class TestErrorHandling:
    def test_unexpected_error_hides_details(self, make_app, fake_agent: FakeAgent) -> None:
        app = make_app(fake_agent)

        @app.get("/boom")
        async def boom() -> None:
            raise ValueError("secret detail")

        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/boom")

        assert response.status_code == 500
        body = response.json()
        assert body["message"] == "An unexpected error occurred"
        assert body["type"] == "ValueError"
        assert "secret" not in response.text
