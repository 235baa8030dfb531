"""Tests for the event bus and the state watcher."""

import asyncio
import json
import os
import time
from pathlib import Path

import pytest

from ralph.events import Event, EventBus, StateWatcher, WatchTarget


class TestEvent:
    def test_sse_frame(self) -> None:
        event = Event(type="task.started", data={"taskId": "task-001"}, id=7)

        frame = event.to_sse()

        lines = frame.splitlines()
        assert lines[0] == "id: 7"
        assert lines[1] == "event: task.started"
        payload = json.loads(lines[2].removeprefix("data: "))
        assert payload["taskId"] == "task-001"
        assert payload["type"] == "task.started"
        assert frame.endswith("\n\n")


class TestEventBus:
    """Tests for EventBus."""

    @pytest.mark.asyncio
    async def test_subscriber_receives_events_in_order(self) -> None:
        bus = EventBus()
        subscription = bus.subscribe()

        bus.publish("task.started", {"taskId": "task-001"})
        bus.publish("task.completed", {"taskId": "task-001"})

        first = await subscription.get(timeout=1)
        second = await subscription.get(timeout=1)
        assert (first.type, second.type) == ("task.started", "task.completed")
        assert second.id > first.id

    @pytest.mark.asyncio
    async def test_type_and_plan_filters(self) -> None:
        bus = EventBus()
        subscription = bus.subscribe(types=["progress"], plan_id="todo")

        bus.publish("task.started", {"planId": "todo"})
        bus.publish("progress", {"planId": "other"})
        bus.publish("progress", {"planId": "todo", "progress": 50})

        event = await subscription.get(timeout=1)
        assert event.data["progress"] == 50
        assert await subscription.get(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_slow_subscriber_drops_oldest(self) -> None:
        bus = EventBus()
        subscription = bus.subscribe(maxsize=2)

        for n in range(4):
            bus.publish("log", {"n": n})

        assert subscription.dropped == 2
        assert (await subscription.get(timeout=1)).data["n"] == 2
        assert (await subscription.get(timeout=1)).data["n"] == 3

    @pytest.mark.asyncio
    async def test_close_ends_iteration(self) -> None:
        bus = EventBus()
        subscription = bus.subscribe()
        bus.publish("progress", {"progress": 10})
        bus.close()

        received = [event.type async for event in subscription]

        assert received == ["progress"]
        assert bus.subscriber_count == 0
        assert await bus.subscribe().get(timeout=1) is None

    def test_callbacks_on_off_once(self) -> None:
        bus = EventBus()
        seen: list[str] = []
        off = bus.on("task.started", lambda e: seen.append("on"))
        bus.once("task.started", lambda e: seen.append("once"))
        bus.on("*", lambda e: seen.append(f"any:{e.type}"))

        bus.publish("task.started")
        off()
        bus.publish("task.started")

        assert seen == ["on", "once", "any:task.started", "any:task.started"]

    def test_callback_errors_do_not_reach_publisher(self) -> None:
        bus = EventBus()

        def broken(event: Event) -> None:
            raise ValueError("boom")

        bus.on("progress", broken)

        assert bus.publish("progress").type == "progress"

    @pytest.mark.asyncio
    async def test_async_callback_errors_are_logged(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        bus = EventBus()
        seen: list[str] = []

        async def broken(event: Event) -> None:
            seen.append(event.type)
            raise ValueError("async boom")

        bus.on("progress", broken)
        bus.publish("progress")
        for _ in range(3):
            await asyncio.sleep(0)

        assert seen == ["progress"]
        assert not bus._callback_tasks
        assert any(
            record.exc_info and "async boom" in str(record.exc_info[1])
            for record in caplog.records
        )

    def test_recent_keeps_bounded_history(self) -> None:
        bus = EventBus(history_size=3)
        for n in range(5):
            bus.publish("log", {"n": n})

        assert [event.data["n"] for event in bus.recent()] == [2, 3, 4]
        assert [event.data["n"] for event in bus.recent(limit=1)] == [4]


class TestStateWatcher:
    """Tests for StateWatcher.poll_once()."""

    def test_first_poll_is_baseline(self, tmp_path: Path) -> None:
        plan = tmp_path / "plan.md"
        plan.write_text("# Plan\n")
        watcher = StateWatcher(EventBus())
        watcher.watch(plan, "plan.changed", {"planId": "todo"})

        assert watcher.poll_once() == []
        assert watcher.poll_once() == []

    def test_changed_file_publishes(self, tmp_path: Path) -> None:
        plan = tmp_path / "plan.md"
        plan.write_text("# Plan\n")
        watcher = StateWatcher(EventBus())
        watcher.watch(plan, "plan.changed", {"planId": "todo"})
        watcher.poll_once()

        later = time.time() + 5
        os.utime(plan, (later, later))
        events = watcher.poll_once()

        assert [event.type for event in events] == ["plan.changed"]
        assert events[0].data["planId"] == "todo"

    def test_directory_publishes_per_session_file(self, tmp_path: Path) -> None:
        sessions = tmp_path / "sessions"
        sessions.mkdir()
        watcher = StateWatcher(
            EventBus(),
            targets_provider=lambda: [WatchTarget(sessions, "session.changed", {"planId": "todo"})],
        )
        watcher.poll_once()

        (sessions / "session-1.json").write_text("{}")
        events = watcher.poll_once()

        assert [event.data["sessionId"] for event in events] == ["session-1"]

    @pytest.mark.asyncio
    async def test_start_and_stop(self, tmp_path: Path) -> None:
        watcher = StateWatcher(EventBus(), interval=0.01)

        watcher.start()
        await asyncio.sleep(0.03)
        await watcher.stop()

        assert watcher._task is None
