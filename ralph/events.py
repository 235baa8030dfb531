"""In-process event bus and file-system state watcher.

The bus is constructed explicitly by the process entry point (CLI run or
API app) and passed by reference; there is no module-level instance.
Publishing never blocks: each subscriber has a bounded queue and loses its
oldest events when it falls behind.

Event types published by the engine:
    session.started, session.completed, task.started, task.completed,
    task.failed, task.retrying, progress, checkpoint.created, log
and by StateWatcher:
    session.changed, plan.changed
"""

import asyncio
import inspect
import itertools
import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from ralph.models import utcnow

logger = logging.getLogger(__name__)

EventCallback = Callable[["Event"], Any]


@dataclass
class Event:
    type: str
    data: dict[str, Any]
    id: int = 0
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.data,
            "id": self.id,
            "type": self.type,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_sse(self) -> str:
        """Server-Sent Events frame."""
        return f"id: {self.id}\nevent: {self.type}\ndata: {json.dumps(self.to_dict())}\n\n"


class Subscription:
    """A bounded queue of events for one consumer.

    Iterate with ``async for event in subscription``; iteration ends when
    the subscription or the bus is closed.
    """

    def __init__(
        self,
        bus: "EventBus",
        types: Iterable[str] | None = None,
        plan_id: str | None = None,
        maxsize: int = 256,
    ) -> None:
        self._bus = bus
        self.types = set(types) if types else None
        self.plan_id = plan_id
        self.dropped = 0
        self.closed = False
        self._queue: asyncio.Queue[Event | None] = asyncio.Queue(maxsize=maxsize)

    def matches(self, event: Event) -> bool:
        if self.types is not None and event.type not in self.types:
            return False
        if self.plan_id is not None:
            event_plan = event.data.get("planId")
            if event_plan is not None and event_plan != self.plan_id:
                return False
        return True

    def deliver(self, event: Event | None) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self.dropped += 1
            self._queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> Event | None:
        """Next event, or None when closed (or on timeout)."""
        if self.closed and self._queue.empty():
            return None
        try:
            event = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if event is None:
            self.closed = True
        return event

    def close(self) -> None:
        if self.closed:
            return
        self._bus._remove(self)
        self.deliver(None)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """Publish/subscribe hub for execution events.

    Subscribers either pull from a Subscription queue (SSE, WebSocket) or
    register callbacks with on()/once(). Callback errors are logged and do
    not reach the publisher.
    """

    def __init__(self, history_size: int = 100) -> None:
        self._subscriptions: list[Subscription] = []
        self._callbacks: dict[str, list[EventCallback]] = {}
        self._ids = itertools.count(1)
        self._history: list[Event] = []
        self._history_size = history_size
        self._callback_tasks: set[asyncio.Future] = set()
        self.closed = False

    def publish(self, type: str, data: dict[str, Any] | None = None) -> Event:
        event = Event(type=type, data=dict(data or {}), id=next(self._ids))
        if self.closed:
            return event

        self._history.append(event)
        del self._history[: -self._history_size]

        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.deliver(event)

        for callback in list(self._callbacks.get(type, [])) + list(
            self._callbacks.get("*", [])
        ):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._callback_tasks.add(task)
                    task.add_done_callback(self._async_callback_done)
            except Exception:
                logger.exception(f"Error in event callback for {type!r}")
        return event

    def _async_callback_done(self, task: asyncio.Future) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Error in async event callback", exc_info=error)

    def subscribe(
        self,
        types: Iterable[str] | None = None,
        plan_id: str | None = None,
        maxsize: int = 256,
    ) -> Subscription:
        subscription = Subscription(self, types=types, plan_id=plan_id, maxsize=maxsize)
        if self.closed:
            subscription.deliver(None)
        else:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def recent(self, limit: int | None = None) -> list[Event]:
        return list(self._history if limit is None else self._history[-limit:])

    def on(self, type: str, callback: EventCallback) -> Callable[[], None]:
        """Register a callback for an event type ("*" for all).

        Returns:
            Function that unregisters the callback
        """
        self._callbacks.setdefault(type, []).append(callback)
        return lambda: self.off(type, callback)

    def off(self, type: str, callback: EventCallback) -> None:
        callbacks = self._callbacks.get(type)
        if callbacks and callback in callbacks:
            callbacks.remove(callback)
            if not callbacks:
                del self._callbacks[type]

    def once(self, type: str, callback: EventCallback) -> Callable[[], None]:
        def wrapper(event: Event) -> Any:
            self.off(type, wrapper)
            return callback(event)

        return self.on(type, wrapper)

    def close(self) -> None:
        """Close all subscriptions and drop callbacks."""
        self.closed = True
        for subscription in list(self._subscriptions):
            subscription.close()
        self._callbacks.clear()


@dataclass
class WatchTarget:
    """A file or directory whose modification should publish an event."""

    path: Path
    event_type: str
    data: dict[str, Any] = field(default_factory=dict)


class StateWatcher:
    """Polls session directories and plan files for changes.

    Directories publish one event per changed ``*.json`` file with
    ``sessionId`` set to the file stem; files publish their target data.
    The first poll records a baseline and publishes nothing.
    """

    def __init__(
        self,
        bus: EventBus,
        interval: float = 1.0,
        targets_provider: Callable[[], Iterable[WatchTarget]] | None = None,
    ) -> None:
        self.bus = bus
        self.interval = interval
        self.targets_provider = targets_provider
        self._targets: list[WatchTarget] = []
        self._mtimes: dict[Path, float] = {}
        self._primed = False
        self._task: asyncio.Task | None = None

    def watch(self, path: Path, event_type: str, data: dict[str, Any] | None = None) -> None:
        self._targets.append(WatchTarget(Path(path), event_type, dict(data or {})))

    def _all_targets(self) -> list[WatchTarget]:
        targets = list(self._targets)
        if self.targets_provider is not None:
            targets.extend(self.targets_provider())
        return targets

    def _scan(self, target: WatchTarget) -> dict[Path, float]:
        found: dict[Path, float] = {}
        try:
            if target.path.is_dir():
                for path in target.path.glob("*.json"):
                    found[path] = path.stat().st_mtime
            elif target.path.is_file():
                found[target.path] = target.path.stat().st_mtime
        except OSError:
            pass
        return found

    def poll_once(self) -> list[Event]:
        published: list[Event] = []
        current: dict[Path, float] = {}
        for target in self._all_targets():
            for path, mtime in self._scan(target).items():
                current[path] = mtime
                if not self._primed or self._mtimes.get(path) == mtime:
                    continue
                data = dict(target.data)
                if target.path.is_dir():
                    data.setdefault("sessionId", path.stem)
                data["path"] = str(path)
                published.append(self.bus.publish(target.event_type, data))
        self._mtimes = current
        self._primed = True
        return published

    async def _run(self) -> None:
        while True:
            try:
                self.poll_once()
            except Exception:
                logger.exception("State watcher poll failed")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
