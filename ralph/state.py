"""Session persistence for resumable execution.

Each run owns one Session, stored as ``<state_dir>/<session_id>.json``.
Every write replaces the whole file atomically (temp file + rename).
Writes are serialized through a lock so concurrent task completions within
one process cannot overwrite each other; across processes the last writer
wins.
"""

import json
import logging
import os
import re
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import Any

from ralph.errors import SessionIOError
from ralph.models import Session, TaskExecution, TaskResult, utcnow

logger = logging.getLogger(__name__)

SESSION_FILE_PATTERN = re.compile(r"^session-[\w-]+\.json$")


def new_session_id() -> str:
    """Time-based unique session id: ``session-<ms>-<hex>``."""
    return f"session-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def _atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class SessionStore:
    """Reads and writes Session files for one project.

    Usage:
        store = SessionStore(config.resolved_state_dir)
        session = store.load(plan_path) or store.create(plan_path)
        store.record_task_start(session, "task-001")
        ...
        store.record_task_result(session, "task-001", result=result)

    Attributes:
        state_dir: Directory holding session files
        checkpoint_dir: Directory for checkpoint snapshots
    """

    def __init__(self, state_dir: Path, checkpoint_dir: Path | None = None) -> None:
        self.state_dir = Path(state_dir)
        self.checkpoint_dir = (
            Path(checkpoint_dir)
            if checkpoint_dir is not None
            else self.state_dir.parent / "checkpoints"
        )
        self._lock = threading.Lock()

    def session_path(self, session_id: str) -> Path:
        return self.state_dir / f"{session_id}.json"

    def create(self, plan_path: str | Path) -> Session:
        """Create and persist a new session for a plan."""
        session = Session(
            session_id=new_session_id(),
            plan_path=str(Path(plan_path).resolve()),
        )
        self.persist(session)
        logger.info(f"Created session {session.session_id} for {session.plan_path}")
        return session

    def load(self, plan_path: str | Path) -> Session | None:
        """Most recently written session for a plan, or None.

        Paths are compared after resolution, so relative and absolute
        spellings of the same plan match. Unreadable session files are
        skipped.
        """
        target = Path(plan_path).resolve()
        for path in self._session_files():
            try:
                session = self._read(path)
            except SessionIOError as e:
                logger.warning(f"Skipping unreadable session file: {e}")
                continue
            if Path(session.plan_path).resolve() == target:
                return session
        return None

    def load_by_id(self, session_id: str) -> Session | None:
        """Load a session by id.

        Returns:
            Session if the file exists, None otherwise

        Raises:
            SessionIOError: If the file exists but is corrupt
        """
        path = self.session_path(session_id)
        if not path.exists():
            return None
        return self._read(path)

    def list_sessions(self) -> list[Session]:
        """All readable sessions, newest first."""
        sessions = []
        for path in self._session_files():
            try:
                sessions.append(self._read(path))
            except SessionIOError as e:
                logger.warning(f"Skipping unreadable session file: {e}")
        return sessions

    def delete(self, session_id: str) -> bool:
        """Delete a session file. Returns False if it did not exist."""
        path = self.session_path(session_id)
        with self._lock:
            if not path.exists():
                return False
            path.unlink()
        logger.info(f"Deleted session {session_id}")
        return True

    def persist(self, session: Session) -> None:
        """Write the full session atomically."""
        session.last_activity = utcnow()
        data = session.to_dict()
        with self._lock:
            _atomic_write_json(self.session_path(session.session_id), data)

    def record_task_start(self, session: Session, task_id: str) -> TaskExecution:
        """Append an in_progress record and make it the current task."""
        record = TaskExecution(
            task_id=task_id,
            status="in_progress",
            started_at=utcnow(),
            attempts=session.attempts_for(task_id) + 1,
        )
        session.task_history.append(record)
        session.current_task_id = task_id
        self.persist(session)
        return record

    def record_task_result(
        self,
        session: Session,
        task_id: str,
        result: TaskResult | None = None,
        error: str | None = None,
        retrying: bool = False,
    ) -> TaskExecution:
        """Append the outcome of an attempt and update the task sets.

        A successful result moves the task into completed_tasks. A failure
        with ``retrying=True`` only records the attempt; without it the task
        becomes permanently failed.

        Args:
            session: Session to update
            task_id: Task the attempt belongs to
            result: Attempt result (success decides the outcome)
            error: Error message when the attempt failed without a result
            retrying: The attempt failed but the task will be retried
        """
        success = result is not None and result.success and error is None
        started = session.latest_execution(task_id)
        record = TaskExecution(
            task_id=task_id,
            status="completed" if success else "failed",
            started_at=started.started_at if started else utcnow(),
            completed_at=utcnow(),
            attempts=session.attempts_for(task_id),
            result=result,
            error=error if error is not None else (result.error if result else None),
        )
        session.task_history.append(record)
        if result is not None:
            session.total_cost += result.cost_usd
            if result.agent_session_id:
                session.agent_session_id = result.agent_session_id

        if success:
            session.failed_tasks.discard(task_id)
            session.skipped_tasks.discard(task_id)
            session.completed_tasks.add(task_id)
        elif not retrying:
            session.completed_tasks.discard(task_id)
            session.skipped_tasks.discard(task_id)
            session.failed_tasks.add(task_id)

        if session.current_task_id == task_id:
            in_flight = session.in_progress_tasks()
            session.current_task_id = in_flight[-1] if in_flight else None
        self.persist(session)
        return record

    def save_checkpoint(self, session: Session) -> Path:
        """Write a snapshot of the session to the checkpoint directory."""
        path = (
            self.checkpoint_dir
            / f"checkpoint-{session.session_id}-{int(time.time() * 1000)}.json"
        )
        data = {"createdAt": utcnow().isoformat(), "session": session.to_dict()}
        with self._lock:
            _atomic_write_json(path, data)
        return path

    def _session_files(self) -> list[Path]:
        if not self.state_dir.is_dir():
            return []
        files = [
            path
            for path in self.state_dir.iterdir()
            if path.is_file() and SESSION_FILE_PATTERN.match(path.name)
        ]
        return sorted(files, key=lambda p: p.stat().st_mtime, reverse=True)

    def _read(self, path: Path) -> Session:
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return Session.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise SessionIOError(f"{path.name}: {e}") from e
