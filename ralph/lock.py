"""Per-plan run lock.

A CLI run writes its PID into ``<state_dir>/<plan-stem>-<hash>.lock`` so a
second ``ralph run`` against the same plan file refuses to start.
"""

import hashlib
import os
from pathlib import Path
from types import TracebackType

from ralph.errors import RalphError


class PlanLockedError(RalphError):
    """Another live process already holds the plan's lock."""

    def __init__(self, plan_path: Path, holder_pid: int | None) -> None:
        super().__init__(f"Plan {plan_path.name} already running (PID: {holder_pid})")
        self.holder_pid = holder_pid


class RunLock:
    """PID lock for one plan file.

    Usage:
        with RunLock(state_dir, plan_path):
            ...  # lock held for the whole run

    Attributes:
        plan_path: Plan file the lock guards
        lock_path: Path to the lock file
    """

    def __init__(self, state_dir: Path, plan_path: Path) -> None:
        self.plan_path = Path(plan_path)
        digest = hashlib.sha1(str(self.plan_path.resolve()).encode("utf-8")).hexdigest()[:8]
        self.lock_path = Path(state_dir) / f"{self.plan_path.stem}-{digest}.lock"

    def acquire(self) -> bool:
        """Take the lock unless a running process holds it.

        A lock file naming a dead PID, or holding garbage, is overwritten.
        """
        holder = self.get_holder_pid()
        if holder is not None and _pid_alive(holder):
            return False

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_path.write_text(str(os.getpid()))
        return True

    def release(self) -> None:
        self.lock_path.unlink(missing_ok=True)

    def get_holder_pid(self) -> int | None:
        try:
            return int(self.lock_path.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def __enter__(self) -> "RunLock":
        if not self.acquire():
            raise PlanLockedError(self.plan_path, self.get_holder_pid())
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by another user
        return True
    return True
