"""Git operations for task execution.

Wraps the git CLI for the pieces the engine needs: working-tree snapshots
for file change tracking, task-tagged commits, commit lookup by task id,
and checkpoint/rewind between retries. Failures are logged and reported as
None/False rather than raised; a task never fails because git did.
"""

import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from ralph.models import Task

logger = logging.getLogger(__name__)

RUNTIME_DIR = ".ralph"
_TASK_TAG_RE = re.compile(r"^\[(task-\d+)\]")


@dataclass
class FileChanges:
    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.added) + len(self.modified) + len(self.deleted)


@dataclass
class GitCheckpoint:
    """Working-tree state to rewind to before a retry."""

    head: str
    stash: str | None
    untracked: set[str]


def run_git(root: Path, *args: str, timeout: float = 60) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["git", *args],
        cwd=root,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


def is_git_repo(root: Path) -> bool:
    try:
        result = run_git(root, "rev-parse", "--is-inside-work-tree")
    except (OSError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0 and result.stdout.strip() == "true"


def _is_runtime_path(path: str) -> bool:
    return path == RUNTIME_DIR or path.startswith(f"{RUNTIME_DIR}/")


def status_snapshot(root: Path) -> dict[str, str] | None:
    """Map of path to two-letter porcelain status, or None outside a repo."""
    try:
        result = run_git(root, "status", "--porcelain", "--untracked-files=all")
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"git status failed: {e}")
        return None
    if result.returncode != 0:
        logger.warning(f"git status failed: {result.stderr.strip()}")
        return None

    snapshot: dict[str, str] = {}
    for line in result.stdout.splitlines():
        if len(line) < 4:
            continue
        code, path = line[:2], line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = path.strip('"')
        if not _is_runtime_path(path):
            snapshot[path] = code
    return snapshot


def diff_snapshots(
    before: dict[str, str] | None, after: dict[str, str] | None
) -> FileChanges:
    """Classify paths whose status changed between two snapshots."""
    changes = FileChanges()
    if after is None:
        return changes
    before = before or {}
    for path, code in sorted(after.items()):
        if before.get(path) == code:
            continue
        if "D" in code:
            changes.deleted.append(path)
        elif path not in before and (code == "??" or code[0] == "A"):
            changes.added.append(path)
        else:
            changes.modified.append(path)
    return changes


def build_commit_message(task: Task, changes: FileChanges) -> str:
    lines = [f"[{task.id}] {task.title}", ""]
    if task.description:
        lines += [task.description, ""]
    lines.append(f"Summary: Changed {changes.total} file(s):")
    lines += [f"  + {path}" for path in changes.added]
    lines += [f"  ~ {path}" for path in changes.modified]
    lines += [f"  - {path}" for path in changes.deleted]
    return "\n".join(lines) + "\n"


def commit_task(root: Path, task: Task, changes: FileChanges) -> str | None:
    """Stage everything except the runtime dir, commit, return the new hash.

    Returns:
        Commit hash, or None when there was nothing to commit or git failed
    """
    try:
        staged = run_git(root, "add", "-A", "--", ".", f":(exclude){RUNTIME_DIR}")
        if staged.returncode != 0:
            logger.warning(f"Failed to stage files for {task.id}: {staged.stderr.strip()}")

        committed = run_git(root, "commit", "-m", build_commit_message(task, changes))
        if committed.returncode != 0:
            output = f"{committed.stdout}\n{committed.stderr}"
            if "nothing to commit" in output or "no changes added" in output:
                logger.warning(f"No changes to commit for {task.id}")
            else:
                logger.warning(f"Failed to commit {task.id}: {committed.stderr.strip()}")
            return None

        head = run_git(root, "rev-parse", "HEAD")
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"git commit failed for {task.id}: {e}")
        return None
    if head.returncode != 0:
        return None
    return head.stdout.strip()


def task_commit_ids(root: Path) -> set[str]:
    """Task ids that have a ``[task-NNN]``-tagged commit in history."""
    try:
        result = run_git(root, "log", "--format=%s")
    except (OSError, subprocess.TimeoutExpired):
        return set()
    if result.returncode != 0:
        return set()
    found = set()
    for subject in result.stdout.splitlines():
        match = _TASK_TAG_RE.match(subject.strip())
        if match:
            found.add(match.group(1))
    return found


def _untracked(root: Path) -> set[str]:
    result = run_git(root, "ls-files", "--others", "--exclude-standard")
    return {
        path for path in result.stdout.splitlines() if path and not _is_runtime_path(path)
    }


def create_checkpoint(root: Path) -> GitCheckpoint | None:
    """Record HEAD, tracked edits (as a dangling stash commit) and untracked files."""
    try:
        head = run_git(root, "rev-parse", "HEAD")
        if head.returncode != 0:
            return None
        stash = run_git(root, "stash", "create")
        return GitCheckpoint(
            head=head.stdout.strip(),
            stash=stash.stdout.strip() or None,
            untracked=_untracked(root),
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"Failed to create git checkpoint: {e}")
        return None


def restore_checkpoint(root: Path, checkpoint: GitCheckpoint) -> bool:
    """Discard edits made since the checkpoint.

    Untracked files created after the checkpoint are removed; those that
    existed before are left alone.
    """
    try:
        reset = run_git(root, "reset", "--hard", checkpoint.head)
        if reset.returncode != 0:
            logger.warning(f"git reset failed: {reset.stderr.strip()}")
            return False
        for path in sorted(_untracked(root) - checkpoint.untracked):
            (root / path).unlink(missing_ok=True)
        if checkpoint.stash:
            applied = run_git(root, "stash", "apply", checkpoint.stash)
            if applied.returncode != 0:
                logger.warning(f"git stash apply failed: {applied.stderr.strip()}")
                return False
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"Failed to restore git checkpoint: {e}")
        return False
    return True
