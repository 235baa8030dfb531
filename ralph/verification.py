"""Task verification: the configured test command and acceptance criteria.

Acceptance criteria are met when the plan document has them ticked, when
the agent reported them met through task_complete, or when a local
fast-path check passes. Recognized fast paths:

    <path> exists / <path> file exists
    npm run <script> passes / <command> passes
    <path> includes <text>
    <path>                          (single word, treated as a path)
"""

import logging
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from ralph.models import Task

logger = logging.getLogger(__name__)

_EXISTS_RE = re.compile(r"^(.+?)(?:\s+file)?\s+exists$", re.IGNORECASE)
_PASSES_RE = re.compile(r"^(npm run \S+|[\w\-]+)\s+passes$", re.IGNORECASE)
_INCLUDES_RE = re.compile(r"^(.+?)\s+includes\s+(.+)$", re.IGNORECASE)


@dataclass
class CommandResult:
    passed: bool
    returncode: int | None
    output: str


@dataclass
class CriteriaReport:
    met: list[str] = field(default_factory=list)
    unmet: list[str] = field(default_factory=list)

    @property
    def all_met(self) -> bool:
        return not self.unmet


def run_test_command(command: str, cwd: Path, timeout: float = 600) -> CommandResult:
    """Run the project's test command through the shell."""
    logger.info(f"Running tests: {command}")
    try:
        result = subprocess.run(
            command,
            shell=True,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return CommandResult(False, None, f"Test command timed out after {timeout}s")
    output = (result.stdout + result.stderr).strip()
    return CommandResult(result.returncode == 0, result.returncode, output)


def _strip_quotes(value: str) -> str:
    value = value.strip().strip("`")
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def check_criterion(text: str, project_root: Path, timeout: float = 600) -> bool | None:
    """Check a criterion locally.

    Returns:
        True/False when a fast path applies, None otherwise
    """
    criterion = text.strip()

    match = _EXISTS_RE.match(criterion)
    if match:
        return (project_root / _strip_quotes(match.group(1))).exists()

    match = _PASSES_RE.match(criterion)
    if match:
        try:
            result = subprocess.run(
                shlex.split(match.group(1)),
                cwd=project_root,
                capture_output=True,
                timeout=timeout,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0

    match = _INCLUDES_RE.match(criterion)
    if match:
        path = project_root / _strip_quotes(match.group(1))
        try:
            return _strip_quotes(match.group(2)) in path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return False

    if criterion and " " not in criterion:
        return (project_root / _strip_quotes(criterion)).exists()

    return None


def evaluate_criteria(
    task: Task,
    project_root: Path,
    reported: dict[str, bool] | None = None,
    timeout: float = 600,
) -> CriteriaReport:
    """Decide which of a task's acceptance criteria are met."""
    reported = reported or {}
    report = CriteriaReport()
    for criterion in task.acceptance_criteria:
        met = criterion.completed or reported.get(criterion.text) is True
        if not met:
            met = check_criterion(criterion.text, project_root, timeout) is True
        (report.met if met else report.unmet).append(criterion.text)
    return report
