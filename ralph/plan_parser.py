"""Plan parser for implementation plan markdown files.

Parses plan documents into Plan objects, validates the task graph, and
writes task status back into the document. Parsing is lenient: task blocks
that cannot be read are skipped rather than raising, so partially written
plans still load.

Recognized grammar::

    # Implementation Plan
    ## Overview
    <description>
    **Project:** <name>
    ## Tasks
    ### task-001: <title>
    **ID:** task-001
    **Priority:** high|medium|low
    **Status:** To Do|In Progress|Implemented|Needs Re-Work|Verified
    **Dependencies:** task-000, ...
    **Complexity:** 3/5
    **Tags:** a, b
    **Description:**
    <one or more lines>
    **Acceptance Criteria:**
    - [ ] criterion
    - [x] criterion already met
    **Spec Reference:** [spec.md](spec.md)
"""

import logging
import re
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from ralph.errors import PlanError
from ralph.models import (
    PRIORITIES,
    TASK_STATUSES,
    AcceptanceCriterion,
    Plan,
    Task,
    ValidationResult,
)

logger = logging.getLogger(__name__)

TASK_ID_PATTERN = re.compile(r"^task-\d+$")

_FIELD_RE = re.compile(r"^\*\*(?P<label>[^*]+?):\*\*\s*(?P<value>.*)$")
_CHECKBOX_RE = re.compile(r"^[-*]\s+\[(?P<mark>[ xX]?)\]\s*(?P<text>.+)$")
_HEADER_RE = re.compile(
    r"^###\s+(?:Task\s+\d+:\s*)?(?:(?P<id>task-\d+)\s*[:\-]\s*)?(?P<title>.*)$"
)
_LINK_RE = re.compile(r"\[(?P<text>[^\]]*)\]\((?P<target>[^)]+)\)")
_GENERATED_RE = re.compile(r"^\*Generated on (?P<when>.+?)\*$")

_STATUS_ALIASES = {status.lower(): status for status in TASK_STATUSES}
_STATUS_ALIASES.update(
    {
        "todo": "To Do",
        "to-do": "To Do",
        "in-progress": "In Progress",
        "needs rework": "Needs Re-Work",
        "needs-rework": "Needs Re-Work",
        "done": "Implemented",
    }
)
_NO_DEPENDENCIES = {"", "none", "-", "n/a", "na"}


def load_plan(path: str | Path, project_root: str | Path | None = None) -> Plan:
    """Read and parse a plan file.

    Args:
        path: Path to the plan markdown file
        project_root: Used for the project name fallback (default: plan's directory)

    Raises:
        PlanError: If the file does not exist or cannot be read
    """
    path = Path(path)
    if not path.is_file():
        raise PlanError(f"Plan file not found: {path}")
    try:
        document = path.read_text(encoding="utf-8")
    except OSError as e:
        raise PlanError(f"Cannot read plan file {path}: {e}") from e
    return parse_plan(document, project_root or path.parent)


def parse_plan(document: str, project_root: str | Path | None = None) -> Plan:
    """Parse a plan document into a Plan.

    Never raises for malformed task blocks; a document with no readable
    tasks yields a Plan with zero tasks, which validate_plan rejects.

    Args:
        document: Markdown text of the plan
        project_root: Project directory, used when the document names no project

    Returns:
        Plan with tasks in document order
    """
    lines = document.splitlines()
    tasks: list[Task] = []
    for start, end in _task_blocks(lines):
        task = _parse_task_block(lines[start:end])
        if task is not None:
            tasks.append(task)

    # Synthesize ids for blocks that carry none, by position
    for index, task in enumerate(tasks, start=1):
        if not task.id:
            task.id = f"task-{index:03d}"

    return Plan(
        project_name=_extract_project_name(lines, project_root),
        description=_extract_overview(lines),
        tasks=tasks,
        generated_at=_extract_generated_at(lines),
    )


def _tasks_section(lines: list[str]) -> tuple[int, int] | None:
    """Line range of the ``## Tasks`` section, up to the next level-2 heading."""
    start = None
    for i, line in enumerate(lines):
        stripped = line.strip()
        if start is None:
            if stripped.lower() == "## tasks":
                start = i + 1
        elif stripped.startswith("## "):
            return start, i
    if start is None:
        return None
    return start, len(lines)


def _task_blocks(lines: list[str]) -> list[tuple[int, int]]:
    """Line ranges of each ``###`` task block inside the tasks section."""
    section = _tasks_section(lines)
    if section is None:
        return []
    section_start, section_end = section

    starts = [
        i
        for i in range(section_start, section_end)
        if lines[i].strip().startswith("### ")
    ]
    blocks = []
    for n, start in enumerate(starts):
        end = starts[n + 1] if n + 1 < len(starts) else section_end
        blocks.append((start, end))
    return blocks


def _parse_task_block(block: list[str]) -> Task | None:
    header = _HEADER_RE.match(block[0].strip())
    if not header:
        return None
    title = header.group("title").strip()
    if not title:
        logger.debug(f"Skipping task block without title: {block[0]!r}")
        return None

    task = Task(id=header.group("id") or "", title=title)
    description: list[str] = []
    current_field: str | None = None

    for raw in block[1:]:
        line = raw.strip()
        if line == "---":
            current_field = None
            continue

        checkbox = _CHECKBOX_RE.match(line)
        if checkbox:
            # Checkbox lines end a description
            if current_field == "description":
                current_field = "acceptance criteria"
            task.acceptance_criteria.append(
                AcceptanceCriterion(
                    text=checkbox.group("text").strip(),
                    completed=checkbox.group("mark").lower() == "x",
                )
            )
            continue

        field_match = _FIELD_RE.match(line)
        if field_match:
            label = field_match.group("label").strip().lower()
            value = field_match.group("value").strip()
            current_field = label
            _apply_field(task, label, value, description)
            continue

        if current_field == "description":
            description.append(line)

    task.description = "\n".join(description).strip()
    return task


def _apply_field(task: Task, label: str, value: str, description: list[str]) -> None:
    if label == "id":
        match = re.search(r"task-\d+", value, re.IGNORECASE)
        task.id = match.group(0).lower() if match else value
    elif label == "priority":
        priority = value.lower().strip("`* ")
        task.priority = priority if priority in PRIORITIES else "medium"  # type: ignore[assignment]
    elif label == "status":
        task.status = _normalize_status(value)  # type: ignore[assignment]
    elif label == "dependencies":
        task.dependencies = _parse_dependencies(value)
    elif label == "complexity":
        match = re.match(r"(\d+)", value)
        if match:
            task.complexity = max(1, min(5, int(match.group(1))))
    elif label == "tags":
        task.tags = [tag.strip() for tag in value.split(",") if tag.strip()]
    elif label == "description":
        if value:
            description.append(value)
    elif label == "spec reference":
        link = _LINK_RE.search(value)
        reference = link.group("target") if link else value.strip("` ")
        task.spec_reference = reference or None


def _normalize_status(value: str) -> str:
    cleaned = re.sub(r"[`*_]", "", value).strip().lower()
    return _STATUS_ALIASES.get(cleaned, "To Do")


def _parse_dependencies(value: str) -> list[str]:
    dependencies = []
    for token in value.split(","):
        token = token.strip().strip("`")
        if token.lower() in _NO_DEPENDENCIES:
            continue
        match = re.search(r"task-\d+", token, re.IGNORECASE)
        dependencies.append(match.group(0).lower() if match else token)
    return dependencies


def _extract_project_name(lines: list[str], project_root: str | Path | None) -> str:
    """Project name from **Project:**, a top heading, or the project directory."""
    for line in lines:
        match = _FIELD_RE.match(line.strip())
        if match and match.group("label").strip().lower() == "project":
            name = match.group("value").strip()
            if name:
                return name

    for line in lines:
        stripped = line.strip()
        if stripped.startswith("# "):
            heading = stripped[2:].strip()
            if heading and heading.lower() != "implementation plan":
                return heading

    if project_root is not None:
        name = Path(project_root).resolve().name
        if name:
            return name
    return "Project"


def _extract_overview(lines: list[str]) -> str:
    collected: list[str] = []
    in_overview = False
    for line in lines:
        stripped = line.strip()
        if stripped.lower() == "## overview":
            in_overview = True
            continue
        if not in_overview:
            continue
        if stripped.startswith("## ") or stripped == "---":
            break
        if _FIELD_RE.match(stripped):
            continue
        collected.append(stripped)
    return "\n".join(collected).strip()


def _extract_generated_at(lines: list[str]) -> datetime | None:
    for line in reversed(lines):
        match = _GENERATED_RE.match(line.strip())
        if match:
            try:
                return datetime.fromisoformat(match.group("when").strip())
            except ValueError:
                return None
    return None


def validate_plan(plan: Plan) -> ValidationResult:
    """Check ids, dependencies and the dependency graph of a plan.

    Errors: zero tasks, malformed id, duplicate id, missing title,
    unresolved dependency, dependency cycle (reported as a path).
    Warnings: no acceptance criteria, missing description.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not plan.tasks:
        errors.append("Plan must contain at least one task")
        return ValidationResult(valid=False, errors=errors, warnings=warnings)

    seen: set[str] = set()
    for index, task in enumerate(plan.tasks, start=1):
        if not TASK_ID_PATTERN.match(task.id):
            errors.append(
                f"Task {index} has invalid ID format: {task.id} (expected: task-NNN)"
            )
        if task.id in seen:
            errors.append(f"Duplicate task ID: {task.id}")
        seen.add(task.id)

        if not task.title.strip():
            errors.append(f"Task {task.id} is missing a title")
        if not task.description.strip():
            warnings.append(f"Task {task.id} is missing a description")
        if not task.acceptance_criteria:
            warnings.append(f"Task {task.id} has no acceptance criteria")

    for task in plan.tasks:
        for dep_id in task.dependencies:
            if dep_id not in seen:
                errors.append(f"Task {task.id} depends on non-existent task: {dep_id}")

    cycles = find_dependency_cycles(plan.tasks)
    if cycles:
        errors.append(f"Circular dependencies detected: {', '.join(cycles)}")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def find_dependency_cycles(tasks: list[Task]) -> list[str]:
    """Find dependency cycles by DFS with a recursion stack.

    Returns:
        Each cycle as "a -> b -> a"
    """
    by_id = {task.id: task for task in tasks}
    visited: set[str] = set()
    on_stack: set[str] = set()
    path: list[str] = []
    cycles: list[str] = []

    def visit(task_id: str) -> None:
        if task_id in on_stack:
            start = path.index(task_id)
            cycles.append(" -> ".join(path[start:] + [task_id]))
            return
        if task_id in visited:
            return
        visited.add(task_id)
        on_stack.add(task_id)
        path.append(task_id)
        task = by_id.get(task_id)
        if task is not None:
            for dep_id in task.dependencies:
                visit(dep_id)
        path.pop()
        on_stack.discard(task_id)

    for task in tasks:
        visit(task.id)
    return cycles


def plan_to_markdown(plan: Plan) -> str:
    """Render a plan in the grammar parse_plan reads."""
    out = ["# Implementation Plan", "", "## Overview", ""]
    if plan.description:
        out += [plan.description, ""]
    out += [
        f"**Project:** {plan.project_name}",
        f"**Total Tasks:** {plan.total_tasks}",
        "",
        "---",
        "",
        "## Tasks",
        "",
    ]
    for task in plan.tasks:
        out += [
            f"### {task.id}: {task.title}",
            "",
            f"**ID:** {task.id}",
            f"**Priority:** {task.priority}",
            f"**Status:** {task.status}",
        ]
        if task.dependencies:
            out.append(f"**Dependencies:** {', '.join(task.dependencies)}")
        out.append(f"**Complexity:** {task.complexity}/5")
        if task.tags:
            out.append(f"**Tags:** {', '.join(task.tags)}")
        out += ["", "**Description:**", task.description, "", "**Acceptance Criteria:**"]
        for criterion in task.acceptance_criteria:
            mark = "x" if criterion.completed else " "
            out.append(f"- [{mark}] {criterion.text}")
        if task.spec_reference:
            out += [
                "",
                f"**Spec Reference:** [{task.spec_reference}]({task.spec_reference})",
            ]
        out += ["", "---", ""]
    if plan.generated_at is not None:
        out.append(f"*Generated on {plan.generated_at.isoformat()}*")
    return "\n".join(out) + "\n"


def update_task_in_document(
    document: str,
    task_id: str,
    status: str | None = None,
    completed_criteria: Iterable[str] | None = None,
) -> str:
    """Rewrite one task's status line and checkboxes in place.

    Lines outside the task block are returned unchanged. Criteria are only
    ever ticked, never unticked.

    Args:
        document: Plan markdown
        task_id: Task to update
        status: New status; inserted after the Priority/ID line if absent
        completed_criteria: Criterion texts to tick

    Raises:
        PlanError: If the task is not in the document
    """
    lines = document.splitlines(keepends=True)
    plain = [line.rstrip("\r\n") for line in lines]
    blocks = _task_blocks(plain)

    synthesized = 0
    target: tuple[int, int] | None = None
    for start, end in blocks:
        task = _parse_task_block(plain[start:end])
        if task is None:
            continue
        synthesized += 1
        if (task.id or f"task-{synthesized:03d}") == task_id:
            target = (start, end)
            break
    if target is None:
        raise PlanError(f"Task {task_id} not found in plan document")

    start, end = target
    newline = "\r\n" if lines[start].endswith("\r\n") else "\n"
    to_tick = set(completed_criteria or ())

    status_index = None
    anchor_index = start
    for i in range(start + 1, end):
        stripped = plain[i].strip()
        field_match = _FIELD_RE.match(stripped)
        if field_match:
            label = field_match.group("label").strip().lower()
            if label == "status":
                status_index = i
            elif label in ("id", "priority") and status_index is None:
                anchor_index = i
            continue
        checkbox = _CHECKBOX_RE.match(stripped)
        if checkbox and checkbox.group("text").strip() in to_tick:
            indent = plain[i][: len(plain[i]) - len(plain[i].lstrip())]
            ending = lines[i][len(plain[i]) :]
            lines[i] = f"{indent}- [x] {checkbox.group('text').strip()}{ending}"

    if status is not None:
        if status_index is not None:
            ending = lines[status_index][len(plain[status_index]) :]
            lines[status_index] = f"**Status:** {status}{ending}"
        else:
            if not lines[anchor_index].endswith(("\n", "\r")):
                lines[anchor_index] += newline
            lines.insert(anchor_index + 1, f"**Status:** {status}{newline}")

    return "".join(lines)
