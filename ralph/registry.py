"""Plan registry: maps short plan ids to (project root, plan path) pairs.

Stored as one JSON document (default ``~/.ralph/registry.json``)::

    {"version": 1, "plans": {"<planId>": {...RegisteredPlan...}}}
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from ralph.errors import PlanError, RegistryError
from ralph.models import RegisteredPlan, utcnow
from ralph.plan_parser import load_plan

logger = logging.getLogger(__name__)

REGISTRY_VERSION = 1


def default_registry_path() -> Path:
    return Path(os.getenv("RALPH_REGISTRY_PATH", Path.home() / ".ralph" / "registry.json"))


def derive_plan_id(plan_path: str | Path) -> str:
    """Plan id from a path: ``plans/<id>/...`` -> ``<id>``, else parent dir, else file stem."""
    path = Path(plan_path)
    parts = path.parts
    for i, part in enumerate(parts[:-1]):
        if part == "plans" and i + 1 < len(parts) - 1:
            return parts[i + 1]
    parent = path.parent.name
    if parent and parent not in (".", ".ralph"):
        return parent
    return path.stem


class PlanRegistry:
    """Keyed JSON store of registered plans.

    Thread-safe within one process; the file is rewritten atomically on
    every change.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = Path(path) if path is not None else default_registry_path()
        self._lock = threading.RLock()
        self._plans: dict[str, RegisteredPlan] | None = None

    def _load(self) -> dict[str, RegisteredPlan]:
        if self._plans is not None:
            return self._plans
        if not self.path.exists():
            self._plans = {}
            return self._plans
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise RegistryError(f"Failed to load registry {self.path}: {e}") from e
        if data.get("version") != REGISTRY_VERSION:
            raise RegistryError(f"Unsupported registry version: {data.get('version')}")
        self._plans = {
            plan_id: RegisteredPlan.from_dict(entry)
            for plan_id, entry in (data.get("plans") or {}).items()
        }
        return self._plans

    def _save(self) -> None:
        plans = self._load()
        data: dict[str, Any] = {
            "version": REGISTRY_VERSION,
            "plans": {plan_id: plan.to_dict() for plan_id, plan in plans.items()},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_name, self.path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise RegistryError(f"Failed to save registry: {e}") from e

    def register(
        self,
        plan_id: str,
        project_root: str | Path,
        plan_path: str | Path,
        overwrite: bool = False,
    ) -> RegisteredPlan:
        """Register a plan.

        Raises:
            RegistryError: If the id is taken (without overwrite) or the file is missing
        """
        root = Path(project_root).expanduser().resolve()
        path = Path(plan_path).expanduser()
        path = path if path.is_absolute() else (root / path)
        path = path.resolve()
        if not path.is_file():
            raise RegistryError(f"Plan file not found: {path}")

        with self._lock:
            plans = self._load()
            existing = plans.get(plan_id)
            if existing is not None and not overwrite:
                raise RegistryError(
                    f"Plan {plan_id} is already registered. Use --force to overwrite."
                )

            title, total = plan_id, 0
            try:
                plan = load_plan(path, root)
                title, total = plan.project_name, plan.total_tasks
            except PlanError:
                logger.debug(f"Registered plan {plan_id} could not be parsed")

            entry = RegisteredPlan(
                plan_id=plan_id,
                project_root=str(root),
                plan_path=str(path),
                title=title,
                total_tasks=total,
                registered_at=existing.registered_at if existing else utcnow(),
            )
            plans[plan_id] = entry
            self._save()
        logger.info(f"Registered plan {plan_id} -> {path}")
        return entry

    def unregister(self, plan_id: str) -> None:
        with self._lock:
            plans = self._load()
            if plan_id not in plans:
                raise RegistryError(f"Plan {plan_id} is not registered")
            del plans[plan_id]
            self._save()

    def get(self, plan_id: str, touch: bool = True) -> RegisteredPlan | None:
        """Look up a plan, updating its lastAccessed time."""
        with self._lock:
            plan = self._load().get(plan_id)
            if plan is not None and touch:
                plan.last_accessed = utcnow()
                self._save()
            return plan

    def resolve(self, plan_id: str) -> RegisteredPlan:
        plan = self.get(plan_id)
        if plan is None:
            raise RegistryError(
                f"Plan {plan_id} is not registered. Use 'ralph register' to add it."
            )
        return plan

    def find_by_path(self, plan_path: str | Path) -> RegisteredPlan | None:
        target = Path(plan_path).expanduser().resolve()
        with self._lock:
            for plan in self._load().values():
                if Path(plan.plan_path).resolve() == target:
                    return plan
        return None

    def list(self) -> list[RegisteredPlan]:
        """All plans, most recently accessed first."""
        with self._lock:
            plans = list(self._load().values())
        return sorted(plans, key=lambda p: p.last_accessed, reverse=True)

    def stats(self) -> dict[str, Any]:
        plans = self.list()
        registered = sorted(plans, key=lambda p: p.registered_at)
        return {
            "totalPlans": len(plans),
            "totalProjects": len({p.project_root for p in plans}),
            "oldest": registered[0].plan_id if registered else None,
            "newest": registered[-1].plan_id if registered else None,
            "registryPath": str(self.path),
        }

    def clear(self) -> int:
        """Remove every plan. Returns how many were removed."""
        with self._lock:
            plans = self._load()
            count = len(plans)
            plans.clear()
            self._save()
        return count
