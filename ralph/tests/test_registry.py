"""Tests for the plan registry."""

import json
from pathlib import Path

import pytest

from ralph.errors import RegistryError
from ralph.registry import PlanRegistry, default_registry_path, derive_plan_id


@pytest.fixture
def registry(tmp_path: Path) -> PlanRegistry:
    return PlanRegistry(tmp_path / "registry.json")


class TestDerivePlanId:
    def test_plans_directory(self) -> None:
        assert derive_plan_id("/work/app/plans/auth-flow/IMPLEMENTATION_PLAN.md") == "auth-flow"

    def test_parent_directory(self) -> None:
        assert derive_plan_id("/work/todo-app/IMPLEMENTATION_PLAN.md") == "todo-app"

    def test_file_stem(self) -> None:
        assert derive_plan_id("IMPLEMENTATION_PLAN.md") == "IMPLEMENTATION_PLAN"


class TestPlanRegistry:
    """Tests for PlanRegistry."""

    def test_default_path_from_env(self, isolated_registry: Path) -> None:
        assert default_registry_path() == isolated_registry

    def test_register_reads_plan_metadata(
        self, registry: PlanRegistry, plan_file: Path, tmp_path: Path
    ) -> None:
        entry = registry.register("todo", tmp_path, plan_file.name)

        assert entry.plan_path == str(plan_file.resolve())
        assert entry.title == "Todo API"
        assert entry.total_tasks == 2
        data = json.loads(registry.path.read_text())
        assert data["version"] == 1
        assert data["plans"]["todo"]["totalTasks"] == 2

    def test_register_missing_file(self, registry: PlanRegistry, tmp_path: Path) -> None:
        with pytest.raises(RegistryError, match="not found"):
            registry.register("todo", tmp_path, "missing.md")

    def test_duplicate_id_requires_overwrite(
        self, registry: PlanRegistry, plan_file: Path, tmp_path: Path
    ) -> None:
        first = registry.register("todo", tmp_path, plan_file)

        with pytest.raises(RegistryError, match="already registered"):
            registry.register("todo", tmp_path, plan_file)
        second = registry.register("todo", tmp_path, plan_file, overwrite=True)

        assert second.registered_at == first.registered_at

    def test_persists_across_instances(
        self, registry: PlanRegistry, plan_file: Path, tmp_path: Path
    ) -> None:
        registry.register("todo", tmp_path, plan_file)

        reopened = PlanRegistry(registry.path)

        assert reopened.get("todo", touch=False).title == "Todo API"
        assert reopened.find_by_path(plan_file).plan_id == "todo"

    def test_resolve_unknown(self, registry: PlanRegistry) -> None:
        with pytest.raises(RegistryError, match="not registered"):
            registry.resolve("nope")

    def test_unregister(self, registry: PlanRegistry, plan_file: Path, tmp_path: Path) -> None:
        registry.register("todo", tmp_path, plan_file)

        registry.unregister("todo")

        assert registry.get("todo") is None
        with pytest.raises(RegistryError):
            registry.unregister("todo")

    def test_list_most_recently_accessed_first(
        self, registry: PlanRegistry, plan_file: Path, tmp_path: Path
    ) -> None:
        registry.register("first", tmp_path, plan_file)
        registry.register("second", tmp_path, plan_file)

        registry.get("first")

        assert [plan.plan_id for plan in registry.list()] == ["first", "second"]

    def test_stats_and_clear(self, registry: PlanRegistry, plan_file: Path, tmp_path: Path) -> None:
        registry.register("first", tmp_path, plan_file)
        registry.register("second", tmp_path, plan_file)

        stats = registry.stats()

        assert stats["totalPlans"] == 2
        assert stats["totalProjects"] == 1
        assert stats["oldest"] == "first"
        assert registry.clear() == 2
        assert registry.list() == []

    def test_corrupt_file(self, tmp_path: Path) -> None:
        path = tmp_path / "registry.json"
        path.write_text("{oops")

        with pytest.raises(RegistryError, match="Failed to load"):
            PlanRegistry(path).list()

    def test_unsupported_version(self, tmp_path: Path) -> None:
        path = tmp_path / "registry.json"
        path.write_text(json.dumps({"version": 99, "plans": {}}))

        with pytest.raises(RegistryError, match="version"):
            PlanRegistry(path).list()
