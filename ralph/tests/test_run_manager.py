"""Tests for the server's background run manager."""

from pathlib import Path

from ralph.api.endpoints.execution import run_overrides
from ralph.api.models import RunOptions
from ralph.api.run_manager import RunManager
from ralph.config import RalphConfig
from ralph.events import EventBus
from ralph.models import RegisteredPlan


def registered(tmp_path: Path, plan_file: Path) -> RegisteredPlan:
    return RegisteredPlan(
        plan_id="todo",
        project_root=str(tmp_path),
        plan_path=str(plan_file),
        title="Todo API",
        total_tasks=2,
    )


class TestConfigFor:
    """Tests for RunManager.config_for()."""

    def test_default_request_options_keep_registered_paths(
        self, tmp_path: Path, plan_file: Path, run_config: RalphConfig
    ) -> None:
        runs = RunManager(EventBus(), base_config=run_config)

        config = runs.config_for(registered(tmp_path, plan_file), **run_overrides(RunOptions()))

        assert config.project_root == tmp_path
        assert config.plan_path == plan_file
        assert config.max_retries == run_config.max_retries
        assert config.auto_commit is run_config.auto_commit

    def test_request_options_override(
        self, tmp_path: Path, plan_file: Path, run_config: RalphConfig
    ) -> None:
        other_root = tmp_path / "elsewhere"
        options = RunOptions(directory=str(other_root), maxRetries=5, maxParallel=2, noCommit=True)
        runs = RunManager(EventBus(), base_config=run_config.with_overrides(auto_commit=True))

        config = runs.config_for(registered(tmp_path, plan_file), **run_overrides(options))

        assert config.project_root == other_root
        assert config.plan_path == plan_file
        assert config.max_retries == 5
        assert config.max_parallel_tasks == 2
        assert config.auto_commit is False

    def test_without_options(self, tmp_path: Path, plan_file: Path, run_config: RalphConfig) -> None:
        runs = RunManager(EventBus(), base_config=run_config)

        config = runs.config_for(registered(tmp_path, plan_file))

        assert config.project_root == tmp_path
        assert config.resume is run_config.resume
