"""
Shared fixtures for Ralph tests.
"""

from pathlib import Path

import pytest

from fakes import TWO_TASK_PLAN, FakeAgent
from ralph.config import RalphConfig


@pytest.fixture
def plan_file(tmp_path: Path) -> Path:
    path = tmp_path / "IMPLEMENTATION_PLAN.md"
    path.write_text(TWO_TASK_PLAN, encoding="utf-8")
    return path


@pytest.fixture
def run_config(tmp_path: Path, plan_file: Path) -> RalphConfig:
    """Config for fast engine tests: no git commits, quick polling."""
    return RalphConfig(
        project_root=tmp_path,
        plan_path=plan_file,
        auto_commit=False,
        max_retries=3,
        task_timeout_seconds=5,
        completion_poll_interval=0.01,
        continue_agent_session=False,
    )


@pytest.fixture
def fake_agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture(autouse=True)
def isolated_registry(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep every test away from the user's ~/.ralph/registry.json."""
    path = tmp_path / "registry" / "registry.json"
    monkeypatch.setenv("RALPH_REGISTRY_PATH", str(path))
    return path
