"""Tests for test-command and acceptance-criteria verification."""

from pathlib import Path

from ralph.models import AcceptanceCriterion, Task
from ralph.verification import check_criterion, evaluate_criteria, run_test_command


class TestRunTestCommand:
    def test_passing_command(self, tmp_path: Path) -> None:
        result = run_test_command("echo ok", tmp_path)

        assert result.passed is True
        assert result.output == "ok"

    def test_failing_command(self, tmp_path: Path) -> None:
        result = run_test_command("echo bad >&2; exit 2", tmp_path)

        assert result.passed is False
        assert result.returncode == 2
        assert "bad" in result.output

    def test_timeout(self, tmp_path: Path) -> None:
        result = run_test_command("sleep 5", tmp_path, timeout=0.1)

        assert result.passed is False
        assert result.returncode is None
        assert "timed out" in result.output


class TestCheckCriterion:
    """Tests for the local fast-path checks."""

    def test_exists(self, tmp_path: Path) -> None:
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "app.py").write_text("app = 1\n")

        assert check_criterion("src/app.py exists", tmp_path) is True
        assert check_criterion("`src/app.py` file exists", tmp_path) is True
        assert check_criterion("src/missing.py exists", tmp_path) is False

    def test_includes(self, tmp_path: Path) -> None:
        (tmp_path / "README.md").write_text("Install with pip\n")

        assert check_criterion('README.md includes "pip"', tmp_path) is True
        assert check_criterion("README.md includes conda", tmp_path) is False
        assert check_criterion("NOPE.md includes pip", tmp_path) is False

    def test_command_passes(self, tmp_path: Path) -> None:
        assert check_criterion("true passes", tmp_path) is True
        assert check_criterion("false passes", tmp_path) is False

    def test_single_word_is_a_path(self, tmp_path: Path) -> None:
        (tmp_path / "Makefile").write_text("all:\n")

        assert check_criterion("Makefile", tmp_path) is True

    def test_free_text_is_undecided(self, tmp_path: Path) -> None:
        assert check_criterion("The API returns JSON errors", tmp_path) is None


class TestEvaluateCriteria:
    def test_sources_of_truth(self, tmp_path: Path) -> None:
        """Ticked in the document, reported by the agent, or checked locally."""
        (tmp_path / "models.py").write_text("")
        task = Task(
            id="task-001",
            title="Models",
            acceptance_criteria=[
                AcceptanceCriterion("Already ticked", completed=True),
                AcceptanceCriterion("Reported by agent"),
                AcceptanceCriterion("models.py exists"),
                AcceptanceCriterion("Nobody checked this"),
            ],
        )

        report = evaluate_criteria(task, tmp_path, {"Reported by agent": True})

        assert report.met == ["Already ticked", "Reported by agent", "models.py exists"]
        assert report.unmet == ["Nobody checked this"]
        assert report.all_met is False
