"""Tests for step descriptors and the workflow loader."""

from pathlib import Path

import pytest

from chat_stash.errors import WorkflowConfigError
from chat_stash.pipeline.actions import ACTIONS
from chat_stash.workflow.steps import (
    Action,
    OnFailure,
    StepDescriptor,
    load_workflow,
    parse_duration,
    parse_on_failure,
    validate_steps,
)

REPO_ROOT = Path(__file__).resolve().parent.parent


def _noop(ctx) -> None:
    return None


NOOP = Action("noop", _noop)
TABLE = {"noop": NOOP, "other": Action("other", _noop)}


class TestParseDuration:
    """Tests for parse_duration."""

    @pytest.mark.parametrize(
        "value, expected",
        [("30s", 30.0), ("10m", 600.0), ("1h", 3600.0), ("250ms", 0.25), ("1.5s", 1.5), (45, 45.0), ("12", 12.0)],
    )
    def test_valid(self, value, expected: float) -> None:
        """Units s, m, h and ms are understood; bare numbers are seconds."""
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["soon", "10 days", "-5s", True])
    def test_invalid(self, value) -> None:
        """Anything else is a WorkflowConfigError."""
        with pytest.raises(WorkflowConfigError):
            parse_duration(value)


class TestParseOnFailure:
    """Tests for failure policy parsing."""

    def test_current_names(self) -> None:
        """Policy values parse case-insensitively."""
        assert parse_on_failure("HALT") == OnFailure.HALT
        assert parse_on_failure("continue") == OnFailure.CONTINUE

    def test_legacy_names(self) -> None:
        """Older policy names map onto the current ones."""
        assert parse_on_failure("exit") == OnFailure.HALT
        assert parse_on_failure("cleanup_and_exit") == OnFailure.HALT_WITH_CLEANUP

    def test_unknown(self) -> None:
        """Unknown policies are rejected."""
        with pytest.raises(WorkflowConfigError, match="on_failure"):
            parse_on_failure("retry_forever")


class TestStepDescriptor:
    """Tests for StepDescriptor validation."""

    def test_defaults(self) -> None:
        """A bare step halts on failure and runs once."""
        step = StepDescriptor("s", NOOP)
        assert step.on_failure == OnFailure.HALT
        assert step.max_attempts == 1
        assert step.always_run is False

    @pytest.mark.parametrize(
        "kwargs",
        [{"retry_count": -1}, {"timeout": 0}, {"retry_delay": -1}],
    )
    def test_rejects_invalid_values(self, kwargs) -> None:
        """Negative retries, zero timeouts and negative delays are invalid."""
        with pytest.raises(WorkflowConfigError):
            StepDescriptor("s", NOOP, **kwargs)

    def test_duplicate_names_rejected(self) -> None:
        """Step names must be unique within a workflow."""
        with pytest.raises(WorkflowConfigError, match="Duplicate"):
            validate_steps([StepDescriptor("s", NOOP), StepDescriptor("s", NOOP)])


class TestLoadWorkflow:
    """Tests for load_workflow."""

    def test_loads_steps(self, tmp_path: Path) -> None:
        """Steps are read in order with their settings."""
        path = tmp_path / "wf.yaml"
        path.write_text(
            """
steps:
  - name: first
    action: noop
    timeout: 2m
    retry_count: 2
    retry_delay: 500ms
    on_failure: cleanup_and_exit
  - name: other
    always_run: true
    on_failure: continue
"""
        )
        steps = load_workflow(path, TABLE)

        assert [s.name for s in steps] == ["first", "other"]
        assert steps[0].action is NOOP
        assert steps[0].timeout == 120.0
        assert steps[0].retry_count == 2
        assert steps[0].retry_delay == pytest.approx(0.5)
        assert steps[0].on_failure == OnFailure.HALT_WITH_CLEANUP
        assert steps[1].action.name == "other"
        assert steps[1].always_run is True

    def test_unknown_action(self, tmp_path: Path) -> None:
        """Actions must exist in the action table."""
        path = tmp_path / "wf.yaml"
        path.write_text("steps:\n  - name: s\n    action: format_disk\n")
        with pytest.raises(WorkflowConfigError, match="unknown action"):
            load_workflow(path, TABLE)

    @pytest.mark.parametrize(
        "line,message",
        [
            ("retry_count: 2.5", "retry_count must be an integer"),
            ('retry_count: "3"', "retry_count must be an integer"),
            ("retry_count: true", "retry_count must be an integer"),
            ('always_run: "false"', "always_run must be true or false"),
            ("always_run: 1", "always_run must be true or false"),
        ],
    )
    def test_rejects_mistyped_fields(self, tmp_path: Path, line: str, message: str) -> None:
        """retry_count must be an integer and always_run a boolean, with no coercion."""
        path = tmp_path / "wf.yaml"
        path.write_text(f"steps:\n  - name: s\n    action: noop\n    {line}\n")
        with pytest.raises(WorkflowConfigError, match=message):
            load_workflow(path, TABLE)

    def test_empty_workflow(self, tmp_path: Path) -> None:
        """A workflow needs at least one step."""
        path = tmp_path / "wf.yaml"
        path.write_text("name: nothing\n")
        with pytest.raises(WorkflowConfigError, match="no steps"):
            load_workflow(path, TABLE)

    def test_missing_file(self, tmp_path: Path) -> None:
        """An unreadable file is a WorkflowConfigError."""
        with pytest.raises(WorkflowConfigError):
            load_workflow(tmp_path / "missing.yaml", TABLE)

    def test_bundled_workflow_matches_builtin_table(self) -> None:
        """The shipped daily_sync.yaml loads against the real action table."""
        steps = load_workflow(REPO_ROOT / "workflows" / "daily_sync.yaml", ACTIONS)

        assert [s.name for s in steps] == [
            "environment_check",
            "load_configuration",
            "load_batches",
            "fingerprint",
            "reconcile",
            "update_index",
            "archive_batches",
            "cleanup",
        ]
        reconcile = steps[4]
        assert reconcile.retry_count == 3
        assert reconcile.retry_delay == 10.0
        assert reconcile.on_failure == OnFailure.HALT_WITH_CLEANUP
        assert steps[-1].always_run is True
