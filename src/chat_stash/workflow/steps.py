"""Step descriptors and the YAML workflow loader.

A workflow is a typed table of steps. The loader only resolves action names
against an explicit action table handed to it; nothing is looked up by
reflection.
"""

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from chat_stash.errors import WorkflowConfigError

if TYPE_CHECKING:
    from chat_stash.workflow.context import StepContext

DEFAULT_TIMEOUT = 300.0

_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


class OnFailure(str, Enum):
    HALT = "halt"
    HALT_WITH_CLEANUP = "halt_with_cleanup"
    CONTINUE = "continue"


# Policy names used by older workflow files
_LEGACY_POLICIES = {
    "exit": OnFailure.HALT,
    "cleanup_and_exit": OnFailure.HALT_WITH_CLEANUP,
}


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Action:
    """A named callable a step runs."""

    name: str
    func: Callable[["StepContext"], Any]

    def __call__(self, ctx: "StepContext") -> Any:
        return self.func(ctx)


@dataclass(frozen=True)
class StepDescriptor:
    name: str
    action: Action
    timeout: float = DEFAULT_TIMEOUT
    retry_count: int = 0
    retry_delay: float = 0.0
    on_failure: OnFailure = OnFailure.HALT
    always_run: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise WorkflowConfigError("Step name must not be empty")
        if self.retry_count < 0:
            raise WorkflowConfigError(f"Step {self.name}: retry_count must be >= 0")
        if self.timeout <= 0:
            raise WorkflowConfigError(f"Step {self.name}: timeout must be positive")
        if self.retry_delay < 0:
            raise WorkflowConfigError(f"Step {self.name}: retry_delay must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.retry_count + 1


def parse_duration(value: str | int | float) -> float:
    """Parse a duration such as "30s", "10m", "1h", "250ms" or a number of seconds.

    Raises:
        WorkflowConfigError: If the value is not a duration
    """
    if isinstance(value, bool):
        raise WorkflowConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION.match(str(value))
    if not match:
        raise WorkflowConfigError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[unit]


def parse_on_failure(value: str) -> OnFailure:
    value = str(value).strip().lower()
    if value in _LEGACY_POLICIES:
        return _LEGACY_POLICIES[value]
    try:
        return OnFailure(value)
    except ValueError:
        raise WorkflowConfigError(f"Unknown on_failure policy: {value!r}")


def validate_steps(steps: list[StepDescriptor]) -> list[StepDescriptor]:
    """Check that step names are unique."""
    seen: set[str] = set()
    for step in steps:
        if step.name in seen:
            raise WorkflowConfigError(f"Duplicate step name: {step.name}")
        seen.add(step.name)
    return steps


def build_step(data: Mapping[str, Any], actions: Mapping[str, Action]) -> StepDescriptor:
    """Build one step descriptor from its YAML mapping."""
    if not isinstance(data, Mapping):
        raise WorkflowConfigError(f"Step must be a mapping, got {type(data).__name__}")

    name = data.get("name")
    if not name:
        raise WorkflowConfigError("Step is missing a name")

    action_name = data.get("action", name)
    action = actions.get(action_name)
    if action is None:
        raise WorkflowConfigError(f"Step {name}: unknown action {action_name!r}")

    retry_count = data.get("retry_count", 0)
    if isinstance(retry_count, bool) or not isinstance(retry_count, int):
        raise WorkflowConfigError(f"Step {name}: retry_count must be an integer, got {retry_count!r}")

    always_run = data.get("always_run", False)
    if not isinstance(always_run, bool):
        raise WorkflowConfigError(f"Step {name}: always_run must be true or false, got {always_run!r}")

    return StepDescriptor(
        name=str(name),
        action=action,
        timeout=parse_duration(data.get("timeout", DEFAULT_TIMEOUT)),
        retry_count=retry_count,
        retry_delay=parse_duration(data.get("retry_delay", 0)),
        on_failure=parse_on_failure(data.get("on_failure", OnFailure.HALT.value)),
        always_run=always_run,
        description=str(data.get("description", "")),
    )


def load_workflow(path: Path, actions: Mapping[str, Action]) -> list[StepDescriptor]:
    """Load a workflow step table from a YAML file.

    Args:
        path: Workflow file with a top-level ``steps`` list
        actions: Action table that step ``action`` names resolve against

    Returns:
        Step descriptors in declaration order

    Raises:
        WorkflowConfigError: If the file or any step is invalid
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise WorkflowConfigError(f"Cannot read workflow {path}: {e}") from e

    steps_data = data.get("steps") if isinstance(data, Mapping) else None
    if not isinstance(steps_data, list) or not steps_data:
        raise WorkflowConfigError(f"Workflow {path} has no steps")

    return validate_steps([build_step(item, actions) for item in steps_data])
