"""Exception hierarchy for chat-stash.

Every error carries a ``retryable`` flag that the workflow orchestrator
consults before spending another attempt on a failed step.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chat_stash.workflow.orchestrator import RunResult


class ChatStashError(Exception):
    """Base class for all chat-stash errors."""

    retryable = True


class ConfigError(ChatStashError):
    """Configuration is missing or invalid."""

    retryable = False


class WorkflowConfigError(ConfigError):
    """A workflow step table is malformed."""


class ExtractionError(ChatStashError):
    """A batch delivered by the extraction collaborator is unusable.

    Surfaced to the operator as-is; re-reading the same file cannot fix it.
    """

    retryable = False

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(f"{message} (path={path})" if path else message)
        self.path = path


class MergeConflictError(ChatStashError):
    """Two versions disagree on the content of one or more sequence numbers.

    Raised by the message union and always resolved by dual retention.
    """

    def __init__(self, sequences: list[int]) -> None:
        super().__init__(f"Conflicting content at sequence numbers {sequences}")
        self.sequences = sequences


class StoreCommitError(ChatStashError):
    """A write to the canonical store did not land. Transient."""


class OrchestrationHaltError(ChatStashError):
    """A workflow run halted before completion."""

    retryable = False

    def __init__(self, result: "RunResult") -> None:
        halted_by = result.halted_by or "unknown step"
        super().__init__(f"Workflow halted at {halted_by}\n{result.format_trace()}")
        self.result = result
