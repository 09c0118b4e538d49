"""Immutable values threaded through every step invocation."""

import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from chat_stash.config import Config
from chat_stash.storage.store import ConversationStore
from chat_stash.sync.ledger import SyncLedger
from chat_stash.sync.resolver import ConflictResolver


@dataclass(frozen=True)
class RunContext:
    """Configuration and shared services for one workflow run."""

    config: Config
    run_id: str
    started_at: float
    store: ConversationStore
    ledger: SyncLedger
    resolver: ConflictResolver


@dataclass(frozen=True)
class StepContext:
    """What a single step attempt sees.

    ``outputs`` maps action names of earlier successful steps to their return
    values and is read-only. Long-running actions should check ``cancelled``
    between units of work and stop without writing once it is set.
    """

    run: RunContext
    step_name: str
    attempt: int
    outputs: Mapping[str, Any]
    cancel_event: threading.Event

    @property
    def config(self) -> Config:
        return self.run.config

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def output(self, action_name: str) -> Any:
        """Return an upstream step's output.

        Raises:
            KeyError: If no step with that action has succeeded in this run
        """
        if action_name not in self.outputs:
            raise KeyError(f"No output from upstream action {action_name!r}")
        return self.outputs[action_name]
