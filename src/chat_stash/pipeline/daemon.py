"""Sync runs: one workflow run, or a daemon loop repeating it on an interval."""

import time
import uuid
from pathlib import Path

from chat_stash.config import Config
from chat_stash.logging import get_logger, setup_logging
from chat_stash.models import SyncStatus
from chat_stash.pipeline.actions import ACTIONS, default_steps
from chat_stash.storage.backend import LocalStorage
from chat_stash.storage.store import ConversationStore
from chat_stash.sync.ledger import SyncLedger
from chat_stash.sync.merger import MergeEngine
from chat_stash.sync.resolver import ConflictResolver
from chat_stash.workflow.context import RunContext
from chat_stash.workflow.orchestrator import Orchestrator, RunResult, exit_code_for
from chat_stash.workflow.steps import StepDescriptor, load_workflow

logger = get_logger("daemon")

# Global flag for graceful shutdown
_shutdown_requested = False


def request_shutdown() -> None:
    """Request graceful shutdown of the sync daemon."""
    global _shutdown_requested
    _shutdown_requested = True


def is_shutdown_requested() -> bool:
    """Check if shutdown has been requested."""
    return _shutdown_requested


def reset_shutdown() -> None:
    """Reset shutdown flag (useful for testing)."""
    global _shutdown_requested
    _shutdown_requested = False


def resolve_steps(config: Config, workflow_path: Path | None = None) -> list[StepDescriptor]:
    """Steps from an explicit workflow file, the configured one, or the built-in table."""
    path = workflow_path or config.paths.workflow
    if path is not None:
        return load_workflow(path, ACTIONS)
    return default_steps()


def run_sync(
    config: Config,
    workflow_path: Path | None = None,
    run_id: str | None = None,
) -> tuple[RunResult, int]:
    """Execute one workflow run.

    Returns:
        Tuple of (run result, process exit status)

    Raises:
        WorkflowConfigError: If the workflow file is invalid
    """
    steps = resolve_steps(config, workflow_path)
    run_id = run_id or uuid.uuid4().hex[:12]

    with SyncLedger(config.paths.ledger_db) as ledger:
        store = ConversationStore(LocalStorage(config.paths.store))
        resolver = ConflictResolver(
            store,
            ledger,
            engine=MergeEngine(fuzzy_k=config.matching.fuzzy_k),
            threshold=config.matching.threshold,
            time_window=config.matching.time_window_seconds,
            lock_timeout=config.resolver.lock_timeout_seconds,
        )
        context = RunContext(
            config=config,
            run_id=run_id,
            started_at=time.time(),
            store=store,
            ledger=ledger,
            resolver=resolver,
        )

        result = Orchestrator(steps).run(context)
        conflicts = ledger.list_entries(status=SyncStatus.NEEDS_REVIEW, run_id=run_id)

    if conflicts:
        logger.warning("Conflicts logged for manual resolution: run_id=%s count=%d", run_id, len(conflicts))
    return result, exit_code_for(result, conflicts_logged=bool(conflicts))


def run_daemon(config: Config, interval_seconds: int = 3600, workflow_path: Path | None = None) -> None:
    """Run the sync workflow repeatedly until shutdown is requested.

    Args:
        config: Application configuration
        interval_seconds: Seconds between runs
        workflow_path: Optional workflow file overriding the configured one
    """
    reset_shutdown()

    setup_logging("daemon", log_dir=config.paths.log_dir)

    logger.info(
        "Starting sync daemon: machine_id=%s inbox=%s store=%s interval=%ds",
        config.machine_id,
        config.paths.inbox,
        config.paths.store,
        interval_seconds,
    )

    while not is_shutdown_requested():
        try:
            result, exit_code = run_sync(config, workflow_path)
            logger.info("Run complete: run_id=%s status=%s exit=%d", result.run_id, result.status.value, exit_code)
        except Exception:
            logger.exception("Sync run crashed")

        if is_shutdown_requested():
            break

        logger.debug("Waiting %ds until next run", interval_seconds)

        # Sleep in small increments to allow graceful shutdown
        sleep_remaining = interval_seconds
        while sleep_remaining > 0 and not is_shutdown_requested():
            sleep_time = min(1.0, sleep_remaining)
            time.sleep(sleep_time)
            sleep_remaining -= sleep_time

    logger.info("Sync daemon stopped")
