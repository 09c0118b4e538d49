"""Step actions of the sync workflow and the built-in step table.

Actions receive a StepContext and return their output, which later steps
read by action name. Every action a workflow file may reference is listed in
ACTIONS.
"""

import os
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from chat_stash.errors import ConfigError
from chat_stash.ingest import Batch, discover_batch_files, load_batch
from chat_stash.logging import get_logger
from chat_stash.models import MergeOutcome
from chat_stash.pipeline.archiver import archive_batch
from chat_stash.pipeline.indexer import TypesenseIndexer
from chat_stash.storage.backend import LocalStorage
from chat_stash.sync.fingerprint import fingerprint_many
from chat_stash.sync.resolver import CommitReport, Upload
from chat_stash.workflow.context import StepContext
from chat_stash.workflow.steps import Action, OnFailure, StepDescriptor

logger = get_logger("pipeline")


@dataclass
class ReconcileReport:
    """Aggregate of all uploads committed in one reconcile step."""

    commits: list[CommitReport] = field(default_factory=list)
    committed_batches: list[Path] = field(default_factory=list)

    def count(self, outcome: MergeOutcome) -> int:
        return sum(c.count(outcome) for c in self.commits)

    @property
    def conflicts(self) -> int:
        return sum(c.conflicts for c in self.commits)

    @property
    def superseded_ids(self) -> list[str]:
        return sorted(
            d.existing.id
            for c in self.commits
            for p in c.partitions
            for d in p.decisions
            if d.outcome == MergeOutcome.MERGED and d.existing is not None
        )

    def summary(self) -> dict[str, int]:
        return {
            "stored": self.count(MergeOutcome.STORED),
            "merged": self.count(MergeOutcome.MERGED),
            "discarded": self.count(MergeOutcome.DISCARDED),
            "dual_retained": self.count(MergeOutcome.DUAL_RETAINED),
            "batches": len(self.committed_batches),
        }


def _check_writable(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    if not os.access(path, os.W_OK):
        raise ConfigError(f"Directory is not writable: {path}")


def environment_check(ctx: StepContext) -> dict[str, str]:
    """Make sure every working directory exists and is writable."""
    paths = ctx.config.paths
    for directory in (paths.inbox, paths.archive, paths.store, paths.ledger_db.parent):
        _check_writable(directory)
    logger.info("Environment ok: inbox=%s store=%s", paths.inbox, paths.store)
    return {"inbox": str(paths.inbox), "archive": str(paths.archive), "store": str(paths.store)}


def load_configuration(ctx: StepContext) -> dict[str, Any]:
    """Validate the run configuration."""
    ctx.config.validate()
    return ctx.config.snapshot()


def load_batches(ctx: StepContext) -> list[Batch]:
    """Read batch files from the inbox and drop conversations already synchronized."""
    inbox = ctx.config.paths.inbox
    ledger = ctx.run.ledger
    store = ctx.run.store

    batches = []
    for path in discover_batch_files(inbox):
        if ctx.cancelled:
            break
        batch = load_batch(path, inbox)
        ledger.register_machine(batch.machine_id, batch.hostname or batch.machine_id, batch.metadata)

        pending = []
        for conversation in batch.conversations:
            cursor = ledger.get_cursor(batch.machine_id, store.partition_key_for(conversation))
            if cursor is None or conversation.updated_at > cursor:
                pending.append(conversation)
        if len(pending) < len(batch.conversations):
            logger.info(
                "Skipping already synchronized conversations: batch=%s skipped=%d",
                batch.batch_id,
                len(batch.conversations) - len(pending),
            )
        batches.append(replace(batch, conversations=tuple(pending)))

    logger.info("Loaded batches: count=%d conversations=%d", len(batches), sum(len(b.conversations) for b in batches))
    return batches


def fingerprint(ctx: StepContext) -> list[Batch]:
    """Fingerprint every loaded conversation, hashing in parallel."""
    matching = ctx.config.matching
    fingerprinted = []
    for batch in ctx.output("load_batches"):
        if ctx.cancelled:
            break
        conversations = fingerprint_many(batch.conversations, k=matching.fuzzy_k, max_workers=matching.hash_workers)
        fingerprinted.append(replace(batch, conversations=tuple(conversations)))
    return fingerprinted


def _initiated_at(batch: Batch) -> float:
    # Delivery time of the batch file orders concurrent uploads
    try:
        return batch.path.stat().st_mtime
    except OSError:
        return time.time()


def reconcile(ctx: StepContext) -> ReconcileReport:
    """Match, merge and commit every batch through the conflict resolver."""
    report = ReconcileReport()
    for batch in sorted(ctx.output("fingerprint"), key=_initiated_at):
        if ctx.cancelled:
            break
        upload = Upload(
            machine_id=batch.machine_id,
            initiated_at=_initiated_at(batch),
            conversations=batch.conversations,
            cursor=batch.cursor,
            batch_id=batch.batch_id,
        )
        commit = ctx.run.resolver.commit(upload, cancel_event=ctx.cancel_event, run_id=ctx.run.run_id)
        report.commits.append(commit)
        # Batches with conflicts stay in the inbox and are re-evaluated next run
        if not ctx.cancelled and commit.conflicts == 0:
            report.committed_batches.append(batch.path)

    logger.info("Reconcile complete: %s", " ".join(f"{k}={v}" for k, v in report.summary().items()))
    return report


def update_index(ctx: StepContext) -> dict[str, int]:
    """Push active canonical conversations to Typesense, if enabled."""
    ts_config = ctx.config.typesense
    if not ts_config.enabled:
        logger.info("Typesense indexing disabled, skipping")
        return {"success": 0, "failed": 0, "deleted": 0}

    indexer = TypesenseIndexer(ts_config)
    indexer.ensure_collection()
    conversations = [record.conversation for record in ctx.run.store.iter_records(active_only=True)]
    result = indexer.upsert_conversations(conversations)

    report: ReconcileReport | None = ctx.outputs.get("reconcile")
    result["deleted"] = indexer.delete_conversations(report.superseded_ids) if report else 0
    if result["failed"]:
        raise RuntimeError(f"{result['failed']} conversations failed to index")
    return result


def archive_batches(ctx: StepContext) -> list[str]:
    """Move committed batch files to the archive."""
    report: ReconcileReport = ctx.output("reconcile")
    paths = ctx.config.paths
    archived = []
    for batch_path in report.committed_batches:
        if batch_path.exists():
            archived.append(str(archive_batch(batch_path, paths.inbox, paths.archive)))
    return archived


def cleanup(ctx: StepContext) -> int:
    """Remove temp files left behind by interrupted store writes."""
    backend = ctx.run.store.backend
    if isinstance(backend, LocalStorage):
        return backend.remove_stale_temp_files()
    return 0


ACTIONS: dict[str, Action] = {
    action.name: action
    for action in (
        Action("environment_check", environment_check),
        Action("load_configuration", load_configuration),
        Action("load_batches", load_batches),
        Action("fingerprint", fingerprint),
        Action("reconcile", reconcile),
        Action("update_index", update_index),
        Action("archive_batches", archive_batches),
        Action("cleanup", cleanup),
    )
}


def default_steps() -> list[StepDescriptor]:
    """The built-in daily sync workflow."""
    return [
        StepDescriptor("environment_check", ACTIONS["environment_check"], timeout=30),
        StepDescriptor("load_configuration", ACTIONS["load_configuration"], timeout=10),
        StepDescriptor(
            "load_batches", ACTIONS["load_batches"], timeout=120, on_failure=OnFailure.HALT_WITH_CLEANUP
        ),
        StepDescriptor(
            "fingerprint", ACTIONS["fingerprint"], timeout=300, on_failure=OnFailure.HALT_WITH_CLEANUP
        ),
        StepDescriptor(
            "reconcile",
            ACTIONS["reconcile"],
            timeout=300,
            retry_count=3,
            retry_delay=10,
            on_failure=OnFailure.HALT_WITH_CLEANUP,
        ),
        StepDescriptor(
            "update_index",
            ACTIONS["update_index"],
            timeout=180,
            retry_count=2,
            retry_delay=5,
            on_failure=OnFailure.CONTINUE,
        ),
        StepDescriptor("archive_batches", ACTIONS["archive_batches"], timeout=60, on_failure=OnFailure.CONTINUE),
        StepDescriptor(
            "cleanup", ACTIONS["cleanup"], timeout=30, on_failure=OnFailure.CONTINUE, always_run=True
        ),
    ]
