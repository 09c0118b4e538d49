"""Conflict resolver: serializes commits to the canonical store.

Every upload is split by partition. Uploads touching the same partition take
turns in order of upload-initiation time; each one re-runs match and merge
against the partition as it is when its turn comes, never against the state
it saw when it started. Uploads on different partitions do not wait on each
other.
"""

import heapq
import itertools
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field

from chat_stash.errors import StoreCommitError
from chat_stash.logging import get_logger
from chat_stash.models import Conversation, MergeOutcome, SyncLogEntry, SyncOperation, SyncStatus
from chat_stash.storage.store import ConversationStore
from chat_stash.sync.ledger import SyncLedger
from chat_stash.sync.matcher import DEFAULT_THRESHOLD, DEFAULT_TIME_WINDOW, MatchResolver
from chat_stash.sync.merger import MergeDecision, MergeEngine

logger = get_logger("resolver")

DEFAULT_LOCK_TIMEOUT = 30.0

_OPERATIONS = {
    MergeOutcome.STORED: (SyncOperation.STORE, SyncStatus.OK),
    MergeOutcome.DISCARDED: (SyncOperation.NOOP, SyncStatus.NOOP),
    MergeOutcome.MERGED: (SyncOperation.MERGE, SyncStatus.OK),
    MergeOutcome.DUAL_RETAINED: (SyncOperation.DUAL_RETAIN, SyncStatus.NEEDS_REVIEW),
}


@dataclass(frozen=True)
class Upload:
    """A batch of fingerprinted conversations from one machine."""

    machine_id: str
    initiated_at: float
    conversations: tuple[Conversation, ...]
    cursor: int  # End of the batch's time window
    batch_id: str = ""


@dataclass
class PartitionCommit:
    """Result of committing one partition of an upload."""

    partition_key: str
    decisions: list[MergeDecision] = field(default_factory=list)
    skipped: int = 0
    revision: int = 0
    cursor_advanced: bool = False

    @property
    def conflicts(self) -> int:
        return sum(1 for d in self.decisions if d.outcome == MergeOutcome.DUAL_RETAINED)


@dataclass
class CommitReport:
    """Result of committing an upload."""

    machine_id: str
    batch_id: str
    partitions: list[PartitionCommit] = field(default_factory=list)

    def count(self, outcome: MergeOutcome) -> int:
        return sum(1 for p in self.partitions for d in p.decisions if d.outcome == outcome)

    @property
    def conflicts(self) -> int:
        return sum(p.conflicts for p in self.partitions)

    @property
    def skipped(self) -> int:
        return sum(p.skipped for p in self.partitions)


class _PartitionQueue:
    """Admits one commit at a time for a partition, earliest initiation first.

    Initiation order only ranks waiters; the current holder is never
    overtaken, however early a newly arriving ticket was initiated.
    """

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._waiting: list[tuple[float, int]] = []
        self._holder: tuple[float, int] | None = None

    def _admissible(self, ticket: tuple[float, int]) -> bool:
        return self._holder is None and self._waiting[0] == ticket

    def enter(self, ticket: tuple[float, int], timeout: float) -> bool:
        with self._condition:
            heapq.heappush(self._waiting, ticket)
            admitted = self._condition.wait_for(lambda: self._admissible(ticket), timeout=timeout)
            if admitted:
                heapq.heappop(self._waiting)
                self._holder = ticket
            else:
                self._waiting.remove(ticket)
                heapq.heapify(self._waiting)
                self._condition.notify_all()
            return admitted

    def leave(self, ticket: tuple[float, int]) -> None:
        with self._condition:
            if self._holder != ticket:
                raise ValueError(f"Ticket {ticket} does not hold the partition")
            self._holder = None
            self._condition.notify_all()


class ConflictResolver:
    """Guards all writes to the canonical store."""

    def __init__(
        self,
        store: ConversationStore,
        ledger: SyncLedger,
        engine: MergeEngine | None = None,
        threshold: float = DEFAULT_THRESHOLD,
        time_window: int = DEFAULT_TIME_WINDOW,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._engine = engine or MergeEngine()
        self._threshold = threshold
        self._time_window = time_window
        self._lock_timeout = lock_timeout
        self._queues: dict[str, _PartitionQueue] = defaultdict(_PartitionQueue)
        self._queues_lock = threading.Lock()
        self._arrivals = itertools.count()

    @property
    def store(self) -> ConversationStore:
        return self._store

    def _queue(self, partition_key: str) -> _PartitionQueue:
        with self._queues_lock:
            return self._queues[partition_key]

    def commit(
        self,
        upload: Upload,
        cancel_event: threading.Event | None = None,
        run_id: str | None = None,
    ) -> CommitReport:
        """Match, merge and commit an upload partition by partition.

        Raises:
            StoreCommitError: If a partition could not be written, or its turn
                did not come within the lock timeout
        """
        by_partition: dict[str, list[Conversation]] = defaultdict(list)
        for conversation in upload.conversations:
            by_partition[self._store.partition_key_for(conversation)].append(conversation)

        report = CommitReport(machine_id=upload.machine_id, batch_id=upload.batch_id)
        for partition_key in sorted(by_partition):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("Commit cancelled: batch=%s partition=%s", upload.batch_id, partition_key)
                break
            report.partitions.append(
                self._commit_partition(upload, partition_key, by_partition[partition_key], cancel_event, run_id)
            )

        logger.info(
            "Upload committed: machine=%s batch=%s stored=%d merged=%d discarded=%d dual_retained=%d skipped=%d",
            upload.machine_id,
            upload.batch_id,
            report.count(MergeOutcome.STORED),
            report.count(MergeOutcome.MERGED),
            report.count(MergeOutcome.DISCARDED),
            report.count(MergeOutcome.DUAL_RETAINED),
            report.skipped,
        )
        return report

    def _commit_partition(
        self,
        upload: Upload,
        partition_key: str,
        conversations: list[Conversation],
        cancel_event: threading.Event | None,
        run_id: str | None,
    ) -> PartitionCommit:
        queue = self._queue(partition_key)
        ticket = (upload.initiated_at, next(self._arrivals))
        if not queue.enter(ticket, self._lock_timeout):
            raise StoreCommitError(
                f"Timed out after {self._lock_timeout}s waiting to commit partition {partition_key}"
            )

        try:
            return self._merge_and_write(upload, partition_key, conversations, cancel_event, run_id)
        finally:
            queue.leave(ticket)

    def _merge_and_write(
        self,
        upload: Upload,
        partition_key: str,
        conversations: list[Conversation],
        cancel_event: threading.Event | None,
        run_id: str | None,
    ) -> PartitionCommit:
        result = PartitionCommit(partition_key=partition_key)
        cursor = self._ledger.get_cursor(upload.machine_id, partition_key)

        # Current state of the partition, read inside our turn
        snapshot = self._store.load_partition(partition_key)
        resolver = MatchResolver(snapshot, self._threshold, self._time_window)

        for conversation in sorted(conversations, key=lambda c: (c.updated_at, c.conversation_id)):
            if cursor is not None and conversation.updated_at <= cursor:
                result.skipped += 1
                continue
            decision = self._engine.decide(conversation, resolver.resolve(conversation))
            self._engine.apply(snapshot, decision)
            result.decisions.append(decision)

        if cancel_event is not None and cancel_event.is_set():
            # Nothing written; the partition stays as it was
            logger.warning("Commit cancelled before write: partition=%s", partition_key)
            return PartitionCommit(partition_key=partition_key)

        try:
            result.revision = self._store.commit(snapshot)
        except StoreCommitError as e:
            self._ledger.append(
                SyncLogEntry(
                    machine_id=upload.machine_id,
                    operation=SyncOperation.COMMIT_FAILED,
                    timestamp=int(time.time()),
                    status=SyncStatus.FAILED,
                    conversation_ids=tuple(c.id for c in conversations),
                    detail=str(e),
                    run_id=run_id,
                )
            )
            raise

        now = int(time.time())
        for decision in result.decisions:
            operation, status = _OPERATIONS[decision.outcome]
            detail = f"partition={partition_key} kind={decision.kind.value}"
            if decision.conflicting_sequences:
                detail += f" conflicting_sequences={list(decision.conflicting_sequences)}"
            self._ledger.append(
                SyncLogEntry(
                    machine_id=upload.machine_id,
                    operation=operation,
                    timestamp=now,
                    status=status,
                    conversation_ids=decision.affected_ids,
                    detail=detail,
                    run_id=run_id,
                )
            )

        if result.conflicts == 0:
            self._ledger.advance_cursor(upload.machine_id, partition_key, upload.cursor)
            result.cursor_advanced = True
        else:
            logger.warning(
                "Cursor held back by conflicts: machine=%s partition=%s conflicts=%d",
                upload.machine_id,
                partition_key,
                result.conflicts,
            )

        return result
