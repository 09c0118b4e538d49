"""Canonical conversation store layered over a StorageBackend.

Conversations are grouped into day partitions keyed by the UTC day of their
creation time. Each partition is one JSON blob, so committing a partition is
a single atomic put.
"""

import json
from collections.abc import Iterator
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from chat_stash.errors import StoreCommitError
from chat_stash.logging import get_logger
from chat_stash.models import Conversation
from chat_stash.storage.backend import StorageBackend
from chat_stash.sync.fingerprint import head_bucket, tail_bucket

logger = get_logger("store")

PARTITION_PREFIX = "conversations/"

# Version of the partition blob layout
SCHEMA_VERSION = 1


@dataclass(frozen=True)
class StoredRecord:
    """A conversation version as kept in the canonical store."""

    conversation: Conversation
    superseded_by: str | None = None
    conflicts_with: tuple[str, ...] = ()

    @property
    def id(self) -> str:
        return self.conversation.id

    @property
    def active(self) -> bool:
        return self.superseded_by is None

    @property
    def needs_review(self) -> bool:
        return self.active and bool(self.conflicts_with)

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation": self.conversation.to_dict(),
            "superseded_by": self.superseded_by,
            "conflicts_with": list(self.conflicts_with),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoredRecord":
        return cls(
            conversation=Conversation.from_dict(data["conversation"]),
            superseded_by=data.get("superseded_by"),
            conflicts_with=tuple(data.get("conflicts_with", [])),
        )


@dataclass
class PartitionSnapshot:
    """Working copy of one partition, with lookup indices.

    Mutations only touch this in-memory copy; nothing reaches storage until
    ConversationStore.commit() writes the whole partition at once.
    """

    key: str
    revision: int = 0
    records: dict[str, StoredRecord] = field(default_factory=dict)
    _by_hash: dict[str, str] = field(default_factory=dict, repr=False)
    _buckets: dict[str, list[str]] = field(default_factory=dict, repr=False)
    dirty: bool = False

    def __post_init__(self) -> None:
        for record in list(self.records.values()):
            self._index(record)

    def _index(self, record: StoredRecord) -> None:
        conversation = record.conversation
        self._by_hash.setdefault(conversation.content_hash, record.id)
        for bucket in (head_bucket(conversation.fuzzy_key), tail_bucket(conversation.fuzzy_key)):
            ids = self._buckets.setdefault(bucket, [])
            if record.id not in ids:
                ids.append(record.id)

    def find_by_hash(self, content_hash: str) -> StoredRecord | None:
        """Exact lookup. Any record with the hash counts, superseded or not."""
        record_id = self._by_hash.get(content_hash)
        return self.records.get(record_id) if record_id else None

    def bucket_members(self, fuzzy_key: str) -> list[StoredRecord]:
        """Active records sharing the head or the tail bucket of fuzzy_key."""
        seen: dict[str, StoredRecord] = {}
        for bucket in (head_bucket(fuzzy_key), tail_bucket(fuzzy_key)):
            for record_id in self._buckets.get(bucket, []):
                record = self.records[record_id]
                if record.active:
                    seen[record_id] = record
        return list(seen.values())

    def get(self, record_id: str) -> StoredRecord | None:
        return self.records.get(record_id)

    def add(self, conversation: Conversation, conflicts_with: tuple[str, ...] = ()) -> StoredRecord:
        """Add a new version. Re-adding an existing id is a no-op."""
        existing = self.records.get(conversation.id)
        if existing is not None:
            return existing
        record = StoredRecord(conversation=conversation, conflicts_with=conflicts_with)
        self.records[record.id] = record
        self._index(record)
        self.dirty = True
        return record

    def supersede(self, record_id: str, superseded_by: str) -> None:
        record = self.records[record_id]
        if record.superseded_by == superseded_by:
            return
        self.records[record_id] = replace(record, superseded_by=superseded_by)
        self.dirty = True

    def flag_conflict(self, record_id: str, other_id: str) -> None:
        record = self.records[record_id]
        if other_id in record.conflicts_with:
            return
        self.records[record_id] = replace(
            record, conflicts_with=tuple(sorted((*record.conflicts_with, other_id)))
        )
        self.dirty = True

    def active_records(self) -> list[StoredRecord]:
        return [r for r in self.records.values() if r.active]

    def to_blob(self) -> bytes:
        payload = {
            "schema": SCHEMA_VERSION,
            "partition": self.key,
            "revision": self.revision,
            "records": [self.records[k].to_dict() for k in sorted(self.records)],
        }
        return json.dumps(payload, ensure_ascii=False, sort_keys=True).encode("utf-8")

    @classmethod
    def from_blob(cls, key: str, blob: bytes) -> "PartitionSnapshot":
        payload = json.loads(blob)
        records = {}
        for item in payload.get("records", []):
            record = StoredRecord.from_dict(item)
            records[record.id] = record
        return cls(key=key, revision=int(payload.get("revision", 0)), records=records)


def partition_key_for(conversation: Conversation) -> str:
    """Partition key for a conversation: ``conversations/YYYY/MM/DD``."""
    day = datetime.fromtimestamp(conversation.created_at, tz=timezone.utc)
    return f"{PARTITION_PREFIX}{day:%Y/%m/%d}"


class ConversationStore:
    """Reads and atomically writes canonical store partitions."""

    def __init__(self, backend: StorageBackend) -> None:
        self._backend = backend

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    def partition_key_for(self, conversation: Conversation) -> str:
        return partition_key_for(conversation)

    def load_partition(self, key: str) -> PartitionSnapshot:
        """Read the current state of a partition (empty if it does not exist)."""
        blob = self._backend.get(key)
        if blob is None:
            return PartitionSnapshot(key=key)
        return PartitionSnapshot.from_blob(key, blob)

    def commit(self, snapshot: PartitionSnapshot) -> int:
        """Write a partition as one blob and return its new revision.

        Raises:
            StoreCommitError: If the backend rejects the write
        """
        if not snapshot.dirty:
            return snapshot.revision

        snapshot.revision += 1
        try:
            self._backend.put(snapshot.key, snapshot.to_blob())
        except (OSError, ValueError) as e:
            snapshot.revision -= 1
            raise StoreCommitError(f"Failed to commit partition {snapshot.key}: {e}") from e

        snapshot.dirty = False
        logger.info(
            "Committed partition: key=%s revision=%d records=%d",
            snapshot.key,
            snapshot.revision,
            len(snapshot.records),
        )
        return snapshot.revision

    def partition_keys(self) -> list[str]:
        return self._backend.list(PARTITION_PREFIX)

    def iter_records(self, active_only: bool = True) -> Iterator[StoredRecord]:
        for key in self.partition_keys():
            snapshot = self.load_partition(key)
            for record_id in sorted(snapshot.records):
                record = snapshot.records[record_id]
                if active_only and not record.active:
                    continue
                yield record

    def get_record(self, record_id: str) -> StoredRecord | None:
        for record in self.iter_records(active_only=False):
            if record.id == record_id:
                return record
        return None
