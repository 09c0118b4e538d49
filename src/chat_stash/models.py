"""Canonical data models."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class MatchKind(str, Enum):
    """How an incoming conversation relates to the canonical store."""

    NEW = "new"
    EXACT_DUPLICATE = "exact_duplicate"
    PARTIAL_OVERLAP = "partial_overlap"
    CONFLICT = "conflict"


class MergeOutcome(str, Enum):
    """What the merge engine did with an incoming conversation."""

    STORED = "stored"
    DISCARDED = "discarded"
    MERGED = "merged"
    DUAL_RETAINED = "dual_retained"


class SyncOperation(str, Enum):
    STORE = "store"
    NOOP = "noop"
    MERGE = "merge"
    DUAL_RETAIN = "dual_retain"
    COMMIT_FAILED = "commit_failed"


class SyncStatus(str, Enum):
    OK = "ok"
    NOOP = "noop"
    NEEDS_REVIEW = "needs_review"
    FAILED = "failed"


@dataclass(frozen=True)
class Message:
    """A single turn in a conversation."""

    role: str  # user, assistant, tool, system
    content: str
    timestamp: int  # Unix timestamp (seconds)
    sequence: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            role=data["role"],
            content=data["content"],
            timestamp=int(data.get("timestamp", 0)),
            sequence=int(data["sequence"]),
        )


@dataclass(frozen=True)
class Conversation:
    """A conversation as captured on one machine, or a merged version of several.

    Messages must carry unique, strictly increasing sequence numbers.
    ``content_hash`` and ``fuzzy_key`` stay empty until the conversation has
    been through the fingerprint generator.
    """

    conversation_id: str  # Identifier assigned by the chat interface
    machine_id: str
    title: str
    created_at: int
    updated_at: int
    messages: tuple[Message, ...]
    raw: Any = None  # Opaque payload from the extractor, preserved verbatim
    content_hash: str = ""
    fuzzy_key: str = ""
    provenance: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        sequences = [m.sequence for m in self.messages]
        for prev, cur in zip(sequences, sequences[1:]):
            if cur <= prev:
                raise ValueError(
                    f"Conversation {self.conversation_id}: sequence numbers must be "
                    f"strictly increasing, got {prev} then {cur}"
                )

    @property
    def id(self) -> str:
        """Stable unique ID for this version of the conversation."""
        if not self.content_hash:
            raise ValueError(f"Conversation {self.conversation_id} has not been fingerprinted")
        return f"{self.machine_id}:{self.conversation_id}:{self.content_hash[:12]}"

    @property
    def is_fingerprinted(self) -> bool:
        return bool(self.content_hash)

    @property
    def machines(self) -> tuple[str, ...]:
        """Machines that contributed to this version."""
        return tuple(sorted(set(self.machine_id.split("+"))))

    def with_fingerprint(self, content_hash: str, fuzzy_key: str) -> "Conversation":
        return replace(self, content_hash=content_hash, fuzzy_key=fuzzy_key)

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "machine_id": self.machine_id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "messages": [m.to_dict() for m in self.messages],
            "raw": self.raw,
            "content_hash": self.content_hash,
            "fuzzy_key": self.fuzzy_key,
            "provenance": list(self.provenance),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Conversation":
        return cls(
            conversation_id=data["conversation_id"],
            machine_id=data["machine_id"],
            title=data.get("title", ""),
            created_at=int(data["created_at"]),
            updated_at=int(data["updated_at"]),
            messages=tuple(Message.from_dict(m) for m in data.get("messages", [])),
            raw=data.get("raw"),
            content_hash=data.get("content_hash", ""),
            fuzzy_key=data.get("fuzzy_key", ""),
            provenance=tuple(data.get("provenance", [])),
        )

    def to_typesense_doc(self) -> dict[str, Any]:
        """Convert to Typesense document format."""
        last = self.messages[-1].content if self.messages else ""
        preview = last[:200].strip()
        if len(last) > 200:
            preview += "..."
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "machine_ids": list(self.machines),
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "message_count": len(self.messages),
            "content_hash": self.content_hash,
            "preview": preview,
            "content": "\n".join(m.content for m in self.messages),
        }


@dataclass(frozen=True)
class Machine:
    """A machine that uploads conversation batches."""

    machine_id: str
    hostname: str
    last_cursor: int | None = None
    config_snapshot: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SyncLogEntry:
    """One audit record. Never mutated after it has been appended."""

    machine_id: str
    operation: SyncOperation
    timestamp: int
    status: SyncStatus
    conversation_ids: tuple[str, ...] = ()
    detail: str = ""
    run_id: str | None = None
    id: int | None = None  # Assigned by the ledger on append
