"""Merge engine: turn a match outcome into a merge decision and apply it.

    NEW              -> STORED         incoming kept as-is
    EXACT_DUPLICATE  -> DISCARDED      incoming dropped, logged as a no-op
    PARTIAL_OVERLAP  -> MERGED         union of both message sets as a new version
    CONFLICT         -> DUAL_RETAINED  both versions kept and flagged for review

Merging is a union keyed by sequence number, which makes it commutative and
idempotent. Stored versions are never edited; a merge adds a new version and
marks its sources as superseded.
"""

from dataclasses import dataclass, field

from chat_stash.errors import MergeConflictError
from chat_stash.logging import get_logger
from chat_stash.models import Conversation, MatchKind, MergeOutcome, Message
from chat_stash.storage.store import PartitionSnapshot, StoredRecord
from chat_stash.sync.fingerprint import DEFAULT_FUZZY_K, apply_fingerprint, normalize_content
from chat_stash.sync.matcher import MatchResult, contents_compatible

logger = get_logger("merger")


def _wider(a: Message, b: Message) -> Message:
    """Of two compatible messages, the one whose content is the superset."""
    left, right = normalize_content(a.content), normalize_content(b.content)
    if len(left) != len(right):
        return a if len(left) > len(right) else b
    # Same normalized content: pick deterministically so the union commutes
    return min(a, b, key=lambda m: (m.content, m.timestamp))


def merge_messages(a: tuple[Message, ...], b: tuple[Message, ...]) -> tuple[Message, ...]:
    """Union of two message sequences keyed by sequence number.

    Raises:
        MergeConflictError: If a shared sequence number holds content where
            neither side is a prefix of the other
    """
    by_sequence = {m.sequence: m for m in a}
    conflicts = []
    for message in b:
        current = by_sequence.get(message.sequence)
        if current is None:
            by_sequence[message.sequence] = message
        elif contents_compatible(current, message):
            by_sequence[message.sequence] = _wider(current, message)
        else:
            conflicts.append(message.sequence)

    if conflicts:
        raise MergeConflictError(sorted(conflicts))
    return tuple(by_sequence[seq] for seq in sorted(by_sequence))


def merge_conversations(a: Conversation, b: Conversation, k: int = DEFAULT_FUZZY_K) -> Conversation:
    """Build the merged version of two overlapping conversations.

    The result does not depend on argument order.

    Raises:
        MergeConflictError: If the message sequences conflict
    """
    messages = merge_messages(a.messages, b.messages)
    newer = max((a, b), key=lambda c: (c.updated_at, len(c.title), c.title))
    machines = sorted(set(a.machines) | set(b.machines))
    merged = Conversation(
        conversation_id=min(a.conversation_id, b.conversation_id),
        machine_id="+".join(machines),
        title=newer.title,
        created_at=min(a.created_at, b.created_at),
        updated_at=max(a.updated_at, b.updated_at),
        messages=messages,
        raw={},
        provenance=tuple(sorted({a.id, b.id})),
    )
    return apply_fingerprint(merged, k)


@dataclass(frozen=True)
class MergeDecision:
    """What to do with one incoming conversation."""

    kind: MatchKind
    outcome: MergeOutcome
    incoming: Conversation
    existing: StoredRecord | None = None
    result: Conversation | None = None
    conflicting_sequences: tuple[int, ...] = field(default_factory=tuple)

    @property
    def affected_ids(self) -> tuple[str, ...]:
        ids = [self.incoming.id]
        if self.existing is not None:
            ids.append(self.existing.id)
        if self.result is not None and self.result.id not in ids:
            ids.append(self.result.id)
        return tuple(ids)


class MergeEngine:
    """Decides and applies merges against a partition working copy."""

    def __init__(self, fuzzy_k: int = DEFAULT_FUZZY_K) -> None:
        self._fuzzy_k = fuzzy_k

    def decide(self, incoming: Conversation, match: MatchResult) -> MergeDecision:
        if match.kind == MatchKind.NEW or match.record is None:
            return MergeDecision(MatchKind.NEW, MergeOutcome.STORED, incoming, result=incoming)

        existing = match.record
        if match.kind == MatchKind.EXACT_DUPLICATE:
            return MergeDecision(MatchKind.EXACT_DUPLICATE, MergeOutcome.DISCARDED, incoming, existing)

        try:
            merged = merge_conversations(existing.conversation, incoming, self._fuzzy_k)
        except MergeConflictError as e:
            logger.info(
                "Merge conflict, retaining both versions: existing=%s incoming=%s sequences=%s",
                existing.id,
                incoming.id,
                e.sequences,
            )
            return MergeDecision(
                MatchKind.CONFLICT,
                MergeOutcome.DUAL_RETAINED,
                incoming,
                existing,
                result=incoming,
                conflicting_sequences=tuple(e.sequences),
            )

        if merged.content_hash == existing.conversation.content_hash:
            # Incoming adds nothing the stored version does not already hold
            return MergeDecision(MatchKind.PARTIAL_OVERLAP, MergeOutcome.DISCARDED, incoming, existing)

        return MergeDecision(MatchKind.PARTIAL_OVERLAP, MergeOutcome.MERGED, incoming, existing, result=merged)

    def apply(self, snapshot: PartitionSnapshot, decision: MergeDecision) -> None:
        """Record a decision in the partition working copy."""
        if decision.outcome == MergeOutcome.STORED:
            snapshot.add(decision.incoming)
        elif decision.outcome == MergeOutcome.MERGED:
            if decision.result is None or decision.existing is None:
                raise ValueError("A merged decision needs both the stored record and the merged version")
            merged = snapshot.add(decision.result)
            snapshot.supersede(decision.existing.id, merged.id)
        elif decision.outcome == MergeOutcome.DUAL_RETAINED:
            if decision.existing is None:
                raise ValueError("Dual retention needs the stored record it conflicts with")
            retained = snapshot.add(decision.incoming, conflicts_with=(decision.existing.id,))
            snapshot.flag_conflict(decision.existing.id, retained.id)
        # DISCARDED leaves the partition untouched
