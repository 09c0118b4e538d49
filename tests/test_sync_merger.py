"""Tests for the merge engine."""

import pytest

from chat_stash.errors import MergeConflictError
from chat_stash.models import MatchKind, MergeOutcome, Message
from chat_stash.storage.store import PartitionSnapshot
from chat_stash.sync.fingerprint import normalize_content
from chat_stash.sync.matcher import MatchResolver, MatchResult
from chat_stash.sync.merger import MergeDecision, MergeEngine, merge_conversations, merge_messages

T0 = 1792198800


def _msg(sequence: int, content: str, role: str = "user") -> Message:
    return Message(role=role, content=content, timestamp=T0 + sequence, sequence=sequence)


@pytest.fixture
def snapshot() -> PartitionSnapshot:
    """Provide an empty partition working copy."""
    return PartitionSnapshot(key="conversations/2026/10/17")


@pytest.fixture
def engine() -> MergeEngine:
    """Provide a merge engine with default settings."""
    return MergeEngine()


class TestMergeMessages:
    """Tests for the message union."""

    def test_union_by_sequence(self) -> None:
        """Messages from both sides are combined in sequence order."""
        a = (_msg(1, "one"), _msg(2, "two"))
        b = (_msg(1, "one"), _msg(3, "three"))
        assert [m.sequence for m in merge_messages(a, b)] == [1, 2, 3]

    def test_prefix_superset_wins(self) -> None:
        """Of a truncated and a full capture of one message, the full one is kept."""
        a = (_msg(1, "Here is a five day"),)
        b = (_msg(1, "Here is a five day itinerary"),)
        assert merge_messages(a, b)[0].content == "Here is a five day itinerary"
        assert merge_messages(b, a)[0].content == "Here is a five day itinerary"

    def test_conflicting_content_raises(self) -> None:
        """Incompatible content at a shared sequence is a conflict."""
        a = (_msg(1, "one"), _msg(5, "Answer A"))
        b = (_msg(1, "one"), _msg(5, "Answer B"))
        with pytest.raises(MergeConflictError) as exc_info:
            merge_messages(a, b)
        assert exc_info.value.sequences == [5]


class TestMergeConversations:
    """Tests for merging whole conversations."""

    def test_commutative(self, make_conversation, base_contents) -> None:
        """merge(a, b) equals merge(b, a)."""
        a = make_conversation(base_contents, machine_id="laptop")
        b = make_conversation(base_contents + ["Day one: Alfama"], machine_id="desktop", title="Lisbon trip")
        assert merge_conversations(a, b) == merge_conversations(b, a)

    def test_idempotent(self, make_conversation, base_contents) -> None:
        """Merging a source into its own merge result adds nothing."""
        a = make_conversation(base_contents, machine_id="laptop")
        b = make_conversation(base_contents + ["Day one: Alfama"], machine_id="desktop")
        merged = merge_conversations(a, b)

        again = merge_conversations(merged, b)
        assert again.messages == merged.messages
        assert again.content_hash == merged.content_hash

    def test_no_message_is_lost(self, make_conversation, base_contents) -> None:
        """Every input message survives, possibly in a longer form."""
        a = make_conversation(base_contents[:3] + ["Here is a five day"], machine_id="laptop")
        b = make_conversation(base_contents + ["Day one: Alfama"], machine_id="desktop")
        merged = merge_conversations(a, b)
        by_sequence = {m.sequence: m for m in merged.messages}

        for message in a.messages + b.messages:
            kept = by_sequence[message.sequence]
            assert normalize_content(kept.content).startswith(normalize_content(message.content))

    def test_attribution(self, make_conversation, base_contents) -> None:
        """The merged version records both machines and both sources."""
        a = make_conversation(base_contents, machine_id="laptop", updated_at=T0 + 100)
        b = make_conversation(base_contents + ["More"], machine_id="desktop", title="Newer", updated_at=T0 + 900)
        merged = merge_conversations(a, b)

        assert merged.machine_id == "desktop+laptop"
        assert merged.provenance == tuple(sorted([a.id, b.id]))
        assert merged.title == "Newer"
        assert merged.updated_at == T0 + 900
        assert merged.is_fingerprinted


class TestMergeEngineDecide:
    """Tests for MergeEngine.decide."""

    def test_new_is_stored(self, engine, make_conversation, base_contents) -> None:
        """New conversations are stored as-is."""
        incoming = make_conversation(base_contents)
        decision = engine.decide(incoming, MatchResult(kind=MatchKind.NEW))
        assert decision.outcome == MergeOutcome.STORED
        assert decision.result == incoming

    def test_exact_duplicate_is_discarded(self, engine, snapshot, make_conversation, base_contents) -> None:
        """Exact duplicates are dropped."""
        snapshot.add(make_conversation(base_contents))
        incoming = make_conversation(base_contents, machine_id="desktop")
        decision = engine.decide(incoming, MatchResolver(snapshot).resolve(incoming))
        assert decision.outcome == MergeOutcome.DISCARDED
        assert decision.kind == MatchKind.EXACT_DUPLICATE

    def test_continuation_is_merged(self, engine, snapshot, make_conversation, base_contents) -> None:
        """A longer capture produces a merged version."""
        stored = snapshot.add(make_conversation(base_contents))
        incoming = make_conversation(base_contents + ["a", "b", "c"], machine_id="desktop")
        decision = engine.decide(incoming, MatchResolver(snapshot).resolve(incoming))

        assert decision.outcome == MergeOutcome.MERGED
        assert decision.existing == stored
        assert decision.result.messages == incoming.messages

    def test_subset_is_discarded(self, engine, snapshot, make_conversation, base_contents) -> None:
        """A capture the stored version already contains adds nothing."""
        snapshot.add(make_conversation(base_contents + ["a", "b"]))
        incoming = make_conversation(base_contents, machine_id="desktop")
        decision = engine.decide(incoming, MatchResolver(snapshot).resolve(incoming))

        assert decision.kind == MatchKind.PARTIAL_OVERLAP
        assert decision.outcome == MergeOutcome.DISCARDED

    def test_conflict_is_dual_retained(self, engine, snapshot, make_conversation, base_contents) -> None:
        """Diverging content at sequence 5 keeps both versions."""
        snapshot.add(make_conversation(base_contents + ["Answer A"]))
        incoming = make_conversation(base_contents + ["Completely different"], machine_id="desktop")
        decision = engine.decide(incoming, MatchResolver(snapshot).resolve(incoming))

        assert decision.kind == MatchKind.CONFLICT
        assert decision.outcome == MergeOutcome.DUAL_RETAINED
        assert decision.conflicting_sequences == (5,)


class TestMergeEngineApply:
    """Tests for MergeEngine.apply."""

    def test_merge_supersedes_existing(self, engine, snapshot, make_conversation, base_contents) -> None:
        """The merged version is added and the old one marked superseded."""
        stored = snapshot.add(make_conversation(base_contents))
        incoming = make_conversation(base_contents + ["a"], machine_id="desktop")
        decision = engine.decide(incoming, MatchResolver(snapshot).resolve(incoming))
        engine.apply(snapshot, decision)

        assert [r.id for r in snapshot.active_records()] == [decision.result.id]
        assert snapshot.get(stored.id).superseded_by == decision.result.id

    def test_dual_retain_flags_both(self, engine, snapshot, make_conversation, base_contents) -> None:
        """Both versions stay active and point at each other."""
        stored = snapshot.add(make_conversation(base_contents + ["Answer A"]))
        incoming = make_conversation(base_contents + ["Answer B"], machine_id="desktop")
        decision = engine.decide(incoming, MatchResolver(snapshot).resolve(incoming))
        engine.apply(snapshot, decision)

        assert len(snapshot.active_records()) == 2
        assert snapshot.get(incoming.id).conflicts_with == (stored.id,)
        assert snapshot.get(stored.id).conflicts_with == (incoming.id,)
        assert snapshot.get(stored.id).needs_review

    def test_discard_leaves_partition_untouched(self, engine, snapshot, make_conversation, base_contents) -> None:
        """Nothing changes for a discarded conversation."""
        snapshot.add(make_conversation(base_contents))
        snapshot.dirty = False
        incoming = make_conversation(base_contents, machine_id="desktop")
        engine.apply(snapshot, engine.decide(incoming, MatchResolver(snapshot).resolve(incoming)))

        assert snapshot.dirty is False
        assert len(snapshot.records) == 1

    def test_incomplete_decision_is_rejected(self, engine, snapshot, make_conversation, base_contents) -> None:
        """A merge or dual retention without the stored record is refused."""
        incoming = make_conversation(base_contents)
        for outcome, kind in (
            (MergeOutcome.MERGED, MatchKind.PARTIAL_OVERLAP),
            (MergeOutcome.DUAL_RETAINED, MatchKind.CONFLICT),
        ):
            with pytest.raises(ValueError, match="stored record"):
                engine.apply(snapshot, MergeDecision(kind, outcome, incoming, result=incoming))
        assert snapshot.records == {}
