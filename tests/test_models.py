"""Tests for canonical data models."""

import pytest

from chat_stash.models import Conversation, Message

T0 = 1792198800


def _message(sequence: int, content: str = "hi", role: str = "user") -> Message:
    return Message(role=role, content=content, timestamp=T0 + sequence, sequence=sequence)


class TestConversationSequences:
    """Tests for sequence number validation."""

    def test_accepts_strictly_increasing_sequences(self) -> None:
        """Gaps are allowed as long as numbers increase."""
        conv = Conversation(
            conversation_id="c1",
            machine_id="laptop",
            title="t",
            created_at=T0,
            updated_at=T0,
            messages=(_message(1), _message(2), _message(5)),
        )
        assert [m.sequence for m in conv.messages] == [1, 2, 5]

    def test_rejects_duplicate_sequence(self) -> None:
        """Two messages may not share a sequence number."""
        with pytest.raises(ValueError, match="strictly increasing"):
            Conversation(
                conversation_id="c1",
                machine_id="laptop",
                title="t",
                created_at=T0,
                updated_at=T0,
                messages=(_message(1), _message(1, "again")),
            )

    def test_rejects_decreasing_sequence(self) -> None:
        """Messages must be in sequence order."""
        with pytest.raises(ValueError):
            Conversation(
                conversation_id="c1",
                machine_id="laptop",
                title="t",
                created_at=T0,
                updated_at=T0,
                messages=(_message(2), _message(1)),
            )


class TestConversationIdentity:
    """Tests for version ids and machine attribution."""

    def test_id_requires_fingerprint(self, make_conversation) -> None:
        """An unfingerprinted conversation has no version id."""
        conv = make_conversation(["hello"], fingerprinted=False)
        assert conv.is_fingerprinted is False
        with pytest.raises(ValueError, match="not been fingerprinted"):
            _ = conv.id

    def test_id_format(self, make_conversation) -> None:
        """Version id combines machine, conversation id and hash prefix."""
        conv = make_conversation(["hello"], machine_id="laptop", conversation_id="abc")
        assert conv.id == f"laptop:abc:{conv.content_hash[:12]}"

    def test_machines_splits_merged_attribution(self, make_conversation) -> None:
        """Merged versions list every contributing machine once, sorted."""
        conv = make_conversation(["hello"], machine_id="laptop+desktop")
        assert conv.machines == ("desktop", "laptop")


class TestConversationSerialization:
    """Tests for dict conversion."""

    def test_dict_roundtrip(self, make_conversation) -> None:
        """from_dict(to_dict()) restores an equal conversation."""
        conv = make_conversation(["hello", "hi there"])
        assert Conversation.from_dict(conv.to_dict()) == conv

    def test_typesense_doc(self, make_conversation) -> None:
        """Typesense documents carry the version id and a preview of the last message."""
        conv = make_conversation(["hello", "x" * 250], machine_id="desktop+laptop")
        doc = conv.to_typesense_doc()

        assert doc["id"] == conv.id
        assert doc["machine_ids"] == ["desktop", "laptop"]
        assert doc["message_count"] == 2
        assert doc["preview"] == "x" * 200 + "..."
        assert doc["content"].startswith("hello\n")
