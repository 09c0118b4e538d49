"""Parser for native chat-stash batch files.

A batch is a JSON object:

    {
      "machine_id": "laptop",
      "hostname": "laptop.local",
      "batch_id": "2026-10-17T00:00:00Z",
      "window_start": 1792195200,
      "window_end": 1792281600,
      "conversations": [
        {
          "id": "abc123",
          "title": "Trip planning",
          "create_time": 1792200000,
          "update_time": 1792203600,
          "messages": [
            {"role": "user", "content": "...", "timestamp": 1792200000, "sequence": 1}
          ]
        }
      ]
    }

machine_id, hostname, batch_id, the window bounds and a "config" object
(the uploading machine's settings, recorded in the ledger) are optional. Message
sequence numbers default to list position (1-based).
"""

from pathlib import Path
from typing import Any

from chat_stash.errors import ExtractionError
from chat_stash.ingest.base import Batch, BatchParser, parse_timestamp, require
from chat_stash.models import Conversation, Message


class NativeBatchParser(BatchParser):
    """Parser for native batch JSON documents."""

    format_name = "batch"

    def detect(self, data: Any) -> bool:
        return isinstance(data, dict) and isinstance(data.get("conversations"), list)

    def parse(self, data: Any, path: Path, machine_id: str) -> Batch:
        require(self.detect(data), "Not a batch document", path)
        machine_id = str(data.get("machine_id") or machine_id)

        try:
            window_start = parse_timestamp(data.get("window_start")) or None
            window_end = parse_timestamp(data.get("window_end")) or None
        except ValueError as e:
            raise ExtractionError(f"Invalid batch window: {e}", str(path)) from e

        conversations = tuple(
            self._parse_conversation(entry, index, path, machine_id)
            for index, entry in enumerate(data["conversations"])
        )

        return Batch(
            path=path,
            machine_id=machine_id,
            conversations=conversations,
            hostname=str(data.get("hostname") or machine_id),
            batch_id=str(data.get("batch_id") or path.stem),
            window_start=window_start,
            window_end=window_end,
            format_name=self.format_name,
            metadata=dict(data.get("config") or {}),
        )

    def _parse_conversation(self, entry: Any, index: int, path: Path, machine_id: str) -> Conversation:
        require(isinstance(entry, dict), f"Conversation #{index} is not an object", path)
        conversation_id = entry.get("id") or entry.get("conversation_id")
        require(bool(conversation_id), f"Conversation #{index} has no id", path)

        raw_messages = entry.get("messages", [])
        require(isinstance(raw_messages, list), f"Conversation {conversation_id}: messages must be a list", path)

        try:
            messages = tuple(
                self._parse_message(item, position, path, conversation_id)
                for position, item in enumerate(raw_messages, start=1)
            )
            created_at = parse_timestamp(entry.get("create_time", entry.get("created_at")))
            updated_at = parse_timestamp(entry.get("update_time", entry.get("updated_at")))
        except (TypeError, ValueError) as e:
            raise ExtractionError(f"Conversation {conversation_id}: {e}", str(path)) from e

        if not created_at:
            created_at = messages[0].timestamp if messages else 0
        if not updated_at:
            updated_at = max((m.timestamp for m in messages), default=created_at)

        try:
            return Conversation(
                conversation_id=str(conversation_id),
                machine_id=machine_id,
                title=str(entry.get("title") or ""),
                created_at=created_at,
                updated_at=max(updated_at, created_at),
                messages=messages,
                raw=entry,
            )
        except ValueError as e:
            raise ExtractionError(str(e), str(path)) from e

    def _parse_message(self, item: Any, position: int, path: Path, conversation_id: str) -> Message:
        require(isinstance(item, dict), f"Conversation {conversation_id}: message #{position} is not an object", path)
        role = item.get("role")
        content = item.get("content")
        require(bool(role), f"Conversation {conversation_id}: message #{position} has no role", path)
        require(isinstance(content, str), f"Conversation {conversation_id}: message #{position} has no text content", path)
        return Message(
            role=str(role),
            content=content,
            timestamp=parse_timestamp(item.get("timestamp")),
            sequence=int(item.get("sequence", position)),
        )
