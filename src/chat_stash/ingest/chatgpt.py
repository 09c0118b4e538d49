"""Parser for ChatGPT data exports (conversations.json).

The export is a JSON list of conversations. Each conversation stores its
messages as a tree in ``mapping`` (node id -> {message, parent, children});
edits and regenerations create sibling branches. ``current_node`` points at
the leaf of the branch that was visible in the interface, so the thread is
recovered by walking parent links from there to the root.

Only text parts are kept. System messages and nodes without text are
dropped; sequence numbers are assigned along the recovered thread.
"""

from pathlib import Path
from typing import Any

from chat_stash.errors import ExtractionError
from chat_stash.ingest.base import Batch, BatchParser, parse_timestamp, require
from chat_stash.models import Conversation, Message

# Roles that never carry conversation content
SKIPPED_ROLES = {"system"}


class ChatGPTExportParser(BatchParser):
    """Parser for ChatGPT conversations.json exports."""

    format_name = "chatgpt_export"

    def detect(self, data: Any) -> bool:
        return (
            isinstance(data, list)
            and all(isinstance(item, dict) for item in data)
            and all("mapping" in item for item in data)
        )

    def parse(self, data: Any, path: Path, machine_id: str) -> Batch:
        require(self.detect(data), "Not a ChatGPT export", path)

        conversations = []
        for index, item in enumerate(data):
            conversation = self._parse_conversation(item, index, path, machine_id)
            if conversation is not None:
                conversations.append(conversation)

        return Batch(
            path=path,
            machine_id=machine_id,
            conversations=tuple(conversations),
            hostname=machine_id,
            batch_id=path.stem,
            format_name=self.format_name,
        )

    def _parse_conversation(self, item: dict[str, Any], index: int, path: Path, machine_id: str) -> Conversation | None:
        conversation_id = item.get("conversation_id") or item.get("id")
        require(bool(conversation_id), f"Conversation #{index} has no id", path)

        mapping = item.get("mapping")
        require(isinstance(mapping, dict), f"Conversation {conversation_id}: mapping must be an object", path)

        try:
            created_at = parse_timestamp(item.get("create_time"))
            updated_at = parse_timestamp(item.get("update_time"))
            thread = self._active_thread(mapping, item.get("current_node"))
            messages = []
            for node in thread:
                message = self._extract_message(node, len(messages) + 1, created_at)
                if message is not None:
                    messages.append(message)
        except (KeyError, TypeError, ValueError) as e:
            raise ExtractionError(f"Conversation {conversation_id}: {e}", str(path)) from e

        if not messages:
            return None

        return Conversation(
            conversation_id=str(conversation_id),
            machine_id=machine_id,
            title=str(item.get("title") or ""),
            created_at=created_at or messages[0].timestamp,
            updated_at=max(updated_at, created_at, messages[-1].timestamp),
            messages=tuple(messages),
            raw=item,
        )

    def _active_thread(self, mapping: dict[str, Any], current_node: str | None) -> list[dict[str, Any]]:
        """Nodes from the root to current_node, in order."""
        if current_node is None:
            current_node = self._last_leaf(mapping)
        if current_node is None:
            return []

        thread = []
        seen: set[str] = set()
        node_id: str | None = current_node
        while node_id is not None:
            if node_id in seen:
                raise ValueError(f"cycle in message tree at node {node_id}")
            seen.add(node_id)
            node = mapping[node_id]
            thread.append(node)
            node_id = node.get("parent")
        thread.reverse()
        return thread

    @staticmethod
    def _last_leaf(mapping: dict[str, Any]) -> str | None:
        # Without current_node, follow the last child from the root
        roots = [key for key, node in mapping.items() if node.get("parent") is None]
        if not roots:
            return None
        node_id = roots[0]
        while mapping[node_id].get("children"):
            node_id = mapping[node_id]["children"][-1]
        return node_id

    @staticmethod
    def _extract_message(node: dict[str, Any], sequence: int, fallback_ts: int) -> Message | None:
        message = node.get("message")
        if not message:
            return None

        role = (message.get("author") or {}).get("role")
        if not role or role in SKIPPED_ROLES:
            return None

        content = message.get("content") or {}
        parts = content.get("parts") or []
        text = "\n".join(part for part in parts if isinstance(part, str)).strip()
        if not text and isinstance(content.get("text"), str):
            text = content["text"].strip()
        if not text:
            return None

        return Message(
            role=role,
            content=text,
            timestamp=parse_timestamp(message.get("create_time")) or fallback_ts,
            sequence=sequence,
        )
