"""Typesense indexer for canonical conversations."""

from typing import Any

import typesense
from typesense.exceptions import ObjectNotFound

from chat_stash.config import TypesenseConfig
from chat_stash.logging import get_logger
from chat_stash.models import Conversation

logger = get_logger("indexer")

CONVERSATIONS_SCHEMA: dict[str, Any] = {
    "name": "conversations",
    "fields": [
        {"name": "id", "type": "string"},
        {"name": "conversation_id", "type": "string", "facet": True},
        {"name": "machine_ids", "type": "string[]", "facet": True},
        {"name": "title", "type": "string"},
        {"name": "created_at", "type": "int64", "sort": True},
        {"name": "updated_at", "type": "int64", "sort": True},
        {"name": "message_count", "type": "int32"},
        {"name": "content_hash", "type": "string"},
        {"name": "preview", "type": "string"},
        {"name": "content", "type": "string"},
    ],
    "default_sorting_field": "updated_at",
}


class TypesenseIndexer:
    """Keeps a Typesense collection in step with the active canonical records."""

    def __init__(self, config: TypesenseConfig) -> None:
        """Initialize indexer with Typesense configuration.

        Args:
            config: TypesenseConfig with connection details
        """
        self._config = config
        self._client = typesense.Client({
            "nodes": [{
                "host": config.host,
                "port": str(config.port),
                "protocol": config.protocol,
            }],
            "api_key": config.api_key,
            "connection_timeout_seconds": 5,
        })

    @property
    def client(self) -> typesense.Client:
        """Access the underlying Typesense client."""
        return self._client

    def ensure_collection(self) -> None:
        """Create the conversations collection if it doesn't exist."""
        name = CONVERSATIONS_SCHEMA["name"]
        try:
            self._client.collections[name].retrieve()
            logger.debug("Collection already exists: collection=%s", name)
        except ObjectNotFound:
            self._client.collections.create(CONVERSATIONS_SCHEMA)
            logger.info("Created collection: collection=%s", name)

    def upsert_conversations(self, conversations: list[Conversation]) -> dict[str, int]:
        """Index conversations, creating or replacing documents by id.

        Returns:
            Dict with counts: {"success": N, "failed": M}
        """
        if not conversations:
            return {"success": 0, "failed": 0}

        documents = [c.to_typesense_doc() for c in conversations]
        results = self._client.collections["conversations"].documents.import_(
            documents,
            {"action": "upsert"},
        )

        success = 0
        failed = 0
        for result in results:
            if result.get("success", False):
                success += 1
            else:
                failed += 1
                logger.debug("Failed to index conversation: error=%s", result.get("error", "unknown"))

        if failed > 0:
            logger.warning("Some conversations failed to index: success=%d failed=%d", success, failed)

        return {"success": success, "failed": failed}

    def delete_conversations(self, ids: list[str]) -> int:
        """Remove superseded versions from the index.

        Returns:
            Number of documents deleted
        """
        deleted = 0
        for doc_id in ids:
            try:
                self._client.collections["conversations"].documents[doc_id].delete()
                deleted += 1
            except ObjectNotFound:
                continue
        return deleted

    def search_conversations(
        self,
        query: str,
        page: int = 1,
        per_page: int = 10,
        machine_id: str | None = None,
    ) -> dict[str, Any]:
        """Search conversations by title, preview and content.

        Args:
            query: Search query string (use "*" for all)
            page: Page number (1-based)
            per_page: Number of results per page
            machine_id: Only return conversations a machine contributed to

        Returns:
            Search results from Typesense
        """
        search_params: dict[str, Any] = {
            "q": query,
            "query_by": "title,preview,content",
            "page": page,
            "per_page": per_page,
            "sort_by": "updated_at:desc",
        }
        if machine_id:
            search_params["filter_by"] = f"machine_ids:={machine_id}"

        return self._client.collections["conversations"].documents.search(search_params)
