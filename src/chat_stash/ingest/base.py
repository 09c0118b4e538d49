"""Base batch parser interface and registry."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from chat_stash.errors import ExtractionError
from chat_stash.models import Conversation


@dataclass(frozen=True)
class Batch:
    """Conversations delivered by the extractor for one machine and time window."""

    path: Path
    machine_id: str
    conversations: tuple[Conversation, ...]
    hostname: str = ""
    batch_id: str = ""
    window_start: int | None = None
    window_end: int | None = None
    format_name: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def cursor(self) -> int:
        """Sync point reached once this batch is committed."""
        if self.window_end is not None:
            return self.window_end
        return max((c.updated_at for c in self.conversations), default=0)


def parse_timestamp(value: Any) -> int:
    """Parse a Unix timestamp (int/float/numeric string) or ISO 8601 string.

    Returns:
        Unix timestamp in seconds, or 0 if the value is empty
    """
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)

    text = str(value).strip()
    try:
        return int(float(text))
    except ValueError:
        pass

    # Handle ISO 8601 with optional microseconds and Z suffix
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return int(datetime.fromisoformat(text).timestamp())


class BatchParser(ABC):
    """Base class for batch parsers.

    Subclasses must set the `format_name` class attribute and implement
    `detect()` and `parse()` to turn an extractor's JSON document into a
    Batch.
    """

    format_name: str

    @abstractmethod
    def detect(self, data: Any) -> bool:
        """Return True if the decoded JSON document is in this parser's format."""

    @abstractmethod
    def parse(self, data: Any, path: Path, machine_id: str) -> Batch:
        """Parse a decoded JSON document into a Batch.

        Args:
            data: Decoded JSON document
            path: File the document was read from
            machine_id: Machine identifier derived from the inbox layout,
                used when the document does not name one

        Raises:
            ExtractionError: If the document is malformed
        """


class ParserRegistry:
    """Registry of batch parsers by format name."""

    _parsers: dict[str, BatchParser] = {}

    @classmethod
    def register(cls, parser: BatchParser) -> None:
        """Register a parser."""
        cls._parsers[parser.format_name] = parser

    @classmethod
    def get(cls, format_name: str) -> BatchParser | None:
        """Get parser by format name."""
        return cls._parsers.get(format_name)

    @classmethod
    def detect(cls, data: Any) -> BatchParser | None:
        """Find the parser that recognizes a document."""
        for parser in cls._parsers.values():
            if parser.detect(data):
                return parser
        return None

    @classmethod
    def all_formats(cls) -> list[str]:
        """List all registered format names."""
        return list(cls._parsers.keys())


def require(condition: bool, message: str, path: Path) -> None:
    if not condition:
        raise ExtractionError(message, str(path))
