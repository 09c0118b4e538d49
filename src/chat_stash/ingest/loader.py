"""Discover and load batch files from the inbox.

The inbox structure is: inbox/<machine_id>/.../<batch>.json
"""

import json
from pathlib import Path

from chat_stash.errors import ExtractionError
from chat_stash.ingest.base import Batch, ParserRegistry
from chat_stash.logging import get_logger

logger = get_logger("ingest")


def extract_machine_id_from_path(file_path: Path, inbox_path: Path) -> str:
    """Extract the machine ID from a file's path structure.

    Args:
        file_path: Path to the file
        inbox_path: Base inbox directory path

    Returns:
        Machine ID, or 'unknown' if not extractable
    """
    try:
        relative = file_path.relative_to(inbox_path)
        parts = relative.parts
        if len(parts) >= 2:
            return parts[0]
    except ValueError:
        pass
    return "unknown"


def discover_batch_files(inbox_path: Path) -> list[Path]:
    """Discover all batch files in the inbox.

    Args:
        inbox_path: Base inbox directory path

    Returns:
        Sorted list of .json file paths
    """
    if not inbox_path.exists():
        return []
    return sorted(p for p in inbox_path.glob("**/*.json") if p.is_file())


def load_batch(file_path: Path, inbox_path: Path) -> Batch:
    """Read and parse one batch file.

    Raises:
        ExtractionError: If the file is unreadable, not JSON, or in no known format
    """
    try:
        with open(file_path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ExtractionError(f"Cannot read batch: {e}", str(file_path)) from e

    parser = ParserRegistry.detect(data)
    if parser is None:
        raise ExtractionError(
            f"Unrecognized batch format (known: {', '.join(ParserRegistry.all_formats())})",
            str(file_path),
        )

    machine_id = extract_machine_id_from_path(file_path, inbox_path)
    batch = parser.parse(data, file_path, machine_id)
    logger.info(
        "Loaded batch: path=%s format=%s machine=%s conversations=%d",
        file_path.name,
        parser.format_name,
        batch.machine_id,
        len(batch.conversations),
    )
    return batch
