"""Archiver for committed batch files.

Moves batch files out of the inbox once every partition they touched has
been committed, keeping the machine hierarchy under a dated directory.
"""

import shutil
from datetime import datetime
from pathlib import Path

from chat_stash.logging import get_logger

logger = get_logger("archiver")


def archive_destination(
    batch_path: Path,
    inbox_path: Path,
    archive_path: Path,
    archive_date: datetime,
) -> Path:
    """Archive path for a batch: archive/<YYYY-MM-DD>/<path relative to inbox>.

    If a file already sits there (the same batch name delivered twice on one
    day), a numeric suffix is added before the extension.

    Raises:
        ValueError: If batch_path is not under inbox_path
    """
    try:
        relative_path = batch_path.relative_to(inbox_path)
    except ValueError:
        raise ValueError(f"Batch path {batch_path} is not under inbox {inbox_path}")

    dest = archive_path / archive_date.strftime("%Y-%m-%d") / relative_path
    counter = 1
    while dest.exists():
        dest = dest.with_name(f"{relative_path.stem}.{counter}{relative_path.suffix}")
        counter += 1
    return dest


def archive_batch(
    batch_path: Path,
    inbox_path: Path,
    archive_path: Path,
    archive_date: datetime | None = None,
) -> Path:
    """Move a committed batch file from the inbox to the archive.

    Args:
        batch_path: Batch file in the inbox
        inbox_path: Base inbox directory path
        archive_path: Base archive directory path
        archive_date: Date for the archive directory (defaults to today)

    Returns:
        Path to the archived file

    Raises:
        ValueError: If batch_path is not under inbox_path
        FileNotFoundError: If batch_path does not exist
    """
    if not batch_path.exists():
        raise FileNotFoundError(f"Batch file does not exist: {batch_path}")

    dest = archive_destination(batch_path, inbox_path, archive_path, archive_date or datetime.now())
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(batch_path), str(dest))

    logger.info("Archived batch: source=%s dest=%s", batch_path, dest)
    return dest
