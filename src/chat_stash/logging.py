"""Logging configuration for chat-stash.

Provides centralized logging setup with file output to ~/chat-stash/logs/.
"""

import logging
import sys
from pathlib import Path

# Default log directory
DEFAULT_LOG_DIR = Path.home() / "chat-stash" / "logs"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    name: str,
    log_dir: Path | None = None,
    level: int = logging.INFO,
    console: bool = True,
) -> logging.Logger:
    """Configure logging for a chat-stash component.

    Handlers are attached to the ``chat_stash`` root logger so that every
    module logger obtained through get_logger() writes to the same file.
    Log files are written to <log_dir>/<name>.log.

    Args:
        name: Component name (used for log filename)
        log_dir: Directory for log files (defaults to ~/chat-stash/logs/)
        level: Logging level (defaults to INFO)
        console: Whether to also log to stderr (defaults to True)

    Returns:
        The configured component logger
    """
    if log_dir is None:
        log_dir = DEFAULT_LOG_DIR

    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger("chat_stash")
    root.setLevel(level)

    # Avoid adding duplicate handlers if already configured
    if root.handlers:
        return get_logger(name)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    file_handler = logging.FileHandler(log_dir / f"{name}.log", encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    return get_logger(name)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a chat-stash component.

    Args:
        name: Logger name (will be prefixed with 'chat_stash.')

    Returns:
        Logger instance
    """
    return logging.getLogger(f"chat_stash.{name}")
