"""Readers for conversation batches delivered by the extraction collaborator."""

from .base import Batch, BatchParser, ParserRegistry, parse_timestamp
from .chatgpt import ChatGPTExportParser
from .loader import discover_batch_files, extract_machine_id_from_path, load_batch
from .native import NativeBatchParser

__all__ = [
    "Batch",
    "BatchParser",
    "ChatGPTExportParser",
    "NativeBatchParser",
    "ParserRegistry",
    "discover_batch_files",
    "extract_machine_id_from_path",
    "load_batch",
    "parse_timestamp",
]

# Register parsers
ParserRegistry.register(NativeBatchParser())
ParserRegistry.register(ChatGPTExportParser())
