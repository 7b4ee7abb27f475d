"""Capture of chat exports - parsing and folder watching."""

from tally.capture.parsers import (
    ParsedMessage,
    compute_fingerprint,
    parse_chat,
    parse_chat_file,
)
from tally.capture.watcher import ChatExportWatcher, ProcessedFileTracker

__all__ = [
    "ParsedMessage",
    "compute_fingerprint",
    "parse_chat",
    "parse_chat_file",
    "ChatExportWatcher",
    "ProcessedFileTracker",
]
