"""Folder watcher that imports new chat exports as they appear."""

import hashlib
import json
import logging
import time
from collections.abc import Callable
from pathlib import Path

from watchdog.events import (
    FileCreatedEvent,
    FileModifiedEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

logger = logging.getLogger(__name__)

# Chat exports are plain text
EXPORT_EXTENSIONS = {".txt"}

TRACKER_FILE_NAME = ".tally_processed.json"


class ProcessedFileTracker:
    """Track imported files to avoid handing the same export over twice.

    Uses a JSON file to persist file content hashes across restarts.
    """

    def __init__(self, tracker_path: Path | str):
        self.tracker_path = Path(tracker_path)
        self._processed: set[str] = set()
        self._load()

    def _load(self) -> None:
        """Load processed files from disk."""
        if self.tracker_path.exists():
            try:
                data = json.loads(self.tracker_path.read_text())
                self._processed = set(data.get("processed", []))
            except (json.JSONDecodeError, AttributeError) as e:
                logger.warning(f"Ignoring unreadable tracker {self.tracker_path}: {e}")
                self._processed = set()

    def _save(self) -> None:
        """Save processed files to disk."""
        self.tracker_path.parent.mkdir(parents=True, exist_ok=True)
        self.tracker_path.write_text(
            json.dumps({"processed": sorted(self._processed)}, indent=2)
        )

    def _file_hash(self, file_path: Path) -> str:
        """Key a file by name and content, so an updated export is seen as new."""
        content_hash = hashlib.sha256(file_path.read_bytes()).hexdigest()[:16]
        return f"{file_path.name}:{content_hash}"

    def is_processed(self, file_path: Path) -> bool:
        return self._file_hash(file_path) in self._processed

    def mark_processed(self, file_path: Path) -> None:
        self._processed.add(self._file_hash(file_path))
        self._save()

    def clear(self) -> None:
        """Forget all processed files."""
        self._processed.clear()
        self._save()


class ChatExportHandler(FileSystemEventHandler):
    """Handle file system events for chat export files.

    Both created and modified events are handled: exports are often
    overwritten in place with a longer version of the same chat.
    """

    def __init__(
        self,
        callback: Callable[[Path], None],
        tracker: ProcessedFileTracker,
        settle_seconds: float = 0.5,
    ):
        super().__init__()
        self.callback = callback
        self.tracker = tracker
        self.settle_seconds = settle_seconds

    def _process_file(self, file_path: Path, event_type: str) -> None:
        if file_path.suffix.lower() not in EXPORT_EXTENSIONS:
            return
        if file_path.name == TRACKER_FILE_NAME:
            return

        # Wait a moment for the file to be fully written
        time.sleep(self.settle_seconds)

        if not file_path.exists():
            return

        if self.tracker.is_processed(file_path):
            logger.debug(f"Skipping unchanged export: {file_path.name}")
            return

        logger.info(f"Importing {event_type} export: {file_path.name}")
        try:
            self.callback(file_path)
        except Exception as e:
            # Left unmarked so the next change to the file retries it
            logger.error(f"Failed to import {file_path.name}: {e}")
            return
        self.tracker.mark_processed(file_path)

    def on_created(self, event: FileCreatedEvent) -> None:  # type: ignore[override]
        if event.is_directory:
            return
        src_path = event.src_path
        if isinstance(src_path, bytes):
            src_path = src_path.decode("utf-8")
        self._process_file(Path(src_path), "new")

    def on_modified(self, event: FileModifiedEvent) -> None:  # type: ignore[override]
        if event.is_directory:
            return
        src_path = event.src_path
        if isinstance(src_path, bytes):
            src_path = src_path.decode("utf-8")
        self._process_file(Path(src_path), "modified")


class ChatExportWatcher:
    """Watch a directory for new or updated chat export files."""

    def __init__(
        self,
        watch_path: Path | str,
        callback: Callable[[Path], None],
        tracker_path: Path | str | None = None,
        settle_seconds: float = 0.5,
    ):
        """Initialize the watcher.

        Args:
            watch_path: Directory to watch for exports.
            callback: Function called with the path of each export to import.
            tracker_path: Path for the processed files tracker.
                         Defaults to watch_path/.tally_processed.json
            settle_seconds: Delay before reading a file after an event.
        """
        self.watch_path = Path(watch_path)
        self.callback = callback

        if tracker_path is None:
            tracker_path = self.watch_path / TRACKER_FILE_NAME
        self.tracker = ProcessedFileTracker(tracker_path)

        self._handler = ChatExportHandler(
            callback=callback,
            tracker=self.tracker,
            settle_seconds=settle_seconds,
        )
        self._observer: BaseObserver | None = None

    def start(self) -> None:
        """Start watching the directory."""
        if self._observer is not None:
            return

        if not self.watch_path.exists():
            raise ValueError(f"Watch path does not exist: {self.watch_path}")

        if not self.watch_path.is_dir():
            raise ValueError(f"Watch path is not a directory: {self.watch_path}")

        self._observer = Observer()
        self._observer.schedule(self._handler, str(self.watch_path), recursive=False)
        self._observer.start()
        logger.info(f"Started watching: {self.watch_path}")

    def stop(self) -> None:
        """Stop watching the directory."""
        if self._observer is None:
            return

        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
        logger.info("Stopped watching")

    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def process_existing(self) -> int:
        """Import any exports already in the directory that were not imported yet.

        Returns:
            Number of files imported.
        """
        count = 0
        for file_path in sorted(self.watch_path.iterdir()):
            if not file_path.is_file() or file_path.suffix.lower() not in EXPORT_EXTENSIONS:
                continue
            if self.tracker.is_processed(file_path):
                continue

            logger.info(f"Importing existing export: {file_path.name}")
            try:
                self.callback(file_path)
            except Exception as e:
                logger.error(f"Failed to import {file_path.name}: {e}")
                continue
            self.tracker.mark_processed(file_path)
            count += 1

        return count

    def __enter__(self) -> "ChatExportWatcher":
        self.start()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.stop()
