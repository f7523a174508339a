import json
import logging
import os
import fcntl
from pathlib import Path
from typing import Dict, List, Optional
from pydantic import TypeAdapter
from .models import PendingSyncEntry, SyncHistoryEntry, SyncHistoryFile
from .config import settings

logger = logging.getLogger(__name__)

_queue_adapter = TypeAdapter(List[PendingSyncEntry])

class JsonFileStore:
    """Crash-safe JSON file: write-new-then-rename, reset on corruption."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.read_only = False

    def _read(self) -> Optional[str]:
        if not self.path.exists():
            logger.info(f"No file found at {self.path}, starting empty.")
            return None
        try:
            return self.path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            self._quarantine(e)
            return None
        except OSError as e:
            logger.error(f"Failed to read {self.path}: {e}. Starting empty.")
            return None

    def _quarantine(self, error: Exception):
        logger.error(f"Corrupt data in {self.path}: {error}. Starting empty.")
        corrupt_path = self.path.with_suffix('.corrupt')
        try:
            os.replace(self.path, corrupt_path)
            logger.warning(f"Moved corrupt file to {corrupt_path}")
        except OSError as e:
            logger.error(f"Failed to move corrupt file {self.path}: {e}")

    def _write(self, payload) -> bool:
        if not settings.PERSIST_ENABLED or self.read_only:
            return False

        tmp_path = self.path.with_suffix('.tmp')
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, 'w', encoding="utf-8") as f:
                try:
                    fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    logger.warning(f"Could not acquire lock for {self.path}. Skipping save cycle.")
                    return False

                try:
                    json.dump(payload, f, indent=2, sort_keys=True)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)

            # Atomic rename
            os.replace(tmp_path, self.path)
            return True

        except OSError as e:
            # Offline resilience is degraded for this write, in-memory state is still authoritative
            logger.error(f"Failed to save {self.path}: {e}")
            return False

class QueueStore(JsonFileStore):
    def load(self) -> List[PendingSyncEntry]:
        raw = self._read()
        if raw is None:
            return []
        try:
            entries = _queue_adapter.validate_json(raw)
        except ValueError as e:
            self._quarantine(e)
            return []

        # One entry per book; the last one written wins
        by_book: Dict[str, PendingSyncEntry] = {}
        for entry in entries:
            by_book.pop(entry.book_id, None)
            by_book[entry.book_id] = entry
        logger.info(f"Loaded {len(by_book)} pending entries from {self.path}")
        return list(by_book.values())

    def save(self, entries: List[PendingSyncEntry]) -> bool:
        payload = _queue_adapter.dump_python(entries, mode="json", by_alias=True)
        saved = self._write(payload)
        if saved:
            logger.debug(f"Saved {len(entries)} pending entries to {self.path}")
        return saved

class HistoryStore(JsonFileStore):
    """Append-only sync history per book, loaded lazily and cached."""

    def __init__(self, path: str):
        super().__init__(path)
        self._books: Optional[Dict[str, List[SyncHistoryEntry]]] = None

    def _ensure_loaded(self) -> Dict[str, List[SyncHistoryEntry]]:
        if self._books is None:
            self._books = {}
            raw = self._read()
            if raw is not None:
                try:
                    self._books = SyncHistoryFile.model_validate_json(raw).books
                except ValueError as e:
                    self._quarantine(e)
        return self._books

    def append(self, book_id: str, entry: SyncHistoryEntry):
        books = self._ensure_loaded()
        entries = books.setdefault(book_id, [])
        entries.append(entry)
        limit = settings.HISTORY_MAX_ENTRIES_PER_BOOK
        if limit > 0 and len(entries) > limit:
            del entries[:len(entries) - limit]

    def entries(self, book_id: str) -> List[SyncHistoryEntry]:
        return list(self._ensure_loaded().get(book_id, []))

    def clear(self, book_id: str):
        self._ensure_loaded().pop(book_id, None)

    def save(self) -> bool:
        payload = SyncHistoryFile(books=self._ensure_loaded()).model_dump(mode="json", by_alias=True)
        return self._write(payload)
