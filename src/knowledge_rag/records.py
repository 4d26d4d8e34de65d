"""Thread-safe bookkeeping of when each corpus file was last ingested."""

from __future__ import annotations

import threading
from pathlib import Path


class ChangeRecordStore:
    """Maps file paths to the mtime of their last successful ingestion.

    Shared by the watcher thread and manual ingestion. Entries only move
    forward in time; ``lock_for`` hands out one lock per path so two callers
    never ingest the same file at once.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[Path, float] = {}
        self._path_locks: dict[Path, threading.Lock] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def get(self, path: Path) -> float | None:
        with self._lock:
            return self._records.get(path)

    def is_stale(self, path: Path, mtime: float) -> bool:
        """True when ``mtime`` is strictly newer than the recorded value."""
        with self._lock:
            previous = self._records.get(path)
        return previous is None or mtime > previous

    def advance(self, path: Path, mtime: float) -> bool:
        with self._lock:
            previous = self._records.get(path)
            if previous is not None and mtime <= previous:
                return False
            self._records[path] = mtime
            return True

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def lock_for(self, path: Path) -> threading.Lock:
        with self._lock:
            lock = self._path_locks.get(path)
            if lock is None:
                lock = threading.Lock()
                self._path_locks[path] = lock
            return lock
