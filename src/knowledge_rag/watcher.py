"""Recursive corpus watching on top of watchdog observers.

Observer threads only enqueue events. A single ``file-watcher`` worker drains
the queue with a bounded poll so ``stop()`` is noticed within a second, waits
a short debounce per file, and hands the path to the ingestion callback.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from knowledge_rag.errors import WatcherFault

LOGGER = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.1
POLL_TIMEOUT_SECONDS = 1.0
MAX_PENDING_EVENTS = 1024
FILE_EVENT_TYPES = ("created", "modified", "moved")


class WatcherState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


def _event_path(event: FileSystemEvent) -> Path:
    if event.event_type == "moved":
        return Path(os.fsdecode(event.dest_path))
    return Path(os.fsdecode(event.src_path))


class _QueueingHandler(FileSystemEventHandler):
    def __init__(self, events: queue.Queue) -> None:
        super().__init__()
        self._events = events

    def on_created(self, event: FileSystemEvent) -> None:
        self._enqueue(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._enqueue(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._enqueue(event)

    def _enqueue(self, event: FileSystemEvent) -> None:
        try:
            self._events.put_nowait(event)
        except queue.Full:
            LOGGER.warning(
                "File watcher overflow - event for %s dropped; a full rescan will pick it up",
                os.fsdecode(event.src_path),
            )


class FileWatcher:
    def __init__(
        self,
        root: Path,
        on_change: Callable[[Path], None],
        *,
        debounce_s: float = DEBOUNCE_SECONDS,
        poll_timeout_s: float = POLL_TIMEOUT_SECONDS,
        max_pending: int = MAX_PENDING_EVENTS,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self.root = root
        self.on_change = on_change
        self.debounce_s = debounce_s
        self.poll_timeout_s = poll_timeout_s
        self._observer_factory = observer_factory
        self._events: queue.Queue = queue.Queue(maxsize=max_pending)
        self._handler = _QueueingHandler(self._events)
        self._stop = threading.Event()
        self._state = WatcherState.STOPPED
        self._state_lock = threading.Lock()
        self._observer: Any = None
        self._worker: threading.Thread | None = None
        self._watched: set[Path] = set()

    @property
    def state(self) -> WatcherState:
        with self._state_lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state is WatcherState.RUNNING

    @property
    def watched_directories(self) -> set[Path]:
        return set(self._watched)

    def _set_state(self, state: WatcherState) -> None:
        with self._state_lock:
            self._state = state

    def start(self) -> bool:
        with self._state_lock:
            if self._state is not WatcherState.STOPPED:
                LOGGER.warning("File watcher is already running")
                return False
            self._state = WatcherState.STARTING

        if not self.root.is_dir():
            LOGGER.warning("Documents path does not exist, cannot watch: %s", self.root)
            self._set_state(WatcherState.STOPPED)
            return False

        # Per-run event: a worker abandoned by stop() keeps its own, already set.
        self._stop = threading.Event()
        self._watched.clear()
        self._observer = self._observer_factory()
        self.register_tree(self.root)
        try:
            self._observer.start()
        except OSError as exc:
            LOGGER.error("Failed to start file watcher: %s", exc)
            self._observer = None
            self._set_state(WatcherState.STOPPED)
            return False

        self._worker = threading.Thread(target=self._loop, args=(self._stop,), name="file-watcher", daemon=True)
        self._worker.start()
        self._set_state(WatcherState.RUNNING)
        LOGGER.info("File watcher started for: %s", self.root)
        return True

    def stop(self, timeout: float = 5.0) -> None:
        with self._state_lock:
            if self._state is not WatcherState.RUNNING:
                return
            self._state = WatcherState.STOPPING

        LOGGER.info("Stopping file watcher...")
        self._stop.set()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout)
            self._observer = None
        if self._worker is not None:
            self._worker.join(timeout)
            if self._worker.is_alive():
                LOGGER.warning("File watcher did not drain within %.1fs; abandoning worker thread", timeout)
            self._worker = None
        self._set_state(WatcherState.STOPPED)
        LOGGER.info("File watcher stopped")

    def register_tree(self, directory: Path) -> None:
        try:
            subdirectories = sorted(p for p in directory.rglob("*") if p.is_dir())
        except OSError as exc:
            LOGGER.error("Failed to list subdirectories of %s: %s", directory, exc)
            subdirectories = []
        for path in [directory, *subdirectories]:
            try:
                self._register(path)
            except WatcherFault as exc:
                LOGGER.error("%s", exc)

    def _register(self, directory: Path) -> None:
        if directory in self._watched:
            return
        try:
            self._observer.schedule(self._handler, str(directory), recursive=False)
        except OSError as exc:
            raise WatcherFault(f"Failed to register directory {directory}: {exc}") from exc
        self._watched.add(directory)
        LOGGER.debug("Watching directory: %s", directory)

    def _loop(self, stop: threading.Event) -> None:
        LOGGER.debug("File watcher loop started")
        while not stop.is_set():
            try:
                event = self._events.get(timeout=self.poll_timeout_s)
            except queue.Empty:
                continue
            try:
                self._dispatch(event, stop)
            except Exception as exc:  # noqa: BLE001
                LOGGER.error("Error in file watcher loop: %s", exc)
        LOGGER.debug("File watcher loop ended")

    def _dispatch(self, event: FileSystemEvent, stop: threading.Event) -> None:
        if event.event_type not in FILE_EVENT_TYPES:
            return
        path = _event_path(event)
        if event.is_directory:
            if event.event_type == "modified":
                return
            self.register_tree(path)
            LOGGER.info("New directory detected, now watching: %s", path)
            # Files copied in together with the directory predate its watch.
            for child in sorted(p for p in path.rglob("*") if p.is_file()):
                self._debounced_change(child, stop)
            return
        self._debounced_change(path, stop)

    def _debounced_change(self, path: Path, stop: threading.Event) -> None:
        if stop.wait(self.debounce_s):
            return
        self.on_change(path)
