from __future__ import annotations

import logging
import re
import threading
from datetime import UTC, datetime
from functools import partial
from pathlib import Path
from typing import Callable, Iterable

from langchain_core.documents import Document
from langchain_core.vectorstores import VectorStore

from knowledge_rag.chunking import split_document
from knowledge_rag.config import Settings
from knowledge_rag.errors import (
    FileIOError,
    PermanentIndexError,
    TransientIndexError,
    ValidationError,
)
from knowledge_rag.models import IngestionStats
from knowledge_rag.records import ChangeRecordStore
from knowledge_rag.vectorstore import SnapshotPersistence

LOGGER = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 2.0
TRANSIENT_SIGNATURES = (
    "timeout",
    "timed out",
    "deadline exceeded",
    "server error",
    "unavailable",
    "connection reset",
)
TRANSIENT_STATUS_PATTERN = re.compile(r"\b50[0234]\b")

Chunker = Callable[[Document], list[Document]]


def infer_file_type(filename: str) -> str:
    lowered = filename.lower()
    if lowered.endswith((".md", ".markdown")):
        return "markdown"
    if lowered.endswith(".txt"):
        return "text"
    return "unknown"


def has_allowed_extension(path: Path, extensions: Iterable[str]) -> bool:
    name = path.name.lower()
    return any(name.endswith(ext.lower()) for ext in extensions)


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    message = str(exc)
    if "EOF" in message or TRANSIENT_STATUS_PATTERN.search(message):
        return True
    lowered = message.lower()
    return any(signature in lowered for signature in TRANSIENT_SIGNATURES)


def chunk_id(source: str, chunk_index: int) -> str:
    return f"{source}::{chunk_index}"


def discover_documents(root: Path, extensions: Iterable[str]) -> list[Path]:
    if not root.exists():
        return []
    extensions = tuple(extensions)
    try:
        return sorted(p for p in root.rglob("*") if p.is_file() and has_allowed_extension(p, extensions))
    except OSError as exc:
        LOGGER.error("Error scanning directory %s: %s", root, exc)
        return []


def build_document(path: Path, text: str, mtime: float) -> Document:
    return Document(
        page_content=text,
        metadata={
            "source": str(path),
            "filename": path.name,
            "type": infer_file_type(path.name),
            "last_modified": datetime.fromtimestamp(mtime, UTC).isoformat(),
        },
    )


class IngestionCoordinator:
    """Keeps the vector index in step with the files under the corpus root."""

    def __init__(
        self,
        settings: Settings,
        store: VectorStore,
        persistence: SnapshotPersistence,
        records: ChangeRecordStore | None = None,
        *,
        chunker: Chunker | None = None,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delay: float = RETRY_DELAY_SECONDS,
    ) -> None:
        self.settings = settings
        self.store = store
        self.persistence = persistence
        self.records = records if records is not None else ChangeRecordStore()
        self.chunker = chunker or partial(
            split_document,
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
        )
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._interrupted = threading.Event()

    def is_document_file(self, path: Path) -> bool:
        return path.is_file() and has_allowed_extension(path, self.settings.file_extensions)

    def ingest_all(self, force: bool = False) -> int:
        """Scan the corpus root and ingest every new or modified file.

        Returns the number of files that changed the index. The snapshot is
        saved once at the end, and only if that number is non-zero.
        """
        root = self.settings.documents_dir
        if not root.exists():
            LOGGER.warning("Documents path does not exist: %s. Creating it.", root)
            try:
                root.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                LOGGER.error("Failed to create documents directory %s: %s", root, exc)
                return 0

        if force:
            LOGGER.info("Force re-indexing enabled. Clearing change records.")
            self.records.clear()

        LOGGER.info("Starting full ingestion scan of: %s", root)
        processed = 0
        for path in discover_documents(root, self.settings.file_extensions):
            try:
                if self.ingest_file(path):
                    processed += 1
            except Exception as exc:  # noqa: BLE001
                LOGGER.error("Unexpected error while ingesting %s: %s", path, exc)

        if processed > 0:
            self.persistence.save()
        LOGGER.info("Full ingestion complete. Processed %d files.", processed)
        return processed

    def ingest_file(self, path: Path | str) -> bool:
        if isinstance(path, str) and not path.strip():
            raise ValidationError("path must not be blank")
        path = Path(path).absolute()
        if not self.is_document_file(path):
            LOGGER.debug("Skipping non-document file: %s", path)
            return False
        with self.records.lock_for(path):
            return self._ingest_locked(path)

    def _ingest_locked(self, path: Path) -> bool:
        try:
            mtime = path.stat().st_mtime
        except OSError as exc:
            LOGGER.error("Failed to stat file %s: %s", path, exc)
            return False
        if not self.records.is_stale(path, mtime):
            LOGGER.debug("File unchanged, skipping: %s", path)
            return False

        LOGGER.info("Ingesting file: %s", path)
        try:
            document = self._read_document(path, mtime)
        except FileIOError as exc:
            LOGGER.error("%s", exc)
            return False

        chunks = self.chunker(document)
        if chunks and not self._submit_with_retry(chunks, path):
            return False

        removed = self._remove_stale_chunks(str(path), start=len(chunks))
        self.records.advance(path, mtime)
        if not chunks:
            LOGGER.info("No text found in %s (%d stale chunks removed)", path, removed)
            return removed > 0
        LOGGER.info("Successfully ingested %d chunks from: %s", len(chunks), path)
        return True

    def _read_document(self, path: Path, mtime: float) -> Document:
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise FileIOError(f"Failed to read file {path}: {exc}") from exc
        return build_document(path, text, mtime)

    def _submit_with_retry(self, chunks: list[Document], path: Path) -> bool:
        ids = [chunk_id(str(path), int(chunk.metadata["chunk_index"])) for chunk in chunks]
        for attempt in range(1, self.max_attempts + 1):
            try:
                self._submit(chunks, ids)
                return True
            except PermanentIndexError as exc:
                LOGGER.error("Failed to index %s (not retrying): %s", path, exc)
                return False
            except TransientIndexError as exc:
                if attempt >= self.max_attempts:
                    LOGGER.error("Failed to index %s after %d attempts: %s", path, attempt, exc)
                    return False
                LOGGER.warning(
                    "Attempt %d/%d failed for %s. Retrying in %.1fs... Error: %s",
                    attempt,
                    self.max_attempts,
                    path.name,
                    self.retry_delay,
                    exc,
                )
                if self._interrupted.wait(self.retry_delay):
                    LOGGER.error("Retry interrupted for file: %s", path)
                    return False
        return False

    def _submit(self, chunks: list[Document], ids: list[str]) -> None:
        try:
            self.store.add_documents(chunks, ids=ids)
        except Exception as exc:  # noqa: BLE001
            if is_transient_error(exc):
                raise TransientIndexError(str(exc)) from exc
            raise PermanentIndexError(str(exc)) from exc

    def _remove_stale_chunks(self, source: str, start: int) -> int:
        # Chunk ids are positional, so anything at or past the new count belongs to an older version.
        removed = 0
        index = start
        while True:
            stale_id = chunk_id(source, index)
            if not self.store.get_by_ids([stale_id]):
                break
            self.store.delete([stale_id])
            removed += 1
            index += 1
        return removed

    def on_file_changed(self, path: Path) -> None:
        LOGGER.debug("File change detected: %s", path)
        if self.ingest_file(path):
            self.persistence.save()

    def get_stats(self) -> IngestionStats:
        return IngestionStats(
            processed_file_count=len(self.records),
            documents_path=str(self.settings.documents_dir),
        )

    def interrupt(self) -> None:
        """Abort any retry delay in progress; later retries give up immediately."""
        self._interrupted.set()

    def resume(self) -> None:
        self._interrupted.clear()
