"""Process lifecycle: the shared index plus its two background tasks."""

from __future__ import annotations

import logging
import threading
from typing import Any, Iterator

from langchain_core.embeddings import Embeddings

from knowledge_rag.config import Settings
from knowledge_rag.ingest import IngestionCoordinator
from knowledge_rag.models import RagAnswer, RetrievedChunk, ServiceStats
from knowledge_rag.qa import answer_question, search, stream_answer
from knowledge_rag.records import ChangeRecordStore
from knowledge_rag.vectorstore import SnapshotPersistence, load_vectorstore
from knowledge_rag.watcher import FileWatcher

LOGGER = logging.getLogger(__name__)


class KnowledgeService:
    """Owns the vector index, the file watcher and the startup ingestion task.

    ``start()`` launches the watcher loop and a one-shot ingestion that runs
    after ``settings.startup_delay_s``; neither blocks the caller and a failing
    startup ingestion is only logged. ``stop()`` signals both and waits a
    bounded time for them.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        embeddings: Embeddings | None = None,
        llm: Any | None = None,
        watcher_kwargs: dict[str, Any] | None = None,
    ) -> None:
        self.settings = settings
        self.llm = llm
        self.store = load_vectorstore(settings, embeddings=embeddings)
        self.persistence = SnapshotPersistence(self.store, settings.vector_store_path)
        self.records = ChangeRecordStore()
        self.coordinator = IngestionCoordinator(settings, self.store, self.persistence, self.records)
        self.watcher = FileWatcher(settings.documents_dir, self.coordinator.on_file_changed, **(watcher_kwargs or {}))
        self._stopping = threading.Event()
        self._startup_task: threading.Thread | None = None

    def __enter__(self) -> KnowledgeService:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def start(self) -> None:
        self._stopping.clear()
        self.coordinator.resume()
        self.watcher.start()
        self._startup_task = threading.Thread(target=self._initial_ingestion, name="initial-ingestion", daemon=True)
        self._startup_task.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        self.coordinator.interrupt()
        self.watcher.stop(timeout)
        if self._startup_task is not None:
            self._startup_task.join(timeout)
            if self._startup_task.is_alive():
                LOGGER.warning("Initial ingestion still running after %.1fs; leaving it behind", timeout)
            self._startup_task = None

    def wait_for_startup(self, timeout: float | None = None) -> bool:
        task = self._startup_task
        if task is None:
            return True
        task.join(timeout)
        return not task.is_alive()

    def _initial_ingestion(self) -> None:
        if self._stopping.wait(self.settings.startup_delay_s):
            return
        try:
            LOGGER.info("Performing initial document ingestion...")
            count = self.coordinator.ingest_all()
            LOGGER.info("Initial ingestion complete. %d documents processed.", count)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning(
                "Initial ingestion failed. Documents will be indexed on manual ingestion "
                "or when files change. Error: %s",
                exc,
            )

    def ingest(self, force: bool = False) -> int:
        LOGGER.info("Manual ingestion triggered (force=%s)", force)
        return self.coordinator.ingest_all(force=force)

    def ask(self, question: str, model: str | None = None) -> RagAnswer:
        return answer_question(question, self.settings, model=model, vectorstore=self.store, llm=self.llm)

    def ask_stream(self, question: str, model: str | None = None) -> Iterator[str]:
        return stream_answer(question, self.settings, model=model, vectorstore=self.store, llm=self.llm)

    def search(self, query: str, top_k: int | None = None) -> list[RetrievedChunk]:
        return search(query, self.settings, self.settings.top_k if top_k is None else top_k, vectorstore=self.store)

    def stats(self) -> ServiceStats:
        ingestion = self.coordinator.get_stats()
        return ServiceStats(
            indexed_file_count=ingestion.processed_file_count,
            documents_path=ingestion.documents_path,
            watcher_running=self.watcher.is_running,
        )
