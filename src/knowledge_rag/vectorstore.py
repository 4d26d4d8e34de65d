from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from langchain_core.embeddings import Embeddings
from langchain_core.vectorstores import InMemoryVectorStore
from langchain_google_genai import GoogleGenerativeAIEmbeddings

from knowledge_rag.config import Settings, require_api_key

LOGGER = logging.getLogger(__name__)


def build_embeddings(settings: Settings) -> GoogleGenerativeAIEmbeddings:
    require_api_key(settings)
    return GoogleGenerativeAIEmbeddings(
        model=settings.gemini_embed_model,
        google_api_key=settings.google_api_key,
    )


def load_vectorstore(settings: Settings, embeddings: Embeddings | None = None) -> InMemoryVectorStore:
    """Load the index snapshot if one exists, otherwise start with an empty index."""
    if embeddings is None:
        embeddings = build_embeddings(settings)
    path = settings.vector_store_path
    if not path.exists():
        LOGGER.info("No existing vector store found. Starting fresh at: %s", path)
        return InMemoryVectorStore(embedding=embeddings)
    try:
        store = InMemoryVectorStore.load(str(path), embedding=embeddings)
    except (OSError, ValueError, KeyError, TypeError) as exc:
        LOGGER.warning("Could not read vector store snapshot %s (%s). Starting fresh.", path, exc)
        return InMemoryVectorStore(embedding=embeddings)
    LOGGER.info("Loaded existing vector store from: %s", path)
    return store


def ensure_snapshot_readable(settings: Settings) -> None:
    path = settings.vector_store_path
    if path.exists():
        path.read_bytes()
    else:
        path.parent.mkdir(parents=True, exist_ok=True)


class SnapshotPersistence:
    """Writes the whole index to one snapshot file, overwriting the previous one."""

    def __init__(self, store: InMemoryVectorStore, path: Path) -> None:
        self.store = store
        self.path = path

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # The snapshot is only ever replaced whole.
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        os.close(fd)
        try:
            self.store.dump(tmp_name)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        LOGGER.debug("Vector store saved to: %s", self.path)
