from __future__ import annotations

import re
from pathlib import Path

import pytest
from langchain_core.embeddings import Embeddings

from knowledge_rag.config import Settings, load_settings

ENV_KEYS = (
    "GEMINI_CHAT_MODEL",
    "GEMINI_EMBED_MODEL",
    "CHUNK_SIZE",
    "CHUNK_OVERLAP",
    "TOP_K",
    "SIMILARITY_THRESHOLD",
    "DOCUMENTS_DIR",
    "VECTOR_STORE_PATH",
    "FILE_EXTENSIONS",
    "STARTUP_DELAY_SECONDS",
)


class BagOfWordsEmbeddings(Embeddings):
    """Word-count vectors; texts sharing no words have cosine similarity 0."""

    def __init__(self, dim: int = 1024) -> None:
        self.dim = dim
        self.vocab: dict[str, int] = {}

    def _embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dim
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            index = self.vocab.setdefault(word, len(self.vocab) % self.dim)
            vector[index] += 1.0
        return vector

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        return self._embed(text)


class FakeObserver:
    def __init__(self) -> None:
        self.scheduled: list[tuple[str, bool]] = []
        self.started = False
        self.stopped = False

    def schedule(self, handler, path: str, recursive: bool = False) -> None:  # noqa: ARG002
        self.scheduled.append((path, recursive))

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def join(self, timeout: float | None = None) -> None:  # noqa: ARG002
        return None


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Settings:
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("GOOGLE_API_KEY", "dummy-key")
    documents_dir = tmp_path / "docs"
    documents_dir.mkdir()
    return load_settings(documents_dir=documents_dir, vector_store_path=tmp_path / "store" / "vector_store.json")


@pytest.fixture
def embeddings() -> BagOfWordsEmbeddings:
    return BagOfWordsEmbeddings()


@pytest.fixture
def observer_cls() -> type[FakeObserver]:
    return FakeObserver
