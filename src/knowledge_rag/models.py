from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class IngestionStats:
    processed_file_count: int
    documents_path: str


@dataclass(frozen=True)
class ServiceStats:
    indexed_file_count: int
    documents_path: str
    watcher_running: bool


@dataclass
class RetrievedChunk:
    chunk_id: str
    source: str
    filename: str
    chunk_index: int
    score: float
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Citation:
    filename: str
    path: str
    preview: str


@dataclass
class RagAnswer:
    answer: str
    citations: list[Citation]
    question: str


@dataclass
class ModelCatalog:
    default_model: str
    models: list[str] = field(default_factory=list)
