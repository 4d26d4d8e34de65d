from __future__ import annotations

from typing import Any

from knowledge_rag.config import Settings
from knowledge_rag.ingest import chunk_id
from knowledge_rag.models import RetrievedChunk
from knowledge_rag.vectorstore import load_vectorstore


def _to_retrieved_chunk(doc: Any, score: float) -> RetrievedChunk:
    metadata = dict(doc.metadata or {})
    source = str(metadata.get("source", "unknown"))
    chunk_index = int(metadata.get("chunk_index", 0))
    return RetrievedChunk(
        chunk_id=str(getattr(doc, "id", None) or chunk_id(source, chunk_index)),
        source=source,
        filename=str(metadata.get("filename", "unknown")),
        chunk_index=chunk_index,
        score=float(score),
        text=doc.page_content,
        metadata=metadata,
    )


def retrieve_chunks(
    question: str,
    settings: Settings,
    k: int | None = None,
    vectorstore: Any | None = None,
) -> list[RetrievedChunk]:
    """Return the ``k`` most similar chunks, best first.

    Hits scoring at or below ``settings.similarity_threshold`` are dropped.
    """
    top_k = k or settings.top_k
    store = vectorstore if vectorstore is not None else load_vectorstore(settings)
    results = store.similarity_search_with_score(question, k=top_k)
    chunks = [
        _to_retrieved_chunk(doc, score)
        for doc, score in results
        if float(score) > settings.similarity_threshold
    ]
    chunks.sort(key=lambda chunk: chunk.score, reverse=True)
    return chunks
