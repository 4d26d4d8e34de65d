from __future__ import annotations

from langchain_core.documents import Document


def split_text(text: str, chunk_size: int, chunk_overlap: int) -> list[str]:
    clean = text.strip()
    if not clean:
        return []
    if chunk_overlap >= chunk_size:
        raise ValueError("chunk_overlap must be smaller than chunk_size")

    chunks: list[str] = []
    start = 0
    while start < len(clean):
        end = min(len(clean), start + chunk_size)
        chunk = clean[start:end].strip()
        if chunk:
            chunks.append(chunk)
        if end >= len(clean):
            break
        start = max(0, end - chunk_overlap)
    return chunks


def split_document(document: Document, chunk_size: int, chunk_overlap: int) -> list[Document]:
    """Split ``document`` into chunks that inherit its metadata.

    Every chunk carries ``chunk_index`` (zero-based, contiguous) and
    ``total_chunks``.
    """
    pieces = split_text(document.page_content, chunk_size=chunk_size, chunk_overlap=chunk_overlap)
    total = len(pieces)
    chunks: list[Document] = []
    for chunk_index, piece in enumerate(pieces):
        metadata = dict(document.metadata)
        metadata["chunk_index"] = chunk_index
        metadata["total_chunks"] = total
        chunks.append(Document(page_content=piece, metadata=metadata))
    return chunks
