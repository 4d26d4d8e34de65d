"""Error types shared by ingestion, watching and question answering."""

from __future__ import annotations


class KnowledgeBaseError(Exception):
    """Base class for knowledge base failures."""


class ValidationError(KnowledgeBaseError, ValueError):
    """Raised for blank queries or paths before any work is done."""


class IndexSubmissionError(KnowledgeBaseError):
    """Raised when a chunk batch could not be added to the vector index."""


class TransientIndexError(IndexSubmissionError):
    """Submission failure worth retrying (timeouts, 5xx, dropped connections)."""


class PermanentIndexError(IndexSubmissionError):
    """Submission failure that will not go away by retrying."""


class FileIOError(KnowledgeBaseError):
    """Raised when a corpus file cannot be listed or read."""


class WatcherFault(KnowledgeBaseError):
    """Raised when a directory cannot be registered with the file watcher."""


class GenerationFault(KnowledgeBaseError):
    """Raised when the chat model fails to complete or stream an answer."""
