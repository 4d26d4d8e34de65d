from __future__ import annotations

import dataclasses
import os
import threading
import time
from pathlib import Path

import pytest
from langchain_core.vectorstores import InMemoryVectorStore

from knowledge_rag.errors import ValidationError
from knowledge_rag.ingest import (
    IngestionCoordinator,
    chunk_id,
    discover_documents,
    infer_file_type,
    is_transient_error,
)


class RecordingPersistence:
    def __init__(self) -> None:
        self.saves = 0

    def save(self) -> None:
        self.saves += 1


class FailingStore:
    def __init__(self, error: Exception, fail_times: int | None = None) -> None:
        self.error = error
        self.fail_times = fail_times
        self.calls = 0

    def add_documents(self, documents, ids=None):  # noqa: ARG002
        self.calls += 1
        if self.fail_times is None or self.calls <= self.fail_times:
            raise self.error
        return ids

    def get_by_ids(self, ids):  # noqa: ARG002
        return []

    def delete(self, ids=None):  # noqa: ARG002
        return True


class SlowStore(FailingStore):
    def __init__(self) -> None:
        super().__init__(RuntimeError("unused"), fail_times=0)
        self._lock = threading.Lock()

    def add_documents(self, documents, ids=None):  # noqa: ARG002
        with self._lock:
            self.calls += 1
        time.sleep(0.2)
        return ids


def _words(prefix: str, count: int) -> str:
    return " ".join(f"{prefix}{i}" for i in range(count))


def _write(path: Path, text: str, mtime: float) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    os.utime(path, (mtime, mtime))
    return path


def _coordinator(settings, store, **kwargs) -> tuple[IngestionCoordinator, RecordingPersistence]:
    persistence = RecordingPersistence()
    kwargs.setdefault("retry_delay", 0.0)
    return IngestionCoordinator(settings, store, persistence, **kwargs), persistence


@pytest.fixture
def store(embeddings) -> InMemoryVectorStore:
    return InMemoryVectorStore(embedding=embeddings)


@pytest.fixture
def corpus(settings) -> dict[str, Path]:
    root = settings.documents_dir
    return {
        "a": _write(root / "a.md", _words("alpha", 200), 1_000_000.0),
        "b": _write(root / "b.txt", _words("bravo", 50), 1_000_000.0),
    }


def _spy_adds(monkeypatch: pytest.MonkeyPatch, store: InMemoryVectorStore) -> list[str]:
    sources: list[str] = []
    original = store.add_documents

    def _spy(documents, ids=None, **kwargs):
        sources.append(documents[0].metadata["filename"])
        return original(documents, ids=ids, **kwargs)

    monkeypatch.setattr(store, "add_documents", _spy)
    return sources


def test_second_scan_without_changes_processes_nothing(settings, store, corpus) -> None:
    coordinator, persistence = _coordinator(settings, store)

    assert coordinator.ingest_all() == 2
    assert persistence.saves == 1

    assert coordinator.ingest_all() == 0
    assert persistence.saves == 1


def test_editing_one_file_reingests_only_that_file(monkeypatch, settings, store, corpus) -> None:
    coordinator, _ = _coordinator(settings, store)
    coordinator.ingest_all()
    before = coordinator.records.get(corpus["a"])
    b_before = coordinator.records.get(corpus["b"])
    added = _spy_adds(monkeypatch, store)

    _write(corpus["a"], _words("charlie", 200), 1_000_100.0)

    assert coordinator.ingest_all() == 1
    assert added == ["a.md"]
    assert coordinator.records.get(corpus["a"]) > before
    assert coordinator.records.get(corpus["b"]) == b_before


def test_chunks_carry_contiguous_indices(settings, store, corpus) -> None:
    coordinator, _ = _coordinator(settings, store)
    coordinator.ingest_all()

    source = str(corpus["a"])
    docs = store.get_by_ids([chunk_id(source, 0), chunk_id(source, 1), chunk_id(source, 2)])

    assert len(docs) == 2
    assert sorted(d.metadata["chunk_index"] for d in docs) == [0, 1]
    assert all(d.metadata["total_chunks"] == 2 for d in docs)
    assert all(d.metadata["type"] == "markdown" for d in docs)
    assert all(d.metadata["filename"] == "a.md" for d in docs)


def test_force_resubmits_unchanged_files(monkeypatch, settings, store, corpus) -> None:
    coordinator, persistence = _coordinator(settings, store)
    coordinator.ingest_all()
    added = _spy_adds(monkeypatch, store)

    assert coordinator.ingest_all(force=True) == 2
    assert sorted(added) == ["a.md", "b.txt"]
    assert persistence.saves == 2
    assert coordinator.records.get(corpus["a"]) == 1_000_000.0


def test_restart_does_not_duplicate_chunks(settings, store, corpus) -> None:
    first, _ = _coordinator(settings, store)
    first.ingest_all()
    size = len(store.store)

    restarted, _ = _coordinator(settings, store)

    assert restarted.ingest_all() == 2
    assert len(store.store) == size


def test_shrunk_file_drops_trailing_chunks(settings, store, corpus) -> None:
    coordinator, _ = _coordinator(settings, store)
    coordinator.ingest_all()
    source = str(corpus["a"])

    _write(corpus["a"], "short note", 1_000_100.0)

    assert coordinator.ingest_file(corpus["a"]) is True
    assert store.get_by_ids([chunk_id(source, 1)]) == []
    assert store.get_by_ids([chunk_id(source, 0)])[0].page_content == "short note"


def test_emptied_file_removes_its_chunks(settings, store, corpus) -> None:
    coordinator, _ = _coordinator(settings, store)
    coordinator.ingest_all()

    _write(corpus["b"], "   ", 1_000_100.0)

    assert coordinator.ingest_file(corpus["b"]) is True
    assert store.get_by_ids([chunk_id(str(corpus["b"]), 0)]) == []
    assert coordinator.records.get(corpus["b"]) == 1_000_100.0


def test_empty_new_file_is_recorded_without_index_write(settings, store) -> None:
    coordinator, _ = _coordinator(settings, store)
    empty = _write(settings.documents_dir / "empty.md", "", 1_000_000.0)

    assert coordinator.ingest_file(empty) is False
    assert coordinator.records.get(empty) == 1_000_000.0


def test_transient_failure_is_attempted_three_times(settings, corpus) -> None:
    failing = FailingStore(RuntimeError("503 Service Unavailable"))
    coordinator, persistence = _coordinator(settings, failing)

    assert coordinator.ingest_file(corpus["a"]) is False
    assert failing.calls == 3
    assert coordinator.records.get(corpus["a"]) is None
    assert persistence.saves == 0


def test_permanent_failure_is_attempted_once(settings, corpus) -> None:
    failing = FailingStore(ValueError("API key not valid"))
    coordinator, _ = _coordinator(settings, failing)

    assert coordinator.ingest_file(corpus["a"]) is False
    assert failing.calls == 1
    assert coordinator.records.get(corpus["a"]) is None


def test_transient_failure_then_success(settings, corpus) -> None:
    flaky = FailingStore(TimeoutError("read timed out"), fail_times=1)
    coordinator, _ = _coordinator(settings, flaky)

    assert coordinator.ingest_file(corpus["b"]) is True
    assert flaky.calls == 2
    assert coordinator.records.get(corpus["b"]) == 1_000_000.0


def test_interrupt_aborts_retry_delay(settings, corpus) -> None:
    failing = FailingStore(ConnectionResetError("connection reset by peer"))
    coordinator, _ = _coordinator(settings, failing, retry_delay=30.0)
    coordinator.interrupt()

    started = time.monotonic()
    assert coordinator.ingest_file(corpus["a"]) is False
    assert time.monotonic() - started < 5
    assert failing.calls == 1
    assert coordinator.records.get(corpus["a"]) is None


def test_failed_files_do_not_trigger_save(settings, corpus) -> None:
    coordinator, persistence = _coordinator(settings, FailingStore(ValueError("bad request")))

    assert coordinator.ingest_all() == 0
    assert persistence.saves == 0


def test_unreadable_file_is_skipped_and_batch_continues(settings, store, corpus) -> None:
    broken = settings.documents_dir / "broken.md"
    broken.write_bytes(b"\xff\xfe\xfa not utf-8")
    coordinator, _ = _coordinator(settings, store)

    assert coordinator.ingest_all() == 2
    assert coordinator.records.get(broken) is None


def test_extension_allow_list_is_case_insensitive(settings, store) -> None:
    root = settings.documents_dir
    upper = _write(root / "nested" / "UPPER.MD", "upper case note", 1_000_000.0)
    _write(root / "slides.pdf", "not a note", 1_000_000.0)

    assert discover_documents(root, settings.file_extensions) == [upper]

    coordinator, _ = _coordinator(settings, store)
    assert coordinator.ingest_file(root / "slides.pdf") is False
    assert coordinator.ingest_file(upper) is True


def test_blank_path_is_rejected(settings, store) -> None:
    coordinator, _ = _coordinator(settings, store)
    with pytest.raises(ValidationError):
        coordinator.ingest_file("   ")


def test_on_file_changed_saves_only_after_success(settings, store, corpus) -> None:
    coordinator, persistence = _coordinator(settings, store)

    coordinator.on_file_changed(corpus["a"])
    assert persistence.saves == 1

    coordinator.on_file_changed(corpus["a"])
    assert persistence.saves == 1


def test_same_path_ingestion_is_serialised(settings, corpus) -> None:
    slow = SlowStore()
    coordinator, _ = _coordinator(settings, slow)
    results: list[bool] = []

    threads = [threading.Thread(target=lambda: results.append(coordinator.ingest_file(corpus["b"]))) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert slow.calls == 1
    assert sorted(results) == [False, True]


def test_missing_root_is_created(settings, store, tmp_path) -> None:
    missing = tmp_path / "missing"
    coordinator, persistence = _coordinator(dataclasses.replace(settings, documents_dir=missing), store)

    assert coordinator.ingest_all() == 0
    assert missing.is_dir()
    assert persistence.saves == 0


def test_get_stats_counts_recorded_paths(settings, store, corpus) -> None:
    coordinator, _ = _coordinator(settings, store)
    coordinator.ingest_all()

    stats = coordinator.get_stats()

    assert stats.processed_file_count == 2
    assert stats.documents_path == str(settings.documents_dir)


def test_helpers() -> None:
    assert infer_file_type("Notes.MARKDOWN") == "markdown"
    assert infer_file_type("todo.txt") == "text"
    assert infer_file_type("data.csv") == "unknown"
    assert is_transient_error(RuntimeError("500 Internal Server Error"))
    assert is_transient_error(RuntimeError("unexpected EOF"))
    assert is_transient_error(ConnectionResetError())
    assert not is_transient_error(ValueError("invalid argument"))
    assert is_transient_error(RuntimeError("HTTP 502: bad gateway"))


def test_transient_matching_ignores_lookalike_words_and_numbers() -> None:
    assert not is_transient_error(ValueError("the title field and the body thereof are empty"))
    assert not is_transient_error(ValueError("request of 1500 tokens exceeds the limit"))
    assert not is_transient_error(ValueError("error code 5003"))


def test_interrupt_during_retry_delay_returns_promptly(settings, corpus) -> None:
    failing = FailingStore(ConnectionResetError("connection reset by peer"))
    coordinator, _ = _coordinator(settings, failing, retry_delay=30.0)
    results: list[bool] = []
    worker = threading.Thread(target=lambda: results.append(coordinator.ingest_file(corpus["a"])))

    started = time.monotonic()
    worker.start()
    deadline = time.monotonic() + 5
    while failing.calls == 0 and time.monotonic() < deadline:
        time.sleep(0.01)
    coordinator.interrupt()
    worker.join(5)

    assert not worker.is_alive()
    assert time.monotonic() - started < 5
    assert results == [False]
    assert failing.calls == 1
    assert coordinator.records.get(corpus["a"]) is None
