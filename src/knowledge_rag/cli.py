from __future__ import annotations

import logging
import time
from pathlib import Path

import typer

from knowledge_rag.config import ConfigError, Settings, load_settings, require_api_key
from knowledge_rag.ingest import IngestionCoordinator
from knowledge_rag.qa import answer_question, available_models, search, stream_answer
from knowledge_rag.service import KnowledgeService
from knowledge_rag.vectorstore import SnapshotPersistence, ensure_snapshot_readable, load_vectorstore

app = typer.Typer(add_completion=False, help="Personal knowledge base RAG CLI")

DOCUMENTS_DIR_OPTION = typer.Option(None, "--documents-dir", help="Directory containing your notes.")
STORE_PATH_OPTION = typer.Option(None, "--store-path", help="Vector store snapshot file.")
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Verbose logging")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "t", "yes", "y"}:
        return True
    if lowered in {"0", "false", "f", "no", "n"}:
        return False
    raise typer.BadParameter("Use true/false for --force.")


def _load(documents_dir: Path | None, store_path: Path | None) -> Settings:
    return load_settings(documents_dir=documents_dir, vector_store_path=store_path)


@app.command()
def ingest(
    force: str = typer.Option("false", "--force", help="Re-index every file even if unchanged (true/false)."),
    documents_dir: Path | None = DOCUMENTS_DIR_OPTION,
    store_path: Path | None = STORE_PATH_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Scan the documents folder and index new or modified files."""
    _setup_logging(verbose)
    try:
        force_value = _parse_bool(force)
        settings = _load(documents_dir, store_path)
        require_api_key(settings)
        store = load_vectorstore(settings)
        coordinator = IngestionCoordinator(settings, store, SnapshotPersistence(store, settings.vector_store_path))
        count = coordinator.ingest_all(force=force_value)
        stats = coordinator.get_stats()
    except Exception as exc:  # noqa: BLE001
        typer.echo(f"Ingest failed: {exc}")
        raise typer.Exit(code=1)

    typer.echo("Ingestion complete")
    typer.echo(f"documents_processed={count}")
    typer.echo(f"indexed_files={stats.processed_file_count}")
    typer.echo(f"documents_path={stats.documents_path}")


@app.command()
def ask(
    question: str = typer.Option(..., "--question", "-q", help="Question to ask your knowledge base."),
    stream: bool = typer.Option(False, "--stream", help="Print the answer as it is generated."),
    model: str | None = typer.Option(None, "--model", help="Chat model to use for this question only."),
    documents_dir: Path | None = DOCUMENTS_DIR_OPTION,
    store_path: Path | None = STORE_PATH_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Answer a question using retrieved chunks from the index."""
    _setup_logging(verbose)
    try:
        settings = _load(documents_dir, store_path)
        if stream:
            for fragment in stream_answer(question=question, settings=settings, model=model):
                typer.echo(fragment, nl=False)
            typer.echo("")
            return
        result = answer_question(question=question, settings=settings, model=model)
    except Exception as exc:  # noqa: BLE001
        typer.echo(f"Ask failed: {exc}")
        raise typer.Exit(code=1)

    typer.echo(result.answer)
    typer.echo("")
    typer.echo("Citations:")
    if result.citations:
        for citation in result.citations:
            typer.echo(f"- {citation.filename} ({citation.path})")
    else:
        typer.echo("- None")


@app.command("search")
def search_command(
    query: str = typer.Option(..., "--query", "-q", help="Text to search for."),
    k: int = typer.Option(5, "--k", help="Number of chunks to retrieve."),
    documents_dir: Path | None = DOCUMENTS_DIR_OPTION,
    store_path: Path | None = STORE_PATH_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Show the most similar chunks without generating an answer."""
    _setup_logging(verbose)
    try:
        settings = _load(documents_dir, store_path)
        results = search(query=query, settings=settings, top_k=k)
    except Exception as exc:  # noqa: BLE001
        typer.echo(f"Search failed: {exc}")
        raise typer.Exit(code=1)

    typer.echo(f"results={len(results)}")
    for chunk in results:
        typer.echo(f"- {chunk.filename} chunk={chunk.chunk_index} score={chunk.score:.4f}")
        typer.echo(f"  {chunk.text}")


@app.command()
def models(
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Show the default chat model and the Gemini models available to this key."""
    _setup_logging(verbose)
    try:
        settings = _load(None, None)
    except Exception as exc:  # noqa: BLE001
        typer.echo(f"Models failed: {exc}")
        raise typer.Exit(code=1)

    catalog = available_models(settings)
    typer.echo(f"default_model={catalog.default_model}")
    typer.echo("Available models:")
    if catalog.models:
        for name in catalog.models:
            typer.echo(f"- {name}")
    else:
        typer.echo("- None")


@app.command()
def watch(
    documents_dir: Path | None = DOCUMENTS_DIR_OPTION,
    store_path: Path | None = STORE_PATH_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Keep the index in sync with the documents folder until interrupted."""
    _setup_logging(verbose)
    try:
        settings = _load(documents_dir, store_path)
        require_api_key(settings)
        service = KnowledgeService(settings)
    except Exception as exc:  # noqa: BLE001
        typer.echo(f"Watch failed: {exc}")
        raise typer.Exit(code=1)

    typer.echo(f"Watching {settings.documents_dir}. Press Ctrl+C to stop.")
    with service:
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            pass
    stats = service.stats()
    typer.echo(f"indexed_files={stats.indexed_file_count}")


@app.command()
def doctor(
    documents_dir: Path | None = DOCUMENTS_DIR_OPTION,
    store_path: Path | None = STORE_PATH_OPTION,
) -> None:
    """Run environment checks for API key, documents folder, and snapshot readability."""
    try:
        settings = _load(documents_dir, store_path)
        documents_dir_exists = settings.documents_dir.exists()
        if not documents_dir_exists:
            raise ConfigError(f"documents_dir does not exist: {settings.documents_dir}")
        ensure_snapshot_readable(settings)
        require_api_key(settings)
    except Exception as exc:  # noqa: BLE001
        typer.echo(f"Doctor failed: {exc}")
        raise typer.Exit(code=1)

    typer.echo("Doctor checks passed")
    typer.echo("GOOGLE_API_KEY=set")
    typer.echo(f"documents_dir={settings.documents_dir} exists={documents_dir_exists}")
    typer.echo(f"vector_store={settings.vector_store_path} exists={settings.vector_store_path.exists()}")
    typer.echo(f"file_extensions={','.join(settings.file_extensions)}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
