from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterator

import google.generativeai as genai
from langchain_google_genai import ChatGoogleGenerativeAI

from knowledge_rag.config import Settings, require_api_key
from knowledge_rag.errors import GenerationFault, ValidationError
from knowledge_rag.models import Citation, ModelCatalog, RagAnswer, RetrievedChunk
from knowledge_rag.retriever import retrieve_chunks

LOGGER = logging.getLogger(__name__)

PROMPT_PATH = Path(__file__).parent / "prompts" / "system_prompt.txt"
PREVIEW_CHARS = 200
FALLBACK_ANSWER = (
    "I couldn't find any relevant information in your knowledge base to answer this question. "
    "Please make sure you have documents indexed, or try rephrasing your question."
)


def _load_prompt_template() -> str:
    return PROMPT_PATH.read_text(encoding="utf-8")


def _require_text(value: str | None, name: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{name} must not be blank")
    return value


def build_chat_model(settings: Settings, model: str | None = None) -> ChatGoogleGenerativeAI:
    require_api_key(settings)
    return ChatGoogleGenerativeAI(
        model=model or settings.gemini_chat_model,
        google_api_key=settings.google_api_key,
        temperature=0.1,
    )


def _resolve_model(settings: Settings, model: str | None) -> str:
    return model.strip() if model and model.strip() else settings.gemini_chat_model


def list_chat_models(settings: Settings) -> list[str]:
    """Names of the Gemini models that support content generation."""
    require_api_key(settings)
    genai.configure(api_key=settings.google_api_key)
    names: list[str] = []
    for model in genai.list_models():
        if "generateContent" in getattr(model, "supported_generation_methods", ()):
            names.append(model.name.removeprefix("models/"))
    return sorted(names)


def available_models(settings: Settings) -> ModelCatalog:
    try:
        names = list_chat_models(settings)
    except Exception as exc:  # noqa: BLE001
        LOGGER.error("Failed to list chat models: %s", exc)
        names = []
    return ModelCatalog(default_model=settings.gemini_chat_model, models=names)


def _build_context(chunks: list[RetrievedChunk]) -> str:
    parts: list[str] = []
    for chunk in chunks:
        parts.append(f"[Source: {chunk.filename} (chunk {chunk.chunk_index})]\n{chunk.text}")
    return "\n\n".join(parts)


def build_system_prompt(chunks: list[RetrievedChunk]) -> str:
    return _load_prompt_template().format(context=_build_context(chunks))


def build_citations(chunks: list[RetrievedChunk]) -> list[Citation]:
    """One citation per distinct (filename, path), in retrieval order."""
    seen: set[tuple[str, str]] = set()
    citations: list[Citation] = []
    for chunk in chunks:
        key = (chunk.filename, chunk.source)
        if key in seen:
            continue
        seen.add(key)
        citations.append(Citation(filename=chunk.filename, path=chunk.source, preview=chunk.text[:PREVIEW_CHARS]))
    return citations


def _extract_text(response: object, sep: str = "\n") -> str:
    content = getattr(response, "content", "")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        joined: list[str] = []
        for item in content:
            if isinstance(item, str):
                joined.append(item)
            elif isinstance(item, dict) and "text" in item:
                joined.append(str(item["text"]))
        return sep.join(joined)
    return str(response)


def _messages(system_prompt: str, question: str) -> list[tuple[str, str]]:
    return [("system", system_prompt), ("human", question)]


def answer_question(
    question: str,
    settings: Settings,
    model: str | None = None,
    vectorstore: Any | None = None,
    llm: Any | None = None,
) -> RagAnswer:
    _require_text(question, "question")
    model_name = _resolve_model(settings, model)
    LOGGER.info("Processing question with model '%s': %s", model_name, question)

    chunks = retrieve_chunks(question=question, settings=settings, vectorstore=vectorstore)
    LOGGER.debug("Found %d relevant chunks", len(chunks))
    if not chunks:
        return RagAnswer(answer=FALLBACK_ANSWER, citations=[], question=question)

    system_prompt = build_system_prompt(chunks)
    chat = llm if llm is not None else build_chat_model(settings, model=model_name)
    try:
        response = chat.invoke(_messages(system_prompt, question))
    except Exception as exc:  # noqa: BLE001
        raise GenerationFault(f"Answer generation failed: {exc}") from exc

    citations = build_citations(chunks)
    LOGGER.info("Generated response using %d source documents", len(citations))
    return RagAnswer(answer=_extract_text(response).strip(), citations=citations, question=question)


def stream_answer(
    question: str,
    settings: Settings,
    model: str | None = None,
    vectorstore: Any | None = None,
    llm: Any | None = None,
) -> Iterator[str]:
    """Answer ``question`` as an iterator of text fragments.

    Validation and retrieval happen before this returns; generation starts on
    the first ``next()``. ``model`` overrides the chat model for this call
    only. Closing the iterator closes the upstream model stream.
    """
    _require_text(question, "question")
    model_name = _resolve_model(settings, model)
    LOGGER.info("Processing streaming question with model '%s': %s", model_name, question)

    chunks = retrieve_chunks(question=question, settings=settings, vectorstore=vectorstore)
    LOGGER.debug("Found %d relevant chunks for streaming", len(chunks))
    if not chunks:
        return iter([FALLBACK_ANSWER])

    system_prompt = build_system_prompt(chunks)
    chat = llm if llm is not None else build_chat_model(settings, model=model_name)
    return _stream_fragments(chat, _messages(system_prompt, question))


def _stream_fragments(chat: Any, messages: list[tuple[str, str]]) -> Iterator[str]:
    try:
        upstream = chat.stream(messages)
    except Exception as exc:  # noqa: BLE001
        raise GenerationFault(f"Answer streaming failed: {exc}") from exc
    try:
        for piece in upstream:
            text = _extract_text(piece, sep="")
            if text:
                yield text
    except Exception as exc:  # noqa: BLE001
        raise GenerationFault(f"Answer streaming failed: {exc}") from exc
    finally:
        close = getattr(upstream, "close", None)
        if close is not None:
            close()


def search(
    query: str,
    settings: Settings,
    top_k: int,
    vectorstore: Any | None = None,
) -> list[RetrievedChunk]:
    _require_text(query, "query")
    if top_k <= 0:
        raise ValidationError("top_k must be > 0")
    return retrieve_chunks(question=query, settings=settings, k=top_k, vectorstore=vectorstore)
