from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_FILE_EXTENSIONS = (".md", ".txt", ".markdown")


class ConfigError(ValueError):
    """Raised when required config is missing or invalid."""


@dataclass(frozen=True)
class Settings:
    google_api_key: str | None
    gemini_chat_model: str
    gemini_embed_model: str
    chunk_size: int
    chunk_overlap: int
    top_k: int
    similarity_threshold: float
    documents_dir: Path
    vector_store_path: Path
    file_extensions: tuple[str, ...]
    startup_delay_s: float


def _get_int_env(key: str, default: int) -> int:
    raw = os.getenv(key, str(default))
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got: {raw}") from exc


def _get_float_env(key: str, default: float) -> float:
    raw = os.getenv(key, str(default))
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got: {raw}") from exc


def parse_extensions(raw: str) -> tuple[str, ...]:
    extensions: list[str] = []
    for item in raw.split(","):
        ext = item.strip().lower()
        if not ext:
            continue
        if not ext.startswith("."):
            ext = f".{ext}"
        if ext not in extensions:
            extensions.append(ext)
    return tuple(extensions)


def load_settings(documents_dir: Path | None = None, vector_store_path: Path | None = None) -> Settings:
    load_dotenv()
    settings = Settings(
        google_api_key=os.getenv("GOOGLE_API_KEY"),
        gemini_chat_model=os.getenv("GEMINI_CHAT_MODEL", "gemini-2.0-flash"),
        gemini_embed_model=os.getenv("GEMINI_EMBED_MODEL", "text-embedding-004"),
        chunk_size=_get_int_env("CHUNK_SIZE", 1000),
        chunk_overlap=_get_int_env("CHUNK_OVERLAP", 200),
        top_k=_get_int_env("TOP_K", 5),
        similarity_threshold=_get_float_env("SIMILARITY_THRESHOLD", 0.0),
        documents_dir=(documents_dir or Path(os.getenv("DOCUMENTS_DIR", "documents"))).resolve(),
        vector_store_path=(
            vector_store_path or Path(os.getenv("VECTOR_STORE_PATH", "data/vector_store.json"))
        ).resolve(),
        file_extensions=parse_extensions(os.getenv("FILE_EXTENSIONS", ",".join(DEFAULT_FILE_EXTENSIONS))),
        startup_delay_s=_get_float_env("STARTUP_DELAY_SECONDS", 2.0),
    )
    validate_settings(settings)
    return settings


def validate_settings(settings: Settings) -> None:
    if settings.chunk_size <= 0:
        raise ConfigError("CHUNK_SIZE must be > 0")
    if settings.chunk_overlap < 0:
        raise ConfigError("CHUNK_OVERLAP must be >= 0")
    if settings.chunk_overlap >= settings.chunk_size:
        raise ConfigError("CHUNK_OVERLAP must be smaller than CHUNK_SIZE")
    if settings.top_k <= 0:
        raise ConfigError("TOP_K must be > 0")
    if not settings.file_extensions:
        raise ConfigError("FILE_EXTENSIONS must list at least one extension")
    if settings.startup_delay_s < 0:
        raise ConfigError("STARTUP_DELAY_SECONDS must be >= 0")


def require_api_key(settings: Settings) -> None:
    if not settings.google_api_key:
        raise ConfigError("GOOGLE_API_KEY is required but not set.")
