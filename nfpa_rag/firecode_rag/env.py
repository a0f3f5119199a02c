"""Environment configuration helpers for the fire-code RAG system."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Union

_ENV_LOADED = False

PROJECT_ROOT = Path(__file__).resolve().parents[1]
DATA_DIR = PROJECT_ROOT / "data"


def load_env(path: Optional[Union[str, Path]] = None) -> None:
    """Load KEY=VALUE pairs from a .env file into ``os.environ``.

    Values already present in the environment win over the file.
    """
    global _ENV_LOADED
    if _ENV_LOADED:
        return
    candidate = Path(path) if path is not None else PROJECT_ROOT / ".env"
    try:
        with candidate.open("r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip()
                if not key:
                    continue
                if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
                    value = value[1:-1]
                os.environ.setdefault(key, value)
    except FileNotFoundError:
        pass
    _ENV_LOADED = True


@dataclass(frozen=True)
class Settings:
    """Runtime configuration read from environment variables.

    Attributes
    ----------
    embed_model : str
        Embedding model name.  Must match the model used during ingest.
    chat_model : str
        Chat completion model used to answer questions.
    index_path : Path
        Location of the persisted JSON index.
    api_key : str, optional
        OpenAI API key.
    base_url : str, optional
        Base URL of an OpenAI-compatible endpoint.
    timeout : float
        Per-request timeout in seconds for service calls.
    pdf_13_path, pdf_13r_path : Path
        Source PDFs read by the ingestion pipeline.
    """

    embed_model: str = "text-embedding-3-small"
    chat_model: str = "gpt-4o-mini"
    index_path: Path = DATA_DIR / "index.json"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    timeout: float = 30.0
    pdf_13_path: Path = DATA_DIR / "NFPA_13-2022.pdf"
    pdf_13r_path: Path = DATA_DIR / "NFPA_13R.pdf"


def get_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from ``environ`` (defaults to ``os.environ``)."""
    if environ is None:
        load_env()
        environ = os.environ
    defaults = Settings()

    def _path(name: str, default: Path) -> Path:
        value = environ.get(name)
        return Path(value).expanduser().resolve() if value else default

    timeout_raw = environ.get("OPENAI_TIMEOUT")
    try:
        timeout = float(timeout_raw) if timeout_raw else defaults.timeout
    except ValueError as exc:
        raise ValueError(f"OPENAI_TIMEOUT must be a number of seconds, got {timeout_raw!r}") from exc

    return Settings(
        embed_model=environ.get("OPENAI_EMBED_MODEL") or defaults.embed_model,
        chat_model=environ.get("OPENAI_CHAT_MODEL") or defaults.chat_model,
        index_path=_path("INDEX_PATH", defaults.index_path),
        api_key=environ.get("OPENAI_API_KEY") or None,
        base_url=environ.get("OPENAI_BASE_URL") or None,
        timeout=timeout,
        pdf_13_path=_path("PDF_13_PATH", defaults.pdf_13_path),
        pdf_13r_path=_path("PDF_13R_PATH", defaults.pdf_13r_path),
    )
