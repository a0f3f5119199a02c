"""
utils.py
--------

Records shared by ingestion and retrieval, plus the helpers that turn
raw PDF pages into sanitised, overlapping chunks.  Keeping these
utilities in a separate module allows them to be reused or replaced
independently of the scoring and retrieval logic.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Tuple, Union

import pdfplumber

from .errors import ChunkValidationError

logger = logging.getLogger(__name__)

MAX_TEXT_CHARS = 12000
DEFAULT_CHUNK_CHARS = 1200
OVERLAP_FRACTION = 0.2

# Document name -> chunk id prefix.
KNOWN_SOURCES: Dict[str, str] = {
    "NFPA 13-2022": "13",
    "NFPA 13R": "13R",
}

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class Chunk:
    """A bounded slice of page text with its embedding and provenance.

    Attributes
    ----------
    id : str
        Identifier unique within one ingestion run (e.g. ``13R-42``).
    source : str
        Document name, one of :data:`KNOWN_SOURCES` for ingested corpora.
    page : int
        1-based page number within ``source``.
    text : str
        Sanitised chunk text.
    embedding : list of float
        Embedding vector; every chunk of an index has the same length.
    """

    id: str
    source: str
    page: int
    text: str
    embedding: List[float] = field(default_factory=list, repr=False)

    @property
    def key(self) -> Tuple[str, int]:
        return (self.source, self.page)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, row: Any) -> "Chunk":
        """Decode one persisted row, raising :class:`ChunkValidationError` if unusable."""
        if not isinstance(row, Mapping):
            raise ChunkValidationError(f"row is not an object: {type(row).__name__}")
        text = row.get("text")
        if not isinstance(text, str) or not text:
            raise ChunkValidationError("text must be a non-empty string")
        page = row.get("page")
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise ChunkValidationError(f"page must be a positive integer, got {page!r}")
        source = row.get("source")
        if not isinstance(source, str) or not source:
            raise ChunkValidationError("source must be a non-empty string")
        embedding = row.get("embedding")
        if not isinstance(embedding, list) or not embedding:
            raise ChunkValidationError("embedding must be a non-empty array")
        try:
            vector = [float(x) for x in embedding]
        except (TypeError, ValueError) as exc:
            raise ChunkValidationError("embedding must contain only numbers") from exc
        return cls(
            id=str(row.get("id", "")),
            source=source,
            page=page,
            text=text,
            embedding=vector,
        )


@dataclass(frozen=True)
class PageHit:
    """A page-level retrieval result; created per query and never persisted."""

    source: str
    page: int
    score: float

    @property
    def key(self) -> Tuple[str, int]:
        return (self.source, self.page)


def sanitize_text(text: Any) -> str:
    """Normalise extracted text for embedding and keyword matching.

    Control characters become spaces, whitespace runs collapse to one
    space, the ends are trimmed and the result is capped at
    :data:`MAX_TEXT_CHARS` characters.  ``None`` yields ``""``.
    """
    if text is None:
        return ""
    cleaned = _CONTROL_CHARS.sub(" ", str(text))
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    return cleaned[:MAX_TEXT_CHARS]


def chunk_pages(
    pages: Iterable[Tuple[int, str]], max_len: int = DEFAULT_CHUNK_CHARS
) -> List[Dict[str, Any]]:
    """Split per-page text into overlapping chunks of roughly ``max_len`` characters.

    Tokens are accumulated greedily; once the joined buffer is longer
    than ``max_len`` it is emitted and the buffer restarts from its last
    20% of tokens, so consecutive chunks of a page overlap slightly.
    Chunks never cross a page boundary.

    Parameters
    ----------
    pages : iterable of (int, str)
        ``(page_number, text)`` pairs in document order.
    max_len : int, optional
        Character threshold that triggers emitting a chunk.

    Returns
    -------
    list of dict
        ``{"page": int, "text": str}`` in reading order.
    """
    chunks: List[Dict[str, Any]] = []
    for page, text in pages:
        buffer: List[str] = []
        for token in (text or "").split():
            buffer.append(token)
            joined = " ".join(buffer)
            if len(joined) > max_len:
                chunks.append({"page": page, "text": joined})
                keep = int(len(buffer) * OVERLAP_FRACTION)
                buffer = buffer[len(buffer) - keep:] if keep else []
        if buffer:
            chunks.append({"page": page, "text": " ".join(buffer)})
    return chunks


def extract_pages(path: Union[str, Path]) -> List[Tuple[int, str]]:
    """Extract raw text for every page of a PDF, in document order.

    Blank pages are returned with empty text so page numbers stay
    contiguous from 1.
    """
    pages: List[Tuple[int, str]] = []
    with pdfplumber.open(str(path)) as pdf:
        for number, page in enumerate(pdf.pages, start=1):
            pages.append((number, page.extract_text() or ""))
    logger.info("Extracted %d pages from %s", len(pages), path)
    return pages
