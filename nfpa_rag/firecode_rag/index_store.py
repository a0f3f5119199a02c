"""
index_store.py
--------------

Loading, validating and caching the persisted chunk index.

The index is a flat JSON array written once by ingestion.  At load
time malformed rows are dropped rather than failing the whole corpus:
the embedding service occasionally returns junk, and a handful of bad
rows should not take the assistant offline.  The index is only
rejected when nothing usable remains.

:class:`IndexStore` owns the cached chunks, their dimension and the
embedding matrix, kept together as one :class:`IndexSnapshot`.  Build
one store per process and hand it to the retriever; the first caller of
:meth:`IndexStore.load` reads the file and every later caller gets the
same cached list.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, FrozenSet, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np  # type: ignore

from .errors import (
    AllFilteredError,
    ChunkValidationError,
    EmptyIndexError,
    IndexNotFoundError,
    MalformedIndexError,
    NoValidEmbeddingsError,
)
from .utils import Chunk

logger = logging.getLogger(__name__)


def _first_dimension(rows: Sequence[Any]) -> Optional[int]:
    for row in rows:
        embedding = row.get("embedding") if isinstance(row, dict) else None
        if isinstance(embedding, list) and embedding:
            return len(embedding)
    return None


def validate_rows(rows: Any) -> Tuple[List[Chunk], int, int]:
    """Decode raw JSON rows into chunks.

    Returns
    -------
    (chunks, dimension, dropped)
        The surviving chunks, the index dimension and how many rows
        were filtered out.
    """
    if not isinstance(rows, list) or not rows:
        raise EmptyIndexError("index.json is empty or malformed.")
    dim = _first_dimension(rows)
    if dim is None:
        raise NoValidEmbeddingsError("index.json has no valid embeddings.")
    chunks: List[Chunk] = []
    for position, row in enumerate(rows):
        try:
            chunk = Chunk.from_dict(row)
        except ChunkValidationError as exc:
            logger.debug("Dropping index row %d: %s", position, exc)
            continue
        if len(chunk.embedding) != dim:
            logger.debug(
                "Dropping index row %d: embedding length %d != %d",
                position, len(chunk.embedding), dim,
            )
            continue
        chunks.append(chunk)
    if not chunks:
        raise AllFilteredError("index.json had embeddings, but none passed validation.")
    return chunks, dim, len(rows) - len(chunks)


class IndexSnapshot(NamedTuple):
    """One consistent view of the loaded index."""

    chunks: List[Chunk]
    dimension: int
    matrix: np.ndarray
    page_keys: FrozenSet[Tuple[str, int]]


class IndexStore:
    """Process-wide, read-only cache of the persisted index.

    Parameters
    ----------
    path : str or Path
        Location of the JSON index written by ingestion.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._snapshot: Optional[IndexSnapshot] = None

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    def _read_rows(self) -> Any:
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError as exc:
            raise IndexNotFoundError(
                f"Index not found at {self.path}. Run ingestion first."
            ) from exc
        except ValueError as exc:
            raise EmptyIndexError("index.json is empty or malformed.") from exc

    def snapshot(self) -> IndexSnapshot:
        """Return chunks, dimension, matrix and page keys from the same load.

        Raises
        ------
        IndexNotFoundError
            If the index file does not exist.
        EmptyIndexError, NoValidEmbeddingsError, AllFilteredError
            If the file cannot produce a usable index.
        """
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot
        with self._lock:
            if self._snapshot is None:
                chunks, dim, dropped = validate_rows(self._read_rows())
                if dropped:
                    logger.warning(
                        "Filtered out %d chunks with invalid embeddings/dimensions.", dropped
                    )
                logger.info("Loaded %d chunks (dim=%d) from %s", len(chunks), dim, self.path)
                self._snapshot = IndexSnapshot(
                    chunks=chunks,
                    dimension=dim,
                    matrix=np.array([c.embedding for c in chunks], dtype="float64"),
                    page_keys=frozenset(chunk.key for chunk in chunks),
                )
            return self._snapshot

    def load(self) -> List[Chunk]:
        """Return the validated index, reading it from disk on first use."""
        return self.snapshot().chunks

    def dimension(self, index: Optional[Sequence[Chunk]] = None) -> int:
        """Embedding dimension of the index.

        Falls back to the first chunk of ``index`` when :meth:`load`
        has not run yet.
        """
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot.dimension
        first = index[0] if index else None
        dim = len(first.embedding) if first is not None and first.embedding else 0
        if not dim:
            raise MalformedIndexError("index.json has no embeddings or is malformed.")
        return dim

    def embedding_matrix(self) -> np.ndarray:
        """The loaded embeddings as an ``(N, D)`` float64 array."""
        return self.snapshot().matrix

    def page_keys(self) -> FrozenSet[Tuple[str, int]]:
        """Every ``(source, page)`` that has at least one chunk."""
        return self.snapshot().page_keys

    def invalidate(self) -> None:
        """Forget the cached index so the next :meth:`load` rereads the file."""
        with self._lock:
            self._snapshot = None


def write_index(path: Union[str, Path], chunks: Sequence[Chunk]) -> Path:
    """Persist ``chunks`` as a JSON array, replacing any existing index.

    The array is written to a temporary file beside ``path`` and moved
    into place, so readers never see a partially written index.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = [chunk.to_dict() for chunk in chunks]
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh)
        os.replace(tmp_name, target)
    except Exception:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.info("Index saved to %s (%d chunks)", target, len(payload))
    return target
