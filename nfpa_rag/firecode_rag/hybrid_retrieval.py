"""
hybrid_retrieval.py
-------------------

This module turns chunk-level scores into the page-level context that
is handed to the chat model.  Retrieval works on *pages* rather than
chunks because answers are cited by page, and because code tables
often spread over a caption page and one or two data pages.

Key pieces defined here:

- :func:`hybrid_pages`: scores every chunk (see :mod:`scoring`), keeps
  the best chunk per ``(source, page)`` and returns the top pages.
- :func:`with_neighbors`: pulls in adjacent pages with a slightly
  discounted score so split tables are not lost.
- :func:`build_context`: concatenates the chunks of the selected pages
  in document order under a character budget.
- :class:`HybridRetriever`: ties the above to an :class:`IndexStore`
  and an :class:`EmbeddingModel`.

Everything except the query embedding is pure and read-only, so a
single retriever can serve concurrent requests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AbstractSet, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np  # type: ignore

from .embedding import EmbeddingModel
from .errors import DimensionMismatchError
from .index_store import IndexStore
from .scoring import combine, cosine, keyword_score, semantic_scores
from .utils import Chunk, PageHit

logger = logging.getLogger(__name__)

DEFAULT_PAGES_WANTED = 4
DEFAULT_RADIUS = 1
DEFAULT_MAX_CHARS = 18000
NEIGHBOR_DECAY = 0.05
CONTEXT_DELIMITER = "\n\n---\n\n"


def top_k_chunks(
    index: Sequence[Chunk], query_embedding: Sequence[float], k: int
) -> List[Tuple[Chunk, float]]:
    """Plain cosine top-k over chunks, without lexical scoring or roll-up."""
    scored = [(chunk, cosine(query_embedding, chunk.embedding)) for chunk in index]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored[:k]


def hybrid_pages(
    index: Sequence[Chunk],
    query_embedding: Sequence[float],
    query_text: str,
    pages_wanted: int = DEFAULT_PAGES_WANTED,
    *,
    matrix: Optional[np.ndarray] = None,
) -> List[PageHit]:
    """Select the best pages for a query.

    Parameters
    ----------
    index : sequence of Chunk
        The loaded index.
    query_embedding : sequence of float
        Embedding of the question.
    query_text : str
        The question, used for keyword scoring.
    pages_wanted : int, optional
        Maximum number of pages to return.
    matrix : np.ndarray, optional
        Precomputed ``(N, D)`` embedding matrix matching ``index``.

    Returns
    -------
    list of PageHit
        At most ``pages_wanted`` distinct pages, best first.  A page's
        score is that of its best chunk; equal scores keep index order.
    """
    if not index or pages_wanted <= 0:
        return []
    if matrix is None:
        matrix = np.array([chunk.embedding for chunk in index], dtype="float64")
    elif len(matrix) != len(index):
        raise ValueError(
            f"Embedding matrix has {len(matrix)} rows for {len(index)} chunks."
        )
    semantic = semantic_scores(matrix, query_embedding)

    by_page: Dict[Tuple[str, int], PageHit] = {}
    for chunk, sem in zip(index, semantic):
        score = combine(float(sem), keyword_score(chunk.text, query_text))
        current = by_page.get(chunk.key)
        if current is None or score > current.score:
            by_page[chunk.key] = PageHit(chunk.source, chunk.page, score)

    # dicts keep first-seen order and sorted() is stable
    ranked = sorted(by_page.values(), key=lambda hit: hit.score, reverse=True)
    return ranked[:pages_wanted]


def with_neighbors(
    pages: Iterable[PageHit],
    radius: int = DEFAULT_RADIUS,
    *,
    existing: Optional[AbstractSet[Tuple[str, int]]] = None,
) -> List[PageHit]:
    """Add pages within ``radius`` of each hit, discounted by distance.

    A neighbour ``d`` pages away scores ``max(0, score * (1 - |d| * 0.05))``.
    Pages reachable several ways keep their best score.  Page numbers
    below 1 are skipped, as are neighbours not in ``existing`` when it
    is given.
    """
    out: Dict[Tuple[str, int], PageHit] = {}

    def _offer(hit: PageHit) -> None:
        current = out.get(hit.key)
        if current is None or hit.score > current.score:
            out[hit.key] = hit

    for hit in pages:
        _offer(hit)
        for offset in range(-radius, radius + 1):
            if offset == 0:
                continue
            page = hit.page + offset
            if page <= 0:
                continue
            if existing is not None and (hit.source, page) not in existing:
                continue
            score = max(0.0, hit.score * (1 - abs(offset) * NEIGHBOR_DECAY))
            _offer(PageHit(hit.source, page, score))
    return sorted(out.values(), key=lambda hit: hit.score, reverse=True)


def build_context(
    index: Sequence[Chunk],
    pages: Iterable[PageHit],
    max_chars: int = DEFAULT_MAX_CHARS,
) -> str:
    """Concatenate chunks of the selected pages into one context string.

    Chunks are emitted in index order so a table spanning several pages
    reads top to bottom.  Appending stops once the joined text is longer
    than ``max_chars``; the block that crossed the budget is kept.
    """
    wanted = {hit.key for hit in pages}
    parts: List[str] = []
    length = 0
    for chunk in index:
        if chunk.key not in wanted:
            continue
        block = f"SOURCE: {chunk.source} p.{chunk.page}\n{chunk.text}"
        length += len(block) + (len(CONTEXT_DELIMITER) if parts else 0)
        parts.append(block)
        if length > max_chars:
            break
    return CONTEXT_DELIMITER.join(parts)


@dataclass
class RetrievalResult:
    """Output of one retrieval.

    Attributes
    ----------
    hits : list of PageHit
        Primary pages chosen by :func:`hybrid_pages`.
    pages : list of PageHit
        ``hits`` plus neighbour pages; these are the pages in ``context``.
    context : str
        Assembled context for the chat model.
    """

    hits: List[PageHit] = field(default_factory=list)
    pages: List[PageHit] = field(default_factory=list)
    context: str = ""

    @property
    def empty(self) -> bool:
        return not self.pages


class HybridRetriever:
    """Answer-time retrieval over a loaded :class:`IndexStore`."""

    def __init__(self, store: IndexStore, embedder: EmbeddingModel) -> None:
        self.store = store
        self.embedder = embedder

    def retrieve(
        self,
        question: str,
        *,
        pages_wanted: int = DEFAULT_PAGES_WANTED,
        radius: int = DEFAULT_RADIUS,
        max_chars: int = DEFAULT_MAX_CHARS,
    ) -> RetrievalResult:
        """Embed ``question`` and gather the context pages for it.

        Raises
        ------
        DimensionMismatchError
            If the query embedding does not match the index dimension.
        """
        dim = self.store.snapshot().dimension
        query_embedding = self.embedder.embed_query(question)
        return self.retrieve_with_embedding(
            query_embedding,
            question,
            index_dim=dim,
            pages_wanted=pages_wanted,
            radius=radius,
            max_chars=max_chars,
        )

    def retrieve_with_embedding(
        self,
        query_embedding: Sequence[float],
        question: str,
        *,
        index_dim: Optional[int] = None,
        pages_wanted: int = DEFAULT_PAGES_WANTED,
        radius: int = DEFAULT_RADIUS,
        max_chars: int = DEFAULT_MAX_CHARS,
    ) -> RetrievalResult:
        snapshot = self.store.snapshot()
        index = snapshot.chunks
        dim = index_dim or snapshot.dimension
        if len(query_embedding) != dim:
            raise DimensionMismatchError(index_dim=dim, query_dim=len(query_embedding))
        hits = hybrid_pages(
            index,
            query_embedding,
            question,
            pages_wanted,
            matrix=snapshot.matrix,
        )
        pages = with_neighbors(hits, radius, existing=snapshot.page_keys)
        if not pages:
            logger.info("No relevant pages found for query")
            return RetrievalResult()
        context = build_context(index, pages, max_chars)
        logger.info(
            "Selected %d pages (%d primary), context %d chars",
            len(pages), len(hits), len(context),
        )
        return RetrievalResult(hits=hits, pages=pages, context=context)
