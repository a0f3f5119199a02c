"""
scoring.py
----------

Per-chunk relevance scores used by the hybrid page selector.

Two independent signals are computed for every chunk:

- a *semantic* score, the cosine similarity between the query and
  chunk embeddings rescaled from ``[-1, 1]`` to ``[0, 1]``;
- a *lexical* score, the fraction of (expanded) query tokens that
  occur in the chunk text.

They are combined as ``0.7 * semantic + 0.3 * lexical``.  Fire-code
tables are dense with numbers and short labels that embeddings barely
tell apart, so exact vocabulary hits such as ``trapeze`` or ``8"`` are
what break ties between otherwise similar pages.
"""

from __future__ import annotations

import re
from typing import List, Sequence

import numpy as np  # type: ignore

SEMANTIC_WEIGHT = 0.7
LEXICAL_WEIGHT = 0.3

_NON_TOKEN = re.compile(r'[^a-z0-9\-". ]+')

# Applied in order to the raw question before tokenising.
_QUERY_EXPANSIONS = [
    (re.compile(r'\b(\d+)\s*("|inches|inch|in)\b', re.IGNORECASE), r'\1"'),
    (re.compile(r"\btrapeze\b", re.IGNORECASE), "trapeze hanger support"),
    (re.compile(r"\bmain\b", re.IGNORECASE), "pipe piping main"),
    (re.compile(r"\bspan\b", re.IGNORECASE), "span spacing distance"),
    (re.compile(r"\btable\b", re.IGNORECASE), "table"),
]


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm."""
    va = np.asarray(a, dtype="float64")
    vb = np.asarray(b, dtype="float64")
    denom = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def semantic_score(query_embedding: Sequence[float], embedding: Sequence[float]) -> float:
    return (cosine(query_embedding, embedding) + 1) / 2


def semantic_scores(matrix: np.ndarray, query_embedding: Sequence[float]) -> np.ndarray:
    """Vectorised :func:`semantic_score` of a query against every row of ``matrix``."""
    q = np.asarray(query_embedding, dtype="float64")
    if matrix.size == 0:
        return np.zeros(matrix.shape[0], dtype="float64")
    denom = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    dots = matrix @ q
    cos = np.divide(dots, denom, out=np.zeros_like(dots, dtype="float64"), where=denom != 0)
    return (cos + 1) / 2


def tokenize(text: str) -> List[str]:
    """Loose tokenisation: lowercase, keep ``a-z0-9-". `` and split on whitespace."""
    return _NON_TOKEN.sub(" ", str(text or "").lower()).split()


def expand_query(query: str) -> str:
    """Normalise inch notations and add domain synonyms to a question."""
    expanded = str(query or "")
    for pattern, replacement in _QUERY_EXPANSIONS:
        expanded = pattern.sub(replacement, expanded)
    return expanded


def keyword_score(text: str, query: str) -> float:
    """Share of expanded query tokens present in ``text``, in ``[0, 1]``."""
    q_tokens = tokenize(expand_query(query))
    if not q_tokens:
        return 0.0
    text_tokens = set(tokenize(text))
    hits = sum(1 for token in q_tokens if token in text_tokens)
    return hits / len(q_tokens)


def combine(semantic: float, lexical: float) -> float:
    return SEMANTIC_WEIGHT * semantic + LEXICAL_WEIGHT * lexical


def hybrid_score(
    query_embedding: Sequence[float],
    query_text: str,
    embedding: Sequence[float],
    text: str,
) -> float:
    """Combined relevance of one chunk for a query."""
    return combine(semantic_score(query_embedding, embedding), keyword_score(text, query_text))
