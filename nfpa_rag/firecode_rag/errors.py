"""
errors.py
---------

Typed failures raised by the indexing and retrieval code.  Everything
derives from :class:`RetrievalError` so callers that only care about
"retrieval went wrong" can catch a single type, while the concrete
subclasses let them tell an unusable index apart from an embedding
service outage.
"""

from __future__ import annotations


class RetrievalError(Exception):
    """Base class for all errors raised by :mod:`firecode_rag`."""


class EmptyInputError(RetrievalError, ValueError):
    """Raised when there is nothing left to embed after sanitisation."""


class AlignmentError(RetrievalError):
    """The embedding service returned a different number of vectors than requested."""

    def __init__(self, expected: int, received: int) -> None:
        self.expected = expected
        self.received = received
        super().__init__(
            f"Embedding API returned unexpected size: got {received}, expected {expected}"
        )


class EmbeddingServiceError(RetrievalError):
    """The embedding service failed or answered with a malformed payload."""


class EmbeddingTimeoutError(EmbeddingServiceError):
    """The embedding request did not complete within the configured timeout."""


class CompletionError(RetrievalError):
    """The chat completion service returned no usable answer."""


class MissingDocumentError(RetrievalError, FileNotFoundError):
    """A source PDF required for ingestion could not be found."""


class IndexLoadError(RetrievalError):
    """Base class for failures while loading the persisted index."""


class IndexNotFoundError(IndexLoadError, FileNotFoundError):
    """The index file does not exist; run ingestion first."""


class EmptyIndexError(IndexLoadError):
    """The index file does not contain a non-empty array."""


class NoValidEmbeddingsError(IndexLoadError):
    """No chunk in the index carries a non-empty embedding."""


class AllFilteredError(IndexLoadError):
    """Every chunk was dropped by validation."""


class MalformedIndexError(IndexLoadError):
    """The index dimension cannot be determined."""


class ChunkValidationError(ValueError):
    """A single index row could not be decoded into a :class:`Chunk`."""


class DimensionMismatchError(RetrievalError):
    """The query embedding length differs from the index dimension.

    This almost always means the index was built with a different
    embedding model than the one configured at query time.
    """

    def __init__(self, index_dim: int, query_dim: int) -> None:
        self.index_dim = index_dim
        self.query_dim = query_dim
        super().__init__(
            f"Embedding dimension mismatch. Index dim={index_dim}, query dim={query_dim}. "
            "Re-ingest with the same OPENAI_EMBED_MODEL used at runtime."
        )
