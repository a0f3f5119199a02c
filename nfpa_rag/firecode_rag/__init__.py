"""
Fire-code Hybrid Retrieval
==========================

This package indexes the NFPA 13 (2022) and NFPA 13R code texts and
retrieves page-level context for a question-answering assistant, so
every answer can cite the exact pages it came from.

Ingestion turns each PDF page into overlapping text chunks, embeds
them with an OpenAI embedding model and writes a flat JSON index.  At
query time every chunk is scored with a mix of embedding similarity
and keyword overlap, scores are rolled up to pages, adjacent pages are
pulled in (tables often straddle a page break) and the chunks of the
chosen pages are concatenated into a bounded context string.

Modules
-------

- :mod:`utils`: chunk and page records, text sanitising, chunking and
  PDF page extraction.
- :mod:`embedding`: a strict wrapper around OpenAI's embedding API.
- :mod:`index_store`: loading, validating and caching ``index.json``.
- :mod:`scoring`: cosine, keyword and combined chunk scores.
- :mod:`hybrid_retrieval`: page selection, neighbour expansion and
  context assembly.
- :mod:`main`: ingestion and answer generation.

Example
-------

>>> from firecode_rag.main import initialise_rag
>>> client = initialise_rag()
>>> answer = client.generate_answer("Maximum span for a 2 in. main on a trapeze?")
>>> for hit in answer.citations:
...     print(hit.source, hit.page)
"""

from .embedding import EmbeddingModel
from .errors import (
    AlignmentError,
    AllFilteredError,
    DimensionMismatchError,
    EmbeddingServiceError,
    EmptyIndexError,
    EmptyInputError,
    IndexNotFoundError,
    MalformedIndexError,
    NoValidEmbeddingsError,
    RetrievalError,
)
from .hybrid_retrieval import HybridRetriever, build_context, hybrid_pages, with_neighbors
from .index_store import IndexSnapshot, IndexStore
from .utils import Chunk, PageHit, chunk_pages, sanitize_text
