"""
embedding.py
------------

This module defines the :class:`EmbeddingModel` class which wraps
OpenAI's embedding API.  It is responsible for converting chunk text
and user questions into dense vectors.

The index stores chunks and their vectors as strictly parallel arrays,
so this wrapper is deliberately unforgiving: a response whose length
differs from the request aborts the batch with :class:`AlignmentError`
and no request is retried behind the caller's back.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, List, Optional, Sequence

import openai
from openai import OpenAI

from .env import Settings, get_settings
from .errors import (
    AlignmentError,
    EmbeddingServiceError,
    EmbeddingTimeoutError,
    EmptyInputError,
)
from .utils import sanitize_text

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 64


class EmbeddingModel:
    """Compute embeddings through an OpenAI-compatible endpoint.

    Parameters
    ----------
    model_name : str, optional
        Embedding model.  Defaults to ``OPENAI_EMBED_MODEL`` or
        ``text-embedding-3-small``.  Must match the model used at
        ingestion time.
    settings : Settings, optional
        Configuration to use instead of reading the environment.
    client : OpenAI, optional
        A preconfigured client.  When omitted one is created lazily on
        first use with ``max_retries=0`` and the configured timeout.
    """

    def __init__(
        self,
        model_name: Optional[str] = None,
        *,
        settings: Optional[Settings] = None,
        client: Optional[Any] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.model_name = model_name or self.settings.embed_model
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = OpenAI(
                api_key=self.settings.api_key,
                base_url=self.settings.base_url,
                timeout=self.settings.timeout,
                max_retries=0,
            )
        return self._client

    def _create(self, payload: Any) -> Any:
        try:
            return self.client.embeddings.create(model=self.model_name, input=payload)
        except openai.APITimeoutError as exc:
            raise EmbeddingTimeoutError(
                f"Embedding request timed out after {self.settings.timeout}s (model={self.model_name})."
            ) from exc
        except openai.OpenAIError as exc:
            raise EmbeddingServiceError(
                f"Embedding request failed (model={self.model_name}): {exc}"
            ) from exc

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed one batch in a single request.

        Raises
        ------
        AlignmentError
            If the service returns a different number of vectors.
        """
        if not texts:
            return []
        response = self._create(list(texts))
        data = list(getattr(response, "data", None) or [])
        if len(data) != len(texts):
            raise AlignmentError(expected=len(texts), received=len(data))
        ordered = sorted(data, key=lambda item: getattr(item, "index", 0))
        vectors: List[List[float]] = []
        for item in ordered:
            vector = getattr(item, "embedding", None)
            if not vector:
                raise EmbeddingServiceError(
                    f"Embedding API returned an item with no 'embedding' array (model={self.model_name})."
                )
            vectors.append(list(vector))
        return vectors

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_workers: int = 1,
    ) -> List[List[float]]:
        """Embed ``texts`` in fixed-size batches, preserving input order.

        Batches run sequentially unless ``max_workers`` is greater than
        one, in which case they are issued through a thread pool.  Any
        failing batch aborts the whole call.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        batches = [list(texts[i:i + batch_size]) for i in range(0, len(texts), batch_size)]
        if not batches:
            return []
        vectors: List[List[float]] = []
        if max_workers <= 1:
            for batch in batches:
                vectors.extend(self.embed_batch(batch))
                logger.info("Embedded %d / %d", len(vectors), len(texts))
            return vectors
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            # map() yields results in submission order.
            for result in pool.map(self.embed_batch, batches):
                vectors.extend(result)
                logger.info("Embedded %d / %d", len(vectors), len(texts))
        return vectors

    def embed_query(self, text: str) -> List[float]:
        """Embed a single question.

        Raises
        ------
        EmptyInputError
            If the text is empty after sanitisation; no request is made.
        EmbeddingServiceError
            If the response has no items or the first item has no vector.
        """
        clean = sanitize_text(text)
        if not clean:
            raise EmptyInputError("Empty question after sanitization.")
        response = self._create(clean)
        data = list(getattr(response, "data", None) or [])
        if not data:
            raise EmbeddingServiceError(
                f"Embedding API returned no items (model={self.model_name})."
            )
        vector = getattr(data[0], "embedding", None)
        if not vector:
            raise EmbeddingServiceError(
                f"Embedding API returned an item with no 'embedding' array (model={self.model_name})."
            )
        return list(vector)
