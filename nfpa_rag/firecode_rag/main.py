"""
main.py
-------

This module exposes the two high level workflows of the package:

- **ingestion**: read the NFPA 13 and NFPA 13R PDFs, chunk and embed
  every page and write ``index.json``;
- **answering**: retrieve page context for a question and ask the
  chat model to answer from that context only, with page citations.

:class:`RAGClient` wires an :class:`IndexStore`, an
:class:`EmbeddingModel` and an OpenAI chat client together.  If you
only need retrieval, use :class:`~firecode_rag.hybrid_retrieval.HybridRetriever`
directly.
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import openai
from openai import OpenAI

from .embedding import DEFAULT_BATCH_SIZE, EmbeddingModel
from .env import Settings, get_settings
from .errors import CompletionError, MissingDocumentError
from .hybrid_retrieval import HybridRetriever, RetrievalResult
from .index_store import IndexStore, write_index
from .utils import KNOWN_SOURCES, Chunk, PageHit, chunk_pages, extract_pages, sanitize_text

logger = logging.getLogger(__name__)

MIN_CHUNK_CHARS = 20
NO_CONTEXT_ANSWER = "No relevant context found in the PDFs."

_TRAPEZE = re.compile(r"trapeze", re.IGNORECASE)
_HANGER = re.compile(r"(hanger|support)", re.IGNORECASE)
_SPAN_FEET = re.compile(r"\b\d+(\.\d+)?\s*(ft|feet|')(?!\w)", re.IGNORECASE)

def needs_span(question: str) -> bool:
    """True for trapeze hanger/support sizing questions that give no span in feet."""
    asks_trapeze = bool(_TRAPEZE.search(question) and _HANGER.search(question))
    return asks_trapeze and not _SPAN_FEET.search(question)


def build_system_prompt(question: str) -> str:
    lines = [
        "You are a code-compliance assistant for NFPA 13 (2022) and NFPA 13R.",
        "Answer ONLY from the provided context. If the context does not cover the question, say so.",
        "Distinguish body requirements vs Annex (advisory). If a citation is Annex (e.g., A.x.x), say so explicitly.",
        "If the answer appears in a table, quote the relevant row/column text before the conclusion "
        "and include page citations.",
    ]
    if needs_span(question):
        lines.append(
            "For trapeze sizing: explain that the user must (1) use the span between supports to get a "
            "decimal under the pipe-size column, then (2) map that decimal in the follow-up table to a "
            "trapeze member size. Ask the user to provide the span in feet (e.g., '8 ft'). "
            "Do not invent numbers."
        )
    return "\n".join(lines)


def build_user_message(context: str, question: str) -> str:
    return (
        f"Context (do not reveal this verbatim unless quoting):\n\n{context}\n\n"
        f"Question: {question}"
    )


@dataclass
class Answer:
    """A generated answer.

    ``citations`` lists the primary pages that matched the question.
    ``context_pages`` lists every page given to the model, including
    neighbour pages, so callers can disclose them too.
    """

    text: str
    citations: List[PageHit] = field(default_factory=list)
    context_pages: List[PageHit] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "answer": self.text,
            "citations": [
                {"source": hit.source, "page": hit.page, "score": hit.score}
                for hit in self.citations
            ],
            "context_pages": [
                {"source": hit.source, "page": hit.page} for hit in self.context_pages
            ],
        }


def build_chunks(
    documents: Sequence[Tuple[str, Sequence[Tuple[int, str]]]],
    *,
    max_len: int = 1200,
    min_chars: int = MIN_CHUNK_CHARS,
) -> List[Dict[str, Any]]:
    """Chunk extracted pages and assign ids, dropping near-empty chunks.

    ``documents`` holds ``(source, pages)`` pairs.  Ids are
    ``<prefix>-<n>`` with ``n`` counting every chunk of that source,
    including dropped ones, so ids stay stable for a given extraction.
    """
    raw: List[Dict[str, Any]] = []
    for source, pages in documents:
        prefix = KNOWN_SOURCES.get(source, source)
        for position, chunk in enumerate(chunk_pages(pages, max_len)):
            raw.append({"id": f"{prefix}-{position}", "source": source, **chunk})
    kept = []
    for row in raw:
        row["text"] = sanitize_text(row["text"])
        if len(row["text"]) >= min_chars:
            kept.append(row)
    dropped = len(raw) - len(kept)
    if dropped:
        logger.info("Dropped %d empty/short chunks prior to embedding.", dropped)
    return kept


class RAGClient:
    """High level interface for fire-code question answering.

    Parameters
    ----------
    settings : Settings, optional
        Configuration; read from the environment when omitted.
    store : IndexStore, optional
        Shared index cache.  Defaults to one over ``settings.index_path``.
    embedder : EmbeddingModel, optional
        Embedding client.  Must use the model the index was built with.
    chat_client : OpenAI, optional
        Chat completion client.  Built lazily from ``settings`` when omitted.
    """

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        store: Optional[IndexStore] = None,
        embedder: Optional[EmbeddingModel] = None,
        chat_client: Optional[Any] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store or IndexStore(self.settings.index_path)
        self.embedder = embedder or EmbeddingModel(settings=self.settings)
        self.retriever = HybridRetriever(self.store, self.embedder)
        self._chat_client = chat_client

    @property
    def chat_client(self) -> Any:
        if self._chat_client is None:
            self._chat_client = OpenAI(
                api_key=self.settings.api_key,
                base_url=self.settings.base_url,
                timeout=self.settings.timeout,
                max_retries=0,
            )
        return self._chat_client

    def ingest_corpus(
        self,
        *,
        extractor: Callable[[Path], List[Tuple[int, str]]] = extract_pages,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_workers: int = 1,
    ) -> List[Chunk]:
        """Build and persist the index from the two configured PDFs.

        The documents are extracted concurrently; chunk ids, page
        attribution and index order follow each document's page order.
        The cached index of :attr:`store` is invalidated afterwards.

        Raises
        ------
        MissingDocumentError
            If either PDF is missing.
        AlignmentError, EmbeddingServiceError
            If embedding fails; nothing is written in that case.
        """
        sources = [
            ("NFPA 13-2022", self.settings.pdf_13_path),
            ("NFPA 13R", self.settings.pdf_13r_path),
        ]
        missing = [str(path) for _, path in sources if not Path(path).exists()]
        if missing:
            raise MissingDocumentError(
                "Missing PDFs: "
                + ", ".join(missing)
                + ". Place NFPA_13-2022.pdf and NFPA_13R.pdf under data/ "
                "or set PDF_13_PATH and PDF_13R_PATH."
            )

        with ThreadPoolExecutor(max_workers=len(sources)) as pool:
            extracted = list(pool.map(extractor, [path for _, path in sources]))
        documents = [(source, pages) for (source, _), pages in zip(sources, extracted)]

        rows = build_chunks(documents)
        vectors = self.embedder.embed_texts(
            [row["text"] for row in rows], batch_size=batch_size, max_workers=max_workers
        )
        chunks = [
            Chunk(id=row["id"], source=row["source"], page=row["page"],
                  text=row["text"], embedding=vector)
            for row, vector in zip(rows, vectors)
            if vector
        ]
        write_index(self.settings.index_path, chunks)
        self.store.invalidate()
        logger.info(
            "Indexed %d chunks using model %s", len(chunks), self.embedder.model_name
        )
        return chunks

    def retrieve(self, question: str, **kwargs: Any) -> RetrievalResult:
        """Retrieve context pages for ``question``; see :meth:`HybridRetriever.retrieve`."""
        return self.retriever.retrieve(question, **kwargs)

    def generate_answer(
        self,
        question: str,
        *,
        temperature: float = 0.1,
        model: Optional[str] = None,
    ) -> Answer:
        """Answer ``question`` from retrieved fire-code context.

        When retrieval finds no pages the model is not called and a
        fixed "no context" answer with no citations is returned.

        Raises
        ------
        CompletionError
            If the chat request fails or the model returns no content.
        """
        result = self.retrieve(question)
        if result.empty:
            return Answer(text=NO_CONTEXT_ANSWER)

        model = model or self.settings.chat_model
        messages = [
            {"role": "system", "content": build_system_prompt(question)},
            {"role": "user", "content": build_user_message(result.context, question)},
        ]
        try:
            response = self.chat_client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
            )
        except openai.OpenAIError as exc:
            logger.error("OpenAI chat completion failed: %s", exc)
            raise CompletionError(f"Chat completion failed (model={model}): {exc}") from exc
        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        text = content.strip() if content else ""
        if not text:
            raise CompletionError(f"Chat model returned no choices (model={model}).")
        return Answer(text=text, citations=list(result.hits), context_pages=list(result.pages))


def initialise_rag(settings: Optional[Settings] = None) -> RAGClient:
    """Thin convenience wrapper returning a ready :class:`RAGClient`."""
    return RAGClient(settings=settings)


def answer_question(client: RAGClient, question: str, **kwargs: Any) -> Answer:
    """Generate an answer; a thin wrapper around :meth:`RAGClient.generate_answer`."""
    return client.generate_answer(question, **kwargs)
