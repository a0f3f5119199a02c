"""CLI utility to (re)build the chunk index from the NFPA 13 and 13R PDFs."""

from __future__ import annotations

import argparse
import logging

from firecode_rag.embedding import DEFAULT_BATCH_SIZE
from firecode_rag.main import initialise_rag


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Extract, chunk and embed the code PDFs into data/index.json. "
        "Paths are taken from PDF_13_PATH, PDF_13R_PATH and INDEX_PATH."
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=DEFAULT_BATCH_SIZE,
        help="Texts per embedding request (default: %(default)s).",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Embedding requests in flight at once (default: %(default)s).",
    )
    return parser


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    client = initialise_rag()
    chunks = client.ingest_corpus(batch_size=args.batch_size, max_workers=args.workers)
    print(f"Index saved to {client.settings.index_path} ({len(chunks)} chunks) "
          f"using model {client.embedder.model_name}")


if __name__ == "__main__":
    main()
