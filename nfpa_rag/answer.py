"""CLI entry point to answer a fire-code question using the local index."""

from __future__ import annotations

import argparse
import json
import logging
import sys

from firecode_rag.errors import RetrievalError
from firecode_rag.main import answer_question, initialise_rag


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Answer a question from the NFPA 13 / 13R index.")
    parser.add_argument("question", help="Question to ask.")
    parser.add_argument(
        "--temperature",
        type=float,
        default=0.1,
        help="Sampling temperature for the chat model (default: %(default)s).",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the answer, citations and context pages as JSON.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    client = initialise_rag()
    try:
        answer = answer_question(client, args.question, temperature=args.temperature)
    except RetrievalError as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps(answer.to_dict(), indent=2))
        return
    print(answer.text)
    if answer.citations:
        print()
        print("Sources:")
        for hit in answer.citations:
            print(f"  {hit.source} p.{hit.page} (score {hit.score:.3f})")


if __name__ == "__main__":
    main()
