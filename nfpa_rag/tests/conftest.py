import json
from types import SimpleNamespace

import pytest

from firecode_rag.env import Settings


class FakeEmbeddings:
    """Stand-in for ``client.embeddings`` returning canned vectors.

    ``vector_for`` maps an input string to its vector; ``drop`` removes
    that many items from every response to simulate a misaligned reply.
    """

    def __init__(self, vector_for, drop=0, data=None):
        self.vector_for = vector_for
        self.drop = drop
        self.data = data
        self.calls = []

    def create(self, model, input):
        self.calls.append({"model": model, "input": input})
        if self.data is not None:
            return SimpleNamespace(data=self.data)
        texts = input if isinstance(input, list) else [input]
        items = [
            SimpleNamespace(index=i, embedding=self.vector_for(text))
            for i, text in enumerate(texts)
        ]
        if self.drop:
            items = items[: len(items) - self.drop]
        return SimpleNamespace(data=items)


class FakeChat:
    """Stand-in for ``client.chat.completions`` that records requests."""

    def __init__(self, content="Per Table 9.2.1.3, see p.3."):
        self.content = content
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason="stop")])


def make_client(embeddings=None, chat=None):
    return SimpleNamespace(
        embeddings=embeddings,
        chat=SimpleNamespace(completions=chat),
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        embed_model="test-embed",
        chat_model="test-chat",
        index_path=tmp_path / "data" / "index.json",
        api_key="sk-test",
        pdf_13_path=tmp_path / "NFPA_13-2022.pdf",
        pdf_13r_path=tmp_path / "NFPA_13R.pdf",
    )


@pytest.fixture
def write_rows(tmp_path):
    """Write raw rows as an index file and return its path."""

    def _write(rows, name="index.json"):
        path = tmp_path / name
        path.write_text(json.dumps(rows), encoding="utf-8")
        return path

    return _write


def row(id, source, page, text, embedding):
    return {"id": id, "source": source, "page": page, "text": text, "embedding": embedding}
