import json
import random

import numpy as np
import pytest

from conftest import FakeEmbeddings, make_client, row
from firecode_rag.embedding import EmbeddingModel
from firecode_rag.errors import DimensionMismatchError
from firecode_rag.hybrid_retrieval import (
    CONTEXT_DELIMITER,
    HybridRetriever,
    build_context,
    hybrid_pages,
    top_k_chunks,
    with_neighbors,
)
from firecode_rag.index_store import IndexStore
from firecode_rag.utils import Chunk, PageHit

E1 = [1.0, 0.0, 0.0]
E2 = [0.0, 1.0, 0.0]
QUERY_NEAR_E1 = [0.9, 0.1, 0.0]


@pytest.fixture
def trapeze_index():
    return [
        Chunk(id="a-0", source="A", page=3, text="trapeze hanger span 8 ft", embedding=E1),
        Chunk(id="a-1", source="A", page=4, text="table of sizes", embedding=E2),
    ]


def _random_index(seed=7, n=60, dim=8):
    rng = random.Random(seed)
    words = ["trapeze", "hanger", "main", "pipe", "span", "table", "riser", "branch", '4"', "ft"]
    return [
        Chunk(
            id=f"c-{i}",
            source=rng.choice(["NFPA 13-2022", "NFPA 13R"]),
            page=rng.randint(1, 12),
            text=" ".join(rng.choice(words) for _ in range(rng.randint(3, 30))),
            embedding=[rng.uniform(-1, 1) for _ in range(dim)],
        )
        for i in range(n)
    ]


class TestHybridPages:
    """Tests for page selection."""

    def test_trapeze_scenario_picks_page_three(self, trapeze_index):
        hits = hybrid_pages(trapeze_index, QUERY_NEAR_E1, "trapeze sizing", pages_wanted=1)
        assert len(hits) == 1
        assert (hits[0].source, hits[0].page) == ("A", 3)
        assert hits[0].score > 0

    @pytest.mark.parametrize("wanted", [1, 3, 5, 50])
    def test_bounded_and_unique(self, wanted):
        index = _random_index()
        query = [0.3] * 8
        hits = hybrid_pages(index, query, "trapeze main span", pages_wanted=wanted)
        assert len(hits) <= wanted
        keys = [hit.key for hit in hits]
        assert len(keys) == len(set(keys))
        assert [h.score for h in hits] == sorted((h.score for h in hits), reverse=True)

    def test_page_score_is_best_chunk(self):
        index = [
            Chunk(id="0", source="A", page=1, text="unrelated", embedding=[-1.0, 0.0]),
            Chunk(id="1", source="A", page=1, text="unrelated", embedding=[1.0, 0.0]),
        ]
        hits = hybrid_pages(index, [1.0, 0.0], "zzz", pages_wanted=5)
        assert hits == [PageHit("A", 1, pytest.approx(0.7))]

    def test_ties_keep_index_order(self):
        index = [
            Chunk(id="0", source="B", page=9, text="x", embedding=[1.0, 0.0]),
            Chunk(id="1", source="A", page=2, text="x", embedding=[1.0, 0.0]),
        ]
        hits = hybrid_pages(index, [1.0, 0.0], "x", pages_wanted=2)
        assert [h.key for h in hits] == [("B", 9), ("A", 2)]

    def test_source_names_with_separators_do_not_collide(self):
        index = [
            Chunk(id="0", source="A::1", page=2, text="x", embedding=[1.0, 0.0]),
            Chunk(id="1", source="A", page=1, text="x", embedding=[0.0, 1.0]),
        ]
        assert len(hybrid_pages(index, [1.0, 0.0], "x", pages_wanted=5)) == 2

    def test_empty_index(self):
        assert hybrid_pages([], [1.0], "q") == []

    def test_matrix_must_match_index(self, trapeze_index):
        with pytest.raises(ValueError, match="1 rows for 2 chunks"):
            hybrid_pages(trapeze_index, QUERY_NEAR_E1, "trapeze", matrix=np.array([E1]))

    def test_top_k_chunks(self, trapeze_index):
        ranked = top_k_chunks(trapeze_index, QUERY_NEAR_E1, 1)
        assert [c.id for c, _ in ranked] == ["a-0"]


class TestWithNeighbors:
    """Tests for neighbour expansion."""

    def test_trapeze_scenario(self):
        s = 0.8
        existing = {("A", 3), ("A", 4)}
        pages = with_neighbors([PageHit("A", 3, s)], 1, existing=existing)
        assert pages == [PageHit("A", 3, s), PageHit("A", 4, pytest.approx(s * 0.95))]

    def test_without_existing_filter_both_sides_are_added(self):
        pages = with_neighbors([PageHit("A", 3, 0.8)], 1)
        assert [p.page for p in pages] == [3, 2, 4]

    def test_radius_zero_is_identity_on_sorted_input(self):
        hits = sorted(
            [PageHit("A", 1, 0.2), PageHit("B", 5, 0.9), PageHit("A", 7, 0.5)],
            key=lambda h: h.score,
            reverse=True,
        )
        assert with_neighbors(hits, 0) == hits

    @pytest.mark.parametrize("radius", [1, 2, 3])
    def test_pages_stay_within_radius_and_positive(self, radius):
        seeds = [PageHit("A", 1, 0.9), PageHit("A", 2, 0.4), PageHit("B", 10, 0.6)]
        pages = with_neighbors(seeds, radius)
        for page in pages:
            assert page.page >= 1
            assert any(
                s.source == page.source and abs(s.page - page.page) <= radius for s in seeds
            )
        assert len({p.key for p in pages}) == len(pages)

    def test_overlapping_neighbours_keep_maximum(self):
        pages = with_neighbors([PageHit("A", 5, 1.0), PageHit("A", 6, 0.5)], 1)
        by_page = {p.page: p.score for p in pages}
        # page 6 is a weak hit itself but a neighbour of a strong one
        assert by_page[6] == pytest.approx(0.95)
        assert by_page[4] == pytest.approx(0.95)
        assert by_page[7] == pytest.approx(0.475)

    def test_distance_decay(self):
        pages = with_neighbors([PageHit("A", 10, 1.0)], 2)
        by_page = {p.page: p.score for p in pages}
        assert by_page[8] == pytest.approx(0.9)
        assert by_page[12] == pytest.approx(0.9)

    def test_empty_input(self):
        assert with_neighbors([], 1) == []


class TestBuildContext:
    """Tests for context assembly."""

    def test_blocks_follow_index_order_not_relevance(self, trapeze_index):
        pages = [PageHit("A", 4, 0.9), PageHit("A", 3, 0.1)]
        context = build_context(trapeze_index, pages)
        assert context == (
            "SOURCE: A p.3\ntrapeze hanger span 8 ft"
            + CONTEXT_DELIMITER
            + "SOURCE: A p.4\ntable of sizes"
        )

    def test_unselected_pages_excluded(self, trapeze_index):
        assert build_context(trapeze_index, [PageHit("A", 4, 0.5)]) == "SOURCE: A p.4\ntable of sizes"

    def test_no_pages_gives_empty_context(self, trapeze_index):
        assert build_context(trapeze_index, []) == ""

    @pytest.mark.parametrize("max_chars", [1, 50, 400, 2000])
    def test_budget_overrun_bounded_by_one_block(self, max_chars):
        index = _random_index(n=80)
        pages = [PageHit(c.source, c.page, 1.0) for c in index]
        context = build_context(index, pages, max_chars=max_chars)
        worst_block = max(len(f"SOURCE: {c.source} p.{c.page}\n{c.text}") for c in index)
        assert len(context) <= max_chars + worst_block + len(CONTEXT_DELIMITER)
        assert context.startswith(f"SOURCE: {index[0].source} p.{index[0].page}\n")

    def test_stops_after_crossing_budget(self):
        index = [Chunk(id=str(i), source="A", page=1, text="x" * 20, embedding=[1.0]) for i in range(5)]
        context = build_context(index, [PageHit("A", 1, 1.0)], max_chars=40)
        assert context.count("SOURCE:") == 2


class TestHybridRetriever:
    """Tests for the end-to-end retrieval path."""

    def _retriever(self, write_rows, settings, dim, query_dim):
        rows = [row(f"13-{i}", "NFPA 13-2022", i + 1, f"page {i} text", [0.01 * (i + 1)] * dim) for i in range(3)]
        store = IndexStore(write_rows(rows))
        fake = FakeEmbeddings(lambda text: [0.5] * query_dim)
        embedder = EmbeddingModel(settings=settings, client=make_client(fake))
        return HybridRetriever(store, embedder)

    def test_matching_dimension_proceeds(self, write_rows, settings):
        retriever = self._retriever(write_rows, settings, 1536, 1536)
        result = retriever.retrieve("sprinkler spacing", pages_wanted=2)
        assert len(result.hits) == 2
        assert result.context.startswith("SOURCE: NFPA 13-2022 p.")
        assert {p.key for p in result.hits} <= {p.key for p in result.pages}

    def test_mismatched_dimension_names_both(self, write_rows, settings):
        retriever = self._retriever(write_rows, settings, 1536, 768)
        with pytest.raises(DimensionMismatchError) as excinfo:
            retriever.retrieve("sprinkler spacing")
        assert "1536" in str(excinfo.value)
        assert "768" in str(excinfo.value)
        assert excinfo.value.index_dim == 1536
        assert excinfo.value.query_dim == 768

    def test_neighbours_limited_to_indexed_pages(self, write_rows, settings):
        retriever = self._retriever(write_rows, settings, 4, 4)
        result = retriever.retrieve("page", pages_wanted=1, radius=5)
        assert {p.page for p in result.pages} <= {1, 2, 3}

    def test_no_pages_is_empty_result(self, write_rows, settings):
        retriever = self._retriever(write_rows, settings, 4, 4)
        result = retriever.retrieve("anything", pages_wanted=0)
        assert result.empty
        assert result.context == ""

    def test_reingest_during_query_uses_one_index(self, write_rows, settings):
        old = [row("13-0", "NFPA 13-2022", 1, "old page", [1.0, 0.0])]
        path = write_rows(old)
        store = IndexStore(path)

        def reingest(text):
            new = [
                row("13-0", "NFPA 13-2022", 5, "trapeze hanger table", [0.0, 1.0]),
                row("13-1", "NFPA 13-2022", 6, "riser", [1.0, 0.0]),
            ]
            path.write_text(json.dumps(new), encoding="utf-8")
            store.invalidate()
            return [0.0, 1.0]

        embedder = EmbeddingModel(settings=settings, client=make_client(FakeEmbeddings(reingest)))
        result = HybridRetriever(store, embedder).retrieve("trapeze", pages_wanted=2, radius=0)
        assert [p.page for p in result.hits] == [5, 6]
        assert "old page" not in result.context
