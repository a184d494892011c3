# =============================================================================
# Unit Tests — Rank Fusion & Hybrid Retrieval
# =============================================================================
#
# Semantic and lexical indices are replaced with stubs returning fixed
# rankings, so fusion and fallback behaviour can be checked exactly.
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest

from finlens.agents.search import (
    apply_metadata_filter,
    hybrid_search,
    multi_query_retrieval,
    reciprocal_rank_fusion,
    retrieve_with_fallback,
)
from finlens.config import settings
from finlens.models.chunk import ContentType, ScoredChunk

from conftest import build_chunk


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _item(chunk_id: str, section: str = "document", score: float = 1.0) -> ScoredChunk:
    return ScoredChunk(build_chunk(chunk_id, f"text of {chunk_id}", section_name=section), score)


class StubSemanticIndex:
    """Returns a fixed ranking per query (or the default ranking)."""

    def __init__(self, ranking: list[ScoredChunk], per_query: dict | None = None):
        self.ranking = ranking
        self.per_query = per_query or {}
        self.calls: list[tuple[str, int]] = []

    async def search(self, query: str, top_k: int) -> list[ScoredChunk]:
        self.calls.append((query, top_k))
        return list(self.per_query.get(query, self.ranking))[:top_k]


class StubLexicalIndex(StubSemanticIndex):
    def search(self, query: str, top_k: int) -> list[ScoredChunk]:
        self.calls.append((query, top_k))
        return list(self.per_query.get(query, self.ranking))[:top_k]


# ---------------------------------------------------------------------------
# Test: Reciprocal Rank Fusion
# ---------------------------------------------------------------------------


class TestReciprocalRankFusion:
    """Tests for reciprocal_rank_fusion()."""

    def test_shared_chunks_rank_first_and_nothing_is_dropped(self):
        a, b, c, d = (_item(x) for x in "ABCD")
        b2, a2 = _item("B"), _item("A")
        fused = reciprocal_rank_fusion([[a, b, c], [b2, a2, d]], k=60)
        ids = [item.id for item in fused]
        scores = {item.id: item.score for item in fused}

        assert set(ids) == {"A", "B", "C", "D"}
        assert scores["B"] >= scores["A"]
        assert ids.index("A") < ids.index("C")
        assert ids.index("B") < ids.index("D")

    def test_scores_are_reciprocal_ranks(self):
        fused = reciprocal_rank_fusion([[_item("A"), _item("B")], [_item("A")]], k=60)
        assert fused[0].id == "A"
        assert fused[0].score == pytest.approx(2 / 61)
        assert fused[1].score == pytest.approx(1 / 62)

    def test_equal_scores_keep_first_seen_order(self):
        fused = reciprocal_rank_fusion([[_item("A")], [_item("B")]], k=60)
        assert [item.id for item in fused] == ["A", "B"]

    def test_weights_scale_contributions(self):
        fused = reciprocal_rank_fusion(
            [[_item("A")], [_item("B")]], k=60, weights=[1.0, 2.0],
        )
        assert [item.id for item in fused] == ["B", "A"]
        assert fused[0].score == pytest.approx(2 / 61)

    def test_weight_length_mismatch(self):
        with pytest.raises(ValueError):
            reciprocal_rank_fusion([[_item("A")]], weights=[1.0, 1.0])

    def test_inputs_are_not_mutated(self):
        original = _item("A", score=0.9)
        reciprocal_rank_fusion([[original], [_item("A")]])
        assert original.score == 0.9

    def test_chunks_without_id_fall_back_to_text(self):
        first = ScoredChunk(build_chunk("", "same text"), 1.0)
        second = ScoredChunk(build_chunk("", "same text"), 1.0)
        assert len(reciprocal_rank_fusion([[first], [second]])) == 1

    def test_empty_input(self):
        assert reciprocal_rank_fusion([]) == []
        assert reciprocal_rank_fusion([[], []]) == []


# ---------------------------------------------------------------------------
# Test: Metadata Filter
# ---------------------------------------------------------------------------


class TestApplyMetadataFilter:
    """Tests for apply_metadata_filter()."""

    def _results(self) -> list[ScoredChunk]:
        return [
            _item("r1", "risk_factors"),
            _item("m1", "mda"),
            _item("r2", "risk_factors"),
        ]

    def test_list_means_membership(self):
        kept = apply_metadata_filter(self._results(), {"section_name": ["risk_factors"]})
        assert [item.id for item in kept] == ["r1", "r2"]
        assert all(item.chunk.section_name in ["risk_factors"] for item in kept)

    def test_scalar_means_equality(self):
        kept = apply_metadata_filter(self._results(), {"section_name": "mda"})
        assert [item.id for item in kept] == ["m1"]

    def test_every_field_must_match(self):
        results = self._results()
        results[0].chunk.content_type = ContentType.TABLE
        kept = apply_metadata_filter(
            results, {"section_name": ["risk_factors"], "content_type": ["table"]},
        )
        assert [item.id for item in kept] == ["r1"]

    def test_empty_filter_keeps_everything(self):
        assert len(apply_metadata_filter(self._results(), None)) == 3
        assert len(apply_metadata_filter(self._results(), {})) == 3

    def test_unknown_key_matches_nothing(self):
        assert apply_metadata_filter(self._results(), {"page": 3}) == []


# ---------------------------------------------------------------------------
# Test: Hybrid Search
# ---------------------------------------------------------------------------


class TestHybridSearch:
    """Tests for hybrid_search()."""

    def test_fuses_both_rankings(self):
        semantic = StubSemanticIndex([_item("A"), _item("B"), _item("C")])
        lexical = StubLexicalIndex([_item("B"), _item("A"), _item("D")])
        results = _run(hybrid_search(semantic, lexical, "revenue", top_k=4))
        assert {item.id for item in results} == {"A", "B", "C", "D"}
        assert {results[0].id, results[1].id} == {"A", "B"}

    def test_over_fetches_from_each_index(self):
        semantic = StubSemanticIndex([_item("A")])
        lexical = StubLexicalIndex([_item("A")])
        _run(hybrid_search(semantic, lexical, "revenue", top_k=3))
        assert semantic.calls == [("revenue", 6)]
        assert lexical.calls == [("revenue", 6)]

    def test_truncates_to_top_k(self):
        ranking = [_item(f"c{i}") for i in range(10)]
        results = _run(hybrid_search(
            StubSemanticIndex(ranking), StubLexicalIndex(ranking), "q", top_k=3,
        ))
        assert [item.id for item in results] == ["c0", "c1", "c2"]

    def test_filter_applies_after_fusion(self):
        semantic = StubSemanticIndex([_item("A", "mda"), _item("B", "risk_factors")])
        lexical = StubLexicalIndex([_item("C", "risk_factors")])
        results = _run(hybrid_search(
            semantic, lexical, "q", top_k=5,
            metadata_filter={"section_name": ["risk_factors"]},
        ))
        assert {item.id for item in results} == {"B", "C"}

    def test_semantic_only_without_lexical_index(self):
        semantic = StubSemanticIndex([_item("A"), _item("B")])
        results = _run(hybrid_search(semantic, None, "q", top_k=1))
        assert [item.id for item in results] == ["A"]
        assert semantic.calls == [("q", 1)]

    def test_semantic_only_when_disabled(self):
        semantic = StubSemanticIndex([_item("A")])
        lexical = StubLexicalIndex([_item("B")])
        with patch.object(settings, "hybrid_search_enabled", False):
            results = _run(hybrid_search(semantic, lexical, "q", top_k=5))
        assert [item.id for item in results] == ["A"]
        assert lexical.calls == []


# ---------------------------------------------------------------------------
# Test: Multi-Query Retrieval & Narrow-Filter Fallback
# ---------------------------------------------------------------------------


class TestMultiQueryRetrieval:
    """Tests for multi_query_retrieval()."""

    def test_merges_and_dedupes_in_query_order(self):
        per_query = {
            "q1": [_item("A"), _item("B")],
            "q2": [_item("B"), _item("C")],
        }
        semantic = StubSemanticIndex([], per_query)
        lexical = StubLexicalIndex([], per_query)
        results = _run(multi_query_retrieval(semantic, lexical, ["q1", "q2"], 2))
        assert [item.id for item in results] == ["A", "B", "C"]

    def test_no_queries(self):
        results = _run(multi_query_retrieval(
            StubSemanticIndex([_item("A")]), None, [], 3,
        ))
        assert results == []


class TestRetrieveWithFallback:
    """Tests for the narrow-filter fallback."""

    def _indices(self):
        ranking = [
            _item("r1", "risk_factors"),
            _item("m1", "mda"),
            _item("m2", "mda"),
            _item("m3", "mda"),
            _item("m4", "mda"),
        ]
        return StubSemanticIndex(ranking), StubLexicalIndex(ranking)

    def test_narrow_filter_falls_back_to_unfiltered(self):
        semantic, lexical = self._indices()
        unfiltered = _run(retrieve_with_fallback(semantic, lexical, ["q"], 4))
        results = _run(retrieve_with_fallback(
            semantic, lexical, ["q"], 4,
            metadata_filter={"section_name": ["risk_factors"]},
        ))
        assert results[0].id == "r1"
        assert len(results) >= len(unfiltered)
        assert len({item.id for item in results}) == len(results)

    def test_wide_enough_filter_is_kept(self):
        semantic, lexical = self._indices()
        results = _run(retrieve_with_fallback(
            semantic, lexical, ["q"], 4,
            metadata_filter={"section_name": ["mda"]},
        ))
        assert [item.chunk.section_name for item in results] == ["mda"] * 4

    def test_threshold_is_configurable(self):
        semantic, lexical = self._indices()
        with patch.object(settings, "metadata_filter_min_results", 1):
            results = _run(retrieve_with_fallback(
                semantic, lexical, ["q"], 4,
                metadata_filter={"section_name": ["risk_factors"]},
            ))
        assert [item.id for item in results] == ["r1"]

    def test_no_filter_is_plain_retrieval(self):
        semantic, lexical = self._indices()
        results = _run(retrieve_with_fallback(semantic, lexical, ["q"], 2))
        assert [item.id for item in results] == ["r1", "m1"]
