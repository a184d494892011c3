# =============================================================================
# Hybrid Search — BM25 + Semantic, fused with Reciprocal Rank Fusion
# =============================================================================
#
# Financial questions mix exact terms (tickers, "EBITDA", "$30.4") that
# embeddings blur, with intent ("how healthy is the balance sheet?") that
# keywords miss. Running both indices and fusing their rankings gets both.
#
# RETRIEVAL LAYERS (each builds on the previous one):
#   reciprocal_rank_fusion() — merge ranked lists by rank, not raw score
#   hybrid_search()          — one query: lexical ∥ semantic → RRF → filter
#   multi_query_retrieval()  — many queries: run each, dedupe by chunk id
#   retrieve_with_fallback() — metadata filter as a hint: if it leaves too
#                              few chunks, union with an unfiltered run
#
# DESIGN DECISION: Rank-based fusion. Cosine similarity lives in [-1, 1]
# and BM25 is unbounded; adding them would let whichever scale is larger
# dominate. RRF only uses each chunk's position in each list:
#     score(c) = Σ_lists weight / (k + rank + 1)      (rank is 0-based)
# A chunk absent from a list gets nothing from it but is never dropped.
#
# DESIGN DECISION: Over-fetch 2 × top_k from each index before fusing, so
# a chunk ranked moderately by both can beat one ranked first by only one.
#
# DESIGN DECISION: Filters never starve a section. If a filtered run
# returns fewer than `metadata_filter_min_results` chunks, the caller
# reruns without the filter and keeps filtered chunks first.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from finlens.config import settings
from finlens.models.chunk import ScoredChunk
from finlens.services.bm25 import BM25Index
from finlens.services.vectorstore import SemanticIndex

logger = logging.getLogger(__name__)

OVERFETCH_FACTOR = 2
_FALLBACK_KEY_LENGTH = 120


# ---------------------------------------------------------------------------
# Rank Fusion
# ---------------------------------------------------------------------------


def reciprocal_rank_fusion(
    result_sets: Sequence[Sequence[ScoredChunk]],
    k: int = 60,
    weights: Sequence[float] | None = None,
) -> list[ScoredChunk]:
    """
    Merge ranked lists into one, best first.

    Every distinct chunk from every input list appears exactly once in the
    output, scored with its summed reciprocal-rank contributions. Equal
    fused scores keep first-seen order.

    Args:
        result_sets: Lists already sorted best-first.
        k: Smoothing constant; larger values flatten the rank curve.
        weights: Optional per-list multipliers (default 1.0 each).
    """
    if weights is None:
        weights = [1.0] * len(result_sets)
    if len(weights) != len(result_sets):
        raise ValueError("weights must have one entry per result set")

    fused: dict[str, ScoredChunk] = {}
    for results, weight in zip(result_sets, weights):
        for rank, item in enumerate(results):
            key = _identity(item)
            contribution = weight / (k + rank + 1)
            existing = fused.get(key)
            if existing is None:
                fused[key] = ScoredChunk(item.chunk, contribution)
            else:
                existing.score += contribution

    return sorted(fused.values(), key=lambda item: item.score, reverse=True)


# ---------------------------------------------------------------------------
# Metadata Filtering
# ---------------------------------------------------------------------------


def apply_metadata_filter(
    results: Sequence[ScoredChunk],
    metadata_filter: Mapping[str, Any] | None,
) -> list[ScoredChunk]:
    """
    Keep results whose chunk metadata matches every filter field.

    A list/tuple/set value means "one of"; anything else is an exact
    match. None or an empty mapping means no filter.
    """
    if not metadata_filter:
        return list(results)

    def matches(item: ScoredChunk) -> bool:
        metadata = item.chunk.metadata()
        for key, expected in metadata_filter.items():
            actual = metadata.get(key)
            if isinstance(expected, (list, tuple, set, frozenset)):
                if actual not in expected:
                    return False
            elif actual != expected:
                return False
        return True

    return [item for item in results if matches(item)]


# ---------------------------------------------------------------------------
# Hybrid Search
# ---------------------------------------------------------------------------


async def hybrid_search(
    semantic_index: SemanticIndex,
    lexical_index: BM25Index | None,
    query: str,
    top_k: int = 8,
    metadata_filter: Mapping[str, Any] | None = None,
) -> list[ScoredChunk]:
    """
    Retrieve `top_k` chunks for one query.

    With hybrid search enabled and a lexical index available, BM25 and
    semantic search run concurrently and are fused with RRF; otherwise
    semantic search alone is used. The metadata filter is applied after
    fusion, before truncation.
    """
    if not settings.hybrid_search_enabled or lexical_index is None:
        results = await semantic_index.search(query, top_k)
        return apply_metadata_filter(results, metadata_filter)[:top_k]

    fetch_count = top_k * OVERFETCH_FACTOR
    lexical_results, semantic_results = await asyncio.gather(
        asyncio.to_thread(lexical_index.search, query, fetch_count),
        semantic_index.search(query, fetch_count),
    )

    fused = reciprocal_rank_fusion(
        [semantic_results, lexical_results],
        k=settings.rrf_k,
        weights=[settings.hybrid_semantic_weight, settings.hybrid_keyword_weight],
    )
    filtered = apply_metadata_filter(fused, metadata_filter)

    logger.debug(
        "Hybrid search: %d semantic + %d lexical → %d fused, %d after filter",
        len(semantic_results), len(lexical_results), len(fused), len(filtered),
    )
    return filtered[:top_k]


async def multi_query_retrieval(
    semantic_index: SemanticIndex,
    lexical_index: BM25Index | None,
    queries: Sequence[str],
    top_k_per_query: int,
    metadata_filter: Mapping[str, Any] | None = None,
) -> list[ScoredChunk]:
    """
    Run each query and merge the results, first occurrence of a chunk wins.

    Queries run in order so the merged list follows query priority.
    """
    seen: set[str] = set()
    merged: list[ScoredChunk] = []
    for query in queries:
        results = await hybrid_search(
            semantic_index,
            lexical_index,
            query,
            top_k=top_k_per_query,
            metadata_filter=metadata_filter,
        )
        for item in results:
            if item.id not in seen:
                seen.add(item.id)
                merged.append(item)
    return merged


async def retrieve_with_fallback(
    semantic_index: SemanticIndex,
    lexical_index: BM25Index | None,
    queries: Sequence[str],
    top_k_per_query: int,
    metadata_filter: Mapping[str, Any] | None = None,
) -> list[ScoredChunk]:
    """
    Multi-query retrieval that treats the metadata filter as a hint.

    If the filtered run returns fewer than `metadata_filter_min_results`
    chunks, an unfiltered run is added: filtered chunks first, then the
    unfiltered ones not already present.
    """
    if not metadata_filter:
        return await multi_query_retrieval(
            semantic_index, lexical_index, queries, top_k_per_query,
        )

    filtered = await multi_query_retrieval(
        semantic_index, lexical_index, queries, top_k_per_query, metadata_filter,
    )
    threshold = settings.metadata_filter_min_results
    if len(filtered) >= threshold:
        return filtered

    logger.info(
        "Metadata filter %s matched %d chunks (< %d); adding unfiltered results",
        dict(metadata_filter), len(filtered), threshold,
    )
    unfiltered = await multi_query_retrieval(
        semantic_index, lexical_index, queries, top_k_per_query,
    )
    seen = {item.id for item in filtered}
    return filtered + [item for item in unfiltered if item.id not in seen]


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _identity(item: ScoredChunk) -> str:
    """Chunk id, or a text prefix for chunks built without one."""
    return item.chunk.id or item.chunk.text[:_FALLBACK_KEY_LENGTH]
