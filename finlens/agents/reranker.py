# =============================================================================
# LLM Reranker — second-pass relevance ordering
# =============================================================================
#
# RRF ranks by agreement between two cheap retrievers. The reranker asks
# the LLM to order the fused candidates by how well they answer the query,
# which catches chunks that mention the right words in the wrong context.
#
# PROMPT SHAPE:
#   [0] (Risk Factors · narrative) first 400 chars of the chunk...
#   [1] (Financial Statements · table) ...
#   → response: [3, 0, 5, 1]
#
# DESIGN DECISION: Reranking is an optimisation, never a dependency.
# Skipped when disabled or with ≤ 2 candidates. On any failure (network,
# non-JSON, wrong shape) the input order is returned, truncated to top_k.
#
# DESIGN DECISION: Nothing is silently dropped. Candidates the model leaves
# out of its ranking are appended after the ranked ones, in input order,
# before truncation.
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence

from finlens.config import settings
from finlens.models.chunk import ScoredChunk
from finlens.services.llm import LLMProvider

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)

_RERANK_SYSTEM = (
    "You are a relevance judge for financial document retrieval. Given a "
    "query and numbered document excerpts, rank the excerpts from most to "
    "least relevant to the query.\n\n"
    "Respond with ONLY a JSON array of excerpt numbers, most relevant "
    "first, e.g. [3, 0, 2]. No other text."
)


async def rerank_chunks(
    chunks: Sequence[ScoredChunk],
    query: str,
    llm: LLMProvider,
    top_k: int,
) -> list[ScoredChunk]:
    """
    Reorder candidates by LLM-judged relevance to `query`.

    Args:
        chunks: Fused candidates, best first.
        query: The question or combined section query.
        llm: Provider used for the judgment call.
        top_k: Number of chunks to return.

    Returns:
        At most `top_k` chunks. Never raises.
    """
    candidates = list(chunks)
    if not settings.rerank_enabled or len(candidates) <= 2:
        return candidates[:top_k]

    window = candidates[: settings.rerank_candidates]
    rest = candidates[settings.rerank_candidates :]

    try:
        response = await llm.complete(
            messages=[{"role": "user", "content": _build_prompt(window, query)}],
            system=_RERANK_SYSTEM,
            temperature=0,
            max_tokens=100,
        )
        order = parse_ranking(response.content, len(window))
    except Exception as exc:
        logger.warning("Reranking failed, keeping retrieval order: %s", exc)
        return candidates[:top_k]

    ranked_set = set(order)
    ranked = [window[i] for i in order]
    ranked.extend(item for i, item in enumerate(window) if i not in ranked_set)
    ranked.extend(rest)

    logger.info(
        "Reranked %d candidates (model ranked %d), returning top %d",
        len(window), len(order), min(top_k, len(ranked)),
    )
    return ranked[:top_k]


def parse_ranking(content: str, size: int) -> list[int]:
    """
    Parse a JSON index array, keeping valid, first-seen indices.

    Raises:
        ValueError: If the content is not a JSON array (json.JSONDecodeError
            is a ValueError) or contains no usable index.
    """
    parsed = json.loads(_CODE_FENCE.sub("", content.strip()))
    if not isinstance(parsed, list):
        raise ValueError(f"expected a JSON array, got {type(parsed).__name__}")

    order: list[int] = []
    for value in parsed:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        index = int(value)
        if index != value or not 0 <= index < size or index in order:
            continue
        order.append(index)

    if not order:
        raise ValueError("ranking contains no valid indices")
    return order


def _build_prompt(window: Sequence[ScoredChunk], query: str) -> str:
    preview_chars = settings.rerank_preview_chars
    lines = [f"Query: {query}", "", "Excerpts:"]
    for i, item in enumerate(window):
        chunk = item.chunk
        preview = " ".join(chunk.text[:preview_chars].split())
        lines.append(
            f"[{i}] ({chunk.section_label} · {chunk.content_type.value}) {preview}"
        )
    return "\n".join(lines)
