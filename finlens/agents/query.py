# =============================================================================
# Query Processor — classify, decompose, expand
# =============================================================================
#
# Turns a raw question into a retrieval plan:
#
#   QueryPlan(original_question, query_type, sub_queries,
#             expanded_queries, metadata_hints)
#
# STAGES:
#   classify_query()         — comparative / analytical / factual (regex)
#   decompose_query()        — LLM splits long questions into sub-queries
#   expand_financial_terms() — appends domain synonyms for lexical recall
#   generate_metadata_hints()— preferred sections / content types
#
# DESIGN DECISION: Rule-based classification over LLM. Zero latency, zero
# cost, easy to test, and the three classes are distinguishable by
# phrasing. Order matters: comparative wins, then analytical (so "What is
# the expected growth?" is not read as a factual lookup), then factual.
# The default is analytical, the broader retrieval mode.
#
# DESIGN DECISION: Decomposition never blocks retrieval. Short questions
# skip the LLM entirely; any failure returns [question].
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field

from finlens.config import settings
from finlens.services.llm import LLMProvider

logger = logging.getLogger(__name__)

MIN_WORDS_FOR_DECOMPOSITION = 8
MAX_EXPANSION_TERMS = 6

QUERY_TYPES = ("factual", "analytical", "comparative")


# ---------------------------------------------------------------------------
# Financial Synonyms
# ---------------------------------------------------------------------------
# Trigger (matched as a substring of the lowercased query) → related terms.
# Dict order is the order expansions are considered in.
# ---------------------------------------------------------------------------

FINANCIAL_SYNONYMS: dict[str, tuple[str, ...]] = {
    # Profitability
    "profitability": ("net income", "operating margin", "gross margin", "EBITDA", "earnings", "profit"),
    "margin": ("gross margin", "operating margin", "net margin", "profit margin", "EBITDA margin"),
    "earnings": ("net income", "EPS", "earnings per share", "profit", "net earnings"),
    # Revenue
    "revenue": ("net revenue", "total revenue", "sales", "net sales", "top line", "gross revenue"),
    "sales": ("revenue", "net sales", "total sales", "top line revenue"),
    "growth": ("revenue growth", "year-over-year", "YoY", "organic growth", "comparable growth"),
    # Cash & liquidity
    "cash": ("cash and cash equivalents", "cash position", "liquidity", "cash flow", "free cash flow"),
    "cash flow": ("operating cash flow", "free cash flow", "FCF", "cash from operations", "capital expenditure"),
    "liquidity": ("cash", "working capital", "current ratio", "quick ratio", "available credit"),
    # Debt & balance sheet
    "debt": ("long-term debt", "total debt", "borrowings", "credit facility", "leverage", "debt-to-equity"),
    "leverage": ("debt-to-equity", "debt ratio", "net debt", "total debt", "leverage ratio"),
    "balance sheet": ("total assets", "total liabilities", "shareholders equity", "book value"),
    # Valuation & returns
    "valuation": ("market cap", "enterprise value", "P/E ratio", "price-to-earnings", "EV/EBITDA"),
    "dividend": ("dividend per share", "dividend yield", "payout ratio", "dividend payment", "shareholder return"),
    "buyback": ("share repurchase", "stock buyback", "treasury stock", "capital return"),
    # Operations
    "cost of goods": ("COGS", "cost of revenue", "cost of sales", "direct costs"),
    "operating expenses": ("SG&A", "R&D", "selling general administrative", "opex", "overhead"),
    "capex": ("capital expenditure", "capital spending", "PP&E", "property plant equipment"),
    # Risk
    "risk": ("risk factors", "threats", "vulnerabilities", "challenges", "uncertainties"),
    "regulation": ("regulatory", "compliance", "legal", "government", "policy", "legislation"),
    "competition": ("competitive", "competitors", "market share", "competitive landscape", "rivalry"),
    # Strategy
    "strategy": ("strategic plan", "business strategy", "growth strategy", "corporate strategy", "initiatives"),
    "guidance": ("outlook", "forecast", "projection", "expectation", "forward-looking", "target"),
    "acquisition": ("merger", "M&A", "takeover", "bought", "acquired", "business combination"),
    # Segments
    "segment": ("business segment", "operating segment", "reportable segment", "division", "business unit"),
    "geographic": ("region", "international", "domestic", "North America", "EMEA", "Asia Pacific"),
}


# ---------------------------------------------------------------------------
# Classification Patterns
# ---------------------------------------------------------------------------

_COMPARATIVE = re.compile(
    r"compar|versus|\bvs\b\.?|differ|between|relative to|against", re.IGNORECASE,
)
_ANALYTICAL_LEAD = re.compile(r"^(why|explain|analy[sz]e|assess|evaluate|discuss)", re.IGNORECASE)
_ANALYTICAL_TOPIC = re.compile(
    r"impact|implication|trend|outlook|forecast|risk|opportunit|strateg|expect"
    r"|forward|future|coming|project|anticipat|priorit",
    re.IGNORECASE,
)
_FACTUAL_LEAD = re.compile(
    r"^(what|how much|how many|when|where)\s+(is|was|are|were|did)", re.IGNORECASE,
)
_FACTUAL_CUE = re.compile(
    r"\$[\d,]+|\d+%|specific|exact|amount|number|figure|total", re.IGNORECASE,
)

# Section key ← keyword pattern, in the order hints are listed
_SECTION_HINTS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"risk|threat|challenge|vulnerabilit", re.IGNORECASE), "risk_factors"),
    (re.compile(
        r"revenue|profit|income|margin|ebitda|financial|earnings|balance sheet",
        re.IGNORECASE,
    ), "financials"),
    (re.compile(r"management|outlook|guidance|forward|strateg", re.IGNORECASE), "mda"),
    (re.compile(r"business|overview|model|product|service|segment", re.IGNORECASE), "business_overview"),
    (re.compile(r"legal|litigation|lawsuit|regulat", re.IGNORECASE), "legal"),
    (re.compile(r"executive|officer|director|compensat", re.IGNORECASE), "governance"),
)
_DATA_CUE = re.compile(r"table|data|number|figure|amount|how much|how many|\$\d", re.IGNORECASE)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)

_DECOMPOSITION_SYSTEM = (
    "You decompose complex financial questions into simpler sub-queries for "
    "document retrieval. Each sub-query should be self-contained and "
    "searchable.\n\n"
    "Rules:\n"
    "- Output ONLY a JSON array of strings, no other text.\n"
    "- Maximum {max_sub_queries} sub-queries.\n"
    "- If the question is already simple, return it as-is in a "
    "single-element array.\n"
    "- Each sub-query should target a specific piece of information.\n"
    "- Keep the company name if mentioned."
)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class MetadataHints:
    """Retrieval bias derived from keywords in the question."""

    preferred_sections: list[str] = field(default_factory=list)
    preferred_content_types: list[str] = field(default_factory=list)

    def as_filter(self) -> dict[str, list[str]]:
        """Metadata filter over chunk fields; empty when there is no hint."""
        metadata_filter: dict[str, list[str]] = {}
        if self.preferred_sections:
            metadata_filter["section_name"] = list(self.preferred_sections)
        if self.preferred_content_types:
            metadata_filter["content_type"] = list(self.preferred_content_types)
        return metadata_filter


@dataclass
class QueryPlan:
    """Ephemeral per-question retrieval plan."""

    original_question: str
    query_type: str
    sub_queries: list[str]
    expanded_queries: list[str]
    metadata_hints: MetadataHints


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def classify_query(question: str) -> str:
    """Return "comparative", "analytical" or "factual"."""
    q = question.strip().lower()

    if _COMPARATIVE.search(q):
        return "comparative"
    if _ANALYTICAL_LEAD.search(q) or _ANALYTICAL_TOPIC.search(q):
        return "analytical"
    if _FACTUAL_LEAD.search(q) or _FACTUAL_CUE.search(q):
        return "factual"
    return "analytical"


def expand_financial_terms(query: str) -> str:
    """
    Append up to six synonyms for financial concepts found in the query.

    Synonyms already present in the query are skipped. With expansion
    disabled, or no trigger found, the query is returned unchanged.
    """
    if not settings.query_expansion_enabled:
        return query

    q_lower = query.lower()
    expansions: dict[str, None] = {}
    for trigger, synonyms in FINANCIAL_SYNONYMS.items():
        if trigger not in q_lower:
            continue
        for synonym in synonyms:
            if synonym.lower() not in q_lower:
                expansions.setdefault(synonym, None)

    if not expansions:
        return query
    return f"{query} {' '.join(list(expansions)[:MAX_EXPANSION_TERMS])}"


async def decompose_query(question: str, llm: LLMProvider) -> list[str]:
    """
    Split a complex question into at most `max_sub_queries` sub-queries.

    Questions under eight words are returned as-is. Any LLM failure or
    malformed response falls back to [question].
    """
    if not settings.query_decomposition_enabled:
        return [question]
    if len(question.split()) < MIN_WORDS_FOR_DECOMPOSITION:
        return [question]

    max_sub_queries = settings.max_sub_queries
    try:
        response = await llm.complete(
            messages=[{"role": "user", "content": question}],
            system=_DECOMPOSITION_SYSTEM.format(max_sub_queries=max_sub_queries),
            temperature=0,
            max_tokens=200,
        )
        parsed = json.loads(_CODE_FENCE.sub("", response.content.strip()))
    except Exception as exc:
        logger.warning("Query decomposition failed, using original question: %s", exc)
        return [question]

    if not isinstance(parsed, list):
        logger.warning("Query decomposition returned %s, not a list", type(parsed).__name__)
        return [question]

    sub_queries = [str(q).strip() for q in parsed if str(q).strip()]
    if not sub_queries:
        return [question]

    logger.info("Decomposed question into %d sub-queries", len(sub_queries[:max_sub_queries]))
    return sub_queries[:max_sub_queries]


def generate_metadata_hints(question: str) -> MetadataHints:
    """Preferred section keys and content types from keyword matches."""
    hints = MetadataHints()
    for pattern, section in _SECTION_HINTS:
        if pattern.search(question):
            hints.preferred_sections.append(section)
    if _DATA_CUE.search(question):
        hints.preferred_content_types = ["table", "narrative"]
    return hints


async def process_query(question: str, llm: LLMProvider) -> QueryPlan:
    """Classify, decompose, expand and hint: the full retrieval plan."""
    query_type = classify_query(question)
    sub_queries = await decompose_query(question, llm)
    expanded = [expand_financial_terms(q) for q in sub_queries]
    hints = generate_metadata_hints(question)

    logger.info(
        "Query plan: type=%s, sub_queries=%d, hinted sections=%s",
        query_type, len(sub_queries), hints.preferred_sections or "none",
    )
    return QueryPlan(
        original_question=question,
        query_type=query_type,
        sub_queries=sub_queries,
        expanded_queries=expanded,
        metadata_hints=hints,
    )
