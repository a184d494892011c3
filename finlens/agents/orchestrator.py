# =============================================================================
# Q&A Orchestrator — LangGraph over a cached analysis session
# =============================================================================
#
# Answers follow-up questions against the indices a report run cached.
#
# GRAPH TOPOLOGY:
#   START ──▶ plan ──▶ retrieve ──▶ rerank ──▶ answer ──▶ END
#
#   plan     — query processor: type, sub-queries, expansions, hints
#   retrieve — hybrid retrieval per expanded sub-query, hinted filter with
#              the narrow-filter fallback, merged and deduped by chunk id
#   rerank   — LLM reranking against the raw question
#   answer   — grounded answer with a query-type-specific instruction
#
# The streaming variant runs the same graph without the answer node, then
# streams the answer tokens itself.
#
# DESIGN DECISION: Plain TypedDict state (not MessagesState).
# This is a retrieval pipeline, not a chatbot: the state is structured data
# flowing question → plan → chunks → answer, with no message history.
#
# DESIGN DECISION: Session and provider objects live in state.
# Nodes need the live objects, and neither is JSON-serialisable. Safe
# because no checkpointer is configured on either graph.
#
# DESIGN DECISION: Graphs compiled once at module level and reused.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import aclosing

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from finlens.agents.analyst import EMPTY_ANSWER_TEXT, answer_question, stream_answer
from finlens.agents.query import QueryPlan, process_query
from finlens.agents.reranker import rerank_chunks
from finlens.agents.search import retrieve_with_fallback
from finlens.config import settings
from finlens.errors import InputError, SessionNotFoundError
from finlens.models.chunk import ScoredChunk
from finlens.models.events import ChunkEvent, CompleteEvent, ErrorEvent
from finlens.models.responses import AnswerResponse, SourceChunk
from finlens.services.llm import LLMProvider, resolve_provider
from finlens.services.session_cache import (
    AnalysisSession,
    SessionCache,
    get_session_cache,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Agent State Schema
# ---------------------------------------------------------------------------


class QAState(TypedDict, total=False):
    """
    State that flows through the Q&A graph.

    total=False so nodes only return the keys they update.
    """

    # --- Input (set by caller) ---
    question: str
    company_name: str
    session: AnalysisSession
    llm: LLMProvider

    # --- Intermediate (set by nodes) ---
    plan: QueryPlan
    candidates: list[ScoredChunk]
    chunks: list[ScoredChunk]

    # --- Output (set by answer node) ---
    answer: str


# ---------------------------------------------------------------------------
# Node Functions
# ---------------------------------------------------------------------------


async def plan_node(state: QAState) -> dict:
    """Classify, decompose and expand the question."""
    plan = await process_query(state["question"], state["llm"])
    return {"plan": plan}


async def retrieve_node(state: QAState) -> dict:
    """Hybrid retrieval over every expanded sub-query."""
    session = state["session"]
    plan = state["plan"]

    candidates = await retrieve_with_fallback(
        session.semantic_index,
        session.lexical_index,
        plan.expanded_queries,
        settings.qa_chunks,
        metadata_filter=plan.metadata_hints.as_filter() or None,
    )
    logger.info(
        "Retrieved %d candidates for %d sub-queries",
        len(candidates), len(plan.expanded_queries),
    )
    return {"candidates": candidates}


async def rerank_node(state: QAState) -> dict:
    """Keep the `qa_chunks` most relevant candidates."""
    chunks = await rerank_chunks(
        state.get("candidates", []),
        state["question"],
        state["llm"],
        top_k=settings.qa_chunks,
    )
    return {"chunks": chunks}


async def answer_node(state: QAState) -> dict:
    """Generate the grounded answer."""
    answer = await answer_question(
        state["question"],
        state["company_name"],
        state["plan"].query_type,
        state.get("chunks", []),
        state["llm"],
    )
    return {"answer": answer}


# ---------------------------------------------------------------------------
# Graph Assembly
# ---------------------------------------------------------------------------


def _build_graph(with_answer: bool):
    builder = StateGraph(QAState)
    builder.add_node("plan", plan_node)
    builder.add_node("retrieve", retrieve_node)
    builder.add_node("rerank", rerank_node)

    builder.add_edge(START, "plan")
    builder.add_edge("plan", "retrieve")
    builder.add_edge("retrieve", "rerank")
    if with_answer:
        builder.add_node("answer", answer_node)
        builder.add_edge("rerank", "answer")
        builder.add_edge("answer", END)
    else:
        builder.add_edge("rerank", END)
    return builder.compile()


graph = _build_graph(with_answer=True)
retrieval_graph = _build_graph(with_answer=False)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def ask(
    session: AnalysisSession,
    question: str,
    company_name: str | None = None,
    llm: LLMProvider | None = None,
    api_key: str | None = None,
) -> AnswerResponse:
    """
    Answer a question against an analysed document.

    Args:
        session: Cached index pair from a report run.
        question: The user's question.
        company_name: Overrides the name detected during the report run.
        llm: Optional provider override (tests, custom backends).
        api_key: Per-request key, used when no provider is injected.

    Raises:
        InputError: Empty question.
        UpstreamError: The answer call failed.
    """
    state = _initial_state(session, question, company_name, llm, api_key)
    logger.info(
        "Invoking Q&A graph: document='%s', question='%s'",
        session.document_id, question[:80],
    )

    result = await graph.ainvoke(state)

    plan: QueryPlan = result["plan"]
    chunks: list[ScoredChunk] = result.get("chunks", [])
    logger.info(
        "Q&A complete: type=%s, sources=%d", plan.query_type, len(chunks),
    )
    return AnswerResponse(
        answer=result.get("answer") or EMPTY_ANSWER_TEXT,
        question=question,
        query_type=plan.query_type,
        sources=_sources(chunks),
    )


async def ask_document(
    document_id: str,
    question: str,
    company_name: str | None = None,
    llm: LLMProvider | None = None,
    api_key: str | None = None,
    cache: SessionCache | None = None,
) -> AnswerResponse:
    """
    ask() against the session cached for `document_id`.

    Raises:
        SessionNotFoundError: No report has been generated for the document,
            or its session expired.
    """
    with _resolve_cache(cache).lease(document_id) as session:
        return await ask(session, question, company_name, llm, api_key)


async def ask_stream(
    session: AnalysisSession,
    question: str,
    company_name: str | None = None,
    llm: LLMProvider | None = None,
    api_key: str | None = None,
) -> AsyncIterator[ChunkEvent | CompleteEvent | ErrorEvent]:
    """
    Streaming variant of ask().

    Yields a ChunkEvent per token delta, then exactly one CompleteEvent
    carrying the accumulated answer, or one ErrorEvent.
    """
    try:
        state = _initial_state(session, question, company_name, llm, api_key)
        result = await retrieval_graph.ainvoke(state)

        parts: list[str] = []
        async for delta in stream_answer(
            question,
            state["company_name"],
            result["plan"].query_type,
            result.get("chunks", []),
            state["llm"],
        ):
            if delta:
                parts.append(delta)
                yield ChunkEvent(content=delta)
    except Exception as exc:
        logger.exception("Q&A stream for '%s' failed", session.document_id)
        yield ErrorEvent(message=str(exc), error_type=type(exc).__name__)
        return

    yield CompleteEvent(answer="".join(parts).strip() or EMPTY_ANSWER_TEXT)


async def ask_document_stream(
    document_id: str,
    question: str,
    company_name: str | None = None,
    llm: LLMProvider | None = None,
    api_key: str | None = None,
    cache: SessionCache | None = None,
) -> AsyncIterator[ChunkEvent | CompleteEvent | ErrorEvent]:
    """
    ask_stream() against a cached session; a missing session is an ErrorEvent.

    The session stays leased until the stream ends or is closed.
    """
    try:
        with _resolve_cache(cache).lease(document_id) as session:
            async with aclosing(
                ask_stream(session, question, company_name, llm, api_key),
            ) as events:
                async for event in events:
                    yield event
    except SessionNotFoundError as exc:
        yield ErrorEvent(message=str(exc), error_type=type(exc).__name__)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _initial_state(
    session: AnalysisSession,
    question: str,
    company_name: str | None,
    llm: LLMProvider | None,
    api_key: str | None,
) -> QAState:
    if not question or not question.strip():
        raise InputError("Question is required.")
    return {
        "question": question.strip(),
        "company_name": company_name or session.company_name,
        "session": session,
        "llm": resolve_provider(llm=llm, api_key=api_key),
    }


def _resolve_cache(cache: SessionCache | None) -> SessionCache:
    return cache if cache is not None else get_session_cache()


def _sources(chunks: list[ScoredChunk]) -> list[SourceChunk]:
    return [
        SourceChunk(
            chunk_id=item.chunk.id,
            content=item.chunk.text,
            section_label=item.chunk.section_label,
            content_type=item.chunk.content_type.value,
            score=item.score,
        )
        for item in chunks
    ]
