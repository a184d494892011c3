# =============================================================================
# Report Orchestrator — document text → four-section analyst report
# =============================================================================
#
# STAGES (one document run):
#   cleaning → classifying → chunking → indexing
#     → per section: expanding → retrieving → reranking → generating
#     → assembling → done
#   Any failure ends the run; nothing is cached.
#
# ENTRY POINTS:
#   generate_report() — run to completion, return the result
#   stream_report()   — yield progress/section events, then exactly one
#                       terminal complete/error event
#
# Both drive the same ReportPipeline.events() generator, so the streaming
# and non-streaming paths cannot drift apart.
#
# DESIGN DECISION: Sections as a closed enum with data attached.
# ReportSection lists the four sections in report order, and SECTION_SPECS
# attaches each one's prompt, base queries and preferred source sections.
# A section added to the enum without a SectionSpec fails at import time.
#
# DESIGN DECISION: Sequential sections with a deliberate pause.
# Sections run one after another with `section_delay_seconds` between them
# to stay under provider rate limits. A failed section aborts the run; the
# sections already streamed are not retracted, but no report is cached.
#
# DESIGN DECISION: Commit last. The analysis session is written to the cache
# only after every section succeeded. On failure or cancellation the
# semantic index is closed so its Chroma collection does not leak.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum

from finlens.agents.analyst import (
    FINANCIAL_HIGHLIGHTS_PROMPT,
    KEY_RISKS_PROMPT,
    MANAGEMENT_COMMENTARY_PROMPT,
    OVERVIEW_PROMPT,
    extract_company_name,
    generate_section_content,
)
from finlens.agents.classifier import DocumentClassification, classify_document
from finlens.agents.query import expand_financial_terms
from finlens.agents.reranker import rerank_chunks
from finlens.agents.search import retrieve_with_fallback
from finlens.config import settings
from finlens.errors import InputError, PipelineError
from finlens.models.events import (
    CompleteEvent,
    ErrorEvent,
    ProgressEvent,
    SectionEvent,
)
from finlens.models.responses import ReportResponse, SectionResult
from finlens.services.bm25 import BM25Index
from finlens.services.chunker import split_text_into_semantic_chunks
from finlens.services.cleaner import clean_text
from finlens.services.embedder import Embedder, OpenAIEmbedder
from finlens.services.llm import LLMProvider, resolve_provider
from finlens.services.session_cache import (
    AnalysisSession,
    SessionCache,
    get_session_cache,
)
from finlens.services.vectorstore import SemanticIndex

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section Definitions
# ---------------------------------------------------------------------------


class ReportSection(str, Enum):
    """Report sections, in the order they are generated and returned."""

    OVERVIEW = "overview"
    FINANCIAL_HIGHLIGHTS = "financialHighlights"
    KEY_RISKS = "keyRisks"
    MANAGEMENT_COMMENTARY = "managementCommentary"


@dataclass(frozen=True)
class SectionSpec:
    """Prompt, retrieval queries and source-section bias for one section."""

    prompt: str
    base_queries: tuple[str, ...]
    preferred_sections: tuple[str, ...]

    def queries(self, company: str) -> list[str]:
        return [q.format(company=company) for q in self.base_queries]

    def render_prompt(self, company: str) -> str:
        return self.prompt.format(company=company)


SECTION_SPECS: dict[ReportSection, SectionSpec] = {
    ReportSection.OVERVIEW: SectionSpec(
        prompt=OVERVIEW_PROMPT,
        base_queries=(
            "{company} business model operations products services revenue streams",
            "{company} competitive advantage market position strategy moat",
        ),
        preferred_sections=("business_overview",),
    ),
    ReportSection.FINANCIAL_HIGHLIGHTS: SectionSpec(
        prompt=FINANCIAL_HIGHLIGHTS_PROMPT,
        base_queries=(
            "{company} revenue profit net income financial results performance",
            "{company} margins EBITDA earnings growth operating cash flow",
        ),
        preferred_sections=("financials", "mda"),
    ),
    ReportSection.KEY_RISKS: SectionSpec(
        prompt=KEY_RISKS_PROMPT,
        base_queries=(
            "{company} risk factors challenges threats vulnerabilities",
            "{company} regulatory compliance litigation market operational risks",
        ),
        preferred_sections=("risk_factors",),
    ),
    ReportSection.MANAGEMENT_COMMENTARY: SectionSpec(
        prompt=MANAGEMENT_COMMENTARY_PROMPT,
        base_queries=(
            "{company} management outlook strategy future plans guidance",
            "{company} growth initiatives investment expansion priorities",
        ),
        preferred_sections=(
            "mda", "guidance", "shareholder_letter", "forward_looking",
        ),
    ),
}

_missing = [section.value for section in ReportSection if section not in SECTION_SPECS]
if _missing:
    raise RuntimeError(f"Report sections without a spec: {_missing}")


class PipelineStage(str, Enum):
    """Stage names reported in ProgressEvent.stage."""

    CLEANING = "cleaning"
    CLASSIFYING = "classifying"
    CHUNKING = "chunking"
    INDEXING = "indexing"
    EXPANDING = "expanding"
    RETRIEVING = "retrieving"
    RERANKING = "reranking"
    GENERATING = "generating"
    ASSEMBLING = "assembling"
    DONE = "done"


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


@dataclass
class ReportResult:
    """A finished report plus the session cached for follow-up Q&A."""

    response: ReportResponse
    session: AnalysisSession


class ReportPipeline:
    """
    One report run over one document.

    Iterate `events()` to drive the run; when it finishes without raising,
    `result` holds the report and the session has been cached.
    """

    def __init__(
        self,
        text: str,
        document_id: str,
        company_name: str | None = None,
        api_key: str | None = None,
        llm: LLMProvider | None = None,
        embedder: Embedder | None = None,
        cache: SessionCache | None = None,
    ) -> None:
        if not document_id:
            raise InputError("document_id is required.")
        if not text or not text.strip():
            raise InputError("Document text is empty.")

        self.text = text
        self.document_id = document_id
        self.company_name = company_name.strip() if company_name else None
        self.api_key = api_key
        self._llm = resolve_provider(llm=llm, api_key=api_key)
        self._embedder = embedder
        self._cache = cache
        self.result: ReportResult | None = None

    async def events(self) -> AsyncIterator[ProgressEvent | SectionEvent]:
        """Run the pipeline, yielding a progress event per stage."""
        semantic_index: SemanticIndex | None = None
        committed = False
        try:
            # --- Cleaning ---
            yield _progress(PipelineStage.CLEANING, "Cleaning document text")
            cleaned = clean_text(self.text)
            if not cleaned:
                raise InputError("Document contains no text after cleaning.")

            # --- Classifying ---
            yield _progress(PipelineStage.CLASSIFYING, "Classifying document type")
            classification = await classify_document(cleaned, self._llm)
            company = self.company_name or await extract_company_name(cleaned, self._llm)

            # --- Chunking ---
            yield _progress(PipelineStage.CHUNKING, "Splitting document into chunks")
            chunks = split_text_into_semantic_chunks(cleaned, classification.type)
            if not chunks:
                raise PipelineError("Chunking produced no chunks.")

            # --- Indexing ---
            yield _progress(
                PipelineStage.INDEXING,
                f"Indexing {len(chunks)} chunks",
            )
            lexical_index = BM25Index(chunks)
            embedder = self._embedder or OpenAIEmbedder(api_key=self.api_key)
            semantic_index = await SemanticIndex.build(chunks, embedder)
            available_sections = {chunk.section_name for chunk in chunks}

            # --- Sections ---
            sections: list[SectionResult] = []
            for position, section in enumerate(ReportSection):
                if position:
                    await asyncio.sleep(settings.section_delay_seconds)

                spec = SECTION_SPECS[section]
                yield _progress(
                    PipelineStage.EXPANDING, "Expanding section queries", section,
                )
                base_queries = spec.queries(company)
                queries = [expand_financial_terms(q) for q in base_queries]

                yield _progress(
                    PipelineStage.RETRIEVING, "Retrieving relevant excerpts", section,
                )
                candidates = await retrieve_with_fallback(
                    semantic_index,
                    lexical_index,
                    queries,
                    settings.section_chunks_per_query,
                    metadata_filter=section_filter(
                        spec, classification, available_sections,
                    ),
                )

                yield _progress(
                    PipelineStage.RERANKING, "Reranking excerpts", section,
                )
                ranked = await rerank_chunks(
                    candidates,
                    " ".join(base_queries),
                    self._llm,
                    top_k=settings.section_chunks_per_query * len(base_queries),
                )

                yield _progress(
                    PipelineStage.GENERATING, "Writing section", section,
                )
                response = await generate_section_content(
                    spec.render_prompt(company), ranked, self._llm,
                )
                logger.info(
                    "Section %s generated from %d excerpts (tokens=%d+%d)",
                    section.value, len(ranked),
                    response.input_tokens, response.output_tokens,
                )

                sections.append(SectionResult(
                    section_type=section.value,
                    content=response.content,
                    source_chunk_ids=[item.id for item in ranked],
                ))
                yield SectionEvent(section_type=section.value, content=response.content)

            # --- Assembling ---
            yield _progress(PipelineStage.ASSEMBLING, "Assembling report")
            report = ReportResponse(
                document_id=self.document_id,
                company_name=company,
                document_type=classification.type,
                sections=sections,
            )
            session = AnalysisSession(
                document_id=self.document_id,
                lexical_index=lexical_index,
                semantic_index=semantic_index,
                document_type=classification.type,
                company_name=company,
            )
            cache = self._cache if self._cache is not None else get_session_cache()
            cache.set(self.document_id, session)
            committed = True
            self.result = ReportResult(response=report, session=session)

            logger.info(
                "Report complete for '%s': %s, %d chunks, %d sections",
                self.document_id, classification.type, len(chunks), len(sections),
            )
            yield _progress(PipelineStage.DONE, "Report complete")
        finally:
            if semantic_index is not None and not committed:
                semantic_index.close()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def generate_report(
    text: str,
    document_id: str,
    company_name: str | None = None,
    api_key: str | None = None,
    llm: LLMProvider | None = None,
    embedder: Embedder | None = None,
    cache: SessionCache | None = None,
) -> ReportResult:
    """
    Generate the full report for a document and cache its indices.

    Raises:
        InputError: Empty text or missing document id.
        PipelineError: Chunking produced nothing.
        UpstreamError: A completion or embedding call failed.
    """
    pipeline = ReportPipeline(
        text, document_id, company_name, api_key, llm, embedder, cache,
    )
    async with aclosing(pipeline.events()) as events:
        async for _ in events:
            pass
    if pipeline.result is None:
        raise PipelineError("Report pipeline finished without a result.")
    return pipeline.result


async def stream_report(
    text: str,
    document_id: str,
    company_name: str | None = None,
    api_key: str | None = None,
    llm: LLMProvider | None = None,
    embedder: Embedder | None = None,
    cache: SessionCache | None = None,
) -> AsyncIterator[ProgressEvent | SectionEvent | CompleteEvent | ErrorEvent]:
    """
    Streaming variant of generate_report().

    Yields progress and section events in order, then exactly one
    CompleteEvent (carrying the report) or ErrorEvent. Errors are reported
    as events, never raised.
    """
    try:
        pipeline = ReportPipeline(
            text, document_id, company_name, api_key, llm, embedder, cache,
        )
        # aclosing: a consumer that closes this stream also closes the
        # pipeline, so its uncommitted index is dropped right away
        async with aclosing(pipeline.events()) as events:
            async for event in events:
                yield event
    except Exception as exc:
        logger.exception("Report stream for '%s' failed", document_id)
        yield ErrorEvent(message=str(exc), error_type=type(exc).__name__)
        return

    yield CompleteEvent(report=pipeline.result.response)


def section_filter(
    spec: SectionSpec,
    classification: DocumentClassification,
    available_sections: set[str],
) -> dict[str, list[str]] | None:
    """
    Metadata filter for one section's retrieval.

    Uses the section's preferred source sections that exist in this
    document, else the document type's focus areas that exist, else no
    filter at all.
    """
    preferred = [s for s in spec.preferred_sections if s in available_sections]
    if not preferred:
        preferred = [
            s for s in classification.profile.focus_areas if s in available_sections
        ]
    if not preferred:
        return None
    return {"section_name": preferred}


def _progress(
    stage: PipelineStage,
    message: str,
    section: ReportSection | None = None,
) -> ProgressEvent:
    return ProgressEvent(
        stage=stage.value,
        message=message,
        section_type=section.value if section is not None else None,
    )
