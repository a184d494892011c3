# =============================================================================
# Analyst Agent — Section & Answer Generation
# =============================================================================
#
# The analyst turns retrieved excerpts into prose: one report section at a
# time for the report orchestrator, or a grounded answer for Q&A.
#
# DESIGN DECISION: Section-specific prompts with exclusion rules.
# Each report section has its own instruction set, and each one states
# what does NOT belong in it (Overview excludes figures, Key Risks
# excludes mitigation, Management Commentary excludes past results).
# Without explicit exclusions every section drifts into a generic summary
# of the same top-ranked chunks.
#
# DESIGN DECISION: Excerpts carry provenance.
# Each excerpt is labelled `[Excerpt n] (Section label · content type)` so
# the model can tell a risk-factor paragraph from an MD&A table and cite
# where a number came from.
#
# DESIGN DECISION: Query-type instructions for Q&A.
# Comparative questions are told to contrast side by side; factual ones to
# quote exact figures; analytical ones to reason from the evidence.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence

from finlens.config import settings
from finlens.models.chunk import ScoredChunk
from finlens.services.llm import LLMProvider, LLMResponse

logger = logging.getLogger(__name__)

UNKNOWN_COMPANY = "Unknown Company"
EMPTY_SECTION_TEXT = "*Analysis not available for this section.*"
EMPTY_ANSWER_TEXT = "Unable to provide answer based on available information."


# ---------------------------------------------------------------------------
# Report Section Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT_SECTIONS = (
    "You are a senior financial analyst producing institutional-quality "
    "research reports. You analyze financial documents including 10-K/10-Q "
    "filings, quarterly reports, earnings transcripts, and annual reports.\n\n"
    "Rules:\n"
    "- Use markdown formatting: ## for section headers, **bold** for "
    "emphasis, - for bullet points.\n"
    "- Be precise. Cite specific numbers, dates, and names from the document.\n"
    "- Every claim must be grounded in the provided document context.\n"
    "- If information for a requested area is not available in the context, "
    'write: *"Not available in the provided document."*\n'
    "- Keep language professional, objective, and concise."
)

OVERVIEW_PROMPT = """\
Provide a structured overview of **{company}**'s business model and strategic \
positioning based on the financial document provided.

Structure your analysis under these headings:

## Core Business
- What the company does, primary revenue streams and business segments

## Strategic Position
- Competitive advantages, market position, and economic moat

## Key Initiatives
- Current strategic priorities, growth drivers, and recent developments

Requirements:
- Use **bold** for key terms, product names, and segment names
- Each bullet should be a concise, specific insight (1-2 sentences)
- Do NOT include financial numbers or performance metrics (those belong in \
Financial Highlights)
- Do NOT include risk factors (those belong in Key Risks)
- Do NOT include third-party opinions, ratings, or price targets"""

FINANCIAL_HIGHLIGHTS_PROMPT = """\
Extract and analyze the key financial metrics and performance data for \
**{company}** from the provided financial document.

Structure your analysis under these headings:

## Revenue & Growth
- Revenue figures, growth rates, segment breakdowns

## Profitability
- Net income, margins (gross, operating, net), EBITDA

## Key Operational Metrics
- Segment-specific KPIs, efficiency ratios, per-unit economics

## Balance Sheet Highlights
- Cash position, debt levels, key financial ratios

Requirements:
- Use **bold** for all numbers, percentages, and financial terms
- Describe trends: "**Revenue** grew from **$X** to **$Y**, a **Z%** increase"
- Compare periods (YoY, QoQ) where the document provides data
- One metric per bullet; do not combine multiple facts
- Only include data explicitly found in the document"""

KEY_RISKS_PROMPT = """\
Identify and categorize the key risks facing **{company}** based on the \
provided financial document.

Group risks under applicable categories (skip a category if no relevant \
risks are found):

## Market & Industry Risks
- Competition, market dynamics, demand shifts

## Operational Risks
- Supply chain, technology, execution, talent

## Financial Risks
- Debt, liquidity, currency, interest-rate exposure

## Regulatory & Legal Risks
- Compliance, litigation, policy changes

## Company-Specific Risks
- Concentration risks, key dependencies, strategic risks

Requirements:
- Use **bold** for specific risk factors and key terms
- Each bullet should name the risk and briefly explain its potential impact
- Prioritize by significance (most critical first within each category)
- Prefer excerpts from "Risk Factors" or "Risk Management" sections
- Do NOT include mitigation strategies or management's plans to address risks"""

MANAGEMENT_COMMENTARY_PROMPT = """\
Summarize the forward-looking statements and strategic priorities from \
**{company}**'s management based on the provided financial document.

Structure your analysis:

## Strategic Outlook
- Management's vision, long-term goals, and market outlook

## Growth Plans
- Expansion initiatives, new products/markets, investment priorities

## Operational Focus
- Efficiency programs, technology investments, organizational changes

## Guidance & Expectations
- Any forward-looking financial guidance or performance expectations

Requirements:
- Use **bold** for key initiatives, targets, and strategic terms
- Focus on direct management statements and forward-looking commentary
- Prefer MD&A, shareholder letters, prepared remarks, or executive commentary
- Do NOT repeat past financial results or performance metrics
- Do NOT include risk factors already covered under Key Risks"""


# ---------------------------------------------------------------------------
# Q&A Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT_QA = (
    "You are a professional financial analyst. Provide accurate, concise "
    "answers based strictly on the provided document context. Use markdown "
    "formatting for clarity."
)

QUERY_TYPE_INSTRUCTIONS: dict[str, str] = {
    "comparative": (
        "- This is a comparison question. Contrast the items side by side "
        "(a short markdown table works well) and state the direction and "
        "size of each difference."
    ),
    "factual": (
        "- This is a factual lookup. Quote the precise figures, dates, and "
        "units exactly as they appear in the excerpts; never round or estimate."
    ),
    "analytical": (
        "- This is an analytical question. Reason from the evidence in the "
        "excerpts and explain the drivers, citing the supporting figures."
    ),
}

_COMPANY_NAME_SYSTEM = (
    "You extract the company name from financial documents. Reply with only "
    "the company name, no punctuation or extra words."
)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def format_excerpts(chunks: Sequence[ScoredChunk]) -> str:
    """
    Number excerpts and tag each with its section and content type.

        [Excerpt 1] (Item 1A – Risk Factors · narrative)
        We face intense competition...
    """
    parts = []
    for i, item in enumerate(chunks, start=1):
        chunk = item.chunk
        parts.append(
            f"[Excerpt {i}] ({chunk.section_label} · {chunk.content_type.value})\n"
            f"{chunk.text}"
        )
    return "\n\n".join(parts)


async def generate_section_content(
    section_prompt: str,
    chunks: Sequence[ScoredChunk],
    llm: LLMProvider,
) -> LLMResponse:
    """
    Generate one report section from its prompt and retrieved excerpts.

    An empty model response is replaced with a placeholder so every section
    is always populated. Upstream failures propagate: a failed section
    aborts the report.
    """
    prompt = (
        f"{section_prompt}\n\n---\n\n"
        "**Relevant excerpts from the financial document:**\n\n"
        f"{format_excerpts(chunks)}\n\n---\n\n"
        "Now write your analysis for the section above. Use markdown "
        "formatting as specified."
    )

    response = await llm.complete(
        messages=[{"role": "user", "content": prompt}],
        system=SYSTEM_PROMPT_SECTIONS,
        temperature=settings.section_temperature,
        max_tokens=settings.section_max_tokens,
    )
    if not response.content.strip():
        response.content = EMPTY_SECTION_TEXT
    return response


def build_answer_prompt(
    question: str,
    company_name: str,
    query_type: str,
    chunks: Sequence[ScoredChunk],
) -> str:
    """User message for a grounded Q&A answer."""
    instruction = QUERY_TYPE_INSTRUCTIONS.get(
        query_type, QUERY_TYPE_INSTRUCTIONS["analytical"],
    )
    return (
        f"You are a financial analyst answering a question about "
        f"**{company_name}** based on their financial document.\n\n"
        f"**Question:** {question}\n\n"
        "**Relevant excerpts from the financial document:**\n\n"
        f"{format_excerpts(chunks)}\n\n---\n\n"
        "Instructions:\n"
        f"{instruction}\n"
        "- Provide a clear, well-structured answer using markdown (**bold** "
        "for key data, bullet points where helpful).\n"
        "- Be specific with numbers, dates, and names when the document "
        "provides them.\n"
        "- If the information is not available in the document, clearly "
        'state: *"This information is not available in the provided document."*\n'
        "- Keep the answer concise (3-5 sentences for simple questions, more "
        "for complex ones)."
    )


async def answer_question(
    question: str,
    company_name: str,
    query_type: str,
    chunks: Sequence[ScoredChunk],
    llm: LLMProvider,
) -> str:
    """Grounded answer, or the fixed fallback text if the model says nothing."""
    response = await llm.complete(
        messages=[{
            "role": "user",
            "content": build_answer_prompt(question, company_name, query_type, chunks),
        }],
        system=SYSTEM_PROMPT_QA,
        temperature=settings.qa_temperature,
        max_tokens=settings.qa_max_tokens,
    )
    logger.info(
        "Answer generated: model=%s, tokens=%d+%d",
        response.model, response.input_tokens, response.output_tokens,
    )
    return response.content.strip() or EMPTY_ANSWER_TEXT


def stream_answer(
    question: str,
    company_name: str,
    query_type: str,
    chunks: Sequence[ScoredChunk],
    llm: LLMProvider,
) -> AsyncIterator[str]:
    """Token deltas of the same answer answer_question() would produce."""
    return llm.stream(
        messages=[{
            "role": "user",
            "content": build_answer_prompt(question, company_name, query_type, chunks),
        }],
        system=SYSTEM_PROMPT_QA,
        temperature=settings.qa_temperature,
        max_tokens=settings.qa_max_tokens,
    )


async def extract_company_name(text: str, llm: LLMProvider) -> str:
    """
    Ask the LLM for the company name in the document's opening pages.

    Degrades to "Unknown Company" on an empty sample, empty response, or
    any failure.
    """
    sample = text[: settings.company_name_sample_length].strip()
    if not sample:
        return UNKNOWN_COMPANY

    try:
        response = await llm.complete(
            messages=[{
                "role": "user",
                "content": (
                    "From the following excerpt of a financial document "
                    "(annual report, 10-K, quarterly report, etc.), identify "
                    "the company name. Return ONLY the official company name, "
                    "nothing else. If unclear, give the most likely name.\n\n"
                    f"Document excerpt:\n{sample}"
                ),
            }],
            system=_COMPANY_NAME_SYSTEM,
            temperature=0,
            max_tokens=80,
        )
    except Exception as exc:
        logger.warning("Company name extraction failed: %s", exc)
        return UNKNOWN_COMPANY

    name = response.content.strip().strip('"').strip()
    return name or UNKNOWN_COMPANY
