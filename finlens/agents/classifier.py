# =============================================================================
# Document Classifier — heuristics first, LLM when unsure
# =============================================================================
#
# Labels the whole document (10-K, 10-Q, earnings transcript, ...) so the
# report orchestrator knows which sections to expect and which focus areas
# to bias retrieval towards.
#
# TWO-STAGE STRATEGY:
#   1. Regex signatures against the uppercased first 8,000 characters.
#      Free and instant; confident for SEC forms and transcripts.
#   2. If heuristic confidence < 0.7, one short LLM call constrained to the
#      fixed label vocabulary, answering strict JSON.
#
# DESIGN DECISION: The classification is a hint, never a gate. Any LLM
# failure, unparseable JSON, unknown label or low-confidence answer becomes
# "unknown", and every downstream component handles "unknown".
#
# DESIGN DECISION: Signatures and section headers come from the shared
# pattern catalogue (services/patterns.py), so "does this look like a 10-K"
# reuses the same Item regexes the section detector uses.
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

from finlens.config import settings
from finlens.services import patterns
from finlens.services.llm import LLMProvider

logger = logging.getLogger(__name__)

HEURISTIC_SAMPLE_LENGTH = 8000
CONFIDENCE_THRESHOLD = 0.7
MIN_LLM_CONFIDENCE = 0.5
UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Document Type Profiles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DocumentTypeProfile:
    """Static configuration attached to a document type label."""

    label: str
    expected_sections: tuple[str, ...]
    focus_areas: tuple[str, ...]


DOCUMENT_TYPES: dict[str, DocumentTypeProfile] = {
    "10-K": DocumentTypeProfile(
        label="Annual Report (10-K)",
        expected_sections=(
            "business_overview", "risk_factors", "properties", "legal",
            "market_equity", "mda", "market_risk", "financials", "controls",
            "governance", "compensation", "exhibits",
        ),
        focus_areas=("business_overview", "risk_factors", "financials", "mda"),
    ),
    "10-Q": DocumentTypeProfile(
        label="Quarterly Report (10-Q)",
        expected_sections=("financials", "mda", "market_risk", "controls"),
        focus_areas=("financials", "mda", "risk_factors"),
    ),
    "earnings-transcript": DocumentTypeProfile(
        label="Earnings Call Transcript",
        expected_sections=("prepared_remarks", "qa_session"),
        focus_areas=("guidance", "financials", "prepared_remarks"),
    ),
    "annual-report": DocumentTypeProfile(
        label="Annual Report (Non-SEC)",
        expected_sections=("shareholder_letter", "business_overview", "financials"),
        focus_areas=("business_overview", "financials", "shareholder_letter"),
    ),
    "investor-presentation": DocumentTypeProfile(
        label="Investor Presentation",
        expected_sections=(),
        focus_areas=("guidance", "financials", "business_overview"),
    ),
    "proxy-statement": DocumentTypeProfile(
        label="Proxy Statement (DEF 14A)",
        expected_sections=("governance", "compensation"),
        focus_areas=("governance", "compensation"),
    ),
    "financial-data": DocumentTypeProfile(
        label="Financial Data (CSV/Excel)",
        expected_sections=(),
        focus_areas=("financials",),
    ),
    UNKNOWN: DocumentTypeProfile(
        label="Financial Document",
        expected_sections=(),
        focus_areas=("business_overview", "financials", "risk_factors", "mda"),
    ),
}


@dataclass
class DocumentClassification:
    """Result of classify_document()."""

    type: str
    confidence: float
    source: str  # "heuristic", "llm", "disabled" or "fallback"

    @property
    def profile(self) -> DocumentTypeProfile:
        return DOCUMENT_TYPES.get(self.type, DOCUMENT_TYPES[UNKNOWN])

    @property
    def label(self) -> str:
        return self.profile.label


# ---------------------------------------------------------------------------
# LLM Prompt
# ---------------------------------------------------------------------------

_CLASSIFICATION_SYSTEM = (
    "You classify financial documents. Respond with ONLY a JSON object: "
    '{"type": "<type>", "confidence": <0.0-1.0>}.\n\n'
    "Valid types: {types}\n\n"
    'If unsure, use "unknown" as the type with low confidence.'
)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def heuristic_classify(text: str) -> DocumentClassification:
    """Regex-only classification of the document's opening pages."""
    sample = text[:HEURISTIC_SAMPLE_LENGTH].upper()

    def result(doc_type: str, confidence: float) -> DocumentClassification:
        return DocumentClassification(doc_type, confidence, "heuristic")

    if patterns.TABULAR_EXTRACT.search(sample):
        return result("financial-data", 0.9)

    sections = patterns.find_section_names(text[:HEURISTIC_SAMPLE_LENGTH])

    # 10-Q cover pages often cite "our Annual Report on Form 10-K"; the form
    # named first is the document's own
    form_10k = patterns.FORM_10K.search(sample)
    form_10q = patterns.FORM_10Q.search(sample)
    if form_10q and (form_10k is None or form_10q.start() < form_10k.start()):
        return result("10-Q", 0.9)

    if (
        form_10k
        or patterns.ANNUAL_REPORT_SECTION_13.search(sample)
        or {"risk_factors", "mda"} <= sections
    ):
        return result("10-K", 0.9)

    if patterns.QUARTERLY_REPORT_SECTION_13.search(sample):
        return result("10-Q", 0.9)

    if patterns.PROXY_STATEMENT.search(sample):
        return result("proxy-statement", 0.85)

    if (
        patterns.EARNINGS_CALL.search(sample)
        or (patterns.OPERATOR.search(sample) and "qa_session" in sections)
        or "prepared_remarks" in sections
    ):
        return result("earnings-transcript", 0.85)

    if patterns.INVESTOR_PRESENTATION.search(sample):
        return result("investor-presentation", 0.7)

    if patterns.ANNUAL_REPORT.search(sample) and not patterns.FORM_10_ANY.search(sample):
        return result("annual-report", 0.7)

    return result(UNKNOWN, 0.3)


async def llm_classify(text: str, llm: LLMProvider) -> DocumentClassification:
    """
    Ask the LLM for a label from the fixed vocabulary.

    Degrades to "unknown" on any failure; never raises.
    """
    sample = text[: settings.classification_sample_length]
    valid_types = [t for t in DOCUMENT_TYPES if t != UNKNOWN]

    try:
        response = await llm.complete(
            messages=[{
                "role": "user",
                "content": (
                    "Classify this financial document based on its content:\n\n"
                    f"{sample}"
                ),
            }],
            system=_CLASSIFICATION_SYSTEM.replace("{types}", ", ".join(valid_types)),
            temperature=0,
            max_tokens=60,
        )
        parsed = json.loads(_CODE_FENCE.sub("", response.content.strip()))
        doc_type = parsed.get("type")
        confidence = min(float(parsed.get("confidence", 0.0)), 1.0)
    except Exception as exc:
        logger.warning("LLM document classification failed: %s", exc)
        return DocumentClassification(UNKNOWN, 0.3, "fallback")

    if doc_type not in valid_types or confidence < MIN_LLM_CONFIDENCE:
        logger.info(
            "LLM classification rejected (type=%s, confidence=%.2f)",
            doc_type, confidence,
        )
        return DocumentClassification(UNKNOWN, 0.3, "fallback")

    return DocumentClassification(doc_type, confidence, "llm")


async def classify_document(text: str, llm: LLMProvider) -> DocumentClassification:
    """
    Classify a document, escalating to the LLM only when heuristics are unsure.

    Args:
        text: Cleaned document text.
        llm: Provider used for the fallback call.
    """
    if not settings.classification_enabled:
        return DocumentClassification(UNKNOWN, 1.0, "disabled")

    result = heuristic_classify(text)
    if result.confidence < CONFIDENCE_THRESHOLD:
        result = await llm_classify(text, llm)

    logger.info(
        "Classified document as %s (confidence=%.2f, via %s)",
        result.type, result.confidence, result.source,
    )
    return result
