# =============================================================================
# Filing Pattern Catalogue — one source of truth for structural regexes
# =============================================================================
#
# Both the section detector (which lines start a section?) and the document
# classifier (is this a 10-K?) need to recognise the same structural
# markers. Keeping the regexes here means "Item 1A" or "PREPARED REMARKS"
# is defined exactly once, and the classifier asks "which sections does
# this text contain?" instead of re-implementing header matching.
#
# ORDER MATTERS: the first matching pattern wins, so more specific items
# ("Item 1A", "Item 7A") come before their prefixes ("Item 1", "Item 7").
# =============================================================================

from __future__ import annotations

import re
from dataclasses import dataclass

# Header lines longer than this are treated as body text
MAX_HEADER_LENGTH = 120


@dataclass(frozen=True)
class SectionPattern:
    """A structural marker: stable machine key, human label, line regex."""

    name: str
    label: str
    regex: re.Pattern[str]


def _item(number: str, name: str, title: str) -> SectionPattern:
    # "(?![0-9a-z])" keeps "Item 1" from matching "Item 1A" or "Item 10"
    regex = re.compile(
        rf"^\s*item\s+{number}(?![0-9a-z])[\s.:\-–—]*",
        re.IGNORECASE,
    )
    return SectionPattern(name=name, label=f"Item {number.upper()} – {title}", regex=regex)


def _heading(pattern: str, name: str, label: str) -> SectionPattern:
    return SectionPattern(
        name=name,
        label=label,
        regex=re.compile(rf"^\s*(?:{pattern})\b", re.IGNORECASE),
    )


# ---------------------------------------------------------------------------
# Regulatory items (10-K / 10-Q)
# ---------------------------------------------------------------------------

ITEM_PATTERNS: tuple[SectionPattern, ...] = (
    _item("1a", "risk_factors", "Risk Factors"),
    _item("1b", "unresolved_staff_comments", "Unresolved Staff Comments"),
    _item("1c", "cybersecurity", "Cybersecurity"),
    _item("1", "business_overview", "Business"),
    _item("2", "properties", "Properties"),
    _item("3", "legal", "Legal Proceedings"),
    _item("4", "mine_safety", "Mine Safety Disclosures"),
    _item("5", "market_equity", "Market for Registrant's Common Equity"),
    _item("6", "selected_financial_data", "Selected Financial Data"),
    _item("7a", "market_risk", "Quantitative and Qualitative Disclosures About Market Risk"),
    _item("7", "mda", "Management's Discussion and Analysis"),
    _item("8", "financials", "Financial Statements and Supplementary Data"),
    _item("9a", "controls", "Controls and Procedures"),
    _item("9b", "other_information", "Other Information"),
    _item("9", "accountant_changes", "Changes in and Disagreements with Accountants"),
    _item("10", "governance", "Directors, Executive Officers and Corporate Governance"),
    _item("11", "compensation", "Executive Compensation"),
    _item("12", "security_ownership", "Security Ownership of Certain Beneficial Owners"),
    _item("13", "related_transactions", "Certain Relationships and Related Transactions"),
    _item("14", "accountant_fees", "Principal Accountant Fees and Services"),
    _item("15", "exhibits", "Exhibits and Financial Statement Schedules"),
    _item("16", "form_summary", "Form 10-K Summary"),
)

# ---------------------------------------------------------------------------
# General headings (any financial document)
# ---------------------------------------------------------------------------

HEADING_PATTERNS: tuple[SectionPattern, ...] = (
    _heading(r"risk\s+factors", "risk_factors", "Risk Factors"),
    _heading(
        r"management['’]?s\s+discussion\s+and\s+analysis",
        "mda", "Management's Discussion and Analysis",
    ),
    _heading(
        r"notes\s+to\s+(?:the\s+)?(?:consolidated\s+)?financial\s+statements",
        "financial_notes", "Notes to Financial Statements",
    ),
    _heading(
        r"(?:consolidated\s+)?(?:financial\s+statements"
        r"|statements?\s+of\s+(?:operations|income|cash\s+flows|financial\s+position)"
        r"|balance\s+sheets?)",
        "financials", "Financial Statements",
    ),
    _heading(
        r"quantitative\s+and\s+qualitative\s+disclosures?\s+about\s+market\s+risk",
        "market_risk", "Market Risk",
    ),
    _heading(
        r"business\s+overview|company\s+overview|our\s+business|business$",
        "business_overview", "Business Overview",
    ),
    _heading(r"legal\s+proceedings", "legal", "Legal Proceedings"),
    _heading(r"controls\s+and\s+procedures", "controls", "Controls and Procedures"),
    _heading(r"corporate\s+governance", "governance", "Corporate Governance"),
    _heading(
        r"executive\s+compensation|compensation\s+discussion\s+and\s+analysis",
        "compensation", "Executive Compensation",
    ),
    _heading(
        r"(?:cautionary\s+(?:note|statement)s?\s+regarding\s+)?forward[-\s]looking\s+statements",
        "forward_looking", "Forward-Looking Statements",
    ),
    _heading(
        r"(?:letter|message)\s+to\s+(?:our\s+)?(?:shareholders|stockholders)",
        "shareholder_letter", "Letter to Shareholders",
    ),
    _heading(r"prepared\s+remarks", "prepared_remarks", "Prepared Remarks"),
    _heading(
        r"question[-\s]and[-\s]answer\s+session|q\s*&\s*a\s+session",
        "qa_session", "Question-and-Answer Session",
    ),
    _heading(
        r"(?:financial\s+)?(?:outlook|guidance)(?:\s+for\s+.*)?$",
        "guidance", "Outlook and Guidance",
    ),
)

# Headings are short; a sentence that merely mentions "risk factors" is not one
_MAX_HEADING_WORDS = 12


def match_section(line: str) -> SectionPattern | None:
    """
    Return the catalogue entry that starts a section at this line, if any.

    Regulatory items are checked before general headings.
    """
    stripped = line.strip()
    if not stripped or len(stripped) > MAX_HEADER_LENGTH:
        return None

    for pattern in ITEM_PATTERNS:
        if pattern.regex.match(stripped):
            return pattern

    if (
        len(stripped.split()) > _MAX_HEADING_WORDS
        or stripped[0].islower()
        or stripped.endswith((".", ",", ";"))
    ):
        return None
    for pattern in HEADING_PATTERNS:
        if pattern.regex.match(stripped):
            return pattern
    return None


def find_section_names(text: str) -> set[str]:
    """All catalogue section keys that appear as header lines in `text`."""
    names = set()
    for line in text.split("\n"):
        matched = match_section(line)
        if matched is not None:
            names.add(matched.name)
    return names


# ---------------------------------------------------------------------------
# Document-type signatures (matched against an UPPERCASED text prefix)
# ---------------------------------------------------------------------------

FORM_10K = re.compile(r"FORM\s+10-K")
FORM_10Q = re.compile(r"FORM\s+10-Q")
ANNUAL_REPORT_SECTION_13 = re.compile(r"ANNUAL\s+REPORT[\s\S]*SECTION\s+13")
QUARTERLY_REPORT_SECTION_13 = re.compile(r"QUARTERLY\s+REPORT[\s\S]*SECTION\s+13")
PROXY_STATEMENT = re.compile(r"DEF\s+14A|PROXY\s+STATEMENT")
EARNINGS_CALL = re.compile(r"EARNINGS\s+CALL|CONFERENCE\s+CALL")
OPERATOR = re.compile(r"\bOPERATOR\b")
INVESTOR_PRESENTATION = re.compile(
    r"INVESTOR\s+(?:PRESENTATION|DAY|UPDATE)|CAPITAL\s+MARKETS\s+DAY"
)
ANNUAL_REPORT = re.compile(r"ANNUAL\s+REPORT")
FORM_10_ANY = re.compile(r"FORM\s+10")
TABULAR_EXTRACT = re.compile(r"^\s*\[FINANCIAL DATA\b|^\s*=== SHEET:")
