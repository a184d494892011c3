# =============================================================================
# Section Detector — structural boundaries for semantic chunking
# =============================================================================
#
# Finds the lines where a document's logical sections start, then cuts the
# text into regions. Chunks never span two regions, so every chunk carries
# one unambiguous section_name ("risk_factors", "mda", ...), which is what
# the report sections filter on.
#
# Detection order per line:
#   1. Regulatory items from the pattern catalogue   ("Item 1A. Risk Factors")
#   2. General headings from the pattern catalogue   ("MANAGEMENT'S DISCUSSION")
#   3. Fallback: short ALL-CAPS title lines followed by normal-case content
#
# DESIGN DECISION: Stacked headers collapse. "ITEM 1A." on one line and
# "RISK FACTORS" on the next are one section, not an empty region plus a
# second one. The first (most specific) boundary wins.
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from finlens.services.patterns import match_section
from finlens.services.tables import is_table_line

logger = logging.getLogger(__name__)

DOCUMENT_SECTION = ("document", "Document")
PREAMBLE_SECTION = ("preamble", "Preamble")

_SLUG_CHARS = re.compile(r"[^a-z0-9]+")
_HAS_LETTER = re.compile(r"[A-Za-z]")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class SectionBoundary:
    """A header line that opens a section."""

    line: int
    name: str
    label: str
    kind: str  # "catalogue" or "caps"


@dataclass
class SectionRegion:
    """Lines [line_start, line_end) of the document belonging to one section."""

    name: str
    label: str
    line_start: int
    line_end: int


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def detect_sections(text: str) -> list[SectionBoundary]:
    """Return section boundaries sorted by line number."""
    lines = text.split("\n")
    boundaries: list[SectionBoundary] = []

    for i, line in enumerate(lines):
        boundary = _boundary_at(lines, i)
        if boundary is None:
            continue
        if boundaries and _only_blank_between(lines, boundaries[-1].line, i):
            continue
        boundaries.append(boundary)

    logger.debug(
        "Detected %d section boundaries (%d from catalogue)",
        len(boundaries),
        sum(1 for b in boundaries if b.kind == "catalogue"),
    )
    return boundaries


def split_regions(
    text: str,
    boundaries: list[SectionBoundary] | None = None,
) -> list[SectionRegion]:
    """
    Cut the document into regions between consecutive boundaries.

    Text before the first boundary becomes a "preamble" region when it has
    any content. With no boundaries at all the whole text is one
    "document" region.
    """
    lines = text.split("\n")
    if boundaries is None:
        boundaries = detect_sections(text)

    if not boundaries:
        name, label = DOCUMENT_SECTION
        return [SectionRegion(name, label, 0, len(lines))]

    regions: list[SectionRegion] = []
    first = boundaries[0].line
    if any(line.strip() for line in lines[:first]):
        name, label = PREAMBLE_SECTION
        regions.append(SectionRegion(name, label, 0, first))

    for current, following in zip(boundaries, boundaries[1:] + [None]):
        end = following.line if following is not None else len(lines)
        regions.append(
            SectionRegion(current.name, current.label, current.line, end)
        )
    return regions


def slugify(title: str) -> str:
    """'RESULTS OF OPERATIONS' → 'results_of_operations'."""
    return _SLUG_CHARS.sub("_", title.lower()).strip("_")[:60]


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _boundary_at(lines: list[str], i: int) -> SectionBoundary | None:
    line = lines[i]
    if is_table_line(line):
        return None

    pattern = match_section(line)
    if pattern is not None:
        return SectionBoundary(i, pattern.name, pattern.label, "catalogue")

    if _is_caps_title(line) and _next_content_is_normal_case(lines, i):
        title = line.strip()
        return SectionBoundary(i, slugify(title), title.title(), "caps")
    return None


def _is_caps_title(line: str) -> bool:
    stripped = line.strip()
    if not 4 <= len(stripped) <= 80:
        return False
    if len(stripped.split()) < 2:
        return False
    if not _HAS_LETTER.search(stripped):
        return False  # purely numeric / punctuation
    return stripped == stripped.upper()


def _next_content_is_normal_case(lines: list[str], i: int) -> bool:
    for following in lines[i + 1 :]:
        stripped = following.strip()
        if not stripped:
            continue
        return any(ch.islower() for ch in stripped)
    return False


def _only_blank_between(lines: list[str], previous: int, current: int) -> bool:
    return all(not line.strip() for line in lines[previous + 1 : current])
