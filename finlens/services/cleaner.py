"""Text cleaning for extracted financial documents."""

from __future__ import annotations

import re

_PAGE_OF_MARKER = re.compile(r"Page\s+\d+\s+of\s+\d+", re.IGNORECASE)
_STANDALONE_PAGE_NUMBER = re.compile(r"^[ \t]*\d{1,3}[ \t]*$", re.MULTILINE)
_NBSP = re.compile("[\u00a0\u2007\u202f]")
# Runs of 2+ spaces are column gaps in space-aligned tables. Squeeze them to
# exactly two so table detection (which splits on 2+ whitespace) still works.
_COLUMN_GAP = re.compile(r" {2,}")
# Two spaces after a sentence is typing style, not a column gap.
_SENTENCE_GAP = re.compile(r"(?<=[a-z][.!?,;:]) {2,}(?=[A-Za-z])")
_TRAILING_WS = re.compile(r"[ \t]+$", re.MULTILINE)
_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")


def clean_text(text: str) -> str:
    """Remove page furniture and normalise whitespace.

    Strips "Page N of M" markers and lines holding only a 1-3 digit page
    number, turns form feeds into line breaks, and collapses blank-line
    runs to a single paragraph break. Section headers, including ALL-CAPS
    ones, are left intact.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("\f", "\n")
    text = _PAGE_OF_MARKER.sub("", text)
    text = _STANDALONE_PAGE_NUMBER.sub("", text)
    text = _NBSP.sub(" ", text)
    text = _SENTENCE_GAP.sub(" ", text)
    text = _COLUMN_GAP.sub("  ", text)
    text = _TRAILING_WS.sub("", text)
    text = _EXCESS_BLANK_LINES.sub("\n\n", text)
    return text.strip()
