# =============================================================================
# Table Detection & Parsing — plain-text heuristics
# =============================================================================
#
# Financial filings are table-heavy (income statements, segment breakdowns,
# share counts). Extracted text loses the table structure, so a naive
# splitter cuts tables in half and neither half is answerable on its own.
#
# This module finds table-shaped line runs so the chunker can keep them
# atomic, and flattens them into "header: value" rows that embed well.
#
# A line is a "table line" if it has any of:
#   - pipe-delimited cells          | Revenue | $1,234 |
#   - a separator / rule            ----+------+----
#   - 3+ columns split by 2+ spaces Revenue  2024  2023
#   - 2+ tab characters
#   - 2+ dollar amounts             $1,200   $1,050
#   - 2+ accounting negatives with column spacing   (120)  (95)
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_PIPE_CELLS = re.compile(r"\|.*\|")
_SEPARATOR_LINE = re.compile(r"^[\s\-=_+|]{4,}$")
_PIPE_SEPARATOR = re.compile(r"^[\s\-=_+|:]+$")
_SPACE_SEPARATOR = re.compile(r"^[\s\-=_+]+$")
_COLUMN_GAP = re.compile(r"\s{2,}")
_DOLLAR_AMOUNT = re.compile(r"\$[\d,]+(?:\.\d+)?")
_ACCOUNTING_NEGATIVE = re.compile(r"\([\d,]+(?:\.\d+)?\)")
_KEY_VALUE_CELL = re.compile(r"^[^:]+:\s")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class TableRegion:
    """
    A detected table: inclusive line range plus character offsets.

    `start`/`end` index into the text passed to detect_tables(), so
    `text[start:end] == region.text`.
    """

    line_start: int
    line_end: int
    start: int
    end: int
    text: str

    def overlaps_lines(self, first: int, last: int) -> bool:
        return self.line_start <= last and first <= self.line_end


@dataclass
class ParsedTable:
    """Header row plus data rows, cells already trimmed."""

    headers: list[str]
    rows: list[list[str]] = field(default_factory=list)
    style: str = "space"  # "pipe" or "space"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def is_table_line(line: str) -> bool:
    """Heuristic: does this single line look like part of a table?"""
    trimmed = line.strip()
    if not trimmed:
        return False

    if _PIPE_CELLS.search(trimmed):
        return True
    if _SEPARATOR_LINE.match(trimmed):
        return True

    columns = [c for c in _COLUMN_GAP.split(trimmed) if c]
    if len(columns) >= 3:
        return True
    if trimmed.count("\t") >= 2:
        return True
    if len(_DOLLAR_AMOUNT.findall(trimmed)) >= 2:
        return True
    if len(_ACCOUNTING_NEGATIVE.findall(trimmed)) >= 2 and len(columns) >= 2:
        return True

    return False


def detect_tables(text: str, min_rows: int = 3) -> list[TableRegion]:
    """
    Find runs of at least `min_rows` table lines.

    A run tolerates a single non-table line (a wrapped header or a blank
    spacer); a second consecutive non-table line closes it. Trailing
    tolerated lines are not part of the region.
    """
    lines = text.split("\n")
    offsets = _line_offsets(lines)
    regions: list[TableRegion] = []

    run_start = -1
    gap = 0

    for i, line in enumerate(lines):
        if is_table_line(line):
            if run_start == -1:
                run_start = i
            gap = 0
            continue

        if run_start == -1:
            continue
        gap += 1
        if gap > 1:
            run_end = i - gap
            if run_end - run_start + 1 >= min_rows:
                regions.append(_build_region(lines, offsets, run_start, run_end))
            run_start = -1
            gap = 0

    if run_start != -1:
        run_end = len(lines) - 1 - gap
        if run_end - run_start + 1 >= min_rows:
            regions.append(_build_region(lines, offsets, run_start, run_end))

    if regions:
        logger.debug("Detected %d table regions", len(regions))
    return regions


def parse_table(table_text: str) -> ParsedTable | None:
    """
    Split a table region into headers and rows.

    Returns None when fewer than two data lines remain after separator
    lines are removed. Callers keep the raw text in that case.
    """
    lines = [line.strip() for line in table_text.split("\n")]
    lines = [line for line in lines if line]

    if any(_PIPE_CELLS.search(line) for line in lines):
        data_lines = [line for line in lines if not _PIPE_SEPARATOR.match(line)]
        if len(data_lines) < 2:
            return None
        cells = [_split_pipe_row(line) for line in data_lines]
        return ParsedTable(headers=cells[0], rows=cells[1:], style="pipe")

    data_lines = [line for line in lines if not _SPACE_SEPARATOR.match(line)]
    if len(data_lines) < 2:
        return None
    cells = [[c for c in _COLUMN_GAP.split(line) if c] for line in data_lines]
    return ParsedTable(headers=cells[0], rows=cells[1:], style="space")


def is_separator_line(line: str) -> bool:
    """A rule line such as `|---|---|` or `------  ------`."""
    trimmed = line.strip()
    return bool(trimmed) and bool(
        _PIPE_SEPARATOR.match(trimmed) or _SPACE_SEPARATOR.match(trimmed)
    )


def is_key_value_table(parsed: ParsedTable | None) -> bool:
    """
    True when every cell is already `header: value` text.

    Spreadsheet extraction writes rows this way, and flattening them again
    would only repeat each header inside itself.
    """
    if parsed is None or parsed.style != "pipe":
        return False
    cells = [*parsed.headers, *(cell for row in parsed.rows for cell in row)]
    return bool(cells) and all(_KEY_VALUE_CELL.match(cell) for cell in cells)


def header_lines(table_text: str) -> list[str]:
    """
    The header row of a table region plus its rule line, if it has one.

    Key-value tables have no header row; every row names its own columns.
    """
    lines = [line for line in table_text.split("\n") if line.strip()]
    if not lines or is_key_value_table(parse_table(table_text)):
        return []
    if len(lines) > 1 and is_separator_line(lines[1]):
        return lines[:2]
    return lines[:1]


def table_to_flat_text(parsed: ParsedTable | None) -> str:
    """
    Render a parsed table as independently searchable lines.

        [Table: Metric | 2024 | 2023]
        Metric: Revenue | 2024: $1,200 | 2023: $1,050

    Key-value tables render as "" because their rows already read this way.
    """
    if parsed is None or is_key_value_table(parsed):
        return ""

    lines = [f"[Table: {' | '.join(parsed.headers)}]"]
    for row in parsed.rows:
        pairs = [
            f"{header}: {row[i] if i < len(row) and row[i] else 'N/A'}"
            for i, header in enumerate(parsed.headers)
        ]
        lines.append(" | ".join(pairs))
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _line_offsets(lines: list[str]) -> list[int]:
    offsets = []
    position = 0
    for line in lines:
        offsets.append(position)
        position += len(line) + 1  # +1 for the newline
    return offsets


def _build_region(
    lines: list[str],
    offsets: list[int],
    first: int,
    last: int,
) -> TableRegion:
    text = "\n".join(lines[first : last + 1])
    start = offsets[first]
    return TableRegion(
        line_start=first,
        line_end=last,
        start=start,
        end=start + len(text),
        text=text,
    )


def _split_pipe_row(line: str) -> list[str]:
    return [cell.strip() for cell in line.split("|") if cell.strip()]
