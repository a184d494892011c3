# =============================================================================
# Semantic Chunker — section-bounded, table-aware paragraph packing
# =============================================================================
#
# Splits cleaned document text into metadata-rich chunks for the lexical and
# semantic indices.
#
# DESIGN DECISION: Structure first, size second. A fixed-size sliding
# window (the usual approach) cuts through tables and mixes the tail of
# "Risk Factors" with the head of "Properties". Here:
#   1. Section boundaries (sections.py) split the document into regions.
#      No chunk spans two regions.
#   2. Table regions (tables.py) are atomic. A paragraph that touches a
#      table is emitted as its own chunk, prefixed with a flattened
#      "header: value" rendering for retrieval. Only a table block larger
#      than TABLE_OVERSIZE_FACTOR × chunk_size is cut, into row groups
#      that each repeat the header row, so it still fits an embedding call.
#   3. Within a region, blank-line paragraphs are packed into a buffer that
#      flushes when the next paragraph would exceed chunk_size. The tail of
#      each flushed chunk (chunk_overlap chars) seeds the next one.
#   4. Paragraphs longer than 1.5 × chunk_size are split on sentences and
#      packed with the same policy. A sentence still over that limit (rows
#      of a two-column sheet have no terminal punctuation) splits on lines.
#   5. A trailing fragment shorter than min_chunk_size is appended to the
#      previous chunk of the same region instead of standing alone.
#
# DESIGN DECISION: Character-based sizes, not tokens. Boundaries come from
# document structure; the size limit only decides when to flush.
#
# DESIGN DECISION: Overlap is never carried into or out of a table chunk.
# Carrying a table's tail forward would duplicate table lines into the
# following narrative chunk.
# =============================================================================

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass

from finlens.config import settings
from finlens.models.chunk import Chunk, ContentType, region_for_position
from finlens.services.sections import SectionRegion, detect_sections, split_regions
from finlens.services.tables import (
    TableRegion,
    detect_tables,
    header_lines,
    is_separator_line,
    is_table_line,
    parse_table,
    table_to_flat_text,
)

logger = logging.getLogger(__name__)

# Paragraphs longer than this multiple of chunk_size are split on sentences
OVERSIZE_FACTOR = 1.5
# Table blocks up to this multiple of chunk_size stay in one chunk
TABLE_OVERSIZE_FACTOR = 4

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")
_LIST_MARKER = re.compile(
    r"^(?:[-*•●▪◦‣]|\d{1,3}[.)]|\(?[a-zA-Z0-9]{1,3}\))\s+"
)
_HEADER_MAX_LENGTH = 80
_LIST_FRACTION = 0.4


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class _Piece:
    """A chunk before ids, positions and content types are assigned."""

    text: str
    raw_text: str
    section_name: str
    section_label: str
    is_table: bool = False


@dataclass
class _Paragraph:
    first_line: int
    last_line: int
    text: str


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def split_text_into_semantic_chunks(
    text: str,
    document_type: str = "unknown",
    chunk_size: int | None = None,
    chunk_overlap: int | None = None,
    min_chunk_size: int | None = None,
    table_min_rows: int | None = None,
) -> list[Chunk]:
    """
    Split cleaned text into section-bounded, table-aware chunks.

    Args:
        text: Cleaned document text (see cleaner.clean_text).
        document_type: Classification label attached to every chunk.
        chunk_size: Max characters per chunk (default from settings).
        chunk_overlap: Characters carried from one chunk into the next.
        min_chunk_size: Trailing fragments below this merge backwards.
        table_min_rows: Minimum line run that counts as a table.

    Returns:
        Chunks in document order with dense indices 0..N-1. An empty or
        whitespace-only text gives an empty list; the caller decides that
        this is fatal.
    """
    if not text.strip():
        return []

    max_size = chunk_size or settings.chunk_size
    overlap = settings.chunk_overlap if chunk_overlap is None else chunk_overlap
    min_size = settings.chunk_min_size if min_chunk_size is None else min_chunk_size
    min_rows = table_min_rows or settings.table_min_rows

    lines = text.split("\n")
    tables = detect_tables(text, min_rows=min_rows)

    # A header-looking line inside a table must not split the table
    boundaries = [
        b for b in detect_sections(text)
        if not any(t.line_start < b.line <= t.line_end for t in tables)
    ]
    regions = split_regions(text, boundaries)

    pieces: list[_Piece] = []
    for region in regions:
        pieces.extend(
            _chunk_region(lines, region, tables, max_size, overlap, min_size)
        )

    chunks = _finalise(pieces, document_type)

    logger.info(
        "Chunked document: %d chunks across %d sections (%d tables, "
        "chunk_size=%d, overlap=%d)",
        len(chunks), len(regions), sum(1 for p in pieces if p.is_table),
        max_size, overlap,
    )
    return chunks


def classify_content_type(text: str) -> ContentType:
    """
    Label a chunk by the shape of its lines.

    A lone short line is a header; mostly table-shaped lines make a table;
    a large share of bullet/numbered lines makes a list; anything else is
    narrative.
    """
    lines = [line.strip() for line in text.split("\n") if line.strip()]
    if not lines:
        return ContentType.NARRATIVE

    if len(lines) == 1 and len(lines[0]) <= _HEADER_MAX_LENGTH:
        return ContentType.HEADER

    table_lines = sum(1 for line in lines if "|" in line or is_table_line(line))
    if table_lines > len(lines) / 2:
        return ContentType.TABLE

    list_lines = sum(1 for line in lines if _LIST_MARKER.match(line))
    if list_lines >= len(lines) * _LIST_FRACTION:
        return ContentType.LIST

    return ContentType.NARRATIVE


def split_sentences(text: str) -> list[str]:
    """Split on terminal punctuation followed by whitespace."""
    return [s for s in _SENTENCE_END.split(text.strip()) if s]


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


class _Buffer:
    """
    Running chunk buffer for one region.

    `text` is what will be emitted (carried overlap + new content); `body`
    is only the new content, which is what a trailing merge appends to the
    previous chunk.
    """

    def __init__(self, max_size: int, overlap: int) -> None:
        self.max_size = max_size
        self.overlap = overlap
        self.text = ""
        self.body = ""
        self.body_joiner = ""
        self.flushed: list[str] = []

    def add(self, unit: str, joiner: str) -> None:
        if self.body and len(self.text) + len(joiner) + len(unit) > self.max_size:
            self.flush(carry=True)
        if not self.body:
            self.body_joiner = joiner
        self.text = f"{self.text}{joiner}{unit}" if self.text else unit
        self.body = f"{self.body}{joiner}{unit}" if self.body else unit

    def flush(self, carry: bool) -> None:
        if self.body:
            self.flushed.append(self.text)
        self.text = _overlap_tail(self.text, self.overlap) if carry and self.body else ""
        self.body = ""
        self.body_joiner = ""

    def drain(self) -> list[str]:
        drained, self.flushed = self.flushed, []
        return drained


def _chunk_region(
    lines: list[str],
    region: SectionRegion,
    tables: list[TableRegion],
    max_size: int,
    overlap: int,
    min_size: int,
) -> list[_Piece]:
    pieces: list[_Piece] = []
    buffer = _Buffer(max_size, overlap)

    def emit_text() -> None:
        for text in buffer.drain():
            pieces.append(_Piece(text, text, region.name, region.label))

    for block_text, block_tables in _blocks(lines, region, tables):
        if block_tables:
            buffer.flush(carry=False)
            emit_text()
            pieces.extend(_table_pieces(block_text, block_tables, region, max_size))
            continue

        if len(block_text) > max_size * OVERSIZE_FACTOR:
            for unit, joiner in _oversize_units(block_text, max_size):
                buffer.add(unit, joiner)
        else:
            buffer.add(block_text, "\n\n")
        emit_text()

    if buffer.body:
        previous = pieces[-1] if pieces else None
        if (
            len(buffer.body) < min_size
            and previous is not None
            and not previous.is_table
        ):
            merged = f"{previous.text}{buffer.body_joiner}{buffer.body}"
            previous.text = merged
            previous.raw_text = merged
        else:
            buffer.flush(carry=False)
            emit_text()

    return pieces


def _blocks(
    lines: list[str],
    region: SectionRegion,
    tables: list[TableRegion],
) -> Iterator[tuple[str, list[TableRegion]]]:
    """
    Yield (text, tables) per paragraph, fusing paragraphs that share a table.

    A table run may absorb one blank spacer line, so a single table can span
    two blank-line paragraphs; both become one atomic block.
    """
    paragraphs = _paragraphs(lines, region.line_start, region.line_end)
    i = 0
    while i < len(paragraphs):
        paragraph = paragraphs[i]
        touching = _tables_touching(paragraph, tables)
        if not touching:
            yield paragraph.text, []
            i += 1
            continue

        parts = [paragraph.text]
        table_end = max(t.line_end for t in touching)
        i += 1
        while i < len(paragraphs) and paragraphs[i].first_line <= table_end:
            for table in _tables_touching(paragraphs[i], tables):
                if table not in touching:
                    touching.append(table)
                table_end = max(table_end, table.line_end)
            parts.append(paragraphs[i].text)
            i += 1
        yield "\n\n".join(parts), touching


def _paragraphs(lines: list[str], start: int, end: int) -> list[_Paragraph]:
    paragraphs: list[_Paragraph] = []
    first = None
    for i in range(start, end):
        if lines[i].strip():
            if first is None:
                first = i
            continue
        if first is not None:
            paragraphs.append(_make_paragraph(lines, first, i - 1))
            first = None
    if first is not None:
        paragraphs.append(_make_paragraph(lines, first, end - 1))
    return paragraphs


def _make_paragraph(lines: list[str], first: int, last: int) -> _Paragraph:
    return _Paragraph(first, last, "\n".join(lines[first : last + 1]))


def _tables_touching(
    paragraph: _Paragraph,
    tables: list[TableRegion],
) -> list[TableRegion]:
    return [
        t for t in tables
        if t.overlaps_lines(paragraph.first_line, paragraph.last_line)
    ]


def _table_pieces(
    raw: str,
    tables: list[TableRegion],
    region: SectionRegion,
    max_size: int,
) -> list[_Piece]:
    text = _with_flat_rendering(raw, [t.text for t in tables])
    if len(text) <= max_size * TABLE_OVERSIZE_FACTOR:
        return [_Piece(text, raw, region.name, region.label, is_table=True)]

    # Flattened rows roughly double a group, so raw groups get half the room
    budget = max_size if text == raw else max_size // 2
    groups = list(_table_row_groups(raw, header_lines(tables[0].text), budget))
    logger.debug(
        "Split %d-char table block into %d row groups", len(text), len(groups),
    )
    pieces = []
    for group in groups:
        rows = [
            line for line in group.split("\n")
            if is_table_line(line) or is_separator_line(line)
        ]
        pieces.append(_Piece(
            _with_flat_rendering(group, ["\n".join(rows)]),
            group,
            region.name,
            region.label,
            is_table=True,
        ))
    return pieces


def _with_flat_rendering(raw: str, table_texts: list[str]) -> str:
    flats = [table_to_flat_text(parse_table(t)) for t in table_texts]
    flat = "\n".join(f for f in flats if f)
    return f"{flat}\n\n{raw}" if flat else raw


def _table_row_groups(raw: str, header: list[str], budget: int) -> Iterator[str]:
    """
    Cut a table block into runs of rows of about `budget` characters.

    Every group repeats the header lines; lines ahead of the header (a
    caption) stay with the first group.
    """
    lines = [line for line in raw.split("\n") if line.strip()]
    start = _find_run(lines, header) if header else -1
    if start == -1:
        lead, body, header = [], lines, []
    else:
        lead, body = lines[:start], lines[start + len(header):]

    prefix = lead + header
    size = sum(len(line) + 1 for line in prefix)
    group: list[str] = []
    for line in body:
        if group and size + len(line) > budget:
            yield "\n".join(prefix + group)
            prefix = header
            size = sum(len(h) + 1 for h in header)
            group = []
        group.append(line)
        size += len(line) + 1
    if group:
        yield "\n".join(prefix + group)


def _find_run(lines: list[str], run: list[str]) -> int:
    for i in range(len(lines) - len(run) + 1):
        if lines[i : i + len(run)] == run:
            return i
    return -1


def _oversize_units(text: str, max_size: int) -> Iterator[tuple[str, str]]:
    """(unit, joiner) pairs for a paragraph too long to pack whole."""
    limit = max_size * OVERSIZE_FACTOR
    for n, sentence in enumerate(split_sentences(text)):
        joiner = "\n\n" if n == 0 else " "
        if len(sentence) <= limit:
            yield sentence, joiner
            continue
        rows = [line for line in sentence.split("\n") if line.strip()]
        for m, line in enumerate(rows):
            yield line, joiner if m == 0 else "\n"


def _overlap_tail(text: str, overlap: int) -> str:
    """Last `overlap` chars of text, trimmed forward to a word boundary."""
    size = min(overlap, len(text) // 2)
    if size <= 0:
        return ""
    tail = text[-size:]
    space = tail.find(" ")
    if 0 <= space < len(tail) - 1:
        tail = tail[space + 1 :]
    return tail.strip()


def _finalise(pieces: list[_Piece], document_type: str) -> list[Chunk]:
    total = len(pieces)
    chunks: list[Chunk] = []
    for index, piece in enumerate(pieces):
        position = round(index / total, 3) if total else 0.0
        chunks.append(Chunk(
            id=f"chunk_{index}",
            text=piece.text,
            index=index,
            position=position,
            region=region_for_position(position),
            section_name=piece.section_name,
            section_label=piece.section_label,
            content_type=(
                ContentType.TABLE if piece.is_table
                else classify_content_type(piece.text)
            ),
            document_type=document_type,
            raw_text=piece.raw_text,
        ))
    return chunks
