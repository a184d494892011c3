# =============================================================================
# Unit Tests — Semantic Chunker
# =============================================================================
#
# Tests section-bounded, table-atomic chunking without external
# dependencies. No API keys, databases, or network calls needed.
# =============================================================================

from finlens.models.chunk import ContentType, Region
from finlens.services.chunker import (
    TABLE_OVERSIZE_FACTOR,
    classify_content_type,
    split_sentences,
    split_text_into_semantic_chunks,
)
from finlens.services.cleaner import clean_text
from finlens.services.parser import extract_csv_text

PIPE_TABLE_LINES = [
    "| Metric | 2024 | 2023 |",
    "|---|---|---|",
    "| Revenue | $1,200 | $1,050 |",
    "| Net income | $300 | $250 |",
    "| EBITDA | $450 | $400 |",
]
PIPE_TABLE = "\n".join(PIPE_TABLE_LINES)


def _paragraph(n: int) -> str:
    return f"Paragraph {n} describes operating performance for the period in detail."


def _document_with_table() -> tuple[str, list[str]]:
    """About fifty lines: narrative paragraphs around one 5-line pipe table."""
    before = [_paragraph(i) for i in range(12)]
    after = [_paragraph(i) for i in range(12, 23)]
    text = "\n\n".join(before + [PIPE_TABLE] + after)
    return text, before + after


class TestTableAtomicity:
    """A detected table never straddles a chunk boundary."""

    def test_table_lands_in_exactly_one_chunk(self):
        text, _ = _document_with_table()
        chunks = split_text_into_semantic_chunks(
            text, chunk_size=80, chunk_overlap=20, min_chunk_size=0,
        )
        holding = [c for c in chunks if PIPE_TABLE in c.text]
        assert len(holding) == 1
        assert len(PIPE_TABLE) > 80  # larger than the configured chunk size

    def test_no_chunk_holds_part_of_the_table(self):
        text, _ = _document_with_table()
        chunks = split_text_into_semantic_chunks(
            text, chunk_size=80, chunk_overlap=20, min_chunk_size=0,
        )
        for chunk in chunks:
            present = [line in chunk.raw_text for line in PIPE_TABLE_LINES]
            assert all(present) or not any(present)

    def test_table_chunk_is_enriched_and_typed(self):
        text, _ = _document_with_table()
        chunks = split_text_into_semantic_chunks(text, chunk_size=80, chunk_overlap=20)
        [table_chunk] = [c for c in chunks if c.content_type == ContentType.TABLE]
        assert table_chunk.text.startswith("[Table: Metric | 2024 | 2023]")
        assert "Metric: Revenue | 2024: $1,200 | 2023: $1,050" in table_chunk.text
        assert table_chunk.raw_text == PIPE_TABLE

    def test_overlap_is_not_carried_into_the_table(self):
        text, _ = _document_with_table()
        chunks = split_text_into_semantic_chunks(text, chunk_size=80, chunk_overlap=20)
        [table_chunk] = [c for c in chunks if c.content_type == ContentType.TABLE]
        assert "Paragraph" not in table_chunk.text


class TestCoverage:
    """No paragraph is lost between chunks."""

    def test_every_paragraph_survives(self):
        text, paragraphs = _document_with_table()
        chunks = split_text_into_semantic_chunks(text, chunk_size=80, chunk_overlap=20)
        joined = "\n".join(c.raw_text for c in chunks)
        for paragraph in paragraphs:
            assert paragraph in joined

    def test_oversized_paragraph_is_split_on_sentences(self):
        sentences = [
            f"Sentence number {i} explains a driver of margin change." for i in range(10)
        ]
        text = " ".join(sentences)
        chunks = split_text_into_semantic_chunks(
            text, chunk_size=100, chunk_overlap=20, min_chunk_size=0,
        )
        assert len(chunks) > 1
        assert all(len(c.text) <= 100 for c in chunks)
        joined = " ".join(c.raw_text for c in chunks)
        for sentence in sentences:
            assert sentence in joined

    def test_small_trailing_fragment_merges_backwards(self):
        text = f"{_paragraph(1)}\n\n{_paragraph(2)}\n\nShort tail."
        chunks = split_text_into_semantic_chunks(
            text, chunk_size=80, chunk_overlap=0, min_chunk_size=50,
        )
        assert chunks[-1].text.endswith("Short tail.")
        assert not any(c.text == "Short tail." for c in chunks)

    def test_empty_text_gives_no_chunks(self):
        assert split_text_into_semantic_chunks("") == []
        assert split_text_into_semantic_chunks("   \n\n  ") == []


LARGE = 1500


def _sheet_csv(rows: int, wide: bool = True) -> bytes:
    lines = ["quarter,revenue,cost,segment,region" if wide else "quarter,revenue"]
    for i in range(rows):
        row = f"Q{i % 4 + 1} {2000 + i // 4},{1000 + i}"
        if wide:
            row += f",{600 + i},Segment {i % 7},Region {i % 3}"
        lines.append(row)
    return "\n".join(lines).encode()


def _row_lines(text: str) -> list[str]:
    return [line for line in text.split("\n") if line.startswith("quarter: Q")]


class TestLargeTables:
    """Oversized table blocks are cut into row groups that fit an embedding call."""

    def test_spreadsheet_chunks_stay_near_chunk_size(self):
        text = clean_text(extract_csv_text(_sheet_csv(300)))
        assert len(text) > LARGE * TABLE_OVERSIZE_FACTOR

        chunks = split_text_into_semantic_chunks(text, chunk_size=LARGE)
        assert len(chunks) > 3
        assert max(len(c.text) for c in chunks) <= LARGE * 3

    def test_spreadsheet_rows_are_not_flattened_again(self):
        text = clean_text(extract_csv_text(_sheet_csv(300)))
        chunks = split_text_into_semantic_chunks(text, chunk_size=LARGE)
        assert not any("[Table:" in c.text for c in chunks)
        assert not any("quarter: quarter:" in c.text for c in chunks)

    def test_every_spreadsheet_row_lands_in_exactly_one_chunk(self):
        text = clean_text(extract_csv_text(_sheet_csv(300)))
        chunks = split_text_into_semantic_chunks(text, chunk_size=LARGE)
        rows = _row_lines(text)
        assert len(rows) == 300
        for row in rows:
            holding = [c for c in chunks if row in c.raw_text.split("\n")]
            assert len(holding) == 1

    def test_two_column_sheet_splits_on_lines(self):
        text = clean_text(extract_csv_text(_sheet_csv(400, wide=False)))
        chunks = split_text_into_semantic_chunks(text, chunk_size=LARGE)
        assert max(len(c.text) for c in chunks) <= LARGE * 2
        joined = "\n".join(c.raw_text for c in chunks)
        for row in _row_lines(text):
            assert row in joined

    def test_oversized_space_table_repeats_header(self):
        header = "Segment  2024  2023"
        rows = [f"Unit {i}  ${1000 + i:,}  ${900 + i:,}" for i in range(200)]
        text = "\n".join([header, *rows])

        chunks = split_text_into_semantic_chunks(text, chunk_size=300, min_chunk_size=0)
        assert len(chunks) > 1
        for chunk in chunks:
            assert chunk.content_type == ContentType.TABLE
            assert chunk.raw_text.startswith(header + "\n")
            assert chunk.text.startswith("[Table: Segment | 2024 | 2023]")
            assert len(chunk.text) <= 300 * 3
        for row in rows:
            assert sum(row in c.raw_text.split("\n") for c in chunks) == 1

    def test_table_within_limit_stays_whole(self):
        text, _ = _document_with_table()
        chunks = split_text_into_semantic_chunks(text, chunk_size=80, chunk_overlap=20)
        assert len([c for c in chunks if c.content_type == ContentType.TABLE]) == 1


class TestSectionBoundaries:
    """Chunks never span two sections and carry section metadata."""

    TEXT = (
        "Item 1. Business\n\n"
        "We design and sell industrial widgets to manufacturers worldwide.\n\n"
        "Item 1A. Risk Factors\n\n"
        "We face intense competition from larger rivals in every market."
    )

    def test_chunks_follow_sections(self):
        chunks = split_text_into_semantic_chunks(self.TEXT, chunk_size=1500)
        assert [c.section_name for c in chunks] == ["business_overview", "risk_factors"]
        assert chunks[1].section_label == "Item 1A – Risk Factors"

    def test_no_chunk_mixes_sections(self):
        chunks = split_text_into_semantic_chunks(self.TEXT, chunk_size=1500)
        for chunk in chunks:
            assert not ("widgets" in chunk.text and "competition" in chunk.text)

    def test_document_without_headers_is_one_section(self):
        chunks = split_text_into_semantic_chunks(_paragraph(1))
        assert [c.section_name for c in chunks] == ["document"]


class TestChunkMetadata:
    """Ids, indices, positions and document type."""

    def test_ids_and_indices_are_dense(self):
        text, _ = _document_with_table()
        chunks = split_text_into_semantic_chunks(text, chunk_size=80, chunk_overlap=20)
        for i, chunk in enumerate(chunks):
            assert chunk.index == i
            assert chunk.id == f"chunk_{i}"

    def test_positions_increase_within_unit_interval(self):
        text, _ = _document_with_table()
        chunks = split_text_into_semantic_chunks(text, chunk_size=80, chunk_overlap=20)
        positions = [c.position for c in chunks]
        assert positions == sorted(positions)
        assert all(0.0 <= p < 1.0 for p in positions)
        assert chunks[0].region == Region.FRONT_MATTER

    def test_document_type_is_attached(self):
        chunks = split_text_into_semantic_chunks(_paragraph(1), document_type="10-K")
        assert chunks[0].document_type == "10-K"
        assert chunks[0].metadata()["document_type"] == "10-K"

    def test_metadata_keys(self):
        [chunk] = split_text_into_semantic_chunks(_paragraph(1))
        assert set(chunk.metadata()) == {
            "id", "index", "position", "region", "section_name",
            "section_label", "content_type", "document_type",
        }


class TestClassifyContentType:
    """Tests for classify_content_type()."""

    def test_single_short_line_is_header(self):
        assert classify_content_type("Item 1A. Risk Factors") == ContentType.HEADER

    def test_table_lines(self):
        assert classify_content_type(PIPE_TABLE) == ContentType.TABLE

    def test_bullets(self):
        text = "- Expand into Europe\n- Launch new products\n- Reduce unit costs"
        assert classify_content_type(text) == ContentType.LIST

    def test_narrative(self):
        text = f"{_paragraph(1)}\n{_paragraph(2)}"
        assert classify_content_type(text) == ContentType.NARRATIVE

    def test_empty(self):
        assert classify_content_type("") == ContentType.NARRATIVE


class TestSplitSentences:
    """Tests for split_sentences()."""

    def test_terminal_punctuation(self):
        assert split_sentences("Revenue grew. Costs fell! Margins? Yes.") == [
            "Revenue grew.", "Costs fell!", "Margins?", "Yes.",
        ]

    def test_decimal_is_not_a_boundary(self):
        assert split_sentences("Revenue was $30.4 billion. Up 5.2%.") == [
            "Revenue was $30.4 billion.", "Up 5.2%.",
        ]
