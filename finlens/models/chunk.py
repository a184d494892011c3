# =============================================================================
# Chunk Record — the one retrievable unit used everywhere
# =============================================================================
#
# DESIGN DECISION: A single concrete dataclass crosses every module boundary
# (chunker → indices → fusion → reranker → prompts). Retrieval functions
# always return ScoredChunk, never bare strings.
#
# DESIGN DECISION: Dataclasses here, Pydantic at the edges. Chunks are
# internal and created by the thousand; validation would cost time for no
# benefit. The report/answer schemas in responses.py are Pydantic.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ContentType(str, Enum):
    """Line-shape classification of a chunk."""

    TABLE = "table"
    LIST = "list"
    NARRATIVE = "narrative"
    HEADER = "header"


class Region(str, Enum):
    """Coarse position of a chunk within the document."""

    FRONT_MATTER = "front_matter"
    BODY = "body"
    BACK_MATTER = "back_matter"


# Position thresholds for region tagging
FRONT_MATTER_LIMIT = 0.08
BACK_MATTER_LIMIT = 0.92


def region_for_position(position: float) -> Region:
    """Map a relative position in [0, 1] to its region."""
    if position < FRONT_MATTER_LIMIT:
        return Region.FRONT_MATTER
    if position > BACK_MATTER_LIMIT:
        return Region.BACK_MATTER
    return Region.BODY


@dataclass
class Chunk:
    """
    A bounded, independently retrievable unit of document text.

    `text` is what gets indexed and shown to the LLM. For table chunks it is
    the flattened key:value rendering followed by the raw table. `raw_text`
    is always the unenriched source text, so concatenating raw texts
    reconstructs the document (plus overlap).
    """

    id: str
    text: str
    index: int
    position: float
    region: Region
    section_name: str
    section_label: str
    content_type: ContentType
    document_type: str
    raw_text: str = ""

    def metadata(self) -> dict[str, Any]:
        """Flat metadata dict used for filtering and vector-store storage."""
        return {
            "id": self.id,
            "index": self.index,
            "position": self.position,
            "region": self.region.value,
            "section_name": self.section_name,
            "section_label": self.section_label,
            "content_type": self.content_type.value,
            "document_type": self.document_type,
        }


@dataclass
class ScoredChunk:
    """A chunk plus the score assigned by whichever ranker produced it."""

    chunk: Chunk
    score: float

    @property
    def id(self) -> str:
        return self.chunk.id
