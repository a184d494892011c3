# =============================================================================
# Result Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data handed to the (external) transport
# layer. They are JSON-serialisable by construction: index handles and other
# live objects never appear here.
# =============================================================================

from pydantic import BaseModel, Field


class SectionResult(BaseModel):
    """One generated report section."""

    section_type: str = Field(
        description="Section key, e.g. 'overview' or 'keyRisks'",
    )
    content: str = Field(description="Markdown prose for the section")
    source_chunk_ids: list[str] = Field(
        default_factory=list,
        description="Chunks that were shown to the model for this section",
    )


class ReportResponse(BaseModel):
    """
    A fully generated report.

    `sections` keeps the fixed section-type order: overview,
    financialHighlights, keyRisks, managementCommentary.
    """

    document_id: str
    company_name: str
    document_type: str = Field(description="Document classification label")
    sections: list[SectionResult]

    def as_mapping(self) -> dict[str, str]:
        """Section type → content, in section order."""
        return {s.section_type: s.content for s in self.sections}


class SourceChunk(BaseModel):
    """
    A source chunk returned with a Q&A answer.

    Provides provenance so the user can verify which parts of the document
    were used to generate the response.
    """

    chunk_id: str
    content: str
    section_label: str
    content_type: str
    score: float = Field(description="Score from the last ranking stage")


class AnswerResponse(BaseModel):
    """Answer to an interactive question about an analysed document."""

    answer: str
    question: str
    query_type: str = Field(description="factual, analytical or comparative")
    sources: list[SourceChunk] = Field(default_factory=list)
