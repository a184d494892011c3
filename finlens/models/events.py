# =============================================================================
# Streaming Events — closed tagged union
# =============================================================================
#
# The report and Q&A orchestrators both have streaming variants that yield
# these events in emission order. The transport layer (SSE, websocket, ...)
# serialises each event with `model_dump_json()`.
#
# Exactly one terminal event (CompleteEvent or ErrorEvent) ends every
# stream, and nothing is emitted after it.
#
# DESIGN DECISION: Pydantic discriminated union on the `type` field, so a
# consumer can parse any event back with `StreamEventAdapter.validate_json`.
# =============================================================================

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from finlens.models.responses import ReportResponse


class ProgressEvent(BaseModel):
    """Pipeline moved to a new stage."""

    type: Literal["progress"] = "progress"
    stage: str = Field(description="PipelineStage value, e.g. 'chunking'")
    message: str = ""
    section_type: str | None = None  # Set for per-section stages


class SectionEvent(BaseModel):
    """A report section finished generating."""

    type: Literal["section"] = "section"
    section_type: str
    content: str


class ChunkEvent(BaseModel):
    """A partial token delta from a streamed answer."""

    type: Literal["chunk"] = "chunk"
    content: str


class CompleteEvent(BaseModel):
    """Terminal success event. Carries the report or the final answer."""

    type: Literal["complete"] = "complete"
    report: ReportResponse | None = None
    answer: str | None = None


class ErrorEvent(BaseModel):
    """Terminal failure event."""

    type: Literal["error"] = "error"
    message: str
    error_type: str = Field(description="Exception class name")


StreamEvent = Annotated[
    Union[ProgressEvent, SectionEvent, ChunkEvent, CompleteEvent, ErrorEvent],
    Field(discriminator="type"),
]

StreamEventAdapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)

TERMINAL_EVENT_TYPES = frozenset({"complete", "error"})
