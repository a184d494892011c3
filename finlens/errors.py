# =============================================================================
# Error Taxonomy
# =============================================================================
#
# Five failure classes, each handled differently by the orchestrators:
#
#   InputError           — caller's fault; raised before the pipeline starts
#   UpstreamError        — completion/embedding service failed after retries
#   PipelineError        — fatal mid-pipeline failure (e.g. zero chunks)
#   SessionNotFoundError — Q&A against a document with no cached analysis
#
# Degradable failures (reranking, decomposition, classification) have no
# exception type: they are caught where they happen, logged, and replaced
# with a safe default.
# =============================================================================

from __future__ import annotations


class FinLensError(Exception):
    """Base class for every error raised by this package."""


class InputError(FinLensError, ValueError):
    """Missing fields, empty extracted text, or an oversized upload."""


class UnsupportedFormatError(InputError):
    """The declared document format has no extractor."""


class UpstreamError(FinLensError):
    """
    An external model call failed.

    Carries the service name ("completion" or "embedding") and the HTTP
    status when one is known, so callers can surface the proximate cause.
    """

    def __init__(
        self,
        service: str,
        message: str,
        status_code: int | None = None,
    ) -> None:
        self.service = service
        self.status_code = status_code
        status = f" (status {status_code})" if status_code is not None else ""
        super().__init__(
            f"{service} call failed with UpstreamFailure{status}: {message}"
        )


class PipelineError(FinLensError):
    """Chunking or indexing failed; nothing is written to the session cache."""


class SessionNotFoundError(FinLensError, LookupError):
    """No cached analysis exists for the requested document."""

    def __init__(self, document_id: str) -> None:
        self.document_id = document_id
        super().__init__(
            "Analysis context not found. Please generate a report first."
        )
