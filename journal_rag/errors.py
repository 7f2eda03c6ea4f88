"""Exception types raised across the retrieval pipeline.

Backend failures (EmbeddingServiceError, SearchBackendError) are recovered
locally by the search layer. Only PipelineError reaches the caller, and only
as a structured payload built by ``PipelineError.to_payload``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

APOLOGETIC_MESSAGE = (
    "I'm sorry, I ran into a problem while looking through your journal. "
    "Please try again in a moment."
)


class RagError(Exception):
    """Base class for journal-rag errors."""


class InvalidInputError(RagError, ValueError):
    """Empty or malformed query text."""


class EmbeddingServiceError(RagError):
    """Embedding service returned a non-success response or failed in transit."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is not None:
            return f"{base} (status={self.status_code}, body={self.body[:200]!r})"
        return base


class SearchBackendError(RagError):
    """Vector index or relational store call failed."""

    def __init__(
        self,
        backend: str,
        message: str,
        status_code: Optional[int] = None,
        detail: str = "",
    ):
        self.backend = backend
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"[{backend}] {message}")


class NoDataInRangeError(RagError):
    """No documents exist in the requested time window.

    Not a failure: signals that downstream search for a sub-question can be
    skipped entirely.
    """

    def __init__(self, start: Optional[str] = None, end: Optional[str] = None):
        self.start = start
        self.end = end
        super().__init__(f"No entries found between {start} and {end}")


class ClassificationError(RagError):
    """Remote message classification failed."""


class CompletionServiceError(EmbeddingServiceError):
    """Chat completion request failed or returned an unusable response."""


class PipelineError(RagError):
    """Uncaught failure that reached the pipeline boundary."""

    def __init__(self, stage: str, cause: Optional[BaseException] = None):
        self.stage = stage
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc).isoformat()
        detail = f": {type(cause).__name__}" if cause is not None else ""
        super().__init__(f"Pipeline failed during {stage}{detail}")

    def to_payload(self) -> Dict[str, Any]:
        """User-safe failure payload with diagnostics, no raw exception text."""
        return {
            "text": APOLOGETIC_MESSAGE,
            "diagnostics": {
                "stage": self.stage,
                "timestamp": self.timestamp,
                "error_type": type(self.cause).__name__ if self.cause is not None else "PipelineError",
            },
        }
