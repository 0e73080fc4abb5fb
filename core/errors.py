"""Exception taxonomy for the document QA pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Any


class RagError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a dictionary for reporting."""
        return {
            "error": {
                "message": self.message,
                "code": self.code,
                "details": self.details,
            }
        }


class ExtractionFailure(str, Enum):
    UNSUPPORTED_FORMAT = "unsupported_format"
    IO_FAILURE = "io_failure"
    BACKEND_FAILURE = "backend_failure"


class ExtractionError(RagError):
    """Raised when a file cannot be turned into text."""

    def __init__(
        self,
        message: str,
        kind: ExtractionFailure,
        file_path: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.kind = kind
        error_details = details or {}
        if file_path:
            error_details["file_path"] = file_path
        super().__init__(message, code=f"EXTRACTION_{kind.name}", details=error_details)


class IndexFailure(str, Enum):
    WRITE_REJECTED = "write_rejected"
    QUERY_FAILED = "query_failed"


class SearchIndexError(RagError):
    """Raised for search index write or query failures."""

    def __init__(
        self,
        message: str,
        kind: IndexFailure,
        status: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.kind = kind
        self.status = status
        error_details = details or {}
        if status is not None:
            error_details["status"] = status
        super().__init__(message, code=f"INDEX_{kind.name}", details=error_details)


class StoreError(RagError):
    """Raised when the conversation store rejects a request."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        body: str = "",
        details: dict[str, Any] | None = None,
    ):
        self.status = status
        self.body = body
        error_details = details or {}
        error_details["status"] = status
        if body:
            error_details["body"] = body[:500]
        super().__init__(message, code="STORE_BACKEND_REJECTED", details=error_details)


class GenerationFailure(str, Enum):
    TIMEOUT = "timeout"
    BACKEND_ERROR = "backend_error"
    EMPTY_RESPONSE = "empty_response"


class GenerationError(RagError):
    """Raised for embedding or generation failures of the inference service."""

    def __init__(
        self,
        message: str,
        kind: GenerationFailure,
        model: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.kind = kind
        error_details = details or {}
        if model:
            error_details["model"] = model
        super().__init__(message, code=f"GENERATION_{kind.name}", details=error_details)


class QAError(RagError):
    """Terminal failure of a question/answer exchange at a given stage."""

    def __init__(self, stage: str, cause: Exception):
        self.stage = stage
        self.cause = cause
        super().__init__(
            f"Question answering failed during {stage}: {cause}",
            code="QA_FAILED",
            details={"stage": stage, "error_type": type(cause).__name__},
        )
