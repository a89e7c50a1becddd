#!/usr/bin/env python3
"""
Exception hierarchy for the ingestion core.

Every error carries an error code and the HTTP status the API layer maps it to.
Only validation and not-found errors ever reach a caller synchronously;
recognition and consistency errors are contained at the page they belong to.
"""
from typing import Any, Dict, Optional


class IngestError(Exception):
    """Base exception for all ingestion errors."""

    def __init__(self, message: str, error_code: str, http_status: int = 500, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.http_status = http_status
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.error_code,
            "status": self.http_status,
            "details": self.details,
        }


class ValidationError(IngestError):
    """Rejected input: empty upload, no image payloads, bad thresholds, bad action."""

    def __init__(self, message: str, field: Optional[str] = None, **details):
        if field:
            details["field"] = field
        super().__init__(message, "VALIDATION_ERROR", http_status=400, details=details)


class NotFoundError(IngestError):
    """Unknown batch, collection or page identifier."""

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type} not found",
            "RESOURCE_NOT_FOUND",
            http_status=404,
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class RecognitionError(IngestError):
    """The recognition engine failed for one page."""

    def __init__(self, message: str, **details):
        super().__init__(message, "RECOGNITION_FAILED", http_status=502, details=details)


class ConsistencyError(IngestError):
    """A completion arrived for an item the aggregate does not track (or already finished)."""

    def __init__(self, message: str, **details):
        super().__init__(message, "CONSISTENCY_VIOLATION", http_status=409, details=details)
