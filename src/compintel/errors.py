"""Error taxonomy shared by the search, embedding, webhook and job-tracking layers.

Every terminal failure surfaces as an :class:`IntegrationError` carrying a
stable :class:`ErrorCode`, so callers can branch on the code rather than on the
message text. :meth:`IntegrationError.to_payload` renders the structured body
returned to HTTP clients.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    EXTERNAL_API_ERROR = "EXTERNAL_API_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    WEBHOOK_ERROR = "WEBHOOK_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    UNSUPPORTED_FILE_TYPE = "UNSUPPORTED_FILE_TYPE"
    FILE_VALIDATION_ERROR = "FILE_VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"


_STATUS_CODES: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.EXTERNAL_API_ERROR: 503,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.TIMEOUT_ERROR: 504,
    ErrorCode.WEBHOOK_ERROR: 502,
    ErrorCode.CONFIGURATION_ERROR: 500,
    ErrorCode.FILE_TOO_LARGE: 413,
    ErrorCode.UNSUPPORTED_FILE_TYPE: 400,
    ErrorCode.FILE_VALIDATION_ERROR: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INTERNAL_ERROR: 500,
}


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class IntegrationError(Exception):
    """Base class for classified failures."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        code: ErrorCode | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        if code is not None:
            self.code = code
        self.status_code = status_code if status_code is not None else _STATUS_CODES[self.code]

    def to_payload(self, path: str | None = None) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details is not None:
            error["details"] = self.details
        return {"error": error, "timestamp": _utcnow_iso(), "path": path}


class ValidationError(IntegrationError):
    code = ErrorCode.VALIDATION_ERROR


class ExternalAPIError(IntegrationError):
    code = ErrorCode.EXTERNAL_API_ERROR


class DatabaseError(IntegrationError):
    code = ErrorCode.DATABASE_ERROR


class DeadlineExceededError(IntegrationError):
    code = ErrorCode.TIMEOUT_ERROR


class WebhookError(IntegrationError):
    code = ErrorCode.WEBHOOK_ERROR


class ConfigurationError(IntegrationError):
    code = ErrorCode.CONFIGURATION_ERROR


class NotFoundError(IntegrationError):
    code = ErrorCode.NOT_FOUND


class FileValidationError(IntegrationError):
    code = ErrorCode.FILE_VALIDATION_ERROR


__all__ = [
    "ErrorCode",
    "IntegrationError",
    "ValidationError",
    "ExternalAPIError",
    "DatabaseError",
    "DeadlineExceededError",
    "WebhookError",
    "ConfigurationError",
    "NotFoundError",
    "FileValidationError",
]
