"""Domain-specific exceptions for visitor counting."""
from enum import Enum
from typing import Any, Optional

from fastapi import HTTPException


class ErrorCode(str, Enum):
    """Error codes for visitor counting domain."""
    # Request errors
    INVALID_REQUEST = "INVALID_REQUEST"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    UNSUPPORTED_CONTENT_TYPE = "UNSUPPORTED_CONTENT_TYPE"
    # Record errors
    RECORD_NOT_FOUND = "RECORD_NOT_FOUND"
    # Processing errors
    MODEL_NOT_CONFIGURED = "MODEL_NOT_CONFIGURED"
    MODEL_INVOCATION_FAILED = "MODEL_INVOCATION_FAILED"
    STORAGE_WRITE_FAILED = "STORAGE_WRITE_FAILED"
    DATABASE_NOT_CONFIGURED = "DATABASE_NOT_CONFIGURED"


class ModelOutputError(Exception):
    """The model returned no usable structured payload."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class VisitorLogError(HTTPException):
    """Base class for errors rendered as ``{error, details, errorCode}``."""

    def __init__(
        self,
        status_code: int,
        error_code: ErrorCode,
        message: str,
        details: Any = None,
    ):
        super().__init__(status_code=status_code, detail=message)
        self.error_code = error_code
        self.message = message
        self.details = details


class InvalidRequestError(VisitorLogError):
    """A request field is missing or invalid."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(400, ErrorCode.INVALID_REQUEST, message, details)


class FileTooLargeError(VisitorLogError):
    """Uploaded video exceeds the size cap."""

    def __init__(self, max_size_mb: int):
        super().__init__(
            413,
            ErrorCode.FILE_TOO_LARGE,
            f"File is too large. Maximum size is {max_size_mb}MB.",
        )


class UnsupportedContentTypeError(VisitorLogError):
    """Request body is neither multipart nor JSON."""

    def __init__(self, content_type: str):
        super().__init__(
            415,
            ErrorCode.UNSUPPORTED_CONTENT_TYPE,
            "Unsupported Content-Type. Please use multipart/form-data or application/json.",
            {"content_type": content_type},
        )


class RecordNotFoundError(VisitorLogError):
    """Visitor log record not found."""

    def __init__(self, record_id: int):
        super().__init__(404, ErrorCode.RECORD_NOT_FOUND, f"Record {record_id} not found")


class ModelNotConfiguredError(VisitorLogError):
    """No model client is available."""

    def __init__(self):
        super().__init__(
            500,
            ErrorCode.MODEL_NOT_CONFIGURED,
            "Visitor counting model is not configured (GOOGLE_API_KEY missing)",
        )


class ModelInvocationError(VisitorLogError):
    """The model call failed or returned an unusable payload."""

    def __init__(self, error: ModelOutputError):
        super().__init__(
            500,
            ErrorCode.MODEL_INVOCATION_FAILED,
            error.message,
            error.details or None,
        )


class StorageWriteError(VisitorLogError):
    """Counting succeeded but the record could not be persisted."""

    def __init__(self, message: str):
        super().__init__(
            500,
            ErrorCode.STORAGE_WRITE_FAILED,
            "Visitor count could not be saved to the database",
            {"reason": message},
        )


class DatabaseNotConfiguredError(VisitorLogError):
    """History store is not available."""

    def __init__(self):
        super().__init__(
            500,
            ErrorCode.DATABASE_NOT_CONFIGURED,
            "Database not configured",
        )
