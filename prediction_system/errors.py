"""
Error types shared by the services and the HTTP layer.

Domain failures travel as PredictionErrorKind values on a result object and
only become APIError at the route boundary. StorageFailure is raised and
always reaches the client as a 503.

JSON error body:
{
    "success": false,
    "error": "Conflict",
    "message": "...",
    "code": "DUPLICATE_ENTRY",
    "details": {...}
}
"""

import logging
import uuid
from enum import Enum
from typing import Optional, Dict, Any

from fastapi import status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class PredictionErrorKind(str, Enum):
    """Recoverable outcomes of a prediction operation."""
    INVALID_FORMAT = "INVALID_FORMAT"
    NO_ACTIVE_SESSION = "NO_ACTIVE_SESSION"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    ENTRY_NOT_FOUND = "ENTRY_NOT_FOUND"
    ALREADY_RESOLVED = "ALREADY_RESOLVED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    CHANNEL_INACTIVE = "CHANNEL_INACTIVE"
    INVALID_CHANNEL_NAME = "INVALID_CHANNEL_NAME"
    INVALID_SETTINGS = "INVALID_SETTINGS"
    INVALID_USERNAME = "INVALID_USERNAME"


class ErrorCode:
    """Codes for failures outside the prediction domain"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"

    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_INVALID = "AUTH_INVALID"
    USER_EXISTS = "USER_EXISTS"

    NOT_FOUND = "NOT_FOUND"

    INTERNAL_ERROR = "INTERNAL_ERROR"
    STORAGE_FAILURE = "STORAGE_FAILURE"


class StorageFailure(Exception):
    """
    Persistence collaborator failed.

    Raised, never returned: the request fails hard and nothing it did is
    considered committed.
    """

    def __init__(self, message: str, operation: str = "", log_id: Optional[str] = None):
        self.message = message
        self.operation = operation
        self.log_id = log_id or uuid.uuid4().hex[:8]
        super().__init__(message)


class APIError(Exception):
    """An error the API reports with the JSON error body"""

    def __init__(
        self,
        status_code: int,
        error: str,
        message: str,
        code: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.status_code = status_code
        self.error = error
        self.message = message
        self.code = code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": False, "error": self.error, "message": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


class ServiceUnavailableError(APIError):
    """503, storage failed; the client may retry"""

    def __init__(self, log_id: Optional[str] = None):
        super().__init__(
            status.HTTP_503_SERVICE_UNAVAILABLE, "Service Unavailable",
            "Storage is temporarily unavailable. Please retry.",
            ErrorCode.STORAGE_FAILURE, {"log_id": log_id} if log_id else None,
        )


# kind -> (status code, error label)
ERROR_KIND_STATUS = {
    PredictionErrorKind.INVALID_FORMAT: (status.HTTP_400_BAD_REQUEST, "Bad Request"),
    PredictionErrorKind.INVALID_CHANNEL_NAME: (status.HTTP_400_BAD_REQUEST, "Bad Request"),
    PredictionErrorKind.INVALID_SETTINGS: (status.HTTP_400_BAD_REQUEST, "Bad Request"),
    PredictionErrorKind.INVALID_USERNAME: (status.HTTP_400_BAD_REQUEST, "Bad Request"),
    PredictionErrorKind.NO_ACTIVE_SESSION: (status.HTTP_404_NOT_FOUND, "Not Found"),
    PredictionErrorKind.ENTRY_NOT_FOUND: (status.HTTP_404_NOT_FOUND, "Not Found"),
    PredictionErrorKind.INVALID_TRANSITION: (status.HTTP_409_CONFLICT, "Conflict"),
    PredictionErrorKind.DUPLICATE_ENTRY: (status.HTTP_409_CONFLICT, "Conflict"),
    PredictionErrorKind.ALREADY_RESOLVED: (status.HTTP_409_CONFLICT, "Conflict"),
    PredictionErrorKind.PERMISSION_DENIED: (status.HTTP_403_FORBIDDEN, "Forbidden"),
    PredictionErrorKind.CHANNEL_INACTIVE: (status.HTTP_403_FORBIDDEN, "Forbidden"),
}


def api_error_for(kind: PredictionErrorKind, message: str, details: Optional[Dict] = None) -> APIError:
    """Map a domain error kind onto the transport error it presents as."""
    status_code, label = ERROR_KIND_STATUS[kind]
    return APIError(status_code, label, message, kind.value, details)


def log_storage_failure(error: Exception, operation: str) -> StorageFailure:
    """Log a persistence error with a short id and wrap it."""
    failure = StorageFailure(f"{type(error).__name__}: {error}", operation)
    logger.error(f"[{failure.log_id}] Storage failure in {operation}: {failure.message}")
    return failure
