"""
Standard API response envelope for consistent responses across all endpoints.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class APIEnvelope(BaseModel):
    """
    Standard API response envelope.

    Wraps all API responses in a consistent structure with metadata.
    """

    success: bool
    data: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: str

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "success": True,
                "data": {"success": True, "sourceDocumentId": "d1"},
                "error": None,
                "metadata": {"version": "1.0.0"},
                "timestamp": "2025-11-21T00:00:00.000Z",
            }
        }
    )


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def success_response(
    data: Any,
    request_id: Optional[str] = None,
    version: str = "1.0.0",
    **extra_metadata
) -> Dict[str, Any]:
    """
    Create a successful API response.

    Args:
        data: Response data
        request_id: Request correlation ID
        version: API version
        extra_metadata: Additional metadata fields

    Returns:
        API envelope dictionary
    """
    metadata = {
        "version": version,
        **({"request_id": request_id} if request_id else {}),
        **extra_metadata,
    }

    return {
        "success": True,
        "data": data,
        "error": None,
        "metadata": metadata,
        "timestamp": _timestamp(),
    }


def error_response(
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    field: Optional[str] = None,
    request_id: Optional[str] = None,
    version: str = "1.0.0",
    **extra_metadata
) -> Dict[str, Any]:
    """
    Create an error API response.

    Args:
        code: Machine-readable error code (e.g., "EXPORT_FAILED")
        message: Human-readable error message
        details: Additional error details
        field: Field name if validation error
        request_id: Request correlation ID
        version: API version
        extra_metadata: Additional metadata fields

    Returns:
        API envelope dictionary
    """
    metadata = {
        "version": version,
        **({"request_id": request_id} if request_id else {}),
        **extra_metadata,
    }

    return {
        "success": False,
        "data": None,
        "error": {"code": code, "message": message, "details": details, "field": field},
        "metadata": metadata,
        "timestamp": _timestamp(),
    }


def validation_error_response(
    errors: List[Dict[str, Any]],
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a validation error response for multiple field errors."""
    return error_response(
        code=ErrorCodes.VALIDATION_ERROR,
        message="One or more fields failed validation",
        details={"errors": errors},
        request_id=request_id,
    )


class ErrorCodes:
    """Standard error codes for consistent error handling."""

    # Validation errors (400)
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Resource errors (404)
    NOT_FOUND = "NOT_FOUND"

    # Export outcomes (422 / 502)
    EXPORT_FAILED = "EXPORT_FAILED"
    RETRIEVAL_FAILED = "RETRIEVAL_FAILED"

    # Server errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
