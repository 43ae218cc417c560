"""
Standard API response envelope for consistent responses across all endpoints.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

API_VERSION = "1.0.0"


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
                "data": {"flag_key": "new-checkout", "value": True, "reason": "rule_match"},
                "error": None,
                "metadata": {"version": API_VERSION},
                "timestamp": "2025-11-21T00:00:00.000Z",
            }
        }
    )


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def success_response(data: Any, request_id: Optional[str] = None, version: str = API_VERSION, **extra_metadata) -> Dict[str, Any]:
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
    version: str = API_VERSION,
    **extra_metadata,
) -> Dict[str, Any]:
    """
    Create an error API response.

    Args:
        code: Machine-readable error code (e.g., "FLAG_NOT_FOUND")
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


class ErrorCodes:
    """Standard error codes for consistent error handling."""

    # Validation errors (400)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_STAGES = "INVALID_STAGES"
    INVALID_TRANSITION = "INVALID_TRANSITION"

    # Resource errors (404)
    NOT_FOUND = "NOT_FOUND"
    FLAG_NOT_FOUND = "FLAG_NOT_FOUND"
    ROLLOUT_NOT_FOUND = "ROLLOUT_NOT_FOUND"

    # Dependency errors (503)
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"

    # Server errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"
