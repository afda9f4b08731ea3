"""
Error taxonomy and standardized error responses for the retrieval service.

Two layers live here:

1. Exceptions raised by the knowledge engine. Provider-level failures
   (``ProviderUnavailable``, ``ProviderRequestFailed``) are absorbed inside
   the embedding layer and never reach callers. Access, identity and input
   errors (``AccessDenied``, ``NotFound``, ``InvalidInput``) are surfaced.

2. JSON error envelopes with correlation ID tracking, rendered by the
   FastAPI exception handler registered in ``main.py``.

Usage:
    from retrieval_service.shared.errors import NotFound

    raise NotFound("Knowledge base not found", resource_type="knowledge_base",
                   resource_id=base_id)
"""

from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel
from fastapi import Request
from fastapi.responses import JSONResponse


class ErrorCode(str, Enum):
    """Standard error codes used across the service."""

    # Client errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"

    # Server errors (5xx)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"

    # Domain-specific errors
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


# =============================================================================
# EXCEPTIONS
# =============================================================================


class KnowledgeError(Exception):
    """Base class for all knowledge engine errors."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ProviderUnavailable(KnowledgeError):
    """An embedding provider has no credential or endpoint configured."""

    code = ErrorCode.CONFIGURATION_ERROR
    status_code = 503

    def __init__(self, provider: str, message: Optional[str] = None):
        super().__init__(
            message or f"Embedding provider '{provider}' is not configured",
            details={"provider": provider},
        )
        self.provider = provider


class ProviderRequestFailed(KnowledgeError):
    """A remote embedding call failed (network, timeout, bad response)."""

    code = ErrorCode.EXTERNAL_SERVICE_ERROR
    status_code = 502

    def __init__(self, provider: str, message: str):
        super().__init__(message, details={"provider": provider})
        self.provider = provider


class AccessDenied(KnowledgeError):
    """The caller may not read or modify the requested knowledge base."""

    code = ErrorCode.FORBIDDEN
    status_code = 403


class NotFound(KnowledgeError):
    """A knowledge base or entry does not exist."""

    code = ErrorCode.NOT_FOUND
    status_code = 404

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ):
        details = {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id
        super().__init__(message, details=details or None)


class InvalidInput(KnowledgeError):
    """Malformed search or ingestion parameters."""

    code = ErrorCode.VALIDATION_ERROR
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, details={"field": field} if field else None)
        self.field = field


# =============================================================================
# RESPONSE ENVELOPES
# =============================================================================


class ErrorDetail(BaseModel):
    """Body of the ``{"error": ...}`` envelope."""
    code: ErrorCode
    message: str
    details: Optional[dict[str, Any]] = None
    correlation_id: Optional[str] = None


def get_correlation_id(request: Optional[Request] = None) -> Optional[str]:
    """Correlation ID stored on the request by ``CorrelationMiddleware``."""
    if request is None:
        return None
    return getattr(request.state, "correlation_id", None)


def error_response(detail: ErrorDetail, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": detail.model_dump(mode="json", exclude_none=True)},
    )


def knowledge_error_response(
    exc: KnowledgeError,
    correlation_id: Optional[str] = None,
) -> JSONResponse:
    """Envelope for a surfaced KnowledgeError, with its own code and status."""
    detail = ErrorDetail(
        code=exc.code,
        message=exc.message,
        details=exc.details,
        correlation_id=correlation_id,
    )
    return error_response(detail, exc.status_code)


def internal_error(correlation_id: Optional[str] = None) -> JSONResponse:
    """500 envelope. The message never carries exception text."""
    detail = ErrorDetail(
        code=ErrorCode.INTERNAL_ERROR,
        message="Internal server error",
        correlation_id=correlation_id,
    )
    return error_response(detail, 500)
