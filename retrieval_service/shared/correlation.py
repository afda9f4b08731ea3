"""
Correlation IDs tie together the log lines of one request or one bulk job.

``CorrelationMiddleware`` takes the ID from the caller's ``X-Correlation-ID``
(or ``X-Request-ID``) header, or makes one up, stores it on
``request.state`` and echoes it back. Bulk jobs started outside a request
open a ``CorrelationContext``. Outgoing embedding calls forward the current
ID with ``correlation_headers()``.
"""

import contextvars
import uuid
from typing import Mapping, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

INBOUND_HEADERS = ("X-Correlation-ID", "X-Request-ID")
RESPONSE_HEADER = "X-Correlation-ID"

_current: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)


def get_correlation_id() -> Optional[str]:
    return _current.get()


def generate_correlation_id() -> str:
    """Eight hex characters; enough to group log lines."""
    return uuid.uuid4().hex[:8]


def correlation_from_headers(headers: Mapping[str, str]) -> str:
    for name in INBOUND_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return generate_correlation_id()


def correlation_headers(headers: Optional[dict] = None) -> dict:
    """``headers`` plus the current correlation ID, for outgoing calls."""
    result = dict(headers or {})
    correlation_id = get_correlation_id()
    if correlation_id:
        result[RESPONSE_HEADER] = correlation_id
    return result


class CorrelationContext:
    """
    Bind a correlation ID for the duration of a ``with`` block.

        with CorrelationContext(f"embed-{base_id[:8]}"):
            ...  # log lines carry correlation_id="embed-..."
    """

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or generate_correlation_id()
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> str:
        self._token = _current.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, *exc_info) -> None:
        _current.reset(self._token)


class CorrelationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        with CorrelationContext(correlation_from_headers(request.headers)) as correlation_id:
            request.state.correlation_id = correlation_id
            response = await call_next(request)
        response.headers[RESPONSE_HEADER] = correlation_id
        return response
