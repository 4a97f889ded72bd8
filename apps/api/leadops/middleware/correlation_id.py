from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from leadops.context import reset_correlation_id, set_correlation_id


# Correlation ids are persisted on inbound events and activities (128 chars max).
MAX_CORRELATION_ID_LENGTH = 128
_ALLOWED = re.compile(r"^[A-Za-z0-9._:\-]+$")


def resolve_correlation_id(request: Request) -> str:
    """Use the caller's id (or the messaging provider's request id) when it is safe to store."""
    for header in ("x-correlation-id", "x-request-id"):
        candidate = (request.headers.get(header) or "").strip()
        if candidate and len(candidate) <= MAX_CORRELATION_ID_LENGTH and _ALLOWED.match(candidate):
            return candidate
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request)
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        return response
