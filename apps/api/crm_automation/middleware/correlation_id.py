from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crm_automation.context import reset_correlation_id, reset_tenant_id, set_correlation_id, set_tenant_id

CORRELATION_HEADER = "x-correlation-id"
TENANT_HEADER = "x-tenant-id"

# Correlation ids end up in log lines, webhook headers and execution logs.
_SAFE_ID = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


def _accepted(value: str | None) -> str | None:
    if value and _SAFE_ID.match(value):
        return value
    return None


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds the request's correlation id and tenant hint to the logging context.

    An incoming ``X-Correlation-Id`` is reused when it is a short token;
    anything else is replaced with a fresh UUID. ``X-Tenant-Id`` only labels
    logs and spans here; authorization resolves the tenant separately.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _accepted(request.headers.get(CORRELATION_HEADER)) or str(uuid.uuid4())
        tenant_hint = _accepted(request.headers.get(TENANT_HEADER))
        request.state.correlation_id = correlation_id
        correlation_token = set_correlation_id(correlation_id)
        tenant_token = set_tenant_id(tenant_hint)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            if tenant_hint:
                span.set_attribute("tenant_id", tenant_hint)
        try:
            response = await call_next(request)
        finally:
            reset_tenant_id(tenant_token)
            reset_correlation_id(correlation_token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
