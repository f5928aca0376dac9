from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from typing import Any

import httpx
from sqlalchemy.orm import Session

from crm_automation.automation.collaborators import WebhookResult
from crm_automation.automation.models import WebhookDelivery
from crm_automation.automation.repositories import parse_uuid, serialize_value
from crm_automation.context import get_correlation_id
from crm_automation.metrics import observe_webhook_attempt


logger = logging.getLogger("crm_automation.automation")


class HttpxWebhookCaller:
    """POSTs JSON bodies and records one ``crm_webhook_delivery`` row per attempt.

    With ``max_attempts`` above one, failed attempts are retried with
    exponential backoff (``backoff_seconds * 2 ** (attempt - 1)``). Earlier
    attempt rows are kept as they were written.
    """

    def __init__(
        self,
        session: Session,
        *,
        timeout_seconds: float = 5.0,
        max_attempts: int = 1,
        backoff_seconds: float = 0.5,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.transport = transport
        self.sleep = sleep

    def post(
        self,
        url: str,
        body: dict[str, Any],
        *,
        headers: dict[str, str] | None = None,
        tenant_id: str | None = None,
        automation_id: str | None = None,
    ) -> WebhookResult:
        request_headers = {"Content-Type": "application/json"}
        correlation_id = get_correlation_id()
        if correlation_id:
            request_headers["X-Correlation-Id"] = correlation_id
        request_headers.update(headers or {})

        result = WebhookResult(status_code=None, error="no attempt made")
        with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
            for attempt in range(1, self.max_attempts + 1):
                started = time.perf_counter()
                result = self._attempt(client, url, body, request_headers)
                duration_ms = int((time.perf_counter() - started) * 1000)
                self._record(url, attempt, result, duration_ms, tenant_id=tenant_id, automation_id=automation_id)

                if result.ok:
                    observe_webhook_attempt("success")
                    return result

                observe_webhook_attempt("network_error" if result.status_code is None else "http_error")
                logger.warning(
                    "automation.webhook.attempt_failed",
                    extra={
                        "url": url,
                        "attempt": attempt,
                        "status_code": result.status_code,
                        "automation_id": automation_id,
                        "error": result.error,
                    },
                )
                if attempt < self.max_attempts:
                    self.sleep(self.backoff_seconds * (2 ** (attempt - 1)))
        return result

    def _attempt(
        self,
        client: httpx.Client,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str],
    ) -> WebhookResult:
        try:
            response = client.post(url, json=serialize_value(body), headers=headers)
        except httpx.TimeoutException:
            return WebhookResult(status_code=None, error="request timed out")
        except httpx.HTTPError as exc:
            return WebhookResult(status_code=None, error=f"request failed: {exc}"[:500])

        if 200 <= response.status_code < 300:
            return WebhookResult(status_code=response.status_code)
        return WebhookResult(status_code=response.status_code, error=f"HTTP {response.status_code}")

    def _record(
        self,
        url: str,
        attempt: int,
        result: WebhookResult,
        duration_ms: int,
        *,
        tenant_id: str | None,
        automation_id: str | None,
    ) -> None:
        automation_uuid: uuid.UUID | None = parse_uuid(automation_id)
        self.session.add(
            WebhookDelivery(
                tenant_id=tenant_id,
                automation_id=automation_uuid,
                url=url,
                attempt=attempt,
                status_code=result.status_code,
                succeeded=result.ok,
                error=result.error,
                duration_ms=duration_ms,
            )
        )
        self.session.flush()
