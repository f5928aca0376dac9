from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import AbstractContextManager
from typing import Any

from pydantic import ValidationError
from sqlalchemy.orm import Session

from crm_automation.automation.engine import AutomationEngine
from crm_automation.automation.factory import build_automation_engine
from crm_automation.automation.schemas import EventEnvelope
from crm_automation.automation.tasks import process_trigger_task
from crm_automation.core.config import get_settings
from crm_automation.core.events import InternalEvent


logger = logging.getLogger("crm_automation.automation")

SessionScope = Callable[[], AbstractContextManager[Session]]


class AutomationDispatcher:
    """Hands trigger envelopes to the engine without blocking the publisher.

    ``inline`` runs in the caller's thread, ``thread`` on a bounded worker pool
    and ``celery`` on the ``crm_automation.automation.process_trigger`` task.
    Every mode swallows and logs failures; the publisher never sees them.
    """

    def __init__(
        self,
        session_scope: SessionScope,
        *,
        mode: str | None = None,
        max_workers: int | None = None,
        engine_factory: Callable[[Session], AutomationEngine] = build_automation_engine,
    ) -> None:
        self.session_scope = session_scope
        self.mode = mode
        self.max_workers = max_workers
        self.engine_factory = engine_factory
        self._pool: ThreadPoolExecutor | None = None

    def handle_event(self, event: InternalEvent) -> None:
        if not isinstance(event.payload, dict):
            return
        try:
            envelope = EventEnvelope.model_validate(event.payload)
        except ValidationError as exc:
            logger.warning("automation.dispatch.invalid_envelope", extra={"error": str(exc)[:500]})
            return
        self.dispatch(envelope)

    def dispatch(self, envelope: EventEnvelope) -> None:
        mode = self.mode or get_settings().automation_dispatch_mode
        try:
            if mode == "inline":
                self.run(envelope)
            elif mode == "celery":
                process_trigger_task.delay(envelope.model_dump(mode="json"))
            else:
                future = self._get_pool().submit(self.run, envelope)
                future.add_done_callback(self._log_future_error)
        except Exception as exc:
            logger.exception(
                "automation.dispatch.failed",
                extra={
                    "tenant_id": envelope.tenant_id,
                    "trigger_type": envelope.trigger_type,
                    "event_id": str(envelope.event_id),
                    "status": mode,
                    "error": str(exc)[:500],
                },
            )

    def run(self, envelope: EventEnvelope) -> None:
        with self.session_scope() as session:
            self.engine_factory(session).process_trigger(envelope)

    def shutdown(self, wait: bool = True) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None

    def _get_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            workers = self.max_workers or get_settings().automation_max_workers
            self._pool = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="automation")
        return self._pool

    def _log_future_error(self, future: Future[Any]) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("automation.dispatch.worker_failed", extra={"error": str(exc)[:500]})
