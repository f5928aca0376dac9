from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from crm_automation.api.routes import router as api_router
from crm_automation.automation.dispatch import AutomationDispatcher
from crm_automation.core.config import get_settings
from crm_automation.core.database import SessionLocal, get_db
from crm_automation.core.events import InternalEvent, event_bus
from crm_automation.events import AUTOMATION_TRIGGER_EVENT
from crm_automation.logging import configure_logging
from crm_automation.middleware.correlation_id import CorrelationIdMiddleware
from crm_automation.middleware.request_logging import RequestLoggingMiddleware
from crm_automation.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("crm_automation.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


@contextmanager
def _automation_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


automation_dispatcher = AutomationDispatcher(_automation_session_scope)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe(AUTOMATION_TRIGGER_EVENT, automation_dispatcher.handle_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield
    automation_dispatcher.shutdown(wait=False)


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("crm-automation-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
