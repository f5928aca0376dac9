from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from functools import partial

import httpx
import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_automation import events
from crm_automation.automation.dispatch import AutomationDispatcher
from crm_automation.automation.factory import build_automation_engine
from crm_automation.automation.models import AutomationExecutionLog, WebhookDelivery
from crm_automation.automation.schemas import EventEnvelope
from crm_automation.core.config import get_settings
from crm_automation.core.database import Base, get_db
from crm_automation.core.events import InternalEvent
from crm_automation.crm.api import get_current_user
from crm_automation.crm.models import CRMClient, CRMLead, CRMNotification, CRMTask
from crm_automation.crm.service import ActorUser
from crm_automation.main import app, automation_dispatcher


PERMISSIONS = {"automations.read", "automations.manage", "automations.execute", "crm.read", "crm.write"}


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("AUTOMATION_DISPATCH_MODE", "inline")
    get_settings.cache_clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            tenant_id=request.headers.get("x-tenant-id", "tenant-a"),
            permissions=PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def route_webhooks(monkeypatch: pytest.MonkeyPatch) -> Callable[[httpx.BaseTransport], None]:
    def route(transport: httpx.BaseTransport) -> None:
        monkeypatch.setattr(
            automation_dispatcher,
            "engine_factory",
            partial(build_automation_engine, webhook_transport=transport),
        )

    return route


def _create_automation(client: TestClient, payload: dict[str, object], tenant_id: str = "tenant-a") -> dict:
    response = client.post("/api/automations", json=payload, headers={"X-Tenant-Id": tenant_id})
    assert response.status_code == 201, response.text
    return response.json()


def _create_lead(client: TestClient, tenant_id: str = "tenant-a", **fields: object) -> dict:
    body: dict[str, object] = {"name": "Jane Doe", "email": "jane@acme.io", "source": "web"}
    body.update(fields)
    response = client.post("/api/leads", json=body, headers={"X-Tenant-Id": tenant_id, "X-Correlation-Id": "lead-corr"})
    assert response.status_code == 201, response.text
    return response.json()


def _logs_for(session: Session, automation_id: str) -> list[AutomationExecutionLog]:
    return list(
        session.scalars(
            select(AutomationExecutionLog).where(AutomationExecutionLog.automation_id == uuid.UUID(automation_id))
        ).all()
    )


def test_lead_creation_fires_matching_automation(client: TestClient, db_session: Session) -> None:
    automation = _create_automation(
        client,
        {
            "name": "Welcome web leads",
            "trigger_type": "lead_created",
            "conditions": [{"field": "source", "operator": "equals", "value": "web"}],
            "actions": [
                {"kind": "send_email", "subject": "Welcome {{name}}"},
                {"kind": "create_task", "title": "Call {{name}}", "due_in_days": 1},
            ],
        },
    )

    lead = _create_lead(client)
    _create_lead(client, name="Cold Lead", source="referral")

    published = [envelope for envelope in events.published_events if envelope["trigger_type"] == "lead_created"]
    assert len(published) == 2
    assert published[0]["tenant_id"] == "tenant-a"
    assert published[0]["entity_id"] == lead["id"]
    assert published[0]["correlation_id"] == "lead-corr"

    logs = _logs_for(db_session, automation["id"])
    assert len(logs) == 1
    assert logs[0].status == "success"
    assert logs[0].entity_id == lead["id"]
    assert logs[0].correlation_id == "lead-corr"

    notification = db_session.scalar(select(CRMNotification))
    assert notification is not None
    assert notification.recipient_email == "jane@acme.io"
    task = db_session.scalar(select(CRMTask))
    assert task is not None
    assert task.title == "Call Jane Doe"
    assert str(task.lead_id) == lead["id"]
    assert task.due_at is not None


def test_automations_only_fire_for_their_tenant(client: TestClient, db_session: Session) -> None:
    automation = _create_automation(
        client,
        {"name": "Tenant B only", "trigger_type": "lead_created", "actions": [{"kind": "add_tag", "tag": "b"}]},
        tenant_id="tenant-b",
    )

    lead_a = _create_lead(client, tenant_id="tenant-a")
    lead_b = _create_lead(client, tenant_id="tenant-b")

    logs = _logs_for(db_session, automation["id"])
    assert [log.entity_id for log in logs] == [lead_b["id"]]
    assert db_session.get(CRMLead, uuid.UUID(lead_a["id"])).tags == []
    assert db_session.get(CRMLead, uuid.UUID(lead_b["id"])).tags == ["b"]


def test_lead_status_change_carries_old_and_new_status(client: TestClient, db_session: Session) -> None:
    automation = _create_automation(
        client,
        {
            "name": "Qualified follow up",
            "trigger_type": "lead_status_changed",
            "conditions": [
                {"field": "oldStatus", "operator": "equals", "value": "NEW"},
                {"field": "newStatus", "operator": "equals", "value": "QUALIFIED"},
            ],
            "actions": [{"kind": "send_notification", "message": "{{name}} is qualified"}],
        },
    )
    lead = _create_lead(client)

    unchanged = client.patch(f"/api/leads/{lead['id']}", json={"notes": "no status change"}, headers={"X-Tenant-Id": "tenant-a"})
    assert unchanged.status_code == 200
    changed = client.patch(f"/api/leads/{lead['id']}", json={"status": "QUALIFIED"}, headers={"X-Tenant-Id": "tenant-a"})
    assert changed.status_code == 200

    status_events = [envelope for envelope in events.published_events if envelope["trigger_type"] == "lead_status_changed"]
    assert len(status_events) == 1
    assert status_events[0]["payload"]["oldStatus"] == "NEW"
    assert status_events[0]["payload"]["newStatus"] == "QUALIFIED"

    logs = _logs_for(db_session, automation["id"])
    assert len(logs) == 1
    notification = db_session.scalar(select(CRMNotification))
    assert notification is not None
    assert notification.user_id == "user-1"
    assert notification.message == "Jane Doe is qualified"


def test_quote_acceptance_converts_lead_to_client(client: TestClient, db_session: Session) -> None:
    automation = _create_automation(
        client,
        {
            "name": "Convert on big quotes",
            "trigger_type": "quote_accepted",
            "conditions": [{"field": "total", "operator": "greater_than_or_equal", "value": 1000}],
            "actions": [{"kind": "convert_lead_to_client"}],
        },
    )
    lead = _create_lead(client)
    task = client.post("/api/tasks", json={"title": "Send proposal", "lead_id": lead["id"]}, headers={"X-Tenant-Id": "tenant-a"})
    assert task.status_code == 201

    quote = client.post(
        "/api/quotes",
        json={"quote_number": "Q-2026-001", "lead_id": lead["id"], "total": "2500.00"},
        headers={"X-Tenant-Id": "tenant-a"},
    )
    assert quote.status_code == 201
    accepted = client.post(f"/api/quotes/{quote.json()['id']}/accept", headers={"X-Tenant-Id": "tenant-a"})
    assert accepted.status_code == 200
    again = client.post(f"/api/quotes/{quote.json()['id']}/accept", headers={"X-Tenant-Id": "tenant-a"})
    assert again.status_code == 409

    logs = _logs_for(db_session, automation["id"])
    assert len(logs) == 1
    assert logs[0].status == "success"
    assert logs[0].trigger_payload_json["leadId"] == lead["id"]

    converted = client.get(f"/api/leads/{lead['id']}", headers={"X-Tenant-Id": "tenant-a"}).json()
    assert converted["status"] == "WON"
    assert converted["client_id"] is not None
    client_row = db_session.get(CRMClient, uuid.UUID(converted["client_id"]))
    assert client_row is not None
    assert client_row.email == "jane@acme.io"
    moved = db_session.get(CRMTask, uuid.UUID(task.json()["id"]))
    assert str(moved.client_id) == converted["client_id"]


def test_task_completion_triggers_webhook(
    client: TestClient,
    db_session: Session,
    route_webhooks: Callable[[httpx.BaseTransport], None],
) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    route_webhooks(httpx.MockTransport(handler))
    automation = _create_automation(
        client,
        {
            "name": "Notify ops",
            "trigger_type": "task_completed",
            "actions": [{"kind": "call_webhook", "url": "https://ops.example.com/hooks/tasks"}],
        },
    )
    task = client.post("/api/tasks", json={"title": "Kickoff call"}, headers={"X-Tenant-Id": "tenant-a"})
    assert task.status_code == 201

    first = client.post(f"/api/tasks/{task.json()['id']}/complete", headers={"X-Tenant-Id": "tenant-a"})
    second = client.post(f"/api/tasks/{task.json()['id']}/complete", headers={"X-Tenant-Id": "tenant-a"})
    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json()["status"] == "done"

    assert len(seen) == 1
    assert str(seen[0].url) == "https://ops.example.com/hooks/tasks"
    deliveries = db_session.scalars(select(WebhookDelivery)).all()
    assert len(deliveries) == 1
    assert deliveries[0].automation_id == uuid.UUID(automation["id"])
    assert _logs_for(db_session, automation["id"])[0].status == "success"


def test_failed_webhook_is_logged_without_breaking_the_request(
    client: TestClient,
    db_session: Session,
    route_webhooks: Callable[[httpx.BaseTransport], None],
) -> None:
    route_webhooks(httpx.MockTransport(lambda request: httpx.Response(500)))
    automation = _create_automation(
        client,
        {
            "name": "Broken hook",
            "trigger_type": "client_added",
            "actions": [{"kind": "call_webhook", "url": "https://broken.example.com/hook"}],
        },
    )

    response = client.post("/api/clients", json={"name": "Acme GmbH"}, headers={"X-Tenant-Id": "tenant-a"})

    assert response.status_code == 201
    logs = _logs_for(db_session, automation["id"])
    assert len(logs) == 1
    assert logs[0].status == "failed"
    assert logs[0].error_detail == "call_webhook: HTTP 500"


def test_dispatcher_ignores_malformed_envelopes(db_session: Session) -> None:
    calls: list[EventEnvelope] = []

    class RecordingEngine:
        def process_trigger(self, envelope: EventEnvelope) -> None:
            calls.append(envelope)

    class SessionScope:
        def __enter__(self) -> Session:
            return db_session

        def __exit__(self, *exc_info: object) -> None:
            return None

    dispatcher = AutomationDispatcher(SessionScope, mode="inline", engine_factory=lambda session: RecordingEngine())

    dispatcher.handle_event(InternalEvent(name="automation.trigger", payload={"trigger_type": "lead_created"}))
    dispatcher.handle_event(
        InternalEvent(
            name="automation.trigger",
            payload={"trigger_type": "lead_created", "entity_id": "1", "entity_type": "lead", "tenant_id": "t"},
        )
    )

    assert len(calls) == 1
    assert calls[0].tenant_id == "t"


def test_thread_dispatch_runs_off_the_caller(db_session: Session) -> None:
    calls: list[str] = []

    class RecordingEngine:
        def process_trigger(self, envelope: EventEnvelope) -> None:
            calls.append(envelope.entity_id)

    class SessionScope:
        def __enter__(self) -> Session:
            return db_session

        def __exit__(self, *exc_info: object) -> None:
            return None

    dispatcher = AutomationDispatcher(
        SessionScope,
        mode="thread",
        max_workers=1,
        engine_factory=lambda session: RecordingEngine(),
    )
    dispatcher.dispatch(EventEnvelope(trigger_type="lead_created", entity_id="42", entity_type="lead", tenant_id="t"))
    dispatcher.shutdown(wait=True)

    assert calls == ["42"]


def test_celery_dispatch_enqueues_serialized_envelope(monkeypatch: pytest.MonkeyPatch, db_session: Session) -> None:
    queued: list[dict] = []

    class FakeTask:
        def delay(self, envelope: dict) -> None:
            queued.append(envelope)

    monkeypatch.setattr("crm_automation.automation.dispatch.process_trigger_task", FakeTask())
    dispatcher = AutomationDispatcher(lambda: None, mode="celery")  # type: ignore[arg-type,return-value]
    envelope = EventEnvelope(
        trigger_type="payment_received",
        entity_id="inv-1",
        entity_type="invoice",
        tenant_id="t",
        payload={"amount": 10},
    )

    dispatcher.dispatch(envelope)

    assert len(queued) == 1
    assert queued[0]["event_id"] == str(envelope.event_id)
    assert queued[0]["payload"] == {"amount": 10}
