from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from crm_automation import events
from crm_automation.core.config import get_settings
from crm_automation.core.database import Base, get_db
from crm_automation.crm.api import get_current_user as crm_get_current_user
from crm_automation.crm.service import ActorUser
from crm_automation.main import app
from crm_automation.otel import setup_inmemory_otel


ALL_PERMISSIONS = {"crm.read", "crm.write", "automations.read", "automations.manage", "automations.execute"}


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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            tenant_id="tenant-otel",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post("/api/leads", json={"name": "Span Lead"}, headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_trigger_and_rule_spans_carry_automation_context(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
) -> None:
    automation = client.post(
        "/api/automations",
        json={
            "name": "Span rule",
            "trigger_type": "lead_created",
            "actions": [{"kind": "add_tag", "tag": "traced"}],
        },
    )
    assert automation.status_code == 201

    lead = client.post("/api/leads", json={"name": "Traced Lead"}, headers={"X-Correlation-Id": "otel-rule-corr-1"})
    assert lead.status_code == 201

    spans = span_exporter.get_finished_spans()
    trigger_spans = [span for span in spans if span.name == "automation.process_trigger"]
    assert any(
        span.attributes.get("tenant_id") == "tenant-otel"
        and span.attributes.get("trigger_type") == "lead_created"
        and span.attributes.get("correlation_id") == "otel-rule-corr-1"
        and span.attributes.get("rule_count") == 1
        for span in trigger_spans
    )
    rule_spans = [span for span in spans if span.name == "automation.rule"]
    assert any(
        span.attributes.get("automation_id") == automation.json()["id"]
        and span.attributes.get("matched") is True
        and span.attributes.get("status") == "success"
        for span in rule_spans
    )
