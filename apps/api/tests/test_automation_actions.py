from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

import pytest

from crm_automation.automation.actions import ActionExecutor
from crm_automation.automation.collaborators import EntityRepositories, NotificationResult, WebhookResult
from crm_automation.automation.errors import EntityNotFoundError
from crm_automation.automation.schemas import (
    AddTagAction,
    AutomationRule,
    CallWebhookAction,
    ConvertLeadToClientAction,
    CreateTaskAction,
    EventEnvelope,
    SendEmailAction,
    SendNotificationAction,
    UpdateFieldAction,
    UpdateStatusAction,
)


FIXED_NOW = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)
TENANT = "tenant-a"


class InMemoryRepository:
    def __init__(self, entity_type: str) -> None:
        self.entity_type = entity_type
        self.rows: dict[str, dict[str, Any]] = {}

    def seed(self, tenant_id: str, **fields: Any) -> dict[str, Any]:
        row_id = str(fields.pop("id", uuid.uuid4()))
        self.rows[row_id] = {"id": row_id, "tenant_id": tenant_id, **fields}
        return self.rows[row_id]

    def get(self, tenant_id: str, entity_id: uuid.UUID | str) -> dict[str, Any] | None:
        row = self.rows.get(str(entity_id))
        if row is None or row["tenant_id"] != tenant_id:
            return None
        return dict(row)

    def update(self, tenant_id: str, entity_id: uuid.UUID | str, fields: dict[str, Any]) -> dict[str, Any]:
        row = self.rows.get(str(entity_id))
        if row is None or row["tenant_id"] != tenant_id:
            raise EntityNotFoundError(self.entity_type, str(entity_id))
        row.update(fields)
        return dict(row)

    def create(self, tenant_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        return dict(self.seed(tenant_id, **fields))


class InMemoryLeadRepository(InMemoryRepository):
    def __init__(self, tasks: InMemoryRepository) -> None:
        super().__init__("lead")
        self.tasks = tasks

    def reassign_unlinked_tasks(self, tenant_id: str, lead_id: uuid.UUID | str, client_id: uuid.UUID | str) -> int:
        moved = 0
        for task in self.tasks.rows.values():
            if task["tenant_id"] == tenant_id and str(task.get("lead_id")) == str(lead_id) and not task.get("client_id"):
                task["client_id"] = str(client_id)
                moved += 1
        return moved


class RecordingNotificationSender:
    def __init__(self, *, accept: bool = True) -> None:
        self.accept = accept
        self.sent: list[tuple[str | None, str, str, dict[str, Any]]] = []

    def send(
        self,
        user_id: str | None,
        tenant_id: str,
        template_kind: str,
        template_data: dict[str, Any],
    ) -> NotificationResult:
        self.sent.append((user_id, tenant_id, template_kind, template_data))
        if not self.accept:
            return NotificationResult(delivered=False, error="mailbox unavailable")
        return NotificationResult(delivered=True, notification_id=f"n-{len(self.sent)}")


class RecordingWebhookCaller:
    def __init__(self, status_code: int | None = 200, error: str | None = None) -> None:
        self.result = WebhookResult(status_code=status_code, error=error)
        self.calls: list[dict[str, Any]] = []

    def post(
        self,
        url: str,
        body: dict[str, Any],
        *,
        headers: dict[str, str] | None = None,
        tenant_id: str | None = None,
        automation_id: str | None = None,
    ) -> WebhookResult:
        self.calls.append(
            {"url": url, "body": body, "headers": headers, "tenant_id": tenant_id, "automation_id": automation_id}
        )
        return self.result


@pytest.fixture()
def repositories() -> EntityRepositories:
    tasks = InMemoryRepository("task")
    return EntityRepositories(
        lead=InMemoryLeadRepository(tasks),
        client=InMemoryRepository("client"),
        task=tasks,
        project=InMemoryRepository("project"),
        quote=InMemoryRepository("quote"),
    )


@pytest.fixture()
def sender() -> RecordingNotificationSender:
    return RecordingNotificationSender()


@pytest.fixture()
def webhook() -> RecordingWebhookCaller:
    return RecordingWebhookCaller()


@pytest.fixture()
def executor(
    repositories: EntityRepositories,
    sender: RecordingNotificationSender,
    webhook: RecordingWebhookCaller,
) -> ActionExecutor:
    return ActionExecutor(repositories, sender, webhook, now=lambda: FIXED_NOW)


def _event(entity_type: str, entity_id: str, payload: dict[str, Any], trigger_type: str = "lead_created") -> EventEnvelope:
    return EventEnvelope(
        trigger_type=trigger_type,
        entity_id=entity_id,
        entity_type=entity_type,
        payload=payload,
        acting_user_id="user-1",
        tenant_id=TENANT,
    )


def _rule(actions: list[Any]) -> AutomationRule:
    return AutomationRule(
        id=uuid.uuid4(),
        tenant_id=TENANT,
        name="Welcome flow",
        trigger_type="lead_created",
        actions=actions,
    )


def test_send_email_renders_templates(executor: ActionExecutor, sender: RecordingNotificationSender) -> None:
    event = _event("lead", str(uuid.uuid4()), {"name": "Jane", "email": "jane@acme.io"})

    outcome = executor.execute(SendEmailAction(kind="send_email", subject="Hi {{name}}", body="Welcome, {{name}}!"), event)

    assert outcome.succeeded is True
    assert outcome.detail["to"] == "jane@acme.io"
    user_id, tenant_id, template_kind, data = sender.sent[0]
    assert (user_id, tenant_id, template_kind) == ("user-1", TENANT, "email")
    assert data["subject"] == "Hi Jane"
    assert data["body"] == "Welcome, Jane!"


def test_send_email_falls_back_to_client_email(executor: ActionExecutor) -> None:
    event = _event("quote", str(uuid.uuid4()), {"clientEmail": "buyer@acme.io"}, trigger_type="quote_accepted")

    outcome = executor.execute(SendEmailAction(kind="send_email", subject="Thanks"), event)

    assert outcome.succeeded is True
    assert outcome.detail["to"] == "buyer@acme.io"


def test_send_email_without_recipient_fails(executor: ActionExecutor, sender: RecordingNotificationSender) -> None:
    event = _event("lead", str(uuid.uuid4()), {"name": "No Mail"})

    outcome = executor.execute(SendEmailAction(kind="send_email", subject="Hi"), event)

    assert outcome.succeeded is False
    assert outcome.error is not None
    assert outcome.error.kind == "send_email"
    assert "recipient" in outcome.error.message
    assert sender.sent == []


def test_rejected_notification_is_a_failed_outcome(repositories: EntityRepositories) -> None:
    executor = ActionExecutor(repositories, RecordingNotificationSender(accept=False), RecordingWebhookCaller())
    event = _event("lead", str(uuid.uuid4()), {"email": "a@b.io"})

    outcome = executor.execute(SendEmailAction(kind="send_email", subject="Hi"), event)

    assert outcome.succeeded is False
    assert outcome.error is not None
    assert outcome.error.message == "mailbox unavailable"


def test_send_notification_defaults_to_acting_user_and_rule_title(
    executor: ActionExecutor,
    sender: RecordingNotificationSender,
) -> None:
    action = SendNotificationAction(kind="send_notification", message="New lead {{name}}")
    event = _event("lead", str(uuid.uuid4()), {"name": "Jane"})
    rule = _rule([action])

    outcome = executor.execute(action, event, rule=rule)

    assert outcome.succeeded is True
    user_id, _, template_kind, data = sender.sent[0]
    assert user_id == "user-1"
    assert template_kind == "in_app"
    assert data["title"] == "Automation: Welcome flow"
    assert data["message"] == "New lead Jane"


def test_create_task_links_subject_and_sets_due_date(
    executor: ActionExecutor,
    repositories: EntityRepositories,
) -> None:
    lead_id = str(uuid.uuid4())
    event = _event("lead", lead_id, {"name": "Jane", "owner_user_id": "owner-7"})
    action = CreateTaskAction(
        kind="create_task",
        title="Call {{name}}",
        priority="high",
        due_in_days=2,
        assignee_field="owner_user_id",
    )

    outcome = executor.execute(action, event)

    assert outcome.succeeded is True
    task = repositories.task.get(TENANT, outcome.detail["task_id"])
    assert task is not None
    assert task["title"] == "Call Jane"
    assert task["priority"] == "high"
    assert task["lead_id"] == lead_id
    assert task["assignee_user_id"] == "owner-7"
    assert task["due_at"] == datetime(2026, 10, 20, 9, 0, tzinfo=timezone.utc)


def test_update_status_targets_referenced_entity(executor: ActionExecutor, repositories: EntityRepositories) -> None:
    lead = repositories.lead.seed(TENANT, name="Jane", status="NEW")
    event = _event("quote", str(uuid.uuid4()), {"leadId": lead["id"]}, trigger_type="quote_accepted")

    outcome = executor.execute(UpdateStatusAction(kind="update_status", status="QUALIFIED", entity_type="lead"), event)

    assert outcome.succeeded is True
    assert repositories.lead.get(TENANT, lead["id"])["status"] == "QUALIFIED"


def test_update_field_rejects_fields_outside_allowlist(
    executor: ActionExecutor,
    repositories: EntityRepositories,
) -> None:
    lead = repositories.lead.seed(TENANT, name="Jane", status="NEW")
    event = _event("lead", lead["id"], {"name": "Jane"})

    allowed = executor.execute(UpdateFieldAction(kind="update_field", field="source", value="{{name}}-ref"), event)
    rejected = executor.execute(UpdateFieldAction(kind="update_field", field="tenant_id", value="other"), event)

    assert allowed.succeeded is True
    assert repositories.lead.get(TENANT, lead["id"])["source"] == "Jane-ref"
    assert rejected.succeeded is False
    assert repositories.lead.get(TENANT, lead["id"])["tenant_id"] == TENANT


def test_add_tag_is_idempotent(executor: ActionExecutor, repositories: EntityRepositories) -> None:
    lead = repositories.lead.seed(TENANT, name="Jane", tags=["web"])
    event = _event("lead", lead["id"], {})
    action = AddTagAction(kind="add_tag", tag="vip")

    first = executor.execute(action, event)
    second = executor.execute(action, event)

    assert first.detail["added"] is True
    assert second.detail["added"] is False
    assert repositories.lead.get(TENANT, lead["id"])["tags"] == ["web", "vip"]


def test_call_webhook_reports_http_failure(repositories: EntityRepositories, sender: RecordingNotificationSender) -> None:
    failing = RecordingWebhookCaller(status_code=503, error="HTTP 503")
    executor = ActionExecutor(repositories, sender, failing)
    event = _event("lead", str(uuid.uuid4()), {"name": "Jane"})
    rule = _rule([CallWebhookAction(kind="call_webhook", url="https://hooks.example.com/in")])

    outcome = executor.execute(rule.actions[0], event, rule=rule)

    assert outcome.succeeded is False
    assert outcome.error is not None
    assert outcome.error.message == "HTTP 503"
    assert failing.calls[0]["body"] == {"name": "Jane"}
    assert failing.calls[0]["automation_id"] == str(rule.id)


def test_convert_lead_to_client_is_idempotent(executor: ActionExecutor, repositories: EntityRepositories) -> None:
    lead = repositories.lead.seed(TENANT, name="Jane", email="jane@acme.io", status="QUALIFIED", client_id=None)
    task = repositories.task.seed(TENANT, title="Follow up", lead_id=lead["id"], client_id=None)
    event = _event("quote", str(uuid.uuid4()), {"leadId": lead["id"]}, trigger_type="quote_accepted")
    action = ConvertLeadToClientAction(kind="convert_lead_to_client")

    first = executor.execute(action, event)
    second = executor.execute(action, event)

    assert first.succeeded is True
    assert first.detail["converted"] is True
    assert first.detail["moved_task_count"] == 1
    stored = repositories.lead.get(TENANT, lead["id"])
    assert stored["status"] == "WON"
    assert stored["client_id"] == first.detail["client_id"]
    assert repositories.task.get(TENANT, task["id"])["client_id"] == first.detail["client_id"]

    assert second.succeeded is True
    assert second.detail["converted"] is False
    assert len(repositories.client.rows) == 1


def test_convert_lead_uses_quote_subject_lead(executor: ActionExecutor, repositories: EntityRepositories) -> None:
    lead = repositories.lead.seed(TENANT, name="Quote Lead", client_id=None)
    quote = repositories.quote.seed(TENANT, quote_number="Q-1", lead_id=lead["id"])
    event = _event("quote", quote["id"], {"quoteId": quote["id"]}, trigger_type="quote_accepted")

    outcome = executor.execute(ConvertLeadToClientAction(kind="convert_lead_to_client"), event)

    assert outcome.succeeded is True
    assert outcome.detail["lead_id"] == lead["id"]


def test_convert_lead_ignores_other_tenants(executor: ActionExecutor, repositories: EntityRepositories) -> None:
    lead = repositories.lead.seed("tenant-b", name="Other", client_id=None)
    event = _event("quote", str(uuid.uuid4()), {"leadId": lead["id"]}, trigger_type="quote_accepted")

    outcome = executor.execute(ConvertLeadToClientAction(kind="convert_lead_to_client"), event)

    assert outcome.succeeded is False
    assert repositories.client.rows == {}


def test_actions_run_in_order_and_continue_after_failure(
    executor: ActionExecutor,
    repositories: EntityRepositories,
    sender: RecordingNotificationSender,
) -> None:
    lead = repositories.lead.seed(TENANT, name="Jane", status="NEW", tags=[])
    event = _event("lead", lead["id"], {"name": "Jane"})
    actions = [
        AddTagAction(kind="add_tag", tag="a"),
        SendEmailAction(kind="send_email", subject="no recipient"),
        UpdateStatusAction(kind="update_status", status="CONTACTED"),
    ]

    outcomes = executor.execute_all(actions, event, rule=_rule(actions))

    assert [outcome.kind for outcome in outcomes] == ["add_tag", "send_email", "update_status"]
    assert [outcome.succeeded for outcome in outcomes] == [True, False, True]
    assert repositories.lead.get(TENANT, lead["id"])["status"] == "CONTACTED"
    assert sender.sent == []


def test_unexpected_handler_error_becomes_failed_outcome(executor: ActionExecutor) -> None:
    def explode(action: Any, event: EventEnvelope, rule: AutomationRule | None) -> dict[str, Any]:
        raise RuntimeError("boom")

    executor.register("add_tag", explode)
    outcome = executor.execute(AddTagAction(kind="add_tag", tag="x"), _event("lead", str(uuid.uuid4()), {}))

    assert outcome.succeeded is False
    assert outcome.error is not None
    assert outcome.error.message == "boom"


class RecordingScope:
    """Stands in for ``session.begin_nested``; records how each action's scope ended."""

    def __init__(self) -> None:
        self.exits: list[str] = []

    @contextmanager
    def __call__(self) -> Iterator[None]:
        try:
            yield
        except Exception:
            self.exits.append("rolled_back")
            raise
        self.exits.append("kept")


def test_each_action_runs_in_its_own_scope(
    repositories: EntityRepositories,
    sender: RecordingNotificationSender,
) -> None:
    scope = RecordingScope()
    failing_webhook = RecordingWebhookCaller(status_code=500, error="HTTP 500")
    executor = ActionExecutor(repositories, sender, failing_webhook, now=lambda: FIXED_NOW, action_scope=scope)
    lead = repositories.lead.seed(TENANT, name="Jane", status="NEW", tags=[])
    event = _event("lead", lead["id"], {"name": "Jane"})

    def explode(action: Any, event: EventEnvelope, rule: AutomationRule | None) -> dict[str, Any]:
        raise RuntimeError("write failed")

    executor.register("update_field", explode)
    rule = _rule(
        [
            UpdateStatusAction(kind="update_status", status="CONTACTED"),
            UpdateFieldAction(kind="update_field", field="notes", value="x"),
            CallWebhookAction(kind="call_webhook", url="https://hooks.example.com/in"),
        ]
    )

    outcomes = executor.execute_all(rule.actions, event, rule=rule)

    assert [outcome.succeeded for outcome in outcomes] == [True, False, False]
    assert outcomes[1].error is not None
    assert outcomes[1].error.message == "write failed"
    # Handler-reported failures keep what they recorded; unexpected errors roll back.
    assert scope.exits == ["kept", "rolled_back", "kept"]
    assert repositories.lead.get(TENANT, lead["id"])["status"] == "CONTACTED"
