from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager, nullcontext
from datetime import datetime, timedelta, timezone
from typing import Any

from crm_automation.automation.collaborators import EntityRepositories, NotificationSender, WebhookCaller
from crm_automation.automation.conditions import has_unresolved_placeholder, render_template, render_value, resolve_path
from crm_automation.automation.errors import ActionFailedError
from crm_automation.automation.repositories import parse_uuid
from crm_automation.automation.schemas import (
    ActionError,
    ActionOutcome,
    AddTagAction,
    AutomationAction,
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
from crm_automation.metrics import observe_action_run


logger = logging.getLogger("crm_automation.automation")

ActionHandler = Callable[[Any, EventEnvelope, AutomationRule | None], dict[str, Any] | None]

DEFAULT_EMAIL_RECIPIENT = "{{email}}"
EMAIL_FALLBACK_FIELD = "clientEmail"
MUTABLE_ENTITY_TYPES = ("lead", "client", "task", "project")
TAGGABLE_ENTITY_TYPES = ("lead", "client")

UPDATE_FIELD_ALLOWLIST: dict[str, frozenset[str]] = {
    "lead": frozenset({"name", "email", "phone", "source", "status", "owner_user_id", "notes"}),
    "client": frozenset({"name", "email", "phone", "notes", "status", "owner_user_id"}),
    "task": frozenset({"title", "description", "priority", "status", "assignee_user_id"}),
    "project": frozenset({"name", "status"}),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActionExecutor:
    """Runs typed automation actions against the event's subject entity.

    ``execute`` never raises. Handler errors are returned as an ``ActionError``
    on the outcome so later actions of the same rule still run.

    Each handler call runs inside ``action_scope()``. With a SQL session this is
    ``session.begin_nested``: an unexpected error rolls back the writes of that
    one action and leaves earlier actions' writes in place. An
    ``ActionFailedError`` is a decision of the handler, so whatever it recorded
    before failing (webhook attempts, for instance) is kept.
    """

    def __init__(
        self,
        repositories: EntityRepositories,
        notification_sender: NotificationSender,
        webhook_caller: WebhookCaller,
        *,
        now: Callable[[], datetime] = utcnow,
        action_scope: Callable[[], AbstractContextManager[Any]] = nullcontext,
    ) -> None:
        self.repositories = repositories
        self.notification_sender = notification_sender
        self.webhook_caller = webhook_caller
        self.now = now
        self.action_scope = action_scope
        self._handlers: dict[str, ActionHandler] = {
            "send_email": self._send_email,
            "send_notification": self._send_notification,
            "create_task": self._create_task,
            "update_status": self._update_status,
            "update_field": self._update_field,
            "add_tag": self._add_tag,
            "call_webhook": self._call_webhook,
            "convert_lead_to_client": self._convert_lead_to_client,
        }

    def register(self, kind: str, handler: ActionHandler) -> None:
        self._handlers[kind] = handler

    def execute(
        self,
        action: AutomationAction,
        event: EventEnvelope,
        *,
        rule: AutomationRule | None = None,
    ) -> ActionOutcome:
        kind = str(getattr(action, "kind", type(action).__name__))
        handler = self._handlers.get(kind)
        try:
            if handler is None:
                raise ActionFailedError(kind, "unsupported action kind")
            with self.action_scope():
                outcome = self._run_handler(kind, handler, action, event, rule)
        except ActionFailedError as exc:
            outcome = ActionOutcome(kind=kind, succeeded=False, error=ActionError(kind=kind, message=exc.message))
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            outcome = ActionOutcome(kind=kind, succeeded=False, error=ActionError(kind=kind, message=message[:1000]))

        observe_action_run(kind, outcome.succeeded)
        if outcome.error is not None:
            logger.warning(
                "automation.action.failed",
                extra={
                    "action_kind": kind,
                    "automation_id": str(rule.id) if rule is not None else None,
                    "tenant_id": event.tenant_id,
                    "event_id": str(event.event_id),
                    "error": outcome.error.message,
                },
            )
        return outcome

    def execute_all(
        self,
        actions: Sequence[AutomationAction],
        event: EventEnvelope,
        *,
        rule: AutomationRule | None = None,
    ) -> list[ActionOutcome]:
        return [self.execute(action, event, rule=rule) for action in actions]

    def _run_handler(
        self,
        kind: str,
        handler: ActionHandler,
        action: AutomationAction,
        event: EventEnvelope,
        rule: AutomationRule | None,
    ) -> ActionOutcome:
        try:
            detail = handler(action, event, rule) or {}
        except ActionFailedError as exc:
            return ActionOutcome(kind=kind, succeeded=False, error=ActionError(kind=kind, message=exc.message))
        return ActionOutcome(kind=kind, succeeded=True, detail=detail)

    def _send_email(self, action: SendEmailAction, event: EventEnvelope, rule: AutomationRule | None) -> dict[str, Any]:
        recipient = render_template(action.to, event.payload).strip()
        if (not recipient or has_unresolved_placeholder(recipient)) and action.to == DEFAULT_EMAIL_RECIPIENT:
            _, fallback = resolve_path(event.payload, EMAIL_FALLBACK_FIELD)
            recipient = str(fallback).strip() if fallback else ""
        if not recipient or has_unresolved_placeholder(recipient):
            raise ActionFailedError(action.kind, "no recipient email address")

        result = self.notification_sender.send(
            event.acting_user_id,
            event.tenant_id,
            "email",
            {
                "to": recipient,
                "subject": render_template(action.subject, event.payload),
                "body": render_template(action.body, event.payload),
                "entity_type": event.entity_type,
                "entity_id": event.entity_id,
                "trigger_type": event.trigger_type,
            },
        )
        if not result.delivered:
            raise ActionFailedError(action.kind, result.error or "email was not accepted")
        return {"to": recipient, "notification_id": result.notification_id}

    def _send_notification(
        self,
        action: SendNotificationAction,
        event: EventEnvelope,
        rule: AutomationRule | None,
    ) -> dict[str, Any]:
        recipient = action.recipient_user_id or event.acting_user_id
        if not recipient:
            raise ActionFailedError(action.kind, "no recipient user")

        if action.title:
            title = render_template(action.title, event.payload)
        else:
            title = f"Automation: {rule.name}" if rule is not None else "Automation"

        result = self.notification_sender.send(
            recipient,
            event.tenant_id,
            "in_app",
            {
                "title": title,
                "message": render_template(action.message, event.payload),
                "entity_type": event.entity_type,
                "entity_id": event.entity_id,
                "trigger_type": event.trigger_type,
            },
        )
        if not result.delivered:
            raise ActionFailedError(action.kind, result.error or "notification was not accepted")
        return {"recipient_user_id": recipient, "notification_id": result.notification_id}

    def _create_task(self, action: CreateTaskAction, event: EventEnvelope, rule: AutomationRule | None) -> dict[str, Any]:
        assignee = action.assignee_user_id
        if assignee is None and action.assignee_field:
            exists, value = resolve_path(event.payload, action.assignee_field)
            if exists and value:
                assignee = str(value)
        if assignee is None:
            assignee = event.acting_user_id

        fields: dict[str, Any] = {
            "title": render_template(action.title, event.payload),
            "description": render_template(action.description, event.payload) if action.description else None,
            "priority": action.priority,
            "status": "todo",
            "assignee_user_id": assignee,
        }
        if action.due_in_days is not None:
            fields["due_at"] = self.now() + timedelta(days=action.due_in_days)

        links = {"lead": "lead_id", "client": "client_id", "project": "project_id"}
        if event.entity_type in links:
            fields[links[event.entity_type]] = event.entity_id
        for payload_key, column in (("leadId", "lead_id"), ("clientId", "client_id"), ("projectId", "project_id")):
            if column in fields:
                continue
            raw = event.payload.get(payload_key)
            linked = parse_uuid(raw) if isinstance(raw, str) else None
            if linked is not None:
                fields[column] = linked

        task = self.repositories.task.create(event.tenant_id, fields)
        return {"task_id": task.get("id"), "assignee_user_id": assignee}

    def _update_status(
        self,
        action: UpdateStatusAction,
        event: EventEnvelope,
        rule: AutomationRule | None,
    ) -> dict[str, Any]:
        entity_type, entity_id = self._target(action.kind, action.entity_type, event, MUTABLE_ENTITY_TYPES)
        repository = self.repositories.for_type(entity_type)
        updated = repository.update(event.tenant_id, entity_id, {"status": action.status})
        return {"entity_type": entity_type, "entity_id": updated.get("id"), "status": action.status}

    def _update_field(self, action: UpdateFieldAction, event: EventEnvelope, rule: AutomationRule | None) -> dict[str, Any]:
        entity_type, entity_id = self._target(action.kind, action.entity_type, event, MUTABLE_ENTITY_TYPES)
        if action.field not in UPDATE_FIELD_ALLOWLIST[entity_type]:
            raise ActionFailedError(action.kind, f"field '{action.field}' cannot be updated on {entity_type}")
        value = render_value(action.value, event.payload)
        repository = self.repositories.for_type(entity_type)
        updated = repository.update(event.tenant_id, entity_id, {action.field: value})
        return {"entity_type": entity_type, "entity_id": updated.get("id"), "field": action.field}

    def _add_tag(self, action: AddTagAction, event: EventEnvelope, rule: AutomationRule | None) -> dict[str, Any]:
        entity_type, entity_id = self._target(action.kind, action.entity_type, event, TAGGABLE_ENTITY_TYPES)
        repository = self.repositories.for_type(entity_type)
        tag = render_template(action.tag, event.payload)
        entity = repository.get(event.tenant_id, entity_id)
        if entity is None:
            raise ActionFailedError(action.kind, f"{entity_type} not found: {entity_id}")
        tags = list(entity.get("tags") or [])
        if tag in tags:
            return {"entity_type": entity_type, "entity_id": entity.get("id"), "tag": tag, "added": False}
        repository.update(event.tenant_id, entity_id, {"tags": [*tags, tag]})
        return {"entity_type": entity_type, "entity_id": entity.get("id"), "tag": tag, "added": True}

    def _call_webhook(self, action: CallWebhookAction, event: EventEnvelope, rule: AutomationRule | None) -> dict[str, Any]:
        result = self.webhook_caller.post(
            action.url,
            dict(event.payload),
            headers=dict(action.headers),
            tenant_id=event.tenant_id,
            automation_id=str(rule.id) if rule is not None else None,
        )
        if not result.ok:
            raise ActionFailedError(action.kind, result.error or f"HTTP {result.status_code}")
        return {"status_code": result.status_code}

    def _convert_lead_to_client(
        self,
        action: ConvertLeadToClientAction,
        event: EventEnvelope,
        rule: AutomationRule | None,
    ) -> dict[str, Any]:
        lead_id = self._resolve_lead_id(action, event)
        if lead_id is None:
            raise ActionFailedError(action.kind, "no lead to convert")

        lead = self.repositories.lead.get(event.tenant_id, lead_id)
        if lead is None:
            raise ActionFailedError(action.kind, f"lead not found: {lead_id}")
        if lead.get("client_id"):
            return {"lead_id": lead.get("id"), "client_id": lead.get("client_id"), "converted": False}

        client = self.repositories.client.create(
            event.tenant_id,
            {
                "name": lead.get("name"),
                "email": lead.get("email"),
                "phone": lead.get("phone"),
                "notes": lead.get("notes"),
                "status": "ACTIVE",
                "owner_user_id": lead.get("owner_user_id") or event.acting_user_id,
            },
        )
        self.repositories.lead.update(event.tenant_id, lead_id, {"status": "WON", "client_id": client["id"]})
        moved = self.repositories.lead.reassign_unlinked_tasks(event.tenant_id, lead_id, client["id"])
        return {"lead_id": lead.get("id"), "client_id": client["id"], "converted": True, "moved_task_count": moved}

    def _resolve_lead_id(self, action: ConvertLeadToClientAction, event: EventEnvelope) -> str | None:
        if action.lead_id:
            return render_template(action.lead_id, event.payload)
        exists, value = resolve_path(event.payload, action.lead_field)
        if exists and value:
            return str(value)
        if event.entity_type == "lead":
            return event.entity_id
        if event.entity_type == "quote":
            quote = self.repositories.quote.get(event.tenant_id, event.entity_id)
            if quote is not None and quote.get("lead_id"):
                return str(quote["lead_id"])
        return None

    def _target(
        self,
        kind: str,
        override: str | None,
        event: EventEnvelope,
        allowed: tuple[str, ...],
    ) -> tuple[str, str]:
        entity_type = override or event.entity_type
        if entity_type not in allowed:
            raise ActionFailedError(kind, f"unsupported entity type '{entity_type}'")
        if entity_type == event.entity_type:
            return entity_type, event.entity_id
        for key in (f"{entity_type}Id", f"{entity_type}_id"):
            value = event.payload.get(key)
            if value:
                return entity_type, str(value)
        raise ActionFailedError(kind, f"event does not reference a {entity_type}")
