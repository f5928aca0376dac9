from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Protocol

from crm_automation.automation.schemas import AutomationRule, ExecutionLogEntry


@dataclass(frozen=True)
class NotificationResult:
    delivered: bool
    notification_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class WebhookResult:
    status_code: int | None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status_code is not None and 200 <= self.status_code < 300


class RuleStore(Protocol):
    def list_active_rules(self, tenant_id: str, trigger_type: str) -> list[AutomationRule]: ...

    def get_rule(self, tenant_id: str, rule_id: uuid.UUID | str) -> AutomationRule | None: ...


class ExecutionLogSink(Protocol):
    def append(self, entry: ExecutionLogEntry) -> None: ...


class EntityRepository(Protocol):
    entity_type: str

    def get(self, tenant_id: str, entity_id: uuid.UUID | str) -> dict[str, Any] | None: ...

    def update(self, tenant_id: str, entity_id: uuid.UUID | str, fields: dict[str, Any]) -> dict[str, Any]: ...

    def create(self, tenant_id: str, fields: dict[str, Any]) -> dict[str, Any]: ...


class LeadRepository(EntityRepository, Protocol):
    def reassign_unlinked_tasks(self, tenant_id: str, lead_id: uuid.UUID | str, client_id: uuid.UUID | str) -> int: ...


class NotificationSender(Protocol):
    def send(
        self,
        user_id: str | None,
        tenant_id: str,
        template_kind: str,
        template_data: dict[str, Any],
    ) -> NotificationResult: ...


class WebhookCaller(Protocol):
    def post(
        self,
        url: str,
        body: dict[str, Any],
        *,
        headers: dict[str, str] | None = None,
        tenant_id: str | None = None,
        automation_id: str | None = None,
    ) -> WebhookResult: ...


@dataclass
class EntityRepositories:
    lead: LeadRepository
    client: EntityRepository
    task: EntityRepository
    project: EntityRepository
    quote: EntityRepository

    def for_type(self, entity_type: str) -> EntityRepository | None:
        return {
            "lead": self.lead,
            "client": self.client,
            "task": self.task,
            "project": self.project,
            "quote": self.quote,
        }.get(entity_type)
