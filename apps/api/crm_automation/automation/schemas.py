from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TriggerType:
    LEAD_CREATED = "lead_created"
    LEAD_STATUS_CHANGED = "lead_status_changed"
    CLIENT_ADDED = "client_added"
    TASK_CREATED = "task_created"
    TASK_COMPLETED = "task_completed"
    MEETING_SCHEDULED = "meeting_scheduled"
    QUOTE_ACCEPTED = "quote_accepted"
    PAYMENT_RECEIVED = "payment_received"

    known = (
        LEAD_CREATED,
        LEAD_STATUS_CHANGED,
        CLIENT_ADDED,
        TASK_CREATED,
        TASK_COMPLETED,
        MEETING_SCHEDULED,
        QUOTE_ACCEPTED,
        PAYMENT_RECEIVED,
    )


ExecutionStatus = Literal["success", "failed"]
STATUS_SUCCESS: ExecutionStatus = "success"
STATUS_FAILED: ExecutionStatus = "failed"


class EventEnvelope(BaseModel):
    """Immutable description of one domain occurrence.

    Built by a trigger source after its business change is committed and handed
    to the engine. The tenant id scopes every rule lookup and side effect.
    """

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid.uuid4)
    trigger_type: str = Field(min_length=1)
    entity_id: str
    entity_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    acting_user_id: str | None = None
    tenant_id: str = Field(min_length=1)
    occurred_at: datetime = Field(default_factory=_utcnow)
    correlation_id: str | None = None


ConditionOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "greater_than",
    "greater_than_or_equal",
    "less_than",
    "less_than_or_equal",
    "in",
    "not_in",
    "is_empty",
    "is_not_empty",
]

OPERATOR_ALIASES: dict[str, str] = {
    "notEquals": "not_equals",
    "notContains": "not_contains",
    "greaterThan": "greater_than",
    "greaterThanOrEqual": "greater_than_or_equal",
    "lessThan": "less_than",
    "lessThanOrEqual": "less_than_or_equal",
    "notIn": "not_in",
    "isEmpty": "is_empty",
    "isNotEmpty": "is_not_empty",
}


def canonical_operator(value: Any) -> Any:
    if isinstance(value, str):
        return OPERATOR_ALIASES.get(value, value)
    return value


class AutomationCondition(BaseModel):
    field: str = Field(min_length=1)
    operator: ConditionOperator
    value: Any = None

    @field_validator("operator", mode="before")
    @classmethod
    def normalize_operator(cls, value: Any) -> Any:
        return canonical_operator(value)


class SendEmailAction(BaseModel):
    kind: Literal["send_email"]
    to: str = "{{email}}"
    subject: str = Field(min_length=1)
    body: str = ""


class SendNotificationAction(BaseModel):
    kind: Literal["send_notification"]
    title: str | None = None
    message: str = Field(min_length=1)
    recipient_user_id: str | None = None


class CreateTaskAction(BaseModel):
    kind: Literal["create_task"]
    title: str = Field(min_length=1)
    description: str | None = None
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    due_in_days: int | None = Field(default=None, ge=0)
    assignee_user_id: str | None = None
    assignee_field: str | None = None


class UpdateStatusAction(BaseModel):
    kind: Literal["update_status"]
    status: str = Field(min_length=1)
    entity_type: Literal["lead", "client", "task", "project"] | None = None


class UpdateFieldAction(BaseModel):
    kind: Literal["update_field"]
    field: str = Field(min_length=1)
    value: Any = None
    entity_type: Literal["lead", "client", "task", "project"] | None = None


class AddTagAction(BaseModel):
    kind: Literal["add_tag"]
    tag: str = Field(min_length=1)
    entity_type: Literal["lead", "client"] | None = None


class CallWebhookAction(BaseModel):
    kind: Literal["call_webhook"]
    url: str = Field(min_length=1)
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def validate_scheme(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must be http or https")
        return value


class ConvertLeadToClientAction(BaseModel):
    kind: Literal["convert_lead_to_client"]
    lead_id: str | None = None
    lead_field: str = "leadId"


AutomationAction = Annotated[
    SendEmailAction
    | SendNotificationAction
    | CreateTaskAction
    | UpdateStatusAction
    | UpdateFieldAction
    | AddTagAction
    | CallWebhookAction
    | ConvertLeadToClientAction,
    Field(discriminator="kind"),
]

action_list_adapter = TypeAdapter(list[AutomationAction])
condition_list_adapter = TypeAdapter(list[AutomationCondition])


class AutomationRule(BaseModel):
    """Typed view of a stored rule as the engine consumes it."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    tenant_id: str
    name: str
    description: str | None = None
    trigger_type: str
    conditions: list[AutomationCondition] = Field(default_factory=list)
    actions: list[AutomationAction] = Field(min_length=1)
    is_active: bool = True
    created_at: datetime | None = None


class ActionError(BaseModel):
    kind: str
    message: str


class ActionOutcome(BaseModel):
    kind: str
    succeeded: bool
    error: ActionError | None = None
    detail: dict[str, Any] = Field(default_factory=dict)


class ExecutionLogEntry(BaseModel):
    automation_id: UUID
    tenant_id: str
    trigger_type: str
    entity_type: str
    entity_id: str
    event_id: UUID
    status: ExecutionStatus
    error_detail: str | None = None
    action_results: list[ActionOutcome] = Field(default_factory=list)
    trigger_payload: dict[str, Any] = Field(default_factory=dict)
    is_test: bool = False
    correlation_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class RuleRunResult(BaseModel):
    automation_id: UUID
    name: str
    matched: bool
    status: ExecutionStatus | None = None
    error_detail: str | None = None
    action_results: list[ActionOutcome] = Field(default_factory=list)


def _validate_conditions(value: Any) -> list[dict[str, Any]]:
    if value is None or value == {}:
        return []
    conditions = condition_list_adapter.validate_python(value)
    return [condition.model_dump(mode="json") for condition in conditions]


def _validate_actions(value: Any) -> list[dict[str, Any]]:
    actions = action_list_adapter.validate_python(value)
    if not actions:
        raise ValueError("actions must be a non-empty list")
    return [action.model_dump(mode="json") for action in actions]


class AutomationCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    trigger_type: str = Field(min_length=1)
    conditions: list[dict[str, Any]] = Field(default_factory=list)
    actions: list[dict[str, Any]]
    is_active: bool = True

    @field_validator("conditions", mode="before")
    @classmethod
    def empty_conditions(cls, value: Any) -> Any:
        if value is None or value == {}:
            return []
        return value

    @model_validator(mode="after")
    def validate_automation_structure(self) -> "AutomationCreate":
        self.conditions = _validate_conditions(self.conditions)
        self.actions = _validate_actions(self.actions)
        return self


class AutomationUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    trigger_type: str | None = Field(default=None, min_length=1)
    conditions: list[dict[str, Any]] | None = None
    actions: list[dict[str, Any]] | None = None
    is_active: bool | None = None

    @field_validator("conditions", mode="before")
    @classmethod
    def empty_conditions(cls, value: Any) -> Any:
        if value == {}:
            return []
        return value

    @model_validator(mode="after")
    def validate_automation_structure(self) -> "AutomationUpdate":
        if self.conditions is not None:
            self.conditions = _validate_conditions(self.conditions)
        if self.actions is not None:
            self.actions = _validate_actions(self.actions)
        return self


class AutomationRead(BaseModel):
    id: UUID
    tenant_id: str
    name: str
    description: str | None
    trigger_type: str
    conditions: list[dict[str, Any]]
    actions: list[dict[str, Any]]
    is_active: bool
    created_by_user_id: str | None
    created_at: datetime
    updated_at: datetime


class AutomationLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    automation_id: UUID
    trigger_type: str
    entity_type: str
    entity_id: str
    event_id: UUID
    status: str
    error_detail: str | None
    action_results_json: list[dict[str, Any]]
    trigger_payload_json: dict[str, Any]
    is_test: bool
    correlation_id: str | None
    created_at: datetime


class ManualRunRequest(BaseModel):
    test_payload: dict[str, Any] | None = None


class ManualRunResponse(BaseModel):
    automation_id: UUID
    name: str
    matched: bool
    status: ExecutionStatus | None
    error_detail: str | None
    action_results: list[ActionOutcome]
