from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import ValidationError
from sqlalchemy import Select, and_, inspect, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_automation.automation.errors import EntityNotFoundError
from crm_automation.automation.models import AutomationExecutionLog, AutomationRuleRecord
from crm_automation.automation.schemas import STATUS_FAILED, ActionError, ActionOutcome, AutomationRule, ExecutionLogEntry
from crm_automation.crm.models import CRMClient, CRMLead, CRMProject, CRMQuote, CRMTask


logger = logging.getLogger("crm_automation.automation")


def parse_uuid(value: uuid.UUID | str | None) -> uuid.UUID | None:
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def serialize_value(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: serialize_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [serialize_value(item) for item in value]
    return value


def to_context_dict(entity: Any) -> dict[str, Any]:
    mapper = inspect(entity).mapper
    return {column.key: serialize_value(getattr(entity, column.key)) for column in mapper.column_attrs}


def to_automation_rule(record: AutomationRuleRecord) -> AutomationRule:
    conditions = record.conditions_json
    if not conditions:
        conditions = []
    return AutomationRule.model_validate(
        {
            "id": record.id,
            "tenant_id": record.tenant_id,
            "name": record.name,
            "description": record.description,
            "trigger_type": record.trigger_type,
            "conditions": conditions,
            "actions": record.actions_json,
            "is_active": record.is_active,
            "created_at": record.created_at,
        }
    )


def rolled_back_entry(entry: ExecutionLogEntry, exc: Exception) -> ExecutionLogEntry:
    """Rewrite ``entry`` for a unit of work whose commit failed and was rolled back."""
    reason = f"not persisted: {exc}"[:500]
    error_detail = f"commit: {exc}"
    if entry.error_detail:
        error_detail = f"{entry.error_detail}; {error_detail}"
    outcomes = [
        outcome
        if not outcome.succeeded
        else ActionOutcome(kind=outcome.kind, succeeded=False, error=ActionError(kind=outcome.kind, message=reason))
        for outcome in entry.action_results
    ]
    return entry.model_copy(
        update={
            "status": STATUS_FAILED,
            "error_detail": error_detail[:1000],
            "action_results": outcomes,
        }
    )


class SqlRuleStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_active_rules(self, tenant_id: str, trigger_type: str) -> list[AutomationRule]:
        stmt: Select[tuple[AutomationRuleRecord]] = select(AutomationRuleRecord).where(
            and_(
                AutomationRuleRecord.tenant_id == tenant_id,
                AutomationRuleRecord.trigger_type == trigger_type,
                AutomationRuleRecord.is_active.is_(True),
                AutomationRuleRecord.deleted_at.is_(None),
            )
        )
        records = self.session.scalars(
            stmt.order_by(AutomationRuleRecord.created_at.asc(), AutomationRuleRecord.id.asc())
        ).all()

        rules: list[AutomationRule] = []
        for record in records:
            try:
                rules.append(to_automation_rule(record))
            except ValidationError as exc:
                logger.warning(
                    "automation.rule.invalid_definition",
                    extra={"automation_id": str(record.id), "tenant_id": tenant_id, "error": str(exc)[:500]},
                )
        return rules

    def get_rule(self, tenant_id: str, rule_id: uuid.UUID | str) -> AutomationRule | None:
        parsed = parse_uuid(rule_id)
        if parsed is None:
            return None
        record = self.session.scalar(
            select(AutomationRuleRecord).where(
                and_(
                    AutomationRuleRecord.id == parsed,
                    AutomationRuleRecord.tenant_id == tenant_id,
                    AutomationRuleRecord.deleted_at.is_(None),
                )
            )
        )
        if record is None:
            return None
        return to_automation_rule(record)


class SqlExecutionLogSink:
    """Appends log rows and commits the unit of work of the rule that produced them."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def append(self, entry: ExecutionLogEntry) -> None:
        try:
            self._write(entry)
        except SQLAlchemyError as exc:
            # Rollback discards the rule's flushed side effects too.
            self.session.rollback()
            logger.warning(
                "automation.log.retry_after_rollback",
                extra={"automation_id": str(entry.automation_id), "tenant_id": entry.tenant_id, "error": str(exc)[:500]},
            )
            self._write(rolled_back_entry(entry, exc))

    def _write(self, entry: ExecutionLogEntry) -> None:
        self.session.add(
            AutomationExecutionLog(
                automation_id=entry.automation_id,
                tenant_id=entry.tenant_id,
                trigger_type=entry.trigger_type,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                event_id=entry.event_id,
                status=entry.status,
                error_detail=entry.error_detail,
                action_results_json=[outcome.model_dump(mode="json") for outcome in entry.action_results],
                trigger_payload_json=serialize_value(entry.trigger_payload),
                is_test=entry.is_test,
                correlation_id=entry.correlation_id,
                created_at=entry.created_at,
            )
        )
        self.session.commit()


class SqlEntityRepository:
    """Tenant scoped access to one CRM entity table.

    Changes are flushed, not committed; the execution log sink commits them
    together with the log row of the rule that made them. A failed flush is
    undone by the action savepoint the executor opens, not here.
    """

    model: type[Any]
    entity_type: str
    writable_fields: frozenset[str] = frozenset()

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, tenant_id: str, entity_id: uuid.UUID | str) -> dict[str, Any] | None:
        row = self._load(tenant_id, entity_id)
        if row is None:
            return None
        return to_context_dict(row)

    def update(self, tenant_id: str, entity_id: uuid.UUID | str, fields: dict[str, Any]) -> dict[str, Any]:
        row = self._load(tenant_id, entity_id)
        if row is None:
            raise EntityNotFoundError(self.entity_type, str(entity_id))
        for field_name, value in fields.items():
            self._check_writable(field_name)
            setattr(row, field_name, self._coerce(field_name, value))
        self._flush()
        return to_context_dict(row)

    def create(self, tenant_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for field_name, value in fields.items():
            self._check_writable(field_name)
            values[field_name] = self._coerce(field_name, value)
        row = self.model(tenant_id=tenant_id, **values)
        self.session.add(row)
        self._flush()
        return to_context_dict(row)

    def _load(self, tenant_id: str, entity_id: uuid.UUID | str) -> Any | None:
        parsed = parse_uuid(entity_id)
        if parsed is None:
            return None
        return self.session.scalar(
            select(self.model).where(and_(self.model.id == parsed, self.model.tenant_id == tenant_id))
        )

    def _check_writable(self, field_name: str) -> None:
        if field_name not in self.writable_fields:
            raise ValueError(f"field '{field_name}' is not writable on {self.entity_type}")

    def _coerce(self, field_name: str, value: Any) -> Any:
        column = inspect(self.model).columns[field_name]
        try:
            python_type = column.type.python_type
        except NotImplementedError:
            return value
        if value is None:
            return None
        if python_type is uuid.UUID:
            return uuid.UUID(str(value))
        if python_type is datetime:
            return value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
        if python_type is date:
            return value if isinstance(value, date) else date.fromisoformat(str(value))
        if python_type is Decimal:
            return Decimal(str(value))
        if python_type is int:
            return int(value)
        if python_type is bool:
            if isinstance(value, str):
                if value.lower() == "true":
                    return True
                if value.lower() == "false":
                    return False
                raise ValueError(f"invalid boolean for {field_name}")
            return bool(value)
        if python_type is str:
            return str(value)
        return value

    def _flush(self) -> None:
        self.session.flush()


class SqlLeadRepository(SqlEntityRepository):
    model = CRMLead
    entity_type = "lead"
    writable_fields = frozenset(
        {"name", "email", "phone", "source", "status", "owner_user_id", "notes", "tags", "client_id"}
    )

    def reassign_unlinked_tasks(self, tenant_id: str, lead_id: uuid.UUID | str, client_id: uuid.UUID | str) -> int:
        parsed_lead = parse_uuid(lead_id)
        parsed_client = parse_uuid(client_id)
        if parsed_lead is None or parsed_client is None:
            return 0
        result = self.session.execute(
            update(CRMTask)
            .where(
                and_(
                    CRMTask.tenant_id == tenant_id,
                    CRMTask.lead_id == parsed_lead,
                    CRMTask.client_id.is_(None),
                )
            )
            .values(client_id=parsed_client)
            .execution_options(synchronize_session="fetch")
        )
        return int(result.rowcount or 0)


class SqlClientRepository(SqlEntityRepository):
    model = CRMClient
    entity_type = "client"
    writable_fields = frozenset({"name", "email", "phone", "notes", "status", "owner_user_id", "tags"})


class SqlTaskRepository(SqlEntityRepository):
    model = CRMTask
    entity_type = "task"
    writable_fields = frozenset(
        {
            "title",
            "description",
            "priority",
            "status",
            "assignee_user_id",
            "lead_id",
            "client_id",
            "project_id",
            "due_at",
            "completed_at",
        }
    )


class SqlProjectRepository(SqlEntityRepository):
    model = CRMProject
    entity_type = "project"
    writable_fields = frozenset({"name", "status", "client_id"})


class SqlQuoteRepository(SqlEntityRepository):
    model = CRMQuote
    entity_type = "quote"

    def update(self, tenant_id: str, entity_id: uuid.UUID | str, fields: dict[str, Any]) -> dict[str, Any]:
        raise ValueError("quotes are read-only to automations")

    def create(self, tenant_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        raise ValueError("quotes are read-only to automations")
