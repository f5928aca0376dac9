from __future__ import annotations

import logging
import uuid

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, select
from sqlalchemy.orm import Session

from crm_automation.automation.models import AutomationExecutionLog, AutomationRuleRecord
from crm_automation.automation.schemas import (
    AutomationCreate,
    AutomationLogRead,
    AutomationRead,
    AutomationUpdate,
    STATUS_FAILED,
    STATUS_SUCCESS,
)
from crm_automation.core.config import get_settings
from crm_automation.crm.models import utcnow
from crm_automation.crm.service import ActorUser


logger = logging.getLogger("crm_automation.automation")

MAX_LOG_LIMIT = 500


class AutomationService:
    """Tenant scoped rule management and execution log queries."""

    def list_automations(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        trigger_type: str | None = None,
        is_active: bool | None = None,
    ) -> list[AutomationRead]:
        stmt: Select[tuple[AutomationRuleRecord]] = select(AutomationRuleRecord).where(
            and_(
                AutomationRuleRecord.tenant_id == actor_user.tenant_id,
                AutomationRuleRecord.deleted_at.is_(None),
            )
        )
        if trigger_type:
            stmt = stmt.where(AutomationRuleRecord.trigger_type == trigger_type)
        if is_active is not None:
            stmt = stmt.where(AutomationRuleRecord.is_active.is_(is_active))
        rows = session.scalars(stmt.order_by(AutomationRuleRecord.created_at.desc())).all()
        return [self._to_read(row) for row in rows]

    def get_automation(self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID) -> AutomationRead:
        return self._to_read(self._load(session, actor_user, automation_id))

    def create_automation(self, session: Session, actor_user: ActorUser, dto: AutomationCreate) -> AutomationRead:
        record = AutomationRuleRecord(
            tenant_id=actor_user.tenant_id,
            name=dto.name.strip(),
            description=dto.description,
            trigger_type=dto.trigger_type.strip(),
            conditions_json=dto.conditions,
            actions_json=dto.actions,
            is_active=dto.is_active,
            created_by_user_id=actor_user.user_id,
        )
        session.add(record)
        session.commit()
        session.refresh(record)
        logger.info(
            "automation.rule.created",
            extra={"automation_id": str(record.id), "tenant_id": record.tenant_id, "trigger_type": record.trigger_type},
        )
        return self._to_read(record)

    def update_automation(
        self,
        session: Session,
        actor_user: ActorUser,
        automation_id: uuid.UUID,
        dto: AutomationUpdate,
    ) -> AutomationRead:
        record = self._load(session, actor_user, automation_id)
        changes = dto.model_dump(exclude_unset=True)
        for field_name, value in changes.items():
            if field_name == "conditions":
                record.conditions_json = value or []
            elif field_name == "actions":
                if value is None:
                    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="actions cannot be null")
                record.actions_json = value
            elif field_name in {"name", "trigger_type"}:
                if value is None:
                    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{field_name} cannot be null")
                setattr(record, field_name, value.strip())
            elif field_name == "is_active":
                if value is None:
                    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="is_active cannot be null")
                record.is_active = value
            else:
                setattr(record, field_name, value)
        session.add(record)
        session.commit()
        session.refresh(record)
        logger.info("automation.rule.updated", extra={"automation_id": str(record.id), "tenant_id": record.tenant_id})
        return self._to_read(record)

    def delete_automation(self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID) -> None:
        record = self._load(session, actor_user, automation_id)
        record.deleted_at = utcnow()
        record.is_active = False
        session.add(record)
        session.commit()
        logger.info("automation.rule.deleted", extra={"automation_id": str(record.id), "tenant_id": record.tenant_id})

    def list_logs(
        self,
        session: Session,
        actor_user: ActorUser,
        automation_id: uuid.UUID,
        *,
        status_filter: str | None = None,
        limit: int | None = None,
    ) -> list[AutomationLogRead]:
        self._load(session, actor_user, automation_id, include_deleted=True)
        if status_filter is not None and status_filter not in {STATUS_SUCCESS, STATUS_FAILED}:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="status must be success or failed")

        resolved_limit = limit if limit is not None else get_settings().automation_logs_default_limit
        resolved_limit = max(1, min(resolved_limit, MAX_LOG_LIMIT))

        stmt: Select[tuple[AutomationExecutionLog]] = select(AutomationExecutionLog).where(
            and_(
                AutomationExecutionLog.automation_id == automation_id,
                AutomationExecutionLog.tenant_id == actor_user.tenant_id,
            )
        )
        if status_filter:
            stmt = stmt.where(AutomationExecutionLog.status == status_filter)
        rows = session.scalars(
            stmt.order_by(AutomationExecutionLog.created_at.desc(), AutomationExecutionLog.id.desc()).limit(resolved_limit)
        ).all()
        return [AutomationLogRead.model_validate(row) for row in rows]

    def _load(
        self,
        session: Session,
        actor_user: ActorUser,
        automation_id: uuid.UUID,
        *,
        include_deleted: bool = False,
    ) -> AutomationRuleRecord:
        stmt = select(AutomationRuleRecord).where(
            and_(
                AutomationRuleRecord.id == automation_id,
                AutomationRuleRecord.tenant_id == actor_user.tenant_id,
            )
        )
        if not include_deleted:
            stmt = stmt.where(AutomationRuleRecord.deleted_at.is_(None))
        record = session.scalar(stmt)
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="automation not found")
        return record

    def _to_read(self, record: AutomationRuleRecord) -> AutomationRead:
        return AutomationRead(
            id=record.id,
            tenant_id=record.tenant_id,
            name=record.name,
            description=record.description,
            trigger_type=record.trigger_type,
            conditions=list(record.conditions_json or []),
            actions=list(record.actions_json),
            is_active=record.is_active,
            created_by_user_id=record.created_by_user_id,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
