from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from crm_automation import events
from crm_automation.automation.repositories import to_context_dict
from crm_automation.automation.schemas import EventEnvelope, TriggerType
from crm_automation.crm.models import CRMClient, CRMLead, CRMQuote, CRMTask, utcnow
from crm_automation.crm.schemas import (
    ClientCreate,
    ClientRead,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    QuoteCreate,
    QuoteRead,
    TaskCreate,
    TaskRead,
)


logger = logging.getLogger("crm_automation.crm")


@dataclass
class ActorUser:
    user_id: str
    tenant_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


def publish_trigger(
    actor_user: ActorUser,
    trigger_type: str,
    entity_type: str,
    entity_id: uuid.UUID | str,
    payload: dict[str, Any],
) -> EventEnvelope:
    """Announce a committed business change to the automation engine.

    Must be called after the commit so automations see the persisted state.
    """
    envelope = EventEnvelope(
        trigger_type=trigger_type,
        entity_id=str(entity_id),
        entity_type=entity_type,
        payload=payload,
        acting_user_id=actor_user.user_id,
        tenant_id=actor_user.tenant_id,
        correlation_id=actor_user.correlation_id,
    )
    logger.info(
        "crm.trigger.published",
        extra={
            "tenant_id": envelope.tenant_id,
            "trigger_type": trigger_type,
            "event_id": str(envelope.event_id),
            "entity_type": entity_type,
            "entity_id": envelope.entity_id,
        },
    )
    events.publish(envelope.model_dump(mode="json"))
    return envelope


def _load_scoped(session: Session, model: type[Any], tenant_id: str, entity_id: uuid.UUID, label: str) -> Any:
    row = session.scalar(select(model).where(and_(model.id == entity_id, model.tenant_id == tenant_id)))
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{label} not found")
    return row


class LeadService:
    def list_leads(self, session: Session, actor_user: ActorUser, *, status_filter: str | None = None) -> list[LeadRead]:
        stmt = select(CRMLead).where(CRMLead.tenant_id == actor_user.tenant_id)
        if status_filter:
            stmt = stmt.where(CRMLead.status == status_filter)
        rows = session.scalars(stmt.order_by(CRMLead.created_at.desc())).all()
        return [LeadRead.model_validate(row) for row in rows]

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        return LeadRead.model_validate(_load_scoped(session, CRMLead, actor_user.tenant_id, lead_id, "lead"))

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        lead = CRMLead(
            tenant_id=actor_user.tenant_id,
            name=dto.name.strip(),
            email=str(dto.email) if dto.email else None,
            phone=dto.phone,
            source=dto.source,
            status=dto.status,
            owner_user_id=dto.owner_user_id or actor_user.user_id,
            notes=dto.notes,
            tags=list(dto.tags),
        )
        session.add(lead)
        session.commit()
        session.refresh(lead)

        publish_trigger(actor_user, TriggerType.LEAD_CREATED, "lead", lead.id, to_context_dict(lead))
        return LeadRead.model_validate(lead)

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = _load_scoped(session, CRMLead, actor_user.tenant_id, lead_id, "lead")
        old_status = lead.status
        changes = dto.model_dump(exclude_unset=True)
        for field_name, value in changes.items():
            if field_name == "email" and value is not None:
                value = str(value)
            setattr(lead, field_name, value)
        session.add(lead)
        session.commit()
        session.refresh(lead)

        if "status" in changes and changes["status"] is not None and changes["status"] != old_status:
            payload = to_context_dict(lead)
            payload["oldStatus"] = old_status
            payload["newStatus"] = lead.status
            publish_trigger(actor_user, TriggerType.LEAD_STATUS_CHANGED, "lead", lead.id, payload)
        return LeadRead.model_validate(lead)


class ClientService:
    def create_client(self, session: Session, actor_user: ActorUser, dto: ClientCreate) -> ClientRead:
        client = CRMClient(
            tenant_id=actor_user.tenant_id,
            name=dto.name.strip(),
            email=str(dto.email) if dto.email else None,
            phone=dto.phone,
            notes=dto.notes,
            status=dto.status,
            owner_user_id=dto.owner_user_id or actor_user.user_id,
            tags=list(dto.tags),
        )
        session.add(client)
        session.commit()
        session.refresh(client)

        publish_trigger(actor_user, TriggerType.CLIENT_ADDED, "client", client.id, to_context_dict(client))
        return ClientRead.model_validate(client)

    def get_client(self, session: Session, actor_user: ActorUser, client_id: uuid.UUID) -> ClientRead:
        return ClientRead.model_validate(_load_scoped(session, CRMClient, actor_user.tenant_id, client_id, "client"))


class TaskService:
    def create_task(self, session: Session, actor_user: ActorUser, dto: TaskCreate) -> TaskRead:
        task = CRMTask(
            tenant_id=actor_user.tenant_id,
            title=dto.title.strip(),
            description=dto.description,
            priority=dto.priority,
            status=dto.status,
            assignee_user_id=dto.assignee_user_id or actor_user.user_id,
            lead_id=dto.lead_id,
            client_id=dto.client_id,
            project_id=dto.project_id,
            due_at=dto.due_at,
        )
        session.add(task)
        session.commit()
        session.refresh(task)

        publish_trigger(actor_user, TriggerType.TASK_CREATED, "task", task.id, to_context_dict(task))
        return TaskRead.model_validate(task)

    def complete_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> TaskRead:
        task = _load_scoped(session, CRMTask, actor_user.tenant_id, task_id, "task")
        if task.status == "done":
            return TaskRead.model_validate(task)

        task.status = "done"
        task.completed_at = utcnow()
        session.add(task)
        session.commit()
        session.refresh(task)

        publish_trigger(actor_user, TriggerType.TASK_COMPLETED, "task", task.id, to_context_dict(task))
        return TaskRead.model_validate(task)


class QuoteService:
    def create_quote(self, session: Session, actor_user: ActorUser, dto: QuoteCreate) -> QuoteRead:
        if dto.lead_id is not None:
            _load_scoped(session, CRMLead, actor_user.tenant_id, dto.lead_id, "lead")
        quote = CRMQuote(
            tenant_id=actor_user.tenant_id,
            quote_number=dto.quote_number.strip(),
            lead_id=dto.lead_id,
            total=dto.total,
        )
        session.add(quote)
        session.commit()
        session.refresh(quote)
        return QuoteRead.model_validate(quote)

    def accept_quote(self, session: Session, actor_user: ActorUser, quote_id: uuid.UUID) -> QuoteRead:
        quote = _load_scoped(session, CRMQuote, actor_user.tenant_id, quote_id, "quote")
        if quote.status == "ACCEPTED":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="quote already accepted")

        quote.status = "ACCEPTED"
        quote.accepted_at = utcnow()
        session.add(quote)
        session.commit()
        session.refresh(quote)

        publish_trigger(
            actor_user,
            TriggerType.QUOTE_ACCEPTED,
            "quote",
            quote.id,
            {
                "quoteId": str(quote.id),
                "quoteNumber": quote.quote_number,
                "total": float(quote.total),
                "leadId": str(quote.lead_id) if quote.lead_id else None,
            },
        )
        return QuoteRead.model_validate(quote)
