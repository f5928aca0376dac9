from __future__ import annotations

import logging
from typing import Any

from crm_automation.automation.factory import build_automation_engine
from crm_automation.automation.schemas import EventEnvelope
from crm_automation.core.celery_app import celery_app
from crm_automation.core.database import SessionLocal


logger = logging.getLogger("crm_automation.automation")


@celery_app.task(name="crm_automation.automation.process_trigger")
def process_trigger_task(envelope: dict[str, Any]) -> None:
    event = EventEnvelope.model_validate(envelope)
    session = SessionLocal()
    try:
        build_automation_engine(session).process_trigger(event)
    finally:
        session.close()
