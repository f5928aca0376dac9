from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_automation.automation.collaborators import NotificationResult
from crm_automation.automation.repositories import serialize_value
from crm_automation.crm.models import CRMNotification


logger = logging.getLogger("crm_automation.automation")

_CHANNELS = {"email": "email", "in_app": "in_app", "notification": "in_app"}


class SqlNotificationSender:
    """Queues notifications as rows; delivery workers pick up ``Queued`` rows."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def send(
        self,
        user_id: str | None,
        tenant_id: str,
        template_kind: str,
        template_data: dict[str, Any],
    ) -> NotificationResult:
        channel = _CHANNELS.get(template_kind)
        if channel is None:
            return NotificationResult(delivered=False, error=f"unsupported template kind '{template_kind}'")

        if channel == "email":
            recipient_email = template_data.get("to")
            if not recipient_email:
                return NotificationResult(delivered=False, error="email recipient is required")
            title = str(template_data.get("subject") or "")
            message = str(template_data.get("body") or "")
        else:
            if not user_id:
                return NotificationResult(delivered=False, error="recipient user is required")
            recipient_email = None
            title = str(template_data.get("title") or "")
            message = str(template_data.get("message") or "")

        notification = CRMNotification(
            tenant_id=tenant_id,
            user_id=user_id,
            channel=channel,
            notification_type=str(template_data.get("notification_type") or "automation"),
            title=title,
            message=message,
            recipient_email=recipient_email,
            template_data=serialize_value(dict(template_data)),
            entity_type=template_data.get("entity_type"),
            entity_id=template_data.get("entity_id"),
            status="Queued",
        )
        try:
            with self.session.begin_nested():
                self.session.add(notification)
        except SQLAlchemyError as exc:
            return NotificationResult(delivered=False, error=str(exc)[:500])

        logger.info(
            "automation.notification.queued",
            extra={"tenant_id": tenant_id, "status": channel, "entity_id": template_data.get("entity_id")},
        )
        return NotificationResult(delivered=True, notification_id=str(notification.id))
