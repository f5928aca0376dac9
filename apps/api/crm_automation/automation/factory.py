from __future__ import annotations

import httpx
from sqlalchemy.orm import Session

from crm_automation.automation.actions import ActionExecutor
from crm_automation.automation.collaborators import EntityRepositories
from crm_automation.automation.engine import AutomationEngine
from crm_automation.automation.notifications import SqlNotificationSender
from crm_automation.automation.repositories import (
    SqlClientRepository,
    SqlExecutionLogSink,
    SqlLeadRepository,
    SqlProjectRepository,
    SqlQuoteRepository,
    SqlRuleStore,
    SqlTaskRepository,
)
from crm_automation.automation.webhooks import HttpxWebhookCaller
from crm_automation.core.config import get_settings


def build_entity_repositories(session: Session) -> EntityRepositories:
    return EntityRepositories(
        lead=SqlLeadRepository(session),
        client=SqlClientRepository(session),
        task=SqlTaskRepository(session),
        project=SqlProjectRepository(session),
        quote=SqlQuoteRepository(session),
    )


def build_automation_engine(session: Session, *, webhook_transport: httpx.BaseTransport | None = None) -> AutomationEngine:
    """Wire the SQL collaborators of one trigger onto ``session``.

    ``webhook_transport`` replaces the network for outbound webhook calls.
    """
    settings = get_settings()
    webhook_caller = HttpxWebhookCaller(
        session,
        timeout_seconds=settings.automation_webhook_timeout_seconds,
        max_attempts=settings.automation_webhook_max_attempts,
        backoff_seconds=settings.automation_webhook_backoff_seconds,
        transport=webhook_transport,
    )
    executor = ActionExecutor(
        build_entity_repositories(session),
        SqlNotificationSender(session),
        webhook_caller,
        action_scope=session.begin_nested,
    )
    return AutomationEngine(SqlRuleStore(session), SqlExecutionLogSink(session), executor)
