from crm_automation.automation.actions import ActionExecutor
from crm_automation.automation.conditions import evaluate, render_template
from crm_automation.automation.engine import AutomationEngine
from crm_automation.automation.errors import (
    ActionFailedError,
    AutomationError,
    AutomationInactiveError,
    AutomationNotFoundError,
)
from crm_automation.automation.models import AutomationExecutionLog, AutomationRuleRecord, WebhookDelivery
from crm_automation.automation.schemas import (
    ActionError,
    ActionOutcome,
    AutomationCondition,
    AutomationRule,
    EventEnvelope,
    ExecutionLogEntry,
    RuleRunResult,
    TriggerType,
)

__all__ = [
    "ActionExecutor",
    "evaluate",
    "render_template",
    "AutomationEngine",
    "ActionFailedError",
    "AutomationError",
    "AutomationInactiveError",
    "AutomationNotFoundError",
    "AutomationExecutionLog",
    "AutomationRuleRecord",
    "WebhookDelivery",
    "ActionError",
    "ActionOutcome",
    "AutomationCondition",
    "AutomationRule",
    "EventEnvelope",
    "ExecutionLogEntry",
    "RuleRunResult",
    "TriggerType",
]
