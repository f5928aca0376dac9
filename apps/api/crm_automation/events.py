from __future__ import annotations

from typing import Any

from crm_automation.context import get_correlation_id
from crm_automation.core.events import event_bus

AUTOMATION_TRIGGER_EVENT = "automation.trigger"

published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any]) -> None:
    """Record an event envelope and fan it out on the in-process bus.

    Envelopes carrying a ``trigger_type`` are also published under
    ``automation.trigger`` so the automation dispatcher sees every trigger
    without subscribing to each type individually.
    """
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    trigger_type = envelope.get("trigger_type")
    if isinstance(trigger_type, str) and trigger_type:
        event_bus.publish(trigger_type, envelope)
        event_bus.publish(AUTOMATION_TRIGGER_EVENT, envelope)
