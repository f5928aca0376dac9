from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from opentelemetry import trace

from crm_automation.automation.actions import ActionExecutor
from crm_automation.automation.collaborators import ExecutionLogSink, RuleStore
from crm_automation.automation.conditions import evaluate
from crm_automation.automation.errors import AutomationInactiveError, AutomationNotFoundError
from crm_automation.automation.schemas import (
    STATUS_FAILED,
    STATUS_SUCCESS,
    ActionOutcome,
    AutomationRule,
    EventEnvelope,
    ExecutionLogEntry,
    RuleRunResult,
)
from crm_automation.context import get_correlation_id, reset_correlation_id, reset_tenant_id, set_correlation_id, set_tenant_id
from crm_automation.metrics import observe_engine_failure, observe_rule_run, observe_trigger_duration


logger = logging.getLogger("crm_automation.automation")
tracer = trace.get_tracer("crm_automation.automation")

TEST_ENTITY_TYPE = "test"
DEFAULT_TEST_PAYLOAD: dict[str, Any] = {"name": "Test Entity", "email": "test@example.com"}


def summarize_outcomes(outcomes: list[ActionOutcome]) -> tuple[str, str | None]:
    for outcome in outcomes:
        if not outcome.succeeded:
            message = outcome.error.message if outcome.error is not None else "action failed"
            return STATUS_FAILED, f"{outcome.kind}: {message}"
    return STATUS_SUCCESS, None


class AutomationEngine:
    """Matches an event against a tenant's active rules and runs their actions.

    The engine keeps no state between events. Rules are loaded and log entries
    written through the collaborators it is given, once per call.
    """

    def __init__(self, rule_store: RuleStore, log_sink: ExecutionLogSink, executor: ActionExecutor) -> None:
        self.rule_store = rule_store
        self.log_sink = log_sink
        self.executor = executor

    def process_trigger(self, event: EventEnvelope) -> None:
        started = time.perf_counter()
        correlation_token = set_correlation_id(event.correlation_id or get_correlation_id())
        tenant_token = set_tenant_id(event.tenant_id)
        try:
            with tracer.start_as_current_span("automation.process_trigger") as span:
                span.set_attribute("tenant_id", event.tenant_id)
                span.set_attribute("trigger_type", event.trigger_type)
                span.set_attribute("event_id", str(event.event_id))
                span.set_attribute("correlation_id", event.correlation_id or "")

                try:
                    rules = self.rule_store.list_active_rules(event.tenant_id, event.trigger_type)
                except Exception as exc:
                    observe_engine_failure("rule_store")
                    logger.exception(
                        "automation.rule_store.failed",
                        extra={
                            "tenant_id": event.tenant_id,
                            "trigger_type": event.trigger_type,
                            "event_id": str(event.event_id),
                            "error": str(exc)[:500],
                        },
                    )
                    return

                span.set_attribute("rule_count", len(rules))
                logger.info(
                    "automation.trigger.received",
                    extra={
                        "tenant_id": event.tenant_id,
                        "trigger_type": event.trigger_type,
                        "event_id": str(event.event_id),
                        "entity_type": event.entity_type,
                        "entity_id": event.entity_id,
                        "rule_count": len(rules),
                    },
                )

                for rule in rules:
                    if rule.tenant_id != event.tenant_id:
                        logger.warning(
                            "automation.rule.tenant_mismatch",
                            extra={"automation_id": str(rule.id), "tenant_id": event.tenant_id},
                        )
                        continue
                    try:
                        self.run_rule(rule, event)
                    except Exception as exc:
                        observe_engine_failure("rule")
                        observe_rule_run(event.trigger_type, STATUS_FAILED)
                        logger.exception(
                            "automation.rule.failed",
                            extra={"automation_id": str(rule.id), "tenant_id": event.tenant_id, "error": str(exc)[:500]},
                        )
                        self._append_log(rule, event, STATUS_FAILED, f"engine: {exc}"[:1000], [], is_test=False)
        except Exception as exc:
            observe_engine_failure("process_trigger")
            logger.exception(
                "automation.trigger.failed",
                extra={"tenant_id": event.tenant_id, "event_id": str(event.event_id), "error": str(exc)[:500]},
            )
        finally:
            observe_trigger_duration(event.trigger_type, time.perf_counter() - started)
            reset_tenant_id(tenant_token)
            reset_correlation_id(correlation_token)

    def run_rule(self, rule: AutomationRule, event: EventEnvelope, *, is_test: bool = False) -> RuleRunResult:
        with tracer.start_as_current_span("automation.rule") as span:
            span.set_attribute("automation_id", str(rule.id))
            span.set_attribute("tenant_id", event.tenant_id)
            span.set_attribute("trigger_type", event.trigger_type)
            span.set_attribute("is_test", is_test)

            if not evaluate(rule.conditions, event.payload):
                span.set_attribute("matched", False)
                return RuleRunResult(automation_id=rule.id, name=rule.name, matched=False)
            span.set_attribute("matched", True)

            outcomes: list[ActionOutcome] = []
            try:
                outcomes = self.executor.execute_all(rule.actions, event, rule=rule)
                status, error_detail = summarize_outcomes(outcomes)
            except Exception as exc:
                status, error_detail = STATUS_FAILED, f"engine: {exc}"[:1000]
                logger.exception(
                    "automation.rule.crashed",
                    extra={"automation_id": str(rule.id), "tenant_id": event.tenant_id, "error": str(exc)[:500]},
                )

            span.set_attribute("status", status)
            observe_rule_run(event.trigger_type, status)
            self._append_log(rule, event, status, error_detail, outcomes, is_test=is_test)
            logger.info(
                "automation.rule.finished",
                extra={
                    "automation_id": str(rule.id),
                    "tenant_id": event.tenant_id,
                    "trigger_type": event.trigger_type,
                    "event_id": str(event.event_id),
                    "status": status,
                    "error": error_detail,
                },
            )
            return RuleRunResult(
                automation_id=rule.id,
                name=rule.name,
                matched=True,
                status=status,
                error_detail=error_detail,
                action_results=outcomes,
            )

    def run_now(
        self,
        tenant_id: str,
        automation_id: uuid.UUID | str,
        test_payload: dict[str, Any] | None = None,
        acting_user_id: str | None = None,
    ) -> RuleRunResult:
        rule = self.rule_store.get_rule(tenant_id, automation_id)
        if rule is None or rule.tenant_id != tenant_id:
            raise AutomationNotFoundError(str(automation_id))
        if not rule.is_active:
            raise AutomationInactiveError(str(automation_id))

        event = EventEnvelope(
            trigger_type=rule.trigger_type,
            entity_id=f"test-{int(time.time() * 1000)}",
            entity_type=TEST_ENTITY_TYPE,
            payload=dict(test_payload) if test_payload is not None else dict(DEFAULT_TEST_PAYLOAD),
            acting_user_id=acting_user_id,
            tenant_id=tenant_id,
            correlation_id=get_correlation_id(),
        )
        logger.info(
            "automation.manual_run.started",
            extra={"automation_id": str(rule.id), "tenant_id": tenant_id, "event_id": str(event.event_id)},
        )
        return self.run_rule(rule, event, is_test=True)

    def _append_log(
        self,
        rule: AutomationRule,
        event: EventEnvelope,
        status: str,
        error_detail: str | None,
        outcomes: list[ActionOutcome],
        *,
        is_test: bool,
    ) -> None:
        entry = ExecutionLogEntry(
            automation_id=rule.id,
            tenant_id=event.tenant_id,
            trigger_type=event.trigger_type,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            event_id=event.event_id,
            status=status,
            error_detail=error_detail,
            action_results=outcomes,
            trigger_payload=dict(event.payload),
            is_test=is_test,
            correlation_id=event.correlation_id,
        )
        try:
            self.log_sink.append(entry)
        except Exception as exc:
            observe_engine_failure("log_sink")
            logger.exception(
                "automation.log.write_failed",
                extra={"automation_id": str(rule.id), "tenant_id": event.tenant_id, "error": str(exc)[:500]},
            )
