from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from typing import Any

from opentelemetry import trace
from sqlalchemy.orm import Session

from flowlane.automations.actions import ActionContext, ActionExecutor
from flowlane.automations.cascade import CascadeDispatcher, CascadeRequest, build_cascade_dispatcher
from flowlane.automations.conditions import ConditionEvaluator, has_rules
from flowlane.automations.dispatch import EmailDispatcher, build_email_dispatcher
from flowlane.automations.schemas import (
    ActionRecord,
    AutomationExecution,
    AutomationLogRead,
    AutomationReport,
    AutomationReportDetail,
    TriggerContext,
)
from flowlane.automations.store import (
    AutomationLogEntry,
    AutomationRecord,
    AutomationStore,
    CardMove,
    SqlAutomationStore,
    as_uuid,
)
from flowlane.automations.triggers import matches
from flowlane.context import (
    get_cascade_depth,
    get_correlation_id,
    reset_cascade_depth,
    reset_correlation_id,
    set_cascade_depth,
    set_correlation_id,
)
from flowlane.core.config import get_settings
from flowlane.core.database import SessionLocal
from flowlane.metrics import observe_automation_execution, observe_automation_run, observe_cascade_block


logger = logging.getLogger("flowlane.automations")
tracer = trace.get_tracer("flowlane.automations")

CONDITIONS_NOT_MET = "Conditions not met"


class AutomationService:
    """Evaluates and executes the automations of a pipe for one trigger.

    ``run`` loads the enabled automations of the requested trigger type, filters them
    through the trigger matcher, checks conditions, executes actions in order and
    appends one automation log per attempted automation. A failing automation never
    stops the ones after it; only a storage failure aborts the call.
    """

    def __init__(
        self,
        store: AutomationStore,
        email_dispatcher: EmailDispatcher,
        cascade_dispatcher: CascadeDispatcher,
        *,
        app_base_url: str | None = None,
        max_cascade_depth: int | None = None,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.cascade_dispatcher = cascade_dispatcher
        self.max_cascade_depth = (
            settings.automation_max_cascade_depth if max_cascade_depth is None else max_cascade_depth
        )
        self.condition_evaluator = ConditionEvaluator(store)
        self.action_executor = ActionExecutor(
            store,
            email_dispatcher,
            self.schedule_cascade,
            app_base_url=app_base_url or settings.app_base_url,
        )

    def run(
        self,
        trigger_type: str,
        card_id: uuid.UUID | str,
        pipe_id: uuid.UUID | str,
        context: TriggerContext | dict[str, Any] | None = None,
        *,
        cascade_depth: int | None = None,
    ) -> AutomationReport:
        if isinstance(context, dict):
            context = TriggerContext.model_validate(context)
        depth = get_cascade_depth() if cascade_depth is None else cascade_depth
        depth_token = set_cascade_depth(depth)
        started = time.perf_counter()
        try:
            with tracer.start_as_current_span("automation.run") as span:
                span.set_attribute("trigger_type", trigger_type)
                span.set_attribute("card_id", str(card_id))
                span.set_attribute("pipe_id", str(pipe_id))
                span.set_attribute("cascade_depth", depth)
                span.set_attribute("correlation_id", get_correlation_id() or "")

                report = AutomationReport()
                automations = self.store.load_pipe_automations(pipe_id, trigger_type)
                if automations is None:
                    logger.warning(
                        "automation.pipe_not_found",
                        extra={"pipe_id": str(pipe_id), "card_id": str(card_id), "trigger_type": trigger_type},
                    )
                    return report

                report.automations_found = len(automations)
                matched: list[tuple[AutomationRecord, AutomationReportDetail]] = []
                for automation in automations:
                    is_match = matches(trigger_type, automation.trigger_config, context)
                    detail = AutomationReportDetail(
                        name=automation.name,
                        id=automation.id,
                        matched=is_match,
                        trigger_config=automation.trigger_config,
                    )
                    report.details.append(detail)
                    if is_match:
                        matched.append((automation, detail))
                report.automations_matched = len(matched)

                for automation, detail in matched:
                    execution = self.execute_automation(automation, card_id, trigger_type, depth)
                    detail.execution = execution
                    if execution.status == "success":
                        report.automations_executed.append(automation.name)
                    elif execution.status == "skipped":
                        report.automations_skipped.append(automation.name)
                    else:
                        report.automations_failed.append(automation.name)

                span.set_attribute("automations_found", report.automations_found)
                span.set_attribute("automations_matched", report.automations_matched)
                logger.info(
                    "automation.run.finished",
                    extra={
                        "card_id": str(card_id),
                        "pipe_id": str(pipe_id),
                        "trigger_type": trigger_type,
                        "cascade_depth": depth,
                        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    },
                )
                return report
        finally:
            observe_automation_run(trigger_type, time.perf_counter() - started)
            reset_cascade_depth(depth_token)

    def execute_automation(
        self,
        automation: AutomationRecord,
        card_id: uuid.UUID | str,
        trigger_type: str,
        cascade_depth: int = 0,
    ) -> AutomationExecution:
        with tracer.start_as_current_span("automation.execute") as span:
            span.set_attribute("automation_id", str(automation.id))
            span.set_attribute("card_id", str(card_id))

            conditions_met: bool | None = None
            if has_rules(automation.conditions):
                if not self.condition_evaluator.evaluate(automation.conditions or {}, card_id):
                    execution = AutomationExecution(
                        status="skipped",
                        conditions_met=False,
                        actions_executed=[],
                        error_message=CONDITIONS_NOT_MET,
                    )
                    self._record(automation, card_id, trigger_type, execution)
                    span.set_attribute("status", execution.status)
                    return execution
                conditions_met = True

            ctx = ActionContext(
                card_id=card_id,
                pipe_id=automation.pipe_id,
                automation_id=automation.id,
                cascade_depth=cascade_depth,
            )
            records: list[ActionRecord] = []
            failure: ActionRecord | None = None
            for payload in automation.actions:
                record = self.action_executor.execute(payload, ctx)
                records.append(record)
                if record.status == "error":
                    failure = record
                    break

            execution = AutomationExecution(
                status="error" if failure is not None else "success",
                conditions_met=conditions_met,
                actions_executed=records,
                error_message=failure.error if failure is not None else None,
            )
            self._record(automation, card_id, trigger_type, execution)
            span.set_attribute("status", execution.status)
            return execution

    def schedule_cascade(self, move: CardMove, cascade_depth: int) -> bool:
        next_depth = cascade_depth + 1
        if next_depth > self.max_cascade_depth:
            logger.warning(
                "automation_cascade_blocked",
                extra={
                    "reason": "MAX_DEPTH",
                    "card_id": str(move.card_id),
                    "stage_id": str(move.to_stage_id),
                    "cascade_depth": next_depth,
                    "max_depth": self.max_cascade_depth,
                },
            )
            observe_cascade_block("MAX_DEPTH")
            return False

        request = CascadeRequest(
            card_id=str(move.card_id),
            pipe_id=str(move.pipe_id),
            stage_id=str(move.to_stage_id),
            depth=next_depth,
            correlation_id=get_correlation_id(),
        )
        if not self.cascade_dispatcher.dispatch(request, self.run_cascade):
            return False
        logger.info(
            "automation.cascade.scheduled",
            extra={"card_id": request.card_id, "stage_id": request.stage_id, "cascade_depth": next_depth},
        )
        return True

    def run_cascade(self, request: CascadeRequest) -> AutomationReport:
        token = set_correlation_id(request.correlation_id)
        try:
            return self.run(
                "card_enters_stage",
                request.card_id,
                request.pipe_id,
                TriggerContext(stage_id=request.stage_id),
                cascade_depth=request.depth,
            )
        finally:
            reset_correlation_id(token)

    def list_logs(self, card_id: uuid.UUID | str) -> list[AutomationLogRead]:
        return self.store.list_automation_logs(card_id)

    def _record(
        self,
        automation: AutomationRecord,
        card_id: uuid.UUID | str,
        trigger_type: str,
        execution: AutomationExecution,
    ) -> None:
        self.store.append_automation_log(
            AutomationLogEntry(
                card_id=as_uuid(card_id) or card_id,  # type: ignore[arg-type]
                automation_id=automation.id,
                status=execution.status,
                trigger_type=trigger_type,
                conditions_met=execution.conditions_met,
                actions_executed=[record.to_log_entry() for record in execution.actions_executed],
                error_message=execution.error_message,
            )
        )
        observe_automation_execution(trigger_type, execution.status)
        log = logger.warning if execution.status == "error" else logger.info
        log(
            "automation.executed",
            extra={
                "automation_id": str(automation.id),
                "automation_name": automation.name,
                "card_id": str(card_id),
                "trigger_type": trigger_type,
                "status": execution.status,
                "error": execution.error_message,
            },
        )


def build_automation_service(session_factory: Callable[[], Session] | None = None) -> AutomationService:
    return AutomationService(
        SqlAutomationStore(session_factory or SessionLocal),
        build_email_dispatcher(),
        build_cascade_dispatcher(),
    )
