from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.orm import Session

from app.context import (
    get_correlation_id,
    reset_correlation_id,
    reset_workflow_run_id,
    set_correlation_id,
    set_workflow_run_id,
)
from app.core.config import get_settings
from app.crm.models import utcnow
from app.crm.repositories import EntityStore, SqlEntityStore
from app.metrics import observe_workflow_run
from app.notifications import EmailService, Notifier
from app.workflows.escalation import EscalationResolver
from app.workflows.processors import OverdueTaskProcessor, WonOpportunityProcessor
from app.workflows.schemas import ProcessorResult, RunStatus, WorkflowRunResult


logger = logging.getLogger("app.workflows")
tracer = trace.get_tracer("app.workflows")


class WorkflowRunError(Exception):
    """Raised when a run could not complete any of its processors' scans."""

    def __init__(self, result: WorkflowRunResult) -> None:
        super().__init__(f"workflow run {result.run_id} failed")
        self.result = result


def _overall_status(*results: ProcessorResult) -> RunStatus:
    statuses = {result.status for result in results}
    if statuses == {"failed"}:
        return "failed"
    if statuses == {"succeeded"}:
        return "succeeded"
    return "partial"


class WorkflowService:
    def __init__(
        self,
        email_service_factory: Callable[[], EmailService] = EmailService.from_settings,
    ) -> None:
        self.email_service_factory = email_service_factory

    def run_workflows(self, session: Session, *, now: datetime | None = None) -> WorkflowRunResult:
        """Run the overdue-task and won-opportunity processors once, in that order.

        A processor whose scan query fails is reported as ``failed`` and the
        other still runs. When both fail, ``WorkflowRunError`` carries the result.
        """
        settings = get_settings()
        run_id = uuid.uuid4()
        correlation_token = set_correlation_id(get_correlation_id() or f"workflow-run:{run_id}")
        run_token = set_workflow_run_id(str(run_id))
        started = time.perf_counter()
        started_at = utcnow()
        final_status: RunStatus = "failed"

        try:
            store = SqlEntityStore(session)
            notifier = Notifier(store, self.email_service_factory())
            resolver = EscalationResolver(store)
            overdue_processor = OverdueTaskProcessor(
                store,
                notifier,
                resolver,
                escalation_threshold_hours=settings.workflow_escalation_threshold_hours,
                app_url=settings.app_url,
            )
            won_processor = WonOpportunityProcessor(store, notifier, resolver, app_url=settings.app_url)

            with tracer.start_as_current_span("workflows.run") as span:
                span.set_attribute("workflow_run_id", str(run_id))
                span.set_attribute("correlation_id", get_correlation_id() or "")
                logger.info("workflow_run_started", extra={"run_id": str(run_id)})

                overdue_result = self._run_processor(
                    store,
                    overdue_processor.name,
                    lambda: overdue_processor.process_overdue_tasks(now),
                )
                won_result = self._run_processor(
                    store,
                    won_processor.name,
                    won_processor.process_won_opportunities,
                )

                result = WorkflowRunResult(
                    run_id=run_id,
                    status=_overall_status(overdue_result, won_result),
                    started_at=started_at,
                    finished_at=utcnow(),
                    overdue_tasks=overdue_result,
                    won_opportunities=won_result,
                )
                final_status = result.status
                span.set_attribute("workflows.status", result.status)
                if result.status == "failed":
                    span.set_status(Status(StatusCode.ERROR, "all workflow processors failed"))

                logger.info(
                    "workflow_run_finished",
                    extra={
                        "run_id": str(run_id),
                        "status": result.status,
                        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    },
                )

            if result.status == "failed":
                raise WorkflowRunError(result)
            return result
        finally:
            observe_workflow_run(final_status, time.perf_counter() - started)
            reset_workflow_run_id(run_token)
            reset_correlation_id(correlation_token)

    def _run_processor(
        self,
        store: EntityStore,
        processor_name: str,
        run: Callable[[], ProcessorResult],
    ) -> ProcessorResult:
        try:
            return run()
        except Exception as exc:
            store.rollback()
            logger.exception(
                "workflow_processor_failed",
                extra={"processor": processor_name, "error": str(exc)[:500]},
            )
            return ProcessorResult(processor=processor_name, error=str(exc)[:2000]).finalize()


workflow_service = WorkflowService()
