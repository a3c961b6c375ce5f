from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

from app import audit
from app.crm.models import NotificationType, RelatedEntity, utcnow
from app.crm.repositories import EntityStore
from app.crm.schemas import ClientRead, NotificationCreate, OpportunityRead, OverdueTaskView
from app.metrics import observe_workflow_entity_failure
from app.notifications import EmailRecipient, Notifier
from app.workflows.escalation import EscalationResolver
from app.workflows.schemas import ProcessorResult


logger = logging.getLogger("app.workflows")
tracer = trace.get_tracer("app.workflows")


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hours_overdue(due_date: datetime, now: datetime) -> int:
    return math.floor((as_utc(now) - as_utc(due_date)).total_seconds() / 3600)


@dataclass(slots=True)
class _Outcome:
    skipped: bool = False
    notifications_created: int = 0
    emails_sent: int = 0
    escalations: int = 0
    services_added: int = 0

    def merge_into(self, result: ProcessorResult) -> None:
        if self.skipped:
            result.skipped += 1
        else:
            result.processed += 1
        result.notifications_created += self.notifications_created
        result.emails_sent += self.emails_sent
        result.escalations += self.escalations
        result.services_added += self.services_added


def _record_entity_failure(
    store: EntityStore,
    result: ProcessorResult,
    entity_type: str,
    entity_id: uuid.UUID,
    exc: Exception,
) -> None:
    store.rollback()
    result.record_failure(entity_type, entity_id, exc)
    observe_workflow_entity_failure(result.processor)
    logger.exception(
        "workflow_entity_failed",
        extra={
            "processor": result.processor,
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "error": str(exc)[:500],
        },
    )


class OverdueTaskProcessor:
    """Notifies assignees of overdue tasks and escalates long-overdue ones.

    Every pass re-notifies every task that is still overdue; nothing marks a
    task as already reported. Each task is committed on its own so one bad
    row cannot undo the notifications already written for the others.
    """

    name = "overdue_tasks"

    def __init__(
        self,
        store: EntityStore,
        notifier: Notifier,
        resolver: EscalationResolver,
        *,
        escalation_threshold_hours: int = 24,
        app_url: str = "http://localhost:3000",
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.resolver = resolver
        self.escalation_threshold_hours = escalation_threshold_hours
        self.app_url = app_url

    def process_overdue_tasks(self, now: datetime | None = None) -> ProcessorResult:
        batch_now = as_utc(now or utcnow())
        result = ProcessorResult(processor=self.name)

        with tracer.start_as_current_span("workflows.process_overdue_tasks") as span:
            overdue_tasks = self.store.list_overdue_tasks(batch_now)
            result.scanned = len(overdue_tasks)
            span.set_attribute("workflows.scanned", result.scanned)

            if not overdue_tasks:
                logger.info("overdue_tasks_none", extra={"processor": self.name})
                return result.finalize()

            logger.info("overdue_tasks_found", extra={"processor": self.name, "scanned": result.scanned})

            for task in overdue_tasks:
                try:
                    outcome = self._process_task(task, batch_now)
                    self.store.commit()
                except Exception as exc:
                    _record_entity_failure(self.store, result, "task", task.id, exc)
                    continue
                outcome.merge_into(result)

            span.set_attribute("workflows.processed", result.processed)
            span.set_attribute("workflows.failed", len(result.failures))

        logger.info(
            "overdue_tasks_processed",
            extra={
                "processor": self.name,
                "scanned": result.scanned,
                "processed": result.processed,
                "failed": len(result.failures),
            },
        )
        return result.finalize()

    def _process_task(self, task: OverdueTaskView, now: datetime) -> _Outcome:
        outcome = _Outcome()
        overdue_hours = hours_overdue(task.due_date, now)
        task_data = self._email_payload(task, overdue_hours)
        escalate = overdue_hours >= self.escalation_threshold_hours
        owner_user_id = self.resolver.find_escalation_owner(task.business_unit) if escalate else None

        self.notifier.notify(
            NotificationCreate(
                user_id=task.assigned_user_id,
                type=NotificationType.TASK_OVERDUE.value,
                title="Task Overdue",
                message=f'Task "{task.name}" is overdue. Please complete it as soon as possible.',
                related_to=RelatedEntity.TASK.value,
                related_id=task.id,
            )
        )
        outcome.notifications_created += 1
        if self.notifier.send_task_overdue_email(task.assigned_user_email, task_data, task.assigned_user_id):
            outcome.emails_sent += 1

        logger.info(
            "overdue_task_notified",
            extra={
                "processor": self.name,
                "task_id": str(task.id),
                "user_id": str(task.assigned_user_id),
                "hours_overdue": overdue_hours,
            },
        )

        if not escalate:
            return outcome

        if owner_user_id is None:
            logger.info(
                "task_escalation_skipped",
                extra={
                    "processor": self.name,
                    "task_id": str(task.id),
                    "business_unit": task.business_unit,
                    "reason": "no_escalation_owner",
                },
            )
            return outcome

        self.notifier.notify(
            NotificationCreate(
                user_id=owner_user_id,
                type=NotificationType.TASK_OVERDUE_ESCALATION.value,
                title="Task Overdue Escalation",
                message=(
                    f'Task "{task.name}" assigned to {task.assigned_user_name} is more than '
                    f"{self.escalation_threshold_hours} hours overdue."
                ),
                related_to=RelatedEntity.TASK.value,
                related_id=task.id,
            )
        )
        outcome.notifications_created += 1
        outcome.escalations += 1

        owner = self.store.get_user(owner_user_id)
        if owner is None:
            logger.warning(
                "task_escalation_email_skipped",
                extra={
                    "processor": self.name,
                    "task_id": str(task.id),
                    "owner_user_id": str(owner_user_id),
                    "reason": "owner_not_found",
                },
            )
        elif self.notifier.send_task_escalation_email(owner.email, task_data, owner.id):
            outcome.emails_sent += 1

        logger.info(
            "overdue_task_escalated",
            extra={
                "processor": self.name,
                "task_id": str(task.id),
                "owner_user_id": str(owner_user_id),
                "business_unit": task.business_unit,
                "hours_overdue": overdue_hours,
            },
        )
        return outcome

    def _email_payload(self, task: OverdueTaskView, overdue_hours: int) -> dict[str, Any]:
        payload = task.model_dump(mode="json")
        payload["overdue_duration"] = f"{overdue_hours} hours"
        payload["app_url"] = self.app_url
        return payload


class WonOpportunityProcessor:
    """Propagates won opportunities into their client's services.

    The append is the only state change and it is idempotent: an opportunity
    whose service is already on the client is skipped without notifying. The
    append is committed before any notification is written, so a failure while
    notifying never undoes it.
    """

    name = "won_opportunities"

    def __init__(
        self,
        store: EntityStore,
        notifier: Notifier,
        resolver: EscalationResolver,
        *,
        app_url: str = "http://localhost:3000",
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.resolver = resolver
        self.app_url = app_url

    def process_won_opportunities(self) -> ProcessorResult:
        result = ProcessorResult(processor=self.name)

        with tracer.start_as_current_span("workflows.process_won_opportunities") as span:
            opportunities = self.store.list_won_opportunities()
            result.scanned = len(opportunities)
            span.set_attribute("workflows.scanned", result.scanned)

            for opportunity in opportunities:
                try:
                    outcome = self._process_opportunity(opportunity)
                    self.store.commit()
                except Exception as exc:
                    _record_entity_failure(self.store, result, "opportunity", opportunity.id, exc)
                    continue
                outcome.merge_into(result)

            span.set_attribute("workflows.processed", result.processed)
            span.set_attribute("workflows.failed", len(result.failures))

        logger.info(
            "won_opportunities_processed",
            extra={
                "processor": self.name,
                "scanned": result.scanned,
                "processed": result.processed,
                "skipped": result.skipped,
                "failed": len(result.failures),
            },
        )
        return result.finalize()

    def _process_opportunity(self, opportunity: OpportunityRead) -> _Outcome:
        client = self.store.get_client(opportunity.client_id)
        if client is None:
            logger.warning(
                "won_opportunity_skipped",
                extra={
                    "processor": self.name,
                    "opportunity_id": str(opportunity.id),
                    "client_id": str(opportunity.client_id),
                    "reason": "client_not_found",
                },
            )
            return _Outcome(skipped=True)

        if opportunity.service_id in client.services_used:
            return _Outcome(skipped=True)

        if not self.store.add_service_to_client(client.id, opportunity.service_id):
            # Another writer appended the same pair between the read and the insert.
            logger.info(
                "won_opportunity_skipped",
                extra={
                    "processor": self.name,
                    "opportunity_id": str(opportunity.id),
                    "client_id": str(client.id),
                    "reason": "already_propagated",
                },
            )
            return _Outcome(skipped=True)

        self.store.commit()
        audit.record(
            actor_user_id=audit.SYSTEM_WORKFLOW_ACTOR,
            entity_type="client",
            entity_id=str(client.id),
            action="client.service_added",
            before={"services_used": [str(item) for item in client.services_used]},
            after={"services_used": [str(item) for item in [*client.services_used, opportunity.service_id]]},
        )
        logger.info(
            "client_service_added",
            extra={
                "processor": self.name,
                "opportunity_id": str(opportunity.id),
                "client_id": str(client.id),
                "service_id": str(opportunity.service_id),
            },
        )

        service = self.store.get_service(opportunity.service_id)
        assigned_user = self.store.get_user(opportunity.assigned_user_id)
        if service is None or assigned_user is None:
            logger.warning(
                "won_opportunity_notifications_skipped",
                extra={
                    "processor": self.name,
                    "opportunity_id": str(opportunity.id),
                    "reason": "service_not_found" if service is None else "assigned_user_not_found",
                },
            )
            return _Outcome(skipped=True, services_added=1)

        owner_user_id = self.resolver.find_escalation_owner(service.business_unit)
        outcome = _Outcome(services_added=1)
        self.notifier.notify(
            NotificationCreate(
                user_id=client.account_owner_id,
                type=NotificationType.OPPORTUNITY_WON.value,
                title="Opportunity Won",
                message=(
                    f'Opportunity "{opportunity.name}" for service "{service.name}" '
                    "has been won and added to client's services."
                ),
                related_to=RelatedEntity.OPPORTUNITY.value,
                related_id=opportunity.id,
            )
        )
        outcome.notifications_created += 1

        if owner_user_id is not None:
            self.notifier.notify(
                NotificationCreate(
                    user_id=owner_user_id,
                    type=NotificationType.OPPORTUNITY_WON.value,
                    title="Opportunity Won - BU Notification",
                    message=(
                        f'Opportunity "{opportunity.name}" for client "{client.name}" has been won. '
                        f"Service \"{service.name}\" has been added to client's services."
                    ),
                    related_to=RelatedEntity.OPPORTUNITY.value,
                    related_id=opportunity.id,
                )
            )
            outcome.notifications_created += 1

        recipients = self._won_email_recipients(client, opportunity.assigned_user_id, owner_user_id)
        if recipients:
            payload = opportunity.model_dump(mode="json")
            payload.update(
                {
                    "client_name": client.name,
                    "service_name": service.name,
                    "business_unit": service.business_unit,
                    "assigned_user_name": assigned_user.username,
                    "app_url": self.app_url,
                }
            )
            if self.notifier.send_opportunity_won_email(recipients, payload):
                outcome.emails_sent += 1

        logger.info(
            "won_opportunity_notified",
            extra={
                "processor": self.name,
                "opportunity_id": str(opportunity.id),
                "client_id": str(client.id),
                "business_unit": service.business_unit,
                "recipient_count": len(recipients),
            },
        )
        return outcome

    def _won_email_recipients(
        self,
        client: ClientRead,
        assigned_user_id: uuid.UUID,
        owner_user_id: uuid.UUID | None,
    ) -> list[EmailRecipient]:
        candidate_ids = [client.account_owner_id]
        if owner_user_id is not None:
            candidate_ids.append(owner_user_id)
        candidate_ids.append(assigned_user_id)

        recipients: list[EmailRecipient] = []
        seen: set[uuid.UUID] = set()
        for user_id in candidate_ids:
            if user_id in seen:
                continue
            seen.add(user_id)
            user = self.store.get_user(user_id)
            if user is not None:
                recipients.append(EmailRecipient(email=user.email, user_id=user.id))
        return recipients
