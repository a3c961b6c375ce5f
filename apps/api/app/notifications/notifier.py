from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from app.context import get_correlation_id
from app.crm.repositories import EntityStore
from app.crm.schemas import EmailLogCreate, NotificationCreate, NotificationRead
from app.metrics import observe_workflow_email, observe_workflow_notification
from app.notifications.email import EmailService, OutboundEmail


logger = logging.getLogger("app.notifications")

EMAIL_PREFERENCE_FLAGS = {
    "task_assignment": "task_assignments",
    "task_overdue": "task_overdue",
    "task_escalation": "task_escalations",
    "opportunity_update": "opportunity_updates",
    "opportunity_won": "opportunity_won",
    "daily_digest": "daily_digest",
    "weekly_digest": "weekly_digest",
}


@dataclass(frozen=True, slots=True)
class EmailRecipient:
    email: str
    user_id: uuid.UUID | None = None


class Notifier:
    """In-app notification and email fan-out for a single unit of work."""

    def __init__(self, store: EntityStore, email_service: EmailService) -> None:
        self.store = store
        self.email_service = email_service

    def notify(self, dto: NotificationCreate) -> NotificationRead:
        notification = self.store.add_notification(dto)
        observe_workflow_notification(dto.type)
        return notification

    def can_send_to_user(self, user_id: uuid.UUID, email_type: str) -> bool:
        try:
            preferences = self.store.get_email_preferences(user_id)
        except Exception as exc:
            logger.warning(
                "email_preferences_lookup_failed",
                extra={"user_id": str(user_id), "error": str(exc)},
            )
            return False

        if preferences is None or preferences.email_frequency == "disabled":
            return False

        flag = EMAIL_PREFERENCE_FLAGS.get(email_type)
        if flag is None:
            return True
        return bool(getattr(preferences, flag))

    def send_email(
        self,
        recipients: list[str],
        *,
        subject: str,
        template: str,
        data: dict[str, Any],
    ) -> bool:
        delivery = self.email_service.send(
            OutboundEmail(to=list(recipients), subject=subject, template=template, data=data)
        )
        observe_workflow_email(template, delivery.status)
        if delivery.status == "disabled":
            return False

        correlation_id = get_correlation_id()
        for recipient in recipients:
            self.store.add_email_log(
                EmailLogCreate(
                    recipient_email=recipient,
                    subject=subject,
                    template_name=template,
                    status="sent" if delivery.ok else "failed",
                    message_id=delivery.message_id,
                    error_message=delivery.error,
                    correlation_id=correlation_id,
                )
            )
        return delivery.ok

    def send_task_assignment_email(self, email: str, task_data: dict[str, Any], user_id: uuid.UUID | None = None) -> bool:
        if user_id is not None and not self.can_send_to_user(user_id, "task_assignment"):
            logger.info("email_opted_out", extra={"user_id": str(user_id), "template": "task-assignment"})
            return False
        return self.send_email(
            [email],
            subject=f"New Task Assigned: {task_data['name']}",
            template="task-assignment",
            data=task_data,
        )

    def send_task_overdue_email(self, email: str, task_data: dict[str, Any], user_id: uuid.UUID | None = None) -> bool:
        if user_id is not None and not self.can_send_to_user(user_id, "task_overdue"):
            logger.info("email_opted_out", extra={"user_id": str(user_id), "template": "task-overdue"})
            return False
        return self.send_email(
            [email],
            subject=f"Task Overdue: {task_data['name']}",
            template="task-overdue",
            data=task_data,
        )

    def send_task_escalation_email(self, email: str, task_data: dict[str, Any], user_id: uuid.UUID | None = None) -> bool:
        if user_id is not None and not self.can_send_to_user(user_id, "task_escalation"):
            logger.info("email_opted_out", extra={"user_id": str(user_id), "template": "task-escalation"})
            return False
        return self.send_email(
            [email],
            subject=f"Task Escalation: {task_data['name']}",
            template="task-escalation",
            data=task_data,
        )

    def send_opportunity_won_email(self, recipients: list[EmailRecipient], opportunity_data: dict[str, Any]) -> bool:
        allowed = [
            recipient.email
            for recipient in recipients
            if recipient.user_id is None or self.can_send_to_user(recipient.user_id, "opportunity_won")
        ]
        if not allowed:
            logger.info("email_all_recipients_opted_out", extra={"template": "opportunity-won"})
            return False

        return self.send_email(
            allowed,
            subject=f"Opportunity Won: {opportunity_data['name']}",
            template="opportunity-won",
            data=opportunity_data,
        )

    def send_daily_digest_email(self, email: str, digest_data: dict[str, Any], user_id: uuid.UUID | None = None) -> bool:
        if user_id is not None and not self.can_send_to_user(user_id, "daily_digest"):
            logger.info("email_opted_out", extra={"user_id": str(user_id), "template": "daily-digest"})
            return False
        return self.send_email(
            [email],
            subject="Daily Digest - WondrlabApp",
            template="daily-digest",
            data=digest_data,
        )
