from app.notifications.email import (
    EmailDelivery,
    EmailService,
    EmailTransport,
    OutboundEmail,
    SmtpEmailTransport,
    render_plaintext,
)
from app.notifications.notifier import EMAIL_PREFERENCE_FLAGS, EmailRecipient, Notifier

__all__ = [
    "EMAIL_PREFERENCE_FLAGS",
    "EmailDelivery",
    "EmailRecipient",
    "EmailService",
    "EmailTransport",
    "Notifier",
    "OutboundEmail",
    "SmtpEmailTransport",
    "render_plaintext",
]
