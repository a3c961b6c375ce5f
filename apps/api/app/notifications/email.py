from __future__ import annotations

import logging
import smtplib
from collections.abc import Callable
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Literal, Protocol

from opentelemetry import trace

from app.context import get_correlation_id
from app.core.config import Settings, get_settings


logger = logging.getLogger("app.notifications.email")
tracer = trace.get_tracer("app.notifications.email")

DeliveryStatus = Literal["sent", "failed", "disabled"]


@dataclass(slots=True)
class OutboundEmail:
    to: list[str]
    subject: str
    template: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    html: str | None = None
    text: str | None = None


@dataclass(slots=True)
class EmailDelivery:
    status: DeliveryStatus
    message_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "sent"


class EmailTransport(Protocol):
    def send(self, message: EmailMessage) -> None: ...


EmailRenderer = Callable[[str, dict[str, Any]], str]


def render_plaintext(template: str, data: dict[str, Any]) -> str:
    lines = [template.replace("-", " ").title(), ""]
    for key in sorted(data):
        value = data[key]
        if isinstance(value, (dict, list, tuple, set)):
            continue
        lines.append(f"{key.replace('_', ' ')}: {value}")
    return "\n".join(lines)


class SmtpEmailTransport:
    def __init__(
        self,
        host: str,
        port: int,
        *,
        secure: bool = False,
        username: str = "",
        password: str = "",
        timeout: float = 15.0,
    ) -> None:
        self.host = host
        self.port = port
        self.secure = secure
        self.username = username
        self.password = password
        self.timeout = timeout

    def send(self, message: EmailMessage) -> None:
        smtp_class = smtplib.SMTP_SSL if self.secure else smtplib.SMTP
        with smtp_class(self.host, self.port, timeout=self.timeout) as client:
            if not self.secure:
                client.ehlo()
                if client.has_extn("starttls"):
                    client.starttls()
                    client.ehlo()
            if self.username and self.password:
                client.login(self.username, self.password)
            client.send_message(message)


class EmailService:
    def __init__(
        self,
        transport: EmailTransport,
        *,
        enabled: bool,
        from_address: str,
        from_name: str,
        reply_to: str,
        renderer: EmailRenderer = render_plaintext,
        debug: bool = False,
    ) -> None:
        self.transport = transport
        self.enabled = enabled
        self.from_address = from_address
        self.from_name = from_name
        self.reply_to = reply_to
        self.renderer = renderer
        self.debug = debug

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> EmailService:
        resolved = settings or get_settings()
        return cls(
            SmtpEmailTransport(
                resolved.smtp_host,
                resolved.smtp_port,
                secure=resolved.smtp_secure,
                username=resolved.smtp_user,
                password=resolved.smtp_pass,
                timeout=resolved.smtp_timeout_seconds,
            ),
            enabled=resolved.email_enabled,
            from_address=resolved.email_from_address,
            from_name=resolved.email_from_name,
            reply_to=resolved.email_reply_to,
            debug=resolved.email_debug,
        )

    def send(self, outbound: OutboundEmail) -> EmailDelivery:
        if not self.enabled:
            logger.info("email_disabled_skip", extra={"template": outbound.template})
            return EmailDelivery(status="disabled")

        with tracer.start_as_current_span("notifications.send_email") as span:
            span.set_attribute("email.template", outbound.template or "")
            span.set_attribute("email.recipient_count", len(outbound.to))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                message = self._build_message(outbound)
                self.transport.send(message)
            except Exception as exc:
                span.set_attribute("email.status", "failed")
                logger.warning(
                    "email_send_failed",
                    extra={
                        "template": outbound.template,
                        "recipient_count": len(outbound.to),
                        "error": str(exc),
                    },
                )
                return EmailDelivery(status="failed", error=str(exc)[:2000])

            message_id = str(message["Message-ID"])
            span.set_attribute("email.status", "sent")
            if self.debug:
                logger.info("email_sent", extra={"template": outbound.template, "recipient_count": len(outbound.to)})
            return EmailDelivery(status="sent", message_id=message_id)

    def _build_message(self, outbound: OutboundEmail) -> EmailMessage:
        text_body = outbound.text
        html_body = outbound.html
        if outbound.template:
            text_body = self.renderer(outbound.template, outbound.data)

        message = EmailMessage()
        message["From"] = formataddr((self.from_name, self.from_address))
        message["To"] = ", ".join(outbound.to)
        message["Reply-To"] = self.reply_to
        message["Subject"] = outbound.subject
        message["Message-ID"] = make_msgid()
        message.set_content(text_body or "")
        if html_body:
            message.add_alternative(html_body, subtype="html")
        return message
