"""
Email Escalation for critical notifications.

Best-effort secondary channel. The in-app notification is authoritative
and already persisted by the time an email is attempted; a failed send is
logged and dropped, never retried.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from html import escape

import sendgrid
import structlog
from sendgrid.helpers.mail import Mail

from core.config import get_settings

logger = structlog.get_logger()


@dataclass(frozen=True)
class EmailResult:
    ok: bool
    reason: str | None = None

    @classmethod
    def sent(cls) -> "EmailResult":
        return cls(ok=True)

    @classmethod
    def failed(cls, reason: str) -> "EmailResult":
        return cls(ok=False, reason=reason)


class EmailTransport(ABC):
    """Provider boundary: send(to, subject, html_body) -> ok | failed(reason)."""

    @abstractmethod
    async def send(self, to: str, subject: str, html_body: str) -> EmailResult:
        ...


class SendGridTransport(EmailTransport):
    def __init__(self, api_key: str, from_email: str):
        self.api_key = api_key
        self.from_email = from_email

    async def send(self, to: str, subject: str, html_body: str) -> EmailResult:
        try:
            sg = sendgrid.SendGridAPIClient(api_key=self.api_key)
            email = Mail(
                from_email=self.from_email,
                to_emails=to,
                subject=subject,
                html_content=html_body,
            )
            response = await asyncio.to_thread(sg.send, email)
        except Exception as exc:  # noqa: BLE001
            return EmailResult.failed(f"{type(exc).__name__}: {exc}")
        if response.status_code in (200, 201, 202):
            return EmailResult.sent()
        return EmailResult.failed(f"status_{response.status_code}")


class NullTransport(EmailTransport):
    """Used when no provider is configured. Every send fails with a reason."""

    async def send(self, to: str, subject: str, html_body: str) -> EmailResult:
        return EmailResult.failed("not_configured")


def get_email_transport(settings=None) -> EmailTransport:
    settings = settings or get_settings()
    if not settings.email_escalation_enabled or not settings.sendgrid_api_key:
        return NullTransport()
    return SendGridTransport(api_key=settings.sendgrid_api_key, from_email=settings.alert_from_email)


def render_alert_email(notification, recipient_name: str = "") -> tuple[str, str]:
    """Return (subject, html_body) for a notification."""
    settings = get_settings()
    severity = str(notification.severity)
    subject = f"[{settings.app_name}] {severity.upper()}: {notification.title}"
    greeting = f"<p style=\"color: #334155;\">Hi {escape(recipient_name)},</p>" if recipient_name else ""

    html_body = f"""
    <div style="font-family: Inter, sans-serif; max-width: 600px; margin: 0 auto;">
      <div style="background: #1e1b4b; color: white; padding: 24px; border-radius: 12px 12px 0 0;">
        <h1 style="margin: 0; font-size: 20px;">{escape(settings.app_name)} Alert</h1>
      </div>
      <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0;">
        {greeting}
        <div style="background: #fef2f2; border-left: 4px solid #dc2626;
                    padding: 16px; border-radius: 0 8px 8px 0; margin-bottom: 16px;">
          <p style="margin: 0; font-weight: 600; color: #1e293b;">
            {escape(severity.upper())} - {escape(notification.title)}
          </p>
        </div>
        <p style="color: #334155; line-height: 1.6;">{escape(notification.message)}</p>
        <a href="{escape(settings.dashboard_url)}"
           style="display: inline-block; background: #4f46e5; color: white;
                  padding: 10px 20px; border-radius: 8px; text-decoration: none;
                  margin-top: 16px; font-weight: 500;">
          View in Dashboard
        </a>
      </div>
    </div>
    """
    return subject, html_body


async def send_alert_email(transport: EmailTransport, to_email: str, notification, recipient_name: str = "") -> EmailResult:
    """
    Escalate a CRITICAL notification by email.

    Non-critical notifications are skipped. Never raises.
    """
    if str(notification.severity) != "critical":
        return EmailResult.failed("not_critical")
    if not to_email:
        return EmailResult.failed("no_recipient_email")

    subject, html_body = render_alert_email(notification, recipient_name)
    try:
        result = await transport.send(to_email, subject, html_body)
    except Exception as exc:  # noqa: BLE001
        result = EmailResult.failed(f"{type(exc).__name__}: {exc}")

    if result.ok:
        logger.info("email.sent", notification_id=str(notification.notification_id), to=to_email)
    else:
        logger.warning(
            "email.send_failed",
            notification_id=str(notification.notification_id),
            to=to_email,
            reason=result.reason,
        )
    return result
