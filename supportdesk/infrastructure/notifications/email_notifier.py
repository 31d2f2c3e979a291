"""SMTP delivery for tenant billing notifications."""

from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any, Dict, Optional, Tuple

from ...domain.models import NotificationType
from ...domain.ports.billing import Notifier
from ...domain.ports.persistence import TenantDirectory

logger = logging.getLogger(__name__)

_TEMPLATES: Dict[str, Tuple[str, str]] = {
    NotificationType.SUBSCRIPTION_SUSPENDED.value: (
        "Your subscription has been suspended",
        "We could not collect payment for invoice {invoice_number} after {attempt_count} attempts.\n"
        "Your subscription is suspended until the outstanding balance is paid.",
    ),
    NotificationType.PAYMENT_FAILED_WARNING.value: (
        "Payment failed - action required",
        "Payment for invoice {invoice_number} failed ({failure_reason}).\n"
        "Please update your payment method to avoid interruption of service.",
    ),
    NotificationType.SUBSCRIPTION_CANCELLED.value: (
        "Your subscription has been cancelled",
        "Your {plan_name} subscription was cancelled. Reason: {reason}.",
    ),
    NotificationType.TRIAL_WELCOME.value: (
        "Welcome to your {plan_name} trial",
        "Your {plan_name} trial is ready and runs until {trial_end}.",
    ),
    NotificationType.TRIAL_REMINDER.value: (
        "Your trial ends in {days_remaining} day(s)",
        "Your {plan_name} trial ends on {trial_end}. Add a payment method to keep your tickets flowing.",
    ),
    NotificationType.TRIAL_CONVERTED.value: (
        "Thanks for subscribing to {plan_name}",
        "Your trial was converted to a paid {plan_name} subscription. "
        "The current period ends on {current_period_end}.",
    ),
    NotificationType.TRIAL_CANCELLED.value: (
        "Your trial has been cancelled",
        "Your {plan_name} trial was cancelled. Reason: {reason}.",
    ),
    NotificationType.TRIAL_EXTENDED.value: (
        "Your trial has been extended",
        "Your {plan_name} trial was extended by {additional_days} day(s) and now ends on {trial_end}.",
    ),
    NotificationType.TRIAL_EXPIRED.value: (
        "Your trial has expired",
        "Your {plan_name} trial ended on {trial_end} without a payment method and was cancelled.",
    ),
}


class _Defaults(dict):
    def __missing__(self, key: str) -> str:
        return "n/a"


class EmailNotifier(Notifier):
    """Sends notification emails via SMTP, logging them instead when SMTP is not configured."""

    def __init__(
        self,
        directory: TenantDirectory,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_username: Optional[str] = None,
        smtp_password: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: str = "Support Desk Billing",
    ) -> None:
        self._directory = directory
        self.smtp_host = smtp_host or ""
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username or ""
        self.smtp_password = smtp_password or ""
        self.from_email = from_email or ""
        self.from_name = from_name
        self.enabled = bool(self.smtp_host and self.smtp_username and self.from_email)

    def send(self, tenant_id: str, notification_type: str, context: Dict[str, Any]) -> bool:
        try:
            notification_type = NotificationType(notification_type).value
            subject, text_body = self.render(notification_type, context)
            to_email = self._directory.get_tenant_contact(tenant_id)
            if not to_email:
                logger.warning(
                    "No contact address for tenant %s; dropping %s notification",
                    tenant_id,
                    notification_type,
                )
                return False
            if not self.enabled:
                logger.info("[EMAIL] %s -> %s: %s", notification_type, to_email, subject)
                return True
            return self._send_email(to_email, subject, text_body)
        except Exception:
            logger.exception("Failed to dispatch %s notification for tenant %s", notification_type, tenant_id)
            return False

    @staticmethod
    def render(notification_type: str, context: Dict[str, Any]) -> Tuple[str, str]:
        subject_template, body_template = _TEMPLATES[notification_type]
        values = _Defaults({key: value for key, value in context.items() if value is not None})
        return subject_template.format_map(values), body_template.format_map(values)

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        html_body = "".join(f"<p>{escape(line)}</p>" for line in text_body.splitlines())
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(f"<html><body>{html_body}</body></html>", "html", "utf-8"))

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.starttls()
                server.login(self.smtp_username, self.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email to %s: %s", to_email, e)
            return False
        return True
