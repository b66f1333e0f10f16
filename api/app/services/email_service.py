"""
Email Service

Sends transactional emails over SMTP, most importantly the monitoring
alert when a run is worse than the previous one.
"""

import asyncio
import html
import logging
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from app.config import settings
from app.schemas.audit import Summary
from app.schemas.monitoring import MonitoringDiff
from app.services.diff import is_worsening
from app.services.resilience import retry_with_backoff

logger = logging.getLogger(__name__)


def escape_html(text: str) -> str:
    """Escape HTML special characters to prevent XSS."""
    if text is None:
        return ""
    return html.escape(str(text))


def signed(value: int) -> str:
    if not value:
        return "0"
    return f"+{value}" if value > 0 else str(value)


@dataclass(frozen=True)
class NotificationResult:
    sent: bool
    reason: str  # sent, disabled, missing-recipient, no-worsening, provider-error


class EmailService:
    """Service for sending emails."""

    def __init__(self):
        self.smtp_host = settings.SMTP_HOST
        self.smtp_port = settings.SMTP_PORT
        self.smtp_user = settings.SMTP_USER
        self.smtp_password = settings.SMTP_PASSWORD
        self.from_email = settings.FROM_EMAIL
        self.from_name = settings.FROM_NAME
        self.enabled = settings.EMAIL_ENABLED

    def _deliver(self, to: str, message: str) -> None:
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
            if self.smtp_user and self.smtp_password:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, to, message)

    @retry_with_backoff(
        attempts=2,
        delay=2.0,
        exceptions=(smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError, ConnectionError),
    )
    async def _deliver_with_retry(self, to: str, message: str) -> None:
        await asyncio.to_thread(self._deliver, to, message)

    async def send_email(
        self,
        to: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
    ) -> bool:
        """
        Send an email.

        Returns:
            True if email was sent successfully
        """
        if not self.enabled:
            logger.info(f"Email disabled, not sending '{subject}' to {to}")
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to

        if text_content:
            msg.attach(MIMEText(text_content, "plain", "utf-8"))
        msg.attach(MIMEText(html_content, "html", "utf-8"))

        try:
            await self._deliver_with_retry(to, msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {to}: {e}")
            return False

        logger.info(f"Email sent successfully to {to}")
        return True

    async def send_monitoring_worsening_email(
        self,
        to: Optional[str],
        run_url: str,
        trigger: str,
        diff: MonitoringDiff,
        summary: Summary,
    ) -> NotificationResult:
        """Alert the account owner that a monitored page got worse."""
        if not settings.monitoring_notifications_enabled:
            return NotificationResult(False, "disabled")

        recipient = (to or "").strip()
        if not recipient:
            return NotificationResult(False, "missing-recipient")

        if not is_worsening(diff):
            return NotificationResult(False, "no-worsening")

        dashboard_link = f"{settings.FRONTEND_URL.rstrip('/')}/dashboard"
        safe_url = escape_html(run_url)
        safe_dashboard = escape_html(dashboard_link)
        run_type = "Scheduled monitoring" if trigger == "scheduled" else "Manual monitoring"
        delta = diff.by_impact_delta
        counts = summary.by_impact

        subject = f"AccessMonitor: accessibility got worse on {run_url}"
        html_content = f"""
            <!DOCTYPE html>
            <html>
            <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
                <h2>Monitoring alert: results got worse</h2>
                <p><strong>Page:</strong> {safe_url}</p>
                <p><strong>Run type:</strong> {run_type}</p>
                <h3>Change since the previous run</h3>
                <ul>
                    <li><strong>Total change:</strong> {signed(diff.total_delta)}</li>
                    <li><strong>New issues:</strong> +{diff.new_issues}</li>
                    <li><strong>Resolved issues:</strong> -{diff.resolved_issues}</li>
                    <li><strong>Critical:</strong> {signed(delta.critical)}</li>
                    <li><strong>Serious:</strong> {signed(delta.serious)}</li>
                    <li><strong>Moderate:</strong> {signed(delta.moderate)}</li>
                    <li><strong>Minor:</strong> {signed(delta.minor)}</li>
                </ul>
                <h3>Latest run</h3>
                <ul>
                    <li><strong>Total:</strong> {summary.total}</li>
                    <li><strong>Critical:</strong> {counts.critical}</li>
                    <li><strong>Serious:</strong> {counts.serious}</li>
                    <li><strong>Moderate:</strong> {counts.moderate}</li>
                    <li><strong>Minor:</strong> {counts.minor}</li>
                </ul>
                <p><a href="{safe_dashboard}">Open dashboard</a></p>
            </body>
            </html>
        """
        text_content = (
            f"Monitoring alert for {run_url} ({run_type.lower()}).\n"
            f"Total change: {signed(diff.total_delta)}, new issues: {diff.new_issues}, "
            f"resolved: {diff.resolved_issues}, critical: {signed(delta.critical)}, "
            f"serious: {signed(delta.serious)}.\n"
            f"Dashboard: {dashboard_link}\n"
        )

        sent = await self.send_email(recipient, subject, html_content, text_content)
        return NotificationResult(sent, "sent" if sent else "provider-error")


email_service = EmailService()
