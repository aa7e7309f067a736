"""Email delivery for print job notifications.

Sends through Google SMTP (smtp.gmail.com:587, STARTTLS) with the account in
SMTP_FROM_EMAIL and a Gmail App Password in SMTP_APP_PASSWORD.

Without credentials the service logs each message at WARNING level and
returns False, so the service runs in development without email set up.
"""

import html
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import aiosmtplib

logger = logging.getLogger(__name__)

# Module-level singleton
_email_service: "EmailService | None" = None


class EmailService:
    """Sends transactional emails via SMTP (Gmail STARTTLS)."""

    def __init__(
        self,
        from_email: str = "",
        app_password: str = "",
        smtp_host: str = "smtp.gmail.com",
        smtp_port: int = 587,
    ) -> None:
        self._from_email = from_email
        self._app_password = app_password
        self._smtp_host = smtp_host
        self._smtp_port = smtp_port
        self._configured = bool(from_email and app_password)

        if not self._configured:
            logger.info(
                "Email service: SMTP credentials not configured, "
                "notifications will be logged only"
            )

    @property
    def configured(self) -> bool:
        return self._configured

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send_job_update(
        self,
        to_email: str,
        user_name: str,
        title: str,
        message: str,
        reference: str = "",
    ) -> bool:
        """Send a status update about one print job to its owner.

        Returns:
            True if the email was sent, False if not configured or on error.
        """
        subject = f"{title} - {reference}" if reference else title
        return await self._send(
            to_email=to_email,
            subject=subject,
            html_body=_render_update_html(user_name, title, message, reference),
            text_body=_render_update_text(user_name, title, message, reference),
        )

    async def send_staff_alert(
        self,
        to_email: str,
        title: str,
        message: str,
        reference: str = "",
    ) -> bool:
        """Alert print staff about a job that needs attention."""
        subject = f"[Print desk] {title}"
        if reference:
            subject += f" ({reference})"
        text_body = f"{title}\n\nJob: {reference or 'n/a'}\n\n{message}\n"
        return await self._send(
            to_email=to_email,
            subject=subject,
            html_body=f"<pre>{html.escape(text_body)}</pre>",
            text_body=text_body,
        )

    # ------------------------------------------------------------------
    # Internal send helper
    # ------------------------------------------------------------------

    async def _send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Build and send a MIME multipart email via aiosmtplib.

        Returns True on success, False on failure (never raises).
        """
        if not self._configured:
            logger.warning(
                "EMAIL (no SMTP configured) → %s | Subject: %s", to_email, subject
            )
            return False

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = self._from_email
            msg["To"] = to_email

            # Plain-text first, HTML second (preferred by clients)
            msg.attach(MIMEText(text_body, "plain", "utf-8"))
            msg.attach(MIMEText(html_body, "html", "utf-8"))

            await aiosmtplib.send(
                msg,
                hostname=self._smtp_host,
                port=self._smtp_port,
                username=self._from_email,
                password=self._app_password,
                start_tls=True,
            )

            logger.info("Email sent → %s | Subject: %s", to_email, subject)
            return True

        except (aiosmtplib.SMTPException, OSError) as exc:
            logger.error(
                "Failed to send email to %s: %s", to_email, exc, exc_info=True
            )
            return False


# ---------------------------------------------------------------------------
# Email template renderers
# ---------------------------------------------------------------------------


def _render_update_html(user_name: str, title: str, message: str, reference: str) -> str:
    ref_line = (
        f'<p style="color:#666;">Request ID: <strong>{html.escape(reference)}</strong></p>'
        if reference
        else ""
    )
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: Arial, sans-serif; color: #333; max-width: 600px; margin: auto; padding: 24px;">
  <h2 style="color: #333;">{html.escape(title)}</h2>
  <p>Hi {html.escape(user_name)},</p>
  <p style="color: #666; line-height: 1.6;">{html.escape(message)}</p>
  {ref_line}
  <hr style="border: none; border-top: 1px solid #eee; margin: 32px 0;">
  <p style="color:#999; font-size:0.8em;">
    This is an automated message from the print desk. Please do not reply.
  </p>
</body>
</html>"""


def _render_update_text(user_name: str, title: str, message: str, reference: str) -> str:
    ref_line = f"Request ID: {reference}\n\n" if reference else ""
    return f"Hi {user_name},\n\n{title}\n\n{message}\n\n{ref_line}-- Print desk"


# ---------------------------------------------------------------------------
# Singleton factory
# ---------------------------------------------------------------------------


def get_email_service() -> EmailService:
    """Return the module-level EmailService singleton.

    Reads SMTP configuration from the app settings on first call.
    """
    global _email_service
    if _email_service is None:
        from print_lifecycle.config import settings

        _email_service = EmailService(
            from_email=settings.smtp_from_email,
            app_password=settings.smtp_app_password,
        )
    return _email_service
