from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from authcore.logging import get_logger
from authcore.storage.models import CodePurpose

logger = get_logger(__name__)

_CODE_SUBJECTS = {
    CodePurpose.EMAIL_VERIFICATION: ("Verify your email", "Use this code to verify your email address."),
    CodePurpose.MFA_CHALLENGE: ("Your sign-in code", "Use this code to finish signing in."),
    CodePurpose.MFA_ENROLLMENT: (
        "Confirm email two-factor authentication",
        "Use this code to turn on email codes for two-factor authentication.",
    ),
    CodePurpose.PASSWORD_RESET: ("Reset your password", "Use this code to choose a new password."),
}


def redact_email(email: str) -> str:
    """Redact an email address for logs and client hints (``jo***@example.com``)."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Delivers one-time codes and security notices.

    Supports SMTP with STARTTLS or implicit TLS. When no SMTP host is
    configured the message is only logged (dev mode).
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "AuthCore",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_status=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            # Connection refused, DNS failures and timeouts all land here
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def _render(self, title: str, lead: str, code: Optional[str], footer: str) -> tuple[str, str]:
        code_html = (
            f'<p style="font-size: 28px; letter-spacing: 6px; font-weight: 700;">{html.escape(code)}</p>'
            if code
            else ""
        )
        html_body = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
        <h1>{html.escape(title)}</h1>
        <p>{html.escape(lead)}</p>
        {code_html}
        <p>{html.escape(footer)}</p>
        <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{html.escape(self.from_name)}</p>
    </div>
</body>
</html>
"""
        parts = [title, "", lead, ""]
        if code:
            parts += [code, ""]
        parts += [footer, "", "---", self.from_name]
        return html_body, "\n".join(parts) + "\n"

    def send_code(self, to_email: str, purpose: CodePurpose, code: str, ttl_seconds: int) -> bool:
        """Deliver a one-time code for ``purpose``."""
        title, lead = _CODE_SUBJECTS[purpose]
        minutes = max(ttl_seconds // 60, 1)
        footer = (
            f"This code expires in {minutes} minutes. "
            "If you didn't request it, you can safely ignore this email."
        )
        html_body, text_body = self._render(title, lead, code, footer)
        return self._send_email(to_email, title, html_body, text_body)

    def send_security_notice(self, to_email: str, title: str, lead: str) -> bool:
        """Tell the owner about a security-relevant change on their account."""
        footer = "If you didn't make this change, reset your password immediately."
        html_body, text_body = self._render(title, lead, None, footer)
        return self._send_email(to_email, title, html_body, text_body)

    async def deliver_code(self, to_email: str, purpose: CodePurpose, code: str, ttl_seconds: int) -> bool:
        """Send off the event loop. Delivery failure is logged, never raised."""
        sent = await asyncio.to_thread(self.send_code, to_email, purpose, code, ttl_seconds)
        if not sent:
            logger.warning("code_delivery_failed", to=redact_email(to_email), purpose=purpose.value)
        return sent

    async def deliver_notice(self, to_email: str, title: str, lead: str) -> bool:
        return await asyncio.to_thread(self.send_security_notice, to_email, title, lead)


__all__ = ["EmailService", "redact_email"]
