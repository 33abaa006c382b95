from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import List, Optional

from procauth.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #1d4ed8; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {paragraphs}
        {action}
        <div class="footer">
            <p>{product}</p>
            {fallback}
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Delivery adapter for account emails.

    Only renders and sends; tokens are generated by the auth service. When SMTP
    is not configured the message is logged instead (dev mode).
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
        from_name: str = "ProcAuth",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(
        self,
        title: str,
        lines: List[str],
        *,
        action_url: Optional[str] = None,
        action_label: Optional[str] = None,
    ) -> tuple[str, str]:
        paragraphs = "\n        ".join(f"<p>{escape(line)}</p>" for line in lines)
        action = ""
        fallback = ""
        if action_url:
            action = (
                f'<p style="margin: 30px 0;"><a href="{escape(action_url)}" class="button">'
                f"{escape(action_label or title)}</a></p>"
            )
            fallback = (
                "<p>If the button doesn't work, copy and paste this URL: "
                f"{escape(action_url)}</p>"
            )
        html_body = _HTML_TEMPLATE.format(
            title=escape(title),
            paragraphs=paragraphs,
            action=action,
            product=escape(self.from_name),
            fallback=fallback,
        )
        text_parts = [title, "", *lines]
        if action_url:
            text_parts.extend(["", action_url])
        text_parts.extend(["", "---", self.from_name])
        return html_body, "\n".join(text_parts) + "\n"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP; returns False instead of raising on failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_password_reset(
        self, to_email: str, token: str, *, ttl_minutes: int = 60
    ) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Use the link below to choose a new one.",
                f"This link will expire in {ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            action_url=reset_url,
            action_label="Reset Password",
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )

    def send_email_verification(
        self, to_email: str, token: str, *, ttl_hours: int = 24
    ) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            [
                "Thanks for signing up! Please confirm your email address to activate your account.",
                f"This link will expire in {ttl_hours} hours.",
            ],
            action_url=verify_url,
            action_label="Verify Email",
        )
        return self._send_email(
            to_email, f"Verify your {self.from_name} email", html_body, text_body
        )

    def send_security_notice(self, to_email: str, subject: str, lines: List[str]) -> bool:
        """Send a plain security notification (lockout, new device, MFA change)."""
        html_body, text_body = self._render(
            subject,
            [*lines, "If this wasn't you, change your password and contact support."],
        )
        return self._send_email(to_email, subject, html_body, text_body)
