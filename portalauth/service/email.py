from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from portalauth.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Georgia, 'Times New Roman', serif; line-height: 1.6; color: #1c2430; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #1f3a5f; color: white; padding: 12px 24px; border-radius: 4px; text-decoration: none; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <p>{intro}</p>
        {action}
        <p>{note}</p>
        <div class="footer"><p>{firm}</p>{fallback}</div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail for account verification, resets and security notices.

    When SMTP is not configured the message is logged instead of sent, which
    is what local development and the test suite rely on.
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
        from_name: str = "Client Portal",
        base_url: Optional[str] = None,
        reset_ttl_minutes: int = 60,
        verification_ttl_hours: int = 24,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:5173").rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verification_ttl_hours = verification_ttl_hours

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(
        self,
        *,
        title: str,
        intro: str,
        note: str,
        link: Optional[str] = None,
        link_label: str = "",
    ) -> tuple[str, str]:
        action = ""
        fallback = ""
        if link:
            action = f'<p style="margin: 30px 0;"><a href="{escape(link)}" class="button">{escape(link_label)}</a></p>'
            fallback = f"<p>If the button doesn't work, paste this URL into your browser: {escape(link)}</p>"
        html_body = _HTML_TEMPLATE.format(
            title=escape(title),
            intro=escape(intro),
            action=action,
            note=escape(note),
            firm=escape(self.from_name),
            fallback=fallback,
        )
        text_parts = [title, "", intro, ""]
        if link:
            text_parts += [link, ""]
        text_parts += [note, "", "---", self.from_name]
        return html_body, "\n".join(text_parts)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP; returns True on success."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
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
                error_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_email_verification(self, to_email: str, username: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            title="Confirm your email address",
            intro=f"Welcome to the client portal, {username}. Confirm your email address to activate your account.",
            note=f"This link expires in {self.verification_ttl_hours} hours.",
            link=verify_url,
            link_label="Verify email",
        )
        return self._send_email(to_email, "Verify your client portal account", html_body, text_body)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            title="Reset your password",
            intro="We received a request to reset the password on your client portal account.",
            note=(
                f"This link expires in {self.reset_ttl_minutes} minutes. "
                "If you didn't request a reset, you can ignore this message."
            ),
            link=reset_url,
            link_label="Choose a new password",
        )
        return self._send_email(to_email, "Reset your client portal password", html_body, text_body)

    def send_two_factor_notice(self, to_email: str, *, enabled: bool) -> bool:
        """Security notice sent whenever two-factor authentication is toggled."""
        state = "enabled" if enabled else "disabled"
        html_body, text_body = self._render(
            title=f"Two-factor authentication {state}",
            intro=f"Two-factor authentication was just {state} on your client portal account.",
            note="If you did not make this change, contact the firm immediately.",
        )
        return self._send_email(
            to_email, f"Two-factor authentication {state}", html_body, text_body
        )
