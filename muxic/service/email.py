from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from muxic.config import Settings
from muxic.logging import get_logger

logger = get_logger(__name__)

_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1b1b24; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; letter-spacing: 8px; font-weight: 700; }}
        .button {{ display: inline-block; background: #7c3aed; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #6b6b80; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer"><p>{sender}</p></div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail for the account lifecycle.

    Sends the verification code, welcome and password-reset messages over
    SMTP (STARTTLS or implicit TLS). When no SMTP host is configured the
    message is logged instead of sent, which is the dev and test behavior.
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
        from_name: str = "Muxic Inc",
        client_url: str = "http://localhost:5173",
        otp_ttl_minutes: int = 10,
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.client_url = client_url.rstrip("/")
        self.otp_ttl_minutes = otp_ttl_minutes
        self.reset_ttl_minutes = reset_ttl_minutes

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            client_url=settings.client_url,
            otp_ttl_minutes=settings.otp_ttl_minutes,
            reset_ttl_minutes=settings.reset_token_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(self, title: str, body: str) -> str:
        return _LAYOUT.format(
            title=html.escape(title), body=body, sender=html.escape(self.from_name)
        )

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message; returns False on any SMTP failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to_email),
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
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                smtp_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", recipient=self._redact_email(to_email))
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except (ssl.SSLError, OSError) as exc:
            logger.error(
                "email_connect_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(exc),
            )
            return False

        logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
        return True

    def send_verification_otp(self, to_email: str, otp_code: str, username: str) -> bool:
        subject = "Verify your Muxic account"
        name = html.escape(username)
        body = f"""
        <p>Hi {name},</p>
        <p>Use this code to verify your email address:</p>
        <p class="code">{html.escape(otp_code)}</p>
        <p>The code expires in {self.otp_ttl_minutes} minutes.</p>
        <p>If you didn't create a Muxic account, you can ignore this email.</p>
        """
        text_body = (
            f"Hi {username},\n\n"
            f"Your Muxic verification code is {otp_code}.\n"
            f"It expires in {self.otp_ttl_minutes} minutes.\n\n"
            "If you didn't create a Muxic account, you can ignore this email.\n"
        )
        return self._send_email(
            to_email, subject, self._render("Verify your email", body), text_body
        )

    def send_welcome(self, to_email: str, username: str) -> bool:
        subject = "Welcome to Muxic"
        rooms_url = f"{self.client_url}/rooms"
        body = f"""
        <p>Hi {html.escape(username)}, your account is ready.</p>
        <p>Create a room, invite friends and listen together.</p>
        <p style="margin: 30px 0;"><a href="{html.escape(rooms_url)}" class="button">Open Muxic</a></p>
        """
        text_body = (
            f"Hi {username}, your account is ready.\n\n"
            f"Create a room and listen together: {rooms_url}\n"
        )
        return self._send_email(
            to_email, subject, self._render("Welcome to Muxic", body), text_body
        )

    def reset_link(self, token: str) -> str:
        return f"{self.client_url}/reset-password?token={token}"

    def send_password_reset(self, to_email: str, token: str) -> bool:
        subject = "Reset your Muxic password"
        reset_url = self.reset_link(token)
        body = f"""
        <p>We received a request to reset your password.</p>
        <p style="margin: 30px 0;"><a href="{html.escape(reset_url)}" class="button">Reset Password</a></p>
        <p>This link expires in {self.reset_ttl_minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <p>If the button doesn't work, paste this URL into your browser: {html.escape(reset_url)}</p>
        """
        text_body = (
            "We received a request to reset your Muxic password.\n\n"
            f"{reset_url}\n\n"
            f"This link expires in {self.reset_ttl_minutes} minutes.\n"
        )
        return self._send_email(
            to_email, subject, self._render("Reset your password", body), text_body
        )
