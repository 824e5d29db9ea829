"""Outbound transactional email."""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import quote

from clinic_auth.config import settings

logger = logging.getLogger(__name__)


class EmailService:
    """SMTP sender with a log-only fallback when SMTP is not configured.

    Sending never raises: failures are logged and reported as False so a
    mail outage cannot fail the request that triggered it.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: Optional[int] = None,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: Optional[bool] = None,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
        frontend_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = settings.SMTP_HOST if smtp_host is None else smtp_host
        self.smtp_port = settings.SMTP_PORT if smtp_port is None else smtp_port
        self.smtp_user = settings.SMTP_USER if smtp_user is None else smtp_user
        self.smtp_password = settings.SMTP_PASSWORD if smtp_password is None else smtp_password
        self.smtp_use_tls = settings.SMTP_USE_TLS if smtp_use_tls is None else smtp_use_tls
        self.from_email = (from_email or settings.MAIL_FROM) or self.smtp_user
        self.from_name = settings.MAIL_FROM_NAME if from_name is None else from_name
        self.frontend_url = (settings.FRONTEND_URL if frontend_url is None else frontend_url).rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            logger.info(
                "SMTP not configured; email to %s not sent. Subject: %s",
                self._redact_email(to_email),
                subject,
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
        timeout = settings.SMTP_TIMEOUT_SECONDS
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("SMTP authentication failed for %s: %s", self.smtp_user, exc)
            return False
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send email to %s: %s", self._redact_email(to_email), exc)
            return False

        logger.info("Email sent to %s: %s", self._redact_email(to_email), subject)
        return True

    def reset_link(self, token: str) -> str:
        return f"{self.frontend_url}/reset-password?token={quote(token)}"

    def send_password_reset_email(
        self, to_email: str, full_name: Optional[str], token: str
    ) -> bool:
        link = self.reset_link(token)
        minutes = settings.PASSWORD_RESET_EXPIRE_SECONDS // 60
        greeting = f"Hello {full_name}," if full_name else "Hello,"
        subject = "Reset your password"

        text_body = (
            f"{greeting}\n\n"
            "We received a request to reset the password for your account.\n"
            f"Open the link below to choose a new one. It expires in {minutes} minutes.\n\n"
            f"{link}\n\n"
            "If you did not request this, you can ignore this email.\n"
        )
        html_body = (
            f"<p>{greeting}</p>"
            "<p>We received a request to reset the password for your account.</p>"
            f'<p><a href="{link}">Reset password</a></p>'
            f"<p>This link expires in {minutes} minutes. "
            "If you did not request this, you can ignore this email.</p>"
        )
        return self._send_email(to_email, subject, html_body, text_body)


email_service = EmailService()
