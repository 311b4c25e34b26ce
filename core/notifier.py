"""
core/notifier.py -- Out-of-band delivery of verification codes.

The AuthService only needs one call:
    deliver_verification_code(email, code, display_name) -> DeliveryOutcome

Delivery is best-effort. A failed or skipped delivery never fails a login --
the service logs the outcome and moves on, so tester/debug codes keep working
when no mail transport is configured.

Implementations:
  LogNotifier  -- development default. Logs a redacted address, never the code.
  SMTPNotifier -- stdlib smtplib with STARTTLS or implicit TLS. Addresses whose
                  domain matches EMAIL_EXCLUDE_DOMAINS (exact or "prefix*")
                  are skipped, which keeps placeholder accounts from bouncing.

Layer rule: core/ is the kernel. No imports from auth/, rbac/, or cache/.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from core.config import Settings

logger = logging.getLogger("codegate.notifier")


@dataclass
class DeliveryOutcome:
    delivered: bool
    reason: str = "sent"


class Notifier(Protocol):
    def deliver_verification_code(self, email: str, code: str, display_name: str) -> DeliveryOutcome: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def is_excluded_domain(email: str, patterns: list[str]) -> bool:
    if "@" not in email:
        return True
    domain = email.rsplit("@", 1)[1].lower()
    for pattern in patterns:
        pattern = pattern.lower()
        if pattern.endswith("*"):
            if domain.startswith(pattern[:-1]):
                return True
        elif domain == pattern:
            return True
    return False


def _render_code_email(code: str, display_name: str, expires_in: str) -> tuple[str, str]:
    text = (
        f"Hello {display_name},\n\n"
        f"Your verification code is: {code}\n\n"
        f"This code expires in {expires_in}. "
        "If you did not try to sign in, you can ignore this email.\n"
    )
    html = (
        "<html><body>"
        f"<p>Hello {display_name},</p>"
        f"<p>Your verification code is: <strong>{code}</strong></p>"
        f"<p>This code expires in {expires_in}. "
        "If you did not try to sign in, you can ignore this email.</p>"
        "</body></html>"
    )
    return text, html


class LogNotifier:
    def deliver_verification_code(self, email: str, code: str, display_name: str) -> DeliveryOutcome:
        logger.info("Verification code issued for %s (log-only delivery)", redact_email(email))
        return DeliveryOutcome(delivered=False, reason="log_only")


class SMTPNotifier:
    def __init__(
        self,
        *,
        smtp_host: str,
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "",
        exclude_domains: list[str] | None = None,
        expires_in: str = "15 minutes",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.exclude_domains = list(exclude_domains or [])
        self.expires_in = expires_in

    def deliver_verification_code(self, email: str, code: str, display_name: str) -> DeliveryOutcome:
        if is_excluded_domain(email, self.exclude_domains):
            logger.info("Skipping verification email to excluded domain: %s", redact_email(email))
            return DeliveryOutcome(delivered=False, reason="excluded_domain")

        text, html = _render_code_email(code, display_name or "User", self.expires_in)
        msg = MIMEMultipart("alternative")
        msg["Subject"] = "Your Verification Code"
        msg["From"] = self.from_email
        msg["To"] = email
        msg.attach(MIMEText(text, "plain"))
        msg.attach(MIMEText(html, "html"))

        # SMTPException and OSError propagate; AuthService.login logs and swallows them.
        if self.smtp_use_tls and self.smtp_port != 465:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.starttls(context=ssl.create_default_context())
                self._send(server, email, msg)
        elif self.smtp_port == 465:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, timeout=30, context=ssl.create_default_context()
            ) as server:
                self._send(server, email, msg)
        else:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                self._send(server, email, msg)
        logger.info("Verification email sent to %s", redact_email(email))
        return DeliveryOutcome(delivered=True)

    def _send(self, server: smtplib.SMTP, email: str, msg: MIMEMultipart) -> None:
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
        server.sendmail(self.from_email, [email], msg.as_string())


def build_notifier(settings: Settings) -> Notifier:
    """Return an SMTPNotifier when SMTP_HOST is configured, else a LogNotifier."""
    if settings.smtp_host:
        return SMTPNotifier(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from,
            exclude_domains=settings.email_exclude_domains,
            expires_in=f"{settings.code_expire_seconds // 60} minutes",
        )
    return LogNotifier()
