from __future__ import annotations

import html
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from warden.config import Settings
from warden.logging import get_logger, redact_email

logger = get_logger(__name__)


class EmailSender(Protocol):
    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        ...


class SmsSender(Protocol):
    def send(self, to_number: str, body: str) -> bool:
        ...


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html_body: str
    text_body: str


class EmailService:
    """SMTP transport for transactional mail.

    Port 587 style STARTTLS is used when ``smtp_use_tls`` is set, implicit TLS
    otherwise. Without a host and sender address, or in test mode, messages
    are only logged.
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
        from_name: str = "Warden",
        log_only: bool = False,
    ) -> None:
        self.host = smtp_host
        self.port = smtp_port
        self.credentials = (smtp_user, smtp_password) if smtp_user and smtp_password else None
        self.starttls = smtp_use_tls
        self.sender = from_email or smtp_user
        self.sender_name = from_name
        self.log_only = log_only

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
            log_only=settings.test_mode,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.sender)

    def _compose(self, to_email: str, subject: str, html_body: str, text_body: Optional[str]) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.sender_name} <{self.sender}>"
        message["To"] = to_email
        # plain part first so clients that prefer the last alternative render HTML
        for body, subtype in ((text_body, "plain"), (html_body, "html")):
            if body:
                message.attach(MIMEText(body, subtype))
        return message

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.starttls:
            server = smtplib.SMTP(self.host, self.port, timeout=30)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=30)
        if self.credentials:
            server.login(*self.credentials)
        return server

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message; False when delivery failed.

        Bodies carry one-time links and codes and are never logged.
        """
        recipient = redact_email(to_email)
        if self.log_only or not self.is_configured:
            logger.info("email_dev_mode", to=recipient, subject=subject)
            return True

        message = self._compose(to_email, subject, html_body, text_body)
        try:
            with self._connect() as server:
                server.sendmail(self.sender, to_email, message.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", to=recipient, host=self.host, smtp_code=exc.smtp_code)
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", to=recipient, error=str(exc))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_delivery_failed",
                to=recipient,
                host=self.host,
                port=self.port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to=recipient, subject=subject)
        return True


class LoggingSmsSender:
    """Default SMS transport: records a redacted notice instead of sending."""

    def send(self, to_number: str, body: str) -> bool:
        tail = to_number[-2:] if len(to_number) >= 2 else ""
        logger.info("sms_dev_mode", to=f"***{tail}", length=len(body))
        return True


_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ margin: 0; font-family: system-ui, sans-serif; line-height: 1.5; color: #1f2933; }}
        .container {{ max-width: 560px; margin: 0 auto; padding: 32px 16px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .footer {{ margin-top: 32px; border-top: 1px solid #e4e7eb; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
{body}
        <div class="footer">
            <p>{brand}</p>
{footer}
        </div>
    </div>
</body>
</html>
"""


def _render(
    brand: str,
    title: str,
    paragraphs: list[str],
    *,
    link: Optional[str] = None,
    link_label: Optional[str] = None,
    code: Optional[str] = None,
) -> RenderedEmail:
    blocks = [f"        <p>{html.escape(p)}</p>" for p in paragraphs[:1]]
    text_lines = [title, "", paragraphs[0] if paragraphs else ""]
    if code:
        blocks.append(f'        <p class="code">{html.escape(code)}</p>')
        text_lines += ["", code]
    footer = ""
    if link:
        safe_link = html.escape(link, quote=True)
        blocks.append(
            f'        <p style="margin: 30px 0;"><a href="{safe_link}" class="button">'
            f"{html.escape(link_label or 'Open')}</a></p>"
        )
        footer = f"            <p>If the button doesn't work, copy and paste this URL: {safe_link}</p>"
        text_lines += ["", link]
    blocks += [f"        <p>{html.escape(p)}</p>" for p in paragraphs[1:]]
    text_lines += [""] + paragraphs[1:] + ["", "---", brand]
    body = _LAYOUT.format(title=html.escape(title), body="\n".join(blocks), brand=html.escape(brand), footer=footer)
    return RenderedEmail(subject=title, html_body=body, text_body="\n".join(text_lines) + "\n")


def render_invitation(
    brand: str, organization_name: str, role: str, url: str, expires_minutes: int
) -> RenderedEmail:
    return _render(
        brand,
        f"You're invited to join {organization_name}",
        [
            f"You have been invited to join {organization_name} as {role}.",
            f"This invitation expires in {expires_minutes} minutes.",
            "If you weren't expecting this invitation, you can ignore this email.",
        ],
        link=url,
        link_label="Accept Invitation",
    )


def render_password_reset(brand: str, url: str, expires_minutes: int) -> RenderedEmail:
    return _render(
        brand,
        f"Reset your {brand} password",
        [
            "We received a request to reset your password. Use the link below to choose a new one.",
            f"This link will expire in {expires_minutes} minutes.",
            "If you didn't request this, you can safely ignore this email.",
        ],
        link=url,
        link_label="Reset Password",
    )


def render_password_changed(brand: str) -> RenderedEmail:
    return _render(
        brand,
        "Your password was changed",
        [
            f"The password for your {brand} account was just changed and all sessions were signed out.",
            "If you didn't make this change, reset your password and contact support immediately.",
        ],
    )


def render_welcome(brand: str, display_name: Optional[str] = None) -> RenderedEmail:
    greeting = f"Welcome, {display_name}!" if display_name else "Welcome!"
    return _render(
        brand,
        f"Welcome to {brand}",
        [greeting, "Your account is ready."],
    )


def render_mfa_code(brand: str, code: str, expires_minutes: int) -> RenderedEmail:
    return _render(
        brand,
        f"Your {brand} verification code",
        [
            "Use this code to finish signing in:",
            f"The code expires in {expires_minutes} minutes. Never share it with anyone.",
        ],
        code=code,
    )


def render_mfa_enabled(brand: str) -> RenderedEmail:
    return _render(
        brand,
        "Two-factor authentication enabled",
        [
            f"Two-factor authentication has been enabled on your {brand} account.",
            "If you didn't make this change, please contact support immediately.",
        ],
    )


__all__ = [
    "EmailSender",
    "EmailService",
    "LoggingSmsSender",
    "RenderedEmail",
    "SmsSender",
    "render_invitation",
    "render_mfa_code",
    "render_mfa_enabled",
    "render_password_changed",
    "render_password_reset",
    "render_welcome",
]
