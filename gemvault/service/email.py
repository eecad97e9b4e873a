from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Iterable, Optional, Tuple

from gemvault.config import Settings
from gemvault.logging import get_logger, hash_identifier

logger = get_logger(__name__)

_STYLE = """
        body { font-family: Georgia, 'Times New Roman', serif; line-height: 1.6; color: #1d1b26; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .button { display: inline-block; background: #3b2f6b; color: white; padding: 12px 24px; border-radius: 6px; text-decoration: none; }
        .footer { margin-top: 40px; font-size: 12px; color: #6b6478; }
"""


def _render(
    brand: str,
    title: str,
    paragraphs: Iterable[str],
    link: Optional[Tuple[str, str]] = None,
) -> Tuple[str, str]:
    """Build (html, text) bodies sharing one layout."""
    paragraphs = list(paragraphs)
    html_parts = [f"<p>{escape(p)}</p>" for p in paragraphs]
    text_parts = list(paragraphs)
    footer_link = ""
    if link:
        label, url = link
        html_parts.insert(
            1,
            f'<p style="margin: 30px 0;"><a href="{escape(url)}" class="button">{escape(label)}</a></p>',
        )
        text_parts.insert(1, url)
        footer_link = f"<p>If the button doesn't work, copy and paste this URL: {escape(url)}</p>"
    html_body = f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}    </style>
</head>
<body>
    <div class="container">
        <h1>{escape(title)}</h1>
        {"".join(html_parts)}
        <div class="footer">
            <p>{escape(brand)}</p>
            {footer_link}
        </div>
    </div>
</body>
</html>
"""
    text_body = "\n\n".join([title, *text_parts, f"---\n{brand}"]) + "\n"
    return html_body, text_body


class EmailService:
    """Transactional email over SMTP.

    When no SMTP host is configured the service runs in dev mode and logs
    messages instead of sending them. Send failures are logged and reported as
    ``False``; callers treat dispatch as best-effort.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        smtp_timeout: int = 30,
        from_email: Optional[str] = None,
        from_name: str = "GemVault",
        base_url: Optional[str] = None,
        email_verification_ttl_hours: int = 72,
        password_reset_ttl_minutes: int = 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.smtp_timeout = smtp_timeout
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.email_verification_ttl_hours = email_verification_ttl_hours
        self.password_reset_ttl_minutes = password_reset_ttl_minutes

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            smtp_timeout=settings.smtp_timeout_seconds,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            email_verification_ttl_hours=settings.email_verification_ttl_hours,
            password_reset_ttl_minutes=settings.password_reset_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _deliver(self, to_email: str, msg: MIMEMultipart) -> None:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.smtp_timeout)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.smtp_timeout
            )
        with server:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, to_email, msg.as_string())

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        recipient_hash = hash_identifier(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient_hash=recipient_hash,
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        try:
            self._deliver(to_email, self._build_message(to_email, subject, html_body, text_body))
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                recipient_hash=recipient_hash,
                host=self.smtp_host,
                smtp_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", recipient_hash=recipient_hash)
            return False
        except smtplib.SMTPSenderRefused as exc:
            logger.error("email_sender_refused", sender=self.from_email, error=str(exc))
            return False
        except smtplib.SMTPConnectError as exc:
            logger.error(
                "email_connect_failed", host=self.smtp_host, port=self.smtp_port, error=str(exc)
            )
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                recipient_hash=recipient_hash,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except ssl.SSLError as exc:
            logger.error("email_ssl_error", host=self.smtp_host, error=str(exc))
            return False
        except OSError as exc:
            # socket timeouts and refused connections
            logger.error(
                "email_network_error",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", recipient_hash=recipient_hash, subject=subject)
        return True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.base_url}/v1/auth/verify-email/{token}"
        html_body, text_body = _render(
            self.from_name,
            "Verify your email",
            [
                "Welcome to the marketplace. Please confirm your email address:",
                f"This link will expire in {self.email_verification_ttl_hours} hours.",
                "If you did not create an account, you can ignore this message.",
            ],
            link=("Verify Email", verify_url),
        )
        return self._send_email(
            to_email, f"Verify your {self.from_name} email", html_body, text_body
        )

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = _render(
            self.from_name,
            "Reset your password",
            [
                "We received a request to reset your password. Use the link below to choose a new one:",
                f"This link will expire in {self.password_reset_ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            link=("Reset Password", reset_url),
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )

    def send_mfa_enabled(self, to_email: str) -> bool:
        html_body, text_body = _render(
            self.from_name,
            "Two-factor authentication enabled",
            [
                f"Two-factor authentication is now enabled on your {self.from_name} account.",
                "You will need a code from your authenticator app when signing in.",
                "If you didn't make this change, please contact support immediately.",
            ],
        )
        return self._send_email(
            to_email, "Two-factor authentication enabled", html_body, text_body
        )


__all__ = ["EmailService"]
