from __future__ import annotations

import html
import re
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Callable, Optional
from urllib.parse import quote

from tokengate.logging import get_logger
from tokengate.service.errors import BadRequestError

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[\w\-.]+@([\w-]+\.)+[\w-]{2,4}$")


def is_valid_email(value: Optional[str]) -> bool:
    return bool(value) and bool(_EMAIL_RE.match(value.strip()))


def normalize_email(value: Optional[str]) -> str:
    """Trim and lower-case an address, rejecting malformed ones."""
    if not isinstance(value, str) or not is_valid_email(value):
        raise BadRequestError("invalid email address", detail={"field": "email"})
    return value.strip().lower()


@dataclass(frozen=True)
class MailConfig:
    host: Optional[str]
    port: int
    username: Optional[str]
    password: Optional[str]
    use_tls: bool
    from_email: Optional[str]
    from_name: str

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.from_email)


class EmailService:
    """Outbound mail over SMTP with STARTTLS or implicit TLS.

    The transport configuration is looked up on every send so that changes
    saved through the email settings endpoints apply immediately. When no
    host is configured the message is logged instead of sent (dev mode).
    """

    def __init__(
        self,
        config_source: Callable[[], MailConfig],
        *,
        base_url: Optional[str] = None,
        timeout: float = 30,
    ) -> None:
        self._config_source = config_source
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.timeout = timeout

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        *,
        to_name: Optional[str] = None,
    ) -> bool:
        """Send an email; returns True if sent (or logged in dev mode)."""
        config = self._config_source()
        if not is_valid_email(to_email):
            logger.error("email_recipient_invalid", to=self._redact_email(to_email))
            return False

        if not config.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        if not is_valid_email(config.from_email):
            logger.error("email_sender_invalid", sender=config.from_email)
            return False

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = formataddr((config.from_name, config.from_email))
            msg["To"] = formataddr((to_name, to_email)) if to_name else to_email

            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=config.host,
                port=config.port,
                use_tls=config.use_tls,
                to=self._redact_email(to_email),
            )

            if config.use_tls:
                with smtplib.SMTP(config.host, config.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if config.username and config.password:
                        server.login(config.username, config.password)
                    server.sendmail(config.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    config.host, config.port, context=context, timeout=self.timeout
                ) as server:
                    if config.username and config.password:
                        server.login(config.username, config.password)
                    server.sendmail(config.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=config.host,
                user=config.username,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
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
                host=config.host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=config.host,
                port=config.port,
                error=str(e),
            )
            return False
        except OSError as e:
            # Connection refused, DNS failure and timeouts
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=config.host,
                port=config.port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_login_confirmation(
        self,
        to_email: str,
        token: str,
        *,
        device: str,
        ip_address: str,
        ttl_minutes: int,
    ) -> bool:
        """Mail the sign-in confirmation link for a pending login token."""
        confirm_url = f"{self.base_url}/login/confirm?token={quote(token, safe='')}"
        device_text = device or "an unknown device"
        ip_text = ip_address or "an unknown address"

        subject = "Confirm your sign-in"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #10a37f; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Confirm your sign-in</h1>
        <p>A sign-in was requested from {html.escape(device_text)} at {html.escape(ip_text)}.</p>
        <p style="margin: 30px 0;">
            <a href="{html.escape(confirm_url)}" class="button">Review sign-in</a>
        </p>
        <p>This link will expire in {ttl_minutes} minutes.</p>
        <p>If you didn't request this, deny the request from the link above.</p>
        <div class="footer">
            <p>If the button doesn't work, copy and paste this URL: {html.escape(confirm_url)}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""Confirm your sign-in

A sign-in was requested from {device_text} at {ip_text}.
Review it at the link below:

{confirm_url}

This link will expire in {ttl_minutes} minutes.
"""

        return self.send(to_email, subject, html_body, text_body)
