from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional, Protocol

from authflow.logging import get_logger, redact_email
from authflow.service.i18n import get_translator

logger = get_logger(__name__)

# template name -> catalog key prefix
TEMPLATES: Dict[str, str] = {
    "signup-otp": "email.signupOtp",
    "login-otp": "email.loginOtp",
    "magic-link": "email.magicLink",
    "unlock-temp-password": "email.unlock",
}


class EmailDeliveryError(Exception):
    """SMTP delivery failed; raised so the caller's retry loop can react."""


class Notifier(Protocol):
    async def send_templated(
        self, to: str, template_name: str, variables: Dict[str, Any], locale: str
    ) -> None: ...


class EmailService:
    """Email service for sending transactional emails.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Catalog-backed templates in every supported language
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "Authflow",
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
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def render(
        self, template_name: str, variables: Dict[str, Any], locale: str
    ) -> tuple[str, str, str]:
        """Return ``(subject, html_body, text_body)`` for a registered template."""
        prefix = TEMPLATES.get(template_name)
        if prefix is None:
            raise ValueError(f"unknown email template: {template_name}")
        translator = get_translator(locale)
        subject = translator.t(f"{prefix}.subject", **variables)
        text_body = translator.t(f"{prefix}.body", **variables)
        paragraphs = "".join(
            f"<p>{html.escape(chunk).replace(chr(10), '<br>')}</p>"
            for chunk in text_body.split("\n\n")
        )
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{html.escape(subject)}</h1>
        {paragraphs}
        <div class="footer">
            <p>{html.escape(self.from_name)}</p>
        </div>
    </div>
</body>
</html>
"""
        return subject, html_body, text_body

    async def send_templated(
        self, to: str, template_name: str, variables: Dict[str, Any], locale: str
    ) -> None:
        subject, html_body, text_body = self.render(template_name, variables, locale)
        # smtplib blocks; keep it off the event loop
        sent = await asyncio.to_thread(self._send_email, to, subject, html_body, text_body)
        if not sent:
            raise EmailDeliveryError(f"failed to deliver {template_name}")

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
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
                msg.attach(MIMEText(text_body, "plain", "utf-8"))
            msg.attach(MIMEText(html_body, "html", "utf-8"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=redact_email(to_email),
            )

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
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            logger.error(
                "email_connection_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
