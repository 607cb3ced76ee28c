from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from otpgate.logging import get_logger, redact_email

logger = get_logger(__name__)


class EmailService:
    """Outbound mail for one-time codes.

    Sends over SMTP with STARTTLS or implicit SSL. When no SMTP host is
    configured the message is logged instead of sent (dev mode); the body
    preview carries the code so a local login can still be completed.
    """

    def __init__(
        self,
        *,
        app_name: str,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
    ) -> None:
        self.app_name = app_name
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name or app_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str] = None,
    ) -> bool:
        """Send a message via SMTP. Returns True if it was handed to the server."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else (html_body or "")[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        if html_body:
            msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=redact_email(to_email),
        )
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
                to=redact_email(to_email),
                host=self.smtp_host,
                smtp_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                refused=len(e.recipients),
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
            # connection refused, timeouts and TLS failures
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_otp(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        """Send a one-time code."""
        subject = f"Your OTP for {self.app_name}"
        text_body = f"Your OTP is {code}. It will expire in {ttl_minutes} minutes."
        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <p>Your OTP is <strong style="font-size: 20px; letter-spacing: 4px;">{code}</strong>.</p>
    <p>It will expire in {ttl_minutes} minutes.</p>
    <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{self.app_name}</p>
</body>
</html>
"""
        return self._send_email(to_email, subject, text_body, html_body)
