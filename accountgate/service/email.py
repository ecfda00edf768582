from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Iterable, Optional

from accountgate.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; background: #f4f5f7; padding: 12px 20px; border-radius: 8px; display: inline-block; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer">
            <p>{sender}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email over SMTP.

    When SMTP is not configured the message is logged instead of sent (dev mode)
    and the send counts as successful. Send methods never raise; they return
    False when delivery failed so callers can decide whether that is fatal.
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
        from_name: str = "AccountGate",
        base_url: Optional[str] = None,
        otp_ttl_seconds: int = 600,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"
        self.otp_ttl_seconds = otp_ttl_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(self, title: str, paragraphs: Iterable[str], code: Optional[str] = None) -> tuple[str, str]:
        paragraphs = list(paragraphs)
        html_parts = [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        text_parts = list(paragraphs)
        if code is not None:
            html_parts.insert(1, f'<p style="margin: 30px 0;"><span class="code">{html.escape(code)}</span></p>')
            text_parts.insert(1, code)
        html_body = _HTML_TEMPLATE.format(
            title=html.escape(title),
            body="\n        ".join(html_parts),
            sender=html.escape(self.from_name),
        )
        text_body = "\n\n".join([title, *text_parts, f"---\n{self.from_name}"]) + "\n"
        return html_body, text_body

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
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
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            # OSError covers refused connections and socket timeouts
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

    def send_registration_otp(self, to_email: str, code: str, *, name: Optional[str] = None) -> bool:
        minutes = max(1, self.otp_ttl_seconds // 60)
        greeting = f"Hi {name}," if name else "Hi,"
        html_body, text_body = self._render(
            "Verify your email",
            [
                f"{greeting} use the code below to finish creating your account.",
                f"The code expires in {minutes} minutes.",
                "If you didn't sign up, you can safely ignore this email.",
            ],
            code=code,
        )
        return self._send_email(to_email, f"Your {self.from_name} verification code", html_body, text_body)

    def send_password_reset_otp(self, to_email: str, code: str) -> bool:
        minutes = max(1, self.otp_ttl_seconds // 60)
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Enter this code to continue:",
                f"The code expires in {minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            code=code,
        )
        return self._send_email(to_email, f"Your {self.from_name} password reset code", html_body, text_body)

    def send_welcome(self, to_email: str, *, name: Optional[str] = None) -> bool:
        html_body, text_body = self._render(
            f"Welcome to {self.from_name}",
            [
                f"Hi {name}," if name else "Hi,",
                "Your email is verified and your account is ready.",
                f"Sign in at {self.base_url}",
            ],
        )
        return self._send_email(to_email, f"Welcome to {self.from_name}", html_body, text_body)

    def send_vendor_approval_status(
        self, to_email: str, *, approved: bool, business_name: Optional[str] = None
    ) -> bool:
        who = business_name or "your business"
        if approved:
            lines = [
                f"Good news: {who} has been approved.",
                "Your storefront is now visible to customers.",
            ]
            subject = "Your vendor account was approved"
        else:
            lines = [
                f"The approval for {who} has been withdrawn.",
                "Contact support if you think this is a mistake.",
            ]
            subject = "Your vendor account approval changed"
        html_body, text_body = self._render(subject, lines)
        return self._send_email(to_email, subject, html_body, text_body)
