"""
Email Service - Access Code Delivery
====================================
Renders the access-code email and hands it to a transport.

Features:
- SendGrid (API) or SMTP (Gmail / Brevo relay) transport, picked by EMAIL_SERVICE
- Jinja2 HTML template listing purchased services plus the free tier
- Bounded exponential backoff, per-attempt timeout
- Authentication failures stop retrying immediately

pip install sendgrid jinja2 structlog
"""

import asyncio
import os
import smtplib
import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Awaitable, Callable, List, Optional

import structlog
from jinja2 import DictLoader, Environment, select_autoescape
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from schemas.ledger_models import (
    ACCESS_CODE_VALIDITY,
    FREE_SERVICES,
    SERVICE_PRICE,
    service_name,
)

logger = structlog.get_logger().bind(component="email_service")

ACCESS_CODE_SUBJECT = "Your Tlangau Server Access Code"


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class EmailConfig:
    provider: str = "gmail"
    user: str = ""
    password: str = ""
    from_address: str = ""
    sendgrid_api_key: str = ""
    smtp_host: str = ""
    smtp_port: int = 0
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0

    @classmethod
    def from_env(cls) -> "EmailConfig":
        provider = os.getenv("EMAIL_SERVICE", "gmail").strip().lower()
        user = _printable(os.getenv("EMAIL_USER", ""))
        if provider == "brevo":
            default_host, default_port = "smtp-relay.brevo.com", "2525"
        else:
            default_host, default_port = "smtp.gmail.com", "465"
        return cls(
            provider=provider,
            user=user,
            password=_printable(os.getenv("EMAIL_PASS", "")),
            from_address=(
                os.getenv("SENDGRID_FROM_EMAIL")
                if provider == "sendgrid" and os.getenv("SENDGRID_FROM_EMAIL")
                else os.getenv("EMAIL_FROM", user or "noreply@tlangau.com")
            ).strip(),
            sendgrid_api_key=os.getenv("SENDGRID_API_KEY", ""),
            smtp_host=os.getenv("EMAIL_HOST", default_host),
            smtp_port=int(os.getenv("EMAIL_PORT", default_port)),
            timeout_seconds=float(os.getenv("EMAIL_TIMEOUT", "30")),
            max_attempts=int(os.getenv("EMAIL_MAX_ATTEMPTS", "3")),
        )

    @property
    def configured(self) -> bool:
        if self.provider == "sendgrid":
            return bool(self.sendgrid_api_key)
        return bool(self.user and self.password)


def _printable(value: str) -> str:
    # app passwords pasted from a browser often carry non-breaking spaces
    return "".join(ch for ch in value if 0x20 <= ord(ch) <= 0x7E).strip()


# =============================================================================
# ERRORS
# =============================================================================

class EmailDeliveryError(Exception):
    pass


class EmailAuthError(EmailDeliveryError):
    """Bad credentials. Retrying cannot help."""


# =============================================================================
# TRANSPORTS
# =============================================================================

class IEmailTransport(ABC):
    name: str = "transport"

    @abstractmethod
    async def send(self, to: str, subject: str, html: str) -> Optional[str]:
        """Deliver one message. Returns the provider message id when known."""


class SendGridTransport(IEmailTransport):
    name = "sendgrid"

    def __init__(self, config: EmailConfig):
        self.config = config
        self._client = SendGridAPIClient(config.sendgrid_api_key)

    async def send(self, to: str, subject: str, html: str) -> Optional[str]:
        message = Mail(
            from_email=self.config.from_address,
            to_emails=to,
            subject=subject,
            html_content=html,
        )
        try:
            response = await asyncio.to_thread(self._client.send, message)
        except Exception as e:
            status = getattr(e, "status_code", None)
            if status in (401, 403):
                raise EmailAuthError(f"SendGrid rejected credentials ({status})") from e
            raise EmailDeliveryError(f"SendGrid send failed: {e}") from e

        if response.status_code >= 400:
            raise EmailDeliveryError(f"SendGrid returned {response.status_code}")
        return response.headers.get("X-Message-Id")


class SmtpTransport(IEmailTransport):
    """Gmail over implicit TLS (465) or a STARTTLS relay such as Brevo."""

    name = "smtp"

    def __init__(self, config: EmailConfig):
        self.config = config

    def _send_blocking(self, message: EmailMessage) -> None:
        context = ssl.create_default_context()
        timeout = self.config.timeout_seconds
        if self.config.smtp_port == 465:
            server = smtplib.SMTP_SSL(self.config.smtp_host, self.config.smtp_port, timeout=timeout, context=context)
        else:
            server = smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=timeout)
        with server:
            if self.config.smtp_port != 465:
                server.starttls(context=context)
            server.login(self.config.user, self.config.password)
            server.send_message(message)

    async def send(self, to: str, subject: str, html: str) -> Optional[str]:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.config.from_address
        message["To"] = to
        message.set_content("Your Tlangau access code is in the HTML part of this email.")
        message.add_alternative(html, subtype="html")

        try:
            await asyncio.to_thread(self._send_blocking, message)
        except smtplib.SMTPAuthenticationError as e:
            raise EmailAuthError("SMTP authentication failed, check EMAIL_USER/EMAIL_PASS") from e
        except (smtplib.SMTPException, OSError) as e:
            raise EmailDeliveryError(f"SMTP send failed: {e}") from e
        return None


def build_transport(config: EmailConfig) -> IEmailTransport:
    if config.provider == "sendgrid":
        return SendGridTransport(config)
    return SmtpTransport(config)


# =============================================================================
# TEMPLATES
# =============================================================================

ACCESS_CODE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <style>
    body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
    .container { max-width: 600px; margin: 0 auto; padding: 20px; }
    .header { background: #5a67d8; color: white; padding: 28px; text-align: center; border-radius: 10px 10px 0 0; }
    .content { background: #f9f9f9; padding: 28px; border-radius: 0 0 10px 10px; }
    .code-box { background: #fff; border: 2px dashed #5a67d8; padding: 20px; text-align: center; margin: 20px 0; border-radius: 8px; }
    .code { font-size: 24px; font-weight: bold; color: #5a67d8; letter-spacing: 3px; font-family: 'Courier New', monospace; }
    .services { background: #fff; padding: 14px 20px; margin: 14px 0; border-radius: 8px; border-left: 4px solid #48bb78; }
    .free { background: #48bb78; color: white; padding: 2px 8px; border-radius: 10px; font-size: 11px; font-weight: bold; }
    .footer { text-align: center; margin-top: 20px; color: #666; font-size: 12px; }
  </style>
</head>
<body>
  <div class="container">
    <div class="header"><h1>Tlangau Server Access</h1></div>
    <div class="content">
      <p>Thank you for your purchase of <strong>&#8377;{{ total_amount }}</strong>.</p>
      <p>Your server access code is ready.</p>
      <div class="code-box">
        <p style="margin: 0 0 10px 0; color: #666;">Your Access Code:</p>
        <div class="code">{{ code }}</div>
      </div>
      <div class="services">
        <p style="margin: 0 0 8px 0; font-weight: bold;">Your Purchased Services:</p>
        <ul style="list-style: none; padding: 0; margin: 0;">
          {% for name in service_names %}<li style="padding: 4px 0;">{{ name }}</li>{% endfor %}
          {% for name in free_names %}<li style="padding: 4px 0;">{{ name }} <span class="free">FREE</span></li>{% endfor %}
        </ul>
      </div>
      <p><strong>Important:</strong></p>
      <ul>
        <li>Each account can redeem one code, once</li>
        <li>Enter the code in the "Server access code" field when signing in</li>
        <li>Sign in with the email address you paid with</li>
        <li>The code is valid for {{ validity_days }} days from purchase</li>
        <li>Only the services listed above are unlocked</li>
      </ul>
    </div>
    <div class="footer"><p>&copy; {{ year }} Tlangau. All rights reserved.</p></div>
  </div>
</body>
</html>
"""

templates = Environment(
    loader=DictLoader({"access_code.html": ACCESS_CODE_TEMPLATE}),
    autoescape=select_autoescape(["html"]),
)


def render_access_code_email(code: str, services: Optional[List[str]]) -> str:
    services = list(services or [])
    return templates.get_template("access_code.html").render(
        code=code,
        service_names=[service_name(s) for s in services] or ["All Services"],
        free_names=list(FREE_SERVICES.values()),
        total_amount=(len(services) or 1) * SERVICE_PRICE,
        validity_days=ACCESS_CODE_VALIDITY.days,
        year=datetime.now().year,
    )


# =============================================================================
# SERVICE
# =============================================================================

class EmailService:
    """
    Access-code mailer with retry.

    Example:
        mailer = EmailService()
        delivered = await mailer.send_access_code("buyer@example.com", "AB12CD34EF56", ["ring"])
    """

    def __init__(
        self,
        config: Optional[EmailConfig] = None,
        transport: Optional[IEmailTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or EmailConfig.from_env()
        self.transport = transport or (build_transport(self.config) if self.config.configured else None)
        self._sleep = sleep

    @property
    def configured(self) -> bool:
        return self.transport is not None

    async def send_access_code(self, email: str, code: str, services: Optional[List[str]]) -> bool:
        """Deliver the code. Returns False once retries are exhausted or auth fails."""
        if not self.configured:
            logger.error("email_not_configured", provider=self.config.provider)
            return False

        html = render_access_code_email(code, services)
        attempts = max(1, self.config.max_attempts)

        for attempt in range(1, attempts + 1):
            try:
                message_id = await asyncio.wait_for(
                    self.transport.send(email, ACCESS_CODE_SUBJECT, html),
                    timeout=self.config.timeout_seconds,
                )
                logger.info(
                    "access_code_email_sent",
                    email=email,
                    transport=self.transport.name,
                    attempt=attempt,
                    message_id=message_id,
                )
                return True

            except EmailAuthError as e:
                logger.error("email_auth_failed", transport=self.transport.name, error=str(e))
                return False

            except (EmailDeliveryError, asyncio.TimeoutError) as e:
                logger.warning(
                    "access_code_email_failed",
                    email=email,
                    attempt=attempt,
                    attempts=attempts,
                    error=str(e) or type(e).__name__,
                )
                if attempt < attempts:
                    await self._sleep(self.config.backoff_base_seconds * 2 ** (attempt - 1))

        logger.error("access_code_email_exhausted", email=email, attempts=attempts)
        return False
