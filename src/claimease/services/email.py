"""Transactional email: sign-in links and plan confirmations."""

import logging
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import aiosmtplib
import httpx

from claimease.config import settings

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

PLAN_LABELS = {
    "single_claim": "Single Claim",
    "unlimited": "Unlimited Claims",
}


class EmailBackend(ABC):
    """Delivers one message. Returns False instead of raising on delivery failure."""

    @abstractmethod
    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
    ) -> bool:
        pass


class ConsoleEmailBackend(EmailBackend):
    """Writes messages to the log (development and tests)."""

    def __init__(self) -> None:
        self.outbox: list[dict[str, str | None]] = []

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
    ) -> bool:
        self.outbox.append({"to": to, "subject": subject, "html": html, "text": text})
        logger.info(f"EMAIL (console, not sent) to={to} subject={subject!r}\n{text or html}")
        return True


class SMTPEmailBackend(EmailBackend):
    """Sends through an SMTP relay with aiosmtplib."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        use_tls: bool = True,
        from_address: str = "",
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_address = from_address

    def build_message(self, to: str, subject: str, html: str, text: str | None) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["From"] = self.from_address
        message["To"] = to
        message["Subject"] = subject
        # Plain text first so clients prefer the HTML part
        if text:
            message.attach(MIMEText(text, "plain"))
        message.attach(MIMEText(html, "html"))
        return message

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
    ) -> bool:
        message = self.build_message(to, subject, html, text)
        try:
            await aiosmtplib.send(
                message,
                hostname=self.host,
                port=self.port,
                username=self.username or None,
                password=self.password or None,
                start_tls=self.use_tls,
            )
        except aiosmtplib.SMTPException as e:
            logger.error(f"SMTP delivery to {to} failed: {e}")
            return False
        logger.info(f"Email sent via SMTP to {to}")
        return True


class ResendEmailBackend(EmailBackend):
    """Sends through the Resend HTTP API."""

    def __init__(self, api_key: str, from_address: str, timeout: float = 30.0):
        self.api_key = api_key
        self.from_address = from_address
        self.timeout = timeout

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
    ) -> bool:
        payload = {
            "from": self.from_address,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if text:
            payload["text"] = text

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(
                    RESEND_API_URL,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json=payload,
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.error(f"Resend rejected email to {to}: {e.response.status_code} {e.response.text}")
                return False
            except httpx.HTTPError as e:
                logger.error(f"Resend request for {to} failed: {e}")
                return False
        logger.info(f"Email sent via Resend to {to}")
        return True


def get_email_backend() -> EmailBackend:
    """Build the backend named by ``EMAIL_BACKEND``."""
    match settings.email_backend:
        case "console":
            return ConsoleEmailBackend()
        case "smtp":
            return SMTPEmailBackend(
                host=settings.smtp_host,
                port=settings.smtp_port,
                username=settings.smtp_username,
                password=settings.smtp_password,
                use_tls=settings.smtp_use_tls,
                from_address=settings.email_from,
            )
        case "resend":
            return ResendEmailBackend(
                api_key=settings.resend_api_key,
                from_address=settings.email_from,
            )
    raise ValueError(f"Unknown email backend: {settings.email_backend}")


def build_magic_link_url(token: str, email: str) -> str:
    """Frontend URL that posts the token back to the verify endpoint."""
    return str(
        httpx.URL(f"{settings.app_url.rstrip('/')}/auth/verify", params={"token": token, "email": email})
    )


def _layout(heading: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><meta name="viewport" content="width=device-width, initial-scale=1.0"></head>
<body style="font-family: Arial, Helvetica, sans-serif; line-height: 1.6; color: #1f2937; max-width: 600px; margin: 0 auto; padding: 24px;">
  <h1 style="color: #0f766e; margin: 0 0 24px;">ClaimEase</h1>
  <div style="background: #f0fdfa; border-radius: 8px; padding: 28px;">
    <h2 style="margin-top: 0;">{heading}</h2>
    {body}
  </div>
  <p style="color: #6b7280; font-size: 12px; margin-top: 24px;">
    ClaimEase helps you prepare your PIP claim. We are not affiliated with the DWP.
  </p>
</body>
</html>
"""


class EmailService:
    """Application emails rendered on top of a pluggable backend."""

    def __init__(self, backend: EmailBackend | None = None):
        self._backend = backend

    @property
    def backend(self) -> EmailBackend:
        if self._backend is None:
            self._backend = get_email_backend()
        return self._backend

    async def send_magic_link(self, to: str, magic_link: str) -> bool:
        """Send a one-time sign-in link."""
        minutes = settings.magic_link_expiration_minutes
        html = _layout(
            "Sign in to ClaimEase",
            f"""<p>Use the button below to sign in. The link works once and expires in {minutes} minutes.</p>
    <p style="text-align: center; margin: 28px 0;">
      <a href="{magic_link}" style="background: #0f766e; color: #ffffff; padding: 12px 28px; border-radius: 6px; text-decoration: none;">Sign in</a>
    </p>
    <p style="font-size: 13px; color: #4b5563;">Or paste this address into your browser:<br>
      <a href="{magic_link}" style="word-break: break-all;">{magic_link}</a></p>
    <p style="font-size: 13px; color: #4b5563;">If you did not ask to sign in, ignore this email.</p>""",
        )
        text = (
            "Sign in to ClaimEase\n\n"
            f"Open this link to sign in. It works once and expires in {minutes} minutes:\n\n"
            f"{magic_link}\n\n"
            "If you did not ask to sign in, ignore this email.\n"
        )
        return await self.backend.send(to=to, subject="Your ClaimEase sign-in link", html=html, text=text)

    async def send_plan_confirmation(self, to: str, plan: str) -> bool:
        """Confirm a successful upgrade."""
        label = PLAN_LABELS.get(plan, plan)
        link = f"{settings.app_url.rstrip('/')}/account"
        html = _layout(
            "Payment received",
            f"""<p>Thank you. Your account is now on the <strong>{label}</strong> plan.</p>
    <p>You can start your claim from <a href="{link}">your account page</a>.</p>""",
        )
        text = (
            "Payment received\n\n"
            f"Your account is now on the {label} plan.\n"
            f"Start your claim at {link}\n"
        )
        return await self.backend.send(to=to, subject="Your ClaimEase plan is active", html=html, text=text)


email_service = EmailService()
