"""Outbound e-mail for the drip campaign."""

import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import aiohttp

from circle.config.settings import AppConfig

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
RETRY_DELAYS = (1.0, 2.0)


class MailerError(RuntimeError):
    """A single delivery attempt failed."""


class Mailer:
    """Base mailer. Subclasses implement one delivery attempt."""

    name = "base"

    def __init__(self, from_email: str):
        self.from_email = from_email

    async def deliver(self, to: str, subject: str, html_body: str, text_body: str) -> None:
        raise NotImplementedError

    async def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        """Deliver with up to three attempts. False when every attempt failed."""
        attempts = len(RETRY_DELAYS) + 1
        for attempt in range(attempts):
            try:
                await self.deliver(to, subject, html_body, text_body)
                logger.info(
                    f"Sent {subject!r} to {to}",
                    extra={"email_recipient": to, "email_provider": self.name},
                )
                return True
            except (MailerError, OSError, smtplib.SMTPException, aiohttp.ClientError) as e:
                logger.warning(f"Send to {to} failed (attempt {attempt + 1}/{attempts}): {e}")
                if attempt < len(RETRY_DELAYS):
                    await asyncio.sleep(RETRY_DELAYS[attempt])
        return False


class DevMailer(Mailer):
    """Logs messages instead of sending them."""

    name = "dev"

    async def deliver(self, to: str, subject: str, html_body: str, text_body: str) -> None:
        logger.info(
            "Dev email dispatch",
            extra={
                "email_recipient": to,
                "email_subject": subject,
                "email_sender": self.from_email,
            },
        )


class SMTPMailer(Mailer):
    name = "smtp"

    def __init__(
        self,
        from_email: str,
        host: str,
        port: int,
        username: Optional[str],
        password: Optional[str],
    ):
        super().__init__(from_email)
        self.host = host
        self.port = port
        self.username = username
        self.password = password

    def _build_message(self, to: str, subject: str, html_body: str, text_body: str) -> str:
        message = MIMEMultipart("alternative")
        message["From"] = self.from_email
        message["To"] = to
        message["Subject"] = subject
        message.attach(MIMEText(text_body, "plain", "utf-8"))
        message.attach(MIMEText(html_body, "html", "utf-8"))
        return message.as_string()

    def _send_blocking(self, to: str, payload: str) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=30) as client:
            client.starttls()
            if self.username and self.password:
                client.login(self.username, self.password)
            client.sendmail(self.from_email, [to], payload)

    async def deliver(self, to: str, subject: str, html_body: str, text_body: str) -> None:
        payload = self._build_message(to, subject, html_body, text_body)
        await asyncio.to_thread(self._send_blocking, to, payload)


class SendGridMailer(Mailer):
    name = "sendgrid"

    def __init__(self, from_email: str, api_key: str):
        super().__init__(from_email)
        self.api_key = api_key

    async def deliver(self, to: str, subject: str, html_body: str, text_body: str) -> None:
        body = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.from_email},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text_body},
                {"type": "text/html", "value": html_body},
            ],
        }
        timeout = aiohttp.ClientTimeout(total=15)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(
                SENDGRID_URL,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            ) as response:
                if response.status >= 400:
                    detail = await response.text()
                    raise MailerError(f"SendGrid returned {response.status}: {detail[:200]}")


def create_mailer(config: AppConfig) -> Mailer:
    provider = config.email_provider
    if provider == "smtp":
        return SMTPMailer(
            from_email=config.from_email,
            host=config.smtp_host,
            port=config.smtp_port,
            username=config.smtp_username or None,
            password=config.smtp_password.get_secret_value() or None,
        )
    if provider == "sendgrid":
        api_key = config.sendgrid_api_key.get_secret_value()
        if not api_key:
            logger.warning("SENDGRID_API_KEY not set, falling back to dev mailer")
            return DevMailer(config.from_email)
        return SendGridMailer(from_email=config.from_email, api_key=api_key)
    return DevMailer(config.from_email)
