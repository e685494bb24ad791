from __future__ import annotations

import logging
import re
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from twilio.rest import Client

from config import Settings


logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = "whatsapp:"
WHATSAPP_MAX_BODY = 1600


@dataclass(frozen=True)
class SendResult:
    success: bool
    info: Optional[str] = None
    error: Optional[str] = None


class Mailer(Protocol):
    def send_email(self, to: str, subject: str, html: str) -> SendResult: ...


class Messenger(Protocol):
    def send_message(self, to: str, body: str) -> SendResult: ...


class EmailSender:
    def __init__(
        self,
        host: str,
        port: int,
        username: Optional[str],
        password: Optional[str],
        sender: Optional[str],
        timeout: float = 30,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailSender":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            sender=settings.email_sender,
        )

    def send_email(self, to: str, subject: str, html: str) -> SendResult:
        if not self.sender:
            logger.warning(f"email_skipped: to={to} reason=no_sender_configured")
            return SendResult(success=False, error="Email sender not configured")

        msg = MIMEMultipart("alternative")
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.attach(MIMEText(html, "html", "utf-8"))

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                refused = server.sendmail(self.sender, [to], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(f"email_failed: to={to} subject={subject!r} error={exc}")
            return SendResult(success=False, error=str(exc))

        if refused:
            return SendResult(success=False, error=f"Recipient refused: {refused}")
        logger.info(f"email_sent: to={to} subject={subject!r}")
        return SendResult(success=True, info=msg.get("Message-ID"))


def normalize_phone(phone: str, default_country_code: str = "91") -> str:
    """E.164-ish formatting; bare 10-digit numbers are assumed to be Indian."""
    clean = re.sub(r"[\s()\-]", "", phone or "")
    if clean.startswith(WHATSAPP_PREFIX):
        clean = clean[len(WHATSAPP_PREFIX):]
    if clean.startswith("+"):
        return clean
    if clean.startswith(default_country_code) and len(clean) > 10:
        return f"+{clean}"
    if clean.startswith("0"):
        return f"+{default_country_code}{clean[1:]}"
    return f"+{default_country_code}{clean}"


class WhatsAppMessenger:
    def __init__(self, client: Client, from_number: str) -> None:
        self.client = client
        self.from_number = from_number

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["WhatsAppMessenger"]:
        if not (
            settings.twilio_account_sid
            and settings.twilio_auth_token
            and settings.twilio_whatsapp_number
        ):
            logger.warning("whatsapp_disabled: reason=missing_twilio_credentials")
            return None
        client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
        from_number = settings.twilio_whatsapp_number
        if not from_number.startswith(WHATSAPP_PREFIX):
            from_number = f"{WHATSAPP_PREFIX}{from_number}"
        return cls(client, from_number)

    def send_message(self, to: str, body: str) -> SendResult:
        to_address = f"{WHATSAPP_PREFIX}{normalize_phone(to)}"
        try:
            message = self.client.messages.create(
                from_=self.from_number,
                to=to_address,
                body=body[:WHATSAPP_MAX_BODY],
            )
        except Exception as exc:
            logger.error(f"whatsapp_failed: to={to_address} error={exc}")
            return SendResult(success=False, error=str(exc))
        logger.info(f"whatsapp_sent: to={to_address} sid={message.sid}")
        return SendResult(success=True, info=message.sid)

    def send_welcome(self, phone: str, user_name: Optional[str]) -> SendResult:
        body = (
            f"Welcome to FinWise, {user_name or 'there'}! 👋\n\n"
            "Your phone number has been registered for WhatsApp notifications.\n\n"
            "You can now use WhatsApp to:\n"
            "• Check your balance\n"
            "• View transactions\n"
            "• Get financial insights\n\n"
            'Send "help" to see all available commands!'
        )
        return self.send_message(phone, body)
