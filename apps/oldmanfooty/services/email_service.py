"""
Email delivery using SendGrid.

The rest of the engine only sees the ``EmailSender`` protocol; SendGrid is
the production implementation. Senders are swappable at runtime with
``set_email_sender`` (tests install a recording sender).
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, Email, To, Content
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


def get_bool_env(key: str, default: bool = True) -> bool:
    """
    Parse a boolean environment variable from a string value.

    .env files store all values as strings, so this function converts string
    values like "true", "True", "TRUE", "1", "yes" to True, and everything
    else (including "false", "False", "0", "no", empty string) to False.

    Args:
        key: Environment variable name
        default: Default value if the variable is not set

    Returns:
        bool: Parsed boolean value
    """
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes")


# SendGrid Configuration
SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY")
SENDGRID_FROM_EMAIL = os.getenv("SENDGRID_FROM_EMAIL", "noreply@oldmanfooty.au")
ENABLE_EMAIL = get_bool_env("ENABLE_EMAIL", default=True)


@dataclass(frozen=True)
class OutboundEmail:
    """One email handed to the delivery collaborator."""

    recipient: str
    subject: str
    body: str
    email_type: str


@runtime_checkable
class EmailSender(Protocol):
    """Anything that can deliver an ``OutboundEmail``. Returns True on success."""

    async def send(self, message: OutboundEmail) -> bool:
        ...


def is_enabled() -> bool:
    """Outbound email can be switched off entirely (degraded mode)."""
    return ENABLE_EMAIL


class SendGridEmailSender:
    """Deliver email through the SendGrid API."""

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None):
        self.api_key = api_key if api_key is not None else SENDGRID_API_KEY
        self.from_email = from_email or SENDGRID_FROM_EMAIL

    async def send(self, message: OutboundEmail) -> bool:
        # If SendGrid is not configured, log warning and return True (don't fail the request)
        if not self.api_key:
            logger.warning(
                "SENDGRID_API_KEY not configured. %s email to %s skipped.",
                message.email_type, message.recipient,
            )
            return True

        mail = Mail(
            from_email=Email(self.from_email),
            to_emails=To(message.recipient),
            subject=message.subject,
            plain_text_content=Content("text/plain", message.body),
        )
        client = SendGridAPIClient(self.api_key)
        # The SendGrid client is blocking
        response = await asyncio.to_thread(client.send, mail)

        if 200 <= response.status_code < 300:
            logger.info(f"{message.email_type} email sent to {message.recipient}")
            return True
        logger.error(f"SendGrid returned status {response.status_code}: {response.body}")
        return False


_sender: Optional[EmailSender] = None


def get_email_sender() -> EmailSender:
    """Get the process-wide sender, creating the SendGrid one on first use."""
    global _sender
    if _sender is None:
        _sender = SendGridEmailSender()
    return _sender


def set_email_sender(sender: Optional[EmailSender]) -> None:
    """Install a sender (None restores the SendGrid default on next use)."""
    global _sender
    _sender = sender
