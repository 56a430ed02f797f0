"""
Email provider adapters.

Providers raise DeliveryError on failure; classification into transient vs
permanent happens in the notification service.
"""

import uuid
from typing import Protocol

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.errors import DeliveryError
from app.models.domain.secret_domain import NotificationMessage

logger = get_logger(__name__)

SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"
REQUEST_TIMEOUT = 10  # seconds


class EmailProvider(Protocol):
    name: str

    async def send(self, message: NotificationMessage) -> str:
        """Send the message and return the provider's message id."""
        ...


class ConsoleProvider:
    """Development provider that writes emails to the structured log."""

    name = "console-dev"

    async def send(self, message: NotificationMessage) -> str:
        message_id = f"console-{uuid.uuid4()}"
        logger.info(
            "Email delivered to console",
            message_id=message_id,
            to=message.to,
            subject=message.subject,
            email_type=message.email_type.value,
        )
        return message_id


class SendGridProvider:
    """SendGrid v3 mail/send adapter."""

    name = "sendgrid"

    def __init__(
        self,
        api_key: str | None = None,
        from_email: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key or settings.SENDGRID_API_KEY
        self.from_email = from_email or settings.EMAIL_FROM
        self._client = client

        if not self.api_key:
            raise ValueError("SENDGRID_API_KEY is required for the sendgrid provider")

    def _payload(self, message: NotificationMessage) -> dict:
        return {
            "personalizations": [{"to": [{"email": message.to}]}],
            "from": {"email": self.from_email},
            "subject": message.subject,
            "content": [
                {"type": "text/plain", "value": message.text},
                {"type": "text/html", "value": message.html},
            ],
            "categories": [message.email_type.value],
        }

    async def send(self, message: NotificationMessage) -> str:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            if self._client is not None:
                response = await self._client.post(
                    SENDGRID_API_URL, json=self._payload(message), headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
                    response = await client.post(
                        SENDGRID_API_URL, json=self._payload(message), headers=headers
                    )
        except httpx.TimeoutException as e:
            raise DeliveryError(f"SendGrid request timeout: {e}") from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"SendGrid network error: {e}") from e

        if response.status_code >= 400:
            detail = response.text[:200] if response.text else ""
            logger.warning(
                "SendGrid rejected message",
                status_code=response.status_code,
                email_type=message.email_type.value,
            )
            raise DeliveryError(f"SendGrid error {response.status_code}: {detail}")

        return response.headers.get("X-Message-Id", "")


def get_email_provider(name: str | None = None) -> EmailProvider:
    """Build the provider named by EMAIL_PROVIDER."""
    provider = (name or settings.EMAIL_PROVIDER).strip().lower()
    if provider == "sendgrid":
        return SendGridProvider()
    if provider in ("console", "console-dev"):
        return ConsoleProvider()
    raise ValueError(f"Unknown email provider '{provider}'")
