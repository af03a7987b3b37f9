"""Outbound message routing.

MessageSender implements the engine's send capability: it resolves the
contact's delivery address for the channel and hands the message to the
provider registered for that channel. Provider wire protocols live behind
a relay; this package only speaks to the relay.

Usage:
    from nexus.integrations.messaging import build_message_sender

    sender = build_message_sender(db)
    result = sender.send(contact_id, Channel.EMAIL, "Hi Ada", subject="Welcome")
"""

import uuid
from abc import ABC, abstractmethod
from typing import Optional

from nexus.core.config import Config, get_config
from nexus.core.exceptions import IntegrationError
from nexus.core.logging import get_logger
from nexus.db.database import Database
from nexus.db.models import Channel
from nexus.integrations.base import IntegrationBase, SendCapability, SendResult

logger = get_logger(__name__)


class SendProvider(ABC):
    """Delivers a message to a resolved address."""

    name: str = "provider"

    @abstractmethod
    def deliver(
        self, address: str, channel: Channel, content: str, subject: Optional[str] = None
    ) -> SendResult:
        """Hand a message to the provider.

        Raises:
            TransientIntegrationError: If delivery may succeed later
        """


class LoggingProvider(SendProvider):
    """Dry-run provider: logs the message and reports success."""

    name = "dry_run"

    def __init__(self) -> None:
        self.delivered: list[dict[str, Optional[str]]] = []

    def deliver(
        self, address: str, channel: Channel, content: str, subject: Optional[str] = None
    ) -> SendResult:
        provider_id = f"dryrun-{uuid.uuid4().hex[:12]}"
        self.delivered.append(
            {"to": address, "channel": channel.value, "subject": subject, "content": content}
        )
        logger.info(
            f"[dry run] {channel.value} to {address}",
            extra={"context": {"provider_id": provider_id, "subject": subject}},
        )
        return SendResult(success=True, provider_id=provider_id)


class WebhookProvider(IntegrationBase, SendProvider):
    """POSTs messages as JSON to a relay service.

    The relay owns the SMTP / SMS provider credentials. A 2xx response is
    success; 4xx is a terminal rejection.
    """

    name = "send_webhook"

    def __init__(self, config: Optional[Config] = None) -> None:
        self._config = config or get_config()
        self.timeout_seconds = self._config.http_timeout_seconds

    def is_configured(self) -> bool:
        return bool(self._config.send_webhook_url)

    def health_check(self) -> bool:
        if not self.is_configured():
            return False
        try:
            response = self._request("HEAD", self._config.send_webhook_url, headers=self._headers)
            return response.status_code < 400
        except IntegrationError:
            return False

    @property
    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.send_webhook_token:
            headers["Authorization"] = f"Bearer {self._config.send_webhook_token}"
        return headers

    def deliver(
        self, address: str, channel: Channel, content: str, subject: Optional[str] = None
    ) -> SendResult:
        if not self.is_configured():
            raise IntegrationError("Send relay not configured (set NEXUS_SEND_WEBHOOK_URL)")

        response = self._request(
            "POST",
            self._config.send_webhook_url,
            headers=self._headers,
            json={
                "channel": channel.value,
                "to": address,
                "subject": subject,
                "content": content,
            },
        )
        if response.status_code >= 400:
            logger.warning(
                "Send relay rejected message",
                extra={"context": {"channel": channel.value, "status": response.status_code}},
            )
            return SendResult(
                success=False,
                error=f"Relay rejected message ({response.status_code}): {response.text[:200]}",
            )

        provider_id = None
        try:
            body = response.json()
            if isinstance(body, dict):
                provider_id = body.get("id") or body.get("providerId")
        except ValueError:
            pass  # relays may answer 202 with an empty body
        return SendResult(success=True, provider_id=provider_id)


class MessageSender(SendCapability):
    """Routes messages to the provider registered for each channel.

    Attributes:
        providers: Provider per channel
    """

    def __init__(self, db: Database, providers: dict[Channel, SendProvider]) -> None:
        self.db = db
        self.providers = providers

    def send(
        self,
        contact_id: str,
        channel: Channel,
        content: str,
        subject: Optional[str] = None,
    ) -> SendResult:
        contact = self.db.get_contact(contact_id)
        if contact is None:
            return SendResult(success=False, error="contact_not_found")

        address = contact.address_for(channel)
        if not address:
            return SendResult(success=False, error="no_delivery_address")

        provider = self.providers.get(channel)
        if provider is None:
            return SendResult(success=False, error=f"no provider configured for {channel.value}")

        result = provider.deliver(address, channel, content, subject)
        logger.debug(
            "Message handed to provider",
            extra={
                "context": {
                    "contact_id": contact_id,
                    "channel": channel.value,
                    "provider": provider.name,
                    "success": result.success,
                }
            },
        )
        return result


def build_message_sender(db: Database, config: Optional[Config] = None) -> MessageSender:
    """Pick providers from config: relay first, then dry-run logging."""
    config = config or get_config()
    provider: Optional[SendProvider] = None

    if config.send_webhook_url:
        provider = WebhookProvider(config)
    elif config.dry_run:
        provider = LoggingProvider()

    if provider is None:
        logger.warning("No send provider configured; outbound steps will fail")
        return MessageSender(db, {})
    return MessageSender(db, {channel: provider for channel in Channel})
