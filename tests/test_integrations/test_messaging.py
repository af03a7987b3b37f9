"""Tests for outbound message routing (nexus/integrations/messaging.py).

Covers:
    - WebhookProvider.deliver: success, 4xx rejection, 5xx/timeout as transient
    - WebhookProvider.is_configured / health_check
    - MessageSender.send: address resolution and provider routing
    - build_message_sender: relay, dry-run and unconfigured setups
"""

from unittest.mock import MagicMock, patch

import pytest
import requests  # type: ignore[import-untyped]

from nexus.core.config import Config
from nexus.core.exceptions import IntegrationError, TransientIntegrationError
from nexus.db.models import Channel
from nexus.integrations.messaging import (
    LoggingProvider,
    MessageSender,
    WebhookProvider,
    build_message_sender,
)

RELAY_URL = "https://relay.example.com/send"


def _response(status_code: int, body=None, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    if body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = body
    return response


@pytest.fixture
def relay_config(tmp_path) -> Config:
    return Config(
        db_path=tmp_path / "test.db",
        log_path=tmp_path / "logs",
        send_webhook_url=RELAY_URL,
        send_webhook_token="relay-secret",
    )


# ===========================================================================
# WebhookProvider
# ===========================================================================


class TestWebhookProvider:
    """Relay webhook delivery."""

    def test_success_returns_provider_id(self, relay_config):
        provider = WebhookProvider(relay_config)
        with patch("nexus.integrations.base.requests.request") as mock_request:
            mock_request.return_value = _response(200, {"id": "msg_123"})
            result = provider.deliver("ada@example.com", Channel.EMAIL, "Hello", "Hi")

        assert result.success is True
        assert result.provider_id == "msg_123"
        args, kwargs = mock_request.call_args
        assert args == ("POST", RELAY_URL)
        assert kwargs["json"] == {
            "channel": "email",
            "to": "ada@example.com",
            "subject": "Hi",
            "content": "Hello",
        }
        assert kwargs["headers"]["Authorization"] == "Bearer relay-secret"
        assert kwargs["timeout"] == relay_config.http_timeout_seconds

    def test_accepted_without_body(self, relay_config):
        provider = WebhookProvider(relay_config)
        with patch("nexus.integrations.base.requests.request", return_value=_response(202)):
            result = provider.deliver("+15125550100", Channel.SMS, "Hello")
        assert result.success is True
        assert result.provider_id is None

    def test_client_error_is_rejection(self, relay_config):
        provider = WebhookProvider(relay_config)
        with patch(
            "nexus.integrations.base.requests.request",
            return_value=_response(400, text="invalid address"),
        ):
            result = provider.deliver("nope", Channel.EMAIL, "Hello", "Hi")
        assert result.success is False
        assert "400" in result.error
        assert "invalid address" in result.error

    @pytest.mark.parametrize("status_code", [429, 500, 503])
    def test_server_errors_are_transient(self, relay_config, status_code):
        provider = WebhookProvider(relay_config)
        with patch(
            "nexus.integrations.base.requests.request",
            return_value=_response(status_code, text="busy"),
        ):
            with pytest.raises(TransientIntegrationError):
                provider.deliver("ada@example.com", Channel.EMAIL, "Hello", "Hi")

    def test_timeout_is_transient(self, relay_config):
        provider = WebhookProvider(relay_config)
        with patch(
            "nexus.integrations.base.requests.request",
            side_effect=requests.Timeout("read timed out"),
        ):
            with pytest.raises(TransientIntegrationError):
                provider.deliver("ada@example.com", Channel.EMAIL, "Hello", "Hi")

    def test_other_request_errors_are_not_transient(self, relay_config):
        provider = WebhookProvider(relay_config)
        with patch(
            "nexus.integrations.base.requests.request",
            side_effect=requests.exceptions.InvalidURL("bad url"),
        ):
            with pytest.raises(IntegrationError) as exc_info:
                provider.deliver("ada@example.com", Channel.EMAIL, "Hello", "Hi")
        assert not isinstance(exc_info.value, TransientIntegrationError)

    def test_unconfigured_raises(self, test_config):
        provider = WebhookProvider(test_config)
        assert provider.is_configured() is False
        assert provider.health_check() is False
        with pytest.raises(IntegrationError):
            provider.deliver("ada@example.com", Channel.EMAIL, "Hello")

    def test_health_check(self, relay_config):
        provider = WebhookProvider(relay_config)
        with patch("nexus.integrations.base.requests.request", return_value=_response(200)):
            assert provider.health_check() is True
        with patch(
            "nexus.integrations.base.requests.request",
            side_effect=requests.ConnectionError("refused"),
        ):
            assert provider.health_check() is False


# ===========================================================================
# MessageSender
# ===========================================================================


class TestMessageSender:
    """Channel routing."""

    def test_routes_to_contact_address(self, memory_db, make_contact):
        contact = make_contact()
        provider = LoggingProvider()
        sender = MessageSender(memory_db, {Channel.SMS: provider})

        result = sender.send(contact.id, Channel.SMS, "Text back YES")

        assert result.success is True
        assert result.provider_id.startswith("dryrun-")
        assert provider.delivered == [
            {"to": "+15125550100", "channel": "sms", "subject": None, "content": "Text back YES"}
        ]

    def test_unknown_contact(self, memory_db):
        result = MessageSender(memory_db, {}).send("missing", Channel.EMAIL, "Hello")
        assert result.success is False
        assert result.error == "contact_not_found"

    def test_missing_address(self, memory_db, make_contact):
        contact = make_contact(email="")
        sender = MessageSender(memory_db, {Channel.EMAIL: LoggingProvider()})
        assert sender.send(contact.id, Channel.EMAIL, "Hello").error == "no_delivery_address"

    def test_channel_without_provider(self, memory_db, make_contact):
        contact = make_contact()
        sender = MessageSender(memory_db, {Channel.EMAIL: LoggingProvider()})
        result = sender.send(contact.id, Channel.SMS, "Hello")
        assert result.success is False
        assert "sms" in result.error


# ===========================================================================
# build_message_sender
# ===========================================================================


class TestBuildMessageSender:
    """Provider selection from config."""

    def test_relay_preferred(self, memory_db, relay_config):
        sender = build_message_sender(memory_db, relay_config)
        assert all(isinstance(p, WebhookProvider) for p in sender.providers.values())
        assert set(sender.providers) == set(Channel)

    def test_dry_run(self, memory_db, test_config):
        sender = build_message_sender(memory_db, test_config)
        assert isinstance(sender.providers[Channel.EMAIL], LoggingProvider)

    def test_nothing_configured(self, memory_db, tmp_path):
        config = Config(db_path=tmp_path / "test.db", log_path=tmp_path / "logs")
        assert build_message_sender(memory_db, config).providers == {}
