"""Base classes and capability contracts for external integrations.

All HTTP integrations inherit from IntegrationBase, which provides:
    - Health check interface
    - Configuration check
    - Rate limiting
    - Request helper that sorts failures into transient and terminal

Retries are not done here. A raised TransientIntegrationError makes the
engine park the step and try again on a later tick.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import requests  # type: ignore[import-untyped]

from nexus.core.exceptions import IntegrationError, TransientIntegrationError
from nexus.core.logging import get_logger
from nexus.db.models import Channel

logger = get_logger(__name__)


# =============================================================================
# CAPABILITY RESULTS
# =============================================================================


@dataclass
class SendResult:
    """Outcome of an outbound send.

    Attributes:
        success: Provider accepted the message
        provider_id: Provider's message id
        error: Why the send was rejected
    """

    success: bool
    provider_id: Optional[str] = None
    error: Optional[str] = None


class ActionStatus(str, Enum):
    SUCCESS = "success"
    RUNNING = "running"
    FAILED = "failed"


@dataclass
class ActionResult:
    """Outcome of invoking or polling an external action.

    Attributes:
        status: success, running or failed
        data: Output payload (success) or raw run info
        run_id: Provider run id, used to poll a running action
        error: Failure text
    """

    status: ActionStatus
    data: dict[str, Any] = field(default_factory=dict)
    run_id: Optional[str] = None
    error: Optional[str] = None


class SendCapability(ABC):
    """Opaque outbound messaging."""

    @abstractmethod
    def send(
        self,
        contact_id: str,
        channel: Channel,
        content: str,
        subject: Optional[str] = None,
    ) -> SendResult:
        """Send a message to a contact.

        Returns:
            SendResult; success=False is a terminal rejection

        Raises:
            TransientIntegrationError: If the send may succeed on retry
        """


class ExternalActionCapability(ABC):
    """Long-running external job runner."""

    @abstractmethod
    def invoke(self, actor_id: str, input: dict[str, Any]) -> ActionResult:
        """Start an action."""

    @abstractmethod
    def check(self, run_id: str) -> ActionResult:
        """Poll a previously started action."""


# =============================================================================
# HTTP INTEGRATION BASE
# =============================================================================


class IntegrationBase(ABC):
    """Abstract base class for HTTP integrations.

    Subclasses must implement:
        - health_check(): Check if service is available
        - is_configured(): Check if credentials are present
    """

    timeout_seconds: int = 30

    @abstractmethod
    def health_check(self) -> bool:
        """Check if integration is healthy and available.

        Returns:
            True if service is reachable and functioning
        """

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if required credentials/configuration are present.

        Returns:
            True if all required config is present
        """

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """Make an HTTP request.

        Timeouts, connection errors, 429 and 5xx responses raise
        TransientIntegrationError. Other responses (including 4xx) are
        returned for the caller to interpret.

        Raises:
            TransientIntegrationError: If the request may succeed later
            IntegrationError: For any other request failure
        """
        kwargs.setdefault("timeout", self.timeout_seconds)
        try:
            response = requests.request(method, url, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientIntegrationError(f"{method} {url} failed: {e}") from e
        except requests.RequestException as e:
            raise IntegrationError(f"{method} {url} failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientIntegrationError(
                f"{method} {url} returned {response.status_code}: {response.text[:200]}"
            )
        return response


class RateLimiter:
    """Sliding one-minute window of API calls.

    Never sleeps: callers that are refused park their step and try again
    on a later tick.

    Attributes:
        calls_per_minute: Maximum calls allowed per minute
    """

    def __init__(self, calls_per_minute: int = 60):
        self.calls_per_minute = calls_per_minute
        self._call_times: list[float] = []

    def try_acquire(self) -> bool:
        """Record a call if it fits in the window. Returns False if it does not."""
        now = time.monotonic()
        self._call_times = [t for t in self._call_times if now - t < 60]

        if len(self._call_times) >= self.calls_per_minute:
            logger.debug(
                f"Rate limit reached, next slot in {60 - (now - self._call_times[0]):.1f}s"
            )
            return False

        self._call_times.append(now)
        return True
