"""Service registry for tracking provider availability.

Tracks which outbound providers are configured so the CLI can print a
readiness report (``nexus_engine.py --status``). Engine wiring reads the
config itself and does not consult the registry.

Usage:
    from nexus.core.services import get_service_registry

    registry = get_service_registry()
    if not registry.is_available("apify"):
        print("External actions disabled")

    report = registry.readiness_report()
    print(report.summary)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from nexus.core.config import Config, get_config
from nexus.core.exceptions import ConfigurationError
from nexus.core.logging import get_logger

logger = get_logger(__name__)


class ServiceCategory(str, Enum):
    """What a service is used for."""

    MESSAGING = "messaging"
    EXTERNAL_ACTIONS = "external_actions"


@dataclass
class ServiceStatus:
    """Status of a single service.

    Attributes:
        name: Human-readable service name
        service_key: Registry lookup key
        category: What the service is used for
        configured: Whether credentials are present
        available: Whether the service can be used right now
        reason: Why the service is unavailable (empty if available)
        credentials_present: Which credential fields are set
        credentials_missing: Which credential fields are missing
    """

    name: str
    service_key: str
    category: ServiceCategory
    configured: bool = False
    available: bool = False
    reason: str = ""
    credentials_present: list[str] = field(default_factory=list)
    credentials_missing: list[str] = field(default_factory=list)


@dataclass
class ReadinessReport:
    """Readiness across all services.

    Attributes:
        services: Status of every registered service
        category_ready: Whether each category has at least one usable service
        summary: Human-readable summary string
    """

    services: list[ServiceStatus] = field(default_factory=list)
    category_ready: dict[str, bool] = field(default_factory=dict)
    summary: str = ""


def _credential_status(
    name: str,
    key: str,
    category: ServiceCategory,
    creds: dict[str, Optional[str]],
) -> ServiceStatus:
    present = [k for k, v in creds.items() if v]
    missing = [k for k, v in creds.items() if not v]
    configured = not missing

    if present and missing:
        reason = f"Partial config: have {', '.join(present)} but missing {', '.join(missing)}"
    elif missing:
        reason = f"Not configured (set {', '.join(missing)})"
    else:
        reason = ""

    return ServiceStatus(
        name=name,
        service_key=key,
        category=category,
        configured=configured,
        available=configured,
        reason=reason,
        credentials_present=present,
        credentials_missing=missing,
    )


class ServiceRegistry:
    """Registry of the engine's outbound providers.

    Checks config once, caches results, provides clear status
    for every service the engine depends on.
    """

    def __init__(self, config: Optional[Config] = None) -> None:
        self._config = config
        self._statuses: dict[str, ServiceStatus] = {}
        self._refresh()

    def _refresh(self) -> None:
        """Re-check all service configurations against current config."""
        config = self._config or get_config()
        self._statuses.clear()

        # Token is optional for the relay, so only the URL is required
        webhook = _credential_status(
            "Outbound message relay (webhook)",
            "send_webhook",
            ServiceCategory.MESSAGING,
            {"NEXUS_SEND_WEBHOOK_URL": config.send_webhook_url},
        )
        self._statuses["send_webhook"] = webhook

        self._statuses["dry_run"] = ServiceStatus(
            name="Dry-run message logger",
            service_key="dry_run",
            category=ServiceCategory.MESSAGING,
            configured=config.dry_run,
            available=config.dry_run,
            reason="" if config.dry_run else "Disabled (set NEXUS_DRY_RUN=true)",
        )

        self._statuses["apify"] = _credential_status(
            "Apify actors",
            "apify",
            ServiceCategory.EXTERNAL_ACTIONS,
            {"APIFY_TOKEN": config.apify_token},
        )

    def check(self, service_key: str) -> ServiceStatus:
        """Get status for a service.

        Raises:
            KeyError: If service_key is not registered
        """
        return self._statuses[service_key]

    def is_available(self, service_key: str) -> bool:
        """Quick boolean check: can this service be used right now?"""
        try:
            return self.check(service_key).available
        except KeyError:
            return False

    def require(self, service_key: str) -> None:
        """Assert that a service is available, or raise with a clear message.

        Raises:
            ConfigurationError: If the service is not available
        """
        status = self.check(service_key)
        if not status.available:
            raise ConfigurationError(f"{status.name} is not available: {status.reason}")

    def readiness_report(self) -> ReadinessReport:
        """Generate a readiness report for all services."""
        services = list(self._statuses.values())

        category_ready: dict[str, bool] = {}
        for svc in services:
            key = svc.category.value
            category_ready[key] = category_ready.get(key, False) or svc.available

        lines = []
        for category in ServiceCategory:
            if category.value not in category_ready:
                continue
            marker = "READY" if category_ready[category.value] else "NOT READY"
            lines.append(f"  {category.value}: {marker}")
            for svc in services:
                if svc.category is category:
                    icon = "+" if svc.available else "-"
                    detail = svc.reason if svc.reason else "configured"
                    lines.append(f"    [{icon}] {svc.name}: {detail}")

        return ReadinessReport(
            services=services,
            category_ready=category_ready,
            summary="\n".join(lines),
        )

    def log_status(self) -> None:
        """Log the current service status at startup."""
        for svc in self._statuses.values():
            if svc.available:
                logger.info(
                    f"Service ready: {svc.name}",
                    extra={"context": {"service": svc.service_key}},
                )
            elif svc.credentials_present and svc.credentials_missing:
                logger.warning(
                    f"Service partially configured: {svc.name} - {svc.reason}",
                    extra={
                        "context": {
                            "service": svc.service_key,
                            "present": svc.credentials_present,
                            "missing": svc.credentials_missing,
                        }
                    },
                )
            else:
                logger.info(
                    f"Service not configured: {svc.name}",
                    extra={"context": {"service": svc.service_key}},
                )


# Singleton
_registry: Optional[ServiceRegistry] = None


def get_service_registry() -> ServiceRegistry:
    """Return the cached ServiceRegistry singleton."""
    global _registry
    if _registry is None:
        _registry = ServiceRegistry()
    return _registry


def reset_service_registry() -> None:
    """Reset the cached registry. Used for testing."""
    global _registry
    _registry = None
