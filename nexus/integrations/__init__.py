"""Integrations package - External service connections.

Modules:
    - base: Integration base class, capability contracts and result types
    - messaging: Outbound message routing (relay webhook, dry-run logger)
    - apify: Apify actor runs for external-action steps
"""

from nexus.integrations.base import (
    ActionResult,
    ActionStatus,
    ExternalActionCapability,
    IntegrationBase,
    SendCapability,
    SendResult,
)

__all__ = [
    "IntegrationBase",
    "SendCapability",
    "SendResult",
    "ExternalActionCapability",
    "ActionResult",
    "ActionStatus",
]
