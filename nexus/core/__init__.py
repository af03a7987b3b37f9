"""Core package - Configuration, logging, exceptions.

This package provides foundational infrastructure used by all other layers.

Modules:
    - config: Environment and configuration management
    - logging: Structured JSON logging
    - exceptions: Custom exception hierarchy
    - clock: Injectable wall clock
    - tasks: Background task execution
    - services: Provider readiness registry
"""

from nexus.core.exceptions import (
    ConfigurationError,
    DatabaseError,
    IntegrationError,
    NexusError,
    TransientIntegrationError,
    ValidationError,
    WorkflowError,
)

__all__ = [
    "NexusError",
    "ConfigurationError",
    "ValidationError",
    "DatabaseError",
    "IntegrationError",
    "TransientIntegrationError",
    "WorkflowError",
]
