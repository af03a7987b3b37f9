"""Nexus Exception Hierarchy.

All custom exceptions inherit from NexusError.
TransientIntegrationError is its own class because the automation
engines retry it, while every other integration failure is terminal.

Exception Hierarchy:
    NexusError (base)
    ├── ConfigurationError
    ├── ValidationError
    ├── DatabaseError
    ├── IntegrationError
    │   └── TransientIntegrationError
    └── WorkflowError
"""


class NexusError(Exception):
    """Base exception for all Nexus errors.

    All custom exceptions in the engine inherit from this class,
    allowing for broad exception handling when needed.
    """

    pass


class ConfigurationError(NexusError):
    """Configuration is invalid or missing.

    Raised when:
        - Required environment variable is missing
        - A numeric setting cannot be parsed
        - A step executor registry does not cover every step kind
    """

    pass


class ValidationError(NexusError):
    """Data validation failed.

    Raised when:
        - A workflow or sequence definition has an unknown step kind
        - A step is missing a required field
        - An inbound event payload cannot be normalized
    """

    pass


class DatabaseError(NexusError):
    """Database operation failed.

    Raised when:
        - Database file cannot be opened
        - Database is locked
        - Query execution fails
        - Foreign key constraint violated
    """

    pass


class IntegrationError(NexusError):
    """External integration failed.

    Base class for integration-specific errors. Raising this (or any other
    exception) from a step executor counts as a transient failure.
    """

    pass


class TransientIntegrationError(IntegrationError):
    """External call failed in a way that may succeed on retry.

    Raised when:
        - Request timed out
        - Connection was refused or reset
        - Provider returned a 5xx or 429 response
    """

    pass


class WorkflowError(NexusError):
    """Workflow or sequence operation failed.

    Raised when:
        - A state transition is not allowed from the current state
        - A branch targets a step index outside the definition
    """

    pass
