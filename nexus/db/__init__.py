"""Database package - SQLite persistence and data models.

Modules:
    - database: SQLite connection and operations
    - models: Data models, step specs and enumerations
"""

from nexus.db.models import (
    Activity,
    ActivityType,
    BranchOperator,
    BranchStep,
    Channel,
    Contact,
    EmailStep,
    EventKind,
    ExternalActionStep,
    InstanceKind,
    InstanceState,
    LifecycleEvent,
    Message,
    MessageStatus,
    ScoreEvent,
    SequenceDefinition,
    SequenceInstance,
    SmsStep,
    StepKind,
    WaitStep,
    WorkflowDefinition,
    WorkflowInstance,
)

__all__ = [
    # Enums
    "EventKind",
    "ScoreEvent",
    "ActivityType",
    "InstanceState",
    "InstanceKind",
    "StepKind",
    "Channel",
    "MessageStatus",
    "BranchOperator",
    # Step specs
    "WaitStep",
    "EmailStep",
    "SmsStep",
    "ExternalActionStep",
    "BranchStep",
    # Dataclasses
    "Contact",
    "Activity",
    "Message",
    "LifecycleEvent",
    "WorkflowDefinition",
    "WorkflowInstance",
    "SequenceDefinition",
    "SequenceInstance",
]
