"""Data models and enumerations for the Nexus lifecycle engine.

All enums stored as TEXT in SQLite.
Dataclasses use frozen=False for mutability during processing, except the
step specs, which are immutable once a definition is loaded.

This module defines:
    - Enumerations for all categorical fields
    - Step specs (closed set of workflow/sequence step kinds)
    - Dataclasses for database records
    - Step parsing and serialization helpers
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, ClassVar, Optional, Union

from nexus.core.exceptions import ValidationError

# =============================================================================
# ENUMERATIONS
# =============================================================================


class EventKind(str, Enum):
    """Lifecycle event kinds accepted by the event bus."""

    EMAIL_OPEN = "email_open"
    EMAIL_CLICK = "email_click"
    REPLY = "reply"
    UNSUBSCRIBE = "unsubscribe"
    ENRICHMENT = "enrichment"
    FORM_SUBMITTED = "form_submitted"
    CONTACT_CREATED = "contact_created"
    SEQUENCE_COMPLETED = "sequence_completed"
    WORKFLOW_COMPLETED = "workflow_completed"
    TIME_DECAY = "time_decay"


class ScoreEvent(str, Enum):
    """Events that change a contact's lead score."""

    EMAIL_OPEN = "email_open"
    EMAIL_CLICK = "email_click"
    REPLY = "reply"
    SEQUENCE_COMPLETED = "sequence_completed"
    ENRICHMENT = "enrichment"
    TIME_DECAY = "time_decay"

    @property
    def label(self) -> str:
        """Human-readable label, e.g. 'email open'."""
        return self.value.replace("_", " ")


class ActivityType(str, Enum):
    """Type of activity logged against a contact."""

    NOTE = "note"
    SCORE_CHANGE = "score_change"
    WORKFLOW_STEP = "workflow_step"
    WORKFLOW_FAILED = "workflow_failed"
    SEQUENCE_STEP = "sequence_step"
    SEQUENCE_STOPPED = "sequence_stopped"
    SEQUENCE_FAILED = "sequence_failed"
    FORM_SUBMISSION = "form_submission"
    MESSAGE_RECEIVED = "message_received"


class InstanceState(str, Enum):
    """Run state of a workflow or sequence instance.

    RUNNING and WAITING are active; everything else is terminal.
    """

    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (InstanceState.RUNNING, InstanceState.WAITING)


ACTIVE_STATES = (InstanceState.RUNNING, InstanceState.WAITING)


class InstanceKind(str, Enum):
    """Which automation engine owns an instance."""

    WORKFLOW = "workflow"
    SEQUENCE = "sequence"


class StepKind(str, Enum):
    """Closed set of executable step kinds."""

    WAIT = "wait"
    EMAIL = "email"
    SMS = "sms"
    EXTERNAL_ACTION = "external_action"
    BRANCH = "branch"


class Channel(str, Enum):
    """Outbound message channel."""

    EMAIL = "email"
    SMS = "sms"


class MessageStatus(str, Enum):
    """Delivery status of an outbound message."""

    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class BranchOperator(str, Enum):
    """Comparison used by a branch step."""

    EQ = "eq"
    GT = "gt"
    LT = "lt"
    CONTAINS = "contains"


# =============================================================================
# STEP SPECS
# =============================================================================

MIN_WAIT = timedelta(minutes=1)


@dataclass(frozen=True)
class WaitStep:
    """Pause the run for a fixed duration."""

    duration: timedelta
    kind: ClassVar[StepKind] = StepKind.WAIT

    def __post_init__(self) -> None:
        if self.duration < MIN_WAIT:
            raise ValidationError(f"Wait duration must be at least one minute, got {self.duration}")


@dataclass(frozen=True)
class EmailStep:
    """Send an email. Subject and body are Jinja2 templates."""

    subject: str
    body: str
    kind: ClassVar[StepKind] = StepKind.EMAIL


@dataclass(frozen=True)
class SmsStep:
    """Send an SMS. Body is a Jinja2 template."""

    body: str
    kind: ClassVar[StepKind] = StepKind.SMS


@dataclass(frozen=True)
class ExternalActionStep:
    """Run an external actor and wait for its terminal status."""

    actor_id: str
    input: dict[str, Any] = field(default_factory=dict)
    kind: ClassVar[StepKind] = StepKind.EXTERNAL_ACTION


@dataclass(frozen=True)
class BranchStep:
    """Compare a contact field and jump.

    Attributes:
        field: Contact attribute or custom field name
        operator: Comparison to apply
        value: Right-hand side of the comparison
        on_true: Step index when the condition holds (None = next step)
        on_false: Step index otherwise (None = finish the run)
    """

    field: str
    operator: BranchOperator
    value: Any
    on_true: Optional[int] = None
    on_false: Optional[int] = None
    kind: ClassVar[StepKind] = StepKind.BRANCH


StepSpec = Union[WaitStep, EmailStep, SmsStep, ExternalActionStep, BranchStep]

SEQUENCE_STEP_KINDS = frozenset({StepKind.WAIT, StepKind.EMAIL, StepKind.SMS})

_WAIT_UNITS: list[tuple[str, int]] = [
    ("minute", 1),
    ("hour", 60),
    ("day", 1440),
    ("week", 10080),
]


def parse_wait_duration(value: Union[str, int, float, None]) -> timedelta:
    """Parse a wait phrase such as '2 days' or '90 minutes'.

    Bare numbers are minutes and may be fractional; phrases without a
    recognised unit are days. A missing or zero count in a phrase defaults
    to 1.

    Args:
        value: Phrase, or a number of minutes

    Returns:
        Wait duration
    """
    if value is None:
        return timedelta(days=1)
    if isinstance(value, (int, float)):
        if value < 1:
            raise ValidationError(f"Wait duration must be at least one minute, got {value}")
        return timedelta(minutes=value)

    text = value.strip().lower()
    match = re.match(r"^\s*(\d+)", text)
    count = int(match.group(1)) if match and int(match.group(1)) > 0 else 1

    for unit, minutes in _WAIT_UNITS:
        if unit in text:
            return timedelta(minutes=count * minutes)
    return timedelta(days=count)


def _require(data: dict[str, Any], key: str, kind: str) -> Any:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{kind} step requires '{key}'")
    return value


def _optional_index(data: dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, int) or value < 0:
        raise ValidationError(f"Branch '{key}' must be a non-negative step index, got {value!r}")
    return value


_KIND_ALIASES = {"condition": StepKind.BRANCH.value}
_FIELD_ALIASES = {"leadScore": "lead_score"}


def parse_step(data: dict[str, Any]) -> StepSpec:
    """Build a step spec from its stored JSON form.

    Accepts ``{"type": ..., "config": {...}}`` as well as a flat dict. A
    ``condition`` step is a branch that continues when it holds and ends
    the run otherwise.

    Raises:
        ValidationError: For unknown kinds or missing fields
    """
    raw_kind = data.get("type") or data.get("kind")
    config = data.get("config") if isinstance(data.get("config"), dict) else data
    if isinstance(raw_kind, str):
        raw_kind = _KIND_ALIASES.get(raw_kind, raw_kind)

    try:
        kind = StepKind(raw_kind)
    except ValueError:
        raise ValidationError(f"Unknown step kind: {raw_kind!r}") from None

    if kind is StepKind.WAIT:
        if config.get("seconds") is not None:
            seconds = config["seconds"]
            if not isinstance(seconds, (int, float)):
                raise ValidationError(f"Wait seconds must be a number, got {seconds!r}")
            return WaitStep(duration=timedelta(seconds=seconds))
        if config.get("minutes") is not None:
            return WaitStep(duration=parse_wait_duration(config["minutes"]))
        return WaitStep(duration=parse_wait_duration(config.get("waitTime") or config.get("duration")))
    if kind is StepKind.EMAIL:
        body = config.get("body") if config.get("body") is not None else config.get("message", "")
        return EmailStep(subject=config.get("subject") or "Automated Message", body=body or "")
    if kind is StepKind.SMS:
        body = config.get("body") if config.get("body") is not None else config.get("message", "")
        return SmsStep(body=body or "")
    if kind is StepKind.EXTERNAL_ACTION:
        actor_id = config.get("actor_id") or config.get("actorId")
        if not actor_id:
            raise ValidationError("external_action step requires 'actor_id'")
        return ExternalActionStep(actor_id=actor_id, input=dict(config.get("input") or {}))

    # BRANCH
    field_name = _require(config, "field", "branch")
    try:
        operator = BranchOperator(_require(config, "operator", "branch"))
    except ValueError:
        raise ValidationError(f"Unknown branch operator: {config.get('operator')!r}") from None
    return BranchStep(
        field=_FIELD_ALIASES.get(field_name, field_name),
        operator=operator,
        value=config.get("value"),
        on_true=_optional_index(config, "on_true"),
        on_false=_optional_index(config, "on_false"),
    )


def step_to_dict(step: StepSpec) -> dict[str, Any]:
    """Serialize a step spec for storage."""
    if isinstance(step, WaitStep):
        config: dict[str, Any] = {"seconds": int(step.duration.total_seconds())}
    elif isinstance(step, EmailStep):
        config = {"subject": step.subject, "body": step.body}
    elif isinstance(step, SmsStep):
        config = {"body": step.body}
    elif isinstance(step, ExternalActionStep):
        config = {"actor_id": step.actor_id, "input": step.input}
    else:
        config = {
            "field": step.field,
            "operator": step.operator.value,
            "value": step.value,
            "on_true": step.on_true,
            "on_false": step.on_false,
        }
    return {"type": step.kind.value, "config": config}


def describe_step(step: StepSpec) -> str:
    """Short label for activity logs and notifications."""
    if isinstance(step, WaitStep):
        seconds = int(step.duration.total_seconds())
        if seconds % 60:
            return f"wait {seconds}s"
        minutes = seconds // 60
        if minutes % 1440 == 0:
            return f"wait {minutes // 1440}d"
        if minutes % 60 == 0:
            return f"wait {minutes // 60}h"
        return f"wait {minutes}m"
    if isinstance(step, EmailStep):
        return f"email '{step.subject}'"
    if isinstance(step, SmsStep):
        return "sms"
    if isinstance(step, ExternalActionStep):
        return f"action {step.actor_id}"
    return f"branch {step.field} {step.operator.value} {step.value!r}"


# =============================================================================
# DATACLASSES
# =============================================================================


@dataclass
class Contact:
    """Contact record, owned by exactly one sub-account.

    Attributes:
        id: Primary key (uuid hex)
        sub_account_id: Owning tenant
        name: Display name
        email: Email address ('' if unknown)
        phone: Phone number ('' if unknown)
        status: Pipeline status (Lead, Interested, ...)
        source: Where the contact came from
        tags: Free-form tags
        lead_score: Sales-readiness 0-100
        custom_fields: Enrichment data (website, owner_name, google_rating, ...)
        last_activity: One-line summary of the latest change
        created_at: Record creation time
    """

    id: Optional[str] = None
    sub_account_id: str = ""
    name: str = ""
    email: str = ""
    phone: str = ""
    status: str = "Lead"
    source: str = "Direct"
    tags: list[str] = field(default_factory=list)
    lead_score: int = 40
    custom_fields: dict[str, Any] = field(default_factory=dict)
    last_activity: str = "Initialized"
    created_at: Optional[datetime] = None

    @property
    def first_name(self) -> str:
        return self.name.split(" ", 1)[0] if self.name else ""

    def address_for(self, channel: Channel) -> str:
        """Delivery address for a channel ('' if none)."""
        return self.email if channel is Channel.EMAIL else self.phone


@dataclass
class Activity:
    """Immutable audit entry on a contact's timeline."""

    id: Optional[str] = None
    contact_id: str = ""
    type: ActivityType = ActivityType.NOTE
    content: str = ""
    timestamp: Optional[datetime] = None


@dataclass
class Message:
    """Outbound message sent by an automation step.

    A SENT message for (instance_kind, instance_id, step_index) marks that
    step as executed.
    """

    id: Optional[str] = None
    contact_id: str = ""
    channel: Channel = Channel.EMAIL
    content: str = ""
    subject: Optional[str] = None
    status: MessageStatus = MessageStatus.QUEUED
    provider_id: Optional[str] = None
    error: Optional[str] = None
    instance_kind: Optional[InstanceKind] = None
    instance_id: Optional[str] = None
    step_index: Optional[int] = None
    timestamp: Optional[datetime] = None


@dataclass
class WorkflowDefinition:
    """Tenant-owned multi-step automation template."""

    id: Optional[str] = None
    sub_account_id: str = ""
    name: str = ""
    trigger: str = ""
    steps: list[StepSpec] = field(default_factory=list)
    is_active: bool = False
    version: int = 1
    created_at: Optional[datetime] = None


@dataclass
class SequenceDefinition:
    """Linear drip campaign: wait and send steps only.

    Attributes:
        stop_on_reply: A reply from the contact ends their enrollment
    """

    id: Optional[str] = None
    sub_account_id: str = ""
    name: str = "Default Sequence"
    steps: list[StepSpec] = field(default_factory=list)
    stop_on_reply: bool = True
    is_active: bool = True
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        for step in self.steps:
            if step.kind not in SEQUENCE_STEP_KINDS:
                raise ValidationError(f"Sequences do not support '{step.kind.value}' steps")


@dataclass
class AutomationInstance(ABC):
    """Fields shared by workflow and sequence runs.

    Attributes:
        id: Primary key
        contact_id: Contact the run belongs to
        current_step_index: Next step to execute
        state: Run state
        wake_at: When a waiting run becomes due
        attempts: Consecutive transient failures on the current step
        context: Step outputs and pending external run ids
        error: Terminal failure or cancellation reason
        version: Optimistic lock counter, bumped on every write
        started_at: When the run was created
        updated_at: Last write
        completed_at: When the run reached a terminal state
    """

    kind: ClassVar[InstanceKind]

    id: Optional[str] = None
    contact_id: str = ""
    current_step_index: int = 0
    state: InstanceState = InstanceState.RUNNING
    wake_at: Optional[datetime] = None
    attempts: int = 0
    context: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    version: int = 0
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    @abstractmethod
    def definition_id(self) -> str:
        """ID of the workflow or sequence being run."""

    @property
    def is_active(self) -> bool:
        return self.state.is_active


@dataclass
class WorkflowInstance(AutomationInstance):
    """One run of a workflow against one contact."""

    kind: ClassVar[InstanceKind] = InstanceKind.WORKFLOW

    workflow_id: str = ""

    @property
    def definition_id(self) -> str:
        return self.workflow_id


@dataclass
class SequenceInstance(AutomationInstance):
    """One enrollment of a contact in a sequence.

    Engagement counters are written by atomic increments, never by a
    full-row save.
    """

    kind: ClassVar[InstanceKind] = InstanceKind.SEQUENCE

    sequence_id: str = ""
    stop_reason: Optional[str] = None
    sent_count: int = 0
    open_count: int = 0
    click_count: int = 0
    reply_count: int = 0

    @property
    def definition_id(self) -> str:
        return self.sequence_id


@dataclass
class LifecycleEvent:
    """Normalized event delivered to the event bus.

    Attributes:
        kind: Event kind
        contact_id: Contact the event is about (resolved from email if missing)
        sub_account_id: Tenant, filled from the contact when dispatched
        email: Address used to look up the contact when no id is given
        data: Extra payload (channel, source workflow id, form fields, ...)
        occurred_at: When the event happened
    """

    kind: EventKind
    contact_id: Optional[str] = None
    sub_account_id: Optional[str] = None
    email: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    occurred_at: Optional[datetime] = None
