"""Step executors shared by the workflow and sequence engines.

Each StepKind has exactly one executor. An executor returns a StepOutcome
describing what the engine should do next; it never writes instance state
itself. An executor that raises is reporting a transient problem (the
engine retries later); a FAIL outcome is final.

Usage:
    executors = StepExecutors(db, sender, actions, config)
    registry = executors.registry()          # every StepKind
    outcome = registry.execute(ctx, step)
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from nexus.core.config import Config, get_config
from nexus.core.exceptions import ConfigurationError, ValidationError, WorkflowError
from nexus.core.logging import get_logger
from nexus.db.database import Database
from nexus.db.models import (
    AutomationInstance,
    BranchOperator,
    BranchStep,
    Channel,
    Contact,
    EmailStep,
    ExternalActionStep,
    Message,
    MessageStatus,
    SmsStep,
    StepKind,
    StepSpec,
    WaitStep,
)
from nexus.engine.templates import contact_context, render_message
from nexus.integrations.base import ActionStatus, ExternalActionCapability, SendCapability

logger = get_logger(__name__)


class StepStatus(str, Enum):
    """What the engine does after a step.

    ADVANCE: step done, continue at next_index
    WAIT: step done, park until wake_at then continue at next_index
    PENDING: step not done yet, re-run the same step at wake_at
    COMPLETE: end the run successfully
    FAIL: end the run as failed
    """

    ADVANCE = "advance"
    WAIT = "wait"
    PENDING = "pending"
    COMPLETE = "complete"
    FAIL = "fail"


@dataclass
class StepOutcome:
    """Result of executing one step.

    Attributes:
        status: What the engine should do next
        next_index: Step to continue at (None = the following step)
        wake_at: When a WAIT or PENDING instance becomes due
        output: Stored in the instance context under ``step_<index>``
        error: Failure text for FAIL
        summary: One-line description for the activity log
    """

    status: StepStatus
    next_index: Optional[int] = None
    wake_at: Optional[datetime] = None
    output: Any = None
    error: Optional[str] = None
    summary: str = ""

    @classmethod
    def advance(cls, summary: str, output: Any = None, next_index: Optional[int] = None) -> "StepOutcome":
        return cls(StepStatus.ADVANCE, next_index=next_index, output=output, summary=summary)

    @classmethod
    def fail(cls, error: str) -> "StepOutcome":
        return cls(StepStatus.FAIL, error=error, summary=f"Failed: {error}")


@dataclass
class StepContext:
    """Everything an executor may read about the step it runs.

    Executors may record pending external work in ``instance.context``.
    """

    instance: AutomationInstance
    contact: Contact
    step_index: int
    now: datetime
    outputs: dict[str, Any] = field(default_factory=dict)


Executor = Callable[[StepContext, Any], StepOutcome]


class ExecutorRegistry:
    """Mapping of StepKind to executor, checked for coverage up front.

    Raises:
        ConfigurationError: If any required kind has no executor
    """

    def __init__(
        self,
        executors: dict[StepKind, Executor],
        kinds: Iterable[StepKind] = tuple(StepKind),
    ) -> None:
        self.kinds = frozenset(kinds)
        missing = sorted(kind.value for kind in self.kinds - executors.keys())
        if missing:
            raise ConfigurationError(f"No executor registered for step kinds: {', '.join(missing)}")
        self._executors = {kind: executors[kind] for kind in self.kinds}

    def supports(self, kind: StepKind) -> bool:
        return kind in self._executors

    def execute(self, ctx: StepContext, step: StepSpec) -> StepOutcome:
        executor = self._executors.get(step.kind)
        if executor is None:
            raise WorkflowError(f"Step kind '{step.kind.value}' is not executable here")
        return executor(ctx, step)


# =============================================================================
# CONDITIONS
# =============================================================================


def _as_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_condition(step: BranchStep, values: dict[str, Any]) -> bool:
    """Evaluate a branch condition against flattened contact values.

    Numeric comparisons with a non-numeric side are false.
    """
    actual = values.get(step.field)
    expected = step.value

    if step.operator is BranchOperator.EQ:
        if actual == expected:
            return True
        left, right = _as_number(actual), _as_number(expected)
        if left is not None and right is not None:
            return left == right
        return actual is not None and expected is not None and str(actual) == str(expected)

    if step.operator is BranchOperator.CONTAINS:
        if actual is None or expected is None:
            return False
        if isinstance(actual, (list, tuple, set)):
            return expected in actual or str(expected) in {str(item) for item in actual}
        return str(expected) in str(actual)

    left, right = _as_number(actual), _as_number(expected)
    if left is None or right is None:
        return False
    if step.operator is BranchOperator.GT:
        return left > right
    return left < right


# =============================================================================
# EXECUTORS
# =============================================================================


class StepExecutors:
    """Executors bound to the services they need.

    Attributes:
        db: Database, used for message records
        sender: Send capability for email/sms steps
        actions: External action capability (None disables external_action)
        poll_interval: How long a running external action waits between checks
    """

    def __init__(
        self,
        db: Database,
        sender: SendCapability,
        actions: Optional[ExternalActionCapability] = None,
        config: Optional[Config] = None,
    ) -> None:
        config = config or get_config()
        self.db = db
        self.sender = sender
        self.actions = actions
        self.poll_interval = timedelta(seconds=config.action_poll_seconds)

    def registry(self, kinds: Iterable[StepKind] = tuple(StepKind)) -> ExecutorRegistry:
        """Build a registry covering ``kinds``."""
        return ExecutorRegistry(
            {
                StepKind.WAIT: self.wait,
                StepKind.EMAIL: self.email,
                StepKind.SMS: self.sms,
                StepKind.EXTERNAL_ACTION: self.external_action,
                StepKind.BRANCH: self.branch,
            },
            kinds,
        )

    def wait(self, ctx: StepContext, step: WaitStep) -> StepOutcome:
        wake_at = ctx.now + step.duration
        return StepOutcome(
            StepStatus.WAIT,
            wake_at=wake_at,
            summary=f"Waiting until {wake_at:%Y-%m-%d %H:%M}",
        )

    def email(self, ctx: StepContext, step: EmailStep) -> StepOutcome:
        return self._send(ctx, Channel.EMAIL, step.body, step.subject)

    def sms(self, ctx: StepContext, step: SmsStep) -> StepOutcome:
        return self._send(ctx, Channel.SMS, step.body, None)

    def _send(
        self,
        ctx: StepContext,
        channel: Channel,
        body_template: str,
        subject_template: Optional[str],
    ) -> StepOutcome:
        instance = ctx.instance
        assert instance.id is not None

        already_sent = self.db.get_sent_message_for_step(instance.kind, instance.id, ctx.step_index)
        if already_sent is not None:
            return StepOutcome.advance(
                f"{channel.value} already sent",
                output={"messageId": already_sent.id, "deduplicated": True},
            )

        if not ctx.contact.address_for(channel):
            return StepOutcome.fail("no_delivery_address")

        try:
            body = render_message(body_template, ctx.contact)
            subject = render_message(subject_template, ctx.contact) if subject_template else None
        except ValidationError as e:
            return StepOutcome.fail(str(e))
        if not body:
            return StepOutcome.fail("empty_body")

        message = Message(
            contact_id=ctx.contact.id or "",
            channel=channel,
            content=body,
            subject=subject,
            instance_kind=instance.kind,
            instance_id=instance.id,
            step_index=ctx.step_index,
            timestamp=ctx.now,
        )
        self.db.create_message(message)
        assert message.id is not None

        try:
            result = self.sender.send(ctx.contact.id or "", channel, body, subject)
        except Exception as e:
            self.db.update_message_status(message.id, MessageStatus.FAILED, error=str(e))
            raise

        if not result.success:
            self.db.update_message_status(message.id, MessageStatus.FAILED, error=result.error)
            return StepOutcome.fail(result.error or f"{channel.value} send rejected")

        self.db.update_message_status(message.id, MessageStatus.SENT, provider_id=result.provider_id)
        label = f"Email sent: {subject}" if channel is Channel.EMAIL else "SMS sent"
        return StepOutcome.advance(
            label, output={"messageId": message.id, "providerId": result.provider_id}
        )

    def external_action(self, ctx: StepContext, step: ExternalActionStep) -> StepOutcome:
        if self.actions is None:
            return StepOutcome.fail("no external action provider configured")

        context = ctx.instance.context
        pending = context.get("pending_action")
        if pending and pending.get("step") == ctx.step_index:
            result = self.actions.check(pending["run_id"])
        else:
            result = self.actions.invoke(step.actor_id, dict(step.input))

        if result.status is ActionStatus.SUCCESS:
            context.pop("pending_action", None)
            return StepOutcome.advance(f"Action {step.actor_id} succeeded", output=result.data)

        if result.status is ActionStatus.RUNNING:
            if not result.run_id:
                context.pop("pending_action", None)
                return StepOutcome.fail(f"Action {step.actor_id} is running but returned no run id")
            context["pending_action"] = {"step": ctx.step_index, "run_id": result.run_id}
            return StepOutcome(
                StepStatus.PENDING,
                wake_at=ctx.now + self.poll_interval,
                summary=f"Action {step.actor_id} running (run {result.run_id})",
            )

        context.pop("pending_action", None)
        return StepOutcome.fail(result.error or f"Action {step.actor_id} failed")

    def branch(self, ctx: StepContext, step: BranchStep) -> StepOutcome:
        passed = evaluate_condition(step, contact_context(ctx.contact))
        label = f"{step.field} {step.operator.value} {step.value!r}"

        if passed:
            target = step.on_true if step.on_true is not None else ctx.step_index + 1
            return StepOutcome.advance(f"Condition met: {label}", {"passed": True}, target)
        if step.on_false is None:
            return StepOutcome(
                StepStatus.COMPLETE,
                output={"passed": False},
                summary=f"Condition not met: {label}",
            )
        return StepOutcome.advance(f"Condition not met: {label}", {"passed": False}, step.on_false)
