"""Durable step runner shared by the workflow and sequence engines.

An instance advances one step at a time and is saved after every step, so
a step recorded as done is never executed again. Waits and running
external actions park the instance in ``waiting`` with a ``wake_at``;
``tick()`` claims due instances with a compare-and-set on the row version
and resumes only the ones it claimed.

Failure handling:
    - An executor that raises is transient: the step is retried after an
      exponential, capped backoff until max_retries is used up.
    - A FAIL outcome is terminal: the instance is marked failed.
    - A pass that raises outside an executor leaves the instance parked on
      the same backoff. A running row untouched for a whole lease is made
      due again by the next tick.
    - Failures are logged and recorded, never raised to the caller.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, ClassVar, Optional

from nexus.core.clock import Clock, SystemClock
from nexus.core.config import Config, get_config
from nexus.core.exceptions import WorkflowError
from nexus.core.logging import get_logger
from nexus.db.database import Database
from nexus.db.models import (
    Activity,
    ActivityType,
    AutomationInstance,
    Contact,
    InstanceKind,
    InstanceState,
    StepSpec,
    describe_step,
)
from nexus.engine.notifications import NotificationPublisher
from nexus.engine.steps import ExecutorRegistry, StepContext, StepOutcome, StepStatus

logger = get_logger(__name__)

CompletionListener = Callable[[AutomationInstance], None]


class RunStatus(str, Enum):
    STARTED = "started"
    ALREADY_ACTIVE = "already_active"
    NOT_FOUND = "not_found"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class RunOutcome:
    """Result of starting a workflow run or a sequence enrollment.

    Attributes:
        status: What happened
        instance_id: Instance created (or the one already active)
        state: Instance state once the first pass finished
        error: Why nothing was started, or the instance's failure text
    """

    status: RunStatus
    instance_id: Optional[str] = None
    state: Optional[InstanceState] = None
    error: Optional[str] = None


@dataclass
class TickResult:
    """Counts from one scheduler sweep.

    Attributes:
        due: Instances found due
        resumed: Instances claimed and resumed by this tick
        skipped: Instances claimed by someone else first
        errors: Instances whose resume raised
        reclaimed: Running instances whose lease expired, made due again
    """

    due: int = 0
    resumed: int = 0
    skipped: int = 0
    errors: int = 0
    reclaimed: int = 0


class AutomationRunner(ABC):
    """Base engine. Subclasses bind a definition type and instance kind."""

    kind: ClassVar[InstanceKind]
    label: ClassVar[str]
    step_activity: ClassVar[ActivityType]
    failure_activity: ClassVar[ActivityType]
    started_notification: ClassVar[str]
    step_notification: ClassVar[str]
    completed_notification: ClassVar[str]

    # Upper bound on synchronous steps (branches, sends) in one pass
    max_steps_per_pass = 100
    tick_batch_size = 100

    def __init__(
        self,
        db: Database,
        registry: ExecutorRegistry,
        publisher: Optional[NotificationPublisher] = None,
        clock: Optional[Clock] = None,
        config: Optional[Config] = None,
    ) -> None:
        config = config or get_config()
        self.db = db
        self.registry = registry
        self.clock = clock or SystemClock()
        self.publisher = publisher or NotificationPublisher(self.clock)
        self.max_retries = config.send_max_retries
        self.retry_base = timedelta(seconds=config.retry_base_seconds)
        self.retry_max = timedelta(seconds=config.retry_max_seconds)
        self.lease = timedelta(seconds=config.running_lease_seconds)
        self._completion_listeners: list[CompletionListener] = []

    # =========================================================================
    # SUBCLASS HOOKS
    # =========================================================================

    @abstractmethod
    def _load_definition(self, instance: AutomationInstance) -> Any:
        """The definition an instance runs, or None if it was deleted."""

    def _payload(self, instance: AutomationInstance) -> dict[str, Any]:
        """Notification payload identifying the instance."""
        return {
            "instanceId": instance.id,
            "definitionId": instance.definition_id,
            "contactId": instance.contact_id,
        }

    def _on_step_done(self, instance: AutomationInstance, step: StepSpec, outcome: StepOutcome) -> None:
        """Adjust the instance before a finished step is saved."""

    def add_completion_listener(self, listener: CompletionListener) -> None:
        """Call ``listener(instance)`` whenever an instance completes normally."""
        self._completion_listeners.append(listener)

    # =========================================================================
    # SCHEDULING
    # =========================================================================

    def retry_delay(self, attempts: int) -> timedelta:
        """Backoff before retry number ``attempts`` (1-based)."""
        return min(self.retry_base * (2 ** (attempts - 1)), self.retry_max)

    def tick(self) -> TickResult:
        """Resume every waiting instance whose wake_at has passed."""
        now = self.clock.now()
        result = TickResult()

        result.reclaimed = self._reclaim_stale(now)

        due = self.db.get_due_instances(self.kind, now, self.tick_batch_size)
        result.due = len(due)

        for instance in due:
            claimed = False
            try:
                claimed = self.db.claim_instance(instance, now)
                if not claimed:
                    result.skipped += 1
                    continue
                result.resumed += 1
                self._resume(instance)
            except Exception as e:
                result.errors += 1
                logger.error(
                    f"{self.label} resume failed: {e}",
                    extra={"context": {"instance_id": instance.id}},
                    exc_info=True,
                )
                if claimed:
                    self._recover(instance, e)

        if result.due or result.reclaimed:
            logger.info(
                f"{self.label} tick",
                extra={
                    "context": {
                        "due": result.due,
                        "reclaimed": result.reclaimed,
                        "resumed": result.resumed,
                        "skipped": result.skipped,
                        "errors": result.errors,
                    }
                },
            )
        return result

    def _reclaim_stale(self, now: datetime) -> int:
        """Make running instances whose lease expired due again.

        A pass saves the instance after every step, so a running row that
        has not been written for a whole lease belongs to a pass that died.
        """
        stale = self.db.get_stale_instances(self.kind, now - self.lease, self.tick_batch_size)
        reclaimed = 0
        for instance in stale:
            instance.state = InstanceState.WAITING
            instance.wake_at = now
            instance.error = "lease_expired"
            instance.updated_at = now
            if self.db.save_instance(instance):
                reclaimed += 1
                logger.warning(
                    f"{self.label} lease expired, rescheduling",
                    extra={
                        "context": {
                            "instance_id": instance.id,
                            "step_index": instance.current_step_index,
                        }
                    },
                )
        return reclaimed

    def _recover(
        self, instance: AutomationInstance, error: Exception
    ) -> Optional[AutomationInstance]:
        """Park an instance left running by a pass that raised.

        The stored row is re-read, since the pass may have saved progress
        before it raised. A row still running is retried with the step
        backoff, or failed once retries are used up.

        Returns:
            The row as stored afterwards, or None if it could not be read
        """
        try:
            current = self.db.get_instance(self.kind, instance.id or "")
            if current is None or current.state is not InstanceState.RUNNING:
                return current

            now = self.clock.now()
            current.attempts += 1
            current.error = str(error)
            current.updated_at = now
            if current.attempts > self.max_retries:
                current.state = InstanceState.FAILED
                current.error = f"retries exhausted after {current.attempts} attempts: {error}"
                current.wake_at = None
                current.completed_at = now
            else:
                current.state = InstanceState.WAITING
                current.wake_at = now + self.retry_delay(current.attempts)

            if self.db.save_instance(current):
                logger.warning(
                    f"{self.label} parked after error: {current.state.value}",
                    extra={
                        "context": {
                            "instance_id": current.id,
                            "step_index": current.current_step_index,
                            "attempt": current.attempts,
                            "wake_at": current.wake_at,
                        }
                    },
                )
            return current
        except Exception as e:
            # Left running; the lease sweep picks it up
            logger.error(
                f"{self.label} could not park instance: {e}",
                extra={"context": {"instance_id": instance.id}},
                exc_info=True,
            )
            return None

    def _resume(self, instance: AutomationInstance) -> None:
        definition = self._load_definition(instance)
        contact = self.db.get_contact(instance.contact_id)

        if definition is None:
            self._finish(instance, contact, InstanceState.FAILED, "definition_deleted")
            return
        if not definition.is_active:
            self._finish(instance, contact, InstanceState.CANCELLED, "definition_inactive")
            return
        if contact is None:
            self._finish(instance, None, InstanceState.FAILED, "contact_deleted")
            return

        self._advance(instance, definition, contact)

    def _begin(self, instance: AutomationInstance, definition: Any, contact: Contact) -> RunOutcome:
        """Persist a new instance and run it until it parks or ends."""
        now = self.clock.now()
        instance.started_at = now
        instance.updated_at = now

        if self.db.create_instance(instance) is None:
            active = [
                existing
                for existing in self.db.get_instances_for_contact(
                    self.kind, contact.id or "", active_only=True
                )
                if existing.definition_id == instance.definition_id
            ]
            return RunOutcome(
                status=RunStatus.ALREADY_ACTIVE,
                instance_id=active[0].id if active else None,
                state=active[0].state if active else None,
            )

        logger.info(
            f"{self.label} started",
            extra={
                "context": {
                    "instance_id": instance.id,
                    "definition_id": instance.definition_id,
                    "contact_id": contact.id,
                }
            },
        )
        self.publisher.publish(
            self.started_notification, {**self._payload(instance), "name": definition.name}
        )
        try:
            self._advance(instance, definition, contact)
        except Exception as e:
            logger.error(
                f"{self.label} first pass failed: {e}",
                extra={"context": {"instance_id": instance.id}},
                exc_info=True,
            )
            instance = self._recover(instance, e) or instance
        return RunOutcome(
            status=RunStatus.STARTED,
            instance_id=instance.id,
            state=instance.state,
            error=instance.error,
        )

    # =========================================================================
    # STEP LOOP
    # =========================================================================

    def _advance(self, instance: AutomationInstance, definition: Any, contact: Contact) -> None:
        steps: list[StepSpec] = definition.steps

        for _ in range(self.max_steps_per_pass):
            index = instance.current_step_index
            if index >= len(steps):
                self._complete(instance, definition, contact)
                return

            step = steps[index]
            ctx = StepContext(
                instance=instance,
                contact=contact,
                step_index=index,
                now=self.clock.now(),
                outputs=instance.context.get("outputs", {}),
            )
            try:
                outcome = self.registry.execute(ctx, step)
            except WorkflowError as e:
                outcome = StepOutcome.fail(str(e))
            except Exception as e:
                self._retry_later(instance, definition, contact, step, e)
                return

            if not self._apply(instance, definition, contact, step, outcome):
                return
            if outcome.status is not StepStatus.ADVANCE:
                return

        self._fail(
            instance,
            definition,
            contact,
            f"more than {self.max_steps_per_pass} steps without a wait",
        )

    def _apply(
        self,
        instance: AutomationInstance,
        definition: Any,
        contact: Contact,
        step: StepSpec,
        outcome: StepOutcome,
    ) -> bool:
        """Record a step outcome. Returns False if the run must stop here."""
        index = instance.current_step_index
        now = self.clock.now()

        if outcome.output is not None:
            instance.context.setdefault("outputs", {})[f"step_{index}"] = outcome.output

        if outcome.status is StepStatus.FAIL:
            self._fail(instance, definition, contact, outcome.error or "step failed", step)
            return False

        if outcome.status is StepStatus.COMPLETE:
            self._record_step(instance, definition, contact, step, index, outcome)
            self._complete(instance, definition, contact)
            return False

        if outcome.status is StepStatus.ADVANCE:
            target = outcome.next_index if outcome.next_index is not None else index + 1
            if not 0 <= target <= len(definition.steps):
                self._fail(instance, definition, contact, f"step target {target} out of range", step)
                return False
            instance.current_step_index = target
            instance.state = InstanceState.RUNNING
            instance.wake_at = None
        elif outcome.status is StepStatus.WAIT:
            instance.current_step_index = index + 1
            instance.state = InstanceState.WAITING
            instance.wake_at = outcome.wake_at
        else:  # PENDING: same step again at wake_at
            instance.state = InstanceState.WAITING
            instance.wake_at = outcome.wake_at

        instance.attempts = 0
        instance.error = None
        instance.updated_at = now
        self._on_step_done(instance, step, outcome)

        if not self._save(instance):
            return False
        self._record_step(instance, definition, contact, step, index, outcome)
        return True

    def _retry_later(
        self,
        instance: AutomationInstance,
        definition: Any,
        contact: Contact,
        step: StepSpec,
        error: Exception,
    ) -> None:
        instance.attempts += 1
        index = instance.current_step_index

        if instance.attempts > self.max_retries:
            self._fail(
                instance,
                definition,
                contact,
                f"retries exhausted after {instance.attempts} attempts: {error}",
                step,
            )
            return

        delay = self.retry_delay(instance.attempts)
        now = self.clock.now()
        instance.state = InstanceState.WAITING
        instance.wake_at = now + delay
        instance.error = str(error)
        instance.updated_at = now
        if not self._save(instance):
            return

        logger.warning(
            f"{self.label} step failed, retrying in {int(delay.total_seconds())}s: {error}",
            extra={
                "context": {
                    "instance_id": instance.id,
                    "step_index": index,
                    "attempt": instance.attempts,
                }
            },
        )
        self._log_activity(
            contact.id,
            self.step_activity,
            f"{definition.name}: step {index + 1} ({describe_step(step)}) retry "
            f"{instance.attempts}/{self.max_retries} at {instance.wake_at:%Y-%m-%d %H:%M}: {error}",
        )
        self.publisher.publish(
            self.step_notification,
            {
                **self._payload(instance),
                "stepIndex": index,
                "stepType": step.kind.value,
                "status": "retrying",
                "error": str(error),
            },
        )

    # =========================================================================
    # TERMINAL TRANSITIONS
    # =========================================================================

    def _complete(self, instance: AutomationInstance, definition: Any, contact: Contact) -> None:
        now = self.clock.now()
        instance.state = InstanceState.COMPLETED
        instance.wake_at = None
        instance.error = None
        instance.completed_at = now
        instance.updated_at = now
        if not self._save(instance):
            return

        self._log_activity(contact.id, self.step_activity, f"{definition.name}: completed")
        self.publisher.publish(self.completed_notification, self._payload(instance))
        logger.info(
            f"{self.label} completed",
            extra={"context": {"instance_id": instance.id, "contact_id": contact.id}},
        )

        for listener in list(self._completion_listeners):
            try:
                listener(instance)
            except Exception as e:
                logger.error(
                    f"{self.label} completion listener failed: {e}",
                    extra={"context": {"instance_id": instance.id}},
                    exc_info=True,
                )

    def _fail(
        self,
        instance: AutomationInstance,
        definition: Any,
        contact: Contact,
        error: str,
        step: Optional[StepSpec] = None,
    ) -> None:
        index = instance.current_step_index
        now = self.clock.now()
        instance.state = InstanceState.FAILED
        instance.error = error
        instance.wake_at = None
        instance.completed_at = now
        instance.updated_at = now
        if not self._save(instance):
            return

        where = f"step {index + 1} ({describe_step(step)})" if step is not None else f"step {index + 1}"
        self._log_activity(
            contact.id, self.failure_activity, f"{definition.name}: failed at {where}: {error}"
        )
        self.publisher.publish(
            self.step_notification,
            {
                **self._payload(instance),
                "stepIndex": index,
                "stepType": step.kind.value if step is not None else None,
                "status": "failed",
                "error": error,
            },
        )
        logger.warning(
            f"{self.label} failed: {error}",
            extra={"context": {"instance_id": instance.id, "step_index": index}},
        )

    def _finish(
        self,
        instance: AutomationInstance,
        contact: Optional[Contact],
        state: InstanceState,
        reason: str,
    ) -> None:
        """End an instance that can no longer run (definition or contact gone)."""
        now = self.clock.now()
        instance.state = state
        instance.error = reason
        instance.wake_at = None
        instance.completed_at = now
        instance.updated_at = now
        if not self._save(instance):
            return

        if contact is not None:
            self._log_activity(
                contact.id, self.failure_activity, f"{self.label} {state.value}: {reason}"
            )
        self.publisher.publish(
            self.step_notification,
            {**self._payload(instance), "status": state.value, "error": reason},
        )
        logger.info(
            f"{self.label} {state.value}: {reason}",
            extra={"context": {"instance_id": instance.id}},
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _save(self, instance: AutomationInstance) -> bool:
        if self.db.save_instance(instance):
            return True
        logger.info(
            f"{self.label} changed concurrently, stopping this pass",
            extra={"context": {"instance_id": instance.id, "version": instance.version}},
        )
        return False

    def _record_step(
        self,
        instance: AutomationInstance,
        definition: Any,
        contact: Contact,
        step: StepSpec,
        index: int,
        outcome: StepOutcome,
    ) -> None:
        total = len(definition.steps)
        self._log_activity(
            contact.id,
            self.step_activity,
            f"{definition.name}: step {index + 1}/{total} {outcome.summary or describe_step(step)}",
        )
        self.publisher.publish(
            self.step_notification,
            {
                **self._payload(instance),
                "stepIndex": index,
                "stepType": step.kind.value,
                "status": outcome.status.value,
            },
        )

    def _log_activity(self, contact_id: Optional[str], type: ActivityType, content: str) -> None:
        if not contact_id:
            return
        self.db.create_activity(
            Activity(contact_id=contact_id, type=type, content=content, timestamp=self.clock.now())
        )
