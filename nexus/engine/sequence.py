"""Sequence engine.

Drip campaigns: a linear list of wait and send steps run per enrolled
contact. A sequence is a restricted workflow, so it shares the workflow
runner and adds:
    - sent/open/click/reply counters per enrollment
    - stop on reply or unsubscribe
    - a ``sequence_completed`` event when a contact finishes the sequence

Usage:
    from nexus.engine.sequence import SequenceEngine

    engine = SequenceEngine(db, executors.registry(SEQUENCE_STEP_KINDS), publisher, clock)
    engine.enroll(sequence_id, contact_id)
    engine.stop_for_contact(contact_id, "reply")
"""

from typing import Any, Optional

from nexus.core.logging import get_logger
from nexus.db.models import (
    Activity,
    ActivityType,
    AutomationInstance,
    Contact,
    EventKind,
    InstanceKind,
    InstanceState,
    SequenceDefinition,
    SequenceInstance,
    StepSpec,
)
from nexus.engine.notifications import (
    SEQUENCE_COMPLETED,
    SEQUENCE_ENROLLED,
    SEQUENCE_REPLY_DETECTED,
    SEQUENCE_STEP,
    SEQUENCE_STOPPED,
)
from nexus.engine.runner import AutomationRunner, RunOutcome, RunStatus
from nexus.engine.steps import StepOutcome

logger = get_logger(__name__)

STOP_REASONS = frozenset({EventKind.REPLY.value, EventKind.UNSUBSCRIBE.value})

_ENGAGEMENT_COUNTERS = {
    EventKind.EMAIL_OPEN: "open_count",
    EventKind.EMAIL_CLICK: "click_count",
}


class SequenceEngine(AutomationRunner):
    """Enrollment-driven drip campaigns."""

    kind = InstanceKind.SEQUENCE
    label = "Sequence"
    step_activity = ActivityType.SEQUENCE_STEP
    failure_activity = ActivityType.SEQUENCE_FAILED
    started_notification = SEQUENCE_ENROLLED
    step_notification = SEQUENCE_STEP
    completed_notification = SEQUENCE_COMPLETED

    def _load_definition(self, instance: AutomationInstance) -> Optional[SequenceDefinition]:
        return self.db.get_sequence(instance.definition_id)

    def _payload(self, instance: AutomationInstance) -> dict[str, Any]:
        return {
            "enrollmentId": instance.id,
            "sequenceId": instance.definition_id,
            "contactId": instance.contact_id,
        }

    def _on_step_done(self, instance: AutomationInstance, step: StepSpec, outcome: StepOutcome) -> None:
        output = outcome.output
        if (
            isinstance(instance, SequenceInstance)
            and isinstance(output, dict)
            and output.get("messageId")
            and not output.get("deduplicated")
        ):
            instance.sent_count += 1

    def _advance(self, instance: AutomationInstance, definition: Any, contact: Contact) -> None:
        if not definition.steps:
            self._fail(instance, definition, contact, "no_sequence_steps")
            return
        super()._advance(instance, definition, contact)

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def enroll(self, sequence_id: str, contact_id: str) -> RunOutcome:
        """Enroll a contact; a no-op if they are already actively enrolled.

        Returns:
            RunOutcome; never raises
        """
        try:
            sequence = self.db.get_sequence(sequence_id)
            contact = self.db.get_contact(contact_id)
            if sequence is None or contact is None:
                logger.debug(
                    "Enrollment for unknown sequence or contact",
                    extra={"context": {"sequence_id": sequence_id, "contact_id": contact_id}},
                )
                return RunOutcome(status=RunStatus.NOT_FOUND)
            if not sequence.is_active:
                return RunOutcome(status=RunStatus.SKIPPED, error="sequence_inactive")

            instance = SequenceInstance(sequence_id=sequence_id, contact_id=contact_id)
            return self._begin(instance, sequence, contact)
        except Exception as e:
            logger.error(
                f"Sequence enrollment failed: {e}",
                extra={"context": {"sequence_id": sequence_id, "contact_id": contact_id}},
                exc_info=True,
            )
            return RunOutcome(status=RunStatus.ERROR, error=str(e))

    def stop_for_contact(self, contact_id: str, reason: str) -> int:
        """End every active enrollment of a contact.

        Replies only stop sequences with stop_on_reply set; unsubscribes
        stop all of them. Stopped enrollments are ``completed`` with
        ``stop_reason`` set and never send again.

        Args:
            contact_id: Contact who replied or unsubscribed
            reason: "reply" or "unsubscribe"

        Returns:
            Number of enrollments stopped
        """
        if reason not in STOP_REASONS:
            raise ValueError(f"Unknown stop reason: {reason}")

        active = self.db.get_instances_for_contact(self.kind, contact_id, active_only=True)
        if not active:
            return 0

        if reason == EventKind.REPLY.value:
            self.db.increment_sequence_counter(contact_id, "reply_count")

        stopped = 0
        for instance in active:
            sequence = self.db.get_sequence(instance.definition_id)
            if reason == EventKind.REPLY.value and sequence is not None and not sequence.stop_on_reply:
                continue
            if self._stop(instance, reason):
                stopped += 1

        if stopped:
            self.db.create_activity(
                Activity(
                    contact_id=contact_id,
                    type=ActivityType.SEQUENCE_STOPPED,
                    content=f"{reason.capitalize()} detected: {stopped} sequence enrollment(s) stopped",
                    timestamp=self.clock.now(),
                )
            )
            self.publisher.publish(
                SEQUENCE_REPLY_DETECTED if reason == EventKind.REPLY.value else SEQUENCE_STOPPED,
                {"contactId": contact_id, "reason": reason, "stopped": stopped},
            )
            logger.info(
                "Sequence enrollments stopped",
                extra={"context": {"contact_id": contact_id, "reason": reason, "stopped": stopped}},
            )
        return stopped

    def _stop(self, instance: AutomationInstance, reason: str) -> bool:
        """Complete one enrollment, re-reading it if a tick wrote it first."""
        current: Optional[AutomationInstance] = instance
        for _ in range(3):
            if current is None or not current.is_active:
                return False
            assert isinstance(current, SequenceInstance)
            now = self.clock.now()
            current.state = InstanceState.COMPLETED
            current.stop_reason = reason
            current.wake_at = None
            current.completed_at = now
            current.updated_at = now
            if self.db.save_instance(current):
                return True
            current = self.db.get_instance(self.kind, instance.id or "")
        logger.warning(
            "Could not stop sequence enrollment after repeated conflicts",
            extra={"context": {"instance_id": instance.id, "reason": reason}},
        )
        return False

    def record_engagement(self, contact_id: str, kind: EventKind) -> int:
        """Count an open or click against the contact's active enrollments.

        Returns:
            Number of enrollments updated
        """
        counter = _ENGAGEMENT_COUNTERS.get(kind)
        if counter is None:
            return 0
        return self.db.increment_sequence_counter(contact_id, counter)
