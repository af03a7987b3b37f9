"""Tests for the sequence engine.

Covers:
    - enroll(): first send, duplicate enrollment, inactive/unknown sequences
    - Replies and unsubscribes stopping enrollments (via the event bus)
    - stop_on_reply=False sequences
    - Completion scoring through the sequence_completed event
    - Engagement counters
    - Terminal failures: no steps, no address, empty body
"""

from datetime import timedelta
from typing import Any, Callable

import pytest

from nexus.core.exceptions import ValidationError
from nexus.db.models import (
    ActivityType,
    BranchOperator,
    BranchStep,
    Channel,
    EmailStep,
    InstanceKind,
    InstanceState,
    SequenceDefinition,
    SequenceInstance,
    SmsStep,
    WaitStep,
)
from nexus.engine.runner import RunStatus

# =============================================================================
# FIXTURES
# =============================================================================

OUTREACH_STEPS = [
    EmailStep(subject="Hi {{ contact.first_name }}", body="Quick question about your listing."),
    WaitStep(duration=timedelta(days=3)),
    EmailStep(subject="Following up", body="Any thoughts, {{ contact.first_name }}?"),
]


@pytest.fixture
def make_sequence(runtime) -> Callable[..., SequenceDefinition]:
    """Factory: create an active sequence in tenant 'acct-1'."""

    def _make(steps: list[Any] = OUTREACH_STEPS, **overrides: Any) -> SequenceDefinition:
        values: dict[str, Any] = {"sub_account_id": "acct-1", "name": "Outreach", "steps": steps}
        values.update(overrides)
        sequence = SequenceDefinition(**values)
        runtime.db.create_sequence(sequence)
        return sequence

    return _make


def _enrollment(runtime, instance_id: str) -> SequenceInstance:
    return runtime.db.get_instance(InstanceKind.SEQUENCE, instance_id)


def _publish(runtime, **payload: Any):
    return runtime.bus.publish(runtime.bus.normalize(payload))


# =============================================================================
# ENROLLMENT
# =============================================================================


class TestEnroll:
    """Enrolling contacts."""

    def test_first_email_sent_immediately(self, runtime, make_sequence, make_contact, sender):
        contact = make_contact()
        outcome = runtime.sequences.enroll(make_sequence().id, contact.id)

        assert outcome.status is RunStatus.STARTED
        assert outcome.state is InstanceState.WAITING
        assert sender.sent == [
            (contact.id, Channel.EMAIL, "Quick question about your listing.", "Hi Ada")
        ]
        enrollment = _enrollment(runtime, outcome.instance_id)
        assert enrollment.sent_count == 1
        assert enrollment.current_step_index == 2

    def test_runs_to_completion(self, runtime, make_sequence, make_contact, clock, sender):
        contact = make_contact()
        outcome = runtime.sequences.enroll(make_sequence().id, contact.id)

        clock.advance(timedelta(days=3))
        runtime.sequences.tick()

        enrollment = _enrollment(runtime, outcome.instance_id)
        assert enrollment.state is InstanceState.COMPLETED
        assert enrollment.stop_reason is None
        assert enrollment.sent_count == 2
        assert sender.sent[1][2] == "Any thoughts, Ada?"

    def test_already_enrolled(self, runtime, make_sequence, make_contact, sender):
        sequence = make_sequence()
        contact = make_contact()
        runtime.sequences.enroll(sequence.id, contact.id)

        again = runtime.sequences.enroll(sequence.id, contact.id)

        assert again.status is RunStatus.ALREADY_ACTIVE
        assert len(sender.sent) == 1

    def test_inactive_sequence(self, runtime, make_sequence, make_contact):
        sequence = make_sequence(is_active=False)
        outcome = runtime.sequences.enroll(sequence.id, make_contact().id)
        assert outcome.status is RunStatus.SKIPPED
        assert outcome.error == "sequence_inactive"

    def test_unknown_sequence(self, runtime, make_contact):
        assert runtime.sequences.enroll("missing", make_contact().id).status is RunStatus.NOT_FOUND

    def test_branch_steps_rejected(self):
        with pytest.raises(ValidationError):
            SequenceDefinition(steps=[BranchStep(field="x", operator=BranchOperator.EQ, value=1)])


# =============================================================================
# STOPPING
# =============================================================================


class TestStopOnReply:
    """Replies and unsubscribes end enrollments."""

    def test_reply_stops_sequence(self, runtime, make_sequence, make_contact, clock, sender, notifications):
        contact = make_contact(lead_score=40)
        outcome = runtime.sequences.enroll(make_sequence().id, contact.id)

        result = _publish(
            runtime, type="email.replied", contactId=contact.id, data={"message": "Sounds good"}
        )

        assert result.ok
        assert result.sequences_stopped == 1
        enrollment = _enrollment(runtime, outcome.instance_id)
        assert enrollment.state is InstanceState.COMPLETED
        assert enrollment.stop_reason == "reply"
        assert enrollment.reply_count == 1

        stored = runtime.db.get_contact(contact.id)
        assert stored.status == "Interested"
        assert stored.lead_score == 60

        types = [a.type for a in runtime.db.get_activities(contact.id)]
        assert ActivityType.SEQUENCE_STOPPED in types
        assert ActivityType.MESSAGE_RECEIVED in types
        assert "sequence:reply_detected" in [n["type"] for n in notifications]

        clock.advance(timedelta(days=3))
        assert runtime.sequences.tick().due == 0
        assert len(sender.sent) == 1

    def test_stop_is_not_completion(self, runtime, make_sequence, make_contact):
        """A stopped enrollment does not earn the sequence_completed bonus."""
        contact = make_contact(lead_score=40)
        runtime.sequences.enroll(make_sequence().id, contact.id)
        _publish(runtime, type="unsubscribed", contactId=contact.id)
        assert runtime.db.get_contact(contact.id).lead_score == 40

    def test_reply_without_stop_on_reply(self, runtime, make_sequence, make_contact):
        contact = make_contact()
        outcome = runtime.sequences.enroll(make_sequence(stop_on_reply=False).id, contact.id)

        result = _publish(runtime, type="reply", contactId=contact.id)

        assert result.sequences_stopped == 0
        enrollment = _enrollment(runtime, outcome.instance_id)
        assert enrollment.state is InstanceState.WAITING
        assert enrollment.reply_count == 1
        assert runtime.db.get_contact(contact.id).status == "Lead"

        _publish(runtime, type="opt_out", contactId=contact.id)
        enrollment = _enrollment(runtime, outcome.instance_id)
        assert enrollment.state is InstanceState.COMPLETED
        assert enrollment.stop_reason == "unsubscribe"

    def test_nothing_to_stop(self, runtime, make_contact):
        assert runtime.sequences.stop_for_contact(make_contact().id, "reply") == 0

    def test_unknown_reason(self, runtime, make_contact):
        with pytest.raises(ValueError):
            runtime.sequences.stop_for_contact(make_contact().id, "bounce")


# =============================================================================
# SCORING AND ENGAGEMENT
# =============================================================================


class TestEngagement:
    def test_completion_scores(self, runtime, make_sequence, make_contact):
        contact = make_contact(lead_score=40)
        sequence = make_sequence([EmailStep(subject="Hi", body="One and done.")])

        outcome = runtime.sequences.enroll(sequence.id, contact.id)

        assert outcome.state is InstanceState.COMPLETED
        assert runtime.db.get_contact(contact.id).lead_score == 45

    def test_open_counted_and_scored(self, runtime, make_sequence, make_contact):
        contact = make_contact(lead_score=40)
        outcome = runtime.sequences.enroll(make_sequence().id, contact.id)

        result = _publish(runtime, type="email.opened", contactId=contact.id)

        assert result.engagement_recorded == 1
        assert _enrollment(runtime, outcome.instance_id).open_count == 1
        assert runtime.db.get_contact(contact.id).lead_score == 45

    def test_click_counted(self, runtime, make_sequence, make_contact):
        contact = make_contact()
        outcome = runtime.sequences.enroll(make_sequence().id, contact.id)
        _publish(runtime, type="click", contactId=contact.id)
        assert _enrollment(runtime, outcome.instance_id).click_count == 1


# =============================================================================
# TERMINAL FAILURES
# =============================================================================


class TestFailures:
    """Enrollments that cannot proceed are failed, never paused."""

    def test_no_steps(self, runtime, make_sequence, make_contact):
        outcome = runtime.sequences.enroll(make_sequence([]).id, make_contact().id)
        assert outcome.state is InstanceState.FAILED
        assert outcome.error == "no_sequence_steps"

    def test_sms_without_phone(self, runtime, make_sequence, make_contact, sender):
        sequence = make_sequence([SmsStep(body="Hi {{ contact.first_name }}")])
        outcome = runtime.sequences.enroll(sequence.id, make_contact(phone="").id)
        assert outcome.state is InstanceState.FAILED
        assert outcome.error == "no_delivery_address"
        assert sender.calls == 0

    def test_failure_logged_apart_from_stops(self, runtime, make_sequence, make_contact):
        contact = make_contact(phone="")
        runtime.sequences.enroll(make_sequence([SmsStep(body="Hi")]).id, contact.id)

        types = [a.type for a in runtime.db.get_activities(contact.id)]
        assert ActivityType.SEQUENCE_FAILED in types
        assert ActivityType.SEQUENCE_STOPPED not in types

    def test_empty_body(self, runtime, make_sequence, make_contact):
        sequence = make_sequence([EmailStep(subject="Hi", body="   ")])
        outcome = runtime.sequences.enroll(sequence.id, make_contact().id)
        assert outcome.error == "empty_body"
