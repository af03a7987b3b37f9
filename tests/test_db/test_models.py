"""Tests for data models, step specs and step parsing."""

from datetime import timedelta

import pytest

from nexus.core.exceptions import ValidationError
from nexus.db.models import (
    AutomationInstance,
    BranchOperator,
    BranchStep,
    Channel,
    Contact,
    EmailStep,
    ExternalActionStep,
    InstanceState,
    ScoreEvent,
    SequenceDefinition,
    SequenceInstance,
    SmsStep,
    StepKind,
    WaitStep,
    WorkflowInstance,
    describe_step,
    parse_step,
    parse_wait_duration,
    step_to_dict,
)


class TestEnums:
    """Enum helpers."""

    def test_score_event_label(self):
        assert ScoreEvent.EMAIL_OPEN.label == "email open"
        assert ScoreEvent.REPLY.label == "reply"

    def test_active_states(self):
        assert InstanceState.RUNNING.is_active
        assert InstanceState.WAITING.is_active
        assert not InstanceState.COMPLETED.is_active
        assert not InstanceState.FAILED.is_active
        assert not InstanceState.CANCELLED.is_active


class TestContact:
    """Contact helpers."""

    def test_defaults(self):
        contact = Contact(sub_account_id="acct-1")
        assert contact.lead_score == 40
        assert contact.status == "Lead"
        assert contact.custom_fields == {}

    def test_first_name(self):
        assert Contact(name="Ada Lovelace").first_name == "Ada"
        assert Contact(name="").first_name == ""

    def test_address_for_channel(self):
        contact = Contact(email="ada@example.com", phone="+1555")
        assert contact.address_for(Channel.EMAIL) == "ada@example.com"
        assert contact.address_for(Channel.SMS) == "+1555"


class TestInstances:
    """Instance dataclasses."""

    def test_definition_id(self):
        assert WorkflowInstance(workflow_id="wf-1").definition_id == "wf-1"
        assert SequenceInstance(sequence_id="seq-1").definition_id == "seq-1"

    def test_base_instance_is_abstract(self):
        with pytest.raises(TypeError):
            AutomationInstance()

    def test_new_instance_is_running(self):
        instance = WorkflowInstance(workflow_id="wf-1", contact_id="c-1")
        assert instance.is_active
        assert instance.current_step_index == 0
        assert instance.version == 0


class TestParseWaitDuration:
    """Wait phrases and minute counts."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("2 days", timedelta(days=2)),
            ("1 week", timedelta(weeks=1)),
            ("90 minutes", timedelta(minutes=90)),
            ("3 hours", timedelta(hours=3)),
            ("hour", timedelta(hours=1)),
            ("3", timedelta(days=3)),
            (30, timedelta(minutes=30)),
            (None, timedelta(days=1)),
        ],
    )
    def test_durations(self, value, expected):
        assert parse_wait_duration(value) == expected

    def test_non_positive_minutes_rejected(self):
        with pytest.raises(ValidationError):
            parse_wait_duration(0)

    def test_fractional_minutes(self):
        assert parse_wait_duration(1.5) == timedelta(seconds=90)

    def test_sub_minute_rejected(self):
        with pytest.raises(ValidationError):
            parse_wait_duration(0.5)
        with pytest.raises(ValidationError):
            WaitStep(duration=timedelta(seconds=30))


class TestParseStep:
    """Stored step JSON to step specs."""

    def test_nested_config_form(self):
        step = parse_step({"type": "wait", "config": {"waitTime": "2 days"}})
        assert step == WaitStep(duration=timedelta(days=2))

    def test_flat_form(self):
        step = parse_step({"type": "email", "subject": "Hi", "body": "Hello"})
        assert step == EmailStep(subject="Hi", body="Hello")

    def test_email_message_alias_and_default_subject(self):
        step = parse_step({"type": "email", "config": {"message": "Hello"}})
        assert step == EmailStep(subject="Automated Message", body="Hello")

    def test_external_action_camel_case(self):
        step = parse_step(
            {"type": "external_action", "config": {"actorId": "apify/web-scraper", "input": {"a": 1}}}
        )
        assert step == ExternalActionStep(actor_id="apify/web-scraper", input={"a": 1})

    def test_branch(self):
        step = parse_step(
            {
                "type": "branch",
                "config": {"field": "lead_score", "operator": "gt", "value": 50, "on_false": 3},
            }
        )
        assert step == BranchStep(
            field="lead_score", operator=BranchOperator.GT, value=50, on_true=None, on_false=3
        )

    def test_condition_alias(self):
        step = parse_step(
            {"type": "condition", "config": {"field": "leadScore", "operator": "gt", "value": 50}}
        )
        assert step == BranchStep(field="lead_score", operator=BranchOperator.GT, value=50)

    @pytest.mark.parametrize(
        "data",
        [
            {"type": "ai_step", "config": {"prompt": "write something"}},
            {"config": {}},
            {"type": "external_action", "config": {}},
            {"type": "branch", "config": {"field": "x", "operator": "between"}},
            {"type": "branch", "config": {"operator": "eq", "value": 1}},
            {"type": "branch", "config": {"field": "x", "operator": "eq", "on_true": -1}},
        ],
    )
    def test_invalid_steps_rejected(self, data):
        with pytest.raises(ValidationError):
            parse_step(data)

    def test_stored_form_parses_back(self):
        steps = [
            WaitStep(duration=timedelta(hours=6)),
            EmailStep(subject="Hi {{ contact.first_name }}", body="Hello"),
            SmsStep(body="Ping"),
            ExternalActionStep(actor_id="compass/crawler-google-places", input={"q": "plumbers"}),
            BranchStep(field="status", operator=BranchOperator.EQ, value="Lead", on_true=0),
        ]
        assert [parse_step(step_to_dict(step)) for step in steps] == steps

    def test_wait_stored_in_seconds(self):
        step = WaitStep(duration=timedelta(seconds=90))
        stored = step_to_dict(step)
        assert stored == {"type": "wait", "config": {"seconds": 90}}
        assert parse_step(stored) == step

    def test_wait_minutes_form_still_read(self):
        step = parse_step({"type": "wait", "config": {"minutes": 90}})
        assert step == WaitStep(duration=timedelta(minutes=90))


class TestDescribeStep:
    """Activity labels."""

    def test_wait_units(self):
        assert describe_step(WaitStep(duration=timedelta(days=1))) == "wait 1d"
        assert describe_step(WaitStep(duration=timedelta(hours=5))) == "wait 5h"
        assert describe_step(WaitStep(duration=timedelta(minutes=90))) == "wait 90m"
        assert describe_step(WaitStep(duration=timedelta(seconds=90))) == "wait 90s"

    def test_send_and_action(self):
        assert describe_step(EmailStep(subject="Welcome", body="x")) == "email 'Welcome'"
        assert describe_step(SmsStep(body="x")) == "sms"
        assert describe_step(ExternalActionStep(actor_id="a/b")) == "action a/b"


class TestSequenceDefinition:
    """Sequences accept wait and send steps only."""

    def test_send_steps_accepted(self):
        sequence = SequenceDefinition(
            steps=[EmailStep(subject="a", body="b"), WaitStep(duration=timedelta(days=1)), SmsStep(body="c")]
        )
        assert [s.kind for s in sequence.steps] == [StepKind.EMAIL, StepKind.WAIT, StepKind.SMS]

    @pytest.mark.parametrize(
        "step",
        [
            BranchStep(field="x", operator=BranchOperator.EQ, value=1),
            ExternalActionStep(actor_id="a/b"),
        ],
    )
    def test_other_steps_rejected(self, step):
        with pytest.raises(ValidationError):
            SequenceDefinition(steps=[step])
