"""Tests for step executors and the executor registry.

Covers:
    - ExecutorRegistry: coverage check, restricted registries
    - wait: wake time
    - email/sms: message records, dedup of sent steps, terminal and
      transient send failures
    - external_action: invoke, pending poll, success/failure
    - branch: condition operators and jump targets
"""

from datetime import timedelta

import pytest

from nexus.core.config import Config
from nexus.core.exceptions import ConfigurationError, TransientIntegrationError, WorkflowError
from nexus.db.database import Database
from nexus.db.models import (
    SEQUENCE_STEP_KINDS,
    BranchOperator,
    BranchStep,
    Channel,
    Contact,
    EmailStep,
    ExternalActionStep,
    InstanceKind,
    MessageStatus,
    SmsStep,
    StepKind,
    WaitStep,
    WorkflowInstance,
)
from nexus.engine.steps import (
    ExecutorRegistry,
    StepContext,
    StepExecutors,
    StepStatus,
    evaluate_condition,
)
from nexus.integrations.base import ActionResult, ActionStatus, SendResult

# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def executors(memory_db: Database, sender, actions, test_config: Config) -> StepExecutors:
    return StepExecutors(memory_db, sender, actions, test_config)


@pytest.fixture
def contact(make_contact) -> Contact:
    return make_contact(lead_score=72, tags=["vip"], custom_fields={"industry": "plumbing"})


@pytest.fixture
def ctx(contact: Contact, clock) -> StepContext:
    instance = WorkflowInstance(id="inst-1", workflow_id="wf-1", contact_id=contact.id)
    return StepContext(instance=instance, contact=contact, step_index=0, now=clock.now())


# =============================================================================
# REGISTRY
# =============================================================================


class TestExecutorRegistry:
    """Exhaustive mapping of step kinds."""

    def test_missing_kind_rejected(self):
        with pytest.raises(ConfigurationError, match="branch"):
            ExecutorRegistry({StepKind.WAIT: lambda ctx, step: None}, [StepKind.WAIT, StepKind.BRANCH])

    def test_full_registry(self, executors):
        registry = executors.registry()
        assert all(registry.supports(kind) for kind in StepKind)

    def test_sequence_registry_restricted(self, executors, ctx):
        registry = executors.registry(SEQUENCE_STEP_KINDS)
        assert registry.supports(StepKind.EMAIL)
        assert not registry.supports(StepKind.BRANCH)
        with pytest.raises(WorkflowError):
            registry.execute(ctx, BranchStep(field="x", operator=BranchOperator.EQ, value=1))


# =============================================================================
# WAIT
# =============================================================================


class TestWait:
    def test_wait_sets_wake_time(self, executors, ctx):
        outcome = executors.wait(ctx, WaitStep(duration=timedelta(days=1)))
        assert outcome.status is StepStatus.WAIT
        assert outcome.wake_at == ctx.now + timedelta(days=1)


# =============================================================================
# SEND
# =============================================================================


class TestSend:
    """email and sms executors."""

    def test_email_sent_and_recorded(self, executors, ctx, sender, memory_db):
        outcome = executors.email(ctx, EmailStep(subject="Hi {{ contact.first_name }}", body="Hello {{ contact.industry }}"))

        assert outcome.status is StepStatus.ADVANCE
        assert sender.sent == [(ctx.contact.id, Channel.EMAIL, "Hello plumbing", "Hi Ada")]
        message = memory_db.get_sent_message_for_step(InstanceKind.WORKFLOW, "inst-1", 0)
        assert message.id == outcome.output["messageId"]
        assert message.provider_id == outcome.output["providerId"]
        assert message.subject == "Hi Ada"

    def test_sent_step_never_resent(self, executors, ctx, sender):
        step = EmailStep(subject="Hi", body="Hello")
        executors.email(ctx, step)
        again = executors.email(ctx, step)

        assert again.status is StepStatus.ADVANCE
        assert again.output["deduplicated"] is True
        assert sender.calls == 1

    def test_sms(self, executors, ctx, sender):
        outcome = executors.sms(ctx, SmsStep(body="Text back YES"))
        assert outcome.status is StepStatus.ADVANCE
        assert sender.sent[0][1] is Channel.SMS
        assert sender.sent[0][3] is None

    def test_no_address_is_terminal(self, executors, make_contact, clock, sender):
        contact = make_contact(name="No Phone", phone="")
        ctx = StepContext(
            instance=WorkflowInstance(id="inst-2", workflow_id="wf-1", contact_id=contact.id),
            contact=contact,
            step_index=0,
            now=clock.now(),
        )
        outcome = executors.sms(ctx, SmsStep(body="hi"))
        assert outcome.status is StepStatus.FAIL
        assert outcome.error == "no_delivery_address"
        assert sender.calls == 0

    def test_empty_body_is_terminal(self, executors, ctx, sender):
        outcome = executors.email(ctx, EmailStep(subject="Hi", body="{{ contact.nothing }}"))
        assert outcome.status is StepStatus.FAIL
        assert outcome.error == "empty_body"
        assert sender.calls == 0

    def test_template_error_is_terminal(self, executors, ctx):
        outcome = executors.email(ctx, EmailStep(subject="Hi", body="{% if %}"))
        assert outcome.status is StepStatus.FAIL
        assert "Template error" in outcome.error

    def test_rejection_is_terminal(self, executors, ctx, sender, memory_db):
        sender.results.append(SendResult(success=False, error="mailbox does not exist"))
        outcome = executors.email(ctx, EmailStep(subject="Hi", body="Hello"))

        assert outcome.status is StepStatus.FAIL
        assert outcome.error == "mailbox does not exist"
        messages = memory_db.get_messages(ctx.contact.id)
        assert [m.status for m in messages] == [MessageStatus.FAILED]

    def test_exception_propagates_and_marks_message_failed(self, executors, ctx, sender, memory_db):
        sender.always_raise = TransientIntegrationError("relay timeout")
        with pytest.raises(TransientIntegrationError):
            executors.email(ctx, EmailStep(subject="Hi", body="Hello"))

        messages = memory_db.get_messages(ctx.contact.id)
        assert messages[0].status is MessageStatus.FAILED
        assert messages[0].error == "relay timeout"
        assert memory_db.get_sent_message_for_step(InstanceKind.WORKFLOW, "inst-1", 0) is None


# =============================================================================
# EXTERNAL ACTION
# =============================================================================


class TestExternalAction:
    """Invoke, then poll until terminal."""

    STEP = ExternalActionStep(actor_id="compass/crawler-google-places", input={"q": "plumbers"})

    def test_immediate_success(self, executors, ctx, actions):
        actions.invoke_results.append(ActionResult(status=ActionStatus.SUCCESS, data={"items": [1, 2]}))
        outcome = executors.external_action(ctx, self.STEP)

        assert outcome.status is StepStatus.ADVANCE
        assert outcome.output == {"items": [1, 2]}
        assert actions.invoked == [("compass/crawler-google-places", {"q": "plumbers"})]

    def test_running_then_checked(self, executors, ctx, actions, test_config):
        actions.invoke_results.append(ActionResult(status=ActionStatus.RUNNING, run_id="run-1"))
        pending = executors.external_action(ctx, self.STEP)

        assert pending.status is StepStatus.PENDING
        assert pending.wake_at == ctx.now + timedelta(seconds=test_config.action_poll_seconds)
        assert ctx.instance.context["pending_action"] == {"step": 0, "run_id": "run-1"}

        actions.check_results.append(ActionResult(status=ActionStatus.SUCCESS, data={"items": []}))
        done = executors.external_action(ctx, self.STEP)

        assert done.status is StepStatus.ADVANCE
        assert actions.checked == ["run-1"]
        assert len(actions.invoked) == 1
        assert "pending_action" not in ctx.instance.context

    def test_running_without_run_id_fails(self, executors, ctx, actions):
        actions.invoke_results.append(ActionResult(status=ActionStatus.RUNNING))
        assert executors.external_action(ctx, self.STEP).status is StepStatus.FAIL

    def test_failed_run_is_terminal(self, executors, ctx, actions):
        actions.invoke_results.append(ActionResult(status=ActionStatus.FAILED, error="Actor run aborted"))
        outcome = executors.external_action(ctx, self.STEP)
        assert outcome.status is StepStatus.FAIL
        assert outcome.error == "Actor run aborted"

    def test_no_provider(self, memory_db, sender, test_config, ctx):
        executors = StepExecutors(memory_db, sender, None, test_config)
        outcome = executors.external_action(ctx, self.STEP)
        assert outcome.status is StepStatus.FAIL


# =============================================================================
# BRANCH
# =============================================================================


class TestEvaluateCondition:
    """Operators against flattened contact values."""

    @pytest.mark.parametrize(
        "operator,field,value,expected",
        [
            (BranchOperator.EQ, "status", "Lead", True),
            (BranchOperator.EQ, "lead_score", "72", True),
            (BranchOperator.EQ, "lead_score", 71, False),
            (BranchOperator.GT, "lead_score", 50, True),
            (BranchOperator.GT, "lead_score", "lots", False),
            (BranchOperator.LT, "lead_score", 50, False),
            (BranchOperator.CONTAINS, "tags", "vip", True),
            (BranchOperator.CONTAINS, "email", "@example.com", True),
            (BranchOperator.CONTAINS, "missing", "x", False),
        ],
    )
    def test_operators(self, operator, field, value, expected):
        values = {"status": "Lead", "lead_score": 72, "tags": ["vip"], "email": "ada@example.com"}
        step = BranchStep(field=field, operator=operator, value=value)
        assert evaluate_condition(step, values) is expected


class TestBranch:
    """Jump targets."""

    def test_true_defaults_to_next_step(self, executors, ctx):
        outcome = executors.branch(ctx, BranchStep(field="lead_score", operator=BranchOperator.GT, value=50))
        assert outcome.status is StepStatus.ADVANCE
        assert outcome.next_index == 1

    def test_true_jumps(self, executors, ctx):
        step = BranchStep(field="lead_score", operator=BranchOperator.GT, value=50, on_true=4)
        assert executors.branch(ctx, step).next_index == 4

    def test_false_without_target_completes(self, executors, ctx):
        step = BranchStep(field="lead_score", operator=BranchOperator.LT, value=50)
        outcome = executors.branch(ctx, step)
        assert outcome.status is StepStatus.COMPLETE
        assert outcome.output == {"passed": False}

    def test_false_jumps(self, executors, ctx):
        step = BranchStep(field="lead_score", operator=BranchOperator.LT, value=50, on_false=2)
        outcome = executors.branch(ctx, step)
        assert outcome.status is StepStatus.ADVANCE
        assert outcome.next_index == 2
