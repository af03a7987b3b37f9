"""Workflow engine.

Runs tenant-defined workflows against contacts. A workflow starts when a
lifecycle event matches its trigger; each contact has at most one active
run per workflow.

Usage:
    from nexus.engine.workflow import WorkflowEngine

    engine = WorkflowEngine(db, executors.registry(), publisher, clock)
    engine.start(workflow_id, contact_id)
    engine.tick()  # every NEXUS_WORKFLOW_TICK_SECONDS
"""

from typing import Any, Optional

from nexus.core.logging import get_logger
from nexus.db.models import (
    ActivityType,
    AutomationInstance,
    EventKind,
    InstanceKind,
    LifecycleEvent,
    WorkflowDefinition,
    WorkflowInstance,
)
from nexus.engine.notifications import WORKFLOW_COMPLETED, WORKFLOW_STARTED, WORKFLOW_STEP
from nexus.engine.runner import AutomationRunner, RunOutcome, RunStatus

logger = get_logger(__name__)


class WorkflowEngine(AutomationRunner):
    """Trigger-driven multi-step automations."""

    kind = InstanceKind.WORKFLOW
    label = "Workflow"
    step_activity = ActivityType.WORKFLOW_STEP
    failure_activity = ActivityType.WORKFLOW_FAILED
    started_notification = WORKFLOW_STARTED
    step_notification = WORKFLOW_STEP
    completed_notification = WORKFLOW_COMPLETED

    def _load_definition(self, instance: AutomationInstance) -> Optional[WorkflowDefinition]:
        return self.db.get_workflow(instance.definition_id)

    def _payload(self, instance: AutomationInstance) -> dict[str, Any]:
        return {
            "instanceId": instance.id,
            "workflowId": instance.definition_id,
            "contactId": instance.contact_id,
        }

    def handle_event(self, event: LifecycleEvent) -> list[RunOutcome]:
        """Start every active workflow in the contact's tenant triggered by ``event``.

        A workflow's own completion never re-triggers it.
        """
        if not event.contact_id or not event.sub_account_id:
            return []

        definitions = self.db.get_active_workflows_for_trigger(
            event.kind.value, event.sub_account_id
        )
        source = event.data.get("workflow_id") if event.kind is EventKind.WORKFLOW_COMPLETED else None

        return [
            self.start(definition.id or "", event.contact_id)
            for definition in definitions
            if definition.id != source
        ]

    def start(self, workflow_id: str, contact_id: str) -> RunOutcome:
        """Start a run of a workflow for a contact.

        Returns:
            RunOutcome; never raises
        """
        try:
            return self._start(workflow_id, contact_id)
        except Exception as e:
            logger.error(
                f"Workflow start failed: {e}",
                extra={"context": {"workflow_id": workflow_id, "contact_id": contact_id}},
                exc_info=True,
            )
            return RunOutcome(status=RunStatus.ERROR, error=str(e))

    def _start(self, workflow_id: str, contact_id: str) -> RunOutcome:
        workflow = self.db.get_workflow(workflow_id)
        contact = self.db.get_contact(contact_id)
        if workflow is None or contact is None:
            logger.debug(
                "Workflow start for unknown workflow or contact",
                extra={"context": {"workflow_id": workflow_id, "contact_id": contact_id}},
            )
            return RunOutcome(status=RunStatus.NOT_FOUND)

        if not workflow.is_active:
            return RunOutcome(status=RunStatus.SKIPPED, error="workflow_inactive")
        if workflow.sub_account_id != contact.sub_account_id:
            return RunOutcome(status=RunStatus.SKIPPED, error="tenant_mismatch")
        if not workflow.steps:
            return RunOutcome(status=RunStatus.SKIPPED, error="no_steps")

        instance = WorkflowInstance(workflow_id=workflow_id, contact_id=contact_id)
        return self._begin(instance, workflow, contact)
