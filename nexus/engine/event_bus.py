"""Event bus: the ingress point for lifecycle events.

Webhook handlers, form endpoints and the engines themselves publish
events here. The bus normalizes the payload, resolves the contact and
dispatches to:
    - the sequence engine (stop on reply/unsubscribe, open/click counters)
    - the scoring engine (events that map to a ScoreEvent)
    - the workflow engine (trigger matching)

Each target is isolated; a failure in one never reaches the caller or
blocks the others.

Usage:
    from nexus.engine.event_bus import EventBus

    event = bus.normalize({"type": "email.opened", "data": {"email_id": "re_123"}})
    result = bus.publish(event)
    bus.publish_async(event)  # from request handlers
"""

import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from nexus.core.clock import Clock, SystemClock
from nexus.core.exceptions import ValidationError
from nexus.core.logging import get_logger
from nexus.core.tasks import TaskManager, TaskResult
from nexus.db.database import Database
from nexus.db.models import (
    Activity,
    ActivityType,
    AutomationInstance,
    Contact,
    EventKind,
    LifecycleEvent,
    ScoreEvent,
)
from nexus.engine.runner import RunOutcome
from nexus.engine.scoring import ScoreOutcome, ScoringEngine
from nexus.engine.sequence import SequenceEngine
from nexus.engine.workflow import WorkflowEngine

logger = get_logger(__name__)

EVENT_ALIASES: dict[str, EventKind] = {
    "email.opened": EventKind.EMAIL_OPEN,
    "email_opened": EventKind.EMAIL_OPEN,
    "opened": EventKind.EMAIL_OPEN,
    "open": EventKind.EMAIL_OPEN,
    "email.clicked": EventKind.EMAIL_CLICK,
    "email_clicked": EventKind.EMAIL_CLICK,
    "clicked": EventKind.EMAIL_CLICK,
    "click": EventKind.EMAIL_CLICK,
    "sms.inbound": EventKind.REPLY,
    "email.replied": EventKind.REPLY,
    "message.inbound": EventKind.REPLY,
    "inbound": EventKind.REPLY,
    "replied": EventKind.REPLY,
    "email.unsubscribed": EventKind.UNSUBSCRIBE,
    "sms.opt_out": EventKind.UNSUBSCRIBE,
    "unsubscribed": EventKind.UNSUBSCRIBE,
    "opt_out": EventKind.UNSUBSCRIBE,
    "form.submitted": EventKind.FORM_SUBMITTED,
    "form_submission": EventKind.FORM_SUBMITTED,
    "contact.created": EventKind.CONTACT_CREATED,
    "contact.enriched": EventKind.ENRICHMENT,
    "enriched": EventKind.ENRICHMENT,
    "sequence.completed": EventKind.SEQUENCE_COMPLETED,
    "workflow.completed": EventKind.WORKFLOW_COMPLETED,
}

EVENT_SCORES: dict[EventKind, ScoreEvent] = {
    EventKind.EMAIL_OPEN: ScoreEvent.EMAIL_OPEN,
    EventKind.EMAIL_CLICK: ScoreEvent.EMAIL_CLICK,
    EventKind.REPLY: ScoreEvent.REPLY,
    EventKind.ENRICHMENT: ScoreEvent.ENRICHMENT,
    EventKind.SEQUENCE_COMPLETED: ScoreEvent.SEQUENCE_COMPLETED,
    EventKind.TIME_DECAY: ScoreEvent.TIME_DECAY,
}

# Status a contact moves to when a reply stops an outreach sequence
REPLIED_STATUS = "Interested"


def normalize_kind(raw: Any) -> EventKind:
    """Map an event type string or alias to an EventKind.

    Raises:
        ValidationError: If the type is missing or unknown
    """
    if raw is None or not str(raw).strip():
        raise ValidationError("Event has no type")
    key = str(raw).strip().lower()
    if key in EVENT_ALIASES:
        return EVENT_ALIASES[key]
    try:
        return EventKind(key)
    except ValueError:
        raise ValidationError(f"Unknown event type: {raw!r}") from None


@dataclass
class DispatchResult:
    """What the bus did with one event.

    Attributes:
        event: The dispatched event (contact fields resolved)
        contact_found: Whether the contact was resolved
        score: Scoring outcome, if the event scores
        sequences_stopped: Enrollments ended by a reply/unsubscribe
        engagement_recorded: Enrollments whose open/click counter moved
        workflows: Outcome of each triggered workflow
        errors: Target name to error text, for targets that raised
    """

    event: LifecycleEvent
    contact_found: bool = False
    score: Optional[ScoreOutcome] = None
    sequences_stopped: int = 0
    engagement_recorded: int = 0
    workflows: list[RunOutcome] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


class EventBus:
    """Routes lifecycle events to the scoring, sequence and workflow engines.

    Completed workflows and sequences are fed back in as
    ``workflow_completed`` / ``sequence_completed`` events.

    Attributes:
        max_depth: Nesting limit for events published while dispatching
    """

    def __init__(
        self,
        db: Database,
        scoring: ScoringEngine,
        workflows: WorkflowEngine,
        sequences: SequenceEngine,
        clock: Optional[Clock] = None,
        tasks: Optional[TaskManager] = None,
        max_depth: int = 3,
    ) -> None:
        self.db = db
        self.scoring = scoring
        self.workflows = workflows
        self.sequences = sequences
        self.clock = clock or SystemClock()
        self.tasks = tasks or TaskManager()
        self.max_depth = max_depth
        self._local = threading.local()

        workflows.add_completion_listener(self._on_workflow_completed)
        sequences.add_completion_listener(self._on_sequence_completed)

    # =========================================================================
    # NORMALIZATION
    # =========================================================================

    def normalize(self, payload: dict[str, Any]) -> LifecycleEvent:
        """Build a LifecycleEvent from a raw webhook/API payload.

        Accepts ``type``/``kind``/``event`` for the event type,
        ``contactId``/``contact_id`` for the contact, or an email address,
        phone number or provider message id to look the contact up by.

        Raises:
            ValidationError: For unknown types or payloads with no contact reference
        """
        kind = normalize_kind(payload.get("type") or payload.get("kind") or payload.get("event"))
        raw_data = payload.get("data")
        data: dict[str, Any] = dict(raw_data) if isinstance(raw_data, dict) else {}

        contact_id = (
            payload.get("contactId")
            or payload.get("contact_id")
            or data.get("contactId")
            or data.get("contact_id")
        )
        email = payload.get("email") or data.get("email")
        phone = payload.get("phone") or data.get("phone") or data.get("from")
        provider_id = (
            payload.get("providerId")
            or payload.get("provider_id")
            or data.get("email_id")
            or data.get("provider_id")
        )
        if phone:
            data["phone"] = str(phone)
        if provider_id:
            data["provider_id"] = str(provider_id)

        if not (contact_id or email or phone or provider_id):
            raise ValidationError(f"Event '{kind.value}' has no contact reference")

        return LifecycleEvent(
            kind=kind,
            contact_id=str(contact_id) if contact_id else None,
            sub_account_id=payload.get("subAccountId") or payload.get("sub_account_id"),
            email=str(email).strip() if email else None,
            data=data,
            occurred_at=self.clock.now(),
        )

    def _resolve_contact(self, event: LifecycleEvent) -> Optional[Contact]:
        contact: Optional[Contact] = None
        if event.contact_id:
            contact = self.db.get_contact(event.contact_id)
        elif event.email:
            contact = self._pick(
                event, self.db.find_contacts_by_email(event.email, event.sub_account_id)
            )
        elif event.data.get("phone"):
            contact = self._pick(
                event, self.db.find_contacts_by_phone(event.data["phone"], event.sub_account_id)
            )
        elif event.data.get("provider_id"):
            message = self.db.get_message_by_provider_id(event.data["provider_id"])
            if message is not None:
                contact = self.db.get_contact(message.contact_id)

        if contact is not None and event.sub_account_id and contact.sub_account_id != event.sub_account_id:
            return None
        return contact

    def _pick(self, event: LifecycleEvent, matches: list[Contact]) -> Optional[Contact]:
        """Oldest match, unless an address with no tenant hint spans tenants."""
        if not matches:
            return None
        tenants = {c.sub_account_id for c in matches}
        if len(tenants) > 1:
            logger.debug(
                "Event address matches contacts in several tenants, ignored",
                extra={"context": {"kind": event.kind.value, "tenants": len(tenants)}},
            )
            return None
        return matches[0]

    # =========================================================================
    # DISPATCH
    # =========================================================================

    def publish(self, event: LifecycleEvent) -> DispatchResult:
        """Dispatch an event synchronously. Never raises."""
        result = DispatchResult(event=event)

        depth = getattr(self._local, "depth", 0)
        if depth >= self.max_depth:
            logger.warning(
                "Event dropped: dispatch nested too deeply",
                extra={"context": {"kind": event.kind.value, "depth": depth}},
            )
            result.errors["bus"] = "dispatch depth exceeded"
            return result

        try:
            contact = self._resolve_contact(event)
        except Exception as e:
            logger.error(
                f"Contact lookup failed: {e}",
                extra={"context": {"kind": event.kind.value}},
                exc_info=True,
            )
            result.errors["lookup"] = str(e)
            return result

        if contact is None:
            logger.debug(
                "Event for unknown contact ignored",
                extra={"context": {"kind": event.kind.value, "contact_id": event.contact_id}},
            )
            return result

        result.contact_found = True
        event.contact_id = contact.id
        event.sub_account_id = contact.sub_account_id

        self._local.depth = depth + 1
        try:
            self._dispatch(event, contact, result)
        finally:
            self._local.depth = depth

        logger.debug(
            "Event dispatched",
            extra={
                "context": {
                    "kind": event.kind.value,
                    "contact_id": contact.id,
                    "score": result.score.status.value if result.score else None,
                    "workflows": len(result.workflows),
                    "errors": list(result.errors),
                }
            },
        )
        return result

    def publish_async(self, event: LifecycleEvent) -> "Future[TaskResult]":
        """Dispatch on the background task pool."""
        return self.tasks.submit(
            f"dispatch:{event.kind.value}:{event.contact_id or event.email}", self.publish, event
        )

    def _dispatch(self, event: LifecycleEvent, contact: Contact, result: DispatchResult) -> None:
        contact_id = contact.id or ""

        if event.kind in (EventKind.REPLY, EventKind.UNSUBSCRIBE):
            stopped = self._run(
                result, "sequences", lambda: self.sequences.stop_for_contact(contact_id, event.kind.value)
            )
            result.sequences_stopped = stopped or 0
            if event.kind is EventKind.REPLY:
                self._run(result, "reply", lambda: self._record_reply(event, contact, result.sequences_stopped))
        elif event.kind in (EventKind.EMAIL_OPEN, EventKind.EMAIL_CLICK):
            recorded = self._run(
                result, "engagement", lambda: self.sequences.record_engagement(contact_id, event.kind)
            )
            result.engagement_recorded = recorded or 0
        elif event.kind is EventKind.FORM_SUBMITTED:
            self._run(result, "form", lambda: self._record_form(event, contact))

        score_event = EVENT_SCORES.get(event.kind)
        if score_event is not None:
            result.score = self._run(
                result, "scoring", lambda: self.scoring.recalculate_lead_score(contact_id, score_event)
            )

        result.workflows = self._run(result, "workflows", lambda: self.workflows.handle_event(event)) or []

    def _run(self, result: DispatchResult, target: str, func: Callable[[], Any]) -> Any:
        try:
            return func()
        except Exception as e:
            result.errors[target] = str(e)
            logger.error(
                f"Event dispatch to {target} failed: {e}",
                extra={"context": {"kind": result.event.kind.value, "contact_id": result.event.contact_id}},
                exc_info=True,
            )
            return None

    def _record_reply(self, event: LifecycleEvent, contact: Contact, stopped: int) -> None:
        channel = event.data.get("channel", "message")
        text = str(event.data.get("message") or event.data.get("body") or "")[:100]
        content = f"Reply received via {channel}"
        if stopped:
            content += f": {stopped} sequence(s) stopped"
        if text:
            content += f'. Message: "{text}"'
        self.db.create_activity(
            Activity(
                contact_id=contact.id or "",
                type=ActivityType.MESSAGE_RECEIVED,
                content=content,
                timestamp=self.clock.now(),
            )
        )
        if stopped and contact.status != REPLIED_STATUS:
            self.db.update_contact_status(contact.id or "", REPLIED_STATUS)

    def _record_form(self, event: LifecycleEvent, contact: Contact) -> None:
        form = event.data.get("form_name") or event.data.get("formName") or "form"
        self.db.create_activity(
            Activity(
                contact_id=contact.id or "",
                type=ActivityType.FORM_SUBMISSION,
                content=f"Submitted {form}",
                timestamp=self.clock.now(),
            )
        )

    # =========================================================================
    # ENGINE FEEDBACK
    # =========================================================================

    def _on_workflow_completed(self, instance: AutomationInstance) -> None:
        self.publish(
            LifecycleEvent(
                kind=EventKind.WORKFLOW_COMPLETED,
                contact_id=instance.contact_id,
                data={"workflow_id": instance.definition_id, "instance_id": instance.id},
                occurred_at=self.clock.now(),
            )
        )

    def _on_sequence_completed(self, instance: AutomationInstance) -> None:
        self.publish(
            LifecycleEvent(
                kind=EventKind.SEQUENCE_COMPLETED,
                contact_id=instance.contact_id,
                data={"sequence_id": instance.definition_id, "instance_id": instance.id},
                occurred_at=self.clock.now(),
            )
        )
