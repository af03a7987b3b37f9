"""Lead scoring.

Keeps each contact's 0-100 lead score in step with lifecycle events:
    - Engagement (opens, clicks, replies) adds a fixed delta
    - Finishing a sequence adds a small bonus
    - Inactivity decays the score one point at a time
    - Enrichment recomputes the score from the contact's data

A change writes the new score, an audit activity and a
``contact:score_updated`` notification. No change writes nothing.

Usage:
    from nexus.engine.scoring import ScoringEngine, calculate_initial_score

    engine = ScoringEngine(db, publisher)
    outcome = engine.recalculate_lead_score(contact_id, ScoreEvent.REPLY)

    score = calculate_initial_score(email="a@b.co", phone="", custom_fields={"website": "b.co"})
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from nexus.core.clock import Clock, SystemClock
from nexus.core.logging import get_logger
from nexus.db.database import Database
from nexus.db.models import Activity, ActivityType, Contact, ScoreEvent
from nexus.engine.notifications import SCORE_UPDATED, NotificationPublisher

logger = get_logger(__name__)


# =============================================================================
# SCORING TABLES
# =============================================================================

SCORE_MIN = 0
SCORE_MAX = 100

# Enrichment is absent: it is a full recompute, not a delta
SCORE_ADJUSTMENTS: dict[ScoreEvent, int] = {
    ScoreEvent.EMAIL_OPEN: 5,
    ScoreEvent.EMAIL_CLICK: 10,
    ScoreEvent.REPLY: 20,
    ScoreEvent.SEQUENCE_COMPLETED: 5,
    ScoreEvent.TIME_DECAY: -1,
}

BASE_SCORE = 20
EMAIL_POINTS = 15
PHONE_POINTS = 10
WEBSITE_POINTS = 10
OWNER_POINTS = 10
HIGH_RATING_POINTS = 5
# A poorly rated business has more to gain, so it is the better lead
LOW_RATING_POINTS = 10
REPUTATION_GAP_POINTS = 5
SERVICES_POINTS = 5


def clamp_score(score: int) -> int:
    return max(SCORE_MIN, min(SCORE_MAX, score))


def _rating(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def calculate_initial_score(
    email: Optional[str] = None,
    phone: Optional[str] = None,
    custom_fields: Optional[dict[str, Any]] = None,
) -> int:
    """Score a contact from the data we hold about it.

    Pure function of its arguments.

    Args:
        email: Email address, if known
        phone: Phone number, if known
        custom_fields: Enrichment data (website, owner_name, google_rating,
            reputation_gap, services)

    Returns:
        Score 0-100
    """
    fields = custom_fields or {}
    score = BASE_SCORE

    if email:
        score += EMAIL_POINTS
    if phone:
        score += PHONE_POINTS
    if fields.get("website"):
        score += WEBSITE_POINTS
    if fields.get("owner_name"):
        score += OWNER_POINTS

    rating = _rating(fields.get("google_rating"))
    if rating is not None and rating > 0:
        if rating >= 4:
            score += HIGH_RATING_POINTS
        elif rating < 3:
            score += LOW_RATING_POINTS

    if fields.get("reputation_gap"):
        score += REPUTATION_GAP_POINTS
    if fields.get("services"):
        score += SERVICES_POINTS

    return min(SCORE_MAX, score)


def score_contact(contact: Contact) -> int:
    """calculate_initial_score for a stored contact."""
    return calculate_initial_score(contact.email, contact.phone, contact.custom_fields)


# =============================================================================
# SCORING ENGINE
# =============================================================================


class ScoreStatus(str, Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    ERROR = "error"


@dataclass
class ScoreOutcome:
    """Result of one recalculation.

    Attributes:
        status: What happened
        contact_id: Contact scored
        event: Triggering event
        previous: Score before (None if the contact was not loaded)
        score: Score after
        error: Failure text for ERROR outcomes
    """

    status: ScoreStatus
    contact_id: str
    event: ScoreEvent
    previous: Optional[int] = None
    score: Optional[int] = None
    error: Optional[str] = None

    @property
    def delta(self) -> int:
        if self.previous is None or self.score is None:
            return 0
        return self.score - self.previous


def _describe_change(delta: int, score: int, event: ScoreEvent) -> tuple[str, str]:
    """Build (activity content, last_activity summary) for a score change."""
    direction = "increased" if delta > 0 else "decreased"
    content = f"Lead score {direction} by {abs(delta)} to {score} ({event.label})"
    summary = f"Score {delta:+d} → {score} ({event.label})"
    return content, summary


class ScoringEngine:
    """Applies score events to contacts.

    Never raises: every failure comes back as a ScoreOutcome.
    """

    def __init__(
        self,
        db: Database,
        publisher: Optional[NotificationPublisher] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.db = db
        self.publisher = publisher or NotificationPublisher(clock)
        self.clock = clock or SystemClock()

    def compute_score(self, contact: Contact, event: ScoreEvent) -> int:
        """Score the contact would have after ``event``."""
        if event is ScoreEvent.ENRICHMENT:
            return score_contact(contact)
        return clamp_score(contact.lead_score + SCORE_ADJUSTMENTS[event])

    def recalculate_lead_score(self, contact_id: str, event: ScoreEvent) -> ScoreOutcome:
        """Apply an event to a contact's lead score.

        The write is conditional on the score read; if another writer got
        in between, the contact is re-read and the event applied once more.

        Args:
            contact_id: Contact to rescore
            event: Score event

        Returns:
            ScoreOutcome
        """
        try:
            for _ in range(2):
                outcome = self._apply(contact_id, event)
                if outcome.status is not ScoreStatus.CONFLICT:
                    return outcome

            logger.warning(
                "Lead score update lost twice to concurrent writers",
                extra={"context": {"contact_id": contact_id, "event": event.value}},
            )
            return outcome
        except Exception as e:
            logger.error(
                f"Lead score recalculation failed: {e}",
                extra={"context": {"contact_id": contact_id, "event": event.value}},
                exc_info=True,
            )
            return ScoreOutcome(
                status=ScoreStatus.ERROR, contact_id=contact_id, event=event, error=str(e)
            )

    def _apply(self, contact_id: str, event: ScoreEvent) -> ScoreOutcome:
        contact = self.db.get_contact(contact_id)
        if contact is None:
            logger.debug(
                "Score event for unknown contact",
                extra={"context": {"contact_id": contact_id, "event": event.value}},
            )
            return ScoreOutcome(status=ScoreStatus.NOT_FOUND, contact_id=contact_id, event=event)

        previous = contact.lead_score
        score = self.compute_score(contact, event)
        if score == previous:
            return ScoreOutcome(
                status=ScoreStatus.UNCHANGED,
                contact_id=contact_id,
                event=event,
                previous=previous,
                score=score,
            )

        content, summary = _describe_change(score - previous, score, event)
        if not self.db.update_lead_score(contact_id, previous, score, summary):
            return ScoreOutcome(
                status=ScoreStatus.CONFLICT,
                contact_id=contact_id,
                event=event,
                previous=previous,
            )

        self.db.create_activity(
            Activity(
                contact_id=contact_id,
                type=ActivityType.SCORE_CHANGE,
                content=content,
                timestamp=self.clock.now(),
            )
        )
        self.publisher.publish(
            SCORE_UPDATED,
            {"contactId": contact_id, "leadScore": score, "event": event.value},
        )
        logger.info(
            "Lead score updated",
            extra={
                "context": {
                    "contact_id": contact_id,
                    "event": event.value,
                    "previous": previous,
                    "score": score,
                }
            },
        )
        return ScoreOutcome(
            status=ScoreStatus.UPDATED,
            contact_id=contact_id,
            event=event,
            previous=previous,
            score=score,
        )
