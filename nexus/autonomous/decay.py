"""Lead score time decay.

Contacts with a positive score and no activity in the trailing window
lose one point per scan (default: daily scan, 7-day window).

Usage:
    from nexus.autonomous.decay import DecayScheduler

    decay = DecayScheduler(db, scoring, clock)
    result = decay.run_once()
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from nexus.core.clock import Clock, SystemClock
from nexus.core.config import Config, get_config
from nexus.core.logging import get_logger
from nexus.db.database import Database
from nexus.db.models import ScoreEvent
from nexus.engine.scoring import ScoreStatus, ScoringEngine

logger = get_logger(__name__)


@dataclass
class DecayResult:
    """Result of a decay scan.

    Attributes:
        scanned: Contacts with score > 0 examined
        decayed: Contacts whose score went down
        errors: Contacts whose check or rescore failed
        skipped: True if another scan was already running
    """

    scanned: int = 0
    decayed: int = 0
    errors: int = 0
    skipped: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class DecayScheduler:
    """Applies time_decay to inactive contacts.

    Only one scan runs at a time; an overlapping call returns immediately
    with ``skipped=True``.
    """

    def __init__(
        self,
        db: Database,
        scoring: ScoringEngine,
        clock: Optional[Clock] = None,
        config: Optional[Config] = None,
    ) -> None:
        config = config or get_config()
        self.db = db
        self.scoring = scoring
        self.clock = clock or SystemClock()
        self.window: timedelta = config.decay_window
        self._in_flight = threading.Lock()

    def run_once(self) -> DecayResult:
        """Scan every scored contact once."""
        if not self._in_flight.acquire(blocking=False):
            logger.info("Decay scan already running, skipping")
            return DecayResult(skipped=True)

        try:
            return self._scan()
        finally:
            self._in_flight.release()

    def _scan(self) -> DecayResult:
        now = self.clock.now()
        since = now - self.window
        result = DecayResult(started_at=now)

        for contact in self.db.get_contacts_with_score_above(0):
            result.scanned += 1
            contact_id = contact.id or ""
            try:
                if self.db.has_activity_since(contact_id, since):
                    continue
                outcome = self.scoring.recalculate_lead_score(contact_id, ScoreEvent.TIME_DECAY)
            except Exception as e:
                result.errors += 1
                logger.error(
                    f"Decay failed for contact: {e}",
                    extra={"context": {"contact_id": contact_id}},
                    exc_info=True,
                )
                continue

            if outcome.status is ScoreStatus.UPDATED:
                result.decayed += 1
            elif outcome.status in (ScoreStatus.ERROR, ScoreStatus.CONFLICT):
                result.errors += 1

        result.completed_at = self.clock.now()
        logger.info(
            "Decay scan complete",
            extra={
                "context": {
                    "scanned": result.scanned,
                    "decayed": result.decayed,
                    "errors": result.errors,
                    "window_days": self.window.days,
                }
            },
        )
        return result
