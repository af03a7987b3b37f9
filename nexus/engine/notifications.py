"""Best-effort fan-out of engine state changes to connected clients.

Notifications are JSON-serializable dicts::

    {"type": "contact:score_updated",
     "payload": {"contactId": "c-1", "leadScore": 95, "event": "reply"},
     "timestamp": "2026-01-05T09:00:00"}

Usage:
    publisher = NotificationPublisher()
    unsubscribe = publisher.subscribe(websocket_hub.broadcast)
    publisher.publish("workflow:completed", {"instanceId": "...", "contactId": "..."})
"""

import threading
from typing import Any, Callable, Optional

from nexus.core.clock import Clock, SystemClock
from nexus.core.logging import get_logger

logger = get_logger(__name__)

Notification = dict[str, Any]
Subscriber = Callable[[Notification], None]

SCORE_UPDATED = "contact:score_updated"
WORKFLOW_STARTED = "workflow:started"
WORKFLOW_STEP = "workflow:step"
WORKFLOW_COMPLETED = "workflow:completed"
SEQUENCE_ENROLLED = "sequence:enrolled"
SEQUENCE_STEP = "sequence:step"
SEQUENCE_COMPLETED = "sequence:completed"
SEQUENCE_REPLY_DETECTED = "sequence:reply_detected"
SEQUENCE_STOPPED = "sequence:stopped"


class NotificationPublisher:
    """Subscriber list with isolated, synchronous delivery."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or SystemClock()
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber.

        Returns:
            Function that removes the subscription
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, type: str, payload: dict[str, Any]) -> int:
        """Deliver a notification to every subscriber.

        Returns:
            Number of subscribers that accepted it
        """
        notification: Notification = {
            "type": type,
            "payload": payload,
            "timestamp": self._clock.now().isoformat(),
        }
        with self._lock:
            subscribers = list(self._subscribers)

        delivered = 0
        for callback in subscribers:
            try:
                callback(notification)
                delivered += 1
            except Exception as e:
                logger.warning(
                    f"Notification subscriber failed: {e}",
                    extra={"context": {"type": type}},
                    exc_info=True,
                )
        return delivered
