"""
Push notifications of job status changes.

Delivery is at-least-once and unordered across jobs; subscribers reconcile
with ``JobOrchestrator.get_status``.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .models import JobStatus, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusEvent:
    job_id: str
    status: JobStatus
    attempt_count: int
    progress: float
    stage: Optional[str] = None
    failure_reason: Optional[str] = None
    terminal: bool = False
    timestamp: str = field(default_factory=utc_now)


Subscriber = Callable[[StatusEvent], None]


class StatusNotifier:
    """Fans status events out to subscribers."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a callback for every status event.

        Returns:
            Function that removes the subscription
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)
        return unsubscribe

    def publish(self, event: StatusEvent):
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                # a failing subscriber must not affect the job
                logger.exception("Status subscriber failed for job %s", event.job_id)
