"""
Progress notifications.

Listeners are plain callables receiving a ProgressEvent. A listener that
raises is logged and skipped; tracking state is never affected.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List

from intentmoe.logging import get_component_logger


class ProgressEventType(Enum):
    SUBTASK_UPDATED = "subtask_updated"
    TRACKING_COMPLETED = "tracking_completed"
    TRACKING_CANCELLED = "tracking_cancelled"


@dataclass(frozen=True)
class ProgressEvent:
    """
    One notification sent to listeners.

    Attributes:
        event_type: What happened
        tracker_id: Tracker the event belongs to
        execution_id: Orchestration run being tracked
        conversation_session_id: Conversation to respond to
        payload: Event details (subtask status, snapshot summary)
        timestamp: When the event was emitted
    """

    event_type: ProgressEventType
    tracker_id: str
    execution_id: str
    conversation_session_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


ProgressListener = Callable[[ProgressEvent], None]


class ProgressNotifier:
    """Fans progress events out to registered listeners."""

    def __init__(self) -> None:
        self._listeners: List[ProgressListener] = []
        self._lock = threading.Lock()
        self._sent = 0
        self._log = get_component_logger("progress")

    def add_listener(self, listener: ProgressListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ProgressListener) -> bool:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
                return True
            return False

    @property
    def notifications_sent(self) -> int:
        with self._lock:
            return self._sent

    def notify(self, event: ProgressEvent) -> int:
        """
        Deliver an event to every listener.

        Returns:
            Number of listeners that accepted the event without raising
        """
        with self._lock:
            listeners = list(self._listeners)
            self._sent += 1

        delivered = 0
        for listener in listeners:
            try:
                listener(event)
                delivered += 1
            except Exception as e:
                self._log.error(
                    f"Progress listener failed for {event.event_type.value} "
                    f"on {event.tracker_id}: {type(e).__name__}: {e}"
                )
        return delivered
