"""
Progress tracking for orchestration sessions.

Provides the ProgressTracker registry, its snapshot types and the
listener-based ProgressNotifier.
"""

from .notifier import ProgressEvent, ProgressEventType, ProgressListener, ProgressNotifier
from .schemas import (
    ProgressSnapshot,
    SubtaskProgress,
    TrackedSubtask,
    TrackerState,
    TrackingRequest,
)
from .tracker import ProgressTracker

__all__ = [
    # Tracker
    "ProgressTracker",
    # Schemas
    "ProgressSnapshot",
    "SubtaskProgress",
    "TrackedSubtask",
    "TrackerState",
    "TrackingRequest",
    # Notifications
    "ProgressEvent",
    "ProgressEventType",
    "ProgressListener",
    "ProgressNotifier",
]
