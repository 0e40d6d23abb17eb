"""
Data structures for progress tracking.

Trackers keep their own copy of per-subtask state so the externally
visible view never depends on the orchestrator's scheduling internals.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from intentmoe.status import Priority, SubtaskStatus


class TrackerState(Enum):
    """Lifecycle of a tracker."""

    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TrackedSubtask:
    """Descriptor of one subtask registered with a tracker."""

    subtask_id: str
    action: str = ""
    priority: Priority = Priority.MEDIUM


@dataclass
class TrackingRequest:
    """
    Description of a session to start tracking.

    Attributes:
        execution_id: Orchestration run being tracked
        conversation_session_id: Conversation the run belongs to
        subtasks: Subtasks of the run, in batch order
        metadata: Free-form caller data echoed in snapshots
    """

    execution_id: str
    conversation_session_id: str
    subtasks: List[TrackedSubtask] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SubtaskProgress:
    """Mutable per-subtask state held by a tracker."""

    subtask_id: str
    action: str
    priority: Priority
    status: SubtaskStatus = SubtaskStatus.PENDING
    progress_percentage: float = 0.0
    result_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def execution_time_ms(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at) * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subtask_id": self.subtask_id,
            "action": self.action,
            "priority": self.priority.value,
            "status": self.status.value,
            "progress_percentage": self.progress_percentage,
            "result_data": self.result_data,
            "error_message": self.error_message,
            "execution_time_ms": self.execution_time_ms,
        }


@dataclass(frozen=True)
class ProgressSnapshot:
    """
    Point-in-time view of a tracked session.

    ``progress_percentage`` counts COMPLETED subtasks only; a session with
    failures can be complete without reaching 100%.
    """

    tracker_id: str
    execution_id: str
    conversation_session_id: str
    state: TrackerState
    total_subtasks: int
    completed_subtasks: int
    failed_subtasks: int
    skipped_subtasks: int
    in_progress_subtasks: int
    pending_subtasks: int
    subtasks: List[Dict[str, Any]]
    created_at: float
    updated_at: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def progress_percentage(self) -> float:
        if self.total_subtasks == 0:
            return 100.0
        return self.completed_subtasks / self.total_subtasks * 100.0

    @property
    def finished_subtasks(self) -> int:
        return self.completed_subtasks + self.failed_subtasks + self.skipped_subtasks

    @property
    def is_complete(self) -> bool:
        """Every subtask reached a terminal status."""
        return self.finished_subtasks == self.total_subtasks

    @property
    def critical_failures(self) -> List[str]:
        """High-priority subtasks that failed or were skipped."""
        return [
            s["subtask_id"]
            for s in self.subtasks
            if s["priority"] == Priority.HIGH.value
            and s["status"] in (SubtaskStatus.FAILED.value, SubtaskStatus.SKIPPED.value)
        ]

    @property
    def average_execution_time_ms(self) -> float:
        times = [s["execution_time_ms"] for s in self.subtasks if s["execution_time_ms"] is not None]
        return sum(times) / len(times) if times else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tracker_id": self.tracker_id,
            "execution_id": self.execution_id,
            "conversation_session_id": self.conversation_session_id,
            "state": self.state.value,
            "total_subtasks": self.total_subtasks,
            "completed_subtasks": self.completed_subtasks,
            "failed_subtasks": self.failed_subtasks,
            "skipped_subtasks": self.skipped_subtasks,
            "in_progress_subtasks": self.in_progress_subtasks,
            "pending_subtasks": self.pending_subtasks,
            "progress_percentage": round(self.progress_percentage, 2),
            "is_complete": self.is_complete,
            "critical_failures": self.critical_failures,
            "average_execution_time_ms": self.average_execution_time_ms,
            "subtasks": list(self.subtasks),
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class TrackerRecord:
    """Internal registry entry for one tracker."""

    tracker_id: str
    execution_id: str
    conversation_session_id: str
    subtasks: Dict[str, SubtaskProgress]
    metadata: Dict[str, Any] = field(default_factory=dict)
    state: TrackerState = TrackerState.ACTIVE
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def count(self, status: SubtaskStatus) -> int:
        return sum(1 for s in self.subtasks.values() if s.status == status)

    @property
    def all_terminal(self) -> bool:
        return all(s.status.is_terminal for s in self.subtasks.values())

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            tracker_id=self.tracker_id,
            execution_id=self.execution_id,
            conversation_session_id=self.conversation_session_id,
            state=self.state,
            total_subtasks=len(self.subtasks),
            completed_subtasks=self.count(SubtaskStatus.COMPLETED),
            failed_subtasks=self.count(SubtaskStatus.FAILED),
            skipped_subtasks=self.count(SubtaskStatus.SKIPPED),
            in_progress_subtasks=self.count(SubtaskStatus.IN_PROGRESS),
            pending_subtasks=self.count(SubtaskStatus.PENDING),
            subtasks=[s.to_dict() for s in self.subtasks.values()],
            created_at=self.created_at,
            updated_at=self.updated_at,
            metadata=dict(self.metadata),
        )
