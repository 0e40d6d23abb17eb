"""
Progress tracker for orchestration sessions.

Maintains a queryable view of each tracked session, independent of the
orchestrator that drives it. Updates are idempotent per
(tracker, subtask, status); the completion notification fires exactly
once, when the last subtask reaches a terminal status.
"""

import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from intentmoe.config import Config, ConfigurationManager, as_configuration_manager
from intentmoe.errors import DuplicateSessionError, InvalidSubtaskError, NotFoundError
from intentmoe.logging import get_component_logger
from intentmoe.status import SubtaskStatus

from .notifier import ProgressEvent, ProgressEventType, ProgressNotifier
from .schemas import (
    ProgressSnapshot,
    SubtaskProgress,
    TrackerRecord,
    TrackerState,
    TrackingRequest,
)


class ProgressTracker:
    """
    Registry of tracked orchestration sessions.

    The registry lock guards creation, lookup and removal; each tracker
    has its own lock for subtask updates so sessions never contend with
    each other. Notifications are delivered after locks are released.

    Example:
        >>> tracker = ProgressTracker()
        >>> tracker_id = tracker.start_tracking(TrackingRequest("exec_1", "conv_1", subtasks))
        >>> tracker.update_subtask_progress(tracker_id, "weather", SubtaskStatus.COMPLETED)
        >>> tracker.get_progress_status(tracker_id).progress_percentage
    """

    def __init__(
        self,
        config: Union[Config, ConfigurationManager, None] = None,
        notifier: Optional[ProgressNotifier] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the tracker.

        Args:
            config: Configuration snapshot or manager
            notifier: Event fan-out; a private one is created when omitted
            clock: Source of unix timestamps
        """
        self.config_manager = as_configuration_manager(config)
        self.notifier = notifier or ProgressNotifier()
        self._clock = clock
        self._log = get_component_logger("progress")

        self._lock = threading.Lock()
        self._trackers: Dict[str, TrackerRecord] = {}
        self._tracker_locks: Dict[str, threading.Lock] = {}
        self._active_pairs: Dict[Tuple[str, str], str] = {}
        self._purged = 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start_tracking(self, request: TrackingRequest) -> str:
        """
        Register a session for tracking.

        Args:
            request: Execution/conversation pair and its subtasks

        Returns:
            New tracker id

        Raises:
            DuplicateSessionError: If the pair is already tracked and active
            InvalidSubtaskError: If the request lists a subtask id twice
        """
        subtasks: Dict[str, SubtaskProgress] = {}
        for tracked in request.subtasks:
            if tracked.subtask_id in subtasks:
                raise InvalidSubtaskError(
                    f"Duplicate subtask id in tracking request: {tracked.subtask_id}",
                    tracked.subtask_id,
                )
            subtasks[tracked.subtask_id] = SubtaskProgress(
                subtask_id=tracked.subtask_id,
                action=tracked.action,
                priority=tracked.priority,
            )

        pair = (request.execution_id, request.conversation_session_id)
        now = self._clock()
        tracker_id = f"tracker_{uuid.uuid4().hex}"
        record = TrackerRecord(
            tracker_id=tracker_id,
            execution_id=request.execution_id,
            conversation_session_id=request.conversation_session_id,
            subtasks=subtasks,
            metadata=dict(request.metadata),
            created_at=now,
            updated_at=now,
        )

        with self._lock:
            existing_id = self._active_pairs.get(pair)
            if existing_id is not None:
                existing = self._trackers.get(existing_id)
                if existing is not None and not self._is_expired(existing, now):
                    raise DuplicateSessionError(*pair)
                self._remove(existing_id)

            if not subtasks:
                record.state = TrackerState.COMPLETED
            else:
                self._active_pairs[pair] = tracker_id
            self._trackers[tracker_id] = record
            self._tracker_locks[tracker_id] = threading.Lock()

        self._log.info(
            f"Started tracking {tracker_id} for execution {request.execution_id} "
            f"({len(subtasks)} subtask(s))"
        )
        if record.state == TrackerState.COMPLETED:
            self._notify(ProgressEventType.TRACKING_COMPLETED, record.snapshot(), {})
        return tracker_id

    def cancel_tracking(self, tracker_id: str) -> bool:
        """
        Stop accepting updates for a tracker.

        History stays queryable until the tracker expires.

        Returns:
            True if the tracker was active and is now cancelled

        Raises:
            NotFoundError: If the tracker is unknown or expired
        """
        record, lock = self._lookup(tracker_id)
        with lock:
            if record.state != TrackerState.ACTIVE:
                return False
            record.state = TrackerState.CANCELLED
            record.updated_at = self._clock()
            snapshot = record.snapshot()

        self._release_pair(record)
        self._log.info(f"Cancelled tracking {tracker_id}")
        self._notify(ProgressEventType.TRACKING_CANCELLED, snapshot, {})
        return True

    def cleanup_expired_trackers(self, now: Optional[float] = None) -> int:
        """
        Purge trackers idle for longer than the retention window.

        Args:
            now: Reference timestamp; defaults to the tracker clock

        Returns:
            Number of trackers removed
        """
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                tracker_id
                for tracker_id, record in self._trackers.items()
                if self._is_expired(record, now)
            ]
            for tracker_id in expired:
                self._remove(tracker_id)
            self._purged += len(expired)

        if expired:
            self._log.info(f"Purged {len(expired)} expired tracker(s)")
        return len(expired)

    # =========================================================================
    # Updates and queries
    # =========================================================================

    def update_subtask_progress(
        self,
        tracker_id: str,
        subtask_id: str,
        status: SubtaskStatus,
        progress_percentage: Optional[float] = None,
        result_data: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Record a subtask status change.

        An update that repeats the stored status, percentage, result and error
        is a no-op and is not announced. Updates to a terminal subtask or to an
        inactive tracker are ignored too.

        Args:
            tracker_id: Tracker to update
            subtask_id: Subtask within the tracked session
            status: New status
            progress_percentage: Optional 0-100 progress of the subtask itself
            result_data: Result data for a completed subtask
            error_message: Reason for a failed or skipped subtask

        Returns:
            True if the update changed state and was announced

        Raises:
            NotFoundError: If the tracker or the subtask is unknown
        """
        record, lock = self._lookup(tracker_id)
        completed_snapshot: Optional[ProgressSnapshot] = None

        with lock:
            progress = record.subtasks.get(subtask_id)
            if progress is None:
                raise NotFoundError("subtask", subtask_id)
            if record.state != TrackerState.ACTIVE:
                self._log.debug(
                    f"Ignoring update for {subtask_id}: tracker {tracker_id} is {record.state.value}"
                )
                return False
            if progress.status.is_terminal:
                return False
            percentage = (
                None if progress_percentage is None else max(0.0, min(100.0, float(progress_percentage)))
            )
            if (
                progress.status == status
                and percentage in (None, progress.progress_percentage)
                and result_data in (None, progress.result_data)
                and error_message in (None, progress.error_message)
            ):
                return False

            now = self._clock()
            progress.status = status
            if status == SubtaskStatus.IN_PROGRESS and progress.started_at is None:
                progress.started_at = now
            if status.is_terminal:
                progress.completed_at = now
                if progress.started_at is None:
                    progress.started_at = now
            if percentage is not None:
                progress.progress_percentage = percentage
            elif status == SubtaskStatus.COMPLETED:
                progress.progress_percentage = 100.0
            if result_data is not None:
                progress.result_data = dict(result_data)
            if error_message is not None:
                progress.error_message = error_message
            record.updated_at = now

            if record.all_terminal:
                record.state = TrackerState.COMPLETED
                completed_snapshot = record.snapshot()
            update_payload = progress.to_dict()
            update_snapshot = completed_snapshot or record.snapshot()

        self._log.debug(f"Tracker {tracker_id}: {subtask_id} -> {status.value}")
        self._notify(ProgressEventType.SUBTASK_UPDATED, update_snapshot, update_payload)

        if completed_snapshot is not None:
            self._release_pair(record)
            self._log.info(
                f"Tracking {tracker_id} complete: "
                f"{completed_snapshot.completed_subtasks}/{completed_snapshot.total_subtasks} completed, "
                f"{completed_snapshot.failed_subtasks} failed, "
                f"{completed_snapshot.skipped_subtasks} skipped"
            )
            self._notify(ProgressEventType.TRACKING_COMPLETED, completed_snapshot, {})
        return True

    def get_progress_status(self, tracker_id: str) -> ProgressSnapshot:
        """
        Current aggregate and per-subtask progress.

        Raises:
            NotFoundError: If the tracker is unknown or expired
        """
        record, lock = self._lookup(tracker_id)
        with lock:
            return record.snapshot()

    def active_tracker_ids(self) -> List[str]:
        with self._lock:
            return [t for t, r in self._trackers.items() if r.state == TrackerState.ACTIVE]

    def get_system_statistics(self) -> Dict[str, Any]:
        """Summary counts across every retained tracker."""
        with self._lock:
            records = [(r, self._tracker_locks[t]) for t, r in self._trackers.items()]
            purged = self._purged

        by_state = {state.value: 0 for state in TrackerState}
        by_status = {status.value: 0 for status in SubtaskStatus}
        for record, lock in records:
            with lock:
                by_state[record.state.value] += 1
                for progress in record.subtasks.values():
                    by_status[progress.status.value] += 1

        return {
            "total_trackers": len(records),
            "active_trackers": by_state[TrackerState.ACTIVE.value],
            "completed_trackers": by_state[TrackerState.COMPLETED.value],
            "cancelled_trackers": by_state[TrackerState.CANCELLED.value],
            "purged_trackers": purged,
            "subtasks_by_status": by_status,
            "notifications_sent": self.notifier.notifications_sent,
            "retention_window_seconds": (
                self.config_manager.snapshot.progress.tracker_retention_window_seconds
            ),
        }

    # =========================================================================
    # Internals
    # =========================================================================

    def _lookup(self, tracker_id: str) -> Tuple[TrackerRecord, threading.Lock]:
        now = self._clock()
        with self._lock:
            record = self._trackers.get(tracker_id)
            if record is None:
                raise NotFoundError("tracker", tracker_id)
            if self._is_expired(record, now):
                self._remove(tracker_id)
                self._purged += 1
                raise NotFoundError("tracker", tracker_id)
            return record, self._tracker_locks[tracker_id]

    def _is_expired(self, record: TrackerRecord, now: float) -> bool:
        retention = self.config_manager.snapshot.progress.tracker_retention_window_seconds
        return now - record.updated_at > retention

    def _remove(self, tracker_id: str) -> None:
        # Caller holds the registry lock
        record = self._trackers.pop(tracker_id, None)
        self._tracker_locks.pop(tracker_id, None)
        if record is not None:
            pair = (record.execution_id, record.conversation_session_id)
            if self._active_pairs.get(pair) == tracker_id:
                del self._active_pairs[pair]

    def _release_pair(self, record: TrackerRecord) -> None:
        pair = (record.execution_id, record.conversation_session_id)
        with self._lock:
            if self._active_pairs.get(pair) == record.tracker_id:
                del self._active_pairs[pair]

    def _notify(
        self,
        event_type: ProgressEventType,
        snapshot: ProgressSnapshot,
        payload: Dict[str, Any],
    ) -> None:
        if not self.config_manager.snapshot.progress.enable_notifications:
            return
        event_payload = dict(payload)
        event_payload["progress_percentage"] = snapshot.progress_percentage
        event_payload["is_complete"] = snapshot.is_complete
        self.notifier.notify(
            ProgressEvent(
                event_type=event_type,
                tracker_id=snapshot.tracker_id,
                execution_id=snapshot.execution_id,
                conversation_session_id=snapshot.conversation_session_id,
                payload=event_payload,
            )
        )
