"""
Task orchestrator - concurrent execution of a subtask dependency graph.

Subtasks start as soon as their own dependencies are terminal, bounded
by ``max_parallelism``. A failed subtask skips everything downstream of
it while independent branches keep running. Cancellation is cooperative:
nothing new is dispatched, running actions finish and are recorded.

All readiness bookkeeping for one execution (in-degrees, ready heap,
running count) is mutated only while holding that execution's condition.
"""

import dataclasses
import heapq
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from loguru import logger

from intentmoe.config import (
    Config,
    ConfigurationManager,
    OrchestratorConfig,
    as_configuration_manager,
)
from intentmoe.errors import IntentMoEError, NotFoundError
from intentmoe.logging import performance_monitor
from intentmoe.progress import ProgressTracker, TrackedSubtask, TrackingRequest
from intentmoe.status import SubtaskStatus

from .executor import ActionExecutor
from .graph import DependencyGraph
from .schemas import (
    ActionResult,
    Subtask,
    SubtaskExecutionResult,
    TaskExecutionResult,
    TaskExecutionSession,
)

# (subtask_id, status, result_data, error_message) reported to the tracker
_ProgressUpdate = Tuple[str, SubtaskStatus, Optional[Dict[str, Any]], Optional[str]]


@dataclasses.dataclass
class ExecutionHandle:
    """Reference to a batch submitted with ``submit_subtasks``."""

    execution_id: str
    future: Future

    def result(self, timeout: Optional[float] = None) -> TaskExecutionResult:
        return self.future.result(timeout=timeout)

    def done(self) -> bool:
        return self.future.done()


class _ExecutionState:
    """Scheduling state of one execution; guarded by ``condition``."""

    def __init__(
        self,
        session: TaskExecutionSession,
        graph: DependencyGraph,
        orchestrator_config: OrchestratorConfig,
    ):
        self.session = session
        self.graph = graph
        self.orchestrator_config = orchestrator_config
        self.condition = threading.Condition()
        self.in_degree = graph.in_degrees()
        self.ready = [graph.priority_key(i) for i in graph.roots()]
        heapq.heapify(self.ready)
        self.running = 0
        self.remaining = len(graph)
        self.pool: Optional[ThreadPoolExecutor] = None


class TaskOrchestrator:
    """
    Executes subtask batches against an ActionExecutor.

    Example:
        >>> orchestrator = TaskOrchestrator(HandlerActionExecutor(handlers), config)
        >>> result = orchestrator.execute_subtasks(subtasks, "conv-1")
        >>> result.all_successful
    """

    def __init__(
        self,
        action_executor: ActionExecutor,
        config: Union[Config, ConfigurationManager, None] = None,
        progress_tracker: Optional[ProgressTracker] = None,
        max_concurrent_executions: int = 4,
    ):
        """
        Initialize the orchestrator.

        Args:
            action_executor: Invokes subtask actions
            config: Configuration snapshot or manager
            progress_tracker: Receives subtask transitions when given
            max_concurrent_executions: Coordinator threads for ``submit_subtasks``
        """
        self.action_executor = action_executor
        self.config_manager = as_configuration_manager(config)
        self.progress_tracker = progress_tracker
        self.max_concurrent_executions = max_concurrent_executions

        self._sessions: Dict[str, _ExecutionState] = {}
        self._sessions_lock = threading.Lock()
        self._coordinator: Optional[ThreadPoolExecutor] = None
        self._coordinator_lock = threading.Lock()

        self._stats_lock = threading.Lock()
        self._stats: Dict[str, Any] = {
            "executions": 0,
            "cancelled_executions": 0,
            "total_subtasks": 0,
            "successful_subtasks": 0,
            "failed_subtasks": 0,
            "skipped_subtasks": 0,
            "total_task_time_ms": 0.0,
            "executed_subtasks": 0,
        }

    # =========================================================================
    # Public API
    # =========================================================================

    @performance_monitor(threshold_ms=30000.0, component="orchestration")
    def execute_subtasks(
        self, subtasks: Sequence[Subtask], conversation_session_id: str
    ) -> TaskExecutionResult:
        """
        Execute a batch and wait for every subtask to reach a terminal status.

        The caller's Subtask objects are not modified; the orchestrator
        works on copies.

        Args:
            subtasks: The batch to execute
            conversation_session_id: Conversation the batch belongs to

        Returns:
            Aggregate result with per-subtask outcomes in batch order

        Raises:
            InvalidSubtaskError: Duplicate ids, empty actions or unknown dependencies
            CyclicDependencyError: The dependency relation has a cycle; nothing runs
        """
        state = self._prepare(subtasks, conversation_session_id)
        return self._run(state)

    def submit_subtasks(
        self, subtasks: Sequence[Subtask], conversation_session_id: str
    ) -> ExecutionHandle:
        """
        Start a batch in the background.

        Validation happens before this returns, so structural errors are
        raised here rather than through the future.
        """
        state = self._prepare(subtasks, conversation_session_id)
        future = self._coordinator_pool().submit(self._run, state)
        return ExecutionHandle(execution_id=state.session.execution_id, future=future)

    def cancel_execution(self, execution_id: str) -> bool:
        """
        Stop dispatching new subtasks for an execution.

        Pending subtasks become SKIPPED; running ones finish normally.

        Returns:
            True if the execution was running and is now cancelled; False if
            it is unknown, already finished or already cancelled
        """
        with self._sessions_lock:
            state = self._sessions.get(execution_id)
        if state is None:
            return False

        updates: List[_ProgressUpdate] = []
        with state.condition:
            if state.session.cancelled or state.remaining == 0:
                return False
            state.session.cancelled = True
            state.ready.clear()
            now = time.time()
            for subtask in state.graph.subtasks:
                if subtask.status == SubtaskStatus.PENDING:
                    subtask.status = SubtaskStatus.SKIPPED
                    subtask.error_message = "Execution cancelled before dispatch"
                    subtask.completed_at = now
                    state.remaining -= 1
                    updates.append(self._progress_update(subtask))
            state.condition.notify_all()

        logger.bind(component="orchestration").info(
            f"Execution {execution_id} cancelled: {len(updates)} pending subtask(s) skipped, "
            f"{state.running} still running"
        )
        self._report(state, updates)
        return True

    def get_active_session(self, execution_id: str) -> TaskExecutionSession:
        """
        Look up a running execution.

        Raises:
            NotFoundError: If no execution with that id is running
        """
        with self._sessions_lock:
            state = self._sessions.get(execution_id)
        if state is None:
            raise NotFoundError("execution", execution_id)
        return state.session

    def active_execution_ids(self) -> List[str]:
        with self._sessions_lock:
            return sorted(self._sessions)

    def get_statistics(self) -> Dict[str, Any]:
        """Aggregate statistics over all executions run by this orchestrator."""
        with self._stats_lock:
            stats = dict(self._stats)
        total = stats["total_subtasks"]
        executed = stats.pop("executed_subtasks")
        total_time = stats.pop("total_task_time_ms")
        stats["success_rate"] = stats["successful_subtasks"] / total if total else 0.0
        stats["average_task_time_ms"] = total_time / executed if executed else 0.0
        stats["active_executions"] = len(self.active_execution_ids())
        stats["max_parallelism"] = self.config_manager.snapshot.orchestrator.max_parallelism
        return stats

    def shutdown(self, wait: bool = True) -> None:
        """Release the background coordinator threads."""
        with self._coordinator_lock:
            coordinator, self._coordinator = self._coordinator, None
        if coordinator is not None:
            coordinator.shutdown(wait=wait)

    # =========================================================================
    # Execution
    # =========================================================================

    def _prepare(
        self, subtasks: Sequence[Subtask], conversation_session_id: str
    ) -> _ExecutionState:
        batch = [
            dataclasses.replace(
                s,
                entities=dict(s.entities),
                dependencies=set(s.dependencies),
                status=SubtaskStatus.PENDING,
                result=None,
                error_message=None,
                attempts=0,
                started_at=None,
                completed_at=None,
            )
            for s in subtasks
        ]
        # Raises before any side effect for malformed or cyclic batches
        graph = DependencyGraph(batch)

        snapshot = self.config_manager.snapshot
        session = TaskExecutionSession(
            execution_id=f"exec_{uuid.uuid4().hex}",
            conversation_session_id=conversation_session_id,
            subtasks=batch,
        )
        state = _ExecutionState(session, graph, snapshot.orchestrator)
        session.tracker_id = self._start_tracking(session)

        with self._sessions_lock:
            self._sessions[session.execution_id] = state
        return state

    def _run(self, state: _ExecutionState) -> TaskExecutionResult:
        log = logger.bind(component="orchestration")
        session = state.session
        started = time.monotonic()
        log.info(
            f"Executing {session.total_tasks} subtask(s) as {session.execution_id} "
            f"(order: {', '.join(state.graph.topological_order()) or 'empty'}, "
            f"max parallelism {state.orchestrator_config.max_parallelism})"
        )

        if state.remaining:
            state.pool = ThreadPoolExecutor(
                max_workers=max(1, min(state.orchestrator_config.max_parallelism, state.remaining)),
                thread_name_prefix=f"subtask-{session.execution_id[:13]}",
            )
        try:
            with state.condition:
                self._pump(state)
                while state.remaining > 0:
                    state.condition.wait()
        finally:
            if state.pool is not None:
                state.pool.shutdown(wait=True)
            with self._sessions_lock:
                self._sessions.pop(session.execution_id, None)

        session.end_time = datetime.now()
        result = self._build_result(state, (time.monotonic() - started) * 1000)
        self._update_statistics(result)

        message = (
            f"Execution {session.execution_id} finished: {result.successful_tasks}/"
            f"{result.total_tasks} completed, {result.failed_tasks} failed, "
            f"{result.skipped_tasks} skipped in {result.total_execution_time_ms:.1f}ms"
        )
        if result.all_successful:
            log.info(message)
        else:
            log.warning(message)
        return result

    def _pump(self, state: _ExecutionState) -> None:
        """Dispatch ready subtasks up to the parallelism bound. Caller holds the condition."""
        while (
            state.ready
            and state.running < state.orchestrator_config.max_parallelism
            and not state.session.cancelled
        ):
            _, i = heapq.heappop(state.ready)
            subtask = state.graph.subtasks[i]
            if subtask.status != SubtaskStatus.PENDING:
                continue
            subtask.status = SubtaskStatus.IN_PROGRESS
            subtask.started_at = time.time()
            state.running += 1
            logger.bind(component="orchestration").debug(
                f"Dispatching {subtask.subtask_id} ({subtask.action}, {subtask.priority.value})"
            )
            state.pool.submit(self._execute_one, state, i)

    def _execute_one(self, state: _ExecutionState, i: int) -> None:
        subtask = state.graph.subtasks[i]
        outcome = ActionResult(success=False, error_message="Subtask ended without an outcome")
        updates: List[_ProgressUpdate] = []
        try:
            self._report(state, [(subtask.subtask_id, SubtaskStatus.IN_PROGRESS, None, None)])
            outcome = self._invoke(state, subtask)
        finally:
            with state.condition:
                updates = self._record_outcome(state, i, outcome)
                state.running -= 1
                self._pump(state)
                state.condition.notify_all()
        self._report(state, updates)

    def _invoke(self, state: _ExecutionState, subtask: Subtask) -> ActionResult:
        """Run the action, retrying failures up to ``max_retries`` extra times."""
        log = logger.bind(component="orchestration")
        orchestrator_config = state.orchestrator_config
        max_attempts = 1 + orchestrator_config.max_retries

        for attempt in range(1, max_attempts + 1):
            subtask.attempts = attempt
            try:
                outcome = ActionResult.coerce(self.action_executor.execute(subtask))
            except Exception as e:
                outcome = ActionResult(success=False, error_message=f"{type(e).__name__}: {e}")

            if outcome.success or attempt == max_attempts or state.session.cancelled:
                return outcome

            log.debug(
                f"Subtask {subtask.subtask_id} attempt {attempt}/{max_attempts} failed: "
                f"{outcome.error_message}; retrying in {orchestrator_config.retry_delay_ms}ms"
            )
            time.sleep(orchestrator_config.retry_delay_ms / 1000.0)
        return outcome

    def _record_outcome(
        self, state: _ExecutionState, i: int, outcome: ActionResult
    ) -> List[_ProgressUpdate]:
        """Apply a finished subtask's outcome and release its dependents. Caller holds the condition."""
        log = logger.bind(component="orchestration")
        graph = state.graph
        subtask = graph.subtasks[i]
        now = time.time()

        subtask.completed_at = now
        if outcome.success:
            subtask.status = SubtaskStatus.COMPLETED
            subtask.result = dict(outcome.result_data)
            log.debug(f"Subtask {subtask.subtask_id} completed in {subtask.execution_time_ms:.1f}ms")
        else:
            subtask.status = SubtaskStatus.FAILED
            subtask.error_message = outcome.error_message or "Action reported failure"
            log.warning(f"Subtask {subtask.subtask_id} failed: {subtask.error_message}")
        state.remaining -= 1
        updates = [self._progress_update(subtask)]

        if subtask.status == SubtaskStatus.FAILED:
            for j in sorted(graph.transitive_dependents(i)):
                dependent = graph.subtasks[j]
                if dependent.status != SubtaskStatus.PENDING:
                    continue
                dependent.status = SubtaskStatus.SKIPPED
                dependent.error_message = f"Skipped: dependency {subtask.subtask_id} failed"
                dependent.completed_at = now
                state.remaining -= 1
                updates.append(self._progress_update(dependent))
                log.info(f"Subtask {dependent.subtask_id} skipped (dependency {subtask.subtask_id} failed)")

        for j in graph.dependents[i]:
            state.in_degree[j] -= 1
            if state.in_degree[j] == 0 and graph.subtasks[j].status == SubtaskStatus.PENDING:
                heapq.heappush(state.ready, graph.priority_key(j))
        return updates

    def _build_result(self, state: _ExecutionState, elapsed_ms: float) -> TaskExecutionResult:
        session = state.session
        return TaskExecutionResult(
            execution_id=session.execution_id,
            conversation_session_id=session.conversation_session_id,
            total_tasks=session.total_tasks,
            successful_tasks=session.successful_tasks,
            failed_tasks=session.failed_tasks,
            skipped_tasks=session.skipped_tasks,
            subtask_results=[
                SubtaskExecutionResult(
                    subtask_id=s.subtask_id,
                    action=s.action,
                    status=s.status,
                    result_data=s.result,
                    error_message=s.error_message,
                    attempts=s.attempts,
                    execution_time_ms=s.execution_time_ms,
                )
                for s in session.subtasks
            ],
            total_execution_time_ms=elapsed_ms,
            cancelled=session.cancelled,
            tracker_id=session.tracker_id,
        )

    def _update_statistics(self, result: TaskExecutionResult) -> None:
        executed = [r for r in result.subtask_results if r.attempts > 0]
        with self._stats_lock:
            self._stats["executions"] += 1
            self._stats["cancelled_executions"] += int(result.cancelled)
            self._stats["total_subtasks"] += result.total_tasks
            self._stats["successful_subtasks"] += result.successful_tasks
            self._stats["failed_subtasks"] += result.failed_tasks
            self._stats["skipped_subtasks"] += result.skipped_tasks
            self._stats["executed_subtasks"] += len(executed)
            self._stats["total_task_time_ms"] += sum(r.execution_time_ms for r in executed)

    def _coordinator_pool(self) -> ThreadPoolExecutor:
        with self._coordinator_lock:
            if self._coordinator is None:
                self._coordinator = ThreadPoolExecutor(
                    max_workers=self.max_concurrent_executions,
                    thread_name_prefix="orchestrator",
                )
            return self._coordinator

    # =========================================================================
    # Progress tracking
    # =========================================================================

    def _start_tracking(self, session: TaskExecutionSession) -> Optional[str]:
        if self.progress_tracker is None or not session.subtasks:
            return None
        request = TrackingRequest(
            execution_id=session.execution_id,
            conversation_session_id=session.conversation_session_id,
            subtasks=[
                TrackedSubtask(subtask_id=s.subtask_id, action=s.action, priority=s.priority)
                for s in session.subtasks
            ],
        )
        try:
            return self.progress_tracker.start_tracking(request)
        except IntentMoEError as e:
            logger.bind(component="orchestration").warning(
                f"Progress tracking unavailable for {session.execution_id}: {e}"
            )
            return None

    @staticmethod
    def _progress_update(subtask: Subtask) -> _ProgressUpdate:
        return (subtask.subtask_id, subtask.status, subtask.result, subtask.error_message)

    def _report(self, state: _ExecutionState, updates: List[_ProgressUpdate]) -> None:
        tracker_id = state.session.tracker_id
        if self.progress_tracker is None or tracker_id is None:
            return
        for subtask_id, status, result_data, error_message in updates:
            try:
                self.progress_tracker.update_subtask_progress(
                    tracker_id,
                    subtask_id,
                    status,
                    result_data=result_data,
                    error_message=error_message,
                )
            except IntentMoEError as e:
                logger.bind(component="orchestration").warning(
                    f"Progress update for {subtask_id} in {state.session.execution_id} failed: {e}"
                )
