"""
Data structures for subtask orchestration.

A Subtask is one unit of delegated work. The orchestrator owns the copies
it executes; callers see outcomes through TaskExecutionResult.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from intentmoe.status import Priority, SubtaskStatus


@dataclass
class Subtask:
    """
    One executable unit of delegated work.

    Attributes:
        subtask_id: Unique within its batch
        action: Capability the action executor should invoke
        description: Human-readable description
        entities: Parameters for the action
        dependencies: Ids of subtasks that must finish first
        priority: Dispatch priority among ready subtasks
        status: Current status
        result: Result data once completed
        error_message: Failure or skip reason
        attempts: Number of executions attempted
        started_at: Unix timestamp of the first attempt
        completed_at: Unix timestamp of the terminal status
    """

    subtask_id: str
    action: str
    description: str = ""
    entities: Dict[str, Any] = field(default_factory=dict)
    dependencies: Set[str] = field(default_factory=set)
    priority: Priority = Priority.MEDIUM
    status: SubtaskStatus = SubtaskStatus.PENDING
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    attempts: int = 0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def __post_init__(self) -> None:
        self.priority = Priority.parse(self.priority)
        self.dependencies = set(self.dependencies)

    @property
    def is_critical(self) -> bool:
        return self.priority == Priority.HIGH

    @property
    def execution_time_ms(self) -> float:
        if self.started_at is None or self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at) * 1000

    @classmethod
    def from_descriptor(cls, descriptor: Mapping[str, Any], default_id: str) -> "Subtask":
        """
        Build a subtask from a descriptor proposed by a model or a JSON file.

        Args:
            descriptor: Mapping with ``action`` and optional ``subtask_id``,
                ``description``, ``entities``, ``dependencies``, ``priority``
            default_id: Id used when the descriptor has none

        Returns:
            A PENDING subtask
        """
        dependencies = descriptor.get("dependencies") or descriptor.get("depends_on") or []
        if isinstance(dependencies, str):
            dependencies = [dependencies]
        elif not isinstance(dependencies, (list, tuple, set, frozenset)):
            dependencies = []
        entities = descriptor.get("entities")
        return cls(
            subtask_id=str(descriptor.get("subtask_id") or descriptor.get("id") or default_id),
            action=str(descriptor.get("action") or ""),
            description=str(descriptor.get("description") or ""),
            entities=dict(entities) if isinstance(entities, Mapping) else {},
            dependencies={
                str(d) for d in dependencies if isinstance(d, (str, int)) and not isinstance(d, bool)
            },
            priority=Priority.parse(descriptor.get("priority", "medium")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subtask_id": self.subtask_id,
            "action": self.action,
            "description": self.description,
            "entities": dict(self.entities),
            "dependencies": sorted(self.dependencies),
            "priority": self.priority.value,
            "status": self.status.value,
            "result": self.result,
            "error_message": self.error_message,
            "attempts": self.attempts,
        }


@dataclass
class ActionResult:
    """Outcome reported by an action executor."""

    success: bool
    result_data: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None

    @classmethod
    def coerce(cls, value: Any) -> "ActionResult":
        """Accept an ActionResult or a mapping with ``success`` / ``result_data`` / ``error_message``."""
        if isinstance(value, ActionResult):
            return value
        if isinstance(value, Mapping):
            data = value.get("result_data", value.get("result"))
            return cls(
                success=bool(value.get("success", False)),
                result_data=dict(data) if isinstance(data, Mapping) else {},
                error_message=value.get("error_message"),
            )
        return cls(
            success=False,
            error_message=f"Action executor returned unsupported result type {type(value).__name__}",
        )


@dataclass
class SubtaskExecutionResult:
    """Final outcome of one subtask."""

    subtask_id: str
    action: str
    status: SubtaskStatus
    result_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    attempts: int = 0
    execution_time_ms: float = 0.0

    @property
    def successful(self) -> bool:
        return self.status == SubtaskStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subtask_id": self.subtask_id,
            "action": self.action,
            "status": self.status.value,
            "result_data": self.result_data,
            "error_message": self.error_message,
            "attempts": self.attempts,
            "execution_time_ms": self.execution_time_ms,
        }


@dataclass
class TaskExecutionSession:
    """One orchestration run, referenced externally by ``execution_id``."""

    execution_id: str
    conversation_session_id: str
    subtasks: List[Subtask]
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    cancelled: bool = False
    tracker_id: Optional[str] = None

    @property
    def total_tasks(self) -> int:
        return len(self.subtasks)

    @property
    def successful_tasks(self) -> int:
        return self._count(SubtaskStatus.COMPLETED)

    @property
    def failed_tasks(self) -> int:
        return self._count(SubtaskStatus.FAILED)

    @property
    def skipped_tasks(self) -> int:
        return self._count(SubtaskStatus.SKIPPED)

    @property
    def is_finished(self) -> bool:
        return all(s.status.is_terminal for s in self.subtasks)

    def _count(self, status: SubtaskStatus) -> int:
        return sum(1 for s in self.subtasks if s.status == status)


@dataclass
class TaskExecutionResult:
    """
    Aggregate outcome of an orchestration run.

    Partial results are always returned; ``all_successful`` is true only
    when every subtask completed.
    """

    execution_id: str
    conversation_session_id: str
    total_tasks: int
    successful_tasks: int
    failed_tasks: int
    skipped_tasks: int
    subtask_results: List[SubtaskExecutionResult] = field(default_factory=list)
    total_execution_time_ms: float = 0.0
    cancelled: bool = False
    tracker_id: Optional[str] = None

    @property
    def all_successful(self) -> bool:
        return all(r.status == SubtaskStatus.COMPLETED for r in self.subtask_results)

    def get_result(self, subtask_id: str) -> Optional[SubtaskExecutionResult]:
        for result in self.subtask_results:
            if result.subtask_id == subtask_id:
                return result
        return None

    def get_error_summary(self) -> Dict[str, Any]:
        """Get a structured summary of failed and skipped subtasks.

        Returns:
            Dictionary with error details suitable for logging or reporting
        """
        return {
            "failed_tasks": self.failed_tasks,
            "skipped_tasks": self.skipped_tasks,
            "errors": {
                r.subtask_id: r.error_message
                for r in self.subtask_results
                if r.status in (SubtaskStatus.FAILED, SubtaskStatus.SKIPPED)
            },
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "conversation_session_id": self.conversation_session_id,
            "total_tasks": self.total_tasks,
            "successful_tasks": self.successful_tasks,
            "failed_tasks": self.failed_tasks,
            "skipped_tasks": self.skipped_tasks,
            "all_successful": self.all_successful,
            "cancelled": self.cancelled,
            "total_execution_time_ms": self.total_execution_time_ms,
            "tracker_id": self.tracker_id,
            "subtask_results": [r.to_dict() for r in self.subtask_results],
        }


def subtasks_from_descriptors(descriptors: Iterable[Mapping[str, Any]]) -> List[Subtask]:
    """Build subtasks from descriptors; one without an id is named after its position."""
    return [
        Subtask.from_descriptor(d, default_id=f"subtask_{position}")
        for position, d in enumerate(descriptors, start=1)
    ]
