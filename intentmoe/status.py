"""
Status and priority enums shared by orchestration and progress tracking.
"""

from enum import Enum
from typing import Any


class SubtaskStatus(Enum):
    """Lifecycle of a subtask."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (SubtaskStatus.COMPLETED, SubtaskStatus.FAILED, SubtaskStatus.SKIPPED)


class Priority(Enum):
    """Dispatch priority among subtasks that are ready at the same time."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        """Sort key; lower dispatches first."""
        return {"high": 0, "medium": 1, "low": 2}[self.value]

    @classmethod
    def parse(cls, value: Any) -> "Priority":
        if isinstance(value, Priority):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.MEDIUM
