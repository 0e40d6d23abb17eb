"""
Subtask orchestration.

Executes batches of subtasks over their dependency graph, concurrently
where dependencies allow, and reports partial results on failure.
"""

from intentmoe.status import Priority, SubtaskStatus

from .executor import ActionExecutor, ActionHandler, HandlerActionExecutor
from .graph import DependencyGraph
from .orchestrator import ExecutionHandle, TaskOrchestrator
from .schemas import (
    ActionResult,
    Subtask,
    SubtaskExecutionResult,
    TaskExecutionResult,
    TaskExecutionSession,
    subtasks_from_descriptors,
)

__all__ = [
    # Orchestrator
    "TaskOrchestrator",
    "ExecutionHandle",
    "DependencyGraph",
    # Executors
    "ActionExecutor",
    "ActionHandler",
    "HandlerActionExecutor",
    # Schemas
    "ActionResult",
    "Priority",
    "Subtask",
    "SubtaskExecutionResult",
    "SubtaskStatus",
    "TaskExecutionResult",
    "TaskExecutionSession",
    "subtasks_from_descriptors",
]
