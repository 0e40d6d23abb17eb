"""
Structural error types for IntentMoE.

These signal misuse or configuration problems (cycles, unknown ids,
duplicate tracking). Transient failures of a single model or action are
never raised; they are recorded on the round or execution result instead.
"""

from typing import List, Optional


class IntentMoEError(Exception):
    """Base exception for all structural IntentMoE errors."""

    pass


class ConfigurationError(IntentMoEError):
    """Configuration could not be loaded or failed validation."""

    pass


class InvalidSubtaskError(IntentMoEError):
    """A subtask batch is malformed (duplicate ids, unknown dependencies, missing action)."""

    def __init__(self, message: str, subtask_id: Optional[str] = None):
        super().__init__(message)
        self.subtask_id = subtask_id


class CyclicDependencyError(IntentMoEError):
    """The dependency relation of a subtask batch contains a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Cyclic dependency detected: {' -> '.join(self.cycle)}")


class NotFoundError(IntentMoEError):
    """Lookup of an unknown or expired identifier."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class DuplicateSessionError(IntentMoEError):
    """The execution/conversation pair is already being tracked."""

    def __init__(self, execution_id: str, conversation_session_id: str):
        self.execution_id = execution_id
        self.conversation_session_id = conversation_session_id
        super().__init__(
            f"Session already tracked: execution={execution_id} "
            f"conversation={conversation_session_id}"
        )


class InvalidStateTransitionError(IntentMoEError):
    """A lifecycle status change that is not permitted."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot transition from {current} to {requested}")
