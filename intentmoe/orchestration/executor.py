"""
Action executor interface.

The orchestrator only knows that an action can be invoked and reports
success or failure; what an action does is up to the executor.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Mapping, Optional

from .schemas import ActionResult, Subtask

ActionHandler = Callable[[Subtask], Optional[Mapping[str, Any]]]


class ActionExecutor(ABC):
    """Invokes the external capability named by a subtask's action."""

    @abstractmethod
    def execute(self, subtask: Subtask) -> ActionResult:
        """
        Execute one subtask.

        Args:
            subtask: The subtask to run; must not be modified

        Returns:
            ActionResult describing success or failure. Raising an exception
            is treated as a failure with the exception text as the message.
        """
        pass


class HandlerActionExecutor(ActionExecutor):
    """
    Executor dispatching to plain callables registered per action name.

    A handler returns the result data (or None); raising marks the subtask
    failed. Actions without a handler fail with an explanatory message.

    Example:
        >>> executor = HandlerActionExecutor({"get_weather": lambda s: {"temp": 21}})
    """

    def __init__(self, handlers: Optional[Dict[str, ActionHandler]] = None):
        self._handlers: Dict[str, ActionHandler] = dict(handlers or {})

    def register(self, action: str, handler: ActionHandler) -> None:
        self._handlers[action] = handler

    @property
    def actions(self) -> list:
        return sorted(self._handlers)

    def execute(self, subtask: Subtask) -> ActionResult:
        handler = self._handlers.get(subtask.action)
        if handler is None:
            return ActionResult(
                success=False, error_message=f"No handler registered for action '{subtask.action}'"
            )

        try:
            data = handler(subtask)
        except Exception as e:
            return ActionResult(success=False, error_message=f"{type(e).__name__}: {e}")
        return ActionResult(success=True, result_data=dict(data or {}))
