"""
Decorators for automatic logging of model calls and slow operations.

These decorators enable traceability without cluttering business logic.
"""

import functools
import inspect
import time
from typing import Any, Callable

from .logger import get_component_logger, log_model_interaction


def _preview(text: str, limit: int = 500) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def track_model_call(prompt_param: str = "prompt") -> Callable:
    """
    Decorator to track ModelClient.complete calls.

    Logs the request, the reply or the error with the participant id taken
    from the bound client instance (``self.participant_id``).

    Args:
        prompt_param: Name of the parameter containing the prompt

    Example:
        >>> class MyClient(ModelClient):
        ...     @track_model_call()
        ...     def complete(self, prompt, config):
        ...         return call_api(prompt)
    """

    def decorator(func: Callable) -> Callable:
        sig = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            log = get_component_logger("model_calls")

            bound_args = sig.bind(*args, **kwargs)
            bound_args.apply_defaults()
            client = bound_args.arguments.get("self")
            participant_id = getattr(client, "participant_id", func.__qualname__)
            prompt = str(bound_args.arguments.get(prompt_param, ""))

            start_time = time.time()
            log_model_interaction(
                log,
                event="request",
                participant_id=participant_id,
                prompt_length=len(prompt),
                prompt_preview=_preview(prompt),
            )

            try:
                result = func(*args, **kwargs)
            except Exception as e:
                log_model_interaction(
                    log,
                    event="error",
                    participant_id=participant_id,
                    latency_ms=(time.time() - start_time) * 1000,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            log_model_interaction(
                log,
                event="response",
                participant_id=participant_id,
                latency_ms=(time.time() - start_time) * 1000,
                intent=getattr(result, "intent_raw", None),
            )
            return result

        return wrapper

    return decorator


def performance_monitor(threshold_ms: float = 1000.0, component: str = "system") -> Callable:
    """
    Decorator to monitor function performance.

    Logs warning if execution exceeds threshold.

    Args:
        threshold_ms: Warning threshold in milliseconds
        component: Component the log records are bound to

    Example:
        >>> @performance_monitor(threshold_ms=500)
        ... def expensive_operation():
        ...     time.sleep(1)
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            log = get_component_logger(component)
            start_time = time.time()

            try:
                result = func(*args, **kwargs)
            except Exception:
                elapsed_ms = (time.time() - start_time) * 1000
                log.debug(f"Function failed: {func.__name__} after {elapsed_ms:.1f}ms")
                raise

            elapsed_ms = (time.time() - start_time) * 1000
            if elapsed_ms > threshold_ms:
                log.warning(
                    f"Performance threshold exceeded: {func.__name__} "
                    f"took {elapsed_ms:.1f}ms (threshold {threshold_ms}ms)"
                )
            else:
                log.debug(f"Function executed: {func.__name__} in {elapsed_ms:.1f}ms")
            return result

        return wrapper

    return decorator
