"""
Logging infrastructure for IntentMoE.

Provides component-bound loguru loggers and tracking decorators.
"""

from .logger import (
    IntentMoELogger,
    get_component_logger,
    initialize_logging,
    get_logger_instance,
    log_model_interaction,
)

from .decorators import (
    track_model_call,
    performance_monitor,
)

__all__ = [
    # Logger
    "IntentMoELogger",
    "get_component_logger",
    "initialize_logging",
    "get_logger_instance",
    "log_model_interaction",
    # Decorators
    "track_model_call",
    "performance_monitor",
]
