"""
Logging infrastructure for IntentMoE.

Every module logs through ``logger.bind(component=...)``. Sinks are
installed once, from a LogConfig:
- console (stderr)
- intentmoe.log with everything at the configured level
- one file per core component, filtered on the bound component
- errors.log
"""

import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

from intentmoe.config import LogConfig

# Component name -> minimum level written to that component's file.
# Model calls are logged at TRACE and captured in full.
COMPONENT_LEVELS: Dict[str, str] = {
    "voting": "DEBUG",
    "consensus": "DEBUG",
    "orchestration": "DEBUG",
    "progress": "DEBUG",
    "model_calls": "TRACE",
}

# Records logged through the bare loguru logger still render extra[component]
logger.configure(extra={"component": "system"})


class IntentMoELogger:
    """
    Installs loguru sinks described by a LogConfig.

    Keyword overrides replace individual LogConfig fields, e.g.
    ``IntentMoELogger(config.logging, level="DEBUG")``.
    """

    def __init__(self, log_config: Optional[LogConfig] = None, **overrides: Any):
        settings = log_config or LogConfig()
        if overrides:
            settings = settings.model_copy(update=overrides)
        self.settings = settings
        self.log_dir = Path(settings.log_dir)
        self.level = settings.level

        logger.remove()
        self.handler_ids = []

        if settings.enable_console_logging:
            self.handler_ids.append(
                logger.add(sys.stderr, format=settings.format, level=settings.level, colorize=True)
            )

        if settings.enable_file_logging:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self._add_file_sinks()

    def _file_sink(self, filename: str, level: str, **options: Any) -> None:
        self.handler_ids.append(
            logger.add(
                self.log_dir / filename,
                format=self.settings.format,
                level=level,
                rotation=self.settings.rotation,
                retention=self.settings.retention,
                compression="zip",
                **options,
            )
        )

    def _add_file_sinks(self) -> None:
        self._file_sink("intentmoe.log", self.level)
        for component, level in COMPONENT_LEVELS.items():
            self._file_sink(f"{component}.log", level, filter=_component_filter(component))
        self._file_sink("errors.log", "ERROR")

    def get_logger(self, component: str) -> Any:
        return logger.bind(component=component)


def _component_filter(component: str) -> Any:
    return lambda record: record["extra"].get("component") == component


def get_component_logger(component: str = "system") -> Any:
    """
    Get a logger bound to a component.

    Example:
        >>> log = get_component_logger("voting")
        >>> log.info("Round started")
    """
    return logger.bind(component=component)


def log_model_interaction(
    logger_instance: Any, event: str, participant_id: str, **kwargs: Any
) -> None:
    """
    Log a model call event with structured data.

    Args:
        logger_instance: Logger to use
        event: Event type ("request", "response", "error")
        participant_id: Participant or model identifier
        **kwargs: Additional context (prompt preview, latency, error)
    """
    logger_instance.bind(
        event=event,
        participant_id=participant_id,
        timestamp=datetime.now(timezone.utc).isoformat(),
        **kwargs,
    ).trace(f"Model call {event}: {participant_id}")


_intentmoe_logger: Optional[IntentMoELogger] = None


def initialize_logging(log_config: Optional[LogConfig] = None, **overrides: Any) -> IntentMoELogger:
    """
    Install the sinks for this process; call once at startup.

    Args:
        log_config: Logging section of the configuration
        **overrides: LogConfig fields to replace

    Returns:
        The installed IntentMoELogger, also available from get_logger_instance()
    """
    global _intentmoe_logger
    _intentmoe_logger = IntentMoELogger(log_config, **overrides)
    return _intentmoe_logger


def get_logger_instance() -> Optional[IntentMoELogger]:
    return _intentmoe_logger
