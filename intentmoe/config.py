"""
Configuration management for IntentMoE.

This module provides centralized configuration for all system components:
- Voting panel (participants, dispatch mode, debate rounds, timeouts)
- Consensus algorithm selection and confidence policy
- Subtask orchestration limits
- Progress tracker retention
- Logging settings

Configuration objects are immutable snapshots. ``ConfigurationManager``
swaps a whole snapshot atomically on reload so readers never observe a
partially-updated configuration.
"""

import json
import os
import threading
from pathlib import Path
from typing import List, Literal, Optional, Union, cast

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from intentmoe.errors import ConfigurationError

# Load environment variables from .env file
load_dotenv()


ConsensusAlgorithmName = Literal[
    "weighted-majority",
    "plurality",
    "confidence-weighted",
    "borda-count",
    "condorcet",
    "approval-voting",
]

LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class SnapshotModel(BaseModel):
    """Base for configuration models; instances are read-only once built."""

    model_config = ConfigDict(frozen=True)


class ParticipantConfig(SnapshotModel):
    """One model on the voting panel."""

    id: str = Field(min_length=1, description="Unique participant identifier")
    name: str = Field(default="", description="Human-readable participant name")
    provider: Literal["anthropic", "openai"] = Field(
        default="anthropic", description="Model provider backing this participant"
    )
    model: str = Field(
        default="claude-3-5-haiku-20241022",
        description="Model identifier for the chosen provider",
    )
    role: str = Field(
        default="intent classifier",
        description="Role description injected into the participant's prompt",
    )
    weight: float = Field(default=1.0, ge=0.0, description="Relative trust in this participant")
    temperature: float = Field(
        default=0.3, ge=0.0, le=2.0, description="Sampling temperature"
    )
    max_tokens: int = Field(default=1024, gt=0, description="Maximum tokens in the reply")
    prompt_template: Optional[str] = Field(
        default=None, description="Per-participant prompt template overriding the default"
    )
    timeout_ms: Optional[int] = Field(
        default=None, gt=0, description="Per-participant timeout overriding timeout_per_vote_ms"
    )


class VotingConfig(SnapshotModel):
    """Configuration for the voting panel and round dispatch."""

    voting_enabled: bool = Field(
        default=True, description="Query the whole panel; when false only the primary participant votes"
    )
    max_debate_rounds: int = Field(
        default=1, ge=1, description="Maximum number of voting rounds, including the first"
    )
    consensus_threshold: float = Field(
        default=0.6, ge=0.0, le=1.0, description="Consensus confidence considered acceptable"
    )
    timeout_per_vote_ms: int = Field(
        default=30000, gt=0, description="Timeout for a single participant call"
    )
    round_timeout_ms: int = Field(
        default=60000, gt=0, description="Wall-clock timeout for a whole voting round"
    )
    parallel_voting: bool = Field(
        default=True, description="Query participants concurrently instead of one at a time"
    )
    improvement_threshold: float = Field(
        default=0.05,
        ge=0.0,
        le=1.0,
        description="Minimum consensus confidence gain needed to continue debating",
    )
    participants: List[ParticipantConfig] = Field(
        default_factory=list, description="Ordered voting panel"
    )
    primary_participant_id: Optional[str] = Field(
        default=None, description="Participant used when voting is disabled"
    )
    examples_per_prompt: int = Field(
        default=5, ge=0, description="Number of retrieved examples rendered into prompts"
    )

    @model_validator(mode="after")
    def check_participants(self) -> "VotingConfig":
        """Participant ids must be unique and the primary participant must exist."""
        ids = [p.id for p in self.participants]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate participant ids: {ids}")
        if self.primary_participant_id is not None and self.primary_participant_id not in ids:
            raise ValueError(
                f"primary_participant_id {self.primary_participant_id!r} is not a configured participant"
            )
        return self

    def get_primary_participant(self) -> Optional[ParticipantConfig]:
        """Participant used for single-model classification."""
        if not self.participants:
            return None
        if self.primary_participant_id is None:
            return self.participants[0]
        for participant in self.participants:
            if participant.id == self.primary_participant_id:
                return participant
        return None

    def active_participants(self) -> List[ParticipantConfig]:
        """Participants that take part in a round under the current settings."""
        if self.voting_enabled and len(self.participants) > 1:
            return list(self.participants)
        primary = self.get_primary_participant()
        return [primary] if primary is not None else []


class ConsensusConfig(SnapshotModel):
    """Configuration for the consensus engine."""

    algorithm: ConsensusAlgorithmName = Field(
        default="weighted-majority", description="Consensus algorithm name"
    )
    confidence_threshold: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Normalized score above which the confidence boost applies",
    )
    confidence_boost_factor: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Additive confidence boost"
    )
    enable_confidence_boosting: bool = Field(
        default=True, description="Apply the confidence boost above the threshold"
    )
    divided_epsilon: float = Field(
        default=0.05,
        ge=0.0,
        le=1.0,
        description="Top-two score share difference under which the panel is DIVIDED",
    )
    unknown_intent: str = Field(
        default="unknown", min_length=1, description="Intent reported when no valid votes exist"
    )
    enable_entity_merging: bool = Field(
        default=True, description="Merge entities from all votes for the winning intent"
    )
    enable_subtask_merging: bool = Field(
        default=True, description="Merge subtasks from all votes for the winning intent"
    )


class OrchestratorConfig(SnapshotModel):
    """Configuration for the subtask orchestrator."""

    max_parallelism: int = Field(
        default=3, gt=0, description="Maximum subtasks executing at once"
    )
    max_retries: int = Field(
        default=0, ge=0, description="Extra attempts for a failed subtask"
    )
    retry_delay_ms: int = Field(
        default=1000, ge=0, description="Pause between subtask attempts"
    )


class ProgressConfig(SnapshotModel):
    """Configuration for progress tracking."""

    tracker_retention_window_seconds: float = Field(
        default=1800.0, gt=0.0, description="Age after which trackers are purged"
    )
    enable_notifications: bool = Field(
        default=True, description="Send progress notifications to listeners"
    )


class LogConfig(SnapshotModel):
    """Configuration for logging system."""

    level: LogLevel = Field(default="INFO", description="Logging level")
    format: str = Field(
        default="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{extra[component]}</cyan> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan> - "
        "<level>{message}</level>",
        description="Log message format",
    )
    rotation: str = Field(default="100 MB", description="Log file rotation size")
    retention: str = Field(default="1 month", description="Log file retention period")
    log_dir: str = Field(default="logs", description="Directory for log files")
    enable_file_logging: bool = Field(
        default=False, description="Whether to enable file logging"
    )
    enable_console_logging: bool = Field(
        default=True, description="Whether to enable console logging"
    )

    @property
    def log_path(self) -> Path:
        """Get absolute path to the log directory."""
        return Path(self.log_dir).resolve()


class Config(SnapshotModel):
    """Main configuration object for IntentMoE."""

    voting: VotingConfig = Field(default_factory=VotingConfig)
    consensus: ConsensusConfig = Field(default_factory=ConsensusConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
    logging: LogConfig = Field(default_factory=LogConfig)

    @classmethod
    def from_env(cls) -> "Config":
        """Create configuration from environment variables."""
        return cls(
            voting=VotingConfig(
                voting_enabled=_env_bool("INTENTMOE_VOTING_ENABLED", True),
                max_debate_rounds=int(os.getenv("INTENTMOE_MAX_DEBATE_ROUNDS", "1")),
                consensus_threshold=float(os.getenv("INTENTMOE_CONSENSUS_THRESHOLD", "0.6")),
                timeout_per_vote_ms=int(os.getenv("INTENTMOE_TIMEOUT_PER_VOTE_MS", "30000")),
                parallel_voting=_env_bool("INTENTMOE_PARALLEL_VOTING", True),
            ),
            consensus=ConsensusConfig(
                algorithm=cast(
                    ConsensusAlgorithmName,
                    os.getenv("INTENTMOE_CONSENSUS_ALGORITHM", "weighted-majority"),
                ),
                confidence_boost_factor=float(
                    os.getenv("INTENTMOE_CONFIDENCE_BOOST_FACTOR", "0.1")
                ),
            ),
            orchestrator=OrchestratorConfig(
                max_parallelism=int(os.getenv("INTENTMOE_MAX_PARALLELISM", "3")),
            ),
            progress=ProgressConfig(
                tracker_retention_window_seconds=float(
                    os.getenv("INTENTMOE_TRACKER_RETENTION_SECONDS", "1800")
                ),
            ),
            logging=LogConfig(level=cast(LogLevel, os.getenv("LOG_LEVEL", "INFO"))),
        )

    @classmethod
    def from_json_file(cls, path: Union[str, Path]) -> "Config":
        """
        Load configuration from a JSON document.

        Args:
            path: Path to the JSON file

        Returns:
            Validated configuration

        Raises:
            ConfigurationError: If the file cannot be read or fails validation
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read configuration {path}: {e}") from e

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class ConfigurationManager:
    """
    Holder of the current configuration snapshot.

    Readers call ``snapshot`` once per operation and use that value
    throughout; ``reload`` validates a replacement and swaps it in under
    a lock.
    """

    def __init__(self, initial: Optional[Config] = None):
        self._lock = threading.Lock()
        self._snapshot = initial or Config()
        self._version = 1

    @property
    def snapshot(self) -> Config:
        """Current configuration snapshot."""
        with self._lock:
            return self._snapshot

    @property
    def version(self) -> int:
        """Monotonic counter bumped on every successful reload."""
        with self._lock:
            return self._version

    def reload(self, new_config: Union[Config, dict]) -> Config:
        """
        Replace the current snapshot.

        Args:
            new_config: A Config instance or a mapping validated into one

        Returns:
            The snapshot now in effect

        Raises:
            ConfigurationError: If the mapping fails validation; the previous
                snapshot stays in effect
        """
        if not isinstance(new_config, Config):
            try:
                new_config = Config.model_validate(new_config)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid configuration: {e}") from e

        with self._lock:
            self._snapshot = new_config
            self._version += 1
            return self._snapshot

    def reload_from_file(self, path: Union[str, Path]) -> Config:
        """Load a JSON configuration file and swap it in."""
        return self.reload(Config.from_json_file(path))


def as_configuration_manager(
    source: Union[Config, ConfigurationManager, None]
) -> ConfigurationManager:
    """Wrap a plain snapshot (or nothing) in a manager; pass managers through."""
    if isinstance(source, ConfigurationManager):
        return source
    return ConfigurationManager(source)


# Global configuration instance
# This can be imported throughout the codebase
config = Config.from_env()
