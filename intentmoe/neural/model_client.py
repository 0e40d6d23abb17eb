"""
Abstract model client interface.

A ModelClient turns one rendered prompt into one ModelReply. Provider
implementations live in ``providers``; tests substitute in-memory fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class CompletionConfig:
    """Per-call settings passed to a model client."""

    timeout_ms: int = 30000
    temperature: float = 0.3
    max_tokens: int = 1024

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass(frozen=True)
class ModelReply:
    """
    Raw, unvalidated fields extracted from a model's answer.

    Values are kept as the model produced them; conversion into a Vote
    (and validity checks) happens in ``intentmoe.voting.parsing``.
    """

    intent_raw: Any = None
    confidence_raw: Any = None
    entities_raw: Any = None
    subtasks_raw: Any = None
    reasoning: Optional[str] = None
    raw_text: str = ""


class ModelClient(ABC):
    """Capability interface for querying one model."""

    def __init__(self, participant_id: str, model: str):
        self.participant_id = participant_id
        self.model = model

    @abstractmethod
    def complete(self, prompt: str, config: CompletionConfig) -> ModelReply:
        """
        Send a prompt and return the parsed reply.

        Args:
            prompt: Fully rendered prompt text
            config: Timeout, temperature and token limits for this call

        Returns:
            ModelReply with raw fields

        Raises:
            ModelTimeoutError: The call exceeded config.timeout_ms
            ModelTransportError: The provider could not be reached or rejected the call
            ModelParsingError: The reply was not in the expected format
        """
        pass

    @abstractmethod
    def get_provider_name(self) -> str:
        """Provider tag (e.g. "anthropic")."""
        pass
