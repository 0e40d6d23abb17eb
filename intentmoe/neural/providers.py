"""
Model client implementations.

Supports Anthropic and OpenAI. Each client asks the model for a JSON
object and extracts the raw intent, confidence, entities, subtasks and
reasoning fields into a ModelReply.
"""

from __future__ import annotations

import json
import os
import re
from typing import Any, Callable, Dict, Optional

import anthropic
import openai
from loguru import logger

from intentmoe.config import ParticipantConfig
from intentmoe.logging import track_model_call

from .errors import (
    ModelParsingError,
    ModelRateLimitError,
    ModelTimeoutError,
    ModelTransportError,
)
from .model_client import CompletionConfig, ModelClient, ModelReply
from .retry import exponential_backoff

SYSTEM_PROMPT = (
    "You classify user requests for a voice assistant. "
    "Always answer with a single JSON object and no other text."
)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def parse_reply_text(text: str, provider: str = "unknown") -> ModelReply:
    """
    Extract the reply fields from model output.

    Accepts a bare JSON object, a fenced ```json block, or a JSON object
    surrounded by prose.

    Args:
        text: Raw model output
        provider: Provider tag for error reporting

    Returns:
        ModelReply with unvalidated fields

    Raises:
        ModelParsingError: If no JSON object can be decoded
    """
    candidates = []
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return ModelReply(
                intent_raw=data.get("intent"),
                confidence_raw=data.get("confidence"),
                entities_raw=data.get("entities"),
                subtasks_raw=data.get("subtasks"),
                reasoning=data.get("reasoning"),
                raw_text=text,
            )

    raise ModelParsingError("Reply does not contain a JSON object", raw_response=text, provider=provider)


class AnthropicModelClient(ModelClient):
    """Anthropic (Claude) participant."""

    def __init__(self, participant_id: str, model: str, api_key: str):
        super().__init__(participant_id, model)
        self.client = anthropic.Anthropic(api_key=api_key)

    @track_model_call()
    def complete(self, prompt: str, config: CompletionConfig) -> ModelReply:
        """Query the Anthropic Messages API."""
        text = self._send(prompt, config)
        return parse_reply_text(text, provider="anthropic")

    @exponential_backoff()
    def _send(self, prompt: str, config: CompletionConfig) -> str:
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=config.max_tokens,
                temperature=config.temperature,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
                timeout=config.timeout_seconds,
            )
        except anthropic.RateLimitError as e:
            raise ModelRateLimitError(
                str(e), provider="anthropic", retry_after=_retry_after(e)
            ) from e
        except anthropic.APITimeoutError as e:
            raise ModelTimeoutError(str(e), provider="anthropic") from e
        except anthropic.APIError as e:
            raise ModelTransportError(
                str(e), provider="anthropic", status_code=getattr(e, "status_code", None)
            ) from e

        content_text = ""
        for block in response.content:
            if hasattr(block, "text"):
                content_text += block.text
        return content_text

    def get_provider_name(self) -> str:
        return "anthropic"


class OpenAIModelClient(ModelClient):
    """OpenAI (GPT) participant using JSON mode."""

    def __init__(self, participant_id: str, model: str, api_key: str):
        super().__init__(participant_id, model)
        self.client = openai.OpenAI(api_key=api_key)

    @track_model_call()
    def complete(self, prompt: str, config: CompletionConfig) -> ModelReply:
        """Query the OpenAI Chat Completions API."""
        text = self._send(prompt, config)
        return parse_reply_text(text, provider="openai")

    @exponential_backoff()
    def _send(self, prompt: str, config: CompletionConfig) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=config.max_tokens,
                temperature=config.temperature,
                response_format={"type": "json_object"},
                timeout=config.timeout_seconds,
            )
        except openai.RateLimitError as e:
            raise ModelRateLimitError(str(e), provider="openai", retry_after=_retry_after(e)) from e
        except openai.APITimeoutError as e:
            raise ModelTimeoutError(str(e), provider="openai") from e
        except openai.APIError as e:
            raise ModelTransportError(
                str(e), provider="openai", status_code=getattr(e, "status_code", None)
            ) from e

        return response.choices[0].message.content or ""

    def get_provider_name(self) -> str:
        return "openai"


def _retry_after(error: Any) -> Optional[float]:
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None) or {}
    value = headers.get("retry-after") if hasattr(headers, "get") else None
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


_API_KEY_ENV = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}

_CLIENTS: Dict[str, Callable[[str, str, str], ModelClient]] = {
    "anthropic": AnthropicModelClient,
    "openai": OpenAIModelClient,
}


def create_model_client(
    participant: ParticipantConfig, api_key: Optional[str] = None
) -> ModelClient:
    """
    Create the model client for a configured participant.

    Args:
        participant: Participant configuration; ``provider`` selects the client
        api_key: API key; read from the provider's environment variable if omitted

    Returns:
        A ModelClient bound to the participant id
    """
    if participant.provider not in _CLIENTS:
        raise ValueError(f"Unknown provider: {participant.provider}")

    key = api_key if api_key is not None else os.getenv(_API_KEY_ENV[participant.provider], "")
    if not key:
        logger.warning(
            f"No API key configured for provider {participant.provider} "
            f"(participant {participant.id})"
        )
    return _CLIENTS[participant.provider](participant.id, participant.model, key)
