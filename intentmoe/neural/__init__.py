"""
Model access layer: client interface, provider clients and prompts.
"""

from .errors import (
    ModelClientError,
    ModelParsingError,
    ModelRateLimitError,
    ModelTimeoutError,
    ModelTransportError,
)
from .model_client import CompletionConfig, ModelClient, ModelReply
from .prompts import (
    PriorVote,
    PromptBuilder,
    PromptRequest,
    PromptTemplate,
    TemplatePromptBuilder,
)
from .providers import (
    AnthropicModelClient,
    OpenAIModelClient,
    create_model_client,
    parse_reply_text,
)

__all__ = [
    "ModelClientError",
    "ModelParsingError",
    "ModelRateLimitError",
    "ModelTimeoutError",
    "ModelTransportError",
    "CompletionConfig",
    "ModelClient",
    "ModelReply",
    "PriorVote",
    "PromptBuilder",
    "PromptRequest",
    "PromptTemplate",
    "TemplatePromptBuilder",
    "AnthropicModelClient",
    "OpenAIModelClient",
    "create_model_client",
    "parse_reply_text",
]
