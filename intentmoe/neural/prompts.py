"""
Prompt template system for voting participants.

Provides reusable prompt templates with $variable substitution, the
PromptBuilder interface consumed by the voting service, and a default
template-based builder that renders retrieved examples, conversation
context and (in debate rounds) the other participants' prior votes.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from string import Template
from typing import Any, Dict, List, Optional, Sequence

from intentmoe.collaborators import Example


@dataclass
class PromptTemplate:
    """
    Reusable prompt template with variable substitution.

    Templates use $variable syntax for substitution.
    """

    name: str
    version: str
    template: str
    description: str = ""
    required_variables: List[str] = field(default_factory=list)

    def render(self, variables: Dict[str, Any]) -> str:
        """
        Render template with provided variables.

        Args:
            variables: Dictionary of variable values

        Returns:
            Rendered template string

        Raises:
            KeyError: If required variables are missing
        """
        missing = [v for v in self.required_variables if v not in variables]
        if missing:
            raise KeyError(f"Missing required variables: {missing}")

        return Template(self.template).safe_substitute(variables)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "version": self.version,
            "template": self.template,
            "description": self.description,
            "required_variables": self.required_variables,
        }


@dataclass(frozen=True)
class PriorVote:
    """Another participant's answer from the previous debate round."""

    participant_id: str
    intent: str
    confidence: float
    reasoning: str = ""


@dataclass
class PromptRequest:
    """Everything a participant needs to classify one utterance."""

    user_message: str
    conversation_context: Dict[str, Any] = field(default_factory=dict)
    conversation_history: List[str] = field(default_factory=list)
    available_actions: List[str] = field(default_factory=list)
    participant_id: str = ""
    participant_role: str = "intent classifier"
    round_number: int = 1
    prior_votes: List[PriorVote] = field(default_factory=list)
    template_override: Optional[str] = None


# ============================================================================
# DEFAULT TEMPLATES
# ============================================================================


INTENT_CLASSIFICATION = PromptTemplate(
    name="intent_classification",
    version="1.0",
    description="Classify a user message into an intent with entities and subtasks",
    template="""You are acting as: $participant_role

Classify the user's message into exactly one intent.

Similar examples:
$examples

Available actions: $available_actions

Conversation context: $conversation_context
Conversation history: $conversation_history

User message: "$user_message"

Reply with a single JSON object and nothing else:
{"intent": "<intent name>", "entities": {"<name>": "<value>"}, "confidence": <0.0-1.0>,
 "reasoning": "<one sentence>", "subtasks": [{"subtask_id": "<id>", "action": "<action>",
 "description": "<text>", "entities": {}, "dependencies": [], "priority": "medium"}]}
Use an empty "subtasks" list when the message asks for a single action.
""",
    required_variables=["user_message"],
)


DEBATE_ROUND = PromptTemplate(
    name="debate_round",
    version="1.0",
    description="Re-classify after seeing the other participants' previous answers",
    template="""You are acting as: $participant_role

This is debate round $round_number. In the previous round the other panel members answered:
$prior_votes

Reconsider your classification in light of their reasoning. Change your answer only if
their arguments are convincing.

Similar examples:
$examples

Available actions: $available_actions

Conversation context: $conversation_context
Conversation history: $conversation_history

User message: "$user_message"

Reply with a single JSON object and nothing else:
{"intent": "<intent name>", "entities": {"<name>": "<value>"}, "confidence": <0.0-1.0>,
 "reasoning": "<one sentence>", "subtasks": []}
""",
    required_variables=["user_message", "prior_votes", "round_number"],
)


class PromptBuilder(ABC):
    """Renders a PromptRequest and retrieved examples into prompt text."""

    @abstractmethod
    def build(self, request: PromptRequest, examples: Sequence[Example]) -> str:
        pass


class TemplatePromptBuilder(PromptBuilder):
    """PromptBuilder backed by PromptTemplate instances."""

    def __init__(
        self,
        classification_template: PromptTemplate = INTENT_CLASSIFICATION,
        debate_template: PromptTemplate = DEBATE_ROUND,
    ):
        self.classification_template = classification_template
        self.debate_template = debate_template

    def build(self, request: PromptRequest, examples: Sequence[Example]) -> str:
        variables = {
            "user_message": request.user_message,
            "conversation_context": format_context(request.conversation_context),
            "conversation_history": format_history(request.conversation_history),
            "available_actions": ", ".join(request.available_actions) or "any",
            "examples": format_examples(examples),
            "participant_role": request.participant_role,
            "round_number": str(request.round_number),
            "prior_votes": format_prior_votes(request.prior_votes),
        }

        if request.template_override:
            template = PromptTemplate(
                name=f"participant_{request.participant_id}",
                version="custom",
                template=request.template_override,
            )
            rendered = template.render(variables)
            # Custom templates may not mention the other votes; append them
            if request.prior_votes and "$prior_votes" not in request.template_override:
                rendered += (
                    f"\n\nPrevious round answers from the other participants:\n"
                    f"{variables['prior_votes']}\n"
                )
            return rendered

        if request.round_number > 1 and request.prior_votes:
            return self.debate_template.render(variables)
        return self.classification_template.render(variables)


def format_context(context: Dict[str, Any]) -> str:
    """Render conversation context as compact JSON, or a placeholder."""
    if not context:
        return "No context"
    return json.dumps(context, ensure_ascii=False, sort_keys=True, default=str)


def format_history(history: Sequence[str]) -> str:
    """Join history entries with a separator, or a placeholder."""
    if not history:
        return "No history"
    return " | ".join(history)


def format_examples(examples: Sequence[Example]) -> str:
    if not examples:
        return "(none)"
    lines = []
    for example in examples:
        line = f'- "{example.text}" -> {example.intent}'
        if example.entities:
            line += f" {json.dumps(example.entities, ensure_ascii=False, sort_keys=True)}"
        lines.append(line)
    return "\n".join(lines)


def format_prior_votes(prior_votes: Sequence[PriorVote]) -> str:
    if not prior_votes:
        return "(none)"
    return "\n".join(
        f"- {v.participant_id}: intent={v.intent} confidence={v.confidence:.2f}"
        + (f" reasoning: {v.reasoning}" if v.reasoning else "")
        for v in prior_votes
    )
