"""
Intent pipeline - one conversational turn end to end.

Classifies a user message with the voting panel, turns the consensus
into a subtask batch, executes it and links the round and execution to
the conversation in the session store.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Set

from loguru import logger

from intentmoe.collaborators import ConversationState, InMemorySessionStore, SessionStore
from intentmoe.errors import IntentMoEError
from intentmoe.orchestration import (
    Subtask,
    TaskExecutionResult,
    TaskOrchestrator,
    subtasks_from_descriptors,
)
from intentmoe.voting import VotingConsensus, VotingRound, VotingService


@dataclass
class PipelineResult:
    """Outcome of one processed turn."""

    request_id: str
    conversation_session_id: str
    voting_round: VotingRound
    execution_result: Optional[TaskExecutionResult] = None
    planning_error: Optional[str] = None
    processing_time_ms: float = 0.0

    @property
    def final_intent(self) -> str:
        return self.voting_round.consensus.final_intent

    @property
    def succeeded(self) -> bool:
        """A decision was reached and every subtask completed."""
        return (
            not self.voting_round.consensus.failed
            and self.execution_result is not None
            and self.execution_result.all_successful
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "conversation_session_id": self.conversation_session_id,
            "final_intent": self.final_intent,
            "succeeded": self.succeeded,
            "voting_round": self.voting_round.to_dict(),
            "execution": self.execution_result.to_dict() if self.execution_result else None,
            "planning_error": self.planning_error,
            "processing_time_ms": self.processing_time_ms,
        }


class IntentPipeline:
    """
    Facade over voting, orchestration and session linkage.

    Workflow:
    1. Load conversation state (history and context)
    2. Run a voting round
    3. Build subtasks from the consensus, or a single subtask for the intent
    4. Execute the batch
    5. Record round and execution ids on the conversation
    """

    def __init__(
        self,
        voting_service: VotingService,
        orchestrator: TaskOrchestrator,
        session_store: Optional[SessionStore] = None,
        history_limit: int = 20,
    ):
        """
        Initialize the pipeline.

        Args:
            voting_service: Classifies user messages
            orchestrator: Executes subtask batches
            session_store: Conversation persistence (in-memory if None)
            history_limit: Number of past turns kept on the conversation
        """
        self.voting_service = voting_service
        self.orchestrator = orchestrator
        self.session_store = session_store or InMemorySessionStore()
        self.history_limit = history_limit

    def process(
        self,
        request_id: str,
        user_message: str,
        conversation_session_id: str,
        conversation_context: Optional[Dict[str, Any]] = None,
        available_actions: Optional[Sequence[str]] = None,
    ) -> PipelineResult:
        """
        Process one user message.

        Args:
            request_id: Caller's request identifier
            user_message: Utterance to handle
            conversation_session_id: Conversation the turn belongs to
            conversation_context: Extra context merged over the stored context
            available_actions: Actions offered to the models for this turn

        Returns:
            PipelineResult. A FAILED consensus skips execution; a malformed
            subtask plan is reported in ``planning_error``.
        """
        start_time = time.time()
        log = logger.bind(component="orchestration")

        state = self.session_store.get(conversation_session_id) or ConversationState(
            session_id=conversation_session_id
        )
        context = dict(state.context)
        context.update(conversation_context or {})

        voting_round = self.voting_service.execute_voting_round(
            request_id,
            user_message,
            conversation_context=context,
            conversation_history=list(state.history),
            available_actions=available_actions,
        )
        result = PipelineResult(
            request_id=request_id,
            conversation_session_id=conversation_session_id,
            voting_round=voting_round,
        )

        consensus = voting_round.consensus
        if consensus.failed:
            log.warning(
                f"Request {request_id}: no consensus reached, skipping execution"
            )
        else:
            try:
                subtasks = build_subtasks(consensus)
                result.execution_result = self.orchestrator.execute_subtasks(
                    subtasks, conversation_session_id
                )
            except (IntentMoEError, TypeError, ValueError) as e:
                log.error(f"Request {request_id}: subtask plan rejected: {e}")
                result.planning_error = str(e)

        state.voting_round_ids.append(voting_round.round_id)
        if result.execution_result is not None:
            state.execution_ids.append(result.execution_result.execution_id)
        state.last_intent = consensus.final_intent
        state.history = (state.history + [user_message])[-self.history_limit:]
        state.context = context
        self.session_store.put(state)

        result.processing_time_ms = (time.time() - start_time) * 1000
        return result


def build_subtasks(consensus: VotingConsensus) -> List[Subtask]:
    """
    Turn a consensus into an executable batch.

    Proposed subtasks keep their declared dependencies when those refer
    to other subtasks in the batch; references to anything else are
    dropped. Without proposals, the batch is a single subtask running the
    final intent with the merged entities.
    """
    subtasks = subtasks_from_descriptors(consensus.final_subtasks)
    if not subtasks:
        return [
            Subtask(
                subtask_id="subtask_1",
                action=consensus.final_intent,
                description=f"Handle intent {consensus.final_intent}",
                entities=dict(consensus.final_entities),
            )
        ]

    # Later duplicates get the first free "<id>_<n>" not proposed elsewhere
    proposed = {s.subtask_id for s in subtasks}
    used: Set[str] = set()
    for subtask in subtasks:
        if subtask.subtask_id in used:
            base, n = subtask.subtask_id, 2
            while f"{base}_{n}" in proposed or f"{base}_{n}" in used:
                n += 1
            subtask.subtask_id = f"{base}_{n}"
        used.add(subtask.subtask_id)

    known = {s.subtask_id for s in subtasks}
    for subtask in subtasks:
        unknown = subtask.dependencies - known
        if unknown:
            logger.bind(component="orchestration").warning(
                f"Dropping unknown dependencies {sorted(unknown)} of {subtask.subtask_id}"
            )
            subtask.dependencies -= unknown
    return subtasks
