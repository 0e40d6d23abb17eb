"""
Data structures for multi-model voting.

Votes and consensus results are immutable once built. A VotingRound is
owned by the thread that runs it and only moves forward through its
status lifecycle.
"""

import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from intentmoe.errors import InvalidStateTransitionError


class AgreementLevel(Enum):
    """How much the panel agreed on the final intent."""

    UNANIMOUS = "unanimous"
    MAJORITY = "majority"
    PLURALITY = "plurality"
    DIVIDED = "divided"
    FAILED = "failed"


class RoundStatus(Enum):
    """Lifecycle of a voting round."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (RoundStatus.COMPLETED, RoundStatus.FAILED, RoundStatus.TIMED_OUT)


_ALLOWED_TRANSITIONS = {
    RoundStatus.PENDING: {RoundStatus.IN_PROGRESS},
    RoundStatus.IN_PROGRESS: {RoundStatus.COMPLETED, RoundStatus.FAILED, RoundStatus.TIMED_OUT},
}


@dataclass(frozen=True)
class Vote:
    """
    One participant's answer in one round.

    Attributes:
        vote_id: Unique vote identifier
        model_id: Participant that produced the vote
        model_weight: Relative trust in the participant (>= 0)
        intent: Proposed intent name
        confidence: Self-reported confidence, None when the reply had none
        entities: Extracted entities
        subtasks: Proposed subtask descriptors, in the order given
        reasoning: Free-text justification
        produced_at: When the reply was parsed
        round_number: Debate round the vote belongs to
    """

    vote_id: str
    model_id: str
    model_weight: float
    intent: str
    confidence: Optional[float]
    entities: Dict[str, Any] = field(default_factory=dict)
    subtasks: List[Dict[str, Any]] = field(default_factory=list)
    reasoning: str = ""
    produced_at: datetime = field(default_factory=datetime.now)
    round_number: int = 1

    def __post_init__(self) -> None:
        if self.model_weight < 0:
            raise ValueError(f"model_weight must be non-negative, got {self.model_weight}")

    @property
    def is_valid(self) -> bool:
        """A vote counts toward consensus only with an intent and a confidence in [0, 1]."""
        if not self.intent or not self.intent.strip():
            return False
        if self.confidence is None or math.isnan(self.confidence):
            return False
        return 0.0 <= self.confidence <= 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vote_id": self.vote_id,
            "model_id": self.model_id,
            "model_weight": self.model_weight,
            "intent": self.intent,
            "confidence": self.confidence,
            "entities": dict(self.entities),
            "subtasks": [dict(s) for s in self.subtasks],
            "reasoning": self.reasoning,
            "produced_at": self.produced_at.isoformat(),
            "round_number": self.round_number,
            "valid": self.is_valid,
        }


@dataclass(frozen=True)
class VotingConsensus:
    """
    The reduced decision of a voting round.

    Attributes:
        final_intent: Winning intent, or the unknown-intent sentinel
        final_entities: Entities merged from the votes for the winning intent
        final_subtasks: Subtask descriptors deduplicated by action
        consensus_confidence: Confidence in the decision (0.0-1.0)
        participating_votes: Number of valid votes used
        total_votes: Number of votes dispatched
        agreement_level: Qualitative agreement
        consensus_method: Algorithm name
        reasoning: Human-readable audit trail
        intent_scores: Score per intent as computed by the algorithm
    """

    final_intent: str
    final_entities: Dict[str, Any]
    final_subtasks: List[Dict[str, Any]]
    consensus_confidence: float
    participating_votes: int
    total_votes: int
    agreement_level: AgreementLevel
    consensus_method: str
    reasoning: str
    intent_scores: Dict[str, float] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.agreement_level == AgreementLevel.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "final_intent": self.final_intent,
            "final_entities": dict(self.final_entities),
            "final_subtasks": [dict(s) for s in self.final_subtasks],
            "consensus_confidence": self.consensus_confidence,
            "participating_votes": self.participating_votes,
            "total_votes": self.total_votes,
            "agreement_level": self.agreement_level.value,
            "consensus_method": self.consensus_method,
            "reasoning": self.reasoning,
            "intent_scores": dict(self.intent_scores),
        }


@dataclass
class ParticipantFailure:
    """A participant that produced no vote in a round.

    Attributes:
        participant_id: Participant that failed
        error_type: Exception class name, or "Timeout"
        message: Human-readable error message
        round_number: Debate round in which it failed
        timestamp: Unix timestamp of the failure
    """

    participant_id: str
    error_type: str
    message: str
    round_number: int = 1
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "error_type": self.error_type,
            "message": self.message,
            "round_number": self.round_number,
            "timestamp": self.timestamp,
        }


@dataclass
class DebateRoundRecord:
    """Audit record of one debate round."""

    round_number: int
    votes: List[Vote]
    consensus: VotingConsensus
    failures: List[ParticipantFailure] = field(default_factory=list)
    duration_ms: float = 0.0


@dataclass
class VotingRound:
    """
    One classification attempt.

    ``votes`` and ``consensus`` hold the authoritative (last) round;
    ``debate_rounds`` keeps every round, including the last, for audit.
    """

    round_id: str
    request_id: str
    user_message: str
    conversation_context: Dict[str, Any] = field(default_factory=dict)
    conversation_history: List[str] = field(default_factory=list)
    votes: List[Vote] = field(default_factory=list)
    consensus: Optional[VotingConsensus] = None
    status: RoundStatus = RoundStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    dispatched_count: int = 0
    failures: List[ParticipantFailure] = field(default_factory=list)
    debate_rounds: List[DebateRoundRecord] = field(default_factory=list)

    def transition(self, new_status: RoundStatus) -> None:
        """
        Move to a new status.

        Raises:
            InvalidStateTransitionError: If the change is not
                PENDING -> IN_PROGRESS or IN_PROGRESS -> terminal
        """
        allowed = _ALLOWED_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidStateTransitionError(self.status.value, new_status.value)

        self.status = new_status
        if new_status == RoundStatus.IN_PROGRESS:
            self.start_time = datetime.now()
        elif new_status.is_terminal:
            self.end_time = datetime.now()

    @property
    def valid_votes(self) -> List[Vote]:
        return [v for v in self.votes if v.is_valid]

    @property
    def rounds_executed(self) -> int:
        return len(self.debate_rounds)

    @property
    def duration_ms(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() * 1000

    def get_failure_summary(self) -> Dict[str, Any]:
        """Get a structured summary of participant failures.

        Returns:
            Dictionary with failure details suitable for logging or reporting
        """
        return {
            "total_failures": len(self.failures),
            "failed_participants": sorted({f.participant_id for f in self.failures}),
            "voting_participants": sorted({v.model_id for v in self.votes}),
            "failures": [f.to_dict() for f in self.failures],
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_id": self.round_id,
            "request_id": self.request_id,
            "user_message": self.user_message,
            "status": self.status.value,
            "votes": [v.to_dict() for v in self.votes],
            "consensus": self.consensus.to_dict() if self.consensus else None,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "dispatched_count": self.dispatched_count,
            "rounds_executed": self.rounds_executed,
            "failures": [f.to_dict() for f in self.failures],
        }
