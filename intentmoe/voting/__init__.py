"""
Multi-model voting: vote schemas, consensus algorithms and round dispatch.
"""

from .consensus import (
    AlgorithmOutcome,
    ConsensusAlgorithm,
    ConsensusEngine,
    available_algorithms,
    create_consensus_algorithm,
)
from .parsing import vote_from_reply
from .schemas import (
    AgreementLevel,
    DebateRoundRecord,
    ParticipantFailure,
    RoundStatus,
    Vote,
    VotingConsensus,
    VotingRound,
)
from .service import VotingService

__all__ = [
    "AlgorithmOutcome",
    "ConsensusAlgorithm",
    "ConsensusEngine",
    "available_algorithms",
    "create_consensus_algorithm",
    "vote_from_reply",
    "AgreementLevel",
    "DebateRoundRecord",
    "ParticipantFailure",
    "RoundStatus",
    "Vote",
    "VotingConsensus",
    "VotingRound",
    "VotingService",
]
