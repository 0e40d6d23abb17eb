"""
Consensus engine - reducing a panel's votes to one decision.

Key components:
- Consensus algorithms (strategy pattern): weighted-majority, plurality,
  confidence-weighted, borda-count, condorcet, approval-voting
- Deterministic ranking: score, then raw vote count, then intent name
- Agreement classification: unanimous, majority, divided, plurality
- Entity and subtask merging across the votes for the winning intent

The engine holds no mutable state and is safe to share between threads.
Valid votes are put in a canonical order before any arithmetic, so the
result does not depend on the order in which votes arrived.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Type

from loguru import logger

from intentmoe.config import ConsensusConfig
from intentmoe.logging import performance_monitor

from .schemas import AgreementLevel, Vote, VotingConsensus, VotingRound

# Scores are compared after rounding so float summation noise cannot
# override the count and name tie-breaks.
SCORE_PRECISION = 9


# =============================================================================
# Algorithm Outcome
# =============================================================================


@dataclass
class AlgorithmOutcome:
    """Per-intent scores produced by a consensus algorithm.

    Attributes:
        scores: Score for every intent that received a valid vote
        notes: Audit notes (e.g. fallbacks) appended to the consensus reasoning
    """

    scores: Dict[str, float]
    notes: List[str] = field(default_factory=list)


# =============================================================================
# Consensus Algorithms (Strategy Pattern)
# =============================================================================


class ConsensusAlgorithm(ABC):
    """Abstract base class for consensus algorithms."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def score(self, votes: Sequence[Vote], config: ConsensusConfig) -> AlgorithmOutcome:
        """
        Score each intent.

        Args:
            votes: Valid votes in canonical order (non-empty)
            config: Consensus configuration

        Returns:
            Scores keyed by intent
        """
        pass


class WeightedMajorityAlgorithm(ConsensusAlgorithm):
    """Sum of model weight times confidence per intent."""

    @property
    def name(self) -> str:
        return "weighted-majority"

    def score(self, votes: Sequence[Vote], config: ConsensusConfig) -> AlgorithmOutcome:
        scores: Dict[str, float] = {}
        for vote in votes:
            scores[vote.intent] = scores.get(vote.intent, 0.0) + vote.model_weight * vote.confidence
        return AlgorithmOutcome(scores=scores)


class PluralityAlgorithm(ConsensusAlgorithm):
    """Raw vote count per intent; weights and confidence are ignored."""

    @property
    def name(self) -> str:
        return "plurality"

    def score(self, votes: Sequence[Vote], config: ConsensusConfig) -> AlgorithmOutcome:
        counts = Counter(vote.intent for vote in votes)
        return AlgorithmOutcome(scores={intent: float(n) for intent, n in counts.items()})


class ConfidenceWeightedAlgorithm(ConsensusAlgorithm):
    """Sum of confidence per intent; model weights are ignored."""

    @property
    def name(self) -> str:
        return "confidence-weighted"

    def score(self, votes: Sequence[Vote], config: ConsensusConfig) -> AlgorithmOutcome:
        scores: Dict[str, float] = {}
        for vote in votes:
            scores[vote.intent] = scores.get(vote.intent, 0.0) + vote.confidence
        return AlgorithmOutcome(scores=scores)


class BordaCountAlgorithm(ConsensusAlgorithm):
    """
    Borda count over single-preference ballots.

    Each vote ranks its own intent first among the k candidate intents and
    leaves the rest tied. Ranked positions earn k, k-1, ..., 1 points; the
    top choice takes k and the tied remainder share the average of the
    other positions (k / 2 each). Points are multiplied by the model weight.
    """

    @property
    def name(self) -> str:
        return "borda-count"

    def score(self, votes: Sequence[Vote], config: ConsensusConfig) -> AlgorithmOutcome:
        candidates = sorted({vote.intent for vote in votes})
        k = len(candidates)
        tied_points = k / 2.0

        scores = {intent: 0.0 for intent in candidates}
        for vote in votes:
            for intent in candidates:
                points = float(k) if intent == vote.intent else tied_points
                scores[intent] += vote.model_weight * points

        notes = []
        if k > 1:
            notes.append(
                "Ballots carry a single preference; unranked intents share the "
                f"remaining Borda points ({tied_points:g} each)."
            )
        return AlgorithmOutcome(scores=scores, notes=notes)


class CondorcetAlgorithm(ConsensusAlgorithm):
    """
    Pairwise comparison with weight times confidence as preference strength.

    A vote prefers its own intent over every other and is indifferent
    among the rest. The Condorcet winner beats every rival head to head;
    without one the weighted-majority scores decide.
    """

    @property
    def name(self) -> str:
        return "condorcet"

    def score(self, votes: Sequence[Vote], config: ConsensusConfig) -> AlgorithmOutcome:
        support = WeightedMajorityAlgorithm().score(votes, config).scores
        candidates = sorted(support)

        winner: Optional[str] = None
        for candidate in candidates:
            rivals = [c for c in candidates if c != candidate]
            if all(
                round(support[candidate], SCORE_PRECISION) > round(support[rival], SCORE_PRECISION)
                for rival in rivals
            ):
                winner = candidate
                break

        if winner is None:
            return AlgorithmOutcome(
                scores=support,
                notes=["No Condorcet winner; fell back to weighted-majority."],
            )
        return AlgorithmOutcome(
            scores=support,
            notes=[f"Condorcet winner '{winner}' beats all {len(candidates) - 1} rivals pairwise."],
        )


class ApprovalVotingAlgorithm(ConsensusAlgorithm):
    """
    Approval voting.

    A vote approves its intent when its confidence reaches the configured
    confidence threshold; an intent's score is the summed weight of its
    approvals. With no approvals at all the weighted-majority scores decide.
    """

    @property
    def name(self) -> str:
        return "approval-voting"

    def score(self, votes: Sequence[Vote], config: ConsensusConfig) -> AlgorithmOutcome:
        scores = {vote.intent: 0.0 for vote in votes}
        approvals = 0
        for vote in votes:
            if vote.confidence >= config.confidence_threshold:
                scores[vote.intent] += vote.model_weight
                approvals += 1

        if approvals == 0:
            fallback = WeightedMajorityAlgorithm().score(votes, config)
            return AlgorithmOutcome(
                scores=fallback.scores,
                notes=[
                    f"No vote reached the approval threshold {config.confidence_threshold:.2f}; "
                    "fell back to weighted-majority."
                ],
            )
        return AlgorithmOutcome(
            scores=scores,
            notes=[f"{approvals}/{len(votes)} votes approved at threshold {config.confidence_threshold:.2f}."],
        )


_ALGORITHMS: Dict[str, Type[ConsensusAlgorithm]] = {
    "weighted-majority": WeightedMajorityAlgorithm,
    "plurality": PluralityAlgorithm,
    "confidence-weighted": ConfidenceWeightedAlgorithm,
    "borda-count": BordaCountAlgorithm,
    "condorcet": CondorcetAlgorithm,
    "approval-voting": ApprovalVotingAlgorithm,
}


def available_algorithms() -> List[str]:
    return list(_ALGORITHMS)


def create_consensus_algorithm(name: str) -> ConsensusAlgorithm:
    """Create a consensus algorithm instance.

    Args:
        name: Algorithm name (e.g. "weighted-majority")

    Returns:
        An instance of the requested algorithm

    Raises:
        ValueError: If the name is unknown
    """
    if name not in _ALGORITHMS:
        raise ValueError(f"Unknown consensus algorithm: {name}")
    return _ALGORITHMS[name]()


# =============================================================================
# Consensus Engine
# =============================================================================


def _canonical_order(votes: Sequence[Vote]) -> List[Vote]:
    return sorted(votes, key=lambda v: (v.intent, v.model_id, v.vote_id))


def _merge_priority(votes: Sequence[Vote]) -> List[Vote]:
    """Highest confidence first, then highest weight, then model id."""
    return sorted(votes, key=lambda v: (-v.confidence, -v.model_weight, v.model_id, v.vote_id))


class ConsensusEngine:
    """
    Reduces a set of votes to a single VotingConsensus.

    Example:
        >>> engine = ConsensusEngine(ConsensusConfig(algorithm="plurality"))
        >>> consensus = engine.compute(votes)
        >>> consensus.final_intent
    """

    def __init__(self, config: Optional[ConsensusConfig] = None):
        self.config = config or ConsensusConfig()
        self.algorithm = create_consensus_algorithm(self.config.algorithm)

    @performance_monitor(threshold_ms=50.0, component="consensus")
    def compute(
        self,
        votes: Sequence[Vote],
        voting_round: Optional[VotingRound] = None,
        algorithm: Optional[str] = None,
    ) -> VotingConsensus:
        """
        Compute the consensus of a set of votes.

        Args:
            votes: All votes of the round, valid or not
            voting_round: Originating round; its ``dispatched_count`` sets total_votes
            algorithm: Algorithm name overriding the configured one

        Returns:
            The consensus. Zero valid votes yields a FAILED consensus rather
            than an exception.
        """
        strategy = create_consensus_algorithm(algorithm) if algorithm else self.algorithm
        log = logger.bind(component="consensus")

        total_votes = len(votes)
        if voting_round is not None:
            total_votes = max(total_votes, voting_round.dispatched_count)
        round_label = voting_round.round_id if voting_round is not None else "-"

        valid = _canonical_order([v for v in votes if v.is_valid])
        invalid_count = len(votes) - len(valid)

        if not valid:
            log.warning(f"Round {round_label}: no valid votes out of {len(votes)}")
            return self._failed_consensus(strategy.name, total_votes, len(votes))

        outcome = strategy.score(valid, self.config)
        scores = outcome.scores
        counts = Counter(v.intent for v in valid)

        ranked = sorted(
            scores,
            key=lambda intent: (-round(scores[intent], SCORE_PRECISION), -counts[intent], intent),
        )
        winner = ranked[0]

        shares = self._normalized_shares(scores, counts, len(valid))
        confidence = self._consensus_confidence(valid, shares[winner])
        agreement = self._agreement_level(ranked, counts, shares, len(valid))

        winning_votes = _merge_priority([v for v in valid if v.intent == winner])
        entities = self._merge_entities(winning_votes)
        subtasks = self._merge_subtasks(winning_votes)

        reasoning = self._build_reasoning(
            strategy.name, winner, ranked, scores, shares, counts, len(valid),
            invalid_count, agreement, outcome.notes,
        )

        log.info(
            f"Round {round_label}: consensus '{winner}' via {strategy.name} "
            f"({agreement.value}, confidence {confidence:.3f}, {len(valid)}/{total_votes} votes)"
        )

        return VotingConsensus(
            final_intent=winner,
            final_entities=entities,
            final_subtasks=subtasks,
            consensus_confidence=confidence,
            participating_votes=len(valid),
            total_votes=total_votes,
            agreement_level=agreement,
            consensus_method=strategy.name,
            reasoning=reasoning,
            intent_scores={intent: scores[intent] for intent in ranked},
        )

    def _failed_consensus(self, method: str, total_votes: int, received: int) -> VotingConsensus:
        return VotingConsensus(
            final_intent=self.config.unknown_intent,
            final_entities={},
            final_subtasks=[],
            consensus_confidence=0.0,
            participating_votes=0,
            total_votes=total_votes,
            agreement_level=AgreementLevel.FAILED,
            consensus_method=method,
            reasoning=(
                f"No valid votes available ({received} received, {total_votes} dispatched); "
                f"reporting '{self.config.unknown_intent}'."
            ),
        )

    def _normalized_shares(
        self, scores: Dict[str, float], counts: Counter, valid_count: int
    ) -> Dict[str, float]:
        total = sum(scores.values())
        if total <= 0:
            # Every score is zero (e.g. all weights zero); fall back to vote share
            return {intent: counts[intent] / valid_count for intent in scores}
        return {intent: score / total for intent, score in scores.items()}

    def _consensus_confidence(self, valid: Sequence[Vote], winner_share: float) -> float:
        # A lone vote is passed through unchanged
        if len(valid) == 1:
            return float(valid[0].confidence)

        confidence = winner_share
        if self.config.enable_confidence_boosting and confidence > self.config.confidence_threshold:
            confidence = min(1.0, confidence + self.config.confidence_boost_factor)
        return max(0.0, min(1.0, confidence))

    def _agreement_level(
        self,
        ranked: List[str],
        counts: Counter,
        shares: Dict[str, float],
        valid_count: int,
    ) -> AgreementLevel:
        winner = ranked[0]
        if len(ranked) == 1:
            return AgreementLevel.UNANIMOUS
        if counts[winner] * 2 > valid_count:
            return AgreementLevel.MAJORITY
        if shares[winner] - shares[ranked[1]] < self.config.divided_epsilon:
            return AgreementLevel.DIVIDED
        return AgreementLevel.PLURALITY

    def _merge_entities(self, winning_votes: Sequence[Vote]) -> Dict[str, Any]:
        if not self.config.enable_entity_merging:
            return dict(winning_votes[0].entities)

        merged: Dict[str, Any] = {}
        for vote in winning_votes:
            for key, value in vote.entities.items():
                merged.setdefault(key, value)
        return merged

    def _merge_subtasks(self, winning_votes: Sequence[Vote]) -> List[Dict[str, Any]]:
        sources = winning_votes if self.config.enable_subtask_merging else winning_votes[:1]

        merged: List[Dict[str, Any]] = []
        seen_actions = set()
        for vote in sources:
            for descriptor in vote.subtasks:
                action = descriptor.get("action")
                if not isinstance(action, str) or not action.strip():
                    continue
                if action in seen_actions:
                    continue
                seen_actions.add(action)
                merged.append(dict(descriptor))
        return merged

    def _build_reasoning(
        self,
        method: str,
        winner: str,
        ranked: List[str],
        scores: Dict[str, float],
        shares: Dict[str, float],
        counts: Counter,
        valid_count: int,
        invalid_count: int,
        agreement: AgreementLevel,
        notes: List[str],
    ) -> str:
        standings = ", ".join(
            f"{intent}={scores[intent]:.3f} ({counts[intent]} votes)" for intent in ranked
        )
        parts = [
            f"{method}: '{winner}' selected with {shares[winner]:.0%} of the total score "
            f"and {counts[winner]}/{valid_count} valid votes; agreement {agreement.value}.",
            f"Scores: {standings}.",
        ]
        if len(ranked) > 1 and round(scores[ranked[0]], SCORE_PRECISION) == round(
            scores[ranked[1]], SCORE_PRECISION
        ):
            parts.append("Tie on score broken by vote count, then intent name.")
        if invalid_count:
            parts.append(f"{invalid_count} invalid vote(s) excluded.")
        parts.extend(notes)
        return " ".join(parts)
