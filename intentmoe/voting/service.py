"""
Voting service - dispatching a request to the model panel.

Responsibilities:
- Render one prompt per participant and query the panel in parallel or
  sequentially, each call bounded by its per-vote timeout
- Record participant failures without failing the round
- Run optional debate rounds that show each participant the others'
  previous answers, stopping on unanimity, the round cap or a stalled
  confidence gain
- Enforce the wall-clock round timeout and keep whatever consensus exists
- Keep a registry of in-flight rounds

Single-participant and voting-disabled configurations go through exactly
the same path with a one-member panel.
"""

import dataclasses
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from loguru import logger

from intentmoe.collaborators import Example, ExampleRetriever, NullExampleRetriever
from intentmoe.config import (
    Config,
    ConfigurationManager,
    ParticipantConfig,
    VotingConfig,
    as_configuration_manager,
)
from intentmoe.errors import NotFoundError
from intentmoe.neural.model_client import CompletionConfig, ModelClient, ModelReply
from intentmoe.neural.prompts import PriorVote, PromptBuilder, PromptRequest, TemplatePromptBuilder
from intentmoe.neural.providers import create_model_client

from .consensus import ConsensusEngine
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

ClientFactory = Callable[[ParticipantConfig], ModelClient]


@dataclasses.dataclass
class _CollectedVotes:
    votes: List[Vote]
    failures: List[ParticipantFailure]
    timed_out: bool = False


class VotingService:
    """
    Runs voting rounds against a configured panel of model participants.

    Example:
        >>> service = VotingService(ConfigurationManager(config))
        >>> voting_round = service.execute_voting_round("req-1", "turn on the light")
        >>> voting_round.consensus.final_intent
    """

    def __init__(
        self,
        config: Union[Config, ConfigurationManager, None] = None,
        clients: Optional[Dict[str, ModelClient]] = None,
        client_factory: ClientFactory = create_model_client,
        prompt_builder: Optional[PromptBuilder] = None,
        example_retriever: Optional[ExampleRetriever] = None,
        available_actions: Optional[Sequence[str]] = None,
    ):
        """
        Initialize the voting service.

        Args:
            config: Configuration snapshot or manager; a fresh default if None
            clients: Pre-built clients keyed by participant id
            client_factory: Builds clients for participants missing from ``clients``
            prompt_builder: Renders prompts (TemplatePromptBuilder by default)
            example_retriever: Supplies few-shot examples
            available_actions: Action names offered to the models
        """
        self.config_manager = as_configuration_manager(config)
        self.client_factory = client_factory
        self.prompt_builder = prompt_builder or TemplatePromptBuilder()
        self.example_retriever = example_retriever or NullExampleRetriever()
        self.available_actions = list(available_actions or [])

        self._clients: Dict[str, ModelClient] = dict(clients or {})
        self._clients_lock = threading.Lock()

        self._active_rounds: Dict[str, VotingRound] = {}
        self._rounds_lock = threading.Lock()

        self._stats_lock = threading.Lock()
        self._rounds_executed = 0
        self._status_counts: Dict[str, int] = {}
        self._confidence_total = 0.0
        self._participant_failures: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute_voting_round(
        self,
        request_id: str,
        user_message: str,
        conversation_context: Optional[Dict[str, Any]] = None,
        conversation_history: Optional[List[str]] = None,
        available_actions: Optional[Sequence[str]] = None,
    ) -> VotingRound:
        """
        Classify one user message with the configured panel.

        Args:
            request_id: Caller's request identifier
            user_message: Utterance to classify
            conversation_context: Context map rendered into the prompt
            conversation_history: Previous turns, oldest first
            available_actions: Overrides the service's action list for this call

        Returns:
            The finished VotingRound. Its consensus is always set; a round
            with no valid votes has a FAILED consensus and status FAILED.
        """
        snapshot = self.config_manager.snapshot
        voting_config = snapshot.voting
        engine = ConsensusEngine(snapshot.consensus)
        log = logger.bind(component="voting")

        voting_round = VotingRound(
            round_id=f"round_{request_id}_{int(time.time() * 1000)}",
            request_id=request_id,
            user_message=user_message,
            conversation_context=dict(conversation_context or {}),
            conversation_history=list(conversation_history or []),
        )
        with self._rounds_lock:
            self._active_rounds[voting_round.round_id] = voting_round

        try:
            voting_round.transition(RoundStatus.IN_PROGRESS)
            deadline = time.monotonic() + voting_config.round_timeout_ms / 1000.0
            participants = voting_config.active_participants()
            voting_round.dispatched_count = len(participants)
            log.info(
                f"Starting voting round {voting_round.round_id} with "
                f"{len(participants)} participant(s), "
                f"{'parallel' if voting_config.parallel_voting else 'sequential'} dispatch"
            )

            if not participants:
                log.warning(f"Round {voting_round.round_id}: no participants configured")

            ctx = _RoundContext(
                voting_round=voting_round,
                voting_config=voting_config,
                engine=engine,
                participants=participants,
                examples=self._retrieve_examples(user_message, voting_config.examples_per_prompt),
                actions=(
                    list(available_actions)
                    if available_actions is not None
                    else list(self.available_actions)
                ),
                deadline=deadline,
            )
            timed_out = self._run_rounds(ctx)

            self._finish_round(ctx, timed_out)
            return voting_round
        finally:
            with self._rounds_lock:
                self._active_rounds.pop(voting_round.round_id, None)

    def get_active_round(self, round_id: str) -> VotingRound:
        """
        Look up an in-flight round.

        Raises:
            NotFoundError: If no round with that id is running
        """
        with self._rounds_lock:
            voting_round = self._active_rounds.get(round_id)
        if voting_round is None:
            raise NotFoundError("voting round", round_id)
        return voting_round

    def active_round_ids(self) -> List[str]:
        with self._rounds_lock:
            return sorted(self._active_rounds)

    def get_statistics(self) -> Dict[str, Any]:
        """Aggregate statistics over all rounds run by this service."""
        snapshot = self.config_manager.snapshot
        with self._stats_lock:
            average_confidence = (
                self._confidence_total / self._rounds_executed if self._rounds_executed else 0.0
            )
            return {
                "rounds_executed": self._rounds_executed,
                "rounds_by_status": dict(self._status_counts),
                "average_consensus_confidence": average_confidence,
                "participant_failures": dict(self._participant_failures),
                "active_rounds": len(self.active_round_ids()),
                "participants": [p.id for p in snapshot.voting.participants],
                "voting_enabled": snapshot.voting.voting_enabled,
                "consensus_algorithm": snapshot.consensus.algorithm,
                "max_debate_rounds": snapshot.voting.max_debate_rounds,
            }

    # ------------------------------------------------------------------
    # Round execution
    # ------------------------------------------------------------------

    def _run_rounds(self, ctx: "_RoundContext") -> bool:
        """Run the first round and any debate rounds. Returns True if the round timed out."""
        log = logger.bind(component="voting")
        voting_round = ctx.voting_round
        max_rounds = ctx.voting_config.max_debate_rounds if len(ctx.participants) > 1 else 1

        prior_votes: List[Vote] = []
        previous_confidence: Optional[float] = None

        for round_number in range(1, max_rounds + 1):
            if round_number > 1 and time.monotonic() >= ctx.deadline:
                log.warning(
                    f"Round {voting_round.round_id}: deadline reached before debate round {round_number}"
                )
                return True

            started = time.monotonic()
            collected = self._collect_votes(ctx, round_number, prior_votes)
            consensus = ctx.engine.compute(collected.votes, voting_round)

            voting_round.votes = collected.votes
            voting_round.consensus = consensus
            voting_round.failures.extend(collected.failures)
            voting_round.debate_rounds.append(
                DebateRoundRecord(
                    round_number=round_number,
                    votes=collected.votes,
                    consensus=consensus,
                    failures=collected.failures,
                    duration_ms=(time.monotonic() - started) * 1000,
                )
            )

            if collected.timed_out:
                return True
            if consensus.agreement_level in (AgreementLevel.UNANIMOUS, AgreementLevel.FAILED):
                break
            if previous_confidence is not None:
                improvement = consensus.consensus_confidence - previous_confidence
                if improvement < ctx.voting_config.improvement_threshold:
                    log.info(
                        f"Round {voting_round.round_id}: debate stopped after round "
                        f"{round_number}, confidence gain {improvement:.3f} below "
                        f"{ctx.voting_config.improvement_threshold:.3f}"
                    )
                    break
            if round_number < max_rounds:
                log.info(
                    f"Round {voting_round.round_id}: {consensus.agreement_level.value} "
                    f"agreement, starting debate round {round_number + 1}"
                )

            previous_confidence = consensus.consensus_confidence
            prior_votes = [v for v in collected.votes if v.is_valid]

        return False

    def _collect_votes(
        self, ctx: "_RoundContext", round_number: int, prior_votes: List[Vote]
    ) -> _CollectedVotes:
        collected = _CollectedVotes(votes=[], failures=[])
        if not ctx.participants:
            return collected

        # One worker per participant: an abandoned call never delays another
        executor = ThreadPoolExecutor(
            max_workers=len(ctx.participants),
            thread_name_prefix=f"vote-{ctx.voting_round.request_id}",
        )
        try:
            if ctx.voting_config.parallel_voting:
                self._collect_parallel(executor, ctx, collected, round_number, prior_votes)
            else:
                self._collect_sequential(executor, ctx, collected, round_number, prior_votes)
        finally:
            # Calls that overran their timeout are abandoned, not joined
            executor.shutdown(wait=False, cancel_futures=True)
        return collected

    def _collect_parallel(
        self,
        executor: ThreadPoolExecutor,
        ctx: "_RoundContext",
        collected: _CollectedVotes,
        round_number: int,
        prior_votes: List[Vote],
    ) -> None:
        pending: List[Tuple[ParticipantConfig, Future, float]] = []
        for participant in ctx.participants:
            future = self._dispatch(executor, ctx, collected, participant, round_number, prior_votes)
            if future is not None:
                pending.append((participant, future, ctx.participant_deadline(participant)))

        # Every call is already running, so waiting in panel order never
        # delays a faster participant past its own deadline.
        for participant, future, participant_deadline in pending:
            self._await_vote(ctx, collected, participant, future, participant_deadline, round_number)

    def _collect_sequential(
        self,
        executor: ThreadPoolExecutor,
        ctx: "_RoundContext",
        collected: _CollectedVotes,
        round_number: int,
        prior_votes: List[Vote],
    ) -> None:
        for index, participant in enumerate(ctx.participants):
            if collected.timed_out or time.monotonic() >= ctx.deadline:
                for skipped in ctx.participants[index:]:
                    self._record_failure(
                        ctx, collected, skipped, "RoundTimeout",
                        "Round deadline reached before this participant was queried",
                        round_number,
                    )
                collected.timed_out = True
                return

            future = self._dispatch(executor, ctx, collected, participant, round_number, prior_votes)
            if future is not None:
                self._await_vote(
                    ctx, collected, participant, future,
                    ctx.participant_deadline(participant), round_number,
                )

    def _dispatch(
        self,
        executor: ThreadPoolExecutor,
        ctx: "_RoundContext",
        collected: _CollectedVotes,
        participant: ParticipantConfig,
        round_number: int,
        prior_votes: List[Vote],
    ) -> Optional[Future]:
        try:
            client = self._client_for(participant)
            prompt = self._build_prompt(ctx, participant, round_number, prior_votes)
        except Exception as e:
            self._record_failure(ctx, collected, participant, type(e).__name__, str(e), round_number)
            return None

        completion = CompletionConfig(
            timeout_ms=ctx.timeout_ms(participant),
            temperature=participant.temperature,
            max_tokens=participant.max_tokens,
        )
        return executor.submit(client.complete, prompt, completion)

    def _await_vote(
        self,
        ctx: "_RoundContext",
        collected: _CollectedVotes,
        participant: ParticipantConfig,
        future: Future,
        participant_deadline: float,
        round_number: int,
    ) -> None:
        remaining = max(0.0, participant_deadline - time.monotonic())
        try:
            reply: ModelReply = future.result(timeout=remaining)
        except FutureTimeoutError:
            future.cancel()
            if participant_deadline >= ctx.deadline:
                collected.timed_out = True
                message = "Round deadline reached while waiting for the vote"
            else:
                message = "Vote not received within the per-vote timeout"
            self._record_failure(ctx, collected, participant, "Timeout", message, round_number)
            return
        except Exception as e:
            self._record_failure(ctx, collected, participant, type(e).__name__, str(e), round_number)
            return

        vote = vote_from_reply(reply, participant, ctx.voting_round.round_id, round_number)
        if not vote.is_valid:
            logger.bind(component="voting").warning(
                f"Round {ctx.voting_round.round_id}: invalid vote from {participant.id} "
                f"(intent={vote.intent!r}, confidence={vote.confidence!r})"
            )
        collected.votes.append(vote)

    def _record_failure(
        self,
        ctx: "_RoundContext",
        collected: _CollectedVotes,
        participant: ParticipantConfig,
        error_type: str,
        message: str,
        round_number: int,
    ) -> None:
        logger.bind(component="voting").warning(
            f"Round {ctx.voting_round.round_id}: participant {participant.id} "
            f"produced no vote ({error_type}: {message})"
        )
        collected.failures.append(
            ParticipantFailure(
                participant_id=participant.id,
                error_type=error_type,
                message=message,
                round_number=round_number,
            )
        )
        with self._stats_lock:
            self._participant_failures[participant.id] = (
                self._participant_failures.get(participant.id, 0) + 1
            )

    def _finish_round(self, ctx: "_RoundContext", timed_out: bool) -> None:
        log = logger.bind(component="voting")
        voting_round = ctx.voting_round
        if timed_out:
            voting_round.consensus = self._mark_cut_short(ctx)
            voting_round.transition(RoundStatus.TIMED_OUT)
        elif voting_round.consensus.failed:
            voting_round.transition(RoundStatus.FAILED)
        else:
            voting_round.transition(RoundStatus.COMPLETED)

        consensus = voting_round.consensus
        log.info(
            f"Voting round {voting_round.round_id} {voting_round.status.value}: "
            f"'{consensus.final_intent}' ({consensus.agreement_level.value}, "
            f"confidence {consensus.consensus_confidence:.3f}) after "
            f"{voting_round.rounds_executed} round(s), {len(voting_round.failures)} failure(s)"
        )

        with self._stats_lock:
            self._rounds_executed += 1
            status = voting_round.status.value
            self._status_counts[status] = self._status_counts.get(status, 0) + 1
            self._confidence_total += consensus.consensus_confidence

    def _mark_cut_short(self, ctx: "_RoundContext") -> VotingConsensus:
        voting_round = ctx.voting_round
        consensus = voting_round.consensus
        note = (
            f" Execution was cut short by the {ctx.voting_config.round_timeout_ms}ms round "
            f"timeout; consensus reflects {consensus.participating_votes} vote(s) received."
        )
        marked = dataclasses.replace(consensus, reasoning=consensus.reasoning + note)
        if voting_round.debate_rounds:
            voting_round.debate_rounds[-1].consensus = marked
        return marked

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _client_for(self, participant: ParticipantConfig) -> ModelClient:
        with self._clients_lock:
            client = self._clients.get(participant.id)
            if client is None:
                client = self.client_factory(participant)
                self._clients[participant.id] = client
            return client

    def _retrieve_examples(self, user_message: str, k: int) -> List[Example]:
        if k <= 0:
            return []
        try:
            return list(self.example_retriever.retrieve_similar(user_message, k))
        except Exception as e:
            logger.bind(component="voting").warning(
                f"Example retrieval failed, continuing without examples: {e}"
            )
            return []

    def _build_prompt(
        self,
        ctx: "_RoundContext",
        participant: ParticipantConfig,
        round_number: int,
        prior_votes: List[Vote],
    ) -> str:
        others = [
            PriorVote(
                participant_id=v.model_id,
                intent=v.intent,
                confidence=float(v.confidence),
                reasoning=v.reasoning,
            )
            for v in prior_votes
            if v.model_id != participant.id
        ]
        request = PromptRequest(
            user_message=ctx.voting_round.user_message,
            conversation_context=ctx.voting_round.conversation_context,
            conversation_history=ctx.voting_round.conversation_history,
            available_actions=ctx.actions,
            participant_id=participant.id,
            participant_role=participant.role,
            round_number=round_number,
            prior_votes=others,
            template_override=participant.prompt_template,
        )
        return self.prompt_builder.build(request, ctx.examples)


@dataclasses.dataclass
class _RoundContext:
    """State shared by one call to execute_voting_round, read from a single snapshot."""

    voting_round: VotingRound
    voting_config: VotingConfig
    engine: ConsensusEngine
    participants: List[ParticipantConfig]
    examples: List[Example]
    actions: List[str]
    deadline: float

    def timeout_ms(self, participant: ParticipantConfig) -> int:
        return participant.timeout_ms or self.voting_config.timeout_per_vote_ms

    def participant_deadline(self, participant: ParticipantConfig) -> float:
        return min(time.monotonic() + self.timeout_ms(participant) / 1000.0, self.deadline)
