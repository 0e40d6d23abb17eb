"""
Unit tests for VotingService dispatch, failure handling and debate rounds.

Model clients are in-memory fakes; no test touches the network.
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from intentmoe.collaborators import Example, ExampleRetriever
from intentmoe.config import (
    Config,
    ConfigurationManager,
    ConsensusConfig,
    ParticipantConfig,
    VotingConfig,
)
from intentmoe.errors import NotFoundError
from intentmoe.neural.errors import ModelTransportError
from intentmoe.neural.model_client import ModelClient, ModelReply
from intentmoe.voting import AgreementLevel, RoundStatus, VotingService


def reply(intent, confidence, entities=None, subtasks=None, reasoning=""):
    return ModelReply(
        intent_raw=intent,
        confidence_raw=confidence,
        entities_raw=entities or {},
        subtasks_raw=subtasks or [],
        reasoning=reasoning,
    )


class FakeModelClient(ModelClient):
    """Scripted client: returns (or raises) its replies in call order."""

    def __init__(self, participant_id, replies, gate=None, call_log=None):
        super().__init__(participant_id, "fake-model")
        self.replies = list(replies)
        self.prompts = []
        self.gate = gate
        self.call_log = call_log

    def complete(self, prompt, config):
        self.prompts.append(prompt)
        if self.call_log is not None:
            self.call_log.append(self.participant_id)
        if self.gate is not None:
            self.gate.wait(5)
        answer = self.replies[min(len(self.prompts), len(self.replies)) - 1]
        if isinstance(answer, Exception):
            raise answer
        return answer

    def get_provider_name(self):
        return "fake"


def make_config(participants, consensus=None, **voting_kwargs):
    panel = [ParticipantConfig(id=p) if isinstance(p, str) else p for p in participants]
    return Config(
        voting=VotingConfig(participants=panel, **voting_kwargs),
        consensus=consensus or ConsensusConfig(),
    )


@pytest.fixture
def gate():
    """Event that blocks slow fake clients; released after the test."""
    event = threading.Event()
    yield event
    event.set()


class TestParallelVoting:
    """Test parallel dispatch to the panel."""

    def test_unanimous_round(self):
        clients = {
            "m1": FakeModelClient("m1", [reply("encender_luz", 0.9)]),
            "m2": FakeModelClient("m2", [reply("encender_luz", 0.85)]),
            "m3": FakeModelClient("m3", [reply("encender_luz", 0.8)]),
        }
        service = VotingService(make_config(["m1", "m2", "m3"]), clients=clients)

        voting_round = service.execute_voting_round("req-1", "enciende la luz")

        assert voting_round.status == RoundStatus.COMPLETED
        assert voting_round.round_id.startswith("round_req-1_")
        assert voting_round.consensus.final_intent == "encender_luz"
        assert voting_round.consensus.agreement_level == AgreementLevel.UNANIMOUS
        assert voting_round.consensus.participating_votes == 3
        assert voting_round.dispatched_count == 3
        assert [v.model_id for v in voting_round.votes] == ["m1", "m2", "m3"]
        assert voting_round.start_time is not None and voting_round.end_time is not None

    def test_participant_error_is_recorded_not_raised(self):
        clients = {
            "m1": FakeModelClient("m1", [reply("weather", 0.9)]),
            "m2": FakeModelClient(
                "m2", [ModelTransportError("upstream down", provider="fake", status_code=503)]
            ),
            "m3": FakeModelClient("m3", [reply("weather", 0.7)]),
        }
        service = VotingService(make_config(["m1", "m2", "m3"]), clients=clients)

        voting_round = service.execute_voting_round("req-2", "will it rain?")

        assert voting_round.status == RoundStatus.COMPLETED
        assert len(voting_round.votes) == 2
        assert voting_round.consensus.participating_votes == 2
        assert voting_round.consensus.total_votes == 3
        summary = voting_round.get_failure_summary()
        assert summary["failed_participants"] == ["m2"]
        assert voting_round.failures[0].error_type == "ModelTransportError"

    def test_slow_participant_times_out_without_blocking_others(self, gate):
        slow = ParticipantConfig(id="slow", timeout_ms=150)
        clients = {
            "fast1": FakeModelClient("fast1", [reply("alarm", 0.8)]),
            "slow": FakeModelClient("slow", [reply("music", 0.99)], gate=gate),
            "fast2": FakeModelClient("fast2", [reply("alarm", 0.6)]),
        }
        service = VotingService(make_config(["fast1", slow, "fast2"]), clients=clients)

        started = time.monotonic()
        voting_round = service.execute_voting_round("req-3", "wake me at 7")
        elapsed = time.monotonic() - started

        assert elapsed < 2.0
        assert voting_round.status == RoundStatus.COMPLETED
        assert voting_round.consensus.final_intent == "alarm"
        assert [f.participant_id for f in voting_round.failures] == ["slow"]
        assert voting_round.failures[0].error_type == "Timeout"
        assert "slow" not in [v.model_id for v in voting_round.votes]

    def test_all_participants_fail(self):
        error = ModelTransportError("bad request", provider="fake", status_code=400)
        clients = {pid: FakeModelClient(pid, [error]) for pid in ("m1", "m2")}
        service = VotingService(make_config(["m1", "m2"]), clients=clients)

        voting_round = service.execute_voting_round("req-4", "???")

        assert voting_round.status == RoundStatus.FAILED
        assert voting_round.consensus.agreement_level == AgreementLevel.FAILED
        assert voting_round.consensus.consensus_confidence == 0.0
        assert len(voting_round.failures) == 2

    def test_invalid_reply_is_kept_for_audit(self):
        clients = {
            "m1": FakeModelClient("m1", [reply("greet", 0.9)]),
            "m2": FakeModelClient("m2", [reply("greet", 0.8)]),
            "m3": FakeModelClient("m3", [reply("greet", "very high")]),
        }
        service = VotingService(make_config(["m1", "m2", "m3"]), clients=clients)

        voting_round = service.execute_voting_round("req-5", "hola")

        assert len(voting_round.votes) == 3
        assert len(voting_round.valid_votes) == 2
        assert voting_round.failures == []
        assert voting_round.consensus.participating_votes == 2

    def test_round_timeout_keeps_partial_consensus(self, gate):
        clients = {
            "m1": FakeModelClient("m1", [reply("lights_on", 0.9)]),
            "m2": FakeModelClient("m2", [reply("lights_on", 0.8)]),
            "hung": FakeModelClient("hung", [reply("lights_off", 0.9)], gate=gate),
        }
        config = make_config(["m1", "m2", "hung"], round_timeout_ms=200)
        service = VotingService(config, clients=clients)

        voting_round = service.execute_voting_round("req-6", "lights please")

        assert voting_round.status == RoundStatus.TIMED_OUT
        assert voting_round.consensus is not None
        assert voting_round.consensus.final_intent == "lights_on"
        assert "cut short" in voting_round.consensus.reasoning
        assert voting_round.failures[0].participant_id == "hung"


class TestSequentialVoting:
    """Test one-at-a-time dispatch."""

    def test_panel_order_is_respected(self):
        call_log = []
        clients = {
            pid: FakeModelClient(pid, [reply("weather", 0.8)], call_log=call_log)
            for pid in ("c", "a", "b")
        }
        config = make_config(["c", "a", "b"], parallel_voting=False)
        service = VotingService(config, clients=clients)

        voting_round = service.execute_voting_round("req-7", "forecast")

        assert call_log == ["c", "a", "b"]
        assert voting_round.status == RoundStatus.COMPLETED

    def test_hung_participant_does_not_block_the_next(self, gate):
        hung = ParticipantConfig(id="hung", timeout_ms=150)
        clients = {
            "hung": FakeModelClient("hung", [reply("x", 0.9)], gate=gate),
            "next": FakeModelClient("next", [reply("weather", 0.7)]),
        }
        config = make_config([hung, "next"], parallel_voting=False)
        service = VotingService(config, clients=clients)

        voting_round = service.execute_voting_round("req-9", "forecast")

        assert voting_round.status == RoundStatus.COMPLETED
        assert len(clients["next"].prompts) == 1
        assert voting_round.consensus.final_intent == "weather"
        assert [f.participant_id for f in voting_round.failures] == ["hung"]

    def test_round_deadline_skips_remaining_participants(self, gate):
        clients = {
            "hung": FakeModelClient("hung", [reply("x", 0.9)], gate=gate),
            "later": FakeModelClient("later", [reply("x", 0.9)]),
        }
        config = make_config(["hung", "later"], parallel_voting=False, round_timeout_ms=150)
        service = VotingService(config, clients=clients)

        voting_round = service.execute_voting_round("req-8", "anything")

        assert voting_round.status == RoundStatus.TIMED_OUT
        assert clients["later"].prompts == []
        assert {f.participant_id for f in voting_round.failures} == {"hung", "later"}
        assert voting_round.consensus.failed


class TestSingleParticipant:
    """Test the degenerate one-member panel."""

    def test_voting_disabled_queries_primary_only(self):
        clients = {
            "m1": FakeModelClient("m1", [reply("a", 0.9)]),
            "m2": FakeModelClient("m2", [reply("b", 0.42)]),
            "m3": FakeModelClient("m3", [reply("c", 0.9)]),
        }
        config = make_config(["m1", "m2", "m3"], voting_enabled=False, primary_participant_id="m2")
        service = VotingService(config, clients=clients)

        voting_round = service.execute_voting_round("req-9", "hello")

        assert clients["m1"].prompts == [] and clients["m3"].prompts == []
        assert voting_round.consensus.final_intent == "b"
        assert voting_round.consensus.agreement_level == AgreementLevel.UNANIMOUS
        assert voting_round.consensus.consensus_confidence == pytest.approx(0.42)
        assert voting_round.consensus.consensus_method == "weighted-majority"

    def test_single_member_panel(self):
        clients = {"solo": FakeModelClient("solo", [reply("timer", 0.66)])}
        service = VotingService(make_config(["solo"], max_debate_rounds=3), clients=clients)

        voting_round = service.execute_voting_round("req-10", "set a timer")

        assert voting_round.rounds_executed == 1
        assert voting_round.consensus.agreement_level == AgreementLevel.UNANIMOUS
        assert voting_round.consensus.consensus_confidence == pytest.approx(0.66)

    def test_empty_panel_fails_gracefully(self):
        service = VotingService(make_config([]))

        voting_round = service.execute_voting_round("req-11", "hello")

        assert voting_round.status == RoundStatus.FAILED
        assert voting_round.consensus.failed


class TestDebateRounds:
    """Test multi-round debate."""

    def test_debate_reaches_unanimity(self):
        clients = {
            "m1": FakeModelClient("m1", [reply("A", 0.9), reply("A", 0.9)]),
            "m2": FakeModelClient(
                "m2", [reply("B", 0.9, reasoning="sounds like B"), reply("A", 0.8)]
            ),
            "m3": FakeModelClient("m3", [reply("A", 0.6), reply("A", 0.7)]),
        }
        service = VotingService(make_config(["m1", "m2", "m3"], max_debate_rounds=2), clients=clients)

        voting_round = service.execute_voting_round("req-12", "ambiguous request")

        assert voting_round.rounds_executed == 2
        first, last = voting_round.debate_rounds
        assert first.consensus.agreement_level == AgreementLevel.MAJORITY
        assert last.consensus.agreement_level == AgreementLevel.UNANIMOUS
        assert voting_round.consensus is last.consensus
        assert all(v.round_number == 2 for v in voting_round.votes)

        debate_prompt = clients["m2"].prompts[1]
        assert "debate round 2" in debate_prompt
        assert "- m1: intent=A confidence=0.90" in debate_prompt
        assert "- m2:" not in debate_prompt
        assert "sounds like B" in clients["m1"].prompts[1]

    def test_unanimous_first_round_skips_debate(self):
        clients = {pid: FakeModelClient(pid, [reply("A", 0.9)]) for pid in ("m1", "m2")}
        service = VotingService(make_config(["m1", "m2"], max_debate_rounds=3), clients=clients)

        voting_round = service.execute_voting_round("req-13", "clear request")

        assert voting_round.rounds_executed == 1
        assert all(len(c.prompts) == 1 for c in clients.values())

    def test_stalled_debate_stops_early(self):
        clients = {
            "m1": FakeModelClient("m1", [reply("A", 0.9)]),
            "m2": FakeModelClient("m2", [reply("B", 0.9)]),
            "m3": FakeModelClient("m3", [reply("A", 0.6)]),
        }
        service = VotingService(make_config(["m1", "m2", "m3"], max_debate_rounds=5), clients=clients)

        voting_round = service.execute_voting_round("req-14", "stubborn panel")

        # Round 2 brings no confidence gain, so round 3 never starts
        assert voting_round.rounds_executed == 2
        assert voting_round.status == RoundStatus.COMPLETED
        assert voting_round.consensus.final_intent == "A"


class TestServiceCollaborators:
    """Test prompts, client creation, registries and configuration reload."""

    def test_prompt_includes_examples_context_and_history(self):
        retriever = MagicMock(spec=ExampleRetriever)
        retriever.retrieve_similar.return_value = [Example(text="prende la luz", intent="encender_luz")]
        client = FakeModelClient("solo", [reply("encender_luz", 0.9)])
        service = VotingService(
            make_config(["solo"], examples_per_prompt=3),
            clients={"solo": client},
            example_retriever=retriever,
            available_actions=["encender_luz", "apagar_luz"],
        )

        service.execute_voting_round(
            "req-15", "enciende la luz", {"room": "kitchen"}, ["hola", "que tal"]
        )

        retriever.retrieve_similar.assert_called_once_with("enciende la luz", 3)
        prompt = client.prompts[0]
        assert '"prende la luz" -> encender_luz' in prompt
        assert '{"room": "kitchen"}' in prompt
        assert "hola | que tal" in prompt
        assert "encender_luz, apagar_luz" in prompt

    def test_retriever_failure_does_not_fail_round(self):
        retriever = MagicMock(spec=ExampleRetriever)
        retriever.retrieve_similar.side_effect = RuntimeError("index offline")
        client = FakeModelClient("solo", [reply("greet", 0.9)])
        service = VotingService(make_config(["solo"]), clients={"solo": client}, example_retriever=retriever)

        voting_round = service.execute_voting_round("req-16", "hi")

        assert voting_round.status == RoundStatus.COMPLETED
        assert "(none)" in client.prompts[0]

    def test_participant_prompt_template_override(self):
        participant = ParticipantConfig(id="custom", prompt_template="Classify: $user_message")
        client = FakeModelClient("custom", [reply("greet", 0.9)])
        service = VotingService(make_config([participant]), clients={"custom": client})

        service.execute_voting_round("req-17", "good morning")

        assert client.prompts[0] == "Classify: good morning"

    def test_client_factory_builds_missing_clients_once(self):
        factory = MagicMock(side_effect=lambda p: FakeModelClient(p.id, [reply("greet", 0.9)]))
        service = VotingService(make_config(["m1", "m2"]), client_factory=factory)

        service.execute_voting_round("req-18", "hi")
        service.execute_voting_round("req-19", "hi again")

        assert factory.call_count == 2

    def test_factory_error_becomes_participant_failure(self):
        def factory(participant):
            if participant.id == "broken":
                raise ValueError("no credentials")
            return FakeModelClient(participant.id, [reply("greet", 0.9)])

        service = VotingService(make_config(["ok", "broken"]), client_factory=factory)

        voting_round = service.execute_voting_round("req-20", "hi")

        assert voting_round.status == RoundStatus.COMPLETED
        assert voting_round.failures[0].participant_id == "broken"
        assert voting_round.failures[0].error_type == "ValueError"

    def test_reload_applies_to_next_round(self):
        clients = {
            "big": FakeModelClient("big", [reply("A", 0.9)]),
            "m2": FakeModelClient("m2", [reply("B", 0.3)]),
            "m3": FakeModelClient("m3", [reply("B", 0.3)]),
        }
        manager = ConfigurationManager(make_config([ParticipantConfig(id="big", weight=5.0), "m2", "m3"]))
        service = VotingService(manager, clients=clients)

        assert service.execute_voting_round("req-21", "x").consensus.final_intent == "A"

        manager.reload(
            make_config(
                [ParticipantConfig(id="big", weight=5.0), "m2", "m3"],
                consensus=ConsensusConfig(algorithm="plurality"),
            )
        )
        voting_round = service.execute_voting_round("req-22", "x")

        assert voting_round.consensus.final_intent == "B"
        assert voting_round.consensus.consensus_method == "plurality"

    def test_unknown_active_round(self):
        service = VotingService(make_config([]))

        with pytest.raises(NotFoundError):
            service.get_active_round("round_missing_0")
        assert service.active_round_ids() == []

    def test_statistics(self):
        clients = {
            "m1": FakeModelClient("m1", [reply("A", 0.9)]),
            "m2": FakeModelClient("m2", [ModelTransportError("down", provider="fake")]),
        }
        service = VotingService(make_config(["m1", "m2"]), clients=clients)

        service.execute_voting_round("req-23", "x")
        stats = service.get_statistics()

        assert stats["rounds_executed"] == 1
        assert stats["rounds_by_status"] == {"completed": 1}
        assert stats["participant_failures"] == {"m2": 1}
        assert stats["participants"] == ["m1", "m2"]
        assert stats["active_rounds"] == 0
