"""
Unit tests for IntentPipeline: voting, planning, execution and session linkage.
"""

from unittest.mock import MagicMock

import pytest

from intentmoe.collaborators import InMemorySessionStore
from intentmoe.config import Config, ParticipantConfig, VotingConfig
from intentmoe.neural.errors import ModelTransportError
from intentmoe.neural.model_client import ModelClient, ModelReply
from intentmoe.orchestration import HandlerActionExecutor, SubtaskStatus, TaskOrchestrator
from intentmoe.pipeline import IntentPipeline, build_subtasks
from intentmoe.voting import AgreementLevel, VotingConsensus, VotingService


class ScriptedClient(ModelClient):
    """Returns the same reply (or raises) on every call and records prompts."""

    def __init__(self, answer):
        super().__init__("solo", "fake-model")
        self.answer = answer
        self.prompts = []

    def complete(self, prompt, config):
        self.prompts.append(prompt)
        if isinstance(self.answer, Exception):
            raise self.answer
        return self.answer

    def get_provider_name(self):
        return "fake"


def make_consensus(intent="greet", entities=None, subtasks=None, agreement=AgreementLevel.UNANIMOUS):
    return VotingConsensus(
        final_intent=intent,
        final_entities=entities or {},
        final_subtasks=subtasks or [],
        consensus_confidence=0.9,
        participating_votes=1,
        total_votes=1,
        agreement_level=agreement,
        consensus_method="weighted-majority",
        reasoning="test",
    )


@pytest.fixture
def config():
    return Config(voting=VotingConfig(participants=[ParticipantConfig(id="solo")]))


@pytest.fixture
def handlers():
    def get_weather(subtask):
        raise ConnectionError("weather service down")

    return {
        "get_weather": get_weather,
        "set_alarm": lambda s: {"alarm": s.entities.get("time")},
        "greet": lambda s: {"greeting": f"hello {s.entities.get('name', '')}".strip()},
    }


def make_pipeline(config, answer, handlers, store=None, history_limit=20):
    client = ScriptedClient(answer)
    voting_service = VotingService(config, clients={"solo": client})
    orchestrator = TaskOrchestrator(HandlerActionExecutor(handlers), config)
    pipeline = IntentPipeline(voting_service, orchestrator, store, history_limit=history_limit)
    return pipeline, client


class TestIntentPipeline:
    """Test one turn through the whole pipeline."""

    def test_single_intent_becomes_one_subtask(self, config, handlers):
        answer = ModelReply(intent_raw="greet", confidence_raw=0.9, entities_raw={"name": "Ada"})
        pipeline, _ = make_pipeline(config, answer, handlers)

        result = pipeline.process("req-1", "say hi to Ada", "conv-1")

        assert result.final_intent == "greet"
        assert result.succeeded
        execution = result.execution_result
        assert execution.total_tasks == 1
        assert execution.get_result("subtask_1").result_data == {"greeting": "hello Ada"}
        assert result.to_dict()["execution"]["all_successful"] is True

    def test_failed_dependency_skips_dependent(self, config, handlers):
        answer = ModelReply(
            intent_raw="morning_routine",
            confidence_raw=0.8,
            subtasks_raw=[
                {"subtask_id": "weather", "action": "get_weather"},
                {
                    "subtask_id": "alarm",
                    "action": "set_alarm",
                    "dependencies": ["weather"],
                    "entities": {"time": "07:00"},
                },
            ],
        )
        pipeline, _ = make_pipeline(config, answer, handlers)

        result = pipeline.process("req-2", "check the weather then set an alarm", "conv-2")

        assert not result.succeeded
        execution = result.execution_result
        assert execution.get_result("weather").status == SubtaskStatus.FAILED
        assert "ConnectionError" in execution.get_result("weather").error_message
        assert execution.get_result("alarm").status == SubtaskStatus.SKIPPED

    def test_failed_consensus_skips_execution(self, config, handlers):
        answer = ModelTransportError("unreachable", provider="fake", status_code=503)
        client = ScriptedClient(answer)
        orchestrator = MagicMock()
        pipeline = IntentPipeline(VotingService(config, clients={"solo": client}), orchestrator)

        result = pipeline.process("req-3", "hello", "conv-3")

        assert result.voting_round.consensus.failed
        assert result.execution_result is None
        assert not result.succeeded
        orchestrator.execute_subtasks.assert_not_called()

    def test_cyclic_plan_reported_as_planning_error(self, config, handlers):
        answer = ModelReply(
            intent_raw="loop",
            confidence_raw=0.7,
            subtasks_raw=[
                {"subtask_id": "a", "action": "set_alarm", "dependencies": ["b"]},
                {"subtask_id": "b", "action": "greet", "dependencies": ["a"]},
            ],
        )
        store = InMemorySessionStore()
        pipeline, _ = make_pipeline(config, answer, handlers, store)

        result = pipeline.process("req-4", "do things", "conv-4")

        assert result.execution_result is None
        assert "Cyclic dependency" in result.planning_error
        state = store.get("conv-4")
        assert state.voting_round_ids == [result.voting_round.round_id]
        assert state.execution_ids == []

    def test_malformed_dependencies_do_not_crash_the_turn(self, config, handlers):
        answer = ModelReply(
            intent_raw="greet",
            confidence_raw=0.9,
            subtasks_raw=[{"subtask_id": "hello", "action": "greet", "dependencies": 3}],
        )
        pipeline, _ = make_pipeline(config, answer, handlers)

        result = pipeline.process("req-8", "hi", "conv-8")

        assert result.planning_error is None
        assert result.succeeded
        assert result.execution_result.get_result("hello").status == SubtaskStatus.COMPLETED

    def test_session_state_is_linked(self, config, handlers):
        answer = ModelReply(intent_raw="greet", confidence_raw=0.9)
        store = InMemorySessionStore()
        pipeline, client = make_pipeline(config, answer, handlers, store, history_limit=2)

        first = pipeline.process("req-5", "hi", "conv-5", conversation_context={"locale": "en"})
        pipeline.process("req-6", "hello again", "conv-5")
        third = pipeline.process("req-7", "one more", "conv-5", conversation_context={"mood": "good"})

        state = store.get("conv-5")
        assert state.last_intent == "greet"
        assert state.history == ["hello again", "one more"]
        assert state.context == {"locale": "en", "mood": "good"}
        assert len(state.voting_round_ids) == 3
        assert state.execution_ids[0] == first.execution_result.execution_id
        assert state.execution_ids[-1] == third.execution_result.execution_id
        assert "hi | hello again" in client.prompts[-1]
        assert '"locale": "en"' in client.prompts[-1]


class TestBuildSubtasks:
    """Test planning a subtask batch from a consensus."""

    def test_fallback_uses_intent_and_entities(self):
        subtasks = build_subtasks(make_consensus("set_alarm", entities={"time": "07:00"}))

        assert len(subtasks) == 1
        assert subtasks[0].subtask_id == "subtask_1"
        assert subtasks[0].action == "set_alarm"
        assert subtasks[0].entities == {"time": "07:00"}

    def test_duplicate_ids_are_renamed(self):
        subtasks = build_subtasks(
            make_consensus(
                subtasks=[
                    {"subtask_id": "step", "action": "a"},
                    {"subtask_id": "step", "action": "b"},
                    {"subtask_id": "step", "action": "c"},
                ]
            )
        )

        assert [s.subtask_id for s in subtasks] == ["step", "step_2", "step_3"]

    def test_unknown_dependencies_dropped(self):
        subtasks = build_subtasks(
            make_consensus(
                subtasks=[
                    {"subtask_id": "a", "action": "x"},
                    {"subtask_id": "b", "action": "y", "dependencies": ["a", "ghost"]},
                ]
            )
        )

        assert subtasks[1].dependencies == {"a"}

    def test_renamed_duplicate_skips_taken_ids(self):
        subtasks = build_subtasks(
            make_consensus(
                subtasks=[
                    {"subtask_id": "a", "action": "x"},
                    {"subtask_id": "a", "action": "y"},
                    {"subtask_id": "a_2", "action": "z"},
                ]
            )
        )

        assert [s.subtask_id for s in subtasks] == ["a", "a_3", "a_2"]
