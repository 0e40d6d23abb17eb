"""
Unit tests for the intentmoe command-line interface.
"""

import json

import pytest
from click.testing import CliRunner

from intentmoe import __version__
from intentmoe.cli import cli


@pytest.fixture
def runner():
    return CliRunner()


def write_json(path, data):
    path.write_text(json.dumps(data))
    return str(path)


class TestCliBasics:
    """Test global options and show-config."""

    def test_help(self, runner):
        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "plan" in result.output
        assert "consensus" in result.output

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_show_config_from_file(self, runner, tmp_path):
        config_path = write_json(
            tmp_path / "config.json", {"orchestrator": {"max_parallelism": 7}}
        )

        result = runner.invoke(cli, ["--config", config_path, "show-config"])

        assert result.exit_code == 0
        assert json.loads(result.output)["orchestrator"]["max_parallelism"] == 7

    def test_invalid_config_file(self, runner, tmp_path):
        config_path = write_json(tmp_path / "config.json", {"voting": {"max_debate_rounds": 0}})

        result = runner.invoke(cli, ["--config", config_path, "show-config"])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestPlanCommand:
    """Test the plan command."""

    def test_valid_plan(self, runner, tmp_path):
        path = write_json(
            tmp_path / "subtasks.json",
            {
                "subtasks": [
                    {"subtask_id": "alarm", "action": "set_alarm", "dependencies": ["weather"]},
                    {"subtask_id": "weather", "action": "get_weather"},
                ]
            },
        )

        result = runner.invoke(cli, ["plan", path])

        assert result.exit_code == 0
        output = json.loads(result.output)
        assert output["valid"] is True
        assert output["order"] == ["weather", "alarm"]
        assert output["roots"] == ["weather"]

    def test_cyclic_plan(self, runner, tmp_path):
        path = write_json(
            tmp_path / "subtasks.json",
            [
                {"subtask_id": "a", "action": "x", "dependencies": ["b"]},
                {"subtask_id": "b", "action": "y", "dependencies": ["a"]},
            ],
        )

        result = runner.invoke(cli, ["plan", path])

        assert result.exit_code == 1
        output = json.loads(result.output)
        assert output["valid"] is False
        assert output["cycle"][0] == output["cycle"][-1]

    def test_unknown_dependency(self, runner, tmp_path):
        path = write_json(
            tmp_path / "subtasks.json",
            [{"subtask_id": "a", "action": "x", "dependencies": ["ghost"]}],
        )

        result = runner.invoke(cli, ["plan", path])

        assert result.exit_code == 1
        assert json.loads(result.output)["subtask_id"] == "a"

    def test_malformed_file(self, runner, tmp_path):
        path = tmp_path / "subtasks.json"
        path.write_text('{"subtasks": "not a list"}')

        result = runner.invoke(cli, ["plan", str(path)])

        assert result.exit_code == 1
        assert "must contain a list of objects" in result.output


class TestConsensusCommand:
    """Test the consensus command."""

    @pytest.fixture
    def votes_path(self, tmp_path):
        return write_json(
            tmp_path / "votes.json",
            {
                "votes": [
                    {"model_id": "claude", "intent": "set_alarm", "confidence": 0.9},
                    {"model_id": "gpt", "intent": "set_alarm", "confidence": "0.8"},
                    {"participant_id": "gemini", "intent": "set_timer", "confidence": 0.6},
                ]
            },
        )

    def test_default_algorithm(self, runner, votes_path):
        result = runner.invoke(cli, ["consensus", votes_path])

        assert result.exit_code == 0
        output = json.loads(result.output)
        assert output["final_intent"] == "set_alarm"
        assert output["agreement_level"] == "majority"
        assert output["total_votes"] == 3

    def test_algorithm_option(self, runner, votes_path):
        result = runner.invoke(cli, ["consensus", votes_path, "--algorithm", "plurality"])

        assert result.exit_code == 0
        assert json.loads(result.output)["consensus_method"] == "plurality"

    def test_unknown_algorithm_rejected(self, runner, votes_path):
        result = runner.invoke(cli, ["consensus", votes_path, "-a", "coin-flip"])

        assert result.exit_code == 2

    def test_negative_weight_rejected(self, runner, tmp_path):
        path = write_json(
            tmp_path / "votes.json",
            [{"model_id": "m", "intent": "x", "confidence": 0.5, "weight": -1}],
        )

        result = runner.invoke(cli, ["consensus", path])

        assert result.exit_code == 1
        assert "Invalid vote" in result.output

    def test_no_valid_votes(self, runner, tmp_path):
        path = write_json(tmp_path / "votes.json", [{"model_id": "m", "intent": "", "confidence": 0.5}])

        result = runner.invoke(cli, ["consensus", path])

        assert result.exit_code == 0
        assert json.loads(result.output)["agreement_level"] == "failed"
