"""
Command-line interface for IntentMoE.

Commands:
- show-config: Print the effective configuration
- plan: Validate a subtask batch and print its dependency order
- consensus: Replay a set of votes through the consensus engine
"""

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click

from intentmoe import __version__
from intentmoe.config import Config, config as default_config
from intentmoe.errors import ConfigurationError, CyclicDependencyError, InvalidSubtaskError
from intentmoe.logging import initialize_logging
from intentmoe.orchestration import DependencyGraph, subtasks_from_descriptors
from intentmoe.voting import ConsensusEngine, Vote, available_algorithms
from intentmoe.voting.parsing import coerce_confidence


def _load_json(path: str, key: str) -> List[Dict[str, Any]]:
    """Read a JSON list, or an object holding the list under ``key``."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise click.ClickException(f"Cannot read {path}: {e}")

    if isinstance(data, dict):
        data = data.get(key)
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise click.ClickException(f"{path} must contain a list of objects (or {{'{key}': [...]}})")
    return data


def _votes_from_dicts(items: List[Dict[str, Any]]) -> List[Vote]:
    votes = []
    for n, item in enumerate(items, start=1):
        model_id = str(item.get("model_id") or item.get("participant_id") or f"model_{n}")
        votes.append(
            Vote(
                vote_id=str(item.get("vote_id") or f"vote_cli_{model_id}_{n}"),
                model_id=model_id,
                model_weight=float(item.get("model_weight", item.get("weight", 1.0))),
                intent=str(item.get("intent") or ""),
                confidence=coerce_confidence(item.get("confidence")),
                entities=dict(item.get("entities") or {}),
                subtasks=[dict(s) for s in item.get("subtasks") or [] if isinstance(s, dict)],
                reasoning=str(item.get("reasoning") or ""),
            )
        )
    return votes


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON configuration file (defaults to environment settings)",
)
@click.option("--verbose", "-v", is_flag=True, help="Log to stderr at DEBUG level")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], verbose: bool) -> None:
    """IntentMoE - multi-model intent voting and subtask orchestration."""
    ctx.ensure_object(dict)
    snapshot = default_config
    if config_path is not None:
        try:
            snapshot = Config.from_json_file(config_path)
        except ConfigurationError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    ctx.obj["config"] = snapshot

    # stdout carries JSON results; console logs only with --verbose
    if verbose:
        initialize_logging(snapshot.logging, level="DEBUG", enable_console_logging=True)
    else:
        initialize_logging(snapshot.logging, enable_console_logging=False)


@cli.command("show-config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Print the effective configuration as JSON."""
    snapshot: Config = ctx.obj["config"]
    click.echo(json.dumps(snapshot.model_dump(mode="json"), indent=2))


@cli.command()
@click.argument("subtasks_json", type=click.Path(exists=True, dir_okay=False))
def plan(subtasks_json: str) -> None:
    """Validate a subtask batch and print a dependency-respecting order.

    Examples:

        intentmoe plan subtasks.json
    """
    subtasks = subtasks_from_descriptors(_load_json(subtasks_json, "subtasks"))
    try:
        graph = DependencyGraph(subtasks)
    except CyclicDependencyError as e:
        click.echo(json.dumps({"valid": False, "error": str(e), "cycle": e.cycle}, indent=2))
        sys.exit(1)
    except InvalidSubtaskError as e:
        click.echo(
            json.dumps({"valid": False, "error": str(e), "subtask_id": e.subtask_id}, indent=2)
        )
        sys.exit(1)

    click.echo(
        json.dumps(
            {
                "valid": True,
                "total_tasks": len(graph),
                "order": graph.topological_order(),
                "roots": [graph.subtasks[i].subtask_id for i in graph.roots()],
            },
            indent=2,
        )
    )


@cli.command()
@click.argument("votes_json", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--algorithm",
    "-a",
    type=click.Choice(available_algorithms()),
    default=None,
    help="Consensus algorithm (defaults to the configured one)",
)
@click.pass_context
def consensus(ctx: click.Context, votes_json: str, algorithm: Optional[str]) -> None:
    """Compute the consensus of a set of votes.

    Examples:

        intentmoe consensus votes.json --algorithm borda-count
    """
    snapshot: Config = ctx.obj["config"]
    try:
        votes = _votes_from_dicts(_load_json(votes_json, "votes"))
    except ValueError as e:
        raise click.ClickException(f"Invalid vote in {votes_json}: {e}")

    engine = ConsensusEngine(snapshot.consensus)
    result = engine.compute(votes, algorithm=algorithm)
    click.echo(json.dumps(result.to_dict(), indent=2))


if __name__ == "__main__":
    cli()
