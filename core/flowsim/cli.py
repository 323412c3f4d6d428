"""
Command-line interface for flowsim.

Usage:
    flowsim examples                      List built-in example flowcharts
    flowsim example decision_branch -o fc.json
    flowsim run fc.json --steps 500       Run continuously, halting on failure
    flowsim run fc.json --steps 5 --manual
    flowsim validate fc.json
"""

import json
import sys
from dataclasses import replace
from pathlib import Path

import click
from pydantic import ValidationError

from flowsim.config import EngineConfig, get_log_format, get_log_level
from flowsim.graph.examples import build_example, list_examples
from flowsim.graph.model import Flowchart, NodeStatus
from flowsim.observability import configure_logging
from flowsim.runtime.runner import SimulationRunner
from flowsim.script import ScriptCompileError, compile_script


def setup_logging(verbose: bool = False, debug: bool = False) -> None:
    """Configure logging for execution visibility."""
    if debug:
        level = "DEBUG"
    elif verbose:
        level = get_log_level()
    else:
        level = "WARNING"
    configure_logging(level=level, format=get_log_format())


def _load_flowchart(path: Path) -> Flowchart:
    try:
        return Flowchart.from_json(path.read_text(encoding="utf-8"))
    except ValidationError as e:
        raise click.ClickException(f"{path} is not a valid flowchart:\n{e}") from e


def _summary(fc: Flowchart) -> dict:
    nodes = {}
    for node in fc.nodes.values():
        entry: dict = {"name": node.name, "type": node.kind.type, "status": str(node.state.status)}
        if node.state.status == NodeStatus.ERROR:
            entry["reason"] = node.state.reason
        if node.is_producer:
            entry["messages_produced"] = node.kind.messages_produced
        elif node.is_consumer:
            entry["backlog"] = fc.backlog_size(node.id)
        else:
            entry["globals"] = node.kind.globals
        nodes[node.id] = entry
    return {
        "simulation_state": str(fc.simulation_state),
        "current_step": fc.current_step,
        "in_flight": fc.in_flight(),
        "nodes": nodes,
    }


@click.group()
@click.version_option(version="0.1.0")
def cli():
    """flowsim - discrete-time flowchart dataflow simulator."""
    pass


@cli.command()
def examples():
    """List built-in example flowcharts."""
    for info in list_examples():
        click.echo(f"{info.key:<18} {info.title}")
        click.echo(f"{'':<18} {info.description}")


@cli.command()
@click.argument("name")
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Write to file")
def example(name, output):
    """Dump a built-in example flowchart as JSON."""
    try:
        fc = build_example(name)
    except KeyError as e:
        raise click.ClickException(str(e.args[0])) from e

    text = fc.to_json()
    if output:
        output.write_text(text + "\n", encoding="utf-8")
        click.echo(f"Wrote {name} to {output}")
    else:
        click.echo(text)


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--steps", "-n", type=int, default=100, show_default=True, help="Steps to execute")
@click.option("--manual", is_flag=True, help="Step manually; failures never halt the run")
@click.option("--transit-rate", type=float, default=None, help="Progress added per step")
@click.option(
    "--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Save final flowchart"
)
@click.option("--verbose", "-v", is_flag=True, help="Show execution details")
@click.option("--debug", is_flag=True, help="Show debug logging")
def run(file, steps, manual, transit_rate, output, verbose, debug):
    """Simulate a flowchart file and print a JSON summary."""
    setup_logging(verbose=verbose, debug=debug)

    fc = _load_flowchart(file)
    try:
        config = EngineConfig.from_file()
        if transit_rate is not None:
            config = replace(config, transit_rate=transit_rate)
    except ValueError as e:
        raise click.ClickException(f"Invalid engine configuration: {e}") from e

    runner = SimulationRunner(fc, config=config)
    if manual:
        results = [runner.step_once() for _ in range(steps)]
    else:
        results = runner.run(max_steps=steps)

    output_data = _summary(fc)
    output_data["steps_executed"] = len(results)
    output_data["failures"] = [f for r in results for f in r.to_dict()["failures"]]
    if runner.halted:
        output_data["halted"] = {
            "node_id": runner.error_node,
            "kind": str(runner.last_failure.kind),
            "reason": runner.last_failure.reason,
        }

    if output:
        output.write_text(fc.to_json() + "\n", encoding="utf-8")

    click.echo(json.dumps(output_data, indent=2, default=str))
    sys.exit(1 if runner.halted else 0)


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(file):
    """Check that a flowchart file loads and its scripts compile."""
    fc = _load_flowchart(file)

    errors = []
    for node in fc.nodes.values():
        if not node.is_transformer:
            continue
        try:
            compile_script(node.kind.script)
        except ScriptCompileError as e:
            errors.append(f"{node.name} ({node.id}): {e}")

    if errors:
        click.echo("Script errors:", err=True)
        for err in errors:
            click.echo(f"  - {err}", err=True)
        sys.exit(1)

    click.echo(f"OK: {len(fc.nodes)} node(s), {len(fc.connections)} connection(s)")


def main():
    cli()


if __name__ == "__main__":
    main()
