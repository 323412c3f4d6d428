"""
Lifecycle Controller - Start, pause and stop a simulation.

    stopped --start--> running --pause--> paused --start--> running
       ^                  |                  |
       +------stop--------+-------stop-------+

Stop is the only transition that resets runtime data. Every function
returns True when the flowchart's simulation state changed.
"""

import copy
import logging

from flowsim.graph.model import (
    Flowchart,
    NodeState,
    ProducerKind,
    SimulationState,
    TransformerKind,
)
from flowsim.runtime.scheduler import ReentrantStepError

logger = logging.getLogger(__name__)


def _guard(flowchart: Flowchart, action: str) -> None:
    if flowchart._in_step:
        raise ReentrantStepError(f"Cannot {action} while a step is executing")


def start(flowchart: Flowchart) -> bool:
    """Stopped/Paused -> Running without resetting anything."""
    _guard(flowchart, "start")
    if flowchart.simulation_state == SimulationState.RUNNING:
        return False
    previous = flowchart.simulation_state
    flowchart.simulation_state = SimulationState.RUNNING
    logger.info(
        f"Simulation started from {previous} at step {flowchart.current_step}",
        extra={"event": "simulation_started"},
    )
    return True


def pause(flowchart: Flowchart) -> bool:
    """Running -> Paused; any other state is left alone."""
    _guard(flowchart, "pause")
    if flowchart.simulation_state != SimulationState.RUNNING:
        return False
    flowchart.simulation_state = SimulationState.PAUSED
    logger.info(
        f"Simulation paused at step {flowchart.current_step}",
        extra={"event": "simulation_paused"},
    )
    return True


def stop(flowchart: Flowchart) -> bool:
    """
    Any state -> Stopped, resetting all runtime data.

    Clears in-flight messages and consumer backlogs, rewinds the step
    counter and producer counters, restores transformer globals from
    their initial snapshot and sets every node to idle. Idempotent.

    Returns:
        True if the simulation state changed (it was not already stopped)
    """
    _guard(flowchart, "stop")
    changed = flowchart.simulation_state != SimulationState.STOPPED

    flowchart.simulation_state = SimulationState.STOPPED
    flowchart.current_step = 0
    flowchart.clear_backlogs()
    for connection in flowchart.connections:
        connection.messages.clear()

    for node in flowchart.nodes.values():
        if isinstance(node.kind, ProducerKind):
            node.kind.messages_produced = 0
        elif isinstance(node.kind, TransformerKind):
            node.kind.globals = copy.deepcopy(node.kind.initial_globals)
        node.state = NodeState.idle()

    if changed:
        logger.info("Simulation stopped and reset", extra={"event": "simulation_stopped"})
    return changed
