"""
flowsim - discrete-time dataflow simulation for flowcharts.

Producers emit messages on a cadence, transformers run sandboxed Python
scripts that reshape and route them, and consumers absorb them at a
bounded rate. The engine advances the whole graph one step at a time.

Example:
    from flowsim import SimulationRunner, build_example

    runner = SimulationRunner(build_example("decision_branch"))
    runner.run(max_steps=200)
"""

from flowsim.config import EngineConfig
from flowsim.graph import (
    Connection,
    ConsumerKind,
    Flowchart,
    GraphValidationError,
    Message,
    Node,
    NodeState,
    NodeStatus,
    ProducerKind,
    SimulationState,
    TransformerKind,
    build_example,
    list_examples,
)
from flowsim.runtime import (
    Delivery,
    ErrorKind,
    Failure,
    ReentrantStepError,
    SimulationEngine,
    SimulationRunner,
    StepResult,
    pause,
    start,
    stop,
)
from flowsim.script import SandboxedPythonHost, ScriptHost, TransformOutput

__version__ = "0.1.0"

__all__ = [
    # Model
    "Flowchart",
    "Node",
    "NodeState",
    "NodeStatus",
    "ProducerKind",
    "ConsumerKind",
    "TransformerKind",
    "Message",
    "Connection",
    "SimulationState",
    "GraphValidationError",
    # Engine
    "EngineConfig",
    "SimulationEngine",
    "SimulationRunner",
    "StepResult",
    "Delivery",
    "Failure",
    "ErrorKind",
    "ReentrantStepError",
    "start",
    "pause",
    "stop",
    # Scripts
    "ScriptHost",
    "SandboxedPythonHost",
    "TransformOutput",
    # Examples
    "build_example",
    "list_examples",
]
