"""Graph structures: flowchart model, routing and built-in examples."""

from flowsim.graph.examples import build_example, list_examples
from flowsim.graph.model import (
    Connection,
    ConnectionId,
    ConsumerKind,
    Flowchart,
    GraphValidationError,
    Message,
    MessageId,
    Node,
    NodeId,
    NodeKind,
    NodeState,
    NodeStatus,
    ProducerKind,
    SimulationState,
    TransformerKind,
)
from flowsim.graph.routing import TARGETS_FIELD, extract_targets, resolve

__all__ = [
    # Model
    "Flowchart",
    "Node",
    "NodeId",
    "NodeKind",
    "NodeState",
    "NodeStatus",
    "ProducerKind",
    "ConsumerKind",
    "TransformerKind",
    "Message",
    "MessageId",
    "Connection",
    "ConnectionId",
    "SimulationState",
    "GraphValidationError",
    # Routing
    "TARGETS_FIELD",
    "extract_targets",
    "resolve",
    # Examples
    "build_example",
    "list_examples",
]
