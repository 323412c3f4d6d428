"""Per-step records returned by the scheduler."""

from dataclasses import dataclass, field
from enum import StrEnum

from flowsim.graph.model import MessageId, NodeId


class ErrorKind(StrEnum):
    """Failure categories reported per delivery; none aborts a step."""

    SCRIPT_COMPILE = "script_compile"
    SCRIPT_RUNTIME = "script_runtime"
    SCRIPT_RETURN_SHAPE = "script_return_shape"
    UNKNOWN_NODE = "unknown_node"


@dataclass(frozen=True)
class Delivery:
    """A message handed to (or pushed towards) a node."""

    node_id: NodeId
    message_id: MessageId


@dataclass(frozen=True)
class Failure:
    """A failed delivery."""

    node_id: NodeId
    kind: ErrorKind
    reason: str


@dataclass
class StepResult:
    """Outcome of one SimulationEngine.step() call."""

    step: int  # index of the step that was executed
    delivered: list[Delivery] = field(default_factory=list)  # Phase B arrivals
    failures: list[Failure] = field(default_factory=list)
    consumed: list[Delivery] = field(default_factory=list)  # absorbed by consumers
    emitted: list[Delivery] = field(default_factory=list)  # pushed onto connections

    @property
    def ok(self) -> bool:
        """True when no delivery failed."""
        return not self.failures

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "delivered": len(self.delivered),
            "consumed": len(self.consumed),
            "emitted": len(self.emitted),
            "failures": [
                {"node_id": f.node_id, "kind": str(f.kind), "reason": f.reason}
                for f in self.failures
            ],
        }
