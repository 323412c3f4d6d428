"""
Flowchart Model - Nodes, connections and in-flight messages.

A flowchart is a directed graph of typed nodes:
- producer: emits copies of a template message on a fixed cadence
- consumer: absorbs messages at a bounded rate (excess waits in a backlog)
- transformer: runs a user script on every arriving message

Connections own the messages travelling along them; a message's
``progress`` goes from 0 to 1 as the simulation advances.

The pydantic models double as the persisted document shape:
    {
        "nodes": {"<id>": {...}},
        "connections": [{"from": "<id>", "to": "<id>", "messages": [...]}],
        "simulation_state": "stopped",
        "current_step": 0
    }
The consumer backlog is engine-internal and never serialized.
"""

import copy
import uuid
from collections import deque
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

NodeId = str
MessageId = str
ConnectionId = int  # index into Flowchart.connections (creation order)


def new_id() -> str:
    """Generate an opaque unique identifier."""
    return uuid.uuid4().hex


class GraphValidationError(ValueError):
    """Raised when an edit would break a flowchart invariant."""


class SimulationState(StrEnum):
    """Lifecycle state of the whole simulation."""

    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


class NodeStatus(StrEnum):
    """Transient processing status of a node."""

    IDLE = "idle"
    PROCESSING = "processing"
    ERROR = "error"


class NodeState(BaseModel):
    """Node status plus the failure reason when status is ERROR."""

    status: NodeStatus = NodeStatus.IDLE
    reason: str | None = None

    @classmethod
    def idle(cls) -> "NodeState":
        return cls(status=NodeStatus.IDLE)

    @classmethod
    def processing(cls) -> "NodeState":
        return cls(status=NodeStatus.PROCESSING)

    @classmethod
    def error(cls, reason: str) -> "NodeState":
        return cls(status=NodeStatus.ERROR, reason=reason)

    @property
    def is_error(self) -> bool:
        return self.status == NodeStatus.ERROR


class ProducerKind(BaseModel):
    """Emits ``messages_per_cycle`` copies of ``template`` on every activation."""

    type: Literal["producer"] = "producer"
    template: Any = Field(default_factory=dict)
    start_step: int = Field(default=0, ge=0)
    messages_per_cycle: int = Field(default=1, ge=0)
    steps_between_cycles: int = Field(default=1, ge=1)
    messages_produced: int = Field(default=0, ge=0)

    def is_active(self, step: int) -> bool:
        """True when a production cycle falls on ``step``."""
        if step < self.start_step:
            return False
        return (step - self.start_step) % self.steps_between_cycles == 0


class ConsumerKind(BaseModel):
    """Absorbs up to ``consumption_rate`` messages per step."""

    type: Literal["consumer"] = "consumer"
    consumption_rate: int = Field(default=1, ge=0)


class TransformerKind(BaseModel):
    """Runs ``script`` on each arriving message.

    ``globals`` is the live script state; ``initial_globals`` is the
    snapshot restored on Stop.
    """

    type: Literal["transformer"] = "transformer"
    script: str = ""
    globals: dict[str, Any] = Field(default_factory=dict)
    initial_globals: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _unalias_globals(self) -> "TransformerKind":
        # Values shared with globals would let script writes leak into the snapshot
        self.initial_globals = copy.deepcopy(self.initial_globals)
        return self


NodeKind = Annotated[ProducerKind | ConsumerKind | TransformerKind, Field(discriminator="type")]


class Node(BaseModel):
    """A flowchart node. ``name`` doubles as the routing key."""

    id: NodeId = Field(default_factory=new_id)
    name: str
    position: tuple[float, float] = (0.0, 0.0)
    kind: NodeKind
    state: NodeState = Field(default_factory=NodeState.idle)

    @property
    def is_producer(self) -> bool:
        return isinstance(self.kind, ProducerKind)

    @property
    def is_consumer(self) -> bool:
        return isinstance(self.kind, ConsumerKind)

    @property
    def is_transformer(self) -> bool:
        return isinstance(self.kind, TransformerKind)


class Message(BaseModel):
    """A payload in flight along a connection."""

    id: MessageId = Field(default_factory=new_id)
    payload: Any = None
    progress: float = Field(default=0.0, ge=0.0, le=1.0)


class Connection(BaseModel):
    """Directed edge owning an ordered list of in-flight messages."""

    model_config = ConfigDict(populate_by_name=True)

    source: NodeId = Field(alias="from")
    target: NodeId = Field(alias="to")
    messages: list[Message] = Field(default_factory=list)


class Flowchart(BaseModel):
    """
    The simulated graph plus its runtime counters.

    Example:
        fc = Flowchart()
        src = fc.add_node(Node(name="Source", kind=ProducerKind(template={"n": 1})))
        dst = fc.add_node(Node(name="Sink", kind=ConsumerKind(consumption_rate=2)))
        fc.add_connection(src, dst)
    """

    nodes: dict[NodeId, Node] = Field(default_factory=dict)
    connections: list[Connection] = Field(default_factory=list)
    simulation_state: SimulationState = SimulationState.STOPPED
    current_step: int = Field(default=0, ge=0)

    _backlogs: dict[NodeId, deque[Message]] = PrivateAttr(default_factory=dict)
    _in_step: bool = PrivateAttr(default=False)
    _trace_id: str = PrivateAttr(default_factory=new_id)

    @model_validator(mode="after")
    def _check_references(self) -> "Flowchart":
        for key, node in self.nodes.items():
            if key != node.id:
                raise ValueError(f"Node keyed as {key!r} has id {node.id!r}")
        for index, conn in enumerate(self.connections):
            if conn.source not in self.nodes:
                raise ValueError(f"Connection {index} source {conn.source!r} does not exist")
            if conn.target not in self.nodes:
                raise ValueError(f"Connection {index} destination {conn.target!r} does not exist")
        return self

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    def add_node(self, node: Node) -> NodeId:
        """Add a node and return its id."""
        if node.id in self.nodes:
            raise GraphValidationError(f"Node {node.id} already exists")
        self.nodes[node.id] = node
        return node.id

    def add_connection(self, source: NodeId, target: NodeId) -> ConnectionId:
        """
        Connect two existing nodes.

        Consumers have no outputs and producers accept no inputs, so such
        edges are rejected here; the engine relies on that precondition.

        Returns:
            The new connection's id (its index)
        """
        if source not in self.nodes:
            raise GraphValidationError("Source node does not exist")
        if target not in self.nodes:
            raise GraphValidationError("Destination node does not exist")
        if self.nodes[source].is_consumer:
            raise GraphValidationError("Consumers cannot have outgoing connections")
        if self.nodes[target].is_producer:
            raise GraphValidationError("Producers cannot have incoming connections")

        self.connections.append(Connection(source=source, target=target))
        return len(self.connections) - 1

    def remove_node(self, node_id: NodeId) -> bool:
        """Remove a node with its connections and backlog. False if absent."""
        if self.nodes.pop(node_id, None) is None:
            return False
        self.connections = [
            c for c in self.connections if c.source != node_id and c.target != node_id
        ]
        self._backlogs.pop(node_id, None)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def outgoing(self, node_id: NodeId) -> list[ConnectionId]:
        """Ids of the node's outgoing connections in creation order."""
        return [i for i, c in enumerate(self.connections) if c.source == node_id]

    def find_node_by_name(self, name: str) -> Node | None:
        """First node (creation order) whose display name equals ``name``."""
        for node in self.nodes.values():
            if node.name == name:
                return node
        return None

    def backlog(self, node_id: NodeId) -> deque[Message]:
        """The engine-owned FIFO backlog of a consumer (created on demand)."""
        if node_id not in self._backlogs:
            self._backlogs[node_id] = deque()
        return self._backlogs[node_id]

    def backlog_size(self, node_id: NodeId) -> int:
        queue = self._backlogs.get(node_id)
        return len(queue) if queue else 0

    def clear_backlogs(self) -> None:
        self._backlogs.clear()

    def in_flight(self) -> int:
        """Total number of messages currently on connections."""
        return sum(len(c.messages) for c in self.connections)

    @property
    def trace_id(self) -> str:
        return self._trace_id

    # ------------------------------------------------------------------
    # Persistence shape
    # ------------------------------------------------------------------

    def to_document(self) -> dict[str, Any]:
        """Plain-dict persisted form (JSON-compatible)."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "Flowchart":
        return cls.model_validate(data)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def from_json(cls, text: str) -> "Flowchart":
        return cls.model_validate_json(text)
