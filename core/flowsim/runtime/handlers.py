"""
Node Handlers - Per-kind behaviour invoked by the step scheduler.

Each node kind has one handler:
- ProducerHandler: generates template clones in Phase C
- ConsumerHandler: buffers arrivals, drains up to its rate after Phase B
- TransformerHandler: runs the node script and routes its outputs

Handlers never raise for per-delivery problems; they record a Failure on
the step result and set the node's state so the step can continue.
"""

import copy
import logging
import uuid
from typing import Any, Protocol

from flowsim.config import EngineConfig
from flowsim.graph import routing
from flowsim.graph.model import (
    ConnectionId,
    Flowchart,
    Message,
    Node,
    NodeId,
    NodeState,
    ProducerKind,
    TransformerKind,
)
from flowsim.observability import get_trace_context, set_trace_context
from flowsim.runtime.result import Delivery, ErrorKind, Failure, StepResult
from flowsim.script import (
    ScriptCompileError,
    ScriptError,
    ScriptHost,
    ScriptReturnShapeError,
    ScriptRuntimeError,
)

logger = logging.getLogger(__name__)

# Namespace for engine-minted message ids (uuid5 of "<step>:<sequence>")
MESSAGE_NAMESPACE = uuid.UUID("6f1c2d0e-4b7a-5e39-9c21-8d4f0a6b3e17")

_SCRIPT_ERROR_KINDS: dict[type[ScriptError], ErrorKind] = {
    ScriptCompileError: ErrorKind.SCRIPT_COMPILE,
    ScriptRuntimeError: ErrorKind.SCRIPT_RUNTIME,
    ScriptReturnShapeError: ErrorKind.SCRIPT_RETURN_SHAPE,
}


def error_kind_for(error: ScriptError) -> ErrorKind:
    """Map a script failure to its reported ErrorKind."""
    for error_type, kind in _SCRIPT_ERROR_KINDS.items():
        if isinstance(error, error_type):
            return kind
    return ErrorKind.SCRIPT_RUNTIME


class StepContext:
    """
    Mutable state shared by the handlers during one step.

    Owns the per-step message sequence so that ids depend only on the step
    index and the order in which messages are created.
    """

    def __init__(
        self,
        flowchart: Flowchart,
        config: EngineConfig,
        host: ScriptHost,
        result: StepResult,
    ):
        self.flowchart = flowchart
        self.config = config
        self.host = host
        self.result = result
        self.step = flowchart.current_step
        self._sequence = 0

    def mint_message(self, payload: Any) -> Message:
        """Create a fresh message (progress 0) with a deterministic id."""
        message_id = uuid.uuid5(MESSAGE_NAMESPACE, f"{self.step}:{self._sequence}").hex
        self._sequence += 1
        return Message(id=message_id, payload=payload, progress=0.0)

    def push(self, conn_id: ConnectionId, payload: Any) -> Message:
        """Queue a deep copy of ``payload`` on a connection."""
        connection = self.flowchart.connections[conn_id]
        message = self.mint_message(copy.deepcopy(payload))
        connection.messages.append(message)
        self.result.emitted.append(Delivery(connection.target, message.id))
        return message

    def fail(self, node_id: NodeId, kind: ErrorKind, reason: str) -> None:
        """Record a failed delivery and put the node (if any) into Error."""
        self.result.failures.append(Failure(node_id, kind, reason))
        node = self.flowchart.nodes.get(node_id)
        if node is not None:
            node.state = NodeState.error(reason)
        logger.warning(
            f"Delivery to {node_id} failed ({kind}): {reason}",
            extra={"event": "delivery_failed", "node_id": node_id, "error_kind": str(kind)},
        )


class NodeHandler(Protocol):
    """Per-kind delivery behaviour."""

    def deliver(self, ctx: StepContext, node: Node, message: Message) -> None: ...


class ProducerHandler:
    """Producers emit on a cadence and accept no input."""

    def deliver(self, ctx: StepContext, node: Node, message: Message) -> None:
        # add_connection forbids edges into producers; documents can still carry them
        logger.debug(
            f"Producer '{node.name}' dropped incoming message {message.id}",
            extra={"event": "producer_input_dropped", "node_id": node.id},
        )

    def generate(self, ctx: StepContext, node: Node) -> int:
        """
        Run Phase C for one producer.

        Returns:
            Number of template clones produced this step (before fan-out)
        """
        kind = node.kind
        if not isinstance(kind, ProducerKind):
            raise TypeError(f"Node {node.name!r} is not a producer")

        if not kind.is_active(ctx.step):
            node.state = NodeState.idle()
            return 0

        if ctx.config.producer_mode == "total":
            count = 1 if kind.messages_produced < kind.messages_per_cycle else 0
        else:
            count = kind.messages_per_cycle

        if count == 0:
            node.state = NodeState.idle()
            return 0

        for conn_id in ctx.flowchart.outgoing(node.id):
            for _ in range(count):
                ctx.push(conn_id, kind.template)

        kind.messages_produced += count
        node.state = NodeState.processing()
        logger.debug(
            f"Producer '{node.name}' emitted {count} message(s)",
            extra={"event": "producer_emitted", "node_id": node.id},
        )
        return count


class ConsumerHandler:
    """Consumers buffer arrivals and absorb up to ``consumption_rate`` per step."""

    def deliver(self, ctx: StepContext, node: Node, message: Message) -> None:
        ctx.flowchart.backlog(node.id).append(message)

    def drain(self, ctx: StepContext, node: Node) -> int:
        """Absorb ``min(rate, backlog)`` messages in FIFO order."""
        backlog = ctx.flowchart.backlog(node.id)
        take = min(node.kind.consumption_rate, len(backlog))
        for _ in range(take):
            message = backlog.popleft()
            ctx.result.consumed.append(Delivery(node.id, message.id))

        if take:
            node.state = NodeState.processing()
        elif not node.state.is_error:
            node.state = NodeState.idle()

        if backlog:
            logger.debug(
                f"Consumer '{node.name}' backlog at {len(backlog)}",
                extra={"event": "consumer_backlog", "node_id": node.id},
            )
        return take


class TransformerHandler:
    """Transformers run their script on each message and route the output."""

    def deliver(self, ctx: StepContext, node: Node, message: Message) -> None:
        kind = node.kind
        if not isinstance(kind, TransformerKind):
            raise TypeError(f"Node {node.name!r} is not a transformer")

        context = get_trace_context()
        set_trace_context(node_id=node.id)
        try:
            try:
                output = ctx.host.run(kind.script, message.payload, kind.globals)
            except ScriptError as e:
                ctx.fail(node.id, error_kind_for(e), str(e))
                return

            node.state = NodeState.processing()
            for value in output:
                payload, targets = routing.extract_targets(value)
                for conn_id in routing.resolve(ctx.flowchart, node.id, targets):
                    ctx.push(conn_id, payload)
        finally:
            set_trace_context(node_id=context.get("node_id"))


def default_handlers() -> dict[str, NodeHandler]:
    """Handler registry keyed by the node kind's ``type`` tag."""
    return {
        "producer": ProducerHandler(),
        "consumer": ConsumerHandler(),
        "transformer": TransformerHandler(),
    }
