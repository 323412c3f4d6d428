"""
Step Scheduler - Advance a flowchart by one discrete time step.

Each step runs three phases in a fixed order:

    A. transit:    every in-flight message moves ``transit_rate`` along its
                   connection; messages reaching 1.0 are queued for delivery
    B. delivery:   queued messages are handed to their destination handler
                   in queue order, then every consumer drains its backlog
    C. generation: active producers emit into their outgoing connections

``current_step`` is incremented afterwards. The phases run whatever the
simulation state is, so manual stepping works while stopped or paused;
the halt policy belongs to the caller (see runtime.runner).
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from flowsim.config import EngineConfig
from flowsim.graph.model import Flowchart, Message, NodeId, NodeStatus
from flowsim.observability import clear_trace_context, get_trace_context, set_trace_context
from flowsim.runtime.handlers import NodeHandler, StepContext, default_handlers
from flowsim.runtime.result import Delivery, ErrorKind, StepResult
from flowsim.script import SandboxedPythonHost, ScriptHost

logger = logging.getLogger(__name__)

# Absorbs float drift so that 100 advances of 0.01 arrive on the 100th step
ARRIVAL_TOLERANCE = 1e-9


class ReentrantStepError(RuntimeError):
    """A step or lifecycle transition was requested while a step is running."""


@contextmanager
def exclusive_step(flowchart: Flowchart) -> Iterator[None]:
    """Mark ``flowchart`` as mid-step; nested entry raises ReentrantStepError."""
    if flowchart._in_step:
        raise ReentrantStepError("Flowchart is already executing a step")
    flowchart._in_step = True
    try:
        yield
    finally:
        flowchart._in_step = False


class SimulationEngine:
    """
    Executes simulation steps.

    Example:
        engine = SimulationEngine(EngineConfig(transit_rate=0.25))
        fc = build_example("basic_linear")
        for _ in range(10):
            result = engine.step(fc)
            if not result.ok:
                ...
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        host: ScriptHost | None = None,
        handlers: dict[str, NodeHandler] | None = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Engine configuration (defaults to EngineConfig())
            host: Script host for transformers (defaults to the Python sandbox)
            handlers: Handler registry keyed by node kind tag
        """
        self.config = config or EngineConfig()
        self.host = host or SandboxedPythonHost(
            max_instructions=self.config.script_max_instructions,
            timeout_seconds=self.config.script_timeout_seconds,
        )
        self.handlers = handlers or default_handlers()

    def step(self, flowchart: Flowchart) -> StepResult:
        """
        Run phases A, B and C once and advance ``current_step``.

        Per-delivery failures are collected in the result; they never
        abort the step.

        Raises:
            ReentrantStepError: called while a step of ``flowchart`` runs
        """
        with exclusive_step(flowchart):
            result = StepResult(step=flowchart.current_step)
            ctx = StepContext(flowchart, self.config, self.host, result)
            previous = get_trace_context()
            set_trace_context(
                flowchart_id=flowchart.trace_id, step=flowchart.current_step, node_id=None
            )
            try:
                arrivals = self._advance_transit(flowchart)
                self._deliver(ctx, arrivals)
                self._generate(ctx)

                flowchart.current_step += 1

                logger.debug(
                    f"Step {result.step} complete: {len(result.delivered)} delivered, "
                    f"{len(result.consumed)} consumed, {len(result.emitted)} emitted, "
                    f"{len(result.failures)} failed",
                    extra={"event": "step_complete", "step": result.step},
                )
            finally:
                clear_trace_context()
                set_trace_context(**previous)
            return result

    # ------------------------------------------------------------------
    # Phase A
    # ------------------------------------------------------------------

    def _advance_transit(self, flowchart: Flowchart) -> list[tuple[NodeId, Message]]:
        arrivals: list[tuple[NodeId, Message]] = []
        rate = self.config.transit_rate
        for connection in flowchart.connections:
            remaining: list[Message] = []
            for message in connection.messages:
                progress = message.progress + rate
                if progress >= 1.0 - ARRIVAL_TOLERANCE:
                    message.progress = 1.0
                    arrivals.append((connection.target, message))
                else:
                    message.progress = progress
                    remaining.append(message)
            connection.messages = remaining
        return arrivals

    # ------------------------------------------------------------------
    # Phase B
    # ------------------------------------------------------------------

    def _deliver(self, ctx: StepContext, arrivals: list[tuple[NodeId, Message]]) -> None:
        flowchart = ctx.flowchart

        for node in flowchart.nodes.values():
            if not node.is_producer and node.state.status == NodeStatus.PROCESSING:
                node.state.status = NodeStatus.IDLE

        for node_id, message in arrivals:
            node = flowchart.nodes.get(node_id)
            if node is None:
                ctx.fail(node_id, ErrorKind.UNKNOWN_NODE, f"Destination node {node_id} not found")
                continue
            ctx.result.delivered.append(Delivery(node_id, message.id))
            self.handlers[node.kind.type].deliver(ctx, node, message)

        consumer = self.handlers["consumer"]
        for node in list(flowchart.nodes.values()):
            if node.is_consumer:
                consumer.drain(ctx, node)  # type: ignore[attr-defined]

    # ------------------------------------------------------------------
    # Phase C
    # ------------------------------------------------------------------

    def _generate(self, ctx: StepContext) -> None:
        producer = self.handlers["producer"]
        for node in list(ctx.flowchart.nodes.values()):
            if node.is_producer:
                producer.generate(ctx, node)  # type: ignore[attr-defined]
