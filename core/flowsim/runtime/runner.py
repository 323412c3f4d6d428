"""
Simulation Runner - Drives a flowchart the way an interactive host does.

Two policies:
- continuous: ``tick()`` advances only while Running; with
  ``halt_on_failure`` the first failing step pauses the simulation and
  records the failure for the host to display
- manual: ``step_once()`` advances a single step in any state and never
  halts
"""

import logging

from flowsim.config import EngineConfig
from flowsim.graph.model import Flowchart, NodeId, SimulationState
from flowsim.runtime import lifecycle
from flowsim.runtime.result import Failure, StepResult
from flowsim.runtime.scheduler import SimulationEngine
from flowsim.script import ScriptHost

logger = logging.getLogger(__name__)


class SimulationRunner:
    """
    Owns one flowchart and an engine, and applies the halt policy.

    Example:
        runner = SimulationRunner(build_example("decision_branch"))
        results = runner.run(max_steps=500)
        if runner.halted:
            print(runner.last_failure.reason)
    """

    def __init__(
        self,
        flowchart: Flowchart,
        config: EngineConfig | None = None,
        host: ScriptHost | None = None,
        halt_on_failure: bool | None = None,
    ):
        self.flowchart = flowchart
        self.config = config or EngineConfig()
        self.engine = SimulationEngine(self.config, host=host)
        self.halt_on_failure = (
            self.config.halt_on_failure if halt_on_failure is None else halt_on_failure
        )
        self.last_failure: Failure | None = None

    @property
    def error_node(self) -> NodeId | None:
        """Node whose failure halted the run, if any."""
        return self.last_failure.node_id if self.last_failure else None

    @property
    def halted(self) -> bool:
        return self.last_failure is not None

    @property
    def state(self) -> SimulationState:
        return self.flowchart.simulation_state

    # Lifecycle -----------------------------------------------------------

    def start(self) -> bool:
        return lifecycle.start(self.flowchart)

    def pause(self) -> bool:
        return lifecycle.pause(self.flowchart)

    def stop(self) -> bool:
        self.last_failure = None
        return lifecycle.stop(self.flowchart)

    # Stepping ------------------------------------------------------------

    def tick(self) -> StepResult | None:
        """
        Advance one step if the simulation is Running.

        Returns:
            The step result, or None when not Running
        """
        if self.flowchart.simulation_state != SimulationState.RUNNING:
            return None

        result = self.engine.step(self.flowchart)
        if result.failures and self.halt_on_failure:
            failure = result.failures[0]
            self.last_failure = failure
            lifecycle.pause(self.flowchart)
            logger.error(
                f"Simulation halted at step {result.step}: {failure.reason}",
                extra={
                    "event": "simulation_halted",
                    "node_id": failure.node_id,
                    "error_kind": str(failure.kind),
                },
            )
        return result

    def step_once(self) -> StepResult:
        """Advance exactly one step regardless of state; failures never halt."""
        result = self.engine.step(self.flowchart)
        for failure in result.failures:
            logger.warning(
                f"Step {result.step}: {failure.kind} on {failure.node_id}: {failure.reason}",
                extra={"event": "manual_step_failure", "node_id": failure.node_id},
            )
        return result

    def run(self, max_steps: int) -> list[StepResult]:
        """
        Start the simulation and tick until halted or ``max_steps`` ran.

        Returns:
            The results of every executed step
        """
        self.start()
        results: list[StepResult] = []
        for _ in range(max_steps):
            result = self.tick()
            if result is None:
                break
            results.append(result)
        logger.info(
            f"Run finished after {len(results)} step(s) in state {self.state}",
            extra={"event": "run_finished"},
        )
        return results
