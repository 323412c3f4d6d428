"""Runtime: step scheduler, node handlers, lifecycle and host driver."""

from flowsim.runtime.lifecycle import pause, start, stop
from flowsim.runtime.result import Delivery, ErrorKind, Failure, StepResult
from flowsim.runtime.runner import SimulationRunner
from flowsim.runtime.scheduler import ReentrantStepError, SimulationEngine

__all__ = [
    "SimulationEngine",
    "SimulationRunner",
    "ReentrantStepError",
    "StepResult",
    "Delivery",
    "Failure",
    "ErrorKind",
    "start",
    "pause",
    "stop",
]
