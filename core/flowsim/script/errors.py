"""Script host failure types.

Each maps to one per-delivery failure kind reported by the scheduler;
none of them aborts a simulation step.
"""


class ScriptError(Exception):
    """Base class for transform script failures."""


class ScriptCompileError(ScriptError):
    """The script does not parse, uses a forbidden construct, or defines no transform()."""


class ScriptRuntimeError(ScriptError):
    """transform() raised, or the execution budget ran out."""


class ScriptReturnShapeError(ScriptError):
    """transform() returned something other than None, a dict, or a list of dicts."""


class ScriptBudgetExceeded(BaseException):
    """
    Raised from the trace hook when a script runs out of budget.

    Derives from BaseException so ``except Exception`` inside a script
    cannot swallow it.
    """
