"""Script host: sandboxed transform scripts and their decoded outputs."""

from flowsim.script.errors import (
    ScriptCompileError,
    ScriptError,
    ScriptReturnShapeError,
    ScriptRuntimeError,
)
from flowsim.script.output import OutputKind, TransformOutput
from flowsim.script.sandbox import SandboxedPythonHost, ScriptHost, compile_script

__all__ = [
    # Host
    "ScriptHost",
    "SandboxedPythonHost",
    "compile_script",
    # Output
    "TransformOutput",
    "OutputKind",
    # Errors
    "ScriptError",
    "ScriptCompileError",
    "ScriptRuntimeError",
    "ScriptReturnShapeError",
]
