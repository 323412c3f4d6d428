"""
Script Sandbox - Run user transform scripts against one message.

Scripts are written in a restricted Python dialect:

    def transform(input):
        state["count"] = state.get("count", 0) + 1
        return {"n": state["count"], "__targets": ["Even Bin"]}

Security & isolation:
- AST whitelist: no imports, no global/nonlocal, no classes, no async
  code, no finally blocks, no bare except, no underscore attributes or
  dunder names, no frame/code introspection attributes, no str.format()
  and no attribute assignment
- Builtins are a fixed whitelist of pure functions and containers;
  there is no open(), eval(), exec(), getattr() or __import__()
- Each invocation runs in a fresh namespace, so nothing leaks between
  invocations or between nodes; ``state`` is a private copy that is
  committed back only when the invocation succeeds
- Execution is bounded by a line-event budget enforced through a trace
  hook (and optionally a wall-clock deadline). Operations that can build
  a huge value in one C call are rewritten into size-checked helpers
  (see ``flowsim.script.guards``)

The host interface is ``ScriptHost.run(script, payload, state)``; the
scheduler depends only on that protocol.
"""

import ast
import builtins
import copy
import functools
import logging
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from types import CodeType
from typing import Any, Protocol

from flowsim.config import DEFAULT_SCRIPT_MAX_INSTRUCTIONS
from flowsim.script.errors import (
    ScriptBudgetExceeded,
    ScriptCompileError,
    ScriptReturnShapeError,
    ScriptRuntimeError,
)
from flowsim.script.guards import guard_builtins, guard_tree, math_namespace
from flowsim.script.output import TransformOutput, json_problem

logger = logging.getLogger(__name__)

SCRIPT_FILENAME = "<transform>"
ENTRY_POINT = "transform"


class ScriptHost(Protocol):
    """Interface between the scheduler and a guest-script interpreter."""

    def run(self, script: str, payload: Any, state: dict[str, Any]) -> TransformOutput:
        """
        Execute ``transform(payload)``.

        ``state`` is the node's persistent globals; implementations mutate
        it in place only when the call succeeds.

        Raises:
            ScriptCompileError, ScriptRuntimeError, ScriptReturnShapeError
        """
        ...


# ---------------------------------------------------------------------------
# Static validation
# ---------------------------------------------------------------------------

_FORBIDDEN_NODES: dict[type, str] = {
    ast.Import: "import statements",
    ast.ImportFrom: "import statements",
    ast.Global: "global declarations",
    ast.Nonlocal: "nonlocal declarations",
    ast.ClassDef: "class definitions",
    ast.AsyncFunctionDef: "async functions",
    ast.Await: "await expressions",
    ast.AsyncFor: "async for loops",
    ast.AsyncWith: "async with blocks",
}

# Frame, code and traceback attributes lead from any generator or
# exception back to the host's globals
_INTROSPECTION_PREFIXES = ("gi_", "cr_", "ag_", "f_", "tb_", "co_")
_INTROSPECTION_ATTRIBUTES = frozenset({"mro"})

# str.format and format_map resolve "{0.attr}" fields without going
# through the validator
_FORMAT_METHODS = frozenset({"format", "format_map"})


class _SandboxValidator(ast.NodeVisitor):
    """Rejects constructs that could escape the sandbox or the budget."""

    def _reject(self, node: ast.AST, what: str) -> None:
        line = getattr(node, "lineno", "?")
        raise ScriptCompileError(f"line {line}: {what} are not allowed in transform scripts")

    def generic_visit(self, node: ast.AST) -> None:
        reason = _FORBIDDEN_NODES.get(type(node))
        if reason:
            self._reject(node, reason)
        super().generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        attr = node.attr
        if attr.startswith("_"):
            self._reject(node, "underscore attributes")
        if attr.startswith(_INTROSPECTION_PREFIXES) or attr in _INTROSPECTION_ATTRIBUTES:
            self._reject(node, "introspection attributes")
        if attr in _FORMAT_METHODS:
            self._reject(node, "str.format() calls")
        if not isinstance(node.ctx, ast.Load):
            self._reject(node, "attribute assignments")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("__"):
            self._reject(node, "dunder names")
        self.generic_visit(node)

    def _check_try(self, node: ast.Try) -> None:
        # finally/except-all bodies would keep running after the budget
        # hook has fired and unset itself
        if node.finalbody:
            self._reject(node, "finally blocks")
        for handler in node.handlers:
            if handler.type is None:
                self._reject(handler, "bare except clauses")
        self.generic_visit(node)

    def visit_Try(self, node: ast.Try) -> None:
        self._check_try(node)

    def visit_TryStar(self, node: ast.AST) -> None:
        self._check_try(node)  # type: ignore[arg-type]


@functools.lru_cache(maxsize=256)
def compile_script(script: str) -> CodeType:
    """
    Parse, validate and compile a transform script.

    Results are cached per script text.

    Raises:
        ScriptCompileError: syntax error or forbidden construct
    """
    try:
        tree = ast.parse(script, filename=SCRIPT_FILENAME, mode="exec")
    except SyntaxError as e:
        raise ScriptCompileError(f"Syntax error on line {e.lineno}: {e.msg}") from None

    _SandboxValidator().visit(tree)

    defines_entry = any(
        isinstance(stmt, ast.FunctionDef) and stmt.name == ENTRY_POINT for stmt in tree.body
    )
    if not defines_entry:
        raise ScriptCompileError(f"Script must define a function named '{ENTRY_POINT}'")

    tree = guard_tree(tree)
    logger.debug(f"Compiled transform script ({len(script)} chars)")
    return compile(tree, SCRIPT_FILENAME, "exec")


# ---------------------------------------------------------------------------
# Runtime environment
# ---------------------------------------------------------------------------

_SAFE_BUILTIN_NAMES = (
    "abs",
    "all",
    "any",
    "bool",
    "dict",
    "divmod",
    "enumerate",
    "filter",
    "float",
    "int",
    "isinstance",
    "len",
    "list",
    "map",
    "max",
    "min",
    "next",
    "repr",
    "reversed",
    "set",
    "sorted",
    "str",
    "tuple",
    "zip",
    "chr",
    "ord",
    "frozenset",
    # Exception types scripts may raise or catch
    "Exception",
    "ArithmeticError",
    "AssertionError",
    "IndexError",
    "KeyError",
    "LookupError",
    "RuntimeError",
    "StopIteration",
    "TypeError",
    "ValueError",
    "ZeroDivisionError",
)


SAFE_BUILTINS: dict[str, Any] = {name: getattr(builtins, name) for name in _SAFE_BUILTIN_NAMES}

_script_logger = logging.getLogger("flowsim.script")


def _script_print(*args: Any, sep: str = " ") -> None:
    """print() replacement: script output goes to the engine log."""
    _script_logger.info(sep.join(str(a) for a in args), extra={"event": "script_print"})


def _bounded_range(limit: int):
    def range_(*args: int) -> range:
        r = range(*args)
        if len(r) > limit:
            raise ValueError(f"range of {len(r)} items exceeds the script budget of {limit}")
        return r

    return range_


def _script_iter(obj: Any, *sentinel: Any) -> Iterator[Any]:
    """iter() replacement; a sentinel loop over a host callable never yields to the budget."""
    if sentinel:
        code = getattr(obj, "__code__", None)
        if code is None or code.co_filename != SCRIPT_FILENAME:
            raise TypeError("iter() with a sentinel needs a function defined in the script")
    return iter(obj, *sentinel)


class _Budget:
    """Trace hook counting line events of script frames."""

    def __init__(self, max_instructions: int, timeout_seconds: float | None):
        self.remaining = max_instructions
        self.max_instructions = max_instructions
        self.deadline = time.monotonic() + timeout_seconds if timeout_seconds else None

    def trace_calls(self, frame, event, arg):
        if frame.f_code.co_filename != SCRIPT_FILENAME:
            return None
        return self.trace_lines

    def trace_lines(self, frame, event, arg):
        if event == "line":
            self.remaining -= 1
            if self.remaining < 0:
                raise ScriptBudgetExceeded(
                    f"Script exceeded its budget of {self.max_instructions} instructions"
                )
            if self.deadline is not None and time.monotonic() > self.deadline:
                raise ScriptBudgetExceeded("Script exceeded its time budget")
        return self.trace_lines


@contextmanager
def _traced(budget: _Budget) -> Iterator[None]:
    previous = sys.gettrace()
    sys.settrace(budget.trace_calls)
    try:
        yield
    finally:
        sys.settrace(previous)


class SandboxedPythonHost:
    """
    ScriptHost running the restricted Python dialect in-process.

    Example:
        host = SandboxedPythonHost(max_instructions=10_000)
        state = {"count": 0}
        out = host.run(script, {"value": 1}, state)
        for obj in out:
            ...
    """

    def __init__(
        self,
        max_instructions: int = DEFAULT_SCRIPT_MAX_INSTRUCTIONS,
        timeout_seconds: float | None = None,
    ):
        self.max_instructions = max_instructions
        self.timeout_seconds = timeout_seconds

    def _namespace(self, payload: Any, state: dict[str, Any]) -> dict[str, Any]:
        env_builtins = dict(SAFE_BUILTINS)
        env_builtins.update(guard_builtins())
        env_builtins["print"] = _script_print
        env_builtins["range"] = _bounded_range(self.max_instructions)
        env_builtins["iter"] = _script_iter
        return {
            "__builtins__": env_builtins,
            "__name__": "transform_script",
            "math": math_namespace(),
            "input": payload,
            "state": state,
        }

    def run(self, script: str, payload: Any, state: dict[str, Any]) -> TransformOutput:
        code = compile_script(script)

        working_state = copy.deepcopy(state)
        working_input = copy.deepcopy(payload)
        namespace = self._namespace(working_input, working_state)
        budget = _Budget(self.max_instructions, self.timeout_seconds)

        with _traced(budget):
            try:
                exec(code, namespace)
            except ScriptBudgetExceeded as e:
                raise ScriptRuntimeError(str(e)) from None
            except Exception as e:
                raise ScriptCompileError(
                    f"Failed to execute script: {type(e).__name__}: {e}"
                ) from e

            transform = namespace.get(ENTRY_POINT)
            if not callable(transform):
                raise ScriptCompileError(f"'{ENTRY_POINT}' is not a function")

            try:
                result = transform(working_input)
            except ScriptBudgetExceeded as e:
                raise ScriptRuntimeError(str(e)) from None
            except Exception as e:
                raise ScriptRuntimeError(f"{type(e).__name__}: {e}") from e

        output = TransformOutput.decode(result)

        new_state = namespace.get("state")
        if not isinstance(new_state, dict):
            raise ScriptReturnShapeError(
                f"state must remain an object, got {type(new_state).__name__}"
            )
        problem = json_problem(new_state, "state")
        if problem:
            raise ScriptReturnShapeError(f"state holds invalid data: {problem}")

        state.clear()
        state.update(new_state)
        return output
