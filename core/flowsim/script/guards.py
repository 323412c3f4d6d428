"""
Size guards for work the line budget cannot see.

A single expression such as ``10 ** 10 ** 7`` or ``"x" * 10 ** 10`` runs
inside one C call, so the trace hook never gets a chance to stop it.
``guard_tree`` rewrites the operators and methods that can build huge
values into calls to the helpers below, which check operand sizes before
doing the work:

    x = a ** b          ->  x = __guard_pow__(a, b)
    total += n          ->  total = __guard_iadd__(total, n)
    s.ljust(w)          ->  __guard_method__(s, "ljust", w)
    f"{v:>{w}}"         ->  f"{__guard_format__(v, f'>{w}', -1)}"

Helper names start with a double underscore, which the validator rejects
in script source, so scripts can neither call nor shadow them.
"""

import ast
import math
import operator
import re
import types
from collections.abc import Callable
from typing import Any

from flowsim.script.errors import ScriptCompileError

MAX_INT_BITS = 100_000  # ~30,000 decimal digits
MAX_SEQUENCE_LENGTH = 1_000_000

_SEQUENCES = (str, bytes, bytearray, list, tuple)
_LOG2_10 = math.log2(10)


def _limit_error(what: str, size: float, limit: int) -> ValueError:
    return ValueError(f"{what} of {int(size)} exceeds the limit of {limit}")


def _check_bits(bits: float, what: str) -> None:
    if bits > MAX_INT_BITS:
        raise _limit_error(f"{what} (bits)", bits, MAX_INT_BITS)


def _check_length(length: Any, what: str) -> None:
    if isinstance(length, int) and length > MAX_SEQUENCE_LENGTH:
        raise _limit_error(what, length, MAX_SEQUENCE_LENGTH)


# ---------------------------------------------------------------------------
# Operator checks
# ---------------------------------------------------------------------------


def check_pow(base: Any, exp: Any) -> None:
    if isinstance(base, int) and isinstance(exp, int) and exp > 0 and abs(base) > 1:
        _check_bits(exp * math.log2(abs(base)), "power result")


def check_mult(a: Any, b: Any) -> None:
    if isinstance(a, int) and isinstance(b, int):
        _check_bits(a.bit_length() + b.bit_length(), "product")
        return
    for seq, count in ((a, b), (b, a)):
        if isinstance(seq, _SEQUENCES) and isinstance(count, int):
            _check_length(len(seq) * count, "repeated sequence length")


def check_add(a: Any, b: Any) -> None:
    if isinstance(a, _SEQUENCES) and isinstance(b, _SEQUENCES):
        _check_length(len(a) + len(b), "concatenated length")


def check_lshift(a: Any, b: Any) -> None:
    if isinstance(a, int) and isinstance(b, int) and a and b > 0:
        _check_bits(a.bit_length() + b, "shift result")


# "%" conversion specifier: optional key, flags, width, precision
_PERCENT_SPEC = re.compile(r"%(?:\([^)]*\))?[-#0 +]*(\*|\d*)(?:\.(\*|\d*))?")
_DIGITS = re.compile(r"\d+")


def _check_width(digits: str) -> None:
    # int() refuses very long digit strings, and those are over the limit anyway
    width = int(digits) if len(digits) <= 18 else MAX_SEQUENCE_LENGTH + 1
    _check_length(width, "format width")


def check_mod(a: Any, b: Any) -> None:
    if isinstance(a, (bytes, bytearray)):
        a = a.decode("latin-1")
    if not isinstance(a, str):
        return
    starred = False
    for match in _PERCENT_SPEC.finditer(a):
        for part in match.groups():
            if part == "*":
                starred = True
            elif part:
                _check_width(part)
    if starred:
        for value in b if isinstance(b, tuple) else (b,):
            _check_length(value, "format width")


def _guarded(check: Callable[[Any, Any], None], op: Callable[[Any, Any], Any]):
    def guard(a, b):
        check(a, b)
        return op(a, b)

    return guard


_BINOP_CHECKS: dict[type, tuple[str, Callable[[Any, Any], None]]] = {
    ast.Pow: ("pow", check_pow),
    ast.Mult: ("mul", check_mult),
    ast.Add: ("add", check_add),
    ast.LShift: ("lshift", check_lshift),
    ast.Mod: ("mod", check_mod),
}
_BINARY = {
    ast.Pow: operator.pow,
    ast.Mult: operator.mul,
    ast.Add: operator.add,
    ast.LShift: operator.lshift,
    ast.Mod: operator.mod,
}
_INPLACE = {
    ast.Pow: operator.ipow,
    ast.Mult: operator.imul,
    ast.Add: operator.iadd,
    ast.LShift: operator.ilshift,
    ast.Mod: operator.imod,
}


# ---------------------------------------------------------------------------
# Guarded builtins and methods
# ---------------------------------------------------------------------------


def safe_pow(base, exp, mod=None):
    """pow() replacement; the three-argument form is always bounded."""
    if mod is None:
        check_pow(base, exp)
    return pow(base, exp, mod)


def safe_round(number, ndigits=None):
    """round() replacement; rounding an int to -n digits computes 10 ** n."""
    if isinstance(number, int) and isinstance(ndigits, int) and ndigits < 0:
        _check_bits(-ndigits * _LOG2_10, "rounding scale")
    return round(number, ndigits)


def safe_sum(iterable, /, start=0):
    """sum() replacement; non-numeric accumulation goes through check_add."""
    if isinstance(start, (int, float, complex)):
        return sum(iterable, start)
    if isinstance(start, (str, bytes, bytearray)):
        raise TypeError("sum() can't sum strings [use ''.join(seq) instead]")
    total = start
    for item in iterable:
        check_add(total, item)
        total = total + item
    return total


def safe_format(value: Any, spec: str, conversion: int = -1) -> str:
    """Apply an f-string replacement field whose format spec is checked first."""
    if conversion == ord("r"):
        value = repr(value)
    elif conversion == ord("s"):
        value = str(value)
    elif conversion == ord("a"):
        value = ascii(value)
    for digits in _DIGITS.findall(spec):
        _check_width(digits)
    return format(value, spec)


def _argument(args: tuple, kwargs: dict, index: int, name: str, default: Any = None) -> Any:
    if len(args) > index:
        return args[index]
    return kwargs.get(name, default)


def call_method(obj, name, /, *args, **kwargs):
    """Call ``obj.<name>(...)`` for a method whose result size is set by its arguments."""
    method = getattr(obj, name)
    if name in ("ljust", "rjust", "center", "zfill"):
        _check_length(_argument(args, kwargs, 0, "width", 0), f"{name}() width")
    elif name == "expandtabs" and isinstance(obj, _SEQUENCES):
        tabsize = _argument(args, kwargs, 0, "tabsize", 8)
        if isinstance(tabsize, int):
            tab = "\t" if isinstance(obj, str) else b"\t"
            _check_length(len(obj) + obj.count(tab) * tabsize, "expandtabs() result")
    elif name == "join" and args:
        items = list(args[0])
        size = len(obj) * max(len(items) - 1, 0)
        size += sum(len(item) for item in items if isinstance(item, _SEQUENCES))
        _check_length(size, "join() result")
        args = (items, *args[1:])
    elif name == "replace" and len(args) >= 2 and isinstance(obj, _SEQUENCES):
        old, new = args[0], args[1]
        if isinstance(old, _SEQUENCES) and isinstance(new, _SEQUENCES):
            hits = obj.count(old) if old else len(obj) + 1
            count = _argument(args, kwargs, 2, "count", -1)
            if isinstance(count, int) and count >= 0:
                hits = min(hits, count)
            _check_length(len(obj) + hits * (len(new) - len(old)), "replace() result")
    elif name == "to_bytes":
        _check_length(_argument(args, kwargs, 0, "length", 1), "to_bytes() length")
    return method(*args, **kwargs)


SIZED_METHODS = frozenset(
    {"ljust", "rjust", "center", "zfill", "expandtabs", "join", "replace", "to_bytes"}
)


def _lgamma_bits(n: int) -> float:
    return math.lgamma(n + 1) / math.log(2)


def _factorial(n):
    if isinstance(n, int) and n > 1:
        _check_bits(_lgamma_bits(n), "factorial result")
    return math.factorial(n)


def _comb(n, k):
    if isinstance(n, int) and isinstance(k, int) and 0 <= k <= n:
        _check_bits(_lgamma_bits(n) - _lgamma_bits(k) - _lgamma_bits(n - k), "comb() result")
    return math.comb(n, k)


def _perm(n, k=None):
    if isinstance(n, int) and n > 1 and (k is None or (isinstance(k, int) and 0 <= k <= n)):
        rest = 0 if k is None else n - k
        _check_bits(_lgamma_bits(n) - _lgamma_bits(rest), "perm() result")
    return math.perm(n, k)


def _prod(iterable, /, *, start=1):
    total = start
    for item in iterable:
        check_mult(total, item)
        total = total * item
    return total


def _lcm(*integers):
    bits = sum(abs(i).bit_length() for i in integers if isinstance(i, int))
    _check_bits(bits, "lcm() result")
    return math.lcm(*integers)


def math_namespace() -> types.SimpleNamespace:
    """A fresh ``math`` stand-in whose big-integer functions are bounded."""
    namespace = {name: getattr(math, name) for name in dir(math) if not name.startswith("_")}
    namespace.update(factorial=_factorial, comb=_comb, perm=_perm, prod=_prod, lcm=_lcm)
    return types.SimpleNamespace(**namespace)


def guard_builtins() -> dict[str, Any]:
    """Builtins entries that ``guard_tree`` output and scripts call into."""
    helpers: dict[str, Any] = {
        "pow": safe_pow,
        "round": safe_round,
        "sum": safe_sum,
        "__guard_format__": safe_format,
        "__guard_method__": call_method,
    }
    for op_type, (name, check) in _BINOP_CHECKS.items():
        helpers[f"__guard_{name}__"] = _guarded(check, _BINARY[op_type])
        helpers[f"__guard_i{name}__"] = _guarded(check, _INPLACE[op_type])
    return helpers


# ---------------------------------------------------------------------------
# AST rewrite
# ---------------------------------------------------------------------------

_HOISTED_OBJECT = "__guard_object__"
_HOISTED_KEY = "__guard_key__"


def _call(helper: str, *args: ast.expr, keywords: list[ast.keyword] | None = None) -> ast.Call:
    return ast.Call(
        func=ast.Name(id=helper, ctx=ast.Load()), args=list(args), keywords=keywords or []
    )


def _name(id_: str, ctx: ast.expr_context) -> ast.Name:
    return ast.Name(id=id_, ctx=ctx)


class _SizeGuard(ast.NodeTransformer):
    def visit_BinOp(self, node: ast.BinOp) -> ast.AST:
        self.generic_visit(node)
        entry = _BINOP_CHECKS.get(type(node.op))
        if entry is None:
            return node
        return ast.copy_location(_call(f"__guard_{entry[0]}__", node.left, node.right), node)

    def visit_AugAssign(self, node: ast.AugAssign) -> ast.AST | list[ast.stmt]:
        self.generic_visit(node)
        entry = _BINOP_CHECKS.get(type(node.op))
        if entry is None:
            return node
        helper = f"__guard_i{entry[0]}__"
        target = node.target

        if isinstance(target, ast.Name):
            update = ast.Assign(
                targets=[target], value=_call(helper, _name(target.id, ast.Load()), node.value)
            )
            return ast.copy_location(update, node)

        if not isinstance(target, ast.Subscript):
            return node

        # a[k] op= v evaluates the container and key once
        obj_store = _name(_HOISTED_OBJECT, ast.Store())
        if isinstance(target.slice, ast.Slice):
            hoist = ast.Assign(targets=[obj_store], value=target.value)
            key: ast.expr = target.slice
        else:
            key_store = _name(_HOISTED_KEY, ast.Store())
            hoist = ast.Assign(
                targets=[ast.Tuple(elts=[obj_store, key_store], ctx=ast.Store())],
                value=ast.Tuple(elts=[target.value, target.slice], ctx=ast.Load()),
            )
            key = _name(_HOISTED_KEY, ast.Load())

        obj = _name(_HOISTED_OBJECT, ast.Load())
        current = ast.Subscript(value=obj, slice=key, ctx=ast.Load())
        store = ast.Subscript(value=obj, slice=key, ctx=ast.Store())
        update = ast.Assign(targets=[store], value=_call(helper, current, node.value))
        return [ast.copy_location(hoist, node), ast.copy_location(update, node)]

    def visit_FormattedValue(self, node: ast.FormattedValue) -> ast.AST:
        self.generic_visit(node)
        if node.format_spec is None:
            return node
        call = _call(
            "__guard_format__", node.value, node.format_spec, ast.Constant(value=node.conversion)
        )
        return ast.copy_location(
            ast.FormattedValue(value=call, conversion=-1, format_spec=None), node
        )

    def visit_Call(self, node: ast.Call) -> ast.AST:
        func = node.func
        if not (isinstance(func, ast.Attribute) and func.attr in SIZED_METHODS):
            self.generic_visit(node)
            return node
        obj = self.visit(func.value)
        args = [self.visit(arg) for arg in node.args]
        keywords = [self.visit(keyword) for keyword in node.keywords]
        method = ast.Constant(value=func.attr)
        call = _call("__guard_method__", obj, method, *args, keywords=keywords)
        return ast.copy_location(call, node)

    def visit_Attribute(self, node: ast.Attribute) -> ast.AST:
        if node.attr in SIZED_METHODS:
            raise ScriptCompileError(
                f"line {node.lineno}: '{node.attr}' must be called directly in transform scripts"
            )
        self.generic_visit(node)
        return node


def guard_tree(tree: ast.Module) -> ast.Module:
    """Rewrite size-sensitive operations in a validated module into guarded calls."""
    tree = _SizeGuard().visit(tree)
    return ast.fix_missing_locations(tree)
