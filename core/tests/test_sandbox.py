"""
Tests for the sandboxed Python script host.

Covers the three failure kinds, state commit semantics, the static
validator and the instruction budget.
"""

import logging
import sys
import time

import pytest

from flowsim.script import (
    OutputKind,
    SandboxedPythonHost,
    ScriptCompileError,
    ScriptReturnShapeError,
    ScriptRuntimeError,
    compile_script,
)


@pytest.fixture
def host():
    return SandboxedPythonHost(max_instructions=5_000)


def script(body: str) -> str:
    """Wrap an indented body in a transform() definition."""
    lines = body.strip("\n").splitlines()
    return "def transform(input):\n" + "\n".join("    " + line for line in lines) + "\n"


class TestExecution:
    def test_returns_decoded_output(self, host):
        out = host.run(script('return {"doubled": input["n"] * 2}'), {"n": 21}, {})
        assert out.kind == OutputKind.ONE
        assert list(out) == [{"doubled": 42}]

    def test_input_is_also_a_global(self, host):
        src = "def transform(msg):\n    return {'same': msg == input}\n"
        assert list(host.run(src, {"a": 1}, {})) == [{"same": True}]

    def test_state_committed_on_success(self, host):
        state = {"count": 1}
        host.run(script('state["count"] = state["count"] + 1'), {}, state)
        assert state == {"count": 2}

    def test_state_untouched_on_failure(self, host):
        state = {"count": 1}
        src = script('state["count"] = 99\nraise ValueError("nope")')
        with pytest.raises(ScriptRuntimeError, match="nope"):
            host.run(src, {}, state)
        assert state == {"count": 1}

    def test_payload_not_mutated(self, host):
        payload = {"items": [1, 2]}
        host.run(script('input["items"].append(3)\nreturn input'), payload, {})
        assert payload == {"items": [1, 2]}

    def test_math_and_safe_builtins_available(self, host):
        src = script('return {"r": math.floor(2.7), "s": sorted([3, 1, 2]), "n": len("abc")}')
        assert list(host.run(src, {}, {})) == [{"r": 2, "s": [1, 2, 3], "n": 3}]

    def test_scripts_may_catch_their_own_errors(self, host):
        src = script(
            'try:\n    x = input["missing"]\nexcept KeyError:\n    x = 0\nreturn {"x": x}'
        )
        assert list(host.run(src, {}, {})) == [{"x": 0}]

    def test_print_goes_to_log(self, host, caplog):
        with caplog.at_level(logging.INFO, logger="flowsim.script"):
            host.run(script('print("hello", input["n"])'), {"n": 7}, {})
        assert "hello 7" in caplog.text

    def test_each_call_gets_a_fresh_namespace(self, host):
        src = "seen = []\n\ndef transform(input):\n    seen.append(1)\n    return {'n': len(seen)}\n"
        assert list(host.run(src, {}, {})) == [{"n": 1}]
        assert list(host.run(src, {}, {})) == [{"n": 1}]

    def test_compiled_code_is_cached(self):
        src = script("return None")
        assert compile_script(src) is compile_script(src)


class TestCompileErrors:
    def test_syntax_error(self, host):
        with pytest.raises(ScriptCompileError, match="Syntax error"):
            host.run("def transform(input)\n    return input\n", {}, {})

    def test_missing_transform(self, host):
        with pytest.raises(ScriptCompileError, match="transform"):
            host.run("def other(input):\n    return input\n", {}, {})

    def test_top_level_failure(self, host):
        with pytest.raises(ScriptCompileError, match="ZeroDivisionError"):
            host.run("x = 1 / 0\n\ndef transform(input):\n    return input\n", {}, {})

    def test_transform_rebound_to_non_function(self, host):
        with pytest.raises(ScriptCompileError, match="not a function"):
            host.run("def transform(input):\n    return input\n\ntransform = 3\n", {}, {})

    @pytest.mark.parametrize(
        "source, what",
        [
            ("import os\n", "import"),
            ("from os import path\n", "import"),
            ("class Foo:\n    pass\n", "class"),
            ("async def helper():\n    pass\n", "async"),
            ("x = 1\ndef f():\n    global x\n", "global"),
            ("y = ().__class__\n", "underscore"),
            ("y = input._private\n", "underscore"),
            ("y = __builtins__\n", "dunder"),
            ("try:\n    pass\nexcept:\n    pass\n", "bare except"),
            ("try:\n    pass\nfinally:\n    pass\n", "finally"),
            ("y = (n for n in ()).gi_frame\n", "introspection"),
            ("y = Exception.mro()\n", "introspection"),
            ("y = '{0.real}'.format(1)\n", "format"),
            ("y = '{a}'.format_map({})\n", "format"),
            ("input.x = 1\n", "attribute assignments"),
            ("y = 'x'.ljust\n", "called directly"),
        ],
    )
    def test_forbidden_constructs(self, host, source, what):
        src = source + "\ndef transform(input):\n    return input\n"
        with pytest.raises(ScriptCompileError, match=what):
            host.run(src, {}, {})

    def test_dangerous_builtins_absent(self, host):
        for call in ("open('/etc/passwd')", "eval('1')", "getattr(input, 'x')"):
            with pytest.raises(ScriptRuntimeError, match="NameError"):
                host.run(script(f"return {call}"), {}, {})

    def test_generator_frame_walk_rejected(self, host):
        src = (
            "holder = []\n"
            "\n"
            "def peek():\n"
            "    yield holder[0].gi_frame.f_back.f_back.f_globals\n"
            "\n"
            "def transform(input):\n"
            "    gen = peek()\n"
            "    holder.append(gen)\n"
            "    host_globals = next(gen)\n"
            '    return {"pid": host_globals["sys"].modules["os"].getpid()}\n'
        )
        with pytest.raises(ScriptCompileError, match="introspection"):
            host.run(src, {}, {})


class TestRuntimeErrors:
    def test_exception_in_transform(self, host):
        with pytest.raises(ScriptRuntimeError, match="KeyError"):
            host.run(script('return {"v": input["absent"]}'), {}, {})

    def test_infinite_loop_exhausts_budget(self, host):
        with pytest.raises(ScriptRuntimeError, match="budget"):
            host.run(script("while True:\n    pass"), {}, {})

    def test_budget_cannot_be_caught_by_script(self, host):
        src = script("try:\n    while True:\n        pass\nexcept Exception:\n    return {}")
        with pytest.raises(ScriptRuntimeError, match="budget"):
            host.run(src, {}, {})

    def test_huge_range_rejected(self, host):
        with pytest.raises(ScriptRuntimeError, match="range"):
            host.run(script("return {'n': sum(range(10 ** 9))}"), {}, {})

    def test_previous_trace_hook_restored(self, host):
        previous = sys.gettrace()
        host.run(script("return None"), {}, {})
        assert sys.gettrace() is previous
        with pytest.raises(ScriptRuntimeError):
            host.run(script("while True:\n    pass"), {}, {})
        assert sys.gettrace() is previous

    def test_budget_resets_between_calls(self):
        host = SandboxedPythonHost(max_instructions=200)
        src = script("total = 0\nfor i in range(50):\n    total += i\nreturn {'t': total}")
        for _ in range(5):
            assert list(host.run(src, {}, {})) == [{"t": 1225}]


class TestSizeLimits:
    def test_huge_power_fails_fast(self):
        host = SandboxedPythonHost(max_instructions=100, timeout_seconds=0.05)
        started = time.monotonic()
        with pytest.raises(ScriptRuntimeError, match="exceeds the limit"):
            host.run(script("x = 10 ** 10 ** 7\nreturn {'ok': True}"), {}, {})
        assert time.monotonic() - started < 1.0

    @pytest.mark.parametrize(
        "body",
        [
            'x = "x" * 10 ** 10',
            "x = [0] * 10 ** 9",
            "x = 2\nx **= 10 ** 8",
            "x = 1 << 10 ** 10",
            "x = pow(10, 10 ** 7)",
            "x = round(5, -10 ** 7)",
            'x = "ab"\nfor _ in range(40):\n    x = x + x',
            'x = "%10000000000d" % 1',
            'x = "%*d" % (10 ** 10, 1)',
            'x = f"{1:>10000000000}"',
            'x = "x".ljust(10 ** 10)',
            'x = ("a" * 100).replace("", "y" * 100000)',
            'x = "-".join(["abcdefghij"] * 200000)',
            "x = (1).to_bytes(10 ** 10, 'big')",
            "x = math.factorial(10 ** 6)",
            "x = math.prod([2 ** 60000] * 3)",
            "x = sum([[0] * 100000] * 20, [])",
        ],
    )
    def test_oversized_values_rejected(self, host, body):
        with pytest.raises(ScriptRuntimeError, match="exceeds the limit"):
            host.run(script(body + "\nreturn None"), {}, {})

    def test_ordinary_arithmetic_unaffected(self, host):
        src = script(
            'return {"p": 2 ** 10, "s": "ab" * 3, "l": [0] * 3, "f": f"{7:>4}",\n'
            '        "m": "%05d" % 42, "j": "-".join(["a", "b"]), "z": "7".zfill(3),\n'
            '        "r": "a.b".replace(".", "-"), "c": sum([[1], [2]], []),\n'
            '        "pm": pow(3, 4, 5), "fact": math.factorial(5), "mod": 7 % 3}'
        )
        assert list(host.run(src, {}, {})) == [
            {
                "p": 1024,
                "s": "ababab",
                "l": [0, 0, 0],
                "f": "   7",
                "m": "00042",
                "j": "a-b",
                "z": "007",
                "r": "a-b",
                "c": [1, 2],
                "pm": 1,
                "fact": 120,
                "mod": 1,
            }
        ]

    def test_augmented_assignment_updates_in_place(self, host):
        state = {"items": [1]}
        host.run(script('items = state["items"]\nitems += [input["n"]]'), {"n": 2}, state)
        assert state == {"items": [1, 2]}

    def test_augmented_subscript_evaluates_key_once(self, host):
        src = script(
            "calls = []\n"
            "def key():\n"
            "    calls.append(1)\n"
            '    return "n"\n'
            'counts = {"n": 1}\n'
            "counts[key()] += 5\n"
            "xs = [1, 2, 3]\n"
            "xs[1:] *= 2\n"
            'return {"calls": len(calls), "n": counts["n"], "xs": xs}'
        )
        assert list(host.run(src, {}, {})) == [{"calls": 1, "n": 6, "xs": [1, 2, 3, 2, 3]}]

    def test_iter_sentinel_needs_script_function(self, host):
        with pytest.raises(ScriptRuntimeError, match="sentinel"):
            host.run(script("return {'n': len(list(iter(int, 1)))}"), {}, {})

        src = script(
            "vals = [3, 2, 1]\n"
            "def pop():\n"
            "    return vals.pop()\n"
            "return {'got': list(iter(pop, 3))}"
        )
        assert list(host.run(src, {}, {})) == [{"got": [1, 2]}]


class TestReturnShape:
    def test_scalar_return(self, host):
        with pytest.raises(ScriptReturnShapeError):
            host.run(script("return 5"), {}, {})

    def test_list_of_scalars(self, host):
        with pytest.raises(ScriptReturnShapeError):
            host.run(script("return [1, 2]"), {}, {})

    def test_non_json_state_not_committed(self, host):
        state = {"ok": 1}
        with pytest.raises(ScriptReturnShapeError, match="state"):
            host.run(script('state["bad"] = {1, 2}'), {}, state)
        assert state == {"ok": 1}
