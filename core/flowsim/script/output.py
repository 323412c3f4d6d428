"""Decoded transform() return values.

A script may return None, one object, or a list of objects. The raw value
is validated once, right after execution, and carried downstream as a
``TransformOutput`` so routing never re-inspects Python types.
"""

import math
from collections.abc import Iterator
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from flowsim.script.errors import ScriptReturnShapeError


class OutputKind(StrEnum):
    """Shape of a transform() result."""

    NONE = "none"  # No output messages
    ONE = "one"  # A single object
    MANY = "many"  # A list of objects (fan-out)


MAX_JSON_ITEMS = 1_000_000


def json_problem(value: Any, path: str = "$", max_items: int = MAX_JSON_ITEMS) -> str | None:
    """
    Describe why ``value`` is not a JSON value, or return None if it is.

    Accepts None, bool, int, finite float, str, list and dict with str keys.
    Cycles are rejected, and so are values holding more than ``max_items``
    items once shared containers are counted at every place they appear.
    """
    return _JsonCheck(max_items).problem(value, path)


class _JsonCheck:
    def __init__(self, max_items: int):
        self.max_items = max_items
        self.remaining = max_items
        self.active: set[int] = set()

    def problem(self, value: Any, path: str) -> str | None:
        self.remaining -= 1
        if self.remaining < 0:
            return f"{path} is past the limit of {self.max_items} items"

        if value is None or isinstance(value, (bool, int, str)):
            return None
        if isinstance(value, float):
            return None if math.isfinite(value) else f"{path} is a non-finite number"

        if not isinstance(value, (list, dict)):
            return f"{path} has unsupported type {type(value).__name__}"

        if id(value) in self.active:
            return f"{path} contains a reference cycle"
        self.active.add(id(value))
        try:
            if isinstance(value, list):
                for index, item in enumerate(value):
                    problem = self.problem(item, f"{path}[{index}]")
                    if problem:
                        return problem
            else:
                for key, item in value.items():
                    if not isinstance(key, str):
                        return f"{path} has non-string key {key!r}"
                    problem = self.problem(item, f"{path}.{key}")
                    if problem:
                        return problem
        finally:
            self.active.discard(id(value))
        return None


@dataclass(frozen=True)
class TransformOutput:
    """Validated result of one transform() call."""

    kind: OutputKind
    values: tuple[dict[str, Any], ...] = ()

    @classmethod
    def none(cls) -> "TransformOutput":
        return cls(OutputKind.NONE)

    @classmethod
    def one(cls, value: dict[str, Any]) -> "TransformOutput":
        return cls(OutputKind.ONE, (value,))

    @classmethod
    def many(cls, values: list[dict[str, Any]]) -> "TransformOutput":
        return cls(OutputKind.MANY, tuple(values))

    @classmethod
    def decode(cls, value: Any) -> "TransformOutput":
        """
        Validate a raw return value.

        Raises:
            ScriptReturnShapeError: value is not None, a dict, or a list of
                dicts, or contains non-JSON data
        """
        if value is None:
            return cls.none()

        if isinstance(value, dict):
            problem = json_problem(value)
            if problem:
                raise ScriptReturnShapeError(f"transform() returned invalid data: {problem}")
            return cls.one(value)

        if isinstance(value, list):
            for index, item in enumerate(value):
                if not isinstance(item, dict):
                    raise ScriptReturnShapeError(
                        f"transform() returned a list whose item {index} is "
                        f"{type(item).__name__}, expected an object"
                    )
            problem = json_problem(value)
            if problem:
                raise ScriptReturnShapeError(f"transform() returned invalid data: {problem}")
            return cls.many(value)

        raise ScriptReturnShapeError(
            f"transform() must return None, an object or a list of objects, "
            f"got {type(value).__name__}"
        )

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)
