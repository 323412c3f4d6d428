"""
Built-in example flowcharts.

Curated graphs ranging from a three-node chain to a small ETL pipeline,
used by the CLI (``flowsim example NAME``) and as test fixtures.
"""

from collections.abc import Callable
from dataclasses import dataclass

from flowsim.graph.model import (
    ConsumerKind,
    Flowchart,
    Node,
    ProducerKind,
    TransformerKind,
)

PASS_THROUGH = '''\
def transform(input):
    # Forward the message unchanged
    return input
'''

PARITY_ROUTER = '''\
def transform(input):
    state["count"] = state["count"] + 1
    n = state["count"]
    out = {"n": n}
    if n % 2 == 0:
        out["__targets"] = ["Even Bin"]
    else:
        out["__targets"] = ["Odd Bin"]
    return out
'''

NORMALIZE_RECORD = '''\
def transform(input):
    rec = input["record"]
    return {"record": {"id": rec["id"], "raw": False, "seq": input.get("seq", 0)}}
'''

LOAD_WITH_RETRY = '''\
def transform(input):
    out = {"record": input["record"]}
    # every other record goes to the retry queue first
    if state["retries"] % 2 == 0:
        out["__targets"] = ["Retry Queue"]
    else:
        out["__targets"] = ["Warehouse"]
    state["retries"] = state["retries"] + 1
    return out
'''


@dataclass(frozen=True)
class ExampleInfo:
    """Catalog entry for a built-in example."""

    key: str
    title: str
    description: str
    build: Callable[[], Flowchart]


def _transformer(name: str, position: tuple[float, float], script: str, **globals_) -> Node:
    return Node(
        name=name,
        position=position,
        kind=TransformerKind(script=script, globals=dict(globals_), initial_globals=dict(globals_)),
    )


def build_basic_linear() -> Flowchart:
    """Producer -> pass-through Transformer -> Consumer."""
    fc = Flowchart()
    prod = fc.add_node(
        Node(
            name="Producer",
            position=(100.0, 200.0),
            kind=ProducerKind(template={"value": 1}, messages_per_cycle=1, steps_between_cycles=1),
        )
    )
    trans = fc.add_node(_transformer("Transformer", (350.0, 200.0), PASS_THROUGH))
    cons = fc.add_node(
        Node(name="Consumer", position=(600.0, 200.0), kind=ConsumerKind(consumption_rate=1))
    )
    fc.add_connection(prod, trans)
    fc.add_connection(trans, cons)
    return fc


def build_decision_branch() -> Flowchart:
    """Counter-driven parity router sending even counts to one bin and odd to another."""
    fc = Flowchart()
    prod = fc.add_node(
        Node(
            name="Number Source",
            position=(60.0, 180.0),
            kind=ProducerKind(template={"n": 0}, messages_per_cycle=1, steps_between_cycles=1),
        )
    )
    router = fc.add_node(_transformer("Parity Router", (300.0, 180.0), PARITY_ROUTER, count=0))
    even = fc.add_node(
        Node(name="Even Bin", position=(550.0, 100.0), kind=ConsumerKind(consumption_rate=4))
    )
    odd = fc.add_node(
        Node(name="Odd Bin", position=(550.0, 260.0), kind=ConsumerKind(consumption_rate=4))
    )
    fc.add_connection(prod, router)
    fc.add_connection(router, even)
    fc.add_connection(router, odd)
    return fc


def build_etl_pipeline() -> Flowchart:
    """Source -> Extract -> Transform -> Load -> Warehouse / Retry Queue."""
    fc = Flowchart()
    source = fc.add_node(
        Node(
            name="Source",
            position=(40.0, 260.0),
            kind=ProducerKind(
                template={"record": {"id": 1, "raw": True}},
                messages_per_cycle=1,
                steps_between_cycles=2,
            ),
        )
    )
    extract = fc.add_node(_transformer("Extract", (240.0, 260.0), PASS_THROUGH))
    normalize = fc.add_node(_transformer("Transform", (460.0, 260.0), NORMALIZE_RECORD))
    load = fc.add_node(_transformer("Load", (680.0, 260.0), LOAD_WITH_RETRY, retries=0))
    warehouse = fc.add_node(
        Node(name="Warehouse", position=(900.0, 200.0), kind=ConsumerKind(consumption_rate=8))
    )
    retry = fc.add_node(
        Node(name="Retry Queue", position=(900.0, 320.0), kind=ConsumerKind(consumption_rate=2))
    )
    fc.add_connection(source, extract)
    fc.add_connection(extract, normalize)
    fc.add_connection(normalize, load)
    fc.add_connection(load, warehouse)
    fc.add_connection(load, retry)
    return fc


EXAMPLES: dict[str, ExampleInfo] = {
    info.key: info
    for info in (
        ExampleInfo(
            "basic_linear",
            "Basic Linear Pipeline",
            "Producer -> Transformer -> Consumer",
            build_basic_linear,
        ),
        ExampleInfo(
            "decision_branch",
            "Decision Branch (Even/Odd)",
            "Messages routed to different consumers by a counter's parity",
            build_decision_branch,
        ),
        ExampleInfo(
            "etl_pipeline",
            "ETL Pipeline (Extract -> Transform -> Load)",
            "Multi-stage pipeline with alternating warehouse/retry routing",
            build_etl_pipeline,
        ),
    )
}


def list_examples() -> list[ExampleInfo]:
    """All built-in examples in catalog order."""
    return list(EXAMPLES.values())


def build_example(name: str) -> Flowchart:
    """
    Build a fresh flowchart for a built-in example.

    Raises:
        KeyError: unknown example name
    """
    try:
        info = EXAMPLES[name]
    except KeyError:
        raise KeyError(
            f"Unknown example {name!r}; available: {', '.join(EXAMPLES)}"
        ) from None
    return info.build()
