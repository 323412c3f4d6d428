"""Shared fixtures for flowsim tests."""

import logging

import pytest

from flowsim.config import EngineConfig
from flowsim.graph.model import ConsumerKind, Flowchart, Node, ProducerKind, TransformerKind
from flowsim.observability import clear_trace_context
from flowsim.runtime.scheduler import SimulationEngine


@pytest.fixture(autouse=True)
def _isolate_logging_and_context():
    """configure_logging() replaces root handlers; undo that after each test."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    clear_trace_context()
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    clear_trace_context()


@pytest.fixture(autouse=True)
def _no_user_config(tmp_path, monkeypatch):
    """Point FLOWSIM_CONFIG at a file that does not exist."""
    monkeypatch.setenv("FLOWSIM_CONFIG", str(tmp_path / "no-such-config.json"))


@pytest.fixture
def fast_engine():
    """Engine whose messages cross a connection in a single step."""
    return SimulationEngine(EngineConfig(transit_rate=1.0))


@pytest.fixture
def flowchart():
    return Flowchart()


@pytest.fixture
def add_producer(flowchart):
    def _add(name="Producer", template=None, **kwargs):
        kind = ProducerKind(template={"value": 1} if template is None else template, **kwargs)
        return flowchart.add_node(Node(name=name, kind=kind))

    return _add


@pytest.fixture
def add_consumer(flowchart):
    def _add(name="Consumer", rate=1):
        return flowchart.add_node(Node(name=name, kind=ConsumerKind(consumption_rate=rate)))

    return _add


@pytest.fixture
def add_transformer(flowchart):
    def _add(name, script, **globals_):
        kind = TransformerKind(script=script, globals=dict(globals_), initial_globals=dict(globals_))
        return flowchart.add_node(Node(name=name, kind=kind))

    return _add
