"""Shared fixtures: deterministic clock/timer, in-memory store, engine and flow factory."""

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from flowrun.config import EngineConfig
from flowrun.graph.flow import Flow
from flowrun.graph.manager import FlowManager
from flowrun.runtime.collaborators import AsyncioDispatcher, RecordingScheduler
from flowrun.runtime.engine import ExecutionEngine
from flowrun.runtime.event_bus import EventBus
from flowrun.storage.memory import InMemoryFlowStore


class FakeTimer:
    """Monotonic timer that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeClock:
    """Wall clock pinned to a fixed instant."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def make_config(**overrides: Any) -> EngineConfig:
    """EngineConfig with explicit values, independent of env and config file."""
    values: dict[str, Any] = {
        "max_execution_seconds": 300.0,
        "max_nodes": 1000,
        "max_loop_iterations": 10000,
        "http_timeout_seconds": 30.0,
        "slow_node_ms": 1000,
        "storage_path": None,
    }
    values.update(overrides)
    return EngineConfig(**values)


@pytest.fixture
def store() -> InMemoryFlowStore:
    return InMemoryFlowStore()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def manager(store, event_bus) -> FlowManager:
    return FlowManager(store, event_bus=event_bus)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def dispatcher() -> AsyncioDispatcher:
    return AsyncioDispatcher()


@pytest.fixture
def make_engine(store, event_bus, clock, timer, scheduler, dispatcher):
    """Build an engine on the shared fakes; keyword overrides replace any collaborator."""

    def _make(**overrides: Any) -> ExecutionEngine:
        kwargs: dict[str, Any] = {
            "store": store,
            "config": make_config(),
            "scheduler": scheduler,
            "dispatcher": dispatcher,
            "event_bus": event_bus,
            "clock": clock,
            "timer": timer,
        }
        kwargs.update(overrides)
        return ExecutionEngine(**kwargs)

    return _make


@pytest.fixture
def engine(make_engine) -> ExecutionEngine:
    return make_engine()


@pytest.fixture
def make_flow(manager):
    """
    Create (and by default activate) a flow.

    Edges are ``(source, target)`` or ``(source, target, source_handle)`` tuples,
    or full edge dicts.
    """

    async def _make(
        nodes: list[dict[str, Any]],
        edges: list[Any] = (),
        activate: bool = True,
        slug: str = "test_flow",
        **config: Any,
    ) -> Flow:
        edge_defs = []
        for edge in edges:
            if isinstance(edge, dict):
                edge_defs.append(edge)
                continue
            source, target, *handle = edge
            edge_defs.append(
                {
                    "source_node": source,
                    "target_node": target,
                    "source_handle": handle[0] if handle else "output",
                }
            )
        flow = await manager.create(slug, {**config, "nodes": nodes, "edges": edge_defs})
        if activate:
            flow = await manager.activate(flow.id)
        return flow

    return _make


@pytest.fixture
def discount_flow(make_flow):
    """trigger -> condition(amount > 100) -> set(discount 10 | 0) -> end."""

    async def _make() -> Flow:
        return await make_flow(
            nodes=[
                {"node_id": "start", "type": "trigger"},
                {
                    "node_id": "check",
                    "type": "condition",
                    "config": {
                        "conditions": [{"field": "amount", "operator": ">", "value": 100}]
                    },
                },
                {
                    "node_id": "discount",
                    "type": "set",
                    "config": {"assignments": [{"key": "discount", "value": 10}]},
                },
                {
                    "node_id": "no_discount",
                    "type": "set",
                    "config": {"assignments": [{"key": "discount", "value": 0}]},
                },
                {"node_id": "done", "type": "end"},
            ],
            edges=[
                ("start", "check"),
                ("check", "discount", "true"),
                ("check", "no_discount", "false"),
                ("discount", "done"),
                ("no_discount", "done"),
            ],
            slug="discounts",
        )

    return _make
