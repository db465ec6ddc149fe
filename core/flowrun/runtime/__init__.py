"""Execution runtime: engine, state, collaborators, events and inspection."""

from flowrun.runtime.collaborators import (
    ActionRunner,
    AsyncioDispatcher,
    CodeSandbox,
    Dispatcher,
    HttpClient,
    HttpxClient,
    MaxAttemptsRetryPolicy,
    NeverRetry,
    NodeRetryPolicy,
    RecordingScheduler,
    Scheduler,
    UnconfiguredActionRunner,
    UnsupportedCodeSandbox,
)
from flowrun.runtime.engine import ExecutionEngine
from flowrun.runtime.event_bus import EventBus, EventType, FlowEvent
from flowrun.runtime.inspector import ExecutionInspector
from flowrun.runtime.state import ExecutionState

__all__ = [
    "ActionRunner",
    "AsyncioDispatcher",
    "CodeSandbox",
    "Dispatcher",
    "EventBus",
    "EventType",
    "ExecutionEngine",
    "ExecutionInspector",
    "ExecutionState",
    "FlowEvent",
    "HttpClient",
    "HttpxClient",
    "MaxAttemptsRetryPolicy",
    "NeverRetry",
    "NodeRetryPolicy",
    "RecordingScheduler",
    "Scheduler",
    "UnconfiguredActionRunner",
    "UnsupportedCodeSandbox",
]
