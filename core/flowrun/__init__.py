"""flowrun - validate, activate and run automation flow graphs."""

from flowrun.config import EngineConfig
from flowrun.graph import Flow, FlowManager, FlowStatus, NodeType
from flowrun.runtime import EventBus, EventType, ExecutionEngine
from flowrun.schemas import Execution, ExecutionStatus, Step
from flowrun.storage import FileFlowStore, InMemoryFlowStore

__version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    "EventBus",
    "EventType",
    "Execution",
    "ExecutionEngine",
    "ExecutionStatus",
    "FileFlowStore",
    "Flow",
    "FlowManager",
    "FlowStatus",
    "InMemoryFlowStore",
    "NodeType",
    "Step",
]
