"""Flow stores."""

from flowrun.storage.base import FlowStore
from flowrun.storage.file import FileFlowStore
from flowrun.storage.memory import InMemoryFlowStore

__all__ = ["FlowStore", "FileFlowStore", "InMemoryFlowStore"]
