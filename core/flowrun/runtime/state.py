"""
Execution State - What a traversal owns while it runs.

Every run owns exactly one ``ExecutionState``. It is persisted on the
Execution record (``Execution.context``) as a JSON-safe ``model_dump`` copy
whenever the run suspends or finishes, and rebuilt from that copy on resume.
"""

from typing import Any

from pydantic import BaseModel, Field


class ExecutionState(BaseModel):
    """Mutable traversal state of a single execution."""

    trigger_data: dict[str, Any] = Field(default_factory=dict)
    data: dict[str, Any] = Field(default_factory=dict, description="The live data bag")
    node_outputs: dict[str, Any] = Field(default_factory=dict)
    connections: dict[str, Any] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)

    # Traversal
    worklist: list[str] = Field(default_factory=list, description="FIFO of node_ids still to run")
    visited: list[str] = Field(default_factory=list)
    current_node: str | None = None

    # Budgets
    nodes_executed: int = 0
    active_seconds: float = 0.0
    loop_iterations: int = 0
    step_sequence: int = 0

    model_config = {"extra": "allow"}

    def has_visited(self, node_id: str) -> bool:
        return node_id in self.visited

    def mark_visited(self, node_id: str) -> None:
        if node_id not in self.visited:
            self.visited.append(node_id)

    def enqueue(self, node_ids: list[str]) -> None:
        """Append node_ids not yet visited or queued, preserving order."""
        for node_id in node_ids:
            if node_id not in self.visited and node_id not in self.worklist:
                self.worklist.append(node_id)

    def record_output(self, node_id: str, output: Any) -> None:
        """Store a node's output and merge dict outputs into the data bag."""
        self.node_outputs[node_id] = output
        if isinstance(output, dict):
            self.data.update(output)

    def next_sequence(self) -> int:
        self.step_sequence += 1
        return self.step_sequence

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe deep copy for persistence."""
        return self.model_dump(mode="json")

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, Any]) -> "ExecutionState":
        return cls.model_validate(snapshot or {})
