"""
Execution Schema - One run of a flow and the steps it logged.

An Execution pins the flow version it was created against and carries the
serialised ``ExecutionState`` in ``context`` so that a waiting or paused run
can be picked up again. Steps are append-only: once ``completed_at`` is set a
step is never rewritten.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from flowrun.graph.flow import new_id, utcnow


class ExecutionStatus(StrEnum):
    """Status of an execution."""

    RUNNING = "running"
    WAITING = "waiting"  # Suspended by a wait node until resume_at
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )

    @property
    def is_suspended(self) -> bool:
        return self in (ExecutionStatus.WAITING, ExecutionStatus.PAUSED)


class StepStatus(StrEnum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class FaultRecord(BaseModel):
    """Why an execution ended without output."""

    message: str
    kind: str = "error"
    trace: str | None = None
    node_id: str | None = None

    model_config = {"extra": "allow"}


class Execution(BaseModel):
    """A single run of a pinned flow version."""

    id: str = Field(default_factory=new_id)
    flow_id: str
    flow_version: int
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict, description="Serialised ExecutionState")
    status: ExecutionStatus = ExecutionStatus.RUNNING

    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    resume_at: datetime | None = None
    # Set by the traversal once it has stopped and persisted its state for a
    # wait or pause; resume() requires it.
    parked: bool = False

    duration_ms: int | None = None
    nodes_executed: int = 0
    output: dict[str, Any] | None = None
    error: FaultRecord | None = None

    # Lineage
    retry_of: str | None = None
    parent_execution_id: str | None = None
    split_index: int | None = None

    model_config = {"extra": "allow"}


class Step(BaseModel):
    """One node invocation within an execution."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    node_id: str
    node_type: str
    node_name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    status: StepStatus = StepStatus.RUNNING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    duration_ms: int | None = None
    error: str | None = None
    iteration: int | None = Field(default=None, description="Loop index inside a loop body")
    sequence: int = 0

    model_config = {"extra": "allow"}

    def to_log(self) -> dict[str, Any]:
        """Flat dict used by log listings."""
        return {
            "node_id": self.node_id,
            "node_type": self.node_type,
            "node_name": self.node_name,
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "iteration": self.iteration,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
