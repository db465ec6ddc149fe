"""Persisted execution records."""

from flowrun.schemas.execution import Execution, ExecutionStatus, FaultRecord, Step, StepStatus

__all__ = ["Execution", "ExecutionStatus", "FaultRecord", "Step", "StepStatus"]
