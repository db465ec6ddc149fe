"""Read-only views over executions: status, logs, debug info and statistics."""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from flowrun.config import DEFAULT_SLOW_NODE_MS
from flowrun.errors import ExecutionNotFoundError
from flowrun.graph.flow import utcnow
from flowrun.schemas.execution import Execution, ExecutionStatus, Step, StepStatus
from flowrun.storage.base import FlowStore

logger = logging.getLogger(__name__)

STATISTICS_PERIODS = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
}


class ExecutionInspector:
    """
    Observability facade over a FlowStore.

    Progress is 100 for completed runs, 0 for failed or cancelled ones and
    otherwise ``min(99, steps * 100 / total_nodes)``.
    """

    def __init__(
        self,
        store: FlowStore,
        slow_node_ms: int = DEFAULT_SLOW_NODE_MS,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.slow_node_ms = slow_node_ms
        self._now = clock or utcnow

    async def _load(self, execution_id: str) -> Execution:
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def get_status(self, execution_id: str) -> dict[str, Any]:
        execution = await self._load(execution_id)
        steps = await self.store.list_steps(execution_id)
        running = [s for s in steps if s.status == StepStatus.RUNNING]
        return {
            "id": execution.id,
            "flow_id": execution.flow_id,
            "status": execution.status.value,
            "started_at": execution.started_at,
            "completed_at": execution.completed_at,
            "resume_at": execution.resume_at,
            "duration_ms": execution.duration_ms,
            "nodes_executed": execution.nodes_executed,
            "current_node": running[-1].node_name if running else None,
            "progress": await self._progress(execution, steps),
            "error": execution.error.model_dump() if execution.error else None,
        }

    async def _progress(self, execution: Execution, steps: list[Step]) -> int:
        if execution.status == ExecutionStatus.COMPLETED:
            return 100
        if execution.status in (ExecutionStatus.FAILED, ExecutionStatus.CANCELLED):
            return 0
        flow = await self.store.get_flow_version(execution.flow_id, execution.flow_version)
        total = len(flow.nodes) if flow else 0
        if total == 0:
            return 0
        return min(99, int(len(steps) * 100 / total))

    async def get_logs(self, execution_id: str) -> list[dict[str, Any]]:
        """Step log entries in execution order."""
        await self._load(execution_id)
        return [step.to_log() for step in await self.store.list_steps(execution_id)]

    async def get_debug_info(self, execution_id: str) -> dict[str, Any]:
        execution = await self._load(execution_id)
        steps = await self.store.list_steps(execution_id)
        timed = [s for s in steps if s.duration_ms is not None]
        slowest = max(timed, key=lambda s: s.duration_ms, default=None)

        return {
            "execution": {
                "id": execution.id,
                "flow_id": execution.flow_id,
                "flow_version": execution.flow_version,
                "status": execution.status.value,
                "trigger_data": execution.trigger_data,
                "context": execution.context,
                "output": execution.output,
                "error": execution.error.model_dump() if execution.error else None,
                "retry_of": execution.retry_of,
                "parent_execution_id": execution.parent_execution_id,
            },
            "steps": [step.to_log() for step in steps],
            "timeline": self._timeline(execution, steps),
            "metrics": {
                "total_duration_ms": execution.duration_ms,
                "nodes_executed": execution.nodes_executed,
                "slowest_node": slowest.node_name if slowest else None,
                "slow_nodes": [
                    {"node_id": s.node_id, "node_name": s.node_name, "duration_ms": s.duration_ms}
                    for s in timed
                    if s.duration_ms >= self.slow_node_ms
                ],
                "failed_nodes": sum(1 for s in steps if s.status == StepStatus.FAILED),
            },
        }

    def _timeline(self, execution: Execution, steps: list[Step]) -> list[dict[str, Any]]:
        timeline: list[dict[str, Any]] = [
            {"event": "started", "timestamp": execution.started_at or execution.created_at}
        ]
        for step in steps:
            timeline.append(
                {"event": "node_started", "node": step.node_name, "timestamp": step.started_at}
            )
            if step.completed_at:
                succeeded = step.status == StepStatus.SUCCESS
                timeline.append(
                    {
                        "event": "node_completed" if succeeded else "node_failed",
                        "node": step.node_name,
                        "timestamp": step.completed_at,
                        "duration_ms": step.duration_ms,
                    }
                )
        if execution.completed_at:
            timeline.append({"event": execution.status.value, "timestamp": execution.completed_at})
        return timeline

    async def get_executions(
        self,
        flow_id: str | None = None,
        status: ExecutionStatus | str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        parent_execution_id: str | None = None,
        limit: int = 100,
    ) -> list[Execution]:
        """Executions matching the filters, newest first."""
        executions = await self.store.list_executions(flow_id)
        if status is not None:
            executions = [e for e in executions if e.status == ExecutionStatus(status)]
        if since is not None:
            executions = [e for e in executions if e.created_at >= since]
        if until is not None:
            executions = [e for e in executions if e.created_at <= until]
        if parent_execution_id is not None:
            executions = [e for e in executions if e.parent_execution_id == parent_execution_id]
        executions.sort(key=lambda e: e.created_at, reverse=True)
        return executions[:limit]

    async def get_statistics(self, flow_id: str, period: str | None = None) -> dict[str, Any]:
        since = None
        if period:
            if period not in STATISTICS_PERIODS:
                expected = ", ".join(STATISTICS_PERIODS)
                raise ValueError(f"Unknown statistics period '{period}' (expected {expected})")
            since = self._now() - STATISTICS_PERIODS[period]

        executions = await self.store.list_executions(flow_id)
        if since is not None:
            executions = [e for e in executions if e.created_at >= since]

        def count(status: ExecutionStatus) -> int:
            return sum(1 for e in executions if e.status == status)

        total = len(executions)
        completed = count(ExecutionStatus.COMPLETED)
        durations = [
            e.duration_ms
            for e in executions
            if e.status == ExecutionStatus.COMPLETED and e.duration_ms is not None
        ]
        return {
            "flow_id": flow_id,
            "period": period,
            "total_executions": total,
            "completed": completed,
            "failed": count(ExecutionStatus.FAILED),
            "cancelled": count(ExecutionStatus.CANCELLED),
            "running": count(ExecutionStatus.RUNNING),
            "waiting": count(ExecutionStatus.WAITING),
            "paused": count(ExecutionStatus.PAUSED),
            "success_rate": round(completed / total * 100, 2) if total else 0.0,
            "avg_duration_ms": round(sum(durations) / len(durations), 2) if durations else 0.0,
        }
