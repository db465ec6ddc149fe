"""In-memory flow store, used by tests and single-process embedding."""

import asyncio

from flowrun.errors import StepImmutableError
from flowrun.graph.flow import Flow
from flowrun.schemas.execution import Execution, Step


class InMemoryFlowStore:
    """Dict-backed FlowStore. Every read and write is a deep copy."""

    def __init__(self):
        self._flows: dict[str, Flow] = {}
        self._versions: dict[tuple[str, int], Flow] = {}
        self._executions: dict[str, Execution] = {}
        self._steps: dict[str, dict[str, Step]] = {}
        self._lock = asyncio.Lock()

    # === FLOWS ===

    async def save_flow(self, flow: Flow) -> None:
        async with self._lock:
            self._flows[flow.id] = flow.model_copy(deep=True)
            self._versions.setdefault((flow.id, flow.version), flow.model_copy(deep=True))

    async def get_flow(self, flow_id: str) -> Flow | None:
        flow = self._flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None

    async def get_flow_by_slug(self, slug: str) -> Flow | None:
        for flow in self._flows.values():
            if flow.slug == slug:
                return flow.model_copy(deep=True)
        return None

    async def get_flow_version(self, flow_id: str, version: int) -> Flow | None:
        flow = self._versions.get((flow_id, version))
        return flow.model_copy(deep=True) if flow else None

    async def list_flows(self) -> list[Flow]:
        return [flow.model_copy(deep=True) for flow in self._flows.values()]

    async def delete_flow(self, flow_id: str) -> bool:
        async with self._lock:
            return self._flows.pop(flow_id, None) is not None

    # === EXECUTIONS ===

    async def save_execution(self, execution: Execution) -> None:
        async with self._lock:
            self._executions[execution.id] = execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> Execution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(self, flow_id: str | None = None) -> list[Execution]:
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if flow_id is None or e.flow_id == flow_id
        ]

    # === STEPS ===

    async def save_step(self, step: Step) -> None:
        async with self._lock:
            steps = self._steps.setdefault(step.execution_id, {})
            existing = steps.get(step.id)
            if existing is not None and existing.completed_at is not None:
                raise StepImmutableError(step.id)
            steps[step.id] = step.model_copy(deep=True)

    async def list_steps(self, execution_id: str) -> list[Step]:
        steps = self._steps.get(execution_id, {}).values()
        return sorted((s.model_copy(deep=True) for s in steps), key=lambda s: s.sequence)
