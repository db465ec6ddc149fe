"""Storage contract shared by the flow stores."""

from typing import Protocol, runtime_checkable

from flowrun.graph.flow import Flow
from flowrun.schemas.execution import Execution, Step


@runtime_checkable
class FlowStore(Protocol):
    """
    Persistence for flows, flow version snapshots, executions and steps.

    Implementations must:
    - keep an immutable snapshot of every flow version the first time it is saved
    - hand out copies, never live references
    - refuse to rewrite a step whose ``completed_at`` is set (StepImmutableError)
    """

    # === FLOWS ===

    async def save_flow(self, flow: Flow) -> None: ...

    async def get_flow(self, flow_id: str) -> Flow | None: ...

    async def get_flow_by_slug(self, slug: str) -> Flow | None: ...

    async def get_flow_version(self, flow_id: str, version: int) -> Flow | None: ...

    async def list_flows(self) -> list[Flow]: ...

    async def delete_flow(self, flow_id: str) -> bool: ...

    # === EXECUTIONS ===

    async def save_execution(self, execution: Execution) -> None: ...

    async def get_execution(self, execution_id: str) -> Execution | None: ...

    async def list_executions(self, flow_id: str | None = None) -> list[Execution]: ...

    # === STEPS ===

    async def save_step(self, step: Step) -> None: ...

    async def list_steps(self, execution_id: str) -> list[Step]: ...
