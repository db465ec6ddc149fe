"""
File-based flow store.

Directory structure:
    {base_path}/
      flows/
        {flow_id}/
          flow.json              # Current definition
          versions/
            {version}.json       # Immutable snapshot per version
      executions/
        {execution_id}/
          execution.json
          steps/
            {sequence:06d}_{step_id}.json

Every write goes through ``atomic_write`` (temp file + rename), so a reader
never sees a torn record. Blocking I/O runs in a thread.
"""

import asyncio
import logging
from pathlib import Path

from flowrun.errors import StepImmutableError
from flowrun.graph.flow import Flow
from flowrun.schemas.execution import Execution, Step
from flowrun.utils.io import atomic_write

logger = logging.getLogger(__name__)


class FileFlowStore:
    """FlowStore backed by JSON files under ``base_path``."""

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self.flows_dir = self.base_path / "flows"
        self.executions_dir = self.base_path / "executions"
        self._lock = asyncio.Lock()

    def _validate_key(self, key: str) -> None:
        """
        Validate a record id before it becomes part of a path.

        Raises:
            ValueError: If key is empty or contains path traversal patterns
        """
        if not key or key.strip() == "":
            raise ValueError("Key cannot be empty")
        if "/" in key or "\\" in key:
            raise ValueError(f"Invalid key format: path separators not allowed in '{key}'")
        if ".." in key or key.startswith("."):
            raise ValueError(f"Invalid key format: path traversal detected in '{key}'")
        if "\x00" in key:
            raise ValueError("Invalid key format: null bytes not allowed")

    def _flow_dir(self, flow_id: str) -> Path:
        self._validate_key(flow_id)
        return self.flows_dir / flow_id

    def _execution_dir(self, execution_id: str) -> Path:
        self._validate_key(execution_id)
        return self.executions_dir / execution_id

    # === FLOWS ===

    async def save_flow(self, flow: Flow) -> None:
        flow_dir = self._flow_dir(flow.id)

        def _write():
            payload = flow.model_dump_json(indent=2)
            with atomic_write(flow_dir / "flow.json") as f:
                f.write(payload)
            version_path = flow_dir / "versions" / f"{flow.version}.json"
            if not version_path.exists():
                with atomic_write(version_path) as f:
                    f.write(payload)

        async with self._lock:
            await asyncio.to_thread(_write)
        logger.debug(f"Saved flow {flow.id} v{flow.version}")

    async def get_flow(self, flow_id: str) -> Flow | None:
        path = self._flow_dir(flow_id) / "flow.json"
        return await asyncio.to_thread(self._read_model, path, Flow)

    async def get_flow_by_slug(self, slug: str) -> Flow | None:
        for flow in await self.list_flows():
            if flow.slug == slug:
                return flow
        return None

    async def get_flow_version(self, flow_id: str, version: int) -> Flow | None:
        path = self._flow_dir(flow_id) / "versions" / f"{int(version)}.json"
        return await asyncio.to_thread(self._read_model, path, Flow)

    async def list_flows(self) -> list[Flow]:
        def _list() -> list[Flow]:
            if not self.flows_dir.exists():
                return []
            flows = []
            for flow_dir in sorted(self.flows_dir.iterdir()):
                flow = self._read_model(flow_dir / "flow.json", Flow)
                if flow is not None:
                    flows.append(flow)
            return flows

        return await asyncio.to_thread(_list)

    async def delete_flow(self, flow_id: str) -> bool:
        """Delete the current definition. Version snapshots are kept for past executions."""
        path = self._flow_dir(flow_id) / "flow.json"

        def _delete() -> bool:
            if not path.exists():
                return False
            path.unlink()
            return True

        async with self._lock:
            return await asyncio.to_thread(_delete)

    # === EXECUTIONS ===

    async def save_execution(self, execution: Execution) -> None:
        path = self._execution_dir(execution.id) / "execution.json"
        payload = execution.model_dump_json(indent=2)

        def _write():
            with atomic_write(path) as f:
                f.write(payload)

        async with self._lock:
            await asyncio.to_thread(_write)

    async def get_execution(self, execution_id: str) -> Execution | None:
        path = self._execution_dir(execution_id) / "execution.json"
        return await asyncio.to_thread(self._read_model, path, Execution)

    async def list_executions(self, flow_id: str | None = None) -> list[Execution]:
        def _list() -> list[Execution]:
            if not self.executions_dir.exists():
                return []
            executions = []
            for exec_dir in sorted(self.executions_dir.iterdir()):
                execution = self._read_model(exec_dir / "execution.json", Execution)
                if execution is not None and (flow_id is None or execution.flow_id == flow_id):
                    executions.append(execution)
            return executions

        return await asyncio.to_thread(_list)

    # === STEPS ===

    async def save_step(self, step: Step) -> None:
        self._validate_key(step.id)
        steps_dir = self._execution_dir(step.execution_id) / "steps"
        path = steps_dir / f"{step.sequence:06d}_{step.id}.json"
        payload = step.model_dump_json(indent=2)

        def _write():
            existing = self._read_model(path, Step)
            if existing is not None and existing.completed_at is not None:
                raise StepImmutableError(step.id)
            with atomic_write(path) as f:
                f.write(payload)

        async with self._lock:
            await asyncio.to_thread(_write)

    async def list_steps(self, execution_id: str) -> list[Step]:
        steps_dir = self._execution_dir(execution_id) / "steps"

        def _list() -> list[Step]:
            if not steps_dir.exists():
                return []
            steps = []
            for path in sorted(steps_dir.glob("*.json")):
                step = self._read_model(path, Step)
                if step is not None:
                    steps.append(step)
            return sorted(steps, key=lambda s: s.sequence)

        return await asyncio.to_thread(_list)

    @staticmethod
    def _read_model(path: Path, model):
        if not path.exists():
            return None
        return model.model_validate_json(path.read_text(encoding="utf-8"))
