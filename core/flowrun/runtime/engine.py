"""
Execution Engine - Runs flow graphs.

The engine:
1. Creates an Execution pinned to the flow's current version
2. Walks the graph breadth-first from the entry trigger
3. Invokes node handlers and carries out their deferred I/O
4. Logs every node invocation as a Step
5. Suspends on wait nodes and resumes from the persisted worklist

Budgets (wall clock, node count, loop iterations) come from ``EngineConfig``.
Control (pause / cancel) is cooperative: the persisted status is re-read
between nodes.
"""

import copy
import logging
import time
import traceback
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from flowrun.config import EngineConfig
from flowrun.errors import (
    ExecutionFault,
    ExecutionLimitFault,
    ExecutionNotFoundError,
    ExecutionTimeoutFault,
    FlowError,
    FlowNotActiveFault,
    FlowNotFoundError,
    InvalidTransitionFault,
    NodeExecutionFault,
)
from flowrun.graph.conditions import evaluate_condition, evaluate_conditions
from flowrun.graph.flow import Edge, Flow, FlowStatus, Node, NodeType, utcnow
from flowrun.graph.handlers import NodeContext, NodeHandlerRegistry, default_registry
from flowrun.graph.signals import (
    Branch,
    End,
    HttpRequest,
    Loop,
    RaiseError,
    RunAction,
    RunCode,
    Signal,
    Split,
    Wait,
)
from flowrun.observability import set_trace_context
from flowrun.runtime.collaborators import (
    ActionRunner,
    AsyncioDispatcher,
    CodeSandbox,
    Dispatcher,
    HttpClient,
    HttpxClient,
    NeverRetry,
    NodeRetryPolicy,
    RecordingScheduler,
    Scheduler,
    UnconfiguredActionRunner,
    UnsupportedCodeSandbox,
)
from flowrun.runtime.event_bus import EventBus, EventType
from flowrun.runtime.inspector import ExecutionInspector
from flowrun.runtime.state import ExecutionState
from flowrun.schemas.execution import Execution, ExecutionStatus, FaultRecord, Step, StepStatus
from flowrun.storage.base import FlowStore

logger = logging.getLogger(__name__)

ERROR_HANDLE = "error"
LOOP_HANDLE = "loop"
OUTPUT_HANDLE = "output"


@dataclass
class NodeResult:
    """What one node invocation produced, after deferred I/O."""

    output: Any = None
    signal: Signal | None = None
    failed: bool = False  # failed with on_error=continue


class ExecutionEngine:
    """
    Interprets flows against a FlowStore.

    Example:
        engine = ExecutionEngine(store=InMemoryFlowStore())
        execution = await engine.execute(flow.id, {"amount": 150}, run_async=False)
    """

    def __init__(
        self,
        store: FlowStore,
        config: EngineConfig | None = None,
        registry: NodeHandlerRegistry | None = None,
        action_runner: ActionRunner | None = None,
        http_client: HttpClient | None = None,
        code_sandbox: CodeSandbox | None = None,
        scheduler: Scheduler | None = None,
        dispatcher: Dispatcher | None = None,
        retry_policy: NodeRetryPolicy | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
        timer: Callable[[], float] | None = None,
    ):
        self.store = store
        self.config = config or EngineConfig()
        self.registry = registry or default_registry()
        self.action_runner = action_runner or UnconfiguredActionRunner()
        self.http_client = http_client or HttpxClient(timeout=self.config.http_timeout_seconds)
        self.code_sandbox = code_sandbox or UnsupportedCodeSandbox()
        self.scheduler = scheduler or RecordingScheduler()
        self.dispatcher = dispatcher or AsyncioDispatcher()
        self.retry_policy = retry_policy or NeverRetry()
        self.event_bus = event_bus or EventBus()
        self.inspector = ExecutionInspector(
            store, slow_node_ms=self.config.slow_node_ms, clock=clock
        )
        self._now = clock or utcnow
        self._timer = timer or time.monotonic

    # === EXECUTION API ===

    async def execute(
        self,
        flow_id: str,
        trigger_data: dict[str, Any] | None = None,
        connections: dict[str, Any] | None = None,
        variables: dict[str, Any] | None = None,
        run_async: bool = True,
        force: bool = False,
        retry_of: str | None = None,
    ) -> Execution:
        """
        Start a new execution of a flow.

        With ``run_async`` the traversal is handed to the dispatcher and the
        freshly created (running) Execution is returned. Otherwise the
        traversal is awaited and its final record returned; a failed run
        re-raises its fault after the failure has been recorded, unless the
        execution was cancelled while the failing node ran.

        Raises:
            FlowNotFoundError: unknown flow id
            FlowNotActiveFault: flow is not active and ``force`` is not set
        """
        flow = await self.store.get_flow(flow_id)
        if flow is None:
            raise FlowNotFoundError(flow_id)
        if flow.status != FlowStatus.ACTIVE and not force:
            raise FlowNotActiveFault(f"Flow is not active: {flow.name}", flow_id=flow_id)

        trigger_data = dict(trigger_data or {})
        entry = flow.entry_node()
        state = ExecutionState(
            trigger_data=trigger_data,
            data=copy.deepcopy(trigger_data),
            connections=dict(connections or {}),
            variables=dict(variables or {}),
            worklist=[entry.node_id] if entry else [],
        )
        now = self._now()
        execution = Execution(
            flow_id=flow.id,
            flow_version=flow.version,
            trigger_data=trigger_data,
            context=state.snapshot(),
            status=ExecutionStatus.RUNNING,
            created_at=now,
            started_at=now,
            retry_of=retry_of,
        )
        await self.store.save_execution(execution)
        logger.info(
            f"🚀 Starting execution {execution.id} of flow '{flow.slug}' v{flow.version}",
            extra={"event": "execution_started"},
        )
        await self.event_bus.emit_execution(
            EventType.EXECUTION_STARTED, flow.id, execution.id, {"trigger_data": trigger_data}
        )

        if run_async:
            self._dispatch(execution.id)
            return execution
        return await self.run(execution.id)

    async def execute_async(
        self, flow_id: str, trigger_data: dict[str, Any] | None = None, **kwargs: Any
    ) -> str:
        """Start an execution in the background and return its id."""
        execution = await self.execute(flow_id, trigger_data, run_async=True, **kwargs)
        return execution.id

    async def resume(
        self,
        execution_id: str,
        data: dict[str, Any] | None = None,
        run_async: bool = False,
    ) -> Execution:
        """
        Continue a waiting or paused execution from its persisted worklist.

        ``data`` is merged into the persisted data bag first. A pause that the
        traversal has not yet reached a node boundary for cannot be resumed:
        the persisted state would be stale and the old traversal is still live.
        """
        execution = await self._load(execution_id)
        if not execution.status.is_suspended:
            raise InvalidTransitionFault(
                f"Execution cannot be resumed: {execution.status.value}",
                current_status=execution.status.value,
            )
        if not execution.parked:
            raise InvalidTransitionFault(
                f"Execution {execution_id} is still finishing its current node",
                current_status=execution.status.value,
            )

        state = ExecutionState.from_snapshot(execution.context)
        if data:
            state.data.update(data)
        execution.context = state.snapshot()
        execution.status = ExecutionStatus.RUNNING
        execution.resume_at = None
        execution.parked = False
        await self.store.save_execution(execution)
        logger.info(f"🔄 Resuming execution {execution_id}")
        await self.event_bus.emit_execution(
            EventType.EXECUTION_RESUMED, execution.flow_id, execution_id, {"data": data or {}}
        )

        if run_async:
            self._dispatch(execution_id)
            return execution
        return await self.run(execution_id)

    async def pause(self, execution_id: str) -> Execution:
        """Ask a running execution to stop at the next node boundary."""
        execution = await self._load(execution_id)
        if execution.status != ExecutionStatus.RUNNING:
            raise InvalidTransitionFault(
                f"Only running executions can be paused (status: {execution.status.value})",
                current_status=execution.status.value,
            )
        execution.status = ExecutionStatus.PAUSED
        await self.store.save_execution(execution)
        logger.info(f"⏸ Pause requested for execution {execution_id}")
        await self.event_bus.emit_execution(
            EventType.EXECUTION_PAUSED, execution.flow_id, execution_id
        )
        return execution

    async def cancel(self, execution_id: str) -> Execution:
        """Cancel a running, waiting or paused execution."""
        execution = await self._load(execution_id)
        if execution.status.is_terminal:
            raise InvalidTransitionFault(
                f"Execution cannot be cancelled: {execution.status.value}",
                current_status=execution.status.value,
            )
        execution.status = ExecutionStatus.CANCELLED
        execution.completed_at = self._now()
        execution.resume_at = None
        execution.error = FaultRecord(message="Execution cancelled", kind="cancelled")
        await self.store.save_execution(execution)
        logger.info(f"Execution {execution_id} cancelled")
        await self.event_bus.emit_execution(
            EventType.EXECUTION_CANCELLED, execution.flow_id, execution_id
        )
        return execution

    async def retry(self, execution_id: str, run_async: bool = True) -> Execution:
        """Start a fresh execution with the same trigger data, connections and variables."""
        original = await self._load(execution_id)
        state = ExecutionState.from_snapshot(original.context)
        return await self.execute(
            original.flow_id,
            trigger_data=original.trigger_data,
            connections=state.connections,
            variables=state.variables,
            run_async=run_async,
            force=True,
            retry_of=execution_id,
        )

    # === OBSERVABILITY ===

    async def get_status(self, execution_id: str) -> dict[str, Any]:
        return await self.inspector.get_status(execution_id)

    async def get_logs(self, execution_id: str) -> list[dict[str, Any]]:
        return await self.inspector.get_logs(execution_id)

    async def get_debug_info(self, execution_id: str) -> dict[str, Any]:
        return await self.inspector.get_debug_info(execution_id)

    async def get_executions(self, **filters: Any) -> list[Execution]:
        return await self.inspector.get_executions(**filters)

    async def get_statistics(self, flow_id: str, period: str | None = None) -> dict[str, Any]:
        return await self.inspector.get_statistics(flow_id, period)

    # === TRAVERSAL ===

    async def run(self, execution_id: str) -> Execution:
        """Drive an execution until it completes, suspends, is cancelled or fails."""
        execution = await self._load(execution_id)
        if execution.status != ExecutionStatus.RUNNING:
            logger.debug(f"Execution {execution_id} is {execution.status.value}, nothing to run")
            return execution

        set_trace_context(flow_id=execution.flow_id, execution_id=execution.id, node_id=None)
        state = ExecutionState.from_snapshot(execution.context)
        segment_start = self._timer()

        try:
            flow = await self._flow_for(execution)
            if not state.worklist and not state.visited and flow.entry_node() is None:
                raise ExecutionFault("Flow has no trigger node")
            return await self._traverse(flow, execution, state, segment_start)
        except Exception as e:
            cancelled = await self._fail(execution, state, segment_start, e)
            if cancelled is not None:
                return cancelled
            raise
        finally:
            set_trace_context(node_id=None)

    async def _traverse(
        self,
        flow: Flow,
        execution: Execution,
        state: ExecutionState,
        segment_start: float,
    ) -> Execution:
        while state.worklist:
            stopped = await self._check_control(execution, state, segment_start)
            if stopped is not None:
                return stopped

            node_id = state.worklist.pop(0)
            if state.has_visited(node_id):
                continue
            node = flow.get_node(node_id)
            if node is None:
                logger.warning(f"Edge points at unknown node '{node_id}', skipping")
                continue

            self._check_budget(state, segment_start, node)
            result = await self._execute_node(flow, execution, state, node)
            state.mark_visited(node_id)

            if result.failed:
                state.record_output(node_id, {})
                state.enqueue(self._successors(flow, node, state, _error_path))
                continue

            match result.signal:
                case End():
                    state.node_outputs[node_id] = result.output
                    state.worklist.clear()
                case Branch(handle=handle):
                    state.node_outputs[node_id] = result.output
                    state.enqueue(self._successors(flow, node, state, _branch(handle)))
                case Loop() as loop:
                    state.node_outputs[node_id] = await self._run_loop(
                        flow, execution, state, node, loop, segment_start
                    )
                    state.enqueue(self._successors(flow, node, state, _not_loop_or_error))
                case Split():
                    state.node_outputs[node_id] = result.output
                case Wait() as wait:
                    state.node_outputs[node_id] = result.output
                    state.enqueue(self._successors(flow, node, state, _not_error))
                    return await self._suspend(execution, state, segment_start, wait)
                case None:
                    state.record_output(node_id, result.output)
                    state.enqueue(self._successors(flow, node, state, _not_error))

        stopped = await self._check_control(execution, state, segment_start)
        if stopped is not None:
            return stopped
        return await self._complete(execution, state, segment_start)

    async def _run_loop(
        self,
        flow: Flow,
        execution: Execution,
        state: ExecutionState,
        loop_node: Node,
        loop: Loop,
        segment_start: float,
    ) -> dict[str, Any]:
        """Replay the loop body once per item; returns the loop node's output."""
        limit = self.config.max_loop_iterations
        configured = loop_node.config.get("max_iterations")
        if configured is not None:
            limit = min(int(configured), limit)
        if len(loop.items) > limit:
            raise ExecutionLimitFault(
                f"Loop '{loop_node.name}' exceeded max iterations: {limit}",
                node_id=loop_node.node_id,
                items=len(loop.items),
            )

        roots = [
            e.target_node
            for e in flow.get_outgoing_edges(loop_node.node_id)
            if e.source_handle == LOOP_HANDLE
        ]
        body = _reachable(flow, roots, exclude=loop_node.node_id)
        results: list[Any] = []

        for index, item in enumerate(loop.items):
            state.data[loop.item_var] = item
            state.data[loop.index_var] = index
            state.loop_iterations += 1
            results.append(
                await self._run_iteration(
                    flow, execution, state, loop_node, roots, index, segment_start
                )
            )

        for node_id in body:
            state.mark_visited(node_id)
        logger.info(f"   ↻ Loop '{loop_node.name}' ran {len(loop.items)} iterations")
        return {"items": loop.items, "results": results, "iterations": len(loop.items)}

    async def _run_iteration(
        self,
        flow: Flow,
        execution: Execution,
        state: ExecutionState,
        loop_node: Node,
        roots: list[str],
        index: int,
        segment_start: float,
    ) -> Any:
        """One breadth-first pass over the loop body. Returns the last body output."""
        queue = list(dict.fromkeys(roots))
        seen: set[str] = set()
        last_output: Any = None

        while queue:
            node_id = queue.pop(0)
            if node_id in seen or node_id == loop_node.node_id:
                continue
            node = flow.get_node(node_id)
            if node is None:
                continue

            self._check_budget(state, segment_start, node)
            result = await self._execute_node(flow, execution, state, node, iteration=index)
            seen.add(node_id)

            if result.failed:
                state.record_output(node_id, {})
                last_output = {}
                queue.extend(self._successors(flow, node, state, _error_path))
                continue

            match result.signal:
                case End():
                    state.node_outputs[node_id] = result.output
                    return last_output
                case Branch(handle=handle):
                    state.node_outputs[node_id] = result.output
                    queue.extend(self._successors(flow, node, state, _branch(handle)))
                case Loop() as inner:
                    state.node_outputs[node_id] = await self._run_loop(
                        flow, execution, state, node, inner, segment_start
                    )
                    queue.extend(self._successors(flow, node, state, _not_loop_or_error))
                case Split():
                    state.node_outputs[node_id] = result.output
                case _:
                    state.record_output(node_id, result.output)
                    queue.extend(self._successors(flow, node, state, _not_error))
            last_output = state.node_outputs[node_id]

        return last_output

    # === NODES ===

    async def _execute_node(
        self,
        flow: Flow,
        execution: Execution,
        state: ExecutionState,
        node: Node,
        iteration: int | None = None,
    ) -> NodeResult:
        """Invoke one node, logging a Step per attempt and applying on_error."""
        set_trace_context(node_id=node.node_id)
        state.current_node = node.node_id
        if node.type != NodeType.END:
            state.nodes_executed += 1

        attempt = 0
        while True:
            attempt += 1
            step = Step(
                execution_id=execution.id,
                node_id=node.node_id,
                node_type=node.type.value,
                node_name=node.name,
                input=copy.deepcopy(state.data),
                status=StepStatus.RUNNING,
                started_at=self._now(),
                iteration=iteration,
                sequence=state.next_sequence(),
            )
            await self.store.save_step(step)
            await self.event_bus.emit_node(
                EventType.NODE_STARTED,
                execution.flow_id,
                execution.id,
                node.node_id,
                {"attempt": attempt},
            )
            started = self._timer()

            try:
                in_loop = iteration is not None
                result = await self._perform(flow, execution, state, node, in_loop=in_loop)
            except Exception as e:
                duration_ms = int((self._timer() - started) * 1000)
                step.status = StepStatus.FAILED
                step.error = str(e)
                step.completed_at = self._now()
                step.duration_ms = duration_ms
                await self.store.save_step(step)
                await self.event_bus.emit_node(
                    EventType.NODE_FAILED,
                    execution.flow_id,
                    execution.id,
                    node.node_id,
                    {"error": str(e)},
                )
                logger.error(
                    f"   ✗ Node '{node.name}' failed: {e}",
                    extra={
                        "event": "node_failed",
                        "node_type": node.type.value,
                        "duration_ms": duration_ms,
                    },
                )

                if node.on_error == "retry" and self.retry_policy.should_retry(node, attempt, e):
                    logger.info(f"   Retrying node '{node.name}' (attempt {attempt + 1})")
                    continue
                if node.on_error == "continue":
                    return NodeResult(output={}, failed=True)
                raise NodeExecutionFault(
                    f"Node '{node.name}' failed: {e}", node_id=node.node_id, cause=e
                ) from e

            duration_ms = int((self._timer() - started) * 1000)
            step.status = StepStatus.SUCCESS
            step.output = copy.deepcopy(result.output)
            step.completed_at = self._now()
            step.duration_ms = duration_ms
            await self.store.save_step(step)
            await self.event_bus.emit_node(
                EventType.NODE_COMPLETED,
                execution.flow_id,
                execution.id,
                node.node_id,
                {"duration_ms": duration_ms},
            )
            logger.info(
                f"   ✓ {node.name} ({node.type.value}) in {duration_ms}ms",
                extra={
                    "event": "node_completed",
                    "node_type": node.type.value,
                    "duration_ms": duration_ms,
                },
            )
            return result

    async def _perform(
        self,
        flow: Flow,
        execution: Execution,
        state: ExecutionState,
        node: Node,
        in_loop: bool = False,
    ) -> NodeResult:
        handler = self.registry.get(node.type)
        if handler is None:
            raise FlowError(f"No handler registered for node type '{node.type.value}'")

        ctx = NodeContext(
            trigger_data=state.trigger_data,
            data=state.data,
            node_outputs=state.node_outputs,
            inputs=[
                state.node_outputs[e.source_node]
                for e in flow.get_incoming_edges(node.node_id)
                if e.source_node in state.node_outputs
            ],
            connections=state.connections,
            variables=state.variables,
            now=self._now(),
            execution_id=execution.id,
        )
        outcome = handler(node, ctx)

        match outcome:
            case dict():
                return NodeResult(output=outcome)
            case RunAction():
                result = await self.action_runner.execute(
                    outcome.connector,
                    outcome.action,
                    outcome.connection_id,
                    outcome.input,
                    {
                        "execution_id": execution.id,
                        "flow_id": execution.flow_id,
                        "node_id": node.node_id,
                    },
                )
                return NodeResult(output=_as_output(result))
            case HttpRequest():
                response = await self.http_client.request(
                    outcome.method,
                    outcome.url,
                    headers=outcome.headers,
                    body=outcome.body,
                    query=outcome.query,
                    timeout=outcome.timeout or self.config.http_timeout_seconds,
                )
                return NodeResult(output=response)
            case RunCode():
                result = await self.code_sandbox.run(
                    outcome.code,
                    outcome.language,
                    {
                        "data": copy.deepcopy(state.data),
                        "trigger_data": state.trigger_data,
                        "node_outputs": state.node_outputs,
                        "variables": state.variables,
                    },
                )
                return NodeResult(output=_as_output(result))
            case RaiseError(action="throw"):
                raise ExecutionFault(outcome.message)
            case RaiseError(action="log"):
                logger.warning(f"Flow error at '{node.name}': {outcome.message}")
                return NodeResult(output={"error_message": outcome.message})
            case RaiseError():
                return NodeResult(output={})
            case Wait():
                if in_loop:
                    raise ExecutionFault("Wait nodes cannot run inside a loop body")
                return NodeResult(
                    output={
                        "resume_at": outcome.resume_at.isoformat(),
                        "duration_ms": outcome.duration_ms,
                    },
                    signal=outcome,
                )
            case Split():
                children = await self._spawn_children(flow, execution, state, node, outcome)
                output = {"executions": children, "count": len(children)}
                return NodeResult(output=output, signal=outcome)
            case Loop():
                output = {"items": outcome.items, "count": len(outcome.items)}
                return NodeResult(output=output, signal=outcome)
            case Branch():
                return NodeResult(output=dict(outcome.output), signal=outcome)
            case End():
                return NodeResult(output={}, signal=outcome)
            case _:
                raise FlowError(
                    f"Handler for '{node.type.value}' returned {type(outcome).__name__}"
                )

    async def _spawn_children(
        self,
        flow: Flow,
        execution: Execution,
        state: ExecutionState,
        node: Node,
        split: Split,
    ) -> list[str]:
        """Create and dispatch one child execution per split item."""
        successors = list(
            dict.fromkeys(
                e.target_node for e in flow.get_outgoing_edges(node.node_id) if _not_error(e)
            )
        )
        child_ids = []
        for index, item in enumerate(split.items):
            payload = {split.item_var: item, "split_index": index}
            child_state = ExecutionState(
                trigger_data=payload,
                data={**copy.deepcopy(state.data), **copy.deepcopy(payload)},
                node_outputs=copy.deepcopy(state.node_outputs),
                connections=state.connections,
                variables=state.variables,
                worklist=successors,
                visited=[*state.visited, node.node_id],
            )
            now = self._now()
            child = Execution(
                flow_id=execution.flow_id,
                flow_version=execution.flow_version,
                trigger_data=payload,
                context=child_state.snapshot(),
                status=ExecutionStatus.RUNNING,
                created_at=now,
                started_at=now,
                parent_execution_id=execution.id,
                split_index=index,
            )
            await self.store.save_execution(child)
            await self.event_bus.emit_execution(
                EventType.EXECUTION_STARTED,
                child.flow_id,
                child.id,
                {"parent_execution_id": execution.id, "split_index": index},
            )
            self._dispatch(child.id)
            child_ids.append(child.id)
        logger.info(f"   ⑂ Split '{node.name}' into {len(child_ids)} executions")
        return child_ids

    def _successors(
        self,
        flow: Flow,
        node: Node,
        state: ExecutionState,
        select: Callable[[Edge], bool],
    ) -> list[str]:
        """Targets of the selected outgoing edges whose condition holds."""
        targets = []
        for edge in flow.get_outgoing_edges(node.node_id):
            if not select(edge):
                continue
            if edge.condition and not _edge_condition_holds(edge, state.data):
                continue
            targets.append(edge.target_node)
        return targets

    # === BUDGETS & CONTROL ===

    def _check_budget(self, state: ExecutionState, segment_start: float, node: Node) -> None:
        elapsed = state.active_seconds + (self._timer() - segment_start)
        if elapsed > self.config.max_execution_seconds:
            raise ExecutionTimeoutFault(
                f"Execution exceeded max time of {self.config.max_execution_seconds}s",
                elapsed=elapsed,
            )
        if node.type != NodeType.END and state.nodes_executed >= self.config.max_nodes:
            raise ExecutionLimitFault(
                f"Exceeded max nodes limit of {self.config.max_nodes}",
                nodes_executed=state.nodes_executed,
            )

    async def _check_control(
        self,
        execution: Execution,
        state: ExecutionState,
        segment_start: float,
    ) -> Execution | None:
        """Honour a pause or cancel issued since the last node. None means keep going."""
        current = await self._load(execution.id)
        if current.status == ExecutionStatus.RUNNING:
            return None

        state.active_seconds += self._timer() - segment_start
        current.context = state.snapshot()
        current.nodes_executed = state.nodes_executed
        current.parked = current.status == ExecutionStatus.PAUSED
        await self.store.save_execution(current)
        logger.info(
            f"⏹ Execution {execution.id} stopped at node boundary ({current.status.value})"
        )
        return current

    # === TERMINAL STATES ===

    async def _cancelled_meanwhile(self, execution: Execution) -> Execution | None:
        """The stored record if a cancel landed while the last node was running."""
        current = await self._load(execution.id)
        if current.status.is_terminal:
            logger.info(
                f"Execution {execution.id} was {current.status.value} mid-node, keeping that"
            )
            return current
        return None

    async def _suspend(
        self,
        execution: Execution,
        state: ExecutionState,
        segment_start: float,
        wait: Wait,
    ) -> Execution:
        state.active_seconds += self._timer() - segment_start
        state.current_node = None
        stored = await self._cancelled_meanwhile(execution)
        if stored is not None:
            return stored

        execution.status = ExecutionStatus.WAITING
        execution.resume_at = wait.resume_at
        execution.parked = True
        execution.nodes_executed = state.nodes_executed
        execution.context = state.snapshot()
        await self.store.save_execution(execution)
        await self.scheduler.schedule_at(wait.resume_at, execution.id)
        logger.info(f"⏸ Execution {execution.id} waiting until {wait.resume_at.isoformat()}")
        await self.event_bus.emit_execution(
            EventType.EXECUTION_WAITING,
            execution.flow_id,
            execution.id,
            {"resume_at": wait.resume_at.isoformat()},
        )
        return execution

    async def _complete(
        self,
        execution: Execution,
        state: ExecutionState,
        segment_start: float,
    ) -> Execution:
        state.active_seconds += self._timer() - segment_start
        state.current_node = None
        stored = await self._cancelled_meanwhile(execution)
        if stored is not None:
            return stored

        execution.status = ExecutionStatus.COMPLETED
        execution.completed_at = self._now()
        execution.duration_ms = int(state.active_seconds * 1000)
        execution.nodes_executed = state.nodes_executed
        execution.output = copy.deepcopy(state.data)
        execution.context = state.snapshot()
        await self.store.save_execution(execution)
        logger.info(
            f"✓ Execution {execution.id} completed ({state.nodes_executed} nodes)",
            extra={"event": "execution_completed", "duration_ms": execution.duration_ms},
        )
        await self.event_bus.emit_execution(
            EventType.EXECUTION_COMPLETED,
            execution.flow_id,
            execution.id,
            {"output": execution.output},
        )
        return execution

    async def _fail(
        self,
        execution: Execution,
        state: ExecutionState,
        segment_start: float,
        error: Exception,
    ) -> Execution | None:
        """
        Record the failure. Returns the stored record instead, untouched, when
        the execution was cancelled while the failing node ran.
        """
        state.active_seconds += self._timer() - segment_start
        stored = await self._cancelled_meanwhile(execution)
        if stored is not None:
            logger.warning(f"Ignoring failure of cancelled execution {execution.id}: {error}")
            return stored

        execution.status = ExecutionStatus.FAILED
        execution.completed_at = self._now()
        execution.duration_ms = int(state.active_seconds * 1000)
        execution.nodes_executed = state.nodes_executed
        execution.context = state.snapshot()
        execution.error = FaultRecord(
            message=str(error),
            kind=getattr(error, "kind", "error"),
            trace="".join(traceback.format_exception(error)),
            node_id=getattr(error, "node_id", None),
        )
        await self.store.save_execution(execution)
        logger.error(
            f"✗ Execution {execution.id} failed: {error}",
            extra={"event": "execution_failed", "status": "failed"},
        )
        await self.event_bus.emit_execution(
            EventType.EXECUTION_FAILED,
            execution.flow_id,
            execution.id,
            {"error": str(error), "kind": execution.error.kind},
        )
        return None

    # === HELPERS ===

    def _dispatch(self, execution_id: str) -> None:
        async def job() -> Execution:
            return await self.run(execution_id)

        self.dispatcher.dispatch(execution_id, job)

    async def _load(self, execution_id: str) -> Execution:
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def _flow_for(self, execution: Execution) -> Flow:
        """The immutable snapshot of the version this execution was created against."""
        flow = await self.store.get_flow_version(execution.flow_id, execution.flow_version)
        if flow is None:
            raise FlowNotFoundError(f"{execution.flow_id}@v{execution.flow_version}")
        return flow


def _not_error(edge: Edge) -> bool:
    return edge.source_handle != ERROR_HANDLE


def _not_loop_or_error(edge: Edge) -> bool:
    return edge.source_handle not in (LOOP_HANDLE, ERROR_HANDLE)


def _error_path(edge: Edge) -> bool:
    return edge.source_handle in (ERROR_HANDLE, OUTPUT_HANDLE)


def _branch(handle: str) -> Callable[[Edge], bool]:
    return lambda edge: edge.source_handle in (handle, OUTPUT_HANDLE)


def _edge_condition_holds(edge: Edge, data: dict[str, Any]) -> bool:
    if isinstance(edge.condition, list):
        return evaluate_conditions(edge.condition, data)
    return evaluate_condition(edge.condition, data)


def _as_output(result: Any) -> Any:
    return result if isinstance(result, dict) else {"result": result}


def _reachable(flow: Flow, roots: list[str], exclude: str) -> list[str]:
    """node_ids reachable from ``roots`` without passing through ``exclude``."""
    seen: list[str] = []
    to_visit = list(roots)
    while to_visit:
        current = to_visit.pop(0)
        if current == exclude or current in seen:
            continue
        seen.append(current)
        to_visit.extend(e.target_node for e in flow.get_outgoing_edges(current))
    return seen
