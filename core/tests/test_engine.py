"""
Tests for ExecutionEngine traversal: branching, budgets, on_error policies,
loops, splits and deferred I/O.
"""

import httpx
import pytest
from conftest import make_config

from flowrun.errors import (
    ExecutionFault,
    ExecutionLimitFault,
    ExecutionTimeoutFault,
    FlowNotActiveFault,
    FlowNotFoundError,
    NodeExecutionFault,
)
from flowrun.runtime.collaborators import HttpxClient, MaxAttemptsRetryPolicy
from flowrun.runtime.event_bus import EventType
from flowrun.schemas.execution import ExecutionStatus, StepStatus


# ---- Fake action runners ----
class RecordingRunner:
    """Returns a canned result and remembers every call."""

    def __init__(self, result=None):
        self.result = result if result is not None else {"sent": True}
        self.calls = []

    async def execute(self, connector, action, connection_id, input, meta):
        self.calls.append(
            {"connector": connector, "action": action, "connection_id": connection_id, **input}
        )
        return self.result


class FlakyRunner:
    """Fails ``failures`` times, then succeeds."""

    def __init__(self, failures: int):
        self.failures = failures
        self.attempts = 0

    async def execute(self, connector, action, connection_id, input, meta):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise RuntimeError(f"transient failure {self.attempts}")
        return {"ok": True}


def linear(count: int) -> tuple[list[dict], list[tuple[str, str]]]:
    """trigger followed by ``count - 1`` set nodes."""
    nodes = [{"node_id": "n0", "type": "trigger"}]
    for i in range(1, count):
        nodes.append(
            {
                "node_id": f"n{i}",
                "type": "set",
                "config": {"assignments": [{"key": f"k{i}", "value": i}]},
            }
        )
    edges = [(f"n{i}", f"n{i + 1}") for i in range(count - 1)]
    return nodes, edges


ACTION_NODE = {
    "node_id": "act",
    "type": "action",
    "config": {"connector": "smtp", "action": "send", "input": {"to": "{{email}}"}},
}


class TestScenarios:
    @pytest.mark.asyncio
    async def test_discount_applied_above_threshold(self, engine, discount_flow):
        flow = await discount_flow()

        execution = await engine.execute(flow.id, {"amount": 150}, run_async=False)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.output["discount"] == 10
        assert execution.nodes_executed == 3
        assert execution.completed_at is not None
        assert execution.error is None

    @pytest.mark.asyncio
    async def test_budget_of_two_fails_three_node_flow(self, make_engine, make_flow):
        engine = make_engine(config=make_config(max_nodes=2))
        nodes, edges = linear(3)
        flow = await make_flow(nodes, edges)

        with pytest.raises(ExecutionLimitFault):
            await engine.execute(flow.id, {}, run_async=False)

        [execution] = await engine.get_executions(flow_id=flow.id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.kind == "limit"
        assert len(await engine.get_logs(execution.id)) == 2


class TestTraversal:
    @pytest.mark.asyncio
    async def test_max_nodes_stops_before_next_node(self, make_engine, make_flow):
        engine = make_engine(config=make_config(max_nodes=3))
        nodes, edges = linear(4)
        flow = await make_flow(nodes, edges)

        with pytest.raises(ExecutionLimitFault):
            await engine.execute(flow.id, run_async=False)

        [execution] = await engine.get_executions(flow_id=flow.id)
        logs = await engine.get_logs(execution.id)
        assert [entry["node_id"] for entry in logs] == ["n0", "n1", "n2"]
        assert all(entry["status"] == "success" for entry in logs)

    @pytest.mark.asyncio
    async def test_branch_exclusivity(self, engine, discount_flow):
        flow = await discount_flow()

        execution = await engine.execute(flow.id, {"amount": 20}, run_async=False)

        executed = [entry["node_id"] for entry in await engine.get_logs(execution.id)]
        assert executed == ["start", "check", "no_discount", "done"]
        assert execution.output["discount"] == 0

    @pytest.mark.asyncio
    async def test_runs_are_deterministic(self, engine, discount_flow):
        flow = await discount_flow()

        first = await engine.execute(flow.id, {"amount": 150}, run_async=False)
        second = await engine.execute(flow.id, {"amount": 150}, run_async=False)

        first_logs = await engine.get_logs(first.id)
        second_logs = await engine.get_logs(second.id)
        assert [e["node_id"] for e in first_logs] == [e["node_id"] for e in second_logs]
        assert [e["output"] for e in first_logs] == [e["output"] for e in second_logs]
        assert first.output == second.output

    @pytest.mark.asyncio
    async def test_end_node_stops_traversal(self, engine, make_flow):
        flow = await make_flow(
            nodes=[
                {"node_id": "start", "type": "trigger"},
                {"node_id": "stop", "type": "end"},
                {"node_id": "after", "type": "set", "config": {"assignments": []}},
            ],
            edges=[("start", "stop"), ("stop", "after")],
        )

        execution = await engine.execute(flow.id, run_async=False)

        assert [e["node_id"] for e in await engine.get_logs(execution.id)] == ["start", "stop"]
        assert execution.nodes_executed == 1

    @pytest.mark.asyncio
    async def test_conditioned_edge_only_followed_when_true(self, engine, make_flow):
        flow = await make_flow(
            nodes=[
                {"node_id": "start", "type": "trigger"},
                {
                    "node_id": "vip",
                    "type": "set",
                    "config": {"assignments": [{"key": "vip", "value": 1}]},
                },
            ],
            edges=[
                {
                    "source_node": "start",
                    "target_node": "vip",
                    "condition": {"field": "tier", "operator": "==", "value": "gold"},
                }
            ],
        )

        silver = await engine.execute(flow.id, {"tier": "silver"}, run_async=False)
        gold = await engine.execute(flow.id, {"tier": "gold"}, run_async=False)

        assert "vip" not in silver.output
        assert gold.output["vip"] == 1

    @pytest.mark.asyncio
    async def test_branch_output_stays_out_of_data(self, engine, make_flow):
        flow = await make_flow(
            nodes=[
                {"node_id": "start", "type": "trigger"},
                {
                    "node_id": "check",
                    "type": "condition",
                    "config": {"conditions": [{"field": "amount", "operator": ">", "value": 1}]},
                },
                {
                    "node_id": "note",
                    "type": "set",
                    "config": {
                        "assignments": [{"key": "passed", "value": "{{node.check.result}}"}]
                    },
                },
            ],
            edges=[("start", "check"), ("check", "note", "true")],
        )

        execution = await engine.execute(
            flow.id, {"amount": 5, "result": "user value"}, run_async=False
        )

        assert execution.output["result"] == "user value"
        assert execution.output["passed"] is True
        assert "branch" not in execution.output

    @pytest.mark.asyncio
    async def test_trigger_and_node_templates(self, make_engine, make_flow):
        runner = RecordingRunner(result={"message_id": "m-1"})
        engine = make_engine(action_runner=runner)
        flow = await make_flow(
            nodes=[
                {"node_id": "start", "type": "trigger"},
                ACTION_NODE,
                {
                    "node_id": "note",
                    "type": "set",
                    "config": {
                        "assignments": [
                            {
                                "key": "summary",
                                "value": "{{node.act.message_id}} to {{trigger.email}}",
                            }
                        ]
                    },
                },
            ],
            edges=[("start", "act"), ("act", "note")],
        )

        execution = await engine.execute(
            flow.id, {"email": "ada@example.com"}, connections={"smtp": "c-9"}, run_async=False
        )

        assert runner.calls == [
            {"connector": "smtp", "action": "send", "connection_id": "c-9", "to": "ada@example.com"}
        ]
        assert execution.output["summary"] == "m-1 to ada@example.com"


class TestGuards:
    @pytest.mark.asyncio
    async def test_unknown_flow(self, engine):
        with pytest.raises(FlowNotFoundError):
            await engine.execute("nope", run_async=False)

    @pytest.mark.asyncio
    async def test_inactive_flow_requires_force(self, engine, make_flow):
        nodes, edges = linear(2)
        flow = await make_flow(nodes, edges, activate=False)

        with pytest.raises(FlowNotActiveFault):
            await engine.execute(flow.id, run_async=False)

        execution = await engine.execute(flow.id, run_async=False, force=True)
        assert execution.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_flow_without_trigger_fails(self, engine, make_flow):
        flow = await make_flow(
            nodes=[{"node_id": "only", "type": "set", "config": {}}], activate=False
        )

        with pytest.raises(ExecutionFault, match="no trigger"):
            await engine.execute(flow.id, run_async=False, force=True)

    @pytest.mark.asyncio
    async def test_wall_clock_budget(self, make_engine, make_flow, timer):
        class SlowRunner:
            async def execute(self, connector, action, connection_id, input, meta):
                timer.advance(400)
                return {}

        engine = make_engine(action_runner=SlowRunner())
        flow = await make_flow(
            nodes=[{"node_id": "start", "type": "trigger"}, ACTION_NODE, linear(2)[0][1]],
            edges=[("start", "act"), ("act", "n1")],
        )

        with pytest.raises(ExecutionTimeoutFault):
            await engine.execute(flow.id, run_async=False)

        [execution] = await engine.get_executions(flow_id=flow.id)
        assert execution.error.kind == "timeout"
        assert execution.duration_ms == 400_000

    @pytest.mark.asyncio
    async def test_run_async_dispatches(self, engine, discount_flow, dispatcher):
        flow = await discount_flow()

        execution_id = await engine.execute_async(flow.id, {"amount": 500})
        assert dispatcher.pending == 1
        await dispatcher.drain()

        status = await engine.get_status(execution_id)
        assert status["status"] == "completed"
        assert status["progress"] == 100


class TestOnError:
    @pytest.mark.asyncio
    async def test_stop_fails_execution(self, make_engine, make_flow):
        engine = make_engine(action_runner=FlakyRunner(failures=5))
        flow = await make_flow(
            nodes=[{"node_id": "start", "type": "trigger"}, ACTION_NODE], edges=[("start", "act")]
        )

        with pytest.raises(NodeExecutionFault) as exc_info:
            await engine.execute(flow.id, run_async=False)
        assert exc_info.value.node_id == "act"

        [execution] = await engine.get_executions(flow_id=flow.id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.kind == "node"
        assert execution.error.node_id == "act"
        assert "transient failure 1" in execution.error.message
        assert "Traceback" in execution.error.trace
        logs = await engine.get_logs(execution.id)
        assert logs[-1]["status"] == StepStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_continue_follows_error_edges(self, make_engine, make_flow):
        engine = make_engine(action_runner=FlakyRunner(failures=5))
        flow = await make_flow(
            nodes=[
                {"node_id": "start", "type": "trigger"},
                {**ACTION_NODE, "config": {**ACTION_NODE["config"], "on_error": "continue"}},
                {
                    "node_id": "recover",
                    "type": "set",
                    "config": {"assignments": [{"key": "handled", "value": True}]},
                },
            ],
            edges=[("start", "act"), ("act", "recover", "error")],
        )

        execution = await engine.execute(flow.id, run_async=False)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.output["handled"] is True
        statuses = {e["node_id"]: e["status"] for e in await engine.get_logs(execution.id)}
        assert statuses == {"start": "success", "act": "failed", "recover": "success"}

    @pytest.mark.asyncio
    async def test_retry_uses_policy(self, make_engine, make_flow):
        runner = FlakyRunner(failures=2)
        engine = make_engine(action_runner=runner, retry_policy=MaxAttemptsRetryPolicy(3))
        flow = await make_flow(
            nodes=[
                {"node_id": "start", "type": "trigger"},
                {**ACTION_NODE, "config": {**ACTION_NODE["config"], "on_error": "retry"}},
            ],
            edges=[("start", "act")],
        )

        execution = await engine.execute(flow.id, run_async=False)

        assert execution.status == ExecutionStatus.COMPLETED
        assert runner.attempts == 3
        assert execution.nodes_executed == 2
        logs = await engine.get_logs(execution.id)
        act_steps = [e["status"] for e in logs if e["node_id"] == "act"]
        assert act_steps == ["failed", "failed", "success"]

    @pytest.mark.asyncio
    async def test_retry_without_policy_behaves_like_stop(self, make_engine, make_flow):
        runner = FlakyRunner(failures=1)
        engine = make_engine(action_runner=runner)
        flow = await make_flow(
            nodes=[
                {"node_id": "start", "type": "trigger"},
                {**ACTION_NODE, "config": {**ACTION_NODE["config"], "on_error": "retry"}},
            ],
            edges=[("start", "act")],
        )

        with pytest.raises(NodeExecutionFault):
            await engine.execute(flow.id, run_async=False)
        assert runner.attempts == 1

    @pytest.mark.asyncio
    async def test_error_node_actions(self, engine, make_flow):
        throw = await make_flow(
            nodes=[
                {"node_id": "start", "type": "trigger"},
                {"node_id": "boom", "type": "error", "config": {"message": "Bad {{id}}"}},
            ],
            edges=[("start", "boom")],
            slug="throw",
        )
        log = await make_flow(
            nodes=[
                {"node_id": "start", "type": "trigger"},
                {"node_id": "warn", "type": "error", "config": {"message": "Odd", "action": "log"}},
            ],
            edges=[("start", "warn")],
            slug="log",
        )

        with pytest.raises(NodeExecutionFault, match="Bad 7"):
            await engine.execute(throw.id, {"id": 7}, run_async=False)
        logged = await engine.execute(log.id, run_async=False)
        assert logged.output["error_message"] == "Odd"

    @pytest.mark.asyncio
    async def test_code_node_fails_closed(self, engine, make_flow):
        flow = await make_flow(
            nodes=[
                {"node_id": "start", "type": "trigger"},
                {"node_id": "code", "type": "code", "config": {"code": "return 1"}},
            ],
            edges=[("start", "code")],
        )

        with pytest.raises(NodeExecutionFault, match="Unsupported code language: javascript"):
            await engine.execute(flow.id, run_async=False)


class TestLoop:
    @staticmethod
    async def loop_flow(make_flow, **loop_config):
        return await make_flow(
            nodes=[
                {"node_id": "start", "type": "trigger"},
                {
                    "node_id": "each",
                    "type": "loop",
                    "config": {"array_path": "items", **loop_config},
                },
                {
                    "node_id": "label",
                    "type": "set",
                    "config": {"assignments": [{"key": "label", "value": "#{{index}}: {{item}}"}]},
                },
                {
                    "node_id": "after",
                    "type": "set",
                    "config": {"assignments": [{"key": "finished", "value": True}]},
                },
            ],
            edges=[("start", "each"), ("each", "label", "loop"), ("each", "after", "done")],
        )

    @pytest.mark.asyncio
    async def test_body_runs_once_per_item(self, engine, make_flow):
        flow = await self.loop_flow(make_flow)

        execution = await engine.execute(flow.id, {"items": ["a", "b", "c"]}, run_async=False)

        assert execution.status == ExecutionStatus.COMPLETED
        logs = await engine.get_logs(execution.id)
        body = [e for e in logs if e["node_id"] == "label"]
        assert [e["iteration"] for e in body] == [0, 1, 2]
        assert [e["output"]["label"] for e in body] == ["#0: a", "#1: b", "#2: c"]
        assert logs[-1]["node_id"] == "after"
        assert execution.nodes_executed == 6

        loop_output = execution.context["node_outputs"]["each"]
        assert loop_output["iterations"] == 3
        assert [r["label"] for r in loop_output["results"]] == ["#0: a", "#1: b", "#2: c"]
        assert execution.output["finished"] is True

    @pytest.mark.asyncio
    async def test_empty_items_skip_body(self, engine, make_flow):
        flow = await self.loop_flow(make_flow)

        execution = await engine.execute(flow.id, {"items": []}, run_async=False)

        assert [e["node_id"] for e in await engine.get_logs(execution.id)] == [
            "start",
            "each",
            "after",
        ]

    @pytest.mark.asyncio
    async def test_iteration_limit(self, engine, make_flow):
        flow = await self.loop_flow(make_flow, max_iterations=2)

        with pytest.raises(ExecutionLimitFault, match="max iterations: 2"):
            await engine.execute(flow.id, {"items": [1, 2, 3]}, run_async=False)

    @pytest.mark.asyncio
    async def test_body_counts_toward_node_budget(self, make_engine, make_flow):
        engine = make_engine(config=make_config(max_nodes=4))
        flow = await self.loop_flow(make_flow)

        with pytest.raises(ExecutionLimitFault):
            await engine.execute(flow.id, {"items": [1, 2, 3]}, run_async=False)

    @pytest.mark.asyncio
    async def test_wait_inside_body_is_a_node_failure(self, engine, make_flow):
        flow = await make_flow(
            nodes=[
                {"node_id": "start", "type": "trigger"},
                {"node_id": "each", "type": "loop", "config": {"array_path": "items"}},
                {"node_id": "pause", "type": "wait", "config": {"duration": 1}},
            ],
            edges=[("start", "each"), ("each", "pause", "loop")],
        )

        with pytest.raises(NodeExecutionFault, match="inside a loop body"):
            await engine.execute(flow.id, {"items": [1]}, run_async=False)


class TestSplit:
    @pytest.mark.asyncio
    async def test_children_run_per_item(self, engine, make_flow, dispatcher):
        flow = await make_flow(
            nodes=[
                {"node_id": "start", "type": "trigger"},
                {
                    "node_id": "fan",
                    "type": "split",
                    "config": {"array_path": "recipients", "item_variable": "recipient"},
                },
                {
                    "node_id": "greet",
                    "type": "set",
                    "config": {"assignments": [{"key": "greeting", "value": "Hi {{recipient}}"}]},
                },
            ],
            edges=[("start", "fan"), ("fan", "greet")],
        )

        parent = await engine.execute(flow.id, {"recipients": ["ann", "bob"]}, run_async=False)
        await dispatcher.drain()

        assert parent.status == ExecutionStatus.COMPLETED
        assert "greeting" not in parent.output
        assert parent.context["node_outputs"]["fan"]["count"] == 2

        children = await engine.get_executions(parent_execution_id=parent.id)
        children.sort(key=lambda e: e.split_index)
        assert [c.split_index for c in children] == [0, 1]
        assert [c.status for c in children] == [ExecutionStatus.COMPLETED] * 2
        assert [c.output["greeting"] for c in children] == ["Hi ann", "Hi bob"]
        assert children[0].trigger_data == {"recipient": "ann", "split_index": 0}
        assert children[0].flow_version == parent.flow_version


class TestHttpNode:
    @pytest.mark.asyncio
    async def test_request_goes_through_http_client(self, make_engine, make_flow):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"id": 42})

        engine = make_engine(http_client=HttpxClient(transport=httpx.MockTransport(handler)))
        flow = await make_flow(
            nodes=[
                {"node_id": "start", "type": "trigger"},
                {
                    "node_id": "call",
                    "type": "http",
                    "config": {
                        "url": "https://api.test/users/{{user_id}}",
                        "method": "post",
                        "body": {"name": "{{name}}"},
                    },
                },
            ],
            edges=[("start", "call")],
        )

        execution = await engine.execute(flow.id, {"user_id": 7, "name": "Ada"}, run_async=False)

        assert seen[0].method == "POST"
        assert seen[0].url.path == "/users/7"
        assert execution.output["status"] == 201
        assert execution.output["body"] == {"id": 42}
        assert execution.output["success"] is True


class TestEvents:
    @pytest.mark.asyncio
    async def test_lifecycle_events(self, engine, discount_flow, event_bus):
        flow = await discount_flow()
        received = []

        async def on_event(event):
            received.append(event.type)

        event_bus.subscribe(
            [EventType.EXECUTION_STARTED, EventType.EXECUTION_COMPLETED, EventType.NODE_COMPLETED],
            on_event,
            filter_flow=flow.id,
        )

        await engine.execute(flow.id, {"amount": 150}, run_async=False)

        assert received[0] == EventType.EXECUTION_STARTED
        assert received[-1] == EventType.EXECUTION_COMPLETED
        assert received.count(EventType.NODE_COMPLETED) == 4

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_break_run(self, engine, discount_flow, event_bus):
        flow = await discount_flow()

        async def broken(event):
            raise RuntimeError("subscriber bug")

        event_bus.subscribe([EventType.NODE_STARTED], broken)

        execution = await engine.execute(flow.id, {"amount": 1}, run_async=False)
        assert execution.status == ExecutionStatus.COMPLETED
