"""Tests for suspension and control: wait/resume, pause, cancel and retry."""

import pytest

from flowrun.errors import ExecutionNotFoundError, InvalidTransitionFault, NodeExecutionFault
from flowrun.runtime.event_bus import EventType
from flowrun.schemas.execution import ExecutionStatus


def wait_flow_nodes(duration=5, unit="s"):
    return [
        {"node_id": "start", "type": "trigger"},
        {"node_id": "hold", "type": "wait", "config": {"duration": duration, "unit": unit}},
        {
            "node_id": "after",
            "type": "set",
            "config": {"assignments": [{"key": "resumed", "value": "{{approved}}"}]},
        },
        {"node_id": "done", "type": "end"},
    ]


WAIT_EDGES = [("start", "hold"), ("hold", "after"), ("after", "done")]

ACTION_FLOW = {
    "nodes": [
        {"node_id": "start", "type": "trigger"},
        {"node_id": "act", "type": "action", "config": {"connector": "crm", "action": "sync"}},
        {
            "node_id": "after",
            "type": "set",
            "config": {"assignments": [{"key": "finished", "value": True}]},
        },
    ],
    "edges": [("start", "act"), ("act", "after")],
}


class ControlRunner:
    """Action runner that issues a control call against its own execution."""

    def __init__(self, control):
        self.control = control

    async def execute(self, connector, action, connection_id, input, meta):
        await self.control(meta["execution_id"])
        return {"synced": True}


class TestWaitResume:
    @pytest.mark.asyncio
    async def test_wait_suspends_and_schedules(self, engine, make_flow, scheduler, clock):
        flow = await make_flow(wait_flow_nodes(), WAIT_EDGES)
        started_at = clock()

        execution = await engine.execute(flow.id, {"approved": False}, run_async=False)

        assert execution.status == ExecutionStatus.WAITING
        assert (execution.resume_at - started_at).total_seconds() == 5
        assert execution.context["worklist"] == ["after"]
        assert execution.nodes_executed == 2
        assert [w.resume_token for w in scheduler.scheduled] == [execution.id]

        clock.advance(seconds=4)
        assert scheduler.due(clock()) == []
        clock.advance(seconds=2)
        assert scheduler.due(clock()) == [execution.id]

    @pytest.mark.asyncio
    async def test_resume_round_trip(self, engine, make_flow):
        flow = await make_flow(wait_flow_nodes(), WAIT_EDGES)
        waiting = await engine.execute(flow.id, {"approved": False}, run_async=False)

        resumed = await engine.resume(waiting.id, {"approved": True})

        assert resumed.status == ExecutionStatus.COMPLETED
        assert resumed.resume_at is None
        assert resumed.output["resumed"] is True
        assert resumed.nodes_executed == 3
        logs = await engine.get_logs(resumed.id)
        assert [e["node_id"] for e in logs] == ["start", "hold", "after", "done"]

    @pytest.mark.asyncio
    async def test_resume_uses_pinned_flow_version(self, engine, make_flow, manager):
        flow = await make_flow(wait_flow_nodes(), WAIT_EDGES)
        waiting = await engine.execute(flow.id, {"approved": "yes"}, run_async=False)

        await manager.update_node(
            flow.id,
            "after",
            {"config": {"assignments": [{"key": "resumed", "value": "changed"}]}},
        )
        resumed = await engine.resume(waiting.id)

        assert resumed.flow_version == flow.version
        assert resumed.output["resumed"] == "yes"

    @pytest.mark.asyncio
    async def test_resume_requires_suspended_state(self, engine, discount_flow):
        flow = await discount_flow()
        done = await engine.execute(flow.id, {"amount": 1}, run_async=False)

        with pytest.raises(InvalidTransitionFault) as exc_info:
            await engine.resume(done.id)
        assert exc_info.value.current_status == "completed"

    @pytest.mark.asyncio
    async def test_unknown_execution(self, engine):
        with pytest.raises(ExecutionNotFoundError):
            await engine.resume("missing")


class TestPauseCancel:
    @pytest.mark.asyncio
    async def test_pause_stops_at_next_node(self, make_engine, make_flow):
        engine = None

        async def pause(execution_id):
            await engine.pause(execution_id)

        engine = make_engine(action_runner=ControlRunner(pause))
        flow = await make_flow(ACTION_FLOW["nodes"], ACTION_FLOW["edges"])

        paused = await engine.execute(flow.id, run_async=False)

        assert paused.status == ExecutionStatus.PAUSED
        assert paused.context["worklist"] == ["after"]
        assert paused.nodes_executed == 2

        resumed = await engine.resume(paused.id)
        assert resumed.status == ExecutionStatus.COMPLETED
        assert resumed.output == {"synced": True, "finished": True}
        assert resumed.nodes_executed == 3

    @pytest.mark.asyncio
    async def test_cancel_stops_run(self, make_engine, make_flow):
        engine = None

        async def cancel(execution_id):
            await engine.cancel(execution_id)

        engine = make_engine(action_runner=ControlRunner(cancel))
        flow = await make_flow(ACTION_FLOW["nodes"], ACTION_FLOW["edges"])

        cancelled = await engine.execute(flow.id, run_async=False)

        assert cancelled.status == ExecutionStatus.CANCELLED
        assert cancelled.completed_at is not None
        assert cancelled.error.kind == "cancelled"
        executed = [e["node_id"] for e in await engine.get_logs(cancelled.id)]
        assert executed == ["start", "act"]

    @pytest.mark.asyncio
    async def test_resume_refused_until_pause_reaches_boundary(self, make_engine, make_flow):
        engine = None
        refused = []
        runner_calls = []

        async def pause_then_resume(execution_id):
            runner_calls.append(execution_id)
            await engine.pause(execution_id)
            with pytest.raises(InvalidTransitionFault) as exc_info:
                await engine.resume(execution_id, run_async=True)
            refused.append(exc_info.value)

        engine = make_engine(action_runner=ControlRunner(pause_then_resume))
        flow = await make_flow(ACTION_FLOW["nodes"], ACTION_FLOW["edges"])

        paused = await engine.execute(flow.id, run_async=False)

        assert paused.status == ExecutionStatus.PAUSED
        assert paused.parked is True
        assert len(refused) == 1

        resumed = await engine.resume(paused.id)
        assert resumed.status == ExecutionStatus.COMPLETED
        assert resumed.parked is False
        executed = [e["node_id"] for e in await engine.get_logs(resumed.id)]
        assert executed == ["start", "act", "after"]
        assert len(runner_calls) == 1

    @pytest.mark.asyncio
    async def test_cancel_wins_over_failing_node(self, make_engine, make_flow):
        engine = None

        class CancelThenFail:
            async def execute(self, connector, action, connection_id, input, meta):
                await engine.cancel(meta["execution_id"])
                raise RuntimeError("crm unreachable")

        engine = make_engine(action_runner=CancelThenFail())
        flow = await make_flow(ACTION_FLOW["nodes"], ACTION_FLOW["edges"])

        execution = await engine.execute(flow.id, run_async=False)

        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.error.kind == "cancelled"
        stored = await engine.store.get_execution(execution.id)
        assert stored.status == ExecutionStatus.CANCELLED
        logs = await engine.get_logs(execution.id)
        assert [(e["node_id"], e["status"]) for e in logs] == [
            ("start", "success"),
            ("act", "failed"),
        ]

    @pytest.mark.asyncio
    async def test_cancel_during_wait_node(self, engine, make_flow, event_bus, scheduler):
        flow = await make_flow(wait_flow_nodes(), WAIT_EDGES)

        async def cancel_on_hold(event):
            await engine.cancel(event.execution_id)

        event_bus.subscribe([EventType.NODE_STARTED], cancel_on_hold, filter_node="hold")

        execution = await engine.execute(flow.id, run_async=False)

        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.resume_at is None
        assert scheduler.scheduled == []
        stored = await engine.store.get_execution(execution.id)
        assert stored.status == ExecutionStatus.CANCELLED
        with pytest.raises(InvalidTransitionFault):
            await engine.resume(execution.id)

    @pytest.mark.asyncio
    async def test_cancel_waiting_execution(self, engine, make_flow):
        flow = await make_flow(wait_flow_nodes(), WAIT_EDGES)
        waiting = await engine.execute(flow.id, run_async=False)

        cancelled = await engine.cancel(waiting.id)

        assert cancelled.status == ExecutionStatus.CANCELLED
        assert cancelled.resume_at is None
        with pytest.raises(InvalidTransitionFault):
            await engine.resume(waiting.id)

    @pytest.mark.asyncio
    async def test_invalid_transitions(self, engine, make_flow):
        flow = await make_flow(wait_flow_nodes(), WAIT_EDGES)
        waiting = await engine.execute(flow.id, run_async=False)

        with pytest.raises(InvalidTransitionFault):
            await engine.pause(waiting.id)

        await engine.cancel(waiting.id)
        with pytest.raises(InvalidTransitionFault):
            await engine.cancel(waiting.id)


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_creates_linked_execution(self, make_engine, make_flow):
        class FailOnce:
            calls = 0

            async def execute(self, connector, action, connection_id, input, meta):
                FailOnce.calls += 1
                if FailOnce.calls == 1:
                    raise RuntimeError("crm unavailable")
                return {"synced": True}

        engine = make_engine(action_runner=FailOnce())
        flow = await make_flow(ACTION_FLOW["nodes"], ACTION_FLOW["edges"])

        with pytest.raises(NodeExecutionFault):
            await engine.execute(
                flow.id, {"id": 1}, variables={"region": "eu"}, run_async=False
            )
        [failed] = await engine.get_executions(flow_id=flow.id)

        retried = await engine.retry(failed.id, run_async=False)

        assert retried.id != failed.id
        assert retried.retry_of == failed.id
        assert retried.status == ExecutionStatus.COMPLETED
        assert retried.trigger_data == {"id": 1}
        assert retried.context["variables"] == {"region": "eu"}
