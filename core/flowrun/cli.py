"""
Command-line interface for flowrun.

Usage:
    flowrun validate flows/welcome.json
    flowrun run flows/welcome.json --input '{"amount": 150}' --store .flowrun
    flowrun resume <execution_id> --store .flowrun
    flowrun status <execution_id> --store .flowrun
    flowrun logs <execution_id> --store .flowrun
    flowrun stats <flow_id> --store .flowrun --period day

Results are printed to stdout as JSON; logs go to stderr.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from flowrun.config import EngineConfig
from flowrun.errors import ExecutionFault, FlowError
from flowrun.graph.manager import FlowManager
from flowrun.observability import configure_logging
from flowrun.runtime.collaborators import AsyncioDispatcher
from flowrun.runtime.engine import ExecutionEngine
from flowrun.storage import FileFlowStore, InMemoryFlowStore
from flowrun.storage.base import FlowStore


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _load_json_file(path: str) -> dict[str, Any]:
    with open(Path(path), encoding="utf-8") as f:
        return json.load(f)


def _parse_input(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("--input must be a JSON object")
    return data


def _open_store(path: str | None, required: bool = True) -> FlowStore:
    path = path or EngineConfig().storage_path
    if path:
        return FileFlowStore(path)
    if required:
        raise FlowError("No store configured: pass --store or set FLOWRUN_STORAGE_PATH")
    return InMemoryFlowStore()


def _engine(store: FlowStore) -> tuple[ExecutionEngine, AsyncioDispatcher]:
    dispatcher = AsyncioDispatcher()
    return ExecutionEngine(store=store, dispatcher=dispatcher), dispatcher


# === COMMANDS ===


def cmd_validate(args: argparse.Namespace) -> int:
    async def _run() -> int:
        manager = FlowManager(InMemoryFlowStore())
        flow = await manager.import_flow(_load_json_file(args.flow))
        result = await manager.validate(flow.id)
        _print_json(result.to_dict())
        return 0 if result.valid else 1

    return asyncio.run(_run())


def cmd_run(args: argparse.Namespace) -> int:
    async def _run() -> int:
        store = _open_store(args.store, required=False)
        manager = FlowManager(store)
        flow = await manager.import_flow(_load_json_file(args.flow))
        engine, dispatcher = _engine(store)
        try:
            execution = await engine.execute(
                flow.id, _parse_input(args.input), run_async=False, force=True
            )
        except ExecutionFault as e:
            print(f"Execution failed: {e}", file=sys.stderr)
            execution = (await engine.get_executions(flow_id=flow.id, limit=1))[0]
        await dispatcher.drain()
        _print_json(await engine.get_status(execution.id))
        return 0 if execution.status.value in ("completed", "waiting") else 1

    return asyncio.run(_run())


def cmd_resume(args: argparse.Namespace) -> int:
    async def _run() -> int:
        engine, dispatcher = _engine(_open_store(args.store))
        try:
            execution = await engine.resume(args.execution_id, _parse_input(args.data))
        except ExecutionFault as e:
            print(f"Resume failed: {e}", file=sys.stderr)
            _print_json(await engine.get_status(args.execution_id))
            return 1
        await dispatcher.drain()
        _print_json(await engine.get_status(execution.id))
        return 0

    return asyncio.run(_run())


def cmd_status(args: argparse.Namespace) -> int:
    engine, _ = _engine(_open_store(args.store))
    _print_json(asyncio.run(engine.get_status(args.execution_id)))
    return 0


def cmd_logs(args: argparse.Namespace) -> int:
    engine, _ = _engine(_open_store(args.store))
    if args.debug:
        _print_json(asyncio.run(engine.get_debug_info(args.execution_id)))
    else:
        _print_json(asyncio.run(engine.get_logs(args.execution_id)))
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    engine, _ = _engine(_open_store(args.store))
    _print_json(asyncio.run(engine.get_statistics(args.flow_id, args.period)))
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register the flowrun subcommands."""
    validate_parser = subparsers.add_parser("validate", help="Validate a flow definition file")
    validate_parser.add_argument("flow", help="Path to a flow JSON file (export format)")
    validate_parser.set_defaults(func=cmd_validate)

    run_parser = subparsers.add_parser("run", help="Import a flow and run it once")
    run_parser.add_argument("flow", help="Path to a flow JSON file (export format)")
    run_parser.add_argument("--input", "-i", help="Trigger data as a JSON object")
    run_parser.add_argument("--store", help="Store directory (default: in-memory)")
    run_parser.set_defaults(func=cmd_run)

    resume_parser = subparsers.add_parser("resume", help="Resume a waiting or paused execution")
    resume_parser.add_argument("execution_id")
    resume_parser.add_argument("--data", "-d", help="JSON object merged into the data bag")
    resume_parser.add_argument("--store", help="Store directory")
    resume_parser.set_defaults(func=cmd_resume)

    status_parser = subparsers.add_parser("status", help="Show an execution's status")
    status_parser.add_argument("execution_id")
    status_parser.add_argument("--store", help="Store directory")
    status_parser.set_defaults(func=cmd_status)

    logs_parser = subparsers.add_parser("logs", help="Show an execution's step log")
    logs_parser.add_argument("execution_id")
    logs_parser.add_argument("--store", help="Store directory")
    logs_parser.add_argument(
        "--debug", action="store_true", help="Include timeline and metrics"
    )
    logs_parser.set_defaults(func=cmd_logs)

    stats_parser = subparsers.add_parser("stats", help="Show execution statistics for a flow")
    stats_parser.add_argument("flow_id")
    stats_parser.add_argument("--store", help="Store directory")
    stats_parser.add_argument("--period", choices=["hour", "day", "week", "month"])
    stats_parser.set_defaults(func=cmd_stats)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="flowrun",
        description="flowrun - validate and run automation flows",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")
    parser.add_argument(
        "--log-format", default="auto", choices=["auto", "json", "human"], help="Log output format"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)

    try:
        sys.exit(args.func(args))
    except (FlowError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
