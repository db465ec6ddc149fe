"""
Collaborator contracts for the execution engine, plus default implementations.

The engine never talks to the outside world directly. Node handlers emit
intents (``RunAction``, ``HttpRequest``, ``RunCode``) and the engine carries
them out through these narrow interfaces:

- ActionRunner: connector actions (no default implementation; fails loudly)
- HttpClient: outbound HTTP (``httpx.AsyncClient``)
- CodeSandbox: user code (fails closed for every language)
- Scheduler: wake-ups for suspended executions
- Dispatcher: background jobs (asyncio tasks)
- NodeRetryPolicy: whether an ``on_error: retry`` node gets another attempt
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

import httpx

from flowrun.config import DEFAULT_HTTP_TIMEOUT_SECONDS
from flowrun.errors import FlowError, UnsupportedLanguageError
from flowrun.graph.flow import Node

logger = logging.getLogger(__name__)

HTTP_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})


# === PROTOCOLS ===


@runtime_checkable
class ActionRunner(Protocol):
    async def execute(
        self,
        connector: str,
        action: str,
        connection_id: str | None,
        input: dict[str, Any],
        meta: dict[str, Any],
    ) -> dict[str, Any]: ...


@runtime_checkable
class HttpClient(Protocol):
    async def request(
        self,
        method: str,
        url: str,
        headers: dict[str, Any] | None = None,
        body: Any = None,
        query: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]: ...


@runtime_checkable
class CodeSandbox(Protocol):
    async def run(self, code: str, language: str, context: dict[str, Any]) -> Any: ...


@runtime_checkable
class Scheduler(Protocol):
    async def schedule_at(self, timestamp: datetime, resume_token: str) -> None: ...


Job = Callable[[], Awaitable[Any]]


@runtime_checkable
class Dispatcher(Protocol):
    def dispatch(self, execution_id: str, job: Job) -> None: ...


@runtime_checkable
class NodeRetryPolicy(Protocol):
    def should_retry(self, node: Node, attempt: int, error: BaseException) -> bool: ...


# === DEFAULTS ===


class UnconfiguredActionRunner:
    """Placeholder runner: every action fails until a real runner is injected."""

    async def execute(self, connector, action, connection_id, input, meta):
        raise FlowError(f"No action runner configured for {connector}.{action}")


class HttpxClient:
    """
    HttpClient on top of ``httpx.AsyncClient``.

    Returns ``{"status", "headers", "body", "success"}``; the body is decoded
    JSON when the response parses as JSON, text otherwise. Transport errors
    propagate as ``httpx`` exceptions.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout
        self._transport = transport

    async def request(
        self,
        method: str,
        url: str,
        headers: dict[str, Any] | None = None,
        body: Any = None,
        query: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        method = method.upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"Invalid HTTP method: {method}")

        kwargs: dict[str, Any] = {
            "headers": {k: str(v) for k, v in (headers or {}).items()},
            "params": query or None,
        }
        if body not in (None, "", {}, []) and method not in ("GET", "HEAD"):
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)

        async with httpx.AsyncClient(
            timeout=timeout or self.timeout,
            transport=self._transport,
        ) as client:
            response = await client.request(method, url, **kwargs)

        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text

        logger.debug(f"HTTP {method} {url} -> {response.status_code}")
        return {
            "status": response.status_code,
            "headers": dict(response.headers),
            "body": payload,
            "success": response.is_success,
        }


class UnsupportedCodeSandbox:
    """Refuses every language. Inject a real sandbox to enable code nodes."""

    async def run(self, code: str, language: str, context: dict[str, Any]) -> Any:
        raise UnsupportedLanguageError(language)


@dataclass
class ScheduledWakeup:
    timestamp: datetime
    resume_token: str


@dataclass
class RecordingScheduler:
    """
    Keeps wake-ups in memory. A poller calls ``due(now)`` and resumes the
    returned execution ids.
    """

    scheduled: list[ScheduledWakeup] = field(default_factory=list)

    async def schedule_at(self, timestamp: datetime, resume_token: str) -> None:
        self.scheduled.append(ScheduledWakeup(timestamp=timestamp, resume_token=resume_token))
        logger.debug(f"Scheduled resume of {resume_token} at {timestamp.isoformat()}")

    def due(self, now: datetime) -> list[str]:
        """Pop and return the tokens whose time has come, earliest first."""
        ready = sorted((w for w in self.scheduled if w.timestamp <= now), key=lambda w: w.timestamp)
        self.scheduled = [w for w in self.scheduled if w.timestamp > now]
        return [w.resume_token for w in ready]


class AsyncioDispatcher:
    """Runs jobs as asyncio tasks on the current loop. Failures are logged."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, execution_id: str, job: Job) -> None:
        task = asyncio.create_task(job(), name=f"flowrun-{execution_id}")
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(execution_id, t))

    def _on_done(self, execution_id: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Job for execution {execution_id} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Job for execution {execution_id} failed: {error}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every dispatched job (including jobs they dispatch) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
            await asyncio.sleep(0)


class NeverRetry:
    def should_retry(self, node: Node, attempt: int, error: BaseException) -> bool:
        return False


@dataclass
class MaxAttemptsRetryPolicy:
    """Allow up to ``max_attempts`` invocations of a retrying node."""

    max_attempts: int = 3

    def should_retry(self, node: Node, attempt: int, error: BaseException) -> bool:
        limit = int(node.config.get("max_attempts", self.max_attempts))
        return attempt < limit
