"""Node outcome signals.

A handler returns either a plain ``dict`` (its output, merged into the data
bag) or one of the frozen dataclasses below. Signals describe control flow
(``End``, ``Branch``, ``Loop``, ``Split``, ``Wait``) or deferred I/O
(``RunAction``, ``HttpRequest``, ``RunCode``) that the engine performs against
its collaborators. Handlers themselves never touch the network or the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal


@dataclass(frozen=True)
class End:
    """Stop the traversal after this node."""

    type: Literal["end"] = "end"


@dataclass(frozen=True)
class Wait:
    """Suspend the execution until ``resume_at``."""

    resume_at: datetime
    duration_ms: int = 0
    type: Literal["wait"] = "wait"


@dataclass(frozen=True)
class Branch:
    """Follow only edges whose source handle is ``handle`` (or ``output``)."""

    handle: str
    output: dict[str, Any] = field(default_factory=dict)
    type: Literal["branch"] = "branch"


@dataclass(frozen=True)
class Loop:
    """Run the ``loop``-handle subgraph once per item."""

    items: list[Any] = field(default_factory=list)
    item_var: str = "item"
    index_var: str = "index"
    type: Literal["loop"] = "loop"


@dataclass(frozen=True)
class Split:
    """Fan out: one child execution per item."""

    items: list[Any] = field(default_factory=list)
    item_var: str = "item"
    type: Literal["split"] = "split"


@dataclass(frozen=True)
class RunAction:
    """Invoke a connector action through the ActionRunner."""

    connector: str
    action: str
    connection_id: str | None = None
    input: dict[str, Any] = field(default_factory=dict)
    type: Literal["run_action"] = "run_action"


@dataclass(frozen=True)
class HttpRequest:
    """Perform an outbound HTTP request through the HttpClient."""

    url: str
    method: str = "GET"
    headers: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    query: dict[str, Any] = field(default_factory=dict)
    timeout: float | None = None
    type: Literal["http_request"] = "http_request"


@dataclass(frozen=True)
class RunCode:
    """Evaluate a code snippet through the CodeSandbox."""

    code: str
    language: str = "javascript"
    type: Literal["run_code"] = "run_code"


@dataclass(frozen=True)
class RaiseError:
    """Raise, log or ignore an authored error."""

    message: str
    action: Literal["throw", "log", "ignore"] = "throw"
    type: Literal["raise_error"] = "raise_error"


Signal = End | Wait | Branch | Loop | Split | RunAction | HttpRequest | RunCode | RaiseError

NodeOutcome = dict[str, Any] | Signal
