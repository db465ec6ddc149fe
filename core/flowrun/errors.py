"""
Error taxonomy for the flow engine.

Validation problems are *not* exceptions: the validator returns them as a
``ValidationResult`` value. Everything here is raised.

Runtime faults (subclasses of ``ExecutionFault``) carry a short ``kind``
string that is persisted on the failed Execution, so callers can tell a
budget overrun from a node failure without parsing messages.
"""

from typing import Any


class FlowError(Exception):
    """Base class for all flow engine errors."""

    pass


class FlowNotFoundError(FlowError, KeyError):
    """Raised when a flow id (or slug) does not exist."""

    def __init__(self, flow_id: str):
        self.flow_id = flow_id
        super().__init__(f"Flow not found: {flow_id}")

    def __str__(self) -> str:
        return self.args[0]


class ExecutionNotFoundError(FlowError, KeyError):
    """Raised when an execution id does not exist."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")

    def __str__(self) -> str:
        return self.args[0]


class FlowDefinitionError(FlowError, ValueError):
    """Raised for malformed definition input (dangling edges, duplicate node ids)."""

    pass


class FlowActivationError(FlowError):
    """Raised when activate() is refused because validation failed."""

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = list(errors or [])
        detail = f": {'; '.join(self.errors)}" if self.errors else ""
        super().__init__(f"{message}{detail}")


class UnsupportedLanguageError(FlowError):
    """Raised by a code sandbox for a language it cannot run."""

    def __init__(self, language: str):
        self.language = language
        super().__init__(f"Unsupported code language: {language}")


class ExecutionFault(FlowError):
    """Base class for faults raised while running an execution."""

    kind: str = "error"

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)


class ExecutionTimeoutFault(ExecutionFault):
    """The wall-clock budget of a run was exceeded."""

    kind = "timeout"


class ExecutionLimitFault(ExecutionFault):
    """A node-count or loop-iteration budget was exceeded."""

    kind = "limit"


class NodeExecutionFault(ExecutionFault):
    """A node handler (or its deferred I/O) raised."""

    kind = "node"

    def __init__(self, message: str, node_id: str, cause: BaseException | None = None):
        super().__init__(message, node_id=node_id)
        self.node_id = node_id
        self.cause = cause


class FlowNotActiveFault(ExecutionFault):
    """execute() was called against a non-active flow without force."""

    kind = "not_active"


class InvalidTransitionFault(ExecutionFault):
    """resume/pause/cancel was called from an incompatible state."""

    kind = "invalid_transition"

    def __init__(self, message: str, current_status: str):
        super().__init__(message, current_status=current_status)
        self.current_status = current_status


class StepImmutableError(FlowError):
    """Raised by a store asked to rewrite a step that already completed."""

    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"Step {step_id} is completed and cannot be modified")
