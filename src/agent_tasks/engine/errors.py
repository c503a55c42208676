"""Error taxonomy for task execution."""

from __future__ import annotations

from agent_tasks.engine.models import ErrorKind


class AgentTaskError(Exception):
    """Base error carrying the kind recorded on a failed task."""

    kind: ErrorKind = ErrorKind.INTERNAL
    transient: bool = False


class ValidationError(AgentTaskError):
    """Input did not satisfy a schema or a business rule."""

    kind = ErrorKind.VALIDATION


class ToolExecutionError(AgentTaskError):
    """A tool handler failed while running."""

    kind = ErrorKind.TOOL_EXECUTION


class TransportError(AgentTaskError):
    """Inference or store communication failed.

    Network failures, timeouts, rate limits and server errors are transient;
    a rejected request (bad credentials, malformed payload) is not.
    """

    kind = ErrorKind.TRANSPORT

    def __init__(
        self,
        message: str,
        *,
        transient: bool = True,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class BackendRequestError(TransportError):
    """The inference service rejected the request; retrying will not help."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message, transient=False, status_code=status_code)


class TaskTimeoutError(AgentTaskError):
    kind = ErrorKind.TIMEOUT


class MaxIterationsError(AgentTaskError):
    kind = ErrorKind.MAX_ITERATIONS


class TaskCancelledError(AgentTaskError):
    kind = ErrorKind.CANCELLED


class NotFoundError(AgentTaskError):
    """Task is absent or owned by another user."""

    kind = ErrorKind.NOT_FOUND
