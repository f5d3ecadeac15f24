"""Error taxonomy shared by the agent runtime.

Local failures (one tool call, one file during restore, one summarization
cycle) are converted into structured results by the component that observes
them.  Loop-level failures (transport, malformed provider output) end the
current round.  Configuration problems are raised before any execution starts.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "RuntimeErrorBase",
    "TransportError",
    "ProviderStreamError",
    "ProviderResponseError",
    "ToolServerConnectionError",
    "ToolExecutionError",
    "ApprovalRejected",
    "SummarizationError",
    "CheckpointError",
    "CheckpointIntegrityError",
    "CheckpointNotFoundError",
    "ConfigurationError",
    "LockCancelledError",
    "HistoryConflictError",
]


class RuntimeErrorBase(Exception):
    """Base class for every error raised by the runtime."""


# -----------------------------------------------------------------------------
# Transport
# -----------------------------------------------------------------------------


class TransportError(RuntimeErrorBase):
    """Provider or tool-server I/O failed; surfaced to the caller, never retried by the core."""


class ProviderStreamError(TransportError):
    """The model provider stream could not be opened or broke mid-stream."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ToolServerConnectionError(TransportError):
    """Connecting to, or talking with, a named tool server failed."""

    def __init__(self, server: str, message: str) -> None:
        super().__init__(f"Tool server '{server}': {message}")
        self.server = server


class ProviderResponseError(RuntimeErrorBase):
    """The provider produced output that cannot be reassembled into a message."""


# -----------------------------------------------------------------------------
# Tool execution
# -----------------------------------------------------------------------------


class ToolExecutionError(RuntimeErrorBase):
    """A single tool call failed.

    Attributes:
        tool_name: Name of the tool that failed.
        cause: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        tool_name: str,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.tool_name = tool_name
        self.cause = cause


class ApprovalRejected(RuntimeErrorBase):
    """The approval gate rejected a tool call."""

    def __init__(self, tool_name: str, reason: str = "Change rejected by user") -> None:
        super().__init__(reason)
        self.tool_name = tool_name
        self.reason = reason


# -----------------------------------------------------------------------------
# Context & checkpoints
# -----------------------------------------------------------------------------


class SummarizationError(RuntimeErrorBase):
    """Summary generation failed; the overflow cycle is skipped."""


class CheckpointError(RuntimeErrorBase):
    """Base class for checkpoint failures."""


class CheckpointIntegrityError(CheckpointError):
    """A file snapshot's content no longer matches its recorded hash."""

    def __init__(self, checkpoint_id: str, path: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Checkpoint {checkpoint_id}: hash mismatch for {path} "
            f"(expected {expected[:12]}, got {actual[:12]})"
        )
        self.checkpoint_id = checkpoint_id
        self.path = path
        self.expected = expected
        self.actual = actual


class CheckpointNotFoundError(CheckpointError):
    """The requested checkpoint does not exist."""

    def __init__(self, checkpoint_id: str) -> None:
        super().__init__(f"Checkpoint {checkpoint_id} not found")
        self.checkpoint_id = checkpoint_id


# -----------------------------------------------------------------------------
# Configuration & coordination
# -----------------------------------------------------------------------------


class ConfigurationError(RuntimeErrorBase):
    """Settings are invalid; raised before any execution."""

    def __init__(self, message: str, *, field: str | None = None, value: Any = None) -> None:
        super().__init__(message)
        self.field = field
        self.value = value


class LockCancelledError(RuntimeErrorBase):
    """A queued KeyedMutex waiter was released by ``clear_all``."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Lock for '{key}' was cleared while waiting")
        self.key = key


class HistoryConflictError(RuntimeErrorBase):
    """The history changed between a snapshot and a conditional write."""
