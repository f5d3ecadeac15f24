"""Tool system types.

A tool is described by a :class:`ToolSpec` (what the model sees, plus the
safety metadata the approval gate and scheduler read) and implemented by
anything satisfying the :class:`Tool` protocol.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Mapping, Protocol, runtime_checkable

__all__ = [
    "SafetyLevel",
    "ToolSpec",
    "ToolHandler",
    "AsyncToolHandler",
    "Tool",
    "SimpleTool",
]


# -----------------------------------------------------------------------------
# Safety levels
# -----------------------------------------------------------------------------


class SafetyLevel(str, Enum):
    """How much damage a tool can do; drives the approval policy."""

    READ_ONLY = "read_only"
    WRITE = "write"
    DESTRUCTIVE = "destructive"

    @property
    def rank(self) -> int:
        return _SAFETY_RANK[self]


_SAFETY_RANK = {
    SafetyLevel.READ_ONLY: 0,
    SafetyLevel.WRITE: 1,
    SafetyLevel.DESTRUCTIVE: 2,
}


# -----------------------------------------------------------------------------
# Specs
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """What the model is told about a tool, plus how the runtime treats it.

    Attributes:
        name: Unique identifier for the tool.
        description: Human-readable description of what the tool does.
        parameters: JSON Schema for the tool's parameters.
        safety_level: Approval-relevant classification.
        parallel_safe: Whether the tool may run concurrently with other
            parallel-safe tools of the same round.
        timeout: Per-tool execution timeout override in seconds.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    safety_level: SafetyLevel = SafetyLevel.READ_ONLY
    parallel_safe: bool = False
    timeout: float | None = None

    def to_openai_tool(self) -> dict[str, Any]:
        schema = dict(self.parameters) if self.parameters else {"type": "object", "properties": {}}
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": schema},
        }


# -----------------------------------------------------------------------------
# Tool Handler Types
# -----------------------------------------------------------------------------

ToolHandler = Callable[[Mapping[str, Any]], Any]

AsyncToolHandler = Callable[[Mapping[str, Any]], Coroutine[Any, Any, Any]]


# -----------------------------------------------------------------------------
# Tool Protocol
# -----------------------------------------------------------------------------


@runtime_checkable
class Tool(Protocol):
    """Anything the registry can invoke by name."""

    @property
    def name(self) -> str:
        ...

    @property
    def spec(self) -> ToolSpec:
        ...

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        """Execute the tool; raising signals failure."""
        ...


@dataclass
class SimpleTool:
    """Adapts a plain callable to the :class:`Tool` protocol.

    Sync handlers run inline on the event loop, so they should be quick;
    anything slow belongs in an ``async def`` handler.
    """

    spec: ToolSpec
    handler: ToolHandler | AsyncToolHandler
    _is_async: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._is_async = inspect.iscoroutinefunction(self.handler)

    @property
    def name(self) -> str:
        return self.spec.name

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        if self._is_async:
            return await self.handler(arguments)  # type: ignore[misc]
        result = self.handler(arguments)
        if inspect.isawaitable(result):
            return await result
        return result
