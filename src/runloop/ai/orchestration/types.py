"""Core value types for the agent runtime.

Conversation entries, tool calls and results, and the chunk variants emitted
by a streaming model provider.  Everything here is an immutable value; the
components that own state (history, accumulator, checkpoints) replace values
instead of mutating them.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Union

__all__ = [
    # Conversation
    "EntryRole",
    "ChatEntry",
    "ToolCall",
    "ToolParseResult",
    "ToolResult",
    "new_call_id",
    "parse_tool_arguments",
    # Streaming
    "Usage",
    "ContentDelta",
    "ToolCallDelta",
    "UsageChunk",
    "DoneChunk",
    "StreamChunk",
    "AccumulatedMessage",
]


# -----------------------------------------------------------------------------
# Tool calls
# -----------------------------------------------------------------------------


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


@dataclass(slots=True, frozen=True)
class ToolParseResult:
    """Outcome of parsing a tool call's raw argument text.

    Either ``success`` is true and ``args`` holds the decoded JSON object, or
    ``success`` is false and ``error`` explains why parsing failed.
    """

    success: bool
    args: Mapping[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def ok(cls, args: Mapping[str, Any]) -> ToolParseResult:
        return cls(success=True, args=dict(args))

    @classmethod
    def failed(cls, error: str) -> ToolParseResult:
        return cls(success=False, error=error)


def parse_tool_arguments(name: str, raw: str | None) -> ToolParseResult:
    """Decode a tool call's complete argument text.

    Empty text, invalid JSON and non-object JSON are failures; the error text
    names the tool so the model can correct itself.
    """

    text = (raw or "").strip()
    if not text:
        return ToolParseResult.failed(f"Tool {name} called with empty arguments")
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as exc:
        return ToolParseResult.failed(f"Failed to parse {name} arguments: {exc.msg} at position {exc.pos}")
    if not isinstance(decoded, dict):
        kind = "array" if isinstance(decoded, list) else type(decoded).__name__
        return ToolParseResult.failed(f"Tool {name} arguments must be a JSON object, got {kind}")
    return ToolParseResult.ok(decoded)


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A tool invocation requested by the model.

    Attributes:
        id: Provider-assigned (or generated) call id.
        name: Tool name.
        arguments_json: Raw argument text exactly as streamed.
        parsed: Parse outcome, filled once the final fragment was observed.
    """

    id: str
    name: str
    arguments_json: str = ""
    parsed: ToolParseResult | None = None

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json or "{}"},
        }


@dataclass(slots=True, frozen=True)
class ToolResult:
    """Structured outcome of a tool call."""

    success: bool
    output: Any = None
    error: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, output: Any, **metadata: Any) -> ToolResult:
        return cls(success=True, output=output, metadata=metadata)

    @classmethod
    def failure(cls, error: str, **metadata: Any) -> ToolResult:
        return cls(success=False, error=error, metadata=metadata)

    def render(self) -> str:
        """Text handed back to the model as the tool message content."""

        if not self.success:
            return f"Error: {self.error or 'tool failed'}"
        if self.output is None:
            return ""
        if isinstance(self.output, str):
            return self.output
        try:
            return json.dumps(self.output, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return str(self.output)


# -----------------------------------------------------------------------------
# Conversation entries
# -----------------------------------------------------------------------------


class EntryRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"


@dataclass(slots=True, frozen=True)
class ChatEntry:
    """One element of the conversation.

    ``tool_calls`` is set on assistant entries that requested tools;
    ``tool_call`` (and later ``tool_result``) on the entry that tracks one
    call's execution.  Only an entry whose ``streaming`` flag is true may have
    its content extended.
    """

    role: EntryRole
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call: ToolCall | None = None
    tool_result: ToolResult | None = None
    streaming: bool = False
    timestamp: float = field(default_factory=time.time)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def user(cls, content: str) -> ChatEntry:
        return cls(role=EntryRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str = "", *, streaming: bool = False) -> ChatEntry:
        return cls(role=EntryRole.ASSISTANT, content=content, streaming=streaming)

    @classmethod
    def system(cls, content: str, **metadata: Any) -> ChatEntry:
        return cls(role=EntryRole.SYSTEM, content=content, metadata=metadata)

    @property
    def call_id(self) -> str | None:
        """Id of the tool call tracked by a tool_call/tool_result entry."""

        return self.tool_call.id if self.tool_call is not None else None

    def referenced_call_ids(self) -> set[str]:
        """Every tool-call id this entry opens or answers."""

        ids = {call.id for call in self.tool_calls}
        if self.tool_call is not None:
            ids.add(self.tool_call.id)
        return ids


# -----------------------------------------------------------------------------
# Stream chunks
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(slots=True, frozen=True)
class ContentDelta:
    """A slice of assistant text; ``bytes`` slices may end mid-character."""

    text: str | bytes


@dataclass(slots=True, frozen=True)
class ToolCallDelta:
    """A fragment of the tool call at ``index``."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_fragment: str | bytes | None = None


@dataclass(slots=True, frozen=True)
class UsageChunk:
    usage: Usage


@dataclass(slots=True, frozen=True)
class DoneChunk:
    finish_reason: str | None = None
    usage: Usage | None = None


StreamChunk = Union[ContentDelta, ToolCallDelta, UsageChunk, DoneChunk]


@dataclass(slots=True, frozen=True)
class AccumulatedMessage:
    """The assistant message reassembled from a finished stream."""

    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    usage: Usage | None = None
    finish_reason: str | None = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)
