"""Conversation state and the per-round building blocks of the agent loop.

The loop itself lives in :mod:`runloop.ai.orchestration.agent_loop`.
"""

from .chat_history import ChatHistoryManager, pair_safe_cut
from .keyed_mutex import KeyedMutex
from .stream_accumulator import StreamAccumulator
from .types import (
    AccumulatedMessage,
    ChatEntry,
    ContentDelta,
    DoneChunk,
    EntryRole,
    StreamChunk,
    ToolCall,
    ToolCallDelta,
    ToolParseResult,
    ToolResult,
    Usage,
    UsageChunk,
)

__all__ = [
    "AccumulatedMessage",
    "ChatEntry",
    "ChatHistoryManager",
    "ContentDelta",
    "DoneChunk",
    "EntryRole",
    "KeyedMutex",
    "StreamAccumulator",
    "StreamChunk",
    "ToolCall",
    "ToolCallDelta",
    "ToolParseResult",
    "ToolResult",
    "Usage",
    "UsageChunk",
    "pair_safe_cut",
]
