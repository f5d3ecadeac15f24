"""Reassembly of a chunked model response into one assistant message."""

from __future__ import annotations

import codecs
import logging
from dataclasses import dataclass, field
from typing import AsyncIterable, Callable

from ..errors import ProviderResponseError
from .types import (
    AccumulatedMessage,
    ContentDelta,
    DoneChunk,
    StreamChunk,
    ToolCall,
    ToolCallDelta,
    Usage,
    UsageChunk,
    new_call_id,
    parse_tool_arguments,
)

__all__ = ["StreamAccumulator"]

LOGGER = logging.getLogger(__name__)

ContentListener = Callable[[str], None]


class _Utf8Parts:
    """Append-only text buffer that accepts ``str`` or raw UTF-8 ``bytes``."""

    __slots__ = ("_parts", "_decoder")

    def __init__(self) -> None:
        self._parts: list[str] = []
        self._decoder = codecs.getincrementaldecoder("utf-8")("strict")

    def append(self, piece: str | bytes) -> str:
        if isinstance(piece, (bytes, bytearray, memoryview)):
            try:
                text = self._decoder.decode(bytes(piece))
            except UnicodeDecodeError as exc:
                raise ProviderResponseError(f"Invalid UTF-8 in stream: {exc}") from exc
        else:
            if self._decoder.getstate()[0]:
                raise ProviderResponseError("Text delta arrived inside a partial UTF-8 sequence")
            text = piece
        if text:
            self._parts.append(text)
        return text

    def finish(self) -> str:
        try:
            tail = self._decoder.decode(b"", final=True)
        except UnicodeDecodeError as exc:
            raise ProviderResponseError(f"Stream ended inside a UTF-8 sequence: {exc}") from exc
        if tail:
            self._parts.append(tail)
        return "".join(self._parts)

    def text(self) -> str:
        return "".join(self._parts)


@dataclass(slots=True)
class _PendingToolCall:
    index: int
    call_id: str | None = None
    name: str | None = None
    arguments: _Utf8Parts = field(default_factory=_Utf8Parts)
    final: ToolCall | None = None


class StreamAccumulator:
    """Merges stream chunks into an :class:`AccumulatedMessage`.

    Content deltas are appended in arrival order.  Tool-call deltas are merged
    by index: the first non-empty name and id win, argument fragments are
    concatenated raw and only parsed once the call is complete (a higher index
    started, or the stream finished).  A call id already used earlier in the same
    message is replaced by a generated one.  Because reassembly is pure
    append/merge, every chunking of the same response yields the same message.

    An accumulator is single-use; feeding it after :meth:`finish` raises.
    """

    def __init__(self, *, on_content: ContentListener | None = None) -> None:
        self._content = _Utf8Parts()
        self._calls: dict[int, _PendingToolCall] = {}
        self._call_ids: set[str] = set()
        self._usage: Usage | None = None
        self._finish_reason: str | None = None
        self._result: AccumulatedMessage | None = None
        self._on_content = on_content
        self._chunk_count = 0

    @property
    def done(self) -> bool:
        return self._result is not None

    @property
    def partial_content(self) -> str:
        """Content received so far, for cancellation or failure reporting."""

        return self._content.text()

    # ------------------------------------------------------------------
    # Feeding
    # ------------------------------------------------------------------
    def feed(self, chunk: StreamChunk) -> str:
        """Apply one chunk; returns the newly decoded content text, if any."""

        if self._result is not None:
            raise RuntimeError("StreamAccumulator already finished; create a new one per response")
        self._chunk_count += 1

        if isinstance(chunk, ContentDelta):
            text = self._content.append(chunk.text)
            if text and self._on_content is not None:
                self._on_content(text)
            return text
        if isinstance(chunk, ToolCallDelta):
            self._merge_tool_delta(chunk)
            return ""
        if isinstance(chunk, UsageChunk):
            self._usage = chunk.usage
            return ""
        if isinstance(chunk, DoneChunk):
            self._finish_reason = chunk.finish_reason
            if chunk.usage is not None:
                self._usage = chunk.usage
            self.finish()
            return ""
        raise ProviderResponseError(f"Unsupported stream chunk: {type(chunk).__name__}")

    async def consume(self, stream: AsyncIterable[StreamChunk]) -> AccumulatedMessage:
        """Drain ``stream`` until a done chunk or its end, closing it on every path."""

        if self._result is not None:
            raise RuntimeError("StreamAccumulator already finished; create a new one per response")
        iterator = stream.__aiter__()
        try:
            async for chunk in iterator:
                self.feed(chunk)
                if self._result is not None:
                    break
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
        return self.finish()

    def finish(self) -> AccumulatedMessage:
        """Finalize the message (idempotent)."""

        if self._result is not None:
            return self._result
        content = self._content.finish()
        calls = []
        for index in sorted(self._calls):
            calls.append(self._finalize_call(self._calls[index]))
        self._result = AccumulatedMessage(
            content=content,
            tool_calls=tuple(calls),
            usage=self._usage,
            finish_reason=self._finish_reason,
        )
        LOGGER.debug(
            "Stream finished after %d chunk(s): %d chars, %d tool call(s), finish_reason=%s",
            self._chunk_count,
            len(content),
            len(calls),
            self._finish_reason,
        )
        return self._result

    # ------------------------------------------------------------------
    # Tool-call merging
    # ------------------------------------------------------------------
    def _merge_tool_delta(self, delta: ToolCallDelta) -> None:
        if delta.index < 0:
            raise ProviderResponseError(f"Negative tool call index {delta.index}")
        pending = self._calls.get(delta.index)
        if pending is None:
            # A new index means every lower index has received its last fragment.
            for earlier in self._calls.values():
                if earlier.index < delta.index and earlier.final is None:
                    self._finalize_call(earlier)
            pending = _PendingToolCall(index=delta.index)
            self._calls[delta.index] = pending
        elif pending.final is not None:
            raise ProviderResponseError(f"Tool call {delta.index} received a fragment after completion")

        if delta.call_id and not pending.call_id:
            pending.call_id = delta.call_id
        if delta.name and not pending.name:
            pending.name = delta.name
        if delta.arguments_fragment:
            pending.arguments.append(delta.arguments_fragment)

    def _finalize_call(self, pending: _PendingToolCall) -> ToolCall:
        if pending.final is not None:
            return pending.final
        if not pending.name:
            raise ProviderResponseError(f"Tool call at index {pending.index} has no name")
        arguments = pending.arguments.finish()
        call_id = pending.call_id or new_call_id()
        if call_id in self._call_ids:
            LOGGER.warning("Tool call at index %d reused id %s; assigning a new id", pending.index, call_id)
            call_id = new_call_id()
        self._call_ids.add(call_id)
        pending.final = ToolCall(
            id=call_id,
            name=pending.name,
            arguments_json=arguments,
            parsed=parse_tool_arguments(pending.name, arguments),
        )
        return pending.final
