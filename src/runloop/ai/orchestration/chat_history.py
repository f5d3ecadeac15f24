"""Single-writer owner of the canonical conversation sequence."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Any, Iterable, Mapping, Sequence

from ..errors import HistoryConflictError
from .types import ChatEntry, EntryRole, ToolCall, ToolResult

__all__ = ["ChatHistoryManager", "DEFAULT_MAX_ENTRIES", "pair_safe_cut"]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 200
PENDING_TOOL_TEXT = "Executing..."


class ChatHistoryManager:
    """Owns the list of :class:`ChatEntry` values for one session.

    Every mutation runs under one lock and bumps :attr:`version`, so readers
    can detect that the sequence changed between a snapshot and a
    conditional write.  Callers only ever receive tuples.
    """

    def __init__(self, entries: Iterable[ChatEntry] | None = None) -> None:
        self._lock = threading.RLock()
        self._entries: list[ChatEntry] = list(entries or ())
        self._call_index: dict[str, int] = {}
        self._version = 0
        self._reindex()

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------
    @property
    def version(self) -> int:
        return self._version

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def snapshot(self) -> tuple[ChatEntry, ...]:
        """Immutable copy of the whole sequence."""

        with self._lock:
            return tuple(self._entries)

    def snapshot_with_version(self) -> tuple[tuple[ChatEntry, ...], int]:
        with self._lock:
            return tuple(self._entries), self._version

    def get(self, index: int) -> ChatEntry:
        with self._lock:
            return self._entries[index]

    def index_of_call(self, call_id: str) -> int | None:
        with self._lock:
            return self._call_index.get(call_id)

    # ------------------------------------------------------------------
    # Basic mutation
    # ------------------------------------------------------------------
    def append(self, entry: ChatEntry) -> int:
        """Append ``entry`` and return its index."""

        with self._lock:
            if entry.streaming and self._entries and self._entries[-1].streaming:
                raise ValueError("Only the tail entry may be streaming")
            self._entries.append(entry)
            index = len(self._entries) - 1
            if entry.tool_call is not None:
                self._call_index[entry.tool_call.id] = index
            self._bump()
            return index

    def replace_range(
        self,
        start: int,
        end: int,
        new_entries: Sequence[ChatEntry],
        *,
        expected_version: int | None = None,
    ) -> None:
        """Replace ``entries[start:end]`` with ``new_entries`` atomically.

        Raises:
            HistoryConflictError: ``expected_version`` no longer matches.
            IndexError: the range is outside the sequence.
        """

        with self._lock:
            if expected_version is not None and expected_version != self._version:
                raise HistoryConflictError(
                    f"History changed (version {self._version}, expected {expected_version})"
                )
            if not 0 <= start <= end <= len(self._entries):
                raise IndexError(f"Invalid range [{start}:{end}] for {len(self._entries)} entries")
            self._entries[start:end] = list(new_entries)
            self._reindex()
            self._bump()
            LOGGER.debug(
                "Replaced history range [%d:%d] with %d entr(ies)", start, end, len(new_entries)
            )

    def restore(self, entries: Sequence[ChatEntry]) -> None:
        """Replace the whole sequence in one step."""

        with self._lock:
            self._entries = list(entries)
            self._reindex()
            self._bump()
            LOGGER.debug("History restored to %d entr(ies)", len(self._entries))

    def clear(self) -> None:
        self.restore(())

    def rewind(self, index: int) -> int:
        """Drop every entry from ``index`` on; returns how many were removed."""

        with self._lock:
            if index < 0 or index > len(self._entries):
                raise IndexError(f"Cannot rewind to {index}; history has {len(self._entries)} entries")
            removed = len(self._entries) - index
            if removed:
                del self._entries[index:]
                self._reindex()
                self._bump()
            return removed

    # ------------------------------------------------------------------
    # Streaming entries
    # ------------------------------------------------------------------
    def append_stream_delta(self, index: int, text: str) -> None:
        with self._lock:
            entry = self._entries[index]
            if not entry.streaming:
                raise ValueError(f"Entry {index} is not streaming")
            self._entries[index] = replace(entry, content=entry.content + text)
            self._bump()

    def finish_stream(
        self,
        index: int,
        *,
        content: str | None = None,
        tool_calls: Sequence[ToolCall] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> ChatEntry:
        """Clear the streaming flag, optionally setting final content and calls."""

        with self._lock:
            entry = self._entries[index]
            if not entry.streaming:
                raise ValueError(f"Entry {index} is not streaming")
            merged = dict(entry.metadata)
            if metadata:
                merged.update(metadata)
            finished = replace(
                entry,
                content=entry.content if content is None else content,
                tool_calls=tuple(tool_calls) if tool_calls is not None else entry.tool_calls,
                streaming=False,
                metadata=merged,
            )
            self._entries[index] = finished
            self._bump()
            return finished

    # ------------------------------------------------------------------
    # Tool-call tracking
    # ------------------------------------------------------------------
    def add_tool_call(self, call: ToolCall) -> int:
        """Record a pending tool call; its entry is later promoted to a result."""

        return self.append(
            ChatEntry(role=EntryRole.TOOL_CALL, content=PENDING_TOOL_TEXT, tool_call=call)
        )

    def update_tool_result(
        self,
        call_id: str,
        result: ToolResult,
        *,
        duration_ms: float | None = None,
    ) -> bool:
        """Promote the pending entry for ``call_id`` to a ``tool_result``.

        Returns ``False`` when no pending entry tracks the id (for example
        after a rewind or summarization removed it).
        """

        with self._lock:
            index = self._call_index.get(call_id)
            if index is None:
                LOGGER.debug("No history entry tracks tool call %s", call_id)
                return False
            entry = self._entries[index]
            metadata = dict(entry.metadata)
            if duration_ms is not None:
                metadata["duration_ms"] = round(duration_ms, 3)
            self._entries[index] = replace(
                entry,
                role=EntryRole.TOOL_RESULT,
                content=result.render(),
                tool_result=result,
                metadata=metadata,
            )
            self._bump()
            return True

    def pending_tool_calls(self) -> list[ToolCall]:
        with self._lock:
            return [
                entry.tool_call
                for entry in self._entries
                if entry.role is EntryRole.TOOL_CALL and entry.tool_call is not None
            ]

    # ------------------------------------------------------------------
    # Pruning
    # ------------------------------------------------------------------
    def prune(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> int:
        """Drop the oldest entries above ``max_entries`` without splitting a tool pair."""

        with self._lock:
            excess = len(self._entries) - max_entries
            if excess <= 0:
                return 0
            cut = pair_safe_cut(self._entries, excess)
            if cut <= 0:
                return 0
            del self._entries[:cut]
            self._reindex()
            self._bump()
            LOGGER.debug("Pruned %d history entr(ies)", cut)
            return cut

    # ------------------------------------------------------------------
    # Provider messages
    # ------------------------------------------------------------------
    def build_messages(self, system_prompt: str | None = None) -> list[dict[str, Any]]:
        """Translate the sequence into OpenAI-style chat messages.

        Tool results whose originating assistant call is no longer present
        are dropped, as are pending calls that never produced a result.
        """

        entries = self.snapshot()
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})

        announced: set[str] = set()
        answered = {
            entry.call_id
            for entry in entries
            if entry.role is EntryRole.TOOL_RESULT and entry.call_id
        }
        for entry in entries:
            if entry.role is EntryRole.SYSTEM:
                messages.append({"role": "system", "content": entry.content})
            elif entry.role is EntryRole.USER:
                messages.append({"role": "user", "content": entry.content})
            elif entry.role is EntryRole.ASSISTANT:
                calls = [call for call in entry.tool_calls if call.id in answered]
                if not entry.content and not calls:
                    continue
                message: dict[str, Any] = {"role": "assistant", "content": entry.content or None}
                if calls:
                    message["tool_calls"] = [call.to_openai() for call in calls]
                    announced.update(call.id for call in calls)
                messages.append(message)
            elif entry.role is EntryRole.TOOL_RESULT:
                call_id = entry.call_id
                if call_id is None or call_id not in announced:
                    LOGGER.debug("Skipping orphaned tool result %s", call_id)
                    continue
                messages.append({"role": "tool", "tool_call_id": call_id, "content": entry.content})
        return messages

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _reindex(self) -> None:
        self._call_index = {
            entry.tool_call.id: index
            for index, entry in enumerate(self._entries)
            if entry.tool_call is not None
        }

    def _bump(self) -> None:
        self._version += 1


def pair_safe_cut(entries: Sequence[ChatEntry], cut: int) -> int:
    """Move ``cut`` backward until no tool pair straddles ``entries[:cut] | entries[cut:]``.

    A pair is the assistant entry announcing a call id together with every
    entry tracking the same id.  The returned cut may be 0.
    """

    cut = max(0, min(cut, len(entries)))
    while cut > 0:
        tail_ids: set[str] = set()
        for entry in entries[cut:]:
            tail_ids |= entry.referenced_call_ids()
        if not tail_ids:
            return cut
        earliest = cut
        for index in range(cut):
            if entries[index].referenced_call_ids() & tail_ids:
                earliest = index
                break
        if earliest == cut:
            return cut
        cut = earliest
    return cut
