"""Shared typing contracts for AI infrastructure."""

from __future__ import annotations

from typing import Any, AsyncIterator, Iterable, Mapping, Protocol, Sequence, runtime_checkable

from .orchestration.types import StreamChunk

__all__ = ["TokenCounterProtocol", "ModelClient"]


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


@runtime_checkable
class ModelClient(Protocol):
    """Streaming model provider consumed by the agent loop.

    Implementations yield :data:`StreamChunk` values and raise
    :class:`~runloop.ai.errors.TransportError` on I/O failure.
    """

    def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        temperature: float | None = None,
        max_completion_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        ...
