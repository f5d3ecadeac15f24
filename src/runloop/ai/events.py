"""Typed events pushed from the runtime to UI/CLI layers.

Handlers subscribe per event class and are invoked synchronously in
registration order.  A failing handler is logged and never disturbs the
runtime or the remaining handlers.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, DefaultDict, Generic, Mapping, TypeVar
from weakref import WeakMethod

__all__ = [
    "Event",
    "SystemNotice",
    "ErrorRaised",
    "ContentStreamed",
    "ToolApprovalRequired",
    "ToolApproved",
    "ToolRejected",
    "PhaseStarted",
    "PhaseCompleted",
    "PhaseFailed",
    "ContextSummarized",
    "ToolRoundsTruncated",
    "EventBus",
]

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for every pushed event.

    ``name`` is the wire name UI layers dispatch on (``"tool:approved"`` ...).
    """

    name: ClassVar[str] = "event"


# High-frequency event types that should not log each publish
_QUIET_EVENT_TYPES: set[type] = set()


# =============================================================================
# Conversation events
# =============================================================================


@dataclass(slots=True)
class SystemNotice(Event):
    """Informational message for the transcript (rewinds, truncation, ...)."""

    name: ClassVar[str] = "system"

    message: str
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ErrorRaised(Event):
    """A loop-level failure ended the current round.

    Attributes:
        message: Human-readable description.
        error_type: Exception class name.
        history_length: Length of the last consistent history.
        checkpoint_id: Most recent checkpoint, if any, for recovery.
    """

    name: ClassVar[str] = "error"

    message: str
    error_type: str
    history_length: int
    checkpoint_id: str | None = None


@dataclass(slots=True)
class ContentStreamed(Event):
    """A slice of assistant text was appended to the in-flight entry."""

    name: ClassVar[str] = "content"

    entry_index: int
    delta: str


_QUIET_EVENT_TYPES.add(ContentStreamed)


# =============================================================================
# Tool approval events
# =============================================================================


@dataclass(slots=True)
class ToolApprovalRequired(Event):
    """A tool call is suspended pending an external decision.

    Resolve it with :meth:`ApprovalGate.resolve` using ``call_id``.
    """

    name: ClassVar[str] = "tool:approval_required"

    call_id: str
    tool_name: str
    arguments: Mapping[str, Any]
    safety_level: str


@dataclass(slots=True)
class ToolApproved(Event):
    name: ClassVar[str] = "tool:approved"

    call_id: str
    tool_name: str
    modified: bool = False


@dataclass(slots=True)
class ToolRejected(Event):
    name: ClassVar[str] = "tool:rejected"

    call_id: str
    tool_name: str
    reason: str


# =============================================================================
# Phase events
# =============================================================================


@dataclass(slots=True)
class PhaseStarted(Event):
    name: ClassVar[str] = "phase:started"

    phase: str
    round: int = 0


@dataclass(slots=True)
class PhaseCompleted(Event):
    name: ClassVar[str] = "phase:completed"

    phase: str
    round: int = 0
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PhaseFailed(Event):
    name: ClassVar[str] = "phase:failed"

    phase: str
    error: str
    round: int = 0


# =============================================================================
# Context events
# =============================================================================


@dataclass(slots=True)
class ContextSummarized(Event):
    """Oldest entries were replaced by a summary.

    Attributes:
        tokens_before: Token estimate before summarization.
        tokens_after: Token estimate after summarization.
        summarized_entries: Number of entries replaced.
        preserved_entries: Number of newest entries kept verbatim.
    """

    name: ClassVar[str] = "context:summary"

    tokens_before: int
    tokens_after: int
    summarized_entries: int
    preserved_entries: int


@dataclass(slots=True)
class ToolRoundsTruncated(Event):
    """The loop stopped because it reached its tool-round limit."""

    name: ClassVar[str] = "loop:truncated"

    rounds: int
    max_rounds: int
    message: str


# =============================================================================
# Event bus
# =============================================================================


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus.

    Example::

        bus = EventBus()

        def on_rejected(event: ToolRejected) -> None:
            print(event.reason)

        bus.subscribe(ToolRejected, on_rejected)
        bus.publish(ToolRejected(call_id="c1", tool_name="write_file", reason="no"))

    Bound methods are held weakly so a subscriber that goes away is dropped
    automatically.  All calls must come from the event loop thread.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register ``handler`` for events of exactly ``event_type``."""
        self._handlers[event_type].append(_HandlerRef.create(handler))
        logger.debug(
            "Subscribed handler %s to event type %s",
            _handler_name(handler),
            event_type.__name__,
        )

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return
        for i, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(i)
                return

    def publish(self, event: E) -> None:
        """Deliver ``event`` to its handlers, logging (not raising) handler errors."""
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        is_quiet = event_type in _QUIET_EVENT_TYPES

        if not handlers:
            if not is_quiet:
                logger.debug("No handlers for event %s", event.name)
            return

        if not is_quiet:
            logger.debug("Publishing %s to %d handler(s)", event.name, len(handlers))

        has_dead = False
        for handler_ref in list(handlers):
            handler = handler_ref.resolve()
            if handler is None:
                has_dead = True
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event.name,
                )

        if has_dead:
            handlers[:] = [item for item in handlers if item.resolve() is not None]

    def clear(self) -> None:
        self._handlers.clear()

    def handler_count(self, event_type: type[Event] | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, ()))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Strong or weak reference to a handler, depending on its kind."""

    __slots__ = ("_ref", "_strong")

    def __init__(self, strong: Callable[..., None] | None, weak: Any = None) -> None:
        self._strong = strong
        self._ref = weak

    @classmethod
    def create(cls, handler: Callable[..., None]) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            return cls(None, WeakMethod(handler))  # type: ignore[arg-type]
        return cls(handler)

    def resolve(self) -> Callable[..., None] | None:
        if self._strong is not None:
            return self._strong
        return self._ref() if self._ref is not None else None

    def matches(self, handler: Callable[..., None]) -> bool:
        return self.resolve() == handler


def _handler_name(handler: Callable[..., Any]) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)
