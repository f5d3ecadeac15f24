"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Any, Callable

import pytest

from runloop.ai.events import Event, EventBus
from runloop.ai.orchestration.chat_history import ChatHistoryManager


@pytest.fixture
def history() -> ChatHistoryManager:
    return ChatHistoryManager()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def record_events(event_bus: EventBus) -> Callable[..., list[Any]]:
    """Subscribe a collector to the given event types and return the shared list."""

    def _record(*event_types: type[Event]) -> list[Any]:
        seen: list[Any] = []
        for event_type in event_types:
            event_bus.subscribe(event_type, seen.append)
        return seen

    return _record
