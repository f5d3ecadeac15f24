"""Unit tests for :mod:`runloop.ai.events`."""

from __future__ import annotations

import gc

import pytest

from runloop.ai.events import (
    ContentStreamed,
    ErrorRaised,
    EventBus,
    PhaseFailed,
    SystemNotice,
    ToolApprovalRequired,
    ToolApproved,
    ToolRejected,
    ToolRoundsTruncated,
)


class TestEventNames:
    """Wire names UI layers dispatch on."""

    @pytest.mark.parametrize(
        ("event", "name"),
        [
            (SystemNotice("hi"), "system"),
            (ErrorRaised(message="boom", error_type="ProviderStreamError", history_length=3), "error"),
            (ContentStreamed(entry_index=1, delta="x"), "content"),
            (ToolApprovalRequired(call_id="c1", tool_name="write_file", arguments={}, safety_level="write"), "tool:approval_required"),
            (ToolApproved(call_id="c1", tool_name="write_file"), "tool:approved"),
            (ToolRejected(call_id="c1", tool_name="write_file", reason="no"), "tool:rejected"),
            (PhaseFailed(phase="stream", error="boom"), "phase:failed"),
            (ToolRoundsTruncated(rounds=3, max_rounds=3, message="stop"), "loop:truncated"),
        ],
    )
    def test_event_name(self, event, name: str) -> None:
        assert event.name == name


class TestEventBus:
    """Subscription, ordering and failure isolation."""

    def test_handlers_run_in_registration_order(self) -> None:
        bus = EventBus()
        calls: list[str] = []
        bus.subscribe(SystemNotice, lambda event: calls.append(f"first:{event.message}"))
        bus.subscribe(SystemNotice, lambda event: calls.append(f"second:{event.message}"))

        bus.publish(SystemNotice("hello"))

        assert calls == ["first:hello", "second:hello"]

    def test_dispatch_is_by_exact_type(self) -> None:
        bus = EventBus()
        notices: list[SystemNotice] = []
        bus.subscribe(SystemNotice, notices.append)

        bus.publish(ToolRejected(call_id="c1", tool_name="x", reason="no"))

        assert notices == []

    def test_failing_handler_does_not_stop_others(self, caplog: pytest.LogCaptureFixture) -> None:
        bus = EventBus()
        received: list[str] = []

        def broken(event: SystemNotice) -> None:
            raise RuntimeError("handler bug")

        bus.subscribe(SystemNotice, broken)
        bus.subscribe(SystemNotice, lambda event: received.append(event.message))

        bus.publish(SystemNotice("still delivered"))

        assert received == ["still delivered"]
        assert "raised exception for event system" in caplog.text

    def test_unsubscribe_removes_first_registration(self) -> None:
        bus = EventBus()
        received: list[SystemNotice] = []
        bus.subscribe(SystemNotice, received.append)
        bus.subscribe(SystemNotice, received.append)

        bus.unsubscribe(SystemNotice, received.append)
        bus.unsubscribe(ToolApproved, received.append)
        bus.publish(SystemNotice("once"))

        assert len(received) == 1
        assert bus.handler_count(SystemNotice) == 1

    def test_bound_methods_are_weak(self) -> None:
        class Listener:
            def __init__(self) -> None:
                self.seen: list[str] = []

            def on_notice(self, event: SystemNotice) -> None:
                self.seen.append(event.message)

        bus = EventBus()
        listener = Listener()
        bus.subscribe(SystemNotice, listener.on_notice)
        bus.publish(SystemNotice("alive"))
        assert listener.seen == ["alive"]

        del listener
        gc.collect()
        bus.publish(SystemNotice("gone"))

        assert bus.handler_count(SystemNotice) == 0

    def test_clear(self) -> None:
        bus = EventBus()
        bus.subscribe(SystemNotice, lambda event: None)
        bus.subscribe(ToolApproved, lambda event: None)

        assert bus.handler_count() == 2
        bus.clear()
        assert bus.handler_count() == 0
