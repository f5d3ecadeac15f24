"""Tests for orchestration/tool_executor.py and orchestration/approvals.py."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Mapping

import pytest

from runloop.ai.events import EventBus, ToolApprovalRequired, ToolApproved, ToolRejected
from runloop.ai.orchestration.approvals import (
    REJECTED_BY_CANCELLATION,
    REJECTED_BY_TIMEOUT,
    ApprovalDecision,
    ApprovalGate,
    ApprovalPolicy,
)
from runloop.ai.orchestration.chat_history import ChatHistoryManager
from runloop.ai.orchestration.tool_executor import ExecutorConfig, ToolCallExecutor
from runloop.ai.orchestration.types import EntryRole, ToolCall, ToolResult, parse_tool_arguments
from runloop.ai.tools import SafetyLevel, ToolRegistry, ToolSpec

_PATH_SCHEMA = {
    "type": "object",
    "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
    "required": ["path"],
}


# -----------------------------------------------------------------------------
# Test Fixtures and Helpers
# -----------------------------------------------------------------------------


def make_call(name: str, arguments: Mapping[str, Any] | str, call_id: str | None = None) -> ToolCall:
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return ToolCall(id=call_id or f"call_{name}", name=name, arguments_json=raw, parsed=parse_tool_arguments(name, raw))


def make_registry(log: list[str] | None = None) -> ToolRegistry:
    registry = ToolRegistry()
    log = log if log is not None else []

    async def read_file(args: Mapping[str, Any]) -> str:
        log.append(f"read:{args['path']}")
        await asyncio.sleep(0.01)
        return f"contents of {args['path']}"

    async def write_file(args: Mapping[str, Any]) -> dict[str, Any]:
        log.append(f"write:{args['path']}")
        return {"written": args["path"], "bytes": len(args.get("content", ""))}

    async def slow(args: Mapping[str, Any]) -> None:
        await asyncio.sleep(5)

    def explode(args: Mapping[str, Any]) -> None:
        raise ValueError("disk on fire")

    registry.register_function(
        ToolSpec(name="read_file", description="Read", parameters=_PATH_SCHEMA, parallel_safe=True), read_file
    )
    registry.register_function(
        ToolSpec(name="write_file", description="Write", parameters=_PATH_SCHEMA, safety_level=SafetyLevel.WRITE),
        write_file,
    )
    registry.register_function(ToolSpec(name="slow", description="Slow", timeout=0.05), slow)
    registry.register_function(ToolSpec(name="explode", description="Fails"), explode)
    return registry


def make_executor(
    registry: ToolRegistry,
    history: ChatHistoryManager,
    *,
    event_bus: EventBus | None = None,
    gate: ApprovalGate | None = None,
    policy: ApprovalPolicy | None = None,
    **config: Any,
) -> ToolCallExecutor:
    return ToolCallExecutor(
        registry,
        history,
        approvals=gate or ApprovalGate(),
        policy=policy or ApprovalPolicy(enabled=False),
        event_bus=event_bus,
        config=ExecutorConfig(**config),
    )


def resolve_on_request(bus: EventBus, gate: ApprovalGate, decide: Callable[[ToolApprovalRequired], ApprovalDecision]) -> None:
    def _handler(event: ToolApprovalRequired) -> None:
        gate.resolve(event.call_id, decide(event))

    bus.subscribe(ToolApprovalRequired, _handler)


# -----------------------------------------------------------------------------
# Execution
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_every_call_ends_as_a_result_entry(history: ChatHistoryManager) -> None:
    executor = make_executor(make_registry(), history)
    calls = [
        make_call("read_file", {"path": "a.txt"}),
        make_call("explode", {}),
        make_call("write_file", "{not json", call_id="call_bad"),
        make_call("unknown_tool", {}),
    ]

    outcomes = await executor.execute_round(calls)

    assert [outcome.call.id for outcome in outcomes] == [call.id for call in calls]
    assert outcomes[0].result.success and outcomes[0].result.output == "contents of a.txt"
    assert not outcomes[1].result.success and "disk on fire" in (outcomes[1].result.error or "")
    assert outcomes[2].result.metadata["phase"] == "parse"
    assert "Unknown tool" in (outcomes[3].result.error or "")
    entries = history.snapshot()
    assert [entry.role for entry in entries] == [EntryRole.TOOL_RESULT] * 4
    assert history.pending_tool_calls() == []


@pytest.mark.asyncio
async def test_repeated_call_ids_are_rejected_before_recording(history: ChatHistoryManager) -> None:
    executor = make_executor(make_registry(), history)
    calls = [make_call("read_file", {"path": "a"}, call_id="call_0"), make_call("read_file", {"path": "b"}, call_id="call_0")]

    with pytest.raises(ValueError, match="call_0"):
        await executor.execute_round(calls)

    assert len(history) == 0


@pytest.mark.asyncio
async def test_unexpected_error_closes_pending_entries(history: ChatHistoryManager, event_bus: EventBus) -> None:
    gate = ApprovalGate()
    gate.open("call_write_file")
    executor = make_executor(make_registry(), history, event_bus=event_bus, gate=gate, policy=ApprovalPolicy())
    calls = [make_call("read_file", {"path": "a"}), make_call("write_file", {"path": "b", "content": "x"})]

    with pytest.raises(ValueError, match="already pending"):
        await executor.execute_round(calls)

    entries = history.snapshot()
    assert [entry.role for entry in entries] == [EntryRole.TOOL_RESULT, EntryRole.TOOL_RESULT]
    assert entries[0].tool_result is not None and entries[0].tool_result.success
    failed = entries[1].tool_result
    assert failed is not None and not failed.success
    assert (failed.error or "").startswith("Tool round aborted")
    assert history.pending_tool_calls() == []


@pytest.mark.asyncio
async def test_schema_violation_is_reported_to_the_model(history: ChatHistoryManager) -> None:
    executor = make_executor(make_registry(), history)

    [outcome] = await executor.execute_round([make_call("read_file", {"content": "no path"})])

    assert not outcome.result.success
    assert outcome.result.error is not None and outcome.result.error.startswith("Invalid arguments for read_file")


@pytest.mark.asyncio
async def test_timeout_fails_only_that_call(history: ChatHistoryManager) -> None:
    executor = make_executor(make_registry(), history)

    outcomes = await executor.execute_round([make_call("slow", {}), make_call("read_file", {"path": "a"})])

    assert "timed out" in (outcomes[0].result.error or "")
    assert outcomes[1].result.success


@pytest.mark.asyncio
async def test_parallel_safe_calls_run_concurrently(history: ChatHistoryManager) -> None:
    log: list[str] = []
    executor = make_executor(make_registry(log), history)
    calls = [
        make_call("read_file", {"path": "a"}, call_id="c1"),
        make_call("read_file", {"path": "b"}, call_id="c2"),
        make_call("write_file", {"path": "c"}, call_id="c3"),
        make_call("read_file", {"path": "d"}, call_id="c4"),
    ]

    outcomes = await executor.execute_round(calls)

    assert all(outcome.result.success for outcome in outcomes)
    # Both reads start before either finishes; the write waits for the batch.
    assert log[:2] == ["read:a", "read:b"]
    assert log[2:] == ["write:c", "read:d"]


@pytest.mark.asyncio
async def test_sequential_when_parallel_disabled(history: ChatHistoryManager) -> None:
    log: list[str] = []
    executor = make_executor(make_registry(log), history, allow_parallel=False)

    await executor.execute_round(
        [make_call("read_file", {"path": "a"}, "c1"), make_call("read_file", {"path": "b"}, "c2")]
    )

    assert log == ["read:a", "read:b"]
    assert executor.config.allow_parallel is False


@pytest.mark.asyncio
async def test_tool_may_return_structured_result(history: ChatHistoryManager) -> None:
    registry = ToolRegistry()
    registry.register_function(ToolSpec(name="check", description=""), lambda args: ToolResult.failure("lint errors", count=2))
    executor = make_executor(registry, history)

    [outcome] = await executor.execute_round([make_call("check", {})])

    assert outcome.result == ToolResult.failure("lint errors", count=2)


@pytest.mark.asyncio
async def test_before_execute_hook_runs_and_failures_are_ignored(history: ChatHistoryManager) -> None:
    seen: list[tuple[str, Mapping[str, Any]]] = []

    async def hook(call: ToolCall, args: Mapping[str, Any]) -> None:
        seen.append((call.name, dict(args)))
        raise RuntimeError("checkpoint store offline")

    executor = ToolCallExecutor(make_registry(), history, before_execute=hook)

    [outcome] = await executor.execute_round([make_call("write_file", {"path": "x.txt"})])

    assert seen == [("write_file", {"path": "x.txt"})]
    assert outcome.result.success


# -----------------------------------------------------------------------------
# Approvals
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_approved_call_executes(history: ChatHistoryManager, event_bus: EventBus, record_events) -> None:
    gate = ApprovalGate()
    events = record_events(ToolApprovalRequired, ToolApproved, ToolRejected)
    resolve_on_request(event_bus, gate, lambda event: ApprovalDecision.approve())
    executor = make_executor(make_registry(), history, event_bus=event_bus, gate=gate, policy=ApprovalPolicy())

    [outcome] = await executor.execute_round([make_call("write_file", {"path": "x.txt", "content": "hi"})])

    assert outcome.approved is True
    assert outcome.result.output == {"written": "x.txt", "bytes": 2}
    assert [event.name for event in events] == ["tool:approval_required", "tool:approved"]
    assert events[0].safety_level == "write"


@pytest.mark.asyncio
async def test_rejected_call_records_failed_result(history: ChatHistoryManager, event_bus: EventBus, record_events) -> None:
    gate = ApprovalGate()
    log: list[str] = []
    events = record_events(ToolRejected)
    resolve_on_request(event_bus, gate, lambda event: ApprovalDecision.reject())
    executor = make_executor(make_registry(log), history, event_bus=event_bus, gate=gate, policy=ApprovalPolicy())

    [outcome] = await executor.execute_round([make_call("write_file", {"path": "x.txt"})])

    assert outcome.approved is False
    assert outcome.result.metadata["rejected"] is True
    assert outcome.result.error == "Rejected: Change rejected by user"
    assert log == []
    assert events[0].reason == "Change rejected by user"


@pytest.mark.asyncio
async def test_modified_arguments_replace_the_originals(history: ChatHistoryManager, event_bus: EventBus, record_events) -> None:
    gate = ApprovalGate()
    events = record_events(ToolApproved)
    resolve_on_request(event_bus, gate, lambda event: ApprovalDecision.modify({"path": "safe.txt"}))
    executor = make_executor(make_registry(), history, event_bus=event_bus, gate=gate, policy=ApprovalPolicy())

    [outcome] = await executor.execute_round([make_call("write_file", {"path": "/etc/passwd"})])

    assert outcome.result.output["written"] == "safe.txt"
    assert events[0].modified is True


@pytest.mark.asyncio
async def test_invalid_modified_arguments_are_rejected(history: ChatHistoryManager, event_bus: EventBus) -> None:
    gate = ApprovalGate()
    resolve_on_request(event_bus, gate, lambda event: ApprovalDecision.modify({"content": "no path"}))
    executor = make_executor(make_registry(), history, event_bus=event_bus, gate=gate, policy=ApprovalPolicy())

    [outcome] = await executor.execute_round([make_call("write_file", {"path": "x"})])

    assert outcome.approved is False
    assert "Modified arguments are invalid" in (outcome.result.error or "")


@pytest.mark.asyncio
async def test_read_only_tools_skip_approval(history: ChatHistoryManager, event_bus: EventBus, record_events) -> None:
    events = record_events(ToolApprovalRequired)
    executor = make_executor(make_registry(), history, event_bus=event_bus, policy=ApprovalPolicy())

    [outcome] = await executor.execute_round([make_call("read_file", {"path": "a"})])

    assert outcome.approved is None
    assert events == []


@pytest.mark.asyncio
async def test_approval_timeout_rejects(history: ChatHistoryManager) -> None:
    executor = make_executor(make_registry(), history, gate=ApprovalGate(timeout=0.01), policy=ApprovalPolicy())

    [outcome] = await executor.execute_round([make_call("write_file", {"path": "x"})])

    assert outcome.result.error == f"Rejected: {REJECTED_BY_TIMEOUT}"


@pytest.mark.asyncio
async def test_cancel_all_rejects_pending_approvals(history: ChatHistoryManager, event_bus: EventBus, record_events) -> None:
    gate = ApprovalGate()
    events = record_events(ToolRejected)
    executor = make_executor(make_registry(), history, event_bus=event_bus, gate=gate, policy=ApprovalPolicy())

    task = asyncio.create_task(executor.execute_round([make_call("write_file", {"path": "x"})]))
    while not gate.pending_ids:
        await asyncio.sleep(0)
    assert gate.cancel_all() == 1
    [outcome] = await task

    assert outcome.result.error == f"Rejected: {REJECTED_BY_CANCELLATION}"
    assert events[0].reason == REJECTED_BY_CANCELLATION


@pytest.mark.asyncio
async def test_task_cancellation_closes_every_pending_entry(history: ChatHistoryManager, event_bus: EventBus, record_events) -> None:
    gate = ApprovalGate()
    events = record_events(ToolRejected)
    executor = make_executor(make_registry(), history, event_bus=event_bus, gate=gate, policy=ApprovalPolicy())
    calls = [make_call("write_file", {"path": "x"}, "c1"), make_call("read_file", {"path": "y"}, "c2")]

    task = asyncio.create_task(executor.execute_round(calls))
    while not gate.pending_ids:
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    entries = history.snapshot()
    assert [entry.role for entry in entries] == [EntryRole.TOOL_RESULT, EntryRole.TOOL_RESULT]
    assert entries[0].tool_result is not None and entries[0].tool_result.metadata["rejected"] is True
    assert entries[1].tool_result is not None and entries[1].tool_result.metadata["cancelled"] is True
    assert [event.call_id for event in events] == ["c1"]


def test_policy_lists_override_levels() -> None:
    policy = ApprovalPolicy(always_require=frozenset({"read_file"}), never_require=frozenset({"write_file"}))

    assert policy.requires_approval("read_file", SafetyLevel.READ_ONLY)
    assert not policy.requires_approval("write_file", SafetyLevel.WRITE)
    assert policy.requires_approval("rm", SafetyLevel.DESTRUCTIVE)
    assert not ApprovalPolicy(enabled=False).requires_approval("rm", SafetyLevel.DESTRUCTIVE)


@pytest.mark.asyncio
async def test_gate_ignores_unknown_and_duplicate_decisions() -> None:
    gate = ApprovalGate()

    assert not gate.resolve("nobody", ApprovalDecision.approve())
    gate.open("c1")
    with pytest.raises(ValueError):
        gate.open("c1")
    assert gate.resolve("c1", ApprovalDecision.approve())
    assert not gate.resolve("c1", ApprovalDecision.reject())
    assert (await gate.wait("c1")).approved
    assert not gate.is_pending("c1")
