"""Tests for orchestration/agent_loop.py."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, AsyncIterator, Mapping, Sequence

import pytest

from runloop.ai.checkpoints import CheckpointManager, CheckpointStorage
from runloop.ai.errors import CheckpointNotFoundError, ConfigurationError, ProviderStreamError
from runloop.ai.events import (
    ContentStreamed,
    ErrorRaised,
    EventBus,
    PhaseCompleted,
    PhaseFailed,
    PhaseStarted,
    SystemNotice,
    ToolRoundsTruncated,
)
from runloop.ai.orchestration.agent_loop import (
    TRUNCATION_MESSAGE,
    AgentLoop,
    AgentSession,
    LoopConfig,
    LoopState,
    extract_paths,
)
from runloop.ai.orchestration.approvals import ApprovalPolicy
from runloop.ai.orchestration.chat_history import ChatHistoryManager
from runloop.ai.orchestration.context_overflow import (
    ContextOverflowHandler,
    ExtractiveSummaryGenerator,
    OverflowConfig,
)
from runloop.ai.orchestration.types import (
    ChatEntry,
    ContentDelta,
    DoneChunk,
    EntryRole,
    StreamChunk,
    ToolCallDelta,
    ToolResult,
    Usage,
)
from runloop.ai.roles import ANALYSIS
from runloop.ai.tool_servers import ToolServerConfig, ToolServerConnectionManager, ToolServerTool
from runloop.ai.tools import SafetyLevel, ToolRegistry, ToolSpec
from runloop.services.settings import RuntimeSettings

_PATH_SCHEMA = {
    "type": "object",
    "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
    "required": ["path"],
}


class _ScriptedClient:
    """Model client replaying one scripted reply per request.

    A script item may be a chunk, an exception to raise, or an
    ``asyncio.Event`` to wait on before continuing.
    """

    def __init__(self, *replies: Sequence[Any]) -> None:
        self.replies = list(replies)
        self.requests: list[dict[str, Any]] = []

    async def stream_chat(
        self,
        messages,
        *,
        tools=None,
        temperature=None,
        max_completion_tokens=None,
    ) -> AsyncIterator[StreamChunk]:
        self.requests.append({"messages": list(messages), "tools": tools, "temperature": temperature})
        script = self.replies.pop(0)
        for item in script:
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            yield item


def text_reply(*pieces: str) -> list[StreamChunk]:
    chunks: list[StreamChunk] = [ContentDelta(piece) for piece in pieces]
    chunks.append(DoneChunk(finish_reason="stop", usage=Usage(12, 3, 15)))
    return chunks


def tool_reply(name: str, arguments: Mapping[str, Any], call_id: str) -> list[StreamChunk]:
    return [
        ToolCallDelta(index=0, call_id=call_id, name=name),
        ToolCallDelta(index=0, arguments_fragment=json.dumps(arguments)),
        DoneChunk(finish_reason="tool_calls"),
    ]


def make_registry(workspace: Path | None = None) -> ToolRegistry:
    registry = ToolRegistry()

    def read_file(args: Mapping[str, Any]) -> str:
        if workspace is None:
            return f"contents of {args['path']}"
        return (workspace / args["path"]).read_text(encoding="utf-8")

    def write_file(args: Mapping[str, Any]) -> str:
        assert workspace is not None
        (workspace / args["path"]).write_text(args.get("content", ""), encoding="utf-8")
        return "ok"

    registry.register_function(ToolSpec(name="read_file", description="Read", parameters=_PATH_SCHEMA), read_file)
    registry.register_function(
        ToolSpec(name="write_file", description="Write", parameters=_PATH_SCHEMA, safety_level=SafetyLevel.WRITE),
        write_file,
    )
    return registry


def make_loop(client: _ScriptedClient, bus: EventBus, **session: Any) -> AgentLoop:
    session.setdefault("registry", make_registry())
    return AgentLoop(AgentSession(client=client, event_bus=bus, **session))


# -----------------------------------------------------------------------------
# Turns
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_plain_reply_is_streamed_into_history(event_bus: EventBus, record_events) -> None:
    client = _ScriptedClient(text_reply("Hel", "lo"))
    events = record_events(ContentStreamed, PhaseStarted, PhaseCompleted)
    loop = make_loop(client, event_bus)

    outcome = await loop.process_user_message("hi")

    assert outcome.ok
    assert outcome.content == "Hello"
    assert outcome.rounds == 0
    entries = loop.session.history.snapshot()
    assert [(entry.role, entry.content) for entry in entries] == [
        (EntryRole.USER, "hi"),
        (EntryRole.ASSISTANT, "Hello"),
    ]
    assert not entries[1].streaming
    assert entries[1].metadata["finish_reason"] == "stop"
    assert entries[1].metadata["usage"]["total_tokens"] == 15
    assert [event.delta for event in events if isinstance(event, ContentStreamed)] == ["Hel", "lo"]
    assert [event.name for event in events if not isinstance(event, ContentStreamed)] == [
        "phase:started",
        "phase:completed",
    ]
    request = client.requests[0]
    assert request["messages"][0]["role"] == "system"
    assert "the current workspace" in request["messages"][0]["content"]
    assert request["messages"][-1] == {"role": "user", "content": "hi"}
    assert {tool["function"]["name"] for tool in request["tools"]} == {"read_file", "write_file"}
    assert loop.state is LoopState.IDLE


@pytest.mark.asyncio
async def test_tool_round_feeds_results_back_to_model(event_bus: EventBus) -> None:
    client = _ScriptedClient(
        tool_reply("read_file", {"path": "a.txt"}, "call_1"),
        text_reply("The file says hi."),
    )
    loop = make_loop(client, event_bus)

    outcome = await loop.process_user_message("what is in a.txt?")

    assert outcome.ok and outcome.rounds == 1
    assert outcome.content == "The file says hi."
    second = client.requests[1]["messages"]
    assert second[-2]["tool_calls"][0]["id"] == "call_1"
    assert second[-1] == {"role": "tool", "tool_call_id": "call_1", "content": "contents of a.txt"}
    roles = [entry.role for entry in loop.session.history.snapshot()]
    assert roles == [EntryRole.USER, EntryRole.ASSISTANT, EntryRole.TOOL_RESULT, EntryRole.ASSISTANT]


@pytest.mark.asyncio
async def test_round_limit_truncates_and_keeps_history(event_bus: EventBus, record_events) -> None:
    client = _ScriptedClient(
        *(tool_reply("read_file", {"path": f"{index}.txt"}, f"call_{index}") for index in range(4))
    )
    events = record_events(ToolRoundsTruncated, SystemNotice)
    loop = make_loop(client, event_bus, config=LoopConfig(max_tool_rounds=3))

    outcome = await loop.process_user_message("loop forever")

    assert outcome.ok
    assert outcome.truncated
    assert outcome.rounds == 3
    assert len(client.requests) == 3
    truncated = [event for event in events if isinstance(event, ToolRoundsTruncated)]
    assert [(event.rounds, event.max_rounds) for event in truncated] == [(3, 3)]
    assert any(isinstance(event, SystemNotice) and event.message == TRUNCATION_MESSAGE for event in events)
    entries = loop.session.history.snapshot()
    assert len(entries) == 7
    assert [entry.call_id for entry in entries if entry.role is EntryRole.TOOL_RESULT] == [
        "call_0",
        "call_1",
        "call_2",
    ]


@pytest.mark.asyncio
async def test_role_limits_tools_and_rounds(event_bus: EventBus) -> None:
    client = _ScriptedClient(text_reply("analysis done"))
    loop = make_loop(client, event_bus, role=ANALYSIS)

    await loop.process_user_message("analyse")

    assert loop.max_tool_rounds == 15
    assert [tool["function"]["name"] for tool in client.requests[0]["tools"]] == ["read_file"]
    assert "never modify files" in client.requests[0]["messages"][0]["content"]


@pytest.mark.asyncio
async def test_overflow_is_checked_before_each_request(event_bus: EventBus) -> None:
    history = ChatHistoryManager([ChatEntry.user(f"old {index} " + "o" * 400) for index in range(30)])
    overflow = ContextOverflowHandler(
        OverflowConfig(context_window=2_000, threshold=0.5, preserve_recent=4, max_entries=100),
        generator=ExtractiveSummaryGenerator(),
    )
    client = _ScriptedClient(text_reply("fine"))
    loop = make_loop(client, event_bus, history=history, overflow=overflow)

    await loop.process_user_message("new question")

    sent = client.requests[0]["messages"]
    assert sent[1]["role"] == "system"
    assert sent[1]["content"].startswith("Summary of earlier conversation:")
    assert sent[-1] == {"role": "user", "content": "new question"}


# -----------------------------------------------------------------------------
# Failure & cancellation
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_provider_failure_ends_turn_with_error_events(event_bus: EventBus, record_events) -> None:
    client = _ScriptedClient([ContentDelta("par"), ProviderStreamError("upstream 502", status_code=502)])
    events = record_events(PhaseFailed, ErrorRaised)
    loop = make_loop(client, event_bus)

    outcome = await loop.process_user_message("hi")

    assert outcome.state is LoopState.FAILED
    assert outcome.error == "upstream 502"
    failed, raised = events
    assert (failed.phase, failed.error) == ("stream", "upstream 502")
    assert raised.error_type == "ProviderStreamError"
    assert raised.history_length == 2
    entry = loop.session.history.get(1)
    assert entry.content == "par"
    assert not entry.streaming
    assert entry.metadata["error"] == "upstream 502"
    assert loop.state is LoopState.FAILED


@pytest.mark.asyncio
async def test_empty_stream_is_a_provider_response_error(event_bus: EventBus, record_events) -> None:
    events = record_events(ErrorRaised)
    loop = make_loop(_ScriptedClient([]), event_bus)

    outcome = await loop.process_user_message("hi")

    assert outcome.state is LoopState.FAILED
    assert events[0].error_type == "ProviderResponseError"


@pytest.mark.asyncio
async def test_cancel_keeps_partial_content(event_bus: EventBus, record_events) -> None:
    hang = asyncio.Event()
    client = _ScriptedClient([ContentDelta("partial answer"), hang, DoneChunk(finish_reason="stop")])
    events = record_events(ContentStreamed, SystemNotice)
    loop = make_loop(client, event_bus)

    turn = asyncio.create_task(loop.process_user_message("long question"))
    while not events:
        await asyncio.sleep(0)
    assert loop.is_running
    assert loop.cancel()
    outcome = await turn

    assert outcome.state is LoopState.CANCELLED
    assert outcome.content == "partial answer"
    entry = loop.session.history.get(1)
    assert (entry.content, entry.streaming, entry.metadata["cancelled"]) == ("partial answer", False, True)
    assert any(isinstance(event, SystemNotice) and event.message == "Request cancelled" for event in events)
    assert not loop.is_running
    assert not loop.cancel()


@pytest.mark.asyncio
async def test_cancel_during_approval_rejects_pending_call(event_bus: EventBus) -> None:
    client = _ScriptedClient(tool_reply("write_file", {"path": "x.txt"}, "call_w"))
    loop = make_loop(client, event_bus, policy=ApprovalPolicy())

    turn = asyncio.create_task(loop.process_user_message("write it"))
    while not loop.session.approvals.pending_ids:
        await asyncio.sleep(0)
    loop.cancel()
    outcome = await turn

    assert outcome.state is LoopState.CANCELLED
    result_entry = loop.session.history.snapshot()[-1]
    assert result_entry.role is EntryRole.TOOL_RESULT
    assert result_entry.tool_result is not None and not result_entry.tool_result.success


@pytest.mark.asyncio
async def test_second_message_while_running_is_refused(event_bus: EventBus) -> None:
    hang = asyncio.Event()
    client = _ScriptedClient([hang, *text_reply("done")])
    loop = make_loop(client, event_bus)

    turn = asyncio.create_task(loop.process_user_message("first"))
    while not client.requests:
        await asyncio.sleep(0)
    with pytest.raises(RuntimeError):
        await loop.process_user_message("second")
    hang.set()

    assert (await turn).content == "done"


@pytest.mark.asyncio
async def test_sessions_are_independent(event_bus: EventBus) -> None:
    hang = asyncio.Event()
    slow = make_loop(_ScriptedClient([ContentDelta("slow"), hang]), EventBus())
    fast = make_loop(_ScriptedClient(text_reply("fast")), event_bus)

    slow_turn = asyncio.create_task(slow.process_user_message("a"))
    fast_outcome = await fast.process_user_message("b")
    slow.cancel()
    slow_outcome = await slow_turn

    assert fast_outcome.content == "fast"
    assert slow_outcome.state is LoopState.CANCELLED
    assert len(fast.session.history) == 2


# -----------------------------------------------------------------------------
# Checkpoints
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_checkpoint_before_write_and_rewind(tmp_path: Path, event_bus: EventBus, record_events) -> None:
    workspace = tmp_path / "ws"
    workspace.mkdir()
    target = workspace / "notes.md"
    target.write_text("before", encoding="utf-8")
    history = ChatHistoryManager()
    checkpoints = CheckpointManager(CheckpointStorage(tmp_path / "store"), history, workspace=workspace)
    client = _ScriptedClient(
        tool_reply("write_file", {"path": "notes.md", "content": "after"}, "call_w"),
        text_reply("written"),
    )
    notices = record_events(SystemNotice)
    loop = make_loop(client, event_bus, registry=make_registry(workspace), history=history, checkpoints=checkpoints)

    outcome = await loop.process_user_message("update notes")

    assert outcome.ok
    assert target.read_text(encoding="utf-8") == "after"
    assert outcome.checkpoint_id is not None
    checkpoint = await checkpoints.get(outcome.checkpoint_id)
    assert checkpoint is not None
    assert checkpoint.files_changed == ["notes.md"]
    assert checkpoint.metadata["triggered_by"] == "tool"
    assert checkpoint.metadata["tool_name"] == "write_file"

    result = await loop.rewind_to_checkpoint(outcome.checkpoint_id)

    assert result.success
    assert target.read_text(encoding="utf-8") == "before"
    assert len(history) == result.conversation_index
    assert history.snapshot()[0].content == "update notes"
    assert notices[-1].message == f"Conversation rewound to checkpoint {outcome.checkpoint_id}"
    assert notices[-1].metadata["files_restored"] == ["notes.md"]


@pytest.mark.asyncio
async def test_rewind_errors(tmp_path: Path, event_bus: EventBus) -> None:
    without = make_loop(_ScriptedClient(), event_bus)
    with pytest.raises(ConfigurationError):
        await without.rewind_to_checkpoint("ckpt-1")

    history = ChatHistoryManager()
    checkpoints = CheckpointManager(CheckpointStorage(tmp_path), history)
    loop = make_loop(_ScriptedClient(), event_bus, history=history, checkpoints=checkpoints)
    with pytest.raises(CheckpointNotFoundError):
        await loop.rewind_to_checkpoint("ckpt-000001-missing")


def test_extract_paths_deduplicates_in_order() -> None:
    arguments = {"path": "a.txt", "files": ["b.txt", "a.txt", 3], "destination": "c.txt", "content": "x"}

    assert extract_paths(arguments) == ["a.txt", "c.txt", "b.txt"]
    assert extract_paths({"content": "no paths"}) == []


def test_invalid_round_limit_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        AgentLoop(AgentSession(client=_ScriptedClient(), registry=ToolRegistry(), config=LoopConfig(max_tool_rounds=0)))


# -----------------------------------------------------------------------------
# Assembly
# -----------------------------------------------------------------------------


class _FakeHandle:
    async def list_tools(self):
        return [ToolServerTool(server="db", name="query")]

    async def call_tool(self, name, arguments):
        return ToolResult.ok("rows")

    async def close(self) -> None:
        return None


class _FakeTransport:
    async def connect(self, config: ToolServerConfig, *, on_lost=None) -> _FakeHandle:
        if config.name == "broken":
            raise OSError("spawn failed")
        return _FakeHandle()


@pytest.mark.asyncio
async def test_connect_tool_servers_registers_tools_and_reports_failures(event_bus: EventBus, record_events) -> None:
    notices = record_events(SystemNotice)
    registry = ToolRegistry()
    loop = make_loop(
        _ScriptedClient(),
        event_bus,
        registry=registry,
        tool_servers=ToolServerConnectionManager(_FakeTransport()),
        tool_server_configs=(ToolServerConfig(name="db"), ToolServerConfig(name="broken")),
    )

    outcome = await loop.connect_tool_servers()

    assert set(outcome) == {"db", "broken"}
    assert registry.has("mcp__db__query")
    assert len(notices) == 1 and notices[0].metadata == {"server": "broken"}
    await loop.aclose()
    assert loop.session.tool_servers is not None
    assert loop.session.tool_servers.get_servers() == []


@pytest.mark.asyncio
async def test_session_from_settings(tmp_path: Path) -> None:
    settings = RuntimeSettings(
        api_key="sk-test",
        role="testing",
        max_tool_rounds=4,
        checkpoint_dir=str(tmp_path / "state"),
        tool_servers=[ToolServerConfig(name="db", command="db-server")],
    )
    settings.overflow.summarize_with_model = False
    settings.approvals.enabled = True

    session = AgentSession.from_settings(
        settings, client=_ScriptedClient(), workspace=tmp_path, transport=_FakeTransport()
    )
    loop = AgentLoop(session)

    assert session.role.name == "testing"
    assert loop.max_tool_rounds == 20
    assert session.config.max_tool_rounds == 4
    assert session.checkpoints is not None
    assert session.checkpoints.storage.root == tmp_path / "state" / "checkpoints"
    assert session.tool_servers is not None
    assert [config.name for config in session.tool_server_configs] == ["db"]
    assert session.policy.enabled


def test_session_from_settings_validates() -> None:
    with pytest.raises(ConfigurationError):
        AgentSession.from_settings(RuntimeSettings(max_tool_rounds=0), client=_ScriptedClient())
