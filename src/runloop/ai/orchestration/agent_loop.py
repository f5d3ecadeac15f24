"""The conversational control loop.

One :class:`AgentLoop` drives one session: it streams the model's reply into
the history, runs the requested tool calls, and repeats until the model
answers without tools, the round limit is reached, or a loop-level error ends
the turn.  Everything the loop needs travels in an :class:`AgentSession`, so
independent sessions share nothing but what the caller explicitly shares.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

from ...services.settings import RuntimeSettings
from ...utils.logging import bind_session
from ..ai_types import ModelClient
from ..checkpoints import CheckpointManager, CheckpointOptions, CheckpointStorage, RestoreResult
from ..client import AIClient
from ..errors import (
    CheckpointNotFoundError,
    ConfigurationError,
    ProviderResponseError,
    RuntimeErrorBase,
)
from ..events import (
    ContentStreamed,
    ErrorRaised,
    EventBus,
    PhaseCompleted,
    PhaseFailed,
    PhaseStarted,
    SystemNotice,
    ToolRoundsTruncated,
)
from ..roles import GENERAL, AgentRole, get_role
from ..tool_servers.manager import ToolServerConnectionManager
from ..tool_servers.mcp_transport import McpStdioTransport
from ..tool_servers.types import ToolServerConfig, ToolServerTransport
from ..tools.registry import ToolRegistry
from .approvals import REJECTED_BY_CANCELLATION, ApprovalGate, ApprovalPolicy
from .chat_history import ChatHistoryManager
from .context_overflow import (
    ContextOverflowHandler,
    ExtractiveSummaryGenerator,
    ModelSummaryGenerator,
)
from .stream_accumulator import StreamAccumulator
from .tool_executor import ExecutorConfig, ToolCallExecutor, ToolCallOutcome
from .types import AccumulatedMessage, ChatEntry, ToolCall

__all__ = [
    "LoopState",
    "LoopConfig",
    "LoopOutcome",
    "AgentSession",
    "AgentLoop",
    "TRUNCATION_MESSAGE",
    "extract_paths",
]

LOGGER = logging.getLogger(__name__)

TRUNCATION_MESSAGE = "Maximum tool execution rounds reached. Stopping to prevent infinite loops."

_PATH_KEYS: tuple[str, ...] = ("path", "file_path", "filepath", "file", "target", "destination")
_PATHS_KEYS: tuple[str, ...] = ("paths", "files", "file_paths")


class LoopState(str, enum.Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    EXECUTING_TOOLS = "executing_tools"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True, frozen=True)
class LoopConfig:
    """Per-session loop limits.

    Attributes:
        max_tool_rounds: Tool rounds allowed per user message.
        temperature: Sampling temperature forwarded to the model.
        max_completion_tokens: Completion cap forwarded to the model.
        tool_timeout: Default timeout for one tool execution in seconds.
        system_prompt: Overrides the role's rendered prompt when set.
        prompt_context: Values substituted into the role's prompt template.
    """

    max_tool_rounds: int = 10
    temperature: float | None = 0.2
    max_completion_tokens: int | None = None
    tool_timeout: float | None = 30.0
    system_prompt: str | None = None
    prompt_context: Mapping[str, Any] = field(default_factory=dict)

    def validate(self) -> LoopConfig:
        if self.max_tool_rounds < 1:
            raise ConfigurationError(
                "max_tool_rounds must be at least 1", field="max_tool_rounds", value=self.max_tool_rounds
            )
        if self.tool_timeout is not None and self.tool_timeout <= 0:
            raise ConfigurationError("tool_timeout must be positive", field="tool_timeout", value=self.tool_timeout)
        return self


@dataclass(slots=True, frozen=True)
class LoopOutcome:
    """How one ``process_user_message`` call ended.

    Attributes:
        state: ``IDLE`` on success, otherwise ``FAILED`` or ``CANCELLED``.
        content: Text of the last assistant entry (partial when cancelled).
        rounds: Tool rounds executed.
        truncated: The round limit stopped the loop.
        error: Failure description for ``FAILED``.
        history_length: Length of the history when the loop stopped.
        checkpoint_id: Most recent checkpoint, if any.
    """

    state: LoopState
    content: str = ""
    rounds: int = 0
    truncated: bool = False
    error: str | None = None
    history_length: int = 0
    checkpoint_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.state is LoopState.IDLE


@dataclass(slots=True)
class AgentSession:
    """Everything one loop instance works with."""

    client: ModelClient
    registry: ToolRegistry
    history: ChatHistoryManager = field(default_factory=ChatHistoryManager)
    event_bus: EventBus = field(default_factory=EventBus)
    approvals: ApprovalGate = field(default_factory=ApprovalGate)
    policy: ApprovalPolicy = field(default_factory=lambda: ApprovalPolicy(enabled=False))
    overflow: ContextOverflowHandler | None = None
    checkpoints: CheckpointManager | None = None
    tool_servers: ToolServerConnectionManager | None = None
    tool_server_configs: Sequence[ToolServerConfig] = ()
    role: AgentRole = GENERAL
    config: LoopConfig = field(default_factory=LoopConfig)
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        *,
        client: ModelClient | None = None,
        registry: ToolRegistry | None = None,
        event_bus: EventBus | None = None,
        workspace: Path | str | None = None,
        transport: ToolServerTransport | None = None,
    ) -> AgentSession:
        """Assemble a session from persisted settings.

        Raises:
            ConfigurationError: A setting is out of range.
        """

        settings.validate()
        client = client or AIClient(settings.to_client_settings())
        history = ChatHistoryManager()
        bus = event_bus or EventBus()
        generator = (
            ModelSummaryGenerator(client) if settings.overflow.summarize_with_model else ExtractiveSummaryGenerator()
        )
        overflow = ContextOverflowHandler(settings.overflow.to_config(), generator=generator, event_bus=bus)
        checkpoints = None
        if settings.checkpoints.enabled:
            base_dir = Path(settings.checkpoint_dir).expanduser() if settings.checkpoint_dir else Path.home() / ".runloop"
            checkpoints = CheckpointManager(
                CheckpointStorage(base_dir),
                history,
                policy=settings.checkpoints.to_policy(),
                workspace=workspace,
            )
        tool_servers = None
        if settings.tool_servers or transport is not None:
            tool_servers = ToolServerConnectionManager(transport or McpStdioTransport())
        return cls(
            client=client,
            registry=registry or ToolRegistry(),
            history=history,
            event_bus=bus,
            approvals=ApprovalGate(timeout=settings.approvals.timeout),
            policy=settings.approvals.to_policy(),
            overflow=overflow,
            checkpoints=checkpoints,
            tool_servers=tool_servers,
            tool_server_configs=tuple(settings.tool_servers),
            role=get_role(settings.role),
            config=LoopConfig(
                max_tool_rounds=settings.max_tool_rounds,
                temperature=settings.temperature,
                max_completion_tokens=settings.max_completion_tokens,
                tool_timeout=settings.tool_timeout,
            ),
        )


class AgentLoop:
    """State machine ``IDLE -> SENDING -> STREAMING -> EXECUTING_TOOLS -> SENDING ...``.

    ``process_user_message`` runs one user turn in its own task so that
    :meth:`cancel` can stop it without touching the caller or any other
    session.  A cancelled turn keeps the partial assistant text, rejects
    pending approvals, and still returns a :class:`LoopOutcome`.
    """

    def __init__(self, session: AgentSession) -> None:
        self._session = session
        self._config = session.config.validate()
        self._max_rounds = session.role.max_tool_rounds or self._config.max_tool_rounds
        if self._max_rounds < 1:
            raise ConfigurationError("max_tool_rounds must be at least 1", field="max_tool_rounds", value=self._max_rounds)
        self._executor = ToolCallExecutor(
            session.registry,
            session.history,
            approvals=session.approvals,
            policy=session.policy,
            event_bus=session.event_bus,
            config=ExecutorConfig(default_timeout=self._config.tool_timeout),
            before_execute=self._before_tool,
        )
        self._state = LoopState.IDLE
        self._active_task: asyncio.Task[LoopOutcome] | None = None
        self._cancel_requested = False
        self._stream: _StreamState | None = None

    @property
    def session(self) -> AgentSession:
        return self._session

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def max_tool_rounds(self) -> int:
        return self._max_rounds

    @property
    def is_running(self) -> bool:
        return self._active_task is not None and not self._active_task.done()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def process_user_message(self, text: str) -> LoopOutcome:
        """Append ``text`` as a user entry and run rounds until the turn ends."""

        if self.is_running:
            raise RuntimeError("A message is already being processed for this session")
        self._cancel_requested = False
        task = asyncio.create_task(self._run_turn(text), name=f"agent-turn:{self._session.session_id}")
        self._active_task = task
        try:
            return await task
        finally:
            if self._active_task is task:
                self._active_task = None

    def cancel(self) -> bool:
        """Stop the active turn; returns ``False`` when nothing is running."""

        task = self._active_task
        if task is None or task.done():
            return False
        LOGGER.debug("Cancelling active turn for session %s", self._session.session_id)
        self._cancel_requested = True
        self._session.approvals.cancel_all(REJECTED_BY_CANCELLATION)
        task.cancel()
        return True

    async def connect_tool_servers(self) -> dict[str, Any]:
        """Connect the configured tool servers and expose their tools."""

        manager = self._session.tool_servers
        if manager is None or not self._session.tool_server_configs:
            return {}
        outcome = await manager.connect_all(self._session.tool_server_configs)
        registered = manager.register_tools(self._session.registry)
        for name, result in outcome.items():
            if isinstance(result, Exception):
                self._publish(SystemNotice(f"Tool server {name} is unavailable: {result}", {"server": name}))
        LOGGER.info("Registered %d tool(s) from %d server(s)", len(registered), len(outcome))
        return outcome

    async def rewind_to_checkpoint(self, checkpoint_id: str) -> RestoreResult:
        """Restore files from ``checkpoint_id`` and replace the history with its state.

        Raises:
            ConfigurationError: Checkpoints are disabled for this session.
            CheckpointNotFoundError: No such checkpoint.
        """

        checkpoints = self._session.checkpoints
        if checkpoints is None:
            raise ConfigurationError("Checkpoints are disabled for this session", field="checkpoints")
        if self.is_running:
            raise RuntimeError("Cannot rewind while a message is being processed")
        if await checkpoints.get_info(checkpoint_id) is None:
            raise CheckpointNotFoundError(checkpoint_id)
        result = await checkpoints.restore(checkpoint_id)
        self._session.history.restore(result.conversation_state)
        message = f"Conversation rewound to checkpoint {checkpoint_id}"
        if result.files_failed:
            message += f" ({len(result.files_failed)} file(s) could not be restored)"
        self._publish(
            SystemNotice(
                message,
                {
                    "checkpoint_id": checkpoint_id,
                    "files_restored": list(result.files_restored),
                    "files_failed": list(result.files_failed),
                },
            )
        )
        return result

    async def aclose(self) -> None:
        """Cancel the active turn and tear down tool-server connections."""

        task = self._active_task
        if task is not None and not task.done():
            self.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._session.tool_servers is not None:
            await self._session.tool_servers.dispose()

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------
    async def _run_turn(self, text: str) -> LoopOutcome:
        with bind_session(self._session.session_id):
            return await self._run_rounds(text)

    async def _run_rounds(self, text: str) -> LoopOutcome:
        history = self._session.history
        history.append(ChatEntry.user(text))
        rounds = 0
        phase = "stream"
        self._stream = None
        try:
            while True:
                phase = "stream"
                if self._session.overflow is not None:
                    await self._session.overflow.ensure_budget(history)
                self._set_state(LoopState.SENDING)
                self._publish(PhaseStarted(phase=phase, round=rounds + 1))
                message = await self._stream_reply()
                self._publish(
                    PhaseCompleted(
                        phase=phase,
                        round=rounds + 1,
                        metadata={"tool_calls": len(message.tool_calls), "finish_reason": message.finish_reason},
                    )
                )
                if not message.has_tool_calls:
                    self._set_state(LoopState.IDLE)
                    return self._outcome(LoopState.IDLE, content=message.content, rounds=rounds)

                phase = "tools"
                rounds += 1
                self._set_state(LoopState.EXECUTING_TOOLS)
                self._publish(PhaseStarted(phase=phase, round=rounds))
                outcomes = await self._executor.execute_round(message.tool_calls)
                self._publish(PhaseCompleted(phase=phase, round=rounds, metadata=_round_summary(outcomes)))

                if rounds >= self._max_rounds:
                    LOGGER.warning("Stopping after %d tool round(s)", rounds)
                    self._publish(
                        ToolRoundsTruncated(rounds=rounds, max_rounds=self._max_rounds, message=TRUNCATION_MESSAGE)
                    )
                    self._publish(SystemNotice(TRUNCATION_MESSAGE, {"rounds": rounds}))
                    self._set_state(LoopState.IDLE)
                    return self._outcome(LoopState.IDLE, content=message.content, rounds=rounds, truncated=True)
        except asyncio.CancelledError:
            partial = self._close_stream_entry(cancelled=True)
            self._set_state(LoopState.CANCELLED)
            self._publish(SystemNotice("Request cancelled", {"round": rounds}))
            if not self._cancel_requested:
                raise
            current = asyncio.current_task()
            if current is not None:
                current.uncancel()
            return self._outcome(LoopState.CANCELLED, content=partial, rounds=rounds)
        except RuntimeErrorBase as exc:
            self._close_stream_entry(error=str(exc))
            return self._fail(phase, rounds, exc)
        except Exception as exc:
            LOGGER.exception("Unexpected failure during %s phase", phase)
            self._close_stream_entry(error=str(exc))
            return self._fail(phase, rounds, exc)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------
    def _open_stream_entry(self) -> _StreamState:
        index = self._session.history.append(ChatEntry.assistant(streaming=True))

        def _on_content(delta: str) -> None:
            self._session.history.append_stream_delta(index, delta)
            self._publish(ContentStreamed(entry_index=index, delta=delta))

        return _StreamState(index=index, accumulator=StreamAccumulator(on_content=_on_content))

    async def _stream_reply(self) -> AccumulatedMessage:
        messages = self._session.history.build_messages(self._system_prompt())
        tools = self._tool_definitions()
        stream = self._stream = self._open_stream_entry()
        chunks = self._session.client.stream_chat(
            messages,
            tools=tools or None,
            temperature=self._config.temperature,
            max_completion_tokens=self._config.max_completion_tokens,
        )
        self._set_state(LoopState.STREAMING)
        message = await stream.accumulator.consume(chunks)
        if not message.content and not message.tool_calls and message.finish_reason is None:
            raise ProviderResponseError("Model stream ended without content, tool calls or a finish reason")
        metadata: dict[str, Any] = {}
        if message.finish_reason:
            metadata["finish_reason"] = message.finish_reason
        if message.usage is not None:
            metadata["usage"] = {
                "prompt_tokens": message.usage.prompt_tokens,
                "completion_tokens": message.usage.completion_tokens,
                "total_tokens": message.usage.total_tokens,
            }
        self._session.history.finish_stream(
            stream.index,
            content=message.content,
            tool_calls=message.tool_calls,
            metadata=metadata,
        )
        self._stream = None
        return message

    def _close_stream_entry(self, **metadata: Any) -> str:
        stream, self._stream = self._stream, None
        if stream is None:
            return ""
        history = self._session.history
        try:
            entry = history.get(stream.index)
        except IndexError:
            return ""
        if not entry.streaming:
            return entry.content
        finished = history.finish_stream(stream.index, metadata=metadata)
        return finished.content

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------
    def _tool_definitions(self) -> list[dict[str, Any]]:
        role = self._session.role
        if role.allowed_tools is None:
            return self._session.registry.get_openai_tools()
        return self._session.registry.get_openai_tools(filter_names=role.allowed_tools)

    async def _before_tool(self, call: ToolCall, arguments: Mapping[str, Any]) -> None:
        checkpoints = self._session.checkpoints
        if checkpoints is None or not checkpoints.should_create_for(call.name):
            return
        paths = extract_paths(arguments)
        checkpoint = await checkpoints.create(
            CheckpointOptions(files=paths, triggered_by="tool", tool_name=call.name, metadata={"call_id": call.id})
        )
        LOGGER.debug("Checkpoint %s created before %s", checkpoint.id, call.name)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _system_prompt(self) -> str:
        if self._config.system_prompt:
            return self._config.system_prompt
        context = {"workspace": "the current workspace", **self._config.prompt_context}
        return self._session.role.render(context)

    def _fail(self, phase: str, rounds: int, exc: BaseException) -> LoopOutcome:
        self._set_state(LoopState.FAILED)
        message = str(exc) or type(exc).__name__
        outcome = self._outcome(LoopState.FAILED, rounds=rounds, error=message)
        LOGGER.warning("Turn failed during %s phase: %s", phase, message)
        self._publish(PhaseFailed(phase=phase, error=message, round=rounds))
        self._publish(
            ErrorRaised(
                message=message,
                error_type=type(exc).__name__,
                history_length=outcome.history_length,
                checkpoint_id=outcome.checkpoint_id,
            )
        )
        return outcome

    def _outcome(self, state: LoopState, **values: Any) -> LoopOutcome:
        checkpoints = self._session.checkpoints
        return LoopOutcome(
            state=state,
            history_length=len(self._session.history),
            checkpoint_id=checkpoints.latest_id if checkpoints is not None else None,
            **values,
        )

    def _set_state(self, state: LoopState) -> None:
        if state is not self._state:
            LOGGER.debug("Loop state %s -> %s", self._state.value, state.value)
            self._state = state

    def _publish(self, event: Any) -> None:
        self._session.event_bus.publish(event)


@dataclass(slots=True)
class _StreamState:
    index: int
    accumulator: StreamAccumulator


def _round_summary(outcomes: Sequence[ToolCallOutcome]) -> dict[str, Any]:
    succeeded = sum(1 for outcome in outcomes if outcome.result.success)
    return {"calls": len(outcomes), "succeeded": succeeded, "failed": len(outcomes) - succeeded}


def extract_paths(arguments: Mapping[str, Any]) -> list[str]:
    """File paths named in a tool call's arguments, in order and without duplicates."""

    paths: list[str] = []
    for key in _PATH_KEYS:
        value = arguments.get(key)
        if isinstance(value, str) and value:
            paths.append(value)
    for key in _PATHS_KEYS:
        value = arguments.get(key)
        if isinstance(value, (list, tuple)):
            paths.extend(item for item in value if isinstance(item, str) and item)
    return list(dict.fromkeys(paths))
