"""Execution of the tool calls requested in one model round."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Sequence

from ..errors import ApprovalRejected, ToolExecutionError, TransportError
from ..events import EventBus, ToolApprovalRequired, ToolApproved, ToolRejected
from ..tools.registry import ToolNotFoundError, ToolRegistry
from ..tools.types import ToolSpec
from .approvals import REJECTED_BY_CANCELLATION, ApprovalAction, ApprovalGate, ApprovalPolicy
from .chat_history import ChatHistoryManager
from .types import ToolCall, ToolParseResult, ToolResult, parse_tool_arguments

__all__ = [
    "ExecutorConfig",
    "ToolCallOutcome",
    "ToolCallExecutor",
    "BeforeExecuteHook",
]

LOGGER = logging.getLogger(__name__)

BeforeExecuteHook = Callable[[ToolCall, Mapping[str, Any]], Awaitable[None]]


# -----------------------------------------------------------------------------
# Executor Configuration
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ExecutorConfig:
    """Configuration for the tool-call executor.

    Attributes:
        default_timeout: Timeout for one tool execution in seconds.
        log_arguments: Whether to log tool arguments (may contain sensitive data).
        log_results: Whether to log tool results.
        allow_parallel: Run consecutive parallel-safe calls concurrently.
    """

    default_timeout: float | None = 30.0
    log_arguments: bool = False
    log_results: bool = False
    allow_parallel: bool = True


@dataclass(slots=True, frozen=True)
class ToolCallOutcome:
    """Result of one call, as recorded in the history.

    ``approved`` is ``None`` when the call did not need approval.
    """

    call: ToolCall
    result: ToolResult
    duration_ms: float
    approved: bool | None = None


@dataclass(slots=True)
class _RoundState:
    finished: set[str] = field(default_factory=set)
    awaiting_approval: set[str] = field(default_factory=set)


# -----------------------------------------------------------------------------
# Executor
# -----------------------------------------------------------------------------


class ToolCallExecutor:
    """Parses, gates, runs and records the tool calls of a round.

    Every call gets a pending ``tool_call`` entry before anything runs, and
    that entry is always promoted to a ``tool_result``: parse failures,
    rejections, tool errors and cancellation all become failed results for
    the affected call only.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        history: ChatHistoryManager,
        *,
        approvals: ApprovalGate | None = None,
        policy: ApprovalPolicy | None = None,
        event_bus: EventBus | None = None,
        config: ExecutorConfig | None = None,
        before_execute: BeforeExecuteHook | None = None,
    ) -> None:
        self._registry = registry
        self._history = history
        self._approvals = approvals or ApprovalGate()
        self._policy = policy or ApprovalPolicy(enabled=False)
        self._event_bus = event_bus
        self._config = config or ExecutorConfig()
        self._before_execute = before_execute

    @property
    def approvals(self) -> ApprovalGate:
        return self._approvals

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------
    def parse_arguments(self, call: ToolCall) -> ToolParseResult:
        """Decode and validate ``call``'s arguments against its tool schema."""

        parsed = call.parsed or parse_tool_arguments(call.name, call.arguments_json)
        if not parsed.success:
            return parsed
        return self._validate(call.name, parsed.args)

    def _validate(self, name: str, args: Mapping[str, Any]) -> ToolParseResult:
        try:
            violation = self._registry.validate_arguments(name, args)
        except ToolNotFoundError:
            return ToolParseResult.failed(f"Unknown tool: {name}")
        if violation:
            return ToolParseResult.failed(f"Invalid arguments for {name}: {violation}")
        return ToolParseResult.ok(args)

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------
    async def execute_round(self, calls: Sequence[ToolCall]) -> list[ToolCallOutcome]:
        """Run every call of one round and return the outcomes in request order.

        Raises:
            ValueError: two calls of the round share an id; nothing is recorded.
        """

        counts = Counter(call.id for call in calls)
        repeated = sorted(call_id for call_id, count in counts.items() if count > 1)
        if repeated:
            raise ValueError(f"Tool call id(s) repeated within one round: {', '.join(repeated)}")
        for call in calls:
            self._history.add_tool_call(call)

        state = _RoundState()
        outcomes: dict[str, ToolCallOutcome] = {}
        try:
            for batch in self._batches(calls):
                if len(batch) == 1:
                    outcome = await self._run(batch[0], state)
                    outcomes[outcome.call.id] = outcome
                    continue
                LOGGER.debug("Running %d parallel-safe tool calls concurrently", len(batch))
                for outcome in await asyncio.gather(*(self._run(call, state) for call in batch)):
                    outcomes[outcome.call.id] = outcome
        except asyncio.CancelledError:
            self._record_unfinished(calls, state)
            raise
        except Exception as exc:
            LOGGER.error("Tool round aborted: %s", exc)
            self._record_unfinished(calls, state, error=f"Tool round aborted: {exc}")
            raise
        return [outcomes[call.id] for call in calls]

    def _batches(self, calls: Sequence[ToolCall]) -> list[list[ToolCall]]:
        batches: list[list[ToolCall]] = []
        parallel: list[ToolCall] = []
        for call in calls:
            spec = self._registry.get_spec(call.name)
            if self._config.allow_parallel and spec is not None and spec.parallel_safe:
                parallel.append(call)
                continue
            if parallel:
                batches.append(parallel)
                parallel = []
            batches.append([call])
        if parallel:
            batches.append(parallel)
        return batches

    def _record_unfinished(self, calls: Sequence[ToolCall], state: _RoundState, *, error: str | None = None) -> None:
        """Close every entry of the round that has no result yet.

        Without ``error`` the round was cancelled.
        """

        for call in calls:
            if call.id in state.finished:
                continue
            if error is not None:
                result = ToolResult.failure(error, phase="round")
            elif call.id in state.awaiting_approval:
                result = ToolResult.failure(f"Rejected: {REJECTED_BY_CANCELLATION}", rejected=True, cancelled=True)
                self._publish(ToolRejected(call_id=call.id, tool_name=call.name, reason=REJECTED_BY_CANCELLATION))
            else:
                result = ToolResult.failure("Cancelled before completion", cancelled=True)
            self._history.update_tool_result(call.id, result)
            state.finished.add(call.id)

    # ------------------------------------------------------------------
    # Single call
    # ------------------------------------------------------------------
    async def _run(self, call: ToolCall, state: _RoundState) -> ToolCallOutcome:
        started = time.perf_counter()
        approved: bool | None = None
        parsed = self.parse_arguments(call)
        if not parsed.success:
            LOGGER.debug("Tool call %s (%s) has invalid arguments: %s", call.id, call.name, parsed.error)
            result = ToolResult.failure(parsed.error or "Invalid arguments", phase="parse")
        else:
            spec = self._registry.get_spec(call.name)
            args: Mapping[str, Any] = parsed.args
            try:
                if spec is None:
                    raise ToolExecutionError(f"Tool '{call.name}' is no longer available", call.name)
                if self._policy.requires_approval(call.name, spec.safety_level):
                    args = await self._await_approval(call, args, spec, state)
                    approved = True
                result = await self._execute(call, args, spec)
            except ApprovalRejected as exc:
                approved = False
                result = ToolResult.failure(f"Rejected: {exc.reason}", rejected=True)
            except ToolExecutionError as exc:
                result = ToolResult.failure(str(exc), phase="execute")

        duration_ms = (time.perf_counter() - started) * 1000
        self._history.update_tool_result(call.id, result, duration_ms=duration_ms)
        state.finished.add(call.id)
        if self._config.log_results:
            LOGGER.debug("Tool %s result: %s", call.name, result.render()[:500])
        return ToolCallOutcome(call=call, result=result, duration_ms=duration_ms, approved=approved)

    async def _await_approval(
        self,
        call: ToolCall,
        args: Mapping[str, Any],
        spec: ToolSpec,
        state: _RoundState,
    ) -> Mapping[str, Any]:
        self._approvals.open(call.id)
        state.awaiting_approval.add(call.id)
        self._publish(
            ToolApprovalRequired(
                call_id=call.id,
                tool_name=call.name,
                arguments=dict(args),
                safety_level=spec.safety_level.value,
            )
        )
        decision = await self._approvals.wait(call.id)
        state.awaiting_approval.discard(call.id)

        if not decision.approved:
            reason = decision.reason or "Change rejected by user"
            self._publish(ToolRejected(call_id=call.id, tool_name=call.name, reason=reason))
            raise ApprovalRejected(call.name, reason)

        if decision.action is ApprovalAction.MODIFY and decision.arguments is not None:
            revalidated = self._validate(call.name, decision.arguments)
            if not revalidated.success:
                reason = f"Modified arguments are invalid: {revalidated.error}"
                self._publish(ToolRejected(call_id=call.id, tool_name=call.name, reason=reason))
                raise ApprovalRejected(call.name, reason)
            self._publish(ToolApproved(call_id=call.id, tool_name=call.name, modified=True))
            return revalidated.args

        self._publish(ToolApproved(call_id=call.id, tool_name=call.name))
        return args

    async def _execute(self, call: ToolCall, args: Mapping[str, Any], spec: ToolSpec) -> ToolResult:
        if self._before_execute is not None:
            try:
                await self._before_execute(call, args)
            except Exception:
                LOGGER.warning("Pre-execution hook failed for %s; continuing", call.name, exc_info=True)

        if self._config.log_arguments:
            LOGGER.debug("Executing tool %s with %s", call.name, _safe_json(args))
        else:
            LOGGER.debug("Executing tool %s (%s)", call.name, call.id)

        timeout = spec.timeout if spec.timeout is not None else self._config.default_timeout
        try:
            if timeout is not None:
                output = await asyncio.wait_for(self._registry.invoke(call.name, args), timeout)
            else:
                output = await self._registry.invoke(call.name, args)
        except asyncio.TimeoutError as exc:
            raise ToolExecutionError(f"Tool '{call.name}' timed out after {timeout}s", call.name, exc) from exc
        except ToolNotFoundError as exc:
            raise ToolExecutionError(str(exc), call.name, exc) from exc
        except TransportError as exc:
            raise ToolExecutionError(f"Tool '{call.name}' transport failed: {exc}", call.name, exc) from exc
        except Exception as exc:
            raise ToolExecutionError(f"Tool '{call.name}' failed: {exc}", call.name, exc) from exc

        if isinstance(output, ToolResult):
            return output
        return ToolResult.ok(output, safety_level=spec.safety_level.value)

    def _publish(self, event: Any) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event)


def _safe_json(payload: Mapping[str, Any]) -> str:
    try:
        return json.dumps(payload, ensure_ascii=False, default=str)[:500]
    except (TypeError, ValueError):
        return repr(payload)[:500]
