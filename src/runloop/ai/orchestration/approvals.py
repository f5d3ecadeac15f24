"""Approval policy and the suspension point for human tool approval."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from ..tools.types import SafetyLevel

__all__ = [
    "ApprovalAction",
    "ApprovalDecision",
    "ApprovalPolicy",
    "ApprovalGate",
    "REJECTED_BY_USER",
    "REJECTED_BY_TIMEOUT",
    "REJECTED_BY_CANCELLATION",
]

LOGGER = logging.getLogger(__name__)

REJECTED_BY_USER = "Change rejected by user"
REJECTED_BY_TIMEOUT = "Approval timed out"
REJECTED_BY_CANCELLATION = "Cancelled before approval"


class ApprovalAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    MODIFY = "modify"


@dataclass(slots=True, frozen=True)
class ApprovalDecision:
    """External verdict on a suspended tool call.

    ``MODIFY`` approves the call with ``arguments`` replacing the model's.
    """

    action: ApprovalAction
    arguments: Mapping[str, Any] | None = None
    reason: str | None = None

    @classmethod
    def approve(cls) -> ApprovalDecision:
        return cls(ApprovalAction.APPROVE)

    @classmethod
    def reject(cls, reason: str = REJECTED_BY_USER) -> ApprovalDecision:
        return cls(ApprovalAction.REJECT, reason=reason)

    @classmethod
    def modify(cls, arguments: Mapping[str, Any]) -> ApprovalDecision:
        return cls(ApprovalAction.MODIFY, arguments=dict(arguments))

    @property
    def approved(self) -> bool:
        return self.action is not ApprovalAction.REJECT


@dataclass(slots=True, frozen=True)
class ApprovalPolicy:
    """Which tool calls need an external decision.

    Attributes:
        enabled: Master switch; when false nothing needs approval.
        min_level: Calls at or above this safety level need approval.
        always_require: Tool names that always need approval.
        never_require: Tool names that never need approval.
    """

    enabled: bool = True
    min_level: SafetyLevel = SafetyLevel.WRITE
    always_require: frozenset[str] = field(default_factory=frozenset)
    never_require: frozenset[str] = field(default_factory=frozenset)

    def requires_approval(self, tool_name: str, level: SafetyLevel) -> bool:
        if not self.enabled or tool_name in self.never_require:
            return False
        if tool_name in self.always_require:
            return True
        return level.rank >= self.min_level.rank


class ApprovalGate:
    """Holds one future per suspended call until a decision arrives.

    The waiting side is an ``await``, so other sessions and UI work continue
    while a call is suspended.  Decisions are keyed by tool-call id.
    """

    def __init__(self, *, timeout: float | None = None) -> None:
        self._timeout = timeout
        self._pending: dict[str, asyncio.Future[ApprovalDecision]] = {}

    @property
    def pending_ids(self) -> list[str]:
        return [call_id for call_id, future in self._pending.items() if not future.done()]

    def is_pending(self, call_id: str) -> bool:
        future = self._pending.get(call_id)
        return future is not None and not future.done()

    def open(self, call_id: str) -> None:
        """Register ``call_id`` as awaiting a decision.

        Called before the approval-required event is published so that a
        handler resolving synchronously finds the pending entry.
        """

        if call_id in self._pending:
            raise ValueError(f"Approval for call {call_id} is already pending")
        self._pending[call_id] = asyncio.get_running_loop().create_future()

    async def wait(self, call_id: str) -> ApprovalDecision:
        """Suspend until a decision for ``call_id`` arrives (or the timeout rejects it)."""

        future = self._pending.get(call_id)
        if future is None:
            raise KeyError(f"No pending approval for call {call_id}")
        try:
            if self._timeout is None:
                return await future
            try:
                return await asyncio.wait_for(asyncio.shield(future), self._timeout)
            except asyncio.TimeoutError:
                LOGGER.info("Approval for call %s timed out after %.1fs", call_id, self._timeout)
                return ApprovalDecision.reject(REJECTED_BY_TIMEOUT)
        finally:
            self._pending.pop(call_id, None)
            if not future.done():
                future.cancel()

    def resolve(self, call_id: str, decision: ApprovalDecision) -> bool:
        """Deliver ``decision``; returns ``False`` when nothing is waiting for it."""

        future = self._pending.get(call_id)
        if future is None or future.done():
            LOGGER.debug("Ignoring approval decision for unknown call %s", call_id)
            return False
        future.set_result(decision)
        return True

    def cancel_all(self, reason: str = REJECTED_BY_CANCELLATION) -> int:
        """Reject every pending call; returns how many were waiting."""

        count = 0
        for call_id in list(self._pending):
            if self.resolve(call_id, ApprovalDecision.reject(reason)):
                count += 1
        if count:
            LOGGER.debug("Rejected %d pending approval(s): %s", count, reason)
        return count
