"""Token-budget monitoring and summarization of the oldest history entries."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Protocol, Sequence, runtime_checkable

from ..ai_types import ModelClient, TokenCounterProtocol
from ..client import ApproxByteCounter
from ..errors import ConfigurationError, HistoryConflictError, SummarizationError
from ..events import ContextSummarized, EventBus
from .chat_history import ChatHistoryManager, pair_safe_cut
from .stream_accumulator import StreamAccumulator
from .types import ChatEntry, EntryRole

__all__ = [
    "OverflowConfig",
    "SummaryOutcome",
    "SummaryGenerator",
    "ExtractiveSummaryGenerator",
    "ModelSummaryGenerator",
    "ContextOverflowHandler",
    "estimate_entry_tokens",
]

LOGGER = logging.getLogger(__name__)

_MESSAGE_OVERHEAD_TOKENS = 4
_SUMMARY_HEADER = "Summary of earlier conversation:"
_SUMMARY_PROMPT = (
    "Summarize the following conversation excerpt for an assistant that will continue it. "
    "Keep decisions, file paths, tool outcomes and open tasks. Be concise."
)


@dataclass(slots=True, frozen=True)
class OverflowConfig:
    """Budget parameters for one session.

    Attributes:
        context_window: Model context window in tokens.
        threshold: Fraction of ``context_window`` that triggers summarization.
        preserve_recent: Newest entries always kept verbatim.
        max_entries: Hard cap on entries, enforced without summarization.
    """

    context_window: int = 128_000
    threshold: float = 0.8
    preserve_recent: int = 20
    max_entries: int = 200

    @property
    def budget_tokens(self) -> int:
        return int(self.context_window * self.threshold)

    def validate(self) -> OverflowConfig:
        if self.context_window <= 0:
            raise ConfigurationError("context_window must be positive", field="context_window", value=self.context_window)
        if not 0.0 < self.threshold <= 1.0:
            raise ConfigurationError("threshold must be in (0, 1]", field="threshold", value=self.threshold)
        if self.preserve_recent < 0:
            raise ConfigurationError("preserve_recent must be >= 0", field="preserve_recent", value=self.preserve_recent)
        if self.max_entries <= self.preserve_recent:
            raise ConfigurationError(
                "max_entries must exceed preserve_recent", field="max_entries", value=self.max_entries
            )
        return self


@dataclass(slots=True, frozen=True)
class SummaryOutcome:
    tokens_before: int
    tokens_after: int
    summarized_entries: int
    preserved_entries: int


def estimate_entry_tokens(entry: ChatEntry, counter: TokenCounterProtocol) -> int:
    """Approximate prompt cost of one entry, including its tool-call payloads."""

    total = _MESSAGE_OVERHEAD_TOKENS + counter.count(entry.content)
    for call in entry.tool_calls:
        total += counter.count(call.name) + counter.count(call.arguments_json)
    return total


# -----------------------------------------------------------------------------
# Summary generators
# -----------------------------------------------------------------------------


@runtime_checkable
class SummaryGenerator(Protocol):
    """Produces the replacement text for a run of old entries."""

    async def generate(self, entries: Sequence[ChatEntry]) -> str:
        ...


class ExtractiveSummaryGenerator:
    """Deterministic summary built from the entries themselves; no model call."""

    def __init__(self, *, max_chars: int = 2_000, sample_chars: int = 160) -> None:
        self._max_chars = max(80, max_chars)
        self._sample_chars = max(20, sample_chars)

    async def generate(self, entries: Sequence[ChatEntry]) -> str:
        requests: list[str] = []
        tools: dict[str, int] = {}
        failures = 0
        last_answer = ""
        earlier: list[str] = []
        for entry in entries:
            if entry.role is EntryRole.SYSTEM and entry.metadata.get("summary"):
                body = entry.content.removeprefix(_SUMMARY_HEADER).strip()
                if body:
                    earlier.append(" ".join(body.split()))
            elif entry.role is EntryRole.USER and entry.content.strip():
                requests.append(_condense(entry.content, self._sample_chars))
            elif entry.role is EntryRole.ASSISTANT:
                for call in entry.tool_calls:
                    tools[call.name] = tools.get(call.name, 0) + 1
                if entry.content.strip():
                    last_answer = entry.content
            elif entry.role is EntryRole.TOOL_RESULT and entry.tool_result is not None:
                if not entry.tool_result.success:
                    failures += 1

        lines = [f"{len(entries)} earlier entries were condensed."]
        if earlier:
            lines.append("Earlier summary: " + _clip(" ".join(earlier), self._max_chars // 2))
        if requests:
            lines.append("User requests: " + " | ".join(requests))
        if tools:
            usage = ", ".join(f"{name} x{count}" for name, count in sorted(tools.items()))
            lines.append(f"Tools used: {usage} ({failures} failed).")
        if last_answer:
            lines.append("Last assistant reply: " + _condense(last_answer, self._sample_chars))
        summary = "\n".join(lines)
        return _clip(summary, self._max_chars)


class ModelSummaryGenerator:
    """Asks the model provider to summarize the entries."""

    def __init__(self, client: ModelClient, *, max_completion_tokens: int = 1_024) -> None:
        self._client = client
        self._max_completion_tokens = max_completion_tokens

    async def generate(self, entries: Sequence[ChatEntry]) -> str:
        transcript = "\n".join(_render_for_summary(entry) for entry in entries)
        messages = [
            {"role": "system", "content": _SUMMARY_PROMPT},
            {"role": "user", "content": transcript},
        ]
        stream = self._client.stream_chat(
            messages,
            temperature=0.0,
            max_completion_tokens=self._max_completion_tokens,
        )
        message = await StreamAccumulator().consume(stream)
        text = message.content.strip()
        if not text:
            raise SummarizationError("Model returned an empty summary")
        return text


def _condense(text: str, limit: int) -> str:
    condensed = " ".join(text.split())
    if len(condensed) <= limit:
        return condensed
    sentences = re.split(r"(?<=[.!?])\s+", condensed)
    first = sentences[0] if sentences else condensed
    if len(first) <= limit:
        return first
    return f"{first[: limit - 3].rstrip()}..."


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."


def _render_for_summary(entry: ChatEntry) -> str:
    if entry.role is EntryRole.ASSISTANT and entry.tool_calls:
        names = ", ".join(call.name for call in entry.tool_calls)
        return f"assistant: {entry.content} [called: {names}]"
    return f"{entry.role.value}: {entry.content}"


# -----------------------------------------------------------------------------
# Handler
# -----------------------------------------------------------------------------


class ContextOverflowHandler:
    """Keeps a session's history under its token budget.

    Call :meth:`ensure_budget` before every outbound request.  When the
    estimate exceeds ``threshold * context_window`` the oldest entries are
    replaced by one summary entry; the newest ``preserve_recent`` entries are
    kept verbatim, extended backward so that no tool call is separated from
    its result.  A failing generator only skips the cycle.
    """

    def __init__(
        self,
        config: OverflowConfig | None = None,
        *,
        generator: SummaryGenerator | None = None,
        token_counter: TokenCounterProtocol | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = (config or OverflowConfig()).validate()
        self._generator: SummaryGenerator = generator or ExtractiveSummaryGenerator()
        self._counter: TokenCounterProtocol = token_counter or ApproxByteCounter()
        self._event_bus = event_bus

    @property
    def config(self) -> OverflowConfig:
        return self._config

    def estimate_tokens(self, entries: Sequence[ChatEntry]) -> int:
        return sum(estimate_entry_tokens(entry, self._counter) for entry in entries)

    def is_over_budget(self, entries: Sequence[ChatEntry]) -> bool:
        return self.estimate_tokens(entries) > self._config.budget_tokens

    async def ensure_budget(self, history: ChatHistoryManager) -> SummaryOutcome | None:
        """Summarize if needed; returns the outcome or ``None`` when nothing changed."""

        pruned = history.prune(self._config.max_entries)
        if pruned:
            LOGGER.debug("Pruned %d entries above the %d-entry cap", pruned, self._config.max_entries)

        entries, version = history.snapshot_with_version()
        tokens_before = self.estimate_tokens(entries)
        if tokens_before <= self._config.budget_tokens:
            return None

        cut = pair_safe_cut(entries, len(entries) - self._config.preserve_recent)
        if cut <= 0:
            LOGGER.warning(
                "History is over budget (%d > %d tokens) but no entries can be summarized",
                tokens_before,
                self._config.budget_tokens,
            )
            return None

        head = entries[:cut]
        try:
            text = await self._generator.generate(head)
        except Exception as exc:
            LOGGER.warning("Summary generation failed; skipping this cycle: %s", exc)
            return None
        if not text or not text.strip():
            LOGGER.warning("Summary generator returned no text; skipping this cycle")
            return None

        summary = ChatEntry.system(
            f"{_SUMMARY_HEADER}\n{text.strip()}",
            summary=True,
            summarized_entries=len(head),
        )
        try:
            history.replace_range(0, cut, [summary], expected_version=version)
        except HistoryConflictError as exc:
            LOGGER.warning("History changed during summarization; skipping this cycle: %s", exc)
            return None

        tokens_after = self.estimate_tokens(history.snapshot())
        outcome = SummaryOutcome(
            tokens_before=tokens_before,
            tokens_after=tokens_after,
            summarized_entries=len(head),
            preserved_entries=len(entries) - cut,
        )
        LOGGER.debug(
            "Summarized %d entries (%d -> %d tokens), preserved %d",
            outcome.summarized_entries,
            tokens_before,
            tokens_after,
            outcome.preserved_entries,
        )
        if self._event_bus is not None:
            self._event_bus.publish(
                ContextSummarized(
                    tokens_before=tokens_before,
                    tokens_after=tokens_after,
                    summarized_entries=outcome.summarized_entries,
                    preserved_entries=outcome.preserved_entries,
                )
            )
        return outcome
