"""Async model provider client built around OpenAI-compatible endpoints."""

from __future__ import annotations

import inspect
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Sequence, cast

import httpx
import tiktoken
from openai import AsyncOpenAI, APIConnectionError, APIError, APIStatusError, RateLimitError
from openai.types.chat import ChatCompletionMessageParam
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .ai_types import TokenCounterProtocol
from .errors import ProviderStreamError
from .orchestration.types import (
    ContentDelta,
    DoneChunk,
    StreamChunk,
    ToolCallDelta,
    Usage,
)

__all__ = [
    "ApproxByteCounter",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "ClientSettings",
    "AIClient",
]

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4
_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    APIError,
    APIStatusError,
    APIConnectionError,
    RateLimitError,
    httpx.TimeoutException,
)


class ApproxByteCounter(TokenCounterProtocol):
    """Deterministic counter that estimates tokens via byte length."""

    def __init__(self, *, model_name: str | None = None, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by OpenAI's tiktoken package.

    The encoding is loaded on first use; if it cannot be loaded (unknown
    model, no cached BPE files) counts fall back to the byte approximation.
    """

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding_name = encoding_name
        self._encoding: Any | None = None
        self._unavailable = False
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        encoding = self._load_encoding()
        if encoding is None:
            return self._fallback.estimate(text)
        try:
            return len(encoding.encode(text, disallowed_special=()))
        except Exception:  # pragma: no cover
            LOGGER.debug("tiktoken encode failed; falling back to approximation", exc_info=True)
            return self._fallback.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    def _load_encoding(self) -> Any | None:
        if self._encoding is not None or self._unavailable:
            return self._encoding
        try:
            if self._encoding_name:
                self._encoding = tiktoken.get_encoding(self._encoding_name)
            else:
                try:
                    self._encoding = tiktoken.encoding_for_model(self.model_name)
                except KeyError:
                    LOGGER.debug("Falling back to cl100k_base encoding for model %s", self.model_name)
                    self._encoding = tiktoken.get_encoding("cl100k_base")
        except Exception as exc:
            LOGGER.warning("tiktoken encoding unavailable for %s; using byte estimates: %s", self.model_name, exc)
            self._unavailable = True
        return self._encoding


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


class AIClient:
    """Streams chat completions as :data:`StreamChunk` values.

    Opening the stream is retried with exponential backoff; once the first
    chunk has been yielded, failures surface as
    :class:`~runloop.ai.errors.ProviderStreamError` and are never retried,
    so a consumer never sees duplicated content.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._token_registry = token_registry or TokenCounterRegistry()
        self._register_default_token_counter()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def token_registry(self) -> TokenCounterRegistry:
        return self._token_registry

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        temperature: float | None = 0.2,
        max_completion_tokens: int | None = None,
        metadata: Mapping[str, str] | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[StreamChunk]:
        """Stream chat completions for the provided messages."""

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            tools=tools,
            temperature=temperature,
            max_completion_tokens=max_completion_tokens,
            metadata=metadata,
            extra_params=extra_params,
        )
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        stream = await self._open_stream(payload)
        finish_reason: str | None = None
        usage: Usage | None = None
        try:
            async for chunk in stream:
                chunk_usage = getattr(chunk, "usage", None)
                if chunk_usage is not None:
                    usage = _normalize_usage(chunk_usage)
                for choice in getattr(chunk, "choices", None) or ():
                    if getattr(choice, "finish_reason", None):
                        finish_reason = choice.finish_reason
                    for item in self._normalize_delta(getattr(choice, "delta", None)):
                        yield item
        except _RETRYABLE_ERRORS as exc:
            raise ProviderStreamError(
                f"Provider stream failed: {exc}", status_code=getattr(exc, "status_code", None)
            ) from exc
        finally:
            await _close_quietly(stream)
        yield DoneChunk(finish_reason=finish_reason, usage=usage)

    def get_token_counter(self, model: str | None = None) -> TokenCounterProtocol:
        return self._token_registry.get(model or self._settings.model)

    def count_tokens(self, text: str, *, model: str | None = None, estimate_only: bool = False) -> int:
        if not text:
            return 0
        counter = self.get_token_counter(model)
        if estimate_only:
            return counter.estimate(text)
        return counter.count(text)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        await _close_quietly(self._client)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _register_default_token_counter(self) -> None:
        model_name = (self._settings.model or "").strip()
        if not model_name or self._token_registry.has(model_name):
            return
        self._token_registry.register(model_name, TiktokenCounter(model_name))

    async def _open_stream(self, payload: Mapping[str, Any]) -> Any:
        stream: Any = None
        try:
            async for attempt in self._retrying():
                with attempt:
                    stream = await self._client.chat.completions.create(**payload)
        except _RETRYABLE_ERRORS as exc:
            raise ProviderStreamError(
                f"Unable to open provider stream: {exc}",
                status_code=getattr(exc, "status_code", None),
            ) from exc
        return stream

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
            before_sleep=_log_retry,
        )

    def _coerce_messages(self, messages: Iterable[Mapping[str, Any]]) -> List[ChatCompletionMessageParam]:
        normalized = [cast(ChatCompletionMessageParam, dict(message)) for message in messages]
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[ChatCompletionMessageParam],
        tools: Sequence[Mapping[str, Any]] | None,
        temperature: float | None,
        max_completion_tokens: int | None,
        metadata: Mapping[str, str] | None,
        extra_params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": list(messages),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        merged_metadata = self._merge_metadata(metadata)
        if merged_metadata:
            payload["metadata"] = merged_metadata
        if tools:
            payload["tools"] = [dict(tool) for tool in tools]
        if temperature is not None:
            payload["temperature"] = temperature
        if max_completion_tokens is not None:
            payload["max_completion_tokens"] = max_completion_tokens
        if extra_params:
            payload.update(extra_params)
        return payload

    def _merge_metadata(self, runtime_metadata: Mapping[str, str] | None) -> Dict[str, str] | None:
        combined: Dict[str, str] = {}
        if self._settings.metadata:
            combined.update(self._settings.metadata)
        if runtime_metadata:
            combined.update(runtime_metadata)
        return combined or None

    def _normalize_delta(self, delta: Any) -> list[StreamChunk]:
        if delta is None:
            return []
        items: list[StreamChunk] = []
        content = getattr(delta, "content", None)
        if content:
            items.append(ContentDelta(text=content))
        for tool_call in getattr(delta, "tool_calls", None) or ():
            function = getattr(tool_call, "function", None)
            items.append(
                ToolCallDelta(
                    index=getattr(tool_call, "index", 0) or 0,
                    call_id=getattr(tool_call, "id", None),
                    name=getattr(function, "name", None) if function is not None else None,
                    arguments_fragment=getattr(function, "arguments", None) if function is not None else None,
                )
            )
        return items

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)


def _normalize_usage(raw: Any) -> Usage:
    return Usage(
        prompt_tokens=int(getattr(raw, "prompt_tokens", 0) or 0),
        completion_tokens=int(getattr(raw, "completion_tokens", 0) or 0),
        total_tokens=int(getattr(raw, "total_tokens", 0) or 0),
    )


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    LOGGER.warning(
        "Provider request failed (attempt %d); retrying: %s",
        retry_state.attempt_number,
        error,
    )


async def _close_quietly(resource: Any) -> None:
    close = getattr(resource, "close", None)
    if close is None:
        return
    try:
        result = close()
        if inspect.isawaitable(result):
            await result
    except Exception as exc:  # pragma: no cover
        LOGGER.debug("Closing %s failed: %s", type(resource).__name__, exc)
