# =============================================================================
# Multi-Provider LLM Abstraction — Completions, Streaming, Retry
# =============================================================================
#
# Provides a common interface for LLM completions, with concrete
# implementations for OpenAI-compatible APIs (OpenAI, DeepSeek, Qwen, ...)
# and Anthropic (Claude).
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# Any object with `complete()` and `stream()` works, which is what lets the
# tests hand an AsyncMock to every agent.
#
# DESIGN DECISION: Retry lives in an explicit policy object.
# RetryPolicy (max attempts, base delay, jitter) parameterises a generic
# call_with_retry() wrapper that knows nothing about completions. Only
# rate-limit failures (HTTP 429) are retried; everything else surfaces
# immediately as UpstreamError. The SDK clients get max_retries=0 so their
# built-in retry loop does not stack on top of ours.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── OpenAICompatibleProvider — system prompt as first message
#   ├── AnthropicProvider        — system prompt as top-level kwarg
#   ├── RetryPolicy / call_with_retry()
#   ├── get_llm_provider()       — lazy singleton, reads from config
#   └── create_provider()        — fresh instance for a per-request api_key
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, TypeVar

import anthropic
import openai

from finlens.config import settings
from finlens.errors import InputError, UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """
    Standardised response from any LLM provider.

    Normalises the different response formats (Anthropic vs OpenAI)
    into a single structure that downstream code can consume.
    """

    content: str           # The generated text ("" when the model said nothing)
    model: str             # Model identifier (e.g., "gpt-4o")
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response


# ---------------------------------------------------------------------------
# Retry Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff with uniform jitter.

    Attempt n (0-based) that fails with a retryable error waits
    `base_delay * 2**n + uniform(0, max_jitter)` seconds before the next
    attempt. `max_attempts` counts the first call.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_jitter: float = 1.0

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt) + random.uniform(0, self.max_jitter)

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.llm_max_attempts,
            base_delay=settings.llm_retry_base_delay,
            max_jitter=settings.llm_retry_max_jitter,
        )


def is_rate_limited(exc: BaseException) -> bool:
    """True for 429 responses from either SDK."""
    if isinstance(exc, (openai.RateLimitError, anthropic.RateLimitError)):
        return True
    return getattr(exc, "status_code", None) == 429


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool] = is_rate_limited,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await `fn()` until it succeeds, a non-retryable error is raised, or the
    attempt budget is spent. The last exception propagates unchanged.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        try:
            return await fn()
        except Exception as exc:
            if not is_retryable(exc) or attempt == attempts - 1:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "Rate limited. Retrying in %.2fs (attempt %d/%d)",
                delay, attempt + 1, attempts,
            )
            await sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    Protocol defining the LLM provider interface.

    Both implementations take messages with roles "user" / "assistant";
    the system prompt is passed separately because the two APIs place it
    differently.
    """

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Raises:
            UpstreamError: If the service fails after any applicable retries.
        """
        ...

    def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Yield text deltas as the model produces them."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: OpenAI-Compatible (OpenAI, DeepSeek, Qwen, etc.)
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    Provider for any API that follows the OpenAI chat-completions contract.

    Switching vendors is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        resolved_key = api_key or settings.llm_api_key or settings.openai_api_key
        if not resolved_key:
            raise InputError(
                "No API key configured for OpenAI-compatible provider. "
                "Pass api_key or set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key, "max_retries": 0}
        resolved_base_url = base_url or settings.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = openai.AsyncOpenAI(**client_kwargs)
        self._model = model or settings.llm_model
        self._retry = retry_policy or RetryPolicy.from_settings()

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    def _request(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict:
        # OpenAI: system prompt goes as the first message
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        kwargs: dict = {"model": self._model, "messages": all_messages}
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        if temperature is not None:
            kwargs["temperature"] = temperature
        return kwargs

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
        kwargs = self._request(messages, system, temperature, max_tokens)

        try:
            response = await call_with_retry(
                lambda: self._client.chat.completions.create(**kwargs),
                self._retry,
            )
        except openai.APIStatusError as exc:
            raise UpstreamError("completion", exc.message, exc.status_code) from exc
        except openai.APIError as exc:
            raise UpstreamError("completion", str(exc)) from exc

        content = ""
        if response.choices:
            content = response.choices[0].message.content or ""

        usage = response.usage
        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Stream text deltas. Only opening the stream is retried."""
        kwargs = self._request(messages, system, temperature, max_tokens)

        try:
            response = await call_with_retry(
                lambda: self._client.chat.completions.create(**kwargs, stream=True),
                self._retry,
            )
            async for event in response:
                if not event.choices:
                    continue
                delta = event.choices[0].delta.content
                if delta:
                    yield delta
        except openai.APIStatusError as exc:
            raise UpstreamError("completion", exc.message, exc.status_code) from exc
        except openai.APIError as exc:
            raise UpstreamError("completion", str(exc)) from exc


# ---------------------------------------------------------------------------
# Implementation 2: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Anthropic Claude provider using the native SDK.

    KEY API DIFFERENCE: Anthropic takes system prompts as a top-level
    `system=` kwarg, NOT as a message with role "system", and requires
    max_tokens on every request.
    """

    _DEFAULT_MAX_TOKENS = 1024

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        resolved_key = api_key or settings.llm_api_key or settings.anthropic_api_key
        if not resolved_key:
            raise InputError(
                "No Anthropic API key configured. Pass api_key or set "
                "LLM_API_KEY / ANTHROPIC_API_KEY in .env"
            )

        self._client = anthropic.AsyncAnthropic(api_key=resolved_key, max_retries=0)
        self._model = model or settings.llm_model
        self._retry = retry_policy or RetryPolicy.from_settings()

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    def _request(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict:
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._DEFAULT_MAX_TOKENS,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if system:
            kwargs["system"] = system
        return kwargs

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        kwargs = self._request(messages, system, temperature, max_tokens)

        try:
            response = await call_with_retry(
                lambda: self._client.messages.create(**kwargs),
                self._retry,
            )
        except anthropic.APIStatusError as exc:
            raise UpstreamError("completion", exc.message, exc.status_code) from exc
        except anthropic.APIError as exc:
            raise UpstreamError("completion", str(exc)) from exc

        content = ""
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Stream text deltas from Claude's server-sent events."""
        kwargs = self._request(messages, system, temperature, max_tokens)

        try:
            response = await call_with_retry(
                lambda: self._client.messages.create(**kwargs, stream=True),
                self._retry,
            )
            async for event in response:
                if event.type == "content_block_delta" and event.delta.type == "text_delta":
                    yield event.delta.text
        except anthropic.APIStatusError as exc:
            raise UpstreamError("completion", exc.message, exc.status_code) from exc
        except anthropic.APIError as exc:
            raise UpstreamError("completion", str(exc)) from exc


# ---------------------------------------------------------------------------
# Factory Functions
# ---------------------------------------------------------------------------

_KNOWN_PROVIDER_TYPES = {"anthropic", "openai_compatible"}

# Lazy singleton — avoid re-creating the client on every request
_provider: OpenAICompatibleProvider | AnthropicProvider | None = None


def create_provider(
    api_key: str | None = None,
    provider_type: str | None = None,
    model: str | None = None,
    base_url: str | None = None,
) -> OpenAICompatibleProvider | AnthropicProvider:
    """
    Create a fresh, non-singleton provider.

    Used when a request carries its own api_key: each caller gets an
    independent client and the shared singleton is left untouched.

    Raises:
        InputError: If the provider type is unknown or no API key resolves.
    """
    resolved_type = provider_type or settings.llm_provider
    if resolved_type not in _KNOWN_PROVIDER_TYPES:
        raise InputError(
            f"Unknown provider type '{resolved_type}'. "
            f"Supported types: {sorted(_KNOWN_PROVIDER_TYPES)}"
        )

    if resolved_type == "anthropic":
        return AnthropicProvider(api_key=api_key, model=model)
    return OpenAICompatibleProvider(api_key=api_key, model=model, base_url=base_url)


def get_llm_provider() -> OpenAICompatibleProvider | AnthropicProvider:
    """Return the configured provider, creating it on first use."""
    global _provider
    if _provider is None:
        _provider = create_provider()
    return _provider


def resolve_provider(
    llm: LLMProvider | None = None,
    api_key: str | None = None,
) -> LLMProvider:
    """
    Pick the provider for one pipeline run.

    An injected provider wins (tests, custom backends), then a per-request
    api_key, then the configured singleton.
    """
    if llm is not None:
        return llm
    if api_key:
        return create_provider(api_key=api_key)
    return get_llm_provider()
