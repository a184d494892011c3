# =============================================================================
# Unit Tests — LLM Providers & Retry Policy
# =============================================================================
#
# No network: SDK clients are constructed with a dummy key and their
# request method is replaced with an AsyncMock. Retry tests inject a fake
# sleep so backoff is recorded instead of awaited.
# =============================================================================

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from finlens.config import settings
from finlens.errors import InputError
from finlens.services.llm import (
    AnthropicProvider,
    OpenAICompatibleProvider,
    RetryPolicy,
    call_with_retry,
    create_provider,
    is_rate_limited,
    resolve_provider,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class FakeHTTPError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class FlakyCall:
    """Raises the queued exceptions in order, then returns 'ok'."""

    def __init__(self, *failures: Exception) -> None:
        self.failures = list(failures)
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return "ok"


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


NO_JITTER = RetryPolicy(max_attempts=3, base_delay=1.0, max_jitter=0.0)


# ---------------------------------------------------------------------------
# Test: Retry Policy
# ---------------------------------------------------------------------------


class TestCallWithRetry:
    """Tests for call_with_retry()."""

    def test_success_needs_no_retry(self):
        call, sleep = FlakyCall(), RecordingSleep()
        assert _run(call_with_retry(call, NO_JITTER, sleep=sleep)) == "ok"
        assert call.calls == 1
        assert sleep.delays == []

    def test_retries_rate_limits_with_exponential_backoff(self):
        call = FlakyCall(FakeHTTPError(429), FakeHTTPError(429))
        sleep = RecordingSleep()
        assert _run(call_with_retry(call, NO_JITTER, sleep=sleep)) == "ok"
        assert call.calls == 3
        assert sleep.delays == [1.0, 2.0]

    def test_gives_up_after_max_attempts(self):
        call = FlakyCall(*(FakeHTTPError(429) for _ in range(5)))
        sleep = RecordingSleep()
        with pytest.raises(FakeHTTPError):
            _run(call_with_retry(call, NO_JITTER, sleep=sleep))
        assert call.calls == 3
        assert len(sleep.delays) == 2

    def test_other_errors_are_not_retried(self):
        call = FlakyCall(FakeHTTPError(500))
        sleep = RecordingSleep()
        with pytest.raises(FakeHTTPError):
            _run(call_with_retry(call, NO_JITTER, sleep=sleep))
        assert call.calls == 1
        assert sleep.delays == []

    def test_custom_predicate(self):
        call = FlakyCall(TimeoutError("slow"))
        sleep = RecordingSleep()
        result = _run(call_with_retry(
            call, NO_JITTER, is_retryable=lambda e: isinstance(e, TimeoutError), sleep=sleep,
        ))
        assert result == "ok"
        assert call.calls == 2

    def test_zero_attempts_still_calls_once(self):
        call = FlakyCall()
        policy = RetryPolicy(max_attempts=0, base_delay=0.0, max_jitter=0.0)
        assert _run(call_with_retry(call, policy, sleep=RecordingSleep())) == "ok"
        assert call.calls == 1


class TestRetryPolicy:
    """Tests for RetryPolicy and is_rate_limited()."""

    def test_delay_doubles_per_attempt(self):
        policy = RetryPolicy(base_delay=0.5, max_jitter=0.0)
        assert [policy.delay_for(n) for n in range(3)] == [0.5, 1.0, 2.0]

    def test_jitter_is_bounded(self):
        policy = RetryPolicy(base_delay=1.0, max_jitter=0.25)
        for _ in range(20):
            assert 1.0 <= policy.delay_for(0) <= 1.25

    def test_from_settings(self):
        with patch.object(settings, "llm_max_attempts", 5):
            assert RetryPolicy.from_settings().max_attempts == 5

    def test_is_rate_limited(self):
        assert is_rate_limited(FakeHTTPError(429))
        assert not is_rate_limited(FakeHTTPError(503))
        assert not is_rate_limited(ValueError("bad"))


# ---------------------------------------------------------------------------
# Test: Providers
# ---------------------------------------------------------------------------


def _openai_completion(content: str | None) -> SimpleNamespace:
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        model="gpt-test",
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=3),
    )


class TestOpenAICompatibleProvider:
    """Request shaping and response normalisation."""

    def _provider(self) -> OpenAICompatibleProvider:
        provider = OpenAICompatibleProvider(api_key="sk-test", model="gpt-test")
        provider._client = MagicMock()
        return provider

    def test_system_prompt_is_first_message(self):
        provider = self._provider()
        provider._client.chat.completions.create = AsyncMock(
            return_value=_openai_completion("Revenue grew."),
        )
        response = _run(provider.complete(
            messages=[{"role": "user", "content": "Summarise"}],
            system="You are an analyst.",
            temperature=0.1,
            max_tokens=50,
        ))
        kwargs = provider._client.chat.completions.create.call_args.kwargs
        assert kwargs["messages"][0] == {"role": "system", "content": "You are an analyst."}
        assert kwargs["max_tokens"] == 50
        assert response.content == "Revenue grew."
        assert (response.input_tokens, response.output_tokens) == (12, 3)

    def test_null_content_becomes_empty_string(self):
        provider = self._provider()
        provider._client.chat.completions.create = AsyncMock(
            return_value=_openai_completion(None),
        )
        response = _run(provider.complete(messages=[{"role": "user", "content": "hi"}]))
        assert response.content == ""

    def test_missing_key_is_input_error(self):
        with patch.object(settings, "llm_api_key", None), \
                patch.object(settings, "openai_api_key", ""):
            with pytest.raises(InputError):
                OpenAICompatibleProvider()


class TestAnthropicProvider:
    """System prompt placement for the native SDK."""

    def test_system_prompt_is_top_level(self):
        provider = AnthropicProvider(api_key="sk-ant-test", model="claude-test")
        provider._client = MagicMock()
        provider._client.messages.create = AsyncMock(return_value=SimpleNamespace(
            content=[SimpleNamespace(type="text", text="Margins expanded.")],
            model="claude-test",
            usage=SimpleNamespace(input_tokens=20, output_tokens=4),
        ))
        response = _run(provider.complete(
            messages=[{"role": "user", "content": "Summarise"}],
            system="You are an analyst.",
        ))
        kwargs = provider._client.messages.create.call_args.kwargs
        assert kwargs["system"] == "You are an analyst."
        assert all(m["role"] != "system" for m in kwargs["messages"])
        assert kwargs["max_tokens"] == 1024
        assert response.content == "Margins expanded."


class TestProviderFactory:
    """Tests for create_provider() and resolve_provider()."""

    def test_unknown_provider_type(self):
        with pytest.raises(InputError):
            create_provider(api_key="sk-test", provider_type="mystery")

    def test_anthropic_type(self):
        provider = create_provider(api_key="sk-ant-test", provider_type="anthropic")
        assert isinstance(provider, AnthropicProvider)

    def test_injected_provider_wins(self):
        llm = AsyncMock()
        assert resolve_provider(llm=llm, api_key="sk-test") is llm

    def test_per_request_key_gets_fresh_provider(self):
        first = resolve_provider(api_key="sk-one")
        second = resolve_provider(api_key="sk-two")
        assert first is not second
