"""Tests for the upstream retry policy and model allow list."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from creditgate.configs.system import LLMConfig
from creditgate.core.metered.client import MeteredClient, ModelNotAllowed
from creditgate.core.metered.retry import RetryPolicy, UpstreamError, UpstreamTimeout


def _make_policy(**kwargs) -> RetryPolicy:
    defaults = {
        "max_attempts": 2,
        "backoff": timedelta(milliseconds=1),
        "timeout": timedelta(milliseconds=50),
    }
    defaults.update(kwargs)
    return RetryPolicy(**defaults)


class _Flaky:
    """Awaitable factory that fails a set number of times first."""

    def __init__(self, failures: int, exc: Exception | None = None) -> None:
        self.failures = failures
        self.exc = exc or ConnectionError("reset by peer")
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return "ok"


class TestRetryPolicy:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        fn = _Flaky(0)
        assert await _make_policy().run(fn) == "ok"
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_success_on_retry(self):
        fn = _Flaky(1)
        assert await _make_policy().run(fn) == "ok"
        assert fn.calls == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        fn = _Flaky(5)
        with pytest.raises(UpstreamError) as exc_info:
            await _make_policy().run(fn)
        assert not isinstance(exc_info.value, UpstreamTimeout)
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert fn.calls == 2

    @pytest.mark.asyncio
    async def test_timeout_on_every_attempt(self):
        calls = 0

        async def hang() -> str:
            nonlocal calls
            calls += 1
            await asyncio.sleep(10)
            return "late"

        with pytest.raises(UpstreamTimeout):
            await _make_policy().run(hang)
        assert calls == 2

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_unchanged(self):
        fn = _Flaky(5, ValueError("bad request"))
        policy = _make_policy(retryable=lambda exc: not isinstance(exc, ValueError))
        with pytest.raises(ValueError, match="bad request"):
            await policy.run(fn)
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_single_attempt(self):
        fn = _Flaky(1)
        with pytest.raises(UpstreamError):
            await _make_policy(max_attempts=1).run(fn)
        assert fn.calls == 1


class TestResolveModel:
    def test_default_model(self):
        client = MeteredClient(LLMConfig(default_model="m1", allowed_models=["m1", "m2"]))
        assert client.resolve_model(None) == "m1"
        assert client.resolve_model("m2") == "m2"

    def test_disallowed_model(self):
        client = MeteredClient(LLMConfig(default_model="m1", allowed_models=["m1"]))
        with pytest.raises(ModelNotAllowed):
            client.resolve_model("gpt-9")

    def test_empty_allow_list_admits_anything(self):
        client = MeteredClient(LLMConfig(default_model="m1", allowed_models=[]))
        assert client.resolve_model("anything") == "anything"
