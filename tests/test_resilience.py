"""Tests for timeout + retry around external calls."""

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from sendlists.services.errors import ExternalServiceError
from sendlists.services.resilience import call_with_retry, is_retryable


class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        func = AsyncMock(return_value=42)
        assert await call_with_retry("svc", func, 1, key="v", backoff=0) == 42
        func.assert_awaited_once_with(1, key="v")

    @pytest.mark.asyncio
    async def test_retries_once_then_succeeds(self):
        func = AsyncMock(side_effect=[ConnectionError("flaky"), "ok"])
        assert await call_with_retry("svc", func, backoff=0) == "ok"
        assert func.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_one_retry(self):
        func = AsyncMock(side_effect=ConnectionError("down"))
        with pytest.raises(ExternalServiceError) as exc:
            await call_with_retry("provider", func, backoff=0)
        assert func.await_count == 2
        assert exc.value.service == "provider"
        assert isinstance(exc.value.original, ConnectionError)

    @pytest.mark.asyncio
    async def test_timeout(self):
        calls = 0

        async def slow():
            nonlocal calls
            calls += 1
            await asyncio.sleep(1)

        with pytest.raises(ExternalServiceError) as exc:
            await call_with_retry("slow", slow, timeout=0.01, backoff=0)
        assert calls == 2
        assert "timed out" in str(exc.value)

    @pytest.mark.asyncio
    async def test_non_retryable_raised_at_once(self):
        func = AsyncMock(side_effect=ExternalServiceError("provider", "HTTP 404", retryable=False))
        with pytest.raises(ExternalServiceError):
            await call_with_retry("provider", func, backoff=0)
        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_backoff_delay_is_logged(self, caplog):
        func = AsyncMock(side_effect=[ConnectionError("flaky"), "ok"])
        with caplog.at_level(logging.WARNING, logger="sendlists.services.resilience"):
            assert await call_with_retry("svc", func, backoff=0.05) == "ok"
        assert "retrying in 0.05s" in caplog.text

    @pytest.mark.asyncio
    async def test_non_retryable_inside_retryable_budget(self):
        func = AsyncMock(side_effect=[ConnectionError("flaky"), ExternalServiceError("svc", "bad request", retryable=False)])
        with pytest.raises(ExternalServiceError) as exc:
            await call_with_retry("svc", func, retries=3, backoff=0)
        assert exc.value.retryable is False
        assert func.await_count == 2


class TestIsRetryable:
    def test_flags(self):
        assert is_retryable(ConnectionError("x"))
        assert is_retryable(ExternalServiceError("svc", "HTTP 503"))
        assert not is_retryable(ExternalServiceError("svc", "HTTP 400", retryable=False))
        assert not is_retryable(asyncio.CancelledError())
