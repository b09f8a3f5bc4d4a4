"""Tests for backoff and retry utilities."""

from unittest.mock import AsyncMock

import pytest

from binance_stream.utils.retry import backoff_delay, exponential_backoff


class TestBackoffDelay:

    def test_doubles_from_base(self):
        assert [backoff_delay(k, 5.0, 60.0) for k in range(1, 6)] == [5.0, 10.0, 20.0, 40.0, 60.0]

    def test_capped_at_max(self):
        assert backoff_delay(10, 5.0, 60.0) == 60.0
        assert backoff_delay(10_000, 1.0, 30.0) == 30.0

    def test_attempt_is_one_based(self):
        with pytest.raises(ValueError):
            backoff_delay(0, 1.0, 10.0)


class TestExponentialBackoff:

    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        func = AsyncMock(side_effect=[ConnectionError("down"), "ok"])

        result = await exponential_backoff(func, max_attempts=3, initial_delay=0.001, jitter=False)

        assert result == "ok"
        assert func.call_count == 2

    @pytest.mark.asyncio
    async def test_reraises_after_last_attempt(self):
        func = AsyncMock(side_effect=ConnectionError("down"))

        with pytest.raises(ConnectionError):
            await exponential_backoff(func, max_attempts=3, initial_delay=0.001, jitter=False)

        assert func.call_count == 3

    @pytest.mark.asyncio
    async def test_unlisted_exceptions_propagate_immediately(self):
        func = AsyncMock(side_effect=KeyError("boom"))

        with pytest.raises(KeyError):
            await exponential_backoff(func, max_attempts=3, initial_delay=0.001, exceptions=(ConnectionError,))

        assert func.call_count == 1

    @pytest.mark.asyncio
    async def test_sync_callables_supported(self):
        result = await exponential_backoff(lambda: 42, max_attempts=1)

        assert result == 42
