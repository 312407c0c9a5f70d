"""
Tests for the bounded retry helper.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from utils.retry import call_with_retry


class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_first_attempt_succeeds(self):
        fn = AsyncMock(return_value="ok")
        sleep = AsyncMock()
        assert await call_with_retry(fn, operation="op", sleep=sleep) == "ok"
        assert fn.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exponential_backoff_between_attempts(self):
        fn = AsyncMock(side_effect=[RuntimeError("a"), RuntimeError("b"), "ok"])
        sleep = AsyncMock()

        assert await call_with_retry(fn, operation="op", backoff=1.0, sleep=sleep) == "ok"

        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_last_error_is_raised(self):
        fn = AsyncMock(side_effect=[RuntimeError("a"), RuntimeError("b"), RuntimeError("c")])
        sleep = AsyncMock()

        with pytest.raises(RuntimeError, match="c"):
            await call_with_retry(fn, operation="op", max_attempts=3, sleep=sleep)
        assert fn.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_each_attempt_is_time_bounded(self):
        calls = []

        async def hang():
            calls.append(1)
            await asyncio.sleep(10)

        with pytest.raises(asyncio.TimeoutError):
            await call_with_retry(hang, operation="op", timeout=0.01, max_attempts=2, sleep=AsyncMock())
        assert len(calls) == 2
