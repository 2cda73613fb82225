"""Tests for retry utilities."""

import pytest

from hacontroller.exceptions import HAError
from hacontroller.retry import retry_with_backoff


class TestRetryWithBackoff:
    async def test_success_first_try(self) -> None:
        call_count = 0

        async def success() -> str:
            nonlocal call_count
            call_count += 1
            return "ok"

        result = await retry_with_backoff(success)
        assert result == "ok"
        assert call_count == 1

    async def test_success_after_retries(self) -> None:
        call_count = 0

        async def fail_then_succeed() -> str:
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise OSError("not yet")
            return "ok"

        result = await retry_with_backoff(fail_then_succeed, base_delay=0.01)
        assert result == "ok"
        assert call_count == 3

    async def test_max_attempts_exceeded(self) -> None:
        call_count = 0

        async def always_fail() -> str:
            nonlocal call_count
            call_count += 1
            raise OSError("fail")

        with pytest.raises(OSError, match="fail"):
            await retry_with_backoff(always_fail, max_attempts=3, base_delay=0.01)

        assert call_count == 3

    async def test_non_retryable_error_propagates(self) -> None:
        call_count = 0

        async def wrong_kind() -> str:
            nonlocal call_count
            call_count += 1
            raise ValueError("bug")

        with pytest.raises(ValueError, match="bug"):
            await retry_with_backoff(
                wrong_kind, max_attempts=3, base_delay=0.01, retry_on=(OSError, HAError)
            )

        assert call_count == 1

    async def test_respects_max_delay(self) -> None:
        import time

        timestamps: list[float] = []

        async def track_time() -> str:
            timestamps.append(time.monotonic())
            if len(timestamps) < 3:
                raise OSError("not yet")
            return "ok"

        await retry_with_backoff(
            track_time, max_attempts=3, base_delay=0.01, max_delay=0.02, jitter=0
        )

        assert len(timestamps) == 3
        # Second delay would be 0.02 uncapped too; stays well under a second
        assert timestamps[2] - timestamps[0] < 1.0
