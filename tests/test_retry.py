"""Tests for datavault.storage.retry."""

from __future__ import annotations

import pytest

from datavault.exceptions import InvalidInputError, StorageUnavailableError
from datavault.settings import TransferConfig
from datavault.storage.retry import RetryPolicy


class _Sleeps:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


class TestDelays:
    def test_doubles_and_caps(self) -> None:
        policy = RetryPolicy(max_attempts=5, initial_delay=1.0, max_delay=3.0)
        assert list(policy.delays()) == [1.0, 2.0, 3.0, 3.0]

    def test_single_attempt_has_no_delays(self) -> None:
        assert list(RetryPolicy(max_attempts=1).delays()) == []

    def test_from_config(self) -> None:
        policy = RetryPolicy.from_config(
            TransferConfig(max_attempts=7, initial_delay_seconds=0.5, max_delay_seconds=4.0)
        )
        assert policy.max_attempts == 7
        assert policy.initial_delay == 0.5
        assert policy.max_delay == 4.0


class TestRun:
    async def test_returns_first_success(self) -> None:
        sleeps = _Sleeps()
        policy = RetryPolicy(sleep=sleeps)

        async def _op() -> str:
            return "ok"

        assert await policy.run(_op) == "ok"
        assert sleeps.calls == []

    async def test_retries_transient_then_succeeds(self) -> None:
        sleeps = _Sleeps()
        policy = RetryPolicy(max_attempts=3, initial_delay=0.1, max_delay=1.0, sleep=sleeps)
        calls = 0

        async def _op() -> int:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise StorageUnavailableError("flaky")
            return calls

        assert await policy.run(_op) == 3
        assert sleeps.calls == [0.1, 0.2]

    async def test_bounded_and_reraises_last_error(self) -> None:
        sleeps = _Sleeps()
        policy = RetryPolicy(max_attempts=3, initial_delay=0.0, sleep=sleeps)
        calls = 0

        async def _op() -> None:
            nonlocal calls
            calls += 1
            raise ConnectionError(f"down {calls}")

        with pytest.raises(ConnectionError, match="down 3"):
            await policy.run(_op)
        assert calls == 3
        assert len(sleeps.calls) == 2

    async def test_caller_errors_are_not_retried(self) -> None:
        sleeps = _Sleeps()
        policy = RetryPolicy(max_attempts=5, sleep=sleeps)
        calls = 0

        async def _op() -> None:
            nonlocal calls
            calls += 1
            raise InvalidInputError("bad")

        with pytest.raises(InvalidInputError):
            await policy.run(_op)
        assert calls == 1
        assert sleeps.calls == []
