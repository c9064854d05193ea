"""
Tests for ordered strategy chains and request deduplication.
"""

import asyncio

import pytest

from b1bridge.services.deduplicator import RequestDeduplicator
from b1bridge.services.errors import (
    AllStrategiesExhausted,
    UpstreamServerError,
    UpstreamValidationError,
)
from b1bridge.services.strategy import Strategy, StrategyChain, attempt_in_order


def failing(error: Exception):
    async def fn(_):
        raise error

    return fn


def returning(value, calls: list | None = None):
    async def fn(input):
        if calls is not None:
            calls.append(input)
        return value

    return fn


class TestStrategyChain:
    """First success wins; exhaustion is always an error."""

    @pytest.mark.asyncio
    async def test_first_success_stops_the_chain(self):
        later_calls: list = []
        chain = StrategyChain(
            "persist exchange rate",
            [
                Strategy("a", failing(UpstreamServerError("HTTP 500", "sl", 500))),
                Strategy("b", returning("ok")),
                Strategy("c", returning("never", later_calls)),
            ],
        )

        result = await chain.run("input")

        assert result.value == "ok"
        assert result.strategy_name == "b"
        assert [a.strategy_name for a in result.attempts] == ["a", "b"]
        assert result.attempts[0].error_type == "UpstreamServerError"
        assert result.attempts[1].succeeded
        assert later_calls == []

    @pytest.mark.asyncio
    async def test_every_strategy_receives_the_same_input(self):
        seen: list = []
        chain = StrategyChain(
            "x",
            [
                Strategy("a", failing(ValueError("bad"))),
                Strategy("b", returning(1, seen)),
            ],
        )
        await chain.run({"currency": "USD"})
        assert seen == [{"currency": "USD"}]

    @pytest.mark.asyncio
    async def test_exhaustion_raises_with_every_failure(self):
        chain = StrategyChain(
            "persist exchange rate",
            [
                Strategy("set_currency_rate", failing(UpstreamValidationError("HTTP 400: bad", "sl", 400))),
                Strategy("sql_insert", failing(UpstreamServerError("HTTP 500: down", "sl", 500))),
            ],
        )

        with pytest.raises(AllStrategiesExhausted) as exc_info:
            await chain.run(None)

        error = exc_info.value
        assert error.intent == "persist exchange rate"
        assert list(error.failures) == ["set_currency_rate", "sql_insert"]
        assert "HTTP 400" in error.failures["set_currency_rate"]
        assert all(not a.succeeded for a in error.attempts)

    @pytest.mark.asyncio
    async def test_empty_chain_is_exhausted(self):
        with pytest.raises(AllStrategiesExhausted):
            await attempt_in_order([], None, intent="nothing")

    def test_names(self):
        chain = StrategyChain("x", [Strategy("a", returning(1)), Strategy("b", returning(2))])
        assert chain.names == ["a", "b"]

    def test_attempt_record_to_dict(self):
        from b1bridge.services.strategy import AttemptRecord

        record = AttemptRecord("a", "failure", "boom", "ValueError", 12.345)
        assert record.to_dict() == {
            "strategy": "a",
            "outcome": "failure",
            "error": "boom",
            "error_type": "ValueError",
            "duration_ms": 12.3,
        }


class TestRequestDeduplicator:
    """Concurrent callers for one key share a single call."""

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_execution(self):
        dedup = RequestDeduplicator()
        calls = 0
        release = asyncio.Event()

        async def fetch():
            nonlocal calls
            calls += 1
            await release.wait()
            return {"value": [1, 2]}

        waiters = [asyncio.create_task(dedup.dedupe("k", fetch)) for _ in range(5)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*waiters)

        assert calls == 1
        assert all(r == {"value": [1, 2]} for r in results)
        assert dedup.in_flight_count() == 0
        assert dedup.get_stats()["deduplicated"] == 4

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter(self):
        dedup = RequestDeduplicator()
        release = asyncio.Event()

        async def fetch():
            await release.wait()
            raise UpstreamServerError("HTTP 503", "sl", 503)

        waiters = [asyncio.create_task(dedup.dedupe("k", fetch)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert all(isinstance(r, UpstreamServerError) for r in results)
        assert dedup.in_flight_count() == 0

    @pytest.mark.asyncio
    async def test_different_keys_run_separately(self):
        dedup = RequestDeduplicator()
        a = await dedup.dedupe("a", returning_coro(1))
        b = await dedup.dedupe("b", returning_coro(2))
        assert (a, b) == (1, 2)
        assert dedup.get_stats()["total_requests"] == 2


def returning_coro(value):
    async def fn():
        return value

    return fn


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancellation_is_not_treated_as_a_failure(self):
        later: list = []

        async def cancelled(_):
            raise asyncio.CancelledError()

        chain = StrategyChain(
            "x", [Strategy("a", cancelled), Strategy("b", returning("never", later))]
        )

        with pytest.raises(asyncio.CancelledError):
            await chain.run(None)
        assert later == []
