"""
StrategyChain - tries alternative ways of doing one thing, in order.

The first strategy that returns wins. When every strategy raises, the chain
raises AllStrategiesExhausted with each failure tagged by strategy name; a
chain never reports success on its own.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

from loguru import logger

from b1bridge.services.errors import AllStrategiesExhausted

I = TypeVar("I")
R = TypeVar("R")

SUCCESS = "success"
FAILURE = "failure"


@dataclass(frozen=True)
class Strategy(Generic[I, R]):
    """A named, stateless candidate operation."""

    name: str
    fn: Callable[[I], Awaitable[R]]


@dataclass
class AttemptRecord:
    """Outcome of one strategy attempt."""

    strategy_name: str
    outcome: str  # 'success' | 'failure'
    error: str | None = None
    error_type: str | None = None
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome == SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy_name,
            "outcome": self.outcome,
            "error": self.error,
            "error_type": self.error_type,
            "duration_ms": round(self.duration_ms, 1),
        }


@dataclass
class ChainResult(Generic[R]):
    """Value of the winning strategy and the log of every attempt."""

    value: R
    strategy_name: str
    attempts: list[AttemptRecord] = field(default_factory=list)


async def attempt_in_order(
    strategies: Sequence[Strategy[I, R]],
    input: I,
    intent: str = "operation",
) -> ChainResult[R]:
    """
    Run strategies strictly in order until one succeeds.

    Args:
        strategies: Candidates, tried first to last
        input: Passed unchanged to every strategy
        intent: Name of the logical operation, for logs and errors

    Returns:
        ChainResult with the first successful value

    Raises:
        AllStrategiesExhausted: If every strategy failed (or none was given)
    """
    attempts: list[AttemptRecord] = []

    for strategy in strategies:
        started = time.perf_counter()
        try:
            value = await strategy.fn(input)
        except Exception as e:
            record = AttemptRecord(
                strategy_name=strategy.name,
                outcome=FAILURE,
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
                duration_ms=(time.perf_counter() - started) * 1000,
            )
            attempts.append(record)
            logger.warning(f"[{intent}] strategy '{strategy.name}' failed: {record.error}")
            continue

        attempts.append(
            AttemptRecord(
                strategy_name=strategy.name,
                outcome=SUCCESS,
                duration_ms=(time.perf_counter() - started) * 1000,
            )
        )
        if len(attempts) > 1:
            logger.info(
                f"[{intent}] succeeded via '{strategy.name}' after {len(attempts) - 1} failed attempts"
            )
        return ChainResult(value=value, strategy_name=strategy.name, attempts=attempts)

    logger.error(f"[{intent}] all {len(attempts)} strategies failed")
    raise AllStrategiesExhausted(intent, attempts)


class StrategyChain(Generic[I, R]):
    """
    Reusable ordered list of strategies for one intent.

    Usage:
        chain = StrategyChain("persist exchange rate", [
            Strategy("service", post_to_service),
            Strategy("sql", run_sql_update),
        ])
        result = await chain.run(rate)
    """

    def __init__(self, intent: str, strategies: Sequence[Strategy[I, R]]):
        self.intent = intent
        self.strategies = list(strategies)

    @property
    def names(self) -> list[str]:
        return [s.name for s in self.strategies]

    async def run(self, input: I) -> ChainResult[R]:
        return await attempt_in_order(self.strategies, input, intent=self.intent)
