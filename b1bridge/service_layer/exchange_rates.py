"""
Exchange rate reads and writes.

Reads: per country, an ordered list of sources (see COUNTRY_SOURCES).
Writes: each rate goes through the "persist exchange rate" chain. A rate is
reported as persisted only when one of the strategies actually succeeded.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from loguru import logger

from b1bridge.datasource.economic.bccr import ExchangeRate
from b1bridge.service_layer.models import RateInput
from b1bridge.service_layer.queries import API_ROOT
from b1bridge.service_layer.sql import SqlRunner
from b1bridge.services.client import RequestExecutor
from b1bridge.services.errors import InvalidRequestError, ResponseParseError
from b1bridge.services.strategy import Strategy, StrategyChain

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")

# BCCR publishes buy and sell rates; the sell rate is the one booked
CURRENCY_ALIASES = {"USD_VENTA": "USD"}
SKIPPED_CURRENCIES = frozenset({"USD_COMPRA"})

PANAMA_USD_PEG = Decimal("1.00")

SERVICE_LAYER_VIEW = "service_layer_view"
BCCR = "bccr"
OFFICIAL_PEG = "official_peg"

COUNTRY_SOURCES: dict[str, list[str]] = {
    "COSTA_RICA": [SERVICE_LAYER_VIEW, BCCR],
    "HONDURAS": [SERVICE_LAYER_VIEW],
    "GUATEMALA": [SERVICE_LAYER_VIEW],
    "PANAMA": [OFFICIAL_PEG],
}


@dataclass(frozen=True)
class RateWrite:
    """One validated rate to persist."""

    currency: str
    rate: Decimal
    rate_date: date
    headers: dict[str, str]


def map_currency(code: str) -> str | None:
    """Service Layer currency for a caller/BCCR code; None if it is skipped."""
    code = (code or "").strip().upper()
    if code in SKIPPED_CURRENCIES:
        return None
    return CURRENCY_ALIASES.get(code, code)


def as_rate_input(raw: RateInput | ExchangeRate | Mapping[str, Any]) -> RateInput:
    if isinstance(raw, RateInput):
        return raw
    if isinstance(raw, ExchangeRate):
        return RateInput(currency=raw.currency, rate=raw.rate, date=raw.as_of_date)
    if isinstance(raw, Mapping):
        return RateInput(
            currency=str(raw.get("currency") or ""),
            rate=raw.get("rate"),
            date=raw.get("date"),
        )
    raise InvalidRequestError(f"Unsupported rate value: {type(raw).__name__}")


def validate_rate(currency: str, rate: Any, rate_date: Any, default_date: date) -> tuple[Decimal, date]:
    """
    Check one rate before anything is sent upstream.

    Raises:
        InvalidRequestError: Bad currency code, non-positive rate or bad date
    """
    if not CURRENCY_PATTERN.match(currency):
        raise InvalidRequestError(f"Invalid currency code: {currency!r}")

    if isinstance(rate, bool):
        raise InvalidRequestError(f"Invalid rate for {currency}: {rate!r}")
    try:
        value = Decimal(str(rate))
    except InvalidOperation:
        raise InvalidRequestError(f"Invalid rate for {currency}: {rate!r}") from None
    if not value.is_finite() or value <= 0:
        raise InvalidRequestError(f"Rate for {currency} must be positive, got {rate!r}")

    if rate_date is None or rate_date == "":
        return value, default_date
    if isinstance(rate_date, datetime):
        return value, rate_date.date()
    if isinstance(rate_date, date):
        return value, rate_date
    try:
        return value, date.fromisoformat(str(rate_date)[:10])
    except ValueError:
        raise InvalidRequestError(f"Invalid date for {currency}: {rate_date!r}") from None


def parse_view_rows(rows: list[dict[str, Any]], retrieved_at: datetime) -> list[ExchangeRate]:
    """ExchangeRatesView rows -> ExchangeRate values."""
    rates = []
    for row in rows:
        try:
            rates.append(
                ExchangeRate(
                    currency=str(row["Currency"]),
                    rate=Decimal(str(row["Rate"])),
                    as_of_date=date.fromisoformat(str(row["Date"])[:10]),
                    source="SAP_SERVICE_LAYER",
                    retrieved_at=retrieved_at,
                )
            )
        except (KeyError, ValueError, InvalidOperation) as e:
            logger.warning(f"Skipping unreadable ExchangeRatesView row {row}: {e}")
    if not rates:
        raise ResponseParseError("ExchangeRatesView returned no usable rates")
    return rates


def panama_rates(today: date, now: datetime) -> list[ExchangeRate]:
    """USD is legal tender in Panama."""
    return [
        ExchangeRate(
            currency="USD",
            rate=PANAMA_USD_PEG,
            as_of_date=today,
            source="OFFICIAL_RATE",
            retrieved_at=now,
        )
    ]


class RateWriter:
    """
    Persists one exchange rate with the first write path the Service Layer accepts.

    Usage:
        writer = RateWriter(executor, SqlRunner(executor))
        result = await writer.chain.run(RateWrite("USD", Decimal("512.3"), date.today(), headers))
    """

    def __init__(self, executor: RequestExecutor, sql: SqlRunner):
        self._executor = executor
        self._sql = sql
        self.chain: StrategyChain[RateWrite, int] = StrategyChain(
            "persist exchange rate",
            [
                Strategy("set_currency_rate", self.set_currency_rate),
                Strategy("exchange_rates_entity", self.exchange_rates_entity),
                Strategy("sql_update", self.sql_update),
                Strategy("sql_insert", self.sql_insert),
            ],
        )

    async def set_currency_rate(self, write: RateWrite) -> int:
        response = await self._executor.execute(
            "POST",
            f"{API_ROOT}/SBOBobService_SetCurrencyRate",
            headers=write.headers,
            body={
                "Currency": write.currency,
                "Rate": format(write.rate, "f"),
                "RateDate": write.rate_date.strftime("%Y%m%d"),
            },
        )
        return response.status_code

    async def exchange_rates_entity(self, write: RateWrite) -> int:
        response = await self._executor.execute(
            "POST",
            f"{API_ROOT}/ExchangeRates",
            headers=write.headers,
            body={
                "Currency": write.currency,
                "Rate": float(write.rate),
                "RateDate": write.rate_date.isoformat(),
            },
        )
        return response.status_code

    async def sql_update(self, write: RateWrite) -> int:
        # values are validated: ISO currency code, finite Decimal, date
        sql = (
            f'UPDATE "ORTT" SET "Rate" = {format(write.rate, "f")} '
            f"WHERE \"Currency\" = '{write.currency}' "
            f"AND \"RateDate\" = '{write.rate_date.isoformat()}'"
        )
        response = await self._sql.run_stored(sql, write.headers)
        # an UPDATE matching no row still answers 2xx
        await self.confirm_persisted(write)
        return response.status_code

    async def sql_insert(self, write: RateWrite) -> int:
        sql = (
            'INSERT INTO "ORTT" ("Currency", "RateDate", "Rate") '
            f"VALUES ('{write.currency}', '{write.rate_date.isoformat()}', {format(write.rate, 'f')})"
        )
        response = await self._sql.run_stored(sql, write.headers)
        await self.confirm_persisted(write)
        return response.status_code

    async def confirm_persisted(self, write: RateWrite) -> None:
        """
        Read the ORTT row back.

        Raises:
            ResponseParseError: No row for the currency and date, or a different rate
        """
        sql = (
            'SELECT "Rate" FROM "ORTT" '
            f"WHERE \"Currency\" = '{write.currency}' "
            f"AND \"RateDate\" = '{write.rate_date.isoformat()}'"
        )
        rows = (await self._sql.run(sql, write.headers)).value
        if not rows:
            raise ResponseParseError(
                f"No ORTT row for {write.currency} on {write.rate_date} after write"
            )
        try:
            stored = Decimal(str(rows[0].get("Rate")))
        except InvalidOperation:
            raise ResponseParseError(f"Unreadable ORTT rate: {rows[0]}") from None
        if stored != write.rate:
            raise ResponseParseError(
                f"ORTT holds {stored} for {write.currency} on {write.rate_date}, expected {write.rate}"
            )
