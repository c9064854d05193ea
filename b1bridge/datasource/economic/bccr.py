"""
BCCR indicator service (Banco Central de Costa Rica).

Endpoint: ObtenerIndicadoresEconomicosXML
Subscribe at: https://www.bccr.fi.cr/indicadores-economicos/servicio-web

The answer is a <string> envelope whose text is a second, escaped XML
document. Its schema has changed over the years, so the parser tries the
known shapes in order and then searches the tree for a value field.
Reads go through the cache with the one-hour indicators TTL; the service is
strictly rate limited.
"""

import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

from loguru import logger
from pydantic import BaseModel, ConfigDict, model_validator

from b1bridge.datasource.base import BaseDataSource
from b1bridge.services.cache import CacheAside, CacheCategory
from b1bridge.services.client import RequestExecutor
from b1bridge.services.errors import (
    InvalidRequestError,
    ResponseParseError,
    UpstreamRateLimitError,
)
from b1bridge.utils import truncate, utcnow

USD_SELL_INDICATOR = "318"

VALUE_FIELDS = ("NUM_VALOR",)
DATE_FIELDS = ("DES_FECHA", "FEC_VALOR")

# Costa Rica does not observe daylight saving time
COSTA_RICA_TZ = timezone(timedelta(hours=-6))


class DateRange(BaseModel):
    """Inclusive range of observation dates."""

    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError("start must not be after end")
        return self

    @classmethod
    def single(cls, day: date) -> "DateRange":
        return cls(start=day, end=day)


class IndicatorValue(BaseModel):
    """One indicator observation as returned to callers."""

    model_config = ConfigDict(frozen=True)

    indicator_id: str
    value: Decimal
    as_of: date | None = None
    source: str = "BCCR"
    retrieved_at: datetime
    stale: bool = False
    age_seconds: float | None = None
    shape: str = ""


class ExchangeRate(BaseModel):
    """An exchange rate against the local currency."""

    model_config = ConfigDict(frozen=True)

    currency: str
    rate: Decimal
    as_of_date: date
    source: str
    retrieved_at: datetime
    stale: bool = False
    age_seconds: float | None = None


@dataclass(frozen=True)
class Observation:
    value: Decimal
    as_of: date | None
    shape: str


@dataclass(frozen=True)
class ShapeMatcher:
    """A known document layout: root element, then one element per row."""

    name: str
    root: str
    row: str

    def match(self, document: ET.Element) -> list[Observation]:
        if _local(document.tag) != self.root:
            return []
        rows = [child for child in document if _local(child.tag) == self.row]
        return [obs for obs in (_observation(row, self.name) for row in rows) if obs]


SHAPES: tuple[ShapeMatcher, ...] = (
    ShapeMatcher("ingreso204", "Datos_de_BCCR", "INGRESO204"),
    ShapeMatcher(
        "ingc011",
        "Datos_de_INGC011_CAT_INDICADORECONOMIC",
        "INGC011_CAT_INDICADORECONOMIC",
    ),
)


def _local(tag: str) -> str:
    """Tag name without its namespace."""
    return tag.rsplit("}", 1)[-1]


def _child_text(row: ET.Element, names: tuple[str, ...]) -> str | None:
    for child in row:
        if _local(child.tag) in names and child.text and child.text.strip():
            return child.text.strip()
    return None


def _parse_decimal(text: str) -> Decimal | None:
    try:
        value = Decimal(text.replace(",", ".") if "." not in text else text)
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


def _parse_date(text: str | None) -> date | None:
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass
    try:
        return datetime.strptime(text[:10], "%d/%m/%Y").date()
    except ValueError:
        return None


def _observation(row: ET.Element, shape: str) -> Observation | None:
    raw_value = _child_text(row, VALUE_FIELDS)
    if raw_value is None:
        return None
    value = _parse_decimal(raw_value)
    if value is None:
        return None
    return Observation(value, _parse_date(_child_text(row, DATE_FIELDS)), shape)


def _generic_search(document: ET.Element) -> list[Observation]:
    """Every element holding a value field, anywhere in the tree."""
    return [
        obs
        for element in document.iter()
        if (obs := _observation(element, "generic")) is not None
    ]


def _latest(observations: list[Observation]) -> Observation:
    indexed = list(enumerate(observations))
    _, latest = max(indexed, key=lambda item: (item[1].as_of or date.min, item[0]))
    return latest


def parse_indicator_xml(xml_text: str) -> Observation | None:
    """
    Extract the most recent observation from a BCCR answer.

    Accepts the <string> envelope or the inner document itself.

    Returns:
        The latest observation, or None if the document holds no value

    Raises:
        ResponseParseError: The outer or inner document is not XML
    """
    try:
        document = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise ResponseParseError(f"BCCR answer is not XML: {e}", "bccr") from e

    if _local(document.tag) == "string":
        inner_text = (document.text or "").strip()
        if not inner_text:
            return None
        try:
            document = ET.fromstring(inner_text)
        except ET.ParseError as e:
            raise ResponseParseError(f"BCCR inner document is not XML: {e}", "bccr") from e

    for shape in SHAPES:
        observations = shape.match(document)
        if observations:
            return _latest(observations)

    observations = _generic_search(document)
    if observations:
        logger.info("BCCR answer matched no known layout, value found by tree search")
        return _latest(observations)
    return None


class BCCRSource(BaseDataSource[ExchangeRate]):
    """
    BCCR economic indicator source.

    Usage:
        source = BCCRSource(executor, cache, url, email="me@example.com", token="...")
        value = await source.fetch_indicator("318", DateRange.single(date.today()))
        rate = await source.fetch_usd_sell_rate()
        if rate.stale:
            print(f"served from cache, {rate.age_seconds:.0f}s old")
    """

    SERVICE_ID = "bccr"

    def __init__(
        self,
        executor: RequestExecutor,
        cache: CacheAside,
        url: str,
        email: str = "",
        token: str = "",
        name: str = "b1bridge",
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(executor, cache)
        self.url = url
        self.email = email
        self.token = token
        self.name = name
        self._clock = clock

    @property
    def service_id(self) -> str:
        return self.SERVICE_ID

    def is_configured(self) -> bool:
        return bool(self.email and self.token)

    def today(self) -> date:
        return self._clock().astimezone(COSTA_RICA_TZ).date()

    async def fetch(self) -> list[ExchangeRate]:
        """Fetch the rates this source publishes (USD sell rate)."""
        return [await self.fetch_usd_sell_rate()]

    async def fetch_indicator(
        self, indicator_id: str, date_range: DateRange | None = None
    ) -> IndicatorValue:
        """
        Latest value of an indicator within a date range (default: today).

        Raises:
            InvalidRequestError: Credentials are not configured
            UpstreamRateLimitError: Rate limited and nothing cached yet
            ResponseParseError: The answer holds no usable value
        """
        if not self.is_configured():
            raise InvalidRequestError(
                "BCCR credentials are not configured (BCCR_EMAIL, BCCR_TOKEN)",
                self.SERVICE_ID,
            )
        date_range = date_range or DateRange.single(self.today())
        key = {
            "indicator": indicator_id,
            "start": date_range.start.isoformat(),
            "end": date_range.end.isoformat(),
        }

        result = await self.cache.get_or_compute(
            CacheCategory.INDICATORS,
            key,
            lambda: self._download(indicator_id, date_range),
        )
        data = result.value
        return IndicatorValue(
            indicator_id=indicator_id,
            value=Decimal(data["value"]),
            as_of=date.fromisoformat(data["as_of"]) if data.get("as_of") else None,
            retrieved_at=datetime.fromisoformat(data["retrieved_at"]),
            stale=result.stale,
            age_seconds=result.age_seconds,
            shape=data.get("shape", ""),
        )

    async def fetch_usd_sell_rate(self, day: date | None = None) -> ExchangeRate:
        """USD sell rate (indicator 318) for a day, default today."""
        day = day or self.today()
        indicator = await self.fetch_indicator(USD_SELL_INDICATOR, DateRange.single(day))
        return ExchangeRate(
            currency="USD_VENTA",
            rate=indicator.value,
            as_of_date=indicator.as_of or day,
            source="BCCR",
            retrieved_at=indicator.retrieved_at,
            stale=indicator.stale,
            age_seconds=indicator.age_seconds,
        )

    async def _download(self, indicator_id: str, date_range: DateRange) -> dict[str, Any]:
        """Query the service and return a JSON-serializable observation."""
        logger.info(
            f"Fetching BCCR indicator {indicator_id} "
            f"({date_range.start.isoformat()}..{date_range.end.isoformat()})"
        )
        response = await self.executor.execute(
            "GET",
            self.url,
            params={
                "Indicador": indicator_id,
                "FechaInicio": date_range.start.strftime("%d/%m/%Y"),
                "FechaFinal": date_range.end.strftime("%d/%m/%Y"),
                "Nombre": self.name,
                "SubNiveles": "N",
                "CorreoElectronico": self.email,
                "Token": self.token,
            },
        )

        rate_limited = "rate limit" in response.raw_body.lower()
        try:
            observation = parse_indicator_xml(response.raw_body)
        except ResponseParseError:
            if not rate_limited:
                raise
            observation = None

        if observation is None:
            if rate_limited:
                raise UpstreamRateLimitError(self.SERVICE_ID, body=truncate(response.raw_body))
            raise ResponseParseError(
                f"BCCR returned no value for indicator {indicator_id}: "
                f"{truncate(response.raw_body, 120)}",
                self.SERVICE_ID,
            )

        logger.info(
            f"BCCR indicator {indicator_id} = {observation.value} "
            f"(as of {observation.as_of}, layout {observation.shape})"
        )
        return {
            "value": str(observation.value),
            "as_of": observation.as_of.isoformat() if observation.as_of else None,
            "retrieved_at": self._clock().isoformat(),
            "shape": observation.shape,
        }
