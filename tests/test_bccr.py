"""
Tests for the BCCR indicator parser and source.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from xml.sax.saxutils import escape

import httpx
import pytest

from b1bridge.datasource.economic.bccr import (
    BCCRSource,
    DateRange,
    parse_indicator_xml,
)
from b1bridge.services.cache import CacheAside
from b1bridge.services.client import RequestExecutor
from b1bridge.services.config import ConfigProvider, ConnectionConfig, DictConfigStore
from b1bridge.services.errors import (
    InvalidRequestError,
    ResponseParseError,
    UpstreamRateLimitError,
)
from b1bridge.services.store import MemoryStore
from tests.conftest import BCCR_URL

BCCR_PATH = "/ws/ObtenerIndicadoresEconomicosXML"


def envelope(inner: str) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>\n'
        f'<string xmlns="http://ws.sdde.bccr.fi.cr">{escape(inner)}</string>'
    )


def ingreso204(*rows: tuple[str, str]) -> str:
    body = "".join(
        "<INGRESO204>"
        "<COD_INDICADORINTERNO>318</COD_INDICADORINTERNO>"
        f"<DES_FECHA>{day}T00:00:00-06:00</DES_FECHA>"
        f"<NUM_VALOR>{value}</NUM_VALOR>"
        "</INGRESO204>"
        for day, value in rows
    )
    return f"<Datos_de_BCCR>{body}</Datos_de_BCCR>"


INGC011 = (
    "<Datos_de_INGC011_CAT_INDICADORECONOMIC>"
    "<INGC011_CAT_INDICADORECONOMIC>"
    "<COD_INDICADORINTERNO>318</COD_INDICADORINTERNO>"
    "<DES_FECHA>2025-03-07T00:00:00-06:00</DES_FECHA>"
    "<NUM_VALOR>509.80000000</NUM_VALOR>"
    "</INGC011_CAT_INDICADORECONOMIC>"
    "</Datos_de_INGC011_CAT_INDICADORECONOMIC>"
)


class TestParseIndicatorXml:
    """Known layouts first, then a tree search."""

    def test_ingreso204_in_envelope(self):
        observation = parse_indicator_xml(envelope(ingreso204(("2025-03-10", "512.34000000"))))
        assert observation.value == Decimal("512.34000000")
        assert observation.as_of == date(2025, 3, 10)
        assert observation.shape == "ingreso204"

    def test_ingc011_layout(self):
        observation = parse_indicator_xml(envelope(INGC011))
        assert observation.value == Decimal("509.80000000")
        assert observation.shape == "ingc011"

    def test_inner_document_without_envelope(self):
        observation = parse_indicator_xml(ingreso204(("2025-03-10", "512.34")))
        assert observation.value == Decimal("512.34")

    def test_latest_row_wins(self):
        document = ingreso204(("2025-03-10", "512.34"), ("2025-03-08", "510.00"))
        assert parse_indicator_xml(envelope(document)).as_of == date(2025, 3, 10)

    def test_unknown_layout_found_by_search(self):
        document = (
            "<Respuesta><Fila><NUM_VALOR>511,50</NUM_VALOR>"
            "<FEC_VALOR>09/03/2025</FEC_VALOR></Fila></Respuesta>"
        )
        observation = parse_indicator_xml(envelope(document))
        assert observation.value == Decimal("511.50")
        assert observation.as_of == date(2025, 3, 9)
        assert observation.shape == "generic"

    def test_no_value_gives_none(self):
        assert parse_indicator_xml(envelope("<Datos_de_BCCR></Datos_de_BCCR>")) is None
        assert parse_indicator_xml('<string xmlns="http://ws.sdde.bccr.fi.cr"></string>') is None

    def test_non_numeric_value_is_ignored(self):
        assert parse_indicator_xml(envelope(ingreso204(("2025-03-10", "n/a")))) is None

    def test_not_xml_raises(self):
        with pytest.raises(ResponseParseError):
            parse_indicator_xml("Service temporarily unavailable")

    def test_date_range_order(self):
        with pytest.raises(ValueError):
            DateRange(start=date(2025, 3, 10), end=date(2025, 3, 1))


def make_source(router, clock, sleep, email="ops@example.com", token="TOKEN-123"):
    executor = RequestExecutor(
        ConfigProvider(DictConfigStore(), ConnectionConfig(endpoint=BCCR_URL, retries=1), prefix="bccr"),
        service_id="bccr",
        transport=router.transport(),
        sleep=sleep,
    )
    cache = CacheAside(MemoryStore(clock=clock), clock=clock)
    return BCCRSource(executor, cache, BCCR_URL, email=email, token=token, name="tests", clock=clock)


class TestBCCRSource:
    """Fetching, caching and rate limiting."""

    @pytest.mark.asyncio
    async def test_usd_sell_rate(self, router, clock, sleep):
        router.add("GET", BCCR_PATH, httpx.Response(200, text=envelope(ingreso204(("2025-03-10", "512.34")))))
        source = make_source(router, clock, sleep)

        rate = await source.fetch_usd_sell_rate()

        assert rate.currency == "USD_VENTA"
        assert rate.rate == Decimal("512.34")
        assert rate.as_of_date == date(2025, 3, 10)
        assert rate.source == "BCCR"
        assert not rate.stale

        params = router.requests[0].url.params
        assert params["Indicador"] == "318"
        assert params["FechaInicio"] == "10/03/2025"
        assert params["FechaFinal"] == "10/03/2025"
        assert params["SubNiveles"] == "N"
        assert params["CorreoElectronico"] == "ops@example.com"
        assert params["Token"] == "TOKEN-123"

    @pytest.mark.asyncio
    async def test_reads_are_cached(self, router, clock, sleep):
        router.add("GET", BCCR_PATH, httpx.Response(200, text=envelope(ingreso204(("2025-03-10", "512.34")))))
        source = make_source(router, clock, sleep)

        await source.fetch_usd_sell_rate()
        clock.advance(minutes=30)
        await source.fetch_usd_sell_rate()

        assert len(router.requests) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_serves_stale_value(self, router, clock, sleep):
        router.add(
            "GET",
            BCCR_PATH,
            httpx.Response(200, text=envelope(ingreso204(("2025-03-10", "512.34")))),
            httpx.Response(200, text="Rate limit exceeded. Try again later."),
        )
        source = make_source(router, clock, sleep)
        day = date(2025, 3, 10)

        await source.fetch_usd_sell_rate(day)
        clock.advance(seconds=3700)
        rate = await source.fetch_usd_sell_rate(day)

        assert rate.stale
        assert rate.age_seconds == 3700
        assert rate.rate == Decimal("512.34")
        assert len(router.requests) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_without_cache_raises(self, router, clock, sleep):
        router.add("GET", BCCR_PATH, httpx.Response(200, text="Rate limit exceeded"))
        source = make_source(router, clock, sleep)

        with pytest.raises(UpstreamRateLimitError):
            await source.fetch_usd_sell_rate()

    @pytest.mark.asyncio
    async def test_empty_answer_is_a_parse_error(self, router, clock, sleep):
        router.add("GET", BCCR_PATH, httpx.Response(200, text=envelope("<Datos_de_BCCR/>")))
        source = make_source(router, clock, sleep)

        with pytest.raises(ResponseParseError):
            await source.fetch_indicator("318")

    @pytest.mark.asyncio
    async def test_unconfigured_source_makes_no_call(self, router, clock, sleep):
        source = make_source(router, clock, sleep, email="", token="")

        assert not source.is_configured()
        with pytest.raises(InvalidRequestError):
            await source.fetch_usd_sell_rate()
        assert router.requests == []

    def test_today_uses_costa_rica_time(self, router, clock, sleep):
        clock.now = datetime(2025, 3, 11, 3, 0, tzinfo=timezone.utc)
        source = make_source(router, clock, sleep)
        assert source.today() == date(2025, 3, 10)
