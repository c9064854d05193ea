"""
ServiceLayerClient - the integration facade over SAP Business One.

One instance owns every stateful piece (config, HTTP executors, stores,
session manager, cache, background sweep) and is passed to whatever needs
it. Nothing here is module global.

Usage:
    async with ServiceLayerClient(Settings.from_env()) as client:
        session = await client.login("SBO_TEST", "manager", "secret")
        items = await client.get_items(session.session_id, {"item_name": "bomba"})
        report = await client.update_costa_rica_exchange_rates(session.session_id)
        await client.logout(session.session_id)
"""

import asyncio
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Iterable, Mapping, TypeVar

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger
from pydantic import BaseModel, ValidationError

from b1bridge.datasource.economic.bccr import BCCRSource, ExchangeRate
from b1bridge.service_layer.exchange_rates import (
    BCCR,
    COUNTRY_SOURCES,
    OFFICIAL_PEG,
    SERVICE_LAYER_VIEW,
    RateWrite,
    RateWriter,
    as_rate_input,
    map_currency,
    panama_rates,
    parse_view_rows,
    validate_rate,
)
from b1bridge.service_layer.models import (
    BusinessPartnerFilters,
    ConnectionStatus,
    ConversionResult,
    DocumentFilters,
    DocumentPayload,
    DocumentResult,
    ExchangeRatesResult,
    ItemFilters,
    JournalEntryFilters,
    QueryResult,
    RateInput,
    RateUpdateReport,
    RateUpdateResult,
    ReadResult,
    ReportResult,
)
from b1bridge.service_layer.queries import (
    API_ROOT,
    business_partners_path,
    documents_path,
    enrich_item,
    exchange_rates_view_path,
    items_path,
    journal_entries_path,
)
from b1bridge.service_layer.sql import (
    BALANCE_TRIAL_SQL,
    BALANCE_TRIAL_VIEW_SQL,
    REPORT_QUERIES,
    SqlRequest,
    SqlRunner,
    query_manager_paths,
    rows_of,
)
from b1bridge.services.cache import CacheAside, CacheCategory
from b1bridge.services.client import RequestExecutor, Response
from b1bridge.services.config import (
    ConfigProvider,
    ConfigStore,
    ConnectionConfig,
    DictConfigStore,
    EnvConfigStore,
)
from b1bridge.services.errors import (
    AllStrategiesExhausted,
    InvalidRequestError,
    ResponseParseError,
    ServiceError,
    SessionExpiredError,
    UpstreamAuthError,
    UpstreamRateLimitError,
)
from b1bridge.services.sessions import Session, SessionManager
from b1bridge.services.store import FallbackStore, KeyValueStore, MemoryStore, RedisStore
from b1bridge.services.strategy import ChainResult, Strategy, StrategyChain, attempt_in_order
from b1bridge.settings import Settings
from b1bridge.utils import truncate, utcnow

M = TypeVar("M", bound=BaseModel)
R = TypeVar("R")

SERVICE_ID = "service_layer"

SYSTEM_INFO_PATHS = ["/sap/bc/rest/system/info", "/", "/sap/public/ping", "/sap/bc/ping"]

QUOTATION_LINE_FIELDS = (
    "ItemCode",
    "Quantity",
    "UnitPrice",
    "WarehouseCode",
    "DiscountPercent",
    "TaxCode",
)

AUTH_ERROR_TYPES = frozenset({UpstreamAuthError.__name__, SessionExpiredError.__name__})


def _coerce(model: type[M], value: M | Mapping[str, Any] | None) -> M:
    """Accept a model instance, a plain mapping or None (defaults)."""
    if value is None:
        return model()
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid {model.__name__}: {e}", SERVICE_ID) from e


def _quotation_line(line: Mapping[str, Any]) -> dict[str, Any]:
    return {k: line[k] for k in QUOTATION_LINE_FIELDS if line.get(k) is not None}


def _parse_doc_date(value: Any) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


class ServiceLayerClient:
    """
    Facade over the Service Layer and the BCCR indicator service.

    Every read and write takes the caller's session id; the session is
    touched on use and invalidated locally when the Service Layer rejects it.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        config_store: ConfigStore | None = None,
        store: KeyValueStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or Settings.from_env()
        self._clock = clock or utcnow
        s = self.settings

        self.config = ConfigProvider(
            config_store or EnvConfigStore(),
            ConnectionConfig(
                endpoint=s.sl_endpoint,
                timeout=s.sl_timeout,
                retries=s.sl_retries,
                verify_ssl=s.sl_verify_ssl,
            ),
            prefix="sl",
        )
        self.executor = RequestExecutor(
            self.config, service_id=SERVICE_ID, transport=transport, sleep=sleep
        )

        # Shared store (Redis) when configured, in-process memory otherwise
        self._owns_store = store is None
        if store is None and s.redis_url:
            store = RedisStore(s.redis_url)
        self.shared_store = store

        self._session_memory = MemoryStore(clock=self._clock)
        self._cache_memory = MemoryStore(clock=self._clock)
        session_store: KeyValueStore = self._session_memory
        cache_store: KeyValueStore = self._cache_memory
        if store is not None:
            session_store = FallbackStore(store, self._session_memory)
            cache_store = FallbackStore(store, self._cache_memory)

        self.sessions = SessionManager(
            self.executor,
            session_store,
            timeout_minutes=s.session_timeout_minutes,
            cookie_name=s.sl_session_cookie,
            prefix=f"{s.redis_key_prefix}session:",
            clock=self._clock,
        )
        self.cache = CacheAside(cache_store, prefix=f"{s.redis_key_prefix}cache:", clock=self._clock)

        self.bccr_config = ConfigProvider(
            DictConfigStore(),
            ConnectionConfig(endpoint=s.bccr_url, timeout=s.bccr_timeout, retries=s.sl_retries),
            prefix="bccr",
        )
        self.bccr_executor = RequestExecutor(
            self.bccr_config, service_id=BCCRSource.SERVICE_ID, transport=transport, sleep=sleep
        )
        self.bccr = BCCRSource(
            self.bccr_executor,
            self.cache,
            s.bccr_url,
            email=s.bccr_email,
            token=s.bccr_token,
            name=s.bccr_name,
            clock=self._clock,
        )

        self.sql = SqlRunner(self.executor)
        self.rate_writer = RateWriter(self.executor, self.sql)
        self.scheduler = AsyncIOScheduler()
        self._initialized = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def init(self) -> None:
        """Check the shared store and start the session sweep."""
        if self._initialized:
            return

        if self.shared_store is not None:
            if await self.shared_store.ping():
                logger.info("Shared session/cache store reachable")
            else:
                logger.warning("Shared store unreachable, falling back to in-process memory")

        self.scheduler.add_job(
            self.sweep_expired,
            trigger="interval",
            minutes=self.settings.session_sweep_minutes,
            id="session_sweep",
            name="Expired Session and Cache Sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self._initialized = True

        config = await self.config.get()
        logger.info(f"Service Layer client ready: endpoint={config.endpoint}")

    async def close(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            # shutdown is queued on the event loop
            await asyncio.sleep(0)
        await self.cache.close()
        await self.executor.close()
        await self.bccr_executor.close()
        if self.shared_store is not None and self._owns_store:
            await self.shared_store.close()
        self._initialized = False
        logger.info("Service Layer client closed")

    async def __aenter__(self) -> "ServiceLayerClient":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def sweep_expired(self) -> dict[str, int]:
        """Drop expired sessions and cache entries held in process memory."""
        sessions = await self.sessions.cleanup_expired_sessions()
        cache_entries = self._cache_memory.cleanup_expired()
        if cache_entries:
            logger.debug(f"Sweep removed {cache_entries} expired cache entries")
        return {"sessions": sessions, "cache_entries": cache_entries}

    def clear_config_cache(self) -> None:
        """Re-read connection settings on the next call."""
        self.config.clear_cache()
        self.bccr_config.clear_cache()

    # =========================================================================
    # Connection
    # =========================================================================

    async def test_connection(self) -> ConnectionStatus:
        """Probe the Service Layer root. Any HTTP answer counts as reachable."""
        config = await self.config.get()
        try:
            response = await self.executor.execute("GET", "/", raise_for_status=False)
        except ServiceError as e:
            logger.error(f"Service Layer unreachable at {config.endpoint}: {e}")
            return ConnectionStatus(
                reachable=False,
                endpoint=config.endpoint,
                error=str(e),
                error_type=type(e).__name__,
            )

        logger.info(f"Service Layer reachable at {config.endpoint} (HTTP {response.status_code})")
        return ConnectionStatus(
            reachable=True,
            endpoint=config.endpoint,
            status_code=response.status_code,
            correlation_id=response.correlation_id,
        )

    async def get_system_info(self) -> dict[str, Any]:
        """
        Server information from the first informational endpoint that answers.

        Raises:
            AllStrategiesExhausted: No endpoint answered with 2xx
        """
        config = await self.config.get()

        def info_from(path: str) -> Callable[[None], Awaitable[dict[str, Any]]]:
            async def run(_: None) -> dict[str, Any]:
                response = await self.executor.execute("GET", path)
                data = response.json if response.json is not None else truncate(response.raw_body, 500)
                return {"endpoint": path, "status_code": response.status_code, "data": data}

            return run

        async def compute() -> dict[str, Any]:
            result = await attempt_in_order(
                [Strategy(path, info_from(path)) for path in SYSTEM_INFO_PATHS],
                None,
                intent="system info",
            )
            return result.value

        result = await self.cache.get_or_compute(
            CacheCategory.SYSTEM_INFO, {"endpoint": config.endpoint}, compute
        )
        return result.value

    # =========================================================================
    # Sessions
    # =========================================================================

    async def login(self, company_db: str, username: str, password: str) -> Session:
        if not company_db or not username:
            raise InvalidRequestError("company_db and username are required", SERVICE_ID)
        return await self.sessions.login(company_db, username, password)

    async def logout(self, session_id: str) -> bool:
        return await self.sessions.logout(session_id)

    async def get_session(self, session_id: str) -> Session | None:
        return await self.sessions.get_session(session_id)

    async def _context(
        self, session_id: str, company_db: str | None = None
    ) -> tuple[Session, dict[str, str]]:
        """Touch the session and build the headers of a call made with it."""
        session = await self.sessions.require(session_id)
        return session, self.sessions.auth_headers(session_id, company_db or session.company_db)

    async def _call(
        self,
        session_id: str,
        method: str,
        path: str,
        headers: dict[str, str],
        body: Any = None,
        retry: bool = True,
    ) -> Response:
        try:
            return await self.executor.execute(
                method, path, headers=headers, body=body, retry=retry
            )
        except UpstreamAuthError:
            await self.sessions.invalidate(session_id)
            raise

    async def _run_chain(
        self, session_id: str, chain: StrategyChain[Any, R], input: Any
    ) -> ChainResult[R]:
        """
        Run a chain on behalf of a session.

        Raises:
            SessionExpiredError: Every strategy was rejected as unauthenticated
            AllStrategiesExhausted: Every strategy failed otherwise
        """
        try:
            return await chain.run(input)
        except AllStrategiesExhausted as e:
            if e.attempts and all(a.error_type in AUTH_ERROR_TYPES for a in e.attempts):
                await self.sessions.invalidate(session_id)
                raise SessionExpiredError(session_id) from e
            raise

    # =========================================================================
    # Cached reads
    # =========================================================================

    async def _read(
        self,
        session_id: str,
        category: CacheCategory,
        path: str,
        company_db: str | None,
    ) -> ReadResult:
        session, headers = await self._context(session_id, company_db)
        key = {"path": path, "company_db": headers.get("CompanyDB"), "user": session.username}

        async def fetch() -> dict[str, Any]:
            response = await self._call(session_id, "GET", path, headers)
            if not isinstance(response.json, dict):
                raise ResponseParseError(f"Unexpected answer for {path}", SERVICE_ID)
            return response.json

        result = await self.cache.get_or_compute(category, key, fetch)
        records = rows_of(result.value, path)
        return ReadResult(
            records=records,
            total=result.value.get("@odata.count") or len(records),
            from_cache=result.from_cache,
            stale=result.stale,
            age_seconds=result.age_seconds,
        )

    async def get_items(
        self,
        session_id: str,
        filters: ItemFilters | Mapping[str, Any] | None = None,
        company_db: str | None = None,
    ) -> ReadResult:
        """Items matching the filters, each with the stock of filters.warehouse_code."""
        f = _coerce(ItemFilters, filters)
        result = await self._read(session_id, CacheCategory.ITEMS, items_path(f), company_db)
        result.records = [enrich_item(item, f.warehouse_code) for item in result.records]
        logger.debug(f"Items: {len(result.records)} record(s), warehouse={f.warehouse_code}")
        return result

    async def get_business_partners(
        self,
        session_id: str,
        filters: BusinessPartnerFilters | Mapping[str, Any] | None = None,
        company_db: str | None = None,
    ) -> ReadResult:
        f = _coerce(BusinessPartnerFilters, filters)
        return await self._read(
            session_id, CacheCategory.BUSINESS_PARTNERS, business_partners_path(f), company_db
        )

    async def get_sales_orders(
        self,
        session_id: str,
        filters: DocumentFilters | Mapping[str, Any] | None = None,
        company_db: str | None = None,
    ) -> ReadResult:
        f = _coerce(DocumentFilters, filters)
        return await self._read(
            session_id, CacheCategory.SALES_ORDERS, documents_path("Orders", f), company_db
        )

    async def get_quotations(
        self,
        session_id: str,
        filters: DocumentFilters | Mapping[str, Any] | None = None,
        company_db: str | None = None,
    ) -> ReadResult:
        f = _coerce(DocumentFilters, filters)
        return await self._read(
            session_id, CacheCategory.QUOTATIONS, documents_path("Quotations", f), company_db
        )

    async def get_journal_entries(
        self,
        session_id: str,
        filters: JournalEntryFilters | Mapping[str, Any] | None = None,
        company_db: str | None = None,
    ) -> ReadResult:
        f = _coerce(JournalEntryFilters, filters)
        return await self._read(
            session_id, CacheCategory.JOURNAL_ENTRIES, journal_entries_path(f), company_db
        )

    # =========================================================================
    # Reports and SQL
    # =========================================================================

    async def _cached_rows(
        self,
        session_id: str,
        report_type: str,
        company_db: str | None,
        chain: StrategyChain[Any, list[dict[str, Any]]],
        input_fn: Callable[[dict[str, str]], Any],
    ) -> ReportResult:
        session, headers = await self._context(session_id, company_db)
        tenant = headers.get("CompanyDB")
        key = {"report": report_type, "company_db": tenant, "user": session.username}

        async def compute() -> dict[str, Any]:
            chain_result = await self._run_chain(session_id, chain, input_fn(headers))
            return {"rows": chain_result.value, "strategy": chain_result.strategy_name}

        result = await self.cache.get_or_compute(CacheCategory.REPORTS, key, compute)
        return ReportResult(
            report_type=report_type,
            company_db=tenant,
            records=result.value["rows"],
            strategy=result.value["strategy"],
            from_cache=result.from_cache,
            stale=result.stale,
        )

    async def get_financial_report(
        self,
        session_id: str,
        report_type: str = "EEFF_CR",
        company_db: str | None = None,
    ) -> ReportResult:
        """
        Run a predefined financial report.

        Raises:
            InvalidRequestError: Unknown report type
        """
        sql = REPORT_QUERIES.get(report_type)
        if sql is None:
            raise InvalidRequestError(
                f"Unsupported report type: {report_type} "
                f"(available: {', '.join(sorted(REPORT_QUERIES))})",
                SERVICE_ID,
            )
        logger.info(f"Financial report {report_type} requested")
        return await self._cached_rows(
            session_id,
            report_type,
            company_db,
            self.sql.chain,
            lambda headers: SqlRequest(sql, headers),
        )

    async def get_balance_trial(
        self, session_id: str, company_db: str | None = None
    ) -> ReportResult:
        """Expense balance by account and cost center: BalanceTrialSL view, then direct SQL."""

        async def from_view(headers: dict[str, str]) -> list[dict[str, Any]]:
            rows = (await self.sql.run(BALANCE_TRIAL_VIEW_SQL, headers)).value
            if not rows:
                raise ResponseParseError("BalanceTrialSL view returned no rows", SERVICE_ID)
            return rows

        async def from_sql(headers: dict[str, str]) -> list[dict[str, Any]]:
            return (await self.sql.run(BALANCE_TRIAL_SQL, headers)).value

        chain = StrategyChain(
            "balance trial",
            [Strategy("balance_trial_view", from_view), Strategy("direct_sql", from_sql)],
        )
        return await self._cached_rows(
            session_id, "BALANCE_TRIAL", company_db, chain, lambda headers: headers
        )

    async def execute_custom_query(
        self, session_id: str, sql: str, company_db: str | None = None
    ) -> QueryResult:
        """
        Run ad hoc SQL through the first mechanism the Service Layer accepts.

        Raises:
            InvalidRequestError: Empty SQL
            AllStrategiesExhausted: No mechanism worked
        """
        if not sql or not sql.strip():
            raise InvalidRequestError("SQL query must not be empty", SERVICE_ID)
        _, headers = await self._context(session_id, company_db)
        logger.info(f"Executing custom query ({len(sql)} chars)")

        result = await self._run_chain(session_id, self.sql.chain, SqlRequest(sql, headers))
        return QueryResult(
            records=result.value,
            strategy=result.strategy_name,
            attempts=[a.to_dict() for a in result.attempts],
        )

    async def execute_query_manager(
        self, session_id: str, query_name: str, company_db: str | None = None
    ) -> QueryResult:
        """Run a saved Query Manager query by name."""
        if not query_name or not query_name.strip():
            raise InvalidRequestError("Query name must not be empty", SERVICE_ID)
        _, headers = await self._context(session_id, company_db)

        def runner(path: str) -> Callable[[dict[str, str]], Awaitable[list[dict[str, Any]]]]:
            async def run(h: dict[str, str]) -> list[dict[str, Any]]:
                response = await self.executor.execute("POST", path, headers=h, body={})
                if isinstance(response.json, list):
                    return response.json
                return rows_of(response.json, path)

            return run

        names = ["sql_queries", "sql_queries_encoded", "user_queries", "user_queries_encoded"]
        chain = StrategyChain(
            "execute query manager",
            [Strategy(n, runner(p)) for n, p in zip(names, query_manager_paths(query_name))],
        )
        result = await self._run_chain(session_id, chain, headers)
        logger.info(f"Query Manager '{query_name}' returned {len(result.value)} row(s)")
        return QueryResult(
            records=result.value,
            strategy=result.strategy_name,
            attempts=[a.to_dict() for a in result.attempts],
        )

    # =========================================================================
    # Documents
    # =========================================================================

    async def _create_document(
        self,
        session_id: str,
        entity: str,
        category: CacheCategory,
        document: DocumentPayload | Mapping[str, Any],
        company_db: str | None,
    ) -> DocumentResult:
        payload = _coerce(DocumentPayload, document)
        _, headers = await self._context(session_id, company_db)

        response = await self._call(
            session_id,
            "POST",
            f"{API_ROOT}/{entity}",
            headers,
            payload.to_payload(self._clock().date()),
            # a timed-out create may still have been booked
            retry=False,
        )
        data = response.json if isinstance(response.json, dict) else {}
        doc_entry = data.get("DocEntry")
        if doc_entry is None:
            raise ResponseParseError(
                f"{entity} answer carried no DocEntry: {truncate(response.raw_body, 120)}",
                SERVICE_ID,
            )

        await self.cache.invalidate(category)
        logger.info(f"Created {entity} DocEntry={doc_entry} DocNum={data.get('DocNum')}")
        return DocumentResult(doc_entry=int(doc_entry), doc_num=data.get("DocNum"), data=data)

    async def create_sales_order(
        self,
        session_id: str,
        order: DocumentPayload | Mapping[str, Any],
        company_db: str | None = None,
    ) -> DocumentResult:
        """
        Create a sales order.

        Raises:
            InvalidRequestError: No customer or no lines, rejected before any call
            UpstreamValidationError: The Service Layer rejected the document
        """
        return await self._create_document(
            session_id, "Orders", CacheCategory.SALES_ORDERS, order, company_db
        )

    async def create_quotation(
        self,
        session_id: str,
        quotation: DocumentPayload | Mapping[str, Any],
        company_db: str | None = None,
    ) -> DocumentResult:
        return await self._create_document(
            session_id, "Quotations", CacheCategory.QUOTATIONS, quotation, company_db
        )

    async def convert_quotation_to_order(
        self, session_id: str, doc_entry: int, company_db: str | None = None
    ) -> ConversionResult:
        """Create a sales order carrying the customer and lines of a quotation."""
        if not isinstance(doc_entry, int) or doc_entry <= 0:
            raise InvalidRequestError(f"Invalid quotation DocEntry: {doc_entry!r}", SERVICE_ID)
        _, headers = await self._context(session_id, company_db)

        response = await self._call(
            session_id, "GET", f"{API_ROOT}/Quotations({doc_entry})", headers
        )
        quotation = response.json
        if not isinstance(quotation, dict):
            raise ResponseParseError(f"Quotation {doc_entry} answer is not an object", SERVICE_ID)

        doc_num = quotation.get("DocNum")
        try:
            order = DocumentPayload(
                CardCode=quotation.get("CardCode") or "",
                CardName=quotation.get("CardName"),
                DocDueDate=_parse_doc_date(quotation.get("DocDueDate")),
                Comments=f"Converted from quotation #{doc_num}",
                NumAtCard=quotation.get("NumAtCard"),
                DocumentLines=[
                    _quotation_line(line) for line in quotation.get("DocumentLines") or []
                ],
            )
        except ValidationError as e:
            raise ResponseParseError(
                f"Quotation {doc_entry} cannot be converted: {e}", SERVICE_ID
            ) from e

        created = await self.create_sales_order(session_id, order, company_db)
        logger.info(f"Quotation {doc_entry} converted to order {created.doc_entry}")
        return ConversionResult(
            quotation_doc_entry=doc_entry, quotation_doc_num=doc_num, order=created
        )

    # =========================================================================
    # Exchange rates
    # =========================================================================

    async def get_exchange_rates(
        self,
        country: str,
        session_id: str | None = None,
        company_db: str | None = None,
    ) -> ExchangeRatesResult:
        """
        Current rates for a country from its first source that answers.

        Raises:
            InvalidRequestError: Unsupported country
            AllStrategiesExhausted: No source answered
        """
        country_key = (country or "").strip().upper()
        sources = COUNTRY_SOURCES.get(country_key)
        if sources is None:
            raise InvalidRequestError(
                f"Unsupported country: {country} (available: {', '.join(COUNTRY_SOURCES)})",
                SERVICE_ID,
            )

        async def from_view(country_code: str) -> list[ExchangeRate]:
            if not session_id:
                raise SessionExpiredError(None)
            session, headers = await self._context(session_id, company_db)
            path = exchange_rates_view_path(country_code)
            key = {"path": path, "company_db": headers.get("CompanyDB"), "user": session.username}

            async def fetch() -> list[dict[str, Any]]:
                response = await self._call(session_id, "GET", path, headers)
                return rows_of(response.json, "ExchangeRatesView")

            result = await self.cache.get_or_compute(CacheCategory.EXCHANGE_RATES, key, fetch)
            return parse_view_rows(result.value, self._clock())

        async def from_bccr(_: str) -> list[ExchangeRate]:
            return [await self.bccr.fetch_usd_sell_rate()]

        async def official_peg(_: str) -> list[ExchangeRate]:
            return panama_rates(self.bccr.today(), self._clock())

        available = {SERVICE_LAYER_VIEW: from_view, BCCR: from_bccr, OFFICIAL_PEG: official_peg}
        result = await attempt_in_order(
            [Strategy(name, available[name]) for name in sources],
            country_key,
            intent=f"exchange rates for {country_key}",
        )
        return ExchangeRatesResult(
            country=country_key,
            source=result.strategy_name,
            rates=result.value,
            attempts=[a.to_dict() for a in result.attempts],
        )

    async def update_exchange_rates(
        self,
        session_id: str,
        rates: Iterable[RateInput | ExchangeRate | Mapping[str, Any]],
        company_db: str | None = None,
    ) -> RateUpdateReport:
        """
        Persist exchange rates, each through the "persist exchange rate" chain.

        Invalid rates are rejected individually before any upstream call.
        USD_COMPRA is skipped, USD_VENTA is booked as USD. The report is a
        success only when every submitted rate was persisted.

        Raises:
            InvalidRequestError: No rates given
            SessionExpiredError: The session is unknown or was rejected
        """
        rates = list(rates)
        if not rates:
            raise InvalidRequestError("No exchange rates provided", SERVICE_ID)
        _, headers = await self._context(session_id, company_db)
        today = self.bccr.today()

        results: list[RateUpdateResult] = []
        skipped: list[str] = []
        for raw in rates:
            try:
                item = as_rate_input(raw)
            except (InvalidRequestError, ValidationError) as e:
                results.append(RateUpdateResult(currency="?", success=False, error=str(e)))
                continue

            currency = map_currency(item.currency)
            if currency is None:
                skipped.append(item.currency)
                logger.info(f"Skipping {item.currency}, only the sell rate is booked")
                continue

            try:
                value, rate_date = validate_rate(currency, item.rate, item.date, today)
            except InvalidRequestError as e:
                logger.warning(f"Rejected exchange rate {item.currency}: {e}")
                results.append(RateUpdateResult(currency=currency, success=False, error=str(e)))
                continue

            write = RateWrite(currency=currency, rate=value, rate_date=rate_date, headers=headers)
            try:
                chain_result = await self._run_chain(session_id, self.rate_writer.chain, write)
            except AllStrategiesExhausted as e:
                logger.error(f"Exchange rate {currency} for {rate_date} not persisted: {e}")
                results.append(
                    RateUpdateResult(
                        currency=currency,
                        rate=value,
                        rate_date=rate_date,
                        success=False,
                        error=str(e),
                        attempts=[a.to_dict() for a in e.attempts],
                    )
                )
                continue

            logger.info(
                f"Exchange rate {currency}={value} for {rate_date} persisted "
                f"via {chain_result.strategy_name}"
            )
            results.append(
                RateUpdateResult(
                    currency=currency,
                    rate=value,
                    rate_date=rate_date,
                    success=True,
                    strategy=chain_result.strategy_name,
                    attempts=[a.to_dict() for a in chain_result.attempts],
                )
            )

        if any(r.success for r in results):
            await self.cache.invalidate(CacheCategory.EXCHANGE_RATES)

        report = RateUpdateReport(
            success=bool(results) and all(r.success for r in results),
            company_db=headers.get("CompanyDB"),
            results=results,
            skipped=skipped,
        )
        logger.info(
            f"Exchange rate update: {report.persisted_count}/{len(results)} persisted, "
            f"{len(skipped)} skipped"
        )
        return report

    async def update_costa_rica_exchange_rates(
        self, session_id: str, company_db: str | None = None
    ) -> RateUpdateReport:
        """
        Fetch today's BCCR USD sell rate and persist it as USD.

        A stale rate (served from cache under rate limiting) is never booked.

        Raises:
            UpstreamRateLimitError: BCCR is rate limiting and only a stale rate is available
        """
        await self.sessions.require(session_id)
        rate = await self.bccr.fetch_usd_sell_rate()
        if rate.stale:
            logger.warning(
                f"BCCR rate is stale ({rate.age_seconds or 0:.0f}s old), not booking it"
            )
            raise UpstreamRateLimitError(BCCRSource.SERVICE_ID)

        report = await self.update_exchange_rates(session_id, [rate], company_db)
        return report.model_copy(update={"source": "BCCR"})

    # =========================================================================
    # Health
    # =========================================================================

    async def get_health_status(self) -> dict[str, Any]:
        """Configuration and internal state. Does not call the Service Layer."""
        config = await self.config.get()
        shared = None
        if self.shared_store is not None:
            shared = {
                "type": type(self.shared_store).__name__,
                "reachable": await self.shared_store.ping(),
            }
        return {
            "endpoint": config.endpoint,
            "timeout": config.timeout,
            "retries": config.retries,
            "verify_ssl": config.verify_ssl,
            "initialized": self._initialized,
            "shared_store": shared,
            "sessions": await self.sessions.get_session_stats(),
            "cache": self.cache.get_stats(),
            "executor": self.executor.get_stats(),
            "bccr": {
                "configured": self.bccr.is_configured(),
                **self.bccr_executor.get_stats(),
            },
            "timestamp": self._clock().isoformat(),
        }
