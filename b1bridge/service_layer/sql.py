"""
SQL execution through the Service Layer.

The Service Layer has no single reliable way to run ad hoc SQL: depending on
version and permissions a stored SQLQueries entry or QueryService_PostQuery
works. SqlRunner tries them in order.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import quote

from loguru import logger

from b1bridge.service_layer.queries import API_ROOT
from b1bridge.services.client import RequestExecutor, Response
from b1bridge.services.errors import ResponseParseError, ServiceError
from b1bridge.services.strategy import ChainResult, Strategy, StrategyChain

REPORT_QUERIES: dict[str, str] = {
    "EEFF_CR": 'SELECT * FROM "SBO_STIACR_PROD"."V_GASTOS_CON_SUBTOTALES" ORDER BY "Cuenta", "Orden"',
}

BALANCE_TRIAL_VIEW_SQL = 'SELECT * FROM "BalanceTrialSL" ORDER BY "Cuenta", "DepartamentoCode"'

BALANCE_TRIAL_SQL = """
SELECT
    T2."AcctCode" AS "Cuenta",
    T2."AcctName" AS "NombreCuenta",
    CASE T0."PrcCode"
        WHEN 'BODEGA' THEN '515001'
        WHEN 'ADMINISTR' THEN '290001'
        WHEN 'LOGISTIC' THEN '519006'
        WHEN 'TECNICOS' THEN '290001'
        WHEN 'VENTAS' THEN '515001'
        WHEN 'ARTES' THEN '519006'
        WHEN 'FINANZAS' THEN '519006'
        ELSE '515001'
    END AS "ActividadEconomica",
    CASE T0."PrcCode"
        WHEN 'BODEGA' THEN 'Maquinaria y Repuestos'
        WHEN 'ADMINISTR' THEN 'Servicio Reparacion'
        WHEN 'LOGISTIC' THEN 'Material de Empaque'
        WHEN 'TECNICOS' THEN 'Servicio Reparacion'
        WHEN 'VENTAS' THEN 'Maquinaria y Repuestos'
        WHEN 'ARTES' THEN 'Material de Empaque'
        WHEN 'FINANZAS' THEN 'Material de Empaque'
        ELSE 'Maquinaria y Repuestos'
    END AS "NombreActividad",
    T0."PrcCode" AS "DepartamentoCode",
    'Sin Departamento' AS "DepartamentoNombre",
    ROUND(SUM(COALESCE(T1."Debit", 0) - COALESCE(T1."Credit", 0)), 4) AS "TotalLocal",
    ROUND(SUM(COALESCE(T1."FCDebit", 0) - COALESCE(T1."FCCredit", 0)), 2) AS "TotalDolares"
FROM "OPRC" T0
INNER JOIN "JDT1" T1 ON T0."PrcCode" = T1."PrcCode"
INNER JOIN "OACT" T2 ON T1."Account" = T2."AcctCode"
WHERE T2."AcctCode" LIKE '61%'
  AND (T1."Debit" > 0 OR T1."Credit" > 0)
  AND T0."PrcCode" IS NOT NULL
  AND T0."PrcCode" <> ''
GROUP BY T2."AcctCode", T2."AcctName", T0."PrcCode"
HAVING ABS(SUM(COALESCE(T1."Debit", 0) - COALESCE(T1."Credit", 0))) > 0.01
ORDER BY T2."AcctCode", T0."PrcCode"
"""


def new_query_code() -> str:
    """Unique SqlCode for a temporary SQLQueries entry."""
    return f"b1b{uuid.uuid4().hex[:16]}"


def rows_of(payload: Any, source: str) -> list[dict[str, Any]]:
    """The 'value' rows of a Service Layer answer."""
    if isinstance(payload, dict):
        rows = payload.get("value")
        if isinstance(rows, list):
            return rows
    raise ResponseParseError(f"{source} answer has no 'value' rows")


def query_manager_paths(name: str) -> list[str]:
    """Endpoints that may run a saved Query Manager query, in order."""
    encoded = quote(name, safe="")
    return [
        f"{API_ROOT}/SQLQueries('{name}')/List",
        f"{API_ROOT}/SQLQueries('{encoded}')/List",
        f"{API_ROOT}/UserQueries('{name}')",
        f"{API_ROOT}/UserQueries('{encoded}')",
    ]


@dataclass(frozen=True)
class SqlRequest:
    sql: str
    headers: dict[str, str]


class SqlRunner:
    """
    Runs SQL text with the first Service Layer mechanism that accepts it.

    Usage:
        runner = SqlRunner(executor)
        result = await runner.run('SELECT * FROM "OITM"', headers)
        rows, strategy = result.value, result.strategy_name
    """

    def __init__(
        self,
        executor: RequestExecutor,
        code_factory: Callable[[], str] = new_query_code,
    ):
        self._executor = executor
        self._code_factory = code_factory
        self.chain: StrategyChain[SqlRequest, list[dict[str, Any]]] = StrategyChain(
            "execute custom query",
            [
                Strategy("sql_queries", self.via_sql_queries),
                Strategy("query_service", self.via_query_service),
            ],
        )

    async def run(self, sql: str, headers: dict[str, str]) -> ChainResult[list[dict[str, Any]]]:
        return await self.chain.run(SqlRequest(sql=sql, headers=headers))

    async def via_sql_queries(self, request: SqlRequest) -> list[dict[str, Any]]:
        response = await self.run_stored(request.sql, request.headers)
        return rows_of(response.json, "SQLQueries List")

    async def run_stored(self, sql: str, headers: dict[str, str]) -> Response:
        """Store the statement as an SQLQueries entry, list it, then drop it."""
        code = self._code_factory()
        await self._executor.execute(
            "POST",
            f"{API_ROOT}/SQLQueries",
            headers=headers,
            body={"SqlCode": code, "SqlName": f"b1bridge {code}", "SqlText": sql},
        )
        try:
            return await self._executor.execute(
                "POST", f"{API_ROOT}/SQLQueries('{code}')/List", headers=headers, body={}
            )
        finally:
            await self._drop_query(code, headers)

    async def via_query_service(self, request: SqlRequest) -> list[dict[str, Any]]:
        response = await self._executor.execute(
            "POST",
            f"{API_ROOT}/QueryService_PostQuery",
            headers=request.headers,
            body={"QueryPath": request.sql},
        )
        return rows_of(response.json, "QueryService_PostQuery")

    async def _drop_query(self, code: str, headers: dict[str, str]) -> None:
        try:
            await self._executor.execute(
                "DELETE", f"{API_ROOT}/SQLQueries('{code}')", headers=headers
            )
        except ServiceError as e:
            logger.warning(f"Could not remove temporary SQL query {code}: {e}")
