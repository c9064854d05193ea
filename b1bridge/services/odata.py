"""
OData query string builder.

build_query() is pure and total: identical input always gives the same
string and no input raises.

    >>> build_query({"filter": {"ItemCode": "ABC"}, "top": 10})
    "?$filter=ItemCode eq 'ABC'&$top=10"
    >>> build_query({})
    ''
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping

DEFAULT_TOP = 100


@dataclass
class ODataQuery:
    """Structured $select/$filter/$top/$skip/$orderby options."""

    select: list[str] = field(default_factory=list)
    filter: dict[str, Any] = field(default_factory=dict)
    expressions: list[str] = field(default_factory=list)
    top: int | None = None
    skip: int = 0
    orderby: str | None = None

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> "ODataQuery":
        select = options.get("select") or []
        filters = options.get("filter") or {}
        expressions = options.get("expressions") or []
        return cls(
            select=[str(f) for f in select] if isinstance(select, (list, tuple)) else [],
            filter=dict(filters) if isinstance(filters, Mapping) else {},
            expressions=[str(e) for e in expressions if e],
            top=_as_int(options.get("top")),
            skip=_as_int(options.get("skip")) or 0,
            orderby=options.get("orderby") or None,
        )

    def is_empty(self) -> bool:
        return not (
            self.select
            or self.filter
            or self.expressions
            or self.top is not None
            or self.skip
            or self.orderby
        )


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def literal(value: Any) -> str:
    """Render a Python value as an OData literal."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    text = str(value).replace("'", "''")
    return f"'{text}'"


def eq(field_name: str, value: Any) -> str:
    return f"{field_name} eq {literal(value)}"


def ge(field_name: str, value: Any) -> str:
    return f"{field_name} ge {literal(value)}"


def le(field_name: str, value: Any) -> str:
    return f"{field_name} le {literal(value)}"


def contains(field_name: str, value: Any) -> str:
    return f"contains({field_name},{literal(str(value))})"


def startswith(field_name: str, value: Any) -> str:
    return f"startswith({field_name},{literal(str(value))})"


def any_of(*expressions: str) -> str:
    """Group expressions with 'or' so they combine safely with 'and'."""
    parts = [e for e in dict.fromkeys(expressions) if e]
    if len(parts) == 1:
        return parts[0]
    return f"({' or '.join(parts)})"


def build_filter(query: ODataQuery) -> str:
    clauses = [eq(name, value) for name, value in query.filter.items()]
    clauses.extend(query.expressions)
    return " and ".join(clauses)


def build_query(options: ODataQuery | Mapping[str, Any] | None = None) -> str:
    """
    Build the canonical query string for a read.

    Rules:
    - $select fields joined with ','
    - $filter entries joined with ' and ' ('field eq value', strings quoted)
    - $top defaults to 100 and is omitted only if <= 0
    - $skip omitted when 0
    - one leading '?', '&' between clauses; empty options give ''
    """
    if options is None:
        return ""
    query = options if isinstance(options, ODataQuery) else ODataQuery.from_mapping(options)
    if query.is_empty():
        return ""

    params: list[str] = []

    if query.select:
        params.append(f"$select={','.join(query.select)}")

    filter_str = build_filter(query)
    if filter_str:
        params.append(f"$filter={filter_str}")

    top = query.top if query.top is not None else DEFAULT_TOP
    if top > 0:
        params.append(f"$top={top}")

    if query.skip and query.skip > 0:
        params.append(f"$skip={query.skip}")

    if query.orderby:
        params.append(f"$orderby={query.orderby}")

    return f"?{'&'.join(params)}" if params else ""
