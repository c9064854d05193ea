"""
Read paths for the Service Layer entities.

Every builder is pure: filters in, path with its OData query string out.
"""

from typing import Any

from b1bridge.service_layer.models import (
    BusinessPartnerFilters,
    DocumentFilters,
    ItemFilters,
    JournalEntryFilters,
)
from b1bridge.services.odata import (
    ODataQuery,
    any_of,
    build_query,
    contains,
    eq,
    ge,
    le,
    startswith,
)

API_ROOT = "/b1s/v1"

ITEM_FIELDS = ["ItemCode", "ItemName", "U_Cod_Proveedor", "QuantityOnStock", "ItemWarehouseInfoCollection"]
BUSINESS_PARTNER_FIELDS = ["CardCode", "CardName", "CardType", "Phone1", "EmailAddress", "FederalTaxID"]
DOCUMENT_FIELDS = ["DocEntry", "DocNum", "CardCode", "CardName", "DocDate", "DocTotal", "DocumentStatus"]
JOURNAL_ENTRY_FIELDS = [
    "JdtNum",
    "TransId",
    "ReferenceDate",
    "Memo",
    "Reference",
    "TransactionCode",
    "ProjectCode",
    "JournalEntryLines",
]


def items_path(filters: ItemFilters) -> str:
    expressions = []
    if filters.item_code:
        expressions.append(contains("ItemCode", filters.item_code))
    if filters.item_name:
        expressions.append(contains("ItemName", filters.item_name))
    if filters.part_number:
        expressions.append(contains("U_Cod_Proveedor", filters.part_number))

    query = ODataQuery(
        select=ITEM_FIELDS,
        expressions=expressions,
        top=filters.limit,
        skip=filters.offset,
    )
    return f"{API_ROOT}/Items{build_query(query)}"


def business_partners_path(filters: BusinessPartnerFilters) -> str:
    expressions = []
    if filters.card_code:
        code = filters.card_code
        # Service Layer string comparison is case sensitive
        expressions.append(
            any_of(
                startswith("CardCode", code.upper()),
                startswith("CardCode", code.lower()),
                startswith("CardCode", code),
                contains("CardCode", code.upper()),
                contains("CardCode", code.lower()),
            )
        )
    if filters.card_name:
        expressions.append(contains("CardName", filters.card_name))
    if filters.card_type:
        expressions.append(eq("CardType", filters.card_type))

    query = ODataQuery(
        select=BUSINESS_PARTNER_FIELDS,
        expressions=expressions,
        top=filters.limit,
        skip=filters.offset,
    )
    return f"{API_ROOT}/BusinessPartners{build_query(query)}"


def documents_path(entity: str, filters: DocumentFilters) -> str:
    """Orders or Quotations, newest first."""
    expressions = []
    if filters.card_code:
        expressions.append(contains("CardCode", filters.card_code))
    if filters.doc_num is not None:
        expressions.append(eq("DocNum", filters.doc_num))
    if filters.date_from:
        expressions.append(ge("DocDate", filters.date_from.isoformat()))
    if filters.date_to:
        expressions.append(le("DocDate", filters.date_to.isoformat()))

    query = ODataQuery(
        select=DOCUMENT_FIELDS,
        expressions=expressions,
        top=filters.limit,
        skip=filters.offset,
        orderby="DocEntry desc",
    )
    return f"{API_ROOT}/{entity}{build_query(query)}"


def journal_entries_path(filters: JournalEntryFilters) -> str:
    expressions = []
    if filters.start_date:
        expressions.append(ge("ReferenceDate", filters.start_date.isoformat()))
    if filters.end_date:
        expressions.append(le("ReferenceDate", filters.end_date.isoformat()))
    if filters.transaction_type:
        expressions.append(eq("TransactionCode", filters.transaction_type))
    if filters.project_code:
        expressions.append(eq("ProjectCode", filters.project_code))
    if filters.reference:
        expressions.append(contains("Reference", filters.reference))
    if filters.memo:
        expressions.append(contains("Memo", filters.memo))

    query = ODataQuery(
        select=JOURNAL_ENTRY_FIELDS,
        expressions=expressions,
        top=filters.top,
        skip=filters.skip,
        orderby="ReferenceDate desc,TransId desc",
    )
    return f"{API_ROOT}/JournalEntries{build_query(query)}"


def exchange_rates_view_path(country: str) -> str:
    query = ODataQuery(filter={"Country": country}, top=10, orderby="Date desc")
    return f"{API_ROOT}/ExchangeRatesView{build_query(query)}"


def enrich_item(item: dict[str, Any], warehouse_code: str) -> dict[str, Any]:
    """
    Add the stock of one warehouse to an item record.

    available = in_stock - committed. Items without the warehouse get
    warehouse_exists=False and zero stock.
    """
    warehouses = item.get("ItemWarehouseInfoCollection") or []
    warehouse = next(
        (w for w in warehouses if isinstance(w, dict) and w.get("WarehouseCode") == warehouse_code),
        None,
    )

    details = None
    if warehouse is not None:
        in_stock = warehouse.get("InStock") or 0
        committed = warehouse.get("Committed") or 0
        details = {
            "warehouse_code": warehouse_code,
            "in_stock": in_stock,
            "committed": committed,
            "ordered": warehouse.get("Ordered") or 0,
            "locked": warehouse.get("Locked") or 0,
            "available": in_stock - committed,
            "minimum_stock": warehouse.get("MinimalStock") or warehouse.get("MinStock") or 0,
            "maximum_stock": warehouse.get("MaximalStock") or warehouse.get("MaxStock") or 0,
        }

    return {
        **item,
        "QuantityOnStock": item.get("QuantityOnStock") or 0,
        "warehouse_code": warehouse_code,
        "warehouse_exists": warehouse is not None,
        "warehouse_stock": details["in_stock"] if details else 0,
        "warehouse_details": details,
    }
