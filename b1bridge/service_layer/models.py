"""
Request and result models of the Service Layer facade.
"""

from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from b1bridge.datasource.economic.bccr import ExchangeRate


def strip_wildcards(value: str | None) -> str | None:
    """'ABC*' / '%ABC%' -> 'ABC'; matching is always contains()."""
    if value is None:
        return None
    cleaned = value.replace("*", "").replace("%", "").strip()
    return cleaned or None


# Read filters


class ItemFilters(BaseModel):
    item_code: str | None = None
    item_name: str | None = None
    part_number: str | None = None  # U_Cod_Proveedor
    warehouse_code: str = "00"
    limit: int = Field(default=50, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

    @field_validator("item_code", "item_name", "part_number")
    @classmethod
    def _strip(cls, value: str | None) -> str | None:
        return strip_wildcards(value)


class BusinessPartnerFilters(BaseModel):
    card_code: str | None = None
    card_name: str | None = None
    card_type: str | None = None  # cCustomer | cSupplier | cLid
    limit: int = Field(default=50, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class DocumentFilters(BaseModel):
    """Filters shared by sales orders and quotations."""

    card_code: str | None = None
    doc_num: int | None = None
    date_from: date | None = None
    date_to: date | None = None
    limit: int = Field(default=50, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class JournalEntryFilters(BaseModel):
    start_date: date | None = None
    end_date: date | None = None
    transaction_type: str | None = None
    project_code: str | None = None
    reference: str | None = None
    memo: str | None = None
    top: int = Field(default=100, ge=1, le=1000)
    skip: int = Field(default=0, ge=0)


# Documents


class DocumentLine(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    item_code: str = Field(alias="ItemCode", min_length=1)
    quantity: float = Field(alias="Quantity", gt=0)
    unit_price: float | None = Field(default=None, alias="UnitPrice", ge=0)
    warehouse_code: str | None = Field(default=None, alias="WarehouseCode")
    discount_percent: float | None = Field(default=None, alias="DiscountPercent")
    tax_code: str | None = Field(default=None, alias="TaxCode")


class DocumentPayload(BaseModel):
    """Body of a sales order or quotation."""

    model_config = ConfigDict(populate_by_name=True)

    card_code: str = Field(alias="CardCode", min_length=1)
    card_name: str | None = Field(default=None, alias="CardName")
    doc_date: date | None = Field(default=None, alias="DocDate")
    doc_due_date: date | None = Field(default=None, alias="DocDueDate")
    comments: str = Field(default="", alias="Comments")
    sales_person_code: int = Field(default=-1, alias="SalesPersonCode")
    num_at_card: str | None = Field(default=None, alias="NumAtCard")
    document_lines: list[DocumentLine] = Field(alias="DocumentLines", min_length=1)

    def to_payload(self, today: date) -> dict[str, Any]:
        """Service Layer JSON body; missing dates default to today."""
        body = self.model_dump(by_alias=True, exclude_none=True, mode="json")
        body["DocDate"] = (self.doc_date or today).isoformat()
        body["DocDueDate"] = (self.doc_due_date or today).isoformat()
        return body


class DocumentResult(BaseModel):
    doc_entry: int
    doc_num: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class ConversionResult(BaseModel):
    quotation_doc_entry: int
    quotation_doc_num: int | None = None
    order: DocumentResult


# Reads


class ReadResult(BaseModel):
    """Records of a cached read."""

    records: list[dict[str, Any]]
    total: int
    from_cache: bool = False
    stale: bool = False
    age_seconds: float | None = None


class QueryResult(BaseModel):
    """Rows of an SQL or query-manager execution and how they were obtained."""

    records: list[dict[str, Any]]
    strategy: str
    attempts: list[dict[str, Any]] = Field(default_factory=list)
    from_cache: bool = False


class ReportResult(BaseModel):
    report_type: str
    company_db: str | None = None
    records: list[dict[str, Any]]
    strategy: str
    from_cache: bool = False
    stale: bool = False


# Exchange rates


class ExchangeRatesResult(BaseModel):
    country: str
    source: str
    rates: list[ExchangeRate]
    attempts: list[dict[str, Any]] = Field(default_factory=list)


class RateInput(BaseModel):
    """An exchange rate to persist, as given by the caller (unvalidated)."""

    currency: str
    rate: Any
    date: Any = None


class RateUpdateResult(BaseModel):
    currency: str
    rate: Decimal | None = None
    rate_date: date | None = None
    success: bool
    strategy: str | None = None
    error: str | None = None
    attempts: list[dict[str, Any]] = Field(default_factory=list)


class RateUpdateReport(BaseModel):
    success: bool
    company_db: str | None = None
    results: list[RateUpdateResult]
    skipped: list[str] = Field(default_factory=list)
    source: str | None = None

    @property
    def persisted_count(self) -> int:
        return sum(1 for r in self.results if r.success)


# Diagnostics


class ConnectionStatus(BaseModel):
    """Outcome of a reachability check."""

    reachable: bool
    endpoint: str
    status_code: int | None = None
    error: str | None = None
    error_type: str | None = None
    correlation_id: str | None = None
