"""
SAP Business One Service Layer facade.

Provides:
- ServiceLayerClient: Sessions, cached reads, documents, reports, SQL and exchange rates
- Request / result models for its operations
"""

from b1bridge.service_layer.client import ServiceLayerClient
from b1bridge.service_layer.models import (
    BusinessPartnerFilters,
    ConnectionStatus,
    ConversionResult,
    DocumentFilters,
    DocumentLine,
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

__all__ = [
    "ServiceLayerClient",
    # Filters
    "BusinessPartnerFilters",
    "DocumentFilters",
    "ItemFilters",
    "JournalEntryFilters",
    # Documents
    "DocumentLine",
    "DocumentPayload",
    "DocumentResult",
    "ConversionResult",
    # Results
    "ConnectionStatus",
    "ReadResult",
    "QueryResult",
    "ReportResult",
    # Exchange rates
    "ExchangeRatesResult",
    "RateInput",
    "RateUpdateReport",
    "RateUpdateResult",
]
