"""
Banco Central de Costa Rica (BCCR) economic indicators.
"""

from b1bridge.datasource.economic.bccr import (
    BCCRSource,
    DateRange,
    ExchangeRate,
    IndicatorValue,
    parse_indicator_xml,
)

__all__ = ["BCCRSource", "DateRange", "ExchangeRate", "IndicatorValue", "parse_indicator_xml"]
