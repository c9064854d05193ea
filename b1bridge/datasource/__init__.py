"""
External data sources.
"""

from b1bridge.datasource.base import BaseDataSource

__all__ = ["BaseDataSource"]
