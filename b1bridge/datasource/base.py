"""
Base data source interface.
"""

from abc import ABC, abstractmethod
from typing import Generic, TypeVar

from pydantic import BaseModel

from b1bridge.services.cache import CacheAside
from b1bridge.services.client import RequestExecutor

T = TypeVar("T", bound=BaseModel)


class BaseDataSource(ABC, Generic[T]):
    """
    Abstract base class for external data sources.

    All data sources should:
    - Use a RequestExecutor for HTTP requests (timeouts, retries, error classification)
    - Read through CacheAside so rate limited upstreams are shielded
    - Return Pydantic models
    - Raise ServiceError subclasses instead of returning error payloads
    """

    def __init__(self, executor: RequestExecutor, cache: CacheAside):
        self.executor = executor
        self.cache = cache

    @property
    @abstractmethod
    def service_id(self) -> str:
        """Unique identifier for this data source."""
        ...

    @abstractmethod
    async def fetch(self) -> list[T]:
        """Fetch data from the source."""
        ...

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if the data source is properly configured."""
        ...
