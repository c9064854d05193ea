"""
Integration infrastructure - resilience patterns for upstream calls.

Provides:
- ConfigProvider: Lazily loaded, refreshable connection settings
- RequestExecutor: HTTP calls with timeout, retry/backoff and error classification
- build_query: OData query string builder
- MemoryStore / RedisStore / FallbackStore: Key-value store backends
- SessionManager: Service Layer sessions with sliding expiration
- CacheAside: Get-or-compute reads with per-category TTLs and stale fallback
- RequestDeduplicator: Prevents duplicate concurrent requests
- StrategyChain: Ordered alternative operations, first success wins
"""

from b1bridge.services.errors import (
    ServiceError,
    TransientNetworkError,
    RequestTimeoutError,
    CertificateError,
    InvalidRequestError,
    ResponseParseError,
    CacheUnavailableError,
    UpstreamError,
    UpstreamAuthError,
    SessionExpiredError,
    UpstreamRateLimitError,
    UpstreamValidationError,
    UpstreamServerError,
    AllStrategiesExhausted,
)
from b1bridge.services.config import (
    ConfigProvider,
    ConfigStore,
    ConnectionConfig,
    DictConfigStore,
    EnvConfigStore,
)
from b1bridge.services.client import BackoffPolicy, RequestExecutor, Response
from b1bridge.services.odata import ODataQuery, build_query
from b1bridge.services.store import (
    FallbackStore,
    KeyedLock,
    KeyValueStore,
    MemoryStore,
    RedisStore,
    in_process_part,
)
from b1bridge.services.sessions import Session, SessionManager
from b1bridge.services.cache import CacheAside, CacheCategory, CacheEntry, CacheResult
from b1bridge.services.deduplicator import RequestDeduplicator
from b1bridge.services.strategy import (
    AttemptRecord,
    ChainResult,
    Strategy,
    StrategyChain,
    attempt_in_order,
)

__all__ = [
    # Errors
    "ServiceError",
    "TransientNetworkError",
    "RequestTimeoutError",
    "CertificateError",
    "InvalidRequestError",
    "ResponseParseError",
    "CacheUnavailableError",
    "UpstreamError",
    "UpstreamAuthError",
    "SessionExpiredError",
    "UpstreamRateLimitError",
    "UpstreamValidationError",
    "UpstreamServerError",
    "AllStrategiesExhausted",
    # Config
    "ConfigProvider",
    "ConfigStore",
    "ConnectionConfig",
    "DictConfigStore",
    "EnvConfigStore",
    # Executor
    "BackoffPolicy",
    "RequestExecutor",
    "Response",
    # OData
    "ODataQuery",
    "build_query",
    # Stores
    "FallbackStore",
    "KeyedLock",
    "KeyValueStore",
    "MemoryStore",
    "RedisStore",
    "in_process_part",
    # Sessions
    "Session",
    "SessionManager",
    # Cache
    "CacheAside",
    "CacheCategory",
    "CacheEntry",
    "CacheResult",
    # Deduplicator
    "RequestDeduplicator",
    # Strategies
    "AttemptRecord",
    "ChainResult",
    "Strategy",
    "StrategyChain",
    "attempt_in_order",
]
