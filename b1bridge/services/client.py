"""
RequestExecutor - async HTTP calls with timeout, retry/backoff and error
classification.

One execute() call is one logical request: transient failures (connection
errors, timeouts) are retried with capped exponential backoff, everything
else is raised immediately as a ServiceError subclass.
"""

import asyncio
import ssl
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

import httpx
from loguru import logger

from b1bridge.services.config import ConfigProvider, ConnectionConfig
from b1bridge.services.errors import (
    CertificateError,
    InvalidRequestError,
    RequestTimeoutError,
    ServiceError,
    TransientNetworkError,
    classify_status,
)
from b1bridge.utils import new_correlation_id, redact_headers, redact_params

CORRELATION_HEADER = "X-Correlation-ID"


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with a cap: 1s, 2s, 4s, 5s, 5s ..."""

    base_seconds: float = 1.0
    factor: float = 2.0
    max_seconds: float = 5.0

    def delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self.base_seconds * self.factor ** (attempt - 1), self.max_seconds)


@dataclass
class Response:
    """Result of one logical request."""

    status_code: int
    headers: dict[str, str]
    raw_body: str
    json: Any = None
    correlation_id: str = ""
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass
class ExecutorStats:
    requests: int = 0
    retries: int = 0
    failures: int = 0
    by_status: dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests": self.requests,
            "retries": self.retries,
            "failures": self.failures,
            "by_status": dict(self.by_status),
        }


class RequestExecutor:
    """
    HTTP executor for one upstream service.

    Usage:
        executor = RequestExecutor(ConfigProvider(EnvConfigStore(), defaults))
        response = await executor.execute("GET", "/b1s/v1/Items?$top=5")
        print(response.json["value"])

        # Inspect non-2xx answers instead of raising
        response = await executor.execute("GET", "/", raise_for_status=False)
    """

    def __init__(
        self,
        config_provider: ConfigProvider,
        service_id: str = "service_layer",
        backoff: BackoffPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        default_headers: Mapping[str, str] | None = None,
    ):
        self.service_id = service_id
        self._config_provider = config_provider
        self._backoff = backoff or BackoffPolicy()
        self._transport = transport
        self._sleep = sleep
        self._default_headers = dict(default_headers or {})
        self._stats = ExecutorStats()

        # HTTP client (lazy initialization)
        self._http_client: httpx.AsyncClient | None = None
        self._client_config: ConnectionConfig | None = None

    async def _get_http_client(self) -> tuple[httpx.AsyncClient, ConnectionConfig]:
        """Get or create the HTTP client for the current configuration."""
        config = await self._config_provider.get()
        if self._http_client is None or config != self._client_config:
            if self._http_client is not None:
                await self._http_client.aclose()
                logger.info(f"[{self.service_id}] configuration changed, rebuilding HTTP client")
            self._http_client = httpx.AsyncClient(
                base_url=config.endpoint,
                timeout=httpx.Timeout(config.timeout),
                verify=config.verify_ssl,
                follow_redirects=True,
                transport=self._transport,
            )
            self._client_config = config
        return self._http_client, config

    async def execute(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str] | None = None,
        body: Any = None,
        params: Mapping[str, Any] | None = None,
        timeout: float | None = None,
        raise_for_status: bool = True,
        retry: bool = True,
    ) -> Response:
        """
        Execute one logical request.

        Args:
            method: HTTP method
            path: Path relative to the configured endpoint, or an absolute URL
            headers: Extra headers (merged over the defaults)
            body: JSON-serializable body, or a pre-encoded str/bytes
            params: Query parameters
            timeout: Per-attempt deadline, defaults to the configured timeout
            raise_for_status: Raise an UpstreamError for non-2xx answers
            retry: Retry transient failures; off for calls that must not run twice

        Returns:
            Response with status, headers, raw body and parsed JSON (if any)

        Raises:
            RequestTimeoutError: Every attempt timed out
            TransientNetworkError: Every attempt failed at the network level
            CertificateError: TLS validation failed (not retried)
            InvalidRequestError: The request could not be built (not retried)
            UpstreamError: Non-2xx answer, when raise_for_status is set
        """
        client, config = await self._get_http_client()
        req_timeout = timeout or config.timeout
        max_attempts = max(1, config.retries) if retry else 1
        correlation_id = new_correlation_id()
        req_headers = {**self._default_headers, **(headers or {}), CORRELATION_HEADER: correlation_id}

        self._stats.requests += 1
        logger.debug(
            f"[{self.service_id}] {method} {path} params={redact_params(params)} "
            f"headers={redact_headers(req_headers)}"
        )

        attempt = 0
        while True:
            attempt += 1
            try:
                http_response = await self._send(
                    client, method, path, req_headers, body, params, req_timeout
                )
                break
            except ServiceError as e:
                if not e.retryable or attempt >= max_attempts:
                    self._stats.failures += 1
                    logger.error(
                        f"[{self.service_id}] {method} {path} failed after {attempt} "
                        f"attempt(s) (cid={correlation_id}): {e}"
                    )
                    raise
                delay = self._backoff.delay(attempt)
                self._stats.retries += 1
                logger.warning(
                    f"[{self.service_id}] {method} {path} attempt {attempt}/{max_attempts} "
                    f"failed: {e}; retrying in {delay:.1f}s"
                )
                await self._sleep(delay)

        response = self._build_response(http_response, correlation_id, attempt)
        self._stats.by_status[response.status_code] = (
            self._stats.by_status.get(response.status_code, 0) + 1
        )
        logger.debug(
            f"[{self.service_id}] {method} {path} -> {response.status_code} "
            f"({len(response.raw_body)} bytes, cid={correlation_id})"
        )

        if raise_for_status and not response.ok:
            error = classify_status(
                response.status_code,
                response.raw_body,
                service_id=self.service_id,
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )
            logger.warning(f"[{self.service_id}] {method} {path} rejected: {error}")
            raise error

        return response

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        headers: dict[str, str],
        body: Any,
        params: Mapping[str, Any] | None,
        timeout: float,
    ) -> httpx.Response:
        """Send a single attempt, translating transport failures."""
        content = body if isinstance(body, (str, bytes)) else None
        json_body = None if content is not None else body

        try:
            return await asyncio.wait_for(
                client.request(
                    method,
                    path,
                    params=params,
                    headers=headers,
                    content=content,
                    json=json_body,
                    timeout=timeout,
                ),
                timeout=timeout,
            )

        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise RequestTimeoutError(self.service_id, timeout) from e

        except (httpx.UnsupportedProtocol, httpx.LocalProtocolError, httpx.InvalidURL) as e:
            raise InvalidRequestError(f"Malformed request: {e}", self.service_id) from e

        except (httpx.NetworkError, httpx.RemoteProtocolError, httpx.ProxyError) as e:
            if is_certificate_failure(e):
                raise CertificateError(
                    f"TLS certificate validation failed: {e}", self.service_id
                ) from e
            raise TransientNetworkError(
                f"{type(e).__name__}: {e or 'connection failed'}", self.service_id
            ) from e

    def _build_response(
        self, http_response: httpx.Response, correlation_id: str, attempts: int
    ) -> Response:
        raw_body = http_response.text
        parsed = None
        content_type = http_response.headers.get("content-type", "")
        if "json" in content_type and raw_body:
            try:
                parsed = http_response.json()
            except ValueError as e:
                logger.warning(
                    f"[{self.service_id}] could not parse JSON response (cid={correlation_id}): {e}"
                )

        return Response(
            status_code=http_response.status_code,
            headers={k.lower(): v for k, v in http_response.headers.items()},
            raw_body=raw_body,
            json=parsed,
            correlation_id=correlation_id,
            attempts=attempts,
        )

    def get_stats(self) -> dict[str, Any]:
        return {"service_id": self.service_id, **self._stats.to_dict()}

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
            self._client_config = None
        logger.debug(f"[{self.service_id}] executor closed")


def is_certificate_failure(error: BaseException) -> bool:
    """True if an ssl error sits anywhere in the exception chain."""
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, ssl.SSLError):
            return True
        if "CERTIFICATE_VERIFY_FAILED" in str(current):
            return True
        current = current.__cause__ or current.__context__
    return False


def parse_retry_after(value: str | None) -> float | None:
    """Retry-After in seconds; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None
