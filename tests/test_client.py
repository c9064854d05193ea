"""
Tests for the HTTP request executor: retries, error classification,
correlation ids and log redaction.
"""

import httpx
import pytest

from b1bridge.services.client import (
    CORRELATION_HEADER,
    BackoffPolicy,
    RequestExecutor,
    parse_retry_after,
)
from b1bridge.services.config import ConfigProvider, ConnectionConfig, DictConfigStore
from b1bridge.services.errors import (
    CertificateError,
    RequestTimeoutError,
    TransientNetworkError,
    UpstreamAuthError,
    UpstreamRateLimitError,
    UpstreamServerError,
    UpstreamValidationError,
)
from b1bridge.utils import REDACTED, redact_headers, redact_params
from tests.conftest import SL_ENDPOINT, sl_error


def make_executor(router, sleep, retries=3, store=None):
    provider = ConfigProvider(
        store or DictConfigStore(),
        ConnectionConfig(endpoint=SL_ENDPOINT, timeout=5.0, retries=retries),
    )
    return RequestExecutor(provider, transport=router.transport(), sleep=sleep)


class TestBackoffPolicy:
    def test_exponential_with_cap(self):
        policy = BackoffPolicy()
        assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


class TestRetries:
    """Transient failures are retried, everything else is not."""

    @pytest.mark.asyncio
    async def test_timeouts_exhaust_retries_with_backoff(self, router, sleep):
        router.add("GET", "/b1s/v1/Items", httpx.ReadTimeout("read timed out"))
        executor = make_executor(router, sleep, retries=3)

        with pytest.raises(RequestTimeoutError):
            await executor.execute("GET", "/b1s/v1/Items")

        assert len(router.requests) == 3
        assert sleep.calls == [1.0, 2.0]
        await executor.close()

    @pytest.mark.asyncio
    async def test_recovers_after_connection_errors(self, router, sleep):
        router.add(
            "GET",
            "/b1s/v1/Items",
            httpx.ConnectError("Connection refused"),
            httpx.ConnectError("Connection refused"),
            httpx.Response(200, json={"value": []}),
        )
        executor = make_executor(router, sleep)

        response = await executor.execute("GET", "/b1s/v1/Items")

        assert response.ok
        assert response.attempts == 3
        assert response.json == {"value": []}
        assert sleep.calls == [1.0, 2.0]
        assert executor.get_stats()["retries"] == 2
        await executor.close()

    @pytest.mark.asyncio
    async def test_connection_errors_exhausted(self, router, sleep):
        router.add("GET", "/", httpx.ConnectError("Connection refused"))
        executor = make_executor(router, sleep, retries=2)

        with pytest.raises(TransientNetworkError):
            await executor.execute("GET", "/")
        assert sleep.calls == [1.0]
        await executor.close()

    @pytest.mark.asyncio
    async def test_certificate_failure_is_not_retried(self, router, sleep):
        router.add(
            "GET",
            "/",
            httpx.ConnectError("[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed"),
        )
        executor = make_executor(router, sleep)

        with pytest.raises(CertificateError):
            await executor.execute("GET", "/")
        assert len(router.requests) == 1
        assert sleep.calls == []
        await executor.close()

    @pytest.mark.asyncio
    async def test_http_errors_are_not_retried(self, router, sleep):
        router.add("GET", "/b1s/v1/Orders", sl_error(500, "Internal error"))
        executor = make_executor(router, sleep)

        with pytest.raises(UpstreamServerError) as exc_info:
            await executor.execute("GET", "/b1s/v1/Orders")

        assert exc_info.value.status_code == 500
        assert "Internal error" in str(exc_info.value)
        assert len(router.requests) == 1
        await executor.close()


class TestStatusClassification:
    """Non-2xx answers map to the error taxonomy."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,error_type",
        [
            (401, UpstreamAuthError),
            (403, UpstreamAuthError),
            (400, UpstreamValidationError),
            (404, UpstreamValidationError),
            (502, UpstreamServerError),
        ],
    )
    async def test_status_maps_to_error(self, router, sleep, status, error_type):
        router.add("POST", "/b1s/v1/Orders", sl_error(status, "rejected"))
        executor = make_executor(router, sleep)

        with pytest.raises(error_type) as exc_info:
            await executor.execute("POST", "/b1s/v1/Orders", body={"CardCode": "C1"})
        assert exc_info.value.status_code == status
        await executor.close()

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self, router, sleep):
        router.add(
            "GET", "/b1s/v1/Items", httpx.Response(429, text="slow down", headers={"Retry-After": "7"})
        )
        executor = make_executor(router, sleep)

        with pytest.raises(UpstreamRateLimitError) as exc_info:
            await executor.execute("GET", "/b1s/v1/Items")
        assert exc_info.value.retry_after == 7.0
        await executor.close()

    @pytest.mark.asyncio
    async def test_raise_for_status_disabled_returns_response(self, router, sleep):
        router.add("GET", "/", sl_error(401, "Unauthorized"))
        executor = make_executor(router, sleep)

        response = await executor.execute("GET", "/", raise_for_status=False)
        assert response.status_code == 401
        assert not response.ok
        await executor.close()

    def test_parse_retry_after(self):
        assert parse_retry_after("12") == 12.0
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None
        assert parse_retry_after(None) is None


class TestRequests:
    """Request building and response parsing."""

    @pytest.mark.asyncio
    async def test_correlation_id_constant_across_retries(self, router, sleep):
        router.add(
            "GET",
            "/b1s/v1/Items",
            httpx.ConnectError("reset"),
            httpx.Response(200, json={"value": []}),
        )
        executor = make_executor(router, sleep)

        response = await executor.execute("GET", "/b1s/v1/Items")

        ids = {r.headers[CORRELATION_HEADER] for r in router.requests}
        assert ids == {response.correlation_id}
        await executor.close()

    @pytest.mark.asyncio
    async def test_json_body_and_headers_sent(self, router, sleep):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = request.content
            captured["cookie"] = request.headers.get("Cookie")
            return httpx.Response(201, json={"DocEntry": 10})

        router.add("POST", "/b1s/v1/Orders", handler)
        executor = make_executor(router, sleep)

        response = await executor.execute(
            "POST",
            "/b1s/v1/Orders",
            headers={"Cookie": "B1SESSION=abc"},
            body={"CardCode": "C001"},
        )

        assert response.json == {"DocEntry": 10}
        assert b'"CardCode"' in captured["body"]
        assert captured["cookie"] == "B1SESSION=abc"
        await executor.close()

    @pytest.mark.asyncio
    async def test_absolute_url_bypasses_endpoint(self, router, sleep):
        router.add("GET", "/ws/indicators", httpx.Response(200, text="<string/>"))
        executor = make_executor(router, sleep)

        await executor.execute("GET", "https://bccr.test/ws/indicators", params={"Indicador": "318"})

        assert router.requests[0].url.host == "bccr.test"
        assert router.requests[0].url.params["Indicador"] == "318"
        await executor.close()

    @pytest.mark.asyncio
    async def test_unparsable_json_keeps_raw_body(self, router, sleep):
        router.add(
            "GET",
            "/",
            httpx.Response(200, text="{not json", headers={"Content-Type": "application/json"}),
        )
        executor = make_executor(router, sleep)

        response = await executor.execute("GET", "/")
        assert response.json is None
        assert response.raw_body == "{not json"
        await executor.close()

    @pytest.mark.asyncio
    async def test_config_change_rebuilds_client(self, router, sleep):
        router.add("GET", "/", httpx.Response(200))
        store = DictConfigStore()
        executor = make_executor(router, sleep, store=store)

        await executor.execute("GET", "/")
        store.values["sl_endpoint"] = "https://sl-backup.test:50000/"
        executor._config_provider.clear_cache()
        await executor.execute("GET", "/")

        assert [r.url.host for r in router.requests] == ["sl.test", "sl-backup.test"]
        await executor.close()


class TestRedaction:
    """Credentials never reach the logs."""

    def test_headers(self):
        redacted = redact_headers({"Cookie": "B1SESSION=abc", "Authorization": "Basic x", "Accept": "*/*"})
        assert redacted == {"Cookie": REDACTED, "Authorization": REDACTED, "Accept": "*/*"}

    def test_params(self):
        redacted = redact_params({"Token": "secret", "CorreoElectronico": "me@x.com", "Indicador": "318"})
        assert redacted["Token"] == REDACTED
        assert redacted["CorreoElectronico"] == REDACTED
        assert redacted["Indicador"] == "318"

    @pytest.mark.asyncio
    async def test_session_cookie_not_logged(self, router, sleep):
        from loguru import logger

        messages: list[str] = []
        sink_id = logger.add(lambda m: messages.append(str(m)), level="DEBUG")
        router.add("GET", "/b1s/v1/Items", httpx.Response(200, json={"value": []}))
        executor = make_executor(router, sleep)
        try:
            await executor.execute("GET", "/b1s/v1/Items", headers={"Cookie": "B1SESSION=topsecret"})
        finally:
            logger.remove(sink_id)
            await executor.close()

        assert messages
        assert not any("topsecret" in m for m in messages)
