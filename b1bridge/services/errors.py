"""
Service layer exceptions.

Every failure the integration client surfaces derives from ServiceError.
Only TransientNetworkError and RequestTimeoutError are retried locally.
"""

import json
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from b1bridge.services.strategy import AttemptRecord


class ServiceError(Exception):
    """Base exception for service layer errors."""

    retryable: bool = False

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class TransientNetworkError(ServiceError):
    """Connection reset/refused, DNS failure or unreachable network."""

    retryable = True


class RequestTimeoutError(ServiceError):
    """Request timed out."""

    retryable = True

    def __init__(self, service_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
        )


class CertificateError(ServiceError):
    """TLS certificate validation failed."""

    pass


class InvalidRequestError(ServiceError):
    """The request could not be built or its input is invalid."""

    pass


class ResponseParseError(ServiceError):
    """Upstream answered but the payload is unusable."""

    pass


class CacheUnavailableError(ServiceError):
    """Cache backend unreachable. Absorbed by callers, never surfaced."""

    pass


class UpstreamError(ServiceError):
    """Upstream answered with a non-success HTTP status."""

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        status_code: int | None = None,
        body: str | None = None,
    ):
        self.status_code = status_code
        self.body = body
        super().__init__(message, service_id=service_id)


class UpstreamAuthError(UpstreamError):
    """401/403, or login rejected."""

    pass


class SessionExpiredError(UpstreamAuthError):
    """Session id unknown, logged out or idle past its timeout."""

    def __init__(self, session_id: str | None = None):
        super().__init__("Invalid or expired Service Layer session", status_code=401)
        self.session_id = session_id


class UpstreamRateLimitError(UpstreamError):
    """Rate limit exceeded."""

    def __init__(
        self,
        service_id: str | None,
        retry_after: float | None = None,
        body: str | None = None,
    ):
        self.retry_after = retry_after
        msg = f"Rate limit exceeded for service '{service_id}'"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(msg, service_id=service_id, status_code=429, body=body)


class UpstreamValidationError(UpstreamError):
    """Any other 4xx."""

    pass


class UpstreamServerError(UpstreamError):
    """5xx."""

    pass


class AllStrategiesExhausted(ServiceError):
    """Every strategy of a chain failed; carries each failure by name."""

    def __init__(self, intent: str, attempts: list["AttemptRecord"]):
        self.intent = intent
        self.attempts = attempts
        reasons = "; ".join(f"{a.strategy_name}: {a.error}" for a in attempts)
        super().__init__(
            f"All {len(attempts)} strategies failed for '{intent}': {reasons}"
        )

    @property
    def failures(self) -> dict[str, str]:
        return {a.strategy_name: a.error or "" for a in self.attempts}


def extract_upstream_message(body: str | None) -> str | None:
    """Pull the human-readable message out of a Service Layer error body."""
    if not body:
        return None
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None

    error = payload.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, dict):
            return message.get("value")
        if isinstance(message, str):
            return message
    return None


def classify_status(
    status_code: int,
    body: str | None,
    service_id: str | None = None,
    retry_after: float | None = None,
) -> UpstreamError:
    """Map a non-success HTTP status to the matching upstream error."""
    detail = extract_upstream_message(body) or (body or "")[:200]
    message = f"HTTP {status_code}: {detail}" if detail else f"HTTP {status_code}"

    if status_code == 429:
        return UpstreamRateLimitError(service_id, retry_after=retry_after, body=body)
    if status_code in (401, 403):
        return UpstreamAuthError(message, service_id, status_code, body)
    if 400 <= status_code < 500:
        return UpstreamValidationError(message, service_id, status_code, body)
    if status_code >= 500:
        return UpstreamServerError(message, service_id, status_code, body)
    return UpstreamError(message, service_id, status_code, body)
