import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping

from loguru import logger

REDACTED = "***REDACTED***"

SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "set-cookie", "x-api-key"})
SENSITIVE_PARAMS = frozenset({"token", "password", "api_key", "correoelectronico"})


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def redact_headers(headers: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    Copy headers with credentials masked, safe to log.

    Matching is case-insensitive; the original header names are kept.
    """
    if not headers:
        return {}
    return {
        name: REDACTED if name.lower() in SENSITIVE_HEADERS else value
        for name, value in headers.items()
    }


def redact_params(params: Mapping[str, Any] | None) -> dict[str, Any]:
    """Copy query parameters with secrets masked, safe to log."""
    if not params:
        return {}
    return {
        name: REDACTED if name.lower() in SENSITIVE_PARAMS else value
        for name, value in params.items()
    }


def truncate(text: str | None, limit: int = 200) -> str:
    if not text:
        return ""
    return text if len(text) <= limit else f"{text[:limit]}..."


def configure_logging(level: str = "INFO") -> None:
    """Install a single stderr sink at the given level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
        ),
    )
