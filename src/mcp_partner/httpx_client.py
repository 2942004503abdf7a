"""HTTP client factory with request and response logging."""

import logging
from collections.abc import Callable
from typing import Any

import httpx

logger = logging.getLogger(__name__)

SENSITIVE_HEADERS = ("authorization", "x-api-key", "cookie")

HttpxClientFactory = Callable[..., httpx.AsyncClient]


def normalize_verify_ssl(verify_ssl: bool | str | None) -> bool | str | None:
    """Turn CLI/config spellings of a boolean into a bool, keep bundle paths."""
    if isinstance(verify_ssl, str):
        lowered = verify_ssl.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return verify_ssl


def mask_headers(headers: httpx.Headers | dict[str, str]) -> dict[str, str]:
    """Copy headers with credentials replaced."""
    safe_headers = {}
    for key, value in headers.items():
        if key.lower() in SENSITIVE_HEADERS:
            safe_headers[key] = "***MASKED***"
        else:
            safe_headers[key] = value
    return safe_headers


def custom_httpx_client(
    headers: dict[str, str] | None = None,
    timeout: httpx.Timeout | None = None,
    auth: httpx.Auth | None = None,
    verify_ssl: bool | str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create an httpx AsyncClient with MCP defaults and logging.

    Args:
        headers: Optional headers to include with all requests.
        timeout: Request timeout as httpx.Timeout object.
        auth: Optional authentication handler.
        verify_ssl: Control SSL verification. Use False to disable
            or a path to a certificate bundle.
        transport: Optional transport override, used to fake servers in tests.

    Returns:
        Configured httpx.AsyncClient instance.
    """
    kwargs: dict[str, Any] = {
        "follow_redirects": True,
        "timeout": timeout if timeout is not None else httpx.Timeout(30.0),
    }

    if headers is not None:
        kwargs["headers"] = headers

    if auth is not None:
        kwargs["auth"] = auth

    if transport is not None:
        kwargs["transport"] = transport

    normalized_verify = normalize_verify_ssl(verify_ssl)
    if normalized_verify is not None:
        kwargs["verify"] = normalized_verify
        if isinstance(normalized_verify, bool):
            logger.debug(
                "Configured httpx.AsyncClient verify=%s (SSL verification %s).",
                normalized_verify,
                "enabled" if normalized_verify else "disabled",
            )
        else:
            logger.debug(
                "Configured httpx.AsyncClient using certificate bundle at %s.",
                normalized_verify,
            )

    async def log_request(request: httpx.Request) -> None:
        """Log HTTP request details."""
        logger.debug("HTTP Request: %s %s", request.method, request.url)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Request Headers: %s", mask_headers(request.headers))

    async def log_response(response: httpx.Response) -> None:
        """Log HTTP response details."""
        logger.debug(
            "HTTP Response: %s %s - %d %s",
            response.request.method,
            response.request.url,
            response.status_code,
            response.reason_phrase,
        )
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Response Headers: %s", mask_headers(response.headers))

    kwargs["event_hooks"] = {
        "request": [log_request],
        "response": [log_response],
    }

    return httpx.AsyncClient(**kwargs)
