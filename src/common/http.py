"""
Shared HTTP utilities for API client integrations.

Transport-level retry for idempotent upstream calls. Only network failures are
retried here; application-level errors reported in a response body are left
to the caller.
"""

import logging
from typing import Any, Dict, Optional, Sequence, Type, Union

import requests
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential
)

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    requests.exceptions.Timeout,
    requests.exceptions.ConnectionError,
)


def safe_headers(response: requests.Response) -> Dict[str, str]:
    """
    Safely extract headers from a response object.

    Useful for mocked tests where response.headers might not be a proper dict.
    """
    try:
        headers = getattr(response, "headers", None)
        if isinstance(headers, dict):
            return headers
        elif hasattr(headers, "items"):
            return dict(headers.items())
        else:
            return {}
    except (TypeError, AttributeError):
        return {}


def request_with_retry(
    session: requests.Session,
    method: str,
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    data: Optional[Union[str, bytes]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 30,
    retry_on: Sequence[Type[Exception]] = TRANSIENT_ERRORS,
    attempts: int = 3,
    backoff: Dict[str, Union[int, float]] = None,
) -> requests.Response:
    """
    Make HTTP request with configurable retry logic.

    Args:
        session: Requests session to use
        method: HTTP method (GET, POST, etc.)
        url: Full URL to request
        params: Query parameters
        data: Raw request body (sent byte-for-byte, so it matches what was signed)
        headers: Additional headers (merged with session headers)
        timeout: Request timeout in seconds
        retry_on: Exception types to retry on
        attempts: Maximum number of attempts
        backoff: Backoff configuration dict with keys: multiplier, min, max

    Returns:
        HTTP response object
    """
    if backoff is None:
        backoff = {"multiplier": 1, "min": 2, "max": 30}

    @retry(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(
            multiplier=backoff.get("multiplier", 1),
            min=backoff.get("min", 2),
            max=backoff.get("max", 30)
        ),
        retry=retry_if_exception_type(tuple(retry_on)),
        reraise=True
    )
    def _make_request() -> requests.Response:
        logger.debug(f"Making {method} request to {url}")

        return session.request(
            method=method,
            url=url,
            params=params,
            data=data,
            headers=headers or None,
            timeout=timeout
        )

    return _make_request()
