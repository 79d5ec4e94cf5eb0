"""
Default HTTP producer: GET a URL and decode its JSON body.
"""
import asyncio
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional

import requests

from config.settings import settings

from .errors import NetworkError

logger = logging.getLogger("fetching.http")


def _get(url: str, headers: Optional[Dict[str, str]], timeout: float) -> requests.Response:
    request_headers = dict(headers or {})
    if settings.http_user_agent and "User-Agent" not in request_headers:
        request_headers["User-Agent"] = settings.http_user_agent
    return requests.get(url, headers=request_headers, timeout=timeout)


async def fetch_json(
    url: str,
    headers: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
) -> Any:
    """
    Fetch a URL and return its decoded JSON payload.

    The blocking requests call runs in a worker thread so the event loop
    stays free while the response is in flight.

    Args:
        url: Absolute URL to GET
        headers: Extra request headers
        timeout: Socket timeout in seconds (defaults to settings)

    Returns:
        Decoded JSON body

    Raises:
        NetworkError: On connection failure, non-2xx status, or invalid JSON
    """
    timeout = settings.http_timeout_seconds if timeout is None else timeout
    try:
        response = await asyncio.to_thread(_get, url, headers, timeout)
    except requests.RequestException as e:
        logger.error(f"HTTP request failed for {url}: {e}")
        raise NetworkError(str(e), identifier=url) from e

    if not response.ok:
        raise NetworkError(
            f"HTTP error! status: {response.status_code}",
            identifier=url,
            status_code=response.status_code,
        )

    try:
        return response.json()
    except ValueError as e:
        raise NetworkError(f"Invalid JSON from {url}: {e}", identifier=url) from e


def make_json_fetcher(
    headers: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
) -> Callable[[str], Awaitable[Any]]:
    """Bind headers/timeout into a producer taking only the identifier."""
    return partial(fetch_json, headers=headers, timeout=timeout)
