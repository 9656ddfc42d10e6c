"""Shared HTTP helpers for tools that proxy third-party REST APIs."""
import logging
from typing import Any, Dict, Optional

import httpx

from ..config import settings

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """A third-party API call failed; the message is shown to the user."""


async def _get(url: str, error: str, params: Any = None,
               headers: Optional[Dict[str, str]] = None) -> httpx.Response:
    try:
        async with httpx.AsyncClient(timeout=settings.http_timeout_s) as client:
            resp = await client.get(url, params=params, headers=headers)
            resp.raise_for_status()
            return resp
    except httpx.HTTPStatusError as e:
        logger.warning(f"{error}: HTTP {e.response.status_code} from {url}")
        reason = e.response.reason_phrase or str(e.response.status_code)
        raise FetchError(f"{error}: {reason}") from e
    except httpx.HTTPError as e:
        logger.warning(f"{error}: {type(e).__name__} for {url}")
        raise FetchError(error) from e


async def fetch_json(url: str, error: str, params: Any = None,
                     headers: Optional[Dict[str, str]] = None) -> Any:
    """GET ``url`` and decode JSON; raise FetchError(``error``) on any failure."""
    resp = await _get(url, error, params=params, headers=headers)
    try:
        return resp.json()
    except ValueError as e:
        raise FetchError(f"{error}: invalid JSON") from e


async def fetch_text(url: str, error: str, params: Any = None,
                     headers: Optional[Dict[str, str]] = None) -> str:
    resp = await _get(url, error, params=params, headers=headers)
    return resp.text.strip()
