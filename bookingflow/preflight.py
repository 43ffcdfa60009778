from __future__ import annotations

import asyncio
import logging

import aiohttp
from aiohttp import ClientSession, ClientTimeout

from .errors import NavigationError

logger = logging.getLogger(__name__)


async def check_reachable(url: str, *, timeout: float = 10.0) -> int:
    """
    Make sure the site under test answers before a browser is launched.

    Returns the HTTP status; raises NavigationError on network failure or a
    status outside 2xx/3xx.
    """
    try:
        async with ClientSession(timeout=ClientTimeout(total=timeout)) as session:
            async with session.get(url, allow_redirects=True) as response:
                status = response.status
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise NavigationError(url, f"site is not reachable: {str(exc) or type(exc).__name__}") from exc

    if not 200 <= status < 400:
        raise NavigationError(url, f"preflight returned HTTP {status}", status=status)
    logger.info("Preflight %s -> HTTP %d", url, status)
    return status
