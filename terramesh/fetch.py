"""Shared async HTTP helpers for tile downloads."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from . import constants
from .context import CancellationToken
from .errors import GenerationCancelled, NetworkError, TerrameshError
from .models import Tile

logger = logging.getLogger(__name__)

T = TypeVar("T")


def create_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """Async client with the configured timeout and user agent.

    ``transport`` lets tests plug in an ``httpx.MockTransport``.
    """
    return httpx.AsyncClient(
        timeout=constants.HTTP_TIMEOUT,
        headers={"User-Agent": constants.USER_AGENT},
        follow_redirects=True,
        transport=transport,
    )


async def fetch_bytes(client: httpx.AsyncClient, url: str,
                      token: Optional[CancellationToken] = None) -> bytes:
    """GET ``url`` and return the body; any failure becomes ``NetworkError``."""
    if token is not None:
        token.raise_if_cancelled()
    logger.debug(f"GET {url}")
    try:
        response = await client.get(url)
    except httpx.HTTPError as e:
        raise NetworkError(url, str(e) or type(e).__name__) from e
    if token is not None:
        token.raise_if_cancelled()
    if response.status_code == 204:
        return b""
    if response.status_code != 200:
        raise NetworkError(url, f"HTTP {response.status_code}")
    return response.content


async def gather_tiles(tiles: list[Tile],
                       fetch_one: Callable[[Tile], Awaitable[T]],
                       token: Optional[CancellationToken] = None,
                       label: str = "tile") -> list[T]:
    """Run ``fetch_one`` for every tile concurrently.

    A tile that raises a pipeline error is logged and left out; the others
    still complete. Cancellation always propagates.
    """
    results = await asyncio.gather(*(fetch_one(t) for t in tiles),
                                   return_exceptions=True)
    if token is not None:
        token.raise_if_cancelled()

    kept = []
    for tile, result in zip(tiles, results):
        if isinstance(result, GenerationCancelled):
            raise result
        if isinstance(result, TerrameshError):
            logger.warning(f"Skipping {label} {tile.z}/{tile.x}/{tile.y}: {result}")
            continue
        if isinstance(result, BaseException):
            raise result
        kept.append(result)

    logger.info(f"Fetched {len(kept)}/{len(tiles)} {label}s")
    return kept
