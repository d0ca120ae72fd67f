import asyncio
import gzip
import logging
import random
import re
import zlib
from typing import Optional

import aiohttp

from .config import (
    BROWSER_HEADERS,
    DISCOVERY_FETCH_BASE_DELAY_MS,
    DISCOVERY_FETCH_RETRIES,
    JITTER_MAX_MS,
    REQUEST_TIMEOUT,
)
from .errors import FetchError

logger = logging.getLogger(__name__)

_GZ_URL = re.compile(r"\.gz($|\?)", re.IGNORECASE)
_GZ_MAGIC = b"\x1f\x8b"


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header. HTTP-date values are not honored."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def decode_body(url: str, body: bytes) -> str:
    """
    Decode a response body as UTF-8, gunzipping first when the URL ends in .gz.
    Servers that already sent the .gz file with Content-Encoding: gzip hand us
    plain bytes, so a body without the gzip magic is decoded as-is. A body that
    has the magic but does not decompress raises FetchError.
    """
    if _GZ_URL.search(url):
        if body[:2] != _GZ_MAGIC:
            logger.debug(f"[Fetcher] {url} is not gzip data, decoding as-is")
        else:
            try:
                body = gzip.decompress(body)
            except (OSError, EOFError, zlib.error) as e:
                raise FetchError(url, f"corrupt gzip body from {url}: {e}") from e
    return body.decode("utf-8", errors="replace")


async def fetch_text_once(url: str, session: aiohttp.ClientSession) -> str:
    timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT)
    try:
        async with session.get(url, headers=BROWSER_HEADERS, timeout=timeout,
                               allow_redirects=True) as response:
            if response.status < 200 or response.status >= 300:
                raise FetchError(
                    url,
                    status=response.status,
                    retry_after=parse_retry_after(response.headers.get("Retry-After")),
                )
            body = await response.read()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise FetchError(url, f"{type(e).__name__} fetching {url}: {e}") from e
    return decode_body(url, body)


async def fetch_text(url: str, session: Optional[aiohttp.ClientSession] = None,
                     retries: int = DISCOVERY_FETCH_RETRIES,
                     base_delay_ms: int = DISCOVERY_FETCH_BASE_DELAY_MS) -> str:
    """
    Fetch a text document with browser-like headers, retrying with exponential
    backoff plus jitter. Raises the last FetchError once retries are exhausted.
    """
    if session is None:
        async with aiohttp.ClientSession() as own_session:
            return await fetch_text(url, own_session, retries, base_delay_ms)

    last_error = None
    for attempt in range(retries + 1):
        try:
            return await fetch_text_once(url, session)
        except FetchError as e:
            last_error = e
            if attempt < retries:
                delay = base_delay_ms * (2 ** attempt) + random.randint(0, JITTER_MAX_MS)
                logger.debug(
                    f"[Fetcher] {e} (attempt {attempt + 1}/{retries + 1}); retrying in {delay}ms"
                )
                await asyncio.sleep(delay / 1000)
    raise last_error


class TextFetcher:
    """
    Callable wrapper around one shared ClientSession, so discovery and robots
    lookups reuse connections. Use as an async context manager.
    """

    def __init__(self, retries: int = DISCOVERY_FETCH_RETRIES,
                 base_delay_ms: int = DISCOVERY_FETCH_BASE_DELAY_MS):
        self.retries = retries
        self.base_delay_ms = base_delay_ms
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __call__(self, url: str) -> str:
        return await fetch_text(url, self._session, self.retries, self.base_delay_ms)
