"""
Page transport used by the runner to load product pages.

Rendering is out of scope; HttpTransport fetches the server HTML with aiohttp,
which is enough for sites that embed JSON-LD. Anything that exposes
`async fetch(url, timeout_ms, wait_until) -> PageResponse` can stand in for it.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import aiohttp

from .config import USER_AGENT
from .errors import FetchError
from .fetcher import parse_retry_after

logger = logging.getLogger(__name__)

PAGE_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "sv-SE,sv;q=0.9,en;q=0.8",
}


@dataclass
class PageResponse:
    url: str
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def retry_after(self) -> Optional[float]:
        for key, value in self.headers.items():
            if key.lower() == "retry-after":
                return parse_retry_after(value)
        return None


class HttpTransport:
    """aiohttp-backed transport. Use as an async context manager."""

    def __init__(self, headers: Optional[Dict[str, str]] = None):
        self.headers = dict(PAGE_HEADERS, **(headers or {}))
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        self._session = aiohttp.ClientSession(headers=self.headers)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._session is not None:
            await self._session.close()
            self._session = None

    def set_cookies(self, cookies: Dict[str, str]) -> None:
        """Send these cookies on every following request (consent flags and the like)."""
        if self._session is None:
            raise RuntimeError("HttpTransport used outside of 'async with'")
        self._session.cookie_jar.update_cookies(cookies)

    async def fetch(self, url: str, timeout_ms: int = 30_000,
                    wait_until: str = "domcontentloaded") -> PageResponse:
        # wait_until only matters to rendering transports
        if self._session is None:
            raise RuntimeError("HttpTransport used outside of 'async with'")
        timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000)
        try:
            async with self._session.get(url, timeout=timeout, allow_redirects=True) as response:
                text = await response.text(errors="replace")
                logger.debug(f"[HttpTransport] {response.status} {url}")
                return PageResponse(
                    url=str(response.url),
                    status=response.status,
                    headers={k: v for k, v in response.headers.items()},
                    text=text,
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FetchError(url, f"{type(e).__name__} loading {url}: {e}") from e
