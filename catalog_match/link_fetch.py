from __future__ import annotations

from typing import Optional

import httpx
import trafilatura
from loguru import logger

from .config import LinkFetchSettings
from .normalize import basic_clean
from .ports import PageFetcher

MAX_PAGE_TEXT_CHARS = 4_000


class LinkFetcher(PageFetcher):
    """
    Fetch a product page and extract its main content.

    Hardening:
      - httpx with timeouts and a redirect cap
      - byte cap on the response body
      - trafilatura extraction, falling back to the raw page text
    Any failure is logged and yields None.
    """

    def __init__(
        self,
        settings: Optional[LinkFetchSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or LinkFetchSettings()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        s = self.settings
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(s.read_timeout_s, connect=s.connect_timeout_s),
            max_redirects=s.max_redirects,
            headers={"User-Agent": s.user_agent},
            transport=self._transport,
        )

    async def fetch(self, url: str) -> Optional[str]:
        try:
            async with self._client() as client:
                r = await client.get(url)
        except httpx.TimeoutException:
            logger.warning("Link fetch timeout for {}", url)
            return None
        except httpx.HTTPError as e:
            logger.warning("Link fetch exception for {}: {}", url, e)
            return None

        if r.status_code >= 400:
            logger.warning("Link fetch: HTTP {} for {}", r.status_code, url)
            return None

        if len(r.content) > self.settings.max_bytes:
            logger.warning("Link fetch aborted: {} bytes > {} limit", len(r.content), self.settings.max_bytes)
            return None

        text = None
        try:
            text = trafilatura.extract(r.text)
        except Exception as e:
            logger.warning("Trafilatura failed for {}: {}", url, e)

        if not text:
            text = r.text

        cleaned = basic_clean(text)[:MAX_PAGE_TEXT_CHARS]
        return cleaned if cleaned else None
