"""
Last-resort log source that scrapes block numbers from a public explorer page.

The page only reveals which blocks touched the contract, so every entry carries
a block number and nothing else.
"""

import re
from typing import Any

import httpx

from ..errors import (
    LogSourceError,
    RateLimitError,
    ReconcilerError,
    TransientSourceError,
    UnsupportedOperationError,
)
from ..models import CanonicalLogEntry
from ..resilience import ResilienceLayer
from .log_source import BlockTag, LogSource

BLOCK_LINK_RE = re.compile(r'<a[^>]*href="/block/(\d+)"[^>]*>')


def extract_block_numbers(html: str) -> list[int]:
    """Unique block numbers linked from an explorer page, highest first."""
    return sorted({int(match) for match in BLOCK_LINK_RE.findall(html)}, reverse=True)


class HtmlScrapeSource(LogSource):
    """Scrapes ``{explorer}/txs?a={address}`` for block anchors."""

    name = "html"
    degraded = True

    def __init__(
        self,
        network_key: str,
        explorer_url: str,
        resilience: ResilienceLayer,
        client: httpx.AsyncClient | None = None,
        request_timeout: int = 30
    ) -> None:
        super().__init__(network_key, resilience)
        self.explorer_url = explorer_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=request_timeout,
            follow_redirects=True,
            headers={"User-Agent": "Mozilla/5.0 (compatible; bridge-reconciler)"},
        )

    async def _get_page(self, path: str, params: dict[str, Any] | None = None) -> str:
        try:
            response = await self.client.get(f"{self.explorer_url}{path}", params=params)
        except httpx.HTTPError as e:
            raise TransientSourceError(f"explorer page request failed: {e}", self.name) from e

        if response.status_code == 429:
            raise RateLimitError("explorer page returned HTTP 429", self.name)
        if response.status_code >= 500:
            raise TransientSourceError(f"explorer page returned HTTP {response.status_code}", self.name)
        if response.status_code >= 400:
            raise LogSourceError(f"explorer page returned HTTP {response.status_code}", self.name)
        return response.text

    async def get_block_number(self) -> int:
        raise UnsupportedOperationError("block height is not available from HTML pages", self.name)

    async def ping(self) -> bool:
        try:
            await self._call(lambda: self._get_page("/"))
        except (ReconcilerError, OSError) as e:
            self.logger.warning(f"{self.provider_key} connectivity test failed: {e}")
            return False
        return True

    async def fetch_logs(
        self,
        address: str,
        topics: list[str] | None,
        from_block: int,
        to_block: BlockTag = "latest"
    ) -> list[CanonicalLogEntry]:
        html = await self._call(lambda: self._get_page("/txs", {"a": address}))
        upper = None if to_block == "latest" else int(to_block)
        blocks = [
            block for block in extract_block_numbers(html)
            if block >= from_block and (upper is None or block <= upper)
        ]
        self.logger.info(
            f"{self.provider_key}: scraped {len(blocks)} candidate blocks for {address}"
        )
        return [
            CanonicalLogEntry(address=address, block_number=block, source=self.name)
            for block in blocks
        ]

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
