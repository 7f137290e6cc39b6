"""
Block explorer REST API log source (Etherscan v2 style ``module=logs``).

"""

from typing import Any

import httpx

from ..errors import LogSourceError, RateLimitError, TransientSourceError
from ..models import CanonicalLogEntry
from ..resilience import ResilienceLayer
from .log_source import BlockTag, LogSource

DEFAULT_EXPLORER_API = "https://api.etherscan.io/v2/api"
NO_RECORDS_MESSAGES = ("no records found", "no logs found")


def parse_explorer_int(value: Any) -> int | None:
    """Explorer APIs return numbers as hex ("0x1a"), decimal strings or empty strings.

    Etherscan encodes zero as a bare "0x" (e.g. the first log of a transaction).
    """
    if value is None or value == "":
        return None
    if value == "0x":
        return 0
    if isinstance(value, int):
        return value
    text = str(value)
    return int(text, 16) if text.startswith("0x") else int(text)


class ExplorerLogSource(LogSource):
    """
    Explorer ``getLogs`` API with page-based pagination.

    The API accepts a single ``topic0``; multi-topic filters are fetched
    unfiltered and narrowed client-side.
    """

    name = "explorer"
    MAX_OFFSET = 10000

    def __init__(
        self,
        network_key: str,
        chain_id: int,
        resilience: ResilienceLayer,
        api_url: str = DEFAULT_EXPLORER_API,
        api_key: str = "",
        client: httpx.AsyncClient | None = None,
        request_timeout: int = 30,
        page_size: int = 1000,
        max_pages: int = 10
    ) -> None:
        super().__init__(network_key, resilience)
        if not 0 < page_size <= self.MAX_OFFSET:
            raise ValueError(f"Page size must be between 1 and {self.MAX_OFFSET}, got {page_size}")

        self.chain_id = chain_id
        self.api_url = api_url
        self.api_key = api_key
        self.page_size = page_size
        self.max_pages = max_pages
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=request_timeout)

    async def _get(self, params: dict[str, Any]) -> dict[str, Any]:
        query = {"chainid": self.chain_id, **params}
        if self.api_key:
            query["apikey"] = self.api_key

        try:
            response = await self.client.get(self.api_url, params=query)
        except httpx.TimeoutException as e:
            raise TransientSourceError(f"explorer request timed out: {e}", self.name) from e
        except httpx.HTTPError as e:
            raise TransientSourceError(f"explorer request failed: {e}", self.name) from e

        if response.status_code == 429:
            raise RateLimitError("explorer returned HTTP 429", self.name)
        if response.status_code >= 500:
            raise TransientSourceError(f"explorer returned HTTP {response.status_code}", self.name)
        try:
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPStatusError, ValueError) as e:
            raise LogSourceError(f"bad explorer response: {e}", self.name) from e

    async def _get_page(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        return self._result_list(await self._get(params))

    def _result_list(self, payload: dict[str, Any]) -> list[dict[str, Any]]:
        status = str(payload.get("status", ""))
        message = str(payload.get("message", ""))
        result = payload.get("result")

        match status:
            case "1":
                return list(result or [])
            case "0" if not result or any(m in message.lower() for m in NO_RECORDS_MESSAGES):
                return []
            case "0" if "rate limit" in str(result).lower():
                raise RateLimitError(f"explorer rate limit: {result}", self.name)
            case _:
                raise LogSourceError(f"explorer error {message or status}: {result}", self.name)

    async def get_block_number(self) -> int:
        return await self._call(self._block_number)

    async def _block_number(self) -> int:
        payload = await self._get({"module": "proxy", "action": "eth_blockNumber"})
        result = payload.get("result")
        if isinstance(result, str) and "rate limit" in result.lower():
            raise RateLimitError(f"explorer rate limit: {result}", self.name)
        try:
            block = parse_explorer_int(result)
        except ValueError as e:
            raise LogSourceError(f"unexpected block number {result!r}", self.name) from e
        if block is None:
            raise LogSourceError(f"explorer returned no block number: {payload}", self.name)
        return block

    async def fetch_logs(
        self,
        address: str,
        topics: list[str] | None,
        from_block: int,
        to_block: BlockTag = "latest"
    ) -> list[CanonicalLogEntry]:
        params: dict[str, Any] = {
            "module": "logs",
            "action": "getLogs",
            "address": address,
            "fromBlock": from_block,
            "toBlock": to_block,
            "offset": self.page_size,
        }
        if topics and len(topics) == 1:
            params["topic0"] = topics[0]

        items: list[dict[str, Any]] = []
        for page in range(1, self.max_pages + 1):
            page_params = {**params, "page": page}
            batch = await self._call(lambda: self._get_page(page_params))
            items.extend(batch)
            if len(batch) < self.page_size:
                break
        else:
            self.logger.warning(
                f"{self.provider_key}: stopped after {self.max_pages} pages for {address}, "
                "results may be truncated"
            )

        wanted = {t.lower() for t in topics} if topics else None
        logs = [self._to_canonical(item) for item in items]
        if wanted is not None:
            logs = [log for log in logs if log.topic0 in wanted]
        return logs

    def _to_canonical(self, item: dict[str, Any]) -> CanonicalLogEntry:
        return CanonicalLogEntry(
            address=item.get("address", ""),
            block_number=parse_explorer_int(item.get("blockNumber")) or 0,
            topics=tuple(t.lower() for t in item.get("topics", []) if t),
            data=item.get("data") or "0x",
            transaction_hash=(item.get("transactionHash") or "").lower() or None,
            log_index=parse_explorer_int(item.get("logIndex")),
            block_hash=item.get("blockHash"),
            transaction_index=parse_explorer_int(item.get("transactionIndex")),
            source=self.name,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
