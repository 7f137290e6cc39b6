"""
Log source for Substrate-based networks that relay EVM logs.

The relay node answers ``eth_getLogs`` but ignores the address filter, and its
values may arrive wrapped in node-native types. Everything is converted to
plain strings and integers before it leaves this module.
"""

import asyncio
import itertools
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from ..errors import LogSourceError, RangeTooWideError, RateLimitError, TransientSourceError
from ..models import CanonicalLogEntry
from ..resilience import ResilienceLayer
from .log_source import ChunkedLogSource
from .rpc_source import RANGE_MARKERS, RATE_LIMIT_MARKERS, to_hex


def to_plain_str(value: Any) -> str:
    """Convert a node-native value (wrapper, bytes, number) to a string."""
    if value is None:
        return ""
    if hasattr(value, "value") and not isinstance(value, (str, bytes, int)):
        return to_plain_str(value.value)
    if isinstance(value, (bytes, bytearray)):
        return to_hex(value) or ""
    return str(value)


def to_plain_int(value: Any) -> int | None:
    """Convert a node-native number (wrapper, hex or decimal string) to int."""
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if hasattr(value, "to_number"):
        return int(value.to_number())
    if hasattr(value, "value") and not isinstance(value, (str, bytes)):
        return to_plain_int(value.value)
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, byteorder="big")
    text = str(value).strip()
    if not text:
        return None
    return int(text, 16) if text.lower().startswith("0x") else int(text)


class RelayLogSource(ChunkedLogSource):
    """``eth_getLogs`` over JSON-RPC against a Substrate relay node."""

    name = "relay"

    def __init__(
        self,
        network_key: str,
        relay_url: str,
        resilience: ResilienceLayer,
        chunk_size: int,
        inter_chunk_delay: float = 1.0,
        client: httpx.AsyncClient | None = None,
        request_timeout: int = 30,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ) -> None:
        super().__init__(network_key, resilience, chunk_size, inter_chunk_delay, sleep)
        self.relay_url = relay_url
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=request_timeout)
        self._ids = itertools.count(1)

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self.client.post(self.relay_url, json=payload)
        except httpx.HTTPError as e:
            raise TransientSourceError(f"relay request failed: {e}", self.name) from e

        if response.status_code == 429:
            raise RateLimitError("relay returned HTTP 429", self.name)
        if response.status_code >= 500:
            raise TransientSourceError(f"relay returned HTTP {response.status_code}", self.name)
        try:
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPStatusError, ValueError) as e:
            raise LogSourceError(f"bad relay response: {e}", self.name) from e

        if error := body.get("error"):
            message = str(error.get("message", error)) if isinstance(error, dict) else str(error)
            lowered = message.lower()
            if any(m in lowered for m in RATE_LIMIT_MARKERS):
                raise RateLimitError(message, self.name)
            if any(m in lowered for m in RANGE_MARKERS):
                raise RangeTooWideError(message, self.name)
            raise LogSourceError(f"relay {method} failed: {message}", self.name)
        return body.get("result")

    async def get_block_number(self) -> int:
        result = await self._call(lambda: self._rpc("eth_blockNumber", []))
        block = to_plain_int(result)
        if block is None:
            raise LogSourceError("relay returned no block number", self.name)
        return block

    async def _fetch_range(
        self,
        address: str,
        topics: list[str] | None,
        from_block: int,
        to_block: int
    ) -> list[CanonicalLogEntry]:
        log_filter: dict[str, Any] = {"fromBlock": hex(from_block), "toBlock": hex(to_block)}
        if topics:
            log_filter["topics"] = [list(topics)]

        raw_logs = await self._rpc("eth_getLogs", [log_filter]) or []
        wanted = address.lower()
        logs = [
            self._to_canonical(log) for log in raw_logs
            if to_plain_str(log.get("address")).lower() == wanted
        ]
        self.logger.debug(
            f"{self.provider_key}: {len(logs)} of {len(raw_logs)} relayed logs "
            f"match {address} in blocks {from_block}-{to_block}"
        )
        return logs

    def _to_canonical(self, log: dict[str, Any]) -> CanonicalLogEntry:
        return CanonicalLogEntry(
            address=to_plain_str(log.get("address")),
            block_number=to_plain_int(log.get("blockNumber")) or 0,
            topics=tuple(to_plain_str(t).lower() for t in log.get("topics") or []),
            data=to_plain_str(log.get("data")) or "0x",
            transaction_hash=to_plain_str(log.get("transactionHash")).lower() or None,
            log_index=to_plain_int(log.get("logIndex")),
            block_hash=to_plain_str(log.get("blockHash")) or None,
            transaction_index=to_plain_int(log.get("transactionIndex")),
            removed=bool(log.get("removed", False)),
            source=self.name,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
