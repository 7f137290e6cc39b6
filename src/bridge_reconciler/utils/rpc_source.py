"""
JSON-RPC log source using web3's ``eth_getLogs``.

"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from web3 import AsyncWeb3, Web3

from ..errors import LogSourceError, RangeTooWideError, RateLimitError, TransientSourceError
from ..models import CanonicalLogEntry
from ..resilience import ResilienceLayer
from .log_source import ChunkedLogSource

RATE_LIMIT_MARKERS = ("429", "too many requests", "rate limit", "exceeded the quota")
RANGE_MARKERS = (
    "block range",
    "range too",
    "query returned more than",
    "too many results",
    "response size",
    "logs are limited",
    "range is too large",
)
TRANSIENT_STATUS = {500, 502, 503, 504}


def classify_rpc_error(error: Exception, source: str = "rpc") -> LogSourceError:
    """
    Map a provider exception onto the reconciler's error taxonomy.

    :param error: Exception raised by web3 or its HTTP session
    :param source: Name of the source, recorded on the error
    :return: A LogSourceError subclass wrapping the original message
    """
    message = str(error)
    lowered = message.lower()

    if getattr(error, "status", None) == 429 or any(m in lowered for m in RATE_LIMIT_MARKERS):
        return RateLimitError(message, source)
    if any(m in lowered for m in RANGE_MARKERS):
        return RangeTooWideError(message, source)
    if (
        isinstance(error, (TimeoutError, ConnectionError, OSError))
        or getattr(error, "status", None) in TRANSIENT_STATUS
        or "timeout" in lowered
        or "timed out" in lowered
    ):
        return TransientSourceError(message or error.__class__.__name__, source)
    return LogSourceError(message or error.__class__.__name__, source)


def to_hex(value: Any) -> str | None:
    """Normalize bytes or hex strings to a lower-case 0x-prefixed string."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value).lower()
    text = str(value)
    if not text.startswith("0x"):
        text = "0x" + text
    return text.lower()


class RpcLogSource(ChunkedLogSource):
    """
    Direct ``eth_getLogs`` against a network's JSON-RPC endpoint.

    The address and the OR-ed topic0 list are filtered server-side.
    """

    name = "rpc"

    def __init__(
        self,
        network_key: str,
        rpc_url: str,
        resilience: ResilienceLayer,
        chunk_size: int,
        inter_chunk_delay: float = 1.0,
        request_timeout: int = 30,
        w3: AsyncWeb3 | None = None,
        source_name: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ) -> None:
        """
        Initialize the RPC log source.

        Args:
            network_key: Registry key of the network
            rpc_url: HTTP(S) RPC endpoint URL
            resilience: Shared resilience layer
            chunk_size: Maximum blocks per eth_getLogs request
            inter_chunk_delay: Seconds to wait between chunk requests
            request_timeout: HTTP request timeout in seconds
            w3: Pre-built AsyncWeb3 instance (mainly for tests)
            source_name: Name override for fallback endpoints
        """
        if source_name:
            self.name = source_name
        super().__init__(network_key, resilience, chunk_size, inter_chunk_delay, sleep)
        self.rpc_url = rpc_url
        self.w3 = w3 or AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )

    async def get_block_number(self) -> int:
        return await self._call(self._block_number)

    async def _block_number(self) -> int:
        try:
            return await self.w3.eth.block_number
        except Exception as e:
            raise classify_rpc_error(e, self.name) from e

    async def _fetch_range(
        self,
        address: str,
        topics: list[str] | None,
        from_block: int,
        to_block: int
    ) -> list[CanonicalLogEntry]:
        filter_params: dict[str, Any] = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": Web3.to_checksum_address(address),
        }
        if topics:
            filter_params["topics"] = [list(topics)]

        try:
            raw_logs = await self.w3.eth.get_logs(filter_params)
        except Exception as e:
            raise classify_rpc_error(e, self.name) from e

        self.logger.debug(
            f"{self.provider_key}: {len(raw_logs)} logs in blocks {from_block}-{to_block}"
        )
        return [self._to_canonical(log) for log in raw_logs]

    def _to_canonical(self, log: Any) -> CanonicalLogEntry:
        return CanonicalLogEntry(
            address=log["address"],
            block_number=int(log["blockNumber"]),
            topics=tuple(to_hex(topic) for topic in log.get("topics", [])),
            data=to_hex(log.get("data", b"")) or "0x",
            transaction_hash=to_hex(log.get("transactionHash")),
            log_index=log.get("logIndex"),
            block_hash=to_hex(log.get("blockHash")),
            transaction_index=log.get("transactionIndex"),
            removed=bool(log.get("removed", False)),
            source=self.name,
        )

    async def aclose(self) -> None:
        disconnect = getattr(self.w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
