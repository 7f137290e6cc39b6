"""
Log source contract and the fallback chain that walks sources in priority order.

"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import ClassVar, TypeVar

from ..errors import (
    AllSourcesFailedError,
    CircuitOpenError,
    LogSourceError,
    RangeTooWideError,
    ReconcilerError,
    UnsupportedOperationError,
)
from ..models import CanonicalLogEntry
from ..resilience import ResilienceLayer
from .block_range import plan_chunks, split_range

T = TypeVar("T")

BlockTag = int | str


class LogSource(ABC):
    """
    A provider of raw logs for one network.

    Subclasses make their network requests through ``_call`` so that retries,
    circuit breaking and health tracking are applied uniformly.
    """

    name: ClassVar[str] = "source"
    degraded: ClassVar[bool] = False

    def __init__(self, network_key: str, resilience: ResilienceLayer) -> None:
        self.network_key = network_key
        self.resilience = resilience
        self.provider_key = f"{network_key}:{self.name}"

        # Setup logging
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    async def get_block_number(self) -> int:
        """Return the current block height."""

    @abstractmethod
    async def fetch_logs(
        self,
        address: str,
        topics: list[str] | None,
        from_block: int,
        to_block: BlockTag = "latest"
    ) -> list[CanonicalLogEntry]:
        """
        Fetch logs emitted by ``address`` in an inclusive block range.

        Args:
            address: Contract address
            topics: Alternative topic0 values (OR filter), or None for all logs
            from_block: First block (inclusive)
            to_block: Last block (inclusive) or "latest"
        """

    async def fetch_logs_all_types(
        self,
        address: str,
        from_block: int,
        to_block: BlockTag = "latest"
    ) -> list[CanonicalLogEntry]:
        return await self.fetch_logs(address, None, from_block, to_block)

    async def ping(self) -> bool:
        """Connectivity self-test using the cheapest call the source supports."""
        try:
            block = await self.get_block_number()
        except (ReconcilerError, OSError) as e:
            self.logger.warning(f"{self.provider_key} connectivity test failed: {e}")
            return False
        self.logger.info(f"{self.provider_key} reachable, current block {block}")
        return True

    async def aclose(self) -> None:
        """Release network resources held by the source."""

    def is_available(self) -> bool:
        return self.resilience.is_available(self.provider_key)

    async def _call(self, fn: Callable[[], Awaitable[T]]) -> T:
        return await self.resilience.call(self.provider_key, fn)

    async def _resolve_to_block(self, to_block: BlockTag) -> int:
        if to_block == "latest":
            return await self.get_block_number()
        return int(to_block)


class ChunkedLogSource(LogSource):
    """
    A log source whose provider limits the block range of a single query.

    Ranges are split into contiguous chunks issued oldest first with a delay in
    between. A chunk the provider rejects as too wide is halved until accepted.
    """

    def __init__(
        self,
        network_key: str,
        resilience: ResilienceLayer,
        chunk_size: int,
        inter_chunk_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ) -> None:
        super().__init__(network_key, resilience)
        if chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size
        self.inter_chunk_delay = inter_chunk_delay
        self._sleep = sleep

    @abstractmethod
    async def _fetch_range(
        self,
        address: str,
        topics: list[str] | None,
        from_block: int,
        to_block: int
    ) -> list[CanonicalLogEntry]:
        """Single provider request for an inclusive range."""

    async def fetch_logs(
        self,
        address: str,
        topics: list[str] | None,
        from_block: int,
        to_block: BlockTag = "latest"
    ) -> list[CanonicalLogEntry]:
        end_block = await self._resolve_to_block(to_block)
        chunks = plan_chunks(from_block, end_block, self.chunk_size)
        if len(chunks) > 1:
            self.logger.info(
                f"{self.provider_key}: fetching blocks {from_block}-{end_block} "
                f"in {len(chunks)} chunks of up to {self.chunk_size} blocks"
            )

        logs: list[CanonicalLogEntry] = []
        for index, (start, end) in enumerate(chunks):
            if index:
                await self._sleep(self.inter_chunk_delay)
            logs.extend(await self._fetch_splitting(address, topics, start, end))
        return logs

    async def _fetch_splitting(
        self,
        address: str,
        topics: list[str] | None,
        from_block: int,
        to_block: int
    ) -> list[CanonicalLogEntry]:
        try:
            return await self._call(
                lambda: self._fetch_range(address, topics, from_block, to_block)
            )
        except RangeTooWideError:
            if to_block <= from_block:
                raise
            self.logger.debug(
                f"{self.provider_key}: range {from_block}-{to_block} too wide, splitting"
            )

        logs: list[CanonicalLogEntry] = []
        for start, end in split_range(from_block, to_block):
            logs.extend(await self._fetch_splitting(address, topics, start, end))
        return logs


@dataclass(frozen=True, slots=True)
class LogFetchResult:
    """Logs returned by the first source in a chain that succeeded.

    Attributes:
        logs: Canonical log entries
        source: Name of the source that produced them
        degraded: True when the source only provides block numbers
        errors: Errors of the sources tried before, keyed by source name
    """

    logs: list[CanonicalLogEntry]
    source: str
    degraded: bool = False
    errors: dict[str, str] = field(default_factory=dict)


class FallbackLogSource:
    """
    Walks an explicit, ordered list of sources for one network.

    A source whose circuit is open is skipped without a call; the first source
    that answers wins. When every source fails, ``AllSourcesFailedError`` is
    raised with the per-source errors.
    """

    def __init__(self, network_key: str, sources: list[LogSource]) -> None:
        self.network_key = network_key
        self.sources = list(sources)
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def source_names(self) -> list[str]:
        return [source.name for source in self.sources]

    async def fetch_logs(
        self,
        address: str,
        topics: list[str] | None,
        from_block: int,
        to_block: BlockTag = "latest",
        include_degraded: bool = True
    ) -> LogFetchResult:
        """
        Fetch logs from the first source that succeeds.

        Args:
            address: Contract address
            topics: Alternative topic0 values, or None for all logs
            from_block: First block (inclusive)
            to_block: Last block (inclusive) or "latest"
            include_degraded: Whether block-number-only sources may answer

        Raises:
            AllSourcesFailedError: If no source could answer
        """
        errors: dict[str, str] = {}
        for source in self.sources:
            if source.degraded and not include_degraded:
                continue
            if not source.is_available():
                errors[source.name] = "circuit open"
                self.logger.info(f"Skipping {source.provider_key}: circuit open")
                continue

            try:
                logs = await source.fetch_logs(address, topics, from_block, to_block)
            except (LogSourceError, CircuitOpenError) as e:
                errors[source.name] = str(e)
                self.logger.warning(
                    f"{source.provider_key} failed for {address}: {e}, trying next source"
                )
                continue

            if errors:
                self.logger.info(
                    f"{self.network_key}: fell back to {source.name} after "
                    f"{', '.join(errors)} failed"
                )
            return LogFetchResult(logs=logs, source=source.name, degraded=source.degraded, errors=errors)

        raise AllSourcesFailedError(self.network_key, errors)

    async def fetch_logs_all_types(
        self,
        address: str,
        from_block: int,
        to_block: BlockTag = "latest"
    ) -> LogFetchResult:
        """Fetch every log of ``address`` regardless of topic."""
        return await self.fetch_logs(address, None, from_block, to_block)

    async def get_block_number(self) -> int:
        """Current block height from the first source able to report it."""
        errors: dict[str, str] = {}
        for source in self.sources:
            if not source.is_available():
                errors[source.name] = "circuit open"
                continue
            try:
                return await source.get_block_number()
            except UnsupportedOperationError:
                continue
            except (LogSourceError, CircuitOpenError) as e:
                errors[source.name] = str(e)
                self.logger.warning(f"{source.provider_key} could not report block height: {e}")
        raise AllSourcesFailedError(self.network_key, errors)

    async def test_connection(self) -> dict[str, bool]:
        """Ping every source; returns reachability keyed by source name."""
        return {source.name: await source.ping() for source in self.sources}

    async def aclose(self) -> None:
        for source in self.sources:
            await source.aclose()
