#!/usr/bin/env python3
"""Bridge discovery orchestration.

For each configured bridge, fetch the logs of its recent window through the
network's fallback chain, decode them, merge them into the event cache and
report the per-bridge outcome. Bridges are processed one after another with a
delay in between, and one bridge failing never stops the others.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any

import httpx

from .config import ReconcilerConfig
from .errors import AllSourcesFailedError, NoDataAvailableError, ReconcilerError
from .event_cache import EventCache
from .event_decoder import EventDecoder
from .models import (
    BridgeDescriptor,
    BridgeEvent,
    CanonicalLogEntry,
    ClaimEvent,
    EventType,
    TransferEvent,
)
from .registry import BridgeRegistry, NetworkConfig
from .resilience import ResilienceLayer
from .signatures import SignatureRegistry
from .utils.block_range import chunk_size_for, window_start
from .utils.explorer_source import DEFAULT_EXPLORER_API, ExplorerLogSource
from .utils.html_scrape_source import HtmlScrapeSource
from .utils.log_source import BlockTag, FallbackLogSource, LogSource
from .utils.relay_source import RelayLogSource
from .utils.rpc_source import RpcLogSource

# Get logger for this module
logger = logging.getLogger(__name__)


class DiscoveryContext:
    """Everything a discovery run needs, passed explicitly.

    Holds the registry, the signature registry and decoder, the event cache,
    the resilience layer and one fallback chain per network. Use it as an
    async context manager so HTTP sessions are closed on exit.
    """

    def __init__(
        self,
        registry: BridgeRegistry,
        config: ReconcilerConfig | None = None,
        cache: EventCache | None = None,
        resilience: ResilienceLayer | None = None,
        signatures: SignatureRegistry | None = None,
        sources: dict[str, FallbackLogSource] | None = None,
        http_client: httpx.AsyncClient | None = None
    ) -> None:
        """Initialize the DiscoveryContext.

        Args:
            registry: Networks and bridges to work with
            config: Reconciler configuration (defaults apply when omitted)
            cache: Event cache (built from config when omitted)
            resilience: Resilience layer (built from config when omitted)
            signatures: Signature registry (loaded from the packaged ABI when omitted)
            sources: Pre-built fallback chains keyed by network, mainly for tests
            http_client: Shared client for explorer, scrape and relay sources
        """
        self.registry = registry
        self.config = config or ReconcilerConfig()
        self.cache = cache or EventCache(
            cache_dir=self.config.cache.cache_dir,
            ttl_seconds=self.config.cache.ttl_seconds,
        )
        self.resilience = resilience or ResilienceLayer(
            policy=self.config.resilience.retry_policy(),
            breaker_threshold=self.config.resilience.breaker_threshold,
            breaker_cooldown=self.config.resilience.breaker_cooldown,
        )
        self.signatures = signatures or SignatureRegistry.from_contract_abi(
            repatriation_reward_signed=self.config.repatriation_reward_signed
        )
        self.decoder = EventDecoder(self.signatures)
        self._sources: dict[str, FallbackLogSource] = dict(sources or {})
        self._owns_client = http_client is None
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.config.discovery.request_timeout,
                follow_redirects=True,
            )
        return self._http_client

    def sources_for(self, network_key: str) -> FallbackLogSource:
        """Fallback chain for a network, built on first use."""
        if network_key not in self._sources:
            network = self.registry.network(network_key)
            chain = FallbackLogSource(network_key, self._build_sources(network))
            logger.info(f"Source priority for {network_key}: {' -> '.join(chain.source_names)}")
            self._sources[network_key] = chain
        return self._sources[network_key]

    def _build_sources(self, network: NetworkConfig) -> list[LogSource]:
        discovery = self.config.discovery
        chunk_size = chunk_size_for(network.block_time, network.max_block_range, discovery.chunk_hours)
        sources: list[LogSource] = []

        for name in network.source_priority:
            match name:
                case "rpc":
                    for index, url in enumerate(network.rpc_urls):
                        sources.append(RpcLogSource(
                            network.key,
                            url,
                            self.resilience,
                            chunk_size=chunk_size,
                            inter_chunk_delay=discovery.inter_chunk_delay,
                            request_timeout=discovery.request_timeout,
                            source_name="rpc" if index == 0 else f"rpc_fallback_{index}",
                        ))
                case "explorer":
                    sources.append(ExplorerLogSource(
                        network.key,
                        network.chain_id,
                        self.resilience,
                        api_url=network.explorer_api_url or DEFAULT_EXPLORER_API,
                        api_key=self.config.explorer_api_key,
                        client=self.http_client,
                    ))
                case "html" if network.explorer_html_url:
                    sources.append(HtmlScrapeSource(
                        network.key,
                        network.explorer_html_url,
                        self.resilience,
                        client=self.http_client,
                    ))
                case "relay" if network.relay_url or network.rpc_url:
                    sources.append(RelayLogSource(
                        network.key,
                        network.relay_url or network.rpc_url,
                        self.resilience,
                        chunk_size=chunk_size,
                        inter_chunk_delay=discovery.inter_chunk_delay,
                        client=self.http_client,
                    ))
                case _:
                    logger.warning(f"Source {name} for {network.key} is not configured, skipping")
        return sources

    async def test_connection(self, network_key: str) -> bool:
        """True when at least one source of the network answers."""
        results = await self.sources_for(network_key).test_connection()
        reachable = [name for name, ok in results.items() if ok]
        if reachable:
            logger.info(f"✓ {network_key} reachable via {', '.join(reachable)}")
        else:
            logger.error(f"✗ {network_key} unreachable through all sources")
        return bool(reachable)

    async def test_all_connections(self) -> dict[str, bool]:
        return {key: await self.test_connection(key) for key in self.registry.networks}

    def get_status(self) -> dict[str, Any]:
        return {
            "providers": self.resilience.get_status(),
            "cache": self.cache.get_stats(),
            "decoder": self.decoder.get_metrics(),
        }

    async def aclose(self) -> None:
        for chain in self._sources.values():
            await chain.aclose()
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()

    async def __aenter__(self) -> "DiscoveryContext":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


@dataclass(frozen=True, slots=True)
class BridgeDiscoveryResult:
    """Outcome of discovering one bridge.

    ``events`` holds the merged cached and fresh events. When ``error`` is set
    the bridge could not be queried and the event lists are empty.
    """

    bridge: BridgeDescriptor
    events: tuple[BridgeEvent, ...] = ()
    claims: tuple[ClaimEvent, ...] = ()
    transfers: tuple[TransferEvent, ...] = ()
    source: str | None = None
    from_block: int | None = None
    to_block: int | None = None
    fetched_logs: int = 0
    degraded_blocks: tuple[int, ...] = ()
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def __str__(self) -> str:
        if self.error:
            return f"{self.bridge}: failed ({self.error})"
        return (
            f"{self.bridge}: {len(self.transfers)} transfers, {len(self.claims)} claims "
            f"via {self.source or 'cache'}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "network_key": self.bridge.network_key,
            "bridge_address": self.bridge.address,
            "role": self.bridge.role.value,
            "source": self.source,
            "from_block": self.from_block,
            "to_block": self.to_block,
            "fetched_logs": self.fetched_logs,
            "events": len(self.events),
            "transfers": len(self.transfers),
            "claims": len(self.claims),
            "degraded_blocks": list(self.degraded_blocks),
            "error": self.error,
        }


@dataclass
class DiscoveryReport:
    """Per-bridge results of a discovery run plus aggregate statistics."""

    total_bridges: int
    results: list[BridgeDiscoveryResult] = field(default_factory=list)
    timed_out: bool = False

    @property
    def successful(self) -> list[BridgeDiscoveryResult]:
        return [r for r in self.results if r.success]

    @property
    def stats(self) -> dict[str, int]:
        successful = self.successful
        return {
            "total_bridges": self.total_bridges,
            "processed_bridges": len(self.results),
            "successful_bridges": len(successful),
            "failed_bridges": len(self.results) - len(successful),
            "total_events": sum(len(r.events) for r in successful),
            "total_transfers": sum(len(r.transfers) for r in successful),
            "total_claims": sum(len(r.claims) for r in successful),
        }

    @property
    def all_claims(self) -> list[ClaimEvent]:
        return [claim for r in self.successful for claim in r.claims]

    @property
    def all_transfers(self) -> list[TransferEvent]:
        return [transfer for r in self.successful for transfer in r.transfers]

    def require_data(self) -> None:
        """Raise when nothing could be checked at all.

        Raises:
            NoDataAvailableError: If no bridge was queried successfully
        """
        if not self.successful:
            reasons = "; ".join(f"{r.bridge.address}: {r.error}" for r in self.results)
            raise NoDataAvailableError(
                f"No data available: 0 of {self.total_bridges} bridges could be queried"
                + (f" ({reasons})" if reasons else "")
                + (" before the discovery timeout" if self.timed_out else "")
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "stats": self.stats,
            "timed_out": self.timed_out,
            "bridges": [r.to_dict() for r in self.results],
        }


class BridgeDiscovery:
    """Runs discovery over a set of bridges using a DiscoveryContext."""

    def __init__(
        self,
        context: DiscoveryContext,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ) -> None:
        self.context = context
        self.config = context.config.discovery
        self._sleep = sleep

    async def discover_bridge(
        self,
        bridge: BridgeDescriptor,
        window_hours: float | None = None
    ) -> BridgeDiscoveryResult:
        """Discover one bridge; any failure is captured on the result."""
        try:
            return await self._discover(bridge, window_hours or self.config.window_hours)
        except ReconcilerError as e:
            logger.error(f"Discovery failed for {bridge}: {e}")
            return BridgeDiscoveryResult(bridge=bridge, error=str(e))
        except Exception as e:
            logger.error(f"Unexpected error discovering {bridge}: {e}", exc_info=True)
            return BridgeDiscoveryResult(bridge=bridge, error=f"{e.__class__.__name__}: {e}")

    async def _discover(self, bridge: BridgeDescriptor, window_hours: float) -> BridgeDiscoveryResult:
        context = self.context
        network = context.registry.network(bridge.network_key)
        chain = context.sources_for(network.key)

        marks = [
            context.cache.most_recent_block(network.key, bridge.address, event_type)
            for event_type in bridge.emitted_event_types
        ]
        cached_from = min(marks) + 1 if all(mark is not None for mark in marks) else None

        try:
            current_block: int | None = await chain.get_block_number()
        except AllSourcesFailedError as e:
            if not any(source.degraded for source in chain.sources):
                raise
            # Block-only sources can still scan up to "latest" without a height
            logger.warning(f"No block height for {network.key} ({e}), scanning to latest")
            current_block = None

        if current_block is None:
            from_block = cached_from or 0
        else:
            from_block = window_start(current_block, window_hours, network.block_time)
            if cached_from is not None:
                from_block = max(from_block, cached_from)

        events: list[BridgeEvent] = []
        source: str | None = None
        fetched = 0
        degraded_blocks: tuple[int, ...] = ()
        to_block = current_block
        scan_to: BlockTag = "latest" if current_block is None else current_block

        if current_block is None or from_block <= current_block:
            logger.info(f"Scanning {bridge} blocks {from_block}-{scan_to}")
            if context.decoder.include_other:
                result = await chain.fetch_logs_all_types(bridge.address, from_block, scan_to)
            else:
                result = await chain.fetch_logs(
                    bridge.address, context.signatures.all_topics, from_block, scan_to
                )
            source = result.source
            logs = result.logs
            if to_block is None:
                to_block = max((log.block_number for log in logs), default=None)
            if result.degraded:
                logs, degraded_blocks = await self._hydrate(chain, bridge, logs)
            fetched = len(logs)
            events = context.decoder.decode_batch(logs, bridge)
        else:
            logger.debug(f"{bridge} is up to date at block {current_block}")

        event_types = list(bridge.emitted_event_types)
        event_types += sorted(
            {e.event_type for e in events if e.event_type not in event_types and e.event_type is not EventType.OTHER},
            key=lambda t: t.value,
        )
        merged: list[BridgeEvent] = []
        for event_type in event_types:
            fresh = [e for e in events if e.event_type is event_type]
            merged.extend(await context.cache.update(
                network.key, bridge.address, event_type, fresh, bridge
            ))

        claims, transfers, _ = context.decoder.partition(merged)
        discovery_result = BridgeDiscoveryResult(
            bridge=bridge,
            events=tuple(merged),
            claims=tuple(claims),
            transfers=tuple(transfers),
            source=source,
            from_block=from_block,
            to_block=to_block,
            fetched_logs=fetched,
            degraded_blocks=degraded_blocks,
        )
        logger.info(f"Discovered {discovery_result}")
        return discovery_result

    async def _hydrate(
        self,
        chain: FallbackLogSource,
        bridge: BridgeDescriptor,
        entries: list[CanonicalLogEntry]
    ) -> tuple[list[CanonicalLogEntry], tuple[int, ...]]:
        """Re-query block-only entries block by block through full sources.

        Returns:
            The hydrated logs and the blocks that could not be hydrated
        """
        blocks = sorted({entry.block_number for entry in entries}, reverse=True)
        hydrated: list[CanonicalLogEntry] = []
        missing: list[int] = []

        for index, block in enumerate(blocks):
            if index >= self.config.max_hydrated_blocks:
                missing.extend(blocks[index:])
                break
            try:
                result = await chain.fetch_logs(
                    bridge.address,
                    self.context.signatures.all_topics,
                    block,
                    block,
                    include_degraded=False,
                )
            except AllSourcesFailedError as e:
                logger.debug(f"Could not hydrate block {block} for {bridge.address}: {e}")
                missing.append(block)
                continue
            hydrated.extend(result.logs)

        if missing:
            logger.warning(
                f"{len(missing)} of {len(blocks)} blocks for {bridge} are known "
                "by block number only"
            )
        return hydrated, tuple(missing)

    async def iter_discovery(
        self,
        bridges: Iterable[BridgeDescriptor],
        window_hours: float | None = None
    ) -> AsyncIterator[BridgeDiscoveryResult]:
        """Yield each bridge's result as soon as it is available."""
        for index, bridge in enumerate(bridges):
            if index:
                await self._sleep(self.config.inter_bridge_delay)
            yield await self.discover_bridge(bridge, window_hours)

    async def discover_all(
        self,
        bridges: Iterable[BridgeDescriptor] | None = None,
        window_hours: float | None = None,
        timeout: float | None = None
    ) -> DiscoveryReport:
        """Discover every bridge, stopping early at ``timeout``.

        Args:
            bridges: Bridges to discover (defaults to every registry bridge)
            window_hours: Look-back window (defaults to the configured one)
            timeout: Overall deadline in seconds; on expiry the partial
                report is returned with ``timed_out`` set

        Returns:
            DiscoveryReport with one result per processed bridge
        """
        bridge_list = list(self.context.registry.bridges if bridges is None else bridges)
        timeout = timeout if timeout is not None else self.config.discovery_timeout
        report = DiscoveryReport(total_bridges=len(bridge_list))

        logger.info(f"Starting discovery of {len(bridge_list)} bridges")
        try:
            async with asyncio.timeout(timeout):
                async with aclosing(self.iter_discovery(bridge_list, window_hours)) as stream:
                    async for result in stream:
                        report.results.append(result)
        except TimeoutError:
            report.timed_out = True
            logger.warning(
                f"Discovery timed out after {timeout}s with "
                f"{len(report.results)} of {len(bridge_list)} bridges processed"
            )

        stats = report.stats
        logger.info(
            f"Discovery finished: {stats['successful_bridges']}/{stats['total_bridges']} bridges, "
            f"{stats['total_transfers']} transfers, {stats['total_claims']} claims"
        )
        return report
