#!/usr/bin/env python3
"""Read-only bridge and network registry.

The registry is maintained elsewhere; this module only loads it from a JSON
document and exposes the networks and bridge descriptors to the discovery
pipeline.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar
from urllib.parse import urlparse

from .models import BridgeDescriptor, BridgeRole

# Get logger for this module
logger = logging.getLogger(__name__)

# Public endpoints tried after a network's own RPC URL
DEFAULT_FALLBACK_RPCS: dict[str, tuple[str, ...]] = {
    "ETHEREUM": (
        "https://cloudflare-eth.com",
        "https://ethereum.publicnode.com",
        "https://rpc.ankr.com/eth",
    ),
    "BSC": (
        "https://bsc-dataseed1.defibit.io",
        "https://bsc-dataseed1.ninicoin.io",
    ),
    "THREEDPASS": (
        "https://rpc.3dpass.org",
    ),
}


class NetworkKind(Enum):
    """How a network exposes its logs."""
    EVM = "evm"
    SUBSTRATE = "substrate"


def _validate_url(url: str, label: str, schemes: tuple[str, ...] = ("http", "https")) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in schemes or not parsed.netloc:
        raise ValueError(
            f"Invalid {label}: {url!r}. Expected a URL with scheme {', '.join(schemes)}"
        )


@dataclass(frozen=True, slots=True)
class NetworkConfig:
    """A network entry of the registry.

    Attributes:
        key: Registry key (e.g. 'ETHEREUM')
        name: Human readable name
        chain_id: EVM chain id, used by the explorer API
        rpc_url: Primary JSON-RPC endpoint
        block_time: Average block time in seconds
        kind: EVM network or Substrate network relaying EVM logs
        max_block_range: Largest block range the RPC accepts, if limited
        explorer_api_url: Explorer REST API endpoint
        explorer_html_url: Public explorer web site, for scraping
        relay_url: JSON-RPC endpoint of the Substrate relay node
        fallback_rpc_urls: Extra RPC endpoints tried after ``rpc_url``
        source_priority: Order in which sources are tried
    """

    key: str
    name: str = ""
    chain_id: int = 0
    rpc_url: str = ""
    block_time: float = 12.0
    kind: NetworkKind = NetworkKind.EVM
    max_block_range: int | None = None
    explorer_api_url: str = ""
    explorer_html_url: str = ""
    relay_url: str = ""
    fallback_rpc_urls: tuple[str, ...] = ()
    source_priority: tuple[str, ...] = ()

    SUPPORTED_SOURCES: ClassVar[set[str]] = {'rpc', 'explorer', 'html', 'relay'}

    def __post_init__(self) -> None:
        """Validate network configuration and derive the default source order."""
        if not self.key:
            raise ValueError("Network key is required")

        if isinstance(self.kind, str):
            object.__setattr__(self, 'kind', NetworkKind(self.kind))

        if self.block_time <= 0:
            raise ValueError(f"Block time must be positive for {self.key}, got {self.block_time}")

        if self.max_block_range is not None and self.max_block_range <= 0:
            raise ValueError(
                f"Max block range must be positive for {self.key}, got {self.max_block_range}"
            )

        for label, url in (
            ("RPC URL", self.rpc_url),
            ("explorer API URL", self.explorer_api_url),
            ("explorer URL", self.explorer_html_url),
            ("relay URL", self.relay_url),
            *(("fallback RPC URL", u) for u in self.fallback_rpc_urls),
        ):
            if url:
                _validate_url(url, f"{label} for {self.key}")

        priority = tuple(self.source_priority) or self._default_priority()
        if unknown := set(priority) - self.SUPPORTED_SOURCES:
            raise ValueError(
                f"Unsupported sources for {self.key}: {', '.join(sorted(unknown))}. "
                f"Supported sources: {', '.join(sorted(self.SUPPORTED_SOURCES))}"
            )
        object.__setattr__(self, 'source_priority', priority)

    def _default_priority(self) -> tuple[str, ...]:
        if self.kind is NetworkKind.SUBSTRATE:
            candidates = [("relay", self.relay_url or self.rpc_url), ("html", self.explorer_html_url)]
        else:
            candidates = [
                ("rpc", self.rpc_url or self.fallback_rpc_urls),
                ("explorer", self.explorer_api_url),
                ("html", self.explorer_html_url),
            ]
        return tuple(name for name, configured in candidates if configured)

    @property
    def rpc_urls(self) -> tuple[str, ...]:
        """Primary RPC URL followed by fallbacks, without duplicates."""
        urls = [self.rpc_url, *self.fallback_rpc_urls]
        return tuple(dict.fromkeys(u for u in urls if u))

    @classmethod
    def from_dict(cls, key: str, data: dict[str, Any]) -> "NetworkConfig":
        max_range = data.get("max_block_range")
        fallbacks = data.get("fallback_rpc_urls")
        if fallbacks is None:
            fallbacks = DEFAULT_FALLBACK_RPCS.get(key, ())
        return cls(
            key=key,
            name=data.get("name", key),
            chain_id=int(data.get("chain_id", 0)),
            rpc_url=data.get("rpc_url", ""),
            block_time=float(data.get("block_time", 12)),
            kind=NetworkKind(data.get("kind", "evm")),
            max_block_range=int(max_range) if max_range else None,
            explorer_api_url=data.get("explorer_api_url", ""),
            explorer_html_url=data.get("explorer_html_url", ""),
            relay_url=data.get("relay_url", ""),
            fallback_rpc_urls=tuple(fallbacks),
            source_priority=tuple(data.get("source_priority", ())),
        )


@dataclass(frozen=True, slots=True)
class BridgeRegistry:
    """Networks and bridge descriptors known to the reconciler."""

    networks: dict[str, NetworkConfig] = field(default_factory=dict)
    bridges: tuple[BridgeDescriptor, ...] = ()

    def __post_init__(self) -> None:
        """Check that every bridge points at a known network."""
        for bridge in self.bridges:
            if bridge.network_key not in self.networks:
                raise ValueError(f"Bridge {bridge.address} references unknown network {bridge.network_key}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BridgeRegistry":
        networks = {
            key: NetworkConfig.from_dict(key, entry)
            for key, entry in data.get("networks", {}).items()
        }
        bridges = tuple(BridgeDescriptor.from_dict(entry) for entry in data.get("bridges", []))
        return cls(networks=networks, bridges=bridges)

    @classmethod
    def from_file(cls, path: Path | str) -> "BridgeRegistry":
        """Load the registry from a JSON document.

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the document is invalid
        """
        registry_path = Path(path)
        with registry_path.open() as file:
            data = json.load(file)
        registry = cls.from_dict(data)
        logger.info(
            f"Loaded registry from {registry_path.name}: "
            f"{len(registry.networks)} networks, {len(registry.bridges)} bridges"
        )
        return registry

    def network(self, key: str) -> NetworkConfig:
        try:
            return self.networks[key]
        except KeyError:
            raise ValueError(f"Unknown network: {key}") from None

    def bridges_for(
        self,
        network_key: str | None = None,
        role: BridgeRole | None = None
    ) -> list[BridgeDescriptor]:
        return [
            bridge for bridge in self.bridges
            if (network_key is None or bridge.network_key == network_key)
            and (role is None or bridge.role is role)
        ]
