"""
Bridge Reconciler package.

Discovery and reconciliation of Counterstake-style cross-chain bridge events.
"""

from .aggregator import ReconciliationPolicy, aggregate
from .config import ReconcilerConfig
from .discovery import BridgeDiscovery, DiscoveryContext, DiscoveryReport
from .event_cache import EventCache
from .event_decoder import EventDecoder
from .registry import BridgeRegistry

__all__ = [
    "BridgeDiscovery",
    "BridgeRegistry",
    "DiscoveryContext",
    "DiscoveryReport",
    "EventCache",
    "EventDecoder",
    "ReconcilerConfig",
    "ReconciliationPolicy",
    "aggregate",
]
__version__ = "0.1.0"
