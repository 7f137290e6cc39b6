#!/usr/bin/env python3
"""Local event cache for the bridge reconciler.

Decoded events are stored per (network, bridge, event type) with a time to
live. Fresh results are merged into the cached list, never replacing it, so a
short or partial query can not make previously seen events disappear.
"""

import asyncio
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .models import BridgeDescriptor, BridgeEvent, EventType

# Get logger for this module
logger = logging.getLogger(__name__)

CACHE_VERSION = "1.0"
DEFAULT_TTL_SECONDS = 24 * 60 * 60


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """One persisted cache record.

    Attributes:
        timestamp: Unix time the record was written
        network_key: Network the bridge lives on
        bridge_address: Bridge contract address
        event_type: Event type stored in this record
        events: Deduplicated events, newest block first
        version: Record format version
    """

    timestamp: float
    network_key: str
    bridge_address: str
    event_type: EventType
    events: tuple[BridgeEvent, ...]
    version: str = CACHE_VERSION

    def to_record(self) -> dict[str, Any]:
        """Convert to the persisted JSON record."""
        return {
            "timestamp": self.timestamp,
            "networkKey": self.network_key,
            "bridgeAddress": self.bridge_address,
            "eventType": self.event_type.value,
            "events": [event.to_dict() for event in self.events],
            "version": self.version,
        }

    @classmethod
    def from_record(
        cls,
        record: dict[str, Any],
        bridge: BridgeDescriptor | None = None
    ) -> "CacheEntry":
        return cls(
            timestamp=float(record["timestamp"]),
            network_key=record["networkKey"],
            bridge_address=record["bridgeAddress"],
            event_type=EventType(record["eventType"]),
            events=tuple(BridgeEvent.from_dict(e, bridge) for e in record["events"]),
            version=record.get("version", ""),
        )


class EventCache:
    """TTL cache of decoded bridge events with optional JSON file persistence.

    With ``cache_dir`` set, each key is stored in its own JSON file; without
    it, the cache lives in memory only. Read-merge-write updates are serialized
    per key with an ``asyncio.Lock``.
    """

    def __init__(
        self,
        cache_dir: Path | str | None = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time
    ) -> None:
        """Initialize the EventCache.

        Args:
            cache_dir: Folder for persisted records, or None for memory only
            ttl_seconds: Age after which a record is treated as a miss
            clock: Time source returning Unix seconds
        """
        if ttl_seconds <= 0:
            raise ValueError(f"Cache TTL must be positive, got {ttl_seconds}")

        self.cache_dir = Path(cache_dir) if cache_dir else None
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}

        # Metrics tracking
        self.hits = 0
        self.misses = 0
        self.writes = 0
        self.evictions = 0

        if self.cache_dir:
            self.cache_dir.mkdir(parents=True, exist_ok=True)

        logger.info(
            f"EventCache initialized ({self.cache_dir or 'memory only'}, "
            f"TTL {ttl_seconds / 3600:.1f}h)"
        )

    @staticmethod
    def cache_key(network_key: str, bridge_address: str, event_type: EventType) -> str:
        return f"bridge_events_{network_key}_{bridge_address.lower()}_{event_type.value}_v{CACHE_VERSION}"

    def get(
        self,
        network_key: str,
        bridge_address: str,
        event_type: EventType,
        bridge: BridgeDescriptor | None = None
    ) -> list[BridgeEvent] | None:
        """Return cached events, or None on a miss or an expired record.

        Expired records are evicted on read. ``bridge`` is attached to every
        returned event.
        """
        key = self.cache_key(network_key, bridge_address, event_type)
        entry = self._load(key, bridge)

        if entry is None:
            self.misses += 1
            return None

        if self._clock() - entry.timestamp > self.ttl_seconds:
            logger.debug(f"Cache entry {key} expired, evicting")
            self._evict(key)
            self.misses += 1
            return None

        self.hits += 1
        events = list(entry.events)
        if bridge is not None:
            events = [e if e.bridge is bridge else e.with_bridge(bridge) for e in events]
        return events

    def put(
        self,
        network_key: str,
        bridge_address: str,
        event_type: EventType,
        events: Iterable[BridgeEvent]
    ) -> None:
        """Overwrite the stored list for a key."""
        key = self.cache_key(network_key, bridge_address, event_type)
        entry = CacheEntry(
            timestamp=self._clock(),
            network_key=network_key,
            bridge_address=bridge_address,
            event_type=event_type,
            events=tuple(events),
        )
        self._entries[key] = entry
        self.writes += 1
        if self.cache_dir:
            self._write(key, entry)

    @staticmethod
    def merge(cached: Iterable[BridgeEvent], fresh: Iterable[BridgeEvent]) -> list[BridgeEvent]:
        """Union of two event lists by (transaction hash, log index).

        Cached entries win over fresh ones with the same identity. The result
        is ordered by block number, then log index, both descending. Merging
        the same fresh list twice yields the same result as merging it once.
        """
        merged: dict[tuple[str, int], BridgeEvent] = {}
        for event in cached:
            merged.setdefault(event.unique_key, event)
        for event in fresh:
            merged.setdefault(event.unique_key, event)
        return sorted(
            merged.values(),
            key=lambda e: (e.block_number, e.log_index, e.unique_key[0]),
            reverse=True,
        )

    def most_recent_block(
        self,
        network_key: str,
        bridge_address: str,
        event_type: EventType
    ) -> int | None:
        events = self.get(network_key, bridge_address, event_type)
        if not events:
            return None
        return max(event.block_number for event in events)

    async def update(
        self,
        network_key: str,
        bridge_address: str,
        event_type: EventType,
        fresh: Iterable[BridgeEvent],
        bridge: BridgeDescriptor | None = None
    ) -> list[BridgeEvent]:
        """Read, merge and write back as one step for the key.

        Returns:
            The merged list now stored in the cache
        """
        key = self.cache_key(network_key, bridge_address, event_type)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self.get(network_key, bridge_address, event_type, bridge) or []
            merged = self.merge(cached, fresh)
            self.put(network_key, bridge_address, event_type, merged)
            added = len(merged) - len(cached)
            if added:
                logger.info(f"Cached {added} new {event_type.value} events for {bridge_address} on {network_key}")
            return merged

    def clear(self) -> int:
        """Remove every cached record. Returns the number of records removed."""
        keys = set(self._entries)
        if self.cache_dir:
            keys.update(path.stem for path in self.cache_dir.glob("bridge_events_*.json"))
        for key in keys:
            self._evict(key)
        logger.info(f"Cleared {len(keys)} cache records")
        return len(keys)

    def get_stats(self) -> dict[str, Any]:
        """Summarize the cache contents and hit/miss counters."""
        keys = set(self._entries)
        if self.cache_dir:
            keys.update(path.stem for path in self.cache_dir.glob("bridge_events_*.json"))

        now = self._clock()
        total_events = 0
        expired = 0
        oldest: float | None = None
        for key in keys:
            entry = self._load(key)
            if entry is None:
                continue
            total_events += len(entry.events)
            if now - entry.timestamp > self.ttl_seconds:
                expired += 1
            oldest = entry.timestamp if oldest is None else min(oldest, entry.timestamp)

        return {
            "records": len(keys),
            "expired_records": expired,
            "total_events": total_events,
            "oldest_record_age": round(now - oldest, 1) if oldest is not None else None,
            "hits": self.hits,
            "misses": self.misses,
            "writes": self.writes,
            "evictions": self.evictions,
        }

    def _path(self, key: str) -> Path:
        return Path(self.cache_dir or ".") / f"{key}.json"

    def _load(self, key: str, bridge: BridgeDescriptor | None = None) -> CacheEntry | None:
        if key in self._entries:
            return self._entries[key]
        if not self.cache_dir:
            return None

        path = self._path(key)
        if not path.exists():
            return None
        try:
            with path.open() as file:
                entry = CacheEntry.from_record(json.load(file), bridge)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable cache record {path.name}: {e}")
            return None

        if entry.version != CACHE_VERSION:
            logger.info(f"Ignoring cache record {path.name} with version {entry.version!r}")
            return None

        self._entries[key] = entry
        return entry

    def _write(self, key: str, entry: CacheEntry) -> None:
        path = self._path(key)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.cache_dir, prefix=".tmp_", suffix=".json")
        except OSError as e:
            logger.error(f"Failed to persist cache record {path.name}: {e}")
            return
        try:
            with os.fdopen(fd, "w") as file:
                json.dump(entry.to_record(), file)
            os.replace(tmp_name, path)
        except OSError as e:
            logger.error(f"Failed to persist cache record {path.name}: {e}")
        finally:
            Path(tmp_name).unlink(missing_ok=True)

    def _evict(self, key: str) -> None:
        self._entries.pop(key, None)
        self.evictions += 1
        if self.cache_dir:
            self._path(key).unlink(missing_ok=True)
