#!/usr/bin/env python3
"""Configuration management for the bridge reconciler.

This module provides type-safe configuration dataclasses with validation
for discovery, resilience, caching and reconciliation. Configuration is loaded
from environment variables with sensible defaults where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from .aggregator import ReconciliationPolicy
from .resilience import RetryPolicy
from .utils.block_range import MAX_CHUNK_HOURS, TIMEFRAME_OPTIONS

# Get logger for this module
logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float | None) -> float | None:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


@dataclass(frozen=True, slots=True)
class DiscoveryConfig:
    """Configuration for event discovery."""
    window_hours: float = 24  # look-back window per bridge
    chunk_hours: float = MAX_CHUNK_HOURS  # ceiling for a single log query
    inter_chunk_delay: float = 1.0  # seconds between chunk requests
    inter_bridge_delay: float = 0.3  # seconds between bridges
    request_timeout: int = 30  # HTTP request timeout in seconds
    max_hydrated_blocks: int = 20  # blocks re-queried after a block-only fallback
    discovery_timeout: float | None = None  # overall deadline for one discovery run
    polling_interval: int = 300  # seconds between runs in service mode

    def __post_init__(self) -> None:
        """Validate discovery configuration."""
        if self.window_hours <= 0:
            raise ValueError(f"Window must be positive, got {self.window_hours}h")
        if self.window_hours > max(TIMEFRAME_OPTIONS):
            raise ValueError(
                f"Window too long (max {max(TIMEFRAME_OPTIONS)}h), got {self.window_hours}h"
            )

        if not 0 < self.chunk_hours <= MAX_CHUNK_HOURS:
            raise ValueError(
                f"Chunk size must be between 0 and {MAX_CHUNK_HOURS}h, got {self.chunk_hours}h"
            )

        if self.inter_chunk_delay < 1.0:
            raise ValueError(f"Inter-chunk delay must be at least 1s, got {self.inter_chunk_delay}")
        if self.inter_bridge_delay < 0:
            raise ValueError(f"Inter-bridge delay must be non-negative, got {self.inter_bridge_delay}")

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")

        if self.max_hydrated_blocks < 0:
            raise ValueError(f"Max hydrated blocks must be non-negative, got {self.max_hydrated_blocks}")

        if self.discovery_timeout is not None and self.discovery_timeout <= 0:
            raise ValueError(f"Discovery timeout must be positive, got {self.discovery_timeout}")

        if self.polling_interval <= 0:
            raise ValueError(f"Polling interval must be positive, got {self.polling_interval}")


@dataclass(frozen=True, slots=True)
class ResilienceConfig:
    """Configuration for retries and circuit breaking."""
    retry_count: int = 3  # attempts per request, including the first
    retry_base_delay: float = 0.3  # seconds before the first retry
    retry_max_delay: float = 30.0
    breaker_threshold: int = 5  # consecutive failures before a circuit opens
    breaker_cooldown: float = 60.0  # seconds an open circuit stays open

    def __post_init__(self) -> None:
        """Validate resilience configuration."""
        if self.breaker_threshold <= 0:
            raise ValueError(f"Breaker threshold must be positive, got {self.breaker_threshold}")
        if self.breaker_cooldown <= 0:
            raise ValueError(f"Breaker cooldown must be positive, got {self.breaker_cooldown}")
        # Remaining bounds are enforced by RetryPolicy
        self.retry_policy()

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_count,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )


@dataclass(frozen=True, slots=True)
class CacheConfig:
    """Configuration for the local event cache."""
    cache_dir: str | None = None  # None keeps the cache in memory
    ttl_hours: float = 24

    def __post_init__(self) -> None:
        """Validate cache configuration."""
        if self.ttl_hours <= 0:
            raise ValueError(f"Cache TTL must be positive, got {self.ttl_hours}h")

    @property
    def ttl_seconds(self) -> float:
        return self.ttl_hours * 3600


@dataclass(frozen=True, slots=True)
class ReconcilerConfig:
    """Main configuration for the bridge reconciler.

    Attributes:
        registry_path: Path of the bridge/network registry JSON document
        discovery: Discovery settings
        resilience: Retry and circuit breaker settings
        cache: Event cache settings
        policy: Claim validation policy
        explorer_api_key: API key for the explorer REST API
        repatriation_reward_signed: Decode NewRepatriation.reward as signed
    """

    registry_path: str = ""
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    policy: ReconciliationPolicy = field(default_factory=ReconciliationPolicy)
    explorer_api_key: str = ""
    repatriation_reward_signed: bool = False

    @classmethod
    def from_env(cls) -> "ReconcilerConfig":
        """Load configuration from environment variables.

        Returns:
            ReconcilerConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        registry_path = os.environ.get("REGISTRY_PATH", "")
        if not registry_path:
            raise ValueError(
                "REGISTRY_PATH environment variable is required. "
                "This should point at the bridge registry JSON document."
            )
        if not Path(registry_path).is_file():
            raise ValueError(f"Registry file not found: {registry_path}")

        # Load discovery config
        discovery_config = DiscoveryConfig(
            window_hours=_env_float("WINDOW_HOURS", 24),
            chunk_hours=_env_float("CHUNK_HOURS", MAX_CHUNK_HOURS),
            inter_chunk_delay=_env_float("INTER_CHUNK_DELAY", 1.0),
            inter_bridge_delay=_env_float("INTER_BRIDGE_DELAY", 0.3),
            request_timeout=int(os.environ.get("REQUEST_TIMEOUT", "30")),
            max_hydrated_blocks=int(os.environ.get("MAX_HYDRATED_BLOCKS", "20")),
            discovery_timeout=_env_float("DISCOVERY_TIMEOUT", None),
            polling_interval=int(os.environ.get("POLLING_INTERVAL", "300")),
        )

        # Load resilience config
        resilience_config = ResilienceConfig(
            retry_count=int(os.environ.get("RETRY_COUNT", "3")),
            retry_base_delay=_env_float("RETRY_BASE_DELAY", 0.3),
            breaker_threshold=int(os.environ.get("BREAKER_THRESHOLD", "5")),
            breaker_cooldown=_env_float("BREAKER_COOLDOWN", 60.0),
        )

        cache_config = CacheConfig(
            cache_dir=os.environ.get("CACHE_DIR") or None,
            ttl_hours=_env_float("CACHE_TTL_HOURS", 24),
        )

        policy = ReconciliationPolicy(
            strict_recipient=_env_bool("STRICT_RECIPIENT", True),
            compare_sender=_env_bool("COMPARE_SENDER", True),
            compare_data=_env_bool("COMPARE_DATA", True),
        )

        return cls(
            registry_path=registry_path,
            discovery=discovery_config,
            resilience=resilience_config,
            cache=cache_config,
            policy=policy,
            explorer_api_key=os.environ.get("EXPLORER_API_KEY", ""),
            repatriation_reward_signed=_env_bool("REPATRIATION_REWARD_SIGNED", False),
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Bridge Reconciler Configuration")
        logger.info("=" * 60)

        logger.info(f"Registry: {self.registry_path}")

        logger.info("Discovery:")
        logger.info(f"  Window: {self.discovery.window_hours} hours")
        logger.info(f"  Chunk Ceiling: {self.discovery.chunk_hours} hours")
        logger.info(f"  Inter-chunk Delay: {self.discovery.inter_chunk_delay} seconds")
        logger.info(f"  Inter-bridge Delay: {self.discovery.inter_bridge_delay} seconds")
        logger.info(f"  Request Timeout: {self.discovery.request_timeout} seconds")
        if self.discovery.discovery_timeout:
            logger.info(f"  Run Timeout: {self.discovery.discovery_timeout} seconds")

        logger.info("Resilience:")
        logger.info(f"  Retry Count: {self.resilience.retry_count}")
        logger.info(f"  Retry Base Delay: {self.resilience.retry_base_delay} seconds")
        logger.info(
            f"  Circuit Breaker: {self.resilience.breaker_threshold} failures, "
            f"{self.resilience.breaker_cooldown}s cooldown"
        )

        logger.info("Cache:")
        logger.info(f"  Location: {self.cache.cache_dir or 'memory only'}")
        logger.info(f"  TTL: {self.cache.ttl_hours} hours")

        logger.info("Reconciliation:")
        logger.info(f"  Strict Recipient: {self.policy.strict_recipient}")
        logger.info(f"  Compare Sender: {self.policy.compare_sender}")
        logger.info(f"  Compare Data: {self.policy.compare_data}")
        logger.info(f"  Signed Repatriation Reward: {self.repatriation_reward_signed}")

        if self.explorer_api_key:
            logger.info("  Explorer API Key: [CONFIGURED]")

        logger.info("=" * 60)
