#!/usr/bin/env python3
"""Data models for the bridge reconciler.

This module provides immutable data classes for bridge descriptors, raw log
entries, decoded bridge events and reconciliation results used throughout the
discovery and aggregation pipeline.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, ClassVar

from web3 import Web3

_BARE_HASH_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def normalize_hex(value: str | None) -> str:
    """Normalize a hash-like string for comparison.

    Hex values are lower-cased and given a ``0x`` prefix; anything else is
    treated as an opaque identifier and only trimmed.
    """
    if not value:
        return ""
    text = value.strip()
    if text[:2] in ("0x", "0X"):
        return "0x" + text[2:].lower()
    if _BARE_HASH_RE.match(text):
        return "0x" + text.lower()
    return text


def normalize_address(value: str | None) -> str:
    """Normalize an address that may belong to an EVM or a non-EVM chain."""
    if not value:
        return ""
    text = value.strip()
    if text[:2] in ("0x", "0X"):
        return "0x" + text[2:].lower()
    return text


class BridgeRole(Enum):
    """Role of a bridge contract on its network."""
    EXPORT = "export"
    IMPORT = "import"
    IMPORT_WRAPPER = "import_wrapper"
    EXPORT_WRAPPER = "export_wrapper"

    @property
    def is_export_side(self) -> bool:
        return self in (BridgeRole.EXPORT, BridgeRole.EXPORT_WRAPPER)


class EventType(Enum):
    """Bridge event kinds recognised by the decoder."""
    NEW_CLAIM = "NewClaim"
    NEW_EXPATRIATION = "NewExpatriation"
    NEW_REPATRIATION = "NewRepatriation"
    OTHER = "Other"

    @property
    def is_transfer(self) -> bool:
        return self in (EventType.NEW_EXPATRIATION, EventType.NEW_REPATRIATION)


@dataclass(frozen=True, slots=True)
class BridgeDescriptor:
    """A bridge contract as described by the registry.

    Attributes:
        network_key: Key of the network the contract is deployed on
        address: Checksummed contract address
        role: Export/import role of the contract
        home_network: Network where the original asset lives
        foreign_network: Network where the wrapped asset lives
    """

    network_key: str
    address: str
    role: BridgeRole
    home_network: str
    foreign_network: str
    home_token_symbol: str = ""
    home_token_address: str = ""
    foreign_token_symbol: str = ""
    foreign_token_address: str = ""
    stake_token_symbol: str = ""
    stake_token_address: str = ""

    def __post_init__(self) -> None:
        """Validate and checksum the contract address."""
        if not self.network_key:
            raise ValueError("Bridge network_key is required")

        if not Web3.is_address(self.address):
            raise ValueError(f"Invalid bridge address: {self.address}")

        checksummed = Web3.to_checksum_address(self.address)
        if checksummed != self.address:
            object.__setattr__(self, 'address', checksummed)

        if isinstance(self.role, str):
            object.__setattr__(self, 'role', BridgeRole(self.role))

    def __str__(self) -> str:
        return (
            f"{self.role.value} bridge {self.address[:10]}... on {self.network_key} "
            f"({self.home_token_symbol or self.home_network} -> "
            f"{self.foreign_token_symbol or self.foreign_network})"
        )

    @property
    def emitted_event_types(self) -> tuple[EventType, ...]:
        """Event types this contract emits.

        Export-side contracts accept expatriations and claims for repatriations;
        import-side contracts accept repatriations and claims for expatriations.
        """
        if self.role.is_export_side:
            return (EventType.NEW_EXPATRIATION, EventType.NEW_CLAIM)
        return (EventType.NEW_REPATRIATION, EventType.NEW_CLAIM)

    @property
    def expected_transfer_type(self) -> EventType:
        """Transfer type that a claim on this bridge must reference."""
        if self.role.is_export_side:
            return EventType.NEW_REPATRIATION
        return EventType.NEW_EXPATRIATION

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BridgeDescriptor":
        """Build a descriptor from a registry entry."""
        return cls(
            network_key=data["network_key"],
            address=data["address"],
            role=BridgeRole(data["role"]),
            home_network=data["home_network"],
            foreign_network=data["foreign_network"],
            home_token_symbol=data.get("home_token_symbol", ""),
            home_token_address=data.get("home_token_address", ""),
            foreign_token_symbol=data.get("foreign_token_symbol", ""),
            foreign_token_address=data.get("foreign_token_address", ""),
            stake_token_symbol=data.get("stake_token_symbol", ""),
            stake_token_address=data.get("stake_token_address", ""),
        )


@dataclass(frozen=True, slots=True)
class CanonicalLogEntry:
    """A raw log normalised from any source.

    Entries produced by degraded sources (HTML scraping) carry only a block
    number; ``transaction_hash`` and ``log_index`` are None for those.
    """

    address: str
    block_number: int
    topics: tuple[str, ...] = ()
    data: str = "0x"
    transaction_hash: str | None = None
    log_index: int | None = None
    block_hash: str | None = None
    transaction_index: int | None = None
    removed: bool = False
    source: str = "rpc"

    @property
    def topic0(self) -> str | None:
        return self.topics[0].lower() if self.topics else None

    @property
    def is_degraded(self) -> bool:
        return self.transaction_hash is None or self.log_index is None

    @property
    def unique_key(self) -> tuple[str, int]:
        """Identity key; degraded entries are keyed by block number only."""
        if self.is_degraded:
            return (f"block:{self.block_number}", -1)
        return (normalize_hex(self.transaction_hash), self.log_index)


@dataclass(frozen=True, slots=True, kw_only=True)
class BridgeEvent:
    """Log metadata shared by every decoded bridge event."""

    event_type: ClassVar[EventType] = EventType.OTHER

    block_number: int
    transaction_hash: str
    log_index: int
    block_hash: str | None = None
    source: str = "rpc"
    bridge: BridgeDescriptor | None = field(default=None, compare=False)

    @property
    def unique_key(self) -> tuple[str, int]:
        """Identity key used for deduplication: (transaction hash, log index)."""
        if not self.transaction_hash:
            return (f"block:{self.block_number}", -1)
        return (normalize_hex(self.transaction_hash), self.log_index)

    @property
    def correlation_key(self) -> str:
        return normalize_hex(self.transaction_hash)

    def with_bridge(self, bridge: BridgeDescriptor) -> "BridgeEvent":
        return replace(self, bridge=bridge)

    def _payload(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization.

        Integer amounts are written as strings so that 256-bit values survive
        any JSON consumer. The bridge descriptor is not serialized.
        """
        return {
            "event_type": self.event_type.value,
            "block_number": self.block_number,
            "transaction_hash": self.transaction_hash,
            "log_index": self.log_index,
            "block_hash": self.block_hash,
            "source": self.source,
            **self._payload(),
        }

    @staticmethod
    def from_dict(
        data: dict[str, Any],
        bridge: BridgeDescriptor | None = None
    ) -> "BridgeEvent":
        """Rebuild an event from ``to_dict`` output.

        Raises:
            ValueError: If the event type is unknown
            KeyError: If a required field is missing
        """
        event_type = EventType(data["event_type"])
        common = {
            "block_number": int(data["block_number"]),
            "transaction_hash": data["transaction_hash"],
            "log_index": int(data["log_index"]),
            "block_hash": data.get("block_hash"),
            "source": data.get("source", "cache"),
            "bridge": bridge,
        }

        match event_type:
            case EventType.NEW_EXPATRIATION:
                return ExpatriationEvent(
                    **common,
                    sender_address=data["sender_address"],
                    amount=int(data["amount"]),
                    reward=int(data["reward"]),
                    foreign_address=data["foreign_address"],
                    data=data.get("data", ""),
                )
            case EventType.NEW_REPATRIATION:
                return RepatriationEvent(
                    **common,
                    sender_address=data["sender_address"],
                    amount=int(data["amount"]),
                    reward=int(data["reward"]),
                    home_address=data["home_address"],
                    data=data.get("data", ""),
                )
            case EventType.NEW_CLAIM:
                return ClaimEvent(
                    **common,
                    claim_num=int(data["claim_num"]),
                    author_address=data["author_address"],
                    sender_address=data["sender_address"],
                    recipient_address=data["recipient_address"],
                    txid=data["txid"],
                    txts=int(data["txts"]),
                    amount=int(data["amount"]),
                    reward=int(data["reward"]),
                    stake=int(data["stake"]),
                    data=data.get("data", ""),
                    expiry_ts=int(data["expiry_ts"]),
                )
            case _:
                return OtherEvent(
                    **common,
                    topic0=data.get("topic0", ""),
                    raw_data=data.get("raw_data", "0x"),
                )


@dataclass(frozen=True, slots=True, kw_only=True)
class TransferEvent(BridgeEvent, ABC):
    """Common fields of expatriation and repatriation transfers."""

    sender_address: str
    amount: int
    reward: int
    data: str = ""

    @property
    @abstractmethod
    def recipient_address(self) -> str:
        """Address the claim must pay out to."""

    @property
    def from_network(self) -> str | None:
        return None

    @property
    def to_network(self) -> str | None:
        return None


@dataclass(frozen=True, slots=True, kw_only=True)
class ExpatriationEvent(TransferEvent):
    """NewExpatriation: assets leave the home network for the foreign one."""

    event_type: ClassVar[EventType] = EventType.NEW_EXPATRIATION

    foreign_address: str

    @property
    def recipient_address(self) -> str:
        return self.foreign_address

    @property
    def from_network(self) -> str | None:
        return self.bridge.home_network if self.bridge else None

    @property
    def to_network(self) -> str | None:
        return self.bridge.foreign_network if self.bridge else None

    def _payload(self) -> dict[str, Any]:
        return {
            "sender_address": self.sender_address,
            "amount": str(self.amount),
            "reward": str(self.reward),
            "foreign_address": self.foreign_address,
            "data": self.data,
        }

    def __str__(self) -> str:
        return (
            f"NewExpatriation(tx={self.transaction_hash[:10]}..., "
            f"amount={self.amount}, to={self.foreign_address[:10]}..., "
            f"block={self.block_number})"
        )


@dataclass(frozen=True, slots=True, kw_only=True)
class RepatriationEvent(TransferEvent):
    """NewRepatriation: wrapped assets return from the foreign network home."""

    event_type: ClassVar[EventType] = EventType.NEW_REPATRIATION

    home_address: str

    @property
    def recipient_address(self) -> str:
        return self.home_address

    @property
    def from_network(self) -> str | None:
        return self.bridge.foreign_network if self.bridge else None

    @property
    def to_network(self) -> str | None:
        return self.bridge.home_network if self.bridge else None

    def _payload(self) -> dict[str, Any]:
        return {
            "sender_address": self.sender_address,
            "amount": str(self.amount),
            "reward": str(self.reward),
            "home_address": self.home_address,
            "data": self.data,
        }

    def __str__(self) -> str:
        return (
            f"NewRepatriation(tx={self.transaction_hash[:10]}..., "
            f"amount={self.amount}, to={self.home_address[:10]}..., "
            f"block={self.block_number})"
        )


@dataclass(frozen=True, slots=True, kw_only=True)
class ClaimEvent(BridgeEvent):
    """NewClaim: an assertion on the destination side that a transfer happened.

    ``txid`` is the hash of the source-side transfer transaction as claimed by
    the claimant; it is the correlation key used during reconciliation.
    """

    event_type: ClassVar[EventType] = EventType.NEW_CLAIM

    claim_num: int
    author_address: str
    sender_address: str
    recipient_address: str
    txid: str
    txts: int
    amount: int
    reward: int
    stake: int
    data: str = ""
    expiry_ts: int = 0

    @property
    def correlation_key(self) -> str:
        return normalize_hex(self.txid)

    def _payload(self) -> dict[str, Any]:
        return {
            "claim_num": self.claim_num,
            "author_address": self.author_address,
            "sender_address": self.sender_address,
            "recipient_address": self.recipient_address,
            "txid": self.txid,
            "txts": self.txts,
            "amount": str(self.amount),
            "reward": str(self.reward),
            "stake": str(self.stake),
            "data": self.data,
            "expiry_ts": self.expiry_ts,
        }

    def __str__(self) -> str:
        return (
            f"NewClaim(#{self.claim_num}, txid={self.txid[:10]}..., "
            f"amount={self.amount}, block={self.block_number})"
        )


@dataclass(frozen=True, slots=True, kw_only=True)
class OtherEvent(BridgeEvent):
    """A log whose topic0 is not one of the known bridge events."""

    topic0: str = ""
    raw_data: str = "0x"

    def _payload(self) -> dict[str, Any]:
        return {"topic0": self.topic0, "raw_data": self.raw_data}


class ReconciliationStatus(Enum):
    """Outcome of reconciling a transfer or a claim."""
    COMPLETED = "completed"
    PENDING = "pending"
    SUSPICIOUS = "suspicious"
    UNKNOWN = "unknown"


class ReconciliationReason(Enum):
    NO_MATCHING_TRANSFER = "no_matching_transfer"
    PARAMETER_MISMATCH = "parameter_mismatch"
    NO_MATCHING_CLAIM = "no_matching_claim"


@dataclass(frozen=True, slots=True)
class ParameterMismatch:
    """A single field where a claim disagrees with its transfer."""

    field: str
    expected: Any
    actual: Any

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "expected": str(self.expected), "actual": str(self.actual)}


@dataclass(frozen=True, slots=True)
class ReconciliationResult:
    """Result of reconciling one transfer and/or one claim.

    Attributes:
        transfer: The transfer involved, if any was found
        claim: The claim involved, if any
        status: Classification of the pair
        is_fraudulent: True for suspicious claims
        reason: Why the pair was classified as it was (None when completed)
        parameter_mismatches: Disagreeing fields for parameter mismatches
        additional_claims: Further consistent claims for a completed transfer
    """

    transfer: TransferEvent | None
    claim: ClaimEvent | None
    status: ReconciliationStatus
    is_fraudulent: bool = False
    reason: ReconciliationReason | None = None
    parameter_mismatches: tuple[ParameterMismatch, ...] = ()
    additional_claims: tuple[ClaimEvent, ...] = ()

    @property
    def block_number(self) -> int:
        """Block used to order results: the claim's for claims, else the transfer's."""
        if self.status is ReconciliationStatus.SUSPICIOUS and self.claim:
            return self.claim.block_number
        if self.transfer:
            return self.transfer.block_number
        return self.claim.block_number if self.claim else 0

    def suggested_claim(self) -> dict[str, Any] | None:
        """Parameters a claimant would need to claim a pending transfer."""
        if self.status is not ReconciliationStatus.PENDING or self.transfer is None:
            return None
        return {
            "txid": self.transfer.transaction_hash,
            "sender_address": self.transfer.sender_address,
            "recipient_address": self.transfer.recipient_address,
            "amount": str(self.transfer.amount),
            "reward": str(self.transfer.reward),
            "data": self.transfer.data,
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        result: dict[str, Any] = {
            "status": self.status.value,
            "is_fraudulent": self.is_fraudulent,
            "reason": self.reason.value if self.reason else None,
            "transfer": self.transfer.to_dict() if self.transfer else None,
            "claim": self.claim.to_dict() if self.claim else None,
            "parameter_mismatches": [m.to_dict() for m in self.parameter_mismatches],
        }
        if self.transfer:
            result["from_network"] = self.transfer.from_network
            result["to_network"] = self.transfer.to_network
        if self.additional_claims:
            result["additional_claims"] = [c.to_dict() for c in self.additional_claims]
        if suggested := self.suggested_claim():
            result["suggested_claim"] = suggested
        return result


@dataclass(frozen=True, slots=True)
class AggregationResult:
    """Classified output of the aggregation engine."""

    completed_transfers: tuple[ReconciliationResult, ...]
    pending_transfers: tuple[ReconciliationResult, ...]
    suspicious_claims: tuple[ReconciliationResult, ...]
    total_claims: int = 0
    total_transfers: int = 0

    @property
    def fraud_detected(self) -> bool:
        return bool(self.suspicious_claims)

    @property
    def stats(self) -> dict[str, int]:
        return {
            "total_claims": self.total_claims,
            "total_transfers": self.total_transfers,
            "completed": len(self.completed_transfers),
            "pending": len(self.pending_transfers),
            "suspicious": len(self.suspicious_claims),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "stats": self.stats,
            "fraud_detected": self.fraud_detected,
            "completed_transfers": [r.to_dict() for r in self.completed_transfers],
            "pending_transfers": [r.to_dict() for r in self.pending_transfers],
            "suspicious_claims": [r.to_dict() for r in self.suspicious_claims],
        }
