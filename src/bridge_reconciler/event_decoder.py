#!/usr/bin/env python3
"""Event decoding module for the bridge reconciler.

This module turns canonical log entries into typed bridge events
(NewExpatriation, NewRepatriation, NewClaim), dispatching on topic0 through the
signature registry and decoding fields with ``eth_abi``.
"""

import logging
from typing import Any

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3 import Web3

from .errors import EventDecodeError
from .models import (
    BridgeDescriptor,
    BridgeEvent,
    CanonicalLogEntry,
    ClaimEvent,
    EventType,
    ExpatriationEvent,
    OtherEvent,
    RepatriationEvent,
    TransferEvent,
)
from .signatures import EventSchema, SignatureRegistry

# Get logger for this module
logger = logging.getLogger(__name__)


def parse_event_topic_as_int(topic: Any) -> int:
    """
    Parse an event topic (bytes or hex string) as an integer.

    Ethereum event topics can come in different formats depending on the provider:
    - As bytes objects: b'\\x00\\x00...\\x2a'
    - As hex strings: "0x000000000000000000000000000000000000002a"

    :param topic: The topic to parse (bytes, str, or other)
    :return: Integer value of the topic
    """
    if isinstance(topic, bytes):
        return int.from_bytes(topic, byteorder='big')
    elif isinstance(topic, str):
        hex_str = topic[2:] if topic.startswith('0x') else topic
        return int(hex_str, 16) if hex_str else 0
    else:
        return 0


def _decode_topic(topic: str, abi_type: str) -> Any:
    if abi_type.startswith(("uint", "int")):
        return parse_event_topic_as_int(topic)
    if abi_type == "address":
        return Web3.to_checksum_address("0x" + HexBytes(topic).hex()[-40:])
    return topic


class EventDecoder:
    """Decodes canonical logs into typed bridge events.

    Malformed logs are skipped with a warning and counted; they never abort a
    batch. Unknown topics are counted and dropped unless ``include_other`` is
    set, in which case they are returned as ``OtherEvent``.
    """

    def __init__(self, registry: SignatureRegistry, include_other: bool = False) -> None:
        """Initialize the EventDecoder.

        Args:
            registry: Signature registry used to dispatch on topic0
            include_other: Keep logs with unknown topics as OtherEvent
        """
        self.registry = registry
        self.include_other = include_other

        # Metrics tracking
        self.events_decoded = 0
        self.events_unknown = 0
        self.events_invalid = 0
        self.events_removed = 0
        self.events_degraded = 0

    def decode(
        self,
        log: CanonicalLogEntry,
        bridge: BridgeDescriptor | None = None
    ) -> BridgeEvent | None:
        """Decode one log entry.

        Args:
            log: Canonical log entry from any source
            bridge: Bridge the log was emitted by, attached to the event

        Returns:
            The decoded event, or None if the log was skipped
        """
        if log.removed:
            self.events_removed += 1
            logger.debug(f"Skipping removed log in block {log.block_number}")
            return None

        if log.is_degraded:
            self.events_degraded += 1
            logger.debug(f"Cannot decode block-only entry for block {log.block_number}")
            return None

        schema = self.registry.lookup(log.topic0)
        if schema is None:
            self.events_unknown += 1
            if not self.include_other:
                return None
            return OtherEvent(
                block_number=log.block_number,
                transaction_hash=log.transaction_hash,
                log_index=log.log_index,
                block_hash=log.block_hash,
                source=log.source,
                bridge=bridge,
                topic0=log.topic0 or "",
                raw_data=log.data,
            )

        try:
            event = self._build_event(schema, log, bridge)
        except EventDecodeError as e:
            self.events_invalid += 1
            logger.warning(
                f"Skipping malformed {schema.event_type.value} log "
                f"(tx={log.transaction_hash}, index={log.log_index}): {e}"
            )
            return None

        self.events_decoded += 1
        return event

    def decode_batch(
        self,
        logs: list[CanonicalLogEntry],
        bridge: BridgeDescriptor | None = None
    ) -> list[BridgeEvent]:
        """Decode a list of logs, dropping the ones that cannot be decoded."""
        return [event for log in logs if (event := self.decode(log, bridge)) is not None]

    @staticmethod
    def partition(
        events: list[BridgeEvent]
    ) -> tuple[list[ClaimEvent], list[TransferEvent], list[BridgeEvent]]:
        """Split events into (claims, transfers, other)."""
        claims: list[ClaimEvent] = []
        transfers: list[TransferEvent] = []
        other: list[BridgeEvent] = []
        for event in events:
            if isinstance(event, ClaimEvent):
                claims.append(event)
            elif isinstance(event, TransferEvent):
                transfers.append(event)
            else:
                other.append(event)
        return claims, transfers, other

    def _decode_fields(self, schema: EventSchema, log: CanonicalLogEntry) -> dict[str, Any]:
        """Decode indexed topics and the data payload into a field dict.

        Raises:
            EventDecodeError: If topics are missing or the data does not match the schema
        """
        if len(log.topics) < 1 + len(schema.indexed_fields):
            raise EventDecodeError(
                f"expected {1 + len(schema.indexed_fields)} topics, got {len(log.topics)}"
            )

        fields: dict[str, Any] = {}
        for event_field, topic in zip(schema.indexed_fields, log.topics[1:]):
            fields[event_field.name] = _decode_topic(topic, event_field.abi_type)

        try:
            values = abi_decode(schema.data_types, HexBytes(log.data))
        except (DecodingError, ValueError, TypeError) as e:
            raise EventDecodeError(f"data does not match {schema.signature}: {e}") from e

        for event_field, value in zip(schema.data_fields, values):
            if event_field.abi_type == "address":
                value = Web3.to_checksum_address(value)
            fields[event_field.name] = value

        return fields

    def _build_event(
        self,
        schema: EventSchema,
        log: CanonicalLogEntry,
        bridge: BridgeDescriptor | None
    ) -> BridgeEvent:
        fields = self._decode_fields(schema, log)
        common = {
            "block_number": log.block_number,
            "transaction_hash": log.transaction_hash,
            "log_index": log.log_index,
            "block_hash": log.block_hash,
            "source": log.source,
            "bridge": bridge,
        }

        match schema.event_type:
            case EventType.NEW_EXPATRIATION:
                return ExpatriationEvent(
                    **common,
                    sender_address=fields["sender_address"],
                    amount=fields["amount"],
                    reward=fields["reward"],
                    foreign_address=fields["foreign_address"],
                    data=fields["data"],
                )
            case EventType.NEW_REPATRIATION:
                return RepatriationEvent(
                    **common,
                    sender_address=fields["sender_address"],
                    amount=fields["amount"],
                    reward=fields["reward"],
                    home_address=fields["home_address"],
                    data=fields["data"],
                )
            case EventType.NEW_CLAIM:
                return ClaimEvent(
                    **common,
                    claim_num=fields["claim_num"],
                    author_address=fields["author_address"],
                    sender_address=fields["sender_address"],
                    recipient_address=fields["recipient_address"],
                    txid=fields["txid"],
                    txts=fields["txts"],
                    amount=fields["amount"],
                    reward=fields["reward"],
                    stake=fields["stake"],
                    data=fields["data"],
                    expiry_ts=fields["expiry_ts"],
                )
            case _:
                raise EventDecodeError(f"no builder for {schema.event_type.value}")

    def get_metrics(self) -> dict[str, int]:
        """Get current decoding metrics.

        Returns:
            Dictionary containing decoding metrics
        """
        return {
            "events_decoded": self.events_decoded,
            "events_unknown": self.events_unknown,
            "events_invalid": self.events_invalid,
            "events_removed": self.events_removed,
            "events_degraded": self.events_degraded,
        }

    def log_metrics(self) -> None:
        """Log current decoding metrics."""
        metrics = self.get_metrics()
        logger.info(
            f"Decoder metrics - Decoded: {metrics['events_decoded']}, "
            f"Unknown: {metrics['events_unknown']}, "
            f"Invalid: {metrics['events_invalid']}, "
            f"Removed: {metrics['events_removed']}, "
            f"Block-only: {metrics['events_degraded']}"
        )
