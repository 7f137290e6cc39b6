"""Event signature registry.

The single place where bridge event types, their canonical signatures, their
topic0 hashes and their field layouts are defined. Topics are derived from the
packaged contract ABI so that they can never drift from the decoding schema.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any

from .models import EventType
from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)

BRIDGE_CONTRACT = "Counterstake"


@dataclass(frozen=True, slots=True)
class EventField:
    name: str
    abi_type: str
    indexed: bool = False


@dataclass(frozen=True, slots=True)
class EventSchema:
    """Decoding schema for one event type.

    Attributes:
        event_type: The bridge event kind
        signature: Canonical signature text used to derive topic0
        topic0: keccak256 of the signature, 0x-prefixed and lower-case
        indexed_fields: Fields carried in topics[1:]
        data_fields: Fields ABI-encoded in the log data
    """

    event_type: EventType
    signature: str
    topic0: str
    indexed_fields: tuple[EventField, ...]
    data_fields: tuple[EventField, ...]

    @property
    def data_types(self) -> list[str]:
        return [f.abi_type for f in self.data_fields]

    @property
    def data_names(self) -> list[str]:
        return [f.name for f in self.data_fields]

    @classmethod
    def from_abi(cls, event_abi: dict[str, Any]) -> "EventSchema":
        signature = ContractUtility.event_signature(event_abi)
        fields = [
            EventField(name=arg["name"], abi_type=arg["type"], indexed=arg.get("indexed", False))
            for arg in event_abi.get("inputs", [])
        ]
        return cls(
            event_type=EventType(event_abi["name"]),
            signature=signature,
            topic0=ContractUtility.event_topic(signature).lower(),
            indexed_fields=tuple(f for f in fields if f.indexed),
            data_fields=tuple(f for f in fields if not f.indexed),
        )

    def with_field_type(self, name: str, abi_type: str) -> "EventSchema":
        """Return a copy decoding ``name`` as ``abi_type``; topic0 is unchanged."""
        return replace(
            self,
            data_fields=tuple(
                replace(f, abi_type=abi_type) if f.name == name else f
                for f in self.data_fields
            ),
        )


class SignatureRegistry:
    """Maps topic0 hashes to event schemas and back."""

    def __init__(self, schemas: list[EventSchema]) -> None:
        self._by_topic: dict[str, EventSchema] = {s.topic0: s for s in schemas}
        self._by_type: dict[EventType, EventSchema] = {s.event_type: s for s in schemas}

    @classmethod
    def from_contract_abi(
        cls,
        contract_name: str = BRIDGE_CONTRACT,
        utility: ContractUtility | None = None,
        repatriation_reward_signed: bool = False
    ) -> "SignatureRegistry":
        """Build the registry from a packaged contract ABI.

        Args:
            contract_name: Contract whose event ABI to load
            utility: ABI loader (defaults to the packaged contracts folder)
            repatriation_reward_signed: Decode NewRepatriation.reward as int256
        """
        utility = utility or ContractUtility()
        schemas = []
        for name, event_abi in utility.get_event_abis(contract_name).items():
            try:
                schema = EventSchema.from_abi(event_abi)
            except ValueError:
                logger.debug(f"Ignoring non-bridge event {name} in {contract_name} ABI")
                continue
            if repatriation_reward_signed and schema.event_type is EventType.NEW_REPATRIATION:
                schema = schema.with_field_type("reward", "int256")
            schemas.append(schema)

        missing = {EventType.NEW_CLAIM, EventType.NEW_EXPATRIATION, EventType.NEW_REPATRIATION} - {
            s.event_type for s in schemas
        }
        if missing:
            raise ValueError(
                f"{contract_name} ABI is missing events: "
                f"{', '.join(sorted(t.value for t in missing))}"
            )
        return cls(schemas)

    def lookup(self, topic0: str | None) -> EventSchema | None:
        if not topic0:
            return None
        return self._by_topic.get(topic0.lower())

    def schema_for(self, event_type: EventType) -> EventSchema:
        return self._by_type[event_type]

    def topic_for(self, event_type: EventType) -> str:
        return self._by_type[event_type].topic0

    @property
    def all_topics(self) -> list[str]:
        """Topic0 values of every known event, for a combined OR filter."""
        return [self._by_type[t].topic0 for t in (
            EventType.NEW_EXPATRIATION,
            EventType.NEW_REPATRIATION,
            EventType.NEW_CLAIM,
        )]

    def __contains__(self, topic0: str) -> bool:
        return topic0.lower() in self._by_topic
