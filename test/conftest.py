"""Shared fixtures for the bridge reconciler tests."""

from types import SimpleNamespace

import pytest
from eth_abi import encode

from bridge_reconciler.models import (
    BridgeDescriptor,
    BridgeRole,
    CanonicalLogEntry,
    ClaimEvent,
    EventType,
    ExpatriationEvent,
    RepatriationEvent,
)
from bridge_reconciler.resilience import ResilienceLayer, RetryPolicy
from bridge_reconciler.signatures import SignatureRegistry
from bridge_reconciler.utils.log_source import LogSource

EXPORT_ADDRESS = "0x1111111111111111111111111111111111111111"
IMPORT_ADDRESS = "0x2222222222222222222222222222222222222222"
SENDER = "0x3333333333333333333333333333333333333333"
RECIPIENT = "0x4444444444444444444444444444444444444444"
AUTHOR = "0x5555555555555555555555555555555555555555"


async def no_sleep(_delay: float) -> None:
    return None


class StaticLogSource(LogSource):
    """In-memory log source with canned logs, errors and block height."""

    def __init__(
        self,
        name,
        resilience,
        logs=None,
        error=None,
        block=1000,
        degraded=False,
        network_key="ETHEREUM",
        by_block=None,
    ):
        self.name = name
        self.degraded = degraded
        super().__init__(network_key, resilience)
        self.logs = list(logs or [])
        self.error = error
        self.block = block
        self.by_block = by_block or {}
        self.calls = []

    async def get_block_number(self):
        if self.error:
            raise self.error
        return self.block

    async def fetch_logs(self, address, topics, from_block, to_block="latest"):
        self.calls.append((from_block, to_block))
        return await self._call(lambda: self._fetch(from_block, to_block))

    async def _fetch(self, from_block, to_block):
        if self.error:
            raise self.error
        if from_block == to_block and from_block in self.by_block:
            return list(self.by_block[from_block])
        upper = self.block if to_block == "latest" else to_block
        return [log for log in self.logs if from_block <= log.block_number <= upper]


@pytest.fixture(scope="session")
def signatures():
    """Signature registry built from the packaged contract ABI."""
    return SignatureRegistry.from_contract_abi()


@pytest.fixture
def export_bridge():
    return BridgeDescriptor(
        network_key="ETHEREUM",
        address=EXPORT_ADDRESS,
        role=BridgeRole.EXPORT,
        home_network="ETHEREUM",
        foreign_network="THREEDPASS",
        home_token_symbol="USDT",
        foreign_token_symbol="wUSDT",
    )


@pytest.fixture
def import_bridge():
    return BridgeDescriptor(
        network_key="THREEDPASS",
        address=IMPORT_ADDRESS,
        role=BridgeRole.IMPORT,
        home_network="ETHEREUM",
        foreign_network="THREEDPASS",
        home_token_symbol="USDT",
        foreign_token_symbol="wUSDT",
    )


@pytest.fixture
def resilience():
    """Resilience layer that never actually sleeps."""
    return ResilienceLayer(policy=RetryPolicy(max_attempts=3), sleep=no_sleep)


@pytest.fixture
def make_expatriation():
    def _make(
        tx="0xaaa",
        amount=500,
        foreign_address="0xbbb",
        sender=SENDER,
        reward=0,
        data="",
        block=100,
        log_index=0,
        bridge=None,
    ):
        return ExpatriationEvent(
            block_number=block,
            transaction_hash=tx,
            log_index=log_index,
            sender_address=sender,
            amount=amount,
            reward=reward,
            foreign_address=foreign_address,
            data=data,
            bridge=bridge,
        )
    return _make


@pytest.fixture
def make_repatriation():
    def _make(
        tx="0xccc",
        amount=500,
        home_address="0xddd",
        sender=SENDER,
        reward=0,
        data="",
        block=100,
        log_index=0,
        bridge=None,
    ):
        return RepatriationEvent(
            block_number=block,
            transaction_hash=tx,
            log_index=log_index,
            sender_address=sender,
            amount=amount,
            reward=reward,
            home_address=home_address,
            data=data,
            bridge=bridge,
        )
    return _make


@pytest.fixture
def make_claim():
    def _make(
        txid="0xaaa",
        amount=500,
        recipient="0xbbb",
        sender="",
        claim_num=1,
        data="",
        block=200,
        log_index=0,
        tx="0xc1a1",
        bridge=None,
    ):
        return ClaimEvent(
            block_number=block,
            transaction_hash=tx,
            log_index=log_index,
            claim_num=claim_num,
            author_address=AUTHOR,
            sender_address=sender,
            recipient_address=recipient,
            txid=txid,
            txts=1700000000,
            amount=amount,
            reward=0,
            stake=10,
            data=data,
            expiry_ts=1700086400,
            bridge=bridge,
        )
    return _make


@pytest.fixture
def raw_log_factory(signatures):
    """Builds ABI-encoded canonical log entries like an RPC node returns them."""

    def expatriation(
        tx_hash="0x" + "ab" * 32,
        block=100,
        log_index=0,
        sender=SENDER,
        amount=1000,
        reward=-5,
        foreign_address="d1FOREIGN",
        data="",
    ):
        payload = encode(
            ["address", "uint256", "int256", "string", "string"],
            [sender, amount, reward, foreign_address, data],
        )
        return CanonicalLogEntry(
            address=EXPORT_ADDRESS,
            block_number=block,
            topics=(signatures.topic_for(EventType.NEW_EXPATRIATION),),
            data="0x" + payload.hex(),
            transaction_hash=tx_hash,
            log_index=log_index,
        )

    def repatriation(
        tx_hash="0x" + "cd" * 32,
        block=100,
        log_index=0,
        sender=SENDER,
        amount=1000,
        reward=7,
        home_address=RECIPIENT,
        data="",
    ):
        payload = encode(
            ["address", "uint256", "uint256", "string", "string"],
            [sender, amount, reward, home_address, data],
        )
        return CanonicalLogEntry(
            address=IMPORT_ADDRESS,
            block_number=block,
            topics=(signatures.topic_for(EventType.NEW_REPATRIATION),),
            data="0x" + payload.hex(),
            transaction_hash=tx_hash,
            log_index=log_index,
        )

    def claim(
        claim_num=42,
        tx_hash="0x" + "ef" * 32,
        block=200,
        log_index=1,
        sender="d1SENDER",
        recipient=RECIPIENT,
        txid="0x" + "ab" * 32,
        amount=1000,
        reward=-5,
        stake=50,
        data="",
        address=IMPORT_ADDRESS,
    ):
        payload = encode(
            ["address", "string", "address", "string", "uint32", "uint256", "int256", "uint256", "string", "uint32"],
            [AUTHOR, sender, recipient, txid, 1700000000, amount, reward, stake, data, 1700086400],
        )
        return CanonicalLogEntry(
            address=address,
            block_number=block,
            topics=(
                signatures.topic_for(EventType.NEW_CLAIM),
                "0x" + claim_num.to_bytes(32, "big").hex(),
            ),
            data="0x" + payload.hex(),
            transaction_hash=tx_hash,
            log_index=log_index,
        )

    return SimpleNamespace(expatriation=expatriation, repatriation=repatriation, claim=claim)
