"""Tests for the log source adapters and the fallback chain."""

import asyncio
import json
from unittest.mock import AsyncMock

import httpx
import pytest
from hexbytes import HexBytes

from bridge_reconciler.errors import (
    AllSourcesFailedError,
    LogSourceError,
    RangeTooWideError,
    RateLimitError,
    TransientSourceError,
    UnsupportedOperationError,
)
from bridge_reconciler.event_decoder import EventDecoder
from bridge_reconciler.utils.explorer_source import ExplorerLogSource, parse_explorer_int
from bridge_reconciler.utils.html_scrape_source import HtmlScrapeSource, extract_block_numbers
from bridge_reconciler.utils.log_source import FallbackLogSource
from bridge_reconciler.utils.relay_source import RelayLogSource, to_plain_int, to_plain_str
from bridge_reconciler.utils.rpc_source import RpcLogSource, classify_rpc_error

from conftest import EXPORT_ADDRESS, IMPORT_ADDRESS, StaticLogSource, no_sleep

TOPIC_A = "0x" + "aa" * 32
TOPIC_B = "0x" + "bb" * 32
TOPIC_C = "0x" + "cc" * 32


def rpc_log(block, log_index=0, topic=TOPIC_A, address=EXPORT_ADDRESS):
    """Log dict shaped like web3's AttributeDict output."""
    return {
        "address": address,
        "blockNumber": block,
        "topics": [HexBytes(topic)],
        "data": HexBytes("0x" + "00" * 32),
        "transactionHash": HexBytes(block.to_bytes(32, "big")),
        "logIndex": log_index,
        "blockHash": HexBytes(b"\x01" * 32),
        "transactionIndex": 0,
        "removed": False,
    }


class FakeEth:
    def __init__(self, logs, head=1000, max_range=None):
        self.logs = logs
        self.head = head
        self.max_range = max_range
        self.calls = []

    @property
    def block_number(self):
        return asyncio.sleep(0, result=self.head)

    async def get_logs(self, params):
        self.calls.append(params)
        if self.max_range and params["toBlock"] - params["fromBlock"] + 1 > self.max_range:
            raise ValueError("query returned more than 10000 results, block range too large")
        return [
            log for log in self.logs
            if params["fromBlock"] <= log["blockNumber"] <= params["toBlock"]
        ]


class FakeWeb3:
    def __init__(self, eth):
        self.eth = eth
        self.provider = object()


class TestRpcLogSource:
    """Test suite for RpcLogSource."""

    def _source(self, resilience, eth, chunk_size=1000, sleep=no_sleep):
        return RpcLogSource(
            "ETHEREUM",
            "https://rpc.example.org",
            resilience,
            chunk_size=chunk_size,
            w3=FakeWeb3(eth),
            sleep=sleep,
        )

    @pytest.mark.asyncio
    async def test_fetch_normalizes_logs(self, resilience):
        eth = FakeEth([rpc_log(10, log_index=3)])
        source = self._source(resilience, eth)

        logs = await source.fetch_logs(EXPORT_ADDRESS, [TOPIC_A, TOPIC_B], 0, 100)

        assert len(logs) == 1
        log = logs[0]
        assert log.topic0 == TOPIC_A
        assert log.transaction_hash == "0x" + (10).to_bytes(32, "big").hex()
        assert log.log_index == 3
        assert log.source == "rpc"
        assert eth.calls[0]["topics"] == [[TOPIC_A, TOPIC_B]]
        assert eth.calls[0]["address"] == EXPORT_ADDRESS

    @pytest.mark.asyncio
    async def test_fetch_all_types_sends_no_topic_filter(self, resilience):
        eth = FakeEth([rpc_log(10, topic=TOPIC_A), rpc_log(20, topic=TOPIC_C)])
        source = self._source(resilience, eth)

        logs = await source.fetch_logs_all_types(EXPORT_ADDRESS, 0, 100)

        assert [log.topic0 for log in logs] == [TOPIC_A, TOPIC_C]
        assert "topics" not in eth.calls[0]

    @pytest.mark.asyncio
    async def test_chunked_fetch_equals_single_fetch(self, resilience):
        """Test that chunking a range returns the same logs as one request."""
        logs = [rpc_log(block, log_index=block % 3) for block in range(0, 500, 7)]
        sleep = AsyncMock()

        single = await self._source(resilience, FakeEth(logs)).fetch_logs(EXPORT_ADDRESS, None, 0, 499)
        chunked_eth = FakeEth(logs)
        chunked = await self._source(resilience, chunked_eth, chunk_size=64, sleep=sleep).fetch_logs(
            EXPORT_ADDRESS, None, 0, 499
        )

        assert chunked == single
        assert len(chunked_eth.calls) == 8
        assert sleep.await_count == 7
        sleep.assert_awaited_with(1.0)

    @pytest.mark.asyncio
    async def test_latest_resolves_to_block_number(self, resilience):
        eth = FakeEth([rpc_log(900)], head=950)

        logs = await self._source(resilience, eth).fetch_logs(EXPORT_ADDRESS, None, 800)

        assert [log.block_number for log in logs] == [900]
        assert eth.calls[0]["toBlock"] == 950

    @pytest.mark.asyncio
    async def test_range_too_wide_is_split(self, resilience):
        logs = [rpc_log(block) for block in range(0, 100, 10)]
        eth = FakeEth(logs, max_range=30)

        result = await self._source(resilience, eth).fetch_logs(EXPORT_ADDRESS, None, 0, 99)

        assert [log.block_number for log in result] == list(range(0, 100, 10))
        assert resilience.breaker("ETHEREUM:rpc").failure_count == 0

    @pytest.mark.asyncio
    async def test_get_block_number(self, resilience):
        assert await self._source(resilience, FakeEth([], head=1234)).get_block_number() == 1234

    @pytest.mark.parametrize("error,expected", [
        (ValueError("429 Too Many Requests"), RateLimitError),
        (ValueError("eth_getLogs block range is too wide"), RangeTooWideError),
        (asyncio.TimeoutError(), TransientSourceError),
        (ConnectionError("reset by peer"), TransientSourceError),
        (ValueError("execution reverted"), LogSourceError),
    ])
    def test_classify_rpc_error(self, error, expected):
        assert type(classify_rpc_error(error)) is expected


def explorer_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def explorer_item(block, topic=TOPIC_A, log_index=0):
    return {
        "address": EXPORT_ADDRESS.lower(),
        "topics": [topic],
        "data": "0x",
        "blockNumber": hex(block),
        "transactionHash": "0x" + "AB" * 31 + f"{block % 256:02x}",
        "logIndex": hex(log_index),
        "transactionIndex": "0x",
        "blockHash": "0x" + "11" * 32,
    }


class TestExplorerLogSource:
    """Test suite for ExplorerLogSource."""

    @pytest.mark.asyncio
    async def test_paginates_until_short_page(self, resilience):
        requests = []

        def handler(request):
            requests.append(dict(request.url.params))
            page = int(request.url.params["page"])
            items = {1: [explorer_item(1), explorer_item(2)], 2: [explorer_item(3)]}[page]
            return httpx.Response(200, json={"status": "1", "message": "OK", "result": items})

        source = ExplorerLogSource(
            "ETHEREUM", 1, resilience, api_key="KEY", client=explorer_client(handler), page_size=2
        )

        logs = await source.fetch_logs(EXPORT_ADDRESS, [TOPIC_A], 0, 100)

        assert [log.block_number for log in logs] == [1, 2, 3]
        assert len(requests) == 2
        assert requests[0]["topic0"] == TOPIC_A
        assert requests[0]["apikey"] == "KEY"
        assert requests[0]["chainid"] == "1"
        assert logs[0].transaction_hash == logs[0].transaction_hash.lower()
        assert logs[0].transaction_index == 0

    @pytest.mark.asyncio
    async def test_multiple_topics_are_filtered_client_side(self, resilience):
        requests = []

        def handler(request):
            requests.append(dict(request.url.params))
            items = [explorer_item(1, TOPIC_A), explorer_item(2, TOPIC_C), explorer_item(3, TOPIC_B)]
            return httpx.Response(200, json={"status": "1", "message": "OK", "result": items})

        source = ExplorerLogSource("ETHEREUM", 1, resilience, client=explorer_client(handler))

        logs = await source.fetch_logs(EXPORT_ADDRESS, [TOPIC_A, TOPIC_B], 0, 100)

        assert [log.block_number for log in logs] == [1, 3]
        assert "topic0" not in requests[0]

    @pytest.mark.asyncio
    async def test_no_records_is_empty(self, resilience):
        def handler(request):
            return httpx.Response(200, json={"status": "0", "message": "No records found", "result": []})

        source = ExplorerLogSource("ETHEREUM", 1, resilience, client=explorer_client(handler))

        assert await source.fetch_logs(EXPORT_ADDRESS, [TOPIC_A], 0, 100) == []

    @pytest.mark.asyncio
    async def test_rate_limit_payload_is_retried(self, resilience):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(
                200, json={"status": "0", "message": "NOTOK", "result": "Max rate limit reached"}
            )

        source = ExplorerLogSource("ETHEREUM", 1, resilience, client=explorer_client(handler))

        with pytest.raises(RateLimitError):
            await source.fetch_logs(EXPORT_ADDRESS, [TOPIC_A], 0, 100)
        assert len(calls) == resilience.policy.max_attempts

    @pytest.mark.asyncio
    async def test_server_error_then_success(self, resilience):
        responses = iter([
            httpx.Response(502),
            httpx.Response(200, json={"status": "1", "message": "OK", "result": [explorer_item(5)]}),
        ])
        source = ExplorerLogSource(
            "ETHEREUM", 1, resilience, client=explorer_client(lambda request: next(responses))
        )

        logs = await source.fetch_logs(EXPORT_ADDRESS, [TOPIC_A], 0, 100)

        assert [log.block_number for log in logs] == [5]

    @pytest.mark.asyncio
    async def test_api_error_is_not_retried(self, resilience):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"status": "0", "message": "NOTOK", "result": "Invalid API Key"})

        source = ExplorerLogSource("ETHEREUM", 1, resilience, client=explorer_client(handler))

        with pytest.raises(LogSourceError, match="Invalid API Key"):
            await source.fetch_logs(EXPORT_ADDRESS, [TOPIC_A], 0, 100)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_first_log_of_a_transaction_is_decoded(self, resilience, signatures, raw_log_factory):
        log = raw_log_factory.expatriation(block=0x10, amount=77)
        item = {
            "address": log.address.lower(),
            "topics": list(log.topics),
            "data": log.data,
            "blockNumber": "0x10",
            "transactionHash": log.transaction_hash,
            "logIndex": "0x",
            "transactionIndex": "0x",
            "blockHash": "0x" + "11" * 32,
        }

        def handler(request):
            return httpx.Response(200, json={"status": "1", "message": "OK", "result": [item]})

        source = ExplorerLogSource("ETHEREUM", 1, resilience, client=explorer_client(handler))

        logs = await source.fetch_logs(EXPORT_ADDRESS, signatures.all_topics, 0, 100)

        assert logs[0].log_index == 0
        assert not logs[0].is_degraded
        events = EventDecoder(signatures).decode_batch(logs)
        assert [event.amount for event in events] == [77]
        assert events[0].log_index == 0

    @pytest.mark.asyncio
    async def test_get_block_number(self, resilience):
        def handler(request):
            assert request.url.params["action"] == "eth_blockNumber"
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 83, "result": "0x10d4f"})

        source = ExplorerLogSource("ETHEREUM", 1, resilience, client=explorer_client(handler))

        assert await source.get_block_number() == 0x10D4F

    def test_parse_explorer_int(self):
        assert parse_explorer_int("0x1a") == 26
        assert parse_explorer_int("26") == 26
        assert parse_explorer_int("") is None
        assert parse_explorer_int(None) is None
        assert parse_explorer_int("0x") == 0


EXPLORER_HTML = """
<table>
  <tr><td><a class="hash" href="/tx/0xabc">0xabc</a></td><td><a href="/block/120">120</a></td></tr>
  <tr><td><a class="hash" href="/tx/0xdef">0xdef</a></td><td><a href="/block/95">95</a></td></tr>
  <tr><td><a class="hash" href="/tx/0x123">0x123</a></td><td><a data-x="1" href="/block/120">120</a></td></tr>
  <tr><td><a href="/block/40">40</a></td></tr>
</table>
"""


class TestHtmlScrapeSource:
    """Test suite for HtmlScrapeSource."""

    def test_extract_block_numbers(self):
        assert extract_block_numbers(EXPLORER_HTML) == [120, 95, 40]
        assert extract_block_numbers("<html></html>") == []

    @pytest.mark.asyncio
    async def test_fetch_returns_block_only_entries_in_range(self, resilience):
        seen = []

        def handler(request):
            seen.append(request.url)
            return httpx.Response(200, text=EXPLORER_HTML)

        source = HtmlScrapeSource(
            "ETHEREUM", "https://explorer.example.org/", resilience, client=explorer_client(handler)
        )

        logs = await source.fetch_logs(EXPORT_ADDRESS, None, 50, 200)

        assert [log.block_number for log in logs] == [120, 95]
        assert all(log.is_degraded for log in logs)
        assert seen[0].path == "/txs"
        assert seen[0].params["a"] == EXPORT_ADDRESS

    @pytest.mark.asyncio
    async def test_block_height_is_unsupported(self, resilience):
        source = HtmlScrapeSource(
            "ETHEREUM", "https://explorer.example.org", resilience,
            client=explorer_client(lambda request: httpx.Response(200)),
        )

        with pytest.raises(UnsupportedOperationError):
            await source.get_block_number()
        assert await source.ping()


class Wrapped:
    def __init__(self, value):
        self.value = value


class NodeNumber:
    def __init__(self, number):
        self.number = number

    def to_number(self):
        return self.number


class TestRelayLogSource:
    """Test suite for RelayLogSource."""

    def _relay_log(self, block, address):
        return {
            "address": address,
            "blockNumber": hex(block),
            "topics": [TOPIC_A],
            "data": "0x",
            "transactionHash": "0x" + f"{block:064x}",
            "logIndex": "0x0",
            "blockHash": "0x" + "22" * 32,
            "transactionIndex": "0x0",
        }

    @pytest.mark.asyncio
    async def test_filters_addresses_client_side(self, resilience):
        bodies = []

        def handler(request):
            body = json.loads(request.content)
            bodies.append(body)
            result = [
                self._relay_log(10, IMPORT_ADDRESS.upper().replace("0X", "0x")),
                self._relay_log(11, EXPORT_ADDRESS),
                self._relay_log(12, IMPORT_ADDRESS.lower()),
            ]
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

        source = RelayLogSource(
            "THREEDPASS", "https://relay.example.org", resilience,
            chunk_size=1000, client=explorer_client(handler), sleep=no_sleep,
        )

        logs = await source.fetch_logs(IMPORT_ADDRESS, [TOPIC_A], 0, 50)

        assert [log.block_number for log in logs] == [10, 12]
        assert bodies[0]["method"] == "eth_getLogs"
        assert "address" not in bodies[0]["params"][0]
        assert bodies[0]["params"][0]["fromBlock"] == "0x0"
        assert bodies[0]["params"][0]["toBlock"] == "0x32"

    @pytest.mark.asyncio
    async def test_range_error_is_split(self, resilience):
        def handler(request):
            body = json.loads(request.content)
            log_filter = body["params"][0]
            span = int(log_filter["toBlock"], 16) - int(log_filter["fromBlock"], 16) + 1
            if span > 10:
                return httpx.Response(200, json={
                    "jsonrpc": "2.0", "id": body["id"],
                    "error": {"code": -32005, "message": "query returned more than 10000 results"},
                })
            logs = [
                self._relay_log(block, IMPORT_ADDRESS)
                for block in range(int(log_filter["fromBlock"], 16), int(log_filter["toBlock"], 16) + 1)
                if block % 10 == 0
            ]
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": logs})

        source = RelayLogSource(
            "THREEDPASS", "https://relay.example.org", resilience,
            chunk_size=40, client=explorer_client(handler), sleep=no_sleep,
        )

        logs = await source.fetch_logs(IMPORT_ADDRESS, None, 0, 39)

        assert [log.block_number for log in logs] == [0, 10, 20, 30]

    @pytest.mark.asyncio
    async def test_get_block_number(self, resilience):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0x2a"})

        source = RelayLogSource(
            "THREEDPASS", "https://relay.example.org", resilience,
            chunk_size=10, client=explorer_client(handler),
        )

        assert await source.get_block_number() == 42

    def test_node_values_are_converted_to_plain_types(self):
        assert to_plain_int(NodeNumber(7)) == 7
        assert to_plain_int(Wrapped("0x10")) == 16
        assert to_plain_int("15") == 15
        assert to_plain_int(b"\x01\x00") == 256
        assert to_plain_int("") is None
        assert to_plain_str(Wrapped(Wrapped("d1abc"))) == "d1abc"
        assert to_plain_str(b"\xab") == "0xab"
        assert to_plain_str(None) == ""


class TestFallbackLogSource:
    """Test suite for FallbackLogSource."""

    @pytest.mark.asyncio
    async def test_first_healthy_source_wins(self, resilience, raw_log_factory):
        log = raw_log_factory.expatriation(block=10)
        rpc = StaticLogSource("rpc", resilience, error=TransientSourceError("down", "rpc"))
        explorer = StaticLogSource("explorer", resilience, logs=[log])
        html = StaticLogSource("html", resilience, degraded=True)
        chain = FallbackLogSource("ETHEREUM", [rpc, explorer, html])

        result = await chain.fetch_logs(EXPORT_ADDRESS, None, 0, 100)

        assert result.source == "explorer"
        assert result.logs == [log]
        assert not result.degraded
        assert "rpc" in result.errors
        assert html.calls == []

    @pytest.mark.asyncio
    async def test_open_circuit_is_skipped_without_a_call(self, resilience):
        rpc = StaticLogSource("rpc", resilience)
        explorer = StaticLogSource("explorer", resilience)
        breaker = resilience.breaker("ETHEREUM:rpc")
        for _ in range(breaker.threshold):
            breaker.record_failure()
        chain = FallbackLogSource("ETHEREUM", [rpc, explorer])

        result = await chain.fetch_logs(EXPORT_ADDRESS, None, 0, 100)

        assert result.source == "explorer"
        assert rpc.calls == []
        assert result.errors == {"rpc": "circuit open"}

    @pytest.mark.asyncio
    async def test_all_sources_failing_raises_with_details(self, resilience):
        chain = FallbackLogSource("ETHEREUM", [
            StaticLogSource("rpc", resilience, error=LogSourceError("bad", "rpc")),
            StaticLogSource("explorer", resilience, error=RateLimitError("slow down", "explorer")),
        ])

        with pytest.raises(AllSourcesFailedError) as exc_info:
            await chain.fetch_logs(EXPORT_ADDRESS, None, 0, 100)

        assert set(exc_info.value.errors) == {"rpc", "explorer"}
        assert exc_info.value.network_key == "ETHEREUM"

    @pytest.mark.asyncio
    async def test_degraded_sources_can_be_excluded(self, resilience):
        html = StaticLogSource("html", resilience, degraded=True)
        chain = FallbackLogSource("ETHEREUM", [
            StaticLogSource("rpc", resilience, error=LogSourceError("bad", "rpc")),
            html,
        ])

        degraded = await chain.fetch_logs(EXPORT_ADDRESS, None, 0, 100)
        assert degraded.degraded

        with pytest.raises(AllSourcesFailedError):
            await chain.fetch_logs(EXPORT_ADDRESS, None, 0, 100, include_degraded=False)
        assert len(html.calls) == 1

    @pytest.mark.asyncio
    async def test_fetch_all_types_walks_the_chain(self, resilience, raw_log_factory):
        log = raw_log_factory.expatriation(block=10)
        explorer = StaticLogSource("explorer", resilience, logs=[log])
        chain = FallbackLogSource("ETHEREUM", [
            StaticLogSource("rpc", resilience, error=TransientSourceError("down", "rpc")),
            explorer,
        ])

        result = await chain.fetch_logs_all_types(EXPORT_ADDRESS, 0, 100)

        assert result.source == "explorer"
        assert result.logs == [log]
        assert explorer.calls == [(0, 100)]

    @pytest.mark.asyncio
    async def test_block_number_skips_unsupported_sources(self, resilience):
        chain = FallbackLogSource("ETHEREUM", [
            StaticLogSource("html", resilience, error=UnsupportedOperationError("no", "html")),
            StaticLogSource("explorer", resilience, block=777),
        ])

        assert await chain.get_block_number() == 777

    @pytest.mark.asyncio
    async def test_connection_report(self, resilience):
        chain = FallbackLogSource("ETHEREUM", [
            StaticLogSource("rpc", resilience, error=TransientSourceError("down", "rpc")),
            StaticLogSource("explorer", resilience),
        ])

        assert await chain.test_connection() == {"rpc": False, "explorer": True}
        assert chain.source_names == ["rpc", "explorer"]
