"""
Tests for hash sources and subscription failover.
"""

import asyncio

import pytest

from evvm_fisher.sources import (
    FailoverHashSource,
    HashSource,
    PollingHashSource,
    SeenHashes,
    WebSocketHashSource,
)


def _h(n: int) -> str:
    return "0x" + f"{n:064x}"


class FlakyPushSource(HashSource):
    """Delivers some hashes, mines a block behind its own back, then drops."""

    name = "flaky"

    def __init__(self, gateway, seen: SeenHashes, pushed: list[str], mined: dict[int, list[str]]):
        self.gateway = gateway
        self.seen = seen
        self.pushed = pushed
        self.mined = mined
        self.attempts = 0

    async def stream(self):
        self.attempts += 1
        for tx_hash in self.pushed:
            self.seen.remember(tx_hash)
            yield tx_hash
        for number, hashes in self.mined.items():
            self.gateway.add_block(number, hashes)
        raise ConnectionError("socket closed")


async def _take(stream, count: int, timeout: float = 2.0) -> list[str]:
    async def collect() -> list[str]:
        out = []
        async for tx_hash in stream:
            out.append(tx_hash)
            if len(out) == count:
                break
        return out

    return await asyncio.wait_for(collect(), timeout)


class TestSeenHashes:
    """Tests for the bounded seen set."""

    def test_remember_once(self) -> None:
        seen = SeenHashes()

        assert seen.remember("0xAA")
        assert not seen.remember("0xaa")
        assert "aa" in seen

    def test_evicts_oldest(self) -> None:
        seen = SeenHashes(capacity=2)
        seen.remember("0x01")
        seen.remember("0x02")
        seen.remember("0x03")

        assert len(seen) == 2
        assert "0x01" not in seen
        assert "0x03" in seen


class TestWebSocketHashSource:
    """Tests for subscription message handling."""

    def test_reannouncement_is_delivered_again(self) -> None:
        source = WebSocketHashSource("ws://localhost:8546")

        assert source.accept({"result": "0xAB"}) == "0xab"
        assert source.accept({"result": "0xab"}) == "0xab"

    @pytest.mark.asyncio
    async def test_pushed_hash_is_not_replayed_by_poller(self, gateway) -> None:
        seen = SeenHashes()
        source = WebSocketHashSource("ws://localhost:8546", seen=seen)
        poller = PollingHashSource(gateway, interval=0.01, seen=seen)
        await poller.sync_height()

        source.accept({"result": _h(4)})
        gateway.add_block(1, [_h(4), _h(5)])

        assert _h(4) in seen
        assert await poller.poll_once() == [_h(5)]


class TestPollingHashSource:
    """Tests for block polling."""

    @pytest.mark.asyncio
    async def test_first_poll_only_sets_height(self, gateway) -> None:
        gateway.add_block(10, [_h(1)])
        poller = PollingHashSource(gateway, interval=0.01)

        assert await poller.poll_once() == []
        assert poller.last_height == 10

    @pytest.mark.asyncio
    async def test_new_blocks_are_replayed_in_order(self, gateway) -> None:
        gateway.block_number = 10
        poller = PollingHashSource(gateway, interval=0.01)
        await poller.sync_height()

        gateway.add_block(11, [_h(1), _h(2)])
        gateway.add_block(12, [_h(3)])

        assert await poller.poll_once() == [_h(1), _h(2), _h(3)]
        assert poller.last_height == 12
        assert await poller.poll_once() == []

    @pytest.mark.asyncio
    async def test_failed_block_is_backfilled(self, gateway) -> None:
        gateway.block_number = 10
        poller = PollingHashSource(gateway, interval=0.01)
        await poller.sync_height()
        gateway.add_block(11, [_h(1)])
        gateway.add_block(12, [_h(2)])
        gateway.add_block(13, [_h(3)])
        gateway.failing_blocks.add(12)

        assert await poller.poll_once() == [_h(1)]
        assert poller.last_height == 11

        gateway.failing_blocks.clear()

        assert await poller.poll_once() == [_h(2), _h(3)]

    @pytest.mark.asyncio
    async def test_head_failure_yields_nothing(self, gateway) -> None:
        poller = PollingHashSource(gateway, interval=0.01)
        poller.last_height = 0
        gateway.read_error = RuntimeError("node down")

        assert await poller.poll_once() == []
        assert poller.last_height == 0

    @pytest.mark.asyncio
    async def test_stream(self, gateway) -> None:
        poller = PollingHashSource(gateway, interval=0.01)
        await poller.sync_height()
        gateway.add_block(1, [_h(5)])

        assert await _take(poller.stream(), 1) == [_h(5)]


class TestFailoverHashSource:
    """Tests for push/poll failover."""

    @pytest.mark.asyncio
    async def test_polls_without_primary(self, gateway) -> None:
        poller = PollingHashSource(gateway, interval=0.01)
        await poller.sync_height()
        gateway.add_block(1, [_h(9)])
        source = FailoverHashSource(None, poller)

        assert await _take(source.stream(), 1) == [_h(9)]
        assert source.active == "polling"

    @pytest.mark.asyncio
    async def test_falls_back_and_backfills_without_duplicates(self, gateway) -> None:
        """Blocks mined while the push path dies are polled; pushed hashes are not repeated."""
        seen = SeenHashes()
        gateway.block_number = 100
        primary = FlakyPushSource(gateway, seen, pushed=[_h(1)], mined={101: [_h(1), _h(2)]})
        poller = PollingHashSource(gateway, interval=0.01, seen=seen)
        source = FailoverHashSource(primary, poller, retry_interval=60.0)

        assert await _take(source.stream(), 2) == [_h(1), _h(2)]
        assert source.active == "polling"
        assert primary.attempts == 1

    @pytest.mark.asyncio
    async def test_block_mined_between_attempts_is_not_skipped(self, gateway) -> None:
        """Re-subscribing does not move the poller past blocks it has not read."""
        seen = SeenHashes()
        gateway.block_number = 100
        head_reads = 0
        read_head = gateway.get_block_number

        async def head_with_late_block() -> int:
            nonlocal head_reads
            head_reads += 1
            if head_reads == 3:
                gateway.add_block(101, [_h(7)])
            return await read_head()

        gateway.get_block_number = head_with_late_block
        primary = FlakyPushSource(gateway, seen, pushed=[], mined={})
        poller = PollingHashSource(gateway, interval=0.01, seen=seen)
        poller.last_height = 100
        source = FailoverHashSource(primary, poller, retry_interval=0.005)

        assert await _take(source.stream(), 1) == [_h(7)]
        assert poller.last_height == 101
        assert primary.attempts >= 2

    @pytest.mark.asyncio
    async def test_resubscribes_after_retry_interval(self, gateway) -> None:
        seen = SeenHashes()
        primary = FlakyPushSource(gateway, seen, pushed=[], mined={})
        poller = PollingHashSource(gateway, interval=0.01, seen=seen)
        source = FailoverHashSource(primary, poller, retry_interval=0.02)

        stream = source.stream()
        task = asyncio.ensure_future(_take(stream, 1, timeout=0.2))
        with pytest.raises(asyncio.TimeoutError):
            await task

        assert primary.attempts >= 2
