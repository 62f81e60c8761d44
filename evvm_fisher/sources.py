"""
Transaction hash sources feeding the fisher.

Push (WebSocket subscription) and poll (new-block diffing) implement the
same HashSource interface; FailoverHashSource swaps between them.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, AsyncIterator, Optional

import structlog
from web3 import AsyncWeb3, WebSocketProvider

from .evm import normalize_hash

logger = structlog.get_logger()

DEFAULT_SEEN_CAPACITY = 50_000


class SeenHashes:
    """Bounded memory of recently delivered hashes, oldest evicted first."""

    def __init__(self, capacity: int = DEFAULT_SEEN_CAPACITY):
        self.capacity = capacity
        self._hashes: OrderedDict[str, None] = OrderedDict()

    def remember(self, tx_hash: str) -> bool:
        """Record a hash. True if it had not been seen before."""
        key = normalize_hash(tx_hash)
        if key in self._hashes:
            self._hashes.move_to_end(key)
            return False
        self._hashes[key] = None
        if len(self._hashes) > self.capacity:
            self._hashes.popitem(last=False)
        return True

    def __contains__(self, tx_hash: object) -> bool:
        return normalize_hash(tx_hash) in self._hashes

    def __len__(self) -> int:
        return len(self._hashes)


class HashSource(ABC):
    """An infinite, restartable stream of transaction hashes."""

    name = "source"

    @abstractmethod
    def stream(self) -> AsyncIterator[str]:
        """Yield hashes until cancelled. Calling again re-subscribes."""


class WebSocketHashSource(HashSource):
    """Pending transactions pushed by the node over a WebSocket subscription."""

    name = "websocket"

    def __init__(self, ws_url: str, seen: Optional[SeenHashes] = None):
        self.ws_url = ws_url
        self.seen = seen if seen is not None else SeenHashes()

    async def stream(self) -> AsyncIterator[str]:
        async with AsyncWeb3(WebSocketProvider(self.ws_url)) as w3:
            subscription_id = await w3.eth.subscribe("newPendingTransactions")
            logger.info("subscription_established", url=self.ws_url, subscription_id=subscription_id)

            async for message in w3.socket.process_subscriptions():
                yield self.accept(message)

    def accept(self, message: dict[str, Any]) -> str:
        """
        Hash carried by a subscription message.

        Every announcement is delivered, re-announcements included; the
        hash is only remembered so the poller does not replay it.
        """
        tx_hash = normalize_hash(message["result"])
        self.seen.remember(tx_hash)
        return tx_hash


class PollingHashSource(HashSource):
    """
    Replays the transactions of newly mined blocks.

    Each pass walks every block in (last_height, head]; a block that fails
    to load ends the pass without advancing last_height, so gaps are
    backfilled on the next pass.
    """

    name = "polling"

    def __init__(
        self,
        gateway: Any,
        interval: float = 2.0,
        seen: Optional[SeenHashes] = None,
    ):
        self.gateway = gateway
        self.interval = interval
        self.seen = seen if seen is not None else SeenHashes()
        self.last_height: Optional[int] = None

    async def sync_height(self) -> None:
        """Treat the current head as already observed."""
        self.last_height = await self.gateway.get_block_number()

    async def poll_once(self) -> list[str]:
        """One pass over unseen blocks; returns hashes not delivered before."""
        try:
            head = await self.gateway.get_block_number()
        except Exception as e:
            logger.warning("poll_head_failed", error=str(e))
            return []

        if self.last_height is None:
            self.last_height = head
            return []

        new_hashes: list[str] = []
        for height in range(self.last_height + 1, head + 1):
            try:
                block_hashes = await self.gateway.get_block_transaction_hashes(height)
            except Exception as e:
                logger.warning("poll_block_failed", block=height, error=str(e))
                break

            for tx_hash in block_hashes:
                if self.seen.remember(tx_hash):
                    new_hashes.append(normalize_hash(tx_hash))
            self.last_height = height

        return new_hashes

    async def stream(self) -> AsyncIterator[str]:
        while True:
            for tx_hash in await self.poll_once():
                yield tx_hash
            await asyncio.sleep(self.interval)


class FailoverHashSource(HashSource):
    """
    Push subscription with a polling fallback.

    When the subscription cannot be established or drops, hashes come from
    the poller for `retry_interval` seconds, then the subscription is
    attempted again. Both paths share one SeenHashes, so the poller never
    replays a pushed hash. The poller keeps its height across attempts and
    backfills every block mined since its last pass.
    """

    name = "failover"

    def __init__(
        self,
        primary: Optional[HashSource],
        fallback: PollingHashSource,
        retry_interval: float = 60.0,
    ):
        self.primary = primary
        self.fallback = fallback
        self.retry_interval = retry_interval
        self.active: Optional[str] = None

    async def stream(self) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()

        while True:
            if self.primary is not None:
                if self.fallback.last_height is None:
                    try:
                        # Blocks mined from here on are backfilled if the push path drops
                        await self.fallback.sync_height()
                    except Exception as e:
                        logger.warning("poll_height_sync_failed", error=str(e))

                try:
                    self.active = self.primary.name
                    async for tx_hash in self.primary.stream():
                        yield tx_hash
                    logger.warning("subscription_ended", source=self.primary.name)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning("subscription_failed", source=self.primary.name, error=str(e))

                logger.info("falling_back_to_polling", retry_in=self.retry_interval)

            self.active = self.fallback.name
            deadline = loop.time() + self.retry_interval
            while self.primary is None or loop.time() < deadline:
                for tx_hash in await self.fallback.poll_once():
                    yield tx_hash
                await asyncio.sleep(self.fallback.interval)
