"""
Replay-protection checks against the EVVM nonce state.
"""

from typing import Any

import structlog

from .decoder import NonceMode

logger = structlog.get_logger()


class NonceValidator:
    """
    Decides whether a sender's nonce can still be consumed.

    State is read from the chain on every call. Other relays and the
    sender's own submissions change it between observation and execution,
    so nothing is cached.
    """

    def __init__(self, gateway: Any):
        self.gateway = gateway

    async def is_acceptable(self, sender: str, nonce: int, mode: NonceMode) -> bool:
        if mode is NonceMode.SYNC:
            expected = await self.gateway.get_next_sync_nonce(sender)
            if nonce != expected:
                logger.debug("sync_nonce_mismatch", sender=sender, nonce=nonce, expected=expected)
                return False
            return True

        used = await self.gateway.is_async_nonce_used(sender, nonce)
        if used:
            logger.debug("async_nonce_used", sender=sender, nonce=nonce)
        return not used
