"""
In-flight deduplication of observed transaction hashes.
"""

import threading

from .evm import normalize_hash


class DedupGuard:
    """
    At most one active pipeline per transaction hash.

    The same hash can arrive from the push subscription and the polling
    fallback at once; exactly one caller of try_acquire() wins.
    """

    def __init__(self) -> None:
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()

    def try_acquire(self, tx_hash: str) -> bool:
        key = normalize_hash(tx_hash)
        with self._lock:
            if key in self._in_flight:
                return False
            self._in_flight.add(key)
            return True

    def release(self, tx_hash: str) -> None:
        """Idempotent; safe for hashes that were never acquired."""
        with self._lock:
            self._in_flight.discard(normalize_hash(tx_hash))

    @property
    def in_flight(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._in_flight)

    def __contains__(self, tx_hash: object) -> bool:
        with self._lock:
            return normalize_hash(tx_hash) in self._in_flight

    def __len__(self) -> int:
        with self._lock:
            return len(self._in_flight)
