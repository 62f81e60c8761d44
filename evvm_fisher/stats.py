"""
Profitability accounting for executed payments.
"""

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

import structlog

from .decoder import PaymentIntent
from .executor import ExecutionResult

if TYPE_CHECKING:
    from .db import ExecutionDatabase

logger = structlog.get_logger()

WEI_PER_ETHER = Decimal(10**18)
RECENT_EXECUTIONS = 10


def format_units(value: int, places: int = 4) -> str:
    """Render an 18-decimal amount, e.g. 1500000000000000000 -> '1.5000'."""
    return f"{Decimal(value) / WEI_PER_ETHER:.{places}f}"


@dataclass
class ExecutionRecord:
    """One execution attempt, as kept in the history."""

    tx_hash: Optional[str]
    source_tx_hash: Optional[str]
    timestamp: float
    sender: str
    recipient: str
    token: str
    amount: int
    priority_fee: int
    gas_cost: int
    profit: int
    success: bool
    failure_reason: Optional[str] = None
    duration: float = 0.0

    @property
    def fee_earned(self) -> int:
        return self.priority_fee if self.success else 0


@dataclass
class FisherStats:
    """Aggregate outcome counters for this fisher."""

    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    total_fee_earned: int = 0
    total_gas_spent: int = 0
    total_profit: int = 0
    total_execution_time: float = 0.0
    start_time: float = field(default_factory=time.time)
    last_execution: Optional[float] = None

    def apply(self, record: ExecutionRecord) -> None:
        self.total_executions += 1
        if record.success:
            self.successful_executions += 1
        else:
            self.failed_executions += 1
        self.total_fee_earned += record.fee_earned
        self.total_gas_spent += record.gas_cost
        self.total_profit += record.profit
        self.total_execution_time += record.duration
        if self.last_execution is None or record.timestamp > self.last_execution:
            self.last_execution = record.timestamp

    @property
    def success_rate(self) -> float:
        """Percentage of executions that confirmed successfully."""
        if self.total_executions == 0:
            return 0.0
        return self.successful_executions / self.total_executions * 100

    @property
    def average_execution_time(self) -> float:
        if self.total_executions == 0:
            return 0.0
        return self.total_execution_time / self.total_executions

    @property
    def is_profitable(self) -> bool:
        return self.total_profit > 0

    @property
    def uptime(self) -> float:
        return time.time() - self.start_time

    def summary_lines(self) -> list[str]:
        uptime = int(self.uptime)
        hours, remainder = divmod(uptime, 3600)
        minutes, seconds = divmod(remainder, 60)
        return [
            "Fisher Statistics",
            "===============================================",
            f"Total Executions: {self.total_executions}",
            f"Successful: {self.successful_executions}",
            f"Failed: {self.failed_executions}",
            f"Success Rate: {self.success_rate:.2f}%",
            f"Fees Earned: {format_units(self.total_fee_earned)}",
            f"Gas Spent: {format_units(self.total_gas_spent, places=6)} ETH",
            f"Net Profit: {format_units(self.total_profit, places=6)}",
            f"Avg Execution Time: {self.average_execution_time:.2f}s",
            f"Uptime: {hours}h {minutes}m {seconds}s",
            "===============================================",
        ]


class StatsLedger:
    """
    The only writer of FisherStats.

    Each outcome is applied under one lock, so concurrent pipelines never
    lose an update. History is mirrored to the database when one is given.
    """

    def __init__(
        self,
        database: Optional["ExecutionDatabase"] = None,
        stats: Optional[FisherStats] = None,
        recent: Optional[list[ExecutionRecord]] = None,
    ):
        self.database = database
        self._stats = stats or FisherStats()
        self._recent: deque[ExecutionRecord] = deque(recent or [], maxlen=RECENT_EXECUTIONS)
        self._lock = threading.Lock()

    @classmethod
    def restore(cls, database: "ExecutionDatabase") -> "StatsLedger":
        """Ledger seeded from persisted history; uptime restarts now."""
        stats = database.load_stats()
        stats.start_time = time.time()
        return cls(
            database=database,
            stats=stats,
            recent=database.recent_executions(RECENT_EXECUTIONS),
        )

    async def record(
        self,
        intent: PaymentIntent,
        result: ExecutionResult,
        source_tx_hash: Optional[str] = None,
        duration: float = 0.0,
    ) -> ExecutionRecord:
        """Account one execution outcome; the database write runs in a worker thread."""
        record = ExecutionRecord(
            tx_hash=result.tx_hash,
            source_tx_hash=source_tx_hash,
            timestamp=time.time(),
            sender=intent.sender,
            recipient=intent.recipient,
            token=intent.token,
            amount=intent.amount,
            priority_fee=intent.priority_fee,
            gas_cost=result.gas_cost,
            profit=result.net_profit,
            success=result.success,
            failure_reason=result.failure.value if result.failure else None,
            duration=duration,
        )

        with self._lock:
            self._stats.apply(record)
            self._recent.appendleft(record)

        if self.database is not None:
            try:
                await asyncio.to_thread(self.database.record_execution, record)
            except Exception as e:
                logger.error("execution_persist_failed", tx_hash=record.tx_hash, error=str(e))

        return record

    def snapshot(self) -> FisherStats:
        """Consistent copy of the current counters."""
        with self._lock:
            return replace(self._stats)

    @property
    def recent(self) -> list[ExecutionRecord]:
        """Last executions, newest first."""
        with self._lock:
            return list(self._recent)

    def reset(self) -> None:
        """Zero all counters and forget the history."""
        with self._lock:
            self._stats = FisherStats()
            self._recent.clear()
        if self.database is not None:
            self.database.clear()
        logger.info("stats_reset")
