"""
Main fisher logic - watches the mempool, validates intents, executes them.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import structlog

from .config import FisherConfig
from .db import ExecutionDatabase
from .decoder import IntentDecoder, PaymentIntent
from .dedup import DedupGuard
from .evm import ChainGateway, ZERO_ADDRESS
from .executor import ExecutionEngine, ExecutionResult, FailureReason, ShutdownInProgress
from .nonce import NonceValidator
from .signer import SignatureValidator
from .sources import FailoverHashSource, HashSource, PollingHashSource, SeenHashes, WebSocketHashSource
from .stats import FisherStats, StatsLedger

logger = structlog.get_logger()


class IneligibleRelayError(Exception):
    """The relay account is neither a staker nor the golden fisher."""


class RelayPhase(str, Enum):
    STARTING = "starting"
    PRIVILEGE_CHECK = "privilege_check"
    STAKER_CHECK = "staker_check"
    WATCHING = "watching"
    SHUTDOWN = "shutdown"


class RejectionReason(str, Enum):
    LOW_FEE = "low_fee"
    BAD_SIGNATURE = "bad_signature"
    BAD_NONCE = "bad_nonce"
    INSUFFICIENT_BALANCE = "insufficient_balance"


@dataclass(frozen=True)
class ValidationVerdict:
    valid: bool
    reason: Optional[RejectionReason] = None

    @classmethod
    def accept(cls) -> "ValidationVerdict":
        return cls(valid=True)

    @classmethod
    def reject(cls, reason: RejectionReason) -> "ValidationVerdict":
        return cls(valid=False, reason=reason)


class PipelineStatus(str, Enum):
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    NOT_INTENT = "not_intent"
    REJECTED = "rejected"
    EXECUTED = "executed"
    FAILED = "failed"
    ABANDONED = "abandoned"
    ERROR = "error"


@dataclass
class PipelineOutcome:
    """What happened to one observed transaction hash."""

    tx_hash: str
    status: PipelineStatus
    intent: Optional[PaymentIntent] = None
    verdict: Optional[ValidationVerdict] = None
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None


@dataclass
class RelayState:
    """Current relay state."""

    phase: RelayPhase = RelayPhase.STARTING
    is_golden: bool = False
    is_staker: bool = False
    signature_exempt: bool = False
    evvm_id: Optional[int] = None
    hashes_seen: int = 0
    intents_detected: int = 0
    intents_rejected: int = 0


class FisherRelayer:
    """
    Fisher relay that:
    1. Watches pending transactions for EVVM pay() calls
    2. Re-validates fee, signature, nonce and sender balance
    3. Executes valid payments from its own account and books the fee
    """

    def __init__(
        self,
        config: FisherConfig,
        gateway: Optional[Any] = None,
        source: Optional[HashSource] = None,
        database: Optional[ExecutionDatabase] = None,
    ):
        self.config = config
        self.state = RelayState()
        settings = config.settings

        self.state.phase = RelayPhase.STARTING
        if gateway is None:
            account = config.load_account()
            gateway = ChainGateway(
                rpc_url=settings.rpc_url,
                account=account,
                evvm_address=settings.evvm_address,
                staking_address=settings.staking_address,
                chain_id=settings.chain_id,
            )
        self.gateway = gateway

        if database is None and config.persistence_enabled:
            database = ExecutionDatabase(settings.database_url)
        self.db = database
        self.ledger = StatsLedger.restore(database) if database is not None else StatsLedger()

        self.source = source or self._default_source()
        self.decoder = IntentDecoder(settings.evvm_address)
        self.nonces = NonceValidator(self.gateway)
        self.signatures: Optional[SignatureValidator] = None
        self.dedup = DedupGuard()
        self.engine = ExecutionEngine(
            self.gateway,
            evvm_address=settings.evvm_address,
            gas_limit=settings.gas_limit,
            receipt_timeout=settings.receipt_timeout_seconds,
        )

        limit = settings.max_concurrent_pipelines
        self._semaphore = asyncio.Semaphore(limit) if limit > 0 else None
        self._tasks: set[asyncio.Task] = set()
        self._watcher: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

        logger.info(
            "fisher_initialized",
            fisher=self.gateway.address,
            evvm=settings.evvm_address,
            staking=settings.staking_address,
            min_priority_fee=settings.min_priority_fee,
            gas_limit=settings.gas_limit,
            source=self.source.name,
        )

    def _default_source(self) -> HashSource:
        settings = self.config.settings
        seen = SeenHashes()
        poller = PollingHashSource(self.gateway, interval=settings.poll_interval_seconds, seen=seen)
        primary = (
            WebSocketHashSource(self.config.websocket_url, seen=seen)
            if settings.websocket_enabled
            else None
        )
        return FailoverHashSource(primary, poller, retry_interval=settings.resubscribe_interval_seconds)

    # Startup

    async def start(self) -> RelayState:
        """
        Run startup checks.

        Raises:
            IneligibleRelayError: if the relay is neither staker nor golden fisher.
        """
        settings = self.config.settings

        if settings.evvm_id is not None:
            self.state.evvm_id = settings.evvm_id
        else:
            self.state.evvm_id = await self.gateway.get_evvm_id()
        self.signatures = SignatureValidator(self.state.evvm_id)

        self.state.phase = RelayPhase.PRIVILEGE_CHECK
        self.state.is_golden = await self.check_golden_fisher()
        if self.state.is_golden:
            self.state.signature_exempt = await self.resolve_signature_exemption()
            logger.info(
                "golden_fisher_mode",
                fisher=self.gateway.address,
                signature_exempt=self.state.signature_exempt,
            )

        self.state.phase = RelayPhase.STAKER_CHECK
        self.state.is_staker = await self.check_staker_status()
        if not self.state.is_staker and not self.state.is_golden:
            logger.error("fisher_not_staker", fisher=self.gateway.address)
            raise IneligibleRelayError(
                f"Fisher wallet {self.gateway.address} is not a staker. Stake MATE tokens first."
            )
        if not self.state.is_staker:
            logger.warning("golden_fisher_not_staked", fisher=self.gateway.address)

        logger.info(
            "fisher_ready",
            evvm_id=self.state.evvm_id,
            golden=self.state.is_golden,
            staker=self.state.is_staker,
        )
        return self.state

    async def check_golden_fisher(self) -> bool:
        try:
            golden = await self.gateway.get_golden_fisher()
        except Exception as e:
            logger.error("golden_fisher_check_failed", error=str(e))
            return False
        return bool(golden) and golden.lower() != ZERO_ADDRESS and golden.lower() == self.gateway.address.lower()

    async def check_staker_status(self) -> bool:
        try:
            return await self.gateway.is_staker(self.gateway.address)
        except Exception as e:
            logger.error("staker_check_failed", error=str(e))
            return False

    async def resolve_signature_exemption(self) -> bool:
        """
        Whether the deployed staking contract lets the golden fisher act
        without a payment signature. Informational only: pay() intents are
        always fully validated.
        """
        policy = self.config.settings.golden_signature_policy
        if policy == "exempt":
            return True
        if policy == "required":
            return False
        try:
            return await self.gateway.simulate_golden_staking()
        except Exception as e:
            logger.warning("golden_exemption_probe_failed", error=str(e))
            return False

    # Validation

    async def validate(self, intent: PaymentIntent) -> ValidationVerdict:
        """Cheapest checks first: fee (local), signature (local), nonce and balance (RPC)."""
        if intent.priority_fee < self.config.settings.min_priority_fee:
            return ValidationVerdict.reject(RejectionReason.LOW_FEE)

        if self.signatures is None:
            raise RuntimeError("start() must run before validation")
        if not self.signatures.verify(intent):
            return ValidationVerdict.reject(RejectionReason.BAD_SIGNATURE)

        if not await self.nonces.is_acceptable(intent.sender, intent.nonce, intent.nonce_mode):
            return ValidationVerdict.reject(RejectionReason.BAD_NONCE)

        balance = await self.gateway.get_balance(intent.sender, intent.token)
        if balance < intent.total_debit:
            return ValidationVerdict.reject(RejectionReason.INSUFFICIENT_BALANCE)

        return ValidationVerdict.accept()

    # Per-hash pipeline

    async def handle_transaction(self, tx_hash: str) -> PipelineOutcome:
        """Process one observed hash end to end. Never raises."""
        if not self.dedup.try_acquire(tx_hash):
            return PipelineOutcome(tx_hash, PipelineStatus.DUPLICATE)

        intent: Optional[PaymentIntent] = None
        recorded = False
        started = time.monotonic()
        try:
            tx = await self.gateway.get_transaction(tx_hash)
            if tx is None:
                return PipelineOutcome(tx_hash, PipelineStatus.NOT_FOUND)

            intent = self.decoder.decode(tx)
            if intent is None:
                return PipelineOutcome(tx_hash, PipelineStatus.NOT_INTENT)

            self.state.intents_detected += 1
            logger.info(
                "payment_intent_detected",
                tx_hash=tx_hash,
                sender=intent.sender,
                recipient=intent.recipient,
                amount=intent.amount,
                priority_fee=intent.priority_fee,
                nonce=intent.nonce,
                nonce_mode=intent.nonce_mode.value,
            )

            verdict = await self.validate(intent)
            if not verdict.valid:
                self.state.intents_rejected += 1
                logger.info("payment_intent_rejected", tx_hash=tx_hash, reason=verdict.reason.value)
                return PipelineOutcome(tx_hash, PipelineStatus.REJECTED, intent=intent, verdict=verdict)

            result = await self.engine.execute(intent)
            recorded = True
            await self.ledger.record(
                intent, result, source_tx_hash=tx_hash, duration=time.monotonic() - started
            )
            status = PipelineStatus.EXECUTED if result.success else PipelineStatus.FAILED
            return PipelineOutcome(tx_hash, status, intent=intent, verdict=verdict, result=result)

        except ShutdownInProgress:
            logger.info("pipeline_abandoned", tx_hash=tx_hash)
            return PipelineOutcome(tx_hash, PipelineStatus.ABANDONED, intent=intent)

        except Exception as e:
            logger.error("pipeline_error", tx_hash=tx_hash, error=str(e), error_type=type(e).__name__)
            if intent is not None and not recorded:
                result = ExecutionResult.failed(FailureReason.PIPELINE_ERROR, str(e))
                await self.ledger.record(
                    intent, result, source_tx_hash=tx_hash, duration=time.monotonic() - started
                )
            return PipelineOutcome(tx_hash, PipelineStatus.ERROR, intent=intent, error=str(e))

        finally:
            self.dedup.release(tx_hash)

    async def _run_pipeline(self, tx_hash: str) -> PipelineOutcome:
        if self._semaphore is None:
            return await self.handle_transaction(tx_hash)
        async with self._semaphore:
            return await self.handle_transaction(tx_hash)

    def dispatch(self, tx_hash: str) -> asyncio.Task:
        """Start an independent pipeline task for a hash."""
        self.state.hashes_seen += 1
        task = asyncio.create_task(self._run_pipeline(tx_hash))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # Lifecycle

    async def watch(self) -> None:
        """Dispatch every hash from the source until stopped."""
        logger.info("mempool_monitoring_active", source=self.source.name)
        async for tx_hash in self.source.stream():
            if self.state.phase is not RelayPhase.WATCHING:
                break
            self.dispatch(tx_hash)

    async def run(self) -> FisherStats:
        """
        Start, watch until request_stop(), then shut down gracefully.

        Returns the final statistics.
        """
        self._stop_event = asyncio.Event()
        try:
            await self.start()
        except Exception:
            await self.close()
            raise

        self.state.phase = RelayPhase.WATCHING
        self._watcher = asyncio.create_task(self.watch())
        stop_waiter = asyncio.create_task(self._stop_event.wait())

        done, _ = await asyncio.wait(
            {self._watcher, stop_waiter}, return_when=asyncio.FIRST_COMPLETED
        )
        stop_waiter.cancel()
        if self._watcher in done and self._watcher.exception() is not None:
            logger.error("watcher_crashed", error=str(self._watcher.exception()))

        return await self.shutdown()

    def request_stop(self) -> None:
        """Signal-handler safe stop request."""
        logger.info("fisher_stop_requested")
        if self._stop_event is not None:
            self._stop_event.set()

    async def shutdown(self) -> FisherStats:
        """
        Stop accepting hashes and let in-flight pipelines finish.

        Submitted transactions are awaited to receipt or timeout; pipelines
        that had not yet submitted are abandoned.
        """
        self.state.phase = RelayPhase.SHUTDOWN
        logger.info("fisher_stopping", in_flight=len(self._tasks))

        if self._watcher is not None and not self._watcher.done():
            self._watcher.cancel()
            try:
                await self._watcher
            except asyncio.CancelledError:
                pass

        self.engine.stop_accepting()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

        stats = self.ledger.snapshot()
        logger.info(
            "fisher_statistics",
            total_executions=stats.total_executions,
            successful=stats.successful_executions,
            failed=stats.failed_executions,
            fee_earned=stats.total_fee_earned,
            gas_spent=stats.total_gas_spent,
            profit=stats.total_profit,
        )

        await self.close()
        return stats

    async def close(self) -> None:
        """Release the node connection and the database."""
        await self.gateway.close()
        if self.db is not None:
            self.db.close()
