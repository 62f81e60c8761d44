"""
Execution of validated payment intents on-chain.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import structlog

from .decoder import PaymentIntent, encode_pay_calldata
from .evm import ConfirmationTimeout, GasEstimationError

logger = structlog.get_logger()

# Headroom added to the node's estimate, capped by the configured ceiling
GAS_HEADROOM_NUMERATOR = 6
GAS_HEADROOM_DENOMINATOR = 5


class ShutdownInProgress(Exception):
    """Raised instead of submitting once the relay is shutting down."""


class FailureReason(str, Enum):
    ESTIMATION_FAILED = "estimation_failed"
    REVERTED = "reverted"
    SUBMISSION_ERROR = "submission_error"
    CONFIRMATION_TIMEOUT = "confirmation_timeout"
    PIPELINE_ERROR = "pipeline_error"


@dataclass
class ExecutionResult:
    """Result of submitting the relay's own pay() transaction."""

    success: bool
    tx_hash: Optional[str] = None
    gas_used: int = 0
    gas_cost: int = 0
    fee_earned: int = 0
    failure: Optional[FailureReason] = None
    error: Optional[str] = None

    @classmethod
    def succeeded(cls, tx_hash: str, gas_used: int, gas_cost: int, fee_earned: int) -> "ExecutionResult":
        return cls(
            success=True,
            tx_hash=tx_hash,
            gas_used=gas_used,
            gas_cost=gas_cost,
            fee_earned=fee_earned,
        )

    @classmethod
    def failed(
        cls,
        reason: FailureReason,
        error: str,
        tx_hash: Optional[str] = None,
        gas_used: int = 0,
        gas_cost: int = 0,
    ) -> "ExecutionResult":
        return cls(
            success=False,
            tx_hash=tx_hash,
            gas_used=gas_used,
            gas_cost=gas_cost,
            failure=reason,
            error=error,
        )

    @property
    def net_profit(self) -> int:
        return self.fee_earned - self.gas_cost

    @property
    def may_still_confirm(self) -> bool:
        """A timed-out transaction is not lost; it must not be resubmitted."""
        return self.failure is FailureReason.CONFIRMATION_TIMEOUT


class ExecutionEngine:
    """
    Submits pay() transactions from the relay account.

    Estimation and confirmation waits run concurrently; nonce assignment
    and broadcast are serialised so concurrent pipelines never claim the
    same outbound nonce.
    """

    def __init__(
        self,
        gateway: Any,
        evvm_address: str,
        gas_limit: int = 500_000,
        receipt_timeout: float = 120.0,
    ):
        self.gateway = gateway
        self.evvm_address = evvm_address
        self.gas_limit = gas_limit
        self.receipt_timeout = receipt_timeout
        self._submit_lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None
        self._accepting = True

    def stop_accepting(self) -> None:
        """Refuse new submissions; already-sent transactions still await receipts."""
        self._accepting = False

    @property
    def accepting(self) -> bool:
        return self._accepting

    def build_call(self, intent: PaymentIntent) -> dict[str, Any]:
        return {
            "from": self.gateway.address,
            "to": self.evvm_address,
            "data": encode_pay_calldata(intent),
        }

    def gas_for(self, estimate: int) -> int:
        return min(self.gas_limit, estimate * GAS_HEADROOM_NUMERATOR // GAS_HEADROOM_DENOMINATOR)

    async def execute(self, intent: PaymentIntent) -> ExecutionResult:
        """
        Estimate, submit and confirm a pay() call for the intent.

        Never retries: a resubmission could pay twice if the first
        transaction still confirms.

        Raises:
            ShutdownInProgress: if shutdown began before submission.
        """
        call = self.build_call(intent)

        try:
            estimate = await self.gateway.estimate_gas(call)
        except GasEstimationError as e:
            logger.warning("payment_gas_estimation_failed", sender=intent.sender, error=str(e))
            return ExecutionResult.failed(FailureReason.ESTIMATION_FAILED, str(e))

        if estimate > self.gas_limit:
            error = f"estimated gas {estimate} exceeds limit {self.gas_limit}"
            logger.warning("payment_gas_over_limit", sender=intent.sender, estimate=estimate)
            return ExecutionResult.failed(FailureReason.ESTIMATION_FAILED, error)

        logger.debug("payment_gas_estimated", sender=intent.sender, estimate=estimate)

        try:
            tx_hash = await self._send(call, self.gas_for(estimate))
        except ShutdownInProgress:
            raise
        except Exception as e:
            logger.error("payment_submission_error", sender=intent.sender, error=str(e))
            return ExecutionResult.failed(FailureReason.SUBMISSION_ERROR, str(e))

        logger.info(
            "payment_tx_sent",
            tx_hash=tx_hash,
            sender=intent.sender,
            recipient=intent.recipient,
            amount=intent.amount,
            priority_fee=intent.priority_fee,
        )

        try:
            receipt = await self.gateway.await_receipt(tx_hash, self.receipt_timeout)
        except ConfirmationTimeout as e:
            logger.warning("payment_tx_unconfirmed", tx_hash=tx_hash, timeout=self.receipt_timeout)
            await self._forget_nonce()
            return ExecutionResult.failed(FailureReason.CONFIRMATION_TIMEOUT, str(e), tx_hash=tx_hash)
        except Exception as e:
            # Outcome unknown: the transaction was broadcast and may still confirm
            logger.error("payment_receipt_error", tx_hash=tx_hash, error=str(e))
            await self._forget_nonce()
            return ExecutionResult.failed(FailureReason.CONFIRMATION_TIMEOUT, str(e), tx_hash=tx_hash)

        gas_used = receipt.get("gasUsed", 0)
        gas_cost = gas_used * receipt.get("effectiveGasPrice", 0)

        if receipt.get("status") == 1:
            logger.info(
                "payment_tx_confirmed",
                tx_hash=tx_hash,
                gas_used=gas_used,
                gas_cost=gas_cost,
                fee_earned=intent.priority_fee,
            )
            return ExecutionResult.succeeded(tx_hash, gas_used, gas_cost, intent.priority_fee)

        logger.error("payment_tx_reverted", tx_hash=tx_hash, gas_used=gas_used)
        return ExecutionResult.failed(
            FailureReason.REVERTED,
            "Transaction reverted",
            tx_hash=tx_hash,
            gas_used=gas_used,
            gas_cost=gas_cost,
        )

    async def _send(self, call: dict[str, Any], gas: int) -> str:
        async with self._submit_lock:
            if not self._accepting:
                raise ShutdownInProgress("relay is shutting down")

            if self._next_nonce is None:
                self._next_nonce = await self.gateway.get_pending_nonce()
            nonce = self._next_nonce
            gas_price = await self.gateway.get_gas_price()

            try:
                tx_hash = await self.gateway.submit(
                    {**call, "nonce": nonce, "gas": gas, "gasPrice": gas_price}
                )
            except Exception:
                # Unknown whether the node consumed the nonce; resync next time
                self._next_nonce = None
                raise

            self._next_nonce = nonce + 1
            return tx_hash

    async def _forget_nonce(self) -> None:
        """Make the next send re-read the pending nonce from the node."""
        async with self._submit_lock:
            self._next_nonce = None
