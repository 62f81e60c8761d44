"""
Recognition and decoding of EVVM pay() calls.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

import structlog
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

logger = structlog.get_logger()

PAY_SIGNATURE = "pay(address,address,string,address,uint256,uint256,uint256,bool,address,bytes)"
PAY_SELECTOR = bytes(Web3.keccak(text=PAY_SIGNATURE)[:4])

# Argument schema of pay(), in calldata order
PAY_ARG_TYPES = [
    "address",  # from
    "address",  # to_address
    "string",  # to_identity
    "address",  # token
    "uint256",  # amount
    "uint256",  # priorityFee
    "uint256",  # nonce
    "bool",  # priorityFlag
    "address",  # executor
    "bytes",  # signature
]

SIGNATURE_LENGTH = 65
UINT256_MAX = 2**256 - 1


class NonceMode(str, Enum):
    """Replay protection scheme, selected by pay()'s priorityFlag."""

    SYNC = "sync"
    ASYNC = "async"

    @classmethod
    def from_flag(cls, priority_flag: bool) -> "NonceMode":
        return cls.ASYNC if priority_flag else cls.SYNC

    @property
    def flag(self) -> bool:
        return self is NonceMode.ASYNC


@dataclass(frozen=True)
class PaymentIntent:
    """A signed payment observed in the mempool, not yet executed."""

    sender: str
    to_address: str
    to_identity: str
    token: str
    amount: int
    priority_fee: int
    nonce: int
    nonce_mode: NonceMode
    executor: str
    signature: bytes

    def __post_init__(self) -> None:
        for name in ("amount", "priority_fee", "nonce"):
            value = getattr(self, name)
            if not 0 <= value <= UINT256_MAX:
                raise ValueError(f"{name} out of uint256 range: {value}")
        if len(self.signature) != SIGNATURE_LENGTH:
            raise ValueError(
                f"signature must be {SIGNATURE_LENGTH} bytes, got {len(self.signature)}"
            )

    @property
    def recipient(self) -> str:
        """Identity name when given, otherwise the lower-cased recipient address."""
        return self.to_identity if self.to_identity else self.to_address.lower()

    @property
    def total_debit(self) -> int:
        """Amount the sender's balance must cover."""
        return self.amount + self.priority_fee


def encode_pay_calldata(intent: PaymentIntent) -> bytes:
    """ABI-encode a pay() call for the intent, selector included."""
    return PAY_SELECTOR + encode(
        PAY_ARG_TYPES,
        [
            Web3.to_checksum_address(intent.sender),
            Web3.to_checksum_address(intent.to_address),
            intent.to_identity,
            Web3.to_checksum_address(intent.token),
            intent.amount,
            intent.priority_fee,
            intent.nonce,
            intent.nonce_mode.flag,
            Web3.to_checksum_address(intent.executor),
            intent.signature,
        ],
    )


def _as_bytes(data: Union[str, bytes, None]) -> bytes:
    if data is None:
        return b""
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    return bytes.fromhex(data[2:] if data.startswith("0x") else data)


class IntentDecoder:
    """Turns raw transactions into PaymentIntents for one EVVM contract."""

    def __init__(self, evvm_address: str):
        self.evvm_address = evvm_address.lower()

    def is_payment_call(self, tx: dict[str, Any]) -> bool:
        to = tx.get("to")
        if not to or to.lower() != self.evvm_address:
            return False
        try:
            return _as_bytes(tx.get("input")).startswith(PAY_SELECTOR)
        except ValueError:
            return False

    def decode(self, tx: dict[str, Any]) -> Optional[PaymentIntent]:
        """
        Decode a transaction into a PaymentIntent.

        Returns None for anything that is not a well-formed pay() call
        on the configured contract.
        """
        if not self.is_payment_call(tx):
            return None

        calldata = _as_bytes(tx.get("input"))
        try:
            (
                sender,
                to_address,
                to_identity,
                token,
                amount,
                priority_fee,
                nonce,
                priority_flag,
                executor,
                signature,
            ) = decode(PAY_ARG_TYPES, calldata[len(PAY_SELECTOR):])

            return PaymentIntent(
                sender=Web3.to_checksum_address(sender),
                to_address=Web3.to_checksum_address(to_address),
                to_identity=to_identity,
                token=Web3.to_checksum_address(token),
                amount=amount,
                priority_fee=priority_fee,
                nonce=nonce,
                nonce_mode=NonceMode.from_flag(priority_flag),
                executor=Web3.to_checksum_address(executor),
                signature=bytes(signature),
            )
        except (DecodingError, ValueError, TypeError, OverflowError) as e:
            logger.warning("payment_decode_failed", tx_hash=tx.get("hash"), error=str(e))
            return None
