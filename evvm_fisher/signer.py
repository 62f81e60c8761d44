"""
EIP-191 signature handling for EVVM payment messages.
"""

from eth_account import Account
from eth_account.messages import encode_defunct
import structlog

from .decoder import NonceMode, PaymentIntent

logger = structlog.get_logger()


def build_pay_message(
    evvm_id: int,
    recipient: str,
    token: str,
    amount: int,
    priority_fee: int,
    nonce: int,
    nonce_mode: NonceMode,
    executor: str,
) -> str:
    """
    Canonical pay() message as produced by the payer's wallet.

    Format: {evvmID},pay,{recipient},{token},{amount},{priorityFee},{nonce},{priorityFlag},{executor}

    Addresses are lower-case hex; the recipient is either the identity
    name or the address. Any deviation from this layout invalidates an
    otherwise legitimate signature.
    """
    return ",".join(
        [
            str(evvm_id),
            "pay",
            recipient,
            token.lower(),
            str(amount),
            str(priority_fee),
            str(nonce),
            "true" if nonce_mode.flag else "false",
            executor.lower(),
        ]
    )


def message_for_intent(intent: PaymentIntent, evvm_id: int) -> str:
    return build_pay_message(
        evvm_id=evvm_id,
        recipient=intent.recipient,
        token=intent.token,
        amount=intent.amount,
        priority_fee=intent.priority_fee,
        nonce=intent.nonce,
        nonce_mode=intent.nonce_mode,
        executor=intent.executor,
    )


def sign_payment_message(message: str, private_key: str) -> bytes:
    """
    Sign a payment message with personal_sign semantics.

    Returns:
        65-byte signature (r || s || v)
    """
    account = Account.from_key(private_key)
    signed = account.sign_message(encode_defunct(text=message))
    return bytes(signed.signature)


class SignatureValidator:
    """Checks that an intent was signed by its claimed sender."""

    def __init__(self, evvm_id: int):
        self.evvm_id = evvm_id

    def recover_signer(self, intent: PaymentIntent) -> str:
        message = message_for_intent(intent, self.evvm_id)
        return Account.recover_message(encode_defunct(text=message), signature=intent.signature)

    def verify(self, intent: PaymentIntent) -> bool:
        """True iff the signature recovers to intent.sender."""
        try:
            signer = self.recover_signer(intent)
        except Exception as e:
            logger.debug("signature_recovery_failed", sender=intent.sender, error=str(e))
            return False

        if signer.lower() != intent.sender.lower():
            logger.debug("signature_signer_mismatch", sender=intent.sender, signer=signer)
            return False
        return True
