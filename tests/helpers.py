"""
Test data: a funded payer, signed intents and settings.
"""

from dataclasses import replace

from eth_account import Account
from web3 import Web3

from evvm_fisher.config import DEFAULT_EVVM_ADDRESS, MATE_TOKEN, FisherConfig, Settings
from evvm_fisher.decoder import NonceMode, PaymentIntent
from evvm_fisher.signer import message_for_intent, sign_payment_message

PAYER_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
PAYER = Account.from_key(PAYER_KEY).address
OTHER_KEY = "0x" + "11" * 32
RECIPIENT = Web3.to_checksum_address("0x" + "22" * 20)
FISHER = "0x00000000000000000000000000000000000000f1"
EVVM_ID = 1


def make_intent(key: str = PAYER_KEY, evvm_id: int = EVVM_ID, **overrides) -> PaymentIntent:
    """A pay() intent signed with `key` over its own fields."""
    fields = dict(
        sender=PAYER,
        to_address=RECIPIENT,
        to_identity="",
        token=Web3.to_checksum_address(MATE_TOKEN),
        amount=1000,
        priority_fee=50,
        nonce=0,
        nonce_mode=NonceMode.SYNC,
        executor=Web3.to_checksum_address(FISHER),
        signature=b"\x00" * 65,
    )
    fields.update(overrides)
    unsigned = PaymentIntent(**fields)
    signature = sign_payment_message(message_for_intent(unsigned, evvm_id), key)
    return replace(unsigned, signature=signature)


def make_config(**overrides) -> FisherConfig:
    """Settings built from keyword arguments only, ignoring any local .env."""
    values = dict(
        enabled=True,
        private_key=PAYER_KEY,
        rpc_url="http://localhost:8545",
        evvm_address=DEFAULT_EVVM_ADDRESS,
        database_url="",
        poll_interval_seconds=0.01,
        receipt_timeout_seconds=5.0,
    )
    values.update(overrides)
    return FisherConfig(settings=Settings(_env_file=None, **values))
