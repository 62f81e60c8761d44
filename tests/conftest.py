"""
Shared fixtures.
"""

import pytest

from evvm_fisher.config import DEFAULT_EVVM_ADDRESS, MATE_TOKEN
from evvm_fisher.decoder import PaymentIntent
from evvm_fisher.evm import MockChainGateway

from .helpers import EVVM_ID, FISHER, PAYER, make_intent


@pytest.fixture
def gateway() -> MockChainGateway:
    """Chain where the fisher is a staker and the payer holds 1050 MATE units."""
    chain = MockChainGateway(address=FISHER, evvm_address=DEFAULT_EVVM_ADDRESS)
    chain.evvm_id = EVVM_ID
    chain.stakers.add(FISHER.lower())
    chain.set_balance(PAYER, MATE_TOKEN, 1050)
    return chain


@pytest.fixture
def intent() -> PaymentIntent:
    return make_intent()
