"""
EVVM Fisher

Watches pending transactions for EVVM pay() intents signed by users,
re-validates each one against chain state and executes the valid ones
from the fisher's own account, collecting the priority fee.

Usage:
    # Check that the fisher wallet can relay
    evvm-fisher check

    # Run the fisher
    evvm-fisher run --config .env

    # Show persisted statistics
    evvm-fisher stats
"""

__version__ = "0.1.0"

from .config import FisherConfig, Settings, ConfigurationError
from .decoder import IntentDecoder, NonceMode, PaymentIntent
from .signer import SignatureValidator, build_pay_message
from .evm import ChainGateway, MockChainGateway
from .executor import ExecutionEngine, ExecutionResult, FailureReason
from .relayer import FisherRelayer, IneligibleRelayError, PipelineOutcome, RelayPhase
from .stats import FisherStats, StatsLedger
from .db import ExecutionDatabase

__all__ = [
    "__version__",
    "FisherConfig",
    "Settings",
    "ConfigurationError",
    "IntentDecoder",
    "NonceMode",
    "PaymentIntent",
    "SignatureValidator",
    "build_pay_message",
    "ChainGateway",
    "MockChainGateway",
    "ExecutionEngine",
    "ExecutionResult",
    "FailureReason",
    "FisherRelayer",
    "IneligibleRelayError",
    "PipelineOutcome",
    "RelayPhase",
    "FisherStats",
    "StatsLedger",
    "ExecutionDatabase",
]
