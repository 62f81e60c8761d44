"""
EVM interaction for reading EVVM state and submitting payments.
"""

import asyncio
from typing import Any, Optional

import structlog
from eth_abi import decode
from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

logger = structlog.get_logger()

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


# EVVM ABI (minimal for the relay)
EVVM_ABI = [
    {
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to_address", "type": "address"},
            {"name": "to_identity", "type": "string"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "priorityFee", "type": "uint256"},
            {"name": "nonce", "type": "uint256"},
            {"name": "priorityFlag", "type": "bool"},
            {"name": "executor", "type": "address"},
            {"name": "signature", "type": "bytes"},
        ],
        "name": "pay",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "user", "type": "address"},
            {"name": "token", "type": "address"},
        ],
        "name": "getBalance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "isAddressStaker",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "getNextCurrentSyncNonce",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "user", "type": "address"},
            {"name": "nonce", "type": "uint256"},
        ],
        "name": "getIfUsedAsyncNonce",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "getEvvmID",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

STAKING_ABI = [
    {
        "inputs": [],
        "name": "getGoldenFisher",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "isStaking", "type": "bool"},
            {"name": "amountOfStaking", "type": "uint256"},
            {"name": "signature_EVVM", "type": "bytes"},
        ],
        "name": "goldenStaking",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


class ChainGatewayError(Exception):
    """Base error for chain interactions."""


class ChainReadError(ChainGatewayError):
    """A contract read or RPC query failed."""


class GasEstimationError(ChainGatewayError):
    """The node refused to estimate gas, usually because the call would revert."""


class SubmissionError(ChainGatewayError):
    """Signing or broadcasting the relay's transaction failed."""


class ConfirmationTimeout(ChainGatewayError):
    """No receipt within the timeout. The transaction may still confirm later."""

    def __init__(self, tx_hash: str, timeout: float):
        self.tx_hash = tx_hash
        self.timeout = timeout
        super().__init__(f"No receipt for {tx_hash} after {timeout:.0f}s")


def normalize_hash(tx_hash: Any) -> str:
    """Lower-case 0x hex form of a transaction hash."""
    if isinstance(tx_hash, (bytes, bytearray)):
        return Web3.to_hex(tx_hash).lower()
    text = str(tx_hash).lower()
    return text if text.startswith("0x") else f"0x{text}"


class ChainGateway:
    """
    Async client for the EVVM and Staking contracts.

    Wraps every node failure in a ChainGatewayError subclass so callers
    can classify errors without knowing web3 internals.
    """

    def __init__(
        self,
        rpc_url: str,
        account: LocalAccount,
        evvm_address: str,
        staking_address: str,
        chain_id: int,
    ):
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.account = account
        self.chain_id = chain_id
        self.evvm_address = Web3.to_checksum_address(evvm_address)
        self.staking_address = Web3.to_checksum_address(staking_address)
        self.evvm = self.w3.eth.contract(address=self.evvm_address, abi=EVVM_ABI)
        self.staking = self.w3.eth.contract(address=self.staking_address, abi=STAKING_ABI)

        logger.info(
            "chain_gateway_initialized",
            rpc_url=rpc_url,
            evvm=self.evvm_address,
            staking=self.staking_address,
            sender=self.account.address,
        )

    @property
    def address(self) -> str:
        """The relay's account address."""
        return self.account.address

    async def check_connectivity(self) -> bool:
        """Check if the RPC endpoint is reachable."""
        try:
            await self.w3.eth.block_number
            return True
        except Exception:
            return False

    async def get_block_number(self) -> int:
        try:
            return await self.w3.eth.block_number
        except Exception as e:
            raise ChainReadError(f"eth_blockNumber failed: {e}") from e

    async def get_block_transaction_hashes(self, number: int) -> list[str]:
        """Transaction hashes of a block, in block order."""
        try:
            block = await self.w3.eth.get_block(number, full_transactions=False)
        except Exception as e:
            raise ChainReadError(f"eth_getBlockByNumber({number}) failed: {e}") from e
        return [normalize_hash(h) for h in block.get("transactions", [])]

    async def get_transaction(self, tx_hash: str) -> Optional[dict[str, Any]]:
        """Fetch a transaction body; None if the node does not know it."""
        try:
            tx = await self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise ChainReadError(f"eth_getTransactionByHash({tx_hash}) failed: {e}") from e

        return {
            "hash": normalize_hash(tx["hash"]),
            "from": tx.get("from"),
            "to": tx.get("to"),
            "input": Web3.to_hex(tx.get("input", b"")),
        }

    async def read_contract_state(self, address: str, data: bytes) -> bytes:
        """Raw eth_call against a contract."""
        try:
            result = await self.w3.eth.call(
                {"to": Web3.to_checksum_address(address), "data": Web3.to_hex(data)}
            )
        except Exception as e:
            raise ChainReadError(f"eth_call to {address} failed: {e}") from e
        return bytes(result)

    async def _view(self, contract: Any, fn_name: str, args: list[Any], output_type: str) -> Any:
        """ABI-encode a view call, run it through read_contract_state and decode the single result."""
        data = contract.encode_abi(fn_name, args=args)
        raw = await self.read_contract_state(contract.address, Web3.to_bytes(hexstr=data))
        try:
            return decode([output_type], raw)[0]
        except Exception as e:
            raise ChainReadError(f"{fn_name} returned undecodable data: {e}") from e

    async def get_balance(self, user: str, token: str) -> int:
        return await self._view(
            self.evvm,
            "getBalance",
            [Web3.to_checksum_address(user), Web3.to_checksum_address(token)],
            "uint256",
        )

    async def is_staker(self, user: str) -> bool:
        return await self._view(
            self.evvm, "isAddressStaker", [Web3.to_checksum_address(user)], "bool"
        )

    async def get_next_sync_nonce(self, user: str) -> int:
        return await self._view(
            self.evvm, "getNextCurrentSyncNonce", [Web3.to_checksum_address(user)], "uint256"
        )

    async def is_async_nonce_used(self, user: str, nonce: int) -> bool:
        return await self._view(
            self.evvm, "getIfUsedAsyncNonce", [Web3.to_checksum_address(user), nonce], "bool"
        )

    async def get_evvm_id(self) -> int:
        return await self._view(self.evvm, "getEvvmID", [], "uint256")

    async def get_golden_fisher(self) -> str:
        golden = await self._view(self.staking, "getGoldenFisher", [], "address")
        return Web3.to_checksum_address(golden)

    async def simulate_golden_staking(self) -> bool:
        """
        Dry-run goldenStaking with an empty payment signature.

        True if the deployed staking contract accepts the call from this
        account, i.e. the privileged role is exempt from the signature.
        Nothing is broadcast.
        """
        data = self.staking.encode_abi("goldenStaking", args=[True, 0, b""])
        try:
            await self.estimate_gas(
                {"from": self.address, "to": self.staking_address, "data": data}
            )
            return True
        except GasEstimationError:
            return False

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        try:
            return await self.w3.eth.estimate_gas(tx)
        except Exception as e:
            raise GasEstimationError(str(e)) from e

    async def get_pending_nonce(self) -> int:
        """Next outbound nonce of the relay account, counting pending transactions."""
        try:
            return await self.w3.eth.get_transaction_count(self.address, "pending")
        except Exception as e:
            raise ChainReadError(f"eth_getTransactionCount failed: {e}") from e

    async def get_gas_price(self) -> int:
        try:
            return await self.w3.eth.gas_price
        except Exception as e:
            raise ChainReadError(f"eth_gasPrice failed: {e}") from e

    async def submit(self, tx: dict[str, Any]) -> str:
        """Sign locally and broadcast. Returns the transaction hash."""
        tx = {"chainId": self.chain_id, "value": 0, **tx}
        tx.pop("from", None)
        try:
            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            raise SubmissionError(str(e)) from e
        return normalize_hash(tx_hash)

    async def await_receipt(self, tx_hash: str, timeout: float) -> dict[str, Any]:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as e:
            raise ConfirmationTimeout(tx_hash, timeout) from e
        return dict(receipt)

    async def close(self) -> None:
        """Close the HTTP session."""
        disconnect = getattr(self.w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()


class MockChainGateway:
    """
    In-memory chain for testing without a node.

    Mirrors the ChainGateway surface. State is plain dicts keyed by
    lower-case addresses; `calls` records every method invoked, in order.
    """

    def __init__(
        self,
        address: str = "0x00000000000000000000000000000000000000f1",
        evvm_address: str = "0x9486f6C9d28ECdd95aba5bfa6188Bbc104d89C3e",
    ) -> None:
        self._address = address
        self.evvm_address = evvm_address
        self.evvm_id = 1
        self.block_number = 0
        self.blocks: dict[int, list[str]] = {}
        self.transactions: dict[str, dict[str, Any]] = {}
        self.balances: dict[tuple[str, str], int] = {}
        self.sync_nonces: dict[str, int] = {}
        self.used_async_nonces: set[tuple[str, int]] = set()
        self.stakers: set[str] = set()
        self.golden_fisher = ZERO_ADDRESS
        self.golden_staking_exempt = False

        self.gas_estimate = 120_000
        self.gas_price = 2_000_000_000
        self.estimate_error: Optional[Exception] = None
        self.submit_error: Optional[Exception] = None
        self.read_error: Optional[Exception] = None
        self.failing_blocks: set[int] = set()
        self.receipt_status = 1
        self.receipt_delay = 0.0
        self.receipt_timeout = False

        self.pending_nonce = 0
        self.submitted: list[dict[str, Any]] = []
        self.calls: list[str] = []
        self.closed = False

    @property
    def address(self) -> str:
        return self._address

    # Setup helpers

    def add_transaction(self, tx_hash: str, to: Optional[str], data: bytes, sender: str = ZERO_ADDRESS) -> None:
        self.transactions[normalize_hash(tx_hash)] = {
            "hash": normalize_hash(tx_hash),
            "from": sender,
            "to": to,
            "input": Web3.to_hex(data),
        }

    def add_block(self, number: int, tx_hashes: list[str]) -> None:
        self.blocks[number] = [normalize_hash(h) for h in tx_hashes]
        self.block_number = max(self.block_number, number)

    def set_balance(self, user: str, token: str, amount: int) -> None:
        self.balances[(user.lower(), token.lower())] = amount

    def _check_read(self, name: str) -> None:
        self.calls.append(name)
        if self.read_error is not None:
            raise ChainReadError(f"{name} failed: {self.read_error}")

    # ChainGateway surface

    async def check_connectivity(self) -> bool:
        return True

    async def get_block_number(self) -> int:
        self._check_read("get_block_number")
        return self.block_number

    async def get_block_transaction_hashes(self, number: int) -> list[str]:
        self._check_read("get_block_transaction_hashes")
        if number in self.failing_blocks:
            raise ChainReadError(f"block {number} unavailable")
        return list(self.blocks.get(number, []))

    async def get_transaction(self, tx_hash: str) -> Optional[dict[str, Any]]:
        self._check_read("get_transaction")
        return self.transactions.get(normalize_hash(tx_hash))

    async def read_contract_state(self, address: str, data: bytes) -> bytes:
        self._check_read("read_contract_state")
        return b""

    async def get_balance(self, user: str, token: str) -> int:
        self._check_read("get_balance")
        return self.balances.get((user.lower(), token.lower()), 0)

    async def is_staker(self, user: str) -> bool:
        self._check_read("is_staker")
        return user.lower() in self.stakers

    async def get_next_sync_nonce(self, user: str) -> int:
        self._check_read("get_next_sync_nonce")
        return self.sync_nonces.get(user.lower(), 0)

    async def is_async_nonce_used(self, user: str, nonce: int) -> bool:
        self._check_read("is_async_nonce_used")
        return (user.lower(), nonce) in self.used_async_nonces

    async def get_evvm_id(self) -> int:
        self._check_read("get_evvm_id")
        return self.evvm_id

    async def get_golden_fisher(self) -> str:
        self._check_read("get_golden_fisher")
        return self.golden_fisher

    async def simulate_golden_staking(self) -> bool:
        self.calls.append("simulate_golden_staking")
        return self.golden_staking_exempt

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        self.calls.append("estimate_gas")
        if self.estimate_error is not None:
            raise GasEstimationError(str(self.estimate_error))
        return self.gas_estimate

    async def get_pending_nonce(self) -> int:
        self.calls.append("get_pending_nonce")
        return self.pending_nonce

    async def get_gas_price(self) -> int:
        self.calls.append("get_gas_price")
        return self.gas_price

    async def submit(self, tx: dict[str, Any]) -> str:
        self.calls.append("submit")
        if self.submit_error is not None:
            raise SubmissionError(str(self.submit_error))
        # Yield so concurrent submitters would interleave without the engine's lock
        await asyncio.sleep(0)
        self.submitted.append(dict(tx))
        self.pending_nonce = max(self.pending_nonce, tx["nonce"] + 1)
        return "0x" + f"{len(self.submitted):064x}"

    async def await_receipt(self, tx_hash: str, timeout: float) -> dict[str, Any]:
        self.calls.append("await_receipt")
        if self.receipt_delay:
            await asyncio.sleep(self.receipt_delay)
        if self.receipt_timeout:
            raise ConfirmationTimeout(tx_hash, timeout)
        return {
            "transactionHash": tx_hash,
            "status": self.receipt_status,
            "gasUsed": self.gas_estimate,
            "effectiveGasPrice": self.gas_price,
        }

    async def close(self) -> None:
        self.closed = True
