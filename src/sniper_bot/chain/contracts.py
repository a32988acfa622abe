"""
Contract adapters for the PancakeSwap pair and the deployed sniper contract.

The sniper contract is an external collaborator. This module only turns its
functions into awaitable calls and classifies failures into structured kinds
so callers never have to inspect error strings:

    TRANSIENT   - timeouts, nonce/gas races, unreachable node (retry later)
    REVERTED    - the action reverted for a retryable reason (slippage, deadline)
    UNSELLABLE  - execution reverted for any other reason (transfer blocked, honeypot)
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Tuple

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from web3.logs import DISCARD

logger = logging.getLogger(__name__)

WEI = Decimal(10) ** 18

PAIR_ABI = [
    {
        "inputs": [],
        "name": "getReserves",
        "outputs": [
            {"internalType": "uint112", "name": "reserve0", "type": "uint112"},
            {"internalType": "uint112", "name": "reserve1", "type": "uint112"},
            {"internalType": "uint32", "name": "blockTimestampLast", "type": "uint32"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "token0",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "token1",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]

SNIPER_ABI = [
    {
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "maxTaxPercent", "type": "uint256"},
            {"name": "deadline", "type": "uint256"},
        ],
        "name": "snipeWithTaxCheck",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "amountIn", "type": "uint256"},
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "deadline", "type": "uint256"},
        ],
        "name": "sellTokens",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "token", "type": "address"}],
        "name": "getTokenBalance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "token", "type": "address"}],
        "name": "withdrawToken",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "emergencyWithdrawBNB",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "token", "type": "address"},
            {"indexed": False, "name": "amountIn", "type": "uint256"},
            {"indexed": False, "name": "bnbOut", "type": "uint256"},
        ],
        "name": "Sold",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "token", "type": "address"},
            {"indexed": False, "name": "bnbIn", "type": "uint256"},
            {"indexed": False, "name": "tokensOut", "type": "uint256"},
        ],
        "name": "Sniped",
        "type": "event",
    },
]

# Revert reasons that mean "try again later", not "this token cannot be sold"
RETRYABLE_REVERT_MARKERS = (
    "insufficient_output_amount",
    "insufficient_input_amount",
    "expired",
)


class SubmissionErrorKind(str, Enum):
    """Structured classification of a failed submission."""
    TRANSIENT = "transient"
    REVERTED = "reverted"
    UNSELLABLE = "unsellable"


class SubmissionError(Exception):
    """Raised by contract actions with a structured error kind."""

    def __init__(self, kind: SubmissionErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


def _is_retryable_revert(reason: str) -> bool:
    reason = reason.lower()
    return any(marker in reason for marker in RETRYABLE_REVERT_MARKERS)


def classify_submission_error(error: BaseException) -> SubmissionErrorKind:
    """
    Map an exception raised while submitting or settling into a kind.

    web3 exception types are used first; message inspection is only the
    fallback for errors the client did not type.
    """
    if isinstance(error, SubmissionError):
        return error.kind

    if isinstance(error, ContractLogicError):
        reason = str(getattr(error, "message", None) or error)
        if _is_retryable_revert(reason):
            return SubmissionErrorKind.REVERTED
        return SubmissionErrorKind.UNSELLABLE

    if isinstance(error, (TimeExhausted, asyncio.TimeoutError)):
        return SubmissionErrorKind.TRANSIENT

    message = str(error)
    if "execution reverted" in message.lower():
        if _is_retryable_revert(message):
            return SubmissionErrorKind.REVERTED
        return SubmissionErrorKind.UNSELLABLE

    return SubmissionErrorKind.TRANSIENT


@dataclass(frozen=True)
class PairReserves:
    """Raw pair state as returned by the pair contract."""
    token0: str
    reserve0: int
    token1: str
    reserve1: int


@dataclass(frozen=True)
class SettlementReceipt:
    """
    Confirmed outcome of a submitted action.

    Attributes:
        tx_hash: Settlement identity
        status: 1 on success, 0 on revert
        block_number: Block the transaction was mined in
        proceeds: Base currency received (Sold event), if emitted
        tokens_out: Tokens received (Sniped event), if emitted
    """
    tx_hash: str
    status: int
    block_number: Optional[int] = None
    proceeds: Optional[Decimal] = None
    tokens_out: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


def make_web3(url: str, timeout: float = 10.0) -> AsyncWeb3:
    """Build an AsyncWeb3 client for request/response RPC."""
    return AsyncWeb3(AsyncHTTPProvider(url, request_kwargs={"timeout": timeout}))


class PairReader:
    """
    Reads reserves of PancakeSwap v2 pairs.

    Usage:
        reader = PairReader(w3)
        reserves = await reader.query_reserves(pair_address)
    """

    def __init__(self, w3: AsyncWeb3) -> None:
        self._w3 = w3
        # token0/token1 never change for a pair
        self._tokens: dict[str, Tuple[str, str]] = {}

    async def query_reserves(self, pair_id: str) -> PairReserves:
        address = Web3.to_checksum_address(pair_id)
        pair = self._w3.eth.contract(address=address, abi=PAIR_ABI)

        tokens = self._tokens.get(address)
        if tokens is None:
            token0 = await pair.functions.token0().call()
            token1 = await pair.functions.token1().call()
            tokens = (str(token0).lower(), str(token1).lower())
            self._tokens[address] = tokens

        reserve0, reserve1, _ = await pair.functions.getReserves().call()
        return PairReserves(
            token0=tokens[0],
            reserve0=int(reserve0),
            token1=tokens[1],
            reserve1=int(reserve1),
        )


class SniperContract:
    """
    Async adapter for the deployed sniper contract.

    Every transacting method does an eth_call preflight first so an
    execution revert surfaces as a typed SubmissionError before any gas is
    spent, then signs, submits and waits for settlement.

    Usage:
        contract = SniperContract(w3, address, private_key, chain_id=56)
        receipt = await contract.sell(token, amount, min_out=0, deadline=deadline)
        if receipt.succeeded:
            print(receipt.proceeds)
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        address: str,
        private_key: str,
        chain_id: int = 56,
        settlement_timeout: float = 120.0,
        sell_gas_limit: int = 800_000,
        withdraw_gas_limit: int = 100_000,
    ) -> None:
        self._w3 = w3
        self._contract = w3.eth.contract(address=Web3.to_checksum_address(address), abi=SNIPER_ABI)
        self._account = w3.eth.account.from_key(private_key)
        self._chain_id = chain_id
        self._settlement_timeout = settlement_timeout
        self._sell_gas_limit = sell_gas_limit
        self._withdraw_gas_limit = withdraw_gas_limit
        self._nonce_lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return self._contract.address

    @property
    def wallet_address(self) -> str:
        return self._account.address

    async def gas_price(self) -> int:
        """Current network gas price in wei."""
        return int(await self._w3.eth.gas_price)

    async def balance_held(self, asset: str) -> int:
        """Token balance held by the contract."""
        token = Web3.to_checksum_address(asset)
        return int(await self._contract.functions.getTokenBalance(token).call())

    async def sell(
        self,
        asset: str,
        amount: int,
        min_out: int = 0,
        deadline: Optional[int] = None,
    ) -> SettlementReceipt:
        """Sell `amount` of `asset` through the router, wait for settlement."""
        token = Web3.to_checksum_address(asset)
        deadline = deadline or int(time.time()) + 300
        fn = self._contract.functions.sellTokens(token, amount, min_out, deadline)
        return await self._transact(fn, gas=self._sell_gas_limit)

    async def snipe(
        self,
        asset: str,
        value_wei: int,
        max_tax_percent: int,
        deadline: int,
        gas_price: Optional[int] = None,
        min_out: int = 0,
    ) -> SettlementReceipt:
        """Buy `asset` for `value_wei` with the contract's tax check."""
        token = Web3.to_checksum_address(asset)
        fn = self._contract.functions.snipeWithTaxCheck(token, min_out, max_tax_percent, deadline)
        return await self._transact(
            fn, gas=self._sell_gas_limit, value=value_wei, gas_price=gas_price
        )

    async def withdraw_asset(self, asset: str) -> SettlementReceipt:
        """Withdraw a token from the contract to the wallet."""
        token = Web3.to_checksum_address(asset)
        fn = self._contract.functions.withdrawToken(token)
        return await self._transact(fn, gas=self._withdraw_gas_limit)

    async def withdraw_base_currency(self) -> SettlementReceipt:
        """Emergency-withdraw all BNB held by the contract."""
        fn = self._contract.functions.emergencyWithdrawBNB()
        return await self._transact(fn, gas=self._withdraw_gas_limit)

    async def _transact(
        self,
        fn: Any,
        gas: int,
        value: int = 0,
        gas_price: Optional[int] = None,
    ) -> SettlementReceipt:
        sender = self._account.address

        try:
            # Preflight: a revert here costs nothing and is typed
            await fn.call({"from": sender, "value": value})

            async with self._nonce_lock:
                nonce = await self._w3.eth.get_transaction_count(sender, "pending")
                tx = await fn.build_transaction({
                    "from": sender,
                    "value": value,
                    "gas": gas,
                    "gasPrice": gas_price or await self._w3.eth.gas_price,
                    "nonce": nonce,
                    "chainId": self._chain_id,
                })
                signed = self._account.sign_transaction(tx)
                tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)

            logger.info(f"Submitted {fn.fn_name}: {Web3.to_hex(tx_hash)}")

            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=self._settlement_timeout,
            )

        except SubmissionError:
            raise
        except asyncio.CancelledError:
            raise
        except (Web3Exception, ValueError, asyncio.TimeoutError, OSError) as e:
            kind = classify_submission_error(e)
            raise SubmissionError(kind, f"{fn.fn_name} failed: {e}") from e

        return self._to_settlement(receipt)

    def _to_settlement(self, receipt: Any) -> SettlementReceipt:
        status = int(receipt["status"])
        proceeds = None
        tokens_out = None

        if status == 1:
            sold = self._contract.events.Sold().process_receipt(receipt, errors=DISCARD)
            if sold:
                proceeds = Decimal(int(sold[0]["args"]["bnbOut"])) / WEI

            sniped = self._contract.events.Sniped().process_receipt(receipt, errors=DISCARD)
            if sniped:
                tokens_out = int(sniped[0]["args"]["tokensOut"])

        return SettlementReceipt(
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            status=status,
            block_number=receipt.get("blockNumber"),
            proceeds=proceeds,
            tokens_out=tokens_out,
        )
