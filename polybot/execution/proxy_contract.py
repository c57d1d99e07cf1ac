"""
Proxy Contract Client - on-chain execution through the bot proxy.

The proxy holds per-user USDC allowances and tier ceilings and executes
trades on the user's behalf; this client signs with the bot's own key.
web3 is synchronous, so every RPC runs in the default executor behind an
explicit timeout.

All submissions share one signer, so nonce allocation, signing and
broadcast are serialized on a single lock. Receipt waits happen outside
the lock. ``max_submission_seconds`` is the longest a submission can run
before failing on its own.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from eth_account import Account
from web3 import Web3

from polybot.core.config import RECEIPT_SLACK_SECONDS, Settings, max_submission_seconds
from polybot.core.logger import get_logger, log_performance
from polybot.exchange.price_feeds import make_web3
from polybot.execution.exceptions import TransactionFailedError
from polybot.execution.risk_manager import apply_gas_buffer

logger = get_logger("proxy_contract")

PROXY_ABI = [
    {"inputs": [
        {"name": "user", "type": "address"}, {"name": "market", "type": "address"},
        {"name": "amount", "type": "uint256"}, {"name": "isYes", "type": "bool"}],
     "name": "executeTrade", "outputs": [{"name": "", "type": "bytes32"}],
     "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [{"name": "user", "type": "address"}],
     "name": "getUserAllowance", "outputs": [{"name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "user", "type": "address"}],
     "name": "getUserTier", "outputs": [{"name": "", "type": "uint8"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"name": "tier", "type": "uint8"}],
     "name": "getMaxPositionForTier", "outputs": [{"name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
]


class ProxyContractClient:
    """Execution provider backed by the deployed proxy contract."""

    def __init__(
        self,
        rpc_url: str,
        proxy_address: str,
        private_key: str,
        chain_id: int = 137,
        gas_buffer_pct: int = 20,
        call_timeout: float = 30.0,
        receipt_timeout: float = 120.0,
        w3: Optional[Web3] = None,
    ):
        self.w3 = w3 or make_web3(rpc_url, timeout=call_timeout)
        self.chain_id = chain_id
        self.gas_buffer_pct = gas_buffer_pct
        self.call_timeout = call_timeout
        self.receipt_timeout = receipt_timeout

        self._account = Account.from_key(private_key)
        self._contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(proxy_address), abi=PROXY_ABI
        )
        self._submit_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional[ProxyContractClient]:
        """Build a client, or None when key or proxy address are not configured."""
        ex = settings.execution
        if not ex.enabled:
            logger.warning(
                "Execution provider disabled",
                has_private_key=bool(ex.private_key),
                has_proxy_address=bool(ex.proxy_address),
            )
            return None
        return cls(
            rpc_url=ex.rpc_urls[0],
            proxy_address=ex.proxy_address,
            private_key=ex.private_key,
            chain_id=ex.chain_id,
            gas_buffer_pct=ex.gas_buffer_pct,
            call_timeout=settings.bot.call_timeout_seconds,
            receipt_timeout=ex.receipt_timeout_seconds,
        )

    @property
    def is_available(self) -> bool:
        return True

    @property
    def max_submission_seconds(self) -> float:
        return max_submission_seconds(self.call_timeout, self.receipt_timeout)

    @property
    def signer_address(self) -> str:
        return self._account.address

    async def _run(self, fn: Callable[[], Any], timeout: Optional[float] = None) -> Any:
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, fn), timeout=timeout or self.call_timeout
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_user_allowance(self, user: str) -> int:
        fn = self._contract.functions.getUserAllowance(Web3.to_checksum_address(user))
        return int(await self._run(fn.call))

    async def get_user_tier(self, user: str) -> int:
        fn = self._contract.functions.getUserTier(Web3.to_checksum_address(user))
        return int(await self._run(fn.call))

    async def get_max_position_for_tier(self, tier: int) -> int:
        fn = self._contract.functions.getMaxPositionForTier(int(tier))
        return int(await self._run(fn.call))

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def execute_trade(self, user: str, market: str, amount: int, is_yes: bool) -> str:
        """
        Submit one trade and wait for its receipt.

        Every step before broadcast is bounded by ``call_timeout``, the signer
        lock wait included. After broadcast the only failure is a
        TransactionFailedError carrying the hash, so callers always learn
        which transaction went out.
        """
        try:
            user_addr = Web3.to_checksum_address(user)
            market_addr = Web3.to_checksum_address(market)
        except ValueError as e:
            raise TransactionFailedError(f"Invalid address: {e}") from e

        fn = self._contract.functions.executeTrade(user_addr, market_addr, int(amount), bool(is_yes))
        sender = self._account.address

        try:
            await asyncio.wait_for(self._submit_lock.acquire(), timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise TransactionFailedError("Signer busy: submission lock not acquired") from e
        try:
            nonce = await self._run(lambda: self.w3.eth.get_transaction_count(sender, "pending"))
            gas_estimate = await self._run(lambda: fn.estimate_gas({"from": sender}))
            gas_limit = apply_gas_buffer(gas_estimate, self.gas_buffer_pct)
            tx = await self._run(lambda: fn.build_transaction({
                "from": sender,
                "nonce": nonce,
                "gas": gas_limit,
                "chainId": self.chain_id,
            }))
            signed = self._account.sign_transaction(tx)
            tx_hash = await self._run(
                lambda: self.w3.eth.send_raw_transaction(signed.raw_transaction)
            )
        except Exception as e:
            raise TransactionFailedError(f"Failed to submit trade: {e!r}") from e
        finally:
            self._submit_lock.release()

        hex_hash = Web3.to_hex(tx_hash)
        logger.info(
            "Trade submitted",
            tx_hash=hex_hash,
            user=user_addr,
            amount=int(amount),
            is_yes=is_yes,
            gas_limit=gas_limit,
            nonce=nonce,
        )

        try:
            with log_performance(logger, "Receipt wait", tx_hash=hex_hash):
                receipt = await self._run(
                    lambda: self.w3.eth.wait_for_transaction_receipt(
                        tx_hash, timeout=self.receipt_timeout
                    ),
                    timeout=self.receipt_timeout + RECEIPT_SLACK_SECONDS,
                )
        except Exception as e:
            raise TransactionFailedError(
                f"Confirmation not received: {e!r}", tx_hash=hex_hash
            ) from e

        if receipt["status"] != 1:
            raise TransactionFailedError("Transaction reverted", tx_hash=hex_hash)
        return hex_hash
