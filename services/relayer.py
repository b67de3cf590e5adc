"""Relayer transaction submission for the limit order manager's execute()."""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Optional

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from constants import LIMIT_ORDER_MANAGER_ABI
from services.exceptions import (
    ChainError,
    ConfigurationError,
    ExecutionRevertedError,
    SubmissionTimeoutError,
)
from storage.models import Order


@dataclass(slots=True)
class TxReceipt:
    tx_hash: str
    block_number: int
    gas_used: int
    status: int


def _revert_reason(exc: ContractLogicError) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return message.replace("execution reverted:", "").strip() or "execution reverted"


class RelayerSubmitter:
    """
    Signs and sends execute() transactions from the operator's relayer account.

    web3 is synchronous, so each call runs in a worker thread. Relayer nonces are
    handed out under a lock and tracked locally so concurrent submissions never
    reuse one; the local counter resyncs from the chain after any send failure.
    """

    def __init__(
        self,
        *,
        rpc_url: str,
        private_key: str,
        manager_address: str,
        chain_id: int,
        rpc_timeout: float,
        confirmation_timeout: float,
        web3: Optional[Web3] = None,
    ) -> None:
        self.web3 = web3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": rpc_timeout}))
        if web3 is None and not self.web3.is_connected():
            raise ConfigurationError(f"Could not connect to RPC URL: {rpc_url}")

        self.account = self.web3.eth.account.from_key(private_key)
        self.chain_id = chain_id
        self.confirmation_timeout = confirmation_timeout
        self.contract = self.web3.eth.contract(
            address=Web3.to_checksum_address(manager_address),
            abi=LIMIT_ORDER_MANAGER_ABI,
        )
        self._nonce_lock = threading.Lock()
        self._next_nonce: Optional[int] = None
        self.logger = logging.getLogger(__name__)

    @property
    def address(self) -> str:
        return self.account.address

    async def simulate(self, order: Order) -> int:
        """Dry-run execute() as the relayer; returns the expected output amount."""
        return await asyncio.to_thread(self._simulate_sync, order)

    async def submit(self, order: Order) -> TxReceipt:
        return await asyncio.to_thread(self._submit_sync, order)

    def _execute_call(self, order: Order):
        struct = order.to_struct()
        struct["trader"] = Web3.to_checksum_address(struct["trader"])
        struct["tokenIn"] = Web3.to_checksum_address(struct["tokenIn"])
        struct["tokenOut"] = Web3.to_checksum_address(struct["tokenOut"])
        signature = bytes.fromhex(order.signature[2:] if order.signature.startswith("0x") else order.signature)
        return self.contract.functions.execute(struct, signature)

    def _simulate_sync(self, order: Order) -> int:
        try:
            return int(self._execute_call(order).call({"from": self.address}))
        except ContractLogicError as exc:
            raise ExecutionRevertedError(_revert_reason(exc)) from exc
        except (Web3Exception, OSError, ValueError) as exc:
            raise ChainError(f"execute simulation failed: {exc}") from exc

    def _submit_sync(self, order: Order) -> TxReceipt:
        call = self._execute_call(order)
        with self._nonce_lock:
            try:
                nonce = self._reserve_nonce()
                tx = call.build_transaction({
                    "from": self.address,
                    "nonce": nonce,
                    "chainId": self.chain_id,
                })
                signed = self.account.sign_transaction(tx)
                tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
            except ContractLogicError as exc:
                self._next_nonce = None
                raise ExecutionRevertedError(_revert_reason(exc)) from exc
            except (Web3Exception, OSError, ValueError) as exc:
                self._next_nonce = None
                raise ChainError(f"execute submission failed: {exc}") from exc
            self._next_nonce = nonce + 1

        tx_hex = Web3.to_hex(tx_hash)
        self.logger.info("Submitted execute for order %s: %s (relayer nonce %s)", order.id, tx_hex, nonce)
        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.confirmation_timeout)
        except TimeExhausted as exc:
            raise SubmissionTimeoutError(tx_hex, self.confirmation_timeout) from exc
        except (Web3Exception, OSError, ValueError) as exc:
            raise ChainError(f"receipt lookup for {tx_hex} failed: {exc}") from exc

        if receipt["status"] != 1:
            raise ExecutionRevertedError("reverted on-chain", tx_hash=tx_hex)
        return TxReceipt(
            tx_hash=tx_hex,
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
            status=receipt["status"],
        )

    def _reserve_nonce(self) -> int:
        chain_nonce = self.web3.eth.get_transaction_count(self.address, "pending")
        if self._next_nonce is None or chain_nonce > self._next_nonce:
            self._next_nonce = chain_nonce
        return self._next_nonce
