"""Error taxonomy shared by the chain, pool, storage and execution layers."""
from __future__ import annotations

from typing import Optional


class ConfigurationError(Exception):
    """Raised at startup when the process cannot run safely (fatal)."""


# --- Chain connectivity ---

class ChainError(Exception):
    """Base class for JSON-RPC failures. Always transient from an order's point of view."""


class RpcError(ChainError):
    def __init__(self, method: str, error: object):
        super().__init__(f"{method}: {error}")
        self.method = method
        self.error = error


class RpcTimeoutError(ChainError):
    pass


class RangeTooLargeError(RpcError):
    """The node refused an eth_getLogs range ("query returned more than ...")."""


# --- Pool reads ---

class PoolError(Exception):
    def __init__(self, pool: Optional[str], msg: str):
        super().__init__(msg)
        self.pool = pool


class PoolNotFoundError(PoolError):
    pass


class PoolUnreadableError(PoolError):
    pass


class InsufficientLiquidityError(PoolError):
    pass


# --- Order store ---

class OrderStoreError(Exception):
    pass


class DuplicateNonceError(OrderStoreError):
    def __init__(self, trader: str, nonce: int):
        super().__init__(f"order with nonce {nonce} already exists for {trader}")
        self.trader = trader
        self.nonce = nonce


class OrderNotFoundError(OrderStoreError):
    def __init__(self, order_id: str):
        super().__init__(f"order {order_id} not found")
        self.order_id = order_id


class InvalidTransitionError(OrderStoreError):
    def __init__(self, order_id: str, current: str, requested: str):
        super().__init__(f"order {order_id}: cannot move from {current} to {requested}")
        self.order_id = order_id
        self.current = current
        self.requested = requested


class StoreCorruptedError(OrderStoreError):
    pass


# --- Execution ---

class ExecutionRevertedError(Exception):
    """
    The execute call reverted, either in the pre-flight simulation (nothing was
    broadcast) or on-chain (tx_hash is set and gas was paid).
    """
    def __init__(self, reason: str, tx_hash: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.tx_hash = tx_hash


class SubmissionTimeoutError(Exception):
    """The transaction was broadcast but no receipt arrived in time."""
    def __init__(self, tx_hash: str, timeout: float):
        super().__init__(f"no receipt for {tx_hash} after {timeout:.0f}s")
        self.tx_hash = tx_hash
        self.timeout = timeout
