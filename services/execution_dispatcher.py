"""Submits eligible orders on-chain and maps the outcome back onto order status."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from constants import REVERT_EXPIRED, REVERT_NONCE_USED
from services.chain_client import ChainClient
from services.exceptions import (
    ChainError,
    ExecutionRevertedError,
    InvalidTransitionError,
    OrderStoreError,
    SubmissionTimeoutError,
)
from services.relayer import RelayerSubmitter
from storage.models import Order, OrderStatus
from storage.sqlite_repository import SQLiteOrderStore

logger = logging.getLogger(__name__)


class ExecutionOutcome(str, Enum):
    EXECUTED = "executed"
    ALREADY_EXECUTED = "already_executed"
    EXPIRED = "expired"
    INSUFFICIENT_ALLOWANCE = "insufficient_allowance"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass(slots=True)
class ExecutionResult:
    order_id: str
    outcome: ExecutionOutcome
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    amount_out: Optional[int] = None
    reason: Optional[str] = None

    @property
    def executed(self) -> bool:
        return self.outcome in (ExecutionOutcome.EXECUTED, ExecutionOutcome.ALREADY_EXECUTED)


class ExecutionDispatcher:
    """
    At most one submission per order id is in flight at a time. A second
    execute() for the same order waits for the first and returns its result.
    """

    def __init__(
        self,
        store: SQLiteOrderStore,
        chain: ChainClient,
        submitter: RelayerSubmitter,
        *,
        manager_address: str,
        clock: Callable[[], float] = time.time,
        on_executed: Optional[Callable[[Order, "ExecutionResult"], Awaitable[None]]] = None,
    ):
        self.store = store
        self.chain = chain
        self.submitter = submitter
        self.manager_address = manager_address
        self._clock = clock
        self._on_executed = on_executed
        self._in_flight: Dict[str, asyncio.Task] = {}

    def is_in_flight(self, order_id: str) -> bool:
        return order_id in self._in_flight

    async def execute(self, order: Order) -> ExecutionResult:
        task = self._in_flight.get(order.id)
        if task is None:
            task = asyncio.create_task(self._execute_once(order))
            self._in_flight[order.id] = task
            task.add_done_callback(lambda t, order_id=order.id: self._release(order_id, t))
        else:
            logger.info("Order %s already has a submission in flight; waiting for it", order.id)
        return await asyncio.shield(task)

    def _release(self, order_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(order_id) is task:
            del self._in_flight[order_id]

    async def _execute_once(self, order: Order) -> ExecutionResult:
        try:
            return await self._run(order)
        except (ChainError, OrderStoreError, ValueError) as exc:
            logger.warning("Execution of order %s failed, will retry next cycle: %s", order.id, exc)
            await self._annotate(order.id, str(exc))
            return ExecutionResult(order.id, ExecutionOutcome.FAILED, reason=str(exc))

    async def _run(self, order: Order) -> ExecutionResult:
        current = await self.store.get(order.id)
        if current is None:
            return ExecutionResult(order.id, ExecutionOutcome.ABORTED, reason="not_found")
        if current.status is OrderStatus.EXECUTED:
            return ExecutionResult(order.id, ExecutionOutcome.ALREADY_EXECUTED)
        if current.status is not OrderStatus.PENDING:
            return ExecutionResult(order.id, ExecutionOutcome.ABORTED, reason=current.status.value)

        if self._clock() > current.deadline:
            await self._finalise(current, OrderStatus.EXPIRED)
            return ExecutionResult(order.id, ExecutionOutcome.EXPIRED, reason="deadline_passed")

        if await self.chain.is_nonce_used(self.manager_address, current.trader, current.nonce):
            logger.info("Order %s nonce %s already consumed on-chain", current.id, current.nonce)
            await self._finalise(current, OrderStatus.EXECUTED)
            return ExecutionResult(order.id, ExecutionOutcome.ALREADY_EXECUTED, reason="nonce_used")

        allowance = await self.chain.get_allowance(current.token_in, current.trader, self.manager_address)
        if allowance < current.amount_in:
            reason = f"insufficient_allowance: approved {allowance}, needs {current.amount_in}"
            logger.warning("Order %s blocked: %s", current.id, reason)
            await self._annotate(current.id, reason)
            return ExecutionResult(order.id, ExecutionOutcome.INSUFFICIENT_ALLOWANCE, reason=reason)

        try:
            expected_out = await self.submitter.simulate(current)
        except ExecutionRevertedError as exc:
            return await self._handle_revert(current, exc)

        # a cancel may have landed while we were reading the chain
        latest = await self.store.get(current.id)
        if latest is None or latest.status is not OrderStatus.PENDING:
            status = latest.status.value if latest else "not_found"
            logger.info("Order %s is %s; not submitting", current.id, status)
            return ExecutionResult(order.id, ExecutionOutcome.ABORTED, reason=status)

        try:
            receipt = await self.submitter.submit(current)
        except ExecutionRevertedError as exc:
            return await self._handle_revert(current, exc)
        except SubmissionTimeoutError as exc:
            logger.warning("Order %s: %s", current.id, exc)
            await self._annotate(current.id, str(exc))
            return ExecutionResult(order.id, ExecutionOutcome.FAILED, tx_hash=exc.tx_hash, reason="confirmation_timeout")

        await self._finalise(current, OrderStatus.EXECUTED)
        await self._annotate(current.id, None)
        logger.info("Order %s executed in block %s (%s)", current.id, receipt.block_number, receipt.tx_hash)
        result = ExecutionResult(
            order.id,
            ExecutionOutcome.EXECUTED,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            amount_out=expected_out,
        )
        if self._on_executed is not None:
            await self._on_executed(current, result)
        return result

    async def _handle_revert(self, order: Order, exc: ExecutionRevertedError) -> ExecutionResult:
        reason = exc.reason.lower()
        if REVERT_NONCE_USED in reason:
            await self._finalise(order, OrderStatus.EXECUTED)
            return ExecutionResult(order.id, ExecutionOutcome.ALREADY_EXECUTED, tx_hash=exc.tx_hash, reason=exc.reason)
        if REVERT_EXPIRED in reason:
            await self._finalise(order, OrderStatus.EXPIRED)
            return ExecutionResult(order.id, ExecutionOutcome.EXPIRED, tx_hash=exc.tx_hash, reason=exc.reason)
        if exc.tx_hash and await self.chain.is_nonce_used(self.manager_address, order.trader, order.nonce):
            # mined revert because another submission consumed the nonce first
            await self._finalise(order, OrderStatus.EXECUTED)
            return ExecutionResult(order.id, ExecutionOutcome.ALREADY_EXECUTED, tx_hash=exc.tx_hash, reason=exc.reason)

        logger.warning("Order %s reverted (%s); leaving pending", order.id, exc.reason)
        await self._annotate(order.id, f"reverted: {exc.reason}")
        return ExecutionResult(order.id, ExecutionOutcome.FAILED, tx_hash=exc.tx_hash, reason=exc.reason)

    async def _finalise(self, order: Order, status: OrderStatus) -> None:
        try:
            changed = await self.store.transition(order.id, status)
        except InvalidTransitionError as exc:
            logger.warning("Order %s could not be marked %s: %s", order.id, status.value, exc)
            return
        if changed:
            logger.info("Order %s -> %s", order.id, status.value)

    async def _annotate(self, order_id: str, error: Optional[str]) -> None:
        try:
            await self.store.annotate_error(order_id, error)
        except OrderStoreError as exc:
            logger.warning("Could not annotate order %s: %s", order_id, exc)
