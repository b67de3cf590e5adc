#!/usr/bin/env python3
import logging
from typing import List, Optional, Set, Tuple

from services.chain_client import normalise_address
from services.exceptions import OrderStoreError
from storage.models import Order, OrderStatus, OrderType
from storage.sqlite_repository import SQLiteOrderStore

logger = logging.getLogger(__name__)


class OrderMatcher:
    """
    Decides which resting orders on a pool can execute at the current rate.

    A buy order is a price ceiling (eligible while rate <= limit), a sell order is
    a floor (eligible while rate >= limit). With `derive_direction` the side is
    taken from whether the order spends the reference asset instead of the
    client-supplied order type.
    """

    def __init__(
        self,
        store: SQLiteOrderStore,
        *,
        reference_asset: Optional[str] = None,
        derive_direction: bool = False,
    ):
        if derive_direction and not reference_asset:
            raise ValueError("derive_direction requires a reference asset address")
        self.store = store
        self.reference_asset = normalise_address(reference_asset) if reference_asset else None
        self.derive_direction = derive_direction

    def direction_for(self, order: Order) -> OrderType:
        if self.derive_direction:
            if normalise_address(order.token_in) == self.reference_asset:
                return OrderType.BUY
            return OrderType.SELL
        return OrderType(order.order_type)

    def is_price_satisfied(self, order: Order, rate_e18: int) -> bool:
        if self.direction_for(order) is OrderType.BUY:
            return rate_e18 <= order.limit_price_e18
        return rate_e18 >= order.limit_price_e18

    async def evaluate(
        self,
        pool: str,
        rate_e18: int,
        now: float,
        token_in: Optional[str] = None,
        token_out: Optional[str] = None,
    ) -> List[Order]:
        """
        Return the pool's pending orders that may execute at `rate_e18`, soonest deadline first.

        `rate_e18` is tokenOut per tokenIn for one trading direction; pass
        token_in/token_out to restrict candidates to that direction. Orders past
        their deadline are moved to expired and never returned.
        """
        candidates = await self.store.list_pending(pool)
        token_in = normalise_address(token_in) if token_in else None
        token_out = normalise_address(token_out) if token_out else None

        seen: Set[Tuple[str, int]] = set()
        eligible: List[Order] = []
        for order in candidates:
            if token_in and normalise_address(order.token_in) != token_in:
                continue
            if token_out and normalise_address(order.token_out) != token_out:
                continue

            key = (order.trader.lower(), order.nonce)
            if key in seen:
                logger.warning("Skipping order %s: duplicate nonce %s for %s", order.id, order.nonce, order.trader)
                continue
            seen.add(key)

            if order.status is not OrderStatus.PENDING:
                continue

            if now > order.deadline:
                await self._expire(order)
                continue

            if self.is_price_satisfied(order, rate_e18):
                eligible.append(order)

        eligible.sort(key=lambda o: (o.deadline, o.created_at))
        return eligible

    async def expire_overdue(self, orders: List[Order], now: float) -> List[Order]:
        """Expire pending orders whose deadline has passed; return the ones still live."""
        live: List[Order] = []
        for order in orders:
            if order.status is OrderStatus.PENDING and now > order.deadline:
                await self._expire(order)
                continue
            live.append(order)
        return live

    async def _expire(self, order: Order) -> None:
        try:
            if await self.store.transition(order.id, OrderStatus.EXPIRED):
                logger.info("Order %s expired (deadline %s)", order.id, order.deadline)
        except OrderStoreError as exc:
            # a concurrent cancel or execution got there first
            logger.info("Order %s not expired: %s", order.id, exc)
