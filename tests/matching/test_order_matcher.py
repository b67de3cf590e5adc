import time

import pytest

from matching import OrderMatcher
from storage.models import OrderStatus, OrderType

POOL = '0x' + 'cc' * 20
E18 = 10 ** 18


class StubStore:
    """Returns a fixed candidate list, bypassing the uniqueness the real store enforces."""

    def __init__(self, orders):
        self.orders = orders
        self.transitions = []

    async def list_pending(self, pool=None):
        return list(self.orders)

    async def transition(self, order_id, status):
        self.transitions.append((order_id, status))
        return True


@pytest.mark.asyncio
async def test_buy_order_fills_when_rate_at_or_below_limit(order_store, make_order):
    order = make_order(pool_address=POOL)
    await order_store.create(order)
    matcher = OrderMatcher(order_store)

    eligible = await matcher.evaluate(POOL, int(1.5 * E18), time.time())

    assert [o.id for o in eligible] == [order.id]


@pytest.mark.asyncio
async def test_buy_order_does_not_fill_on_unfavourable_rate(order_store, make_order):
    order = make_order(pool_address=POOL)
    await order_store.create(order)
    matcher = OrderMatcher(order_store)

    eligible = await matcher.evaluate(POOL, int(2.5 * E18), time.time())

    assert eligible == []
    assert (await order_store.get(order.id)).status is OrderStatus.PENDING


@pytest.mark.asyncio
async def test_sell_order_is_a_floor(order_store, make_order):
    order = make_order(order_type=OrderType.SELL, pool_address=POOL, amount_out_min=0)
    await order_store.create(order)
    matcher = OrderMatcher(order_store)

    assert await matcher.evaluate(POOL, int(1.5 * E18), time.time()) == []
    assert [o.id for o in await matcher.evaluate(POOL, 2 * E18, time.time())] == [order.id]


@pytest.mark.asyncio
async def test_expired_order_is_never_eligible_and_becomes_expired(order_store, make_order):
    now = time.time()
    order = make_order(pool_address=POOL, deadline=int(now) - 10)
    await order_store.create(order)
    matcher = OrderMatcher(order_store)

    eligible = await matcher.evaluate(POOL, 1, now)

    assert eligible == []
    assert (await order_store.get(order.id)).status is OrderStatus.EXPIRED


@pytest.mark.asyncio
async def test_eligible_orders_are_sorted_by_deadline(order_store, make_order):
    now = int(time.time())
    later = make_order(nonce=1, pool_address=POOL, deadline=now + 7200)
    sooner = make_order(nonce=2, pool_address=POOL, deadline=now + 60)
    for order in (later, sooner):
        await order_store.create(order)
    matcher = OrderMatcher(order_store)

    eligible = await matcher.evaluate(POOL, E18, now)

    assert [o.id for o in eligible] == [sooner.id, later.id]


@pytest.mark.asyncio
async def test_direction_filter_excludes_reverse_pair(order_store, make_order):
    buy = make_order(nonce=1, pool_address=POOL)
    reverse = make_order(
        nonce=2,
        pool_address=POOL,
        token_in=buy.token_out,
        token_out=buy.token_in,
        amount_out_min=0,
    )
    for order in (buy, reverse):
        await order_store.create(order)
    matcher = OrderMatcher(order_store)

    eligible = await matcher.evaluate(POOL, E18, time.time(), buy.token_in.upper().replace('0X', '0x'), buy.token_out)

    assert [o.id for o in eligible] == [buy.id]


def test_buy_eligibility_is_monotonic_in_rate(order_store, make_order):
    matcher = OrderMatcher(order_store)
    limit = 2 * E18
    buy = make_order(limit_price_e18=limit)
    sell = make_order(limit_price_e18=limit, order_type=OrderType.SELL)

    for rate in range(limit - 50, limit + 50):
        if matcher.is_price_satisfied(buy, rate + 1):
            assert matcher.is_price_satisfied(buy, rate)
        if matcher.is_price_satisfied(sell, rate):
            assert matcher.is_price_satisfied(sell, rate + 1)
    assert matcher.is_price_satisfied(buy, limit)
    assert not matcher.is_price_satisfied(buy, limit + 1)
    assert matcher.is_price_satisfied(sell, limit)
    assert not matcher.is_price_satisfied(sell, limit - 1)


def test_derived_direction_ignores_client_order_type(order_store, make_order):
    order = make_order(order_type=OrderType.SELL)
    trusting = OrderMatcher(order_store)
    deriving = OrderMatcher(order_store, reference_asset=order.token_in, derive_direction=True)

    assert trusting.direction_for(order) is OrderType.SELL
    assert deriving.direction_for(order) is OrderType.BUY
    assert deriving.direction_for(make_order(token_in=order.token_out, token_out=order.token_in)) is OrderType.SELL


def test_derive_direction_requires_reference_asset(order_store):
    with pytest.raises(ValueError):
        OrderMatcher(order_store, derive_direction=True)


@pytest.mark.asyncio
async def test_duplicate_nonce_keeps_first_candidate(make_order):
    first = make_order(nonce=5, id="first")
    second = make_order(nonce=5, id="second")
    matcher = OrderMatcher(StubStore([first, second]))

    eligible = await matcher.evaluate(POOL, E18, time.time())

    assert [o.id for o in eligible] == ["first"]
