import asyncio
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from services.exceptions import (
    DuplicateNonceError,
    InvalidTransitionError,
    OrderNotFoundError,
    OrderStoreError,
    StoreCorruptedError,
)
from storage import SQLiteOrderStore
from storage.models import OrderStatus

POOL_A = '0x' + 'cc' * 20
POOL_B = '0x' + 'dd' * 20


@pytest.mark.asyncio
async def test_create_and_get_preserves_large_integers(order_store, make_order):
    order = make_order(amount_in=10 ** 30, amount_out_min=0, limit_price_e18=3 * 10 ** 24)
    await order_store.create(order)

    stored = await order_store.get(order.id)
    assert stored is not None
    assert stored.amount_in == 10 ** 30
    assert stored.limit_price_e18 == 3 * 10 ** 24
    assert stored.status is OrderStatus.PENDING
    assert stored.signature == order.signature
    assert await order_store.get("missing") is None


@pytest.mark.asyncio
async def test_duplicate_trader_nonce_is_rejected_and_store_unchanged(order_store, make_order):
    first = make_order(nonce=7)
    await order_store.create(first)

    duplicate = make_order(nonce=7, id="another-id", amount_in=5 * 10 ** 18, amount_out_min=0)
    with pytest.raises(DuplicateNonceError):
        await order_store.create(duplicate)

    orders = await order_store.list_orders()
    assert [o.id for o in orders] == [first.id]
    assert orders[0].amount_in == first.amount_in
    assert await order_store.get("another-id") is None


@pytest.mark.asyncio
async def test_create_rejects_inconsistent_minimum_output(order_store, make_order):
    # 100 in at 2.0 with 0.5% slippage allows at most 199 out
    order = make_order(amount_out_min=200 * 10 ** 18)
    with pytest.raises(ValueError):
        await order_store.create(order)
    assert await order_store.get(order.id) is None


@pytest.mark.asyncio
async def test_transition_is_one_way(order_store, make_order):
    order = make_order()
    await order_store.create(order)

    assert await order_store.transition(order.id, OrderStatus.EXECUTED) is True
    # repeating the same terminal transition is a no-op
    assert await order_store.transition(order.id, OrderStatus.EXECUTED) is False

    with pytest.raises(InvalidTransitionError):
        await order_store.transition(order.id, OrderStatus.CANCELED)
    with pytest.raises(InvalidTransitionError):
        await order_store.transition(order.id, OrderStatus.PENDING)

    stored = await order_store.get(order.id)
    assert stored.status is OrderStatus.EXECUTED


@pytest.mark.asyncio
@pytest.mark.parametrize("terminal", [OrderStatus.EXECUTED, OrderStatus.CANCELED, OrderStatus.EXPIRED])
async def test_terminal_orders_cannot_return_to_pending(order_store, make_order, terminal):
    order = make_order()
    await order_store.create(order)
    await order_store.transition(order.id, terminal)

    with pytest.raises(InvalidTransitionError):
        await order_store.transition(order.id, OrderStatus.PENDING)
    assert (await order_store.get(order.id)).status is terminal


@pytest.mark.asyncio
async def test_transition_unknown_order(order_store):
    with pytest.raises(OrderNotFoundError):
        await order_store.transition("nope", OrderStatus.CANCELED)


@pytest.mark.asyncio
async def test_concurrent_transitions_have_a_single_winner(order_store, make_order):
    order = make_order()
    await order_store.create(order)

    results = await asyncio.gather(
        order_store.transition(order.id, OrderStatus.EXECUTED),
        order_store.transition(order.id, OrderStatus.CANCELED),
        return_exceptions=True,
    )

    winners = [r for r in results if r is True]
    losers = [r for r in results if isinstance(r, InvalidTransitionError)]
    assert len(winners) == 1
    assert len(losers) == 1
    stored = await order_store.get(order.id)
    assert stored.status in (OrderStatus.EXECUTED, OrderStatus.CANCELED)


@pytest.mark.asyncio
async def test_list_pending_filters_by_pool_and_orders_by_deadline(order_store, make_order):
    late = make_order(nonce=1, deadline=2_000_000_000, pool_address=POOL_A)
    soon = make_order(nonce=2, deadline=1_900_000_000, pool_address=POOL_A)
    other_pool = make_order(nonce=3, deadline=1_800_000_000, pool_address=POOL_B)
    done = make_order(nonce=4, pool_address=POOL_A)
    for order in (late, soon, other_pool, done):
        await order_store.create(order)
    await order_store.transition(done.id, OrderStatus.CANCELED)

    pool_a = await order_store.list_pending(POOL_A.upper().replace('0X', '0x'))
    assert [o.id for o in pool_a] == [soon.id, late.id]

    everything = await order_store.list_pending()
    assert [o.id for o in everything] == [other_pool.id, soon.id, late.id]


@pytest.mark.asyncio
async def test_assign_pool_only_fills_missing_value(order_store, make_order):
    order = make_order()
    await order_store.create(order)

    await order_store.assign_pool(order.id, POOL_A)
    await order_store.assign_pool(order.id, POOL_B)

    stored = await order_store.get(order.id)
    assert stored.pool_address == POOL_A


@pytest.mark.asyncio
async def test_annotate_error_round_trip(order_store, make_order):
    order = make_order()
    await order_store.create(order)

    await order_store.annotate_error(order.id, "insufficient_allowance")
    assert (await order_store.get(order.id)).last_error == "insufficient_allowance"

    await order_store.annotate_error(order.id, None)
    assert (await order_store.get(order.id)).last_error is None


@pytest.mark.asyncio
async def test_notifications_keep_latest_hundred_per_wallet(order_store):
    wallet = '0x' + 'ee' * 20
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for idx in range(105):
        await order_store.record_notification(
            wallet_address=wallet.upper().replace('0X', '0x'),
            order_id=f"order-{idx}",
            message=f"message {idx}",
            created_at=start + timedelta(seconds=idx),
        )
    await order_store.record_notification(
        wallet_address='0x' + 'ff' * 20,
        order_id="other",
        message="someone else",
        created_at=start,
    )

    notifications = await order_store.fetch_notifications(wallet, limit=500)
    assert len(notifications) == 100
    assert notifications[0].message == "message 104"
    assert notifications[-1].message == "message 5"
    assert len(await order_store.fetch_notifications('0x' + 'ff' * 20)) == 1


def test_corrupt_database_file_is_fatal(tmp_path):
    db_path = tmp_path / "broken.db"
    db_path.write_bytes(b"this is not a sqlite database" * 64)

    with pytest.raises(StoreCorruptedError):
        SQLiteOrderStore(db_path=db_path)


@pytest.mark.asyncio
async def test_orders_survive_reopen(tmp_path, make_order):
    db_path = tmp_path / "orders.db"
    store = SQLiteOrderStore(db_path=db_path)
    order = make_order()
    await store.create(order)
    await store.close()

    reopened = SQLiteOrderStore(db_path=db_path)
    try:
        stored = await reopened.get(order.id)
        assert stored is not None
        assert stored.nonce == order.nonce
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_store_calls_do_not_wait_on_busy_default_executor(order_store, make_order):
    order = make_order()
    await order_store.create(order)

    loop = asyncio.get_running_loop()
    loop.set_default_executor(ThreadPoolExecutor(max_workers=1))
    release = threading.Event()
    # a receipt wait parked on the loop's only default worker
    parked = loop.run_in_executor(None, release.wait, 5)
    try:
        stored = await asyncio.wait_for(order_store.get(order.id), timeout=1)
        pending = await asyncio.wait_for(order_store.list_pending(), timeout=1)
    finally:
        release.set()
        await parked

    assert stored.id == order.id
    assert [o.id for o in pending] == [order.id]


@pytest.mark.asyncio
async def test_locked_database_surfaces_as_store_error(order_store, make_order):
    order = make_order()
    await order_store.create(order)
    order_store._connection.execute("PRAGMA busy_timeout=0;")

    other = sqlite3.connect(str(order_store.db_path), isolation_level=None)
    other.execute("BEGIN IMMEDIATE;")
    try:
        with pytest.raises(OrderStoreError, match="locked"):
            await order_store.transition(order.id, OrderStatus.CANCELED)
    finally:
        other.execute("ROLLBACK;")
        other.close()

    assert await order_store.transition(order.id, OrderStatus.CANCELED) is True
