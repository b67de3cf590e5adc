import time

import pytest

from storage import SQLiteOrderStore
from storage.models import Order, OrderType

TRADER = '0x' + 'a1' * 20
WSOMI = '0x' + '11' * 20
TOKEN_X = '0x' + '22' * 20
E18 = 10 ** 18


def _build_order(**overrides) -> Order:
    nonce = overrides.pop('nonce', 1)
    trader = overrides.pop('trader', TRADER)
    values = dict(
        id=f"{trader}-{nonce}",
        trader=trader,
        token_in=WSOMI,
        token_out=TOKEN_X,
        amount_in=100 * E18,
        amount_out_min=150 * E18,
        limit_price_e18=2 * E18,
        slippage_bps=50,
        deadline=int(time.time()) + 3600,
        nonce=nonce,
        signature='0x' + 'ab' * 65,
        order_type=OrderType.BUY,
    )
    values.update(overrides)
    return Order(**values)


@pytest.fixture
def make_order():
    return _build_order


@pytest.fixture
def order_store(tmp_path):
    store = SQLiteOrderStore(db_path=tmp_path / "orders.db")
    yield store
    store._close_sync()
