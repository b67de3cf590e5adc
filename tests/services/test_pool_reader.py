import pytest
from eth_abi import encode as abi_encode

from constants import (
    SELECTOR_DECIMALS,
    SELECTOR_GET_PAIR,
    SELECTOR_GET_RESERVES,
    SELECTOR_SYMBOL,
    SELECTOR_TOKEN0,
    SELECTOR_TOKEN1,
    ZERO_ADDRESS,
)
from services.exceptions import (
    ChainError,
    InsufficientLiquidityError,
    PoolNotFoundError,
    PoolUnreadableError,
)
from services.pool_reader import PoolReader, compute_rate_e18

POOL = '0x' + 'cc' * 20
FACTORY = '0x' + 'fa' * 20
WSOMI = '0x' + '11' * 20
USDC = '0x' + '22' * 20


def _word(value: int) -> str:
    return format(value, '064x')


def _address_word(address: str) -> str:
    return '0x' + address[2:].rjust(64, '0')


class FakeChain:
    def __init__(self, reserve0=10 * 10 ** 18, reserve1=15000 * 10 ** 6):
        self.reserve0 = reserve0
        self.reserve1 = reserve1
        self.calls = []
        self.fail = False
        self.pairs = {}

    async def eth_call(self, to, data, block="latest"):
        self.calls.append((to, data))
        if self.fail:
            raise ChainError("eth_call: connection reset")
        if to == POOL and data == SELECTOR_TOKEN0:
            return _address_word(WSOMI)
        if to == POOL and data == SELECTOR_TOKEN1:
            return _address_word(USDC)
        if to == POOL and data == SELECTOR_GET_RESERVES:
            return '0x' + _word(self.reserve0) + _word(self.reserve1) + _word(1_700_000_000)
        if data == SELECTOR_DECIMALS:
            return '0x' + _word(18 if to == WSOMI else 6)
        if to == FACTORY and data.startswith(SELECTOR_GET_PAIR):
            token_a = '0x' + data[10 + 24:10 + 64]
            token_b = '0x' + data[10 + 64 + 24:]
            return _address_word(self.pairs.get((token_a, token_b), ZERO_ADDRESS))
        if data == SELECTOR_SYMBOL:
            return '0x' + abi_encode(['string'], ['WSOMI']).hex()
        return '0x'


@pytest.mark.asyncio
async def test_spot_rate_normalises_decimals_in_both_directions():
    reader = PoolReader(FakeChain())

    assert await reader.get_spot_rate(POOL, WSOMI, USDC) == 1500 * 10 ** 18
    assert await reader.get_spot_rate(POOL, USDC.upper().replace('0X', '0x'), WSOMI) == 10 ** 18 // 1500


@pytest.mark.asyncio
async def test_reserves_are_read_fresh_but_decimals_are_cached():
    chain = FakeChain()
    reader = PoolReader(chain)

    first = await reader.get_spot_rate(POOL, WSOMI, USDC)
    chain.reserve1 = 30000 * 10 ** 6
    second = await reader.get_spot_rate(POOL, WSOMI, USDC)

    assert second == 2 * first
    reserve_reads = [c for c in chain.calls if c[1] == SELECTOR_GET_RESERVES]
    decimal_reads = [c for c in chain.calls if c[1] == SELECTOR_DECIMALS]
    assert len(reserve_reads) == 2
    assert len(decimal_reads) == 2


@pytest.mark.asyncio
async def test_empty_reserves_raise_insufficient_liquidity():
    reader = PoolReader(FakeChain(reserve0=0))
    with pytest.raises(InsufficientLiquidityError):
        await reader.get_spot_rate(POOL, WSOMI, USDC)


def test_reserve_rounding_to_zero_is_insufficient_liquidity():
    # 1 wei of a 24-decimal token normalises to 0 at 18 decimals
    with pytest.raises(InsufficientLiquidityError):
        compute_rate_e18(1, 24, 10 ** 18, 18)


@pytest.mark.asyncio
@pytest.mark.parametrize("pool", [None, "", ZERO_ADDRESS])
async def test_missing_pool_is_not_found(pool):
    reader = PoolReader(FakeChain())
    with pytest.raises(PoolNotFoundError):
        await reader.get_spot_rate(pool, WSOMI, USDC)


@pytest.mark.asyncio
async def test_pair_not_traded_by_pool_is_not_found():
    reader = PoolReader(FakeChain())
    with pytest.raises(PoolNotFoundError):
        await reader.get_spot_rate(POOL, WSOMI, '0x' + '33' * 20)


@pytest.mark.asyncio
async def test_rpc_failure_is_unreadable():
    chain = FakeChain()
    chain.fail = True
    reader = PoolReader(chain)
    with pytest.raises(PoolUnreadableError):
        await reader.get_spot_rate(POOL, WSOMI, USDC)


@pytest.mark.asyncio
async def test_pair_lookup_tries_both_orders_and_caches():
    chain = FakeChain()
    chain.pairs[(USDC, WSOMI)] = POOL
    reader = PoolReader(chain, factory_address=FACTORY)

    assert await reader.get_pair_address(WSOMI, USDC) == POOL
    lookups = len(chain.calls)
    assert await reader.get_pair_address(USDC, WSOMI) == POOL
    assert len(chain.calls) == lookups


@pytest.mark.asyncio
async def test_unknown_pair_resolves_to_none():
    reader = PoolReader(FakeChain(), factory_address=FACTORY)
    assert await reader.get_pair_address(WSOMI, USDC) is None


@pytest.mark.asyncio
async def test_pair_lookup_without_factory_fails():
    reader = PoolReader(FakeChain())
    with pytest.raises(PoolNotFoundError):
        await reader.get_pair_address(WSOMI, USDC)


@pytest.mark.asyncio
async def test_symbol_is_abi_decoded():
    reader = PoolReader(FakeChain())
    assert await reader.get_symbol(WSOMI) == 'WSOMI'
