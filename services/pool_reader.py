#!/usr/bin/env python3
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError

from constants import (
    SELECTOR_DECIMALS,
    SELECTOR_GET_PAIR,
    SELECTOR_GET_RESERVES,
    SELECTOR_SYMBOL,
    SELECTOR_TOKEN0,
    SELECTOR_TOKEN1,
    ZERO_ADDRESS,
)
from services.chain_client import (
    ChainClient,
    decode_address,
    decode_uint,
    encode_address,
    normalise_address,
)
from services.exceptions import (
    ChainError,
    InsufficientLiquidityError,
    PoolNotFoundError,
    PoolUnreadableError,
)

logger = logging.getLogger(__name__)

E18 = 10 ** 18


@dataclass(frozen=True)
class PoolSnapshot:
    """State of a pair at one observation. Never reused across evaluation passes."""
    pool: str
    token0: str
    token1: str
    decimals0: int
    decimals1: int
    reserve0: int
    reserve1: int
    block_timestamp_last: int

    def orient(self, token_in: str, token_out: str) -> Tuple[int, int, int, int]:
        """Return (reserve_in, decimals_in, reserve_out, decimals_out)."""
        token_in = normalise_address(token_in)
        token_out = normalise_address(token_out)
        if token_in == self.token0 and token_out == self.token1:
            return self.reserve0, self.decimals0, self.reserve1, self.decimals1
        if token_in == self.token1 and token_out == self.token0:
            return self.reserve1, self.decimals1, self.reserve0, self.decimals0
        raise PoolNotFoundError(self.pool, f"pair {token_in}/{token_out} is not traded by pool {self.pool}")

    def rate_e18(self, token_in: str, token_out: str) -> int:
        reserve_in, decimals_in, reserve_out, decimals_out = self.orient(token_in, token_out)
        return compute_rate_e18(reserve_in, decimals_in, reserve_out, decimals_out, pool=self.pool)


def normalise_amount(amount: int, decimals: int) -> int:
    """Scale a base-unit amount to 18 decimals."""
    if decimals <= 18:
        return amount * 10 ** (18 - decimals)
    return amount // 10 ** (decimals - 18)


def compute_rate_e18(
    reserve_in: int,
    decimals_in: int,
    reserve_out: int,
    decimals_out: int,
    pool: Optional[str] = None,
) -> int:
    """tokenOut per tokenIn, scaled by 1e18, from decimal-normalised reserves."""
    normalised_in = normalise_amount(reserve_in, decimals_in)
    normalised_out = normalise_amount(reserve_out, decimals_out)
    if normalised_in == 0 or normalised_out == 0:
        raise InsufficientLiquidityError(pool, f"empty reserves in pool {pool}")
    return normalised_out * E18 // normalised_in


class PoolReader:
    """Reads Uniswap V2 style pair state through read-only calls."""

    def __init__(self, chain: ChainClient, *, factory_address: Optional[str] = None) -> None:
        self._chain = chain
        self._factory_address = normalise_address(factory_address) if factory_address else None
        # token decimals and factory pair addresses are immutable; reserves are never cached
        self._decimals_cache: Dict[str, int] = {}
        self._pair_cache: Dict[Tuple[str, str], str] = {}

    async def get_spot_rate(self, pool: Optional[str], token_in: str, token_out: str) -> int:
        snapshot = await self.read_snapshot(pool)
        return snapshot.rate_e18(token_in, token_out)

    async def read_snapshot(self, pool: Optional[str]) -> PoolSnapshot:
        if not pool or normalise_address(pool) == ZERO_ADDRESS:
            raise PoolNotFoundError(pool, "pool address is empty")
        pool = normalise_address(pool)

        try:
            token0_hex, token1_hex, reserves_hex = await asyncio.gather(
                self._chain.eth_call(pool, SELECTOR_TOKEN0),
                self._chain.eth_call(pool, SELECTOR_TOKEN1),
                self._chain.eth_call(pool, SELECTOR_GET_RESERVES),
            )
        except ChainError as exc:
            raise PoolUnreadableError(pool, f"pool_read_error:{exc}") from exc

        token0 = decode_address(token0_hex)
        token1 = decode_address(token1_hex)
        if token0 is None or token1 is None:
            raise PoolNotFoundError(pool, f"no pair contract at {pool}")

        try:
            reserve0 = decode_uint(reserves_hex, 0)
            reserve1 = decode_uint(reserves_hex, 1)
            timestamp_last = decode_uint(reserves_hex, 2)
        except ValueError as exc:
            raise PoolUnreadableError(pool, f"reserve_decode_error:{exc}") from exc

        try:
            decimals0, decimals1 = await asyncio.gather(
                self.get_decimals(token0),
                self.get_decimals(token1),
            )
        except (ChainError, ValueError) as exc:
            raise PoolUnreadableError(pool, f"decimals_error:{exc}") from exc

        return PoolSnapshot(
            pool=pool,
            token0=token0,
            token1=token1,
            decimals0=decimals0,
            decimals1=decimals1,
            reserve0=reserve0,
            reserve1=reserve1,
            block_timestamp_last=timestamp_last,
        )

    async def get_pair_address(self, token_a: str, token_b: str) -> Optional[str]:
        """Resolve the pool for a token pair via the factory; None if it does not exist."""
        if not self._factory_address:
            raise PoolNotFoundError(None, "factory address not configured")
        token_a = normalise_address(token_a)
        token_b = normalise_address(token_b)
        key = tuple(sorted((token_a, token_b)))
        cached = self._pair_cache.get(key)
        if cached:
            return cached

        try:
            pair = await self._get_pair(token_a, token_b)
            if pair is None:
                pair = await self._get_pair(token_b, token_a)
        except ChainError as exc:
            raise PoolUnreadableError(None, f"factory_read_error:{exc}") from exc
        if pair is None:
            return None
        self._pair_cache[key] = pair
        return pair

    async def get_decimals(self, token: str) -> int:
        token = normalise_address(token)
        cached = self._decimals_cache.get(token)
        if cached is not None:
            return cached
        decimals = decode_uint(await self._chain.eth_call(token, SELECTOR_DECIMALS))
        self._decimals_cache[token] = decimals
        return decimals

    async def get_symbol(self, token: str) -> Optional[str]:
        try:
            result = await self._chain.eth_call(token, SELECTOR_SYMBOL)
        except ChainError as exc:
            logger.warning("Could not read symbol for %s: %s", token, exc)
            return None
        if not result or result == '0x':
            return None
        raw = bytes.fromhex(result[2:])
        try:
            return abi_decode(['string'], raw)[0]
        except (DecodingError, ValueError, OverflowError):
            # some older tokens return bytes32
            return raw[:32].rstrip(b'\x00').decode('utf-8', errors='ignore') or None

    async def _get_pair(self, token_a: str, token_b: str) -> Optional[str]:
        data = SELECTOR_GET_PAIR + encode_address(token_a) + encode_address(token_b)
        pair = decode_address(await self._chain.eth_call(self._factory_address, data))
        if pair is None or pair == ZERO_ADDRESS:
            return None
        return pair
