"""Minimal async JSON-RPC client for the read side of the chain."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional

import aiohttp
from aiohttp import ClientSession
from web3 import Web3

from constants import (
    NONCE_USED_SIGNATURE,
    SELECTOR_ALLOWANCE,
    SELECTOR_BALANCE_OF,
)
from services.exceptions import ChainError, RangeTooLargeError, RpcError, RpcTimeoutError

logger = logging.getLogger(__name__)

SELECTOR_NONCE_USED = Web3.to_hex(Web3.keccak(text=NONCE_USED_SIGNATURE)[:4])

# Fragments providers use when an eth_getLogs range is over their limit
_RANGE_TOO_LARGE_HINTS = (
    'query returned more than',
    'block range',
    'range too large',
    'limit exceeded',
    'too many blocks',
)


def normalise_address(address: Optional[str]) -> Optional[str]:
    if not address:
        return address
    if address.startswith('0x'):
        return '0x' + address[2:].lower()
    return '0x' + address.lower()


def encode_address(address: str) -> str:
    return normalise_address(address)[2:].rjust(64, '0')


def encode_uint(value: int) -> str:
    return format(int(value), '064x')


def decode_address(value: Optional[str]) -> Optional[str]:
    if not value or len(value) < 66:
        return None
    return '0x' + value[-40:].lower()


def decode_uint(value: Optional[str], word: int = 0) -> int:
    if not value or value == '0x':
        raise ValueError("empty_result")
    start = 2 + word * 64
    chunk = value[start:start + 64]
    if len(chunk) < 64:
        raise ValueError("short_result")
    return int(chunk, 16)


class ChainClient:
    """Queries a JSON-RPC endpoint; every call is bounded by `timeout` seconds."""

    def __init__(self, session: ClientSession, *, rpc_url: str, timeout: float) -> None:
        self._session = session
        self._rpc_url = rpc_url
        self._timeout = timeout
        self._id_lock = asyncio.Lock()
        self._next_request_id = 1

    async def get_block_number(self) -> int:
        result = await self._rpc_call("eth_blockNumber", [])
        return int(result, 16)

    async def get_code(self, address: str) -> str:
        return await self._rpc_call("eth_getCode", [normalise_address(address), "latest"]) or '0x'

    async def get_logs(
        self,
        *,
        address: str,
        topics: List[str],
        from_block: int,
        to_block: int,
    ) -> List[dict]:
        params = [{
            "address": normalise_address(address),
            "topics": topics,
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
        }]
        try:
            return await self._rpc_call("eth_getLogs", params) or []
        except RpcError as exc:
            message = str(exc.error).lower()
            if any(hint in message for hint in _RANGE_TOO_LARGE_HINTS):
                raise RangeTooLargeError("eth_getLogs", exc.error) from exc
            raise

    async def eth_call(self, to: str, data: str, block: str = "latest") -> Optional[str]:
        call_params = {"to": normalise_address(to), "data": data}
        return await self._rpc_call("eth_call", [call_params, block])

    async def get_allowance(self, token: str, owner: str, spender: str) -> int:
        data = SELECTOR_ALLOWANCE + encode_address(owner) + encode_address(spender)
        return decode_uint(await self.eth_call(token, data))

    async def get_balance(self, token: str, owner: str) -> int:
        data = SELECTOR_BALANCE_OF + encode_address(owner)
        return decode_uint(await self.eth_call(token, data))

    async def is_nonce_used(self, manager: str, trader: str, nonce: int) -> bool:
        data = SELECTOR_NONCE_USED + encode_address(trader) + encode_uint(nonce)
        return decode_uint(await self.eth_call(manager, data)) != 0

    async def _rpc_call(self, method: str, params: list) -> Any:
        request_id = await self._get_request_id()
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": request_id,
        }
        try:
            async with self._session.post(
                self._rpc_url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as response:
                response.raise_for_status()
                data = await response.json()
        except asyncio.TimeoutError as exc:
            raise RpcTimeoutError(f"{method} timed out after {self._timeout}s") from exc
        except aiohttp.ClientError as exc:
            raise ChainError(f"{method}: {exc}") from exc
        if 'error' in data:
            raise RpcError(method, data['error'])
        return data.get('result')

    async def _get_request_id(self) -> int:
        async with self._id_lock:
            request_id = self._next_request_id
            self._next_request_id += 1
        return request_id
