"""Swap-event detection: a WebSocket subscription with a deterministic fallback to log polling."""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set

import aiohttp

from services.chain_client import ChainClient, normalise_address
from services.exceptions import ChainError
from services.log_scanner import LogScanner

logger = logging.getLogger(__name__)

_CONNECT_ERRORS = (ChainError, aiohttp.ClientError, asyncio.TimeoutError, OSError)


class WatcherState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    POLLING = "polling"


class WebSocketLogSubscriber:
    """`eth_subscribe("logs")` over an aiohttp WebSocket, filtered to one topic."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        ws_url: str,
        *,
        topic: str,
        connect_timeout: float = 5.0,
    ) -> None:
        self._session = session
        self.ws_url = ws_url
        self.topic = topic
        self.connect_timeout = connect_timeout
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self.subscription_id: Optional[str] = None

    async def connect(self) -> None:
        self._ws = await asyncio.wait_for(
            self._session.ws_connect(self.ws_url, heartbeat=15),
            timeout=self.connect_timeout,
        )
        await self._ws.send_json({
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_subscribe",
            "params": ["logs", {"topics": [self.topic]}],
        })
        message = await asyncio.wait_for(self._ws.receive(), timeout=self.connect_timeout)
        if message.type != aiohttp.WSMsgType.TEXT:
            await self.close()
            raise ChainError(f"eth_subscribe got no reply (frame type {message.type.name})")
        try:
            reply = message.json()
        except ValueError as exc:
            await self.close()
            raise ChainError(f"eth_subscribe reply is not JSON: {exc}") from exc
        if not isinstance(reply, dict) or "error" in reply or not reply.get("result"):
            await self.close()
            raise ChainError(f"eth_subscribe rejected: {reply}")
        self.subscription_id = reply["result"]
        logger.info("Subscribed to swap logs on %s (%s)", self.ws_url, self.subscription_id)

    async def logs(self) -> AsyncIterator[dict]:
        if self._ws is None:
            raise ChainError("not connected")
        async for message in self._ws:
            if message.type == aiohttp.WSMsgType.TEXT:
                try:
                    payload = message.json()
                except ValueError:
                    logger.warning("Ignoring malformed subscription frame: %.200s", message.data)
                    continue
                if not isinstance(payload, dict) or payload.get("method") != "eth_subscription":
                    continue
                result = (payload.get("params") or {}).get("result")
                if isinstance(result, dict):
                    yield result
            elif message.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                break
        raise ChainError("subscription stream closed")

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        self.subscription_id = None


class EventWatcher:
    """
    Turns pool swap events into `on_pool_event(pool)` calls.

    DISCONNECTED -> CONNECTING -> SUBSCRIBED while the WebSocket works. After
    `max_connect_failures` consecutive failures the watcher switches to POLLING
    for the rest of its life and scans logs every `poll_interval` seconds.
    Callbacks run as separate tasks so a slow evaluation never blocks the stream;
    events for a pool that is already being evaluated are coalesced into one rerun.
    """

    def __init__(
        self,
        chain: ChainClient,
        scanner: LogScanner,
        *,
        pools_provider: Callable[[], Awaitable[List[str]]],
        on_pool_event: Callable[[str], Awaitable[None]],
        subscriber: Optional[WebSocketLogSubscriber] = None,
        poll_interval: float = 3.0,
        max_connect_failures: int = 5,
        backoff_base: float = 1.0,
        backoff_cap: float = 30.0,
    ) -> None:
        self.chain = chain
        self.scanner = scanner
        self.subscriber = subscriber
        self._pools_provider = pools_provider
        self._on_pool_event = on_pool_event
        self.poll_interval = poll_interval
        self.max_connect_failures = max_connect_failures
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap

        self.state = WatcherState.DISCONNECTED
        self.consecutive_failures = 0
        self._stop = asyncio.Event()
        self._running: Dict[str, asyncio.Task] = {}
        self._dirty: Set[str] = set()

    def backoff_delay(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        return min(self.backoff_base * (2 ** (failures - 1)), self.backoff_cap)

    async def run(self) -> None:
        self._stop.clear()
        if self.subscriber is not None:
            await self._run_subscription()
        if not self._stop.is_set():
            await self._run_polling()

    async def stop(self) -> None:
        self._stop.set()
        if self.subscriber is not None:
            await self.subscriber.close()
        tasks = list(self._running.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._running.clear()
        self._dirty.clear()
        self.state = WatcherState.DISCONNECTED

    async def _run_subscription(self) -> None:
        while not self._stop.is_set():
            self.state = WatcherState.CONNECTING
            try:
                await self.subscriber.connect()
            except _CONNECT_ERRORS as exc:
                if self._record_failure(f"connect failed: {exc}"):
                    return
                await self._pause(self.backoff_delay(self.consecutive_failures))
                continue

            self.state = WatcherState.SUBSCRIBED
            try:
                async for log in self.subscriber.logs():
                    self.consecutive_failures = 0
                    pool = normalise_address(log.get("address"))
                    if pool:
                        self.dispatch(pool)
            except _CONNECT_ERRORS as exc:
                if self._stop.is_set():
                    return
                if self._record_failure(f"subscription dropped: {exc}"):
                    await self.subscriber.close()
                    return
            finally:
                if self.state is WatcherState.SUBSCRIBED:
                    self.state = WatcherState.DISCONNECTED
            await self.subscriber.close()
            await self._pause(self.backoff_delay(self.consecutive_failures))

    def _record_failure(self, reason: str) -> bool:
        """Count a failure; returns True once the watcher should fall back to polling."""
        self.consecutive_failures += 1
        self.state = WatcherState.DISCONNECTED
        logger.warning(
            "Event subscription %s (%d/%d)",
            reason,
            self.consecutive_failures,
            self.max_connect_failures,
        )
        if self.consecutive_failures >= self.max_connect_failures:
            logger.warning("Falling back to log polling every %ss", self.poll_interval)
            return True
        return False

    async def _run_polling(self) -> None:
        self.state = WatcherState.POLLING
        while not self._stop.is_set():
            await self.poll_once()
            await self._pause(self.poll_interval)

    async def poll_once(self) -> None:
        try:
            current_block = await self.chain.get_block_number()
        except ChainError as exc:
            logger.warning("Could not read block number: %s", exc)
            return

        pools = {normalise_address(pool) for pool in await self._pools_provider() if pool}
        for pool in pools:
            logs = await self.scanner.scan(pool, current_block)
            if logs:
                logger.debug("%d swap logs on %s up to block %s", len(logs), pool, current_block)
                self.dispatch(pool)

    def dispatch(self, pool: str) -> None:
        if pool in self._running:
            self._dirty.add(pool)
            return
        task = asyncio.create_task(self._on_pool_event(pool))
        self._running[pool] = task
        task.add_done_callback(lambda t, pool=pool: self._on_done(pool, t))

    def _on_done(self, pool: str, task: asyncio.Task) -> None:
        if self._running.get(pool) is task:
            del self._running[pool]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Pool event handler failed for %s", pool, exc_info=task.exception())
        if pool in self._dirty and not self._stop.is_set():
            self._dirty.discard(pool)
            self.dispatch(pool)

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
