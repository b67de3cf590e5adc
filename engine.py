# engine.py
import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from matching import OrderMatcher
from services.event_watcher import EventWatcher
from services.exceptions import ChainError, OrderStoreError, PoolError
from services.execution_dispatcher import ExecutionDispatcher, ExecutionResult
from services.pool_reader import PoolReader
from storage import SQLiteOrderStore
from storage.models import Order

logger = logging.getLogger(__name__)


class LimitOrderEngine:
    """
    Read-decide-act loop for resting limit orders.

    Two triggers feed the same evaluation path: swap events from the watcher for
    a single pool, and a fixed-interval sweep over every pool that has pending
    orders. The sweep is the backstop for anything the event path misses.
    """

    def __init__(
        self,
        store: SQLiteOrderStore,
        pool_reader: PoolReader,
        matcher: OrderMatcher,
        dispatcher: ExecutionDispatcher,
        *,
        sweep_interval: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.pool_reader = pool_reader
        self.matcher = matcher
        self.dispatcher = dispatcher
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._stop = asyncio.Event()
        self.watcher: Optional[EventWatcher] = None
        self.sweeps_completed = 0

    async def resolve_pools(self) -> Set[str]:
        """Attach a pool to every live pending order that lacks one; return all pools with pending orders."""
        pools: Set[str] = set()
        orders = await self.matcher.expire_overdue(await self.store.list_pending(), self._clock())
        for order in orders:
            if order.pool_address:
                pools.add(order.pool_address.lower())
                continue
            try:
                pool = await self.pool_reader.get_pair_address(order.token_in, order.token_out)
            except PoolError as exc:
                logger.warning("Cannot resolve pool for order %s: %s", order.id, exc)
                continue
            if pool is None:
                logger.warning("No pool for %s/%s (order %s)", order.token_in, order.token_out, order.id)
                continue
            await self.store.assign_pool(order.id, pool)
            pools.add(pool.lower())
        return pools

    async def known_pools(self) -> List[str]:
        orders = await self.store.list_pending()
        return sorted({order.pool_address.lower() for order in orders if order.pool_address})

    async def evaluate_pool(self, pool: str) -> List[ExecutionResult]:
        now = self._clock()
        orders = await self.matcher.expire_overdue(await self.store.list_pending(pool), now)
        if not orders:
            return []

        directions: Dict[Tuple[str, str], None] = {}
        for order in orders:
            directions[(order.token_in.lower(), order.token_out.lower())] = None

        eligible: List[Order] = []
        for token_in, token_out in directions:
            try:
                rate_e18 = await self.pool_reader.get_spot_rate(pool, token_in, token_out)
            except PoolError as exc:
                logger.warning("Skipping %s -> %s on %s this cycle: %s", token_in, token_out, pool, exc)
                continue
            eligible.extend(await self.matcher.evaluate(pool, rate_e18, now, token_in, token_out))

        if not eligible:
            return []
        eligible.sort(key=lambda o: (o.deadline, o.created_at))
        logger.info("%d order(s) eligible on %s", len(eligible), pool)

        outcomes = await asyncio.gather(
            *(self.dispatcher.execute(order) for order in eligible),
            return_exceptions=True,
        )
        results: List[ExecutionResult] = []
        for order, outcome in zip(eligible, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Unexpected failure executing order %s", order.id, exc_info=outcome)
                continue
            results.append(outcome)
        return results

    async def on_pool_event(self, pool: str) -> None:
        try:
            await self.evaluate_pool(pool)
        except (ChainError, OrderStoreError) as exc:
            logger.warning("Event evaluation for %s failed: %s", pool, exc)

    async def run_sweep(self) -> Dict[str, List[ExecutionResult]]:
        pools = sorted(await self.resolve_pools())
        outcomes = await asyncio.gather(
            *(self.evaluate_pool(pool) for pool in pools),
            return_exceptions=True,
        )
        results: Dict[str, List[ExecutionResult]] = {}
        for pool, outcome in zip(pools, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Sweep of %s failed: %s", pool, outcome)
                continue
            results[pool] = outcome
        self.sweeps_completed += 1
        return results

    async def _run_sweep_loop(self) -> None:
        while not self._stop.is_set():
            try:
                results = await self.run_sweep()
                executed = sum(1 for pool_results in results.values() for r in pool_results if r.executed)
                logger.info("Safety sweep covered %d pool(s), %d order(s) executed", len(results), executed)
            except (ChainError, OrderStoreError) as exc:
                logger.warning("Safety sweep failed: %s", exc)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.sweep_interval)
            except asyncio.TimeoutError:
                pass

    async def _run_watcher(self, watcher: EventWatcher) -> None:
        """Keep the watcher alive; while it is down the sweep alone drives evaluation."""
        while not self._stop.is_set():
            try:
                await watcher.run()
                return
            except Exception:
                logger.exception("Event watcher crashed; restarting in %ss", self.sweep_interval)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.sweep_interval)
            except asyncio.TimeoutError:
                pass

    async def start(self, watcher: Optional[EventWatcher] = None) -> None:
        """Run the sweep loop (and the watcher, if given) until stop() is called."""
        self._stop.clear()
        self.watcher = watcher
        tasks = [asyncio.create_task(self._run_sweep_loop())]
        if watcher is not None:
            tasks.append(asyncio.create_task(self._run_watcher(watcher)))
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()

    async def stop(self) -> None:
        self._stop.set()
        if self.watcher is not None:
            await self.watcher.stop()
