#!/usr/bin/env python3
import asyncio
import json
import logging
import aiohttp
from datetime import datetime, timezone
from pathlib import Path
from telegram import Bot
from telegram.error import TelegramError

import constants
from config import AppConfig, load_config
from engine import LimitOrderEngine
from matching import OrderMatcher
from services.chain_client import ChainClient
from services.event_watcher import EventWatcher, WebSocketLogSubscriber
from services.exceptions import (
    ChainError,
    ConfigurationError,
    DuplicateNonceError,
    OrderStoreError,
    StoreCorruptedError,
)
from services.execution_dispatcher import ExecutionDispatcher
from services.log_scanner import LogScanner
from services.notifier import OrderNotifier, format_units
from services.pool_reader import PoolReader
from services.price_oracle import PriceCache, PriceOracleAdapter
from services.relayer import RelayerSubmitter
from storage import SQLiteOrderStore
from storage.models import Order, OrderStatus

logger = logging.getLogger(__name__)


async def run_engine(config: AppConfig, store: SQLiteOrderStore) -> None:
    """Wire the services together and run until interrupted."""
    async with aiohttp.ClientSession(headers={'User-Agent': 'LimitOrderRelayer/1.0'}) as session:
        chain = ChainClient(session, rpc_url=config.rpc_url, timeout=config.rpc_timeout)

        try:
            code = await chain.get_code(config.manager_address)
        except ChainError as exc:
            print(f"{constants.C_RED}Could not reach {config.rpc_url}: {exc}{constants.C_RESET}")
            exit(1)
        if code in ('0x', '0x0', ''):
            print(f"{constants.C_RED}No contract deployed at {config.manager_address}.{constants.C_RESET}")
            exit(1)

        try:
            submitter = RelayerSubmitter(
                rpc_url=config.rpc_url,
                private_key=config.relayer_private_key,
                manager_address=config.manager_address,
                chain_id=config.chain_id,
                rpc_timeout=config.rpc_timeout,
                confirmation_timeout=config.confirmation_timeout,
            )
        except (ConfigurationError, ValueError) as exc:
            print(f"{constants.C_RED}Failed to initialise relayer: {exc}{constants.C_RESET}")
            exit(1)
        print(f"{constants.C_GREEN}Relayer {submitter.address} ready on chain {config.chain_id}.{constants.C_RESET}")

        oracle = PriceOracleAdapter(
            session,
            asset_id=config.reference_asset_id,
            cache=PriceCache(config.price_cache_ttl),
            api_key=config.coingecko_api_key,
        )

        bot = None
        if config.telegram_enabled:
            bot = Bot(config.telegram_bot_token)
            try:
                await bot.initialize()
                print("Telegram notifications enabled.")
            except TelegramError as exc:
                print(f"{constants.C_YELLOW}Warning: Telegram unavailable ({exc}). Continuing without it.{constants.C_RESET}")
                bot = None

        notifier = OrderNotifier(store, bot=bot, chat_id=config.telegram_chat_id, oracle=oracle)

        async def _notify(order: Order, result) -> None:
            await notifier.notify_executed(order, result.tx_hash)

        pool_reader = PoolReader(chain, factory_address=config.factory_address)
        matcher = OrderMatcher(
            store,
            reference_asset=config.reference_asset_address,
            derive_direction=config.derive_direction,
        )
        dispatcher = ExecutionDispatcher(
            store,
            chain,
            submitter,
            manager_address=config.manager_address,
            on_executed=_notify,
        )
        engine = LimitOrderEngine(
            store,
            pool_reader,
            matcher,
            dispatcher,
            sweep_interval=config.sweep_interval,
        )

        subscriber = None
        if config.ws_rpc_url:
            subscriber = WebSocketLogSubscriber(
                session,
                config.ws_rpc_url,
                topic=constants.SWAP_EVENT_TOPIC,
                connect_timeout=config.connect_timeout,
            )
        else:
            print(f"{constants.C_YELLOW}No WebSocket endpoint configured; polling logs every {config.poll_interval}s.{constants.C_RESET}")
        watcher = EventWatcher(
            chain,
            LogScanner(chain, topic=constants.SWAP_EVENT_TOPIC, chunk_size=config.log_chunk_size),
            pools_provider=engine.known_pools,
            on_pool_event=engine.on_pool_event,
            subscriber=subscriber,
            poll_interval=config.poll_interval,
            max_connect_failures=config.max_connect_failures,
        )

        price = await oracle.get_reference_usd_price()
        if price is not None:
            print(f"Reference asset {config.reference_asset_id}: ${price:.6f}")
        else:
            print(f"{constants.C_YELLOW}Reference USD price unavailable; USD display will be omitted.{constants.C_RESET}")

        pending = await store.list_pending()
        print(f"{constants.C_BLUE}Watching {len(pending)} pending order(s); safety sweep every {config.sweep_interval}s.{constants.C_RESET}")
        try:
            await engine.start(watcher)
        finally:
            await engine.stop()
            if bot is not None:
                try:
                    await bot.shutdown()
                except TelegramError as exc:
                    logger.warning("Telegram shutdown failed: %s", exc)


async def check_approvals(config: AppConfig, store: SQLiteOrderStore) -> None:
    orders = await store.list_pending()
    if not orders:
        print("No pending orders.")
        return

    async with aiohttp.ClientSession(headers={'User-Agent': 'LimitOrderRelayer/1.0'}) as session:
        chain = ChainClient(session, rpc_url=config.rpc_url, timeout=config.rpc_timeout)
        for order in orders:
            try:
                allowance = await chain.get_allowance(order.token_in, order.trader, config.manager_address)
                balance = await chain.get_balance(order.token_in, order.trader)
            except (ChainError, ValueError) as exc:
                print(f"{constants.C_RED}{order.id}: could not read allowance ({exc}){constants.C_RESET}")
                continue

            approved = allowance >= order.amount_in
            funded = balance >= order.amount_in
            colour = constants.C_GREEN if approved and funded else constants.C_RED
            print(f"{colour}{order.id}{constants.C_RESET}")
            print(f"   Trader:    {order.trader}")
            print(f"   Token in:  {order.token_in}")
            print(f"   Amount in: {format_units(order.amount_in)}")
            print(f"   Allowance: {format_units(allowance)} {'OK' if approved else 'INSUFFICIENT'}")
            print(f"   Balance:   {format_units(balance)} {'OK' if funded else 'INSUFFICIENT'}")


async def cancel_order(store: SQLiteOrderStore, order_id: str) -> None:
    try:
        changed = await store.transition(order_id, OrderStatus.CANCELED)
    except OrderStoreError as exc:
        print(f"{constants.C_RED}Could not cancel order: {exc}{constants.C_RESET}")
        exit(1)
    if changed:
        print(f"{constants.C_GREEN}Order {order_id} canceled.{constants.C_RESET}")
    else:
        print(f"Order {order_id} was already canceled.")


async def import_orders(store: SQLiteOrderStore, path: str) -> None:
    try:
        with Path(path).open('r', encoding='utf-8') as handle:
            document = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        print(f"{constants.C_RED}Could not read {path}: {exc}{constants.C_RESET}")
        exit(1)

    records = document.get('orders', []) if isinstance(document, dict) else document
    imported = skipped = 0
    for record in records:
        try:
            order = Order.from_legacy(record)
            await store.create(order)
            imported += 1
        except DuplicateNonceError as exc:
            logger.info("Skipping duplicate: %s", exc)
            skipped += 1
        except (KeyError, TypeError, ValueError, OrderStoreError) as exc:
            print(f"{constants.C_YELLOW}Skipping order {record.get('id', '?') if isinstance(record, dict) else '?'}: {exc}{constants.C_RESET}")
            skipped += 1
    print(f"{constants.C_GREEN}Imported {imported} order(s), skipped {skipped}.{constants.C_RESET}")


async def show_orders(config: AppConfig, store: SQLiteOrderStore) -> None:
    orders = await store.list_orders(
        trader=config.orders_trader,
        status=OrderStatus(config.orders_status) if config.orders_status else None,
        limit=config.orders_limit,
    )
    _print_orders(orders, config.orders_limit, config.orders_trader, config.orders_status)


async def _run_maintenance(config: AppConfig, store: SQLiteOrderStore) -> None:
    try:
        if config.show_orders:
            await show_orders(config, store)
        elif config.cancel_order:
            await cancel_order(store, config.cancel_order)
        elif config.import_orders:
            await import_orders(store, config.import_orders)
        elif config.check_approvals:
            await check_approvals(config, store)
    finally:
        await store.close()


async def _run(config: AppConfig, store: SQLiteOrderStore) -> None:
    try:
        await run_engine(config, store)
    finally:
        await store.close()


def main() -> None:
    """The main synchronous entry point for the application."""
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        store = SQLiteOrderStore(config.db_path)
    except StoreCorruptedError as exc:
        print(f"{constants.C_RED}Order store is corrupt, refusing to start: {exc}{constants.C_RESET}")
        exit(1)

    if not config.engine_mode:
        asyncio.run(_run_maintenance(config, store))
        return

    try:
        asyncio.run(_run(config, store))
    except KeyboardInterrupt:
        print("\nStopping limit order engine.")


def _print_orders(orders: list[Order], limit: int, trader: str | None, status: str | None) -> None:
    heading = f"Showing up to {limit} orders"
    filters = []
    if trader:
        filters.append(f"trader={trader}")
    if status:
        filters.append(f"status={status}")
    if filters:
        heading += " (" + ", ".join(filters) + ")"
    print(heading)
    print("=" * len(heading))

    if not orders:
        print("No orders found.")
        return

    headers = ["Created (UTC)", "ID", "Type", "Status", "Amount In", "Limit", "Deadline (UTC)", "Pool", "Last error"]

    def _format_row(order: Order) -> list[str]:
        try:
            deadline = datetime.fromtimestamp(order.deadline, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        except (OverflowError, OSError, ValueError):
            deadline = str(order.deadline)
        return [
            order.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            order.id,
            order.order_type.value,
            order.status.value,
            format_units(order.amount_in),
            format_units(order.limit_price_e18),
            deadline,
            order.pool_address or "-",
            order.last_error or "-",
        ]

    rows = [_format_row(order) for order in orders]
    widths = [len(h) for h in headers]
    for row in rows:
        for idx, cell in enumerate(row):
            widths[idx] = max(widths[idx], len(cell))

    def _format_line(row: list[str]) -> str:
        return "  ".join(cell.ljust(widths[idx]) for idx, cell in enumerate(row))

    print(_format_line(headers))
    print("  ".join('-' * w for w in widths))
    for row in rows:
        print(_format_line(row))


if __name__ == "__main__":
    main()
