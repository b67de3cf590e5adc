#!/usr/bin/env python3
import os
import json
import argparse
from pathlib import Path
from typing import NamedTuple, Optional
import constants

class AppConfig(NamedTuple):
    """Typed configuration object."""
    rpc_url: str
    ws_rpc_url: str | None
    chain_id: int
    relayer_private_key: str | None
    manager_address: str | None
    factory_address: str | None
    reference_asset_address: str | None
    reference_asset_id: str
    derive_direction: bool
    db_path: str
    sweep_interval: int
    poll_interval: float
    log_chunk_size: int
    max_connect_failures: int
    rpc_timeout: float
    connect_timeout: float
    confirmation_timeout: float
    price_cache_ttl: float
    telegram_enabled: bool
    telegram_bot_token: str | None
    telegram_chat_id: str | None
    coingecko_api_key: str | None
    log_level: str
    show_orders: bool
    orders_trader: str | None
    orders_status: str | None
    orders_limit: int
    check_approvals: bool
    cancel_order: str | None
    import_orders: str | None

    @property
    def engine_mode(self) -> bool:
        return not (self.show_orders or self.check_approvals or self.cancel_order or self.import_orders)


def read_deployment_value(filename: str, key: str, base_dir: Path | None = None) -> Optional[str]:
    """Return `key` from a deployment JSON file written by the contract scripts, if present."""
    path = (base_dir or Path.cwd()) / filename
    if not path.is_file():
        return None
    try:
        with path.open('r', encoding='utf-8') as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        print(f"{constants.C_YELLOW}Could not read {path}: {exc}{constants.C_RESET}")
        return None
    if not isinstance(data, dict):
        return None
    value = data.get(key)
    if value is None and isinstance(data.get('deployments'), dict):
        value = data['deployments'].get(key)
    return value if isinstance(value, str) and value else None


def load_config(argv: list[str] | None = None) -> AppConfig:
    """
    Parses command-line arguments and loads environment variables to create a configuration object.
    """
    parser = argparse.ArgumentParser(
        description="Watch DEX pools and execute signed limit orders through the limit order manager.",
        epilog="Example: ./main.py --sweep-interval 15 --telegram-enabled"
    )
    parser.add_argument('--rpc-url', type=str, help=f'HTTP JSON-RPC endpoint (default: ${constants.RPC_URL_ENV_VAR} or {constants.DEFAULT_RPC_URL}).')
    parser.add_argument('--ws-rpc-url', type=str, help=f'WebSocket endpoint for swap subscriptions (default: ${constants.WS_RPC_URL_ENV_VAR}). Polling is used when absent.')
    parser.add_argument('--chain-id', type=int, default=constants.DEFAULT_CHAIN_ID, help=f'Chain id used when signing (default: {constants.DEFAULT_CHAIN_ID}).')
    parser.add_argument('--manager-address', type=str, help='LimitOrderManager contract address.')
    parser.add_argument('--factory-address', type=str, help='DEX factory used to resolve pools.')
    parser.add_argument('--reference-asset', type=str, help='Reference asset (WSOMI) token address.')
    parser.add_argument('--reference-asset-id', type=str, default=constants.DEFAULT_REFERENCE_ASSET_ID, help=f'CoinGecko id of the reference asset (default: {constants.DEFAULT_REFERENCE_ASSET_ID}).')
    parser.add_argument('--derive-direction', action='store_true', help='Derive buy/sell from tokenIn == reference asset instead of trusting orderType.')
    parser.add_argument('--db-path', type=str, default=constants.DEFAULT_DB_PATH, help=f'SQLite order store (default: {constants.DEFAULT_DB_PATH}).')
    parser.add_argument('--sweep-interval', type=int, default=constants.DEFAULT_SWEEP_INTERVAL, help=f'Seconds between safety sweeps (default: {constants.DEFAULT_SWEEP_INTERVAL}).')
    parser.add_argument('--poll-interval', type=float, default=constants.DEFAULT_POLL_INTERVAL, help=f'Seconds between log polls in fallback mode (default: {constants.DEFAULT_POLL_INTERVAL}).')
    parser.add_argument('--log-chunk-size', type=int, default=constants.DEFAULT_LOG_CHUNK_SIZE, help=f'Max blocks per eth_getLogs query (default: {constants.DEFAULT_LOG_CHUNK_SIZE}).')
    parser.add_argument('--max-connect-failures', type=int, default=constants.DEFAULT_MAX_CONNECT_FAILURES, help=f'Consecutive subscription failures before polling (default: {constants.DEFAULT_MAX_CONNECT_FAILURES}).')
    parser.add_argument('--rpc-timeout', type=float, default=constants.DEFAULT_RPC_TIMEOUT, help=f'Seconds per RPC call (default: {constants.DEFAULT_RPC_TIMEOUT}).')
    parser.add_argument('--connect-timeout', type=float, default=constants.DEFAULT_CONNECT_TIMEOUT, help=f'Seconds to open the subscription (default: {constants.DEFAULT_CONNECT_TIMEOUT}).')
    parser.add_argument('--confirmation-timeout', type=float, default=constants.DEFAULT_CONFIRMATION_TIMEOUT, help=f'Seconds to wait for a receipt (default: {constants.DEFAULT_CONFIRMATION_TIMEOUT}).')
    parser.add_argument('--price-cache-ttl', type=float, default=constants.DEFAULT_PRICE_CACHE_TTL, help=f'Seconds to reuse a reference USD price (default: {constants.DEFAULT_PRICE_CACHE_TTL}).')
    parser.add_argument('--telegram-enabled', action='store_true', help='Send execution notifications to Telegram.')
    parser.add_argument('--log-level', default='INFO', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Logging level (default: INFO).')

    # --- Maintenance modes ---
    parser.add_argument('--show-orders', action='store_true', help='Display stored orders and exit.')
    parser.add_argument('--trader', type=str, help='Filter --show-orders by trader address.')
    parser.add_argument('--status', choices=['pending', 'executed', 'canceled', 'expired'], help='Filter --show-orders by status.')
    parser.add_argument('--limit', type=int, default=50, help='Number of orders to display (default: 50).')
    parser.add_argument('--check-approvals', action='store_true', help='Compare each pending order with its allowance and exit.')
    parser.add_argument('--cancel-order', type=str, metavar='ORDER_ID', help='Cancel a pending order and exit.')
    parser.add_argument('--import-orders', type=str, metavar='FILE', help='Import a limit-orders.json document and exit.')

    args = parser.parse_args(argv)

    # Load from environment
    rpc_url = args.rpc_url or os.environ.get(constants.RPC_URL_ENV_VAR) or constants.DEFAULT_RPC_URL
    ws_rpc_url = args.ws_rpc_url or os.environ.get(constants.WS_RPC_URL_ENV_VAR)
    relayer_private_key = os.environ.get(constants.RELAYER_PRIVATE_KEY_ENV_VAR)
    telegram_bot_token = os.environ.get(constants.TELEGRAM_BOT_TOKEN_ENV_VAR)
    telegram_chat_id = os.environ.get(constants.TELEGRAM_CHAT_ID_ENV_VAR)
    coingecko_api_key = os.environ.get(constants.COINGECKO_API_KEY_ENV_VAR)

    manager_address = (
        args.manager_address
        or os.environ.get(constants.LIMIT_ORDER_MANAGER_ENV_VAR)
        or read_deployment_value(constants.LIMIT_ORDER_DEPLOYMENT_FILE, 'contractAddress')
    )
    factory_address = (
        args.factory_address
        or os.environ.get(constants.FACTORY_ADDRESS_ENV_VAR)
        or read_deployment_value(constants.FACTORY_ROUTER_DEPLOYMENT_FILE, 'factory')
    )
    reference_asset_address = (
        args.reference_asset
        or os.environ.get(constants.REFERENCE_ASSET_ADDRESS_ENV_VAR)
        or read_deployment_value(constants.FACTORY_ROUTER_DEPLOYMENT_FILE, 'wsomi')
    )

    engine_mode = not (args.show_orders or args.check_approvals or args.cancel_order or args.import_orders)

    if (engine_mode or args.check_approvals) and not manager_address:
        print(f"{constants.C_RED}{constants.LIMIT_ORDER_MANAGER_ENV_VAR} is not set and {constants.LIMIT_ORDER_DEPLOYMENT_FILE} was not found.{constants.C_RESET}")
        exit(1)

    if engine_mode and not relayer_private_key:
        print(f"{constants.C_RED}{constants.RELAYER_PRIVATE_KEY_ENV_VAR} environment variable not set; the relayer key is required to execute orders.{constants.C_RESET}")
        exit(1)

    if engine_mode and not factory_address:
        print(f"{constants.C_YELLOW}No factory address configured; only orders with a stored pool will be evaluated.{constants.C_RESET}")

    if args.derive_direction and not reference_asset_address:
        print(f"{constants.C_RED}--derive-direction requires {constants.REFERENCE_ASSET_ADDRESS_ENV_VAR} or --reference-asset.{constants.C_RESET}")
        exit(1)

    if args.telegram_enabled and not (telegram_bot_token and telegram_chat_id):
        print(f"{constants.C_RED}Telegram is enabled, but {constants.TELEGRAM_BOT_TOKEN_ENV_VAR} or {constants.TELEGRAM_CHAT_ID_ENV_VAR} are not set.{constants.C_RESET}")
        exit(1)

    if args.log_chunk_size < 1 or args.max_connect_failures < 1:
        print(f"{constants.C_RED}--log-chunk-size and --max-connect-failures must be at least 1.{constants.C_RESET}")
        exit(1)

    return AppConfig(
        rpc_url=rpc_url,
        ws_rpc_url=ws_rpc_url,
        chain_id=args.chain_id,
        relayer_private_key=relayer_private_key,
        manager_address=manager_address,
        factory_address=factory_address,
        reference_asset_address=reference_asset_address,
        reference_asset_id=args.reference_asset_id,
        derive_direction=args.derive_direction,
        db_path=args.db_path,
        sweep_interval=args.sweep_interval,
        poll_interval=args.poll_interval,
        log_chunk_size=args.log_chunk_size,
        max_connect_failures=args.max_connect_failures,
        rpc_timeout=args.rpc_timeout,
        connect_timeout=args.connect_timeout,
        confirmation_timeout=args.confirmation_timeout,
        price_cache_ttl=args.price_cache_ttl,
        telegram_enabled=args.telegram_enabled,
        telegram_bot_token=telegram_bot_token,
        telegram_chat_id=telegram_chat_id,
        coingecko_api_key=coingecko_api_key,
        log_level=args.log_level,
        show_orders=args.show_orders,
        orders_trader=args.trader.lower() if args.trader else None,
        orders_status=args.status,
        orders_limit=args.limit,
        check_approvals=args.check_approvals,
        cancel_order=args.cancel_order,
        import_orders=args.import_orders,
    )
