#!/usr/bin/env python3
from typing import Dict, List

# --- ANSI Color Codes ---
C_GREEN = '\033[92m'
C_RED = '\033[91m'
C_YELLOW = '\033[93m'
C_BLUE = '\033[94m'
C_RESET = '\033[0m'

# --- API Configuration ---
DEFAULT_RPC_URL = 'https://dream-rpc.somnia.network'
DEFAULT_CHAIN_ID = 1946  # Somnia testnet
COINGECKO_API_BASE_URL = 'https://api.coingecko.com/api/v3'
DEFAULT_REFERENCE_ASSET_ID = 'somnia'

# --- Environment Variable Names ---
RPC_URL_ENV_VAR = 'RPC_URL'
WS_RPC_URL_ENV_VAR = 'WS_RPC_URL'
RELAYER_PRIVATE_KEY_ENV_VAR = 'PRIVATE_KEY'
LIMIT_ORDER_MANAGER_ENV_VAR = 'LIMIT_ORDER_MANAGER_ADDRESS'
FACTORY_ADDRESS_ENV_VAR = 'FACTORY_ADDRESS'
REFERENCE_ASSET_ADDRESS_ENV_VAR = 'WSOMI_ADDRESS'
TELEGRAM_BOT_TOKEN_ENV_VAR = 'TELEGRAM_BOT_TOKEN'
TELEGRAM_CHAT_ID_ENV_VAR = 'TELEGRAM_CHAT_ID'
COINGECKO_API_KEY_ENV_VAR = 'COINGECKO_API_KEY'

# --- Deployment files written by the contract deployment scripts ---
LIMIT_ORDER_DEPLOYMENT_FILE = 'limit-order-deployment.json'
FACTORY_ROUTER_DEPLOYMENT_FILE = 'factory-router-deployment.json'

ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'

# Uniswap V2 style Swap(address,uint256,uint256,uint256,uint256,address)
SWAP_EVENT_TOPIC = '0xd78ad95fa46c994b6551d0da85fc275fe613ce37657fb8d5e3d130840159d822'

# --- Function selectors for read-only calls ---
SELECTOR_TOKEN0 = '0x0dfe1681'
SELECTOR_TOKEN1 = '0xd21220a7'
SELECTOR_GET_RESERVES = '0x0902f1ac'
SELECTOR_DECIMALS = '0x313ce567'
SELECTOR_SYMBOL = '0x95d89b41'
SELECTOR_BALANCE_OF = '0x70a08231'
SELECTOR_ALLOWANCE = '0xdd62ed3e'
SELECTOR_GET_PAIR = '0xe6a43905'
NONCE_USED_SIGNATURE = 'nonceUsed(address,uint256)'

# --- Limit order manager contract ---
ORDER_STRUCT_COMPONENTS: List[Dict[str, str]] = [
    {"name": "trader", "type": "address"},
    {"name": "tokenIn", "type": "address"},
    {"name": "tokenOut", "type": "address"},
    {"name": "amountIn", "type": "uint256"},
    {"name": "amountOutMin", "type": "uint256"},
    {"name": "limitPriceE18", "type": "uint256"},
    {"name": "slippageBps", "type": "uint256"},
    {"name": "deadline", "type": "uint256"},
    {"name": "nonce", "type": "uint256"},
]

LIMIT_ORDER_MANAGER_ABI = [
    {
        "name": "execute",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "o", "type": "tuple", "components": ORDER_STRUCT_COMPONENTS},
            {"name": "sig", "type": "bytes"},
        ],
        "outputs": [{"name": "amountOut", "type": "uint256"}],
    },
    {
        "name": "nonceUsed",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "", "type": "address"},
            {"name": "", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

# Revert reason fragments emitted by the limit order manager
REVERT_EXPIRED = 'expired'
REVERT_NONCE_USED = 'nonce used'

# --- Engine defaults ---
DEFAULT_DB_PATH = 'data/limit_orders.db'
DEFAULT_SWEEP_INTERVAL = 30
DEFAULT_POLL_INTERVAL = 3
DEFAULT_LOG_CHUNK_SIZE = 1000
DEFAULT_MAX_CONNECT_FAILURES = 5
DEFAULT_RPC_TIMEOUT = 10.0
DEFAULT_CONNECT_TIMEOUT = 5.0
DEFAULT_CONFIRMATION_TIMEOUT = 120.0
DEFAULT_PRICE_CACHE_TTL = 30.0
MAX_NOTIFICATIONS_PER_WALLET = 100
