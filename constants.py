#!/usr/bin/env python3
from typing import Dict, List, Tuple, Union

# --- ANSI Color Codes ---
C_GREEN = '\033[92m'
C_RED = '\033[91m'
C_YELLOW = '\033[93m'
C_BLUE = '\033[94m'
C_RESET = '\033[0m'

# --- API Configuration ---
COINGECKO_API_BASE_URL = 'https://api.coingecko.com/api/v3'
HTTP_USER_AGENT = 'DexSpreadMonitor/1.0'

# --- Environment Variable Names ---
TELEGRAM_BOT_TOKEN_ENV_VAR = 'TELEGRAM_BOT_TOKEN'
TELEGRAM_CHAT_ID_ENV_VAR = 'TELEGRAM_CHAT_ID'
COINGECKO_API_KEY_ENV_VAR = 'COINGECKO_API_KEY'
ALCHEMY_API_KEY_ENV_VAR = 'ALCHEMY_API_KEY'
INFURA_API_KEY_ENV_VAR = 'INFURA_API_KEY'
RPC_ENV_VAR_PREFIX = 'POLYGON_RPC_'
RPC_ENV_VAR_COUNT = 10

# --- Network Configuration ---
NETWORK_CHAIN_ID = 137
# Wrapped native token; its reference price values gas.
NATIVE_PRICE_SYMBOL = 'WMATIC'

PUBLIC_RPC_ENDPOINTS: List[str] = [
    'https://polygon-rpc.com',
    'https://rpc.ankr.com/polygon',
    'https://polygon.llamarpc.com',
    'https://rpc-mainnet.matic.network',
    'https://matic-mainnet.chainstacklabs.com',
]
ALCHEMY_RPC_TEMPLATE = 'https://polygon-mainnet.g.alchemy.com/v2/{key}'
INFURA_RPC_TEMPLATE = 'https://polygon-mainnet.infura.io/v3/{key}'

# --- Endpoint Pool Defaults ---
ENDPOINT_POOL_TARGET_SIZE = 5
ENDPOINT_PROBE_CONCURRENCY = 8
ENDPOINT_PROBE_TIMEOUT = 5.0
RPC_CALL_TIMEOUT = 10.0
RPC_BACKOFF_BASE = 0.5
RPC_BACKOFF_MAX = 4.0

# --- Token Registry (Polygon PoS) ---
# symbol -> (address, decimals)
TOKENS: Dict[str, Tuple[str, int]] = {
    'USDC': ('0x2791bca1f2de4661ed88a30c99a7a9449aa84174', 6),
    'USDT': ('0xc2132d05d31c914a87c6611c10748aeb04b58e8f', 6),
    'DAI': ('0x8f3cf7ad23cd3cadbd9735aff958023239c6a063', 18),
    'WETH': ('0x7ceb23fd6bc0add59e62ac25578270cff1b9f619', 18),
    'WMATIC': ('0x0d500b1d8e8ef31e21c99d1db9a6444d3adf1270', 18),
    'WBTC': ('0x1bfd67037b42cf73acf2047067bd4f2c47d9bfd6', 8),
    'LINK': ('0x53e0bca35ec356bd5dddfebbd1fc0fd03fabad39', 18),
    'AAVE': ('0xd6df932a45c0f255f85145f286ea0b292b21c90b', 18),
    'CRV': ('0x172370d5cd63279efa6d502dab29171933a610af', 18),
}
DEFAULT_TRACKED_TOKENS: List[str] = ['WETH', 'WBTC', 'WMATIC', 'LINK', 'AAVE', 'CRV']

STABLE_SYMBOLS = {'USDC', 'USDT', 'DAI'}
STABLE_LIQUIDITY_USD = 10_000_000.0
STABLE_SLIPPAGE = 0.0001

# Direct-pair bridges, most liquid first.
BRIDGE_TOKENS: List[str] = ['USDC', 'USDT', 'WETH', 'WMATIC']
MULTI_HOP_BRIDGES: List[str] = ['WETH', 'WMATIC']
SETTLEMENT_TOKEN = 'USDC'
MULTI_HOP_EFFICIENCY = 0.8

# --- Venue Registry ---
VENUES: Dict[str, Dict[str, Union[str, List[int], None]]] = {
    'quickswap': {
        'family': 'constant_product',
        'factory': '0x5757371414417b8c6caad45baef941abc7d3ab32',
        'router': '0xa5e0829caced8ffdd4de3c43696c57f7d7a678ff',
        'fee_tiers': [3000],
        'quoter': None,
    },
    'sushiswap': {
        'family': 'constant_product',
        'factory': '0xc35dadb65012ec5796536bd9864ed8773abc74c4',
        'router': '0x1b02da8cb0d097eb8d57a175b88c7d8b47997506',
        'fee_tiers': [3000],
        'quoter': None,
    },
    'uniswap_v3': {
        'family': 'concentrated_liquidity',
        'factory': '0x1f98431c8ad98523631ae4a59f267346ea31f984',
        'router': None,
        'fee_tiers': [3000, 500, 10000],
        'quoter': '0xb27308f9f90d607463bb33ea1bebb41c27ce5ab6',
    },
    'quickswap_v3': {
        'family': 'concentrated_liquidity',
        'factory': '0x411b0facc3489691f28ad58c47006af5e3ab3a28',
        'router': None,
        'fee_tiers': [3000, 500, 10000],
        'quoter': '0xa15f0d7377b2a0c0c10262e4abe1c5b5bba7c1c4',
    },
}

# Share of raw concentrated liquidity assumed active around the current tick.
CL_ACTIVE_LIQUIDITY_FRACTION: Dict[int, float] = {
    100: 0.85,
    500: 0.75,
    3000: 0.60,
    10000: 0.45,
}
SLIPPAGE_FEE_TIER_MULTIPLIER: Dict[int, float] = {
    100: 0.6,
    500: 0.8,
    3000: 1.0,
    10000: 1.3,
}
# (trade/liquidity ratio threshold, slippage fraction), checked high to low.
SLIPPAGE_STEPS: List[Tuple[float, float]] = [
    (0.10, 0.05),
    (0.05, 0.02),
    (0.02, 0.01),
    (0.01, 0.005),
]
SLIPPAGE_BASE = 0.001
SLIPPAGE_CAP = 0.12

# --- Quoter Defaults ---
QUOTE_CACHE_TTL = 30.0
DEFAULT_LIQUIDITY_FLOOR = 1000.0

# --- Reference Prices ---
COINGECKO_IDS: Dict[str, str] = {
    'WETH': 'ethereum',
    'WBTC': 'wrapped-bitcoin',
    'WMATIC': 'matic-network',
    'LINK': 'chainlink',
    'AAVE': 'aave',
    'CRV': 'curve-dao-token',
}
STATIC_REFERENCE_PRICES: Dict[str, float] = {
    'WETH': 2000.0,
    'WBTC': 35000.0,
    'WMATIC': 0.9,
    'LINK': 15.0,
    'AAVE': 80.0,
    'CRV': 0.5,
}
REFERENCE_PRICE_TTL = 300.0

# --- Scanner Defaults ---
SCAN_BATCH_SIZE = 3
SCAN_BATCH_PAUSE = 1.0
VENUE_QUERY_CONCURRENCY = 2
MIN_FETCH_SUCCESS_RATE = 0.3
DISPATCH_TIMEOUT = 15.0
POOL_EXHAUSTED_PAUSE = 60.0

# --- Dedup Cache Defaults ---
DEDUP_CACHE_PATH = 'data/notifications.json'
DEDUP_RETENTION_SECONDS = 24 * 60 * 60
DEDUP_BUCKET_BPS = 10

# --- Logging ---
LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 5
