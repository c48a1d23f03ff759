#!/usr/bin/env python3
import os
import argparse
import json
from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Optional

import constants
from analysis.models import ProtocolFamily, Token, Venue


class AppConfig(NamedTuple):
    """Typed configuration object."""
    tokens: list[str]
    venues: list[str]
    registry_path: str | None
    notional: float
    min_spread_bps: float
    interval: int
    rpc_timeout: float
    min_liquidity: float
    alert_cooldown: int
    top_n: int
    batch_size: int
    batch_pause: float
    venue_concurrency: int
    min_fetch_success_rate: float
    pool_size: int
    probe_timeout: float
    cache_ttl: float
    cl_liquidity_scale: float
    confidence_threshold: float
    min_profit: float
    min_roi_pct: float
    dedup_path: str
    log_file: str | None
    log_level: str
    telegram_enabled: bool
    telegram_bot_token: str | None
    telegram_chat_id: str | None
    coingecko_api_key: str | None
    rpc_candidates: list[str]


@dataclass(frozen=True)
class Registry:
    """Tokens, venues and routing assets known for the network."""
    tokens: Dict[str, Token]
    venues: Dict[str, Venue]
    bridge_tokens: List[str]
    multi_hop_bridges: List[str]
    settlement_token: str


def collect_rpc_candidates() -> list[str]:
    """Env-configured endpoints first, then provider keys, then public fallbacks."""
    candidates: list[str] = []
    for idx in range(1, constants.RPC_ENV_VAR_COUNT + 1):
        url = os.environ.get(f"{constants.RPC_ENV_VAR_PREFIX}{idx}")
        if url:
            candidates.append(url.strip())

    alchemy_key = os.environ.get(constants.ALCHEMY_API_KEY_ENV_VAR)
    if alchemy_key:
        candidates.append(constants.ALCHEMY_RPC_TEMPLATE.format(key=alchemy_key))
    infura_key = os.environ.get(constants.INFURA_API_KEY_ENV_VAR)
    if infura_key:
        candidates.append(constants.INFURA_RPC_TEMPLATE.format(key=infura_key))

    candidates.extend(constants.PUBLIC_RPC_ENDPOINTS)
    return list(dict.fromkeys(url for url in candidates if url))


def _build_token(symbol: str, address: str, decimals: int) -> Token:
    symbol = symbol.upper()
    if not isinstance(address, str) or not address.startswith('0x') or len(address) != 42:
        raise ValueError(f"Token {symbol} has an invalid address: {address!r}")
    return Token(
        symbol=symbol,
        address=address.lower(),
        decimals=int(decimals),
        is_stable=symbol in constants.STABLE_SYMBOLS,
    )


def _build_venue(name: str, spec: dict) -> Venue:
    try:
        family = ProtocolFamily(spec['family'])
    except (KeyError, ValueError) as exc:
        raise ValueError(f"Venue {name} has an unknown protocol family: {spec.get('family')!r}") from exc
    factory = spec.get('factory')
    if not factory:
        raise ValueError(f"Venue {name} is missing a factory address")
    return Venue(
        name=name,
        family=family,
        factory=str(factory).lower(),
        fee_tiers=tuple(int(tier) for tier in (spec.get('fee_tiers') or [3000])),
        router=spec.get('router'),
        quoter=spec.get('quoter'),
    )


def load_registry(path: Optional[str] = None) -> Registry:
    """Builds the token/venue registry, overlaying an optional JSON file on the built-in one."""
    token_specs = {symbol: {'address': address, 'decimals': decimals}
                   for symbol, (address, decimals) in constants.TOKENS.items()}
    venue_specs = {name: dict(spec) for name, spec in constants.VENUES.items()}
    bridge_tokens = list(constants.BRIDGE_TOKENS)
    multi_hop_bridges = list(constants.MULTI_HOP_BRIDGES)
    settlement_token = constants.SETTLEMENT_TOKEN

    if path:
        with open(path, 'r', encoding='utf-8') as handle:
            overlay = json.load(handle)
        if not isinstance(overlay, dict):
            raise ValueError(f"Registry file {path} must contain a JSON object")
        for symbol, spec in (overlay.get('tokens') or {}).items():
            token_specs[symbol.upper()] = spec
        for name, spec in (overlay.get('venues') or {}).items():
            venue_specs[name] = spec
        bridge_tokens = [s.upper() for s in overlay.get('bridge_tokens', bridge_tokens)]
        multi_hop_bridges = [s.upper() for s in overlay.get('multi_hop_bridges', multi_hop_bridges)]
        settlement_token = overlay.get('settlement_token', settlement_token).upper()

    tokens = {
        symbol.upper(): _build_token(symbol, spec['address'], spec['decimals'])
        for symbol, spec in token_specs.items()
    }
    venues = {name: _build_venue(name, spec) for name, spec in venue_specs.items()}
    if settlement_token not in tokens:
        raise ValueError(f"Settlement token {settlement_token} is not in the token registry")

    return Registry(
        tokens=tokens,
        venues=venues,
        bridge_tokens=[s for s in bridge_tokens if s in tokens],
        multi_hop_bridges=[s for s in multi_hop_bridges if s in tokens],
        settlement_token=settlement_token,
    )


def resolve_tracked(config: AppConfig, registry: Registry) -> tuple[list[Token], list[Venue]]:
    """Maps configured symbols and venue names onto the registry; exits if nothing is left to scan."""
    tokens: list[Token] = []
    for symbol in config.tokens:
        token = registry.tokens.get(symbol.upper())
        if token is None:
            print(f"{constants.C_YELLOW}Unknown token '{symbol}' ignored (not in registry).{constants.C_RESET}")
            continue
        tokens.append(token)

    venues: list[Venue] = []
    for name in config.venues:
        venue = registry.venues.get(name)
        if venue is None:
            print(f"{constants.C_YELLOW}Unknown venue '{name}' ignored (not in registry).{constants.C_RESET}")
            continue
        venues.append(venue)

    if not tokens:
        print(f"{constants.C_RED}No tracked tokens configured; nothing to scan.{constants.C_RESET}")
        exit(1)
    if len(venues) < 2:
        print(f"{constants.C_RED}At least two venues are required to compare prices.{constants.C_RESET}")
        exit(1)
    return tokens, venues


def load_config() -> AppConfig:
    """
    Parses command-line arguments and loads environment variables to create a configuration object.
    """
    parser = argparse.ArgumentParser(
        description="Monitor cross-venue DEX price spreads on Polygon and alert on cost-adjusted opportunities.",
        epilog="Example: ./main.py --token WETH WBTC --min-spread-bps 30 --telegram-enabled"
    )
    parser.add_argument('--token', nargs='+', default=list(constants.DEFAULT_TRACKED_TOKENS), help='One or more token symbols to track (default: %(default)s).')
    parser.add_argument('--venue', nargs='+', default=list(constants.VENUES.keys()), help='Venues to compare (default: %(default)s).')
    parser.add_argument('--registry', type=str, help='Optional JSON file extending the built-in token/venue registry.')
    parser.add_argument('--notional', type=float, default=1000.0, help='Trade notional in USD used for quotes (default: 1000).')
    parser.add_argument('--min-spread-bps', type=float, default=20.0, help='Minimum spread in basis points (default: 20).')
    parser.add_argument('--interval', type=int, default=60, help='Seconds to wait between each scan (default: 60).')
    parser.add_argument('--rpc-timeout', type=float, default=constants.RPC_CALL_TIMEOUT, help='Per-call RPC timeout in seconds (default: 10).')
    parser.add_argument('--min-liquidity', type=float, default=constants.DEFAULT_LIQUIDITY_FLOOR, help='Min USD liquidity per quote (default: 1000).')
    parser.add_argument('--alert-cooldown', type=int, default=300, help='Cooldown in seconds before re-alerting for the same opportunity (default: 300).')
    parser.add_argument('--top-n', type=int, default=3, help='Max opportunities alerted per cycle (default: 3).')
    parser.add_argument('--batch-size', type=int, default=constants.SCAN_BATCH_SIZE, help='Tokens scanned per batch (default: 3).')
    parser.add_argument('--batch-pause', type=float, default=constants.SCAN_BATCH_PAUSE, help='Seconds to pause between token batches (default: 1.0).')
    parser.add_argument('--venue-concurrency', type=int, default=constants.VENUE_QUERY_CONCURRENCY, help='Concurrent venue queries (default: 2).')
    parser.add_argument('--min-fetch-success-rate', type=float, default=constants.MIN_FETCH_SUCCESS_RATE, help='Cycle price-fetch success rate below which the RPC endpoint is rotated (default: 0.3).')
    parser.add_argument('--pool-size', type=int, default=constants.ENDPOINT_POOL_TARGET_SIZE, help='Target number of healthy RPC endpoints (default: 5).')
    parser.add_argument('--probe-timeout', type=float, default=constants.ENDPOINT_PROBE_TIMEOUT, help='RPC liveness probe timeout in seconds (default: 5).')
    parser.add_argument('--cache-ttl', type=float, default=constants.QUOTE_CACHE_TTL, help='Quote cache TTL in seconds (default: 30).')
    parser.add_argument('--cl-liquidity-scale', type=float, default=1.0, help='Calibration factor for concentrated-liquidity USD estimates (default: 1.0).')
    parser.add_argument('--confidence-threshold', type=float, default=0.4, help='Minimum confidence for a viable opportunity (default: 0.4).')
    parser.add_argument('--min-profit', type=float, default=3.0, help='Minimum adjusted profit in USD (default: 3.0).')
    parser.add_argument('--min-roi', type=float, default=0.3, help='Minimum return on notional in percent (default: 0.3).')
    parser.add_argument('--dedup-path', type=str, default=constants.DEDUP_CACHE_PATH, help=f'Notification cache file (default: {constants.DEDUP_CACHE_PATH}).')
    parser.add_argument('--log-file', type=str, help='Optional rotating log file path.')
    parser.add_argument('--log-level', type=str.upper, default='INFO', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Log level (default: INFO).')
    parser.add_argument('--telegram-enabled', action='store_true', help='Enable Telegram notifications.')

    args = parser.parse_args()

    if args.notional <= 0:
        parser.error('--notional must be positive.')
    if args.interval <= 0:
        parser.error('--interval must be positive.')
    if args.top_n < 1 or args.batch_size < 1 or args.venue_concurrency < 1 or args.pool_size < 1:
        parser.error('--top-n, --batch-size, --venue-concurrency and --pool-size must be at least 1.')

    # Load from environment
    telegram_bot_token = os.environ.get(constants.TELEGRAM_BOT_TOKEN_ENV_VAR)
    telegram_chat_id = os.environ.get(constants.TELEGRAM_CHAT_ID_ENV_VAR)
    coingecko_api_key = os.environ.get(constants.COINGECKO_API_KEY_ENV_VAR)

    if args.telegram_enabled and not (telegram_bot_token and telegram_chat_id):
        print(f"{constants.C_RED}Telegram is enabled, but {constants.TELEGRAM_BOT_TOKEN_ENV_VAR} or {constants.TELEGRAM_CHAT_ID_ENV_VAR} are not set.{constants.C_RESET}")
        exit(1)

    tokens = [symbol.upper() for symbol in (args.token or [])]
    if not tokens:
        print(f"{constants.C_RED}No tracked tokens configured; nothing to scan.{constants.C_RESET}")
        exit(1)

    return AppConfig(
        tokens=tokens,
        venues=list(args.venue or []),
        registry_path=args.registry,
        notional=args.notional,
        min_spread_bps=args.min_spread_bps,
        interval=args.interval,
        rpc_timeout=args.rpc_timeout,
        min_liquidity=args.min_liquidity,
        alert_cooldown=args.alert_cooldown,
        top_n=args.top_n,
        batch_size=args.batch_size,
        batch_pause=args.batch_pause,
        venue_concurrency=args.venue_concurrency,
        min_fetch_success_rate=args.min_fetch_success_rate,
        pool_size=args.pool_size,
        probe_timeout=args.probe_timeout,
        cache_ttl=args.cache_ttl,
        cl_liquidity_scale=args.cl_liquidity_scale,
        confidence_threshold=args.confidence_threshold,
        min_profit=args.min_profit,
        min_roi_pct=args.min_roi,
        dedup_path=args.dedup_path,
        log_file=args.log_file,
        log_level=args.log_level,
        telegram_enabled=args.telegram_enabled,
        telegram_bot_token=telegram_bot_token,
        telegram_chat_id=telegram_chat_id,
        coingecko_api_key=coingecko_api_key,
        rpc_candidates=collect_rpc_candidates(),
    )
