#!/usr/bin/env python3
import asyncio
import logging
import time
from logging.handlers import RotatingFileHandler
from typing import Optional

import aiohttp
from telegram import BotCommand
from telegram.ext import Application, CommandHandler
from telegram.error import TimedOut, TelegramError

import constants
from analysis.analyzer import OpportunityAnalyzer
from analysis.cost_model import CostModelParams
from analysis.models import Token, Venue
from bot.handlers import help_command, scaninfo_command, status_command
from config import AppConfig, Registry, load_config, load_registry, resolve_tracked
from scanner import ArbitrageScanner
from services.coingecko_client import CoinGeckoClient, ReferencePriceOracle
from services.endpoint_pool import EndpointPool, NoHealthyEndpointsError, run_bounded
from services.telegram_dispatcher import TelegramAlertDispatcher
from services.venue_quoter import VenueQuoter
from storage import NotificationDedupCache


def configure_logging(level: str, log_file: Optional[str] = None) -> None:
    """Console logging plus an optional size-rotated log file."""
    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter(constants.LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=constants.LOG_FILE_MAX_BYTES,
            backupCount=constants.LOG_FILE_BACKUP_COUNT,
            encoding='utf-8',
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # python-telegram-bot polls through httpx and logs every request at INFO.
    logging.getLogger('httpx').setLevel(logging.WARNING)


async def build_scanner(
    config: AppConfig,
    registry: Registry,
    tokens: list[Token],
    venues: list[Venue],
    session: aiohttp.ClientSession,
    application: Optional[Application] = None,
) -> ArbitrageScanner:
    """Wires the endpoint pool, quoter, analyzer, dispatcher and dedup cache into a scanner."""
    bot = application.bot if application is not None else None
    dispatcher = TelegramAlertDispatcher(bot, config.telegram_chat_id, enabled=config.telegram_enabled)

    pool = EndpointPool(
        session,
        target_size=config.pool_size,
        probe_timeout=config.probe_timeout,
        call_timeout=config.rpc_timeout,
    )
    print(f"Probing {len(config.rpc_candidates)} RPC candidates...")
    try:
        endpoints = await pool.initialize(config.rpc_candidates)
    except NoHealthyEndpointsError as exc:
        print(f"{constants.C_RED}{exc}{constants.C_RESET}")
        await run_bounded(
            dispatcher.send_error_alert("No healthy RPC endpoints", str(exc)),
            constants.DISPATCH_TIMEOUT,
            'startup alert',
        )
        exit(1)
    print(f"{constants.C_GREEN}Endpoint pool ready: {len(endpoints)} healthy endpoints.{constants.C_RESET}")

    prices = ReferencePriceOracle(CoinGeckoClient(session, config.coingecko_api_key))
    await prices.refresh()

    quoter = VenueQuoter(
        pool,
        registry.tokens,
        prices,
        bridge_tokens=registry.bridge_tokens,
        multi_hop_bridges=registry.multi_hop_bridges,
        settlement_token=registry.settlement_token,
        liquidity_floor=config.min_liquidity,
        cache_ttl=config.cache_ttl,
        cl_liquidity_scale=config.cl_liquidity_scale,
    )
    analyzer = OpportunityAnalyzer(
        notional_usd=config.notional,
        min_spread_bps=config.min_spread_bps,
        liquidity_floor=config.min_liquidity,
        params=CostModelParams(
            confidence_threshold=config.confidence_threshold,
            min_adjusted_profit_usd=config.min_profit,
            min_roi_pct=config.min_roi_pct,
        ),
    )

    dedup_cache = NotificationDedupCache(config.dedup_path, cooldown_seconds=config.alert_cooldown)
    restored = await dedup_cache.load()
    if restored:
        print(f"Restored {restored} notification records from {config.dedup_path}.")

    if application is not None:
        application.bot_data['endpoint_pool'] = pool
        application.bot_data['dispatcher'] = dispatcher
        application.bot_data['dedup_cache'] = dedup_cache

    return ArbitrageScanner(
        config,
        application,
        pool,
        quoter,
        analyzer,
        dispatcher,
        dedup_cache,
        prices,
        tokens,
        venues,
    )


async def post_init_hook(application: Application) -> None:
    """A hook that runs after the bot is initialized to set up shared clients and tasks."""
    # Create and store a single, shared aiohttp session
    session = aiohttp.ClientSession(headers={'User-Agent': constants.HTTP_USER_AGENT})
    application.bot_data['http_session'] = session

    config = application.bot_data['config']
    scanner = await build_scanner(
        config,
        application.bot_data['registry'],
        application.bot_data['tokens'],
        application.bot_data['venues'],
        session,
        application,
    )
    application.bot_data['scanner'] = scanner

    # Set bot commands
    commands = [
        BotCommand("status", "Check bot status"),
        BotCommand("scaninfo", "See current scan config"),
        BotCommand("help", "Show help message"),
    ]
    try:
        await application.bot.set_my_commands(commands)
    except (TimedOut, TelegramError) as exc:
        print(
            f"{constants.C_YELLOW}Warning: unable to set Telegram bot commands ({exc})."
            f" Continuing startup without updating commands.{constants.C_RESET}"
        )

    await scanner.dispatcher.send_status(
        "🟢 <b>Spread monitor started</b>\n"
        f"Tokens: <code>{', '.join(t.symbol for t in scanner.tokens)}</code>\n"
        f"Venues: <code>{', '.join(v.name for v in scanner.venues)}</code>\n"
        f"RPC endpoints: <code>{scanner.pool.size}</code>"
    )

    scanner_task = asyncio.create_task(scanner.start())
    application.bot_data['scanner_task'] = scanner_task


async def post_stop_hook(application: Application) -> None:
    """Sends a shutdown notice while the bot is still connected."""
    dispatcher = application.bot_data.get('dispatcher')
    scanner = application.bot_data.get('scanner')
    if dispatcher and scanner:
        totals = scanner.totals
        await dispatcher.send_status(
            "🔴 <b>Spread monitor stopped</b>\n"
            f"Cycles: <code>{scanner.cycles_completed}</code> | "
            f"Viable: <code>{totals.viable}</code> | Alerts: <code>{totals.alerts_sent}</code>"
        )


async def post_shutdown_hook(application: Application) -> None:
    """A hook that runs on application shutdown to clean up resources."""
    scanner_task = application.bot_data.get('scanner_task')
    if scanner_task and not scanner_task.done():
        scanner_task.cancel()
        try:
            await scanner_task
        except asyncio.CancelledError:
            pass
    dedup_cache = application.bot_data.get('dedup_cache')
    if dedup_cache:
        await dedup_cache.save()
    session = application.bot_data.get('http_session')
    if session:
        await session.close()


async def run_cli(config: AppConfig, registry: Registry, tokens: list[Token], venues: list[Venue]) -> None:
    """Runs the scanner without Telegram; alerts are printed to the console."""
    async with aiohttp.ClientSession(headers={'User-Agent': constants.HTTP_USER_AGENT}) as session:
        scanner = await build_scanner(config, registry, tokens, venues, session)
        try:
            await scanner.start()
        finally:
            await scanner.dedup_cache.save()


def main() -> None:
    """The main synchronous entry point for the application."""
    config = load_config()
    configure_logging(config.log_level, config.log_file)

    try:
        registry = load_registry(config.registry_path)
    except (OSError, ValueError, KeyError) as exc:
        print(f"{constants.C_RED}Could not load registry: {exc}{constants.C_RESET}")
        exit(1)
    tokens, venues = resolve_tracked(config, registry)

    if not config.telegram_enabled or not config.telegram_bot_token:
        print("Telegram is not configured. The application will run in CLI-only mode.")
        try:
            asyncio.run(run_cli(config, registry, tokens, venues))
        except KeyboardInterrupt:
            print("Stopped.")
        return

    application = (
        Application.builder()
        .token(config.telegram_bot_token)
        .post_init(post_init_hook)
        .post_stop(post_stop_hook)
        .post_shutdown(post_shutdown_hook)
        .build()
    )

    # Store config and other shared data
    application.bot_data['config'] = config
    application.bot_data['registry'] = registry
    application.bot_data['tokens'] = tokens
    application.bot_data['venues'] = venues
    application.bot_data['start_time'] = time.time()
    application.bot_data['scan_info'] = {
        'tokens': [token.symbol for token in tokens],
        'venues': [venue.name for venue in venues],
        'notional': config.notional,
        'min_spread_bps': config.min_spread_bps,
        'interval': config.interval,
    }

    # Register command handlers
    application.add_handler(CommandHandler("start", help_command))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("status", status_command))
    application.add_handler(CommandHandler("scaninfo", scaninfo_command))

    application.run_polling()


if __name__ == "__main__":
    main()
