# scanner.py
import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from telegram.ext import Application

from analysis.analyzer import OpportunityAnalyzer
from analysis.cost_model import MarketConditions
from analysis.models import ArbitrageOpportunity, Quote, Token, Venue
from config import AppConfig
from constants import (
    C_BLUE,
    C_GREEN,
    C_RED,
    C_RESET,
    C_YELLOW,
    DISPATCH_TIMEOUT,
    NATIVE_PRICE_SYMBOL,
    POOL_EXHAUSTED_PAUSE,
)
from services.coingecko_client import ReferencePriceOracle
from services.endpoint_pool import EndpointPool, EndpointPoolExhausted, RpcError, TimedOut, run_bounded
from services.telegram_dispatcher import TelegramAlertDispatcher
from services.venue_quoter import VenueQuoter
from storage import NotificationDedupCache, make_key

logger = logging.getLogger(__name__)


@dataclass
class CycleCounters:
    checks: int = 0
    found: int = 0
    viable: int = 0
    fetch_success: int = 0
    fetch_failed: int = 0
    alerts_sent: int = 0
    alerts_suppressed: int = 0
    errors: int = 0

    @property
    def fetch_attempts(self) -> int:
        return self.fetch_success + self.fetch_failed

    @property
    def fetch_success_rate(self) -> float:
        if not self.fetch_attempts:
            return 1.0
        return self.fetch_success / self.fetch_attempts

    def merge(self, other: 'CycleCounters') -> None:
        for name, value in asdict(other).items():
            setattr(self, name, getattr(self, name) + value)


class ArbitrageScanner:
    def __init__(
        self,
        config: AppConfig,
        application: Optional[Application],
        pool: EndpointPool,
        quoter: VenueQuoter,
        analyzer: OpportunityAnalyzer,
        dispatcher: TelegramAlertDispatcher,
        dedup_cache: NotificationDedupCache,
        prices: ReferencePriceOracle,
        tokens: List[Token],
        venues: List[Venue],
        *,
        dispatch_timeout: float = DISPATCH_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.application = application
        self.state: Dict[str, Any] = application.bot_data if application is not None else {}
        self.pool = pool
        self.quoter = quoter
        self.analyzer = analyzer
        self.dispatcher = dispatcher
        self.dedup_cache = dedup_cache
        self.prices = prices
        self.tokens = tokens
        self.venues = venues
        self.dispatch_timeout = dispatch_timeout
        self._sleep = sleep
        self._venue_semaphore = asyncio.Semaphore(config.venue_concurrency)
        self.totals = CycleCounters()
        self.last_cycle = CycleCounters()
        self.cycles_completed = 0

    async def start(self):
        """Runs the fixed-interval scanning loop until cancelled."""
        await self._run_main_loop()

    async def _run_main_loop(self):
        """The main application loop."""
        while True:
            print("\n" + "="*50)
            print("Starting new spread scan cycle...")
            pause = self.config.interval
            try:
                await self.run_cycle()
                self.state['last_error'] = None
            except EndpointPoolExhausted as e:
                print(f"{C_RED}RPC endpoint pool exhausted: {e}{C_RESET}")
                self.state['last_error'] = str(e)
                self.totals.errors += 1
                outcome = await run_bounded(
                    self.dispatcher.send_error_alert("RPC endpoint pool exhausted", str(e)),
                    self.dispatch_timeout,
                    'error alert',
                )
                if isinstance(outcome, TimedOut):
                    print(f"{C_RED}Error alert timed out after {outcome.timeout:.0f}s.{C_RESET}")
                pause = max(self.config.interval, POOL_EXHAUSTED_PAUSE)
            except Exception as e:
                print(f"{C_RED}Error during scan cycle: {e}{C_RESET}")
                logger.exception("Scan cycle failed")
                self.state['last_error'] = str(e)
                self.totals.errors += 1

            await self._save_dedup_cache()
            print(f"Scan finished. Waiting {pause} seconds...")
            print("="*50)
            await self._sleep(pause)

    async def run_cycle(self) -> List[ArbitrageOpportunity]:
        """Scans every tracked token once and dispatches the top-ranked viable opportunities."""
        counters = CycleCounters()
        self.quoter.clear_expired()
        market = await self._market_conditions()

        opportunities: List[ArbitrageOpportunity] = []
        batch_size = max(1, self.config.batch_size)
        batches = [self.tokens[i:i + batch_size] for i in range(0, len(self.tokens), batch_size)]
        for idx, batch in enumerate(batches):
            results = await asyncio.gather(*(self._scan_token(token, market, counters) for token in batch))
            opportunities.extend(opp for opp in results if opp is not None)
            if idx < len(batches) - 1:
                await self._sleep(self.config.batch_pause)

        ranked = self.analyzer.rank_opportunities(opportunities, self.config.top_n)
        await self._dispatch(ranked, counters)

        self.last_cycle = counters
        self.totals.merge(counters)
        self.cycles_completed += 1
        self._publish_state(counters)
        self._print_cycle_summary(counters, ranked)

        if counters.fetch_attempts and counters.fetch_success_rate < self.config.min_fetch_success_rate:
            print(
                f"{C_YELLOW}Price fetch success rate {counters.fetch_success_rate:.0%} below "
                f"{self.config.min_fetch_success_rate:.0%}; rotating RPC endpoint.{C_RESET}"
            )
            await self.pool.rotate()

        return ranked

    async def _market_conditions(self) -> MarketConditions:
        await self.prices.refresh()
        gas_price: Optional[float] = None
        try:
            gas_price = await self.pool.gas_price_gwei()
        except (RpcError, ValueError, TypeError) as e:
            print(f"{C_YELLOW}Gas price unavailable ({e}); using static estimate.{C_RESET}")
        native_price = self.prices.live_price(NATIVE_PRICE_SYMBOL)
        hour = datetime.now(timezone.utc).hour
        if gas_price is not None:
            print(f"[Polygon] Gas Price: {gas_price:.2f} Gwei, MATIC: {f'${native_price:.4f}' if native_price else 'static'}")
        return MarketConditions(gas_price_gwei=gas_price, native_price_usd=native_price, utc_hour=hour)

    async def _scan_token(
        self,
        token: Token,
        market: MarketConditions,
        counters: CycleCounters,
    ) -> Optional[ArbitrageOpportunity]:
        """Quotes one token on every venue and scores the best spread."""
        print(f"Scanning token: {C_YELLOW}{token.symbol}{C_RESET} on {C_BLUE}{len(self.venues)}{C_RESET} venues")
        counters.checks += 1
        try:
            quotes = await asyncio.gather(*(self._quote_limited(token, venue) for venue in self.venues))
            for quote in quotes:
                if quote.success:
                    counters.fetch_success += 1
                else:
                    counters.fetch_failed += 1
                    logger.debug("%s on %s unavailable: %s", token.symbol, quote.venue, quote.error)

            opp = self.analyzer.find_opportunity(token.symbol, quotes, market)
            if opp is None:
                print(f"No actionable spread for {token.symbol}")
                return None

            counters.found += 1
            if opp.viable:
                counters.viable += 1
                print(
                    f"{C_GREEN}{token.symbol}: {opp.spread_bps:.2f} bps {opp.buy_venue} -> {opp.sell_venue}, "
                    f"adjusted ${opp.adjusted_profit_usd:.2f}, confidence {opp.confidence:.0%}{C_RESET}"
                )
            else:
                print(
                    f"{C_YELLOW}{token.symbol}: {opp.spread_bps:.2f} bps not viable "
                    f"(adjusted ${opp.adjusted_profit_usd:.2f}, confidence {opp.confidence:.0%}){C_RESET}"
                )
            return opp
        except Exception as e:
            counters.errors += 1
            print(f"{C_RED}Error scanning token {token.symbol}: {e}{C_RESET}")
            logger.exception("Token %s scan failed", token.symbol)
            return None

    async def _quote_limited(self, token: Token, venue: Venue) -> Quote:
        async with self._venue_semaphore:
            return await self.quoter.quote(token, venue, self.config.notional)

    async def _dispatch(self, ranked: List[ArbitrageOpportunity], counters: CycleCounters) -> None:
        for opp in ranked:
            key = make_key(opp.token, opp.buy_venue, opp.sell_venue, opp.spread_bps)
            if self.dedup_cache.is_duplicate(key):
                counters.alerts_suppressed += 1
                print(f"{C_YELLOW}Skipping notification for {opp.token} (cooldown).{C_RESET}")
                continue

            outcome = await run_bounded(
                self.dispatcher.send_opportunity(opp), self.dispatch_timeout, f"dispatch {key}"
            )
            if outcome is True:
                counters.alerts_sent += 1
                continue

            self.dedup_cache.release(key)
            counters.errors += 1
            if isinstance(outcome, TimedOut):
                print(f"{C_RED}Alert for {opp.token} timed out after {outcome.timeout:.0f}s.{C_RESET}")
            else:
                print(f"{C_RED}Alert for {opp.token} was not delivered.{C_RESET}")

    async def _save_dedup_cache(self) -> None:
        try:
            await self.dedup_cache.save()
        except OSError as e:
            print(f"{C_RED}Failed to persist notification cache: {e}{C_RESET}")

    def _publish_state(self, counters: CycleCounters) -> None:
        self.state['last_scan_time'] = time.strftime('%Y-%m-%d %H:%M:%S UTC', time.gmtime())
        self.state['found_last_scan'] = counters.found
        self.state['cycle_counters'] = asdict(counters)
        self.state['total_counters'] = asdict(self.totals)
        self.state['cycles_completed'] = self.cycles_completed
        self.state['quote_stats'] = dict(self.quoter.stats)

    def _print_cycle_summary(self, counters: CycleCounters, ranked: List[ArbitrageOpportunity]) -> None:
        snapshot = self.pool.snapshot()
        quote_paths = ', '.join(f"{method}={count}" for method, count in sorted(self.quoter.stats.items()))
        logger.info(
            "Cycle %d: %d checks, %d viable, fetch rate %.0f%%, quote paths [%s]",
            self.cycles_completed, counters.checks, counters.viable,
            counters.fetch_success_rate * 100, quote_paths,
        )
        print("-" * 40)
        print(
            f"Checks: {counters.checks} | Found: {counters.found} | Viable: {counters.viable} | "
            f"Alerts: {counters.alerts_sent} sent, {counters.alerts_suppressed} suppressed"
        )
        print(
            f"Price fetches: {counters.fetch_success} ok, {counters.fetch_failed} failed "
            f"({counters.fetch_success_rate:.0%}) | Errors: {counters.errors} | "
            f"RPC failovers: {snapshot['failovers']}"
        )
        if quote_paths:
            print(f"Quote paths: {quote_paths}")
        for rank, opp in enumerate(ranked, start=1):
            print(
                f"  #{rank} {opp.token} {opp.buy_venue} -> {opp.sell_venue} "
                f"${opp.adjusted_profit_usd:.2f} @ {opp.confidence:.0%} [{opp.evaluation.advice.action.value}]"
            )
