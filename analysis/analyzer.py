#!/usr/bin/env python3
import math
import time
from typing import Dict, Iterable, List, Optional

from analysis import cost_model
from analysis.cost_model import CostModelParams, MarketConditions
from analysis.models import ArbitrageOpportunity, OpportunityDraft, Quote


def calculate_spread_bps(sell_price: float, buy_price: float) -> float:
    """Spread of ``sell_price`` over ``buy_price`` in basis points, rounded to 2dp."""
    if buy_price <= 0:
        return 0.0
    return round(((sell_price - buy_price) / buy_price) * 10000, 2)


class OpportunityAnalyzer:
    def __init__(
        self,
        *,
        notional_usd: float,
        min_spread_bps: float,
        liquidity_floor: float,
        params: Optional[CostModelParams] = None,
    ):
        self.notional_usd = notional_usd
        self.min_spread_bps = min_spread_bps
        self.liquidity_floor = liquidity_floor
        self.params = params or CostModelParams()

    def valid_quotes(self, quotes: Iterable[Quote]) -> List[Quote]:
        """Keeps successful quotes with a finite positive price and enough liquidity."""
        return [
            quote for quote in quotes
            if quote.success
            and math.isfinite(quote.price_usd)
            and quote.price_usd > 0
            and math.isfinite(quote.liquidity_usd)
            and quote.liquidity_usd >= self.liquidity_floor
        ]

    def find_opportunity(
        self,
        token: str,
        quotes: Iterable[Quote],
        market: Optional[MarketConditions] = None,
        discovered_at: Optional[float] = None,
    ) -> Optional[ArbitrageOpportunity]:
        """Builds and scores the best buy-low/sell-high pair for one token, or None."""
        by_venue: Dict[str, Quote] = {}
        for quote in self.valid_quotes(quotes):
            by_venue.setdefault(quote.venue, quote)
        if len(by_venue) < 2:
            return None

        buy = min(by_venue.values(), key=lambda q: q.price_usd)
        sell = max(by_venue.values(), key=lambda q: q.price_usd)
        if buy.venue == sell.venue:
            return None

        spread_bps = calculate_spread_bps(sell.price_usd, buy.price_usd)
        if spread_bps < self.min_spread_bps or spread_bps <= 0:
            return None

        discovered_at = time.time() if discovered_at is None else discovered_at
        draft = OpportunityDraft(
            token=token,
            buy_quote=buy,
            sell_quote=sell,
            spread_bps=spread_bps,
            notional_usd=self.notional_usd,
            gross_profit_usd=self.notional_usd * spread_bps / 10000,
            discovered_at=discovered_at,
        )
        evaluation = cost_model.evaluate(draft, market, self.params)

        return ArbitrageOpportunity(
            token=token,
            buy_venue=buy.venue,
            buy_price=buy.price_usd,
            sell_venue=sell.venue,
            sell_price=sell.price_usd,
            spread_bps=spread_bps,
            notional_usd=self.notional_usd,
            gross_profit_usd=draft.gross_profit_usd,
            buy_quote=buy,
            sell_quote=sell,
            evaluation=evaluation,
            discovered_at=discovered_at,
        )

    @staticmethod
    def rank_opportunities(opportunities: Iterable[ArbitrageOpportunity], top_n: int) -> List[ArbitrageOpportunity]:
        """Viable opportunities ordered by adjusted profit x confidence, best first."""
        viable = [opp for opp in opportunities if opp.viable]
        viable.sort(key=lambda opp: opp.score, reverse=True)
        return viable[:max(0, top_n)]
