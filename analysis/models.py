#!/usr/bin/env python3
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class ProtocolFamily(str, Enum):
    CONSTANT_PRODUCT = 'constant_product'
    CONCENTRATED_LIQUIDITY = 'concentrated_liquidity'


class Recommendation(str, Enum):
    SKIP = 'SKIP'
    MONITOR = 'MONITOR'
    EXECUTE = 'EXECUTE'
    EXECUTE_IMMEDIATELY = 'EXECUTE_IMMEDIATELY'


@dataclass(frozen=True)
class Token:
    """A tracked ERC-20 token."""
    symbol: str
    address: str
    decimals: int
    is_stable: bool = False


@dataclass(frozen=True)
class Venue:
    """A DEX deployment queried for prices."""
    name: str
    family: ProtocolFamily
    factory: str
    fee_tiers: Tuple[int, ...] = (3000,)
    router: Optional[str] = None
    quoter: Optional[str] = None

    @property
    def is_concentrated(self) -> bool:
        return self.family is ProtocolFamily.CONCENTRATED_LIQUIDITY


@dataclass
class Quote:
    """Best-effort price and liquidity sample for one (token, venue) pair."""
    token: str
    venue: str
    price_usd: float
    liquidity_usd: float
    success: bool
    route: Tuple[str, ...] = ()
    fee_tier: Optional[int] = None
    slippage: float = 0.0
    method: str = 'direct'
    family: Optional[ProtocolFamily] = None
    pool_address: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def failed(cls, token: str, venue: str, error: str) -> 'Quote':
        return cls(
            token=token,
            venue=venue,
            price_usd=0.0,
            liquidity_usd=0.0,
            success=False,
            method='failed',
            error=error,
        )

    @property
    def fee_rate(self) -> float:
        if not self.fee_tier:
            return 0.0
        # Multi-hop routes pay the venue fee on each leg.
        return self.fee_tier / 1_000_000 * max(self.hop_count, 1)

    @property
    def hop_count(self) -> int:
        return max(len(self.route) - 1, 0)


@dataclass
class OpportunityDraft:
    """Raw two-venue spread before costs and timing are applied."""
    token: str
    buy_quote: Quote
    sell_quote: Quote
    spread_bps: float
    notional_usd: float
    gross_profit_usd: float
    discovered_at: float

    @property
    def min_liquidity_usd(self) -> float:
        return min(self.buy_quote.liquidity_usd, self.sell_quote.liquidity_usd)


@dataclass
class CostBreakdown:
    gas_usd: float
    venue_fees_usd: float
    slippage_usd: float
    ancillary_usd: float

    @property
    def total_usd(self) -> float:
        return self.gas_usd + self.venue_fees_usd + self.slippage_usd + self.ancillary_usd


@dataclass
class SpreadDecay:
    original_bps: float
    remaining_bps: float
    decay_rate: float
    half_life_seconds: float

    @property
    def remaining_fraction(self) -> float:
        if self.original_bps <= 0:
            return 0.0
        return self.remaining_bps / self.original_bps


@dataclass
class Advice:
    action: Recommendation
    reason: str
    priority: int


@dataclass
class Evaluation:
    """Timing, cost and confidence fields derived for one draft."""
    execution_seconds: float
    window_seconds: float
    deadline: float
    decay: SpreadDecay
    costs: CostBreakdown
    adjusted_profit_usd: float
    roi_pct: float
    confidence: float
    viable: bool
    advice: Advice
    gas_price_gwei: float
    native_price_usd: float
    used_fallback_market: bool = False

    @property
    def time_remaining_seconds(self) -> float:
        return max(0.0, self.window_seconds - self.execution_seconds)


@dataclass
class ArbitrageOpportunity:
    """Represents a scored cross-venue arbitrage opportunity."""
    token: str
    buy_venue: str
    buy_price: float
    sell_venue: str
    sell_price: float
    spread_bps: float
    notional_usd: float
    gross_profit_usd: float
    buy_quote: Quote
    sell_quote: Quote
    evaluation: Evaluation
    discovered_at: float

    @property
    def adjusted_profit_usd(self) -> float:
        return self.evaluation.adjusted_profit_usd

    @property
    def confidence(self) -> float:
        return self.evaluation.confidence

    @property
    def viable(self) -> bool:
        return self.evaluation.viable

    @property
    def score(self) -> float:
        return self.adjusted_profit_usd * self.confidence
