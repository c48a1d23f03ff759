#!/usr/bin/env python3
"""Converts a raw two-venue spread into timing, costs, confidence and viability.

Everything here is a pure function of the draft, a market snapshot and a
``CostModelParams`` instance; missing live market data falls back to static
values so an evaluation always completes.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Optional

from analysis.models import (
    Advice,
    CostBreakdown,
    Evaluation,
    OpportunityDraft,
    ProtocolFamily,
    Quote,
    Recommendation,
    SpreadDecay,
)

STABLE_TOKENS = frozenset({'USDC', 'USDT', 'DAI'})
VOLATILE_TOKENS = frozenset({'AAVE', 'CRV'})


@dataclass
class CostModelParams:
    # Timing (seconds)
    block_time: float = 2.2
    confirmations: int = 1
    gas_estimation: float = 0.3
    propagation: float = 0.5
    rpc_latency: float = 0.15
    venue_processing: float = 0.8
    route_complexity_weight: float = 0.2
    min_execution_seconds: float = 3.0
    max_execution_seconds: float = 25.0
    min_window_seconds: float = 5.0
    max_window_seconds: float = 30.0

    # Spread decay
    decay_rate: float = 0.12
    stable_decay_multiplier: float = 0.6
    volatile_decay_multiplier: float = 1.4

    # Gas
    fallback_gas_price_gwei: float = 30.0
    fallback_native_price_usd: float = 0.9
    constant_product_swap_gas: int = 150_000
    concentrated_swap_gas: int = 200_000
    gas_buffer: float = 1.1
    min_gas_cost_usd: float = 0.5
    token_gas_multipliers: Dict[str, float] = field(default_factory=lambda: {'USDT': 1.5, 'WBTC': 1.2})

    # Ancillary surcharges (fraction of notional)
    mev_surcharge: float = 0.0008
    congestion_surcharge: float = 0.0003

    # Viability
    confidence_threshold: float = 0.4
    min_adjusted_profit_usd: float = 3.0
    min_roi_pct: float = 0.3

    volatility_multipliers: Dict[str, float] = field(default_factory=lambda: {
        'USDC': 1.5, 'USDT': 1.5, 'DAI': 1.5,
        'WETH': 1.0, 'WBTC': 1.1, 'WMATIC': 1.2,
        'LINK': 0.8, 'AAVE': 0.7, 'CRV': 0.6,
    })
    default_volatility_multiplier: float = 0.9
    token_reliability: Dict[str, float] = field(default_factory=lambda: {
        'USDC': 0.95, 'USDT': 0.9, 'DAI': 0.9,
        'WETH': 0.9, 'WBTC': 0.85, 'WMATIC': 0.9,
        'LINK': 0.8, 'AAVE': 0.75, 'CRV': 0.7,
    })
    default_token_reliability: float = 0.8


@dataclass
class MarketConditions:
    """Live network inputs; any field may be missing."""
    gas_price_gwei: Optional[float] = None
    native_price_usd: Optional[float] = None
    utc_hour: int = 12


def congestion_multiplier(utc_hour: int) -> float:
    if 13 <= utc_hour <= 21:
        return 1.3
    if utc_hour >= 22 or utc_hour <= 6:
        return 0.8
    return 1.0


def route_complexity(buy_quote: Quote, sell_quote: Quote) -> float:
    """0 for two direct legs, growing by 0.25 per extra hop."""
    extra_hops = max(buy_quote.hop_count, 1) + max(sell_quote.hop_count, 1) - 2
    return extra_hops / 4


def execution_time(draft: OpportunityDraft, market: MarketConditions, params: CostModelParams) -> float:
    load = congestion_multiplier(market.utc_hour)
    base = (
        params.gas_estimation * 2
        + params.propagation * load * 2
        + params.block_time * params.confirmations * 2
        + params.rpc_latency * 4
        + params.venue_processing * 2
    )
    scaled = base * (1 + params.route_complexity_weight * route_complexity(draft.buy_quote, draft.sell_quote))
    return min(params.max_execution_seconds, max(params.min_execution_seconds, scaled))


def viability_window(draft: OpportunityDraft, market: MarketConditions, params: CostModelParams) -> float:
    spread = draft.spread_bps
    if spread > 200:
        window = 25.0
    elif spread > 100:
        window = 20.0
    elif spread > 50:
        window = 15.0
    else:
        window = 10.0

    window *= params.volatility_multipliers.get(draft.token, params.default_volatility_multiplier)

    liquidity = draft.min_liquidity_usd
    if liquidity > 10_000:
        window *= 1.2
    elif liquidity <= 5_000:
        window *= 0.8

    if 13 <= market.utc_hour <= 20:
        window *= 1.1
    elif market.utc_hour >= 21 or market.utc_hour <= 6:
        window *= 0.9

    return min(params.max_window_seconds, max(params.min_window_seconds, window))


def spread_decay(token: str, spread_bps: float, elapsed_seconds: float, params: CostModelParams) -> SpreadDecay:
    rate = params.decay_rate
    if token in STABLE_TOKENS:
        rate *= params.stable_decay_multiplier
    elif token in VOLATILE_TOKENS:
        rate *= params.volatile_decay_multiplier
    if spread_bps > 150:
        rate *= 0.8
    elif spread_bps < 75:
        rate *= 1.3

    return SpreadDecay(
        original_bps=spread_bps,
        remaining_bps=spread_bps * math.exp(-rate * elapsed_seconds),
        decay_rate=rate,
        half_life_seconds=math.log(2) / rate,
    )


def gas_cost_usd(draft: OpportunityDraft, gas_price_gwei: float, native_price_usd: float, params: CostModelParams) -> float:
    gas_units = 0.0
    for quote in (draft.buy_quote, draft.sell_quote):
        if quote.family is ProtocolFamily.CONCENTRATED_LIQUIDITY:
            per_swap = params.concentrated_swap_gas
        else:
            per_swap = params.constant_product_swap_gas
        gas_units += per_swap * max(quote.hop_count, 1)
    gas_units *= params.token_gas_multipliers.get(draft.token, 1.0) * params.gas_buffer
    cost = gas_units * gas_price_gwei * 1e-9 * native_price_usd
    return max(params.min_gas_cost_usd, cost)


def costs(
    draft: OpportunityDraft,
    gas_price_gwei: float,
    native_price_usd: float,
    params: CostModelParams,
) -> CostBreakdown:
    notional = draft.notional_usd
    return CostBreakdown(
        gas_usd=gas_cost_usd(draft, gas_price_gwei, native_price_usd, params),
        venue_fees_usd=notional * (draft.buy_quote.fee_rate + draft.sell_quote.fee_rate),
        slippage_usd=notional * (draft.buy_quote.slippage + draft.sell_quote.slippage),
        ancillary_usd=notional * (params.mev_surcharge + params.congestion_surcharge),
    )


def confidence_score(
    draft: OpportunityDraft,
    execution_seconds: float,
    window_seconds: float,
    params: CostModelParams,
) -> float:
    confidence = 1.0
    confidence *= max(0.3, 1 - 0.6 * execution_seconds / window_seconds)

    if draft.spread_bps < 50:
        confidence *= 0.4
    elif draft.spread_bps < 75:
        confidence *= 0.6
    elif draft.spread_bps < 100:
        confidence *= 0.8

    liquidity = draft.min_liquidity_usd
    if liquidity > 10_000:
        confidence *= 1.0
    elif liquidity > 5_000:
        confidence *= 0.9
    elif liquidity > 2_000:
        confidence *= 0.7
    else:
        confidence *= 0.5

    confidence *= params.token_reliability.get(draft.token, params.default_token_reliability)

    longest_route = max(len(draft.buy_quote.route), len(draft.sell_quote.route))
    if longest_route <= 2:
        confidence *= 1.0
    elif longest_route <= 3:
        confidence *= 0.9
    else:
        confidence *= 0.8

    return min(0.95, max(0.1, confidence))


def is_viable(confidence: float, adjusted_profit_usd: float, notional_usd: float, params: CostModelParams) -> bool:
    if confidence < params.confidence_threshold:
        return False
    if adjusted_profit_usd < params.min_adjusted_profit_usd:
        return False
    roi_pct = adjusted_profit_usd / notional_usd * 100 if notional_usd > 0 else 0.0
    return roi_pct >= params.min_roi_pct


def recommend(confidence: float, adjusted_profit_usd: float, time_remaining_seconds: float) -> Advice:
    if adjusted_profit_usd < 3 or confidence < 0.3:
        return Advice(Recommendation.SKIP, 'Low profit or confidence', 0)
    if confidence > 0.8 and adjusted_profit_usd > 20:
        return Advice(
            Recommendation.EXECUTE_IMMEDIATELY,
            f'High confidence and profit, {time_remaining_seconds:.0f}s left',
            3,
        )
    if confidence > 0.6 and adjusted_profit_usd > 10:
        return Advice(Recommendation.EXECUTE, 'Good opportunity', 2)
    if confidence > 0.4 and adjusted_profit_usd > 5:
        return Advice(Recommendation.MONITOR, 'Worth watching, moderate risk', 1)
    return Advice(Recommendation.SKIP, 'Risk outweighs expected profit', 0)


def evaluate(
    draft: OpportunityDraft,
    market: Optional[MarketConditions] = None,
    params: Optional[CostModelParams] = None,
) -> Evaluation:
    market = market or MarketConditions()
    params = params or CostModelParams()

    used_fallback = False
    gas_price = market.gas_price_gwei
    if gas_price is None or not math.isfinite(gas_price) or gas_price <= 0:
        gas_price = params.fallback_gas_price_gwei
        used_fallback = True
    native_price = market.native_price_usd
    if native_price is None or not math.isfinite(native_price) or native_price <= 0:
        native_price = params.fallback_native_price_usd
        used_fallback = True

    exec_seconds = execution_time(draft, market, params)
    window_seconds = viability_window(draft, market, params)
    decay = spread_decay(draft.token, draft.spread_bps, exec_seconds, params)
    breakdown = costs(draft, gas_price, native_price, params)

    decayed_gross = draft.gross_profit_usd * decay.remaining_fraction
    adjusted = max(0.0, min(draft.gross_profit_usd, decayed_gross - breakdown.total_usd))
    roi_pct = adjusted / draft.notional_usd * 100 if draft.notional_usd > 0 else 0.0
    confidence = confidence_score(draft, exec_seconds, window_seconds, params)
    time_remaining = max(0.0, window_seconds - exec_seconds)

    return Evaluation(
        execution_seconds=exec_seconds,
        window_seconds=window_seconds,
        deadline=draft.discovered_at + window_seconds,
        decay=decay,
        costs=breakdown,
        adjusted_profit_usd=adjusted,
        roi_pct=roi_pct,
        confidence=confidence,
        viable=is_viable(confidence, adjusted, draft.notional_usd, params),
        advice=recommend(confidence, adjusted, time_remaining),
        gas_price_gwei=gas_price,
        native_price_usd=native_price,
        used_fallback_market=used_fallback,
    )
