#!/usr/bin/env python3
"""Per-venue price and liquidity sampling over raw JSON-RPC reads."""
from __future__ import annotations

import logging
import math
import time
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from analysis.models import Quote, Token, Venue
from constants import (
    BRIDGE_TOKENS,
    CL_ACTIVE_LIQUIDITY_FRACTION,
    DEFAULT_LIQUIDITY_FLOOR,
    MULTI_HOP_BRIDGES,
    MULTI_HOP_EFFICIENCY,
    QUOTE_CACHE_TTL,
    SETTLEMENT_TOKEN,
    SLIPPAGE_BASE,
    SLIPPAGE_CAP,
    SLIPPAGE_FEE_TIER_MULTIPLIER,
    SLIPPAGE_STEPS,
    STABLE_LIQUIDITY_USD,
    STABLE_SLIPPAGE,
    STABLE_SYMBOLS,
)
from services.coingecko_client import ReferencePriceOracle
from services.endpoint_pool import EndpointPool, EndpointPoolExhausted, RpcError

logger = logging.getLogger(__name__)

ZERO_ADDRESS = '0x' + '0' * 40
Q96 = 2 ** 96
# Fee tiers are hundredths of a basis point.
FEE_TIER_DENOMINATOR = 1_000_000


def estimate_slippage(notional_usd: float, liquidity_usd: float, fee_tier: Optional[int] = None) -> float:
    """Stepped slippage fraction for a trade of ``notional_usd`` against ``liquidity_usd``."""
    if liquidity_usd <= 0:
        return SLIPPAGE_CAP
    ratio = notional_usd / liquidity_usd
    slippage = SLIPPAGE_BASE
    for threshold, value in SLIPPAGE_STEPS:
        if ratio > threshold:
            slippage = value
            break
    if fee_tier is not None:
        slippage *= SLIPPAGE_FEE_TIER_MULTIPLIER.get(fee_tier, 1.0)
    return min(slippage, SLIPPAGE_CAP)


@dataclass
class PoolLeg:
    """Valuation of ``token`` against one bridge asset in a single pool."""
    token: str
    bridge: str
    price: float  # token priced in bridge units
    liquidity_usd: float
    fee_tier: int
    pool_address: str


class VenueQuoter:
    """Produces a best-effort Quote for (token, venue, notional) without ever raising."""

    _GET_PAIR_SIG = "0xe6a43905"
    _GET_POOL_SIG = "0x1698ee82"
    _GET_RESERVES_SIG = "0x0902f1ac"
    _SLOT0_SIG = "0x3850c7bd"
    _LIQUIDITY_SIG = "0x1a686502"
    _QUOTE_EXACT_INPUT_SINGLE_SIG = "0xf7729d43"

    def __init__(
        self,
        pool: EndpointPool,
        tokens: Dict[str, Token],
        prices: ReferencePriceOracle,
        *,
        bridge_tokens: Sequence[str] = BRIDGE_TOKENS,
        multi_hop_bridges: Sequence[str] = MULTI_HOP_BRIDGES,
        settlement_token: str = SETTLEMENT_TOKEN,
        liquidity_floor: float = DEFAULT_LIQUIDITY_FLOOR,
        cache_ttl: float = QUOTE_CACHE_TTL,
        cl_liquidity_scale: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._pool = pool
        self._tokens = tokens
        self._prices = prices
        self._bridge_tokens = [symbol for symbol in bridge_tokens if symbol in tokens]
        self._multi_hop_bridges = [symbol for symbol in multi_hop_bridges if symbol in tokens]
        self._settlement_token = settlement_token
        self.liquidity_floor = liquidity_floor
        self._cache_ttl = cache_ttl
        self._cl_liquidity_scale = cl_liquidity_scale
        self._clock = clock
        self._cache: Dict[Tuple[str, str, float], Tuple[Quote, float]] = {}
        self._pool_address_cache: Dict[Tuple[str, str, str, int], str] = {}
        self.stats: Counter = Counter()

    async def quote(self, token: Token, venue: Venue, notional_usd: float) -> Quote:
        symbol = token.symbol.upper()
        if symbol in STABLE_SYMBOLS or token.is_stable:
            self.stats['stable'] += 1
            return Quote(
                token=symbol,
                venue=venue.name,
                price_usd=1.0,
                liquidity_usd=STABLE_LIQUIDITY_USD,
                success=True,
                route=(symbol,),
                slippage=STABLE_SLIPPAGE,
                method='stable',
                family=venue.family,
            )

        cache_key = (symbol, venue.name, round(notional_usd, 2))
        cached = self._cache.get(cache_key)
        if cached and self._clock() - cached[1] < self._cache_ttl:
            self.stats['cache_hit'] += 1
            return cached[0]

        try:
            quote = await self._quote_uncached(token, venue, notional_usd)
        except EndpointPoolExhausted as exc:
            quote = Quote.failed(symbol, venue.name, f"rpc_unavailable: {exc}")
        except (RpcError, ArithmeticError, ValueError, TypeError) as exc:
            logger.debug("Quote %s@%s failed: %s", symbol, venue.name, exc)
            quote = Quote.failed(symbol, venue.name, f"quote_error: {exc}")

        self.stats[quote.method] += 1
        if quote.success:
            self._cache[cache_key] = (quote, self._clock())
        return quote

    def clear_expired(self) -> None:
        now = self._clock()
        self._cache = {k: v for k, v in self._cache.items() if now - v[1] < self._cache_ttl}

    async def _quote_uncached(self, token: Token, venue: Venue, notional_usd: float) -> Quote:
        symbol = token.symbol.upper()
        best_rejected: Optional[PoolLeg] = None

        for bridge_symbol in self._bridge_tokens:
            if bridge_symbol == symbol:
                continue
            bridge_usd = self._prices.usd_price(bridge_symbol)
            if not bridge_usd:
                continue
            for leg in await self._legs(token, self._tokens[bridge_symbol], venue, notional_usd):
                if leg.liquidity_usd >= self.liquidity_floor:
                    return self._build_quote(
                        symbol, venue, notional_usd,
                        price_usd=leg.price * bridge_usd,
                        liquidity_usd=leg.liquidity_usd,
                        route=(symbol, bridge_symbol),
                        fee_tier=leg.fee_tier,
                        pool_address=leg.pool_address,
                        method='direct',
                    )
                if best_rejected is None or leg.liquidity_usd > best_rejected.liquidity_usd:
                    best_rejected = leg

        multi_hop = await self._multi_hop_quote(token, venue, notional_usd)
        if multi_hop is not None:
            return multi_hop

        if best_rejected is not None:
            reason = (
                f"liquidity ${best_rejected.liquidity_usd:,.0f} below floor "
                f"${self.liquidity_floor:,.0f} (best via {best_rejected.bridge})"
            )
        else:
            reason = "no pool found for any bridge token"
        return Quote.failed(symbol, venue.name, reason)

    async def _multi_hop_quote(self, token: Token, venue: Venue, notional_usd: float) -> Optional[Quote]:
        symbol = token.symbol.upper()
        settlement = self._tokens.get(self._settlement_token)
        settlement_usd = self._prices.usd_price(self._settlement_token)
        if settlement is None or not settlement_usd:
            return None

        for bridge_symbol in self._multi_hop_bridges:
            if bridge_symbol in (symbol, self._settlement_token):
                continue
            bridge = self._tokens[bridge_symbol]
            first = self._deepest(await self._legs(token, bridge, venue, notional_usd))
            if first is None:
                continue
            second = self._deepest(await self._legs(bridge, settlement, venue, notional_usd))
            if second is None:
                continue

            liquidity_usd = min(first.liquidity_usd, second.liquidity_usd) * MULTI_HOP_EFFICIENCY
            if liquidity_usd < self.liquidity_floor:
                continue
            return self._build_quote(
                symbol, venue, notional_usd,
                price_usd=first.price * second.price * settlement_usd,
                liquidity_usd=liquidity_usd,
                route=(symbol, bridge_symbol, self._settlement_token),
                fee_tier=first.fee_tier,
                pool_address=first.pool_address,
                method='multi_hop',
            )
        return None

    @staticmethod
    def _deepest(legs: List[PoolLeg]) -> Optional[PoolLeg]:
        return max(legs, key=lambda leg: leg.liquidity_usd, default=None)

    def _build_quote(
        self,
        symbol: str,
        venue: Venue,
        notional_usd: float,
        *,
        price_usd: float,
        liquidity_usd: float,
        route: Tuple[str, ...],
        fee_tier: int,
        pool_address: str,
        method: str,
    ) -> Quote:
        if not math.isfinite(price_usd) or price_usd <= 0:
            return Quote.failed(symbol, venue.name, f"invalid price {price_usd!r} via {'/'.join(route)}")
        return Quote(
            token=symbol,
            venue=venue.name,
            price_usd=price_usd,
            liquidity_usd=liquidity_usd,
            success=True,
            route=route,
            fee_tier=fee_tier,
            slippage=estimate_slippage(notional_usd, liquidity_usd, fee_tier),
            method=method,
            family=venue.family,
            pool_address=pool_address,
        )

    async def _legs(self, token: Token, bridge: Token, venue: Venue, notional_usd: float) -> List[PoolLeg]:
        """Valuations of ``token`` against ``bridge`` on every fee tier of ``venue``."""
        bridge_usd = self._prices.usd_price(bridge.symbol)
        if not bridge_usd:
            return []

        legs: List[PoolLeg] = []
        for fee_tier in venue.fee_tiers:
            try:
                if venue.is_concentrated:
                    leg = await self._concentrated_leg(token, bridge, bridge_usd, venue, fee_tier, notional_usd)
                else:
                    leg = await self._constant_product_leg(token, bridge, bridge_usd, venue, fee_tier, notional_usd)
            except EndpointPoolExhausted:
                raise
            except (RpcError, ArithmeticError, ValueError) as exc:
                logger.debug(
                    "%s/%s on %s (fee %d) unavailable: %s",
                    token.symbol, bridge.symbol, venue.name, fee_tier, exc,
                )
                continue
            if leg is not None:
                legs.append(leg)
            if not venue.is_concentrated:
                break
        return legs

    async def _constant_product_leg(
        self, token: Token, bridge: Token, bridge_usd: float, venue: Venue, fee_tier: int, notional_usd: float
    ) -> Optional[PoolLeg]:
        pair_address = await self._pair_address(venue, token, bridge)
        if pair_address is None:
            return None

        result = await self._pool.eth_call(pair_address, self._GET_RESERVES_SIG)
        reserve0, reserve1 = _word(result, 0), _word(result, 1)
        token_is_token0 = _is_token0(token.address, bridge.address)
        reserve_token_raw, reserve_bridge_raw = (reserve0, reserve1) if token_is_token0 else (reserve1, reserve0)
        if reserve_token_raw == 0 or reserve_bridge_raw == 0:
            return None

        reserve_token = reserve_token_raw / 10 ** token.decimals
        reserve_bridge = reserve_bridge_raw / 10 ** bridge.decimals
        spot_price = reserve_bridge / reserve_token

        # Execution price of the notional through x * y = k, fees excluded.
        amount_in = notional_usd / (spot_price * bridge_usd)
        amount_out = reserve_bridge * amount_in / (reserve_token + amount_in)
        price = amount_out / amount_in if amount_in > 0 else spot_price

        return PoolLeg(
            token=token.symbol,
            bridge=bridge.symbol,
            price=price,
            liquidity_usd=reserve_bridge * bridge_usd * 2,
            fee_tier=fee_tier,
            pool_address=pair_address,
        )

    async def _concentrated_leg(
        self, token: Token, bridge: Token, bridge_usd: float, venue: Venue, fee_tier: int, notional_usd: float
    ) -> Optional[PoolLeg]:
        pool_address = await self._pair_address(venue, token, bridge, fee_tier)
        if pool_address is None:
            return None

        slot0 = await self._pool.eth_call(pool_address, self._SLOT0_SIG)
        liquidity_raw = _word(await self._pool.eth_call(pool_address, self._LIQUIDITY_SIG), 0)
        sqrt_price = _word(slot0, 0) / Q96
        if sqrt_price == 0 or liquidity_raw == 0:
            return None

        token_is_token0 = _is_token0(token.address, bridge.address)
        if token_is_token0:
            price = sqrt_price ** 2 * 10 ** (token.decimals - bridge.decimals)
            bridge_virtual_raw = liquidity_raw * sqrt_price
        else:
            price = 1 / (sqrt_price ** 2 * 10 ** (bridge.decimals - token.decimals))
            bridge_virtual_raw = liquidity_raw / sqrt_price

        active_fraction = CL_ACTIVE_LIQUIDITY_FRACTION.get(fee_tier, 0.5)
        liquidity_usd = (
            bridge_virtual_raw / 10 ** bridge.decimals * bridge_usd * 2
            * active_fraction * self._cl_liquidity_scale
        )

        if venue.quoter:
            simulated = await self._simulate_exact_input(venue, token, bridge, fee_tier, price, bridge_usd, notional_usd)
            if simulated is not None:
                price = simulated

        return PoolLeg(
            token=token.symbol,
            bridge=bridge.symbol,
            price=price,
            liquidity_usd=liquidity_usd,
            fee_tier=fee_tier,
            pool_address=pool_address,
        )

    async def _simulate_exact_input(
        self,
        venue: Venue,
        token: Token,
        bridge: Token,
        fee_tier: int,
        spot_price: float,
        bridge_usd: float,
        notional_usd: float,
    ) -> Optional[float]:
        """Asks the venue quoter what selling the notional returns; None if it reverts.

        The quoter's output is net of the pool fee. It is grossed back up so the
        price is fee-exclusive like constant-product prices; the cost model
        charges venue fees once for both families.
        """
        amount_in = notional_usd / (spot_price * bridge_usd)
        amount_in_raw = int(amount_in * 10 ** token.decimals)
        if amount_in_raw <= 0:
            return None
        data = (
            self._QUOTE_EXACT_INPUT_SINGLE_SIG
            + _encode_address(token.address)
            + _encode_address(bridge.address)
            + _encode_uint(fee_tier)
            + _encode_uint(amount_in_raw)
            + _encode_uint(0)
        )
        try:
            result = await self._pool.eth_call(venue.quoter, data)
        except EndpointPoolExhausted:
            raise
        except RpcError as exc:
            logger.debug("Quoter simulation reverted for %s on %s: %s", token.symbol, venue.name, exc)
            return None
        amount_out = _word(result, 0) / 10 ** bridge.decimals
        if amount_out <= 0:
            return None
        amount_out /= 1 - fee_tier / FEE_TIER_DENOMINATOR
        return amount_out / (amount_in_raw / 10 ** token.decimals)

    async def _pair_address(self, venue: Venue, token: Token, bridge: Token, fee_tier: Optional[int] = None) -> Optional[str]:
        tier = fee_tier if venue.is_concentrated else 0
        cache_key = (venue.name, token.address.lower(), bridge.address.lower(), tier)
        if cache_key in self._pool_address_cache:
            address = self._pool_address_cache[cache_key]
        else:
            if venue.is_concentrated:
                data = self._GET_POOL_SIG + _encode_address(token.address) + _encode_address(bridge.address) + _encode_uint(tier)
            else:
                data = self._GET_PAIR_SIG + _encode_address(token.address) + _encode_address(bridge.address)
            address = _decode_address(await self._pool.eth_call(venue.factory, data))
            self._pool_address_cache[cache_key] = address
        if address == ZERO_ADDRESS:
            return None
        return address


def _is_token0(token_address: str, other_address: str) -> bool:
    return int(token_address, 16) < int(other_address, 16)


def _encode_address(address: str) -> str:
    return address.lower().removeprefix('0x').rjust(64, '0')


def _encode_uint(value: int) -> str:
    return format(value, '064x')


def _word(result: Optional[str], index: int) -> int:
    if not result or len(result) < 2 + 64 * (index + 1):
        raise ValueError("empty_result")
    start = 2 + 64 * index
    return int(result[start:start + 64], 16)


def _decode_address(value: Optional[str]) -> str:
    if not value or len(value) < 66:
        raise ValueError("empty_result")
    return '0x' + value[2:66][-40:].lower()
