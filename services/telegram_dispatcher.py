#!/usr/bin/env python3
import html
import logging
from datetime import datetime, timezone
from typing import Optional

from telegram import Bot
from telegram.error import TelegramError

from analysis.models import ArbitrageOpportunity, Recommendation
from constants import C_GREEN, C_RESET, C_YELLOW

logger = logging.getLogger(__name__)

RECOMMENDATION_EMOJI = {
    Recommendation.EXECUTE_IMMEDIATELY: "🚀",
    Recommendation.EXECUTE: "✅",
    Recommendation.MONITOR: "👀",
    Recommendation.SKIP: "⏸️",
}


def format_opportunity_message(opp: ArbitrageOpportunity) -> str:
    """Formats a scored opportunity as a Telegram HTML message."""
    ev = opp.evaluation
    costs = ev.costs
    advice = ev.advice
    emoji = RECOMMENDATION_EMOJI.get(advice.action, "⚡")
    buy_route = " → ".join(opp.buy_quote.route) or opp.token
    sell_route = " → ".join(opp.sell_quote.route) or opp.token

    lines = [
        f"{emoji} <b>Spread: {html.escape(opp.token)} {opp.spread_bps:.2f} bps</b>",
        "",
        f"<b>Buy:</b> {html.escape(opp.buy_venue)} @ ${opp.buy_price:,.6f}",
        f"<b>Sell:</b> {html.escape(opp.sell_venue)} @ ${opp.sell_price:,.6f}",
        f"<b>Notional:</b> ${opp.notional_usd:,.0f}",
        "",
        f"<b>Gross:</b> ${opp.gross_profit_usd:,.2f} | <b>Adjusted:</b> ${opp.adjusted_profit_usd:,.2f} ({ev.roi_pct:.2f}%)",
        f"<b>Confidence:</b> {ev.confidence * 100:.1f}%",
        f"<b>Execution:</b> {ev.execution_seconds:.1f}s | <b>Window left:</b> {ev.time_remaining_seconds:.1f}s",
        f"<b>Decay:</b> {ev.decay.remaining_bps:.1f} bps left (half-life {ev.decay.half_life_seconds:.1f}s)",
        "",
        "<b>Costs:</b>",
        f"  Gas ${costs.gas_usd:.2f} @ {ev.gas_price_gwei:.1f} gwei",
        f"  Venue fees ${costs.venue_fees_usd:.2f}",
        f"  Slippage ${costs.slippage_usd:.2f}",
        f"  MEV/congestion ${costs.ancillary_usd:.2f}",
        "",
        f"<b>Paths:</b> {html.escape(buy_route)} | {html.escape(sell_route)}",
        f"<b>Recommendation:</b> {advice.action.value} ({html.escape(advice.reason)})",
    ]
    if ev.used_fallback_market:
        lines.append("<i>Gas or native price unavailable; static estimates used.</i>")
    lines.extend([
        "",
        "<i>Monitoring only. Not financial advice.</i>",
    ])
    return "\n".join(lines)


class TelegramAlertDispatcher:
    """Delivers alerts to one Telegram chat; logs them instead when disabled."""

    def __init__(self, bot: Optional[Bot], chat_id: Optional[str], enabled: bool = True):
        self.bot = bot
        self.chat_id = chat_id
        self.enabled = enabled and bot is not None and bool(chat_id)

    async def send_opportunity(self, opp: ArbitrageOpportunity) -> bool:
        return await self._send(format_opportunity_message(opp))

    async def send_error_alert(self, title: str, detail: str) -> bool:
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        message = (
            f"🚨 <b>{html.escape(title)}</b>\n\n"
            f"<pre>{html.escape(detail[:3000])}</pre>\n"
            f"<i>{timestamp}</i>"
        )
        return await self._send(message)

    async def send_status(self, text: str) -> bool:
        return await self._send(text)

    async def _send(self, message: str) -> bool:
        if not self.enabled:
            print(f"{C_YELLOW}[alert]{C_RESET} {message}")
            return True
        try:
            await self.bot.send_message(
                chat_id=self.chat_id,
                text=message,
                parse_mode='HTML',
            )
        except TelegramError as exc:
            logger.error("Telegram delivery failed: %s", exc)
            return False
        print(f"{C_GREEN}Alert delivered to Telegram.{C_RESET}")
        return True
