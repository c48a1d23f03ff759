from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.error import NetworkError

from analysis.analyzer import OpportunityAnalyzer
from analysis.cost_model import MarketConditions
from analysis.models import ProtocolFamily, Quote
from services.telegram_dispatcher import TelegramAlertDispatcher, format_opportunity_message


def _quote(venue, price, route=('WETH', 'USDC')):
    return Quote(
        token='WETH',
        venue=venue,
        price_usd=price,
        liquidity_usd=250_000.0,
        success=True,
        route=route,
        fee_tier=500,
        slippage=0.001,
        family=ProtocolFamily.CONSTANT_PRODUCT,
    )


@pytest.fixture
def opportunity():
    analyzer = OpportunityAnalyzer(notional_usd=1000.0, min_spread_bps=20.0, liquidity_floor=1000.0)
    quotes = [
        _quote('quick<swap>', 2000.0),
        _quote('uniswap_v3', 2060.0, route=('WETH', 'WMATIC', 'USDC')),
    ]
    return analyzer.find_opportunity('WETH', quotes, MarketConditions(gas_price_gwei=40.0, native_price_usd=0.5))


def test_message_contains_prices_costs_and_recommendation(opportunity):
    message = format_opportunity_message(opportunity)

    assert 'WETH 300.00 bps' in message
    assert 'quick&lt;swap&gt; @ $2,000.000000' in message
    assert 'uniswap_v3 @ $2,060.000000' in message
    assert 'Gas $' in message and '@ 40.0 gwei' in message
    assert 'WETH → WMATIC → USDC' in message
    assert f'<b>Recommendation:</b> {opportunity.evaluation.advice.action.value}' in message
    assert 'static estimates used' not in message
    assert 'Not financial advice' in message


@pytest.mark.asyncio
async def test_send_opportunity_posts_html_to_chat(opportunity):
    bot = MagicMock()
    bot.send_message = AsyncMock()
    dispatcher = TelegramAlertDispatcher(bot, '12345')

    assert await dispatcher.send_opportunity(opportunity) is True

    bot.send_message.assert_awaited_once()
    kwargs = bot.send_message.await_args.kwargs
    assert kwargs['chat_id'] == '12345'
    assert kwargs['parse_mode'] == 'HTML'
    assert 'WETH 300.00 bps' in kwargs['text']


@pytest.mark.asyncio
async def test_telegram_failure_reports_false(opportunity):
    bot = MagicMock()
    bot.send_message = AsyncMock(side_effect=NetworkError('Bad Gateway'))
    dispatcher = TelegramAlertDispatcher(bot, '12345')

    assert await dispatcher.send_opportunity(opportunity) is False


@pytest.mark.asyncio
async def test_disabled_dispatcher_prints_instead_of_sending(capsys):
    bot = MagicMock()
    bot.send_message = AsyncMock()
    dispatcher = TelegramAlertDispatcher(bot, None)

    assert dispatcher.enabled is False
    assert await dispatcher.send_error_alert('RPC endpoint pool exhausted', '<all endpoints failed>') is True

    bot.send_message.assert_not_awaited()
    output = capsys.readouterr().out
    assert '[alert]' in output
    assert '&lt;all endpoints failed&gt;' in output
