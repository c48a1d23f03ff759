import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from bot.handlers import help_command, scaninfo_command, status_command


def make_update_and_context(bot_data):
    update = MagicMock()
    update.message.reply_html = AsyncMock()
    update.message.reply_text = AsyncMock()
    context = MagicMock()
    context.application.bot_data = bot_data
    return update, context


@pytest.mark.asyncio
async def test_status_reports_counters_and_rpc_health():
    pool = MagicMock()
    pool.snapshot.return_value = {'active': 'https://polygon-rpc.com', 'healthy': 2, 'size': 3, 'failovers': 4,
                                  'latency_ms': 182}
    task = MagicMock()
    task.done.return_value = False
    update, context = make_update_and_context({
        'start_time': time.time() - 65,
        'scanner_task': task,
        'cycles_completed': 7,
        'cycle_counters': {'checks': 6, 'found': 2, 'viable': 1, 'alerts_sent': 1,
                           'fetch_success': 20, 'fetch_failed': 4},
        'total_counters': {'viable': 5, 'alerts_sent': 3, 'errors': 1},
        'endpoint_pool': pool,
        'quote_stats': {'direct': 9, 'failed': 2, 'cache_hit': 5},
        'last_error': '<timeout>',
    })

    await status_command(update, context)

    text = update.message.reply_html.await_args.args[0]
    assert '✅ Running' in text
    assert 'Cycles: <code>7</code>' in text
    assert '6 checks, 2 found, 1 viable, 1 alerts' in text
    assert 'Healthy: <code>2/3</code>' in text
    assert 'Failovers: <code>4</code>' in text
    assert 'Latency: <code>182 ms</code>' in text
    assert 'Quote paths: <code>cache_hit=5, direct=9, failed=2</code>' in text
    assert '&lt;timeout&gt;' in text


@pytest.mark.asyncio
async def test_status_without_scanner_task():
    update, context = make_update_and_context({'start_time': time.time()})

    await status_command(update, context)

    text = update.message.reply_html.await_args.args[0]
    assert 'Not running' in text
    assert 'RPC' not in text


@pytest.mark.asyncio
async def test_scaninfo_lists_tokens_and_thresholds():
    update, context = make_update_and_context({'scan_info': {
        'tokens': ['WETH', 'LINK'],
        'venues': ['quickswap', 'uniswap_v3'],
        'notional': 1000.0,
        'min_spread_bps': 20.0,
        'interval': 60,
    }})

    await scaninfo_command(update, context)

    text = update.message.reply_html.await_args.args[0]
    assert 'WETH, LINK' in text
    assert 'quickswap, uniswap_v3' in text
    assert '$1,000' in text
    assert '20.0 bps' in text


@pytest.mark.asyncio
async def test_scaninfo_without_config_replies_plain_text():
    update, context = make_update_and_context({})

    await scaninfo_command(update, context)

    update.message.reply_text.assert_awaited_once_with("Scanner configuration not found.")


@pytest.mark.asyncio
async def test_help_lists_commands():
    update, context = make_update_and_context({})

    await help_command(update, context)

    text = update.message.reply_html.await_args.args[0]
    assert '/status' in text and '/scaninfo' in text
