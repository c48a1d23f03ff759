# bot/handlers.py
import html
import time

from telegram import Update
from telegram.ext import ContextTypes

# --- Command Handlers ---

async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Displays a help message with all available commands."""
    help_text = """
    <b>Welcome to the DEX Spread Monitor!</b>

    This bot watches Polygon DEX venues for cross-venue price spreads and alerts when a spread survives estimated costs.

    <b><u>Available Commands:</u></b>
    /status - Get bot status, cycle counters and RPC health
    /scaninfo - See current scan configuration
    /help - Show this help message
    """
    await update.message.reply_html(help_text)

async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Checks and reports the bot's operational status and scanner state."""
    bot_data = context.application.bot_data
    scanner_task = bot_data.get('scanner_task')
    start_time = bot_data.get('start_time', 0)

    # Calculate uptime
    uptime_seconds = time.time() - start_time
    uptime_str = time.strftime('%H:%M:%S', time.gmtime(uptime_seconds))

    # Determine scanner status
    if scanner_task and not scanner_task.done():
        scanner_status = "✅ Running"
    elif scanner_task and scanner_task.done():
        if not scanner_task.cancelled() and scanner_task.exception():
            scanner_status = "❌ Stopped with error"
        else:
            scanner_status = "⏹️ Stopped"
    else:
        scanner_status = "⚠️ Not running"

    status_text = (
        f"<b>🤖 Bot Status</b>\n"
        f"Uptime: <code>{uptime_str}</code>\n\n"
        f"<b>🔍 Scanner</b>\n"
        f"Status: {scanner_status}\n"
        f"Last Scan: <code>{bot_data.get('last_scan_time', 'Never')}</code>\n"
        f"Cycles: <code>{bot_data.get('cycles_completed', 0)}</code>\n"
    )

    cycle = bot_data.get('cycle_counters')
    if cycle:
        status_text += (
            f"Last cycle: <code>{cycle['checks']} checks, {cycle['found']} found, "
            f"{cycle['viable']} viable, {cycle['alerts_sent']} alerts</code>\n"
            f"Price fetches: <code>{cycle['fetch_success']} ok / {cycle['fetch_failed']} failed</code>\n"
        )
    totals = bot_data.get('total_counters')
    if totals:
        status_text += (
            f"Totals: <code>{totals['viable']} viable, {totals['alerts_sent']} alerts, "
            f"{totals['errors']} errors</code>\n"
        )

    pool = bot_data.get('endpoint_pool')
    if pool is not None:
        snapshot = pool.snapshot()
        status_text += (
            f"\n<b>🌐 RPC</b>\n"
            f"Active: <code>{html.escape(str(snapshot['active']))}</code>\n"
            f"Healthy: <code>{snapshot['healthy']}/{snapshot['size']}</code>\n"
            f"Failovers: <code>{snapshot['failovers']}</code>\n"
        )
        if snapshot.get('latency_ms') is not None:
            status_text += f"Latency: <code>{snapshot['latency_ms']} ms</code>\n"

    quote_stats = bot_data.get('quote_stats')
    if quote_stats:
        paths = ", ".join(f"{method}={count}" for method, count in sorted(quote_stats.items()))
        status_text += f"Quote paths: <code>{html.escape(paths)}</code>\n"

    last_error = bot_data.get('last_error')
    if last_error:
        status_text += f"\nLast Error: <pre>{html.escape(last_error)}</pre>\n"

    await update.message.reply_html(status_text)

async def scaninfo_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Displays the current tokens, venues and thresholds being scanned."""
    scan_info = context.application.bot_data.get('scan_info')

    if not scan_info:
        await update.message.reply_text("Scanner configuration not found.")
        return

    tokens = ", ".join(scan_info.get('tokens', []))
    venues = ", ".join(scan_info.get('venues', []))

    message = (
        f"<b>🔍 Current Scanner Configuration</b>\n\n"
        f"<b>Tokens:</b> <code>{tokens}</code>\n"
        f"<b>Venues:</b> <code>{venues}</code>\n"
        f"<b>Notional:</b> <code>${scan_info.get('notional', 0):,.0f}</code>\n"
        f"<b>Min spread:</b> <code>{scan_info.get('min_spread_bps', 0)} bps</code>\n"
        f"<b>Interval:</b> <code>{scan_info.get('interval', 0)}s</code>"
    )

    await update.message.reply_html(message)
