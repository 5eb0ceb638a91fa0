"""Main entry point for starting the Telegram bot."""

import asyncio
import os
import signal

import aiohttp
from telegram import BotCommand
from telegram.ext import ApplicationBuilder, CommandHandler, MessageHandler, filters

from . import config, db, handlers
from .monitor import AlertMonitor

COMMAND_HANDLERS = [
    ("start", handlers.start),
    ("help", handlers.help_cmd),
    ("create", handlers.create_cmd),
    ("import", handlers.import_cmd),
    ("recover", handlers.recover_cmd),
    ("wallet", handlers.wallet_cmd),
    ("balance", handlers.balance_cmd),
    ("portfolio", handlers.portfolio_cmd),
    ("save", handlers.save_cmd),
    ("unlock", handlers.unlock_cmd),
    ("forget", handlers.forget_cmd),
    ("disconnect", handlers.disconnect_cmd),
    ("buy", handlers.buy_cmd),
    ("sell", handlers.sell_cmd),
    ("confirm", handlers.confirm_cmd),
    ("cancel", handlers.cancel_cmd),
    ("price", handlers.price_cmd),
    ("alert", handlers.alert_cmd),
    ("alerts", handlers.alerts_cmd),
    ("removealert", handlers.removealert_cmd),
    ("settings", handlers.settings_cmd),
    ("slippage", handlers.slippage_cmd),
    ("fee", handlers.fee_cmd),
]


async def main() -> None:
    """Run the Telegram bot until the process receives a stop signal."""
    await db.init_db()

    token = os.getenv("TELEGRAM_TOKEN")
    if not token:
        raise RuntimeError("TELEGRAM_TOKEN not set")

    app = ApplicationBuilder().token(token).concurrent_updates(True).build()

    for name, callback in COMMAND_HANDLERS:
        app.add_handler(CommandHandler(name, callback))
    app.add_handler(
        MessageHandler(filters.TEXT & ~filters.COMMAND, handlers.text_input)
    )

    http = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=config.HTTP_TIMEOUT)
    )
    services = handlers.build_services(http)
    services.monitor = AlertMonitor(
        services.store,
        services.oracle,
        handlers.alert_notifier(app.bot),
        tokens=services.tokens,
    )
    app.bot_data["services"] = services

    try:
        await app.initialize()
        await app.bot.set_my_commands(
            [BotCommand(name, desc) for name, desc in handlers.COMMANDS]
        )
        services.monitor.start()
        await app.start()
        await app.updater.start_polling()
        config.logger.info(f"{config.BOT_NAME} started")

        stop_event = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            asyncio.get_running_loop().add_signal_handler(sig, stop_event.set)

        await stop_event.wait()
        await app.updater.stop()
        await app.stop()
        await app.shutdown()
    finally:
        await services.close()
    config.logger.info(f"{config.BOT_NAME} stopped")
