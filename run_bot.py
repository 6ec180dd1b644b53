#!/usr/bin/env python3
"""
Entry point for running the Netmod ban-all bot with logging enabled.

Usage:
    python run_bot.py

Environment:
    - NETMOD_TELEGRAM_TOKEN
    - NETMOD_LOG_CHAT__CHAT_ID
    - NETMOD_BACKEND__BASE_URL

The script loads configuration via BotSettings (reads .env by default) and starts
the TelegramBanAllApp with graceful shutdown on Ctrl+C.
"""

import asyncio

from netmod_bot import TelegramBanAllApp
from netmod_bot.config import BotSettings


async def _main() -> None:
    settings = BotSettings()
    app = TelegramBanAllApp(settings)
    await app.run()


if __name__ == "__main__":
    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        print("\n\n🛑 Bot shutdown requested by user.")
