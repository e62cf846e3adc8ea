# main.py
import asyncio
import logging
import os
import signal
import sys
from typing import Set

from spotbot.logger import setup_logging
from spotbot.config import config
from spotbot.bot_manager import BotManager, StartupError


def install_signal_handlers(loop: asyncio.AbstractEventLoop, bot_manager: BotManager) -> Set[asyncio.Task]:
    """
    First SIGINT/SIGTERM shuts down gracefully; a second one exits at once.
    Returns the set holding the pending shutdown task.
    """
    shutdown_tasks: Set[asyncio.Task] = set()

    def handle_shutdown(sig):
        if shutdown_tasks:
            logging.warning(f"Received second signal {sig.name}. Exiting immediately.")
            os._exit(1)
        logging.info(f"Received shutdown signal {sig.name}, shutting down gracefully...")
        shutdown_tasks.add(loop.create_task(bot_manager.shutdown()))

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_shutdown, sig)
    return shutdown_tasks


async def main(bot_manager: BotManager = None):
    bot_manager = bot_manager or BotManager(config)
    shutdown_tasks = install_signal_handlers(asyncio.get_running_loop(), bot_manager)
    await bot_manager.run()
    # run() returns once shutdown has cancelled the services; let shutdown finish
    await asyncio.gather(*shutdown_tasks)


if __name__ == "__main__":
    setup_logging(config.LOG_LEVEL, config.LOG_FILE if config.ENABLE_TRADE_LOGGING else None)
    logging.info(f"Initializing multi-strategy spot bot in {config.MODE} mode...")
    try:
        config.validate()
    except ValueError as e:
        logging.critical(f"Invalid configuration: {e}")
        sys.exit(1)

    try:
        asyncio.run(main())
    except StartupError as e:
        logging.critical(f"Startup failed: {e}")
        sys.exit(1)
    finally:
        logging.info("Bot shutdown complete.")
