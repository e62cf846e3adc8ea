# app.py
import asyncio
import logging
import threading
from typing import Callable, Optional

from flask import Flask, jsonify

from spotbot.bot_manager import BotManager
from spotbot.config import config
from spotbot.logger import setup_logging


class BotService:
    """Runs a BotManager on its own event loop in a background thread."""

    def __init__(self, factory: Callable[[], BotManager] = lambda: BotManager(config)):
        self.factory = factory
        self.bot_manager: Optional[BotManager] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.thread: Optional[threading.Thread] = None
        self.error: Optional[str] = None

    def is_running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def _run(self):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        try:
            self.bot_manager = self.factory()
            self.loop.run_until_complete(self.bot_manager.run())
        except Exception as e:
            logging.error(f"Bot task finished with an exception: {e}")
            self.error = str(e)
        finally:
            self.loop.close()

    def start(self) -> bool:
        if self.is_running():
            return False
        self.error = None
        self.thread = threading.Thread(target=self._run, name="spotbot", daemon=True)
        self.thread.start()
        return True

    def stop(self, timeout: float = 30.0) -> bool:
        if not self.is_running() or self.bot_manager is None:
            return False
        future = asyncio.run_coroutine_threadsafe(self.bot_manager.shutdown(), self.loop)
        future.result(timeout)
        self.thread.join(timeout)
        return True


def create_app(service: Optional[BotService] = None, auto_start: bool = True) -> Flask:
    service = service or BotService()
    app = Flask(__name__)
    app.config["BOT_SERVICE"] = service

    @app.before_request
    def startup():
        """
        On the first request, start the bot in the background.
        This ensures the bot starts automatically when the container runs.
        """
        if auto_start and service.thread is None:
            logging.info("Flask server started. Launching bot in the background...")
            service.start()

    @app.route('/status', methods=['GET'])
    def status():
        """Endpoint to check the status of the bot."""
        if service.is_running():
            body = service.bot_manager.status() if service.bot_manager else {}
            return jsonify({"status": "running", **body}), 200
        if service.error:
            return jsonify({"status": "crashed", "error": service.error}), 500
        if service.thread is not None:
            return jsonify({"status": "stopped"}), 200
        return jsonify({"status": "not_started"}), 200

    @app.route('/start', methods=['POST'])
    def start_bot():
        """Endpoint to manually start the bot if it was stopped."""
        if service.start():
            logging.info("Received /start command. Launching bot...")
            return jsonify({"status": "started"}), 201
        return jsonify({"status": "already_running"}), 409

    @app.route('/stop', methods=['POST'])
    def stop_bot():
        """Endpoint to gracefully stop the bot."""
        logging.info("Received /stop command. Stopping bot...")
        if service.stop():
            return jsonify({"status": "stopping"}), 200
        return jsonify({"status": "not_running"}), 404

    return app


if __name__ == "__main__":
    setup_logging(config.LOG_LEVEL, config.LOG_FILE if config.ENABLE_TRADE_LOGGING else None)
    create_app().run(host="0.0.0.0", port=8080)
