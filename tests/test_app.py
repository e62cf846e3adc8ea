import asyncio
import threading
from unittest.mock import MagicMock

import pytest

from app import BotService, create_app
from spotbot.bot_manager import StartupError


class FakeService:
    def __init__(self):
        self.thread = None
        self.error = None
        self.bot_manager = None
        self.running = False

    def is_running(self):
        return self.running

    def start(self):
        if self.running:
            return False
        self.running = True
        self.thread = object()
        self.bot_manager = MagicMock()
        self.bot_manager.status.return_value = {"mode": "SIMULATION", "halted": False}
        return True

    def stop(self):
        if not self.running:
            return False
        self.running = False
        return True


@pytest.fixture
def service():
    return FakeService()


@pytest.fixture
def client(service):
    return create_app(service, auto_start=False).test_client()


def test_status_before_start(client):
    response = client.get("/status")
    assert response.status_code == 200
    assert response.get_json() == {"status": "not_started"}


def test_start_stop_cycle(client):
    assert client.post("/start").status_code == 201
    assert client.post("/start").status_code == 409

    body = client.get("/status").get_json()
    assert body["status"] == "running"
    assert body["mode"] == "SIMULATION"

    assert client.post("/stop").status_code == 200
    assert client.get("/status").get_json() == {"status": "stopped"}
    assert client.post("/stop").status_code == 404


def test_crashed_bot_reports_error(client, service):
    service.thread = object()
    service.error = "Failed to connect to exchange API"
    response = client.get("/status")
    assert response.status_code == 500
    assert response.get_json()["status"] == "crashed"


def test_auto_start_on_first_request(service):
    client = create_app(service).test_client()
    assert client.get("/status").get_json()["status"] == "running"


class FailingBot:
    async def run(self):
        raise StartupError("invalid api key")


class IdleBot:
    def __init__(self):
        self.ready = threading.Event()
        self.stopped = None

    async def run(self):
        self.stopped = asyncio.Event()
        self.ready.set()
        await self.stopped.wait()

    async def shutdown(self):
        self.stopped.set()

    def status(self):
        return {}


def test_bot_service_records_startup_failure():
    service = BotService(FailingBot)
    assert service.start() is True
    service.thread.join(timeout=2)

    assert service.is_running() is False
    assert service.error == "invalid api key"


def test_bot_service_stops_running_bot():
    bot = IdleBot()
    service = BotService(lambda: bot)
    service.start()
    assert bot.ready.wait(timeout=2)
    assert service.is_running()
    assert service.start() is False

    assert service.stop(timeout=2) is True
    assert service.is_running() is False
    assert service.error is None
