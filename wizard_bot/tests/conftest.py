# tests/conftest.py
import os
import tempfile

# La configuración se lee al importar config.settings: fijar el entorno antes
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("TWILIO_ACCOUNT_SID", "ACtest")
os.environ.setdefault("TWILIO_AUTH_TOKEN", "test_auth_token_123")
os.environ.setdefault("TWILIO_WHATSAPP_NUMBER", "+14155238886")
os.environ.setdefault("REDIS_ENABLED", "False")
os.environ.setdefault("ADMIN_TOKEN", "admin-test-token")
os.environ.setdefault("PUBLIC_DIR", tempfile.mkdtemp(prefix="wizard-public-"))
os.environ.setdefault("PRIVATE_DIR", tempfile.mkdtemp(prefix="wizard-private-"))
os.environ["DISABLE_WEBHOOK_VALIDATION"] = "False"
os.environ["TRANSPORT_AUTO_READY"] = "False"

import asyncio
import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.services.dispatch_service import DispatchController
from app.services.ports import InboundMessage, MessageHandle
from app.services.throttle_service import RateLimiterService


class FakePubSub:
    """Suscripción en memoria: entrega los mensajes y queda esperando."""

    def __init__(self, messages=(), error=None):
        self.messages = list(messages)
        self.error = error
        self.channels = []
        self.closed = False

    async def subscribe(self, channel):
        if self.error is not None:
            raise self.error
        self.channels.append(channel)

    async def listen(self):
        yield {"type": "subscribe", "data": 1}
        for data in self.messages:
            yield {"type": "message", "data": data}
        await asyncio.Event().wait()

    async def aclose(self):
        self.closed = True


class FakeRedis:
    """Redis en memoria con lo justo para la cola."""

    def __init__(self):
        self.values = {}
        self.lists = {}
        self.published = []
        self.subscriptions = []

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True

    async def get(self, key):
        return self.values.get(key)

    async def rpush(self, key, value):
        self.lists.setdefault(key, []).append(value)
        return len(self.lists[key])

    async def blpop(self, keys, timeout=0):
        for key in keys:
            if self.lists.get(key):
                return key, self.lists[key].pop(0)
        return None

    async def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        return 1

    def pubsub(self):
        return self.subscriptions.pop(0) if self.subscriptions else FakePubSub()


async def _wait_until(condition, timeout=1.0):
    """Cede el loop hasta que condition() sea verdadera."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("la condición no se cumplió a tiempo")
        await asyncio.sleep(0.005)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def make_pubsub():
    return FakePubSub


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture(scope="session")
def twilio_token_env():
    """Token de Twilio usado para firmar en los tests."""
    return os.environ["TWILIO_AUTH_TOKEN"]


@pytest.fixture
def lifecycle():
    return SimpleNamespace(is_ready=True)


@pytest.fixture
def messaging():
    mock = AsyncMock()
    mock.get_message_by_id.side_effect = lambda sid: MessageHandle(id=sid, conversation_id="+573001234567")
    mock.download_media.return_value = None
    return mock


@pytest.fixture
def data_store():
    mock = AsyncMock()
    mock.upsert_user.return_value = SimpleNamespace(id="user-1", first_seen=None)
    mock.create_download_job.side_effect = lambda url, status, owner, ts: SimpleNamespace(
        id=f"dl-{mock.create_download_job.call_count}", url=url, status=status
    )
    return mock


@pytest.fixture
def job_queue():
    mock = AsyncMock()
    mock.on = MagicMock()
    return mock


@pytest.fixture
def telemetry():
    return MagicMock()


@pytest.fixture
def blob_store():
    return AsyncMock()


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def rate_limiter():
    return RateLimiterService(max_requests=1, window_seconds=60, clock=lambda: 1_000.0)


@pytest.fixture
def controller(messaging, data_store, job_queue, rate_limiter, telemetry, blob_store, notifier, lifecycle):
    return DispatchController(
        messaging=messaging,
        data_store=data_store,
        job_queue=job_queue,
        rate_limiter=rate_limiter,
        telemetry=telemetry,
        blob_store=blob_store,
        notifier=notifier,
        lifecycle=lifecycle,
        queue_name="downloader",
        sticker_author="wwz.gitnasr.com",
        sticker_name="WhatsApp Wizard v3.0",
        resolve_attempts=1,
        resolve_delay=0,
    )


@pytest.fixture
def make_message():
    def _make(body="hola", sid="SM1", number="+573001234567", links=None, has_media=False, **kw):
        return InboundMessage(
            id=sid,
            conversation_id=number,
            body=body,
            timestamp=kw.pop("timestamp", datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)),
            sender_name=kw.pop("sender_name", "Ana"),
            device_type="whatsapp",
            links=links if links is not None else [],
            has_media=has_media,
            **kw,
        )
    return _make
