# tests/test_unread_service.py
import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from app.services.ports import Chat, MessageHandle
from app.services.unread_service import UnreadReconciliationLoop

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _history(chat_id, n):
    return [MessageHandle(id=f"{chat_id}-{i}", conversation_id=chat_id) for i in range(n)]


@pytest.fixture
def messaging():
    mock = AsyncMock()
    mock.get_chats.return_value = [
        Chat(id="a", unread_count=0),
        Chat(id="b", unread_count=3),
        Chat(id="c", unread_count=5),
    ]
    mock.fetch_messages.side_effect = lambda chat_id: _history(chat_id, 10)
    return mock


@pytest.mark.asyncio
async def test_pass_indexes_only_unread_chats(messaging):
    loop = UnreadReconciliationLoop(messaging, SimpleNamespace(is_ready=True))

    index = await loop.run_pass()

    assert set(index) == {"b", "c"}
    assert [m.id for m in index["b"]] == ["b-7", "b-8", "b-9"]
    assert len(index["c"]) == 5
    assert loop.unread_total == 8
    assert loop.last_index is index
    fetched = [c.args[0] for c in messaging.fetch_messages.await_args_list]
    assert fetched == ["b", "c"]


@pytest.mark.asyncio
async def test_short_history_returns_what_exists(messaging):
    messaging.get_chats.return_value = [Chat(id="b", unread_count=4)]
    messaging.fetch_messages.side_effect = lambda chat_id: _history(chat_id, 2)
    loop = UnreadReconciliationLoop(messaging, SimpleNamespace(is_ready=True))

    index = await loop.run_pass()

    assert [m.id for m in index["b"]] == ["b-0", "b-1"]


@pytest.mark.asyncio
async def test_failed_pass_keeps_previous_total(messaging):
    loop = UnreadReconciliationLoop(messaging, SimpleNamespace(is_ready=True))
    await loop.run_pass()

    messaging.get_chats.side_effect = RuntimeError("sin conexión")
    assert await loop.run_pass() is None
    assert loop.unread_total == 8


@pytest.mark.asyncio
async def test_sweep_expires_stale_downloads():
    data_store = AsyncMock()
    data_store.expire_stale_downloads.return_value = 2
    loop = UnreadReconciliationLoop(
        AsyncMock(), SimpleNamespace(is_ready=True),
        data_store=data_store, stale_after_seconds=3600, clock=lambda: NOW,
    )

    assert await loop.sweep_stale_downloads() == 2
    data_store.expire_stale_downloads.assert_awaited_once_with(NOW - timedelta(hours=1))


@pytest.mark.asyncio
async def test_sweep_disabled_without_store():
    loop = UnreadReconciliationLoop(AsyncMock(), SimpleNamespace(is_ready=True))
    assert await loop.sweep_stale_downloads() == 0


@pytest.mark.asyncio
async def test_sweep_error_is_logged_not_raised():
    data_store = AsyncMock()
    data_store.expire_stale_downloads.side_effect = RuntimeError("db caída")
    loop = UnreadReconciliationLoop(
        AsyncMock(), SimpleNamespace(is_ready=True),
        data_store=data_store, stale_after_seconds=60, clock=lambda: NOW,
    )
    assert await loop.sweep_stale_downloads() == 0


@pytest.mark.asyncio
async def test_start_and_stop(messaging):
    loop = UnreadReconciliationLoop(messaging, SimpleNamespace(is_ready=False), interval_seconds=0.01)
    loop.start()
    await loop.stop()
    assert loop._task is None
    messaging.get_chats.assert_not_awaited()


@pytest.mark.asyncio
async def test_loop_keeps_running_after_failed_pass(messaging, wait_until):
    chats = messaging.get_chats.return_value
    messaging.get_chats.side_effect = [RuntimeError("API caída")] + [chats] * 100
    loop = UnreadReconciliationLoop(messaging, SimpleNamespace(is_ready=True), interval_seconds=0.01)

    loop.start()
    try:
        await wait_until(lambda: loop.unread_total == 8)
    finally:
        await loop.stop()

    assert messaging.get_chats.await_count >= 2
    assert set(loop.last_index) == {"b", "c"}


@pytest.mark.asyncio
async def test_loop_pauses_until_transport_ready(messaging, wait_until):
    lifecycle = SimpleNamespace(is_ready=False)
    loop = UnreadReconciliationLoop(messaging, lifecycle, interval_seconds=0.01)

    loop.start()
    try:
        await asyncio.sleep(0.05)
        messaging.get_chats.assert_not_awaited()

        lifecycle.is_ready = True
        await wait_until(lambda: loop.unread_total == 8)
    finally:
        await loop.stop()

    messaging.get_chats.assert_awaited()
