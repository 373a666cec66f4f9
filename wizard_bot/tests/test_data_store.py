# tests/test_data_store.py
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models import Download, DownloadError, DownloadStatus, Sticker
from app.services.data_store import SqlDataStore
from database.connection import Base

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return SqlDataStore(session_factory)


USER = {"name": "Ana", "phone": "+573001234567", "platform": "whatsapp", "country": "+57"}


@pytest.mark.asyncio
async def test_upsert_user_is_idempotent(store):
    first = await store.upsert_user(USER)
    second = await store.upsert_user({**USER, "name": "Ana María", "country": None})

    assert first.id == second.id
    assert first.first_seen is not None
    assert second.name == "Ana María"
    assert second.country == "+57"
    found = await store.find_user_by_key("+573001234567")
    assert found.id == first.id


@pytest.mark.asyncio
async def test_download_lifecycle(store, session_factory):
    user = await store.upsert_user(USER)
    download = await store.create_download_job("https://x.com/v", DownloadStatus.UNKNOWN, user.id, NOW)
    assert download.id

    await store.update_job_status(download.id, DownloadStatus.SENT)
    await store.create_error_record("HTTP 404", download.id)

    with session_factory() as db:
        row = db.get(Download, download.id)
        assert row.status is DownloadStatus.SENT
        assert db.query(DownloadError).filter_by(download_id=download.id).count() == 1


@pytest.mark.asyncio
async def test_update_unknown_download_is_silent(store):
    await store.update_job_status("no-existe", DownloadStatus.FAILED)


@pytest.mark.asyncio
async def test_expire_stale_downloads(store, session_factory):
    user = await store.upsert_user(USER)
    old = await store.create_download_job("https://x.com/1", DownloadStatus.UNKNOWN, user.id,
                                          NOW - timedelta(hours=2))
    sent = await store.create_download_job("https://x.com/2", DownloadStatus.SENT, user.id,
                                           NOW - timedelta(hours=2))
    fresh = await store.create_download_job("https://x.com/3", DownloadStatus.UNKNOWN, user.id, NOW)

    assert await store.expire_stale_downloads(NOW - timedelta(hours=1)) == 1

    with session_factory() as db:
        assert db.get(Download, old.id).status is DownloadStatus.FAILED
        assert db.get(Download, sent.id).status is DownloadStatus.SENT
        assert db.get(Download, fresh.id).status is DownloadStatus.UNKNOWN


@pytest.mark.asyncio
async def test_create_sticker(store, session_factory):
    user = await store.upsert_user(USER)
    await store.create_sticker(user.id, NOW, "mi sticker")

    with session_factory() as db:
        sticker = db.query(Sticker).one()
        assert sticker.owner_id == user.id
        assert sticker.body == "mi sticker"


@pytest.mark.asyncio
async def test_claim_inbound_dedupes_by_sid(store):
    assert await store.claim_inbound_message("SM1", "+571", "hola") is True
    assert await store.claim_inbound_message("SM1", "+571", "hola") is False
    assert await store.claim_inbound_message("", "+571", "sin sid") is True


@pytest.mark.asyncio
async def test_conversations_and_unread_counts(store):
    await store.claim_inbound_message("SM1", "+571", "uno")
    await store.claim_inbound_message("SM2", "+571", "dos", profile_name="Ana", num_media=1,
                                      media_url="https://api.twilio.com/m/1", media_content_type="image/png")
    await store.claim_inbound_message("SM3", "+572", "tres")
    await store.mark_inbound_read("SM3", NOW)

    conversations = dict(await store.list_conversations())
    assert conversations == {"+571": 2, "+572": 0}

    messages = await store.fetch_conversation_messages("+571")
    assert [m.message_sid for m in messages] == ["SM1", "SM2"]

    stored = await store.get_inbound_message("SM2")
    assert stored.media_content_type == "image/png"
    assert stored.num_media == 1
    assert await store.get_inbound_message("SM9") is None


@pytest.mark.asyncio
async def test_late_completion_does_not_reopen_expired_download(store, session_factory):
    user = await store.upsert_user(USER)
    old = await store.create_download_job("https://x.com/lenta", DownloadStatus.UNKNOWN, user.id,
                                          NOW - timedelta(hours=2))
    assert await store.expire_stale_downloads(NOW - timedelta(hours=1)) == 1

    await store.update_job_status(old.id, DownloadStatus.SENT)

    with session_factory() as db:
        assert db.get(Download, old.id).status is DownloadStatus.FAILED


@pytest.mark.asyncio
async def test_final_status_is_not_overwritten(store, session_factory):
    user = await store.upsert_user(USER)
    download = await store.create_download_job("https://x.com/v", DownloadStatus.UNKNOWN, user.id, NOW)

    await store.update_job_status(download.id, DownloadStatus.PENDING)
    await store.update_job_status(download.id, DownloadStatus.SENT)
    await store.update_job_status(download.id, DownloadStatus.FAILED)

    with session_factory() as db:
        assert db.get(Download, download.id).status is DownloadStatus.SENT
