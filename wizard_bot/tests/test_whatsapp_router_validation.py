# tests/test_whatsapp_router_validation.py
import base64
import hashlib
import hmac
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from twilio.request_validator import RequestValidator

import app.routers.whatsapp as whatsapp_module
from app.routers.whatsapp import WebhookJSONIn, build_inbound_message, router as whatsapp_router

HEADERS = {"X-Forwarded-Proto": "https", "X-Forwarded-Host": "testserver"}


@pytest.fixture
def bridge():
    return MagicMock()


@pytest.fixture
def client(bridge):
    app = FastAPI()
    app.include_router(whatsapp_router)
    app.state.bridge = bridge
    return TestClient(app)


@pytest.fixture
def mock_process(monkeypatch):
    """Evita el procesamiento real en background."""
    mock = AsyncMock()
    monkeypatch.setattr(whatsapp_module, "_process_inbound", mock)
    return mock


def _form_signature(token, url, params):
    return RequestValidator(token).compute_signature(url, params)


def test_form_signature_ok(client, bridge, twilio_token_env, mock_process):
    params = {
        "From": "whatsapp:+573001234567",
        "Body": "mira https://x.com/v/1",
        "MessageSid": "SM0000000000000000000000000000003",
        "ProfileName": "Ana",
    }
    sig = _form_signature(twilio_token_env, "https://testserver/whatsapp", params)

    res = client.post("/whatsapp", data=params, headers={**HEADERS, "X-Twilio-Signature": sig})

    assert res.status_code == 200
    assert res.json() == {"status": "accepted"}
    mock_process.assert_called_once()
    passed_bridge, data, from_number = mock_process.call_args.args
    assert passed_bridge is bridge
    assert from_number == "+573001234567"
    assert data.ProfileName == "Ana"


def test_form_signature_bad(client, twilio_token_env, mock_process):
    params = {"From": "whatsapp:+573001234567", "Body": "hola", "MessageSid": "SM4"}
    sig = _form_signature(twilio_token_env, "https://testserver/whatsapp", params)
    params["Body"] = "HOLA"

    res = client.post("/whatsapp", data=params, headers={**HEADERS, "X-Twilio-Signature": sig})

    assert res.status_code == 403
    mock_process.assert_not_called()


def test_form_no_signature(client, mock_process):
    res = client.post("/whatsapp", data={"From": "whatsapp:+573001234567", "Body": "hola"}, headers=HEADERS)
    assert res.status_code == 403
    mock_process.assert_not_called()


def test_form_empty_number(client, twilio_token_env, mock_process):
    params = {"From": "", "Body": "hola", "MessageSid": "SM6"}
    sig = _form_signature(twilio_token_env, "https://testserver/whatsapp", params)

    res = client.post("/whatsapp", data=params, headers={**HEADERS, "X-Twilio-Signature": sig})

    assert res.status_code == 400
    mock_process.assert_not_called()


def _json_signature(token, url, raw):
    digest = hmac.new(token.encode("utf-8"), url.encode("utf-8") + raw, hashlib.sha1).digest()
    return base64.b64encode(digest).decode("utf-8")


def test_json_signature_ok(client, twilio_token_env, mock_process):
    raw = b'{"From":"whatsapp:+573001234567","Body":"hola","MessageSid":"SM7"}'
    sig = _json_signature(twilio_token_env, "https://testserver/whatsapp/json", raw)

    res = client.post("/whatsapp/json", content=raw, headers={
        **HEADERS, "Content-Type": "application/json", "X-Twilio-Signature": sig,
    })

    assert res.status_code == 200
    mock_process.assert_called_once()


def test_json_signature_bad(client, twilio_token_env, mock_process):
    raw = b'{"From":"whatsapp:+573001234567","Body":"hola"}'
    sig = _json_signature(twilio_token_env, "https://testserver/whatsapp/json", raw)

    res = client.post("/whatsapp/json", content=b'{"From":"whatsapp:+573001234567","Body":"HOLA"}', headers={
        **HEADERS, "Content-Type": "application/json", "X-Twilio-Signature": sig,
    })

    assert res.status_code == 403
    mock_process.assert_not_called()


# ---------- Conversión y procesamiento ----------

def test_build_inbound_message_extracts_links_and_media():
    data = WebhookJSONIn(
        From="whatsapp:+573001234567", Body="  mira https://x.com/v/1, y https://y.com/2 ",
        MessageSid="SM8", ProfileName="Ana", NumMedia=1,
    )
    received = datetime(2026, 10, 19, tzinfo=timezone.utc)

    message = build_inbound_message(data, "+573001234567", received)

    assert message.id == "SM8"
    assert message.conversation_id == "+573001234567"
    assert message.links == ["https://x.com/v/1", "https://y.com/2"]
    assert message.has_media is True
    assert message.sender_name == "Ana"
    assert message.timestamp == received


def _bridge_for_processing(claimed=True, handled=True):
    bridge = MagicMock()
    bridge.data_store.claim_inbound_message = AsyncMock(return_value=claimed)
    bridge.data_store.mark_inbound_read = AsyncMock()
    bridge.controller.handle_inbound_message = AsyncMock(return_value=handled)
    return bridge


@pytest.mark.asyncio
async def test_process_inbound_marks_handled_message_read():
    bridge = _bridge_for_processing()
    data = WebhookJSONIn(From="whatsapp:+573001234567", Body="hola", MessageSid="SM9")

    await whatsapp_module._process_inbound(bridge, data, "+573001234567")

    bridge.controller.handle_inbound_message.assert_awaited_once()
    bridge.data_store.mark_inbound_read.assert_awaited_once()
    assert bridge.data_store.mark_inbound_read.await_args.args[0] == "SM9"


@pytest.mark.asyncio
async def test_process_inbound_skips_duplicates():
    bridge = _bridge_for_processing(claimed=False)
    data = WebhookJSONIn(From="whatsapp:+573001234567", Body="hola", MessageSid="SM9")

    await whatsapp_module._process_inbound(bridge, data, "+573001234567")

    bridge.controller.handle_inbound_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_process_inbound_leaves_unhandled_unread():
    bridge = _bridge_for_processing(handled=False)
    data = WebhookJSONIn(From="whatsapp:+573001234567", Body="hola", MessageSid="SM10")

    await whatsapp_module._process_inbound(bridge, data, "+573001234567")

    bridge.data_store.mark_inbound_read.assert_not_awaited()
