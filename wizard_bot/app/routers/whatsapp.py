from fastapi import APIRouter, Request, HTTPException, Form, BackgroundTasks, Body
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime, timezone
from slowapi import Limiter
from slowapi.util import get_remote_address
import logging

from config.settings import settings
from app.services.ports import InboundMessage
from app.services.whatsapp_service import WhatsAppService
from app.utils.logging_conf import mask_number
from app.utils.text_normalizer import extract_links, normalize_msisdn


router = APIRouter()
limiter = Limiter(key_func=get_remote_address)
logger = logging.getLogger(__name__)

class WebhookJSONIn(BaseModel):
    From: str = Field(..., min_length=5)
    Body: Optional[str] = Field(None, max_length=4096)
    MessageSid: Optional[str] = None
    SmsMessageSid: Optional[str] = None
    ProfileName: Optional[str] = None
    NumMedia: int = 0
    MediaUrl0: Optional[str] = None
    MediaContentType0: Optional[str] = None

    @field_validator('From')
    @classmethod
    def strip_from_whitespace(cls, v: str) -> str:
        """Valida y limpia espacios en blanco del campo From."""
        if isinstance(v, str):
            return v.strip()
        return v

def effective_url(request: Request) -> str:
    """Reconstruye la URL firmada por Twilio (respeta proxy y querystring)."""
    host = request.headers.get("x-forwarded-host") or request.url.hostname
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme
    path = request.url.path
    query = f"?{request.url.query}" if request.url.query else ""
    return f"{proto}://{host}{path}{query}"


def build_inbound_message(data: WebhookJSONIn, from_number: str, received_at: datetime) -> InboundMessage:
    """Convierte el payload de Twilio en el evento que entiende el núcleo."""
    body = (data.Body or "").strip()
    return InboundMessage(
        id=data.MessageSid or data.SmsMessageSid or "",
        conversation_id=from_number,
        body=body,
        timestamp=received_at,
        sender_name=data.ProfileName,
        device_type="whatsapp",
        links=extract_links(body),
        has_media=data.NumMedia > 0,
    )


async def _process_inbound(bridge, data: WebhookJSONIn, from_number: str) -> None:
    """Idempotencia por SID → núcleo → marcar leído."""
    safe = mask_number(from_number)
    message = build_inbound_message(data, from_number, datetime.now(timezone.utc))
    try:
        if message.id and not await bridge.data_store.claim_inbound_message(
            message.id, from_number, message.body,
            profile_name=data.ProfileName, num_media=data.NumMedia,
            media_url=data.MediaUrl0, media_content_type=data.MediaContentType0,
        ):
            logger.info("🔁 Duplicado ignorado | sid=%s | from=%s", message.id, safe)
            return

        handled = await bridge.controller.handle_inbound_message(message)
        if handled and message.id:
            await bridge.data_store.mark_inbound_read(message.id, datetime.now(timezone.utc))
    except Exception:
        logger.exception("❌ Error procesando mensaje entrante | from=%s | sid=%s", safe, message.id or "N/A")


def _accept(request: Request, background_tasks: BackgroundTasks, data: WebhookJSONIn) -> JSONResponse:
    from_number = normalize_msisdn(data.From)
    if not from_number:
        raise HTTPException(status_code=400, detail="Número inválido")
    background_tasks.add_task(_process_inbound, request.app.state.bridge, data, from_number)
    return JSONResponse({"status": "accepted"})


@router.post("/whatsapp")
@limiter.limit("200/minute") #SlowAPI
async def whatsapp_webhook_form(
    request: Request,
    background_tasks: BackgroundTasks,
    From: str = Form(""),
    Body: str = Form(""),
    MessageSid: Optional[str] = Form(None),
    SmsMessageSid: Optional[str] = Form(None),
    ProfileName: Optional[str] = Form(None),
    NumMedia: int = Form(0),
    MediaUrl0: Optional[str] = Form(None),
    MediaContentType0: Optional[str] = Form(None),
):
    # ✅ Validación de firma (form) usando FormData crudo
    if not settings.DISABLE_WEBHOOK_VALIDATION:
        form_data = await request.form()
        signature = request.headers.get("X-Twilio-Signature", "")
        url = effective_url(request)
        if not WhatsAppService.validate_webhook(url, form_data, signature):
            logger.info("❌ Twilio signature invalid (form) url=%s sig_present=%s", url, bool(signature))
            raise HTTPException(status_code=403, detail="Invalid signature")

    data = WebhookJSONIn.model_construct(
        From=From.strip(), Body=Body, MessageSid=MessageSid, SmsMessageSid=SmsMessageSid,
        ProfileName=ProfileName, NumMedia=NumMedia, MediaUrl0=MediaUrl0,
        MediaContentType0=MediaContentType0,
    )
    return _accept(request, background_tasks, data)

@router.post("/whatsapp/json")
@limiter.limit("200/minute")
async def whatsapp_webhook_json(
    request: Request,
    background_tasks: BackgroundTasks,
    data: WebhookJSONIn = Body(...),
):
    # ✅ Validación de firma (JSON) con raw body exacto
    if not settings.DISABLE_WEBHOOK_VALIDATION:
        signature = request.headers.get("X-Twilio-Signature", "")
        algo = request.headers.get("X-Twilio-Signature-Algorithm")
        raw = await request.body()
        url = effective_url(request)
        if not WhatsAppService.validate_webhook_json(url, raw, signature, algo):
            logger.info("❌ Twilio signature invalid (json) url=%s sig_present=%s", url, bool(signature))
            raise HTTPException(status_code=403, detail="Invalid signature")

    return _accept(request, background_tasks, data)
