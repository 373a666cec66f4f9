"""
🛠️ RUTAS ADMINISTRATIVAS Y SEÑALES DEL TRANSPORTE
=================================================

- POST /webhook/transport  → señales del cliente de WhatsApp (qr, authenticated,
  ready, auth_failure, disconnected) hacia la máquina de estados
- POST /admin/broadcast    → texto a todos los chats 1:1
- GET  /admin/stats        → estado del transporte + no leídos

🔒 Todas exigen el header X-Admin-Token == ADMIN_TOKEN.
"""

import base64
import binascii
import hmac
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.util import get_remote_address

from config.settings import settings

router = APIRouter()
limiter = Limiter(key_func=get_remote_address)
logger = logging.getLogger(__name__)


class TransportSignalIn(BaseModel):
    event: Literal["qr", "authenticated", "ready", "auth_failure", "disconnected"]
    qr_png_base64: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=500)


class BroadcastIn(BaseModel):
    message: str = Field(..., min_length=1, max_length=4096)


def require_admin(x_admin_token: str = Header("")) -> None:
    if not settings.ADMIN_TOKEN or not hmac.compare_digest(x_admin_token, settings.ADMIN_TOKEN):
        raise HTTPException(status_code=401, detail="Token inválido")


def get_bridge(request: Request):
    return request.app.state.bridge


@router.post("/webhook/transport", dependencies=[Depends(require_admin)])
@limiter.limit("60/minute")
async def transport_signal(request: Request, signal: TransportSignalIn, bridge=Depends(get_bridge)):
    qr_png = None
    if signal.event == "qr":
        if not signal.qr_png_base64:
            raise HTTPException(status_code=400, detail="qr_png_base64 requerido")
        try:
            qr_png = base64.b64decode(signal.qr_png_base64, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(status_code=400, detail="qr_png_base64 inválido")

    await bridge.lifecycle.handle_signal(signal.event, qr_png=qr_png, reason=signal.reason)
    return {"status": "ok", "state": bridge.lifecycle.state.value}


@router.post("/admin/broadcast", dependencies=[Depends(require_admin)])
async def broadcast(data: BroadcastIn, bridge=Depends(get_bridge)):
    logger.info("📢 Broadcast solicitado (%s caracteres)", len(data.message))
    count = await bridge.controller.handle_broadcast(data.message)
    return {"status": "sent", "chats": count}


@router.get("/admin/stats", dependencies=[Depends(require_admin)])
async def stats(bridge=Depends(get_bridge)):
    return bridge.stats()
