from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException
from twilio.request_validator import RequestValidator
from config.settings import settings
import anyio
import hmac
import hashlib
import base64
import mimetypes
import os
import uuid
import requests
from typing import List, Optional, Union, Any, Mapping
from starlette.datastructures import FormData
import logging

from app.services.file_service import FileService
from app.services.ports import Chat, InboundMessage, Media, MessageHandle, ReplyOptions
from app.utils.errors import MessageNotFoundError
from app.utils.text_normalizer import normalize_msisdn

logger = logging.getLogger(__name__)

OUTBOX_DIRNAME = "outbox"


def _wa(n: str) -> str:
    return n if n.startswith("whatsapp:") else f"whatsapp:{n}"

class WhatsAppService:
    """
    Puerto de mensajería sobre la API de WhatsApp de Twilio.

    - Las respuestas van al número del mensaje original (Twilio no cita mensajes)
    - La media saliente se publica en PUBLIC_DIR/outbox y Twilio la toma por URL
    - Los chats y su historial salen de los mensajes entrantes guardados
    """

    def __init__(self, data_store, files: Optional[FileService] = None, client: Optional[Client] = None):
        self.client = client or Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        self.from_number = settings.TWILIO_WHATSAPP_NUMBER
        self.data_store = data_store
        self.files = files or FileService()
        self.outbox_dir = os.path.join(settings.PUBLIC_DIR, OUTBOX_DIRNAME)

    async def send_message(self, to_number: str, body: str) -> str:
        def _send():
            msg = self.client.messages.create(
                from_=_wa(self.from_number),
                to=_wa(to_number),
                body=body,
            )
            return msg.sid
        return await anyio.to_thread.run_sync(_send)

    async def send_image(self, to_number: str, media_url: str, caption: str = "") -> str:
        def _send():
            msg = self.client.messages.create(
                from_=_wa(self.from_number),
                to=_wa(to_number),
                body=caption or None,
                media_url=[media_url],
            )
            return msg.sid
        return await anyio.to_thread.run_sync(_send)

    # ---------- Puerto de mensajería ----------

    async def _publish(self, media: Media) -> str:
        """Copia la media a la carpeta pública y devuelve su URL."""
        data = media.data if media.data is not None else await self.files.read(media.path)
        ext = mimetypes.guess_extension(media.mimetype) or os.path.splitext(media.path or "")[1]
        name = f"{uuid.uuid4().hex}{ext or ''}"
        await self.files.write(os.path.join(self.outbox_dir, name), data)
        await self.files.prune(self.outbox_dir, settings.OUTBOX_TTL_SECONDS)
        return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/static/{OUTBOX_DIRNAME}/{name}"

    async def reply(self, original: MessageHandle, content: Union[str, Media],
                    options: Optional[ReplyOptions] = None) -> str:
        if isinstance(content, str):
            return await self.send_message(original.conversation_id, content)
        if options and options.send_media_as_sticker:
            # Twilio no expone stickers salientes; se entrega como imagen
            logger.debug("Sticker enviado como imagen (%s)", options.sticker_name)
        url = await self._publish(content)
        return await self.send_image(original.conversation_id, url)

    async def get_message_by_id(self, message_id: str) -> MessageHandle:
        def _fetch():
            return self.client.messages(message_id).fetch()
        try:
            msg = await anyio.to_thread.run_sync(_fetch)
        except TwilioRestException as e:
            if e.status == 404:
                raise MessageNotFoundError(message_id) from e
            raise
        return MessageHandle(
            id=msg.sid,
            conversation_id=normalize_msisdn(msg.from_),
            body=msg.body,
            timestamp=msg.date_sent or msg.date_created,
        )

    async def get_chats(self) -> List[Chat]:
        return [Chat(id=number, unread_count=unread)
                for number, unread in await self.data_store.list_conversations()]

    async def fetch_messages(self, chat_id: str) -> List[MessageHandle]:
        rows = await self.data_store.fetch_conversation_messages(chat_id)
        return [MessageHandle(id=r.message_sid, conversation_id=r.from_number,
                              body=r.body, timestamp=r.received_at) for r in rows]

    async def download_media(self, message: InboundMessage) -> Optional[Media]:
        stored = await self.data_store.get_inbound_message(message.id)
        if stored is None or not stored.media_url:
            return None

        def _download():
            # Las URLs de media de Twilio requieren basic auth con la cuenta
            response = requests.get(
                stored.media_url,
                auth=(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN),
                timeout=settings.DOWNLOAD_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            return response.content
        data = await anyio.to_thread.run_sync(_download)
        mimetype = (stored.media_content_type or "application/octet-stream").split(";")[0].strip()
        return Media(mimetype=mimetype, data=data)

    # ---------- Validación de firma ----------

    @staticmethod
    def _b64_hmac(data: bytes, key: str, algo: Optional[str]) -> str:
        alg = (algo or "SHA1").upper()
        if alg == "SHA256":
            digest = hmac.new(key.encode("utf-8"), data, hashlib.sha256).digest()
        else:
            digest = hmac.new(key.encode("utf-8"), data, hashlib.sha1).digest()
        return base64.b64encode(digest).decode("utf-8")

    @staticmethod
    def _safe_eq(a: str, b: str) -> bool:
        try:
            return hmac.compare_digest(a, b)
        except TypeError:
            return False

    @staticmethod
    def validate_webhook(
        url: str,
        form: Union[FormData, Mapping[str, Any]],
        signature: str,
        auth_token: Optional[str] = None,
    ) -> bool:
        """
        Valida firmas Twilio para application/x-www-form-urlencoded
        usando el validador oficial (maneja orden/encoding).
        """
        token = auth_token or settings.TWILIO_AUTH_TOKEN
        if not token or not signature or not url:
            logger.debug(
                "Missing validation data (form) url=%s sig=%s token=%s",
                url, bool(signature), bool(token)
            )
            return False

        try:
            validator = RequestValidator(token)
            is_valid = validator.validate(url, dict(form), signature)
            logger.debug("Twilio form signature valid=%s url=%s", is_valid, url)
            return is_valid
        except Exception as e:
            logger.exception("Validation error (form): %s", e)
            return False

    @staticmethod
    def validate_webhook_json(
        url: str,
        raw_body: Union[bytes, bytearray, str],
        signature: str,
        signature_algo: Optional[str] = None,
        auth_token: Optional[str] = None,
    ) -> bool:
        """
        Valida firmas Twilio para application/json:
        string_to_sign = url + raw_body (bytes exactos).
        Permite SHA1 (default) y SHA256 si el header lo indica.
        """
        token = auth_token or settings.TWILIO_AUTH_TOKEN
        if not token or not signature or not url:
            logger.debug(
                "Missing validation data (json) url=%s sig=%s token=%s",
                url, bool(signature), bool(token)
            )
            return False

        if isinstance(raw_body, str):
            body_bytes = raw_body.encode("utf-8")
        else:
            body_bytes = bytes(raw_body or b"")

        string_to_sign = url.encode("utf-8") + body_bytes
        computed = WhatsAppService._b64_hmac(string_to_sign, token, signature_algo)
        ok = WhatsAppService._safe_eq(computed, signature)
        logger.debug("Twilio JSON signature valid=%s url=%s algo=%s", ok, url, signature_algo or "SHA1")
        return ok
