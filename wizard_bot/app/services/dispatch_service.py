"""
🚚 CONTROLADOR DE DESPACHO - NÚCLEO DEL PUENTE
==============================================

Clasifica los mensajes entrantes, aplica el rate limiter, registra la descarga,
la encola y, cuando la cola responde, entrega el resultado a la conversación
original.

🔄 CAMINO DE ENTRADA (un mensaje 1:1, transporte en READY):
1. Upsert del usuario por teléfono + identify
2. Evento message_received (siempre)
3. Imagen JPEG/PNG → sticker (tarea aparte, no bloquea el paso 4)
4. Links → sólo el PRIMERO. Rate limiter ANTES de cualquier otra cosa:
   - limitado: aviso fijo al usuario y fin (sin registro ni job)
   - libre: Download UNKNOWN + job "{timestamp}-{conversación}"
   - si la cola no acepta el job (duplicado o Redis caído): Download → FAILED
     y disculpa al usuario; nunca queda un registro UNKNOWN huérfano
5. Cualquier error se registra y no se propaga

✅ CAMINO DE COMPLETADO (evento "completed" de la cola):
- Por cada artefacto: re-resolver el mensaje por su ID estable, responder
  con el archivo, liberar el archivo, evento download_response
- Al final: Download → SENT

❌ CAMINO DE FALLO (evento "failed" de la cola):
- Disculpa fija al usuario, registro de error, Download → FAILED
- Cada paso es best-effort: si uno falla, los demás igual corren

⚠️ El mensaje original NO sobrevive la serialización de la cola: el payload
lleva sólo su ID y siempre se vuelve a buscar.
"""

import asyncio
import logging
import mimetypes
from typing import Any, Dict, Optional, Set

import phonenumbers
from phonenumbers import NumberParseException

from app.models.download import DownloadStatus
from app.services.ports import (
    Artifact,
    BlobStore,
    DataStore,
    InboundMessage,
    JobQueue,
    Media,
    MessageHandle,
    MessagingPort,
    NotificationPort,
    QueueJob,
    ReplyOptions,
    TelemetrySink,
    TransportStatus,
)
from app.services.queue_service import COMPLETED, FAILED
from app.services.throttle_service import RateLimiterService
from app.utils.logging_conf import mask_number
from app.utils.retry import retry_async

logger = logging.getLogger(__name__)

RATE_LIMIT_NOTICE = "To save our resources, Please wait a moment before sending another request. R409"
FAILURE_NOTICE = (
    "Believe me, I tried my best to download this file, but I couldn't. 🫠😔 \n\nPlease try again later"
)
STICKER_MIMETYPES = {"image/jpeg", "image/png"}


def build_job_key(message: InboundMessage) -> str:
    return f"{int(message.timestamp.timestamp())}-{message.conversation_id}"


def country_of(number: str) -> Optional[str]:
    """'+573001234567' → '+57'. None si el número no es E.164 válido."""
    try:
        parsed = phonenumbers.parse(number or "", None)
    except NumberParseException:
        return None
    return f"+{parsed.country_code}" if parsed.country_code else None


class DispatchController:
    def __init__(
        self,
        messaging: MessagingPort,
        data_store: DataStore,
        job_queue: JobQueue,
        rate_limiter: RateLimiterService,
        telemetry: TelemetrySink,
        blob_store: BlobStore,
        notifier: NotificationPort,
        lifecycle: TransportStatus,
        queue_name: str = "downloader",
        sticker_author: Optional[str] = None,
        sticker_name: Optional[str] = None,
        resolve_attempts: int = 3,
        resolve_delay: float = 0.4,
    ):
        self.messaging = messaging
        self.data_store = data_store
        self.job_queue = job_queue
        self.rate_limiter = rate_limiter
        self.telemetry = telemetry
        self.blob_store = blob_store
        self.notifier = notifier
        self.lifecycle = lifecycle
        self.queue_name = queue_name
        self.sticker_options = ReplyOptions(
            send_media_as_sticker=True, sticker_author=sticker_author, sticker_name=sticker_name
        )
        self.resolve_attempts = resolve_attempts
        self.resolve_delay = resolve_delay
        self._tasks: Set[asyncio.Task] = set()

    def register(self) -> None:
        """Suscribe los handlers de completado/fallo en la cola."""
        self.job_queue.on(COMPLETED, self.handle_download_completed)
        self.job_queue.on(FAILED, self.handle_download_failed)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Espera las tareas secundarias en vuelo (stickers)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @staticmethod
    def _handle_of(message: InboundMessage) -> MessageHandle:
        return MessageHandle(
            id=message.id, conversation_id=message.conversation_id,
            body=message.body, timestamp=message.timestamp,
        )

    async def _resolve(self, message_id: str) -> MessageHandle:
        return await retry_async(
            lambda: self.messaging.get_message_by_id(message_id),
            attempts=self.resolve_attempts, base_delay=self.resolve_delay,
        )

    # ---------- Entrada ----------

    async def handle_inbound_message(self, message: InboundMessage) -> bool:
        """Procesa un mensaje entrante. Devuelve False si se ignoró."""
        if not self.lifecycle.is_ready:
            logger.info("⏸️ Transporte no listo, mensaje %s queda pendiente", message.id)
            return False
        if message.is_group or message.is_read_only:
            return False

        safe = mask_number(message.conversation_id)
        try:
            user = await self._resolve_user(message)
            self.telemetry.track_event("message_received", user.id, {
                "has_media": message.has_media,
                "has_links": bool(message.links),
                "platform": message.device_type,
                "message_id": message.id,
            })

            if message.has_media:
                self._spawn(self._create_sticker(message, user.id))

            if message.links:
                await self._request_download(message, user.id)
        except Exception:
            logger.exception("❌ Error procesando mensaje | from=%s | sid=%s", safe, message.id)
        return True

    async def _resolve_user(self, message: InboundMessage):
        number = message.conversation_id
        payload: Dict[str, Any] = {
            "name": message.sender_name or number,
            "phone": number,
            "platform": message.device_type,
            "country": country_of(number),
        }
        user = await self.data_store.upsert_user(payload)
        self.telemetry.identify(user.id, {**payload, "first_seen": getattr(user, "first_seen", None)})
        return user

    async def _create_sticker(self, message: InboundMessage, user_id: str) -> None:
        try:
            media = await self.messaging.download_media(message)
            if media is None or media.mimetype not in STICKER_MIMETYPES:
                return
            await self.data_store.create_sticker(user_id, message.timestamp, message.body)
            await self.messaging.reply(self._handle_of(message), media, self.sticker_options)
            self.telemetry.track_event("sticker_created", user_id)
        except Exception:
            logger.exception("❌ Error creando sticker | sid=%s", message.id)

    async def _request_download(self, message: InboundMessage, user_id: str) -> Optional[str]:
        if await self.rate_limiter.is_rate_limited(message.conversation_id):
            self.telemetry.track_event("rate_limited", user_id)
            await self.messaging.reply(self._handle_of(message), RATE_LIMIT_NOTICE)
            return None

        # Política: sólo se procesa el primer link del mensaje
        url = message.links[0]
        download = await self.data_store.create_download_job(
            url, DownloadStatus.UNKNOWN, user_id, message.timestamp
        )
        self.telemetry.track_event("download_requested", user_id, {"url": url, "download_id": download.id})

        queued = False
        try:
            queued = await self.job_queue.submit(self.queue_name, build_job_key(message), {
                "url": url,
                "download_id": download.id,
                "message_id": message.id,
                "conversation_id": message.conversation_id,
            })
        except Exception:
            logger.exception("❌ No se pudo encolar la descarga %s", download.id)
        if not queued:
            await self._abandon_download(message, download.id)
            return None

        logger.info("📥 Descarga encolada | from=%s | download=%s", mask_number(message.conversation_id), download.id)
        return download.id

    async def _abandon_download(self, message: InboundMessage, download_id: str) -> None:
        """La cola rechazó el job: cerrar el registro y avisar al usuario."""
        logger.warning("⚠️ Job rechazado por la cola | download=%s | key=%s", download_id, build_job_key(message))
        try:
            await self.data_store.update_job_status(download_id, DownloadStatus.FAILED)
        except Exception:
            logger.exception("No se pudo marcar FAILED | download=%s", download_id)
        try:
            await self.messaging.reply(self._handle_of(message), FAILURE_NOTICE)
        except Exception:
            logger.exception("No se pudo enviar la disculpa | sid=%s", message.id)

    # ---------- Completado ----------

    async def handle_download_completed(self, job: QueueJob) -> None:
        data = job.data or {}
        try:
            result = job.result or {}
            download_id = result.get("download_id") or data.get("download_id")
            artifacts = [Artifact(**a) if isinstance(a, dict) else Artifact(path=a)
                         for a in result.get("artifacts", [])]

            for artifact in artifacts:
                original = await self._resolve(data["message_id"])
                mimetype = mimetypes.guess_type(artifact.path)[0] or "application/octet-stream"
                await self.messaging.reply(original, Media.from_file_path(artifact.path, mimetype))
                await self.blob_store.remove(artifact.path)
                self.telemetry.track_event("download_response", data.get("conversation_id", ""), {
                    "download_id": download_id,
                    "message_id": data["message_id"],
                })

            await self.data_store.update_job_status(download_id, DownloadStatus.SENT)
            logger.info("✅ Descarga entregada | download=%s | archivos=%s", download_id, len(artifacts))
        except Exception as e:
            logger.exception("❌ Error entregando descarga | job=%s", job.key)
            self.telemetry.track_event("error_onQueueMessage", "", {"error": str(e), "job": job.key})

    # ---------- Fallo ----------

    async def handle_download_failed(self, job: QueueJob, error: str) -> None:
        data = job.data or {}
        download_id = data.get("download_id")
        logger.warning("⚠️ Descarga fallida | download=%s | error=%s", download_id, error)

        try:
            original = await self._resolve(data["message_id"])
            await self.messaging.reply(original, FAILURE_NOTICE)
        except Exception:
            logger.exception("No se pudo enviar la disculpa | job=%s", job.key)

        try:
            await self.data_store.create_error_record(str(error), download_id)
        except Exception:
            logger.exception("No se pudo registrar el error | download=%s", download_id)

        if download_id:
            try:
                await self.data_store.update_job_status(download_id, DownloadStatus.FAILED)
            except Exception:
                logger.exception("No se pudo marcar FAILED | download=%s", download_id)

    # ---------- Broadcast ----------

    async def handle_broadcast(self, text: str) -> int:
        """Envía un texto a todos los chats 1:1. Devuelve cuántos chats recorrió."""
        count = 0
        try:
            for chat in await self.messaging.get_chats():
                count += 1
                if chat.is_group:
                    continue
                try:
                    await self.messaging.send_message(chat.id, text)
                except Exception:
                    logger.exception("Broadcast falló para %s", mask_number(chat.id))
            logger.info("📢 Broadcast enviado a %s chats", count)
            await self.notifier.send_message(f"Broadcast message sent to {count} chats.")
        except Exception:
            logger.exception("❌ Error enviando broadcast")
        return count
