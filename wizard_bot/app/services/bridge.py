"""
🧩 PUENTE WHATSAPP WIZARD - COMPOSICIÓN
=======================================

Arma el núcleo (máquina de estados, controlador de despacho, loop de no
leídos) sobre los adaptadores concretos y maneja su ciclo de vida dentro del
lifespan de FastAPI.

🔄 ARRANQUE:
1. start(): inicializa el canal administrativo; con TRANSPORT_AUTO_READY
   simula authenticated + ready (transportes sin QR, como Twilio)
2. Primer READY (una sola vez por proceso):
   - suscribe los handlers de completado/fallo en la cola
   - arranca el listener de eventos de la cola
   - arranca el loop de no leídos (primera pasada inmediata)
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from config.settings import settings
from app.services.cache_service import CacheService, cache_service
from app.services.data_store import SqlDataStore
from app.services.dispatch_service import DispatchController
from app.services.file_service import FileService
from app.services.lifecycle_service import LifecycleStateMachine
from app.services.queue_service import RedisJobQueue
from app.services.telegram_service import build_telegram_service
from app.services.telemetry_service import TelemetryService
from app.services.throttle_service import RateLimiterService
from app.services.unread_service import UnreadReconciliationLoop
from app.services.whatsapp_service import WhatsAppService

logger = logging.getLogger(__name__)


class WizardBridge:
    def __init__(self, *, messaging, data_store, job_queue, rate_limiter, telemetry,
                 blob_store, notifier, config=settings):
        self.messaging = messaging
        self.data_store = data_store
        self.job_queue = job_queue
        self.telemetry = telemetry
        self.notifier = notifier
        self.config = config

        self.lifecycle = LifecycleStateMachine(notifier, telemetry, blob_store, config.QR_CODE_PATH)
        self.controller = DispatchController(
            messaging=messaging,
            data_store=data_store,
            job_queue=job_queue,
            rate_limiter=rate_limiter,
            telemetry=telemetry,
            blob_store=blob_store,
            notifier=notifier,
            lifecycle=self.lifecycle,
            queue_name=config.DOWNLOAD_QUEUE_NAME,
            sticker_author=config.STICKER_AUTHOR,
            sticker_name=config.STICKER_NAME,
        )
        self.unread = UnreadReconciliationLoop(
            messaging,
            self.lifecycle,
            interval_seconds=config.UNREAD_POLL_INTERVAL_SECONDS,
            data_store=data_store,
            stale_after_seconds=config.STALE_DOWNLOAD_SECONDS,
        )
        self._listener: Optional[asyncio.Task] = None
        self.lifecycle.on_first_ready(self._on_first_ready)

    def _on_first_ready(self) -> None:
        self.controller.register()
        if hasattr(self.job_queue, "listen"):
            self._listener = asyncio.create_task(self.job_queue.listen(self.config.DOWNLOAD_QUEUE_NAME))
        self.unread.start()

    async def start(self) -> None:
        start = getattr(self.notifier, "start", None)
        if start is not None:
            await start()
        if self.config.TRANSPORT_AUTO_READY:
            await self.lifecycle.handle_authenticated()
            await self.lifecycle.handle_ready()
        logger.info("🚀 Puente iniciado | estado=%s", self.lifecycle.state.value)

    async def stop(self) -> None:
        await self.unread.stop()
        if self._listener is not None:
            self._listener.cancel()
            await asyncio.gather(self._listener, return_exceptions=True)
            self._listener = None
        await self.controller.drain()
        stop = getattr(self.notifier, "stop", None)
        if stop is not None:
            await stop()
        logger.info("🛑 Puente detenido")

    def stats(self) -> Dict[str, Any]:
        return {
            "state": self.lifecycle.state.value,
            "is_authenticated": self.lifecycle.is_authenticated,
            "unread_chats": self.unread.unread_total,
        }


def build_bridge(cache: CacheService = cache_service) -> WizardBridge:
    """Arma el puente con los adaptadores de producción."""
    data_store = SqlDataStore()
    files = FileService()
    return WizardBridge(
        messaging=WhatsAppService(data_store, files),
        data_store=data_store,
        job_queue=RedisJobQueue(cache, max_attempts=settings.DOWNLOAD_MAX_ATTEMPTS),
        rate_limiter=RateLimiterService(
            max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
            cache=cache,
        ),
        telemetry=TelemetryService(),
        blob_store=files,
        notifier=build_telegram_service(),
    )
