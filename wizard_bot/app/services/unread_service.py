"""
📨 RECONCILIACIÓN DE CHATS NO LEÍDOS
====================================

Cada pasada reconstruye desde cero el índice conversación → mensajes no leídos
(en orden cronológico) y actualiza el contador global sólo si cambió.

⏱️ AGENDA:
- Una pasada al arrancar (cuando el transporte está READY)
- Luego cada UNREAD_POLL_INTERVAL_SECONDS mientras el transporte esté READY
- Un error en una pasada se registra y se salta; la siguiente se agenda igual

🧹 DESCARGAS COLGADAS:
- En la misma pasada, las descargas UNKNOWN/PENDING más viejas que
  STALE_DOWNLOAD_SECONDS se marcan FAILED
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from app.services.ports import DataStore, MessageHandle, MessagingPort, TransportStatus

logger = logging.getLogger(__name__)

UnreadIndex = Dict[str, List[MessageHandle]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UnreadReconciliationLoop:
    def __init__(
        self,
        messaging: MessagingPort,
        lifecycle: TransportStatus,
        interval_seconds: float = 15,
        data_store: Optional[DataStore] = None,
        stale_after_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.messaging = messaging
        self.lifecycle = lifecycle
        self.interval_seconds = interval_seconds
        self.data_store = data_store
        self.stale_after_seconds = stale_after_seconds
        self.clock = clock

        self.unread_total = 0
        self.last_index: UnreadIndex = {}
        self._task: Optional[asyncio.Task] = None

    async def run_pass(self) -> Optional[UnreadIndex]:
        """Una pasada completa. None si falló."""
        index: UnreadIndex = {}
        total = 0
        try:
            for chat in await self.messaging.get_chats():
                if chat.unread_count <= 0:
                    continue
                history = await self.messaging.fetch_messages(chat.id)
                newest_first = list(reversed(history))[:chat.unread_count]
                index[chat.id] = list(reversed(newest_first))
                total += chat.unread_count
        except Exception:
            logger.exception("❌ Error revisando mensajes no leídos")
            return None

        if total != self.unread_total:
            logger.info("📨 No leídos: %s → %s", self.unread_total, total)
            self.unread_total = total
        self.last_index = index
        return index

    async def sweep_stale_downloads(self) -> int:
        if self.data_store is None or not self.stale_after_seconds:
            return 0
        cutoff = self.clock() - timedelta(seconds=self.stale_after_seconds)
        try:
            expired = await self.data_store.expire_stale_downloads(cutoff)
        except Exception:
            logger.exception("❌ Error marcando descargas colgadas")
            return 0
        if expired:
            logger.warning("🧹 %s descargas sin respuesta marcadas FAILED", expired)
        return expired

    async def run_forever(self) -> None:
        while True:
            if self.lifecycle.is_ready:
                await self.run_pass()
                await self.sweep_stale_downloads()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
            logger.info("▶️ Loop de no leídos iniciado (cada %ss)", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
