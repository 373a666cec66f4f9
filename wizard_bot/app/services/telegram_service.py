"""
📣 CANAL ADMINISTRATIVO - TELEGRAM
==================================

Reenvía eventos operativos (QR de autenticación, estado del cliente, resultado
de broadcasts) a un chat de Telegram de administración.

⚙️ CONFIGURACIÓN:
- TELEGRAM_BOT_TOKEN / TELEGRAM_ADMIN_CHAT_ID
- Si falta alguno, el servicio queda deshabilitado y sólo registra en logs

🛡️ ERRORES:
- Las excepciones de Telegram se propagan; quien llama decide si son
  best-effort (la máquina de estados las registra y sigue)
"""

import logging
from pathlib import Path
from typing import Optional

from telegram import Bot, InputMediaPhoto

from config.settings import settings

logger = logging.getLogger(__name__)


class TelegramService:
    def __init__(self, token: Optional[str] = None, chat_id: Optional[str] = None, bot: Optional[Bot] = None):
        self.chat_id = chat_id
        self.bot = bot or (Bot(token) if token else None)

    @property
    def enabled(self) -> bool:
        return self.bot is not None and bool(self.chat_id)

    async def start(self) -> None:
        if self.enabled:
            await self.bot.initialize()

    async def stop(self) -> None:
        if self.enabled:
            await self.bot.shutdown()

    async def send_message(self, text: str) -> Optional[int]:
        if not self.enabled:
            logger.info("[admin] %s", text)
            return None
        msg = await self.bot.send_message(chat_id=self.chat_id, text=text)
        return msg.message_id

    async def send_image(self, path: str) -> Optional[int]:
        if not self.enabled:
            logger.info("[admin] imagen disponible en %s", path)
            return None
        msg = await self.bot.send_photo(chat_id=self.chat_id, photo=Path(path))
        return msg.message_id

    async def update_image(self, path: str, message_ref: int) -> None:
        if not self.enabled:
            return
        await self.bot.edit_message_media(
            media=InputMediaPhoto(media=Path(path)),
            chat_id=self.chat_id,
            message_id=message_ref,
        )

    async def delete_message(self, message_ref: int) -> None:
        if not self.enabled:
            return
        await self.bot.delete_message(chat_id=self.chat_id, message_id=message_ref)


def build_telegram_service() -> TelegramService:
    return TelegramService(settings.TELEGRAM_BOT_TOKEN, settings.TELEGRAM_ADMIN_CHAT_ID)
