"""
🗃️ DATA STORE - PERSISTENCIA DEL PUENTE
=======================================

Implementa el contrato asíncrono de persistencia que usa el núcleo sobre
SQLAlchemy (sesiones síncronas).

🏗️ DOS CAPAS:
- BridgeRepository: métodos síncronos sobre una Session, con @auto_commit /
  @read_only para el manejo de transacciones
- SqlDataStore: fachada async; cada operación abre su propia sesión y corre
  en un hilo de anyio para no bloquear el event loop

📊 OPERACIONES:
- Usuarios: find_user_by_key, upsert_user (idempotente por teléfono)
- Descargas: create_download_job, update_job_status, expire_stale_downloads
- Errores y stickers: create_error_record, create_sticker
- Mensajes entrantes: claim_inbound_message (idempotencia por SID),
  mark_inbound_read, list_conversations, fetch_conversation_messages,
  get_inbound_message
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import anyio
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.models import Download, DownloadError, DownloadStatus, InboundMessage, Sticker, User
from app.utils.transaction_decorator import auto_commit, read_only

logger = logging.getLogger(__name__)

USER_FIELDS = ("name", "phone", "platform", "country")

# Solo una descarga abierta puede cambiar de estado; SENT y FAILED son finales
OPEN_STATUSES = (DownloadStatus.UNKNOWN, DownloadStatus.PENDING)


class BridgeRepository:
    def __init__(self, db: Session):
        self.db = db

    # ---------- Usuarios ----------

    @read_only
    def find_user_by_phone(self, phone: str) -> Optional[User]:
        return self.db.execute(select(User).where(User.phone == phone)).scalar_one_or_none()

    def upsert_user(self, payload: Dict[str, Any]) -> User:
        data = {k: payload.get(k) for k in USER_FIELDS if payload.get(k) is not None}
        user = self.find_user_by_phone(data["phone"])
        if user is None:
            try:
                user = User(**data)
                self.db.add(user)
                self.db.commit()
                self.db.refresh(user)  # first_seen lo pone la base
                return user
            except IntegrityError:
                # Otro request creó el mismo teléfono entre el select y el insert
                self.db.rollback()
                user = self.find_user_by_phone(data["phone"])
        return self._update_user(user, data)

    @auto_commit
    def _update_user(self, user: User, data: Dict[str, Any]) -> User:
        for key, value in data.items():
            setattr(user, key, value)
        return user

    # ---------- Descargas ----------

    @auto_commit
    def create_download(self, url: str, status: DownloadStatus, owner_id: str,
                        requested_at: datetime) -> Download:
        download = Download(url=url, status=status, owner_id=owner_id, requested_at=requested_at)
        self.db.add(download)
        self.db.flush()
        return download

    @auto_commit
    def update_download_status(self, download_id: str, status: DownloadStatus) -> int:
        result = self.db.execute(
            update(Download)
            .where(Download.id == download_id, Download.status.in_(OPEN_STATUSES))
            .values(status=status)
        )
        return result.rowcount

    @auto_commit
    def expire_stale_downloads(self, older_than: datetime) -> int:
        result = self.db.execute(
            update(Download)
            .where(
                Download.status.in_(OPEN_STATUSES),
                Download.requested_at < older_than,
            )
            .values(status=DownloadStatus.FAILED)
        )
        return result.rowcount

    @auto_commit
    def create_error(self, message: str, download_id: Optional[str]) -> DownloadError:
        error = DownloadError(message=message, download_id=download_id)
        self.db.add(error)
        return error

    @auto_commit
    def create_sticker(self, owner_id: str, timestamp: datetime, body: Optional[str]) -> Sticker:
        sticker = Sticker(owner_id=owner_id, timestamp=timestamp, body=body)
        self.db.add(sticker)
        return sticker

    # ---------- Mensajes entrantes ----------

    def claim_inbound(self, message_sid: str, from_number: str, body: Optional[str],
                      profile_name: Optional[str] = None, num_media: int = 0,
                      media_url: Optional[str] = None, media_content_type: Optional[str] = None) -> bool:
        """Intenta registrar el SID. Si ya existe, devuelve False (duplicado)."""
        if not message_sid:
            return True  # sin SID, no podemos asegurar; permitimos seguir
        try:
            self.db.add(InboundMessage(
                message_sid=message_sid, from_number=from_number, body=body,
                profile_name=profile_name, num_media=num_media,
                media_url=media_url, media_content_type=media_content_type,
            ))
            self.db.commit()
            return True
        except IntegrityError:
            self.db.rollback()
            return False

    @auto_commit
    def mark_inbound_read(self, message_sid: str, read_at: datetime) -> None:
        self.db.execute(
            update(InboundMessage)
            .where(InboundMessage.message_sid == message_sid, InboundMessage.read_at.is_(None))
            .values(read_at=read_at)
        )

    @read_only
    def list_conversations(self) -> List[Tuple[str, int]]:
        unread = func.sum(case((InboundMessage.read_at.is_(None), 1), else_=0))
        rows = self.db.execute(
            select(InboundMessage.from_number, unread).group_by(InboundMessage.from_number)
        ).all()
        return [(number, int(count or 0)) for number, count in rows]

    @read_only
    def fetch_conversation_messages(self, from_number: str) -> List[InboundMessage]:
        return list(self.db.execute(
            select(InboundMessage)
            .where(InboundMessage.from_number == from_number)
            .order_by(InboundMessage.received_at.asc(), InboundMessage.message_sid.asc())
        ).scalars())

    @read_only
    def get_inbound(self, message_sid: str) -> Optional[InboundMessage]:
        return self.db.get(InboundMessage, message_sid)


class SqlDataStore:
    """Fachada async del repositorio: una sesión por operación, en un hilo."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        if session_factory is None:
            from database.connection import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory

    async def _run(self, fn: Callable[..., Any], *args) -> Any:
        def _call():
            db = self.session_factory()
            try:
                return fn(BridgeRepository(db), *args)
            finally:
                db.close()
        return await anyio.to_thread.run_sync(_call)

    async def find_user_by_key(self, key: str) -> Optional[User]:
        return await self._run(BridgeRepository.find_user_by_phone, key)

    async def upsert_user(self, payload: Dict[str, Any]) -> User:
        return await self._run(BridgeRepository.upsert_user, payload)

    async def create_download_job(self, url: str, status: DownloadStatus, owner_id: str,
                                  requested_at: datetime) -> Download:
        return await self._run(BridgeRepository.create_download, url, status, owner_id, requested_at)

    async def update_job_status(self, job_id: str, status: DownloadStatus) -> None:
        updated = await self._run(BridgeRepository.update_download_status, job_id, status)
        if not updated:
            logger.warning("Descarga %s no encontrada o ya cerrada al actualizar a %s", job_id, status.value)

    async def create_error_record(self, message: str, job_id: Optional[str]) -> None:
        await self._run(BridgeRepository.create_error, message, job_id)

    async def create_sticker(self, owner_id: str, timestamp: datetime, body: Optional[str]) -> None:
        await self._run(BridgeRepository.create_sticker, owner_id, timestamp, body)

    async def expire_stale_downloads(self, older_than: datetime) -> int:
        return await self._run(BridgeRepository.expire_stale_downloads, older_than)

    async def claim_inbound_message(self, message_sid: str, from_number: str, body: Optional[str],
                                    **media: Any) -> bool:
        return await self._run(
            lambda repo: repo.claim_inbound(message_sid, from_number, body, **media)
        )

    async def mark_inbound_read(self, message_sid: str, read_at: datetime) -> None:
        await self._run(BridgeRepository.mark_inbound_read, message_sid, read_at)

    async def list_conversations(self) -> List[Tuple[str, int]]:
        return await self._run(BridgeRepository.list_conversations)

    async def fetch_conversation_messages(self, from_number: str) -> List[InboundMessage]:
        return await self._run(BridgeRepository.fetch_conversation_messages, from_number)

    async def get_inbound_message(self, message_sid: str) -> Optional[InboundMessage]:
        return await self._run(BridgeRepository.get_inbound, message_sid)
