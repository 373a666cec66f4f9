"""
🔌 PUERTOS DEL NÚCLEO - CONTRATOS CON COLABORADORES EXTERNOS
============================================================

El controlador de despacho, la máquina de estados y el loop de no leídos sólo
hablan con estos contratos. Los adaptadores concretos (Twilio, Telegram, Redis,
SQLAlchemy, filesystem) viven en sus propios módulos.

📦 TIPOS DE VALOR:
- InboundMessage: evento de mensaje entrante ya normalizado
- MessageHandle: mensaje re-resuelto por su identificador estable
- Chat: conversación con su contador de no leídos
- Media: contenido saliente (bytes o ruta local)
- Artifact: archivo descargado por el worker
- QueueJob: unidad de trabajo de la cola
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union, runtime_checkable


@dataclass(frozen=True)
class InboundMessage:
    id: str                       # identificador estable de la plataforma (SID)
    conversation_id: str          # Conversation Identity (número formateado)
    body: str
    timestamp: datetime
    sender_name: Optional[str] = None
    device_type: Optional[str] = None
    links: List[str] = field(default_factory=list)
    has_media: bool = False
    is_group: bool = False
    is_read_only: bool = False


@dataclass(frozen=True)
class MessageHandle:
    id: str
    conversation_id: str
    body: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class Chat:
    id: str
    unread_count: int = 0
    is_group: bool = False
    is_read_only: bool = False


@dataclass(frozen=True)
class Media:
    mimetype: str
    data: Optional[bytes] = None
    path: Optional[str] = None

    @classmethod
    def from_file_path(cls, path: str, mimetype: str = "application/octet-stream") -> "Media":
        return cls(mimetype=mimetype, path=path)


@dataclass(frozen=True)
class ReplyOptions:
    send_media_as_sticker: bool = False
    sticker_author: Optional[str] = None
    sticker_name: Optional[str] = None


@dataclass(frozen=True)
class Artifact:
    path: str


@dataclass
class QueueJob:
    key: str
    queue: str
    data: Dict[str, Any]
    attempts: int = 0
    max_attempts: int = 1
    result: Optional[Dict[str, Any]] = None
    failed_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "queue": self.queue,
            "data": self.data,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "result": self.result,
            "failed_reason": self.failed_reason,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "QueueJob":
        return cls(
            key=raw["key"],
            queue=raw["queue"],
            data=raw.get("data") or {},
            attempts=int(raw.get("attempts") or 0),
            max_attempts=int(raw.get("max_attempts") or 1),
            result=raw.get("result"),
            failed_reason=raw.get("failed_reason"),
        )


ReplyContent = Union[str, Media]
CompletedHandler = Callable[[QueueJob], Awaitable[None]]
FailedHandler = Callable[[QueueJob, str], Awaitable[None]]


class MessagingPort(Protocol):
    async def reply(self, original: MessageHandle, content: ReplyContent,
                    options: Optional[ReplyOptions] = None) -> str: ...

    async def send_message(self, chat_id: str, text: str) -> str: ...

    async def get_chats(self) -> List[Chat]: ...

    async def fetch_messages(self, chat_id: str) -> List[MessageHandle]: ...

    async def get_message_by_id(self, message_id: str) -> MessageHandle: ...

    async def download_media(self, message: InboundMessage) -> Optional[Media]: ...


class DataStore(Protocol):
    async def find_user_by_key(self, key: str) -> Optional[Any]: ...

    async def upsert_user(self, payload: Dict[str, Any]) -> Any: ...

    async def create_download_job(self, url: str, status: Any, owner_id: str,
                                  requested_at: datetime) -> Any: ...

    async def update_job_status(self, job_id: str, status: Any) -> None: ...

    async def create_error_record(self, message: str, job_id: Optional[str]) -> None: ...

    async def create_sticker(self, owner_id: str, timestamp: datetime, body: Optional[str]) -> None: ...

    async def expire_stale_downloads(self, older_than: datetime) -> int: ...


class JobQueue(Protocol):
    async def submit(self, queue_name: str, job_key: str, payload: Dict[str, Any]) -> bool: ...

    def on(self, event: str, handler: Callable[..., Awaitable[None]]) -> None: ...


class NotificationPort(Protocol):
    async def send_message(self, text: str) -> Optional[int]: ...

    async def send_image(self, path: str) -> Optional[int]: ...

    async def update_image(self, path: str, message_ref: int) -> None: ...

    async def delete_message(self, message_ref: int) -> None: ...


class TelemetrySink(Protocol):
    def track_event(self, event_name: str, subject_id: str,
                    properties: Optional[Dict[str, Any]] = None) -> None: ...

    def identify(self, subject_id: str, traits: Optional[Dict[str, Any]] = None) -> None: ...


class BlobStore(Protocol):
    async def write(self, path: str, data: bytes) -> None: ...

    async def remove(self, path: str) -> None: ...


@runtime_checkable
class TransportStatus(Protocol):
    """Lo único que el núcleo consulta de la máquina de estados."""

    @property
    def is_ready(self) -> bool: ...
