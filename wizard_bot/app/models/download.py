"""
📥 MODELO DE DESCARGAS
======================

Registro persistente de cada link pedido por un usuario.

📋 ESTADOS:
- UNKNOWN: recién creado, el worker todavía no lo clasificó
- PENDING: en cola (implícito hasta que la cola reporte)
- SENT: artefactos entregados al usuario
- FAILED: la cola reportó fallo o quedó colgado más allá del límite

El núcleo nunca borra registros; la retención es asunto de la base de datos.
"""

from enum import Enum
from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Index
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database.connection import Base
from app.models.user import _uuid


class DownloadStatus(Enum):
    UNKNOWN = "UNKNOWN"
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class Download(Base):
    __tablename__ = "downloads"

    id = Column(String(36), primary_key=True, default=_uuid)
    url = Column(Text, nullable=False)
    status = Column(SQLEnum(DownloadStatus), default=DownloadStatus.UNKNOWN, nullable=False)
    owner_id = Column(String(36), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    requested_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    owner = relationship("User", lazy="joined")
    errors = relationship("DownloadError", back_populates="download", lazy="selectin")

    __table_args__ = (
        Index("ix_downloads_status_requested", "status", "requested_at"),
    )

    def __repr__(self):
        return f"<Download(id={self.id}, status={self.status}, owner_id={self.owner_id})>"


class DownloadError(Base):
    __tablename__ = "download_errors"

    id = Column(String(36), primary_key=True, default=_uuid)
    message = Column(Text, nullable=False)
    download_id = Column(String(36), ForeignKey("downloads.id", ondelete="CASCADE"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    download = relationship("Download", back_populates="errors")

    def __repr__(self):
        return f"<DownloadError(download_id={self.download_id})>"
