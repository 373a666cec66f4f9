import uuid
from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from database.connection import Base


def _uuid() -> str:
    return str(uuid.uuid4())


# Usuario final de WhatsApp (una fila por número)
class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(120), nullable=False)
    phone = Column(String(32), unique=True, nullable=False)  # unique ya crea su índice
    platform = Column(String(32), nullable=True)
    country = Column(String(16), nullable=True)
    first_seen = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<User(phone='{self.phone}', name='{self.name}')>"
