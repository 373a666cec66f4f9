from sqlalchemy import Column, Text, String, Integer, DateTime, Index, func
from database.connection import Base


# Mensajes entrantes de Twilio: idempotencia por SID + historial para no leídos
class InboundMessage(Base):
    __tablename__ = "inbound_messages"
    message_sid = Column(Text, primary_key=True)
    from_number = Column(Text, nullable=False)
    body = Column(Text, nullable=True)
    profile_name = Column(String(120), nullable=True)
    num_media = Column(Integer, nullable=False, default=0)
    media_url = Column(Text, nullable=True)
    media_content_type = Column(String(100), nullable=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_inbound_messages_from_received", "from_number", "received_at"),
    )
