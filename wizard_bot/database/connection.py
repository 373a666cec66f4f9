"""
🗄️ CONEXIÓN A BASE DE DATOS - CONFIGURACIÓN SQLALCHEMY
======================================================

Configura el engine de SQLAlchemy, la fábrica de sesiones y la base declarativa
para los modelos del puente (usuarios, descargas, errores, stickers y mensajes
entrantes).

🏗️ CONFIGURACIÓN DEL POOL (PostgreSQL):
- Pool permanente: 10 conexiones activas
- Overflow: 20 conexiones adicionales bajo demanda
- Pre-ping y recycle cada hora

🔧 SQLite:
- Soportado para desarrollo/testing (sin QueuePool, check_same_thread=False
  porque las sesiones se usan desde hilos de anyio)

📝 USO:
    from database.connection import SessionLocal, Base
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import QueuePool
from config.settings import settings
import logging

logger = logging.getLogger(__name__)


def build_engine(url: str):
    """Crea el engine según el tipo de base de datos."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=10,                    # Número de conexiones permanentes en el pool
        max_overflow=20,                 # Conexiones adicionales cuando el pool está lleno
        pool_pre_ping=True,             # Verificar conexiones antes de usar
        pool_recycle=3600,              # Reciclar conexiones cada hora
        echo=False,
        connect_args={"connect_timeout": 10},
    )


engine = build_engine(settings.DATABASE_URL)

# Crear sesión local
# expire_on_commit=False: los objetos se leen después de cerrar la sesión (SqlDataStore)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Base para modelos usando el nuevo estilo de declaración
Base = declarative_base()


def init_database():
    """Crea todas las tablas (desarrollo; en producción usar alembic)."""
    import app.models  # noqa: F401  registra los modelos en Base.metadata

    Base.metadata.create_all(bind=engine)
    logger.info("✅ Tablas creadas/verificadas")
