"""
🗄️ SERVICIO DE CACHÉ - CONEXIÓN REDIS COMPARTIDA
================================================

Interfaz mínima sobre Redis compartida por el rate limiter y la cola de
descargas.

⚡ CARACTERÍSTICAS:
- Conexión asíncrona con redis-py (redis.asyncio)
- Conexión opcional: si Redis no está, la app arranca igual y los
  consumidores deciden su fallback
- INCR + EXPIRE atómicos en un pipeline transaccional

📝 EJEMPLO DE USO:
    await cache_service.connect()
    count = await cache_service.incr_with_ttl("ratelimit:+57300:2841", 60)
    if count is None:
        # Redis no disponible, usar contador local
        ...
"""

from __future__ import annotations
import logging
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from config.settings import settings

logger = logging.getLogger(__name__)

class CacheService:
    def __init__(self, url: Optional[str], enabled: bool = True):
        self.url = url
        self.enabled = enabled
        self.redis: Optional[Redis] = None

    @property
    def available(self) -> bool:
        return self.redis is not None

    async def connect(self):
        if not self.enabled or not self.url:
            logger.warning("Redis deshabilitado (sin URL o REDIS_ENABLED=false)")
            return
        if self.redis is None:
            self.redis = Redis.from_url(self.url, decode_responses=True)
            try:
                await self.redis.ping()
                logger.info("Conectado a Redis")
            except (RedisError, OSError) as e:
                logger.warning(f"No se pudo conectar a Redis: {e}")
                await self.redis.aclose()
                self.redis = None

    async def close(self):
        if self.redis is not None:
            try:
                await self.redis.aclose()  # cierra conexión limpia
            except (RedisError, OSError) as e:
                logger.warning(f"Error cerrando Redis: {e}")
            self.redis = None

    # Rate limit: INCR con TTL en la misma clave. None = Redis no disponible.
    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> Optional[int]:
        if not self.redis:
            return None
        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.incr(key)
            pipe.expire(key, ttl_seconds)
            res = await pipe.execute()
            return int(res[0])
        except (RedisError, OSError) as e:
            logger.warning(f"INCR falló en Redis ({key}): {e}")
            return None

cache_service = CacheService(settings.REDIS_URL, settings.REDIS_ENABLED)
