"""
🚦 RATE LIMITER POR CONVERSACIÓN
================================

Decide si una conversación puede encolar una nueva descarga.

⏱️ ALGORITMO: ventana fija.
- La ventana actual es floor(now / window_seconds)
- Cada llamada suma 1 al contador (identidad, ventana)
- Si el contador supera la capacidad → limitado hasta que la ventana cambie

🔒 CONCURRENCIA:
- Con Redis: INCR es atómico, vale entre procesos
- El contador local se incrementa SIEMPRE (también con Redis) y la decisión
  usa el mayor de los dos: si Redis falla a mitad de ventana, lo ya admitido
  en este proceso sigue contando
- El chequeo + incremento local no tiene puntos de suspensión, así que en un
  event loop es atómico por identidad
"""

import logging
import time
from typing import Callable, Dict, Optional, Tuple

from app.services.cache_service import CacheService
from app.utils.logging_conf import mask_number

logger = logging.getLogger(__name__)


class RateLimiterService:
    def __init__(
        self,
        max_requests: int = 1,
        window_seconds: int = 60,
        cache: Optional[CacheService] = None,
        clock: Callable[[], float] = time.time,
    ):
        if max_requests < 1 or window_seconds < 1:
            raise ValueError("max_requests y window_seconds deben ser >= 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.cache = cache
        self.clock = clock
        self._counters: Dict[str, Tuple[int, int]] = {}
        self._last_window: Optional[int] = None

    def _window(self) -> int:
        return int(self.clock() // self.window_seconds)

    def _local_hit(self, identity: str, window: int) -> int:
        # Sin awaits entre lectura y escritura
        if window != self._last_window:
            self._counters = {k: v for k, v in self._counters.items() if v[0] == window}
            self._last_window = window
        win, count = self._counters.get(identity, (window, 0))
        if win != window:
            count = 0
        count += 1
        self._counters[identity] = (window, count)
        return count

    async def is_rate_limited(self, identity: str) -> bool:
        window = self._window()
        local = self._local_hit(identity, window)
        count = None
        if self.cache is not None and self.cache.available:
            count = await self.cache.incr_with_ttl(
                f"ratelimit:{identity}:{window}", self.window_seconds
            )
        count = local if count is None else max(count, local)

        limited = count > self.max_requests
        if limited:
            logger.info("🚦 Rate limited | from=%s | count=%s", mask_number(identity), count)
        return limited
