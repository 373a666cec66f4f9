import asyncio
import logging

logger = logging.getLogger(__name__)


async def retry_async(fn, *, attempts=3, base_delay=0.4, exc=(Exception,), label=None):
    """
    Reintenta await fn() hasta `attempts` veces con backoff exponencial
    (base, 2*base, 4*base, ...).

    Se usa para re-resolver el mensaje original antes de responder: el SID es
    estable pero la API de Twilio puede tardar en reflejar un mensaje recién
    recibido.

    - fn: función sin argumentos que devuelve una coroutine
      (p.ej. lambda: messaging.get_message_by_id(sid))
    - exc: tipos de excepción que activan el reintento; el resto se propaga
    - label: nombre para los logs
    """
    for i in range(attempts):
        try:
            return await fn()
        except exc as e:
            if i == attempts - 1:
                raise
            delay = base_delay * (2 ** i)
            logger.debug("Reintento %s/%s de %s en %.1fs (%s)", i + 1, attempts - 1, label or "operación", delay, e)
            await asyncio.sleep(delay)
