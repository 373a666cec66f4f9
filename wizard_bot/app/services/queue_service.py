"""
📬 COLA DE DESCARGAS SOBRE REDIS
================================

Desacopla el envío de trabajos (API) de su ejecución (worker).

🗝️ CLAVES:
- queue:{name}:job:{key}   → JSON del QueueJob (SET NX, dedupe por key)
- queue:{name}:wait        → lista FIFO de keys pendientes
- queue:{name}:events      → canal pub/sub con eventos completed/failed

🔄 FLUJO:
1. API: submit() guarda el job y lo empuja a la lista de espera
2. Worker: next_job() hace BLPOP, suma un intento y procesa
3. Worker: complete() / fail() publican el evento
4. API: listen() recibe el evento y agenda cada handler registrado con on()
   como una tarea independiente (un handler que falla no frena a los demás)

🔁 REINTENTOS:
- fail() re-encola mientras attempts < max_attempts; sólo el último fallo
  se publica como evento "failed"
"""

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from redis.exceptions import RedisError

from app.services.cache_service import CacheService
from app.services.ports import QueueJob
from app.utils.errors import WizardError

logger = logging.getLogger(__name__)

COMPLETED = "completed"
FAILED = "failed"

JOB_TTL_SECONDS = 24 * 3600


class RedisJobQueue:
    def __init__(self, cache: CacheService, max_attempts: int = 1):
        self.cache = cache
        self.max_attempts = max(1, max_attempts)
        self._handlers: Dict[str, List[Callable[..., Awaitable[None]]]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

    # ---------- Claves ----------

    @staticmethod
    def _job_key(queue_name: str, key: str) -> str:
        return f"queue:{queue_name}:job:{key}"

    @staticmethod
    def _wait_key(queue_name: str) -> str:
        return f"queue:{queue_name}:wait"

    @staticmethod
    def _events_key(queue_name: str) -> str:
        return f"queue:{queue_name}:events"

    @property
    def redis(self):
        if self.cache.redis is None:
            raise WizardError("Redis no disponible para la cola")
        return self.cache.redis

    async def _save(self, job: QueueJob) -> None:
        await self.redis.set(
            self._job_key(job.queue, job.key), json.dumps(job.to_dict()), ex=JOB_TTL_SECONDS
        )

    # ---------- Lado productor ----------

    async def submit(self, queue_name: str, job_key: str, payload: Dict[str, Any]) -> bool:
        """Encola un job. Devuelve False si ya existía uno con la misma key."""
        job = QueueJob(key=job_key, queue=queue_name, data=payload, max_attempts=self.max_attempts)
        created = await self.redis.set(
            self._job_key(queue_name, job_key), json.dumps(job.to_dict()),
            nx=True, ex=JOB_TTL_SECONDS,
        )
        if not created:
            logger.info("🔁 Job duplicado ignorado | queue=%s | key=%s", queue_name, job_key)
            return False
        await self.redis.rpush(self._wait_key(queue_name), job_key)
        logger.info("📬 Job encolado | queue=%s | key=%s", queue_name, job_key)
        return True

    # ---------- Suscripciones ----------

    def on(self, event: str, handler: Callable[..., Awaitable[None]]) -> None:
        if event not in (COMPLETED, FAILED):
            raise ValueError(f"Evento desconocido: {event}")
        self._handlers[event].append(handler)

    async def _run_handler(self, handler, *args) -> None:
        try:
            await handler(*args)
        except Exception:
            logger.exception("❌ Handler de cola falló | handler=%s", getattr(handler, "__name__", handler))

    def dispatch(self, raw: str) -> int:
        """Agenda los handlers de un evento crudo del canal. Devuelve cuántos agendó."""
        try:
            message = json.loads(raw)
            event = message["event"]
            job = QueueJob.from_dict(message["job"])
        except (ValueError, KeyError, TypeError):
            logger.warning("Evento de cola inválido: %r", raw)
            return 0

        args = (job,) if event == COMPLETED else (job, message.get("error") or job.failed_reason or "")
        handlers = self._handlers.get(event, [])
        for handler in handlers:
            task = asyncio.create_task(self._run_handler(handler, *args))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return len(handlers)

    async def drain(self) -> None:
        """Espera a que terminen los handlers en vuelo."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def listen(self, queue_name: str, reconnect_delay: float = 1.0) -> None:
        """
        Consume el canal de eventos hasta que cancelen la tarea.

        Sin Redis configurado no hay nada que escuchar: avisa una vez y termina.
        Los cortes de conexión se reintentan cada reconnect_delay segundos.
        """
        channel = self._events_key(queue_name)
        if self.cache.redis is None:
            logger.warning("Redis no disponible, no se escuchan eventos de %s", channel)
            return
        while True:
            pubsub = None
            try:
                pubsub = self.redis.pubsub()
                await pubsub.subscribe(channel)
                logger.info("👂 Escuchando eventos de %s", channel)
                async for message in pubsub.listen():
                    if message.get("type") == "message":
                        self.dispatch(message["data"])
            except asyncio.CancelledError:
                raise
            except (RedisError, OSError) as e:
                logger.warning("Conexión de eventos perdida (%s), reintentando en %ss", e, reconnect_delay)
                await asyncio.sleep(reconnect_delay)
            finally:
                if pubsub is not None:
                    try:
                        await pubsub.aclose()
                    except (RedisError, OSError) as e:
                        logger.debug("Error cerrando pubsub: %s", e)

    # ---------- Lado worker ----------

    async def next_job(self, queue_name: str, timeout: int = 5) -> Optional[QueueJob]:
        popped = await self.redis.blpop([self._wait_key(queue_name)], timeout=timeout)
        if not popped:
            return None
        _, key = popped
        raw = await self.redis.get(self._job_key(queue_name, key))
        if raw is None:
            logger.warning("Job %s expiró antes de procesarse", key)
            return None
        job = QueueJob.from_dict(json.loads(raw))
        job.attempts += 1
        await self._save(job)
        return job

    async def _publish(self, event: str, job: QueueJob, error: Optional[str] = None) -> None:
        message = {"event": event, "job": job.to_dict()}
        if error is not None:
            message["error"] = error
        await self.redis.publish(self._events_key(job.queue), json.dumps(message))

    async def complete(self, job: QueueJob, result: Dict[str, Any]) -> None:
        job.result = result
        job.failed_reason = None
        await self._save(job)
        await self._publish(COMPLETED, job)

    async def fail(self, job: QueueJob, error: str) -> bool:
        """Registra un fallo. Devuelve True si fue definitivo (evento publicado)."""
        job.failed_reason = error
        await self._save(job)
        if job.attempts < job.max_attempts:
            await self.redis.rpush(self._wait_key(job.queue), job.key)
            logger.info("🔁 Reintento %s/%s | key=%s", job.attempts, job.max_attempts, job.key)
            return False
        await self._publish(FAILED, job, error)
        return True
