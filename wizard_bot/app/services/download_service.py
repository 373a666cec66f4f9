"""
⬇️ WORKER DE DESCARGAS
======================

Consume la cola de descargas fuera del proceso de la API: baja el link, lo
guarda en PRIVATE_DIR/downloads y reporta el resultado a la cola.

📦 RESULTADO (evento "completed"):
    {"artifacts": [{"path": "<ruta local>"}], "download_id": "<id>"}

🛡️ Un job que falla se reporta con fail() y el loop sigue; nunca se cae el
worker por un solo job.
"""

import asyncio
import logging
import os
import re
import uuid
from typing import Any, Dict, Tuple
from urllib.parse import unquote, urlparse

import anyio
import requests

from app.services.file_service import FileService
from app.services.ports import QueueJob
from app.services.queue_service import RedisJobQueue

logger = logging.getLogger(__name__)

_FILENAME_RE = re.compile(r'filename\*?=(?:UTF-8\'\')?"?([^";]+)"?', re.IGNORECASE)


def sanitize_filename(name: str) -> str:
    """'Mi Video (1).MP4' → 'Mi-Video-1.mp4'"""
    if "." in name:
        stem, ext = name.rsplit(".", 1)
        ext = "." + re.sub(r"[^A-Za-z0-9]", "", ext.lower())[:10]
    else:
        stem, ext = name, ""
    stem = stem.replace(" ", "-")
    stem = re.sub(r"[^A-Za-z0-9._-]", "_", stem)
    stem = re.sub(r"[-_]+", "-", stem).strip("-_")
    return (stem[:100] or "download") + (ext if ext != "." else "")


def filename_for(url: str, content_disposition: str = "") -> str:
    match = _FILENAME_RE.search(content_disposition or "")
    if match:
        return sanitize_filename(unquote(match.group(1)))
    path_name = os.path.basename(urlparse(url).path)
    return sanitize_filename(unquote(path_name) or "download")


class DownloadWorker:
    def __init__(self, queue: RedisJobQueue, files: FileService, queue_name: str,
                 download_dir: str, timeout: int = 60, poll_timeout: int = 5):
        self.queue = queue
        self.files = files
        self.queue_name = queue_name
        self.download_dir = download_dir
        self.timeout = timeout
        self.poll_timeout = poll_timeout
        self._shutdown = asyncio.Event()

    def _fetch(self, url: str) -> Tuple[bytes, str]:
        response = requests.get(url, timeout=self.timeout)
        response.raise_for_status()
        return response.content, filename_for(url, response.headers.get("Content-Disposition", ""))

    async def process(self, job: QueueJob) -> Dict[str, Any]:
        url = job.data["url"]
        logger.info("⬇️ Descargando | key=%s | intento=%s", job.key, job.attempts)
        content, filename = await anyio.to_thread.run_sync(self._fetch, url)
        path = os.path.join(self.download_dir, f"{uuid.uuid4().hex[:8]}-{filename}")
        await self.files.write(path, content)
        logger.info("💾 Guardado %s (%s bytes)", path, len(content))
        return {"artifacts": [{"path": path}], "download_id": job.data.get("download_id")}

    async def run_forever(self) -> None:
        logger.info("Worker de descargas escuchando %s", self.queue_name)
        while not self._shutdown.is_set():
            try:
                job = await self.queue.next_job(self.queue_name, timeout=self.poll_timeout)
            except Exception as exc:
                logger.warning("No se pudo tomar un job (reintento): %s", exc)
                await asyncio.sleep(self.poll_timeout)
                continue
            if job is None:
                continue

            try:
                result = await self.process(job)
            except Exception as exc:
                logger.error("❌ Descarga falló | key=%s | error=%s", job.key, exc)
                report = self.queue.fail(job, str(exc))
            else:
                report = self.queue.complete(job, result)
            # Si Redis se cae al reportar, el job se pierde pero el worker sigue vivo
            try:
                await report
            except Exception:
                logger.exception("❌ No se pudo reportar el job %s a la cola", job.key)
        logger.info("Worker de descargas detenido")

    async def shutdown(self) -> None:
        self._shutdown.set()
