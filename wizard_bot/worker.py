"""Entry point del worker de descargas: python worker.py"""
import asyncio
import logging
import signal

from app.services.cache_service import cache_service
from app.services.download_service import DownloadWorker
from app.services.file_service import FileService
from app.services.queue_service import RedisJobQueue
from app.utils.logging_conf import setup_logging
from config.settings import settings

logger = logging.getLogger(__name__)


async def main() -> None:
    await cache_service.connect()
    if not cache_service.available:
        logger.error("❌ El worker necesita Redis (REDIS_URL=%s)", settings.REDIS_URL)
        return

    worker = DownloadWorker(
        RedisJobQueue(cache_service, max_attempts=settings.DOWNLOAD_MAX_ATTEMPTS),
        FileService(),
        queue_name=settings.DOWNLOAD_QUEUE_NAME,
        download_dir=settings.DOWNLOAD_DIR,
        timeout=settings.DOWNLOAD_TIMEOUT_SECONDS,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.shutdown()))

    try:
        await worker.run_forever()
    finally:
        await cache_service.close()


if __name__ == "__main__":
    setup_logging(settings.LOG_LEVEL)
    asyncio.run(main())
