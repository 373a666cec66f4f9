import logging
import time
from typing import Optional

import anyio

logger = logging.getLogger(__name__)


class FileService:
    """Blob store sobre el filesystem local (async vía anyio)."""

    async def write(self, path: str, data: bytes) -> None:
        target = anyio.Path(path)
        await target.parent.mkdir(parents=True, exist_ok=True)
        await target.write_bytes(data)

    async def remove(self, path: str) -> None:
        try:
            await anyio.Path(path).unlink()
        except FileNotFoundError:
            logger.debug("Archivo ya borrado: %s", path)

    async def exists(self, path: str) -> bool:
        return await anyio.Path(path).exists()

    async def read(self, path: str) -> bytes:
        return await anyio.Path(path).read_bytes()

    async def prune(self, directory: str, max_age_seconds: int, now: Optional[float] = None) -> int:
        """Borra archivos más viejos que max_age_seconds. Devuelve cuántos borró."""
        base = anyio.Path(directory)
        if not await base.exists():
            return 0
        cutoff = (now or time.time()) - max_age_seconds
        removed = 0
        async for entry in base.iterdir():
            stat = await entry.stat()
            if await entry.is_file() and stat.st_mtime < cutoff:
                await self.remove(str(entry))
                removed += 1
        return removed
