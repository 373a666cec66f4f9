import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from app.routers import admin, whatsapp
from app.services.bridge import build_bridge
from app.utils.logging_conf import setup_logging
from config.settings import settings
from app.services.cache_service import cache_service
from contextlib import asynccontextmanager

setup_logging(settings.LOG_LEVEL)

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Redis primero: la cola y el rate limiter dependen de él
    await cache_service.connect()
    bridge = build_bridge(cache_service)
    app.state.bridge = bridge
    await bridge.start()
    yield
    # shutdown
    await bridge.stop()
    await cache_service.close()

# Rate limiter por IP (floods contra los webhooks)
limiter = Limiter(key_func=get_remote_address)

app = FastAPI(
    title="WhatsApp Wizard Bridge",
    description="Puente WhatsApp → cola de descargas → respuesta en la conversación",
    version="3.0.0",
    lifespan=lifespan,
    debug=settings.DEBUG
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

if settings.DEBUG:
    # En desarrollo, permitir todos los orígenes
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.PUBLIC_BASE_URL],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

# Archivos públicos: media saliente para Twilio
os.makedirs(settings.PUBLIC_DIR, exist_ok=True)
app.mount("/static", StaticFiles(directory=settings.PUBLIC_DIR), name="static")

# Incluir routers
app.include_router(whatsapp.router, prefix="/webhook", tags=["webhook"])
app.include_router(admin.router, tags=["admin"])


@app.get("/")
async def root():
    return {
        "message": "WhatsApp Wizard funcionando!",
        "docs": "/docs",
        "status": "activo"
    }

@app.get("/health")
async def health_check():
    bridge = getattr(app.state, "bridge", None)
    return {
        "status": "healthy",
        "service": "wizard-bridge",
        "transport": bridge.lifecycle.state.value if bridge else None,
        "redis": cache_service.available,
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000, log_level="debug" if settings.DEBUG else "info")
