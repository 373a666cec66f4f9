"""
🔐 MÁQUINA DE ESTADOS DEL TRANSPORTE
====================================

Sigue el estado de autenticación/conectividad del cliente de WhatsApp y lo
reenvía al canal administrativo.

📋 ESTADOS:
    DISCONNECTED → AUTHENTICATING → AUTHENTICATED → READY
    AUTH_FAILURE y DISCONNECTED son alcanzables desde cualquier estado.
    (DISCONNECTED/AUTH_FAILURE → AUTHENTICATED directo cuando la sesión se
    restaura sin QR.)

🎯 REGLAS:
- Sólo en READY corren el despacho y la reconciliación de no leídos
- Cada transición emite exactamente un evento de telemetría
- Señales duplicadas (ej. "ready" dos veces) no hacen nada
- Al entrar a READY, si hay un QR publicado se retira una sola vez
- Los hooks de "primer READY" (suscripciones a la cola, loop de no leídos)
  se ejecutan una única vez por proceso
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

from app.services.ports import BlobStore, NotificationPort, TelemetrySink
from app.utils.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class TransportState(Enum):
    DISCONNECTED = "disconnected"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    AUTH_FAILURE = "auth_failure"


ALWAYS_REACHABLE = {TransportState.AUTH_FAILURE, TransportState.DISCONNECTED}

ALLOWED_TRANSITIONS: Dict[TransportState, Set[TransportState]] = {
    TransportState.DISCONNECTED: {TransportState.AUTHENTICATING, TransportState.AUTHENTICATED},
    TransportState.AUTHENTICATING: {TransportState.AUTHENTICATED},
    TransportState.AUTHENTICATED: {TransportState.READY},
    TransportState.READY: set(),
    TransportState.AUTH_FAILURE: {TransportState.AUTHENTICATING, TransportState.AUTHENTICATED},
}

TELEMETRY_EVENTS = {
    TransportState.AUTHENTICATING: "whatsapp_authenticating",
    TransportState.AUTHENTICATED: "whatsapp_authenticated",
    TransportState.READY: "whatsapp_ready",
    TransportState.AUTH_FAILURE: "whatsapp_authenticated_failure",
    TransportState.DISCONNECTED: "whatsapp_disconnected",
}

ADMIN_MESSAGES = {
    TransportState.AUTHENTICATED: "WhatsApp is authenticated and ready to go!",
    TransportState.READY: "WhatsApp client is ready!",
    TransportState.AUTH_FAILURE: "WhatsApp authentication failed. Please re-scan the QR code.",
    TransportState.DISCONNECTED: "WhatsApp client was disconnected. Please re-scan the QR code.",
}

ReadyHook = Callable[[], Union[None, Awaitable[None]]]


class LifecycleStateMachine:
    def __init__(self, notifier: NotificationPort, telemetry: TelemetrySink,
                 blob_store: BlobStore, qr_code_path: str):
        self.notifier = notifier
        self.telemetry = telemetry
        self.blob_store = blob_store
        self.qr_code_path = qr_code_path

        self.state = TransportState.DISCONNECTED
        self.qr_message_ref: Optional[int] = None
        self._ready_hooks: List[ReadyHook] = []
        self._hooks_fired = False
        self._lock = asyncio.Lock()

    @property
    def is_ready(self) -> bool:
        return self.state is TransportState.READY

    @property
    def is_authenticated(self) -> bool:
        return self.state in (TransportState.AUTHENTICATED, TransportState.READY)

    def on_first_ready(self, hook: ReadyHook) -> None:
        self._ready_hooks.append(hook)

    # ---------- Transiciones ----------

    def _transition(self, target: TransportState, **properties) -> bool:
        """Aplica la transición. False si es una señal duplicada."""
        current = self.state
        if target is current:
            logger.debug("Señal duplicada ignorada: %s", target.value)
            return False
        if target not in ALWAYS_REACHABLE and target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(current, target)

        self.state = target
        logger.info("🔄 Transporte %s → %s", current.value, target.value)
        self.telemetry.track_event("system_event", "system", {
            "event_type": TELEMETRY_EVENTS[target],
            "from_state": current.value,
            **properties,
        })
        return True

    async def _notify(self, text: str) -> None:
        try:
            await self.notifier.send_message(text)
        except Exception:
            logger.exception("No se pudo notificar al canal administrativo")

    async def _apply(self, target: TransportState, **properties) -> bool:
        try:
            changed = self._transition(target, **properties)
        except InvalidTransitionError as e:
            logger.warning("⚠️ %s", e)
            return False
        if changed and target in ADMIN_MESSAGES:
            await self._notify(ADMIN_MESSAGES[target])
        return changed

    # ---------- Señales del transporte ----------

    async def handle_qr(self, png: bytes) -> None:
        async with self._lock:
            if self.state is not TransportState.AUTHENTICATING:
                try:
                    self._transition(TransportState.AUTHENTICATING)
                except InvalidTransitionError as e:
                    logger.warning("⚠️ QR ignorado: %s", e)
                    return

            await self.blob_store.write(self.qr_code_path, png)
            try:
                if self.qr_message_ref is not None:
                    await self.notifier.update_image(self.qr_code_path, self.qr_message_ref)
                else:
                    self.qr_message_ref = await self.notifier.send_image(self.qr_code_path)
            except Exception:
                logger.exception("No se pudo publicar el QR en el canal administrativo")

    async def handle_authenticated(self) -> None:
        async with self._lock:
            await self._apply(TransportState.AUTHENTICATED)

    async def handle_auth_failure(self, reason: Optional[str] = None) -> None:
        async with self._lock:
            await self._apply(TransportState.AUTH_FAILURE, reason=reason)

    async def handle_disconnected(self, reason: Optional[str] = None) -> None:
        async with self._lock:
            logger.info("Cliente desconectado: %s", reason)
            await self._apply(TransportState.DISCONNECTED, reason=reason)

    async def handle_ready(self) -> None:
        async with self._lock:
            qr_pending = self.qr_message_ref is not None
            if not await self._apply(TransportState.READY, qr_retracted=qr_pending):
                return
            if qr_pending:
                await self._retract_qr()
            fire = not self._hooks_fired
            self._hooks_fired = True
        if fire:
            await self._run_ready_hooks()

    async def _retract_qr(self) -> None:
        ref, self.qr_message_ref = self.qr_message_ref, None
        try:
            await self.notifier.delete_message(ref)
        except Exception:
            logger.exception("No se pudo borrar el mensaje del QR")
        try:
            await self.blob_store.remove(self.qr_code_path)
        except OSError:
            logger.exception("No se pudo borrar el archivo del QR")

    async def _run_ready_hooks(self) -> None:
        for hook in self._ready_hooks:
            try:
                result = hook()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Hook de READY falló")

    async def handle_signal(self, event: str, qr_png: Optional[bytes] = None,
                            reason: Optional[str] = None) -> None:
        """Punto de entrada para señales crudas del transporte."""
        if event == "qr":
            if not qr_png:
                raise ValueError("La señal qr requiere la imagen")
            await self.handle_qr(qr_png)
        elif event == "authenticated":
            await self.handle_authenticated()
        elif event == "ready":
            await self.handle_ready()
        elif event == "auth_failure":
            await self.handle_auth_failure(reason)
        elif event == "disconnected":
            await self.handle_disconnected(reason)
        else:
            raise ValueError(f"Señal desconocida: {event}")
