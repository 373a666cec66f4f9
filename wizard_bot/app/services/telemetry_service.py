import json
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class TelemetryService:
    """Sink de analítica fire-and-forget: registra eventos y nunca lanza."""

    def __init__(self, name: str = "telemetry"):
        self.log = logging.getLogger(f"{__name__}.{name}")

    @staticmethod
    def _dump(data: Optional[Dict[str, Any]]) -> str:
        return json.dumps(data or {}, default=str, ensure_ascii=False)

    def track_event(self, event_name: str, subject_id: str,
                    properties: Optional[Dict[str, Any]] = None) -> None:
        try:
            self.log.info("📊 event=%s subject=%s props=%s", event_name, subject_id, self._dump(properties))
        except Exception:
            logger.debug("Telemetría descartada: %s", event_name)

    def identify(self, subject_id: str, traits: Optional[Dict[str, Any]] = None) -> None:
        try:
            self.log.info("🪪 identify subject=%s traits=%s", subject_id, self._dump(traits))
        except Exception:
            logger.debug("Identify descartado: %s", subject_id)
