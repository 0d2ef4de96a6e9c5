"""
Utilidades de logging para el motor de conversación.
Configuración del logger raíz del paquete y un logger estructurado (JSON)
para transiciones de estado y mediciones de latencia.
"""
import json
import logging
import time
from typing import Any, Dict, Optional

PIPELINE_LOGGER = logging.getLogger("realtime_conversation")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | int = "INFO") -> None:
    """Configura el logger del paquete (idempotente)."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    if not PIPELINE_LOGGER.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        PIPELINE_LOGGER.addHandler(handler)
    PIPELINE_LOGGER.setLevel(level)


class StructuredLogger:
    """
    Emite líneas JSON sobre un logging.Logger existente, así los
    handlers y formatters configurados siguen funcionando.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or PIPELINE_LOGGER

    def _log(
        self,
        level: str,
        event_type: str,
        message: str,
        session_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry: Dict[str, Any] = {
            "timestamp": time.time(),
            "event_type": event_type,
            "message": message,
        }
        if session_id is not None:
            entry["session_id"] = session_id
        if data:
            entry["data"] = dict(data)

        log_method = getattr(self.logger, level.lower(), self.logger.info)
        try:
            log_method(json.dumps(entry, default=str))
        except (TypeError, ValueError):
            log_method(f"[STRUCTURED_LOG_FALLBACK] {entry}")

    def event(
        self,
        session_id: Optional[str],
        event_type: str,
        message: str,
        level: str = "INFO",
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._log(level=level, event_type=event_type, message=message, session_id=session_id, data=data)

    def state_transition(
        self,
        session_id: Optional[str],
        old_state: str,
        new_state: str,
        reason: Optional[str] = None,
    ) -> None:
        self._log(
            level="INFO",
            event_type="state_transition",
            message=f"{old_state} -> {new_state}" + (f" ({reason})" if reason else ""),
            session_id=session_id,
            data={"old_state": old_state, "new_state": new_state, "reason": reason},
        )

    def latency_recorded(
        self,
        session_id: Optional[str],
        operation: str,
        duration_ms: float,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        data = {"operation": operation, "duration_ms": duration_ms}
        if extra:
            data.update(extra)
        self._log(
            level="INFO",
            event_type="latency",
            message=f"{operation} took {duration_ms:.0f}ms",
            session_id=session_id,
            data=data,
        )
