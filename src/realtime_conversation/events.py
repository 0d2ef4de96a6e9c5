"""
Suscripción tipada a eventos.
Varios listeners por evento, invocados en orden de registro.
"""
import logging
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class ConversationEvent(Enum):
    """Eventos que emite el orquestador hacia quien lo compone."""
    STATE_CHANGE = "state_change"        # (from_state, to_state)
    TRANSCRIPT = "transcript"            # (text, is_final)
    LLM_CHUNK = "llm_chunk"              # (chunk,)
    LLM_COMPLETE = "llm_complete"        # (full_response,)
    ERROR = "error"                      # (error, context)
    BARGE_IN = "barge_in"                # ()
    ROUND_COMPLETE = "round_complete"    # (metrics_dict,)
    DRAFT = "draft"                      # (text | None,)


class EventEmitter:
    """
    Registro de listeners por evento.

    emit() es síncrono: cada listener corre en el orden en que se registró.
    Un listener que falla se registra en el log y no corta a los demás.
    """

    def __init__(self, name: str = "events") -> None:
        self.name = name
        self._listeners: Dict[Any, List[Listener]] = {}

    def on(self, event: Any, listener: Listener) -> Callable[[], None]:
        """Registra un listener y devuelve la función para darlo de baja."""
        self._listeners.setdefault(event, []).append(listener)

        def unsubscribe() -> None:
            self.off(event, listener)

        return unsubscribe

    def off(self, event: Any, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def emit(self, event: Any, *args: Any) -> None:
        # Copia: un listener puede darse de baja durante la emisión
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(*args)
            except Exception:
                logger.exception("[%s] Error en listener de %s", self.name, event)

    def listener_count(self, event: Any) -> int:
        return len(self._listeners.get(event, ()))

    def clear(self) -> None:
        self._listeners.clear()
