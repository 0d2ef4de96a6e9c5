"""
Máquina de estados de turnos de la conversación.

Única definición autoritativa de ConversationState: el orquestador depende
de este módulo. Los cambios de estado solo ocurren por transiciones válidas
de la tabla y cada cambio se notifica a los listeners registrados.
"""
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional

logger = logging.getLogger(__name__)


class ConversationState(Enum):
    IDLE = "idle"                        # Sin actividad
    LISTENING = "listening"              # Mic abierto, esperando al usuario
    USER_SPEAKING = "user_speaking"      # El usuario está hablando
    PROCESSING = "processing"            # STT → LLM
    AVATAR_SPEAKING = "avatar_speaking"  # El avatar entrega la respuesta
    INTERRUPTED = "interrupted"          # Barge-in en curso
    ERROR = "error"


@dataclass(frozen=True)
class StateTransition:
    from_state: ConversationState
    to_state: ConversationState
    timestamp: float  # ms
    reason: Optional[str] = None


StateChangeListener = Callable[[StateTransition], None]

S = ConversationState

# LISTENING es la variante "armada" de IDLE: solo agrega aristas propias.
TRANSITIONS: Dict[ConversationState, FrozenSet[ConversationState]] = {
    S.IDLE: frozenset({S.USER_SPEAKING, S.ERROR, S.LISTENING}),
    S.LISTENING: frozenset({S.USER_SPEAKING, S.IDLE, S.ERROR}),
    S.USER_SPEAKING: frozenset({S.PROCESSING, S.IDLE, S.ERROR, S.LISTENING}),
    S.PROCESSING: frozenset({S.AVATAR_SPEAKING, S.IDLE, S.ERROR, S.LISTENING}),
    S.AVATAR_SPEAKING: frozenset({S.IDLE, S.INTERRUPTED, S.ERROR, S.LISTENING}),
    S.INTERRUPTED: frozenset({S.USER_SPEAKING, S.PROCESSING, S.IDLE, S.ERROR, S.LISTENING}),
    S.ERROR: frozenset({S.IDLE}),
}


def _now_ms() -> float:
    return time.monotonic() * 1000.0


class TurnStateMachine:
    """Modelo finito de toma de turnos con tabla de transiciones explícita."""

    def __init__(self, clock: Callable[[], float] = _now_ms) -> None:
        self._clock = clock
        self._state = ConversationState.IDLE
        self._previous: Optional[ConversationState] = None
        self._history: List[StateTransition] = []
        self._listeners: List[StateChangeListener] = []

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def previous_state(self) -> Optional[ConversationState]:
        return self._previous

    def is_(self, state: ConversationState) -> bool:
        return self._state is state

    def can_interrupt(self) -> bool:
        """El barge-in solo es posible mientras habla el avatar."""
        return self._state is ConversationState.AVATAR_SPEAKING

    def can_accept_user_input(self) -> bool:
        return self._state in (
            ConversationState.IDLE,
            ConversationState.LISTENING,
            ConversationState.AVATAR_SPEAKING,  # para barge-in
        )

    @staticmethod
    def is_valid_transition(from_state: ConversationState, to_state: ConversationState) -> bool:
        if from_state is to_state:
            # Re-reportar un error es la única auto-transición permitida
            return to_state is ConversationState.ERROR
        return to_state in TRANSITIONS.get(from_state, frozenset())

    def transition(self, to_state: ConversationState, reason: Optional[str] = None) -> bool:
        """
        Intenta pasar a to_state. Devuelve False (sin excepción) si la
        transición no está en la tabla; el estado no cambia.
        """
        from_state = self._state
        if not self.is_valid_transition(from_state, to_state):
            logger.warning(
                "[STATE] Transición inválida: %s → %s%s",
                from_state.value, to_state.value,
                f" ({reason})" if reason else "",
            )
            return False

        record = StateTransition(
            from_state=from_state,
            to_state=to_state,
            timestamp=self._clock(),
            reason=reason,
        )
        self._previous = from_state
        self._state = to_state
        self._history.append(record)

        logger.debug(
            "[STATE] %s → %s%s",
            from_state.value, to_state.value, f" ({reason})" if reason else "",
        )

        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception:
                logger.exception("[STATE] Error en listener de cambio de estado")
        return True

    def on_state_change(self, listener: StateChangeListener) -> Callable[[], None]:
        """Registra un listener; devuelve la función para darlo de baja."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def history(self) -> List[StateTransition]:
        return list(self._history)

    def recent_history(self, count: int = 5) -> List[StateTransition]:
        return self._history[-count:] if count > 0 else []

    def reset(self) -> None:
        """Vuelve a IDLE y borra el historial (teardown o recuperación dura)."""
        logger.debug("[STATE] Reset a IDLE")
        self._state = ConversationState.IDLE
        self._previous = None
        self._history = []

    def time_in_current_state(self) -> float:
        if not self._history:
            return 0.0
        return self._clock() - self._history[-1].timestamp

    def get_stats(self) -> dict:
        """
        Por estado: cuántas veces se salió de él y el tiempo medio (ms)
        que se permaneció, calculado entre transiciones consecutivas.
        """
        state_count: Dict[ConversationState, int] = {}
        durations: Dict[ConversationState, List[float]] = {}

        for i, record in enumerate(self._history):
            state = record.from_state
            state_count[state] = state_count.get(state, 0) + 1
            # Permanencia: desde que se entró (transición anterior) hasta esta salida
            if i > 0:
                durations.setdefault(state, []).append(
                    record.timestamp - self._history[i - 1].timestamp
                )

        average = {
            state: round(sum(values) / len(values))
            for state, values in durations.items()
            if values
        }
        return {
            "total_transitions": len(self._history),
            "state_count": state_count,
            "average_time_per_state": average,
        }


_STATE_LABELS = {
    ConversationState.IDLE: "Esperando...",
    ConversationState.LISTENING: "Escuchando...",
    ConversationState.USER_SPEAKING: "Te escucho...",
    ConversationState.PROCESSING: "Pensando...",
    ConversationState.AVATAR_SPEAKING: "Hablando...",
    ConversationState.INTERRUPTED: "Interrumpiendo...",
    ConversationState.ERROR: "Error",
}


def get_state_label(state: ConversationState) -> str:
    return _STATE_LABELS.get(state, state.value)


def is_error_transition(transition: StateTransition) -> bool:
    return transition.to_state is ConversationState.ERROR


def is_barge_in_transition(transition: StateTransition) -> bool:
    return (
        transition.from_state is ConversationState.AVATAR_SPEAKING
        and transition.to_state is ConversationState.INTERRUPTED
    )
