"""
Métricas de latencia de una ronda usuario → avatar.

Cinco marcas de tiempo (ms, reloj monotónico) y cuatro intervalos derivados
que se calculan bajo demanda. Solo se conserva la ronda más reciente.
"""
import time
from dataclasses import asdict, dataclass
from typing import Callable, Dict

# Orden causal de las marcas dentro de una ronda
STAGES = (
    "user_stop_speaking",
    "transcript_received",
    "llm_first_token",
    "llm_complete",
    "avatar_start_speaking",
)
_ROUND_OPENERS = ("user_stop_speaking", "transcript_received")


def now_ms() -> float:
    return time.monotonic() * 1000.0


def _interval(start: float, end: float) -> float:
    if not start or not end:
        return 0.0
    return max(0.0, end - start)


@dataclass
class LatencyMetrics:
    user_stop_speaking: float = 0.0
    transcript_received: float = 0.0
    llm_first_token: float = 0.0
    llm_complete: float = 0.0
    avatar_start_speaking: float = 0.0

    def mark(self, stage: str, clock: Callable[[], float] = now_ms) -> float:
        """
        Registra una marca. Las dos primeras etapas abren ronda: borran las
        posteriores para que no se mezclen valores de la ronda anterior.
        """
        if stage not in STAGES:
            raise ValueError(f"Etapa de latencia desconocida: {stage}")
        value = clock()
        setattr(self, stage, value)
        if stage in _ROUND_OPENERS:
            for later in STAGES[STAGES.index(stage) + 1:]:
                setattr(self, later, 0.0)
        return value

    def begin_round(self) -> None:
        """El usuario empezó un turno nuevo: se descarta la ronda anterior."""
        for stage in STAGES:
            setattr(self, stage, 0.0)

    @property
    def stt_latency(self) -> float:
        return _interval(self.user_stop_speaking, self.transcript_received)

    @property
    def llm_latency(self) -> float:
        return _interval(self.transcript_received, self.llm_complete)

    @property
    def time_to_first_token(self) -> float:
        return _interval(self.transcript_received, self.llm_first_token)

    @property
    def tts_latency(self) -> float:
        return _interval(self.llm_complete, self.avatar_start_speaking)

    @property
    def total_latency(self) -> float:
        # Sin fin de habla reportado, la ronda empieza en el transcript
        start = self.user_stop_speaking or self.transcript_received
        return _interval(start, self.avatar_start_speaking)

    def snapshot(self) -> Dict[str, float]:
        data = asdict(self)
        data.update(
            stt_latency=self.stt_latency,
            llm_latency=self.llm_latency,
            time_to_first_token=self.time_to_first_token,
            tts_latency=self.tts_latency,
            total_latency=self.total_latency,
        )
        return data
