"""
Fallback automático tras errores consecutivos.

Contador de errores con pestillo: al alcanzar el umbral se dispara el
callback de fallback una sola vez y el pestillo queda cerrado. reset()
solo pone el contador a cero; force_reset() también abre el pestillo.
"""
import logging
from typing import Any, Callable, Optional

from .config import FallbackConfig

logger = logging.getLogger(__name__)


class FallbackHandler:
    """
    Decide, solo a partir de los errores notificados, cuándo abandonar el
    pipeline propio por el modo integrado más simple. No depende del
    orquestador; quien compone la sesión crea una instancia por sesión.
    """

    def __init__(
        self,
        threshold: Optional[int] = None,
        on_fallback: Optional[Callable[[], None]] = None,
        on_reset: Optional[Callable[[], None]] = None,
        log_events: bool = True,
    ) -> None:
        self._threshold = threshold if threshold is not None else FallbackConfig().threshold
        if self._threshold < 1:
            raise ValueError("threshold debe ser >= 1")
        self._on_fallback = on_fallback
        self._on_reset = on_reset
        self._log_events = log_events
        self._error_count = 0
        self._tripped = False

    @classmethod
    def from_config(cls, config: FallbackConfig, **kwargs) -> "FallbackHandler":
        return cls(threshold=config.threshold, **kwargs)

    @property
    def threshold(self) -> int:
        return self._threshold

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def tripped(self) -> bool:
        return self._tripped

    def has_fallback_triggered(self) -> bool:
        return self._tripped

    def record_error(self, context: Optional[str] = None) -> bool:
        """
        Registra un error. Devuelve True si el fallback debe estar activo.
        Con el pestillo cerrado no se sigue contando.
        """
        if self._tripped:
            return True

        self._error_count += 1
        if self._log_events:
            logger.warning(
                "[FALLBACK] Error registrado (%s) - %d/%d",
                context or "unknown", self._error_count, self._threshold,
            )

        if self._error_count >= self._threshold:
            self.trigger_fallback()
            return True
        return False

    def trigger_fallback(self) -> None:
        if self._tripped:
            return
        self._tripped = True
        if self._log_events:
            logger.warning("[FALLBACK] Umbral alcanzado, activando modo de respaldo")
        if self._on_fallback:
            self._on_fallback()

    def reset(self) -> None:
        """Operación exitosa: contador a cero. El pestillo no se abre."""
        if self._error_count == 0 and not self._tripped:
            return
        had_errors = self._error_count > 0
        self._error_count = 0
        if had_errors and self._log_events:
            logger.info("[FALLBACK] Contador de errores reiniciado")
        if self._on_reset:
            self._on_reset()

    def force_reset(self) -> None:
        """Reinicia todo, pestillo incluido. Solo para tests o recuperación manual."""
        self._error_count = 0
        self._tripped = False
        if self._log_events:
            logger.info("[FALLBACK] Force reset (incluye estado de fallback)")

    # Adaptadores para suscribirse a los eventos del orquestador
    def handle_error(self, error: BaseException, context: Optional[str] = None) -> None:
        self.record_error(context)

    def handle_success(self, *_: Any) -> None:
        self.reset()
