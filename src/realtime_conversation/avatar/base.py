"""
Contrato del proveedor de avatar / voz (TTS).

El orquestador siempre lo usa en modo REPEAT: el avatar pronuncia el texto
literal, sin razonamiento propio. El LLM es la única fuente de contenido.
"""
import abc
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from ..events import EventEmitter

logger = logging.getLogger(__name__)


class SpeakMode(Enum):
    REPEAT = "repeat"
    TALK = "talk"


class AvatarEvent(Enum):
    SPEECH_STARTED = "speech_started"  # ()
    SPEECH_ENDED = "speech_ended"      # ()
    ERROR = "error"                    # (exc,)


@dataclass(frozen=True)
class AvatarStream:
    """Salida en vivo del avatar (audio local o sala WebRTC)."""
    kind: str
    url: Optional[str] = None
    access_token: Optional[str] = None
    session_id: Optional[str] = None


class AvatarSpeechProvider(abc.ABC):

    def __init__(self) -> None:
        self.events = EventEmitter(self.__class__.__name__)

    def on(self, event: AvatarEvent, listener: Callable[..., Any]) -> Callable[[], None]:
        return self.events.on(event, listener)

    def _emit(self, event: AvatarEvent, *args: Any) -> None:
        self.events.emit(event, *args)

    @staticmethod
    def _force_repeat(mode: SpeakMode) -> SpeakMode:
        if mode is not SpeakMode.REPEAT:
            logger.warning("[AVATAR] Forzando modo REPEAT (se pidió %s)", mode.value)
        return SpeakMode.REPEAT

    @abc.abstractmethod
    async def speak(self, text: str, mode: SpeakMode = SpeakMode.REPEAT) -> None:
        """Pronuncia el texto. Vuelve cuando el proveedor aceptó la tarea."""

    @abc.abstractmethod
    async def interrupt(self) -> None:
        ...

    @abc.abstractmethod
    def is_speaking(self) -> bool:
        ...

    @property
    @abc.abstractmethod
    def output_stream(self) -> Optional[AvatarStream]:
        ...

    async def cleanup(self) -> None:
        if self.is_speaking():
            await self.interrupt()
        self.events.clear()
