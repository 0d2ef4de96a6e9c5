"""
Contrato del proveedor de reconocimiento de voz (STT).
"""
import abc
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from ..events import EventEmitter


class SpeechEvent(Enum):
    FINAL_TRANSCRIPT = "final_transcript"    # (text,)
    INTERIM_TRANSCRIPT = "interim_transcript"  # (text,)
    SPEECH_START = "speech_start"            # ()
    SPEECH_END = "speech_end"                # ()
    ERROR = "error"                          # (exc,)
    TURN = "turn"                            # (TurnEvent,)
    EAGER_END_OF_TURN = "eager_end_of_turn"  # (text,)
    TURN_RESUMED = "turn_resumed"            # ()


class TurnEventType(Enum):
    START_OF_TURN = "StartOfTurn"
    EAGER_END_OF_TURN = "EagerEndOfTurn"
    TURN_RESUMED = "TurnResumed"
    END_OF_TURN = "EndOfTurn"
    UPDATE = "Update"


@dataclass(frozen=True)
class TurnEvent:
    type: TurnEventType
    transcript: Optional[str] = None
    confidence: Optional[float] = None
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.confidence is not None and not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence fuera de [0, 1]: {self.confidence}")


class SpeechRecognitionProvider(abc.ABC):
    """
    Recibe chunks de audio crudo (linear16) y emite transcripciones y
    señales de turno como SpeechEvent.
    """

    def __init__(self) -> None:
        self.events = EventEmitter(self.__class__.__name__)

    def on(self, event: SpeechEvent, listener: Callable[..., Any]) -> Callable[[], None]:
        return self.events.on(event, listener)

    def _emit(self, event: SpeechEvent, *args: Any) -> None:
        self.events.emit(event, *args)

    @abc.abstractmethod
    async def start_listening(self) -> None:
        ...

    @abc.abstractmethod
    async def stop_listening(self) -> None:
        ...

    @abc.abstractmethod
    def send_audio(self, chunk: bytes) -> None:
        ...

    @abc.abstractmethod
    def is_listening(self) -> bool:
        ...

    async def cleanup(self) -> None:
        if self.is_listening():
            await self.stop_listening()
        self.events.clear()
