from .base import SpeechEvent, SpeechRecognitionProvider, TurnEvent, TurnEventType

__all__ = ["SpeechEvent", "SpeechRecognitionProvider", "TurnEvent", "TurnEventType"]
