from .base import AvatarEvent, AvatarSpeechProvider, AvatarStream, SpeakMode

__all__ = ["AvatarEvent", "AvatarSpeechProvider", "AvatarStream", "SpeakMode"]
