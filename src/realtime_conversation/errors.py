"""
Taxonomía de errores del motor de conversación.
Cada error lleva el subsistema de origen (context) y la excepción original (cause).
"""


class ConversationError(Exception):
    """Error base de la conversación."""

    default_context: str | None = None

    def __init__(self, message: str, context: str | None = None, cause: BaseException | None = None):
        super().__init__(message)
        self.context = context or self.default_context
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class MissingAudioPermission(ConversationError):
    """No se pudo abrir el dispositivo de captura."""
    default_context = "start"


class ProviderInitError(ConversationError):
    """Falló el cableado de eventos o el arranque de un proveedor."""
    default_context = "start"


class SttError(ConversationError):
    default_context = "stt"


class LlmError(ConversationError):
    default_context = "llm"


class AvatarError(ConversationError):
    default_context = "avatar"


class AudioCaptureError(ConversationError):
    default_context = "audio-capture"


class BargeInError(ConversationError):
    default_context = "barge-in"


_CONTEXT_ERRORS = {
    "stt": SttError,
    "llm": LlmError,
    "avatar": AvatarError,
    "audio-capture": AudioCaptureError,
    "barge-in": BargeInError,
    "start": ProviderInitError,
}


def error_for_context(context: str | None, exc: BaseException) -> ConversationError:
    """
    Envuelve una excepción cualquiera en el error de la taxonomía que
    corresponde al contexto. Los ConversationError pasan tal cual.
    """
    if isinstance(exc, ConversationError):
        if exc.context is None:
            exc.context = context
        return exc
    cls = _CONTEXT_ERRORS.get(context or "", ConversationError)
    return cls(str(exc) or exc.__class__.__name__, context=context, cause=exc)
