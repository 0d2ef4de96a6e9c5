"""
Configuración central del motor de conversación.
Sample rates, tamaño de chunk, feature flags, tiempos, presets de Flux,
prompts y variables de entorno.
"""
import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Audio / Mic
# -----------------------------------------------------------------------------
MIC_SAMPLE_RATE = 16000
CHANNELS = 1
ENCODING = "linear16"

# Chunks de 80 ms: equilibrio entre latencia y overhead de red
CHUNK_MS = 80
MIC_CHUNK_FRAMES = MIC_SAMPLE_RATE * CHUNK_MS // 1000  # 1280 muestras
MIC_CHUNK_BYTES = MIC_CHUNK_FRAMES * 2  # linear16 → 2560 bytes

# Silero VAD espera ventanas de 512 muestras a 16 kHz (32 ms)
SILERO_WINDOW_SAMPLES = 512

# -----------------------------------------------------------------------------
# TTS (ElevenLabs)
# -----------------------------------------------------------------------------
TTS_SAMPLE_RATE = 16000
TTS_OUTPUT_FORMAT = f"pcm_{TTS_SAMPLE_RATE}"
TTS_MODEL_ID = "eleven_multilingual_v2"

# -----------------------------------------------------------------------------
# Avatar (HeyGen)
# -----------------------------------------------------------------------------
HEYGEN_BASE_URL = os.environ.get("HEYGEN_BASE_URL", "https://api.heygen.com")

# -----------------------------------------------------------------------------
# Prompts
# -----------------------------------------------------------------------------
SYSTEM_PROMPT = (
    "Eres un asistente de voz breve, claro y conversacional. "
    "Responde en español, frases cortas, no mas de 15 palabras"
)


# -----------------------------------------------------------------------------
# Helpers de entorno
# -----------------------------------------------------------------------------
def env_flag(name: str, default: bool) -> bool:
    """Lee un booleano de entorno ('true'/'1'/'yes' → True)."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("[CONFIG] %s=%r no es entero, usando %d", name, raw, default)
        return default


def env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("[CONFIG] %s=%r no es float, usando %s", name, raw, default)
        return default


# -----------------------------------------------------------------------------
# Credenciales (validación bajo demanda)
# -----------------------------------------------------------------------------
def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"{name} no definido")
    return value


def get_eleven_api_key() -> str:
    return _require_env("ELEVEN_API_KEY")


def get_eleven_voice_id() -> str:
    return _require_env("ELEVEN_VOICE_ID")


def get_deepgram_api_key() -> str:
    return _require_env("DEEPGRAM_API_KEY")


def get_openai_api_key() -> str:
    return _require_env("OPENAI_API_KEY")


def get_heygen_api_key() -> str:
    return _require_env("HEYGEN_API_KEY")


# -----------------------------------------------------------------------------
# Feature flags de la conversación
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ConversationSettings:
    enable_streaming: bool = True
    enable_barge_in: bool = True
    enable_interim_transcripts: bool = True
    # Envía frases completas al avatar mientras el LLM sigue generando
    enable_chunked_speech: bool = False
    # Guarda el borrador de EagerEndOfTurn (no dispara generación)
    enable_eager_response: bool = False
    log_latency: bool = False
    log_transcripts: bool = False
    log_state_transitions: bool = False

    @classmethod
    def from_env(cls) -> "ConversationSettings":
        return cls(
            enable_streaming=env_flag("CONVERSATION_ENABLE_STREAMING", True),
            enable_barge_in=env_flag("CONVERSATION_ENABLE_BARGE_IN", True),
            enable_interim_transcripts=env_flag("CONVERSATION_ENABLE_INTERIM_TRANSCRIPTS", True),
            enable_chunked_speech=env_flag("CONVERSATION_ENABLE_CHUNKED_SPEECH", False),
            enable_eager_response=env_flag("CONVERSATION_ENABLE_EAGER_RESPONSE", False),
            log_latency=env_flag("CONVERSATION_LOG_LATENCY", False),
            log_transcripts=env_flag("CONVERSATION_LOG_TRANSCRIPTS", False),
            log_state_transitions=env_flag("CONVERSATION_LOG_STATE_TRANSITIONS", False),
        )


@dataclass(frozen=True)
class ConversationTiming:
    """Tiempos en milisegundos."""
    barge_in_debounce_ms: int = 100
    llm_timeout_ms: int = 10000
    stt_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> "ConversationTiming":
        return cls(
            barge_in_debounce_ms=env_int("CONVERSATION_BARGE_IN_DEBOUNCE_MS", 100),
            llm_timeout_ms=env_int("CONVERSATION_LLM_TIMEOUT_MS", 10000),
            stt_timeout_ms=env_int("CONVERSATION_STT_TIMEOUT_MS", 5000),
        )


@dataclass(frozen=True)
class FallbackConfig:
    threshold: int = 3
    enable_auto_fallback: bool = True

    @classmethod
    def from_env(cls) -> "FallbackConfig":
        return cls(
            threshold=env_int("CONVERSATION_FALLBACK_THRESHOLD", 3),
            enable_auto_fallback=env_flag("CONVERSATION_ENABLE_AUTO_FALLBACK", True),
        )

    def __post_init__(self):
        if self.threshold < 1:
            raise ValueError("threshold debe ser >= 1")


@dataclass(frozen=True)
class AudioConfig:
    sample_rate: int = MIC_SAMPLE_RATE
    channels: int = CHANNELS
    chunk_ms: int = CHUNK_MS

    @property
    def chunk_frames(self) -> int:
        return self.sample_rate * self.chunk_ms // 1000

    @property
    def chunk_bytes(self) -> int:
        return self.chunk_frames * 2 * self.channels

    @classmethod
    def from_env(cls) -> "AudioConfig":
        return cls(
            sample_rate=env_int("CONVERSATION_SAMPLE_RATE", MIC_SAMPLE_RATE),
            chunk_ms=env_int("CONVERSATION_CHUNK_MS", CHUNK_MS),
        )


# -----------------------------------------------------------------------------
# STT (Deepgram Flux) - presets de detección de turno
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class FluxConfig:
    model: str = "flux-general-en"
    eot_threshold: float = 0.7
    eot_timeout_ms: int = 5000
    # None → EagerEndOfTurn desactivado
    eager_eot_threshold: float | None = None

    @classmethod
    def from_preset(cls, name: str) -> "FluxConfig":
        try:
            return FLUX_PRESETS[name]
        except KeyError:
            logger.warning("[CONFIG] Preset Flux desconocido %r, usando 'simple'", name)
            return FLUX_PRESETS["simple"]

    @classmethod
    def from_env(cls) -> "FluxConfig":
        return cls.from_preset(os.environ.get("CONVERSATION_FLUX_PRESET", "simple"))


FLUX_PRESETS = {
    # Solo EndOfTurn
    "simple": FluxConfig(eot_threshold=0.7, eot_timeout_ms=5000),
    # EagerEndOfTurn para respuestas rápidas
    "low_latency": FluxConfig(eot_threshold=0.7, eot_timeout_ms=6000, eager_eot_threshold=0.4),
    # Umbrales altos, más certeza
    "high_reliability": FluxConfig(eot_threshold=0.85, eot_timeout_ms=8000),
    "complex": FluxConfig(eot_threshold=0.85, eot_timeout_ms=7000, eager_eot_threshold=0.4),
}


# -----------------------------------------------------------------------------
# LLM (OpenAI)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class LLMConfig:
    model: str = "gpt-4o-mini"
    max_tokens: int = 150
    temperature: float = 0.7
    # Mensajes de historial enviados como contexto
    history_window: int = 6

    @classmethod
    def from_env(cls) -> "LLMConfig":
        return cls(
            model=os.environ.get("CONVERSATION_LLM_MODEL", "gpt-4o-mini"),
            max_tokens=env_int("CONVERSATION_LLM_MAX_TOKENS", 150),
            temperature=env_float("CONVERSATION_LLM_TEMPERATURE", 0.7),
            history_window=env_int("CONVERSATION_LLM_HISTORY_WINDOW", 6),
        )


# -----------------------------------------------------------------------------
# VAD (Silero) - parámetros opcionales
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class SileroVADConfig:
    threshold: float = 0.5
    min_silence_duration_ms: int = 400
    speech_pad_ms: int = 30


def log_configuration(
    settings: ConversationSettings,
    timing: ConversationTiming | None = None,
    audio: AudioConfig | None = None,
) -> None:
    """Registra la configuración activa al arrancar."""
    timing = timing or ConversationTiming()
    audio = audio or AudioConfig()
    logger.info("=" * 60)
    logger.info("[CONFIG] Streaming LLM: %s", settings.enable_streaming)
    logger.info("[CONFIG] Barge-in: %s", settings.enable_barge_in)
    logger.info("[CONFIG] Interim transcripts: %s", settings.enable_interim_transcripts)
    logger.info("[CONFIG] Chunked speech: %s", settings.enable_chunked_speech)
    logger.info(
        "[CONFIG] Barge-in debounce: %d ms, LLM timeout: %d ms, STT timeout: %d ms",
        timing.barge_in_debounce_ms, timing.llm_timeout_ms, timing.stt_timeout_ms,
    )
    logger.info(
        "[CONFIG] Audio: %s @ %d Hz, chunks de %d ms",
        ENCODING, audio.sample_rate, audio.chunk_ms,
    )
    logger.info("=" * 60)
