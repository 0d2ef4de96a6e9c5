"""
Motor de conversación de voz en tiempo real con avatar.
  voz input → STT Deepgram → LLM OpenAI (streaming) → avatar (ElevenLabs | HeyGen) → voz output

Los adaptadores concretos se importan desde sus submódulos
(stt.deepgram_live, llm.openai_chat, avatar.heygen_streaming, ...).
"""
from .config import (
    FLUX_PRESETS,
    MIC_CHUNK_FRAMES,
    MIC_SAMPLE_RATE,
    SYSTEM_PROMPT,
    AudioConfig,
    ConversationSettings,
    ConversationTiming,
    FallbackConfig,
    FluxConfig,
)
from .errors import ConversationError
from .events import ConversationEvent
from .fallback import FallbackHandler
from .metrics import LatencyMetrics
from .orchestrator import ConversationOrchestrator
from .state import ConversationState, StateTransition, TurnStateMachine

__all__ = [
    "AudioConfig",
    "ConversationError",
    "ConversationEvent",
    "ConversationOrchestrator",
    "ConversationSettings",
    "ConversationState",
    "ConversationTiming",
    "FallbackConfig",
    "FallbackHandler",
    "FLUX_PRESETS",
    "FluxConfig",
    "LatencyMetrics",
    "MIC_CHUNK_FRAMES",
    "MIC_SAMPLE_RATE",
    "StateTransition",
    "SYSTEM_PROMPT",
    "TurnStateMachine",
]
