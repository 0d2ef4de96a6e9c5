"""
CLI: arranca una conversación de voz en tiempo real.
  voz input → [VAD Silero opcional] → STT Deepgram → LLM OpenAI → avatar (ElevenLabs | HeyGen)

Uso:
  realtime-conversation
  realtime-conversation --list-devices
  realtime-conversation --input-device 1 --output-device 2
  realtime-conversation --stt flux --avatar heygen
  realtime-conversation --stt nova --pipeline_vad 1   # inicio/fin de habla con Silero local
"""
import argparse
import asyncio
import logging
import os
import signal

import sounddevice as sd

from .audio.mic import MicrophoneCapture, list_audio_devices
from .config import (
    AudioConfig,
    ConversationSettings,
    ConversationTiming,
    FallbackConfig,
    FluxConfig,
    LLMConfig,
    get_deepgram_api_key,
    get_openai_api_key,
    log_configuration,
)
from .errors import ConversationError
from .events import ConversationEvent
from .fallback import FallbackHandler
from .llm.openai_chat import OpenAIChatLLM
from .orchestrator import ConversationOrchestrator
from .utils.logging import configure_logging

logger = logging.getLogger("realtime_conversation.main")


def build_stt(args: argparse.Namespace, timing: ConversationTiming):
    if args.stt == "flux":
        from .stt.deepgram_flux import DeepgramFluxSTT

        return DeepgramFluxSTT(FluxConfig.from_env(), timing=timing)
    from .stt.deepgram_live import DeepgramLiveSTT

    return DeepgramLiveSTT(use_local_vad=bool(args.pipeline_vad), timing=timing)


async def build_avatar(args: argparse.Namespace):
    if args.avatar == "heygen":
        from .avatar.heygen_streaming import HeyGenStreamingAvatar

        avatar_id = os.environ.get("HEYGEN_AVATAR_ID")
        if not avatar_id:
            raise RuntimeError("HEYGEN_AVATAR_ID no definido")
        avatar = HeyGenStreamingAvatar(avatar_id, os.environ.get("HEYGEN_VOICE_ID"))
        await avatar.initialize()
        stream = avatar.output_stream
        logger.info("[AVATAR] LiveKit: %s", stream.url if stream else "?")
        return avatar
    from .avatar.elevenlabs_speech import ElevenLabsSpeech

    return ElevenLabsSpeech()


async def run_conversation(args: argparse.Namespace) -> None:
    """Compone proveedores, orquestador y fallback; corre hasta Ctrl+C."""
    get_deepgram_api_key()
    get_openai_api_key()

    settings = ConversationSettings.from_env()
    timing = ConversationTiming.from_env()
    audio = AudioConfig.from_env()
    fallback_config = FallbackConfig.from_env()
    log_configuration(settings, timing, audio)

    stop_event = asyncio.Event()

    def on_fallback():
        logger.error("[FALLBACK] Demasiados errores seguidos, cerrando la sesión")
        stop_event.set()

    fallback = FallbackHandler.from_config(fallback_config, on_fallback=on_fallback)

    def on_state_change(old, new):
        logger.info("[STATE] %s → %s", old.value, new.value)

    def on_transcript(text, is_final):
        if is_final:
            logger.info("[STT][Final] %s", text)

    orchestrator = ConversationOrchestrator(
        build_stt(args, timing),
        OpenAIChatLLM(LLMConfig.from_env(), timing=timing),
        await build_avatar(args),
        settings,
        capture=MicrophoneCapture(audio, device=args.input_device),
        audio=audio,
        timing=timing,
        on_state_change=on_state_change,
        on_transcript=on_transcript,
    )
    if fallback_config.enable_auto_fallback:
        orchestrator.on(ConversationEvent.ERROR, fallback.handle_error)
        orchestrator.on(ConversationEvent.ROUND_COMPLETE, fallback.handle_success)

    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, stop_event.set)
    except NotImplementedError:
        pass

    try:
        await orchestrator.start()
        print("🎧 LISTO: habla cuando quieras (Ctrl+C para salir)")
        await stop_event.wait()
    except ConversationError as e:
        logger.error("[CTRL] No se pudo iniciar: %s", e)
    finally:
        await orchestrator.cleanup()
        print("👋 Salida limpia")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Conversación de voz en tiempo real con avatar"
    )
    parser.add_argument("--list-devices", action="store_true", help="Listar dispositivos de audio")
    parser.add_argument("--input-device", type=int, default=None, help="ID dispositivo de entrada (mic)")
    parser.add_argument("--output-device", type=int, default=None, help="ID dispositivo de salida")
    parser.add_argument("--stt", choices=["nova", "flux"], default="nova", help="Proveedor STT")
    parser.add_argument("--avatar", choices=["elevenlabs", "heygen"], default="elevenlabs", help="Avatar / voz")
    parser.add_argument(
        "--pipeline_vad",
        type=int,
        default=0,
        choices=[0, 1],
        help="1 = inicio/fin de habla con Silero local (solo --stt nova), 0 = eventos de Deepgram",
    )
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"))
    args = parser.parse_args()

    configure_logging(args.log_level)

    if args.list_devices:
        list_audio_devices()
        return

    if args.input_device is not None or args.output_device is not None:
        sd.default.device = (args.input_device, args.output_device)

    asyncio.run(run_conversation(args))


if __name__ == "__main__":
    main()
