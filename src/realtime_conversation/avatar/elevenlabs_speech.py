"""
Avatar solo-voz: ElevenLabs streaming PCM (crudo a ffplay).

speak() encola el texto y vuelve; un worker sintetiza y reproduce en orden.
SPEECH_STARTED sale con el primer chunk de audio y SPEECH_ENDED cuando la
cola se vacía o cuando interrupt() corta la reproducción.
"""
import asyncio
import logging
from typing import AsyncIterator

import httpx

from ..audio.playback import create_ffplay_process, play_pcm_stream
from ..config import (
    TTS_MODEL_ID,
    TTS_OUTPUT_FORMAT,
    TTS_SAMPLE_RATE,
    get_eleven_api_key,
    get_eleven_voice_id,
)
from ..errors import AvatarError
from .base import AvatarEvent, AvatarSpeechProvider, AvatarStream, SpeakMode

logger = logging.getLogger(__name__)

ELEVEN_BASE_URL = "https://api.elevenlabs.io/v1"


async def stream_tts_elevenlabs(
    client: httpx.AsyncClient, text: str, voice_id: str, api_key: str
) -> AsyncIterator[bytes]:
    """
    Stream de PCM 16-bit desde ElevenLabs (crudo, sin archivos).
    output_format va como query parameter.
    """
    url = f"{ELEVEN_BASE_URL}/text-to-speech/{voice_id}/stream"
    headers = {
        "xi-api-key": api_key,
        "Content-Type": "application/json",
        "Accept": "audio/pcm",
    }
    payload = {
        "text": text,
        "model_id": TTS_MODEL_ID,
        "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
    }
    async with client.stream(
        "POST", url, params={"output_format": TTS_OUTPUT_FORMAT}, headers=headers, json=payload
    ) as resp:
        resp.raise_for_status()
        async for chunk in resp.aiter_bytes():
            if chunk:
                yield chunk


class ElevenLabsSpeech(AvatarSpeechProvider):

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        process_factory=create_ffplay_process,
    ) -> None:
        super().__init__()
        self._client = client
        self._process_factory = process_factory
        self._queue: asyncio.Queue | None = None
        self._worker: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._speaking = False
        # Texto ya sacado de la cola que aún no terminó de sonar
        self._in_flight = False

    @property
    def output_stream(self) -> AvatarStream:
        return AvatarStream(kind="local-audio", url=f"ffplay://s16le@{TTS_SAMPLE_RATE}")

    def is_speaking(self) -> bool:
        return (
            self._speaking
            or self._in_flight
            or (self._queue is not None and not self._queue.empty())
        )

    def _ensure_worker(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=None)
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._tts_worker(), name="elevenlabs-tts")

    async def speak(self, text: str, mode: SpeakMode = SpeakMode.REPEAT) -> None:
        self._force_repeat(mode)
        text = (text or "").strip()
        if not text:
            return
        # Valida credenciales antes de aceptar la tarea
        try:
            get_eleven_api_key()
            get_eleven_voice_id()
        except RuntimeError as e:
            raise AvatarError(str(e), cause=e) from e
        self._ensure_worker()
        self._queue.put_nowait(text)
        logger.info("[TTS] Texto encolado: %s", text)

    async def interrupt(self) -> None:
        if not self.is_speaking():
            return
        logger.info("[CTRL-Barge-in] Deteniendo TTS")
        self._stop_event.set()
        while self._queue is not None and not self._queue.empty():
            self._queue.get_nowait()
        if self._speaking:
            self._finish_speech()

    def _finish_speech(self) -> None:
        self._speaking = False
        logger.info("[TTS][TTS-End] Fin de reproducción")
        self._emit(AvatarEvent.SPEECH_ENDED)

    def _on_first_chunk(self) -> None:
        if not self._speaking:
            self._speaking = True
            logger.info("[TTS][TTS-Start] Reproduciendo")
            self._emit(AvatarEvent.SPEECH_STARTED)

    async def _tts_worker(self) -> None:
        """Sintetiza y reproduce cada texto de la cola. Respeta interrupt()."""
        while True:
            text = await self._queue.get()
            self._stop_event.clear()
            self._in_flight = True
            try:
                stream = stream_tts_elevenlabs(
                    self._client, text, get_eleven_voice_id(), get_eleven_api_key()
                )
                await play_pcm_stream(
                    stream,
                    self._stop_event,
                    on_first_chunk=self._on_first_chunk,
                    process_factory=self._process_factory,
                )
            except (httpx.HTTPError, RuntimeError) as e:
                logger.error("[TTS] Error durante streaming TTS: %s", e)
                self._emit(AvatarEvent.ERROR, AvatarError(f"ElevenLabs: {e}", cause=e))
                while not self._queue.empty():
                    self._queue.get_nowait()
            finally:
                self._in_flight = False
            if self._speaking and self._queue.empty():
                self._finish_speech()

    async def cleanup(self) -> None:
        await super().cleanup()
        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
