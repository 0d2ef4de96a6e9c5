"""
STT: Deepgram live streaming (Nova-3).

- Segmentos is_final se acumulan; speech_final o UtteranceEnd cierran el
  enunciado y se emite el transcript final.
- use_local_vad=True: el inicio/fin de habla lo decide Silero en local
  (como el pipeline_vad=1 original) y no los eventos de Deepgram.

Los callbacks del SDK corren en su propio hilo: todo se reenvía al loop
con call_soon_threadsafe.
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, List

from deepgram import DeepgramClient, LiveOptions, LiveTranscriptionEvents

from ..config import ENCODING, MIC_SAMPLE_RATE, ConversationTiming, get_deepgram_api_key
from ..errors import ProviderInitError, SttError
from .base import SpeechEvent, SpeechRecognitionProvider

logger = logging.getLogger(__name__)


def _payload(args: tuple, kwargs: dict, key: str) -> Any:
    """El SDK pasa (conn, payload) o payload por keyword según el evento."""
    value = kwargs.get(key)
    if value is None and args:
        value = args[-1]
    return value


class DeepgramLiveSTT(SpeechRecognitionProvider):

    def __init__(
        self,
        *,
        model: str = "nova-3",
        language: str = "es",
        use_local_vad: bool = False,
        vad_detector=None,
        timing: ConversationTiming | None = None,
        client: DeepgramClient | None = None,
    ) -> None:
        super().__init__()
        self.model = model
        self.language = language
        self.use_local_vad = use_local_vad
        self.timing = timing or ConversationTiming()
        self._detector = vad_detector
        self._client = client
        self._conn = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._listening = False
        self._segments: List[str] = []
        self._vad_executor: ThreadPoolExecutor | None = None

    def is_listening(self) -> bool:
        return self._listening

    def _options(self) -> LiveOptions:
        return LiveOptions(
            model=self.model,
            language=self.language,
            encoding=ENCODING,
            sample_rate=MIC_SAMPLE_RATE,
            channels=1,
            interim_results=True,
            vad_events=not self.use_local_vad,
            utterance_end_ms="1000",
            endpointing=300,
            smart_format=True,
        )

    async def start_listening(self) -> None:
        if self._listening:
            logger.warning("[STT] Deepgram ya está escuchando")
            return
        self._loop = asyncio.get_running_loop()

        if self.use_local_vad:
            if self._detector is None:
                from ..vad.silero import SileroSpeechDetector

                self._detector = SileroSpeechDetector()
            self._vad_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="silero-vad")
            await self._loop.run_in_executor(self._vad_executor, self._detector.load)

        try:
            client = self._client or DeepgramClient(get_deepgram_api_key())
            conn = client.listen.websocket.v("1")
            self._register_handlers(conn)
            started = await asyncio.wait_for(
                self._loop.run_in_executor(None, conn.start, self._options()),
                timeout=self.timing.stt_timeout_ms / 1000,
            )
        except Exception as e:
            self._shutdown_vad()
            raise ProviderInitError(f"No se pudo conectar a Deepgram: {e}", cause=e) from e
        if started is False:
            self._shutdown_vad()
            raise ProviderInitError("Deepgram rechazó la conexión")

        self._conn = conn
        self._segments = []
        self._listening = True
        logger.info("[STT] Conectado a Deepgram (%s, %s)", self.model, self.language)

    async def stop_listening(self) -> None:
        if not self._listening and self._conn is None:
            return
        self._listening = False
        conn, self._conn = self._conn, None
        try:
            if conn is not None:
                await asyncio.get_running_loop().run_in_executor(None, conn.finish)
        except Exception as e:
            raise SttError(f"Error cerrando Deepgram: {e}", cause=e) from e
        finally:
            self._shutdown_vad()
            self._segments = []
        logger.info("[STT] Deepgram desconectado")

    def send_audio(self, chunk: bytes) -> None:
        if not self._listening or self._conn is None:
            logger.warning("[STT] send_audio sin conexión activa")
            return
        self._conn.send(chunk)
        if self.use_local_vad and self._vad_executor is not None:
            future = self._loop.run_in_executor(self._vad_executor, self._detector.process, chunk)
            future.add_done_callback(self._on_vad_result)

    def _shutdown_vad(self) -> None:
        if self._vad_executor is not None:
            self._vad_executor.shutdown(wait=False, cancel_futures=True)
            self._vad_executor = None
        if self._detector is not None and self.use_local_vad:
            self._detector.reset()

    # ------------------------------------------------------------------ #
    # Handlers (hilo del SDK → loop)
    # ------------------------------------------------------------------ #

    def _register_handlers(self, conn) -> None:
        def forward(handler, key):
            def sdk_handler(*args, **kwargs):
                payload = _payload(args, kwargs, key)
                self._loop.call_soon_threadsafe(handler, payload)
            return sdk_handler

        conn.on(LiveTranscriptionEvents.Transcript, forward(self._handle_transcript, "result"))
        conn.on(LiveTranscriptionEvents.SpeechStarted, forward(self._handle_speech_started, "speech_started"))
        conn.on(LiveTranscriptionEvents.UtteranceEnd, forward(self._handle_utterance_end, "utterance_end"))
        conn.on(LiveTranscriptionEvents.Error, forward(self._handle_error, "error"))
        conn.on(LiveTranscriptionEvents.Close, forward(self._handle_close, "close"))

    def _handle_transcript(self, result) -> None:
        if not getattr(result, "channel", None) or not result.channel.alternatives:
            return
        alt = result.channel.alternatives[0]
        text = (alt.transcript or "").strip()

        if not result.is_final:
            if text:
                logger.debug("[STT][Interim] %s", text)
                self._emit(SpeechEvent.INTERIM_TRANSCRIPT, text)
            return

        if text:
            self._segments.append(text)
        # Con VAD local el enunciado lo cierra Silero
        if getattr(result, "speech_final", False) and not self.use_local_vad:
            self._flush_utterance(emit_speech_end=True)

    def _handle_speech_started(self, _payload) -> None:
        if self.use_local_vad:
            return
        self._emit(SpeechEvent.SPEECH_START)

    def _handle_utterance_end(self, _payload) -> None:
        if self.use_local_vad:
            return
        self._flush_utterance(emit_speech_end=True)

    def _flush_utterance(self, emit_speech_end: bool) -> None:
        if not self._segments:
            return
        text = " ".join(self._segments).strip()
        self._segments = []
        if emit_speech_end:
            self._emit(SpeechEvent.SPEECH_END)
        logger.info("[STT][Final] %s", text)
        self._emit(SpeechEvent.FINAL_TRANSCRIPT, text)

    def _on_vad_result(self, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("[VAD] Error Silero: %s", exc)
            self._emit(SpeechEvent.ERROR, SttError(f"Silero VAD: {exc}", cause=exc))
            return
        for event in future.result():
            if event == "start":
                self._emit(SpeechEvent.SPEECH_START)
            elif event == "end":
                self._emit(SpeechEvent.SPEECH_END)
                self._flush_utterance(emit_speech_end=False)

    def _handle_error(self, error) -> None:
        logger.error("[STT] Error en WebSocket de Deepgram: %s", error)
        self._emit(SpeechEvent.ERROR, SttError(f"Deepgram: {error}"))

    def _handle_close(self, close) -> None:
        logger.info("[STT] WebSocket cerrado: %s", close)
        if self._listening:
            self._listening = False
            self._emit(SpeechEvent.ERROR, SttError("Deepgram cerró la conexión inesperadamente"))
