"""
STT: Deepgram Flux (v2/listen) con detección de turno integrada.

Mensajes TurnInfo → TurnEvent:
  StartOfTurn     → SPEECH_START
  Update          → INTERIM_TRANSCRIPT
  EagerEndOfTurn  → EAGER_END_OF_TURN (borrador)
  TurnResumed     → TURN_RESUMED
  EndOfTurn       → SPEECH_END + FINAL_TRANSCRIPT
"""
import asyncio
import json
import logging
from urllib.parse import urlencode

import websockets

from ..config import ENCODING, MIC_SAMPLE_RATE, ConversationTiming, FluxConfig, get_deepgram_api_key
from ..errors import ProviderInitError, SttError
from .base import SpeechEvent, SpeechRecognitionProvider, TurnEvent, TurnEventType

logger = logging.getLogger(__name__)

FLUX_ENDPOINT = "wss://api.deepgram.com/v2/listen"


def build_flux_url(config: FluxConfig, sample_rate: int = MIC_SAMPLE_RATE) -> str:
    params = {
        "model": config.model,
        "encoding": ENCODING,
        "sample_rate": sample_rate,
        "eot_threshold": config.eot_threshold,
        "eot_timeout_ms": config.eot_timeout_ms,
    }
    if config.eager_eot_threshold is not None:
        params["eager_eot_threshold"] = config.eager_eot_threshold
    return f"{FLUX_ENDPOINT}?{urlencode(params)}"


class DeepgramFluxSTT(SpeechRecognitionProvider):

    def __init__(
        self,
        config: FluxConfig | None = None,
        *,
        timing: ConversationTiming | None = None,
        connect=websockets.connect,
    ) -> None:
        super().__init__()
        self.config = config or FluxConfig()
        self.timing = timing or ConversationTiming()
        self._connect = connect
        self._ws = None
        self._listening = False
        self._audio_queue: asyncio.Queue | None = None
        self._tasks: list[asyncio.Task] = []

    def is_listening(self) -> bool:
        return self._listening

    async def start_listening(self) -> None:
        if self._listening:
            logger.warning("[STT] Flux ya está escuchando")
            return
        url = build_flux_url(self.config)
        headers = {"Authorization": f"Token {get_deepgram_api_key()}"}
        try:
            self._ws = await asyncio.wait_for(
                self._connect(url, additional_headers=headers),
                timeout=self.timing.stt_timeout_ms / 1000,
            )
        except (OSError, asyncio.TimeoutError, websockets.InvalidHandshake) as e:
            raise ProviderInitError(f"No se pudo conectar a Deepgram Flux: {e}", cause=e) from e

        self._audio_queue = asyncio.Queue()
        self._listening = True
        self._tasks = [
            asyncio.create_task(self._receiver(), name="flux-receiver"),
            asyncio.create_task(self._sender(), name="flux-sender"),
        ]
        logger.info(
            "[STT] Conectado a Deepgram Flux (eot=%.2f, eager=%s)",
            self.config.eot_threshold, self.config.eager_eot_threshold,
        )

    async def stop_listening(self) -> None:
        if not self._listening and self._ws is None:
            return
        self._listening = False
        ws, self._ws = self._ws, None
        try:
            if ws is not None:
                await ws.send(json.dumps({"type": "CloseStream"}))
                await ws.close()
        except websockets.ConnectionClosed:
            pass
        except OSError as e:
            raise SttError(f"Error cerrando Flux: {e}", cause=e) from e
        finally:
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
        logger.info("[STT] Deepgram Flux desconectado")

    def send_audio(self, chunk: bytes) -> None:
        if not self._listening or self._audio_queue is None:
            logger.warning("[STT] send_audio sin conexión activa")
            return
        self._audio_queue.put_nowait(chunk)

    async def _sender(self) -> None:
        while self._listening:
            chunk = await self._audio_queue.get()
            ws = self._ws
            if ws is None:
                return
            try:
                await ws.send(chunk)
            except websockets.ConnectionClosed:
                return

    async def _receiver(self) -> None:
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    continue
                self._handle_message(json.loads(message))
        except websockets.ConnectionClosed as e:
            if self._listening:
                self._emit(SpeechEvent.ERROR, SttError(f"Flux cerró la conexión: {e}", cause=e))
        except json.JSONDecodeError as e:
            self._emit(SpeechEvent.ERROR, SttError(f"Mensaje Flux inválido: {e}", cause=e))
        finally:
            self._listening = False

    def _handle_message(self, msg: dict) -> None:
        kind = msg.get("type")
        if kind == "Connected":
            logger.info("[STT] Flux conectado (request_id=%s)", msg.get("request_id"))
            return
        if kind == "Error":
            self._emit(SpeechEvent.ERROR, SttError(f"Flux: {msg.get('description') or msg}"))
            return
        if kind != "TurnInfo":
            return

        try:
            turn_type = TurnEventType(msg.get("event"))
        except ValueError:
            logger.debug("[STT] Evento Flux desconocido: %s", msg.get("event"))
            return
        transcript = (msg.get("transcript") or "").strip()
        event = TurnEvent(
            type=turn_type,
            transcript=transcript or None,
            confidence=msg.get("end_of_turn_confidence"),
        )
        self._emit(SpeechEvent.TURN, event)

        if turn_type is TurnEventType.START_OF_TURN:
            self._emit(SpeechEvent.SPEECH_START)
        elif turn_type is TurnEventType.UPDATE:
            if transcript:
                self._emit(SpeechEvent.INTERIM_TRANSCRIPT, transcript)
        elif turn_type is TurnEventType.EAGER_END_OF_TURN:
            if transcript:
                self._emit(SpeechEvent.EAGER_END_OF_TURN, transcript)
        elif turn_type is TurnEventType.TURN_RESUMED:
            self._emit(SpeechEvent.TURN_RESUMED)
        elif turn_type is TurnEventType.END_OF_TURN:
            self._emit(SpeechEvent.SPEECH_END)
            if transcript:
                logger.info("[STT][Final] %s", transcript)
                self._emit(SpeechEvent.FINAL_TRANSCRIPT, transcript)
