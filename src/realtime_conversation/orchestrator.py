"""
Orquestador de la conversación: STT → LLM → avatar con barge-in.

  mic (chunks de 80 ms) → STT → transcript final → LLM (streaming) → avatar (REPEAT)

- Una ronda usuario → avatar a la vez; la máquina de estados lo garantiza.
- Barge-in: el usuario habla mientras el avatar habla → silenciar avatar,
  cancelar LLM, descartar la respuesta parcial y volver a USER_SPEAKING.
- Todos los errores de proveedores pasan por report_error() con su contexto.
  El orquestador nunca reintenta: eso lo decide quien lo compone.
"""
import asyncio
import logging
import uuid
from contextlib import aclosing
from typing import Any, Awaitable, Callable, List, Optional, Set

from .avatar.base import AvatarEvent, AvatarSpeechProvider, SpeakMode
from .config import AudioConfig, ConversationSettings, ConversationTiming
from .errors import (
    ConversationError,
    MissingAudioPermission,
    ProviderInitError,
    error_for_context,
)
from .events import ConversationEvent, EventEmitter
from .llm.base import LanguageModelProvider
from .metrics import LatencyMetrics
from .state import ConversationState, StateTransition, TurnStateMachine
from .stt.base import SpeechEvent, SpeechRecognitionProvider
from .utils.logging import StructuredLogger
from .utils.text import pop_complete_sentences

logger = logging.getLogger(__name__)

S = ConversationState

# Errores a mitad de conversación que llevan la máquina a ERROR
_MID_CONVERSATION_CONTEXTS = ("stt", "llm", "avatar", "audio-capture")


class ConversationOrchestrator:
    """
    Coordina una sesión de conversación de voz.

    Es dueño de la máquina de estados y del dispositivo de captura; recibe
    los tres proveedores ya construidos. Los callbacks del constructor son
    los primeros suscriptores de los eventos correspondientes; se pueden
    agregar más con on().
    """

    def __init__(
        self,
        stt: SpeechRecognitionProvider,
        llm: LanguageModelProvider,
        avatar: AvatarSpeechProvider,
        settings: Optional[ConversationSettings] = None,
        *,
        capture=None,
        audio: Optional[AudioConfig] = None,
        timing: Optional[ConversationTiming] = None,
        on_state_change: Optional[Callable[[ConversationState, ConversationState], None]] = None,
        on_transcript: Optional[Callable[[str, bool], None]] = None,
        on_llm_chunk: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[ConversationError, Optional[str]], None]] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex[:8]
        self.stt = stt
        self.llm = llm
        self.avatar = avatar
        self.settings = settings or ConversationSettings()
        self.audio_config = audio or AudioConfig()
        self.timing = timing or ConversationTiming()
        self._capture = capture

        self.events = EventEmitter("ConversationOrchestrator")
        for event, callback in (
            (ConversationEvent.STATE_CHANGE, on_state_change),
            (ConversationEvent.TRANSCRIPT, on_transcript),
            (ConversationEvent.LLM_CHUNK, on_llm_chunk),
            (ConversationEvent.ERROR, on_error),
        ):
            if callback is not None:
                self.events.on(event, callback)

        self.state_machine = TurnStateMachine()
        self.state_machine.on_state_change(self._on_transition)
        self.metrics = LatencyMetrics()
        self.structured_logger = StructuredLogger(logger)

        self._active = False
        self._response_buffer = ""
        self._generation_id = 0
        # True mientras el LLM de la ronda sigue generando
        self._round_streaming = False
        self._draft_transcript: Optional[str] = None
        self._barge_in_task: Optional[asyncio.Task] = None
        self._recovery_task: Optional[asyncio.Task] = None
        # Cuenta de fines de habla: el debounce del barge-in la compara
        self._speech_end_count = 0
        self._tasks: Set[asyncio.Task] = set()
        self._unsubscribers: List[Callable[[], None]] = []

    # ------------------------------------------------------------------ #
    # Acceso
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> ConversationState:
        return self.state_machine.state

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def draft_transcript(self) -> Optional[str]:
        return self._draft_transcript

    def on(self, event: ConversationEvent, listener: Callable[..., Any]) -> Callable[[], None]:
        return self.events.on(event, listener)

    def get_metrics(self) -> dict:
        """Marcas de la última ronda e intervalos derivados (ms)."""
        return self.metrics.snapshot()

    def get_state_stats(self) -> dict:
        return self.state_machine.get_stats()

    # ------------------------------------------------------------------ #
    # Ciclo de vida
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """
        Abre la captura, cablea los eventos de los proveedores, arranca el
        STT y pasa a LISTENING. Los fallos se reportan con contexto 'start'
        y se propagan sin reintentos.
        """
        if self._active:
            logger.warning("[CTRL] La conversación ya está activa")
            return

        logger.info("[CTRL] Iniciando conversación (sesión %s)", self.session_id)
        self.state_machine.reset()
        self.metrics = LatencyMetrics()

        try:
            self._open_capture()
        except Exception as e:
            err = e if isinstance(e, MissingAudioPermission) else MissingAudioPermission(
                f"No se pudo abrir el micrófono: {e}", cause=e
            )
            self.report_error(err, "start")
            raise err

        try:
            self._wire_provider_events()
            await self.stt.start_listening()
        except Exception as e:
            err = e if isinstance(e, ProviderInitError) else ProviderInitError(
                f"No se pudo iniciar el STT: {e}", cause=e
            )
            self._unwire_provider_events()
            self._close_capture()
            self.report_error(err, "start")
            raise err

        self._active = True
        self.state_machine.transition(S.LISTENING, "start")
        logger.info("[CTRL] Conversación iniciada")

    async def stop(self) -> None:
        """
        Inverso de start(). Con la sesión inactiva es un no-op (solo warning).
        Los errores se reportan con contexto 'stop' y no se propagan.
        """
        if not self._active:
            logger.warning("[CTRL] La conversación no está activa")
            return

        logger.info("[CTRL] Deteniendo conversación")
        self._active = False
        self._unwire_provider_events()
        self._discard_response()

        await self._guarded(self._cancel_round(), "stop")
        if self.avatar.is_speaking():
            await self._guarded(self.avatar.interrupt(), "stop")
        await self._guarded(self.stt.stop_listening(), "stop")
        try:
            self._close_capture()
        except Exception as e:
            self.report_error(e, "stop")

        self._settle_idle("stop")
        logger.info("[CTRL] Conversación detenida")

    async def cleanup(self) -> None:
        """stop() y liberación de los proveedores. Se puede llamar varias veces."""
        await self.stop()
        await self._guarded(self.stt.cleanup(), "stop")
        await self._guarded(self.avatar.cleanup(), "stop")
        logger.info("[CTRL] Cleanup completo")

    async def join(self) -> None:
        """Espera a que terminen las rondas y barge-ins en vuelo."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------ #
    # Captura de audio
    # ------------------------------------------------------------------ #

    def _open_capture(self) -> None:
        if self._capture is None:
            from .audio.mic import MicrophoneCapture

            self._capture = MicrophoneCapture(self.audio_config)
        self._capture.start(on_chunk=self._on_audio_chunk, on_error=self._on_capture_error)
        logger.info("[AUDIO] Captura iniciada (chunks de %d ms)", self.audio_config.chunk_ms)

    def _close_capture(self) -> None:
        if self._capture is not None:
            self._capture.close()

    def _on_audio_chunk(self, chunk: bytes) -> None:
        if not self.stt.is_listening():
            return
        try:
            self.stt.send_audio(chunk)
        except Exception as e:
            self.report_error(e, "stt")

    def _on_capture_error(self, error: BaseException) -> None:
        self.report_error(error, "audio-capture")

    # ------------------------------------------------------------------ #
    # Cableado de eventos
    # ------------------------------------------------------------------ #

    def _wire_provider_events(self) -> None:
        stt, avatar = self.stt, self.avatar
        subs = [
            stt.on(SpeechEvent.SPEECH_START, self.handle_speech_start),
            stt.on(SpeechEvent.SPEECH_END, self.handle_speech_end),
            stt.on(SpeechEvent.FINAL_TRANSCRIPT, self._on_final_transcript),
            stt.on(SpeechEvent.EAGER_END_OF_TURN, self.handle_eager_end_of_turn),
            stt.on(SpeechEvent.TURN_RESUMED, self.handle_turn_resumed),
            stt.on(SpeechEvent.ERROR, lambda exc: self.report_error(exc, "stt")),
            avatar.on(AvatarEvent.SPEECH_STARTED, self.handle_avatar_speech_started),
            avatar.on(AvatarEvent.SPEECH_ENDED, self.handle_avatar_speech_ended),
            avatar.on(AvatarEvent.ERROR, lambda exc: self.report_error(exc, "avatar")),
        ]
        if self.settings.enable_interim_transcripts:
            subs.append(stt.on(SpeechEvent.INTERIM_TRANSCRIPT, self.handle_interim_transcript))
        self._unsubscribers = subs

    def _unwire_provider_events(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_transition(self, record: StateTransition) -> None:
        if self.settings.log_state_transitions:
            self.structured_logger.state_transition(
                self.session_id, record.from_state.value, record.to_state.value, record.reason
            )
        self.events.emit(ConversationEvent.STATE_CHANGE, record.from_state, record.to_state)

    # ------------------------------------------------------------------ #
    # Eventos del STT
    # ------------------------------------------------------------------ #

    def handle_speech_start(self) -> None:
        if self.settings.log_transcripts:
            logger.info("[STT] Usuario empezó a hablar")

        if self.settings.enable_barge_in and self.state_machine.can_interrupt():
            if self._barge_in_task is None or self._barge_in_task.done():
                self._barge_in_task = self._spawn(
                    self._debounced_barge_in(self._speech_end_count), "barge-in"
                )
            return

        if self.state is S.USER_SPEAKING:
            return
        if self.state_machine.transition(S.USER_SPEAKING, "speech_start"):
            self.metrics.begin_round()

    def handle_speech_end(self) -> None:
        if self.settings.log_transcripts:
            logger.info("[STT] Usuario dejó de hablar")
        self._speech_end_count += 1
        # Durante una ronda en curso no se pisa la marca
        if self.state in (S.PROCESSING, S.AVATAR_SPEAKING, S.INTERRUPTED):
            return
        self.metrics.mark("user_stop_speaking")

    def handle_interim_transcript(self, text: str) -> None:
        if self.settings.log_transcripts:
            logger.info("[STT][Interim] %s", text)
        self.events.emit(ConversationEvent.TRANSCRIPT, text, False)

    def handle_eager_end_of_turn(self, text: str) -> None:
        if not self.settings.enable_eager_response:
            return
        self._draft_transcript = text
        logger.debug("[STT] Borrador por EagerEndOfTurn: %s", text)
        self.events.emit(ConversationEvent.DRAFT, text)

    def handle_turn_resumed(self) -> None:
        if self._draft_transcript is None:
            return
        logger.debug("[STT] TurnResumed: borrador descartado")
        self._draft_transcript = None
        self.events.emit(ConversationEvent.DRAFT, None)

    def _on_final_transcript(self, text: str) -> None:
        self._spawn(self.handle_final_transcript(text), "llm")

    # ------------------------------------------------------------------ #
    # Ronda usuario → LLM → avatar
    # ------------------------------------------------------------------ #

    async def handle_final_transcript(self, text: str) -> None:
        """Procesa un enunciado final: LLM y luego avatar."""
        text = (text or "").strip()
        if not text:
            return

        # Barge-in y recuperación de errores deben asentarse antes del LLM
        pending = {
            t for t in (self._barge_in_task, self._recovery_task)
            if t is not None and not t.done() and t is not asyncio.current_task()
        }
        if pending:
            await asyncio.wait(pending)

        sm = self.state_machine
        if sm.state in (S.LISTENING, S.IDLE):
            # El proveedor no reportó inicio de habla: la ronda empieza aquí
            if sm.transition(S.USER_SPEAKING, "implicit_turn_start"):
                self.metrics.begin_round()

        if not sm.is_valid_transition(sm.state, S.PROCESSING):
            logger.warning("[CTRL] Transcript final descartado en estado %s: %s", sm.state.value, text)
            return

        self._draft_transcript = None
        self.metrics.mark("transcript_received")
        sm.transition(S.PROCESSING, "final_transcript")
        if self.settings.log_transcripts:
            logger.info("[STT][Final] %s", text)
        if self.settings.log_latency:
            self.structured_logger.latency_recorded(self.session_id, "stt", self.metrics.stt_latency)
        self.events.emit(ConversationEvent.TRANSCRIPT, text, True)

        await self._run_round(text)

    def _round_is_current(self, generation: int) -> bool:
        return generation == self._generation_id and self.state is not S.INTERRUPTED

    async def _run_round(self, text: str) -> None:
        self._generation_id += 1
        generation = self._generation_id
        self._response_buffer = ""
        self._round_streaming = True
        chunked = self.settings.enable_chunked_speech and self.settings.enable_streaming
        pending = ""

        try:
            if self.settings.enable_streaming:
                first = True
                async with aclosing(self.llm.stream_response(text)) as stream:
                    async for chunk in stream:
                        if not self._round_is_current(generation):
                            break
                        if first:
                            self.metrics.mark("llm_first_token")
                            if self.settings.log_latency:
                                self.structured_logger.latency_recorded(
                                    self.session_id, "llm_ttft", self.metrics.time_to_first_token
                                )
                            first = False
                        self._response_buffer += chunk
                        self.events.emit(ConversationEvent.LLM_CHUNK, chunk)

                        if chunked:
                            pending += chunk
                            sentences, pending = pop_complete_sentences(pending)
                            for sentence in sentences:
                                if not self._round_is_current(generation):
                                    break
                                await self._speak(sentence)
                if not self._round_is_current(generation):
                    return
                if first:
                    self.metrics.mark("llm_first_token")
            else:
                response = await self.llm.generate_response(text)
                if not self._round_is_current(generation):
                    return
                self.metrics.mark("llm_first_token")
                self._response_buffer = response or ""
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._round_streaming = False
            self.report_error(e, "llm")
            return

        self.metrics.mark("llm_complete")
        self._round_streaming = False
        if self.settings.log_latency:
            self.structured_logger.latency_recorded(self.session_id, "llm", self.metrics.llm_latency)
        self.events.emit(ConversationEvent.LLM_COMPLETE, self._response_buffer)

        if not self._response_buffer.strip():
            logger.warning("[LLM] Respuesta vacía, vuelvo a escuchar")
            if self.state is S.PROCESSING:
                self.state_machine.transition(S.LISTENING, "empty_response")
            return

        remainder = pending if chunked else self._response_buffer
        if remainder.strip():
            await self._speak(remainder)
        elif self.state is S.AVATAR_SPEAKING and not self.avatar.is_speaking():
            # El avatar ya terminó las frases enviadas mientras el LLM generaba
            self.handle_avatar_speech_ended()

    async def _speak(self, text: str) -> None:
        try:
            await self.avatar.speak(text.strip(), SpeakMode.REPEAT)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.report_error(e, "avatar")

    # ------------------------------------------------------------------ #
    # Eventos del avatar
    # ------------------------------------------------------------------ #

    def handle_avatar_speech_started(self) -> None:
        if self.state is not S.PROCESSING:
            return
        self.metrics.mark("avatar_start_speaking")
        self.state_machine.transition(S.AVATAR_SPEAKING, "avatar_speech_started")
        if self.settings.log_latency:
            self.structured_logger.latency_recorded(
                self.session_id, "total", self.metrics.total_latency,
                extra={"tts_ms": self.metrics.tts_latency},
            )

    def handle_avatar_speech_ended(self) -> None:
        if self.settings.log_transcripts:
            logger.info("[AVATAR] Avatar dejó de hablar")
        if self._round_streaming or self.state is not S.AVATAR_SPEAKING:
            return
        target = S.LISTENING if self._active else S.IDLE
        self.state_machine.transition(target, "avatar_speech_ended")
        self.events.emit(ConversationEvent.ROUND_COMPLETE, self.get_metrics())

    # ------------------------------------------------------------------ #
    # Barge-in
    # ------------------------------------------------------------------ #

    async def _debounced_barge_in(self, speech_ends: int) -> None:
        """Un inicio de habla seguido de fin antes del debounce es ruido o eco."""
        delay = self.timing.barge_in_debounce_ms / 1000.0
        if delay > 0:
            await asyncio.sleep(delay)
            if self._speech_end_count != speech_ends or not self.state_machine.can_interrupt():
                logger.debug("[CTRL-Barge-in] Habla breve ignorada (debounce)")
                return
        await self.handle_barge_in()

    async def handle_barge_in(self) -> None:
        """
        Orden estricto: INTERRUPTED → silenciar avatar (await) → cancelar LLM
        (sin await) → descartar respuesta parcial → USER_SPEAKING.
        """
        sm = self.state_machine
        try:
            if not sm.transition(S.INTERRUPTED, "barge_in"):
                return
            logger.info("[CTRL-Barge-in] Usuario interrumpió al avatar")
            self.events.emit(ConversationEvent.BARGE_IN)

            if self.avatar.is_speaking():
                await self.avatar.interrupt()

            if self.llm.is_generating():
                self.llm.interrupt()

            self._discard_response()
            self.metrics.begin_round()
            sm.transition(S.USER_SPEAKING, "barge_in_complete")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.report_error(e, "barge-in")

    def _discard_response(self) -> None:
        self._response_buffer = ""
        self._round_streaming = False
        # Invalida la generación en vuelo: no se emiten más chunks
        self._generation_id += 1

    # ------------------------------------------------------------------ #
    # Errores
    # ------------------------------------------------------------------ #

    def report_error(self, error: BaseException, context: Optional[str] = None) -> ConversationError:
        """Punto único de errores: etiqueta, registra y notifica."""
        err = error_for_context(context, error)
        logger.error("[CTRL] Error (%s): %s", context or "unknown", err)
        self.events.emit(ConversationEvent.ERROR, err, context)
        if context in _MID_CONVERSATION_CONTEXTS and self._active:
            self._enter_error_state(context)
        return err

    def _enter_error_state(self, context: str) -> None:
        """
        Mismo desmontaje que el barge-in: nada de la ronda fallida puede
        seguir sonando al volver a LISTENING. Si el avatar está hablando,
        la salida de ERROR espera a que quede en silencio.
        """
        self._discard_response()
        self.state_machine.transition(S.ERROR, context)
        if self.avatar.is_speaking():
            if self._recovery_task is None or self._recovery_task.done():
                self._recovery_task = self._spawn(self._recover_from_error(), "stop")
            return
        self._leave_error_state()

    async def _recover_from_error(self) -> None:
        try:
            await self.avatar.interrupt()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Sin pasar por report_error: volvería a entrar aquí
            err = error_for_context("avatar", e)
            logger.error("[CTRL] No se pudo silenciar el avatar: %s", err)
            self.events.emit(ConversationEvent.ERROR, err, "avatar")
        self._leave_error_state()

    def _leave_error_state(self) -> None:
        if self.llm.is_generating():
            self.llm.interrupt()
        sm = self.state_machine
        if sm.state is not S.ERROR:
            return
        # ERROR solo sale a IDLE
        sm.transition(S.IDLE, "error_recovered")
        if self._active:
            sm.transition(S.LISTENING, "resume")

    # ------------------------------------------------------------------ #
    # Tareas
    # ------------------------------------------------------------------ #

    def _spawn(self, coro: Awaitable[Any], context: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                self.report_error(t.exception(), context)

        task.add_done_callback(done)
        return task

    async def _cancel_round(self) -> None:
        if self.llm.is_generating():
            self.llm.interrupt()
        tasks = [t for t in self._tasks if t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _guarded(self, coro: Awaitable[Any], context: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.report_error(e, context)

    def _settle_idle(self, reason: str) -> None:
        sm = self.state_machine
        if sm.state is S.IDLE:
            return
        if not sm.transition(S.IDLE, reason):
            previous = sm.state
            sm.reset()
            self.events.emit(ConversationEvent.STATE_CHANGE, previous, S.IDLE)
