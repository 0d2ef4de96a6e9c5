"""
pytest configuration and fixtures

Fake providers that implement the three contracts without any network or
audio device:
    - FakeSTT: events are injected with .emit()
    - FakeLLM: streams scripted chunks, can pause mid-stream on a gate
    - FakeAvatar: announces speech start on speak(), end on .finish()
    - FakeCapture: records start/close, can fail like a missing microphone
"""
import asyncio
from typing import List, Optional

import pytest

from realtime_conversation.avatar.base import AvatarEvent, AvatarSpeechProvider, AvatarStream, SpeakMode
from realtime_conversation.config import ConversationSettings, ConversationTiming
from realtime_conversation.llm.base import LanguageModelProvider
from realtime_conversation.orchestrator import ConversationOrchestrator
from realtime_conversation.stt.base import SpeechRecognitionProvider


class FakeSTT(SpeechRecognitionProvider):

    def __init__(self, call_log: Optional[list] = None) -> None:
        super().__init__()
        self.call_log = call_log if call_log is not None else []
        self.listening = False
        self.start_error: Optional[BaseException] = None
        self.start_calls = 0
        self.stop_calls = 0
        self.chunks: List[bytes] = []

    async def start_listening(self) -> None:
        self.start_calls += 1
        if self.start_error is not None:
            raise self.start_error
        self.listening = True

    async def stop_listening(self) -> None:
        self.stop_calls += 1
        self.call_log.append("stt.stop")
        self.listening = False

    def send_audio(self, chunk: bytes) -> None:
        self.chunks.append(chunk)

    def is_listening(self) -> bool:
        return self.listening

    def emit(self, event, *args) -> None:
        self._emit(event, *args)


class FakeLLM(LanguageModelProvider):

    def __init__(self, responses=None, call_log: Optional[list] = None) -> None:
        super().__init__("Eres un asistente de prueba")
        # Una lista de chunks por llamada; la última se repite
        self.responses = responses or [["Hola", " ¿cómo", " estás?"]]
        self.call_log = call_log if call_log is not None else []
        self.pause_after: Optional[int] = None
        self.gate = asyncio.Event()
        self.paused = asyncio.Event()
        self.error: Optional[BaseException] = None
        self.prompts: List[str] = []
        self._cancelled = False
        self._generating = False

    def _next_response(self) -> List[str]:
        index = min(len(self.prompts) - 1, len(self.responses) - 1)
        return self.responses[index]

    async def generate_response(self, user_message: str) -> str:
        self.prompts.append(user_message)
        if self.error is not None:
            raise self.error
        response = "".join(self._next_response())
        self.add_to_history("user", user_message)
        self.add_to_history("assistant", response)
        return response

    async def stream_response(self, user_message: str):
        self.prompts.append(user_message)
        self._cancelled = False
        self._generating = True
        chunks = self._next_response()
        pause_after, self.pause_after = self.pause_after, None
        try:
            if self.error is not None:
                raise self.error
            for index, chunk in enumerate(chunks):
                if self._cancelled:
                    return
                yield chunk
                await asyncio.sleep(0)
                if pause_after is not None and index + 1 == pause_after:
                    self.paused.set()
                    await self.gate.wait()
            if self._cancelled:
                return
            self.add_to_history("user", user_message)
            self.add_to_history("assistant", "".join(chunks))
        finally:
            self._generating = False

    def interrupt(self) -> None:
        self.call_log.append("llm.interrupt")
        self._cancelled = True
        self.gate.set()

    def is_generating(self) -> bool:
        return self._generating


class FakeAvatar(AvatarSpeechProvider):

    def __init__(self, call_log: Optional[list] = None) -> None:
        super().__init__()
        self.call_log = call_log if call_log is not None else []
        self.spoken: List[str] = []
        self.modes: List[SpeakMode] = []
        self.speaking = False
        self.error: Optional[BaseException] = None

    @property
    def output_stream(self) -> AvatarStream:
        return AvatarStream(kind="fake")

    async def speak(self, text: str, mode: SpeakMode = SpeakMode.REPEAT) -> None:
        if self.error is not None:
            raise self.error
        self.spoken.append(text)
        self.modes.append(mode)
        if not self.speaking:
            self.speaking = True
            self._emit(AvatarEvent.SPEECH_STARTED)

    async def interrupt(self) -> None:
        self.call_log.append("avatar.interrupt")
        await asyncio.sleep(0)
        self.speaking = False

    def is_speaking(self) -> bool:
        return self.speaking

    def finish(self) -> None:
        self.speaking = False
        self._emit(AvatarEvent.SPEECH_ENDED)


class FakeCapture:

    def __init__(self, error: Optional[BaseException] = None) -> None:
        self.error = error
        self.on_chunk = None
        self.on_error = None
        self.start_calls = 0
        self.close_calls = 0

    def start(self, on_chunk, on_error=None) -> None:
        self.start_calls += 1
        if self.error is not None:
            raise self.error
        self.on_chunk = on_chunk
        self.on_error = on_error

    def close(self) -> None:
        self.close_calls += 1


async def wait_for(predicate, timeout: float = 1.0) -> None:
    """Yield to the event loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0)


@pytest.fixture
def call_log():
    return []


@pytest.fixture
def fake_stt(call_log):
    return FakeSTT(call_log)


@pytest.fixture
def fake_llm(call_log):
    return FakeLLM(call_log=call_log)


@pytest.fixture
def fake_avatar(call_log):
    return FakeAvatar(call_log)


@pytest.fixture
def fake_capture():
    return FakeCapture()


@pytest.fixture
def settings():
    return ConversationSettings()


@pytest.fixture
def recorder():
    """Collects orchestrator callbacks in arrival order."""

    class Recorder:
        def __init__(self):
            self.states = []
            self.transcripts = []
            self.chunks = []
            self.errors = []

        def on_state_change(self, old, new):
            self.states.append((old, new))

        def on_transcript(self, text, is_final):
            self.transcripts.append((text, is_final))

        def on_llm_chunk(self, chunk):
            self.chunks.append(chunk)

        def on_error(self, error, context):
            self.errors.append((error, context))

    return Recorder()


@pytest.fixture
def make_orchestrator(fake_stt, fake_llm, fake_avatar, fake_capture, recorder):
    def factory(settings: Optional[ConversationSettings] = None, **kwargs):
        params = dict(
            capture=fake_capture,
            on_state_change=recorder.on_state_change,
            on_transcript=recorder.on_transcript,
            on_llm_chunk=recorder.on_llm_chunk,
            on_error=recorder.on_error,
            session_id="test-session",
            timing=ConversationTiming(barge_in_debounce_ms=0),
        )
        params.update(kwargs)
        return ConversationOrchestrator(
            fake_stt, fake_llm, fake_avatar, settings or ConversationSettings(), **params
        )

    return factory


@pytest.fixture
def wait_until():
    return wait_for
