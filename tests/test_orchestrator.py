"""
Tests for ConversationOrchestrator

Covers:
    - Full user → LLM → avatar round trip through provider events
    - Barge-in ordering and discarding of the cancelled generation
    - Idempotent stop / cleanup
    - Start failures (microphone, STT)
    - Error funnel and ERROR → IDLE → LISTENING recovery
"""
from unittest.mock import MagicMock

import pytest

from realtime_conversation.avatar.base import SpeakMode
from realtime_conversation.config import ConversationSettings, ConversationTiming
from realtime_conversation.errors import (
    AudioCaptureError,
    AvatarError,
    LlmError,
    MissingAudioPermission,
    ProviderInitError,
    SttError,
)
from realtime_conversation.events import ConversationEvent
from realtime_conversation.fallback import FallbackHandler
from realtime_conversation.state import ConversationState as S
from realtime_conversation.stt.base import SpeechEvent


class TestRoundTrip:

    @pytest.mark.asyncio
    async def test_round_trip_streams_chunks_and_speaks_full_response(
        self, make_orchestrator, fake_stt, fake_avatar, recorder
    ):
        orch = make_orchestrator()
        await orch.start()

        fake_stt.emit(SpeechEvent.SPEECH_START)
        fake_stt.emit(SpeechEvent.SPEECH_END)
        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Hola")
        await orch.join()

        assert recorder.chunks == ["Hola", " ¿cómo", " estás?"]
        assert fake_avatar.spoken == ["Hola ¿cómo estás?"]
        assert fake_avatar.modes == [SpeakMode.REPEAT]
        assert ("Hola", True) in recorder.transcripts
        assert orch.state is S.AVATAR_SPEAKING

        fake_avatar.finish()

        assert orch.state is S.LISTENING
        assert recorder.states == [
            (S.IDLE, S.LISTENING),
            (S.LISTENING, S.USER_SPEAKING),
            (S.USER_SPEAKING, S.PROCESSING),
            (S.PROCESSING, S.AVATAR_SPEAKING),
            (S.AVATAR_SPEAKING, S.LISTENING),
        ]

    @pytest.mark.asyncio
    async def test_latency_marks_follow_causal_order(self, make_orchestrator, fake_stt):
        orch = make_orchestrator()
        await orch.start()

        fake_stt.emit(SpeechEvent.SPEECH_START)
        fake_stt.emit(SpeechEvent.SPEECH_END)
        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Hola")
        await orch.join()

        m = orch.get_metrics()
        marks = [
            m["user_stop_speaking"],
            m["transcript_received"],
            m["llm_first_token"],
            m["llm_complete"],
            m["avatar_start_speaking"],
        ]
        assert all(mark > 0 for mark in marks)
        assert marks == sorted(marks)
        stages = m["stt_latency"] + m["llm_latency"] + m["tts_latency"]
        assert m["total_latency"] >= m["stt_latency"]
        assert m["total_latency"] >= stages - 1e-6

    @pytest.mark.asyncio
    async def test_round_complete_carries_metrics(self, make_orchestrator, fake_stt, fake_avatar):
        orch = make_orchestrator()
        rounds = []
        orch.on(ConversationEvent.ROUND_COMPLETE, rounds.append)
        await orch.start()

        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Hola")
        await orch.join()
        fake_avatar.finish()

        assert len(rounds) == 1
        assert "total_latency" in rounds[0]

    @pytest.mark.asyncio
    async def test_final_transcript_without_speech_start_opens_turn(
        self, make_orchestrator, fake_stt, recorder
    ):
        orch = make_orchestrator()
        await orch.start()

        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Hola")
        await orch.join()

        assert (S.LISTENING, S.USER_SPEAKING) in recorder.states
        assert orch.state_machine.history[1].reason == "implicit_turn_start"

    @pytest.mark.asyncio
    async def test_implicit_turn_start_drops_previous_round_marks(
        self, make_orchestrator, fake_stt, fake_avatar
    ):
        orch = make_orchestrator()
        await orch.start()

        fake_stt.emit(SpeechEvent.SPEECH_START)
        fake_stt.emit(SpeechEvent.SPEECH_END)
        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Hola")
        await orch.join()
        assert orch.get_metrics()["user_stop_speaking"] > 0
        fake_avatar.finish()

        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Otra")
        await orch.join()

        m = orch.get_metrics()
        assert m["user_stop_speaking"] == 0
        assert m["stt_latency"] == 0
        assert m["transcript_received"] > 0
        assert m["total_latency"] >= m["llm_latency"] + m["tts_latency"] - 1e-6

    @pytest.mark.asyncio
    async def test_non_streaming_mode_uses_full_response(
        self, make_orchestrator, fake_stt, fake_avatar, recorder
    ):
        orch = make_orchestrator(ConversationSettings(enable_streaming=False))
        completed = []
        orch.on(ConversationEvent.LLM_COMPLETE, completed.append)
        await orch.start()

        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Hola")
        await orch.join()

        assert recorder.chunks == []
        assert completed == ["Hola ¿cómo estás?"]
        assert fake_avatar.spoken == ["Hola ¿cómo estás?"]

    @pytest.mark.asyncio
    async def test_chunked_speech_sends_sentences_as_they_close(
        self, make_orchestrator, fake_stt, fake_llm, fake_avatar
    ):
        fake_llm.responses = [["Primera frase. ", "Segunda", " frase."]]
        orch = make_orchestrator(ConversationSettings(enable_chunked_speech=True))
        await orch.start()

        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Cuéntame")
        await orch.join()

        assert fake_avatar.spoken == ["Primera frase.", "Segunda frase."]
        assert orch.state is S.AVATAR_SPEAKING

        fake_avatar.finish()
        assert orch.state is S.LISTENING

    @pytest.mark.asyncio
    async def test_blank_final_transcript_is_ignored(self, make_orchestrator, fake_stt, fake_llm):
        orch = make_orchestrator()
        await orch.start()

        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "   ")
        await orch.join()

        assert fake_llm.prompts == []
        assert orch.state is S.LISTENING

    @pytest.mark.asyncio
    async def test_final_transcript_while_avatar_speaks_is_dropped(
        self, make_orchestrator, fake_stt, fake_llm
    ):
        orch = make_orchestrator(ConversationSettings(enable_barge_in=False))
        await orch.start()
        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Hola")
        await orch.join()

        await orch.handle_final_transcript("Otra cosa")

        assert fake_llm.prompts == ["Hola"]
        assert orch.state is S.AVATAR_SPEAKING


class TestBargeIn:

    @pytest.mark.asyncio
    async def test_barge_in_interrupts_avatar_before_llm(
        self, make_orchestrator, fake_stt, fake_llm, fake_avatar, call_log, recorder, wait_until
    ):
        fake_llm.responses = [["Hola. ", "Segunda", " frase."]]
        fake_llm.pause_after = 1
        orch = make_orchestrator(ConversationSettings(enable_chunked_speech=True))
        barge_ins = []
        orch.on(ConversationEvent.BARGE_IN, lambda: barge_ins.append(True))
        await orch.start()

        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Cuéntame algo")
        await wait_until(fake_llm.paused.is_set)

        assert orch.state is S.AVATAR_SPEAKING
        assert fake_avatar.spoken == ["Hola."]
        chunks_before = list(recorder.chunks)

        fake_stt.emit(SpeechEvent.SPEECH_START)
        await orch.join()

        assert call_log == ["avatar.interrupt", "llm.interrupt"]
        assert recorder.states[-3:] == [
            (S.PROCESSING, S.AVATAR_SPEAKING),
            (S.AVATAR_SPEAKING, S.INTERRUPTED),
            (S.INTERRUPTED, S.USER_SPEAKING),
        ]
        assert recorder.chunks == chunks_before
        assert barge_ins == [True]
        assert fake_avatar.spoken == ["Hola."]
        assert fake_llm.get_history() == []
        assert orch.state is S.USER_SPEAKING

    @pytest.mark.asyncio
    async def test_next_transcript_waits_for_barge_in_to_settle(
        self, make_orchestrator, fake_stt, fake_llm, fake_avatar, recorder
    ):
        fake_llm.responses = [["Hola ¿cómo estás?"], ["Vale."]]
        orch = make_orchestrator()
        await orch.start()
        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Hola")
        await orch.join()
        assert orch.state is S.AVATAR_SPEAKING

        fake_stt.emit(SpeechEvent.SPEECH_START)
        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Otra cosa")
        await orch.join()

        assert fake_llm.prompts == ["Hola", "Otra cosa"]
        assert fake_avatar.spoken[-1] == "Vale."
        assert recorder.states[-4:] == [
            (S.AVATAR_SPEAKING, S.INTERRUPTED),
            (S.INTERRUPTED, S.USER_SPEAKING),
            (S.USER_SPEAKING, S.PROCESSING),
            (S.PROCESSING, S.AVATAR_SPEAKING),
        ]

    @pytest.mark.asyncio
    async def test_speech_start_ignored_when_barge_in_disabled(
        self, make_orchestrator, fake_stt, call_log
    ):
        orch = make_orchestrator(ConversationSettings(enable_barge_in=False))
        await orch.start()
        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Hola")
        await orch.join()

        fake_stt.emit(SpeechEvent.SPEECH_START)
        await orch.join()

        assert orch.state is S.AVATAR_SPEAKING
        assert call_log == []

    @pytest.mark.asyncio
    async def test_short_speech_inside_debounce_does_not_interrupt(
        self, make_orchestrator, fake_stt, fake_avatar, call_log
    ):
        orch = make_orchestrator(timing=ConversationTiming(barge_in_debounce_ms=20))
        await orch.start()
        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Hola")
        await orch.join()

        fake_stt.emit(SpeechEvent.SPEECH_START)
        fake_stt.emit(SpeechEvent.SPEECH_END)
        await orch.join()

        assert orch.state is S.AVATAR_SPEAKING
        assert fake_avatar.is_speaking()
        assert call_log == []

    @pytest.mark.asyncio
    async def test_sustained_speech_interrupts_after_debounce(
        self, make_orchestrator, fake_stt, fake_avatar, call_log
    ):
        orch = make_orchestrator(timing=ConversationTiming(barge_in_debounce_ms=20))
        await orch.start()
        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Hola")
        await orch.join()

        fake_stt.emit(SpeechEvent.SPEECH_START)
        assert orch.state is S.AVATAR_SPEAKING
        await orch.join()

        assert call_log == ["avatar.interrupt"]
        assert not fake_avatar.is_speaking()
        assert orch.state is S.USER_SPEAKING


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, make_orchestrator, fake_stt, fake_capture, recorder):
        orch = make_orchestrator()
        await orch.start()
        assert orch.is_active
        assert orch.state is S.LISTENING

        await orch.stop()
        await orch.stop()

        assert fake_stt.stop_calls == 1
        assert fake_capture.close_calls == 1
        assert orch.state is S.IDLE
        assert not orch.is_active
        assert recorder.errors == []

    @pytest.mark.asyncio
    async def test_stop_while_avatar_speaks_interrupts_it(
        self, make_orchestrator, fake_stt, call_log
    ):
        orch = make_orchestrator()
        await orch.start()
        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Hola")
        await orch.join()

        await orch.stop()

        assert call_log == ["avatar.interrupt", "stt.stop"]
        assert orch.state is S.IDLE

    @pytest.mark.asyncio
    async def test_stop_mid_generation_cancels_round(
        self, make_orchestrator, fake_stt, fake_llm, fake_avatar, recorder, wait_until
    ):
        fake_llm.pause_after = 1
        orch = make_orchestrator()
        await orch.start()
        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Hola")
        await wait_until(fake_llm.paused.is_set)

        await orch.stop()
        await orch.join()

        assert recorder.chunks == ["Hola"]
        assert fake_avatar.spoken == []
        assert orch.state is S.IDLE
        assert not fake_llm.is_generating()

    @pytest.mark.asyncio
    async def test_provider_events_unwired_after_stop(self, make_orchestrator, fake_stt, fake_llm):
        orch = make_orchestrator()
        await orch.start()
        await orch.stop()

        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Hola")
        await orch.join()

        assert fake_llm.prompts == []

    @pytest.mark.asyncio
    async def test_cleanup_can_be_called_twice(self, make_orchestrator, fake_stt, fake_avatar):
        orch = make_orchestrator()
        await orch.start()

        await orch.cleanup()
        await orch.cleanup()

        assert fake_stt.events.listener_count(SpeechEvent.FINAL_TRANSCRIPT) == 0
        assert not orch.is_active

    @pytest.mark.asyncio
    async def test_restart_gives_fresh_state_history(self, make_orchestrator):
        orch = make_orchestrator()
        await orch.start()
        await orch.stop()
        await orch.start()

        assert orch.state is S.LISTENING
        assert orch.get_state_stats()["total_transitions"] == 1

    @pytest.mark.asyncio
    async def test_audio_chunks_are_forwarded_to_stt(self, make_orchestrator, fake_stt, fake_capture):
        orch = make_orchestrator()
        await orch.start()

        chunk = b"\x00" * 2560
        fake_capture.on_chunk(chunk)

        assert fake_stt.chunks == [chunk]


class TestStartFailures:

    @pytest.mark.asyncio
    async def test_missing_microphone_raises_and_reports(
        self, make_orchestrator, fake_stt, fake_capture, recorder
    ):
        fake_capture.error = OSError("no input device")
        orch = make_orchestrator()

        with pytest.raises(MissingAudioPermission):
            await orch.start()

        assert fake_stt.start_calls == 0
        assert not orch.is_active
        assert orch.state is S.IDLE
        error, context = recorder.errors[0]
        assert isinstance(error, MissingAudioPermission)
        assert context == "start"

    @pytest.mark.asyncio
    async def test_stt_start_failure_raises_provider_init_error(
        self, make_orchestrator, fake_stt, fake_capture, recorder
    ):
        fake_stt.start_error = RuntimeError("socket refused")
        orch = make_orchestrator()

        with pytest.raises(ProviderInitError) as excinfo:
            await orch.start()

        assert isinstance(excinfo.value.cause, RuntimeError)
        assert fake_capture.close_calls == 1
        assert fake_stt.events.listener_count(SpeechEvent.FINAL_TRANSCRIPT) == 0
        assert recorder.errors[0][1] == "start"
        assert not orch.is_active


class TestErrorFunnel:

    @pytest.mark.asyncio
    async def test_stt_error_recovers_to_listening(self, make_orchestrator, fake_stt, recorder):
        orch = make_orchestrator()
        await orch.start()

        fake_stt.emit(SpeechEvent.ERROR, RuntimeError("boom"))

        error, context = recorder.errors[0]
        assert isinstance(error, SttError)
        assert context == "stt"
        assert recorder.states[-3:] == [
            (S.LISTENING, S.ERROR),
            (S.ERROR, S.IDLE),
            (S.IDLE, S.LISTENING),
        ]
        assert orch.is_active

    @pytest.mark.asyncio
    async def test_llm_failure_is_reported_and_avatar_stays_silent(
        self, make_orchestrator, fake_stt, fake_llm, fake_avatar, recorder
    ):
        fake_llm.error = RuntimeError("rate limited")
        orch = make_orchestrator()
        await orch.start()

        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Hola")
        await orch.join()

        assert [type(e) for e, _ in recorder.errors] == [LlmError]
        assert recorder.errors[0][1] == "llm"
        assert fake_avatar.spoken == []
        assert (S.PROCESSING, S.ERROR) in recorder.states
        assert orch.state is S.LISTENING

    @pytest.mark.asyncio
    async def test_avatar_failure_is_reported(self, make_orchestrator, fake_stt, fake_avatar, recorder):
        fake_avatar.error = RuntimeError("task rejected")
        orch = make_orchestrator()
        await orch.start()

        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Hola")
        await orch.join()

        error, context = recorder.errors[0]
        assert isinstance(error, AvatarError)
        assert context == "avatar"
        assert orch.state is S.LISTENING

    @pytest.mark.asyncio
    async def test_capture_error_is_reported(self, make_orchestrator, fake_capture, recorder):
        orch = make_orchestrator()
        await orch.start()

        fake_capture.on_error(RuntimeError("input overflow"))

        error, context = recorder.errors[0]
        assert isinstance(error, AudioCaptureError)
        assert context == "audio-capture"

    @pytest.mark.asyncio
    async def test_error_while_avatar_speaks_silences_it(
        self, make_orchestrator, fake_stt, fake_avatar, fake_capture, call_log, recorder
    ):
        orch = make_orchestrator()
        await orch.start()
        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Hola")
        await orch.join()
        assert orch.state is S.AVATAR_SPEAKING

        fake_capture.on_error(RuntimeError("input overflow"))
        await orch.join()

        assert call_log == ["avatar.interrupt"]
        assert not fake_avatar.is_speaking()
        assert orch.state is S.LISTENING
        assert recorder.states[-3:] == [
            (S.AVATAR_SPEAKING, S.ERROR),
            (S.ERROR, S.IDLE),
            (S.IDLE, S.LISTENING),
        ]

        # La ronda siguiente vuelve a llegar al avatar
        fake_stt.emit(SpeechEvent.SPEECH_START)
        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Otra")
        await orch.join()

        assert orch.state is S.AVATAR_SPEAKING
        assert fake_avatar.spoken[-1] == "Hola ¿cómo estás?"
        assert len(fake_avatar.spoken) == 2

    @pytest.mark.asyncio
    async def test_error_mid_generation_stops_avatar_and_llm(
        self, make_orchestrator, fake_stt, fake_llm, fake_avatar, fake_capture,
        call_log, recorder, wait_until
    ):
        fake_llm.responses = [["Hola. ", "Segunda", " frase."]]
        fake_llm.pause_after = 1
        orch = make_orchestrator(ConversationSettings(enable_chunked_speech=True))
        await orch.start()
        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Cuéntame algo")
        await wait_until(fake_llm.paused.is_set)
        assert orch.state is S.AVATAR_SPEAKING

        fake_capture.on_error(RuntimeError("device lost"))
        await orch.join()

        assert call_log == ["avatar.interrupt", "llm.interrupt"]
        assert fake_avatar.spoken == ["Hola."]
        assert not fake_llm.is_generating()
        assert orch.state is S.LISTENING

    @pytest.mark.asyncio
    async def test_final_transcript_waits_for_error_recovery(
        self, make_orchestrator, fake_stt, fake_llm, fake_capture
    ):
        orch = make_orchestrator()
        await orch.start()
        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Hola")
        await orch.join()

        fake_capture.on_error(RuntimeError("input overflow"))
        fake_stt.emit(SpeechEvent.FINAL_TRANSCRIPT, "Otra")
        await orch.join()

        assert fake_llm.prompts == ["Hola", "Otra"]
        assert orch.state is S.AVATAR_SPEAKING

    @pytest.mark.asyncio
    async def test_fallback_handler_trips_after_consecutive_errors(self, make_orchestrator, fake_stt):
        on_fallback = MagicMock()
        fallback = FallbackHandler(threshold=2, on_fallback=on_fallback)
        orch = make_orchestrator()
        orch.on(ConversationEvent.ERROR, fallback.handle_error)
        await orch.start()

        for _ in range(3):
            fake_stt.emit(SpeechEvent.ERROR, RuntimeError("boom"))

        on_fallback.assert_called_once()
        assert fallback.tripped


class TestTranscriptsAndDrafts:

    @pytest.mark.asyncio
    async def test_interim_transcripts_forwarded(self, make_orchestrator, fake_stt, recorder):
        orch = make_orchestrator()
        await orch.start()

        fake_stt.emit(SpeechEvent.INTERIM_TRANSCRIPT, "Ho")

        assert recorder.transcripts == [("Ho", False)]
        assert orch.state is S.LISTENING

    @pytest.mark.asyncio
    async def test_interim_transcripts_can_be_disabled(self, make_orchestrator, fake_stt, recorder):
        orch = make_orchestrator(ConversationSettings(enable_interim_transcripts=False))
        await orch.start()

        fake_stt.emit(SpeechEvent.INTERIM_TRANSCRIPT, "Ho")

        assert recorder.transcripts == []

    @pytest.mark.asyncio
    async def test_eager_end_of_turn_keeps_draft_only(self, make_orchestrator, fake_stt, fake_llm):
        orch = make_orchestrator(ConversationSettings(enable_eager_response=True))
        drafts = []
        orch.on(ConversationEvent.DRAFT, drafts.append)
        await orch.start()

        fake_stt.emit(SpeechEvent.EAGER_END_OF_TURN, "Hola")
        assert orch.draft_transcript == "Hola"

        fake_stt.emit(SpeechEvent.TURN_RESUMED)
        await orch.join()

        assert drafts == ["Hola", None]
        assert orch.draft_transcript is None
        assert fake_llm.prompts == []

    @pytest.mark.asyncio
    async def test_eager_end_of_turn_ignored_when_disabled(self, make_orchestrator, fake_stt):
        orch = make_orchestrator()
        await orch.start()

        fake_stt.emit(SpeechEvent.EAGER_END_OF_TURN, "Hola")

        assert orch.draft_transcript is None
