import asyncio

import pytest
from conftest import FakeCapture, FakeInjector, FakeRecognizer, FakeTranscriber

from livetype import Backend, NativeRecognizer, SessionController, SessionState, TranscriptionAuthError

Events = NativeRecognizer.Events


@pytest.fixture
def recognizer():
    return FakeRecognizer()


@pytest.fixture
def native(make_controller, recognizer):
    return make_controller(Backend.NATIVE, recognizer=recognizer)


class TestNativeSession:
    async def test_final_fragment_is_committed_for_the_next_recognition(self, native, recognizer):
        session = await native.start()
        assert recognizer.language == "en-US"
        recognizer.emit(Events.Ready())
        recognizer.emit(Events.Fragment("hello wor", is_final=False))
        recognizer.emit(Events.Fragment("hello world", is_final=True))
        assert session.transcript.committed == "hello world"

        recognizer.emit(Events.Fragment("this is", is_final=False))
        assert session.transcript.text == "hello world this is"
        assert native.state is SessionState.LISTENING

    async def test_text_is_typed_live_after_debounce(self, native, recognizer, injector):
        await native.start()
        recognizer.emit(Events.Fragment("hello", is_final=False))
        await asyncio.sleep(0.05)
        assert injector.screen == "hello"

        recognizer.emit(Events.Fragment("hello world", is_final=True))
        await asyncio.sleep(0.05)
        assert injector.screen == "hello world"
        assert injector.focus_calls == 1

    async def test_finalize_types_what_was_not_typed_yet(self, native, recognizer, injector):
        await native.start()
        recognizer.emit(Events.Fragment("hello world", is_final=True))
        await native.finalize()
        assert injector.screen == "hello world"
        assert injector.pasted == []
        assert injector.focus_calls == 1
        assert recognizer.stopped
        assert native.state is SessionState.CLOSED
        native.on_close.assert_called_once()

    async def test_finalize_without_transcript_just_closes(self, native, injector):
        await native.start()
        await native.finalize()
        assert native.state is SessionState.CLOSED
        assert injector.typed == injector.pasted == []
        native.on_close.assert_called_once()

    async def test_finalize_is_idempotent(self, native, recognizer):
        await native.start()
        recognizer.emit(Events.Fragment("hello", is_final=True))
        await asyncio.gather(native.finalize(), native.finalize())
        native.on_close.assert_called_once()

    async def test_late_fragments_are_ignored_once_finalizing(self, native, recognizer, injector):
        await native.start()
        recognizer.emit(Events.Fragment("hello", is_final=True))
        finalizing = asyncio.create_task(native.finalize())
        await asyncio.sleep(0)
        recognizer.emit(Events.Fragment("ignored words", is_final=False))
        await finalizing
        assert injector.screen == "hello"

    async def test_end_of_stream_finalizes(self, native, recognizer, injector):
        await native.start()
        recognizer.emit(Events.Fragment("hello world", is_final=True))
        recognizer.emit(Events.Ended())
        await asyncio.sleep(0.05)
        assert native.state is SessionState.CLOSED
        assert injector.screen == "hello world"

    async def test_end_of_stream_without_transcript_is_ignored(self, native, recognizer):
        await native.start()
        recognizer.emit(Events.Ended())
        await asyncio.sleep(0.02)
        assert native.state is SessionState.LISTENING
        native.on_close.assert_not_called()

    async def test_recognizer_error_stops_the_session(self, native, recognizer, injector):
        session = await native.start()
        recognizer.emit(Events.Fragment("hello", is_final=False))
        recognizer.emit(Events.Error("audio engine failure"))
        await asyncio.sleep(0.05)
        assert native.state is SessionState.ERROR
        assert native.status_text == "Speech recognition error."
        assert native.error_text == "audio engine failure"
        assert recognizer.stopped
        assert session.closed

        recognizer.emit(Events.Fragment("hello again", is_final=True))
        await asyncio.sleep(0.02)
        assert session.transcript.text == "hello"
        assert injector.typed == []

    async def test_recognizer_start_failure(self, make_controller):
        controller = make_controller(Backend.NATIVE, recognizer=FakeRecognizer(fail_start=True))
        await controller.start()
        assert controller.state is SessionState.ERROR
        assert controller.status_text == "Speech recognition failed to start."

    async def test_start_is_refused_while_listening(self, native):
        assert await native.start() is not None
        assert await native.start() is None

    async def test_new_session_starts_fresh(self, native, recognizer):
        first = await native.start()
        recognizer.emit(Events.Fragment("hello", is_final=True))
        await native.finalize()

        second = await native.start()
        assert second is not first
        assert second.transcript.text == second.transcript.committed == ""
        assert native.state is SessionState.LISTENING


class TestFinalizeWithSlowTyping:
    @pytest.fixture
    def injector(self):
        return FakeInjector(delay=0.05)

    async def test_pending_typing_is_drained_before_close(self, native, recognizer, injector):
        await native.start()
        recognizer.emit(Events.Fragment("hello world", is_final=True))
        await asyncio.sleep(0.02)
        assert injector.typed == []

        await native.finalize()
        assert injector.typed == ["hello world"]
        assert native.state is SessionState.CLOSED
        native.on_close.assert_called_once()


class StuckInjector(FakeInjector):
    """Types normally until `hang_after` texts were typed, then never returns."""

    def __init__(self, hang_after):
        super().__init__()
        self.hang_after = hang_after

    async def type_text_live(self, text):
        if len(self.typed) >= self.hang_after:
            await asyncio.sleep(3600)
        return await super().type_text_live(text)


class TestStuckTyping:
    @pytest.fixture(autouse=True)
    def short_drain_timeout(self, monkeypatch):
        monkeypatch.setattr(SessionController, "FINAL_DRAIN_TIMEOUT_S", 0.05)

    @pytest.fixture
    def injector(self):
        return StuckInjector(hang_after=0)

    async def test_pastes_when_nothing_could_be_typed(self, native, recognizer, injector):
        await native.start()
        recognizer.emit(Events.Fragment("hello world", is_final=True))
        await asyncio.wait_for(native.finalize(), timeout=5)
        assert native.state is SessionState.CLOSED
        assert injector.pasted == ["hello world"]
        native.on_close.assert_called_once()

        assert await native.start() is not None
        assert native.state is SessionState.LISTENING

    async def test_closes_when_typing_hangs_after_live_text(self, native, recognizer, injector):
        injector.hang_after = 1
        await native.start()
        recognizer.emit(Events.Fragment("hello", is_final=False))
        await asyncio.sleep(0.05)
        assert injector.screen == "hello"

        recognizer.emit(Events.Fragment("hello world", is_final=True))
        await asyncio.wait_for(native.finalize(), timeout=5)
        assert native.state is SessionState.CLOSED
        assert injector.screen == "hello"
        assert injector.pasted == []
        assert await native.start() is not None


class TestPasteFallback:
    @pytest.fixture
    def injector(self):
        return FakeInjector(type_results=[False] * 10)

    async def test_pastes_when_nothing_was_typed(self, native, recognizer, injector):
        await native.start()
        recognizer.emit(Events.Fragment("hello world", is_final=True))
        await native.finalize()
        assert injector.typed == []
        assert injector.pasted == ["hello world"]
        assert injector.clipboard == []
        assert native.state is SessionState.CLOSED

    async def test_clipboard_when_paste_fails(self, native, recognizer, injector):
        injector.paste_result = False
        await native.start()
        recognizer.emit(Events.Fragment("hello world", is_final=True))
        await native.finalize()
        assert injector.clipboard == ["hello world"]
        native.on_close.assert_called_once()


class TestCloudSession:
    @pytest.fixture
    def capture(self):
        return FakeCapture()

    @pytest.fixture
    def cloud(self, make_controller, capture):
        def factory(results, **overrides):
            transcriber = FakeTranscriber(results)
            controller = make_controller(Backend.CLOUD, capture=capture, transcriber=transcriber, **overrides)
            return controller, transcriber

        return factory

    async def test_results_are_merged_and_audio_consumed(self, cloud, capture):
        controller, transcriber = cloud(["hello there", "there general kenobi"])
        session = await controller.start()
        assert capture.started

        capture.feed(b"\x01" * 2000)
        await session.backend.send(is_final=False)
        assert session.transcript.text == "hello there"
        assert session.audio_chunks == []

        capture.feed(b"\x02" * 2000)
        await session.backend.send(is_final=False)
        assert session.transcript.text == "hello there general kenobi"
        assert [len(audio) for audio, _ in transcriber.calls] == [2000, 2000]
        assert transcriber.calls[0][1] == "en-US"

    async def test_short_audio_waits_for_more(self, cloud, capture):
        controller, transcriber = cloud(["hello"])
        session = await controller.start()
        capture.feed(b"\x01" * 10)
        await session.backend.send(is_final=False)
        assert transcriber.calls == []
        assert len(session.audio_chunks) == 1

    async def test_transient_error_keeps_audio_for_next_attempt(self, cloud, capture):
        controller, transcriber = cloud([RuntimeError("read timeout"), "hello"])
        session = await controller.start()
        capture.feed(b"\x01" * 2000)
        await session.backend.send(is_final=False)
        assert controller.state is SessionState.LISTENING
        assert len(session.audio_chunks) == 1

        capture.feed(b"\x01" * 2000)
        await session.backend.send(is_final=False)
        assert len(transcriber.calls[1][0]) == 4000
        assert session.transcript.text == "hello"

    async def test_auth_error_stops_the_session(self, cloud, capture):
        controller, _ = cloud([TranscriptionAuthError("401 Incorrect API key provided")])
        session = await controller.start()
        capture.feed(b"\x01" * 2000)
        await session.backend.send(is_final=False)
        assert controller.state is SessionState.ERROR
        assert controller.status_text == "Transcription API error."
        assert controller.error_text == "401 Incorrect API key provided"
        assert capture.stopped
        assert session.closed

    async def test_capture_failure(self, make_controller):
        capture = FakeCapture(error=OSError("Permission denied"))
        controller = make_controller(Backend.CLOUD, capture=capture, transcriber=FakeTranscriber())
        await controller.start()
        assert controller.state is SessionState.ERROR
        assert controller.status_text == "Microphone access denied."
        assert controller.error_text == "Permission denied"

    async def test_finalize_sends_remaining_audio(self, cloud, capture, injector):
        controller, transcriber = cloud(["hello world"])
        await controller.start()
        capture.feed(b"\x01" * 500)
        await controller.finalize()
        assert len(transcriber.calls) == 1
        assert capture.stopped
        assert injector.screen == "hello world"
        assert controller.state is SessionState.CLOSED

    async def test_periodic_transcription(self, cloud, capture, injector):
        controller, transcriber = cloud(["hello"], transcribe_interval_s=0.01)
        await controller.start()
        capture.feed(b"\x01" * 2000)
        await asyncio.sleep(0.1)
        assert len(transcriber.calls) == 1
        assert injector.screen == "hello"
