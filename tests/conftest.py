import asyncio
import os
from unittest.mock import Mock

import pytest

from livetype import Backend, Config, RecognizerError, RefineResult, Refiner, SessionController


class FakeInjector:
    """Records what would have been typed in the focused window."""

    def __init__(self, type_results=None, delay=0.0, paste_result=True):
        self.typed: list[str] = []
        self.pasted: list[str] = []
        self.clipboard: list[str] = []
        self.focus_calls = 0
        self.delay = delay
        self.paste_result = paste_result
        self._type_results = list(type_results or [])

    @property
    def screen(self) -> str:
        return "".join(self.typed)

    async def type_text_live(self, text):
        if self.delay:
            await asyncio.sleep(self.delay)
        ok = self._type_results.pop(0) if self._type_results else True
        if ok:
            self.typed.append(text)
        return ok

    async def paste_text(self, text):
        self.pasted.append(text)
        return self.paste_result

    async def clipboard_write(self, text):
        self.clipboard.append(text)

    async def restore_last_frontmost_app(self):
        self.focus_calls += 1
        return True


class FakeRefiner:
    """Echoes the text back, or the queued responses in call order."""

    def __init__(self, responses=None, delays=None, error=None):
        self.calls: list[str] = []
        self.responses = list(responses or [])
        self.delays = list(delays or [])
        self.error = error

    async def refine(self, text):
        self.calls.append(text)
        corrected = self.responses.pop(0) if self.responses else text
        if self.delays:
            await asyncio.sleep(self.delays.pop(0))
        if self.error is not None:
            raise self.error
        return RefineResult(corrected, Refiner.Source.AI)


class FakeCapture:
    def __init__(self, error=None):
        self.error = error
        self.on_chunk = None
        self.started = False
        self.stopped = False

    async def start(self, on_chunk):
        if self.error is not None:
            raise self.error
        self.on_chunk = on_chunk
        self.started = True

    async def stop(self):
        self.stopped = True

    def feed(self, data: bytes):
        self.on_chunk(data)


class FakeTranscriber:
    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls: list[tuple[bytes, str]] = []

    async def transcribe(self, audio, language):
        self.calls.append((audio, language))
        result = self.results.pop(0) if self.results else ""
        if isinstance(result, BaseException):
            raise result
        return result


class FakeRecognizer:
    def __init__(self, fail_start=False):
        self.fail_start = fail_start
        self.language = None
        self.on_event = None
        self.stopped = False

    async def start(self, language, on_event):
        if self.fail_start:
            raise RecognizerError("Unable to start speech-recognizer: not found")
        self.language = language
        self.on_event = on_event

    async def stop(self):
        self.stopped = True

    def emit(self, event):
        self.on_event(event)


@pytest.fixture
def injector():
    return FakeInjector()


@pytest.fixture
def refiner():
    return FakeRefiner()


@pytest.fixture
async def make_controller(injector, refiner):
    controllers = []

    def factory(backend=Backend.NATIVE, *, recognizer=None, capture=None, transcriber=None, **overrides):
        values = {
            "backend": backend,
            "transcribe_interval_s": 60.0,
            "refine_debounce_s": 0.01,
            "focus_restore_delay_s": 0.01,
        }
        values.update(overrides)
        controller = SessionController(
            Config.Session(**values),
            injector=injector,
            refiner=refiner,
            capture=capture,
            transcriber=transcriber,
            recognizer=recognizer,
            on_close=Mock(),
        )
        controllers.append(controller)
        return controller

    yield factory
    for controller in controllers:
        await controller.shutdown()


@pytest.fixture
def isolated_environ(monkeypatch):
    """Lets dotenv write to a throwaway copy of the environment."""
    monkeypatch.setattr(os, "environ", dict(os.environ))
    for key in list(os.environ):
        if key.startswith("LIVETYPE_"):
            del os.environ[key]
    return os.environ
