#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "numpy",
#     "sounddevice",
#     "soundfile",
#     "pyperclipfix",
#     "evdev",
#     "python-dotenv",
#     "platformdirs",
#     "python-ydotool",
#     "openai",
#     "janus",
#     "rich",
# ]
# ///

from __future__ import annotations

import argparse
import asyncio
import io
import json
import os
import re
import shlex
import sys
from asyncio import CancelledError, Queue, create_task
from collections.abc import Callable, Mapping
from contextlib import suppress
from datetime import datetime
from enum import Enum, StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple, Protocol

import numpy as np
import soundfile as sf
from dotenv import load_dotenv
from openai import AsyncOpenAI, AuthenticationError, PermissionDeniedError
from platformdirs import user_config_dir
from rich.console import Console

if TYPE_CHECKING:
    from evdev import InputDevice


class ConsoleWithLogging:
    """Console wrapper that outputs to both stdout and a log file"""

    def __init__(self, log_file, default_log_width=5000):
        self.console = Console()
        self.log_console = Console(
            file=log_file,
            force_terminal=False,
            legacy_windows=False,
            width=default_log_width,
        )

    def print_and_log(self, *objects, log_max_width=None, **kwargs):
        """Print to both console and log file

        Args:
            *objects: What to display
            log_max_width: If specified, limits width in log (must be <= default_log_width)
            **kwargs: Other arguments passed to print()
        """
        self.console.print(*objects, **kwargs)
        self.log_console.print(f"[{datetime.now():%Y-%m-%d %H:%M:%S}]", *objects, **kwargs, width=log_max_width)

    def print(self, *objects, **kwargs):
        """Print only to console, not to log"""
        self.console.print(*objects, **kwargs)


DEBUG_TO_STDOUT = os.getenv("LIVETYPE_DEBUG", "false").lower() == "true"


def debug(*args) -> None:
    if not DEBUG_TO_STDOUT:
        return
    print(f"[{datetime.now()}]", *args, file=sys.stdout)


def errprint(*args) -> None:
    print(*args, file=sys.stderr)


# Transcript text handling

QUOTE_AND_SPACE_CHARS = " `\"'\u201c\u201d"
MERGE_MAX_OVERLAP_WORDS = 14
DELTA_MAX_OVERLAP_WORDS = 16
SENTENCE_END_CHARS = (".", "!", "?")


def normalize_transcript(text: str | None) -> str:
    """Collapse whitespace runs and strip surrounding quotes, backticks and spaces."""
    return re.sub(r"\s+", " ", text or "").strip(QUOTE_AND_SPACE_CHARS)


def _words_equal(left: list[str], right: list[str]) -> bool:
    return [word.lower() for word in left] == [word.lower() for word in right]


def merge_transcript_chunks(previous: str, incoming: str) -> str:
    """Fold a newly recognized fragment into the running transcript.

    Recognizers re-emit overlapping windows of audio, so the largest word overlap between the end of
    `previous` and the start of `incoming` is stitched away. Without any overlap both sides are kept.
    """
    prev = normalize_transcript(previous)
    nxt = normalize_transcript(incoming)
    if not prev:
        return nxt
    if not nxt or prev == nxt:
        return prev
    if nxt.startswith(prev) or prev in nxt:
        return nxt
    if prev.startswith(nxt):
        return prev

    prev_words = prev.split(" ")
    next_words = nxt.split(" ")
    for size in range(min(MERGE_MAX_OVERLAP_WORDS, len(prev_words), len(next_words)), 0, -1):
        if _words_equal(prev_words[-size:], next_words[:size]):
            return normalize_transcript(" ".join(prev_words + next_words[size:]))

    return normalize_transcript(f"{prev} {nxt}")


def compute_append_only_delta(previous: str, next_text: str) -> str:
    """Return only what `next_text` appends to `previous`.

    An empty string is returned when nothing was appended, and also when the earlier words were
    rewritten in a way we cannot locate: replaying the whole text would duplicate what is on screen.
    """
    prev = normalize_transcript(previous)
    nxt = normalize_transcript(next_text)
    if not nxt or prev == nxt:
        return ""
    if not prev:
        return nxt
    if nxt.startswith(prev):
        return nxt[len(prev) :].strip()

    position = nxt.lower().rfind(prev.lower())
    if position >= 0:
        return nxt[position + len(prev) :].strip()

    prev_words = prev.split(" ")
    next_words = nxt.split(" ")
    for size in range(min(DELTA_MAX_OVERLAP_WORDS, len(prev_words), len(next_words)), 0, -1):
        tail = prev_words[-size:]
        for start in range(len(next_words) - size + 1):
            if _words_equal(next_words[start : start + size], tail):
                return " ".join(next_words[start + size :])

    return ""


def format_delta_for_append(previous: str, delta: str) -> str:
    """Prepare `delta` to be typed right after `previous`, fixing the word or sentence boundary."""
    if not delta.strip():
        return ""
    prev = previous.rstrip()
    stripped = delta.lstrip()
    last_char = prev[-1:]
    first_char = stripped[:1]

    prev_ends_word = bool(last_char) and (last_char.isalnum() or last_char == ")")
    if prev_ends_word and first_char.isupper() and not prev.endswith(SENTENCE_END_CHARS):
        return f". {stripped}"
    if prev_ends_word and (first_char.isalnum() or first_char == "(") and not delta[0].isspace():
        return f" {stripped}"
    return delta


def append_text_for_target(previous: str, target: str) -> str:
    """What to type after `previous` so the screen shows `target`, or "" when nothing can be appended.

    The delta comes without its leading whitespace, so the separator is taken back from `target`:
    "Hello." then "Hello. How" types " How", while "a," then "a,b" types "b".
    """
    delta = compute_append_only_delta(previous, target)
    if not delta:
        return ""
    nxt = normalize_transcript(target)
    if nxt.endswith(delta) and nxt[: len(nxt) - len(delta)].endswith(" "):
        delta = f" {delta}"
    return format_delta_for_append(previous, delta)


# Refinement text handling

SELF_CORRECTION_RE = re.compile(r"\b(?:no|i mean|actually|sorry|correction|rather|make that)\b\s+(.+)$", re.IGNORECASE)
PREPOSITION_TAIL_RE = re.compile(r"\b(for|at|on|in|to|from|with)\s+(\S+(?:\s+\S+)?)$", re.IGNORECASE)
REFINED_LABEL_RE = re.compile(r"^(?:final(?:\s+answer)?|output|corrected(?:\s+sentence)?|rewritten)\s*:\s*", re.IGNORECASE)


def extract_refined_text(raw: str | None) -> str:
    """Keep only the cleaned sentence from a model answer (no fences, labels, bullets or extra lines)."""
    cleaned = (raw or "").strip()
    if not cleaned:
        return ""
    cleaned = re.sub(r"^```[a-zA-Z]*\s*", "", cleaned)
    cleaned = re.sub(r"```$", "", cleaned).strip()
    cleaned = REFINED_LABEL_RE.sub("", cleaned).strip()
    cleaned = re.sub(r"^[-*]\s+", "", cleaned).strip()
    first_line = next((line.strip() for line in cleaned.splitlines() if line.strip()), cleaned)
    return normalize_transcript(first_line)


def apply_heuristic_correction(text: str) -> str:
    """Apply a spoken self-correction: "meet at 3am no 5am" gives "meet at 5am"."""
    normalized = normalize_transcript(text)
    if not normalized:
        return ""
    match = SELF_CORRECTION_RE.search(normalized)
    if match is None:
        return normalized
    correction = normalize_transcript(match.group(1))
    if not correction:
        return normalized

    before = normalize_transcript(normalized[: match.start()].rstrip().rstrip(",:;-"))
    if not before:
        return correction

    if (prep_match := PREPOSITION_TAIL_RE.search(before)) is not None:
        preposition = prep_match.group(1)
        stem = normalize_transcript(before[: prep_match.start()])
        if not re.match(rf"{re.escape(preposition)}\b", correction, re.IGNORECASE):
            correction = f"{preposition} {correction}"
        return normalize_transcript(f"{stem} {correction}")

    before_words = before.split(" ")
    drop_count = min(4, max(1, len(correction.split(" "))))
    prefix = " ".join(before_words[: max(0, len(before_words) - drop_count)])
    return normalize_transcript(f"{prefix} {correction}") or normalized


class CaptureError(Exception):
    """The audio input device could not be opened."""


class TranscriptionAuthError(Exception):
    """The transcription service rejected our credentials."""


class RecognizerError(Exception):
    """The native speech recognizer could not be started."""


class Backend(Enum):
    CLOUD = "cloud"
    NATIVE = "native"
    AUTO = "auto"


class SessionState(StrEnum):
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    CLOSED = "closed"
    ERROR = "error"


class Config:
    class HotKey(NamedTuple):
        device: InputDevice
        codes: list[int]
        double_tap_window: float

    class Capture(NamedTuple):
        gain: float = 1.0
        sample_rate: int = 16_000

    class Transcription(NamedTuple):
        api_key: str | None
        model: OpenAITranscriber.Model
        sample_rate: int = 16_000

    class Native(NamedTuple):
        command: str

    class Refinement(NamedTuple):
        enabled: bool
        provider: Refiner.Provider
        model: str
        api_key: str | None

    class Output(NamedTuple):
        use_typing: bool
        keyboard_delay_ms: int
        focus_command: str | None

    class Session(NamedTuple):
        backend: Backend
        language: str = "en-US"
        transcribe_interval_s: float = 3.5
        refine_debounce_s: float = 1.0
        focus_restore_delay_s: float = 0.15
        min_audio_bytes: int = 1000

    class App(NamedTuple):
        console: ConsoleWithLogging
        session: Config.Session
        hotkey: Config.HotKey
        capture: Config.Capture
        transcription: Config.Transcription
        native: Config.Native
        refinement: Config.Refinement
        output: Config.Output


class Injector(Protocol):
    async def type_text_live(self, text: str) -> bool: ...

    async def paste_text(self, text: str) -> bool: ...

    async def clipboard_write(self, text: str) -> None: ...

    async def restore_last_frontmost_app(self) -> bool: ...


class AudioSource(Protocol):
    async def start(self, on_chunk: Callable[[bytes], None]) -> None: ...

    async def stop(self) -> None: ...


class Transcript:
    """Best known text of a session.

    `text` is the canonical transcript. `committed` holds what the native recognizer already marked
    final, so a restarted recognition keeps composing after it.
    """

    def __init__(self):
        self.text = ""
        self.committed = ""

    def merge(self, fragment: str) -> bool:
        merged = merge_transcript_chunks(self.text, fragment)
        changed = merged != self.text
        self.text = merged
        return changed

    def apply_native(self, fragment: str, is_final: bool) -> bool:
        normalized = normalize_transcript(fragment)
        if not normalized:
            return False
        full = f"{self.committed} {normalized}" if self.committed else normalized
        changed = full != self.text
        self.text = full
        if is_final:
            self.committed = full
        return changed


class TypingTask:
    """Applies target texts in order, typing only what was not typed yet.

    A single worker consumes the queue so exactly one injection is in flight.
    """

    def __init__(self, injector: Injector, restore_focus: Callable):
        self.injector = injector
        self.live_typed = ""
        self._restore_focus = restore_focus
        self._queue: Queue[str] = Queue()

    def queue_apply(self, text: str):
        if normalized := normalize_transcript(text):
            self._queue.put_nowait(normalized)

    async def drain(self):
        await self._queue.join()

    async def run(self):
        try:
            while True:
                target = await self._queue.get()
                try:
                    await self._apply(target)
                finally:
                    self._queue.task_done()
        except CancelledError:
            # Nothing will be typed anymore, release whoever waits for the drain
            while not self._queue.empty():
                self._queue.get_nowait()
                self._queue.task_done()

    async def _apply(self, target: str):
        previous = self.live_typed
        text = append_text_for_target(previous, target)
        if not text:
            self.live_typed = target
            return

        await self._restore_focus()
        try:
            typed = await self.injector.type_text_live(text)
        except Exception as exc:
            errprint(f"WARNING: Unable to type text: {exc}")
            typed = False
        if typed:
            self.live_typed = target
        else:
            debug(f"Typing of {text!r} failed, will retry on next apply")


class RefineResult(NamedTuple):
    corrected_text: str
    source: Refiner.Source


class Refiner:
    class Provider(Enum):
        OPENAI = "openai"
        CEREBRAS = "cerebras"
        OPENROUTER = "openrouter"

    class Source(StrEnum):
        AI = "ai"
        HEURISTIC = "heuristic"
        RAW = "raw"

    REQUEST_TIMEOUT_SECONDS = 10.0
    MAX_RETRIES = 2
    RETRY_DELAY_SECONDS = 0.5
    OPENROUTER_EXTRA_HEADERS = {
        "X-Title": "Livetype",
    }
    SYSTEM_PROMPT = """You clean up dictated text coming from a speech to text engine.
Rewrite the noisy transcription into one clean sentence that keeps what the speaker meant.

RULES:
1. Keep the meaning and the tense. Never add facts.
2. Apply the corrections the speaker makes while talking: "3am no 5am" becomes "5am".
3. Remove fillers and disfluencies: uh, um, er, like (as filler), you know, i mean (as filler), stutters.
4. When the speaker restarts or repeats a phrase, keep only the last valid version.
5. Stay natural and concise. Only fix grammar or punctuation when needed to be readable.
6. Keep the first person when it is used.
7. Output exactly one cleaned sentence.
8. Output plain text only: no quotes, no markdown, no labels, no explanations.
"""
    USER_TEMPLATE = """Raw transcript:
{text}

Return exactly one cleaned sentence."""

    def __init__(self, config: Config.Refinement):
        self.config = config
        self.client = self._build_client() if config.enabled and config.api_key else None

    async def refine(self, text: str) -> RefineResult:
        normalized = normalize_transcript(text)
        if not normalized:
            return RefineResult("", self.Source.RAW)

        if self.client is not None and (cleaned := await self._refine_with_model(normalized)):
            return RefineResult(cleaned, self.Source.AI)

        if corrected := apply_heuristic_correction(normalized):
            return RefineResult(corrected, self.Source.HEURISTIC)
        return RefineResult(normalized, self.Source.RAW)

    async def _refine_with_model(self, text: str) -> str:
        create_kwargs = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": self.SYSTEM_PROMPT},
                {"role": "user", "content": self.USER_TEMPLATE.format(text=text)},
            ],
            "temperature": 0,
        }
        if self.config.provider is Refiner.Provider.OPENROUTER:
            create_kwargs["extra_headers"] = self.OPENROUTER_EXTRA_HEADERS
        for attempt in range(self.MAX_RETRIES):
            try:
                response = await asyncio.wait_for(
                    self.client.chat.completions.create(**create_kwargs),
                    timeout=self.REQUEST_TIMEOUT_SECONDS,
                )
            except TimeoutError:
                errprint(f"WARNING: Refinement timed out (attempt {attempt + 1}/{self.MAX_RETRIES})")
            except Exception as exc:
                errprint(f"WARNING: Refinement failed (attempt {attempt + 1}/{self.MAX_RETRIES}): {exc}")
            else:
                content = response.choices[0].message.content if response.choices else None
                return extract_refined_text(content)
            if attempt + 1 < self.MAX_RETRIES:
                await asyncio.sleep(self.RETRY_DELAY_SECONDS)
        errprint("WARNING: Refinement unavailable; falling back to heuristic correction")
        return ""

    def _build_client(self) -> AsyncOpenAI:
        if self.config.provider is Refiner.Provider.OPENAI:
            return AsyncOpenAI(api_key=self.config.api_key)
        if self.config.provider is Refiner.Provider.CEREBRAS:
            return AsyncOpenAI(api_key=self.config.api_key, base_url="https://api.cerebras.ai/v1")
        if self.config.provider is Refiner.Provider.OPENROUTER:
            return AsyncOpenAI(api_key=self.config.api_key, base_url="https://openrouter.ai/api/v1")
        raise ValueError(f"Unknown refinement provider: {self.config.provider.value}")


class RefinementScheduler:
    """Debounces transcript changes and applies refined text unless a newer request superseded it."""

    def __init__(self, transcript: Transcript, typing: TypingTask, refiner: Refiner, debounce_s: float):
        self.transcript = transcript
        self.typing = typing
        self.refiner = refiner
        self.debounce_s = debounce_s
        self.seq = 0
        self._last_debounced_input = ""
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._stopped = False

    def schedule(self):
        if self._stopped:
            return
        self._cancel_timer()
        self._timer = asyncio.get_running_loop().call_later(self.debounce_s, self._on_debounce)

    def _on_debounce(self):
        self._timer = None
        current = normalize_transcript(self.transcript.text)
        if not current or current == self._last_debounced_input:
            return
        self._last_debounced_input = current
        task = create_task(self.refine_and_apply(current))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def refine_and_apply(self, raw: str, force: bool = False) -> str:
        base = normalize_transcript(raw)
        if not base:
            return ""

        self.seq += 1
        request_seq = self.seq
        refined = base
        try:
            result = await self.refiner.refine(base)
        except Exception as exc:
            errprint(f"WARNING: Live transcript refinement failed: {exc}")
        else:
            if cleaned := normalize_transcript(result.corrected_text):
                refined = cleaned
                debug(f"Refined ({result.source}): {refined!r}")

        if not force:
            if request_seq != self.seq:
                debug(f"Dropping superseded refinement #{request_seq}")
                return refined
            if base != normalize_transcript(self.transcript.text):
                debug(f"Dropping stale refinement #{request_seq}")
                return refined

        self.typing.queue_apply(refined)
        return refined

    def stop(self):
        """Stop debouncing; requests already sent still complete."""
        self._stopped = True
        self._cancel_timer()

    def cancel(self):
        self.stop()
        for task in list(self._tasks):
            task.cancel()

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class OpenAITranscriber:
    class Model(Enum):
        GPT_4O_TRANSCRIBE = "gpt-4o-transcribe"
        GPT_4O_MINI_TRANSCRIBE = "gpt-4o-mini-transcribe"
        WHISPER_1 = "whisper-1"

    REQUEST_TIMEOUT_SECONDS = 30.0

    def __init__(self, config: Config.Transcription):
        self.config = config
        self.client = AsyncOpenAI(api_key=config.api_key)

    @staticmethod
    def language_code(language: str | None) -> str | None:
        """`en-US` => `en`"""
        return (language or "").split("-")[0].strip().lower() or None

    def encode_wav(self, audio: bytes) -> bytes:
        samples = np.frombuffer(audio[: len(audio) - len(audio) % 2], dtype=np.int16)
        buffer = io.BytesIO()
        sf.write(buffer, samples, self.config.sample_rate, format="WAV", subtype="PCM_16")
        return buffer.getvalue()

    async def transcribe(self, audio: bytes, language: str | None) -> str:
        create_kwargs = {
            "model": self.config.model.value,
            "file": ("audio.wav", self.encode_wav(audio)),
            "response_format": "text",
        }
        if code := self.language_code(language):
            create_kwargs["language"] = code
        try:
            result = await asyncio.wait_for(
                self.client.audio.transcriptions.create(**create_kwargs),
                timeout=self.REQUEST_TIMEOUT_SECONDS,
            )
        except (AuthenticationError, PermissionDeniedError) as exc:
            raise TranscriptionAuthError(str(exc)) from exc
        return result if isinstance(result, str) else (getattr(result, "text", None) or "")


class NativeRecognizer:
    """Runs an external recognizer emitting one JSON object per line on stdout.

    Lines look like `{"ready": true}`, `{"transcript": "...", "isFinal": false}` or `{"error": "..."}`.
    The process exiting is reported as `Ended`.
    """

    STOP_TIMEOUT_SECONDS = 2.0

    class Events:
        class Ready(NamedTuple):
            pass

        class Fragment(NamedTuple):
            text: str
            is_final: bool

        class Error(NamedTuple):
            message: str

        class Ended(NamedTuple):
            pass

    def __init__(self, command: str):
        self.command = command
        self._process: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task | None = None

    @classmethod
    def parse_line(cls, line: bytes | str):
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        line = line.strip()
        if not line:
            return None
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            debug(f"Ignoring non JSON recognizer output: {line!r}")
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("ready"):
            return cls.Events.Ready()
        if payload.get("error"):
            return cls.Events.Error(message=str(payload["error"]))
        if isinstance(payload.get("transcript"), str):
            return cls.Events.Fragment(text=payload["transcript"], is_final=bool(payload.get("isFinal")))
        return None

    async def start(self, language: str, on_event: Callable):
        argv = [*shlex.split(self.command), language]
        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            raise RecognizerError(f"Unable to start {argv[0]}: {exc}") from exc
        self._reader = create_task(self._read(self._process, on_event))

    async def _read(self, process: asyncio.subprocess.Process, on_event: Callable):
        try:
            async for line in process.stdout:
                if (event := self.parse_line(line)) is not None:
                    on_event(event)
            await process.wait()
        except CancelledError:
            return
        debug(f"Recognizer exited with code {process.returncode}")
        on_event(self.Events.Ended())

    async def stop(self):
        process, self._process = self._process, None
        if self._reader is not None:
            self._reader.cancel()
            self._reader = None
        if process is None or process.returncode is not None:
            return
        with suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self.STOP_TIMEOUT_SECONDS)
        except TimeoutError:
            with suppress(ProcessLookupError):
                process.kill()
            await process.wait()


class CloudBackend:
    """Buffers captured audio and transcribes it periodically."""

    def __init__(self, session: Session, capture: AudioSource, transcriber: OpenAITranscriber):
        self.session = session
        self.capture = capture
        self.transcriber = transcriber
        self._periodic: asyncio.Task | None = None
        self._in_flight: asyncio.Task | None = None

    async def start(self):
        try:
            await self.capture.start(self.session.audio_chunks.append)
        except Exception as exc:
            raise CaptureError(str(exc)) from exc
        self._periodic = self.session.spawn(self._run_periodic())

    async def _run_periodic(self):
        try:
            while True:
                await asyncio.sleep(self.session.config.transcribe_interval_s)
                if self.session.finalizing:
                    continue
                if self._in_flight is not None and not self._in_flight.done():
                    continue
                if not self.session.audio_chunks:
                    continue
                self._in_flight = self.session.spawn(self.send(is_final=False))
        except CancelledError:
            pass

    async def send(self, is_final: bool):
        session = self.session
        count = len(session.audio_chunks)
        if not count:
            return
        audio = b"".join(session.audio_chunks[:count])
        if len(audio) < session.config.min_audio_bytes and not is_final:
            return

        debug(f"Sending {len(audio)} bytes for transcription (final={is_final})")
        try:
            text = await self.transcriber.transcribe(audio, session.config.language)
        except TranscriptionAuthError as exc:
            errprint(f"ERROR: Transcription rejected: {exc}")
            await session.controller.fail(session, "Transcription API error.", str(exc))
            return
        except Exception as exc:
            errprint(f"WARNING: Transcription failed, will retry: {exc}")
            return

        if not session.is_current or (session.finalizing and not is_final):
            return
        # Audio sent with a final request is never sent again either.
        del session.audio_chunks[:count]
        if normalized := normalize_transcript(text):
            debug(f"Transcription: {normalized!r}")
            session.on_cloud_fragment(normalized)

    async def finish(self):
        if self._periodic is not None:
            self._periodic.cancel()
        await self.capture.stop()
        if self._in_flight is not None and not self._in_flight.done():
            await self._in_flight
        if self.session.audio_chunks and not self.session.closed:
            await self.send(is_final=True)

    async def dispose(self):
        if self._periodic is not None:
            self._periodic.cancel()
        await self.capture.stop()


class NativeBackend:
    def __init__(self, session: Session, recognizer: NativeRecognizer):
        self.session = session
        self.recognizer = recognizer

    async def start(self):
        await self.recognizer.start(self.session.config.language, self.session.on_recognizer_event)

    async def finish(self):
        await self.recognizer.stop()

    async def dispose(self):
        await self.recognizer.stop()


class Session:
    """Everything belonging to one dictation, from start to close."""

    def __init__(self, controller: SessionController, config: Config.Session, injector: Injector, refiner: Refiner):
        self.controller = controller
        self.config = config
        self.injector = injector
        self.transcript = Transcript()
        self.typing = TypingTask(injector, self.restore_focus_once)
        self.refinement = RefinementScheduler(self.transcript, self.typing, refiner, config.refine_debounce_s)
        self.audio_chunks: list[bytes] = []
        self.backend: CloudBackend | NativeBackend | None = None
        self.finalizing = False
        self.closed = False
        self._focus_requested = False
        self._focus_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._typing_worker: asyncio.Task | None = None

    @property
    def is_current(self) -> bool:
        return not self.closed and self.controller.session is self

    def spawn(self, coro) -> asyncio.Task:
        task = create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def start(self):
        self._typing_worker = self.spawn(self.typing.run())
        await self.backend.start()

    def schedule_focus_restore(self, delay: float):
        if self._focus_requested:
            return
        self._focus_requested = True
        self._focus_handle = asyncio.get_running_loop().call_later(delay, self._on_focus_timer)

    def _on_focus_timer(self):
        self._focus_handle = None
        self.spawn(self._restore_focus())

    async def restore_focus_once(self):
        if self._focus_requested:
            return
        self._focus_requested = True
        await self._restore_focus()

    async def _restore_focus(self):
        try:
            restored = await self.injector.restore_last_frontmost_app()
        except Exception as exc:
            errprint(f"WARNING: Unable to restore focus: {exc}")
            return
        if not restored:
            debug("Focus restoration reported a failure")

    def stop_typing(self):
        if self._typing_worker is not None:
            self._typing_worker.cancel()

    def cancel_timers(self):
        self.refinement.stop()
        if self._focus_handle is not None:
            self._focus_handle.cancel()
            self._focus_handle = None
            # Not restored yet, the next typed text will do it
            self._focus_requested = False

    def on_cloud_fragment(self, text: str):
        if self.transcript.merge(text):
            self.refinement.schedule()

    def on_recognizer_event(self, event):
        if not self.is_current or self.finalizing:
            return
        match event:
            case NativeRecognizer.Events.Ready():
                debug("Recognizer ready")
                if self.controller.state is not SessionState.LISTENING:
                    self.controller.set_state(SessionState.LISTENING, "Listening...")

            case NativeRecognizer.Events.Fragment(text=text, is_final=is_final):
                if self.transcript.apply_native(text, is_final):
                    self.refinement.schedule()

            case NativeRecognizer.Events.Error(message=message):
                errprint(f"ERROR: Speech recognizer: {message}")
                self.controller.run_in_background(self.controller.fail(self, "Speech recognition error.", message))

            case NativeRecognizer.Events.Ended():
                if self.transcript.text:
                    self.controller.run_in_background(self.controller.finalize())
                else:
                    debug("Recognizer ended without any transcript")

    async def dispose(self):
        if self.closed:
            return
        self.closed = True
        self.cancel_timers()
        self.refinement.cancel()
        if self.backend is not None:
            await self.backend.dispose()
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()


class SessionController:
    """Owns the dictation state machine: idle, listening, processing, then closed or error."""

    FINAL_DRAIN_TIMEOUT_S = 3.0

    def __init__(
        self,
        config: Config.Session,
        *,
        injector: Injector,
        refiner: Refiner,
        capture: AudioSource | None = None,
        transcriber: OpenAITranscriber | None = None,
        recognizer: NativeRecognizer | None = None,
        console: ConsoleWithLogging | None = None,
        on_close: Callable[[], None] | None = None,
    ):
        self.config = config
        self.injector = injector
        self.refiner = refiner
        self.capture = capture
        self.transcriber = transcriber
        self.recognizer = recognizer
        self.console = console
        self.on_close = on_close
        self.state = SessionState.IDLE
        self.status_text = ""
        self.error_text = ""
        self.session: Session | None = None
        self._background: set[asyncio.Task] = set()

    @property
    def is_active(self) -> bool:
        return self.state in (SessionState.LISTENING, SessionState.PROCESSING)

    def set_state(self, state: SessionState, status: str):
        self.state = state
        self.status_text = status
        if self.console is not None:
            style = "red" if state is SessionState.ERROR else "green" if state is SessionState.LISTENING else "yellow"
            self.console.print_and_log(f"[{style}]{status}[/{style}]")
        debug(f"State: {state} ({status})")

    def run_in_background(self, coro) -> asyncio.Task:
        task = create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _build_backend(self, session: Session) -> CloudBackend | NativeBackend:
        if self.config.backend is Backend.CLOUD:
            if self.capture is None or self.transcriber is None:
                raise ValueError("Cloud backend needs an audio capture and a transcriber")
            return CloudBackend(session, self.capture, self.transcriber)
        if self.config.backend is Backend.NATIVE:
            if self.recognizer is None:
                raise ValueError("Native backend needs a recognizer")
            return NativeBackend(session, self.recognizer)
        raise ValueError(f"Backend must be resolved before starting a session, got {self.config.backend.value}")

    async def start(self) -> Session | None:
        if self.is_active:
            debug(f"Not starting a session while {self.state}")
            return None
        if self.session is not None:
            await self.session.dispose()

        session = Session(self, self.config, self.injector, self.refiner)
        session.backend = self._build_backend(session)
        self.session = session
        self.error_text = ""
        self.set_state(SessionState.LISTENING, "Listening...")
        session.schedule_focus_restore(self.config.focus_restore_delay_s)
        try:
            await session.start()
        except CaptureError as exc:
            errprint(f"ERROR: Unable to open the microphone: {exc}")
            await self.fail(session, "Microphone access denied.", str(exc))
        except RecognizerError as exc:
            errprint(f"ERROR: {exc}")
            await self.fail(session, "Speech recognition failed to start.", str(exc))
        return session

    async def finalize(self):
        session = self.session
        if session is None or session.closed or session.finalizing:
            return
        session.finalizing = True
        session.cancel_timers()
        self.set_state(SessionState.PROCESSING, "Finishing...")

        await session.backend.finish()
        if session.closed:
            return
        drained = await self._drain_typing(session)

        base = normalize_transcript(session.transcript.text)
        if not base:
            await self._close(session)
            return

        final = base
        if drained:
            final = await session.refinement.refine_and_apply(base, force=True) or base
            drained = await self._drain_typing(session)
        if not session.typing.live_typed:
            await self._paste_and_close(session, final)
            return
        if drained:
            session.typing.queue_apply(final)
            await self._drain_typing(session)
        await self._close(session)

    async def _drain_typing(self, session: Session) -> bool:
        """Wait for pending injections; a stuck one stops the typing worker so the session can still close."""
        try:
            await asyncio.wait_for(session.typing.drain(), timeout=self.FINAL_DRAIN_TIMEOUT_S)
        except TimeoutError:
            errprint(f"WARNING: Typing did not complete within {self.FINAL_DRAIN_TIMEOUT_S}s, giving up on it")
            session.stop_typing()
            return False
        return True

    async def fail(self, session: Session, status: str, detail: str):
        if session.closed:
            return
        self.error_text = detail
        self.set_state(SessionState.ERROR, status)
        if self.console is not None and detail:
            self.console.print_and_log(f"[dim]{detail}[/dim]")
        await session.dispose()
        if self.session is session:
            self.session = None

    async def _paste_and_close(self, session: Session, text: str):
        if normalized := normalize_transcript(text):
            try:
                pasted = await self.injector.paste_text(normalized)
            except Exception as exc:
                errprint(f"WARNING: Unable to paste text: {exc}")
                pasted = False
            if not pasted:
                try:
                    await self.injector.clipboard_write(normalized)
                except Exception as exc:
                    errprint(f"ERROR: Unable to copy text to the clipboard: {exc}")
        await self._close(session)

    async def _close(self, session: Session):
        await session.dispose()
        if self.session is session:
            self.session = None
        self.set_state(SessionState.CLOSED, "Done.")
        if self.on_close is not None:
            self.on_close()

    async def shutdown(self):
        if self.session is not None:
            await self.session.dispose()
            self.session = None
        for task in list(self._background):
            task.cancel()


class CommandLineParser:
    ENV_PREFIX = "LIVETYPE_"
    _PROMPT_FOR_KEYBOARD = object()
    _UNDEFINED = object()
    _DEST_TO_ENV = {
        "backend": f"{ENV_PREFIX}BACKEND",
        "language": f"{ENV_PREFIX}LANGUAGE",
        "model": f"{ENV_PREFIX}MODEL",
        "openai_api_key": f"{ENV_PREFIX}OPENAI_API_KEY",
        "transcribe_interval": f"{ENV_PREFIX}TRANSCRIBE_INTERVAL",
        "gain": f"{ENV_PREFIX}GAIN",
        "recognizer": f"{ENV_PREFIX}RECOGNIZER",
        "refine_provider": f"{ENV_PREFIX}REFINE_PROVIDER",
        "refine_model": f"{ENV_PREFIX}REFINE_MODEL",
        "refine_debounce": f"{ENV_PREFIX}REFINE_DEBOUNCE",
        "no_refine": f"{ENV_PREFIX}REFINE_DISABLED",
        "cerebras_api_key": f"{ENV_PREFIX}CEREBRAS_API_KEY",
        "openrouter_api_key": f"{ENV_PREFIX}OPENROUTER_API_KEY",
        "hotkey": f"{ENV_PREFIX}HOTKEY",
        "double_tap_window": f"{ENV_PREFIX}DOUBLE_TAP_WINDOW",
        "keyboard": f"{ENV_PREFIX}KEYBOARD",
        "use_typing": f"{ENV_PREFIX}USE_TYPING",
        "keyboard_delay": f"{ENV_PREFIX}KEYBOARD_DELAY",
        "focus_command": f"{ENV_PREFIX}FOCUS_COMMAND",
        "ydotool_socket": f"{ENV_PREFIX}YDOTOOL_SOCKET",
    }
    _BOOLEAN_DESTS = {"no_refine", "use_typing"}

    @classmethod
    def get_env(cls, name: str, default: str | None = None, prefix_optional: bool = False):
        result = os.getenv(f"{cls.ENV_PREFIX}{name}")
        if result is None and prefix_optional:
            result = os.getenv(name)
        return default if result is None else result

    @classmethod
    def get_env_bool(cls, name: str, default: bool = False, prefix_optional: bool = False):
        return cls._env_truthy(cls.get_env(name, str(default), prefix_optional))

    @staticmethod
    def _env_truthy(val: str | None) -> bool:
        if not val:
            return False
        return val.strip().lower() in {"1", "true", "yes", "on"}

    @staticmethod
    def resolve_backend(backend: Backend, openai_api_key: str | None) -> Backend:
        if backend is not Backend.AUTO:
            return backend
        return Backend.CLOUD if openai_api_key else Backend.NATIVE

    @classmethod
    def _create_arguments(cls, parser: argparse.ArgumentParser, default: dict[str, str | bool | None]):
        prefix = cls.ENV_PREFIX
        parser.add_argument(
            "-c",
            "--config",
            default=default.get("CONFIG_PATH", cls._UNDEFINED),
            help=f"Path to config file to load instead of the default user config ({default.get('CONFIG_PATH')})",
        )
        parser.add_argument(
            "-b",
            "--backend",
            default=default.get("BACKEND", cls._UNDEFINED),
            choices=[b.value for b in Backend],
            help=f"Speech recognition backend, `auto` uses the cloud when an OpenAI key is set (env: {prefix}BACKEND)",
        )
        parser.add_argument(
            "-l",
            "--language",
            default=default.get("LANGUAGE", cls._UNDEFINED),
            help=f"Dictation language as a BCP-47 tag, like en-US (env: {prefix}LANGUAGE)",
        )
        parser.add_argument(
            "-m",
            "--model",
            default=default.get("MODEL", cls._UNDEFINED),
            choices=[m.value for m in OpenAITranscriber.Model],
            help=f"OpenAI model used by the cloud backend (env: {prefix}MODEL)",
        )
        parser.add_argument(
            "-koa",
            "--openai-api-key",
            default=default.get("OPENAI_API_KEY", cls._UNDEFINED),
            help=f"OpenAI API key (env: {prefix}OPENAI_API_KEY or OPENAI_API_KEY)",
        )
        parser.add_argument(
            "-ti",
            "--transcribe-interval",
            type=int,
            default=default.get("TRANSCRIBE_INTERVAL", cls._UNDEFINED),
            help=f"Milliseconds between two cloud transcriptions of the buffered audio (env: {prefix}TRANSCRIBE_INTERVAL)",
        )
        parser.add_argument(
            "-g",
            "--gain",
            type=float,
            default=default.get("GAIN", cls._UNDEFINED),
            help=f"Microphone amplification factor for the cloud backend, 1.0=normal (env: {prefix}GAIN)",
        )
        parser.add_argument(
            "-r",
            "--recognizer",
            default=default.get("RECOGNIZER", cls._UNDEFINED),
            help=f"Command running the native recognizer, the language is appended as last argument (env: {prefix}RECOGNIZER)",
        )
        parser.add_argument(
            "-rp",
            "--refine-provider",
            default=default.get("REFINE_PROVIDER", cls._UNDEFINED),
            choices=[p.value for p in Refiner.Provider],
            help=f"Provider for the live refinement (env: {prefix}REFINE_PROVIDER)",
        )
        parser.add_argument(
            "-rm",
            "--refine-model",
            default=default.get("REFINE_MODEL", cls._UNDEFINED),
            help=f"Model for the live refinement (env: {prefix}REFINE_MODEL)",
        )
        parser.add_argument(
            "-rd",
            "--refine-debounce",
            type=int,
            default=default.get("REFINE_DEBOUNCE", cls._UNDEFINED),
            help=f"Milliseconds without transcript change before refining (env: {prefix}REFINE_DEBOUNCE)",
        )
        parser.add_argument(
            "-nr",
            "--no-refine",
            action="store_true",
            default=default.get("REFINE_DISABLED", cls._UNDEFINED),
            help=f"Do not call a model for refinement, only apply spoken self-corrections (env: {prefix}REFINE_DISABLED)",
        )
        parser.add_argument(
            "-kcb",
            "--cerebras-api-key",
            default=default.get("CEREBRAS_API_KEY", cls._UNDEFINED),
            help=f"Cerebras API key (env: {prefix}CEREBRAS_API_KEY or CEREBRAS_API_KEY)",
        )
        parser.add_argument(
            "-kor",
            "--openrouter-api-key",
            default=default.get("OPENROUTER_API_KEY", cls._UNDEFINED),
            help=f"OpenRouter API key (env: {prefix}OPENROUTER_API_KEY or OPENROUTER_API_KEY)",
        )
        parser.add_argument(
            "-k",
            "--hotkey",
            default=default.get("HOTKEY", cls._UNDEFINED),
            help=f"Push-to-talk key(s), F1-F12, comma-separated for multiple (env: {prefix}HOTKEY)",
        )
        parser.add_argument(
            "-dtw",
            "--double-tap-window",
            type=float,
            default=default.get("DOUBLE_TAP_WINDOW", cls._UNDEFINED),
            help=f"Seconds between two taps of the hotkey to enter toggle mode (env: {prefix}DOUBLE_TAP_WINDOW)",
        )
        parser.add_argument(
            "-kb",
            "--keyboard",
            nargs="?",
            default=default.get("KEYBOARD", cls._UNDEFINED),
            const=cls._PROMPT_FOR_KEYBOARD,
            help=f"Text filter for the keyboard to listen to; pass without a value to pick interactively (env: {prefix}KEYBOARD)",
        )
        parser.add_argument(
            "-t",
            "--use-typing",
            action=argparse.BooleanOptionalAction,
            default=default.get("USE_TYPING", cls._UNDEFINED),
            help=f"Type ASCII text instead of pasting it via the clipboard (env: {prefix}USE_TYPING)",
        )
        parser.add_argument(
            "-kd",
            "--keyboard-delay",
            type=int,
            default=default.get("KEYBOARD_DELAY", cls._UNDEFINED),
            help=f"Delay in milliseconds between keyboard actions (env: {prefix}KEYBOARD_DELAY)",
        )
        parser.add_argument(
            "-fc",
            "--focus-command",
            default=default.get("FOCUS_COMMAND", cls._UNDEFINED),
            help=f"Shell command giving the focus back to the target window before typing (env: {prefix}FOCUS_COMMAND)",
        )
        parser.add_argument(
            "-ys",
            "--ydotool-socket",
            default=default.get("YDOTOOL_SOCKET", cls._UNDEFINED),
            help=f"Path to ydotool socket (env: {prefix}YDOTOOL_SOCKET or YDOTOOL_SOCKET)",
        )
        parser.add_argument(
            "--log",
            default=default.get("LOG", cls._UNDEFINED),
            help=f"Path to the log file (env: {prefix}LOG)",
        )
        parser.add_argument(
            "--save-config",
            nargs="?",
            const=True,
            default=False if default else cls._UNDEFINED,
            help="Save the options given on the command line to the config file (or to the given path)",
        )

    @classmethod
    def parse(cls) -> Config.App | None:
        config_path_mandatory = False
        if config_path_str := cls._extract_config_path_from_argv():
            config_path_mandatory = True
        else:
            config_path_str = (os.getenv(f"{cls.ENV_PREFIX}CONFIG") or "").strip()

        config_dir = Path(user_config_dir("livetype", ensure_exists=False))
        config_path = Path(config_path_str).expanduser() if config_path_str else config_dir / "config.env"
        if not config_path.is_absolute():
            config_path = (Path.cwd() / config_path).resolve(strict=False)

        if config_path_mandatory and not config_path.is_file():
            errprint(f"ERROR: Config file {config_path} does not exist or is not a file")
            return None

        success, loaded_config_files = cls._load_env_files(config_path)
        if not success:
            return None

        epilog = f"""Configuration files:
  Environment variables (in order of priority):
  - Command-line arguments (highest priority)
  - System environment variables
  - Local .env file (current working directory and script directory)
  - Config file defined by the user (~/.config/livetype/config.env by default)
  - Other config files loaded by the value of `{cls.ENV_PREFIX}PARENT_CONFIG` defined in config files

  Each option can be set via environment variable using the {cls.ENV_PREFIX} prefix.
  *_API_KEY and YDOTOOL_SOCKET environment variables can also be set without the prefix.
  """

        parser = argparse.ArgumentParser(
            description="Live dictation typed into the focused window",
            epilog=epilog,
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )

        default: dict[str, str | bool | None] = {
            "BACKEND": cls.get_env("BACKEND", Backend.AUTO.value),
            "LANGUAGE": cls.get_env("LANGUAGE", "en-US"),
            "MODEL": cls.get_env("MODEL", OpenAITranscriber.Model.GPT_4O_TRANSCRIBE.value),
            "OPENAI_API_KEY": cls.get_env("OPENAI_API_KEY", prefix_optional=True),
            "TRANSCRIBE_INTERVAL": int(cls.get_env("TRANSCRIBE_INTERVAL", "3500")),
            "GAIN": float(cls.get_env("GAIN", "1.0")),
            "RECOGNIZER": cls.get_env("RECOGNIZER", "speech-recognizer"),
            "REFINE_PROVIDER": cls.get_env("REFINE_PROVIDER", Refiner.Provider.OPENAI.value),
            "REFINE_MODEL": cls.get_env("REFINE_MODEL", "gpt-4o-mini"),
            "REFINE_DEBOUNCE": int(cls.get_env("REFINE_DEBOUNCE", "1000")),
            "REFINE_DISABLED": cls.get_env_bool("REFINE_DISABLED"),
            "CEREBRAS_API_KEY": cls.get_env("CEREBRAS_API_KEY", prefix_optional=True),
            "OPENROUTER_API_KEY": cls.get_env("OPENROUTER_API_KEY", prefix_optional=True),
            "HOTKEY": cls.get_env("HOTKEY", "F9"),
            "DOUBLE_TAP_WINDOW": float(cls.get_env("DOUBLE_TAP_WINDOW", "0.5")),
            "KEYBOARD": cls.get_env("KEYBOARD"),
            "USE_TYPING": cls.get_env_bool("USE_TYPING", True),
            "KEYBOARD_DELAY": int(cls.get_env("KEYBOARD_DELAY", "20")),
            "FOCUS_COMMAND": cls.get_env("FOCUS_COMMAND"),
            "YDOTOOL_SOCKET": cls.get_env("YDOTOOL_SOCKET", prefix_optional=True),
            "LOG": cls.get_env("LOG"),
            "CONFIG_PATH": config_path.as_posix(),
        }

        cls._create_arguments(parser, default)
        args = parser.parse_args()
        provided_args = cls._get_args_defined_on_cli()
        prefix = cls.ENV_PREFIX

        backend = cls.resolve_backend(Backend(args.backend), args.openai_api_key)
        if backend is Backend.CLOUD and not args.openai_api_key:
            errprint(
                "ERROR: OpenAI API key is not defined (for the cloud backend)\n"
                f"Please set OPENAI_API_KEY or {prefix}OPENAI_API_KEY environment variable or pass it via --openai-api-key argument"
            )
            return None

        refine_provider = Refiner.Provider(args.refine_provider)
        refine_api_key = {
            Refiner.Provider.OPENAI: args.openai_api_key,
            Refiner.Provider.CEREBRAS: args.cerebras_api_key,
            Refiner.Provider.OPENROUTER: args.openrouter_api_key,
        }[refine_provider]
        refine_enabled = not args.no_refine
        if refine_enabled and not refine_api_key:
            errprint(
                f"WARNING: No API key for the {refine_provider.value} refinement provider, "
                "only spoken self-corrections will be applied"
            )
            refine_enabled = False

        # Hardware related modules are only needed once we know we will run
        from livetype_devices import find_keyboard, parse_hotkeys

        try:
            hotkey_codes = parse_hotkeys(args.hotkey)
        except ValueError as exc:
            errprint(f"ERROR: {exc}")
            return None

        try:
            force_keyboard_prompt = args.keyboard is cls._PROMPT_FOR_KEYBOARD
            keyboard_value = args.keyboard if not force_keyboard_prompt and isinstance(args.keyboard, str) else None
            keyboard = find_keyboard(filter_text=keyboard_value.strip() if keyboard_value else None, force_prompt=force_keyboard_prompt)
        except Exception as exc:
            errprint(f"ERROR: Unable to find keyboard: {exc}")
            return None

        if args.ydotool_socket:
            os.environ["YDOTOOL_SOCKET"] = args.ydotool_socket

        from rich.panel import Panel
        from rich.table import Table

        if args.log:
            log_path = Path(args.log).expanduser()
        else:
            log_path = Path(user_config_dir("livetype", ensure_exists=True)) / "livetype.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_file = open(log_path, "a", encoding="utf-8")

        console = ConsoleWithLogging(log_file)

        def format_path(path: Path) -> str:
            try:
                return f"~/{path.relative_to(Path.home())}"
            except ValueError:
                return str(path)

        config_table = Table(show_header=False, box=None, padding=(0, 1))
        config_table.add_column(style="bold cyan", width=20)
        config_table.add_column()
        if backend is Backend.CLOUD:
            config_table.add_row("Backend", f"[green]cloud[/green] via [yellow]{args.model}[/yellow] every {args.transcribe_interval} ms")
        else:
            config_table.add_row("Backend", f"[green]native[/green] via [yellow]{args.recognizer}[/yellow]")
        config_table.add_row("Language", f"[yellow]{args.language}[/yellow]")
        if refine_enabled:
            config_table.add_row("Refinement", f"Via [yellow]{args.refine_model}[/yellow] from [green]{refine_provider.value}[/green]")
        else:
            config_table.add_row("Refinement", "[dim]Spoken self-corrections only[/dim]")
        config_table.add_row("", f"[dim]After {args.refine_debounce} ms without change[/dim]")
        hotkeys_display = ", ".join(k.strip().upper() for k in args.hotkey.split(","))
        config_table.add_row("Hotkey", f"[bold yellow]{hotkeys_display}[/bold yellow]")
        config_table.add_row("", "[dim]Hold: push-to-talk | Double-tap: toggle mode | Escape: finish[/dim]")
        config_table.add_row("Keyboard", f"[yellow]{keyboard.name}[/yellow]")
        output_method = "Type directly (ASCII) (Non ASCII is pasted via clipboard)" if args.use_typing else "Paste via clipboard"
        config_table.add_row("Output method", f"[yellow]{output_method}[/yellow]")
        if args.focus_command:
            config_table.add_row("Focus command", f"[yellow]{args.focus_command}[/yellow]")
        config_table.add_row("", "")
        config_table.add_row("[bold]Files", "")
        if loaded_config_files:
            for i, config_file in enumerate(loaded_config_files, 1):
                config_table.add_row("  Config" if i == 1 else "", f"[yellow]{format_path(config_file)}[/yellow]")
        else:
            config_table.add_row("  Config", "[dim]None loaded[/dim]")
        config_table.add_row("  Log", f"[yellow]{format_path(log_path)}[/yellow]")

        console.print_and_log(Panel(config_table, title="[bold]Livetype Configuration[/bold]", border_style="blue"), log_max_width=150)
        console.print()
        console.print(
            f"[bold green]Ready![/bold green] Hold (or double tap) [bold yellow]{hotkeys_display}[/bold yellow] to dictate. "
            f"Press [bold red]Ctrl+C[/bold red] to stop the program.\n"
        )

        if args.save_config is True or isinstance(args.save_config, str):
            save_config_path = None
            if isinstance(args.save_config, str) and (stripped := args.save_config.strip()):
                save_config_path = Path(stripped).expanduser()
            cls.save_config(args=args, provided_args=provided_args, config_path=save_config_path or config_path)

        return Config.App(
            console=console,
            session=Config.Session(
                backend=backend,
                language=args.language,
                transcribe_interval_s=args.transcribe_interval / 1000,
                refine_debounce_s=args.refine_debounce / 1000,
            ),
            hotkey=Config.HotKey(
                device=keyboard,
                codes=hotkey_codes,
                double_tap_window=args.double_tap_window,
            ),
            capture=Config.Capture(gain=args.gain),
            transcription=Config.Transcription(
                api_key=args.openai_api_key,
                model=OpenAITranscriber.Model(args.model),
            ),
            native=Config.Native(command=args.recognizer),
            refinement=Config.Refinement(
                enabled=refine_enabled,
                provider=refine_provider,
                model=args.refine_model,
                api_key=refine_api_key,
            ),
            output=Config.Output(
                use_typing=args.use_typing,
                keyboard_delay_ms=args.keyboard_delay,
                focus_command=args.focus_command,
            ),
        )

    @classmethod
    def _load_env_files(cls, config_path: Path) -> tuple[bool, list[Path]]:
        """Load the local .env files then the user config file and its parents.

        Returns:
            Tuple of (success, loaded_files) where loaded_files contains paths in load order
        """
        loaded_files = []
        for directory in dict.fromkeys([Path.cwd(), Path(__file__).parent]):
            if (env_path := directory / ".env").is_file():
                load_dotenv(env_path, override=False)
                loaded_files.append(env_path.resolve())

        config_files = []
        if config_path.is_file():
            success, config_files = cls._load_config_with_parents(config_path)
            if not success:
                return False, []

        return True, loaded_files + config_files

    @classmethod
    def _load_config_with_parents(cls, config_path: Path, visited: set[Path] | None = None, source: Path | None = None) -> tuple[bool, list[Path]]:
        """Load a config file, then the one named by its PARENT_CONFIG entry, recursively.

        Values already set win, so a child overrides its parents. Returned paths go from the farthest parent to `config_path`.
        """
        parent_key = f"{cls.ENV_PREFIX}PARENT_CONFIG"
        os.environ.pop(parent_key, None)
        visited = set() if visited is None else visited

        if config_path in visited:
            errprint(f"ERROR: Circular {parent_key} reference detected: {config_path}" + (f" (defined in {source})" if source else ""))
            return False, []
        visited.add(config_path)

        if not config_path.is_file():
            errprint(f"ERROR: Config file not found or is not a file: {config_path}" + (f" (defined in {source})" if source else ""))
            return False, []

        load_dotenv(dotenv_path=config_path, override=False)

        loaded_files: list[Path] = []
        if parent_value := (os.environ.pop(parent_key, None) or "").strip():
            parent_path = Path(parent_value).expanduser()
            if not parent_path.is_absolute():
                parent_path = config_path.parent / parent_path
            success, loaded_files = cls._load_config_with_parents(parent_path.resolve(strict=False), visited=visited, source=config_path)
            if not success:
                return False, []

        loaded_files.append(config_path.resolve())
        return True, loaded_files

    @classmethod
    def save_config(cls, args: argparse.Namespace, provided_args: set[str], config_path: Path) -> None:
        overrides = cls._prepare_config_overrides(args=args, provided_args=provided_args)
        if not overrides:
            print("No command-line options to save; config file left untouched.")
            return
        path = cls._write_user_config(overrides, config_path=config_path)
        print(f"Saved configuration overrides to {path} .")

    @classmethod
    def _get_args_defined_on_cli(cls) -> set[str]:
        parser = argparse.ArgumentParser(add_help=False)
        cls._create_arguments(parser, {})
        ignore_keys = {"config", "save_config", "log"}
        return {key for key, value in vars(parser.parse_known_args()[0]).items() if value is not cls._UNDEFINED and key not in ignore_keys}

    @classmethod
    def _prepare_config_overrides(cls, args: argparse.Namespace, provided_args: set[str]) -> dict[str, str]:
        overrides: dict[str, str] = {}
        for dest, env_key in cls._DEST_TO_ENV.items():
            if dest not in provided_args:
                continue
            value = getattr(args, dest, None)
            if dest in cls._BOOLEAN_DESTS:
                overrides[env_key] = "true" if value else "false"
            elif isinstance(value, str):
                overrides[env_key] = value
            elif value is not None and value is not cls._PROMPT_FOR_KEYBOARD:
                overrides[env_key] = str(value)
        return overrides

    @staticmethod
    def _format_env_value(value: str) -> str:
        if value == "":
            return ""
        if any(char in " #\"'\\\n\r\t=" for char in value):
            escaped = value.replace("\\", "\\\\").replace("\n", "\\n").replace("\r", "\\r").replace('"', '\\"')
            return f'"{escaped}"'
        return value

    @classmethod
    def _write_user_config(cls, overrides: Mapping[str, str], config_path: Path) -> Path:
        """Update `config_path` in place: known keys are rewritten where they are, new keys are appended."""
        target_path = Path(config_path).expanduser()
        target_path.parent.mkdir(parents=True, exist_ok=True)
        remaining = {key: cls._format_env_value(str(val)) for key, val in overrides.items()}
        lines: list[str] = []
        if target_path.exists():
            for line in target_path.read_text(encoding="utf-8").splitlines():
                key, sep, _ = line.partition("=")
                key = key.strip()
                if sep and not key.startswith("#") and key in remaining:
                    lines.append(f"{key}={remaining.pop(key)}")
                else:
                    lines.append(line)
        lines.extend(f"{key}={value}" for key, value in remaining.items())
        content = "\n".join(lines).rstrip("\n")
        target_path.write_text(content + "\n" if content else "", encoding="utf-8")
        return target_path

    @classmethod
    def _extract_config_path_from_argv(cls) -> str | None:
        parser = argparse.ArgumentParser(add_help=False)
        parser.add_argument("-c", "--config")
        args = parser.parse_known_args()[0]
        return None if args.config is None else args.config.strip()


async def main_async():
    app_config = CommandLineParser.parse()
    if app_config is None:
        return

    from livetype_devices import AudioCapture, HotKeyTask, KeyboardInjector

    cloud = app_config.session.backend is Backend.CLOUD
    controller = SessionController(
        app_config.session,
        injector=KeyboardInjector(app_config.output),
        refiner=Refiner(app_config.refinement),
        capture=AudioCapture(app_config.capture) if cloud else None,
        transcriber=OpenAITranscriber(app_config.transcription) if cloud else None,
        recognizer=None if cloud else NativeRecognizer(app_config.native.command),
        console=app_config.console,
    )
    try:
        async with asyncio.TaskGroup() as tg:
            tg.create_task(HotKeyTask(controller, app_config).run())

    except* (KeyboardInterrupt, CancelledError):
        print("\nExit.")
    except* Exception as eg:
        print(f"\nError in tasks: {eg.exceptions}")

    finally:
        await controller.shutdown()
        with suppress(Exception):
            app_config.hotkey.device.close()


def main():
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
