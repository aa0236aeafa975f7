from __future__ import annotations

import asyncio
import time
from asyncio import CancelledError, create_task
from collections.abc import Callable
from contextlib import suppress
from enum import Enum
from typing import TYPE_CHECKING

import evdev
import janus
import numpy as np
import pyperclipfix as pyperclip
import sounddevice as sd
from evdev import InputDevice, categorize, ecodes
from janus import SyncQueueShutDown
from pydotool import KEY_LEFTCTRL, KEY_V, key_combination, type_string
from pydotool import init as pydotool_init

from livetype import debug, errprint

if TYPE_CHECKING:
    from livetype import Config, SessionController


F_KEY_CODES = {
    "f1": ecodes.KEY_F1,
    "f2": ecodes.KEY_F2,
    "f3": ecodes.KEY_F3,
    "f4": ecodes.KEY_F4,
    "f5": ecodes.KEY_F5,
    "f6": ecodes.KEY_F6,
    "f7": ecodes.KEY_F7,
    "f8": ecodes.KEY_F8,
    "f9": ecodes.KEY_F9,
    "f10": ecodes.KEY_F10,
    "f11": ecodes.KEY_F11,
    "f12": ecodes.KEY_F12,
}


def parse_hotkeys(hotkeys_str: str) -> list[int]:
    codes = []
    for hotkey in (k.strip().lower() for k in hotkeys_str.split(",")):
        if hotkey not in F_KEY_CODES:
            raise ValueError(f"Unsupported key: {hotkey}. Use F1-F12")
        codes.append(F_KEY_CODES[hotkey])
    return codes


def find_keyboard(filter_text: str | None = None, force_prompt: bool = False) -> InputDevice:
    devices = [evdev.InputDevice(path) for path in evdev.list_devices()]
    filter_value = filter_text.strip().lower() if filter_text else None

    def matches_filter(device: InputDevice) -> bool:
        if not filter_value:
            return True
        return filter_value in device.name.lower() or filter_value in device.path.lower()

    def is_physical_keyboard(device: InputDevice) -> bool:
        capabilities = device.capabilities(verbose=False)
        if ecodes.EV_KEY not in capabilities or ecodes.EV_REL in capabilities:
            return False
        if any(virt in device.name.lower() for virt in ["virtual", "dummy", "uinput", "ydotool"]):
            return False
        keys = capabilities[ecodes.EV_KEY]
        if any(k in keys for k in (ecodes.BTN_LEFT, ecodes.BTN_RIGHT, ecodes.BTN_MIDDLE)):
            return False
        return all(k in keys for k in (ecodes.KEY_A, ecodes.KEY_Z, ecodes.KEY_ESC, ecodes.KEY_F1, ecodes.KEY_F12))

    candidates = [device for device in devices if is_physical_keyboard(device) and matches_filter(device)]
    if filter_value and not any(matches_filter(device) for device in devices):
        raise RuntimeError(f'No input devices matched filter "{filter_text}"')

    if len(candidates) == 1 and not force_prompt:
        return candidates[0]
    if not candidates:
        print("\nNo physical keyboard detected automatically.")
        candidates = [device for device in devices if matches_filter(device)]
    print("\nSelect your keyboard:")
    for idx, device in enumerate(candidates):
        print(f"  {idx}: {device.path} - {device.name}")
    return candidates[int(input("Select your keyboard: "))]


class AudioCapture:
    """Microphone capture, delivering int16 mono blocks to the event loop."""

    BLOCK_DURATION_MS = 40

    def __init__(self, config: Config.Capture):
        self.config = config
        self._stream: sd.RawInputStream | None = None
        self._queue: janus.Queue[bytes] | None = None
        self._pump: asyncio.Task | None = None
        self._on_chunk: Callable[[bytes], None] | None = None

    async def start(self, on_chunk: Callable[[bytes], None]):
        self._on_chunk = on_chunk
        self._queue = janus.Queue()
        try:
            self._stream = sd.RawInputStream(
                samplerate=self.config.sample_rate,
                blocksize=int(self.config.sample_rate * self.BLOCK_DURATION_MS / 1000),
                dtype="int16",
                channels=1,
                callback=self._callback,
            )
            self._stream.start()
        except Exception:
            await self.stop()
            raise
        self._pump = create_task(self._run_pump())

    def _callback(self, indata, frames, timeinfo, status):  # pragma: no cover - sounddevice callback
        queue = self._queue
        if queue is None:
            return
        data = np.frombuffer(indata, dtype=np.int16)
        if self.config.gain != 1.0:
            data = np.clip(data * self.config.gain, -32768, 32767).astype(np.int16)
        with suppress(SyncQueueShutDown, RuntimeError):
            queue.sync_q.put_nowait(data.tobytes())

    async def _run_pump(self):
        try:
            while True:
                self._on_chunk(await self._queue.async_q.get())
        except CancelledError:
            pass

    async def stop(self):
        stream, self._stream = self._stream, None
        if stream is not None:
            with suppress(sd.PortAudioError):
                stream.stop()
            stream.close()
        pump, self._pump = self._pump, None
        if pump is not None:
            pump.cancel()
            with suppress(CancelledError):
                await pump
        queue, self._queue = self._queue, None
        if queue is not None:
            # Blocks captured before the stream stopped still belong to the session
            while not queue.async_q.empty():
                self._on_chunk(queue.async_q.get_nowait())
            queue.close()
            await queue.wait_closed()


class KeyboardInjector:
    """Types text in the focused window with ydotool, pasting what cannot be typed."""

    CLIPBOARD_RESTORE_DELAY_S = 1.0
    FOCUS_COMMAND_TIMEOUT_S = 2.0

    class Combo(Enum):
        CTRL_V = (KEY_LEFTCTRL, KEY_V)

    def __init__(self, config: Config.Output):
        self.config = config
        self._delay_between_keys_ms = config.keyboard_delay_ms
        self._delay_between_actions_s = config.keyboard_delay_ms / 1000
        self._previous_clipboard: str | None = None
        self._restore_clipboard_handle: asyncio.TimerHandle | None = None
        pydotool_init()

    async def type_text_live(self, text: str) -> bool:
        try:
            self._write_text(text)
        except (OSError, pyperclip.PyperclipException) as exc:
            errprint(f"WARNING: Unable to type text: {exc}")
            return False
        return True

    async def paste_text(self, text: str) -> bool:
        try:
            self._copy_paste(text)
        except (OSError, pyperclip.PyperclipException) as exc:
            errprint(f"WARNING: Unable to paste text: {exc}")
            return False
        return True

    async def clipboard_write(self, text: str) -> None:
        # Left in the clipboard for the user, so no restore
        self._cancel_clipboard_restore()
        self._previous_clipboard = None
        pyperclip.copy(text)

    async def restore_last_frontmost_app(self) -> bool:
        if not self.config.focus_command:
            return True
        process = await asyncio.create_subprocess_shell(
            self.config.focus_command,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            returncode = await asyncio.wait_for(process.wait(), timeout=self.FOCUS_COMMAND_TIMEOUT_S)
        except TimeoutError:
            with suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            return False
        debug(f"Focus command exited with code {returncode}")
        return returncode == 0

    def _ensure_previous_clipboard_saved(self):
        if self._previous_clipboard is not None:
            return
        try:
            current = pyperclip.paste()
        except pyperclip.PyperclipException:
            return
        self._previous_clipboard = current or ""

    def _cancel_clipboard_restore(self):
        if self._restore_clipboard_handle is not None:
            self._restore_clipboard_handle.cancel()
            self._restore_clipboard_handle = None

    def _schedule_clipboard_restore(self):
        if self._previous_clipboard is None:
            return
        self._cancel_clipboard_restore()
        self._restore_clipboard_handle = asyncio.get_running_loop().call_later(self.CLIPBOARD_RESTORE_DELAY_S, self._restore_clipboard_if_needed)

    def _restore_clipboard_if_needed(self):
        self._restore_clipboard_handle = None
        if self._previous_clipboard is None:
            return
        try:
            pyperclip.copy(self._previous_clipboard)
        except pyperclip.PyperclipException:
            # Retry later if clipboard access failed
            self._schedule_clipboard_restore()
            return
        self._previous_clipboard = None

    def _copy_paste(self, text: str):
        self._ensure_previous_clipboard_saved()
        pyperclip.copy(text)
        self._schedule_clipboard_restore()
        key_combination(
            list(self.Combo.CTRL_V.value),
            each_delay_ms=self._delay_between_keys_ms,
            press_ms=self._delay_between_keys_ms,
        )

    def _write_text(self, text: str):
        if not self.config.use_typing:
            self._copy_paste(text)
            return

        ascii_buffer: list[str] = []
        non_ascii_buffer: list[str] = []

        def flush_ascii_buffer():
            if ascii_buffer:
                type_string(
                    "".join(ascii_buffer),
                    hold_delay_ms=self._delay_between_keys_ms,
                    each_char_delay_ms=self._delay_between_keys_ms,
                )
                ascii_buffer.clear()
                time.sleep(self._delay_between_actions_s)

        def flush_non_ascii_buffer():
            if non_ascii_buffer:
                self._copy_paste("".join(non_ascii_buffer))
                non_ascii_buffer.clear()
                time.sleep(self._delay_between_actions_s)

        for char in text:
            if ord(char) <= 127:
                flush_non_ascii_buffer()
                ascii_buffer.append(char)
            else:
                flush_ascii_buffer()
                non_ascii_buffer.append(char)

        flush_non_ascii_buffer()
        flush_ascii_buffer()


class HotKeyTask:
    """Hold the hotkey to dictate, double tap it for toggle mode. Escape finishes the dictation."""

    KEY_DOWN = evdev.KeyEvent.key_down
    KEY_UP = evdev.KeyEvent.key_up
    TOGGLE_COOLDOWN_S = 0.5

    def __init__(self, controller: SessionController, config: Config.App):
        self.controller = controller
        self.config = config
        self._finalizing: asyncio.Task | None = None

    def _start(self):
        previous = self._finalizing

        async def start():
            # A quick second tap arrives while the first dictation is still finishing
            if previous is not None:
                await previous
            await self.controller.start()

        self.controller.run_in_background(start())

    def _finalize(self):
        self._finalizing = self.controller.run_in_background(self.controller.finalize())

    async def run(self):
        device = self.config.hotkey.device
        codes = self.config.hotkey.codes
        hotkey_pressed = False
        is_toggle_mode = False
        active_hotkey: int | None = None
        last_release_time = dict.fromkeys(codes, 0.0)
        toggle_stop_time = 0.0

        try:
            async for event in device.async_read_loop():
                if event.type != ecodes.EV_KEY:
                    continue
                key_event = categorize(event)
                scancode = key_event.scancode
                current_time = time.perf_counter()

                if scancode == ecodes.KEY_ESC:
                    if key_event.keystate == self.KEY_DOWN and self.controller.is_active:
                        hotkey_pressed = is_toggle_mode = False
                        active_hotkey = None
                        self._finalize()
                    continue

                if scancode not in codes:
                    continue
                if active_hotkey is not None and scancode != active_hotkey:
                    if key_event.keystate == self.KEY_UP:
                        last_release_time[scancode] = current_time
                    continue

                name = next(k for k, v in F_KEY_CODES.items() if v == scancode).upper()
                match key_event.keystate:
                    case self.KEY_DOWN if is_toggle_mode:
                        is_toggle_mode = hotkey_pressed = False
                        active_hotkey = None
                        toggle_stop_time = current_time
                        self.config.console.print_and_log(f"[dim]Toggle mode deactivated with {name}[/dim]")
                        self._finalize()

                    case self.KEY_DOWN if not hotkey_pressed:
                        if current_time - toggle_stop_time < self.TOGGLE_COOLDOWN_S:
                            continue
                        is_toggle_mode = current_time - last_release_time[scancode] < self.config.hotkey.double_tap_window
                        hotkey_pressed = True
                        active_hotkey = scancode
                        if is_toggle_mode:
                            self.config.console.print_and_log(f"[dim]Toggle mode activated with {name}[/dim]")
                        self._start()

                    case self.KEY_UP if hotkey_pressed and not is_toggle_mode:
                        last_release_time[scancode] = current_time
                        hotkey_pressed = False
                        active_hotkey = None
                        self._finalize()

                    case self.KEY_UP if is_toggle_mode:
                        last_release_time[scancode] = current_time
                        hotkey_pressed = False

        except CancelledError:
            pass
        except Exception as exc:
            errprint(f"Error while listening for hotkey events: {exc}")
            raise
        finally:
            with suppress(Exception):
                device.close()
