from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional

from medscribe.internal_core.asr.base import AudioChunk
from medscribe.internal_core.audio_utils import DEFAULT_SAMPLE_RATE, is_wav, pcm16_duration_sec

logger = logging.getLogger(__name__)

_WAV_HEADER_BYTES = 44
_PCM_MIME_TYPES = {"audio/pcm", "audio/l16"}


@dataclass(frozen=True)
class CaptureState:
    is_recording: bool = False
    is_paused: bool = False
    duration: float = 0.0


StateCallback = Callable[[CaptureState], None]


class AudioCapture(ABC):
    """
    Microphone-side collaborator of the session orchestrator.

    `get_current_buffered_audio()` must return everything recorded since `start()`, header
    included; callers track which bytes are new themselves.
    """

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def pause(self) -> None: ...

    @abstractmethod
    async def resume(self) -> None: ...

    @abstractmethod
    async def stop(self) -> AudioChunk: ...

    @abstractmethod
    def get_current_buffered_audio(self) -> AudioChunk: ...

    @abstractmethod
    def get_state(self) -> CaptureState: ...

    @abstractmethod
    def on_state_change(self, callback: StateCallback) -> Callable[[], None]: ...

    async def dispose(self) -> None:
        return None


class BufferedAudioCapture(AudioCapture):
    """In-process capture fed through `push()`; used by tests and by hosts that own the microphone."""

    def __init__(self, *, mime_type: str = "audio/wav", sample_rate: int = DEFAULT_SAMPLE_RATE) -> None:
        self._mime_type = mime_type
        self._sample_rate = int(sample_rate)
        self._buffer = bytearray()
        self._recording = False
        self._paused = False
        self._started_at: Optional[float] = None
        self._paused_at: Optional[float] = None
        self._paused_total = 0.0
        self._final_duration = 0.0
        self._callbacks: List[StateCallback] = []

    async def start(self) -> None:
        self._buffer.clear()
        self._recording = True
        self._paused = False
        self._started_at = time.monotonic()
        self._paused_at = None
        self._paused_total = 0.0
        self._final_duration = 0.0
        self._notify()

    async def pause(self) -> None:
        if not self._recording or self._paused:
            return
        self._paused = True
        self._paused_at = time.monotonic()
        self._notify()

    async def resume(self) -> None:
        if not self._recording or not self._paused:
            return
        if self._paused_at is not None:
            self._paused_total += time.monotonic() - self._paused_at
        self._paused = False
        self._paused_at = None
        self._notify()

    async def stop(self) -> AudioChunk:
        final = self.get_current_buffered_audio()
        self._final_duration = self._duration()
        self._recording = False
        self._paused = False
        self._paused_at = None
        self._notify()
        return final

    def push(self, data: bytes) -> None:
        """Append recorded bytes; ignored unless recording and not paused."""
        if not self._recording or self._paused or not data:
            return
        self._buffer.extend(data)
        self._notify()

    def get_current_buffered_audio(self) -> AudioChunk:
        return AudioChunk(bytes(self._buffer), self._mime_type)

    def get_state(self) -> CaptureState:
        return CaptureState(
            is_recording=self._recording,
            is_paused=self._paused,
            duration=self._duration(),
        )

    def _duration(self) -> float:
        data = self._buffer
        if is_wav(bytes(data[:12])):
            return pcm16_duration_sec(len(data) - _WAV_HEADER_BYTES, self._sample_rate)
        if self._mime_type.split(";", 1)[0].strip().lower() in _PCM_MIME_TYPES:
            return pcm16_duration_sec(len(data), self._sample_rate)
        if not self._recording or self._started_at is None:
            return self._final_duration
        # Encoded containers: fall back to wall-clock recording time.
        now = self._paused_at if self._paused and self._paused_at is not None else time.monotonic()
        return max(0.0, now - self._started_at - self._paused_total)

    def on_state_change(self, callback: StateCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    def _notify(self) -> None:
        state = self.get_state()
        for callback in list(self._callbacks):
            try:
                callback(state)
            except Exception:
                logger.exception("capture state subscriber failed")

    async def dispose(self) -> None:
        self._callbacks.clear()
        self._buffer.clear()
        self._recording = False
        self._paused = False
