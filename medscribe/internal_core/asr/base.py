from __future__ import annotations

import asyncio
import enum
import re
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar, Union

import httpx

from medscribe.asr.models import TranscriptionResult, TranscriptSegment

SegmentCallback = Callable[[TranscriptSegment], None]
T = TypeVar("T")

_TRANSIENT_MESSAGE_RE = re.compile(
    r"timeout|timed out|network|connection|rate limit|quota|temporar|\b50[234]\b",
    flags=re.IGNORECASE,
)
_TRANSIENT_STATUS = {408, 429, 502, 503, 504}


class ErrorCategory(str, enum.Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"
    NO_BACKEND = "no_backend"


class TranscriptionError(RuntimeError):
    def __init__(
        self,
        code: str,
        message: str,
        backend_name: str,
        category: ErrorCategory = ErrorCategory.FATAL,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.backend_name = backend_name
        self.category = category

    @property
    def recoverable(self) -> bool:
        return self.category is ErrorCategory.TRANSIENT


class NoBackendAvailableError(TranscriptionError):
    def __init__(self, message: str = "No transcription backend available"):
        super().__init__("NO_BACKEND", message, "orchestrator", ErrorCategory.NO_BACKEND)


def category_for_status(status_code: int) -> ErrorCategory:
    if status_code in _TRANSIENT_STATUS:
        return ErrorCategory.TRANSIENT
    return ErrorCategory.FATAL


def categorize_exception(exc: BaseException) -> ErrorCategory:
    """Category for an exception that did not come tagged from an adapter."""
    if isinstance(exc, TranscriptionError):
        return exc.category
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, httpx.TransportError)):
        return ErrorCategory.TRANSIENT
    if isinstance(exc, httpx.HTTPStatusError):
        return category_for_status(exc.response.status_code)
    if _TRANSIENT_MESSAGE_RE.search(str(exc) or ""):
        return ErrorCategory.TRANSIENT
    return ErrorCategory.FATAL


def as_transcription_error(exc: BaseException, backend_name: str) -> TranscriptionError:
    if isinstance(exc, TranscriptionError):
        return exc
    return TranscriptionError(
        type(exc).__name__.upper(),
        str(exc) or type(exc).__name__,
        backend_name,
        categorize_exception(exc),
    )


@dataclass(frozen=True)
class AudioChunk:
    data: bytes
    mime_type: str = "audio/wav"

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def is_empty(self) -> bool:
        return not self.data


class TranscriptionBackend(ABC):
    supports_live: bool = False
    max_bytes: int = 25 * 1024 * 1024

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def is_supported(self) -> bool: ...

    @abstractmethod
    async def transcribe(self, chunk: AudioChunk) -> TranscriptionResult: ...

    async def start_live(self, on_segment: SegmentCallback) -> None:
        raise TranscriptionError(
            "LIVE_UNSUPPORTED",
            f"{self.name} does not support live transcription",
            self.name,
        )

    async def stop_live(self) -> None:
        return None

    async def dispose(self) -> None:
        await self.stop_live()

    def validate_audio(self, chunk: AudioChunk) -> None:
        if chunk.is_empty:
            raise TranscriptionError("EMPTY_AUDIO", "Audio chunk is empty", self.name)
        if chunk.size > self.max_bytes:
            raise TranscriptionError(
                "AUDIO_TOO_LARGE",
                f"Audio chunk too large ({chunk.size} bytes, max {self.max_bytes})",
                self.name,
            )

    def new_segment_id(self) -> str:
        return f"{self.name}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    *,
    backend_name: str,
    max_retries: int,
    base_delay_sec: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run `operation`, retrying transient failures with exponential backoff; fatal ones raise at once."""
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            err = as_transcription_error(exc, backend_name)
            if not err.recoverable or attempt >= max_retries:
                if err is exc:
                    raise
                raise err from exc
            await sleep(base_delay_sec * (2 ** attempt))
            attempt += 1


def clamp01(value: Union[int, float, None], default: float = 0.0) -> float:
    if value is None:
        return default
    return max(0.0, min(1.0, float(value)))


def mean_confidence(segments: list[TranscriptSegment], default: float = 0.0) -> float:
    values = [s.confidence for s in segments if s.confidence is not None]
    if not values:
        return default
    return sum(values) / len(values)


def elapsed_ms(start_monotonic: float) -> int:
    return int(max(0.0, time.monotonic() - start_monotonic) * 1000)


def optional_language(value: Optional[str]) -> Optional[str]:
    text = (value or "").strip()
    return text or None
