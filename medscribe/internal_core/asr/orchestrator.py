from __future__ import annotations

import asyncio
import datetime as _dt
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Sequence

from medscribe.asr.models import TranscriptionResult, TranscriptSegment
from medscribe.asr.speaker_classifier import SpeakerClassifier
from medscribe.internal_core.audio_utils import tone_wav_bytes

from .base import (
    AudioChunk,
    ErrorCategory,
    NoBackendAvailableError,
    SegmentCallback,
    TranscriptionBackend,
    TranscriptionError,
    as_transcription_error,
    elapsed_ms,
)

logger = logging.getLogger(__name__)

_ORCHESTRATOR = "orchestrator"


def _now_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


@dataclass(frozen=True)
class RegistryEntry:
    name: str
    backend: TranscriptionBackend
    priority: int


@dataclass(frozen=True)
class BackendFailure:
    backend: str
    code: str
    message: str
    category: ErrorCategory
    ts_iso: str


class TranscriptionOrchestrator:
    """
    Prioritized, availability-tracked registry of transcription backends.

    The registry is an ordered list (descending priority, registration order on ties) plus a
    parallel availability map. A failing backend is skipped until `reset_availability()` or a
    later success; `use_backend()` pins one ahead of all others without touching priorities.
    """

    def __init__(
        self,
        classifier: Optional[SpeakerClassifier] = None,
        *,
        timeout_sec: float = 30.0,
        max_error_history: int = 50,
    ) -> None:
        self._classifier = classifier or SpeakerClassifier()
        self._timeout_sec = float(timeout_sec)
        self._registry: List[RegistryEntry] = []
        self._available: Dict[str, bool] = {}
        self._pinned: Optional[str] = None
        self._errors: Deque[BackendFailure] = deque(maxlen=max(1, int(max_error_history)))
        self._current_backend: Optional[str] = None
        self._live_backend: Optional[str] = None
        self._calls = 0
        self._successes = 0

    # Registry ---------------------------------------------------------------

    def register(self, backend: TranscriptionBackend, priority: int) -> None:
        if backend.name in self._available:
            raise ValueError(f"Backend already registered: {backend.name}")
        self._registry.append(RegistryEntry(name=backend.name, backend=backend, priority=int(priority)))
        # Stable sort keeps registration order for equal priorities.
        self._registry.sort(key=lambda e: -e.priority)
        self._available[backend.name] = backend.is_supported()
        logger.info(
            "asr_registry register backend=%s priority=%s available=%s",
            backend.name,
            priority,
            self._available[backend.name],
        )

    def _ordered(self) -> List[RegistryEntry]:
        if self._pinned is None:
            return list(self._registry)
        pinned = [e for e in self._registry if e.name == self._pinned]
        rest = [e for e in self._registry if e.name != self._pinned]
        return pinned + rest

    def _entry(self, name: str) -> RegistryEntry:
        for entry in self._registry:
            if entry.name == name:
                return entry
        raise ValueError(f"Unknown transcription backend: {name}")

    def backend_names(self) -> List[str]:
        return [e.name for e in self._ordered()]

    def is_available(self, name: str) -> bool:
        self._entry(name)
        return bool(self._available.get(name))

    def use_backend(self, name: str) -> None:
        entry = self._entry(name)
        if not entry.backend.is_supported():
            raise ValueError(f"Transcription backend not supported in this environment: {name}")
        self._pinned = name
        self._available[name] = True
        logger.info("asr_registry pinned backend=%s", name)

    def unpin(self) -> None:
        self._pinned = None

    def reset_availability(self) -> None:
        for entry in self._registry:
            self._available[entry.name] = bool(entry.backend.is_supported())
        logger.info(
            "asr_registry reset available=%s",
            [name for name, ok in self._available.items() if ok],
        )

    @property
    def current_backend_name(self) -> Optional[str]:
        return self._current_backend

    @property
    def live_backend_name(self) -> Optional[str]:
        return self._live_backend

    # Batch ------------------------------------------------------------------

    async def transcribe(
        self,
        chunk: AudioChunk,
        context: Sequence[TranscriptSegment] = (),
    ) -> TranscriptionResult:
        """
        Transcribe `chunk` with the best available backend.

        Transient failures fall through to the next backend; a fatal failure is re-raised at
        once. Raises NoBackendAvailableError when nothing is left to try.
        """
        self._calls += 1
        candidates = [e for e in self._ordered() if self._available.get(e.name)]
        if not candidates:
            raise NoBackendAvailableError()

        last_error: Optional[TranscriptionError] = None
        for entry in candidates:
            started = time.monotonic()
            cause: Optional[BaseException] = None
            try:
                result = await asyncio.wait_for(entry.backend.transcribe(chunk), timeout=self._timeout_sec)
            except asyncio.TimeoutError as exc:
                cause = exc
                err = TranscriptionError(
                    "TIMEOUT",
                    f"{entry.name} did not answer within {self._timeout_sec:.1f}s",
                    entry.name,
                    ErrorCategory.TRANSIENT,
                )
            except Exception as exc:
                cause = exc
                err = as_transcription_error(exc, entry.name)
            else:
                self._available[entry.name] = True
                self._current_backend = entry.name
                self._successes += 1
                logger.info(
                    "asr_transcribe ok backend=%s bytes=%s segments=%s ms=%s",
                    entry.name,
                    chunk.size,
                    len(result.segments),
                    elapsed_ms(started),
                )
                return self._finish(result, entry.name, started, context)

            self._available[entry.name] = False
            self._record_failure(err)
            last_error = err
            logger.warning(
                "asr_transcribe failed backend=%s code=%s category=%s message=%s",
                entry.name,
                err.code,
                err.category.value,
                err.message,
            )
            if not err.recoverable:
                if err is cause:
                    raise err
                raise err from cause

        assert last_error is not None
        raise NoBackendAvailableError(
            f"All transcription backends failed; last error from {last_error.backend_name}: {last_error.message}"
        ) from last_error

    def _finish(
        self,
        result: TranscriptionResult,
        backend_name: str,
        started: float,
        context: Sequence[TranscriptSegment],
    ) -> TranscriptionResult:
        labelled = self._label_segments(result.segments, context)
        return result.model_copy(
            update={
                "segments": labelled,
                "backend": backend_name,
                "processing_time_ms": result.processing_time_ms or elapsed_ms(started),
            }
        )

    def _label_segments(
        self,
        segments: Sequence[TranscriptSegment],
        context: Sequence[TranscriptSegment],
    ) -> List[TranscriptSegment]:
        if all(s.speaker != "unknown" for s in segments):
            return list(segments)
        window = self._classifier.context_window
        history = list(context)[-window:] if window > 0 else []
        out: List[TranscriptSegment] = []
        for segment in segments:
            if segment.speaker == "unknown":
                role = self._classifier.classify(segment, history[-window:] if window > 0 else [])
                segment = segment.model_copy(update={"speaker": role})
            out.append(segment)
            history.append(segment)
        return out

    def _record_failure(self, err: TranscriptionError) -> None:
        self._errors.append(
            BackendFailure(
                backend=err.backend_name,
                code=err.code,
                message=err.message,
                category=err.category,
                ts_iso=_now_iso(),
            )
        )

    # Live -------------------------------------------------------------------

    async def start_live(self, on_segment: SegmentCallback) -> str:
        """Start the first live-capable available backend; returns its name."""
        if self._live_backend is not None:
            raise TranscriptionError(
                "LIVE_ACTIVE", f"Live transcription already running on {self._live_backend}", _ORCHESTRATOR
            )
        candidates = [
            e for e in self._ordered() if self._available.get(e.name) and e.backend.supports_live
        ]
        if not candidates:
            raise NoBackendAvailableError("No live-capable transcription backend available")

        history: List[TranscriptSegment] = []
        window = self._classifier.context_window

        def _deliver(segment: TranscriptSegment) -> None:
            if segment.speaker == "unknown":
                context = history[-window:] if window > 0 else []
                segment = segment.model_copy(update={"speaker": self._classifier.classify(segment, context)})
            history.append(segment)
            del history[: max(0, len(history) - max(window, 1))]
            try:
                on_segment(segment)
            except Exception:
                logger.exception("asr_live subscriber failed segment_id=%s", segment.id)

        last_error: Optional[TranscriptionError] = None
        for entry in candidates:
            try:
                await asyncio.wait_for(entry.backend.start_live(_deliver), timeout=self._timeout_sec)
            except asyncio.TimeoutError:
                err = TranscriptionError(
                    "TIMEOUT", f"{entry.name} live start timed out", entry.name, ErrorCategory.TRANSIENT
                )
            except Exception as exc:
                err = as_transcription_error(exc, entry.name)
            else:
                self._live_backend = entry.name
                logger.info("asr_live started backend=%s", entry.name)
                return entry.name
            self._available[entry.name] = False
            self._record_failure(err)
            last_error = err
            logger.warning("asr_live start failed backend=%s code=%s", entry.name, err.code)

        raise NoBackendAvailableError("No live transcription backend could be started") from last_error

    async def stop_live(self) -> None:
        name, self._live_backend = self._live_backend, None
        if name is None:
            return
        try:
            await self._entry(name).backend.stop_live()
        except Exception:
            logger.exception("asr_live stop failed backend=%s", name)
        else:
            logger.info("asr_live stopped backend=%s", name)

    # Diagnostics ------------------------------------------------------------

    def backend_status(self) -> List[Dict[str, Any]]:
        top = max((e.priority for e in self._registry), default=0)
        out: List[Dict[str, Any]] = []
        for entry in self._ordered():
            effective = top + 1 if entry.name == self._pinned else entry.priority
            out.append(
                {
                    "name": entry.name,
                    "priority": entry.priority,
                    "effective_priority": effective,
                    "is_available": bool(self._available.get(entry.name)),
                    "is_supported": bool(entry.backend.is_supported()),
                    "supports_live": bool(entry.backend.supports_live),
                    "pinned": entry.name == self._pinned,
                }
            )
        return out

    def error_history(self) -> List[BackendFailure]:
        return list(self._errors)

    def clear_error_history(self) -> None:
        self._errors.clear()

    def statistics(self) -> Dict[str, Any]:
        by_backend: Dict[str, int] = {}
        for failure in self._errors:
            by_backend[failure.backend] = by_backend.get(failure.backend, 0) + 1
        return {
            "total_backends": len(self._registry),
            "available_backends": sum(1 for ok in self._available.values() if ok),
            "current_backend": self._current_backend,
            "live_backend": self._live_backend,
            "transcribe_calls": self._calls,
            "transcribe_successes": self._successes,
            "recent_errors": len(self._errors),
            "errors_by_backend": by_backend,
        }

    async def test_backends(self, sample: Optional[AudioChunk] = None) -> Dict[str, bool]:
        """Probe every supported backend with a short clip and refresh availability from the outcome."""
        probe = sample or AudioChunk(tone_wav_bytes(0.5), "audio/wav")
        results: Dict[str, bool] = {}
        for entry in self._registry:
            if not entry.backend.is_supported():
                results[entry.name] = False
                self._available[entry.name] = False
                continue
            try:
                await asyncio.wait_for(entry.backend.transcribe(probe), timeout=self._timeout_sec)
            except Exception as exc:
                err = as_transcription_error(exc, entry.name)
                self._record_failure(err)
                results[entry.name] = False
            else:
                results[entry.name] = True
            self._available[entry.name] = results[entry.name]
        return results

    async def dispose(self) -> None:
        await self.stop_live()
        for entry in self._registry:
            try:
                await entry.backend.dispose()
            except Exception:
                logger.exception("asr_registry dispose failed backend=%s", entry.name)
