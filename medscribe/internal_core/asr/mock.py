from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence, Tuple

from medscribe.asr.models import SpeakerRole, TranscriptionResult, TranscriptSegment

from .base import AudioChunk, SegmentCallback, TranscriptionBackend, TranscriptionError

logger = logging.getLogger(__name__)

_BATCH_SCRIPT: Tuple[Tuple[float, SpeakerRole, str, float], ...] = (
    (0.0, "provider", "How are you feeling today?", 0.95),
    (3.0, "patient", "I have been experiencing some chest pain.", 0.92),
)
_LIVE_SCRIPT: Tuple[Tuple[float, SpeakerRole, str], ...] = (
    (1.0, "provider", "Hello, how can I help you today?"),
    (3.0, "patient", "I have been having headaches."),
    (2.0, "provider", "When did these headaches start?"),
    (2.5, "patient", "About a week ago."),
)


class MockBackend(TranscriptionBackend):
    supports_live = True

    def __init__(
        self,
        *,
        delay_sec: float = 1.0,
        live_script: Optional[Sequence[Tuple[float, SpeakerRole, str]]] = None,
        language: str = "en",
    ) -> None:
        self._delay_sec = max(0.0, float(delay_sec))
        self._live_script = tuple(live_script) if live_script is not None else _LIVE_SCRIPT
        self._language = language
        self._live_task: Optional[asyncio.Task[None]] = None

    @property
    def name(self) -> str:
        return "mock"

    def is_supported(self) -> bool:
        return True

    async def transcribe(self, chunk: AudioChunk) -> TranscriptionResult:
        self.validate_audio(chunk)
        if self._delay_sec:
            await asyncio.sleep(self._delay_sec)
        segments = [
            TranscriptSegment(
                id=self.new_segment_id(),
                timestamp=ts,
                speaker=speaker,
                text=text,
                confidence=conf,
            )
            for ts, speaker, text, conf in _BATCH_SCRIPT
        ]
        return TranscriptionResult(
            segments=segments,
            confidence=0.93,
            processing_time_ms=int(self._delay_sec * 1000),
            language=self._language,
        )

    async def start_live(self, on_segment: SegmentCallback) -> None:
        if self._live_task is not None and not self._live_task.done():
            raise TranscriptionError("LIVE_ACTIVE", "Live transcription already active", self.name)
        self._live_task = asyncio.create_task(self._emit_script(on_segment))

    async def _emit_script(self, on_segment: SegmentCallback) -> None:
        elapsed = 0.0
        for delay, speaker, text in self._live_script:
            await asyncio.sleep(delay * self._delay_sec)
            on_segment(
                TranscriptSegment(
                    id=self.new_segment_id(),
                    timestamp=elapsed,
                    speaker=speaker,
                    text=text,
                    confidence=0.9,
                )
            )
            elapsed += delay
        logger.debug("mock live script finished segments=%s", len(self._live_script))

    async def stop_live(self) -> None:
        task, self._live_task = self._live_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
