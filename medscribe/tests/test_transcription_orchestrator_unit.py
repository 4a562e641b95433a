import asyncio
from typing import List, Optional

import pytest

from medscribe.asr.models import TranscriptionResult, TranscriptSegment
from medscribe.internal_core.asr import (
    AudioChunk,
    ErrorCategory,
    MockBackend,
    NoBackendAvailableError,
    TranscriptionBackend,
    TranscriptionError,
    TranscriptionOrchestrator,
)

CHUNK = AudioChunk(b"\x01" * 64, "audio/webm")


class FakeBackend(TranscriptionBackend):
    def __init__(
        self,
        name: str,
        *,
        error: Optional[Exception] = None,
        text: str = "Fine, thanks.",
        speaker: str = "unknown",
        supported: bool = True,
        delay_sec: float = 0.0,
    ) -> None:
        self._name = name
        self.error = error
        self.text = text
        self.speaker = speaker
        self.supported = supported
        self.delay_sec = delay_sec
        self.calls = 0

    @property
    def name(self) -> str:
        return self._name

    def is_supported(self) -> bool:
        return self.supported

    async def transcribe(self, chunk: AudioChunk) -> TranscriptionResult:
        self.calls += 1
        if self.delay_sec:
            await asyncio.sleep(self.delay_sec)
        if self.error is not None:
            raise self.error
        return TranscriptionResult(
            segments=[TranscriptSegment(id=f"{self._name}-1", speaker=self.speaker, text=self.text)],
            confidence=0.9,
        )


def _transient(name: str) -> TranscriptionError:
    return TranscriptionError("RATE_LIMIT", "rate limit exceeded", name, ErrorCategory.TRANSIENT)


def _fatal(name: str) -> TranscriptionError:
    return TranscriptionError("BAD_REQUEST", "unsupported audio format", name, ErrorCategory.FATAL)


def test_transient_failure_falls_through_to_next_backend() -> None:
    orch = TranscriptionOrchestrator()
    primary = FakeBackend("primary", error=_transient("primary"))
    secondary = FakeBackend("secondary", text="Second backend answer.")
    orch.register(secondary, 1)
    orch.register(primary, 2)

    result = asyncio.run(orch.transcribe(CHUNK))

    assert [s.text for s in result.segments] == ["Second backend answer."]
    assert result.backend == "secondary"
    assert primary.calls == 1
    assert orch.is_available("primary") is False
    assert orch.current_backend_name == "secondary"
    assert [f.code for f in orch.error_history()] == ["RATE_LIMIT"]


def test_fatal_failure_stops_the_fallback_chain() -> None:
    orch = TranscriptionOrchestrator()
    primary = FakeBackend("primary", error=_fatal("primary"))
    secondary = FakeBackend("secondary")
    orch.register(primary, 2)
    orch.register(secondary, 1)

    with pytest.raises(TranscriptionError) as exc_info:
        asyncio.run(orch.transcribe(CHUNK))

    assert exc_info.value.code == "BAD_REQUEST"
    assert exc_info.value.recoverable is False
    assert secondary.calls == 0


def test_untagged_exceptions_are_categorized() -> None:
    orch = TranscriptionOrchestrator()
    flaky = FakeBackend("flaky", error=ConnectionError("connection reset"))
    steady = FakeBackend("steady")
    orch.register(flaky, 2)
    orch.register(steady, 1)

    result = asyncio.run(orch.transcribe(CHUNK))
    assert result.backend == "steady"
    assert orch.error_history()[0].category is ErrorCategory.TRANSIENT


def test_timeout_is_treated_as_transient() -> None:
    orch = TranscriptionOrchestrator(timeout_sec=0.01)
    slow = FakeBackend("slow", delay_sec=1.0)
    fast = FakeBackend("fast")
    orch.register(slow, 2)
    orch.register(fast, 1)

    result = asyncio.run(orch.transcribe(CHUNK))
    assert result.backend == "fast"
    assert orch.error_history()[0].code == "TIMEOUT"


def test_no_backend_available() -> None:
    orch = TranscriptionOrchestrator()
    with pytest.raises(NoBackendAvailableError):
        asyncio.run(orch.transcribe(CHUNK))

    orch.register(FakeBackend("unsupported", supported=False), 1)
    with pytest.raises(NoBackendAvailableError) as exc_info:
        asyncio.run(orch.transcribe(CHUNK))
    assert exc_info.value.category is ErrorCategory.NO_BACKEND


def test_all_transient_failures_raise_no_backend() -> None:
    orch = TranscriptionOrchestrator()
    orch.register(FakeBackend("a", error=_transient("a")), 2)
    orch.register(FakeBackend("b", error=_transient("b")), 1)

    with pytest.raises(NoBackendAvailableError) as exc_info:
        asyncio.run(orch.transcribe(CHUNK))
    assert "b" in str(exc_info.value)
    assert len(orch.error_history()) == 2


def test_failed_backend_is_skipped_until_reset() -> None:
    orch = TranscriptionOrchestrator()
    primary = FakeBackend("primary", error=_transient("primary"))
    orch.register(primary, 2)
    orch.register(FakeBackend("secondary"), 1)

    asyncio.run(orch.transcribe(CHUNK))
    primary.error = None
    asyncio.run(orch.transcribe(CHUNK))
    assert primary.calls == 1

    orch.reset_availability()
    result = asyncio.run(orch.transcribe(CHUNK))
    assert result.backend == "primary"
    assert primary.calls == 2


def test_use_backend_pins_ahead_of_priority() -> None:
    orch = TranscriptionOrchestrator()
    orch.register(FakeBackend("high"), 5)
    orch.register(FakeBackend("low"), 1)

    orch.use_backend("low")
    assert orch.backend_names() == ["low", "high"]
    assert asyncio.run(orch.transcribe(CHUNK)).backend == "low"
    status = {row["name"]: row for row in orch.backend_status()}
    assert status["low"]["pinned"] is True
    assert status["low"]["effective_priority"] == 6

    orch.unpin()
    assert orch.backend_names() == ["high", "low"]

    with pytest.raises(ValueError):
        orch.use_backend("missing")


def test_use_backend_rejects_unsupported() -> None:
    orch = TranscriptionOrchestrator()
    orch.register(FakeBackend("offline", supported=False), 1)
    with pytest.raises(ValueError):
        orch.use_backend("offline")


def test_register_rejects_duplicate_names() -> None:
    orch = TranscriptionOrchestrator()
    orch.register(FakeBackend("one"), 1)
    with pytest.raises(ValueError):
        orch.register(FakeBackend("one"), 2)


def test_equal_priorities_keep_registration_order() -> None:
    orch = TranscriptionOrchestrator()
    orch.register(FakeBackend("first"), 1)
    orch.register(FakeBackend("second"), 1)
    assert orch.backend_names() == ["first", "second"]


def test_unknown_speakers_are_classified_with_context() -> None:
    orch = TranscriptionOrchestrator()
    orch.register(FakeBackend("asr", text="I have been having chest pain"), 1)
    context = [TranscriptSegment(id="p1", speaker="provider", text="What brings you in today?")]

    result = asyncio.run(orch.transcribe(CHUNK, context))
    assert result.segments[0].speaker == "patient"


def test_backend_labels_are_kept() -> None:
    orch = TranscriptionOrchestrator()
    orch.register(FakeBackend("asr", text="How are you feeling?", speaker="provider"), 1)

    result = asyncio.run(orch.transcribe(CHUNK))
    assert result.segments[0].speaker == "provider"


def test_statistics_and_error_history() -> None:
    orch = TranscriptionOrchestrator(max_error_history=2)
    orch.register(FakeBackend("a", error=_transient("a")), 3)
    orch.register(FakeBackend("b", error=_transient("b")), 2)
    orch.register(FakeBackend("c"), 1)

    asyncio.run(orch.transcribe(CHUNK))
    orch.reset_availability()
    asyncio.run(orch.transcribe(CHUNK))

    stats = orch.statistics()
    assert stats["total_backends"] == 3
    assert stats["transcribe_calls"] == 2
    assert stats["transcribe_successes"] == 2
    assert stats["recent_errors"] == 2
    assert stats["current_backend"] == "c"

    orch.clear_error_history()
    assert orch.error_history() == []


def test_live_uses_only_live_capable_backends() -> None:
    async def run() -> None:
        orch = TranscriptionOrchestrator()
        orch.register(FakeBackend("batch_only"), 5)
        orch.register(
            MockBackend(delay_sec=0.0, live_script=[(0.0, "unknown", "I have been having chest pain")]),
            0,
        )
        received: List[TranscriptSegment] = []

        name = await orch.start_live(received.append)
        for _ in range(5):
            await asyncio.sleep(0)

        assert name == "mock"
        assert orch.live_backend_name == "mock"
        assert [s.text for s in received] == ["I have been having chest pain"]

        with pytest.raises(TranscriptionError):
            await orch.start_live(received.append)

        await orch.stop_live()
        assert orch.live_backend_name is None

    asyncio.run(run())


def test_live_without_capable_backend() -> None:
    orch = TranscriptionOrchestrator()
    orch.register(FakeBackend("batch_only"), 1)
    with pytest.raises(NoBackendAvailableError):
        asyncio.run(orch.start_live(lambda segment: None))


def test_test_backends_refreshes_availability() -> None:
    orch = TranscriptionOrchestrator()
    orch.register(FakeBackend("good"), 2)
    orch.register(FakeBackend("bad", error=_fatal("bad")), 1)
    orch.register(FakeBackend("absent", supported=False), 0)

    results = asyncio.run(orch.test_backends(CHUNK))
    assert results == {"good": True, "bad": False, "absent": False}
    assert orch.is_available("bad") is False
