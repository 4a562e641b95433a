import asyncio
import logging

import pytest

from medscribe.asr.models import TranscriptSegment
from medscribe.internal_core.audio_utils import pcm16_to_wav_bytes
from medscribe.session.capture import BufferedAudioCapture, CaptureState
from medscribe.session.events import EventChannel
from medscribe.session.timers import PeriodicTimer


def test_event_channel_delivers_independent_copies_in_order() -> None:
    channel: EventChannel[TranscriptSegment] = EventChannel("segments")
    received = []

    def mutate(segment: TranscriptSegment) -> None:
        segment.text = "changed"
        received.append(("first", segment.text))

    channel.subscribe(mutate)
    channel.subscribe(lambda segment: received.append(("second", segment.text)))

    original = TranscriptSegment(id="s1", text="original")
    channel.emit(original)

    assert received == [("first", "changed"), ("second", "original")]
    assert original.text == "original"


def test_event_channel_isolates_failing_subscribers(caplog: pytest.LogCaptureFixture) -> None:
    channel: EventChannel[int] = EventChannel("numbers")
    received = []

    def broken(value: int) -> None:
        raise RuntimeError("subscriber bug")

    channel.subscribe(broken)
    unsubscribe = channel.subscribe(received.append)

    with caplog.at_level(logging.ERROR):
        channel.emit(1)
    assert received == [1]
    assert "event_subscriber failed channel=numbers" in caplog.text

    unsubscribe()
    channel.emit(2)
    assert received == [1]
    assert len(channel) == 1

    channel.clear()
    assert len(channel) == 0


def test_event_channel_can_pass_payload_through() -> None:
    channel: EventChannel[Exception] = EventChannel("errors", copy_payload=False)
    seen = []
    channel.subscribe(seen.append)

    exc = ValueError("boom")
    channel.emit(exc)
    assert seen[0] is exc


def test_periodic_timer_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        PeriodicTimer("bad", 0, lambda: asyncio.sleep(0))


def test_periodic_timer_fires_repeatedly_until_stopped() -> None:
    async def run() -> int:
        calls = []

        async def body() -> None:
            calls.append(1)

        timer = PeriodicTimer("tick", 0.01, body)
        timer.start()
        timer.start()
        await asyncio.sleep(0.055)
        timer.stop()
        await timer.drain()
        count = len(calls)
        await asyncio.sleep(0.03)
        assert len(calls) == count
        assert timer.running is False
        return count

    assert asyncio.run(run()) >= 2


def test_periodic_timer_does_not_wait_for_slow_bodies() -> None:
    async def run() -> None:
        release = asyncio.Event()
        started = []

        async def body() -> None:
            started.append(1)
            await release.wait()

        timer = PeriodicTimer("slow", 0.01, body)
        timer.start()
        await asyncio.sleep(0.035)
        timer.stop()
        assert len(started) >= 2

        release.set()
        await timer.drain()

    asyncio.run(run())


def test_periodic_timer_logs_body_failures(caplog: pytest.LogCaptureFixture) -> None:
    async def run() -> None:
        async def body() -> None:
            raise RuntimeError("tick failed")

        timer = PeriodicTimer("failing", 60.0, body)
        await timer.fire()

    with caplog.at_level(logging.ERROR):
        asyncio.run(run())
    assert "timer body failed timer=failing" in caplog.text


def test_buffered_capture_ignores_audio_while_paused() -> None:
    async def run() -> None:
        capture = BufferedAudioCapture(mime_type="audio/pcm")
        states: list[CaptureState] = []
        capture.on_state_change(states.append)

        capture.push(b"\x00" * 100)
        assert capture.get_current_buffered_audio().is_empty

        await capture.start()
        capture.push(b"\x00" * 16000)
        await capture.pause()
        capture.push(b"\x00" * 16000)
        assert capture.get_state() == CaptureState(is_recording=True, is_paused=True, duration=0.5)

        await capture.resume()
        capture.push(b"\x00" * 16000)
        final = await capture.stop()

        assert final.size == 32000
        assert final.mime_type == "audio/pcm"
        assert capture.get_state() == CaptureState(is_recording=False, is_paused=False, duration=1.0)
        assert states[-1].is_recording is False

        await capture.start()
        assert capture.get_current_buffered_audio().is_empty

    asyncio.run(run())


def test_buffered_capture_measures_wav_duration() -> None:
    async def run() -> None:
        capture = BufferedAudioCapture()
        await capture.start()
        capture.push(pcm16_to_wav_bytes(b"\x00\x00" * 8000))
        assert capture.get_state().duration == pytest.approx(0.5)

    asyncio.run(run())


def test_buffered_capture_unsubscribe() -> None:
    async def run() -> None:
        capture = BufferedAudioCapture(mime_type="audio/pcm")
        states: list[CaptureState] = []
        unsubscribe = capture.on_state_change(states.append)
        unsubscribe()
        await capture.start()
        assert states == []

    asyncio.run(run())
