from __future__ import annotations

import io
import math
import wave
from typing import Optional, Tuple

import numpy as np

DEFAULT_SAMPLE_RATE = 16000
_WAV_HEADER_BYTES = 44

_MIME_SUFFIXES = {
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/wave": ".wav",
    "audio/webm": ".webm",
    "audio/ogg": ".ogg",
    "audio/mpeg": ".mp3",
    "audio/mp4": ".m4a",
    "audio/flac": ".flac",
}


def suffix_for_mime(mime_type: str) -> str:
    base = (mime_type or "").split(";", 1)[0].strip().lower()
    return _MIME_SUFFIXES.get(base, ".bin")


def is_wav(data: bytes) -> bool:
    return len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WAVE"


def pcm16_to_wav_bytes(pcm: bytes, sample_rate: int = DEFAULT_SAMPLE_RATE) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return buf.getvalue()


def tone_wav_bytes(
    duration_sec: float,
    freq_hz: float = 440.0,
    amplitude: float = 0.15,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> bytes:
    frames = int(duration_sec * sample_rate)
    t = np.arange(frames, dtype=np.float32) / float(sample_rate)
    audio = amplitude * np.sin(2.0 * math.pi * freq_hz * t)
    audio_i16 = (np.clip(audio, -1.0, 1.0) * 32767.0).round().astype("<i2")
    return pcm16_to_wav_bytes(audio_i16.tobytes(), sample_rate=sample_rate)


def wav_info(data: bytes) -> Optional[Tuple[float, int, int]]:
    """Return (duration_sec, sample_rate, channels) for WAV bytes, or None when not a readable WAV."""
    if not is_wav(data):
        return None
    try:
        with wave.open(io.BytesIO(data), "rb") as wf:
            frames = wf.getnframes()
            rate = wf.getframerate()
            channels = wf.getnchannels()
    except (wave.Error, EOFError):
        return None
    duration = frames / float(rate) if rate else 0.0
    return duration, rate, channels


def pcm16_duration_sec(num_bytes: int, sample_rate: int = DEFAULT_SAMPLE_RATE) -> float:
    if num_bytes <= 0 or sample_rate <= 0:
        return 0.0
    return (num_bytes // 2) / float(sample_rate)


def pcm16_to_float32(raw: bytes) -> np.ndarray:
    usable = len(raw) - (len(raw) % 2)
    audio_i16 = np.frombuffer(raw[:usable], dtype="<i2")
    return (audio_i16.astype(np.float32) / 32768.0).clip(-1.0, 1.0)


def compute_rms(audio: np.ndarray) -> float:
    if audio.size == 0:
        return 0.0
    x = audio.astype(np.float32)
    return float(np.sqrt(np.mean(x * x)))


def is_silent_region(data: bytes, start: int, silence_rms: float) -> bool:
    """
    True when the PCM16 bytes after `start` are below `silence_rms`.

    Only WAV and raw PCM16 payloads are measured; compressed containers are never treated as silent.
    """
    if silence_rms <= 0:
        return False
    if is_wav(data):
        start = max(start, _WAV_HEADER_BYTES)
    elif data[:4] in {b"\x1aE\xdf\xa3", b"OggS", b"fLaC", b"ID3\x03"}:
        return False
    region = data[max(0, start):]
    if not region:
        return True
    audio = pcm16_to_float32(region)
    if audio.size == 0:
        return True
    peak = float(np.max(np.abs(audio)))
    # Quiet speech keeps its peaks; require both signals to be low.
    return compute_rms(audio) < silence_rms and peak < 0.02
