from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import tempfile
import time
from pathlib import Path
from typing import Optional, Tuple

from medscribe.asr.models import TranscriptionResult, TranscriptSegment
from medscribe.internal_core.audio_utils import is_wav, suffix_for_mime

from .base import (
    AudioChunk,
    ErrorCategory,
    SegmentCallback,
    TranscriptionBackend,
    TranscriptionError,
    elapsed_ms,
)

logger = logging.getLogger(__name__)

_TIMESTAMP_LINE_RE = re.compile(
    r"^\[(\d+):(\d{2}):(\d{2})[.,](\d{3})\s*-->\s*[^\]]*\]\s*(.*)$"
)
_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_NOISE_RE = re.compile(r"^\s*(\[[A-Z_ ]+\]|\([^)]*\)|###.*)\s*$")


def whisper_cpp_available(bin_path: str, model_path: str) -> Tuple[bool, str]:
    if not bin_path:
        return False, "missing SCRIBE_WHISPER_CPP_BIN"
    if not model_path:
        return False, "missing SCRIBE_WHISPER_CPP_MODEL"
    if not Path(bin_path).exists():
        return False, f"whisper-cli not found: {bin_path}"
    if not Path(model_path).exists():
        return False, f"model not found: {model_path}"
    return True, ""


def _with_dyld_paths(bin_path: str, env: Optional[dict[str, str]] = None) -> dict[str, str]:
    env_out = dict(os.environ) if env is None else dict(env)
    if not bin_path:
        return env_out
    try:
        build_dir = Path(bin_path).resolve().parents[1]
    except (OSError, IndexError):
        return env_out

    candidates = [
        build_dir / "src",
        build_dir / "ggml" / "src",
        build_dir / "ggml" / "src" / "ggml-blas",
        build_dir / "ggml" / "src" / "ggml-metal",
    ]
    new_paths = [str(p) for p in candidates if p.exists()]
    if not new_paths:
        return env_out

    existing = env_out.get("DYLD_LIBRARY_PATH", "")
    joined = os.pathsep.join(new_paths)
    env_out["DYLD_LIBRARY_PATH"] = (
        joined if not existing else f"{joined}{os.pathsep}{existing}"
    )
    return env_out


def parse_whisper_output(stdout: str) -> list[tuple[float, str]]:
    """Turn whisper-cli stdout into (start_sec, text) pairs; untimed text is attached at 0."""
    out: list[tuple[float, str]] = []
    untimed: list[str] = []
    for raw in (stdout or "").splitlines():
        line = _ANSI_RE.sub("", raw).strip()
        if not line:
            continue
        match = _TIMESTAMP_LINE_RE.match(line)
        if match:
            h, m, s, ms, text = match.groups()
            text = " ".join(text.split())
            if text and not _NOISE_RE.match(text):
                out.append((int(h) * 3600 + int(m) * 60 + int(s) + int(ms) / 1000.0, text))
            continue
        if not _NOISE_RE.match(line):
            untimed.append(line)
    if not out and untimed:
        out.append((0.0, " ".join(" ".join(untimed).split())))
    return out


def clean_stream_line(raw: str) -> str:
    line = _ANSI_RE.sub("", raw or "").rstrip("\r\n")
    # whisper-stream redraws the pending line with "\r"; only the last redraw is current.
    line = " ".join(line.rsplit("\r", 1)[-1].split())
    if not line or _NOISE_RE.match(line):
        return ""
    match = _TIMESTAMP_LINE_RE.match(line)
    if match:
        line = " ".join(match.group(5).split())
    return line


async def _communicate(
    proc: asyncio.subprocess.Process, timeout: Optional[float] = None
) -> Tuple[bytes, bytes]:
    """Wait for `proc`; kill it if the wait times out or the caller is cancelled."""
    try:
        if timeout is None:
            return await proc.communicate()
        return await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except BaseException:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise


class WhisperCppBackend(TranscriptionBackend):
    """On-device recognizer backed by whisper.cpp binaries."""

    def __init__(
        self,
        bin_path: str,
        model_path: str,
        *,
        stream_bin_path: str = "",
        no_gpu: bool = False,
        language: str = "en",
        timeout_sec: float = 120.0,
        tmp_dir: Optional[Path] = None,
    ):
        self._bin_path = bin_path
        self._stream_bin_path = stream_bin_path
        self._model_path = model_path
        self._runtime_no_gpu = bool(no_gpu)
        self._language = language
        self._timeout_sec = float(timeout_sec)
        self._tmp_dir = tmp_dir
        self._live_proc: Optional[asyncio.subprocess.Process] = None
        self._live_task: Optional[asyncio.Task[None]] = None

    @property
    def name(self) -> str:
        return "whisper_cpp"

    @property
    def supports_live(self) -> bool:  # type: ignore[override]
        return bool(self._stream_bin_path) and Path(self._stream_bin_path).exists()

    def is_supported(self) -> bool:
        ok, _ = whisper_cpp_available(self._bin_path, self._model_path)
        return ok

    async def transcribe(self, chunk: AudioChunk) -> TranscriptionResult:
        self.validate_audio(chunk)
        ok, reason = whisper_cpp_available(self._bin_path, self._model_path)
        if not ok:
            raise TranscriptionError("WHISPER_UNAVAILABLE", reason, self.name)

        started = time.monotonic()
        with tempfile.TemporaryDirectory(prefix="whisper_chunk_", dir=self._tmp_dir) as tmp:
            wav_path = await self._write_wav(chunk, Path(tmp))
            stdout = await self._run_cli(wav_path)

        segments = [
            TranscriptSegment(
                id=self.new_segment_id(),
                timestamp=start,
                speaker="unknown",
                text=text,
                confidence=None,
            )
            for start, text in parse_whisper_output(stdout)
        ]
        return TranscriptionResult(
            segments=segments,
            confidence=0.8 if segments else 0.0,
            processing_time_ms=elapsed_ms(started),
            language=self._language,
        )

    async def _write_wav(self, chunk: AudioChunk, tmp_dir: Path) -> Path:
        if is_wav(chunk.data):
            wav_path = tmp_dir / "chunk.wav"
            wav_path.write_bytes(chunk.data)
            return wav_path

        ffmpeg = shutil.which("ffmpeg")
        if not ffmpeg:
            raise TranscriptionError(
                "UNSUPPORTED_FORMAT",
                f"whisper.cpp needs WAV input; install ffmpeg to convert {chunk.mime_type}",
                self.name,
            )
        src_path = tmp_dir / f"chunk{suffix_for_mime(chunk.mime_type)}"
        src_path.write_bytes(chunk.data)
        wav_path = tmp_dir / "chunk.wav"
        proc = await asyncio.create_subprocess_exec(
            ffmpeg, "-y", "-i", str(src_path), "-ac", "1", "-ar", "16000", str(wav_path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await _communicate(proc)
        if proc.returncode != 0:
            msg = (stderr or b"").decode("utf-8", "ignore").strip()[-200:]
            raise TranscriptionError(
                "CONVERSION_FAILED", f"Audio conversion failed via ffmpeg: {msg or 'unknown error'}", self.name
            )
        return wav_path

    async def _run_cli(self, wav_path: Path) -> str:
        base_cmd = [
            self._bin_path,
            "-m",
            self._model_path,
            "-f",
            str(wav_path),
            "-l",
            self._language,
            "--no-prints",
        ]

        # Some macOS builds crash in Metal path on certain machines; retry once on CPU.
        attempt_no_gpu = [True] if self._runtime_no_gpu else [False, True]
        attempt_errors: list[str] = []
        saw_timeout = False

        for use_no_gpu in attempt_no_gpu:
            cmd = list(base_cmd)
            mode = "cpu_no_gpu" if use_no_gpu else "gpu_default"
            if use_no_gpu:
                cmd.insert(1, "-ng")
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=_with_dyld_paths(self._bin_path),
            )
            try:
                stdout, stderr = await _communicate(proc, self._timeout_sec)
            except asyncio.TimeoutError:
                saw_timeout = True
                attempt_errors.append(f"{mode}: timeout")
                if not use_no_gpu:
                    self._runtime_no_gpu = True
                continue

            if proc.returncode != 0:
                msg = (stderr or b"").decode("utf-8", "ignore").strip() or f"exit_code={proc.returncode}"
                if len(msg) > 200:
                    msg = msg[:200] + "..."
                attempt_errors.append(f"{mode}: {msg}")
                if not use_no_gpu:
                    self._runtime_no_gpu = True
                continue

            return (stdout or b"").decode("utf-8", "ignore")

        if saw_timeout:
            raise TranscriptionError(
                "WHISPER_TIMEOUT",
                "; ".join(attempt_errors) or "whisper.cpp timed out",
                self.name,
                ErrorCategory.TRANSIENT,
            )
        raise TranscriptionError("WHISPER_EXIT_NONZERO", "; ".join(attempt_errors) or "non-zero exit", self.name)

    async def start_live(self, on_segment: SegmentCallback) -> None:
        if not self.supports_live:
            raise TranscriptionError("LIVE_UNSUPPORTED", "whisper-stream binary is not configured", self.name)
        if self._live_proc is not None:
            raise TranscriptionError("LIVE_ACTIVE", "Live transcription already active", self.name)

        cmd = [self._stream_bin_path, "-m", self._model_path, "-l", self._language, "--step", "3000", "--length", "10000"]
        if self._runtime_no_gpu:
            cmd.insert(1, "-ng")
        try:
            self._live_proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                env=_with_dyld_paths(self._stream_bin_path),
            )
        except OSError as exc:
            raise TranscriptionError("LIVE_START_FAILED", str(exc), self.name) from exc
        self._live_task = asyncio.create_task(self._pump_stream(self._live_proc, on_segment, time.monotonic()))

    async def _pump_stream(
        self,
        proc: asyncio.subprocess.Process,
        on_segment: SegmentCallback,
        started: float,
    ) -> None:
        assert proc.stdout is not None
        while True:
            raw = await proc.stdout.readline()
            if not raw:
                break
            text = clean_stream_line(raw.decode("utf-8", "ignore"))
            if not text:
                continue
            on_segment(
                TranscriptSegment(
                    id=self.new_segment_id(),
                    timestamp=max(0.0, time.monotonic() - started),
                    speaker="unknown",
                    text=text,
                    confidence=None,
                )
            )
        logger.info("whisper_stream exited returncode=%s", proc.returncode)

    async def stop_live(self) -> None:
        proc, self._live_proc = self._live_proc, None
        task, self._live_task = self._live_task, None
        if proc is not None and proc.returncode is None:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
