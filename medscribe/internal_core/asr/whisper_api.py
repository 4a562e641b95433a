from __future__ import annotations

import logging
import math
import time
from typing import Any, Dict, List, Optional

import httpx

from medscribe.asr.models import TranscriptionResult, TranscriptSegment
from medscribe.internal_core.audio_utils import suffix_for_mime

from .base import (
    AudioChunk,
    TranscriptionBackend,
    TranscriptionError,
    category_for_status,
    clamp01,
    elapsed_ms,
    mean_confidence,
    optional_language,
    retry_transient,
)

logger = logging.getLogger(__name__)

WHISPER_API_URL = "https://api.openai.com/v1/audio/transcriptions"


def segment_confidence(avg_logprob: Optional[float], no_speech_prob: Optional[float]) -> float:
    logprob_conf = math.exp(float(avg_logprob)) if avg_logprob is not None else 0.5
    speech_conf = 1.0 - float(no_speech_prob) if no_speech_prob is not None else 0.5
    return clamp01((logprob_conf + speech_conf) / 2.0)


class WhisperApiBackend(TranscriptionBackend):
    """Cloud batch transcription through the OpenAI audio transcription endpoint."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "whisper-1",
        language: str = "en",
        prompt: str = "",
        max_retries: int = 3,
        retry_delay_sec: float = 1.0,
        timeout: float = 60.0,
        url: str = WHISPER_API_URL,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._language = language
        self._prompt = prompt
        self._max_retries = max(0, int(max_retries))
        self._retry_delay_sec = max(0.0, float(retry_delay_sec))
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @property
    def name(self) -> str:
        return "whisper_api"

    def is_supported(self) -> bool:
        return bool(self._api_key)

    async def transcribe(self, chunk: AudioChunk) -> TranscriptionResult:
        self.validate_audio(chunk)
        if not self._api_key:
            raise TranscriptionError("MISSING_API_KEY", "OpenAI API key is not configured", self.name)

        started = time.monotonic()
        payload = await retry_transient(
            lambda: self._post(chunk),
            backend_name=self.name,
            max_retries=self._max_retries,
            base_delay_sec=self._retry_delay_sec,
        )
        segments = self._convert_segments(payload)
        logger.debug("whisper_api done bytes=%s segments=%s", chunk.size, len(segments))
        return TranscriptionResult(
            segments=segments,
            confidence=mean_confidence(segments),
            processing_time_ms=elapsed_ms(started),
            language=optional_language(payload.get("language")) or self._language,
        )

    async def _post(self, chunk: AudioChunk) -> Dict[str, Any]:
        files = {"file": (f"audio{suffix_for_mime(chunk.mime_type)}", chunk.data, chunk.mime_type)}
        data: Dict[str, Any] = {
            "model": self._model,
            "response_format": "verbose_json",
            "timestamp_granularities[]": "segment",
            "temperature": "0",
        }
        if self._language:
            data["language"] = self._language
        if self._prompt:
            data["prompt"] = self._prompt

        resp = await self._client.post(
            self._url,
            headers={"Authorization": f"Bearer {self._api_key}"},
            files=files,
            data=data,
        )
        if resp.status_code >= 400:
            detail = _error_detail(resp)
            raise TranscriptionError(
                f"HTTP_{resp.status_code}",
                f"Whisper API error {resp.status_code}: {detail}",
                self.name,
                category_for_status(resp.status_code),
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise TranscriptionError(
                "INVALID_RESPONSE", f"Whisper API returned non-JSON body: {exc}", self.name
            ) from exc
        if not isinstance(body, dict):
            raise TranscriptionError("INVALID_RESPONSE", "Whisper API returned unexpected payload", self.name)
        return body

    def _convert_segments(self, payload: Dict[str, Any]) -> List[TranscriptSegment]:
        out: List[TranscriptSegment] = []
        raw_segments = payload.get("segments") or []
        for item in raw_segments:
            text = str(item.get("text") or "").strip()
            if not text:
                continue
            out.append(
                TranscriptSegment(
                    id=self.new_segment_id(),
                    timestamp=max(0.0, float(item.get("start") or 0.0)),
                    speaker="unknown",
                    text=text,
                    confidence=segment_confidence(item.get("avg_logprob"), item.get("no_speech_prob")),
                )
            )
        if not out:
            # Plain `text` responses carry no segment list.
            text = str(payload.get("text") or "").strip()
            if text:
                out.append(
                    TranscriptSegment(
                        id=self.new_segment_id(),
                        timestamp=0.0,
                        speaker="unknown",
                        text=text,
                        confidence=None,
                    )
                )
        return out

    async def dispose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or "").strip()[:200] or resp.reason_phrase
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])[:200]
    return resp.reason_phrase
