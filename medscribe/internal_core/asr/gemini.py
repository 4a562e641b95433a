from __future__ import annotations

import base64
import logging
import re
import time
from typing import Any, Dict, List, Optional

import httpx

from medscribe.asr.models import SpeakerRole, TranscriptionResult, TranscriptSegment

from .base import (
    AudioChunk,
    ErrorCategory,
    TranscriptionBackend,
    TranscriptionError,
    category_for_status,
    elapsed_ms,
)

logger = logging.getLogger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"

DEFAULT_TRANSCRIPTION_PROMPT = (
    "You are a medical transcription assistant. Transcribe the following clinical consultation audio "
    "exactly as spoken, keeping medical terminology, drug names and abbreviations. "
    'If several speakers are present, start each turn with "Doctor:" or "Patient:". '
    "Return only the transcription text."
)

_LABEL_RE = re.compile(
    r"^(doctor|patient|physician|clinician|provider|nurse)\s*:\s*(.*)$",
    flags=re.IGNORECASE,
)
_PROVIDER_LABELS = {"doctor", "physician", "clinician", "provider", "nurse"}
_SEGMENT_CONFIDENCE = 0.9


def _role_for_label(label: str) -> SpeakerRole:
    normalized = label.strip().lower()
    if normalized in _PROVIDER_LABELS:
        return "provider"
    if normalized == "patient":
        return "patient"
    return "unknown"


def parse_labeled_transcript(text: str) -> list[tuple[SpeakerRole, str]]:
    """
    Split "Doctor: ..." / "Patient: ..." formatted text into (role, utterance) turns.

    Unlabelled text becomes a single `unknown` turn; continuation lines join the current turn.
    """
    source = (text or "").strip()
    if not source:
        return []

    lines = [line.strip() for line in source.splitlines() if line.strip()]
    if not any(_LABEL_RE.match(line) for line in lines):
        return [("unknown", " ".join(lines))]

    turns: list[tuple[SpeakerRole, str]] = []
    speaker: SpeakerRole = "unknown"
    parts: list[str] = []
    for line in lines:
        match = _LABEL_RE.match(line)
        if match:
            if parts:
                turns.append((speaker, " ".join(parts)))
            speaker = _role_for_label(match.group(1))
            parts = [match.group(2).strip()] if match.group(2).strip() else []
        else:
            parts.append(line)
    if parts:
        turns.append((speaker, " ".join(parts)))
    return turns


class GeminiBackend(TranscriptionBackend):
    """Batch transcription by prompting a generative model with inline audio."""

    max_bytes = 20 * 1024 * 1024

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gemini-2.5-flash",
        language: str = "en",
        prompt: str = DEFAULT_TRANSCRIPTION_PROMPT,
        timeout: float = 60.0,
        base_url: str = GEMINI_API_BASE,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._language = language
        self._prompt = prompt
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @property
    def name(self) -> str:
        return "gemini"

    def is_supported(self) -> bool:
        return bool(self._api_key)

    async def transcribe(self, chunk: AudioChunk) -> TranscriptionResult:
        self.validate_audio(chunk)
        if not self._api_key:
            raise TranscriptionError("MISSING_API_KEY", "Gemini API key is not configured", self.name)

        started = time.monotonic()
        text = await self._generate(chunk)
        segments = [
            TranscriptSegment(
                id=self.new_segment_id(),
                timestamp=0.0,
                speaker=speaker,
                text=utterance,
                confidence=_SEGMENT_CONFIDENCE,
            )
            for speaker, utterance in parse_labeled_transcript(text)
        ]
        logger.debug("gemini done bytes=%s segments=%s", chunk.size, len(segments))
        return TranscriptionResult(
            segments=segments,
            confidence=_SEGMENT_CONFIDENCE if segments else 0.0,
            processing_time_ms=elapsed_ms(started),
            language=self._language,
        )

    async def _generate(self, chunk: AudioChunk) -> str:
        body = {
            "contents": [
                {
                    "parts": [
                        {"text": self._prompt},
                        {
                            "inlineData": {
                                "mimeType": chunk.mime_type or "audio/webm",
                                "data": base64.b64encode(chunk.data).decode("ascii"),
                            }
                        },
                    ]
                }
            ],
            "generationConfig": {
                "temperature": 0.1,
                "topP": 0.95,
                "topK": 40,
                "maxOutputTokens": 8192,
            },
        }
        url = f"{self._base_url}/{self._model}:generateContent"
        resp = await self._client.post(url, params={"key": self._api_key}, json=body)
        if resp.status_code >= 400:
            raise TranscriptionError(
                f"HTTP_{resp.status_code}",
                f"Gemini API request failed: {resp.status_code} {(resp.text or '').strip()[:200]}",
                self.name,
                category_for_status(resp.status_code),
            )
        try:
            data: Dict[str, Any] = resp.json()
        except ValueError as exc:
            raise TranscriptionError("INVALID_RESPONSE", f"Gemini returned non-JSON body: {exc}", self.name) from exc
        return _candidate_text(data, self.name)

    async def dispose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _candidate_text(data: Dict[str, Any], backend_name: str) -> str:
    candidates: List[Dict[str, Any]] = list(data.get("candidates") or [])
    if not candidates:
        reason = (data.get("promptFeedback") or {}).get("blockReason") or "unknown"
        raise TranscriptionError(
            "NO_CANDIDATES",
            f"No transcription result from Gemini (block reason: {reason})",
            backend_name,
            ErrorCategory.FATAL,
        )
    parts = ((candidates[0].get("content") or {}).get("parts")) or []
    return "".join(str(part.get("text") or "") for part in parts).strip()
