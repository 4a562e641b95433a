from __future__ import annotations

"""
Typed transcript contracts shared by backends, the classifier and sessions.

Design intent:
- Enforce trimmed, non-empty segment text and bounded confidences at construction.
- Keep the speaker vocabulary closed: provider, patient or unknown.
"""

import time
import uuid
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

SpeakerRole = Literal["provider", "patient", "unknown"]


def new_segment_id() -> str:
    return f"segment_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class TranscriptSegment(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=new_segment_id, min_length=1)
    timestamp: float = Field(default=0.0, ge=0.0)
    speaker: SpeakerRole = "unknown"
    text: str
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @field_validator("text")
    @classmethod
    def _strip_text(cls, value: str) -> str:
        text = (value or "").strip()
        if not text:
            raise ValueError("TranscriptSegment.text must not be empty")
        return text


class TranscriptionResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    segments: List[TranscriptSegment] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    processing_time_ms: int = Field(default=0, ge=0)
    language: Optional[str] = None
    backend: Optional[str] = None
