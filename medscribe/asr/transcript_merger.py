from __future__ import annotations

"""
Merge transcription results into a session transcript.

Design intent:
- Accept repeated segments when the whole recording is re-sent on every chunk.
- Return only the genuinely new segments so callers can notify and document incrementally.
- Guarantee unique segment ids within the merged transcript.
"""

import re
from collections import Counter
from dataclasses import dataclass
from typing import Sequence

from medscribe.asr.models import TranscriptSegment, new_segment_id

_WS_RE = re.compile(r"\s+")


def _normalize_text(text: str) -> str:
    return _WS_RE.sub(" ", (text or "").strip()).lower()


@dataclass(frozen=True)
class MergeResult:
    new_segments: list[TranscriptSegment]
    all_segments: list[TranscriptSegment]
    duplicates_dropped: int


class TranscriptMerger:
    def __init__(self, *, time_tolerance_sec: float = 1.0) -> None:
        self._time_tolerance_sec = max(0.01, float(time_tolerance_sec))

    def merge(
        self,
        existing: Sequence[TranscriptSegment],
        incoming: Sequence[TranscriptSegment],
    ) -> MergeResult:
        merged = list(existing)
        ids = {segment.id for segment in merged}
        # Each existing segment absorbs at most one re-sent copy; repeats within a batch are kept.
        unmatched = Counter(self._segment_key(segment) for segment in merged)
        new_segments: list[TranscriptSegment] = []
        duplicates = 0

        for segment in incoming:
            if not _normalize_text(segment.text):
                continue
            key = self._segment_key(segment)
            if unmatched[key] > 0:
                unmatched[key] -= 1
                duplicates += 1
                continue

            if segment.id in ids:
                segment = segment.model_copy(update={"id": self._fresh_id(ids)})
            ids.add(segment.id)
            merged.append(segment)
            new_segments.append(segment)

        return MergeResult(
            new_segments=new_segments,
            all_segments=merged,
            duplicates_dropped=duplicates,
        )

    def _segment_key(self, segment: TranscriptSegment) -> tuple[int, str]:
        bucket = int(round(segment.timestamp / self._time_tolerance_sec))
        return (bucket, _normalize_text(segment.text))

    @staticmethod
    def _fresh_id(taken: set[str]) -> str:
        candidate = new_segment_id()
        while candidate in taken:
            candidate = new_segment_id()
        return candidate


def ensure_unique_ids(segments: Sequence[TranscriptSegment]) -> list[TranscriptSegment]:
    """Copy `segments`, reassigning any id already seen earlier in the sequence."""
    seen: set[str] = set()
    out: list[TranscriptSegment] = []
    for segment in segments:
        if segment.id in seen:
            segment = segment.model_copy(update={"id": TranscriptMerger._fresh_id(seen)})
        seen.add(segment.id)
        out.append(segment)
    return out
