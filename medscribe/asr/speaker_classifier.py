from __future__ import annotations

"""
Heuristic speaker-role attribution for transcript segments.

Design intent:
- Combine lexical cues, conversational context and turn alternation into per-role scores.
- Stay conservative: a winning score below the confidence threshold yields `unknown`.
- Remain pure per call; context is whatever the caller passes in.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Pattern, Sequence

from medscribe.asr.models import SpeakerRole, TranscriptSegment

_LEXICAL_WEIGHT = 0.4
_CONTEXT_WEIGHT = 0.3
_TEMPORAL_WEIGHT = 0.3
_KEYWORD_HIT = 0.3
_PHRASE_HIT = 0.7
_QUESTION_BIAS = 0.8
_RESPONSE_BIAS = 0.6
_DOMINANCE_BIAS = 0.2
_BALANCE_BIAS = 0.3
_BALANCE_WINDOW = 3

_QUESTION_PATTERNS = (
    re.compile(r"\?$"),
    re.compile(
        r"^(how|what|when|where|why|who|which|can|could|would|will|do|does|did|is|are|was|were)\b",
        flags=re.IGNORECASE,
    ),
    re.compile(r"\b(tell me|explain|describe)\b", flags=re.IGNORECASE),
)
_RESPONSE_PATTERNS = (
    re.compile(r"^(yes|no|yeah|yep|nope|okay|ok|sure|right|exactly|correct)\b", flags=re.IGNORECASE),
    re.compile(r"^(i think|i believe|i feel|i guess|maybe|probably)\b", flags=re.IGNORECASE),
    re.compile(r"^(well|so|actually|basically)\b", flags=re.IGNORECASE),
)


@dataclass(frozen=True)
class SpeakerPattern:
    keywords: tuple[str, ...]
    phrases: tuple[Pattern[str], ...]
    weight: float


def _phrases(*patterns: str) -> tuple[Pattern[str], ...]:
    return tuple(re.compile(p, flags=re.IGNORECASE) for p in patterns)


def default_provider_patterns() -> list[SpeakerPattern]:
    return [
        SpeakerPattern(
            keywords=("examine", "diagnosis", "prescription", "recommend", "treatment", "medication", "follow-up"),
            phrases=_phrases(
                r"\bhow are you feeling\b",
                r"\bwhat brings you\b",
                r"\blet me (examine|check|look)\b",
                r"\bi (recommend|suggest|prescribe)\b",
                r"\btake this medication\b",
                r"\bfollow up (in|with)\b",
                r"\byour (diagnosis|condition|treatment)\b",
                r"\bwe need to\b",
                r"\bi'm going to\b",
                r"\bbased on your\b",
            ),
            weight=0.8,
        ),
        SpeakerPattern(
            keywords=("blood pressure", "heart rate", "temperature", "pulse", "breathing"),
            phrases=_phrases(
                r"\byour (blood pressure|heart rate|temperature)\b",
                r"\blet's check your\b",
                r"\bi can hear\b",
                r"\bsounds (good|normal|concerning)\b",
            ),
            weight=0.7,
        ),
        SpeakerPattern(
            keywords=("appointment", "schedule", "next visit", "come back"),
            phrases=_phrases(
                r"\bschedule (a|an|your)\b",
                r"\bcome back (in|next)\b",
                r"\bsee you (in|next)\b",
                r"\bmake an appointment\b",
            ),
            weight=0.6,
        ),
    ]


def default_patient_patterns() -> list[SpeakerPattern]:
    return [
        SpeakerPattern(
            keywords=("pain", "hurt", "feel", "experiencing", "symptoms", "problem"),
            phrases=_phrases(
                r"\bi (feel|have|am)\b",
                r"\bmy (pain|head|chest|back|stomach)\b",
                r"\bit hurts\b",
                r"\bi'm experiencing\b",
                r"\bi can't\b",
                r"\bi've been\b",
                r"\bsince (last|yesterday|this)\b",
            ),
            weight=0.8,
        ),
        SpeakerPattern(
            keywords=("medication", "pills", "taking", "prescribed"),
            phrases=_phrases(
                r"\bi'm taking\b",
                r"\bthe medication\b",
                r"\bmy pills\b",
                r"\byou prescribed\b",
                r"\bi forgot to take\b",
            ),
            weight=0.7,
        ),
        SpeakerPattern(
            keywords=("better", "worse", "same", "improved"),
            phrases=_phrases(
                r"\bfeeling (better|worse|the same)\b",
                r"\bit's (getting|been)\b",
                r"\bmuch (better|worse)\b",
                r"\bno (change|improvement)\b",
            ),
            weight=0.6,
        ),
    ]


def is_question(text: str) -> bool:
    source = (text or "").strip()
    return any(p.search(source) for p in _QUESTION_PATTERNS)


def is_response(text: str) -> bool:
    source = (text or "").strip()
    return any(p.search(source) for p in _RESPONSE_PATTERNS)


@dataclass
class RoleScores:
    provider: float = 0.0
    patient: float = 0.0

    def add(self, role: str, amount: float) -> None:
        if role == "provider":
            self.provider += amount
        elif role == "patient":
            self.patient += amount

    @property
    def best(self) -> float:
        return max(self.provider, self.patient)


def _opposite(role: str) -> str | None:
    if role == "provider":
        return "patient"
    if role == "patient":
        return "provider"
    return None


def _dominant_role(segments: Sequence[TranscriptSegment]) -> str | None:
    provider = sum(1 for s in segments if s.speaker == "provider")
    patient = sum(1 for s in segments if s.speaker == "patient")
    if provider > patient * 1.5:
        return "provider"
    if patient > provider * 1.5:
        return "patient"
    return None


@dataclass
class SpeakerClassifier:
    confidence_threshold: float = 0.6
    context_window: int = 5
    alternation_bias: float = 0.3
    provider_patterns: list[SpeakerPattern] = field(default_factory=default_provider_patterns)
    patient_patterns: list[SpeakerPattern] = field(default_factory=default_patient_patterns)

    def add_provider_pattern(self, pattern: SpeakerPattern) -> None:
        self.provider_patterns.append(pattern)

    def add_patient_pattern(self, pattern: SpeakerPattern) -> None:
        self.patient_patterns.append(pattern)

    def classify(
        self,
        segment: TranscriptSegment,
        context: Sequence[TranscriptSegment] = (),
    ) -> SpeakerRole:
        scores = self.score(segment, context)
        if scores.best < self.confidence_threshold:
            return "unknown"
        return "provider" if scores.provider > scores.patient else "patient"

    def score(
        self,
        segment: TranscriptSegment,
        context: Sequence[TranscriptSegment] = (),
    ) -> RoleScores:
        total = RoleScores()
        lexical = self.lexical_scores(segment.text)
        total.provider += lexical.provider * _LEXICAL_WEIGHT
        total.patient += lexical.patient * _LEXICAL_WEIGHT

        if context:
            ctx = self.context_scores(segment, context)
            total.provider += ctx.provider * _CONTEXT_WEIGHT
            total.patient += ctx.patient * _CONTEXT_WEIGHT

            temporal = self.temporal_scores(context)
            total.provider += temporal.provider * _TEMPORAL_WEIGHT
            total.patient += temporal.patient * _TEMPORAL_WEIGHT
        return total

    def lexical_scores(self, text: str) -> RoleScores:
        lowered = (text or "").lower()
        provider = sum(self._group_score(lowered, text, p) for p in self.provider_patterns)
        patient = sum(self._group_score(lowered, text, p) for p in self.patient_patterns)
        # Scaled down only when a side exceeds 1.
        scale = max(provider, patient, 1.0)
        return RoleScores(provider=provider / scale, patient=patient / scale)

    @staticmethod
    def _group_score(lowered: str, text: str, pattern: SpeakerPattern) -> float:
        hits = 0.0
        for keyword in pattern.keywords:
            if keyword in lowered:
                hits += _KEYWORD_HIT
        for phrase in pattern.phrases:
            if phrase.search(text or ""):
                hits += _PHRASE_HIT
        return hits * pattern.weight

    def context_scores(
        self,
        segment: TranscriptSegment,
        context: Sequence[TranscriptSegment],
    ) -> RoleScores:
        scores = RoleScores()
        recent = list(context)[-self.context_window :] if self.context_window > 0 else []
        if not recent:
            return scores

        last = recent[-1]
        answering = _opposite(last.speaker)
        if answering is not None:
            if is_question(last.text):
                scores.add(answering, _QUESTION_BIAS)
            if is_response(segment.text):
                scores.add(answering, _RESPONSE_BIAS)

        dominant = _dominant_role(recent)
        if dominant is not None:
            scores.add(dominant, _DOMINANCE_BIAS)
        return scores

    def temporal_scores(self, context: Sequence[TranscriptSegment]) -> RoleScores:
        scores = RoleScores()
        if not context:
            return scores

        answering = _opposite(context[-1].speaker)
        if answering is not None:
            scores.add(answering, self.alternation_bias)

        tail = list(context)[-_BALANCE_WINDOW:]
        provider = sum(1 for s in tail if s.speaker == "provider")
        patient = sum(1 for s in tail if s.speaker == "patient")
        if provider > patient + 1:
            scores.add("patient", _BALANCE_BIAS)
        elif patient > provider + 1:
            scores.add("provider", _BALANCE_BIAS)
        return scores

    def process_batch(self, segments: Sequence[TranscriptSegment]) -> list[TranscriptSegment]:
        """Label `unknown` segments in order, each one seeing the earlier labels as context."""
        processed: list[TranscriptSegment] = []
        for segment in segments:
            if segment.speaker == "unknown":
                context = processed[-self.context_window :] if self.context_window > 0 else []
                segment = segment.model_copy(update={"speaker": self.classify(segment, context)})
            processed.append(segment)
        return processed

    def confidence_score(
        self,
        segment: TranscriptSegment,
        context: Sequence[TranscriptSegment] = (),
    ) -> float:
        lexical = self.lexical_scores(segment.text)
        context_best = self.context_scores(segment, context).best if context else 0.0
        return min(1.0, lexical.best * 0.6 + context_best * 0.4)

    def analyze_conversation(self, segments: Sequence[TranscriptSegment]) -> dict[str, Any]:
        provider = sum(1 for s in segments if s.speaker == "provider")
        patient = sum(1 for s in segments if s.speaker == "patient")
        unknown = sum(1 for s in segments if s.speaker == "unknown")

        confidences = [
            self.confidence_score(segment, segments[max(0, idx - self.context_window) : idx])
            for idx, segment in enumerate(segments)
        ]
        average = sum(confidences) / len(confidences) if confidences else 0.0

        flow = "balanced"
        if provider > patient * 1.5:
            flow = "provider-led"
        elif patient > provider * 1.5:
            flow = "patient-led"

        return {
            "provider_segments": provider,
            "patient_segments": patient,
            "unknown_segments": unknown,
            "average_confidence": average,
            "conversation_flow": flow,
        }
