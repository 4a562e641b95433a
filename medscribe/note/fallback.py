from __future__ import annotations

"""
Heuristic SOAP drafting used when no model output can be trusted.

Design intent:
- Produce something reviewable from the transcript alone, never invent findings.
- Keep rules explicit and conservative (patient statements, symptom keywords, drug names).
"""

import re
from typing import Iterable, Sequence

from medscribe.asr.models import TranscriptSegment
from medscribe.internal_core.contracts import (
    ClinicalDocumentation,
    ClinicalEntity,
    Medication,
    PlanSection,
    SOAPNote,
    SubjectiveSection,
)

_SYMPTOM_KEYWORDS = ("pain", "hurt", "ache", "feel", "nausea", "dizzy", "tired", "fever")
_MAX_HPI_STATEMENTS = 3
_MEDICATION_RES = (
    re.compile(r"\b\w+cillin\b", flags=re.IGNORECASE),
    re.compile(r"\b\w+pril\b", flags=re.IGNORECASE),
    re.compile(r"\bibuprofen\b", flags=re.IGNORECASE),
    re.compile(r"\btylenol\b", flags=re.IGNORECASE),
    re.compile(r"\baspirin\b", flags=re.IGNORECASE),
    re.compile(r"\bmetformin\b", flags=re.IGNORECASE),
)


def chief_complaint(segments: Sequence[TranscriptSegment]) -> str:
    patient = [s for s in segments if s.speaker == "patient"]
    if not patient:
        return ""
    for segment in patient:
        if len(segment.text) > 10:
            return segment.text
    return patient[0].text


def symptom_statements(segments: Sequence[TranscriptSegment]) -> list[str]:
    out: list[str] = []
    for segment in segments:
        if segment.speaker != "patient":
            continue
        lowered = segment.text.lower()
        if any(keyword in lowered for keyword in _SYMPTOM_KEYWORDS):
            out.append(segment.text)
        if len(out) >= _MAX_HPI_STATEMENTS:
            break
    return out


def mentioned_medications(segments: Iterable[TranscriptSegment]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for segment in segments:
        for pattern in _MEDICATION_RES:
            for match in pattern.findall(segment.text):
                key = match.lower()
                if key in seen:
                    continue
                seen.add(key)
                out.append(match)
    return out


def fallback_soap(segments: Sequence[TranscriptSegment]) -> SOAPNote:
    return SOAPNote(
        subjective=SubjectiveSection(
            chief_complaint=chief_complaint(segments) or None,
            history_of_present_illness=". ".join(symptom_statements(segments)) or None,
        ),
        plan=PlanSection(medications=[Medication(name=name) for name in mentioned_medications(segments)]),
    )


def fallback_entities(segments: Sequence[TranscriptSegment]) -> list[ClinicalEntity]:
    entities: list[ClinicalEntity] = []
    for name in mentioned_medications(segments):
        context = next((s.text for s in segments if name.lower() in s.text.lower()), None)
        entities.append(ClinicalEntity(type="medication", value=name, confidence=0.4, context=context))
    return entities


def merge_fallback_into(existing: SOAPNote, new_segments: Sequence[TranscriptSegment]) -> SOAPNote:
    """Fill gaps in `existing` from `new_segments` without overwriting anything already written."""
    draft = fallback_soap(new_segments)
    note = existing.model_copy(deep=True)

    if not note.subjective.chief_complaint and draft.subjective.chief_complaint:
        note.subjective.chief_complaint = draft.subjective.chief_complaint
    if draft.subjective.history_of_present_illness:
        current = note.subjective.history_of_present_illness
        note.subjective.history_of_present_illness = (
            f"{current}. {draft.subjective.history_of_present_illness}" if current else draft.subjective.history_of_present_illness
        )

    known = {m.name.lower() for m in note.plan.medications}
    for medication in draft.plan.medications:
        if medication.name.lower() not in known:
            note.plan.medications.append(medication)
            known.add(medication.name.lower())
    return note


def merge_entities(existing: Sequence[ClinicalEntity], incoming: Sequence[ClinicalEntity]) -> list[ClinicalEntity]:
    merged = list(existing)
    keys = {(e.type, e.value.strip().lower()) for e in merged}
    for entity in incoming:
        key = (entity.type, entity.value.strip().lower())
        if key in keys:
            continue
        keys.add(key)
        merged.append(entity)
    return merged


def soap_completeness(note: SOAPNote) -> float:
    vitals = note.objective.vital_signs
    checks = [
        bool(note.subjective.chief_complaint),
        bool(note.subjective.history_of_present_illness),
        bool(note.subjective.review_of_systems),
        bool(note.objective.physical_exam),
        vitals is not None and any(v is not None for v in vitals.model_dump().values()),
        bool(note.assessment.diagnoses),
        bool(note.plan.medications),
        bool(note.plan.follow_up or note.plan.patient_instructions),
    ]
    return sum(1 for ok in checks if ok) / len(checks)


def documentation_confidence(doc: ClinicalDocumentation) -> float:
    scores = [soap_completeness(doc.soap_note)]
    if doc.clinical_entities:
        scores.append(sum(e.confidence for e in doc.clinical_entities) / len(doc.clinical_entities))
    return sum(scores) / len(scores)


def review_suggestions(doc: ClinicalDocumentation) -> list[str]:
    note = doc.soap_note
    out: list[str] = []
    if not note.subjective.chief_complaint:
        out.append("Consider adding a clear chief complaint")
    if not note.assessment.diagnoses:
        out.append("No diagnoses identified - review assessment section")
    vitals = note.objective.vital_signs
    if vitals is None or all(v is None for v in vitals.model_dump().values()):
        out.append("Consider adding vital signs to objective section")
    if not note.plan.follow_up:
        out.append("Consider adding follow-up instructions")
    return out
