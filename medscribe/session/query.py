from __future__ import annotations

import math
from typing import Iterable, List, Optional, Sequence

from medscribe.internal_core.contracts import (
    PaginationOptions,
    Session,
    SessionFilter,
    SessionPage,
    SortField,
)

_MIN_SUGGESTION_CHARS = 4


def matches_filter(session: Session, flt: Optional[SessionFilter]) -> bool:
    if flt is None:
        return True
    if flt.status is not None and session.status != flt.status:
        return False
    if flt.date_range is not None:
        if session.created_at < flt.date_range.start or session.created_at > flt.date_range.end:
            return False
    ctx = session.patient_context
    if flt.patient_identifier:
        identifier = (ctx.identifier if ctx else None) or ""
        if flt.patient_identifier.lower() not in identifier.lower():
            return False
    if flt.visit_type:
        visit_type = (ctx.visit_type if ctx else None) or ""
        if flt.visit_type.lower() != visit_type.lower():
            return False
    duration = session.metadata.duration
    if flt.min_duration is not None and duration < flt.min_duration:
        return False
    if flt.max_duration is not None and duration > flt.max_duration:
        return False
    return True


def filter_sessions(sessions: Iterable[Session], flt: Optional[SessionFilter]) -> List[Session]:
    return [s for s in sessions if matches_filter(s, flt)]


def searchable_content(session: Session) -> str:
    """Everything a free-text search should see, lowercased and space-joined."""
    parts: List[str] = [session.id, session.status]
    if session.patient_context is not None:
        parts.extend(p for p in (session.patient_context.identifier, session.patient_context.visit_type) if p)
    for segment in session.transcript:
        parts.append(segment.text)
        parts.append(segment.speaker)

    soap = session.documentation.soap_note
    parts.extend(
        p
        for p in (
            soap.subjective.chief_complaint,
            soap.subjective.history_of_present_illness,
            soap.subjective.review_of_systems,
            soap.objective.physical_exam,
            soap.plan.follow_up,
            soap.plan.patient_instructions,
        )
        if p
    )
    if soap.objective.vital_signs is not None:
        parts.extend(str(v) for v in soap.objective.vital_signs.model_dump().values() if v is not None)
    parts.extend(soap.assessment.diagnoses)
    parts.extend(soap.assessment.differential_diagnoses)
    for med in soap.plan.medications:
        parts.extend(p for p in (med.name, med.dosage, med.frequency, med.route) if p)
    parts.extend(soap.plan.procedures)
    parts.extend(e.value for e in session.documentation.clinical_entities if e.value)
    if session.documentation.clinical_note:
        parts.append(session.documentation.clinical_note)
    return " ".join(parts).lower()


def search_sessions(sessions: Iterable[Session], query: str) -> List[Session]:
    """Keep sessions whose content contains every whitespace-separated term (case-insensitive)."""
    terms = [t.lower() for t in (query or "").split() if t]
    sessions = list(sessions)
    if not terms:
        return sessions
    out: List[Session] = []
    for session in sessions:
        content = searchable_content(session)
        if all(term in content for term in terms):
            out.append(session)
    return out


def _sort_key(sort_by: SortField):
    if sort_by == "duration":
        return lambda s: s.metadata.duration
    if sort_by == "status":
        return lambda s: s.status
    if sort_by == "patient_id":
        return lambda s: (s.patient_context.identifier if s.patient_context else None) or ""
    return lambda s: s.created_at


def sort_sessions(sessions: Iterable[Session], sort_by: SortField = "date", sort_order: str = "desc") -> List[Session]:
    return sorted(sessions, key=_sort_key(sort_by), reverse=sort_order == "desc")


def paginate(sessions: Sequence[Session], options: PaginationOptions) -> SessionPage:
    ordered = sort_sessions(sessions, options.sort_by, options.sort_order)
    total = len(ordered)
    total_pages = math.ceil(total / options.limit)
    start = (options.page - 1) * options.limit
    return SessionPage(
        items=ordered[start : start + options.limit],
        total_count=total,
        current_page=options.page,
        total_pages=total_pages,
        has_next_page=options.page < total_pages,
        has_previous_page=options.page > 1,
    )


def search_suggestions(sessions: Iterable[Session], limit: int = 10) -> List[str]:
    """Diagnoses, medications, symptoms and visit types seen so far, first occurrence first."""
    seen: dict[str, None] = {}

    def _add(value: Optional[str]) -> None:
        if value and len(value) >= _MIN_SUGGESTION_CHARS:
            seen.setdefault(value, None)

    for session in sessions:
        soap = session.documentation.soap_note
        for diagnosis in soap.assessment.diagnoses:
            _add(diagnosis)
        for med in soap.plan.medications:
            _add(med.name)
        for entity in session.documentation.clinical_entities:
            if entity.type == "symptom":
                _add(entity.value)
        if session.patient_context is not None:
            _add(session.patient_context.visit_type)
    return list(seen)[: max(0, int(limit))]
