import datetime as dt

from medscribe.asr.models import TranscriptSegment
from medscribe.internal_core.contracts import (
    ClinicalDocumentation,
    ClinicalEntity,
    DateRange,
    PaginationOptions,
    PatientContext,
    Session,
    SessionFilter,
    SessionMetadata,
)
from medscribe.note.documentation import soap_from_payload
from medscribe.session import query


def _at(day: int) -> dt.datetime:
    return dt.datetime(2024, 3, day, 9, 0, tzinfo=dt.timezone.utc)


def _sessions() -> list[Session]:
    return [
        Session(
            id="session_a",
            created_at=_at(1),
            updated_at=_at(1),
            patient_context=PatientContext(identifier="MRN-1001", visit_type="Follow-up"),
            transcript=[TranscriptSegment(id="a1", speaker="patient", text="My chest hurts when I climb stairs.")],
            documentation=ClinicalDocumentation(
                soap_note=soap_from_payload(
                    {"assessment": {"diagnoses": ["Angina"]}, "plan": {"medications": ["Nitroglycerin"]}}
                ),
                clinical_entities=[ClinicalEntity(type="symptom", value="chest pain")],
            ),
            metadata=SessionMetadata(duration=600.0),
        ),
        Session(
            id="session_b",
            created_at=_at(5),
            updated_at=_at(5),
            status="paused",
            patient_context=PatientContext(identifier="MRN-2002", visit_type="new patient"),
            transcript=[TranscriptSegment(id="b1", speaker="provider", text="Any headaches this week?")],
            metadata=SessionMetadata(duration=120.0),
        ),
        Session(id="session_c", created_at=_at(10), updated_at=_at(10), metadata=SessionMetadata(duration=60.0)),
    ]


def test_filter_by_status_date_and_patient() -> None:
    sessions = _sessions()
    assert [s.id for s in query.filter_sessions(sessions, SessionFilter(status="paused"))] == ["session_b"]

    window = SessionFilter(date_range=DateRange(start=_at(2), end=_at(10)))
    assert [s.id for s in query.filter_sessions(sessions, window)] == ["session_b", "session_c"]

    by_patient = SessionFilter(patient_identifier="mrn-10")
    assert [s.id for s in query.filter_sessions(sessions, by_patient)] == ["session_a"]

    by_visit = SessionFilter(visit_type="follow-UP")
    assert [s.id for s in query.filter_sessions(sessions, by_visit)] == ["session_a"]

    by_duration = SessionFilter(min_duration=100.0, max_duration=600.0)
    assert [s.id for s in query.filter_sessions(sessions, by_duration)] == ["session_a", "session_b"]
    assert len(query.filter_sessions(sessions, None)) == 3


def test_search_requires_every_term() -> None:
    sessions = _sessions()
    assert [s.id for s in query.search_sessions(sessions, "CHEST stairs")] == ["session_a"]
    assert [s.id for s in query.search_sessions(sessions, "angina")] == ["session_a"]
    assert [s.id for s in query.search_sessions(sessions, "headaches provider")] == ["session_b"]
    assert query.search_sessions(sessions, "chest headaches") == []
    assert len(query.search_sessions(sessions, "   ")) == 3


def test_paginate_sorts_and_reports_pages() -> None:
    sessions = _sessions()

    first = query.paginate(sessions, PaginationOptions(page=1, limit=2))
    assert [s.id for s in first.items] == ["session_c", "session_b"]
    assert (first.total_count, first.total_pages) == (3, 2)
    assert first.has_next_page is True
    assert first.has_previous_page is False

    second = query.paginate(sessions, PaginationOptions(page=2, limit=2))
    assert [s.id for s in second.items] == ["session_a"]
    assert second.has_next_page is False
    assert second.has_previous_page is True

    by_duration = query.paginate(sessions, PaginationOptions(limit=10, sort_by="duration", sort_order="asc"))
    assert [s.id for s in by_duration.items] == ["session_c", "session_b", "session_a"]

    empty = query.paginate([], PaginationOptions())
    assert (empty.total_count, empty.total_pages, empty.has_next_page) == (0, 0, False)


def test_sort_by_patient_puts_missing_identifiers_first_ascending() -> None:
    ordered = query.sort_sessions(_sessions(), "patient_id", "asc")
    assert [s.id for s in ordered] == ["session_c", "session_a", "session_b"]


def test_search_suggestions_collects_clinical_terms() -> None:
    suggestions = query.search_suggestions(_sessions())
    assert suggestions == ["Angina", "Nitroglycerin", "chest pain", "Follow-up", "new patient"]
    assert query.search_suggestions(_sessions(), limit=2) == ["Angina", "Nitroglycerin"]
