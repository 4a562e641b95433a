from __future__ import annotations

import datetime as _dt
import uuid
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from medscribe.asr.models import TranscriptSegment

SessionStatus = Literal["active", "paused", "completed"]
ProcessingStatus = Literal["pending", "processing", "completed", "error"]
EntityType = Literal["medication", "diagnosis", "symptom", "procedure", "allergy"]


def utc_now() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def new_session_id() -> str:
    return f"session_{uuid.uuid4().hex}"


class VitalSigns(BaseModel):
    model_config = ConfigDict(extra="forbid")

    blood_pressure: Optional[str] = None
    heart_rate: Optional[float] = None
    temperature: Optional[float] = None
    respiratory_rate: Optional[float] = None
    oxygen_saturation: Optional[float] = None
    weight: Optional[float] = None
    height: Optional[float] = None


class Medication(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    route: Optional[str] = None


class SubjectiveSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    chief_complaint: Optional[str] = None
    history_of_present_illness: Optional[str] = None
    review_of_systems: Optional[str] = None


class ObjectiveSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    vital_signs: Optional[VitalSigns] = None
    physical_exam: Optional[str] = None


class AssessmentSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    diagnoses: List[str] = Field(default_factory=list)
    differential_diagnoses: List[str] = Field(default_factory=list)


class PlanSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    medications: List[Medication] = Field(default_factory=list)
    procedures: List[str] = Field(default_factory=list)
    follow_up: Optional[str] = None
    patient_instructions: Optional[str] = None


class SOAPNote(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subjective: SubjectiveSection = Field(default_factory=SubjectiveSection)
    objective: ObjectiveSection = Field(default_factory=ObjectiveSection)
    assessment: AssessmentSection = Field(default_factory=AssessmentSection)
    plan: PlanSection = Field(default_factory=PlanSection)


class ClinicalEntity(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: EntityType
    value: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    context: Optional[str] = None


class ClinicalDocumentation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    soap_note: SOAPNote = Field(default_factory=SOAPNote)
    clinical_entities: List[ClinicalEntity] = Field(default_factory=list)
    last_updated: _dt.datetime = Field(default_factory=utc_now)
    is_finalized: bool = False
    clinical_note: Optional[str] = None


class PatientContext(BaseModel):
    model_config = ConfigDict(extra="forbid")

    identifier: Optional[str] = None
    visit_type: Optional[str] = None


class SessionMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    duration: float = Field(default=0.0, ge=0.0)
    processing_status: ProcessingStatus = "pending"


class Session(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=new_session_id, min_length=1)
    created_at: _dt.datetime = Field(default_factory=utc_now)
    updated_at: _dt.datetime = Field(default_factory=utc_now)
    # "completed" doubles as the not-yet-started sentinel for new sessions.
    status: SessionStatus = "completed"
    patient_context: Optional[PatientContext] = None
    transcript: List[TranscriptSegment] = Field(default_factory=list)
    documentation: ClinicalDocumentation = Field(default_factory=ClinicalDocumentation)
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)


class DateRange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start: _dt.datetime
    end: _dt.datetime


class SessionFilter(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Optional[SessionStatus] = None
    date_range: Optional[DateRange] = None
    patient_identifier: Optional[str] = None
    visit_type: Optional[str] = None
    min_duration: Optional[float] = None
    max_duration: Optional[float] = None


SortField = Literal["date", "duration", "status", "patient_id"]


class PaginationOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1)
    sort_by: SortField = "date"
    sort_order: Literal["asc", "desc"] = "desc"
    filter: Optional[SessionFilter] = None
    search_query: Optional[str] = None


class SessionPage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    items: List[Session] = Field(default_factory=list)
    total_count: int = 0
    current_page: int = 1
    total_pages: int = 0
    has_next_page: bool = False
    has_previous_page: bool = False
