from __future__ import annotations

"""
Incremental clinical documentation from transcript segments.

Design intent:
- One model call drafts or updates the SOAP note, a second extracts clinical entities.
- Model output is untrusted: parse leniently, retry a bounded number of times, then fall back
  to transcript heuristics.
- Callers never see model failures; `generate` and `update` always return documentation.
"""

import json
import logging
from typing import Any, Mapping, Optional, Sequence

from pydantic import ValidationError

from medscribe.asr.models import TranscriptSegment
from medscribe.internal_core.contracts import (
    AssessmentSection,
    ClinicalDocumentation,
    ClinicalEntity,
    Medication,
    ObjectiveSection,
    PlanSection,
    SOAPNote,
    SubjectiveSection,
    VitalSigns,
    utc_now,
)

from .fallback import (
    documentation_confidence,
    fallback_entities,
    fallback_soap,
    merge_entities,
    merge_fallback_into,
    review_suggestions,
    soap_completeness,
)
from .llm_client import LLMClient, LLMError, parse_json_array, parse_json_object

logger = logging.getLogger(__name__)

_ENTITY_TYPES = {"medication", "diagnosis", "symptom", "procedure", "allergy"}

DEFAULT_SOAP_PROMPT = """You are a clinical documentation assistant. Convert the conversation into a SOAP note expressed as a JSON object with these keys:
{
  "subjective": {"chief_complaint": string, "history_of_present_illness": string, "review_of_systems": string},
  "objective": {
    "vital_signs": {"blood_pressure": string, "heart_rate": number | null, "temperature": number | null,
                    "respiratory_rate": number | null, "oxygen_saturation": number | null},
    "physical_exam": string
  },
  "assessment": {"diagnoses": string[], "differential_diagnoses": string[]},
  "plan": {
    "medications": {"name": string, "dosage": string, "frequency": string}[],
    "procedures": string[],
    "follow_up": string,
    "patient_instructions": string
  }
}
Rules:
- Only include facts explicitly stated in the conversation.
- If information is absent, use an empty string, empty array, or null (for vitals) instead of fabricating values.
- Respond with JSON only. Do not include explanations, markdown, or additional text."""

DEFAULT_ENTITY_PROMPT = """Extract clinical entities mentioned explicitly in the text. Respond with a JSON array. Each element must be an object with:
{"type": "medication" | "diagnosis" | "symptom" | "procedure" | "allergy", "value": string, "confidence": number, "context": string}
Rules:
- Only include entities that are clearly stated.
- confidence must be between 0 and 1. Use lower scores if the mention is uncertain.
- context should be a short snippet from the conversation where the entity appears.
- Respond with JSON only. Do not include explanations or extra text."""


def format_transcript(segments: Sequence[TranscriptSegment]) -> str:
    return "\n".join(f"{s.speaker.upper()}: {s.text}" for s in segments)


def _pick(data: Mapping[str, Any], snake: str, camel: str) -> Any:
    value = data.get(snake)
    if value is None:
        value = data.get(camel)
    return value


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


def _number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    return value if isinstance(value, Mapping) else {}


def soap_from_payload(data: Mapping[str, Any]) -> SOAPNote:
    """Map model JSON (snake_case or camelCase keys) onto a SOAPNote."""
    subjective = _section(data, "subjective")
    objective = _section(data, "objective")
    assessment = _section(data, "assessment")
    plan = _section(data, "plan")

    vitals_raw = _pick(objective, "vital_signs", "vitalSigns")
    vitals: Optional[VitalSigns] = None
    if isinstance(vitals_raw, Mapping):
        vitals = VitalSigns(
            blood_pressure=_text(_pick(vitals_raw, "blood_pressure", "bloodPressure")),
            heart_rate=_number(_pick(vitals_raw, "heart_rate", "heartRate")),
            temperature=_number(vitals_raw.get("temperature")),
            respiratory_rate=_number(_pick(vitals_raw, "respiratory_rate", "respiratoryRate")),
            oxygen_saturation=_number(_pick(vitals_raw, "oxygen_saturation", "oxygenSaturation")),
            weight=_number(vitals_raw.get("weight")),
            height=_number(vitals_raw.get("height")),
        )
        if all(v is None for v in vitals.model_dump().values()):
            vitals = None

    medications: list[Medication] = []
    for item in plan.get("medications") or []:
        if isinstance(item, str) and item.strip():
            medications.append(Medication(name=item.strip()))
        elif isinstance(item, Mapping) and _text(item.get("name")):
            medications.append(
                Medication(
                    name=str(item["name"]).strip(),
                    dosage=_text(item.get("dosage")),
                    frequency=_text(item.get("frequency")),
                    route=_text(item.get("route")),
                )
            )

    return SOAPNote(
        subjective=SubjectiveSection(
            chief_complaint=_text(_pick(subjective, "chief_complaint", "chiefComplaint")),
            history_of_present_illness=_text(
                _pick(subjective, "history_of_present_illness", "historyOfPresentIllness")
            ),
            review_of_systems=_text(_pick(subjective, "review_of_systems", "reviewOfSystems")),
        ),
        objective=ObjectiveSection(
            vital_signs=vitals,
            physical_exam=_text(_pick(objective, "physical_exam", "physicalExam")),
        ),
        assessment=AssessmentSection(
            diagnoses=_string_list(assessment.get("diagnoses")),
            differential_diagnoses=_string_list(
                _pick(assessment, "differential_diagnoses", "differentialDiagnoses")
            ),
        ),
        plan=PlanSection(
            medications=medications,
            procedures=_string_list(plan.get("procedures")),
            follow_up=_text(_pick(plan, "follow_up", "followUp")),
            patient_instructions=_text(_pick(plan, "patient_instructions", "patientInstructions")),
        ),
    )


def entities_from_payload(items: Sequence[Any]) -> list[ClinicalEntity]:
    out: list[ClinicalEntity] = []
    for item in items:
        if not isinstance(item, Mapping):
            continue
        entity_type = str(item.get("type") or "").strip().lower()
        value = _text(item.get("value"))
        if entity_type not in _ENTITY_TYPES or not value:
            continue
        confidence = _number(item.get("confidence"))
        out.append(
            ClinicalEntity(
                type=entity_type,  # type: ignore[arg-type]
                value=value,
                confidence=min(1.0, max(0.0, confidence)) if confidence is not None else 0.5,
                context=_text(item.get("context")),
            )
        )
    return out


class DocumentationGenerator:
    def __init__(
        self,
        client: Optional[LLMClient],
        *,
        parse_retries: int = 1,
        soap_prompt: str = DEFAULT_SOAP_PROMPT,
        entity_prompt: str = DEFAULT_ENTITY_PROMPT,
    ) -> None:
        self._client = client
        self._parse_retries = max(0, int(parse_retries))
        self._soap_prompt = soap_prompt
        self._entity_prompt = entity_prompt

    @property
    def provider_name(self) -> str:
        return self._client.name if self._client is not None else "fallback"

    async def generate(self, segments: Sequence[TranscriptSegment]) -> ClinicalDocumentation:
        """Draft documentation for a whole transcript."""
        segments = list(segments)
        if not segments:
            return ClinicalDocumentation()
        conversation = format_transcript(segments)
        prompt = f"{self._soap_prompt}\n\nConversation:\n{conversation}\n\nGenerate a SOAP note in JSON format:"
        soap = await self._soap_or_none(prompt)
        if soap is None:
            logger.warning("documentation_generate fallback provider=%s segments=%s", self.provider_name, len(segments))
            soap = fallback_soap(segments)
        entities = await self._entities(segments)
        return ClinicalDocumentation(soap_note=soap, clinical_entities=entities, last_updated=utc_now())

    async def update(
        self,
        existing: ClinicalDocumentation,
        new_segments: Sequence[TranscriptSegment],
    ) -> ClinicalDocumentation:
        """Fold `new_segments` into `existing`; finalized documentation and empty input are returned as-is."""
        new_segments = list(new_segments)
        if not new_segments or existing.is_finalized:
            return existing

        current = json.dumps(existing.soap_note.model_dump(mode="json"), indent=2)
        prompt = (
            "Update the following SOAP note with new information from the conversation.\n\n"
            f"Current SOAP Note:\n{current}\n\n"
            f"New conversation segments:\n{format_transcript(new_segments)}\n\n"
            "Provide the updated SOAP note in JSON format, incorporating any new relevant information. "
            "Use the same keys as the current note and respond with JSON only."
        )
        soap = await self._soap_or_none(prompt)
        if soap is None:
            logger.warning(
                "documentation_update fallback provider=%s segments=%s", self.provider_name, len(new_segments)
            )
            soap = merge_fallback_into(existing.soap_note, new_segments)
        entities = merge_entities(existing.clinical_entities, await self._entities(new_segments))
        return existing.model_copy(
            update={"soap_note": soap, "clinical_entities": entities, "last_updated": utc_now()}
        )

    def assess(self, doc: ClinicalDocumentation) -> dict[str, Any]:
        return {
            "confidence": documentation_confidence(doc),
            "completeness": soap_completeness(doc.soap_note),
            "suggestions": review_suggestions(doc),
        }

    async def _soap_or_none(self, prompt: str) -> Optional[SOAPNote]:
        if self._client is None:
            return None
        for attempt in range(self._parse_retries + 1):
            try:
                raw = await self._client.complete(prompt, json_mode=True)
            except LLMError as exc:
                logger.warning("documentation_llm failed provider=%s error=%s", self.provider_name, exc)
                return None
            payload = parse_json_object(raw)
            if payload is not None:
                try:
                    return soap_from_payload(payload)
                except ValidationError as exc:
                    logger.warning("documentation_soap invalid attempt=%s errors=%s", attempt + 1, exc.error_count())
                    continue
            logger.warning("documentation_soap unparseable attempt=%s chars=%s", attempt + 1, len(raw or ""))
        return None

    async def _entities(self, segments: Sequence[TranscriptSegment]) -> list[ClinicalEntity]:
        if self._client is None:
            return fallback_entities(segments)
        prompt = (
            f"{self._entity_prompt}\n\nText: {format_transcript(segments)}\n\n"
            "Extract clinical entities in JSON format:"
        )
        for attempt in range(self._parse_retries + 1):
            try:
                raw = await self._client.complete(prompt, json_mode=True)
            except LLMError as exc:
                logger.warning("documentation_entities failed provider=%s error=%s", self.provider_name, exc)
                return fallback_entities(segments)
            items = parse_json_array(raw)
            if items is not None:
                return entities_from_payload(items)
            logger.warning("documentation_entities unparseable attempt=%s chars=%s", attempt + 1, len(raw or ""))
        return fallback_entities(segments)
