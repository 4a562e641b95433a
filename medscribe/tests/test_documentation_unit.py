import asyncio
import json
from typing import List, Union

import httpx

from medscribe.asr.models import TranscriptSegment
from medscribe.internal_core.contracts import ClinicalDocumentation, ClinicalEntity, SOAPNote
from medscribe.note.documentation import DocumentationGenerator, entities_from_payload, soap_from_payload
from medscribe.note.fallback import fallback_soap, merge_fallback_into, review_suggestions, soap_completeness
from medscribe.note.llm_client import GeminiLLMClient, LLMClient, LLMError, OpenAIChatClient, parse_json_array, parse_json_object

SEGMENTS = [
    TranscriptSegment(id="s1", speaker="provider", text="What brings you in today?"),
    TranscriptSegment(id="s2", speaker="patient", text="I have had chest pain since yesterday."),
    TranscriptSegment(id="s3", speaker="patient", text="I took some ibuprofen and aspirin."),
]

SOAP_JSON = json.dumps(
    {
        "subjective": {"chiefComplaint": "Chest pain", "historyOfPresentIllness": "Started yesterday."},
        "objective": {"vitalSigns": {"bloodPressure": "120/80", "heartRate": "72"}},
        "assessment": {"diagnoses": ["Chest wall strain"]},
        "plan": {"medications": ["Ibuprofen", {"name": "Aspirin", "dosage": "81 mg"}], "followUp": "2 weeks"},
    }
)
ENTITY_JSON = json.dumps(
    [
        {"type": "symptom", "value": "chest pain", "confidence": 0.9},
        {"type": "medication", "value": "ibuprofen", "confidence": 1.7},
        {"type": "vital", "value": "72 bpm"},
    ]
)

Reply = Union[str, Exception]


class ScriptedLLM(LLMClient):
    def __init__(self, soap: List[Reply], entities: List[Reply]) -> None:
        self.soap = list(soap)
        self.entities = list(entities)
        self.prompts: List[str] = []

    @property
    def name(self) -> str:
        return "scripted"

    async def complete(self, prompt: str, *, json_mode: bool = False) -> str:
        self.prompts.append(prompt)
        queue = self.entities if prompt.startswith("Extract clinical entities") else self.soap
        reply = queue.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def test_generate_maps_model_output() -> None:
    llm = ScriptedLLM([SOAP_JSON], [ENTITY_JSON])
    doc = asyncio.run(DocumentationGenerator(llm).generate(SEGMENTS))

    soap = doc.soap_note
    assert soap.subjective.chief_complaint == "Chest pain"
    assert soap.objective.vital_signs.blood_pressure == "120/80"
    assert soap.objective.vital_signs.heart_rate == 72.0
    assert soap.assessment.diagnoses == ["Chest wall strain"]
    assert [m.name for m in soap.plan.medications] == ["Ibuprofen", "Aspirin"]
    assert soap.plan.medications[1].dosage == "81 mg"
    assert soap.plan.follow_up == "2 weeks"

    assert [(e.type, e.value) for e in doc.clinical_entities] == [("symptom", "chest pain"), ("medication", "ibuprofen")]
    assert doc.clinical_entities[1].confidence == 1.0
    assert "PATIENT: I have had chest pain since yesterday." in llm.prompts[0]


def test_generate_retries_unparseable_output_then_falls_back() -> None:
    llm = ScriptedLLM(["I cannot help with that.", "still not json"], ["[]"])
    doc = asyncio.run(DocumentationGenerator(llm, parse_retries=1).generate(SEGMENTS))

    assert len([p for p in llm.prompts if not p.startswith("Extract")]) == 2
    assert doc.soap_note.subjective.chief_complaint == "I have had chest pain since yesterday."
    assert doc.clinical_entities == []


def test_generate_accepts_json_wrapped_in_prose() -> None:
    llm = ScriptedLLM([f"Here is the note:\n```json\n{SOAP_JSON}\n```"], ['{"entities": []}'])
    doc = asyncio.run(DocumentationGenerator(llm, parse_retries=0).generate(SEGMENTS))
    assert doc.soap_note.subjective.chief_complaint == "Chest pain"


def test_generate_falls_back_when_model_is_unreachable() -> None:
    llm = ScriptedLLM([LLMError("HTTP 503")], [LLMError("HTTP 503")])
    doc = asyncio.run(DocumentationGenerator(llm).generate(SEGMENTS))

    assert doc.soap_note.subjective.chief_complaint == "I have had chest pain since yesterday."
    assert [m.name for m in doc.soap_note.plan.medications] == ["ibuprofen", "aspirin"]
    assert {e.value for e in doc.clinical_entities} == {"ibuprofen", "aspirin"}
    assert all(e.confidence == 0.4 for e in doc.clinical_entities)


def test_generate_without_client_uses_heuristics() -> None:
    generator = DocumentationGenerator(None)
    assert generator.provider_name == "fallback"

    doc = asyncio.run(generator.generate(SEGMENTS))
    assert doc.soap_note.subjective.history_of_present_illness == "I have had chest pain since yesterday."

    empty = asyncio.run(generator.generate([]))
    assert empty.soap_note == SOAPNote()
    assert empty.clinical_entities == []


def test_update_merges_into_existing_documentation() -> None:
    existing = ClinicalDocumentation(
        soap_note=soap_from_payload(json.loads(SOAP_JSON)),
        clinical_entities=[ClinicalEntity(type="symptom", value="Chest Pain", confidence=0.8)],
    )
    updated_soap = json.loads(SOAP_JSON)
    updated_soap["plan"]["followUp"] = "1 week"
    llm = ScriptedLLM([json.dumps(updated_soap)], [ENTITY_JSON])

    new = [TranscriptSegment(id="s4", speaker="provider", text="Let's follow up in one week.")]
    doc = asyncio.run(DocumentationGenerator(llm).update(existing, new))

    assert doc.soap_note.plan.follow_up == "1 week"
    assert [(e.type, e.value) for e in doc.clinical_entities] == [("symptom", "Chest Pain"), ("medication", "ibuprofen")]
    assert "Current SOAP Note:" in llm.prompts[0]
    assert "PROVIDER: Let's follow up in one week." in llm.prompts[0]
    assert doc.last_updated >= existing.last_updated


def test_update_returns_existing_for_empty_or_finalized_input() -> None:
    llm = ScriptedLLM([], [])
    generator = DocumentationGenerator(llm)
    existing = ClinicalDocumentation()
    finalized = ClinicalDocumentation(is_finalized=True)

    assert asyncio.run(generator.update(existing, [])) is existing
    assert asyncio.run(generator.update(finalized, SEGMENTS)) is finalized
    assert llm.prompts == []


def test_update_fallback_fills_gaps_only() -> None:
    existing_note = fallback_soap(SEGMENTS[:2])
    new = [TranscriptSegment(id="s5", speaker="patient", text="The pain gets worse with lisinopril.")]

    merged = merge_fallback_into(existing_note, new)
    assert merged.subjective.chief_complaint == "I have had chest pain since yesterday."
    hpi = merged.subjective.history_of_present_illness
    assert hpi.startswith("I have had chest pain since yesterday.")
    assert hpi.endswith("The pain gets worse with lisinopril.")
    assert [m.name for m in merged.plan.medications] == ["lisinopril"]
    assert existing_note.plan.medications == []


def test_assess_reports_completeness_and_suggestions() -> None:
    generator = DocumentationGenerator(None)
    doc = ClinicalDocumentation(soap_note=soap_from_payload(json.loads(SOAP_JSON)))

    report = generator.assess(doc)
    assert report["completeness"] == soap_completeness(doc.soap_note) == 6 / 8
    assert report["confidence"] == 6 / 8
    assert report["suggestions"] == []

    assert review_suggestions(ClinicalDocumentation()) == [
        "Consider adding a clear chief complaint",
        "No diagnoses identified - review assessment section",
        "Consider adding vital signs to objective section",
        "Consider adding follow-up instructions",
    ]


def test_payload_helpers_are_lenient() -> None:
    soap = soap_from_payload({"objective": {"vital_signs": {"heart_rate": "fast"}}, "plan": {"medications": [" ", 3]}})
    assert soap.objective.vital_signs is None
    assert soap.plan.medications == []

    entities = entities_from_payload(["not a dict", {"type": "Diagnosis", "value": " Migraine "}])
    assert [(e.type, e.value, e.confidence) for e in entities] == [("diagnosis", "Migraine", 0.5)]

    assert parse_json_object('noise {"a": {"b": "}"}} trailing') == {"a": {"b": "}"}}
    assert parse_json_array('{"items": [1, 2]}') == [1, 2]
    assert parse_json_array("nothing") is None


def test_gemini_llm_client_reads_candidate_text() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": '{"ok": true}'}]}}]})

    client = GeminiLLMClient("g-key", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    text = asyncio.run(client.complete("hello", json_mode=True))

    assert text == '{"ok": true}'
    assert seen["body"]["generationConfig"]["responseMimeType"] == "application/json"


def test_openai_client_raises_llm_error_on_http_failure() -> None:
    handler = lambda request: httpx.Response(500, text="boom")
    client = OpenAIChatClient("sk-key", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    try:
        asyncio.run(client.complete("hello"))
    except LLMError as exc:
        assert "500" in str(exc)
    else:
        raise AssertionError("expected LLMError")
