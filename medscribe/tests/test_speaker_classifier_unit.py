from medscribe.asr.models import TranscriptSegment
from medscribe.asr.speaker_classifier import SpeakerClassifier, SpeakerPattern, is_question, is_response


def _seg(text: str, speaker: str = "unknown", ts: float = 0.0) -> TranscriptSegment:
    return TranscriptSegment(timestamp=ts, speaker=speaker, text=text)


def test_classify_without_context_stays_unknown_below_threshold() -> None:
    classifier = SpeakerClassifier()
    segment = _seg("How are you feeling?")

    scores = classifier.score(segment)
    assert round(scores.provider, 3) == 0.224
    assert classifier.classify(segment) == "unknown"


def test_classify_text_without_patterns_is_never_forced_into_a_role() -> None:
    classifier = SpeakerClassifier()
    segment = _seg("The weather is nice today.")

    assert classifier.lexical_scores(segment.text).best == 0.0
    assert classifier.classify(segment) == "unknown"
    assert classifier.classify(segment, [_seg("Okay.", "provider"), _seg("Fine.", "provider")]) == "unknown"


def test_classify_answer_to_provider_question_as_patient() -> None:
    classifier = SpeakerClassifier()
    context = [_seg("What brings you in today?", "provider")]

    segment = _seg("I have been having chest pain")
    scores = classifier.score(segment, context)
    assert round(scores.patient, 2) == 0.65
    assert classifier.classify(segment, context) == "patient"


def test_classify_clinical_instruction_after_patient_question_as_provider() -> None:
    classifier = SpeakerClassifier()
    context = [_seg("Can you tell me what is wrong?", "patient")]

    segment = _seg("Let me examine you. I recommend treatment.")
    assert classifier.classify(segment, context) == "provider"


def test_threshold_is_configurable() -> None:
    segment = _seg("How are you feeling?")
    assert SpeakerClassifier(confidence_threshold=0.2).classify(segment) == "provider"
    assert SpeakerClassifier(confidence_threshold=0.6).classify(segment) == "unknown"


def test_custom_patterns_extend_lexical_scores() -> None:
    classifier = SpeakerClassifier()
    before = classifier.lexical_scores("Please say ahh for me").provider
    classifier.add_provider_pattern(SpeakerPattern(keywords=("say ahh",), phrases=(), weight=1.0))
    after = classifier.lexical_scores("Please say ahh for me").provider

    assert before == 0.0
    assert after > before


def test_process_batch_feeds_previous_labels_forward() -> None:
    classifier = SpeakerClassifier()
    out = classifier.process_batch(
        [
            _seg("What brings you in today?", "provider", 0.0),
            _seg("I have been having chest pain", "unknown", 2.0),
        ]
    )
    assert [s.speaker for s in out] == ["provider", "patient"]
    assert out[1].text == "I have been having chest pain"


def test_question_and_response_cues() -> None:
    assert is_question("When did it start?")
    assert is_question("Tell me about the headaches")
    assert not is_question("It started on Monday.")
    assert is_response("Yes, since Monday")
    assert not is_response("Since Monday")


def test_analyze_conversation_counts_roles() -> None:
    classifier = SpeakerClassifier()
    summary = classifier.analyze_conversation(
        [
            _seg("What brings you in?", "provider"),
            _seg("My chest hurts.", "patient"),
            _seg("When did it start?", "provider"),
            _seg("Let me check your pulse.", "provider"),
            _seg("Mm.", "unknown"),
        ]
    )
    assert summary["provider_segments"] == 3
    assert summary["patient_segments"] == 1
    assert summary["unknown_segments"] == 1
    assert summary["conversation_flow"] == "provider-led"
    assert 0.0 <= summary["average_confidence"] <= 1.0
