import asyncio
import dataclasses
import logging
from pathlib import Path

from medscribe import app
from medscribe.internal_core.config import ScribeConfig, load_config
from medscribe.internal_core.session_store import InMemorySessionStore, JsonFileSessionStore
from medscribe.note.llm_client import GeminiLLMClient, OpenAIChatClient
from medscribe.session.capture import BufferedAudioCapture


def _cfg(**overrides) -> ScribeConfig:
    values = dict(
        SCRIBE_GEMINI_API_KEY="",
        SCRIBE_OPENAI_API_KEY="",
        SCRIBE_WHISPER_CPP_BIN="",
        SCRIBE_WHISPER_CPP_STREAM_BIN="",
        SCRIBE_WHISPER_CPP_MODEL="",
        ASR_ENABLE_MOCK=False,
        SCRIBE_LLM_PROVIDER="gemini",
    )
    values.update(overrides)
    return dataclasses.replace(load_config(), **values)


def test_transcription_registry_order_and_availability() -> None:
    orch = app.build_transcription_orchestrator(_cfg(SCRIBE_OPENAI_API_KEY="sk-test"))

    assert orch.backend_names() == ["gemini", "whisper_api", "whisper_cpp"]
    status = {row["name"]: row for row in orch.backend_status()}
    assert status["gemini"]["priority"] == app.PRIORITY_GEMINI
    assert status["gemini"]["is_available"] is False
    assert status["whisper_api"]["is_available"] is True
    assert status["whisper_cpp"]["is_available"] is False


def test_mock_backend_is_opt_in() -> None:
    orch = app.build_transcription_orchestrator(_cfg(ASR_ENABLE_MOCK=True))
    assert orch.backend_names()[-1] == "mock"
    assert orch.is_available("mock") is True


def test_audio_size_cap_applies_to_every_backend() -> None:
    orch = app.build_transcription_orchestrator(_cfg(ASR_MAX_AUDIO_BYTES=1024, ASR_ENABLE_MOCK=True))
    assert all(entry.backend.max_bytes == 1024 for entry in orch._registry)


def test_speaker_classifier_settings_come_from_config() -> None:
    classifier = app.build_speaker_classifier(_cfg(SPEAKER_CONFIDENCE_THRESHOLD=0.3, SPEAKER_CONTEXT_WINDOW=2))
    assert classifier.confidence_threshold == 0.3
    assert classifier.context_window == 2


def test_llm_client_selection() -> None:
    assert app.build_llm_client(_cfg()) is None
    assert isinstance(app.build_llm_client(_cfg(SCRIBE_GEMINI_API_KEY="g")), GeminiLLMClient)
    openai = app.build_llm_client(_cfg(SCRIBE_LLM_PROVIDER="openai", SCRIBE_OPENAI_API_KEY="sk"))
    assert isinstance(openai, OpenAIChatClient)
    assert app.build_documentation_generator(_cfg()).provider_name == "fallback"


def test_build_store_uses_configured_directory(tmp_path: Path) -> None:
    store = app.build_store(_cfg(SCRIBE_STORE_DIR="sessions"), tmp_path)
    assert isinstance(store, JsonFileSessionStore)
    assert (tmp_path / "sessions").is_dir()


def test_session_orchestrator_composition_runs_with_mock_backend() -> None:
    async def run() -> None:
        cfg = _cfg(
            ASR_ENABLE_MOCK=True,
            SCRIBE_REALTIME_TRANSCRIPTION=False,
            SCRIBE_CHUNK_INTERVAL_SEC=3600.0,
            SCRIBE_AUTOSAVE_INTERVAL_SEC=3600.0,
        )
        capture = BufferedAudioCapture(mime_type="audio/webm")
        orch = app.build_session_orchestrator(cfg, capture, store=InMemorySessionStore())

        session = await orch.create_session()
        await orch.start_session(session.id)
        capture.push(b"\x01" * 12000)
        stopped = await orch.stop_session(session.id)

        assert [s.text for s in stopped.transcript] == [
            "How are you feeling today?",
            "I have been experiencing some chest pain.",
        ]
        assert stopped.documentation.soap_note.subjective.chief_complaint == "I have been experiencing some chest pain."
        await orch.dispose()

    asyncio.run(run())


def test_configure_logging_attaches_handlers_once(tmp_path: Path) -> None:
    cfg = _cfg(SCRIBE_LOG_LEVEL="debug", SCRIBE_LOG_DIR=str(tmp_path))
    logger = app.configure_app_logging(cfg)
    handler_count = len(logger.handlers)
    app.configure_app_logging(cfg)

    assert logger.name == "medscribe"
    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == handler_count
    logging.getLogger("medscribe.tests").warning("log line for file handler")
    for handler in logger.handlers:
        handler.flush()
    assert (tmp_path / "medscribe.log").exists()

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
