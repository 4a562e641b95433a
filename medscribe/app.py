from __future__ import annotations

"""
Composition root: build orchestrators from a `ScribeConfig`.

Design intent:
- Every instance is created here and handed down; nothing in the package is a module-level singleton.
- Backends without credentials or binaries are still registered; the registry marks them unavailable.
"""

import logging
from pathlib import Path
from typing import Optional

from medscribe.asr.speaker_classifier import SpeakerClassifier
from medscribe.internal_core.asr import (
    GeminiBackend,
    MockBackend,
    TranscriptionBackend,
    TranscriptionOrchestrator,
    WhisperApiBackend,
    WhisperCppBackend,
)
from medscribe.internal_core.config import ScribeConfig
from medscribe.internal_core.logging_setup import configure_logging
from medscribe.internal_core.session_store import JsonFileSessionStore, SessionStore
from medscribe.note.documentation import DocumentationGenerator
from medscribe.note.llm_client import GeminiLLMClient, LLMClient, OpenAIChatClient
from medscribe.session.capture import AudioCapture
from medscribe.session.orchestrator import SessionOrchestrator

logger = logging.getLogger(__name__)

# Higher priority is tried first.
PRIORITY_GEMINI = 3
PRIORITY_WHISPER_API = 2
PRIORITY_WHISPER_CPP = 1
PRIORITY_MOCK = 0


def build_speaker_classifier(cfg: ScribeConfig) -> SpeakerClassifier:
    return SpeakerClassifier(
        confidence_threshold=cfg.SPEAKER_CONFIDENCE_THRESHOLD,
        context_window=cfg.SPEAKER_CONTEXT_WINDOW,
        alternation_bias=cfg.SPEAKER_ALTERNATION_BIAS,
    )


def _cap_audio_size(backend: TranscriptionBackend, cfg: ScribeConfig) -> TranscriptionBackend:
    if cfg.ASR_MAX_AUDIO_BYTES > 0:
        backend.max_bytes = min(backend.max_bytes, int(cfg.ASR_MAX_AUDIO_BYTES))
    return backend


def build_transcription_orchestrator(cfg: ScribeConfig) -> TranscriptionOrchestrator:
    orchestrator = TranscriptionOrchestrator(build_speaker_classifier(cfg), timeout_sec=cfg.ASR_TIMEOUT_SEC)
    backends = [
        (
            GeminiBackend(
                cfg.SCRIBE_GEMINI_API_KEY,
                model=cfg.SCRIBE_GEMINI_MODEL,
                language=cfg.ASR_LANGUAGE,
                timeout=cfg.ASR_TIMEOUT_SEC,
            ),
            PRIORITY_GEMINI,
        ),
        (
            WhisperApiBackend(
                cfg.SCRIBE_OPENAI_API_KEY,
                model=cfg.SCRIBE_WHISPER_API_MODEL,
                language=cfg.ASR_LANGUAGE,
                max_retries=cfg.ASR_MAX_RETRIES,
                retry_delay_sec=cfg.ASR_RETRY_DELAY_SEC,
                timeout=cfg.ASR_TIMEOUT_SEC,
            ),
            PRIORITY_WHISPER_API,
        ),
        (
            WhisperCppBackend(
                cfg.SCRIBE_WHISPER_CPP_BIN,
                cfg.SCRIBE_WHISPER_CPP_MODEL,
                stream_bin_path=cfg.SCRIBE_WHISPER_CPP_STREAM_BIN,
                no_gpu=cfg.SCRIBE_WHISPER_CPP_NO_GPU,
                language=cfg.ASR_LANGUAGE,
            ),
            PRIORITY_WHISPER_CPP,
        ),
    ]
    if cfg.ASR_ENABLE_MOCK:
        backends.append((MockBackend(language=cfg.ASR_LANGUAGE), PRIORITY_MOCK))

    for backend, priority in backends:
        orchestrator.register(_cap_audio_size(backend, cfg), priority)
    return orchestrator


def build_llm_client(cfg: ScribeConfig) -> Optional[LLMClient]:
    provider = cfg.SCRIBE_LLM_PROVIDER.strip().lower()
    if provider == "gemini" and cfg.SCRIBE_GEMINI_API_KEY:
        return GeminiLLMClient(
            cfg.SCRIBE_GEMINI_API_KEY,
            model=cfg.SCRIBE_LLM_MODEL or cfg.SCRIBE_GEMINI_MODEL,
            temperature=cfg.SCRIBE_LLM_TEMPERATURE,
            max_tokens=cfg.SCRIBE_LLM_MAX_TOKENS,
        )
    if provider == "openai" and cfg.SCRIBE_OPENAI_API_KEY:
        return OpenAIChatClient(
            cfg.SCRIBE_OPENAI_API_KEY,
            model=cfg.SCRIBE_LLM_MODEL or "gpt-4",
            temperature=cfg.SCRIBE_LLM_TEMPERATURE,
            max_tokens=cfg.SCRIBE_LLM_MAX_TOKENS,
        )
    logger.warning("documentation_llm disabled provider=%s; heuristic notes only", provider or "none")
    return None


def build_documentation_generator(cfg: ScribeConfig) -> DocumentationGenerator:
    return DocumentationGenerator(build_llm_client(cfg), parse_retries=cfg.SCRIBE_LLM_PARSE_RETRIES)


def build_store(cfg: ScribeConfig, repo_root: Optional[Path] = None) -> SessionStore:
    return JsonFileSessionStore(cfg.store_dir_path(repo_root or Path.cwd()))


def build_session_orchestrator(
    cfg: ScribeConfig,
    capture: AudioCapture,
    *,
    store: Optional[SessionStore] = None,
    transcription: Optional[TranscriptionOrchestrator] = None,
    documentation: Optional[DocumentationGenerator] = None,
) -> SessionOrchestrator:
    return SessionOrchestrator(
        store or build_store(cfg),
        capture,
        transcription or build_transcription_orchestrator(cfg),
        documentation or build_documentation_generator(cfg),
        cfg,
    )


def configure_app_logging(cfg: ScribeConfig) -> logging.Logger:
    return configure_logging(cfg.SCRIBE_LOG_LEVEL, cfg.SCRIBE_LOG_DIR or None)
