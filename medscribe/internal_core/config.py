from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _project_root() -> Path:
    # medscribe/internal_core/config.py -> medscribe -> project root
    return Path(__file__).resolve().parents[2]


def _resolve_default_path(candidates: list[Path]) -> str:
    for candidate in candidates:
        try:
            resolved = candidate.expanduser().resolve()
        except OSError:
            continue
        if resolved.exists():
            return str(resolved)
    # Keep deterministic fallback even when file is absent.
    if candidates:
        return str(candidates[0].expanduser().resolve())
    return ""


def _model_root_from_env() -> Optional[Path]:
    raw = os.getenv("SCRIBE_MODEL_ROOT", "").strip()
    if not raw:
        return None
    try:
        return Path(raw).expanduser().resolve()
    except OSError:
        return None


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


@dataclass(frozen=True)
class ScribeConfig:
    SCRIBE_AUTOSAVE_INTERVAL_SEC: float
    SCRIBE_CHUNK_INTERVAL_SEC: float
    SCRIBE_CHUNK_MIN_BYTES: int
    SCRIBE_CHUNK_FRACTION: float
    SCRIBE_CHUNK_SINGLE_FLIGHT: bool
    SCRIBE_REALTIME_TRANSCRIPTION: bool
    SCRIBE_REALTIME_DOCUMENTATION: bool
    SCRIBE_STORE_DIR: str
    SCRIBE_LOG_LEVEL: str
    SCRIBE_LOG_DIR: str
    ASR_TIMEOUT_SEC: float
    ASR_MAX_RETRIES: int
    ASR_RETRY_DELAY_SEC: float
    ASR_LANGUAGE: str
    ASR_MAX_AUDIO_BYTES: int
    ASR_SILENCE_RMS: float
    ASR_ENABLE_MOCK: bool
    SCRIBE_GEMINI_API_KEY: str
    SCRIBE_GEMINI_MODEL: str
    SCRIBE_OPENAI_API_KEY: str
    SCRIBE_WHISPER_API_MODEL: str
    SCRIBE_WHISPER_CPP_BIN: str
    SCRIBE_WHISPER_CPP_STREAM_BIN: str
    SCRIBE_WHISPER_CPP_MODEL: str
    SCRIBE_WHISPER_CPP_NO_GPU: bool
    SCRIBE_LLM_PROVIDER: str
    SCRIBE_LLM_MODEL: str
    SCRIBE_LLM_MAX_TOKENS: int
    SCRIBE_LLM_TEMPERATURE: float
    SCRIBE_LLM_PARSE_RETRIES: int
    SPEAKER_CONFIDENCE_THRESHOLD: float
    SPEAKER_CONTEXT_WINDOW: int
    SPEAKER_ALTERNATION_BIAS: float

    def store_dir_path(self, repo_root: Path) -> Path:
        return (repo_root / self.SCRIBE_STORE_DIR).resolve()


def load_config() -> ScribeConfig:
    project_root = _project_root()
    model_root = _model_root_from_env()

    model_prefixes: list[Path] = []
    if model_root is not None:
        model_prefixes.append(model_root)
    model_prefixes.extend([project_root, project_root / "models", project_root.parent])

    default_whisper_bin = _resolve_default_path(
        [base / "whisper.cpp" / "build" / "bin" / "whisper-cli" for base in model_prefixes]
    )
    default_whisper_stream_bin = _resolve_default_path(
        [base / "whisper.cpp" / "build" / "bin" / "whisper-stream" for base in model_prefixes]
    )
    default_whisper_model = _resolve_default_path(
        [
            base / "whisper.cpp" / "models" / "ggml-small.en.bin"
            for base in model_prefixes
        ] + [
            base / "ggml-small.en.bin" for base in model_prefixes
        ]
    )

    return ScribeConfig(
        SCRIBE_AUTOSAVE_INTERVAL_SEC=_getenv_float("SCRIBE_AUTOSAVE_INTERVAL_SEC", 5.0),
        SCRIBE_CHUNK_INTERVAL_SEC=_getenv_float("SCRIBE_CHUNK_INTERVAL_SEC", 15.0),
        SCRIBE_CHUNK_MIN_BYTES=_getenv_int("SCRIBE_CHUNK_MIN_BYTES", 4000),
        SCRIBE_CHUNK_FRACTION=_getenv_float("SCRIBE_CHUNK_FRACTION", 0.3),
        SCRIBE_CHUNK_SINGLE_FLIGHT=_getenv_bool("SCRIBE_CHUNK_SINGLE_FLIGHT", True),
        SCRIBE_REALTIME_TRANSCRIPTION=_getenv_bool("SCRIBE_REALTIME_TRANSCRIPTION", True),
        SCRIBE_REALTIME_DOCUMENTATION=_getenv_bool("SCRIBE_REALTIME_DOCUMENTATION", True),
        SCRIBE_STORE_DIR=_getenv_str("SCRIBE_STORE_DIR", "./sessions"),
        SCRIBE_LOG_LEVEL=_getenv_str("SCRIBE_LOG_LEVEL", "INFO"),
        SCRIBE_LOG_DIR=_getenv_str("SCRIBE_LOG_DIR", ""),
        ASR_TIMEOUT_SEC=_getenv_float("ASR_TIMEOUT_SEC", 30.0),
        ASR_MAX_RETRIES=_getenv_int("ASR_MAX_RETRIES", 3),
        ASR_RETRY_DELAY_SEC=_getenv_float("ASR_RETRY_DELAY_SEC", 1.0),
        ASR_LANGUAGE=_getenv_str("ASR_LANGUAGE", "en"),
        ASR_MAX_AUDIO_BYTES=_getenv_int("ASR_MAX_AUDIO_BYTES", 25 * 1024 * 1024),
        # 0 disables the silence guard.
        ASR_SILENCE_RMS=_getenv_float("ASR_SILENCE_RMS", 0.0),
        ASR_ENABLE_MOCK=_getenv_bool("ASR_ENABLE_MOCK", False),
        SCRIBE_GEMINI_API_KEY=_getenv_str("SCRIBE_GEMINI_API_KEY", _getenv_str("GEMINI_API_KEY", "")),
        SCRIBE_GEMINI_MODEL=_getenv_str("SCRIBE_GEMINI_MODEL", "gemini-2.5-flash"),
        SCRIBE_OPENAI_API_KEY=_getenv_str("SCRIBE_OPENAI_API_KEY", _getenv_str("OPENAI_API_KEY", "")),
        SCRIBE_WHISPER_API_MODEL=_getenv_str("SCRIBE_WHISPER_API_MODEL", "whisper-1"),
        SCRIBE_WHISPER_CPP_BIN=_getenv_str("SCRIBE_WHISPER_CPP_BIN", default_whisper_bin),
        SCRIBE_WHISPER_CPP_STREAM_BIN=_getenv_str(
            "SCRIBE_WHISPER_CPP_STREAM_BIN", default_whisper_stream_bin
        ),
        SCRIBE_WHISPER_CPP_MODEL=_getenv_str("SCRIBE_WHISPER_CPP_MODEL", default_whisper_model),
        SCRIBE_WHISPER_CPP_NO_GPU=_getenv_bool("SCRIBE_WHISPER_CPP_NO_GPU", False),
        SCRIBE_LLM_PROVIDER=_getenv_str("SCRIBE_LLM_PROVIDER", "gemini"),
        SCRIBE_LLM_MODEL=_getenv_str("SCRIBE_LLM_MODEL", ""),
        SCRIBE_LLM_MAX_TOKENS=_getenv_int("SCRIBE_LLM_MAX_TOKENS", 2000),
        SCRIBE_LLM_TEMPERATURE=_getenv_float("SCRIBE_LLM_TEMPERATURE", 0.3),
        SCRIBE_LLM_PARSE_RETRIES=_getenv_int("SCRIBE_LLM_PARSE_RETRIES", 1),
        SPEAKER_CONFIDENCE_THRESHOLD=_getenv_float("SPEAKER_CONFIDENCE_THRESHOLD", 0.6),
        SPEAKER_CONTEXT_WINDOW=_getenv_int("SPEAKER_CONTEXT_WINDOW", 5),
        SPEAKER_ALTERNATION_BIAS=_getenv_float("SPEAKER_ALTERNATION_BIAS", 0.3),
    )
