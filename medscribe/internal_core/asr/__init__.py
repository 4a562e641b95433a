from __future__ import annotations

from .base import (
    AudioChunk,
    ErrorCategory,
    NoBackendAvailableError,
    TranscriptionBackend,
    TranscriptionError,
)
from .gemini import GeminiBackend
from .mock import MockBackend
from .orchestrator import TranscriptionOrchestrator
from .whisper_api import WhisperApiBackend
from .whisper_cpp import WhisperCppBackend, whisper_cpp_available

__all__ = [
    "AudioChunk",
    "ErrorCategory",
    "NoBackendAvailableError",
    "TranscriptionBackend",
    "TranscriptionError",
    "GeminiBackend",
    "MockBackend",
    "TranscriptionOrchestrator",
    "WhisperApiBackend",
    "WhisperCppBackend",
    "whisper_cpp_available",
]
