from __future__ import annotations

from .base import ASRError, ASRProvider
from .factory import build_asr_provider
from .mock import MockASRProvider
from .openai_whisper import OpenAIWhisperProvider
from .whisper_cpp import WhisperCppProvider, whisper_cpp_available

__all__ = [
    "ASRError",
    "ASRProvider",
    "MockASRProvider",
    "OpenAIWhisperProvider",
    "WhisperCppProvider",
    "build_asr_provider",
    "whisper_cpp_available",
]
