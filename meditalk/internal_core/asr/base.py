from __future__ import annotations

from abc import ABC, abstractmethod

from ..contracts import TranscriptionResult


class ASRError(RuntimeError):
    def __init__(self, code: str, message: str, provider_name: str):
        super().__init__(message)
        self.code = code
        self.message = message
        self.provider_name = provider_name


class ASRProvider(ABC):
    @abstractmethod
    def transcribe_audio(
        self,
        audio: bytes,
        mime_type: str = "audio/webm",
        language: str = "ko",
        timeout_sec: int = 30,
    ) -> TranscriptionResult: ...

    @abstractmethod
    def name(self) -> str: ...
