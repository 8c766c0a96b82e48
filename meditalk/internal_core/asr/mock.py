from __future__ import annotations

from typing import Optional, Sequence

from ..contracts import TranscriptionResult
from .base import ASRProvider


class MockASRProvider(ASRProvider):
    def __init__(self, scripted: Optional[Sequence[str]] = None) -> None:
        self._counter = 0
        self._scripted = list(scripted or [])

    def transcribe_audio(
        self,
        audio: bytes,
        mime_type: str = "audio/webm",
        language: str = "ko",
        timeout_sec: int = 30,
    ) -> TranscriptionResult:
        self._counter += 1
        if self._scripted:
            text = self._scripted.pop(0)
        else:
            text = f"(mock) simulated transcript for chunk {self._counter}."
        return TranscriptionResult(
            text=text,
            confidence=0.9,
            meta={"provider": self.name(), "bytes": len(audio)},
        )

    def name(self) -> str:
        return "mock"
