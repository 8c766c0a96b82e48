from __future__ import annotations

from typing import Any, Optional

import openai

from ..audio_utils import suffix_for_mime
from ..contracts import TranscriptionResult
from .base import ASRError, ASRProvider

# Whisper does not report confidence; the hosted proxy always answered 0.9.
_DEFAULT_CONFIDENCE = 0.9


class OpenAIWhisperProvider(ASRProvider):
    def __init__(
        self,
        api_key: str,
        model: str = "whisper-1",
        base_url: str = "",
        client: Optional[Any] = None,
    ):
        self._api_key = api_key
        self._model = model
        self._base_url = base_url
        self._client = client

    def name(self) -> str:
        return "openai"

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        if not self._api_key:
            raise ASRError(
                "OPENAI_KEY_MISSING",
                "OpenAI API key is not configured (set MEDITALK_OPENAI_API_KEY or OPENAI_API_KEY)",
                self.name(),
            )
        kwargs: dict[str, Any] = {"api_key": self._api_key}
        if self._base_url:
            kwargs["base_url"] = self._base_url
        self._client = openai.OpenAI(**kwargs)
        return self._client

    def transcribe_audio(
        self,
        audio: bytes,
        mime_type: str = "audio/webm",
        language: str = "ko",
        timeout_sec: int = 30,
    ) -> TranscriptionResult:
        if not audio:
            raise ASRError("AUDIO_EMPTY", "audio payload is empty", self.name())

        client = self._get_client()
        filename = f"audio{suffix_for_mime(mime_type)}"
        try:
            response = client.audio.transcriptions.create(
                model=self._model,
                file=(filename, audio, mime_type or "audio/webm"),
                language=language,
                timeout=timeout_sec,
            )
        except openai.APITimeoutError as exc:
            raise ASRError("OPENAI_TIMEOUT", str(exc), self.name()) from exc
        except openai.APIStatusError as exc:
            raise ASRError(
                "OPENAI_HTTP_ERROR",
                f"transcription request failed with status {exc.status_code}",
                self.name(),
            ) from exc
        except openai.OpenAIError as exc:
            raise ASRError("OPENAI_ERROR", str(exc), self.name()) from exc

        text = " ".join(str(getattr(response, "text", "") or "").split())
        return TranscriptionResult(
            text=text,
            confidence=_DEFAULT_CONFIDENCE if text else None,
            meta={"provider": self.name(), "model": self._model},
        )
