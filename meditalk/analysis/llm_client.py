from __future__ import annotations

"""
Chat-completion backends shared by the diagnosis, compliance and chat helpers.

Design intent:
- One small `complete(...)` seam so analyzers stay backend-agnostic.
- Hosted OpenAI by default; local GGUF through llama-cpp for offline use.
- Every backend failure surfaces as `AnalysisError`.
"""

import json
import logging
import threading
from typing import Any, Callable, Optional, Protocol, Sequence

import openai

from meditalk.internal_core.config import AppConfig

logger = logging.getLogger(__name__)


class AnalysisError(RuntimeError):
    """Raised when an LLM-backed analysis cannot produce a usable answer."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class ChatBackend(Protocol):
    def complete(
        self,
        *,
        model: str,
        system: str,
        user: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> str: ...


class OpenAIChatBackend:
    def __init__(self, api_key: str, base_url: str = "", client: Optional[Any] = None) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        if not self._api_key:
            raise AnalysisError(
                "OPENAI_KEY_MISSING",
                "OpenAI API key is not configured (set MEDITALK_OPENAI_API_KEY or OPENAI_API_KEY)",
            )
        kwargs: dict[str, Any] = {"api_key": self._api_key}
        if self._base_url:
            kwargs["base_url"] = self._base_url
        self._client = openai.OpenAI(**kwargs)
        return self._client

    def complete(
        self,
        *,
        model: str,
        system: str,
        user: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> str:
        client = self._get_client()
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": float(temperature),
            "max_tokens": int(max_tokens),
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            completion = client.chat.completions.create(**kwargs)
        except openai.APIStatusError as exc:
            raise AnalysisError(
                "OPENAI_HTTP_ERROR", f"chat completion failed with status {exc.status_code}"
            ) from exc
        except openai.OpenAIError as exc:
            raise AnalysisError("OPENAI_ERROR", str(exc)) from exc

        choices = getattr(completion, "choices", None) or []
        if not choices:
            raise AnalysisError("EMPTY_COMPLETION", "chat completion returned no choices")
        content = str(getattr(choices[0].message, "content", "") or "").strip()
        if not content:
            raise AnalysisError("EMPTY_COMPLETION", "chat completion returned empty content")
        return content


class LlamaCppChatBackend:
    def __init__(self, model_path: str, *, n_ctx: int = 4096, n_gpu_layers: int = -1) -> None:
        self._model_path = model_path
        self._n_ctx = int(n_ctx)
        self._n_gpu_layers = int(n_gpu_layers)
        self._llm: Any = None
        self._lock = threading.Lock()

    def _get_llm(self) -> Any:
        if self._llm is not None:
            return self._llm
        if not self._model_path:
            raise AnalysisError("LLAMA_MODEL_MISSING", "Set MEDITALK_LLAMA_CPP_MODEL to a GGUF file.")
        try:
            from llama_cpp import Llama  # type: ignore
        except Exception as exc:
            raise AnalysisError("LLAMA_IMPORT_FAILED", f"llama_cpp import failed: {exc}") from exc
        try:
            self._llm = Llama(
                model_path=self._model_path,
                n_ctx=self._n_ctx,
                n_gpu_layers=self._n_gpu_layers,
                verbose=False,
            )
        except (OSError, ValueError) as exc:
            raise AnalysisError("LLAMA_LOAD_FAILED", str(exc)) from exc
        return self._llm

    def complete(
        self,
        *,
        model: str,
        system: str,
        user: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> str:
        _ = model
        completion_kwargs: dict[str, Any] = {
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": float(temperature),
            "max_tokens": int(max_tokens),
        }
        if json_mode:
            completion_kwargs["response_format"] = {"type": "json_object"}

        # llama.cpp contexts are not re-entrant.
        with self._lock:
            llm = self._get_llm()
            try:
                resp = llm.create_chat_completion(**completion_kwargs)
            except TypeError as exc:
                if "response_format" not in str(exc):
                    raise
                completion_kwargs.pop("response_format", None)
                resp = llm.create_chat_completion(**completion_kwargs)
            except (RuntimeError, ValueError) as exc:
                raise AnalysisError("LLAMA_INFERENCE_FAILED", str(exc)) from exc

        try:
            content = resp["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise AnalysisError("EMPTY_COMPLETION", f"unexpected llama_cpp response: {exc}") from exc
        content = str(content or "").strip()
        if not content:
            raise AnalysisError("EMPTY_COMPLETION", "llama_cpp returned empty content")
        return content


class MockChatBackend:
    """Deterministic backend for demos and tests."""

    def __init__(
        self,
        responses: Optional[Sequence[str]] = None,
        responder: Optional[Callable[[str, str], str]] = None,
    ) -> None:
        self._responses = list(responses or [])
        self._responder = responder
        self.calls: list[dict[str, Any]] = []

    def complete(
        self,
        *,
        model: str,
        system: str,
        user: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> str:
        self.calls.append({"model": model, "system": system, "user": user, "json_mode": json_mode})
        if self._responder is not None:
            return self._responder(system, user)
        if self._responses:
            return self._responses.pop(0)
        return json.dumps({"diagnoses": []})


def build_chat_backend(cfg: AppConfig) -> ChatBackend:
    backend = (cfg.MEDITALK_LLM_BACKEND or "openai").strip().lower()
    if backend == "openai":
        return OpenAIChatBackend(api_key=cfg.MEDITALK_OPENAI_API_KEY, base_url=cfg.MEDITALK_OPENAI_BASE_URL)
    if backend == "llama_cpp":
        return LlamaCppChatBackend(
            cfg.MEDITALK_LLAMA_CPP_MODEL,
            n_ctx=cfg.MEDITALK_LLAMA_CPP_N_CTX,
            n_gpu_layers=cfg.MEDITALK_LLAMA_CPP_N_GPU_LAYERS,
        )
    if backend == "mock":
        return MockChatBackend()
    raise AnalysisError("BACKEND_UNKNOWN", f"Unknown LLM backend: {backend}")


def strip_markdown_fences(raw: str) -> str:
    text = (raw or "").strip()
    if "```" not in text:
        return text
    lines = [line for line in text.splitlines() if not line.strip().startswith("```")]
    return "\n".join(lines).strip()


def parse_json_object(raw: str) -> dict[str, Any] | None:
    text = strip_markdown_fences(raw)
    if not text:
        return None
    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        data = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None
