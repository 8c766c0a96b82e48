from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _project_root() -> Path:
    # meditalk/internal_core/config.py -> meditalk -> repo root
    return Path(__file__).resolve().parents[2]


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


def _getenv_first(names: list[str], default: str) -> str:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return default


@dataclass(frozen=True)
class AppConfig:
    MEDITALK_LOG_LEVEL: str
    MEDITALK_SESSION_TTL_SECONDS: int
    MEDITALK_END_GRACE_SECONDS: float
    MEDITALK_DEDUPE_WINDOW_SECONDS: int
    MEDITALK_RECORD_STORE: str
    MEDITALK_RECORD_STORE_PATH: str
    MEDITALK_TMP_DIR: str
    MEDITALK_ASR_PROVIDER: str
    MEDITALK_ASR_LANGUAGE: str
    MEDITALK_ASR_TIMEOUT_SECONDS: int
    MEDITALK_MAX_AUDIO_CHUNK_BYTES: int
    MEDITALK_OPENAI_API_KEY: str
    MEDITALK_OPENAI_BASE_URL: str
    MEDITALK_OPENAI_ASR_MODEL: str
    MEDITALK_WHISPER_CPP_BIN: str
    MEDITALK_WHISPER_CPP_MODEL: str
    MEDITALK_WHISPER_CPP_NO_GPU: bool
    ASR_SILENCE_RMS: float
    MEDITALK_LLM_BACKEND: str
    MEDITALK_DIAGNOSIS_MODEL: str
    MEDITALK_COMPLIANCE_MODEL: str
    MEDITALK_CHAT_MODEL: str
    MEDITALK_LLM_MAX_TOKENS: int
    MEDITALK_LLM_TEMPERATURE: float
    MEDITALK_LLAMA_CPP_MODEL: str
    MEDITALK_LLAMA_CPP_N_CTX: int
    MEDITALK_LLAMA_CPP_N_GPU_LAYERS: int
    MEDITALK_COMPLIANCE_TIMEOUT_SECONDS: float

    def tmp_dir_path(self, repo_root: Optional[Path] = None) -> Path:
        root = repo_root or _project_root()
        return (root / self.MEDITALK_TMP_DIR).resolve()

    def record_store_path(self, repo_root: Optional[Path] = None) -> Path:
        root = repo_root or _project_root()
        return (root / self.MEDITALK_RECORD_STORE_PATH).resolve()


def load_config() -> AppConfig:
    return AppConfig(
        MEDITALK_LOG_LEVEL=_getenv_str("MEDITALK_LOG_LEVEL", "INFO"),
        MEDITALK_SESSION_TTL_SECONDS=_getenv_int("MEDITALK_SESSION_TTL_SECONDS", 14400),
        MEDITALK_END_GRACE_SECONDS=_getenv_float("MEDITALK_END_GRACE_SECONDS", 3.0),
        MEDITALK_DEDUPE_WINDOW_SECONDS=_getenv_int("MEDITALK_DEDUPE_WINDOW_SECONDS", 600),
        MEDITALK_RECORD_STORE=_getenv_str("MEDITALK_RECORD_STORE", "memory"),
        MEDITALK_RECORD_STORE_PATH=_getenv_str("MEDITALK_RECORD_STORE_PATH", "./data/records.json"),
        MEDITALK_TMP_DIR=_getenv_str("MEDITALK_TMP_DIR", "./tmp"),
        MEDITALK_ASR_PROVIDER=_getenv_str("MEDITALK_ASR_PROVIDER", "mock"),
        MEDITALK_ASR_LANGUAGE=_getenv_str("MEDITALK_ASR_LANGUAGE", "ko"),
        MEDITALK_ASR_TIMEOUT_SECONDS=_getenv_int("MEDITALK_ASR_TIMEOUT_SECONDS", 30),
        MEDITALK_MAX_AUDIO_CHUNK_BYTES=_getenv_int(
            "MEDITALK_MAX_AUDIO_CHUNK_BYTES", 25 * 1024 * 1024
        ),
        MEDITALK_OPENAI_API_KEY=_getenv_first(["MEDITALK_OPENAI_API_KEY", "OPENAI_API_KEY"], ""),
        MEDITALK_OPENAI_BASE_URL=_getenv_str("MEDITALK_OPENAI_BASE_URL", ""),
        MEDITALK_OPENAI_ASR_MODEL=_getenv_str("MEDITALK_OPENAI_ASR_MODEL", "whisper-1"),
        MEDITALK_WHISPER_CPP_BIN=_getenv_str("MEDITALK_WHISPER_CPP_BIN", ""),
        MEDITALK_WHISPER_CPP_MODEL=_getenv_str("MEDITALK_WHISPER_CPP_MODEL", ""),
        MEDITALK_WHISPER_CPP_NO_GPU=_getenv_bool("MEDITALK_WHISPER_CPP_NO_GPU", False),
        ASR_SILENCE_RMS=_getenv_float("ASR_SILENCE_RMS", 0.008),
        MEDITALK_LLM_BACKEND=_getenv_str("MEDITALK_LLM_BACKEND", "openai"),
        MEDITALK_DIAGNOSIS_MODEL=_getenv_str("MEDITALK_DIAGNOSIS_MODEL", "gpt-4.1"),
        MEDITALK_COMPLIANCE_MODEL=_getenv_str("MEDITALK_COMPLIANCE_MODEL", "gpt-4o-mini"),
        MEDITALK_CHAT_MODEL=_getenv_str("MEDITALK_CHAT_MODEL", "gpt-4o-mini"),
        MEDITALK_LLM_MAX_TOKENS=_getenv_int("MEDITALK_LLM_MAX_TOKENS", 2000),
        MEDITALK_LLM_TEMPERATURE=_getenv_float("MEDITALK_LLM_TEMPERATURE", 0.3),
        MEDITALK_LLAMA_CPP_MODEL=_getenv_str("MEDITALK_LLAMA_CPP_MODEL", ""),
        MEDITALK_LLAMA_CPP_N_CTX=_getenv_int("MEDITALK_LLAMA_CPP_N_CTX", 4096),
        MEDITALK_LLAMA_CPP_N_GPU_LAYERS=_getenv_int("MEDITALK_LLAMA_CPP_N_GPU_LAYERS", -1),
        MEDITALK_COMPLIANCE_TIMEOUT_SECONDS=_getenv_float(
            "MEDITALK_COMPLIANCE_TIMEOUT_SECONDS", 120.0
        ),
    )
