from __future__ import annotations

from ..config import AppConfig
from .base import ASRError, ASRProvider
from .mock import MockASRProvider
from .openai_whisper import OpenAIWhisperProvider
from .whisper_cpp import WhisperCppProvider


def build_asr_provider(cfg: AppConfig) -> ASRProvider:
    provider = (cfg.MEDITALK_ASR_PROVIDER or "mock").strip().lower()
    if provider == "mock":
        return MockASRProvider()
    if provider == "openai":
        return OpenAIWhisperProvider(
            api_key=cfg.MEDITALK_OPENAI_API_KEY,
            model=cfg.MEDITALK_OPENAI_ASR_MODEL,
            base_url=cfg.MEDITALK_OPENAI_BASE_URL,
        )
    if provider == "whisper_cpp":
        return WhisperCppProvider(
            bin_path=cfg.MEDITALK_WHISPER_CPP_BIN,
            model_path=cfg.MEDITALK_WHISPER_CPP_MODEL,
            tmp_dir=cfg.tmp_dir_path(),
            no_gpu=cfg.MEDITALK_WHISPER_CPP_NO_GPU,
            silence_rms=cfg.ASR_SILENCE_RMS,
        )
    raise ASRError("PROVIDER_UNKNOWN", f"Unknown ASR provider: {provider}", provider)
