from __future__ import annotations

import os
import subprocess
import wave
from pathlib import Path
from typing import Optional, Tuple

from ..audio_utils import (
    is_silent_wav,
    normalize_to_wav16k_mono,
    safe_unlink,
    write_audio_chunk,
)
from ..contracts import TranscriptionResult
from .base import ASRError, ASRProvider


def whisper_cpp_available(bin_path: str, model_path: str) -> Tuple[bool, str]:
    if not bin_path:
        return False, "missing MEDITALK_WHISPER_CPP_BIN"
    if not model_path:
        return False, "missing MEDITALK_WHISPER_CPP_MODEL"
    if not Path(bin_path).exists():
        return False, f"whisper-cli not found: {bin_path}"
    if not Path(model_path).exists():
        return False, f"model not found: {model_path}"
    return True, ""


def _with_library_paths(bin_path: str, env: Optional[dict[str, str]] = None) -> dict[str, str]:
    env_out = dict(os.environ) if env is None else dict(env)
    if not bin_path:
        return env_out
    try:
        build_dir = Path(bin_path).resolve().parents[1]
    except (OSError, IndexError):
        return env_out

    candidates = [
        build_dir / "src",
        build_dir / "ggml" / "src",
    ]
    new_paths = [str(p) for p in candidates if p.exists()]
    if not new_paths:
        return env_out

    joined = os.pathsep.join(new_paths)
    for var in ("DYLD_LIBRARY_PATH", "LD_LIBRARY_PATH"):
        existing = env_out.get(var, "")
        env_out[var] = joined if not existing else f"{joined}{os.pathsep}{existing}"
    return env_out


class WhisperCppProvider(ASRProvider):
    def __init__(
        self,
        bin_path: str,
        model_path: str,
        tmp_dir: Path,
        *,
        no_gpu: bool = False,
        silence_rms: float = 0.0,
    ):
        self._bin_path = bin_path
        self._model_path = model_path
        self._tmp_dir = Path(tmp_dir)
        self._runtime_no_gpu = bool(no_gpu)
        self._silence_rms = float(silence_rms)

    def name(self) -> str:
        return "whisper_cpp"

    def transcribe_audio(
        self,
        audio: bytes,
        mime_type: str = "audio/webm",
        language: str = "ko",
        timeout_sec: int = 30,
    ) -> TranscriptionResult:
        ok, reason = whisper_cpp_available(self._bin_path, self._model_path)
        if not ok:
            raise ASRError("WHISPER_NOT_CONFIGURED", reason, self.name())
        if not audio:
            raise ASRError("AUDIO_EMPTY", "audio payload is empty", self.name())

        chunk_path = write_audio_chunk(audio, mime_type, self._tmp_dir, prefix="chunk")
        wav_path = chunk_path
        try:
            try:
                wav_path = normalize_to_wav16k_mono(chunk_path, self._tmp_dir, session_prefix="chunk")
            except ValueError as exc:
                raise ASRError("AUDIO_CONVERSION_FAILED", str(exc), self.name()) from exc

            try:
                silent = is_silent_wav(wav_path, self._silence_rms)
            except (ValueError, wave.Error, EOFError) as exc:
                raise ASRError("AUDIO_CONVERSION_FAILED", str(exc), self.name()) from exc
            if silent:
                return TranscriptionResult(text="", meta={"provider": self.name(), "silence": True})

            text = self._run_cli(str(wav_path), language, timeout_sec)
        finally:
            safe_unlink(chunk_path)
            if wav_path != chunk_path:
                safe_unlink(wav_path)

        return TranscriptionResult(text=text, meta={"provider": self.name(), "silence": False})

    def _run_cli(self, wav_path: str, language: str, timeout_sec: int) -> str:
        base_cmd = [
            self._bin_path,
            "-m",
            self._model_path,
            "-f",
            wav_path,
            "-l",
            language,
            "--no-timestamps",
            "--no-prints",
        ]

        # GPU builds crash on some machines; retry once on CPU.
        attempt_no_gpu = [True] if self._runtime_no_gpu else [False, True]
        attempt_errors: list[str] = []
        saw_timeout = False

        for use_no_gpu in attempt_no_gpu:
            cmd = list(base_cmd)
            mode = "cpu_no_gpu" if use_no_gpu else "gpu_default"
            if use_no_gpu:
                cmd.insert(1, "-ng")
            try:
                res = subprocess.run(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    timeout=timeout_sec,
                    env=_with_library_paths(self._bin_path),
                )
            except subprocess.TimeoutExpired:
                saw_timeout = True
                attempt_errors.append(f"{mode}: timeout")
                continue
            except OSError as e:
                attempt_errors.append(f"{mode}: {e}")
                if not use_no_gpu:
                    self._runtime_no_gpu = True
                continue

            if res.returncode != 0:
                msg = (res.stderr or "").strip() or f"exit_code={res.returncode}"
                if len(msg) > 200:
                    msg = msg[:200] + "..."
                attempt_errors.append(f"{mode}: {msg}")
                if not use_no_gpu:
                    self._runtime_no_gpu = True
                continue

            # Empty stdout is a valid "nothing said" result.
            return " ".join((res.stdout or "").split()).strip()

        if saw_timeout:
            raise ASRError("WHISPER_TIMEOUT", "; ".join(attempt_errors) or "whisper.cpp timed out", self.name())
        raise ASRError("WHISPER_EXIT_NONZERO", "; ".join(attempt_errors) or "non-zero exit", self.name())
