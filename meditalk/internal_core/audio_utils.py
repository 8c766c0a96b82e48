from __future__ import annotations

import base64
import binascii
import shutil
import subprocess
import uuid
import wave
from pathlib import Path
from typing import Optional, Tuple

import numpy as np


_MIME_SUFFIXES = {
    "audio/webm": ".webm",
    "audio/ogg": ".ogg",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/wave": ".wav",
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/mp4": ".m4a",
    "audio/m4a": ".m4a",
    "audio/flac": ".flac",
}


def _which(cmd: str) -> Optional[str]:
    return shutil.which(cmd)


def suffix_for_mime(mime_type: Optional[str]) -> str:
    base = (mime_type or "").split(";", 1)[0].strip().lower()
    return _MIME_SUFFIXES.get(base, ".webm")


def decode_base64_audio(data_b64: str) -> bytes:
    """Decode a base64 audio chunk, accepting `data:` URL prefixes."""
    raw = (data_b64 or "").strip()
    if raw.startswith("data:") and "," in raw:
        raw = raw.split(",", 1)[1]
    if not raw:
        raise ValueError("Audio chunk is empty.")
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Audio chunk is not valid base64: {exc}") from exc


def enforce_max_size_bytes(size: int, max_bytes: int) -> None:
    if size > max_bytes:
        raise ValueError(
            f"Audio chunk too large ({size / (1024 * 1024):.1f}MB), "
            f"max allowed is {max_bytes / (1024 * 1024):.1f}MB"
        )


def load_wav_info(path: Path) -> Tuple[float, int, int, int]:
    """Return (duration_sec, sample_rate, channels, sample_width_bytes)."""
    with wave.open(str(path), "rb") as wf:
        frames = wf.getnframes()
        rate = wf.getframerate()
        channels = wf.getnchannels()
        width = wf.getsampwidth()
        duration = frames / float(rate) if rate else 0.0
        return duration, rate, channels, width


def write_audio_chunk(audio: bytes, mime_type: Optional[str], tmp_dir: Path, prefix: str) -> Path:
    tmp_dir.mkdir(parents=True, exist_ok=True)
    out_path = tmp_dir / f"{prefix}_{uuid.uuid4().hex}{suffix_for_mime(mime_type)}"
    out_path.write_bytes(audio)
    return out_path


def normalize_to_wav16k_mono(input_path: Path, tmp_dir: Path, session_prefix: str) -> Path:
    """
    Normalize any supported audio to 16kHz mono WAV.
    Browser chunks are usually webm/opus, so this needs ffmpeg.
    """
    if not input_path.exists():
        raise ValueError(f"Audio file not found: {input_path}")

    if input_path.suffix.lower() == ".wav":
        try:
            _, sr, ch, width = load_wav_info(input_path)
            if int(sr) == 16000 and int(ch) == 1 and int(width) == 2:
                return input_path
        except (wave.Error, EOFError):
            pass

    ffmpeg = _which("ffmpeg")
    if not ffmpeg:
        raise ValueError("Audio conversion requires `ffmpeg` on PATH.")

    tmp_dir.mkdir(parents=True, exist_ok=True)
    out_path = tmp_dir / f"{session_prefix}_norm_{uuid.uuid4().hex}.wav"
    cmd = [
        ffmpeg,
        "-y",
        "-i",
        str(input_path),
        "-ac",
        "1",
        "-ar",
        "16000",
        "-acodec",
        "pcm_s16le",
        str(out_path),
    ]
    try:
        subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except subprocess.CalledProcessError as e:
        stderr = (
            e.stderr.decode("utf-8", "ignore")
            if isinstance(e.stderr, (bytes, bytearray))
            else str(e.stderr)
        )
        raise ValueError(
            f"Audio conversion failed via ffmpeg: {stderr.strip() or 'unknown error'}"
        ) from e
    return out_path


def load_wav16k_mono_float32(path: Path) -> np.ndarray:
    with wave.open(str(path), "rb") as wf:
        channels = wf.getnchannels()
        rate = wf.getframerate()
        width = wf.getsampwidth()
        frames = wf.getnframes()
        if channels != 1:
            raise ValueError(f"Expected mono WAV, got {channels} channels")
        if rate != 16000:
            raise ValueError(f"Expected 16kHz WAV, got {rate}Hz")
        if width != 2:
            raise ValueError(f"Expected 16-bit PCM WAV, got sampwidth={width}")
        raw = wf.readframes(frames)
    audio_i16 = np.frombuffer(raw, dtype="<i2")
    audio = (audio_i16.astype(np.float32) / 32768.0).clip(-1.0, 1.0)
    return audio


def compute_rms(audio: np.ndarray) -> float:
    if audio.size == 0:
        return 0.0
    x = audio.astype(np.float32)
    return float(np.sqrt(np.mean(x * x)))


def is_silent_wav(path: Path, silence_rms: float) -> bool:
    if silence_rms <= 0:
        return False
    return compute_rms(load_wav16k_mono_float32(path)) < silence_rms


def safe_unlink(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        pass
