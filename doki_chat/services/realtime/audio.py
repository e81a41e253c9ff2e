from __future__ import annotations

import base64
import io
import re
import wave

import numpy as np


def normalize_model(model: str) -> str:
    cleaned = model.strip()
    if not cleaned:
        return "models/gemini-2.5-flash-native-audio-preview-09-2025"
    if cleaned.startswith("models/"):
        return cleaned
    return f"models/{cleaned}"


def _extract_int_param(mime_type: str | None, key: str, default: int) -> int:
    if not mime_type:
        return default
    match = re.search(rf"{re.escape(key)}=(\d+)", mime_type)
    if not match:
        return default
    try:
        return int(match.group(1))
    except ValueError:
        return default


def parse_pcm_mime(mime_type: str | None, default_rate: int = 24000) -> tuple[int, int]:
    rate = _extract_int_param(mime_type, "rate", default_rate)
    channels = max(1, _extract_int_param(mime_type, "channels", 1))
    return rate, channels


def pcm_mime(sample_rate: int) -> str:
    return f"audio/pcm;rate={sample_rate}"


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Little-endian int16 PCM from float samples in [-1, 1] (scaled by 32768, clipped)."""
    data = np.asarray(samples, dtype=np.float32).reshape(-1)
    scaled = np.clip(data * 32768.0, -32768.0, 32767.0).astype("<i2")
    return scaled.tobytes()


def pcm16_to_float(pcm: bytes, channels: int = 1) -> np.ndarray:
    """Float32 array shaped (frames, channels); a trailing partial frame is dropped."""
    channels = max(1, int(channels))
    frame_bytes = 2 * channels
    usable = len(pcm) - (len(pcm) % frame_bytes)
    ints = np.frombuffer(pcm[:usable], dtype="<i2")
    return (ints.astype(np.float32) / 32768.0).reshape(-1, channels)


def encode_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_payload(payload: bytes | str) -> bytes:
    if isinstance(payload, str):
        return base64.b64decode(payload)
    return bytes(payload)


def pcm16_to_wav(pcm: bytes, sample_rate: int, channels: int = 1) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm)
    return buffer.getvalue()
