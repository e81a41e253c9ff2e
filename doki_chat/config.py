from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _clean_key(value: str) -> str:
    cleaned = value.strip()
    if (cleaned.startswith('"') and cleaned.endswith('"')) or (
        cleaned.startswith("'") and cleaned.endswith("'")
    ):
        cleaned = cleaned[1:-1].strip()
    return cleaned


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


PLACEHOLDER_API_KEY = "put_your_gemini_api_key_here"


@dataclass(slots=True)
class Settings:
    gemini_api_key: str
    gemini_base_url: str
    gemini_timeout_seconds: int
    gemini_request_retries: int

    chat_model: str
    chat_temperature: float
    chat_top_p: float
    chat_max_output_tokens: int
    preferred_response_language: str

    image_model: str
    image_aspect_ratio: str

    speech_model: str
    speech_default_voice: str
    speech_sample_rate: int

    live_model: str
    live_input_sample_rate: int
    live_output_sample_rate: int
    live_audio_frame_size: int
    live_video_interval_seconds: float
    live_video_width: int
    live_video_height: int
    live_video_jpeg_quality: int
    live_camera_index: int

    dictation_max_seconds: float

    sqlite_path: Path
    sqlite_busy_timeout_ms: int
    sqlite_reset_on_schema_mismatch: bool
    sessions_storage_key: str
    personas_json_path: Path | None

    web_host: str
    web_port: int

    @classmethod
    def from_env(cls) -> "Settings":
        personas_path = _env_str("PERSONAS_JSON_PATH", "")
        return cls(
            gemini_api_key=_clean_key(_env_lookup("GEMINI_API_KEY", aliases=("API_KEY", "GOOGLE_API_KEY")) or ""),
            gemini_base_url=_env_str("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"),
            gemini_timeout_seconds=_env_int("GEMINI_TIMEOUT_SECONDS", 90),
            gemini_request_retries=_env_int("GEMINI_REQUEST_RETRIES", 3),
            chat_model=_env_str("CHAT_MODEL", "gemini-3-flash-preview", aliases=("GEMINI_MODEL",)),
            chat_temperature=_env_float("CHAT_TEMPERATURE", 0.85),
            chat_top_p=_env_float("CHAT_TOP_P", 0.95),
            chat_max_output_tokens=_env_int("CHAT_MAX_OUTPUT_TOKENS", 1000),
            preferred_response_language=_env_str("PREFERRED_RESPONSE_LANGUAGE", "English"),
            image_model=_env_str("IMAGE_MODEL", "gemini-2.5-flash-image"),
            image_aspect_ratio=_env_str("IMAGE_ASPECT_RATIO", "1:1"),
            speech_model=_env_str("SPEECH_MODEL", "gemini-2.5-flash-preview-tts"),
            speech_default_voice=_env_str("SPEECH_DEFAULT_VOICE", "Kore"),
            speech_sample_rate=_env_int("SPEECH_SAMPLE_RATE", 24000),
            live_model=_env_str(
                "LIVE_MODEL",
                "models/gemini-2.5-flash-native-audio-preview-09-2025",
                aliases=("GEMINI_LIVE_MODEL",),
            ),
            live_input_sample_rate=_env_int("LIVE_INPUT_SAMPLE_RATE", 16000),
            live_output_sample_rate=_env_int("LIVE_OUTPUT_SAMPLE_RATE", 24000),
            live_audio_frame_size=_env_int("LIVE_AUDIO_FRAME_SIZE", 4096),
            live_video_interval_seconds=_env_float("LIVE_VIDEO_INTERVAL_SECONDS", 1.0),
            live_video_width=_env_int("LIVE_VIDEO_WIDTH", 320),
            live_video_height=_env_int("LIVE_VIDEO_HEIGHT", 240),
            live_video_jpeg_quality=_env_int("LIVE_VIDEO_JPEG_QUALITY", 50),
            live_camera_index=_env_int("LIVE_CAMERA_INDEX", 0),
            dictation_max_seconds=_env_float("DICTATION_MAX_SECONDS", 6.0),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/doki_chat.db")).expanduser(),
            sqlite_busy_timeout_ms=_env_int("DOKI_SQLITE_BUSY_TIMEOUT_MS", 5000),
            sqlite_reset_on_schema_mismatch=_env_bool("DOKI_SQLITE_RESET_ON_SCHEMA_MISMATCH", False),
            sessions_storage_key=_env_str("SESSIONS_STORAGE_KEY", "doki_sessions"),
            personas_json_path=Path(personas_path).expanduser() if personas_path else None,
            web_host=_env_str("WEB_HOST", "127.0.0.1"),
            web_port=_env_int("WEB_PORT", 8000),
        )

    def has_api_key(self) -> bool:
        return bool(self.gemini_api_key) and self.gemini_api_key != PLACEHOLDER_API_KEY

    def validate(self) -> None:
        # The API key is not required at startup: the call screen asks for it when missing.
        if self.gemini_timeout_seconds < 10:
            raise ValueError("GEMINI_TIMEOUT_SECONDS must be >= 10")
        if self.gemini_request_retries < 1:
            raise ValueError("GEMINI_REQUEST_RETRIES must be >= 1")
        if not self.chat_model:
            raise ValueError("CHAT_MODEL cannot be empty")
        if self.chat_temperature < 0.0 or self.chat_temperature > 2.0:
            raise ValueError("CHAT_TEMPERATURE must be in [0, 2]")
        if self.chat_top_p <= 0.0 or self.chat_top_p > 1.0:
            raise ValueError("CHAT_TOP_P must be in (0, 1]")
        if self.chat_max_output_tokens < 0:
            raise ValueError("CHAT_MAX_OUTPUT_TOKENS must be >= 0 (0 disables explicit cap)")
        if self.chat_max_output_tokens and self.chat_max_output_tokens < 64:
            raise ValueError("CHAT_MAX_OUTPUT_TOKENS must be 0 or >= 64")
        if self.image_aspect_ratio.count(":") != 1:
            raise ValueError("IMAGE_ASPECT_RATIO must look like W:H")
        if self.speech_sample_rate < 8000:
            raise ValueError("SPEECH_SAMPLE_RATE must be >= 8000")
        if not self.live_model:
            raise ValueError("LIVE_MODEL cannot be empty")
        if self.live_input_sample_rate < 8000:
            raise ValueError("LIVE_INPUT_SAMPLE_RATE must be >= 8000")
        if self.live_output_sample_rate < 8000:
            raise ValueError("LIVE_OUTPUT_SAMPLE_RATE must be >= 8000")
        if self.live_audio_frame_size < 256:
            raise ValueError("LIVE_AUDIO_FRAME_SIZE must be >= 256")
        if self.live_video_interval_seconds < 0.1:
            raise ValueError("LIVE_VIDEO_INTERVAL_SECONDS must be >= 0.1")
        if self.live_video_width < 16 or self.live_video_height < 16:
            raise ValueError("LIVE_VIDEO_WIDTH and LIVE_VIDEO_HEIGHT must be >= 16")
        if self.live_video_jpeg_quality < 1 or self.live_video_jpeg_quality > 100:
            raise ValueError("LIVE_VIDEO_JPEG_QUALITY must be in [1, 100]")
        if self.dictation_max_seconds < 1.0:
            raise ValueError("DICTATION_MAX_SECONDS must be >= 1")
        if self.sqlite_busy_timeout_ms < 0 or self.sqlite_busy_timeout_ms > 60000:
            raise ValueError("DOKI_SQLITE_BUSY_TIMEOUT_MS must be in [0, 60000]")
        if not self.sessions_storage_key.strip():
            raise ValueError("SESSIONS_STORAGE_KEY cannot be empty")
        if self.web_port < 1 or self.web_port > 65535:
            raise ValueError("WEB_PORT must be in [1, 65535]")
