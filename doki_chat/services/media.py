from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from ..config import Settings
from ..prompts import build_image_prompt
from .gemini_client import InlinePart
from .realtime.audio import parse_pcm_mime, pcm16_to_wav

logger = logging.getLogger("doki_chat.media")


@dataclass(frozen=True, slots=True)
class InlineImage:
    mime_type: str
    data_b64: str

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data_b64}"


@dataclass(frozen=True, slots=True)
class SpeechClip:
    pcm: bytes
    sample_rate: int = 24000
    channels: int = 1

    @property
    def duration_seconds(self) -> float:
        frames = len(self.pcm) // (2 * max(1, self.channels))
        return frames / float(self.sample_rate)

    def to_wav(self) -> bytes:
        return pcm16_to_wav(self.pcm, self.sample_rate, self.channels)


class MediaRequester:
    """Single-shot image and speech requests. Failures come back as None, never retried."""

    def __init__(self, llm: Any, settings: Settings) -> None:
        self.llm = llm
        self.image_model = settings.image_model
        self.aspect_ratio = settings.image_aspect_ratio
        self.speech_model = settings.speech_model
        self.default_voice = settings.speech_default_voice
        self.speech_sample_rate = settings.speech_sample_rate

    async def generate_image(self, prompt: str, intimacy_enabled: bool = False) -> InlineImage | None:
        final_prompt = build_image_prompt(prompt, intimacy_enabled)
        try:
            parts: list[InlinePart] = await self.llm.generate_images(
                self.image_model,
                final_prompt,
                aspect_ratio=self.aspect_ratio,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Image generation failed: %s", exc)
            return None
        if not parts:
            logger.info("Image generation returned no image part")
            return None
        first = parts[0]
        return InlineImage(mime_type=first.mime_type or "image/png", data_b64=first.data_b64)

    async def generate_speech(self, text: str, voice_id: str | None = None) -> SpeechClip | None:
        cleaned = (text or "").strip()
        if not cleaned:
            return None
        voice = voice_id or self.default_voice
        try:
            part: InlinePart | None = await self.llm.synthesize_speech(self.speech_model, cleaned, voice)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Speech synthesis failed (voice=%s): %s", voice, exc)
            return None
        if part is None:
            logger.info("Speech synthesis returned no audio (voice=%s)", voice)
            return None
        try:
            pcm = part.to_bytes()
        except ValueError as exc:
            logger.error("Speech payload is not valid base64: %s", exc)
            return None
        if not pcm:
            return None
        if len(pcm) % 2:
            pcm = pcm[:-1]
        rate, _ = parse_pcm_mime(part.mime_type, self.speech_sample_rate)
        return SpeechClip(pcm=pcm, sample_rate=rate)
