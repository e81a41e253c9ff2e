from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Protocol

import numpy as np

from ..config import Settings
from ..prompts import dictation_instruction
from .realtime.audio import float_to_pcm16, pcm16_to_wav
from .realtime.capabilities import AudioCapture, CaptureDeviceError

logger = logging.getLogger("doki_chat.dictation")


class SpeechRecognizer(Protocol):
    async def listen_once(self) -> str: ...


class GeminiDictation:
    """One-shot dictation: record a short utterance, ask the text model for a transcript."""

    def __init__(
        self,
        llm: Any,
        settings: Settings,
        capture_factory: Callable[[], AudioCapture],
    ) -> None:
        self.llm = llm
        self.model = settings.chat_model
        self.sample_rate = settings.live_input_sample_rate
        self.max_seconds = max(0.5, float(settings.dictation_max_seconds))
        self._capture_factory = capture_factory

    async def record(self) -> np.ndarray:
        target_frames = int(self.max_seconds * self.sample_rate)
        blocks: list[np.ndarray] = []
        collected = 0
        done = asyncio.Event()

        def _on_frame(samples: np.ndarray) -> None:
            nonlocal collected
            if done.is_set():
                return
            blocks.append(samples)
            collected += int(samples.shape[0])
            if collected >= target_frames:
                done.set()

        capture = self._capture_factory()
        capture.start(_on_frame)
        try:
            # Small slack over the frame budget for device start-up.
            await asyncio.wait_for(done.wait(), timeout=self.max_seconds + 2.0)
        except asyncio.TimeoutError:
            logger.debug("Dictation stopped on timeout with %s frame(s)", collected)
        finally:
            capture.stop()
        if not blocks:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(blocks)[:target_frames]

    async def listen_once(self) -> str:
        try:
            samples = await self.record()
        except CaptureDeviceError as exc:
            logger.warning("Dictation unavailable: %s", exc)
            return ""
        if samples.size == 0:
            return ""
        audio = pcm16_to_wav(float_to_pcm16(samples), self.sample_rate)
        try:
            text = await self.llm.transcribe(self.model, audio, "audio/wav", dictation_instruction())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Dictation transcription failed: %s", exc)
            return ""
        return (text or "").strip()
