from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

from ...config import Settings
from ...models import CallStatus, ChatSession, Persona
from .capabilities import AudioCapture, AudioOutput, RealtimeTransport, VideoCapture
from .credentials import CredentialProvider
from .session import FrameEncoder, RealtimeCallSession

logger = logging.getLogger("doki_chat.realtime")


@dataclass(slots=True)
class CallDevices:
    audio_capture: Callable[[], AudioCapture]
    audio_output: Callable[[], AudioOutput]
    video_capture: Callable[[], VideoCapture]
    frame_encoder: FrameEncoder


def local_devices(settings: Settings) -> CallDevices:
    # Hardware backends load lazily: PortAudio and OpenCV are only needed once a call starts.
    from .devices import OpenCVCamera, SoundDeviceCapture, SoundDeviceOutput, encode_jpeg_frame

    return CallDevices(
        audio_capture=lambda: SoundDeviceCapture(
            sample_rate=settings.live_input_sample_rate,
            frame_size=settings.live_audio_frame_size,
        ),
        audio_output=lambda: SoundDeviceOutput(sample_rate=settings.live_output_sample_rate),
        video_capture=lambda: OpenCVCamera(index=settings.live_camera_index),
        frame_encoder=encode_jpeg_frame,
    )


def _log_start_failure(task: asyncio.Task[CallStatus]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Live call failed to start: %s", exc, exc_info=exc)


class CallManager:
    """Owns at most one live call. Opening a new call hangs up the previous one first."""

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialProvider,
        transport: RealtimeTransport | None = None,
        devices: CallDevices | Callable[[], CallDevices] | None = None,
    ) -> None:
        self.settings = settings
        self.credentials = credentials
        if transport is None:
            from .transport import GeminiLiveTransport

            transport = GeminiLiveTransport(lambda: settings.gemini_api_key, settings.live_model)
        self.transport = transport
        self._devices = devices
        self._current: RealtimeCallSession | None = None
        self._starting: asyncio.Task[CallStatus] | None = None

    @property
    def current(self) -> RealtimeCallSession | None:
        return self._current

    def _resolve_devices(self) -> CallDevices:
        if self._devices is None:
            self._devices = local_devices(self.settings)
        if callable(self._devices) and not isinstance(self._devices, CallDevices):
            self._devices = self._devices()
        return self._devices

    async def open_call(self, session: ChatSession, persona: Persona, wait: bool = True) -> RealtimeCallSession:
        """Replace the current call with one for `session`.

        With wait=False the call shows as connecting right away and the
        connection is made by a background task.
        """
        await self.hangup()
        devices = self._resolve_devices()
        call = RealtimeCallSession(
            session_id=session.id,
            persona=persona,
            voice_name=session.resolved_voice(persona, self.settings.speech_default_voice),
            intimacy_enabled=session.intimacy_enabled,
            settings=self.settings,
            transport=self.transport,
            credentials=self.credentials,
            audio_capture_factory=devices.audio_capture,
            audio_output_factory=devices.audio_output,
            video_capture_factory=devices.video_capture,
            frame_encoder=devices.frame_encoder,
        )
        self._current = call
        logger.info("Opening live call for session=%s persona=%s voice=%s", session.id, persona.id, call.voice_name)
        if wait:
            await call.start()
            return call
        call.mark_connecting()
        self._starting = asyncio.create_task(call.start(), name=f"live-call-start-{session.id}")
        self._starting.add_done_callback(_log_start_failure)
        return call

    async def hangup(self) -> bool:
        starting, self._starting = self._starting, None
        if starting is not None and not starting.done():
            starting.cancel()
            await asyncio.wait({starting})
        call = self._current
        if call is None:
            return False
        self._current = None
        await call.close()
        return True

    def status_snapshot(self) -> dict[str, Any]:
        call = self._current
        if call is None:
            return {"status": "idle", "call": None}
        return {"status": call.status.value, "call": call.snapshot()}
