from __future__ import annotations

import asyncio
import contextlib
import functools
import inspect
import logging
from typing import Any, Callable

import numpy as np

from ...config import Settings
from ...models import CallStatus, Persona
from .audio import decode_payload, encode_base64, float_to_pcm16, parse_pcm_mime, pcm16_to_float, pcm_mime
from .capabilities import AudioCapture, AudioOutput, CaptureDeviceError, RealtimeTransport, VideoCapture
from .config import LiveCallConfig, build_call_config
from .credentials import CredentialProvider, is_credential_error
from .events import CallClosed, CallError, CallEvent, CallOpened, InboundAudio, MediaChunk, TurnInterrupted
from .playback import PlaybackScheduler
from .state import _CallRuntime

logger = logging.getLogger("doki_chat.realtime")

FrameEncoder = Callable[[np.ndarray, int, int, int], bytes]
StatusListener = Callable[["RealtimeCallSession"], None]


class RealtimeCallSession:
    """A full-duplex voice/video call with one persona.

    Status moves idle -> connecting -> active, and from any of them to error
    or needs_credential. Every connection attempt owns a fresh `_CallRuntime`;
    teardown releases each of its resources independently, so one failing
    release never keeps the others alive.
    """

    def __init__(
        self,
        *,
        session_id: str,
        persona: Persona,
        voice_name: str,
        intimacy_enabled: bool,
        settings: Settings,
        transport: RealtimeTransport,
        credentials: CredentialProvider,
        audio_capture_factory: Callable[[], AudioCapture],
        audio_output_factory: Callable[[], AudioOutput],
        video_capture_factory: Callable[[], VideoCapture],
        frame_encoder: FrameEncoder,
        on_status: StatusListener | None = None,
    ) -> None:
        self.session_id = session_id
        self.persona = persona
        self.voice_name = voice_name
        self.intimacy_enabled = intimacy_enabled
        self.settings = settings
        self.transport = transport
        self.credentials = credentials
        self._audio_capture_factory = audio_capture_factory
        self._audio_output_factory = audio_output_factory
        self._video_capture_factory = video_capture_factory
        self._frame_encoder = frame_encoder
        self._on_status = on_status

        self.input_rate = max(8000, settings.live_input_sample_rate)
        self.output_rate = max(8000, settings.live_output_sample_rate)

        self.status = CallStatus.IDLE
        self.error_message = ""
        self.muted = False
        self.camera_disabled = False
        self._runtime: _CallRuntime | None = None
        self._connect_lock = asyncio.Lock()

    # status

    def _set_status(self, status: CallStatus) -> None:
        if status is self.status:
            return
        logger.info("Live call %s: %s -> %s", self.session_id, self.status.value, status.value)
        self.status = status
        if self._on_status is None:
            return
        try:
            self._on_status(self)
        except Exception:
            logger.exception("Call status listener failed")

    @property
    def playback_cursor(self) -> float:
        runtime = self._runtime
        if runtime is None or runtime.scheduler is None:
            return 0.0
        return runtime.scheduler.cursor

    @property
    def active_playback_count(self) -> int:
        runtime = self._runtime
        if runtime is None or runtime.scheduler is None:
            return 0
        return len(runtime.scheduler.active)

    def snapshot(self) -> dict[str, Any]:
        runtime = self._runtime
        return {
            "session_id": self.session_id,
            "persona_id": self.persona.id,
            "persona_name": self.persona.display_name,
            "status": self.status.value,
            "error": self.error_message,
            "muted": self.muted,
            "camera_disabled": self.camera_disabled,
            "audio_frames_sent": runtime.audio_frames_sent if runtime else 0,
            "audio_frames_muted": runtime.audio_frames_muted if runtime else 0,
            "video_frames_sent": runtime.video_frames_sent if runtime else 0,
            "active_playback": self.active_playback_count,
        }

    def _live_config(self) -> LiveCallConfig:
        return build_call_config(
            self.persona,
            self.voice_name,
            self.intimacy_enabled,
            self.settings.preferred_response_language,
        )

    # lifecycle

    def mark_connecting(self) -> None:
        self.error_message = ""
        self._set_status(CallStatus.CONNECTING)

    async def start(self) -> CallStatus:
        if not await self.credentials.has_selected_credential():
            logger.info("Live call %s waiting for an API key", self.session_id)
            self.error_message = ""
            self._set_status(CallStatus.NEEDS_CREDENTIAL)
            return self.status
        await self._connect()
        return self.status

    async def retry(self) -> CallStatus:
        return await self.start()

    async def select_credential_and_retry(self) -> CallStatus:
        # Selection is trusted: the key is not re-checked before connecting.
        await self.credentials.select_credential()
        await self._connect()
        return self.status

    async def _connect(self) -> None:
        async with self._connect_lock:
            await self._teardown()
            self.error_message = ""
            self._set_status(CallStatus.CONNECTING)
            runtime = _CallRuntime()
            self._runtime = runtime
            try:
                runtime.video = self._video_capture_factory()
                runtime.video.open()
                runtime.video.set_enabled(not self.camera_disabled)
                runtime.audio_in = self._audio_capture_factory()
                runtime.audio_out = self._audio_output_factory()
                runtime.audio_out.open()
                runtime.scheduler = PlaybackScheduler(runtime.audio_out)
                stream = await self.transport.connect(self._live_config(), runtime.events)
            except asyncio.CancelledError:
                await self._teardown()
                raise
            except Exception as exc:
                await self._fail(runtime, str(exc) or type(exc).__name__)
                return

            if runtime.closed:
                # Hung up while the connection was being established.
                await self._release("late stream", stream.close)
                return
            runtime.stream = stream
            runtime.consumer_task = asyncio.create_task(
                self._consume_events(runtime),
                name=f"live-call-events-{self.session_id}",
            )

    async def _fail(self, runtime: _CallRuntime, message: str) -> None:
        if runtime is not self._runtime:
            return
        status = CallStatus.NEEDS_CREDENTIAL if is_credential_error(message) else CallStatus.ERROR
        logger.warning("Live call %s failed (%s): %s", self.session_id, status.value, message)
        await self._teardown()
        self.error_message = message
        self._set_status(status)

    async def close(self) -> None:
        await self._teardown()
        self.error_message = ""
        self._set_status(CallStatus.IDLE)

    # events

    async def _consume_events(self, runtime: _CallRuntime) -> None:
        while not runtime.closed:
            event = await runtime.events.get()
            if runtime.closed:
                return
            try:
                await self._handle_event(runtime, event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Live call event handling failed: %s", type(event).__name__)

    async def _handle_event(self, runtime: _CallRuntime, event: CallEvent) -> None:
        if isinstance(event, CallOpened):
            await self._on_opened(runtime)
        elif isinstance(event, InboundAudio):
            self._play_inbound(runtime, event)
        elif isinstance(event, TurnInterrupted):
            if runtime.scheduler is not None:
                stopped = runtime.scheduler.interrupt()
                logger.info("Live call barge-in: stopped %s chunk(s)", stopped)
        elif isinstance(event, CallError):
            await self._fail(runtime, event.message)
        elif isinstance(event, CallClosed):
            if self.status is CallStatus.NEEDS_CREDENTIAL:
                return
            logger.info("Live call %s closed by server %s", self.session_id, event.reason)
            await self.close()

    async def _on_opened(self, runtime: _CallRuntime) -> None:
        self._set_status(CallStatus.ACTIVE)
        if runtime.audio_in is None:
            return
        try:
            runtime.audio_in.start(functools.partial(self._on_audio_frame, runtime))
        except CaptureDeviceError as exc:
            await self._fail(runtime, str(exc))
            return
        runtime.capturing = True
        runtime.sender_task = asyncio.create_task(
            self._sender_loop(runtime),
            name=f"live-call-sender-{self.session_id}",
        )
        runtime.video_task = asyncio.create_task(
            self._video_loop(runtime),
            name=f"live-call-video-{self.session_id}",
        )

    def _play_inbound(self, runtime: _CallRuntime, event: InboundAudio) -> None:
        if runtime.scheduler is None:
            return
        try:
            pcm = decode_payload(event.data)
        except ValueError as exc:
            logger.warning("Dropping undecodable inbound audio: %s", exc)
            return
        _, channels = parse_pcm_mime(event.mime_type, self.output_rate)
        samples = pcm16_to_float(pcm, channels)
        if channels > 1:
            samples = samples.mean(axis=1, keepdims=True).astype(np.float32)
        if runtime.scheduler.schedule(samples) is not None:
            runtime.inbound_chunks += 1

    # outbound media

    def _on_audio_frame(self, runtime: _CallRuntime, samples: np.ndarray) -> None:
        if runtime.closed or self.status is not CallStatus.ACTIVE:
            return
        if self.muted:
            runtime.audio_frames_muted += 1
            return
        chunk = MediaChunk(data=encode_base64(float_to_pcm16(samples)), mime_type=pcm_mime(self.input_rate))
        if runtime.outbound.full():
            with contextlib.suppress(asyncio.QueueEmpty):
                runtime.outbound.get_nowait()
                runtime.audio_frames_overflowed += 1
        with contextlib.suppress(asyncio.QueueFull):
            runtime.outbound.put_nowait(chunk)

    async def _sender_loop(self, runtime: _CallRuntime) -> None:
        while not runtime.closed:
            chunk = await runtime.outbound.get()
            if runtime.stream is None:
                continue
            try:
                await runtime.stream.send(chunk)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if not runtime.closed:
                    runtime.events.put_nowait(CallError(message=str(exc) or type(exc).__name__))
                return
            runtime.audio_frames_sent += 1

    async def _video_loop(self, runtime: _CallRuntime) -> None:
        interval = max(0.05, float(self.settings.live_video_interval_seconds))
        width = self.settings.live_video_width
        height = self.settings.live_video_height
        quality = self.settings.live_video_jpeg_quality
        while not runtime.closed:
            await asyncio.sleep(interval)
            if self.camera_disabled or runtime.video is None or runtime.stream is None:
                continue
            read = asyncio.ensure_future(asyncio.to_thread(runtime.video.read_frame))
            runtime.frame_read = read
            frame = await asyncio.shield(read)
            if frame is None or runtime.closed:
                continue
            try:
                jpeg = self._frame_encoder(frame, width, height, quality)
            except Exception as exc:
                logger.debug("Skipping camera frame: %s", exc)
                continue
            try:
                await runtime.stream.send(MediaChunk(data=encode_base64(jpeg), mime_type="image/jpeg"))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if not runtime.closed:
                    runtime.events.put_nowait(CallError(message=str(exc) or type(exc).__name__))
                return
            runtime.video_frames_sent += 1

    # controls

    def toggle_mute(self) -> bool:
        self.muted = not self.muted
        logger.info("Live call %s microphone %s", self.session_id, "muted" if self.muted else "unmuted")
        return self.muted

    def toggle_camera(self) -> bool:
        self.camera_disabled = not self.camera_disabled
        runtime = self._runtime
        if runtime is not None and runtime.video is not None:
            try:
                runtime.video.set_enabled(not self.camera_disabled)
            except Exception as exc:
                logger.warning("Camera toggle failed: %s", exc)
        return self.camera_disabled

    # teardown

    @staticmethod
    async def _release(label: str, action: Callable[[], Any]) -> None:
        try:
            result = action()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Live call teardown step '%s' failed: %s", label, exc)

    @staticmethod
    async def _cancel_task(task: asyncio.Task[None] | None) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    @staticmethod
    async def _finish_frame_read(read: asyncio.Future[Any] | None) -> None:
        if read is None or read.done():
            return
        await asyncio.wait({read})
        if not read.cancelled() and read.exception() is not None:
            logger.debug("Camera read failed during teardown: %s", read.exception())

    async def _teardown(self) -> None:
        runtime = self._runtime
        if runtime is None:
            return
        self._runtime = None
        runtime.closed = True

        await self._release("video loop", lambda: self._cancel_task(runtime.video_task))
        await self._release("audio sender", lambda: self._cancel_task(runtime.sender_task))
        if runtime.stream is not None:
            await self._release("stream", runtime.stream.close)
        if runtime.audio_in is not None and runtime.capturing:
            await self._release("microphone", runtime.audio_in.stop)
        if runtime.scheduler is not None:
            await self._release("playback", runtime.scheduler.interrupt)
        if runtime.audio_out is not None:
            await self._release("speaker", runtime.audio_out.close)
        if runtime.video is not None:
            await self._release("camera read", lambda: self._finish_frame_read(runtime.frame_read))
            await self._release("camera", runtime.video.close)
        await self._release("event consumer", lambda: self._cancel_task(runtime.consumer_task))

        discarded = 0
        while not runtime.events.empty():
            runtime.events.get_nowait()
            discarded += 1
        if discarded:
            logger.debug("Discarded %s pending call event(s)", discarded)
