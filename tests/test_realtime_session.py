from __future__ import annotations

import asyncio
import base64
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import Callable

import numpy as np
import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from doki_chat.config import Settings  # noqa: E402
from doki_chat.models import CallStatus, ChatSession, Persona  # noqa: E402
from doki_chat.services.realtime import (  # noqa: E402
    CallClosed,
    CallDevices,
    CallError,
    CallManager,
    CallOpened,
    EnvCredentialProvider,
    InboundAudio,
    LiveCallConfig,
    MediaChunk,
    RealtimeCallSession,
    TurnInterrupted,
)


PERSONA = Persona(
    id="eunseok",
    display_name="Eunseok",
    avatar_ref="",
    tagline="",
    description="",
    system_prompt="You are Eunseok, gentle and a bit shy.",
    greeting="Oh, hi.",
    default_voice="Zephyr",
)


class _Stream:
    def __init__(self) -> None:
        self.sent: list[MediaChunk] = []
        self.closed = False

    async def send(self, chunk: MediaChunk) -> None:
        self.sent.append(chunk)

    async def close(self) -> None:
        self.closed = True

    def of_type(self, prefix: str) -> list[MediaChunk]:
        return [chunk for chunk in self.sent if chunk.mime_type.startswith(prefix)]


class _Transport:
    def __init__(self) -> None:
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.configs: list[LiveCallConfig] = []
        self.streams: list[_Stream] = []
        self.events: asyncio.Queue | None = None

    async def connect(self, config: LiveCallConfig, events: asyncio.Queue) -> _Stream:
        self.configs.append(config)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        self.events = events
        stream = _Stream()
        self.streams.append(stream)
        events.put_nowait(CallOpened())
        return stream

    @property
    def stream(self) -> _Stream:
        return self.streams[-1]


class _Mic:
    def __init__(self) -> None:
        self.on_frame: Callable[[np.ndarray], None] | None = None
        self.stopped = False
        self.stop_error: Exception | None = None

    def start(self, on_frame: Callable[[np.ndarray], None]) -> None:
        self.on_frame = on_frame

    def stop(self) -> None:
        self.stopped = True
        if self.stop_error is not None:
            raise self.stop_error

    def emit(self, frames: int = 4096) -> None:
        assert self.on_frame is not None
        self.on_frame(np.full(frames, 0.25, dtype=np.float32))


class _Handle:
    def __init__(self, start_time: float, duration: float) -> None:
        self.start_time = start_time
        self.duration = duration
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class _Speaker:
    def __init__(self) -> None:
        self.sample_rate = 24000
        self.now = 0.0
        self.opened = False
        self.closed = False
        self.handles: list[_Handle] = []

    @property
    def current_time(self) -> float:
        return self.now

    def open(self) -> None:
        self.opened = True

    def play(self, samples: np.ndarray, start_time: float, on_ended=None) -> _Handle:
        handle = _Handle(start_time, samples.shape[0] / self.sample_rate)
        self.handles.append(handle)
        return handle

    def close(self) -> None:
        self.closed = True


class _Camera:
    def __init__(self) -> None:
        self.opened = False
        self.closed = False
        self.enabled: list[bool] = []

    def open(self) -> None:
        self.opened = True

    def read_frame(self) -> np.ndarray | None:
        return np.zeros((8, 8, 3), dtype=np.uint8)

    def set_enabled(self, enabled: bool) -> None:
        self.enabled.append(enabled)

    def close(self) -> None:
        self.closed = True


class _Devices:
    """Fresh fake devices per connection attempt, recorded for assertions."""

    def __init__(self) -> None:
        self.mics: list[_Mic] = []
        self.speakers: list[_Speaker] = []
        self.cameras: list[_Camera] = []
        self.mic_stop_error: Exception | None = None

    def mic(self) -> _Mic:
        mic = _Mic()
        mic.stop_error = self.mic_stop_error
        self.mics.append(mic)
        return mic

    def speaker(self) -> _Speaker:
        speaker = _Speaker()
        self.speakers.append(speaker)
        return speaker

    def camera(self) -> _Camera:
        camera = _Camera()
        self.cameras.append(camera)
        return camera

    def bundle(self) -> CallDevices:
        return CallDevices(
            audio_capture=self.mic,
            audio_output=self.speaker,
            video_capture=self.camera,
            frame_encoder=lambda frame, width, height, quality: b"jpeg",
        )


def _settings(api_key: str = "live-key") -> Settings:
    return replace(Settings.from_env(), gemini_api_key=api_key, live_video_interval_seconds=0.05)


def _call(transport: _Transport, devices: _Devices, settings: Settings | None = None) -> RealtimeCallSession:
    settings = settings or _settings()
    return RealtimeCallSession(
        session_id="session_1",
        persona=PERSONA,
        voice_name="Zephyr",
        intimacy_enabled=False,
        settings=settings,
        transport=transport,
        credentials=EnvCredentialProvider(settings),
        audio_capture_factory=devices.mic,
        audio_output_factory=devices.speaker,
        video_capture_factory=devices.camera,
        frame_encoder=lambda frame, width, height, quality: b"jpeg",
    )


async def _settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def _pcm(frames: int) -> bytes:
    return np.zeros(frames, dtype="<i2").tobytes()


def test_missing_credential_skips_connect() -> None:
    transport = _Transport()
    devices = _Devices()

    async def scenario() -> RealtimeCallSession:
        call = _call(transport, devices, _settings(api_key=""))
        await call.start()
        return call

    call = asyncio.run(scenario())

    assert call.status is CallStatus.NEEDS_CREDENTIAL
    assert transport.configs == []
    assert devices.mics == [] and devices.speakers == [] and devices.cameras == []


def test_call_becomes_active_and_streams_microphone() -> None:
    transport = _Transport()
    devices = _Devices()

    async def scenario() -> None:
        call = _call(transport, devices)
        await call.start()
        await _settle()

        assert call.status is CallStatus.ACTIVE
        assert transport.configs[0].voice_name == "Zephyr"
        assert "You are Eunseok" in transport.configs[0].system_instruction
        assert devices.speakers[0].opened and devices.cameras[0].opened

        devices.mics[0].emit(4096)
        await _settle()

        audio = transport.stream.of_type("audio/")
        assert len(audio) == 1
        assert audio[0].mime_type == "audio/pcm;rate=16000"
        assert len(base64.b64decode(audio[0].data)) == 8192
        assert call.snapshot()["audio_frames_sent"] == 1
        await call.close()

    asyncio.run(scenario())


def test_muted_frames_are_dropped_and_counted() -> None:
    transport = _Transport()
    devices = _Devices()

    async def scenario() -> None:
        call = _call(transport, devices)
        await call.start()
        await _settle()

        assert call.toggle_mute() is True
        for _ in range(3):
            devices.mics[0].emit()
        await _settle()

        assert transport.stream.of_type("audio/") == []
        assert call.snapshot()["audio_frames_muted"] == 3

        assert call.toggle_mute() is False
        devices.mics[0].emit()
        await _settle()
        assert len(transport.stream.of_type("audio/")) == 1
        await call.close()

    asyncio.run(scenario())


def test_disabled_camera_sends_no_frames() -> None:
    transport = _Transport()
    devices = _Devices()

    async def scenario() -> None:
        call = _call(transport, devices)
        assert call.toggle_camera() is True
        await call.start()
        await _settle()
        await asyncio.sleep(0.25)

        assert devices.cameras[0].enabled == [False]
        assert transport.stream.of_type("image/") == []
        await call.close()

    asyncio.run(scenario())


def test_enabled_camera_sends_jpeg_frames() -> None:
    transport = _Transport()
    devices = _Devices()

    async def scenario() -> None:
        call = _call(transport, devices)
        await call.start()
        await _settle()
        await asyncio.sleep(0.25)

        frames = transport.stream.of_type("image/")
        assert frames
        assert frames[0].mime_type == "image/jpeg"
        assert base64.b64decode(frames[0].data) == b"jpeg"
        await call.close()

    asyncio.run(scenario())


def test_inbound_audio_plays_back_to_back_and_barge_in_resets() -> None:
    transport = _Transport()
    devices = _Devices()

    async def scenario() -> None:
        call = _call(transport, devices)
        await call.start()
        await _settle()
        assert transport.events is not None

        for _ in range(2):
            transport.events.put_nowait(InboundAudio(data=_pcm(2400), mime_type="audio/pcm;rate=24000"))
        await _settle()

        speaker = devices.speakers[0]
        assert [handle.start_time for handle in speaker.handles] == pytest.approx([0.0, 0.1])
        assert call.playback_cursor == pytest.approx(0.2)
        assert call.active_playback_count == 2

        transport.events.put_nowait(TurnInterrupted())
        await _settle()

        assert all(handle.stopped for handle in speaker.handles)
        assert call.playback_cursor == 0.0
        assert call.active_playback_count == 0

        speaker.now = 5.0
        transport.events.put_nowait(InboundAudio(data=_pcm(2400), mime_type="audio/pcm;rate=24000"))
        await _settle()
        assert speaker.handles[-1].start_time == pytest.approx(5.0)
        await call.close()

    asyncio.run(scenario())


def test_credential_error_from_server_releases_devices() -> None:
    transport = _Transport()
    devices = _Devices()

    async def scenario() -> RealtimeCallSession:
        call = _call(transport, devices)
        await call.start()
        await _settle()
        assert transport.events is not None
        transport.events.put_nowait(CallError(message="Requested entity was not found."))
        await _settle()
        return call

    call = asyncio.run(scenario())

    assert call.status is CallStatus.NEEDS_CREDENTIAL
    assert "Requested entity was not found" in call.error_message
    assert transport.stream.closed
    assert devices.mics[0].stopped
    assert devices.speakers[0].closed
    assert devices.cameras[0].closed
    assert call.active_playback_count == 0


def test_connect_failure_sets_error_and_retry_builds_fresh_runtime() -> None:
    transport = _Transport()
    transport.error = RuntimeError("socket refused")
    devices = _Devices()

    async def scenario() -> RealtimeCallSession:
        call = _call(transport, devices)
        await call.start()
        assert call.status is CallStatus.ERROR
        assert call.error_message == "socket refused"
        assert devices.speakers[0].closed and devices.cameras[0].closed
        assert not devices.mics[0].stopped

        transport.error = None
        await call.retry()
        await _settle()
        status = call.status
        await call.close()
        assert status is CallStatus.ACTIVE
        return call

    call = asyncio.run(scenario())

    assert call.error_message == ""
    assert len(devices.speakers) == 2
    assert len(devices.cameras) == 2


def test_connect_rejected_key_asks_for_credential() -> None:
    transport = _Transport()
    transport.error = RuntimeError("404 Requested entity was not found.")
    devices = _Devices()

    call = asyncio.run(_start(transport, devices))

    assert call.status is CallStatus.NEEDS_CREDENTIAL
    assert devices.speakers[0].closed


async def _start(transport: _Transport, devices: _Devices) -> RealtimeCallSession:
    call = _call(transport, devices)
    await call.start()
    await _settle()
    return call


def test_failing_microphone_release_does_not_block_other_releases() -> None:
    transport = _Transport()
    devices = _Devices()
    devices.mic_stop_error = RuntimeError("device busy")

    async def scenario() -> RealtimeCallSession:
        call = await _start(transport, devices)
        assert call.status is CallStatus.ACTIVE
        await call.close()
        return call

    call = asyncio.run(scenario())

    assert call.status is CallStatus.IDLE
    assert devices.mics[0].stopped
    assert transport.stream.closed
    assert devices.speakers[0].closed
    assert devices.cameras[0].closed


def test_server_close_returns_to_idle() -> None:
    transport = _Transport()
    devices = _Devices()

    async def scenario() -> RealtimeCallSession:
        call = await _start(transport, devices)
        assert transport.events is not None
        transport.events.put_nowait(CallClosed(reason="bye"))
        await _settle()
        return call

    call = asyncio.run(scenario())

    assert call.status is CallStatus.IDLE
    assert transport.stream.closed
    assert devices.speakers[0].closed


def test_hangup_while_connecting_closes_late_stream() -> None:
    transport = _Transport()
    devices = _Devices()

    async def scenario() -> RealtimeCallSession:
        transport.gate = asyncio.Event()
        call = _call(transport, devices)
        starting = asyncio.create_task(call.start())
        await _settle()
        assert call.status is CallStatus.CONNECTING

        await call.close()
        transport.gate.set()
        await starting
        await _settle()
        return call

    call = asyncio.run(scenario())

    assert call.status is CallStatus.IDLE
    assert transport.stream.closed
    assert devices.cameras[0].closed


def test_supplied_key_connects_after_selection() -> None:
    transport = _Transport()
    devices = _Devices()
    settings = _settings(api_key="")

    async def scenario() -> RealtimeCallSession:
        call = _call(transport, devices, settings)
        await call.start()
        assert call.status is CallStatus.NEEDS_CREDENTIAL

        credentials = call.credentials
        assert isinstance(credentials, EnvCredentialProvider)
        with pytest.raises(ValueError):
            credentials.supply("   ")
        credentials.supply(' "fresh-key" ')
        await call.select_credential_and_retry()
        await _settle()
        status = call.status
        await call.close()
        assert status is CallStatus.ACTIVE
        return call

    asyncio.run(scenario())

    assert settings.gemini_api_key == "fresh-key"
    assert len(transport.configs) == 1


def test_manager_keeps_a_single_call() -> None:
    transport = _Transport()
    devices = _Devices()
    settings = _settings()
    manager = CallManager(settings, EnvCredentialProvider(settings), transport=transport, devices=devices.bundle())
    session = ChatSession.open_with_greeting(PERSONA)
    session.voice_override = "Charon"

    async def scenario() -> None:
        assert manager.status_snapshot() == {"status": "idle", "call": None}

        first = await manager.open_call(session, PERSONA)
        await _settle()
        assert first.status is CallStatus.ACTIVE
        assert first.voice_name == "Charon"

        second = await manager.open_call(session, PERSONA)
        await _settle()
        assert first.status is CallStatus.IDLE
        assert manager.current is second
        assert devices.speakers[0].closed
        snapshot = manager.status_snapshot()
        assert snapshot["status"] == "active"
        assert snapshot["call"]["persona_id"] == PERSONA.id

        assert await manager.hangup() is True
        assert await manager.hangup() is False
        assert second.status is CallStatus.IDLE

    asyncio.run(scenario())


class _SlowCamera(_Camera):
    """read_frame blocks its worker thread until released."""

    def __init__(self) -> None:
        super().__init__()
        self.reading = threading.Event()
        self.release = threading.Event()
        self.in_flight = False
        self.closed_mid_read = False

    def read_frame(self) -> np.ndarray | None:
        self.in_flight = True
        self.reading.set()
        self.release.wait(timeout=5.0)
        self.in_flight = False
        return np.zeros((8, 8, 3), dtype=np.uint8)

    def close(self) -> None:
        self.closed_mid_read = self.in_flight
        super().close()


def test_hangup_waits_for_camera_read_before_release() -> None:
    transport = _Transport()
    devices = _Devices()
    camera = _SlowCamera()
    devices.camera = lambda: camera  # type: ignore[method-assign]

    async def scenario() -> RealtimeCallSession:
        call = await _start(transport, devices)
        assert call.status is CallStatus.ACTIVE
        while not camera.reading.is_set():
            await asyncio.sleep(0.01)

        closing = asyncio.create_task(call.close())
        await asyncio.sleep(0.1)
        assert not closing.done()
        assert not camera.closed

        camera.release.set()
        await closing
        return call

    call = asyncio.run(scenario())

    assert call.status is CallStatus.IDLE
    assert camera.closed
    assert camera.closed_mid_read is False
    assert transport.stream.of_type("image/") == []


def test_manager_background_start_shows_connecting_and_hangup_cancels() -> None:
    transport = _Transport()
    devices = _Devices()
    settings = _settings()
    manager = CallManager(settings, EnvCredentialProvider(settings), transport=transport, devices=devices.bundle())
    session = ChatSession.open_with_greeting(PERSONA)

    async def scenario() -> None:
        transport.gate = asyncio.Event()
        call = await manager.open_call(session, PERSONA, wait=False)
        assert call.status is CallStatus.CONNECTING
        await _settle()
        assert len(transport.configs) == 1

        assert await manager.hangup() is True
        assert call.status is CallStatus.IDLE
        assert devices.cameras[0].closed
        assert transport.streams == []

        transport.gate = None
        joined = await manager.open_call(session, PERSONA, wait=False)
        while joined.status is CallStatus.CONNECTING:
            await asyncio.sleep(0.01)
        assert joined.status is CallStatus.ACTIVE
        await manager.hangup()

    asyncio.run(scenario())
