from __future__ import annotations

import asyncio
from typing import Callable, Protocol

import numpy as np

from .events import CallEvent, MediaChunk


class CaptureDeviceError(RuntimeError):
    """Microphone, camera or speaker could not be opened."""


class AudioCapture(Protocol):
    """Microphone input. `on_frame` receives float32 mono blocks on the event loop thread."""

    def start(self, on_frame: Callable[[np.ndarray], None]) -> None: ...

    def stop(self) -> None: ...


class VideoCapture(Protocol):
    def open(self) -> None: ...

    def read_frame(self) -> np.ndarray | None: ...

    def set_enabled(self, enabled: bool) -> None: ...

    def close(self) -> None: ...


class PlaybackHandle(Protocol):
    start_time: float
    duration: float

    def stop(self) -> None: ...


class AudioOutput(Protocol):
    """Speaker output with its own clock, in seconds since the output was opened."""

    sample_rate: int

    @property
    def current_time(self) -> float: ...

    def open(self) -> None: ...

    def play(
        self,
        samples: np.ndarray,
        start_time: float,
        on_ended: Callable[[PlaybackHandle], None] | None = None,
    ) -> PlaybackHandle: ...

    def close(self) -> None: ...


class RealtimeStream(Protocol):
    async def send(self, chunk: MediaChunk) -> None: ...

    async def close(self) -> None: ...


class RealtimeTransport(Protocol):
    async def connect(self, config: object, events: "asyncio.Queue[CallEvent]") -> RealtimeStream: ...
