from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from typing import Any, Callable

import cv2
import numpy as np
import sounddevice as sd

from .capabilities import CaptureDeviceError

logger = logging.getLogger("doki_chat.realtime")


def _post(loop: asyncio.AbstractEventLoop, callback: Callable[..., Any], *args: Any) -> None:
    if loop.is_closed():
        return
    with contextlib.suppress(RuntimeError):
        loop.call_soon_threadsafe(callback, *args)


class SoundDeviceCapture:
    """Microphone blocks of `frame_size` float32 mono samples, delivered on the event loop."""

    def __init__(
        self,
        sample_rate: int = 16000,
        frame_size: int = 4096,
        device: int | str | None = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.device = device
        self._stream: sd.InputStream | None = None

    def start(self, on_frame: Callable[[np.ndarray], None]) -> None:
        if self._stream is not None:
            return
        loop = asyncio.get_running_loop()

        def _callback(indata: np.ndarray, frames: int, time_info: Any, status: sd.CallbackFlags) -> None:
            if status:
                logger.debug("Microphone status: %s", status)
            _post(loop, on_frame, indata[:, 0].copy())

        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                blocksize=self.frame_size,
                device=self.device,
                callback=_callback,
            )
            stream.start()
        except Exception as exc:
            raise CaptureDeviceError(f"Microphone unavailable: {exc}") from exc
        self._stream = stream

    def stop(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        stream.stop()
        stream.close()


class _ScheduledBuffer:
    def __init__(
        self,
        output: "SoundDeviceOutput",
        samples: np.ndarray,
        start_frame: int,
        on_ended: Callable[["_ScheduledBuffer"], None] | None,
    ) -> None:
        self._output = output
        self.samples = samples
        self.start_frame = start_frame
        self.position = 0
        self.on_ended = on_ended
        self.stopped = False

    @property
    def start_time(self) -> float:
        return self.start_frame / float(self._output.sample_rate)

    @property
    def duration(self) -> float:
        return self.samples.shape[0] / float(self._output.sample_rate)

    def stop(self) -> None:
        self._output._remove(self)


class SoundDeviceOutput:
    """Speaker timeline: buffers are mixed in at their scheduled frame by the stream callback.

    The clock is the number of frames handed to the device since `open()`.
    """

    def __init__(self, sample_rate: int = 24000, channels: int = 1, device: int | str | None = None) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.device = device
        self._lock = threading.Lock()
        self._buffers: list[_ScheduledBuffer] = []
        self._frames_played = 0
        self._stream: sd.OutputStream | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._frames_played / float(self.sample_rate)

    def open(self) -> None:
        if self._stream is not None:
            return
        self._loop = asyncio.get_running_loop()
        try:
            stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="float32",
                device=self.device,
                callback=self._callback,
            )
            stream.start()
        except Exception as exc:
            raise CaptureDeviceError(f"Speaker unavailable: {exc}") from exc
        self._stream = stream

    def play(
        self,
        samples: np.ndarray,
        start_time: float,
        on_ended: Callable[[Any], None] | None = None,
    ) -> _ScheduledBuffer:
        data = np.asarray(samples, dtype=np.float32)
        if data.ndim == 1:
            data = data.reshape(-1, 1)
        if data.shape[1] != self.channels:
            data = np.repeat(data[:, :1], self.channels, axis=1)
        buffer = _ScheduledBuffer(self, data, int(round(start_time * self.sample_rate)), on_ended)
        with self._lock:
            self._buffers.append(buffer)
        return buffer

    def _remove(self, buffer: _ScheduledBuffer) -> None:
        with self._lock:
            buffer.stopped = True
            with contextlib.suppress(ValueError):
                self._buffers.remove(buffer)

    def _callback(self, outdata: np.ndarray, frames: int, time_info: Any, status: sd.CallbackFlags) -> None:
        if status:
            logger.debug("Speaker status: %s", status)
        outdata.fill(0)
        finished: list[_ScheduledBuffer] = []
        with self._lock:
            block_start = self._frames_played
            for buffer in list(self._buffers):
                offset = buffer.start_frame + buffer.position - block_start
                if offset >= frames:
                    continue
                dst = max(0, offset)
                count = min(frames - dst, buffer.samples.shape[0] - buffer.position)
                outdata[dst : dst + count] += buffer.samples[buffer.position : buffer.position + count]
                buffer.position += count
                if buffer.position >= buffer.samples.shape[0]:
                    self._buffers.remove(buffer)
                    finished.append(buffer)
            self._frames_played += frames
        np.clip(outdata, -1.0, 1.0, out=outdata)
        loop = self._loop
        if loop is None:
            return
        for buffer in finished:
            if buffer.on_ended is not None:
                _post(loop, buffer.on_ended, buffer)

    def close(self) -> None:
        stream = self._stream
        self._stream = None
        with self._lock:
            self._buffers.clear()
        if stream is None:
            return
        stream.stop()
        stream.close()


class OpenCVCamera:
    def __init__(self, index: int = 0) -> None:
        self.index = index
        self._capture: cv2.VideoCapture | None = None
        self._enabled = True
        # read_frame runs on a worker thread; release must never race a read.
        self._lock = threading.Lock()

    def open(self) -> None:
        capture = cv2.VideoCapture(self.index)
        if not capture.isOpened():
            capture.release()
            raise CaptureDeviceError(f"Camera {self.index} unavailable")
        with self._lock:
            self._capture = capture

    def read_frame(self) -> np.ndarray | None:
        with self._lock:
            capture = self._capture
            if capture is None or not self._enabled:
                return None
            ok, frame = capture.read()
        if not ok:
            return None
        return frame

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = bool(enabled)

    def close(self) -> None:
        with self._lock:
            capture = self._capture
            self._capture = None
            if capture is not None:
                capture.release()


def encode_jpeg_frame(frame: np.ndarray, width: int, height: int, quality: int) -> bytes:
    resized = cv2.resize(frame, (width, height), interpolation=cv2.INTER_AREA)
    ok, encoded = cv2.imencode(".jpg", resized, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return encoded.tobytes()
