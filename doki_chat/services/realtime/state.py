from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from .capabilities import AudioCapture, AudioOutput, RealtimeStream, VideoCapture
from .events import CallEvent, MediaChunk
from .playback import PlaybackScheduler


@dataclass(slots=True)
class _CallRuntime:
    """Everything one connection attempt owns. Rebuilt from scratch on every connect."""

    events: asyncio.Queue[CallEvent] = field(default_factory=asyncio.Queue)
    outbound: asyncio.Queue[MediaChunk] = field(default_factory=lambda: asyncio.Queue(maxsize=64))
    stream: RealtimeStream | None = None
    audio_in: AudioCapture | None = None
    audio_out: AudioOutput | None = None
    video: VideoCapture | None = None
    scheduler: PlaybackScheduler | None = None
    consumer_task: asyncio.Task[None] | None = None
    sender_task: asyncio.Task[None] | None = None
    video_task: asyncio.Task[None] | None = None
    # Camera read running on a worker thread; it outlives a cancelled video loop.
    frame_read: asyncio.Future[Any] | None = None
    capturing: bool = False
    closed: bool = False
    audio_frames_sent: int = 0
    audio_frames_muted: int = 0
    audio_frames_overflowed: int = 0
    video_frames_sent: int = 0
    inbound_chunks: int = 0
