from __future__ import annotations

import logging

import numpy as np

from .capabilities import AudioOutput, PlaybackHandle

logger = logging.getLogger("doki_chat.realtime")


class PlaybackScheduler:
    """Back-to-back scheduling of inbound audio chunks on an output clock.

    Each chunk starts at max(now, end of the previous chunk), so chunks never
    overlap and never start in the past. Every scheduled chunk stays in
    `active` until it ends or is interrupted.
    """

    def __init__(self, output: AudioOutput) -> None:
        self.output = output
        self.cursor = 0.0
        self.active: set[PlaybackHandle] = set()

    def schedule(self, samples: np.ndarray) -> PlaybackHandle | None:
        frames = int(samples.shape[0]) if samples.ndim else 0
        if frames <= 0:
            return None
        duration = frames / float(self.output.sample_rate)
        start = max(self.cursor, self.output.current_time)
        handle = self.output.play(samples, start, on_ended=self._on_ended)
        self.active.add(handle)
        self.cursor = start + duration
        return handle

    def _on_ended(self, handle: PlaybackHandle) -> None:
        self.active.discard(handle)

    def interrupt(self) -> int:
        stopped = 0
        for handle in list(self.active):
            try:
                handle.stop()
            except Exception as exc:
                logger.debug("Stopping playback chunk failed: %s", exc)
            stopped += 1
        self.active.clear()
        self.cursor = 0.0
        return stopped
