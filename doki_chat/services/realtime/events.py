from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True, slots=True)
class MediaChunk:
    """Outbound realtime input: base64 payload plus its mime type."""

    data: str
    mime_type: str


@dataclass(frozen=True, slots=True)
class CallOpened:
    pass


@dataclass(frozen=True, slots=True)
class InboundAudio:
    data: bytes | str
    mime_type: str | None = None


@dataclass(frozen=True, slots=True)
class TurnInterrupted:
    pass


@dataclass(frozen=True, slots=True)
class CallError:
    message: str


@dataclass(frozen=True, slots=True)
class CallClosed:
    reason: str = ""


CallEvent = Union[CallOpened, InboundAudio, TurnInterrupted, CallError, CallClosed]
