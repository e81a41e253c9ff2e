from __future__ import annotations

import asyncio
import base64
import contextlib
import logging
from typing import Any, Callable

from google import genai
from google.genai import types
from websockets.exceptions import ConnectionClosedOK

from .audio import normalize_model
from .config import LiveCallConfig, build_live_connect_config
from .events import CallClosed, CallError, CallEvent, CallOpened, InboundAudio, MediaChunk, TurnInterrupted

logger = logging.getLogger("doki_chat.realtime")


class GeminiLiveStream:
    """One open Gemini Live connection. Server messages are pushed into `events`."""

    def __init__(
        self,
        session: Any,
        stack: contextlib.AsyncExitStack,
        events: "asyncio.Queue[CallEvent]",
    ) -> None:
        self._session = session
        self._stack = stack
        self._events = events
        self._receiver: asyncio.Task[None] | None = None
        self._closed = False

    def start_receiving(self) -> None:
        self._receiver = asyncio.create_task(self._receive_loop(), name="live-call-receiver")

    async def _receive_loop(self) -> None:
        try:
            while not self._closed:
                async for message in self._session.receive():
                    content = message.server_content
                    if content is None:
                        continue
                    if content.model_turn and content.model_turn.parts:
                        for part in content.model_turn.parts:
                            inline = part.inline_data
                            if inline and inline.data:
                                self._events.put_nowait(InboundAudio(data=inline.data, mime_type=inline.mime_type))
                    if content.interrupted:
                        self._events.put_nowait(TurnInterrupted())
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            raise
        except ConnectionClosedOK as exc:
            if not self._closed:
                self._events.put_nowait(CallClosed(reason=str(exc)))
        except Exception as exc:
            if not self._closed:
                logger.warning("Live call receive failed: %s", exc)
                self._events.put_nowait(CallError(message=str(exc)))

    async def send(self, chunk: MediaChunk) -> None:
        if self._closed:
            return
        blob = types.Blob(data=base64.b64decode(chunk.data), mime_type=chunk.mime_type)
        if chunk.mime_type.startswith("audio/"):
            await self._session.send_realtime_input(audio=blob)
        else:
            await self._session.send_realtime_input(video=blob)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._receiver is not None:
            self._receiver.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._receiver
        await self._stack.aclose()


class GeminiLiveTransport:
    """Connects to Gemini Live with a client built from the current key on every call."""

    def __init__(self, api_key: str | Callable[[], str], model: str) -> None:
        self._api_key = api_key
        self.model = normalize_model(model)

    def _resolve_key(self) -> str:
        return self._api_key() if callable(self._api_key) else self._api_key

    async def connect(self, config: LiveCallConfig, events: "asyncio.Queue[CallEvent]") -> GeminiLiveStream:
        client = genai.Client(api_key=self._resolve_key())
        stack = contextlib.AsyncExitStack()
        try:
            session = await stack.enter_async_context(
                client.aio.live.connect(model=self.model, config=build_live_connect_config(config))
            )
        except BaseException:
            await stack.aclose()
            raise
        logger.info("Live call connected: model=%s voice=%s", self.model, config.voice_name)
        events.put_nowait(CallOpened())
        stream = GeminiLiveStream(session, stack, events)
        stream.start_receiving()
        return stream
