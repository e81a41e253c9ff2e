from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from .config import Settings
from .controller import ChatController
from .personas import PersonaCatalog
from .services.chat_orchestrator import ChatOrchestrator
from .services.dictation import GeminiDictation, SpeechRecognizer
from .services.gemini_client import GeminiClient
from .services.media import MediaRequester
from .services.realtime import CallDevices, CallManager, EnvCredentialProvider
from .services.realtime.capabilities import AudioCapture, RealtimeTransport
from .state import SessionState
from .storage import KeyValueStore, SessionRepository

logger = logging.getLogger("doki_chat")


def _microphone(settings: Settings) -> Callable[[], AudioCapture]:
    def _factory() -> AudioCapture:
        from .services.realtime.devices import SoundDeviceCapture

        return SoundDeviceCapture(
            sample_rate=settings.live_input_sample_rate,
            frame_size=settings.live_audio_frame_size,
        )

    return _factory


@dataclass(slots=True)
class AppServices:
    settings: Settings
    catalog: PersonaCatalog
    store: KeyValueStore
    state: SessionState
    llm: Any
    controller: ChatController
    credentials: EnvCredentialProvider
    calls: CallManager

    async def start(self) -> None:
        await self.state.repository.init()
        await self.state.load()
        starter = getattr(self.llm, "start", None)
        if callable(starter):
            await starter()
        logger.info(
            "Services ready: personas=%s sessions=%s api_key=%s",
            len(self.catalog),
            len(self.state.sessions()),
            "set" if self.settings.has_api_key() else "missing",
        )

    async def close(self) -> None:
        try:
            await self.calls.hangup()
        except Exception:
            logger.exception("Failed to hang up live call on shutdown")
        await self.controller.shutdown()
        closer = getattr(self.llm, "close", None)
        if callable(closer):
            await closer()


def build_services(
    settings: Settings,
    *,
    llm: Any | None = None,
    catalog: PersonaCatalog | None = None,
    transport: RealtimeTransport | None = None,
    devices: CallDevices | Callable[[], CallDevices] | None = None,
    dictation: SpeechRecognizer | None = None,
) -> AppServices:
    if llm is None:
        llm = GeminiClient(
            api_key=lambda: settings.gemini_api_key,
            timeout_seconds=settings.gemini_timeout_seconds,
            retries=settings.gemini_request_retries,
            base_url=settings.gemini_base_url,
        )
    if catalog is None:
        catalog = PersonaCatalog.load(settings.personas_json_path)
    if dictation is None:
        dictation = GeminiDictation(llm, settings, _microphone(settings))

    store = KeyValueStore(
        settings.sqlite_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        reset_on_schema_mismatch=settings.sqlite_reset_on_schema_mismatch,
    )
    state = SessionState(SessionRepository(store, key=settings.sessions_storage_key))
    controller = ChatController(
        state=state,
        catalog=catalog,
        orchestrator=ChatOrchestrator(llm, settings),
        media=MediaRequester(llm, settings),
        dictation=dictation,
        default_voice=settings.speech_default_voice,
    )
    credentials = EnvCredentialProvider(settings)
    calls = CallManager(settings, credentials, transport=transport, devices=devices)
    return AppServices(
        settings=settings,
        catalog=catalog,
        store=store,
        state=state,
        llm=llm,
        controller=controller,
        credentials=credentials,
        calls=calls,
    )
