from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from ...config import Settings, _clean_key

logger = logging.getLogger("doki_chat.realtime")

_CREDENTIAL_ERROR_MARKERS = ("requested entity was not found",)


def is_credential_error(message: str) -> bool:
    """The live model answers this way when the selected key cannot reach it."""
    lowered = (message or "").lower()
    return any(marker in lowered for marker in _CREDENTIAL_ERROR_MARKERS)


class CredentialProvider(Protocol):
    async def has_selected_credential(self) -> bool: ...

    async def select_credential(self) -> None: ...


class EnvCredentialProvider:
    """Key from the environment, replaceable at runtime from the call screen."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._supplied: asyncio.Event | None = None

    def _event(self) -> asyncio.Event:
        if self._supplied is None:
            self._supplied = asyncio.Event()
        return self._supplied

    async def has_selected_credential(self) -> bool:
        return self.settings.has_api_key()

    def supply(self, api_key: str) -> None:
        cleaned = _clean_key(api_key or "")
        if not cleaned:
            raise ValueError("API key cannot be empty")
        self.settings.gemini_api_key = cleaned
        logger.info("Gemini API key replaced from the call screen")
        self._event().set()

    async def select_credential(self) -> None:
        event = self._event()
        await event.wait()
        event.clear()
