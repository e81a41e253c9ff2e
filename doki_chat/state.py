from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from .models import BubbleStyle, BubbleTheme, ChatSession, Message, Persona, now_ms
from .storage import SessionRepository

logger = logging.getLogger("doki_chat")

_UNSET = object()


@dataclass(frozen=True, slots=True)
class StateChange:
    kind: str
    session_id: str | None = None


StateListener = Callable[[StateChange], None]


class SessionState:
    """Owned container for the session list and the active-session pointer.

    Every mutation goes through one method here, refreshes `last_updated_ms`
    of the touched session, rewrites the persisted list and notifies
    subscribers. Returned sessions are copies.
    """

    def __init__(self, repository: SessionRepository) -> None:
        self.repository = repository
        self._sessions: list[ChatSession] = []
        self._active_session_id: str | None = None
        self._listeners: list[StateListener] = []
        self._save_lock = asyncio.Lock()
        self._loaded = False

    async def load(self) -> None:
        self._sessions = await self.repository.load()
        self._loaded = True
        logger.info("Loaded %s chat sessions", len(self._sessions))
        self._notify(StateChange("loaded"))

    @property
    def active_session_id(self) -> str | None:
        return self._active_session_id

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, change: StateChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("State listener failed for %s", change)

    async def _persist(self) -> None:
        async with self._save_lock:
            await self.repository.save(self._sessions)

    def _find(self, session_id: str) -> ChatSession | None:
        for session in self._sessions:
            if session.id == session_id:
                return session
        return None

    def sessions(self) -> list[ChatSession]:
        return [session.copy() for session in self._sessions]

    def sessions_by_recency(self) -> list[ChatSession]:
        return sorted(self.sessions(), key=lambda item: item.last_updated_ms, reverse=True)

    def get(self, session_id: str) -> ChatSession | None:
        session = self._find(session_id)
        return session.copy() if session is not None else None

    def find_by_persona(self, persona_id: str) -> ChatSession | None:
        matches = [session for session in self._sessions if session.persona_id == persona_id]
        if not matches:
            return None
        return max(matches, key=lambda item: item.last_updated_ms).copy()

    async def start_chat(self, persona: Persona) -> ChatSession:
        existing = self.find_by_persona(persona.id)
        if existing is not None:
            self._active_session_id = existing.id
            self._notify(StateChange("selected", existing.id))
            return existing

        session = ChatSession.open_with_greeting(persona)
        self._sessions.insert(0, session)
        self._active_session_id = session.id
        await self._persist()
        logger.info("Created chat session %s for persona=%s", session.id, persona.id)
        self._notify(StateChange("created", session.id))
        return session.copy()

    def select_session(self, session_id: str | None) -> ChatSession | None:
        if session_id is None:
            self._active_session_id = None
            self._notify(StateChange("selected", None))
            return None
        session = self._find(session_id)
        if session is None:
            return None
        self._active_session_id = session.id
        self._notify(StateChange("selected", session.id))
        return session.copy()

    async def append_message(self, session_id: str, message: Message) -> ChatSession | None:
        session = self._find(session_id)
        if session is None:
            logger.debug("Dropping message %s for missing session %s", message.id, session_id)
            return None
        session.messages.append(message)
        session.last_updated_ms = now_ms()
        await self._persist()
        self._notify(StateChange("messages", session_id))
        return session.copy()

    async def update_preferences(
        self,
        session_id: str,
        *,
        intimacy_enabled: object = _UNSET,
        voice_override: object = _UNSET,
        bubble_style: object = _UNSET,
        bubble_theme: object = _UNSET,
    ) -> ChatSession | None:
        session = self._find(session_id)
        if session is None:
            return None
        if intimacy_enabled is not _UNSET:
            session.intimacy_enabled = bool(intimacy_enabled)
        if voice_override is not _UNSET:
            session.voice_override = str(voice_override) if voice_override else None
        if bubble_style is not _UNSET:
            session.bubble_style = BubbleStyle(bubble_style)
        if bubble_theme is not _UNSET:
            session.bubble_theme = BubbleTheme(bubble_theme)
        session.last_updated_ms = now_ms()
        await self._persist()
        self._notify(StateChange("preferences", session_id))
        return session.copy()

    async def toggle_intimacy(self, session_id: str) -> ChatSession | None:
        session = self._find(session_id)
        if session is None:
            return None
        return await self.update_preferences(session_id, intimacy_enabled=not session.intimacy_enabled)

    async def delete_session(self, session_id: str) -> bool:
        before = len(self._sessions)
        self._sessions = [session for session in self._sessions if session.id != session_id]
        if len(self._sessions) == before:
            return False
        if self._active_session_id == session_id:
            self._active_session_id = None
        await self._persist()
        logger.info("Deleted chat session %s", session_id)
        self._notify(StateChange("deleted", session_id))
        return True
