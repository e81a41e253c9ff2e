from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from .models import ChatSession, Message, Persona, Role
from .personas import PersonaCatalog
from .prompts import build_image_message_text, build_scene_prompt
from .services.chat_orchestrator import ChatOrchestrator
from .services.dictation import SpeechRecognizer
from .services.media import MediaRequester, SpeechClip
from .state import SessionState

logger = logging.getLogger("doki_chat")


class ChatController:
    """User intents from the chat screen, mapped onto state mutations and model calls.

    `send_message` returns as soon as the user's line is stored; the reply
    is produced by a background task. Replies for one session run one at a
    time, so they land in the order the messages were sent. Photo requests
    are background tasks too, one at a time per session.
    """

    def __init__(
        self,
        state: SessionState,
        catalog: PersonaCatalog,
        orchestrator: ChatOrchestrator,
        media: MediaRequester,
        dictation: SpeechRecognizer | None = None,
        default_voice: str = "Kore",
    ) -> None:
        self.state = state
        self.catalog = catalog
        self.orchestrator = orchestrator
        self.media = media
        self.dictation = dictation
        self.default_voice = default_voice
        self._reply_locks: dict[str, asyncio.Lock] = {}
        self._pending_replies: dict[str, int] = {}
        self._pending_images: set[str] = set()
        self._failed_images: set[str] = set()
        self._tasks: set[asyncio.Task[Any]] = set()

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._reply_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._reply_locks[session_id] = lock
        return lock

    def _session_and_persona(self, session_id: str) -> tuple[ChatSession, Persona] | None:
        session = self.state.get(session_id)
        if session is None:
            return None
        persona = self.catalog.get(session.persona_id)
        if persona is None:
            logger.warning("Session %s references unknown persona=%s", session_id, session.persona_id)
            return None
        return session, persona

    def is_pending(self, session_id: str) -> bool:
        return self._pending_replies.get(session_id, 0) > 0

    def is_generating_image(self, session_id: str) -> bool:
        return session_id in self._pending_images

    async def start_chat(self, persona_id: str) -> ChatSession:
        persona = self.catalog.require(persona_id)
        return await self.state.start_chat(persona)

    async def send_message(self, session_id: str, text: str) -> Message | None:
        cleaned = (text or "").strip()
        if not cleaned:
            return None
        # Nobody could answer a chat whose persona left the catalog.
        if self._session_and_persona(session_id) is None:
            return None
        message = Message.create(Role.USER, cleaned)
        if await self.state.append_message(session_id, message) is None:
            return None

        self._pending_replies[session_id] = self._pending_replies.get(session_id, 0) + 1
        self._track(asyncio.create_task(self._reply(session_id), name=f"chat-reply-{session_id}"))
        return message

    async def _reply(self, session_id: str) -> None:
        try:
            async with self._lock_for(session_id):
                resolved = self._session_and_persona(session_id)
                if resolved is None:
                    return
                session, persona = resolved
                reply = await self.orchestrator.get_reply(persona, session.messages, session.intimacy_enabled)
                if self.state.get(session_id) is None:
                    logger.info("Dropping late reply for deleted session %s", session_id)
                    return
                await self.state.append_message(session_id, Message.create(Role.PERSONA, reply))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Reply task failed for session %s", session_id)
        finally:
            remaining = self._pending_replies.get(session_id, 1) - 1
            if remaining > 0:
                self._pending_replies[session_id] = remaining
            else:
                self._pending_replies.pop(session_id, None)
                self._reply_locks.pop(session_id, None)

    def forget_session(self, session_id: str) -> None:
        """Drop bookkeeping for a deleted chat. Replies still in flight clean up after themselves."""
        self._failed_images.discard(session_id)
        if session_id not in self._pending_replies:
            self._reply_locks.pop(session_id, None)

    async def request_image(self, session_id: str) -> bool:
        """Start painting a scene for the chat; the photo message lands when it is ready."""
        resolved = self._session_and_persona(session_id)
        if resolved is None or session_id in self._pending_images:
            return False
        self._failed_images.discard(session_id)
        self._pending_images.add(session_id)
        self._track(asyncio.create_task(self._paint(session_id), name=f"chat-image-{session_id}"))
        return True

    async def _paint(self, session_id: str) -> None:
        try:
            resolved = self._session_and_persona(session_id)
            if resolved is None:
                return
            session, persona = resolved
            last = session.last_message()
            intimacy = session.intimacy_enabled
            image = await self.media.generate_image(build_scene_prompt(persona, last.text if last else ""), intimacy)
            if image is None:
                self._failed_images.add(session_id)
                return
            message = Message.create(
                Role.PERSONA,
                build_image_message_text(persona, intimacy),
                image_ref=image.data_url,
            )
            if await self.state.append_message(session_id, message) is None:
                logger.info("Dropping late image for deleted session %s", session_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Image task failed for session %s", session_id)
            self._failed_images.add(session_id)
        finally:
            self._pending_images.discard(session_id)

    def take_image_failure(self, session_id: str) -> bool:
        if session_id not in self._failed_images:
            return False
        self._failed_images.discard(session_id)
        return True

    async def speak_message(self, session_id: str, message_id: str) -> SpeechClip | None:
        resolved = self._session_and_persona(session_id)
        if resolved is None:
            return None
        session, persona = resolved
        message = next((item for item in session.messages if item.id == message_id), None)
        if message is None:
            return None
        voice = session.resolved_voice(persona, self.default_voice)
        return await self.media.generate_speech(message.text, voice)

    async def dictate(self) -> str:
        if self.dictation is None:
            return ""
        return await self.dictation.listen_once()

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
