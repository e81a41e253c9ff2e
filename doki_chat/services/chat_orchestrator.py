from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Sequence

from ..config import Settings
from ..models import Message, Persona, Role
from ..prompts import build_chat_system_instruction, empty_reply_fallback, error_reply
from .gemini_client import GeminiEmptyResponse

logger = logging.getLogger("doki_chat")


class ChatOrchestrator:
    def __init__(self, llm: Any, settings: Settings) -> None:
        self.llm = llm
        self.model = settings.chat_model
        self.temperature = settings.chat_temperature
        self.top_p = settings.chat_top_p
        self.max_output_tokens = settings.chat_max_output_tokens
        self.language = settings.preferred_response_language

    def build_request(
        self,
        persona: Persona,
        history: Sequence[Message],
        intimacy_enabled: bool,
    ) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = [
            {"role": "system", "content": build_chat_system_instruction(persona, intimacy_enabled, self.language)}
        ]
        for message in history:
            role = "assistant" if message.role is Role.PERSONA else "user"
            messages.append({"role": role, "content": message.text})
        return messages

    async def get_reply(self, persona: Persona, history: Sequence[Message], intimacy_enabled: bool) -> str:
        """Return the persona's next line; never raises for service failures."""
        messages = self.build_request(persona, history, intimacy_enabled)
        try:
            reply = await self.llm.chat(
                self.model,
                messages,
                temperature=self.temperature,
                top_p=self.top_p,
                max_output_tokens=self.max_output_tokens,
            )
        except asyncio.CancelledError:
            raise
        except GeminiEmptyResponse as exc:
            logger.info("Empty reply for persona=%s: %s", persona.id, exc)
            return empty_reply_fallback()
        except Exception as exc:
            logger.error("Chat request failed for persona=%s: %s", persona.id, exc)
            return error_reply(str(exc))

        text = (reply or "").strip()
        return text or empty_reply_fallback()
