from __future__ import annotations

import json
import logging
from typing import Any

from ..models import ChatSession
from .kv import KeyValueStore

logger = logging.getLogger("doki_chat.storage")


def dump_sessions(sessions: list[ChatSession]) -> str:
    return json.dumps([session.to_dict() for session in sessions], ensure_ascii=False, separators=(",", ":"))


def parse_sessions(raw: str) -> list[ChatSession]:
    try:
        payload: Any = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Stored session list is not valid JSON (%s); starting empty", exc)
        return []
    if not isinstance(payload, list):
        logger.warning("Stored session list must be a JSON array; starting empty")
        return []

    sessions: list[ChatSession] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        try:
            sessions.append(ChatSession.from_dict(item))
        except (TypeError, ValueError) as exc:
            logger.warning("Skipping malformed stored session: %s", exc)
    return sessions


class SessionRepository:
    """The whole session list under one key, loaded once and rewritten in full."""

    def __init__(self, store: KeyValueStore, key: str = "doki_sessions") -> None:
        self.store = store
        self.key = key

    async def init(self) -> None:
        await self.store.init()

    async def load(self) -> list[ChatSession]:
        raw = await self.store.get(self.key)
        if raw is None:
            return []
        return parse_sessions(raw)

    async def save(self, sessions: list[ChatSession]) -> None:
        await self.store.set(self.key, dump_sessions(sessions))
