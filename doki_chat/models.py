from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class Role(str, Enum):
    USER = "user"
    PERSONA = "persona"

    @property
    def wire(self) -> str:
        return "user" if self is Role.USER else "model"

    @classmethod
    def from_wire(cls, raw: object) -> "Role":
        value = str(raw or "").strip().lower()
        if value in {"model", "persona", "assistant"}:
            return cls.PERSONA
        return cls.USER


class BubbleStyle(str, Enum):
    ROUNDED = "rounded"
    SHARP = "sharp"
    PILL = "pill"


class BubbleTheme(str, Enum):
    CLASSIC = "classic"
    OCEAN = "ocean"
    EMERALD = "emerald"
    SUNSET = "sunset"
    MONOCHROME = "monochrome"


def _coerce_enum(enum_cls: type[Enum], raw: object, default: Enum) -> Any:
    try:
        return enum_cls(str(raw))
    except ValueError:
        return default


@dataclass(frozen=True, slots=True)
class Persona:
    id: str
    display_name: str
    avatar_ref: str
    tagline: str
    description: str
    system_prompt: str
    greeting: str
    tags: tuple[str, ...] = ()
    default_voice: str = "Kore"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Persona":
        persona_id = str(data.get("id") or "").strip()
        if not persona_id:
            raise ValueError("persona id is required")
        return cls(
            id=persona_id,
            display_name=str(data.get("name") or data.get("display_name") or persona_id),
            avatar_ref=str(data.get("avatar") or data.get("avatar_ref") or ""),
            tagline=str(data.get("tagline") or ""),
            description=str(data.get("description") or ""),
            system_prompt=str(data.get("persona") or data.get("system_prompt") or ""),
            greeting=str(data.get("greeting") or ""),
            tags=tuple(str(tag) for tag in (data.get("tags") or [])),
            default_voice=str(data.get("voice") or data.get("default_voice") or "Kore"),
        )


@dataclass(frozen=True, slots=True)
class Message:
    id: str
    role: Role
    text: str
    created_at_ms: int
    image_ref: str | None = None

    @classmethod
    def create(cls, role: Role, text: str, image_ref: str | None = None) -> "Message":
        prefix = "user" if role is Role.USER else ("img" if image_ref else "model")
        return cls(id=new_id(prefix), role=role, text=text, created_at_ms=now_ms(), image_ref=image_ref)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "role": self.role.wire,
            "content": self.text,
            "timestamp": self.created_at_ms,
        }
        if self.image_ref:
            payload["image"] = self.image_ref
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        image = data.get("image")
        return cls(
            id=str(data.get("id") or new_id("msg")),
            role=Role.from_wire(data.get("role")),
            text=str(data.get("content") or ""),
            created_at_ms=int(data.get("timestamp") or 0),
            image_ref=str(image) if image else None,
        )


@dataclass(slots=True)
class ChatSession:
    id: str
    persona_id: str
    messages: list[Message] = field(default_factory=list)
    last_updated_ms: int = 0
    intimacy_enabled: bool = False
    voice_override: str | None = None
    bubble_style: BubbleStyle = BubbleStyle.ROUNDED
    bubble_theme: BubbleTheme = BubbleTheme.CLASSIC

    @classmethod
    def open_with_greeting(cls, persona: Persona) -> "ChatSession":
        created = now_ms()
        greeting = Message(id="initial", role=Role.PERSONA, text=persona.greeting, created_at_ms=created)
        return cls(
            id=f"session_{created}_{uuid.uuid4().hex[:6]}",
            persona_id=persona.id,
            messages=[greeting],
            last_updated_ms=created,
        )

    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def resolved_voice(self, persona: Persona | None, fallback: str = "Kore") -> str:
        if self.voice_override:
            return self.voice_override
        if persona is not None and persona.default_voice:
            return persona.default_voice
        return fallback

    def copy(self) -> "ChatSession":
        return replace(self, messages=list(self.messages))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "characterId": self.persona_id,
            "messages": [message.to_dict() for message in self.messages],
            "lastUpdated": self.last_updated_ms,
            "isSpicy": self.intimacy_enabled,
            "bubbleStyle": self.bubble_style.value,
            "bubbleTheme": self.bubble_theme.value,
        }
        if self.voice_override:
            payload["voiceOverride"] = self.voice_override
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatSession":
        session_id = str(data.get("id") or "").strip()
        persona_id = str(data.get("characterId") or data.get("persona_id") or "").strip()
        if not session_id or not persona_id:
            raise ValueError("session id and characterId are required")
        raw_messages = data.get("messages") or []
        voice = data.get("voiceOverride")
        return cls(
            id=session_id,
            persona_id=persona_id,
            messages=[Message.from_dict(item) for item in raw_messages if isinstance(item, dict)],
            last_updated_ms=int(data.get("lastUpdated") or 0),
            intimacy_enabled=bool(data.get("isSpicy", False)),
            voice_override=str(voice) if voice else None,
            bubble_style=_coerce_enum(BubbleStyle, data.get("bubbleStyle"), BubbleStyle.ROUNDED),
            bubble_theme=_coerce_enum(BubbleTheme, data.get("bubbleTheme"), BubbleTheme.CLASSIC),
        )


class CallStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ERROR = "error"
    NEEDS_CREDENTIAL = "needs_credential"
