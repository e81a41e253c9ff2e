from __future__ import annotations

from datetime import datetime
from typing import Any

from ..models import BubbleStyle, BubbleTheme, ChatSession, Message, Persona, Role

VOICE_CHOICES: tuple[tuple[str, str], ...] = (
    ("Charon", "Charon (deep, calm)"),
    ("Fenrir", "Fenrir (energetic)"),
    ("Puck", "Puck (young, playful)"),
    ("Kore", "Kore (soft)"),
    ("Zephyr", "Zephyr (airy)"),
)

STYLE_CHOICES: tuple[tuple[str, str], ...] = (
    (BubbleStyle.ROUNDED.value, "Rounded"),
    (BubbleStyle.SHARP.value, "Sharp"),
    (BubbleStyle.PILL.value, "Pill"),
)

THEME_CHOICES: tuple[tuple[str, str], ...] = (
    (BubbleTheme.CLASSIC.value, "Classic"),
    (BubbleTheme.OCEAN.value, "Ocean"),
    (BubbleTheme.EMERALD.value, "Emerald"),
    (BubbleTheme.SUNSET.value, "Sunset"),
    (BubbleTheme.MONOCHROME.value, "Monochrome"),
)


def bubble_classes(session: ChatSession, role: Role) -> str:
    """CSS classes for one chat bubble. The intimacy palette overrides the theme."""
    side = "user" if role is Role.USER else "persona"
    classes = ["bubble", f"bubble-{side}", f"shape-{session.bubble_style.value}"]
    if session.intimacy_enabled:
        classes.append(f"palette-intimate-{side}")
    else:
        classes.append(f"palette-{session.bubble_theme.value}-{side}")
    return " ".join(classes)


def clock_time(timestamp_ms: int | None, fmt: str = "%H:%M", default: str = "") -> str:
    if not timestamp_ms:
        return default
    try:
        return datetime.fromtimestamp(int(timestamp_ms) / 1000).strftime(fmt)
    except (OverflowError, OSError, ValueError):
        return default


def preview_text(message: Message | None, limit: int = 60) -> str:
    if message is None:
        return ""
    if message.image_ref and not message.text:
        return "[image]"
    text = " ".join(message.text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


def sidebar_entries(sessions: list[ChatSession], personas: dict[str, Persona], active_id: str | None) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    for session in sessions:
        persona = personas.get(session.persona_id)
        if persona is None:
            continue
        entries.append(
            {
                "session": session,
                "persona": persona,
                "preview": preview_text(session.last_message()),
                "active": session.id == active_id,
            }
        )
    return entries
