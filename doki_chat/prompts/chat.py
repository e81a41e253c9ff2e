from __future__ import annotations

from typing import Any

from ..models import Persona
from .json_loader import load_prompt_json

_DEFAULTS: dict[str, Any] = {
    "identity_template": "Your identity: {persona_prompt}",
    "mood_policy_lines": [
        "IMPORTANT TASK:",
        "1. Read the user's emotional state from their latest message.",
        "2. Adjust your tone subtly to match it:",
        "   - If the user is sad, lonely or tired: become gentle, comforting and listen more.",
        "   - If the user is excited or happy: be enthusiastic, use positive words and share the joy.",
        "   - If the user is curious or wants to learn: be patient, explain in depth and open new threads.",
        "   - If the user is irritated or upset: stay calm, soothe them and try to understand why.",
        "3. Always keep the core personality of {persona_name}.",
        "4. Reply entirely in {language}.",
    ],
    "intimacy_instruction": (
        "SPECIAL: This is an intimate and private conversation. Be extremely charming, affectionate and "
        "romantic. Use sweet, suggestive language and do not hold back the character's deepest feelings."
    ),
    "empty_reply_fallback": "I'm so confused, I don't know what to say...",
    "error_reply_prefix": "Error: ",
    "image_style_template": "Anime style illustration of {prompt}, high quality, detailed, soft lighting",
    "image_intimate_style_template": (
        "Anime style illustration of {prompt}, romantic and intimate atmosphere, character blushing, "
        "soft bedroom lighting, very detailed, aesthetic"
    ),
    "scene_prompt_template": (
        "A situational scene involving {persona_name}, {tagline}. Current conversation context: {context}"
    ),
    "scene_context_chars": 100,
    "image_message_template": "{persona_name} sent you a photo!",
    "image_intimate_message_template": "{persona_name} sent you a very tender photo...",
    "call_instruction_template": (
        "You are on a live video call with the user.\n"
        "Your character: {persona_prompt}\n"
        "Current tone: {tone}.\n"
        "Keep replies short and natural, as if talking on the phone. Reply in {language}."
    ),
    "call_tone_intimate": "extremely charming and intimate",
    "call_tone_default": "friendly and natural",
    "dictation_instruction": (
        "Transcribe the speech in this audio verbatim. Return only the transcript text, "
        "with no quotes or commentary. Return an empty answer if nobody speaks."
    ),
}


def _cfg() -> dict[str, Any]:
    return load_prompt_json("chat.json", _DEFAULTS)


def _text(key: str) -> str:
    return str(_cfg().get(key, _DEFAULTS[key]))


def build_chat_system_instruction(persona: Persona, intimacy_enabled: bool, language: str) -> str:
    cfg = _cfg()
    raw_lines = cfg.get("mood_policy_lines")
    lines = raw_lines if isinstance(raw_lines, list) else _DEFAULTS["mood_policy_lines"]
    identity = _text("identity_template").format(persona_prompt=persona.system_prompt.strip())
    policy = "\n".join(str(line).format(persona_name=persona.display_name, language=language) for line in lines)
    instruction = f"{identity}\n\n{policy}"
    if intimacy_enabled:
        instruction += f"\n\n{_text('intimacy_instruction')}"
    return instruction


def empty_reply_fallback() -> str:
    return _text("empty_reply_fallback")


def error_reply(message: str) -> str:
    return f"{_text('error_reply_prefix')}{message}"


def build_image_prompt(prompt: str, intimacy_enabled: bool) -> str:
    key = "image_intimate_style_template" if intimacy_enabled else "image_style_template"
    return _text(key).format(prompt=prompt.strip())


def build_scene_prompt(persona: Persona, last_message_text: str) -> str:
    try:
        limit = int(_cfg().get("scene_context_chars", _DEFAULTS["scene_context_chars"]))
    except (TypeError, ValueError):
        limit = int(_DEFAULTS["scene_context_chars"])
    context = (last_message_text or "")[: max(0, limit)]
    return _text("scene_prompt_template").format(
        persona_name=persona.display_name,
        tagline=persona.tagline,
        context=context,
    )


def build_image_message_text(persona: Persona, intimacy_enabled: bool) -> str:
    key = "image_intimate_message_template" if intimacy_enabled else "image_message_template"
    return _text(key).format(persona_name=persona.display_name)


def build_call_system_instruction(persona: Persona, intimacy_enabled: bool, language: str) -> str:
    tone = _text("call_tone_intimate") if intimacy_enabled else _text("call_tone_default")
    return _text("call_instruction_template").format(
        persona_prompt=persona.system_prompt.strip(),
        tone=tone,
        language=language,
    )


def dictation_instruction() -> str:
    return _text("dictation_instruction")
