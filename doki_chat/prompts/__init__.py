from .chat import (
    build_call_system_instruction,
    build_chat_system_instruction,
    build_image_message_text,
    build_image_prompt,
    build_scene_prompt,
    dictation_instruction,
    empty_reply_fallback,
    error_reply,
)

__all__ = [
    "build_call_system_instruction",
    "build_chat_system_instruction",
    "build_image_message_text",
    "build_image_prompt",
    "build_scene_prompt",
    "dictation_instruction",
    "empty_reply_fallback",
    "error_reply",
]
