from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from google.genai import types

from ...models import Persona
from ...prompts import build_call_system_instruction


@dataclass(frozen=True, slots=True)
class LiveCallConfig:
    voice_name: str
    system_instruction: str


def build_call_config(
    persona: Persona,
    voice_name: str,
    intimacy_enabled: bool,
    preferred_language: str,
) -> LiveCallConfig:
    return LiveCallConfig(
        voice_name=voice_name,
        system_instruction=build_call_system_instruction(persona, intimacy_enabled, preferred_language),
    )


def build_live_connect_config(config: LiveCallConfig) -> types.LiveConnectConfig:
    kwargs: dict[str, Any] = {
        "response_modalities": ["AUDIO"],
        "speech_config": types.SpeechConfig(
            voice_config=types.VoiceConfig(
                prebuilt_voice_config=types.PrebuiltVoiceConfig(
                    voice_name=config.voice_name,
                )
            )
        ),
        "system_instruction": types.Content(
            role="user",
            parts=[types.Part(text=config.system_instruction)],
        ),
    }
    return types.LiveConnectConfig(**kwargs)
