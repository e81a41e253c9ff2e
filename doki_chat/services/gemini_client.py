from __future__ import annotations

import asyncio
import base64
import json
import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

import aiohttp

logger = logging.getLogger("doki_chat.gemini")

_RETRIABLE_STATUSES = {408, 409, 429, 500, 502, 503, 504}


class GeminiError(RuntimeError):
    pass


class GeminiEmptyResponse(GeminiError):
    """The request succeeded but carried no usable payload."""


class CredentialRequired(GeminiError):
    pass


@dataclass(frozen=True, slots=True)
class InlinePart:
    mime_type: str
    data_b64: str

    def to_bytes(self) -> bytes:
        return base64.b64decode(self.data_b64)


class GeminiClient:
    def __init__(
        self,
        api_key: str | Callable[[], str],
        timeout_seconds: int,
        retries: int = 3,
        base_url: str = "https://generativelanguage.googleapis.com",
    ) -> None:
        self._api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.retries = max(1, int(retries))
        self._session: aiohttp.ClientSession | None = None

    @property
    def api_key(self) -> str:
        value = self._api_key() if callable(self._api_key) else self._api_key
        return str(value or "").strip()

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _endpoint(self, model: str) -> str:
        name = model.strip()
        if name.startswith("models/"):
            name = name[len("models/"):]
        return f"{self.base_url}/v1beta/models/{name}:generateContent?key={self.api_key}"

    @staticmethod
    def _map_messages(messages: List[Dict[str, str]]) -> Dict[str, Any]:
        system_lines: List[str] = []
        contents: List[Dict[str, Any]] = []

        for message in messages:
            role = str(message.get("role", "")).strip().lower()
            content = str(message.get("content", "")).strip()
            if not content:
                continue
            if role == "system":
                system_lines.append(content)
                continue
            mapped_role = "model" if role in {"assistant", "model", "persona"} else "user"
            contents.append({"role": mapped_role, "parts": [{"text": content}]})

        payload: Dict[str, Any] = {"contents": contents}
        if system_lines:
            payload["systemInstruction"] = {
                "parts": [{"text": "\n\n".join(system_lines)}],
            }
        return payload

    async def _request(self, model: str, payload: Dict[str, Any], retries: int | None = None) -> Dict[str, Any]:
        if not self.api_key:
            raise CredentialRequired("Gemini API key is not configured")
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        attempts = self.retries if retries is None else max(1, int(retries))
        url = self._endpoint(model)
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                async with self._session.post(url, json=payload) as response:
                    status = response.status
                    text = await response.text()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc
            else:
                if status == 200:
                    return json.loads(text)
                if status not in _RETRIABLE_STATUSES:
                    raise GeminiError(f"Gemini error {status}: {text}")
                last_error = GeminiError(f"Gemini retriable error {status}: {text}")

            if attempt < attempts:
                logger.debug("Gemini attempt %s/%s failed: %s", attempt, attempts, last_error)
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.2))

        if last_error is not None:
            raise GeminiError(f"Gemini request failed after {attempts} attempt(s): {last_error}") from last_error
        raise GeminiError("Gemini request failed without explicit error")

    @staticmethod
    def _first_candidate_parts(data: Dict[str, Any]) -> List[Dict[str, Any]]:
        candidates = data.get("candidates") or []
        if not candidates:
            prompt_feedback = data.get("promptFeedback") or {}
            block_reason = prompt_feedback.get("blockReason")
            if block_reason:
                raise GeminiEmptyResponse(f"Gemini blocked response: {block_reason}")
            raise GeminiEmptyResponse("Gemini returned no candidates")
        content = candidates[0].get("content") or {}
        return list(content.get("parts") or [])

    @classmethod
    def _extract_text(cls, data: Dict[str, Any]) -> str:
        chunks: List[str] = []
        for part in cls._first_candidate_parts(data):
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                chunks.append(text.strip())

        joined = "\n".join(chunks).strip()
        if joined:
            return joined

        finish_reason = (data.get("candidates") or [{}])[0].get("finishReason")
        if finish_reason:
            raise GeminiEmptyResponse(f"Gemini empty response (finishReason={finish_reason})")
        raise GeminiEmptyResponse("Gemini empty response")

    @classmethod
    def _extract_inline(cls, data: Dict[str, Any]) -> List[InlinePart]:
        found: List[InlinePart] = []
        for part in cls._first_candidate_parts(data):
            inline = part.get("inlineData") or part.get("inline_data")
            if not isinstance(inline, dict):
                continue
            payload = inline.get("data")
            if isinstance(payload, str) and payload:
                mime_type = str(inline.get("mimeType") or inline.get("mime_type") or "application/octet-stream")
                found.append(InlinePart(mime_type=mime_type, data_b64=payload))
        return found

    async def chat(
        self,
        model: str,
        messages: List[Dict[str, str]],
        temperature: float | None = None,
        top_p: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str:
        payload = self._map_messages(messages)
        generation_config: Dict[str, Any] = {}
        if temperature is not None:
            generation_config["temperature"] = float(temperature)
        if top_p is not None:
            generation_config["topP"] = float(top_p)
        if max_output_tokens is not None and int(max_output_tokens) > 0:
            generation_config["maxOutputTokens"] = int(max_output_tokens)
        if generation_config:
            payload["generationConfig"] = generation_config
        data = await self._request(model, payload)
        return self._extract_text(data)

    async def generate_images(self, model: str, prompt: str, aspect_ratio: str = "1:1") -> List[InlinePart]:
        payload: Dict[str, Any] = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"imageConfig": {"aspectRatio": aspect_ratio}},
        }
        data = await self._request(model, payload, retries=1)
        return [part for part in self._extract_inline(data) if part.mime_type.startswith("image/")]

    async def synthesize_speech(self, model: str, text: str, voice_name: str) -> InlinePart | None:
        payload: Dict[str, Any] = {
            "contents": [{"parts": [{"text": text}]}],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice_name}},
                },
            },
        }
        data = await self._request(model, payload, retries=1)
        parts = self._extract_inline(data)
        return parts[0] if parts else None

    async def transcribe(self, model: str, audio: bytes, mime_type: str, instruction: str) -> str:
        payload: Dict[str, Any] = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": instruction},
                        {"inlineData": {"mimeType": mime_type, "data": base64.b64encode(audio).decode("ascii")}},
                    ],
                }
            ],
            "generationConfig": {"temperature": 0.0},
        }
        data = await self._request(model, payload, retries=1)
        return self._extract_text(data)
