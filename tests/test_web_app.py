from __future__ import annotations

import asyncio
import sys
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Callable, Iterator

import numpy as np
import pytest

pytest.importorskip("httpx")

from fastapi.testclient import TestClient  # noqa: E402


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from doki_chat.config import Settings  # noqa: E402
from doki_chat.models import ChatSession  # noqa: E402
from doki_chat.runtime import AppServices, build_services  # noqa: E402
from doki_chat.services.gemini_client import InlinePart  # noqa: E402
from doki_chat.services.realtime import CallDevices, CallOpened, MediaChunk  # noqa: E402
from doki_chat.web import create_app  # noqa: E402


class _FakeLLM:
    def __init__(self) -> None:
        self.started = False
        self.closed = False
        self.image_gate: threading.Event | None = None
        self.image_error = False

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True

    async def chat(self, model: str, messages: list[dict[str, str]], **kwargs: object) -> str:
        return f"You said: {messages[-1]['content']}"

    async def generate_images(self, model: str, prompt: str, aspect_ratio: str = "1:1") -> list[InlinePart]:
        while self.image_gate is not None and not self.image_gate.is_set():
            await asyncio.sleep(0.01)
        if self.image_error:
            return []
        return [InlinePart("image/png", "QUJD")]

    async def synthesize_speech(self, model: str, text: str, voice_name: str) -> InlinePart | None:
        return InlinePart("audio/pcm;rate=24000", "AAAAAA==")


class _Recognizer:
    async def listen_once(self) -> str:
        return "see you at eight"


class _Stream:
    def __init__(self) -> None:
        self.closed = False

    async def send(self, chunk: MediaChunk) -> None:
        return None

    async def close(self) -> None:
        self.closed = True


class _Transport:
    def __init__(self) -> None:
        self.gate: threading.Event | None = None

    async def connect(self, config: object, events: asyncio.Queue) -> _Stream:
        while self.gate is not None and not self.gate.is_set():
            await asyncio.sleep(0.01)
        events.put_nowait(CallOpened())
        return _Stream()


class _Mic:
    def start(self, on_frame: Callable[[np.ndarray], None]) -> None:
        return None

    def stop(self) -> None:
        return None


class _Handle:
    def __init__(self, start_time: float, duration: float) -> None:
        self.start_time = start_time
        self.duration = duration

    def stop(self) -> None:
        return None


class _Speaker:
    sample_rate = 24000
    current_time = 0.0

    def open(self) -> None:
        return None

    def play(self, samples: np.ndarray, start_time: float, on_ended=None) -> _Handle:
        return _Handle(start_time, samples.shape[0] / self.sample_rate)

    def close(self) -> None:
        return None


class _Camera:
    def open(self) -> None:
        return None

    def read_frame(self) -> np.ndarray | None:
        return None

    def set_enabled(self, enabled: bool) -> None:
        return None

    def close(self) -> None:
        return None


def _devices() -> CallDevices:
    return CallDevices(
        audio_capture=_Mic,
        audio_output=_Speaker,
        video_capture=_Camera,
        frame_encoder=lambda frame, width, height, quality: b"jpeg",
    )


@pytest.fixture
def services(tmp_path: Path) -> AppServices:
    settings = replace(
        Settings.from_env(),
        gemini_api_key="test-key",
        sqlite_path=tmp_path / "doki.db",
        personas_json_path=None,
        live_video_interval_seconds=0.05,
    )
    return build_services(
        settings,
        llm=_FakeLLM(),
        transport=_Transport(),
        devices=_devices(),
        dictation=_Recognizer(),
    )


@pytest.fixture
def client(services: AppServices) -> Iterator[TestClient]:
    with TestClient(create_app(services)) as test_client:
        yield test_client


def _start_chat(client: TestClient, services: AppServices) -> ChatSession:
    persona = services.catalog.all()[0]
    response = client.post(f"/personas/{persona.id}/chat", follow_redirects=False)
    assert response.status_code == 303
    session_id = response.headers["location"].rsplit("/", 1)[-1]
    session = services.state.get(session_id)
    assert session is not None
    return session


def _wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_gallery_lists_personas(client: TestClient, services: AppServices) -> None:
    response = client.get("/")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    for persona in services.catalog:
        assert persona.display_name in response.text
    assert services.llm.started


def test_persona_avatars_are_served(client: TestClient, services: AppServices) -> None:
    for persona in services.catalog:
        response = client.get(persona.avatar_ref)

        assert response.status_code == 200, persona.avatar_ref
        assert response.headers["content-type"].startswith("image/svg+xml")


def test_start_chat_reuses_session_for_same_persona(client: TestClient, services: AppServices) -> None:
    first = _start_chat(client, services)
    second = _start_chat(client, services)

    assert first.id == second.id
    page = client.get(f"/chat/{first.id}")
    assert page.status_code == 200
    assert f'action="/chat/{first.id}/messages"' in page.text


def test_unknown_persona_and_chat(client: TestClient) -> None:
    assert client.post("/personas/nobody/chat", follow_redirects=False).status_code == 404
    response = client.get("/chat/session_missing", follow_redirects=False)
    assert response.status_code == 303
    assert response.headers["location"] == "/"


def test_message_gets_background_reply(client: TestClient, services: AppServices) -> None:
    session = _start_chat(client, services)

    response = client.post(f"/chat/{session.id}/messages", data={"text": "hello there"}, follow_redirects=False)

    assert response.status_code == 303

    def _replied() -> bool:
        current = services.state.get(session.id)
        return current is not None and len(current.messages) == 3

    assert _wait_for(_replied)
    current = services.state.get(session.id)
    assert current is not None
    assert [m.text for m in current.messages[1:]] == ["hello there", "You said: hello there"]


def test_blank_message_is_ignored(client: TestClient, services: AppServices) -> None:
    session = _start_chat(client, services)

    client.post(f"/chat/{session.id}/messages", data={"text": "   "})

    current = services.state.get(session.id)
    assert current is not None
    assert len(current.messages) == 1


def test_image_request_appends_photo(client: TestClient, services: AppServices) -> None:
    session = _start_chat(client, services)

    response = client.post(f"/chat/{session.id}/image", follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"] == f"/chat/{session.id}"

    def _painted() -> bool:
        current = services.state.get(session.id)
        return current is not None and current.messages[-1].image_ref is not None

    assert _wait_for(_painted)
    current = services.state.get(session.id)
    assert current is not None
    assert current.messages[-1].image_ref == "data:image/png;base64,QUJD"


def test_chat_shows_painting_while_image_is_generated(client: TestClient, services: AppServices) -> None:
    session = _start_chat(client, services)
    gate = threading.Event()
    services.llm.image_gate = gate

    response = client.post(f"/chat/{session.id}/image", follow_redirects=False)
    assert response.status_code == 303

    page = client.get(f"/chat/{session.id}")
    assert "Painting a scene" in page.text
    assert 'http-equiv="refresh"' in page.text
    current = services.state.get(session.id)
    assert current is not None and len(current.messages) == 1

    gate.set()
    assert _wait_for(lambda: not services.controller.is_generating_image(session.id))
    page = client.get(f"/chat/{session.id}")
    assert "Painting a scene" not in page.text
    assert "data:image/png;base64,QUJD" in page.text


def test_failed_image_shows_notice_once(client: TestClient, services: AppServices) -> None:
    session = _start_chat(client, services)
    services.llm.image_error = True

    client.post(f"/chat/{session.id}/image", follow_redirects=False)
    assert _wait_for(lambda: not services.controller.is_generating_image(session.id))

    assert "No picture this time" in client.get(f"/chat/{session.id}").text
    assert "No picture this time" not in client.get(f"/chat/{session.id}").text
    current = services.state.get(session.id)
    assert current is not None and len(current.messages) == 1


def test_preferences_validate_and_persist(client: TestClient, services: AppServices) -> None:
    session = _start_chat(client, services)

    bad = client.post(
        f"/chat/{session.id}/preferences",
        data={"voice_override": "", "bubble_style": "wavy", "bubble_theme": "classic"},
    )
    assert bad.status_code == 400

    good = client.post(
        f"/chat/{session.id}/preferences",
        data={"voice_override": "Puck", "bubble_style": "pill", "bubble_theme": "ocean"},
        follow_redirects=False,
    )
    assert good.status_code == 303
    current = services.state.get(session.id)
    assert current is not None
    assert (current.voice_override, current.bubble_style.value, current.bubble_theme.value) == ("Puck", "pill", "ocean")

    page = client.get(f"/chat/{session.id}")
    assert "shape-pill" in page.text
    assert "palette-ocean-persona" in page.text


def test_intimacy_toggle_switches_palette(client: TestClient, services: AppServices) -> None:
    session = _start_chat(client, services)

    client.post(f"/chat/{session.id}/intimacy")

    current = services.state.get(session.id)
    assert current is not None and current.intimacy_enabled
    assert "palette-intimate-persona" in client.get(f"/chat/{session.id}").text


def test_delete_chat_returns_to_gallery(client: TestClient, services: AppServices) -> None:
    session = _start_chat(client, services)

    response = client.post(f"/chat/{session.id}/delete", follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"] == "/"
    assert services.state.get(session.id) is None


def test_speech_endpoint_returns_wav_or_no_content(client: TestClient, services: AppServices) -> None:
    session = _start_chat(client, services)

    audio = client.get(f"/chat/{session.id}/messages/initial/speech")
    missing = client.get(f"/chat/{session.id}/messages/nope/speech")

    assert audio.status_code == 200
    assert audio.headers["content-type"] == "audio/wav"
    assert audio.content[:4] == b"RIFF"
    assert missing.status_code == 204


def test_dictation_returns_transcript(client: TestClient, services: AppServices) -> None:
    session = _start_chat(client, services)

    response = client.post(f"/chat/{session.id}/dictation")

    assert response.json() == {"text": "see you at eight"}
    assert client.post("/chat/session_missing/dictation").status_code == 404


def test_call_lifecycle(client: TestClient, services: AppServices) -> None:
    session = _start_chat(client, services)
    assert client.get("/call/status").json() == {"status": "idle", "call": None}

    started = client.post(f"/chat/{session.id}/call/start", follow_redirects=False)
    assert started.status_code == 303
    assert started.headers["location"] == f"/chat/{session.id}/call"

    assert _wait_for(lambda: client.get("/call/status").json()["status"] == "active")
    page = client.get(f"/chat/{session.id}/call")
    assert page.status_code == 200

    client.post("/call/mute")
    assert client.get("/call/status").json()["call"]["muted"] is True

    hangup = client.post("/call/hangup", follow_redirects=False)
    assert hangup.headers["location"] == f"/chat/{session.id}"
    assert client.get("/call/status").json()["status"] == "idle"


def test_call_page_shows_connecting_until_joined(client: TestClient, services: AppServices) -> None:
    session = _start_chat(client, services)
    gate = threading.Event()
    services.calls.transport.gate = gate

    started = client.post(f"/chat/{session.id}/call/start", follow_redirects=False)

    assert started.status_code == 303
    assert client.get("/call/status").json()["status"] == "connecting"
    assert "Connecting…" in client.get(f"/chat/{session.id}/call").text

    gate.set()
    assert _wait_for(lambda: client.get("/call/status").json()["status"] == "active")
    client.post("/call/hangup")
    assert client.get("/call/status").json()["status"] == "idle"


def test_call_without_key_asks_for_credential(client: TestClient, services: AppServices) -> None:
    session = _start_chat(client, services)
    services.settings.gemini_api_key = ""

    client.post(f"/chat/{session.id}/call/start")
    assert _wait_for(lambda: client.get("/call/status").json()["status"] == "needs_credential")

    assert client.post("/call/credential", data={"api_key": "  "}).status_code == 400
    client.post("/call/credential", data={"api_key": "new-key"})

    assert services.settings.gemini_api_key == "new-key"
    assert _wait_for(lambda: client.get("/call/status").json()["status"] == "active")
    client.post("/call/hangup")


def test_all_templates_compile() -> None:
    from check_templates import find_template_errors

    assert find_template_errors() == []


def test_healthz_reports_storage_and_counts(client: TestClient, services: AppServices) -> None:
    _start_chat(client, services)

    body = client.get("/healthz").json()

    assert body["ok"] is True
    assert body["storage"] is True
    assert body["personas"] == len(services.catalog)
    assert body["sessions"] == 1
    assert body["api_key_configured"] is True
    assert body["call"] == "idle"
