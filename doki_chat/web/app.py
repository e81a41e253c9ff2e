from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import jinja2
from fastapi import FastAPI, Form, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates

from ..models import BubbleStyle, BubbleTheme
from ..runtime import AppServices
from .views import (
    STYLE_CHOICES,
    THEME_CHOICES,
    VOICE_CHOICES,
    bubble_classes,
    clock_time,
    sidebar_entries,
)

logger = logging.getLogger("doki_chat.web")

WEB_DIR = Path(__file__).parent
templates_dir = WEB_DIR / "templates"
static_dir = WEB_DIR / "static"

templates = Jinja2Templates(directory=str(templates_dir))
templates.env.loader = jinja2.FileSystemLoader(str(templates_dir), encoding="utf-8")
templates.env.filters["clock_time"] = clock_time
templates.env.globals["bubble_classes"] = bubble_classes


def _services(request: Request) -> AppServices:
    return request.app.state.services


def render(request: Request, name: str, context: dict[str, Any], status_code: int = 200) -> HTMLResponse:
    services = _services(request)
    state = services.state
    personas = {persona.id: persona for persona in services.catalog}
    context.setdefault(
        "sidebar",
        sidebar_entries(state.sessions_by_recency(), personas, state.active_session_id),
    )
    context["current_call"] = services.calls.current
    return templates.TemplateResponse(
        request,
        name,
        context,
        status_code=status_code,
        media_type="text/html; charset=utf-8",
    )


def _see_other(url: str) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=status.HTTP_303_SEE_OTHER)


def _not_found(request: Request, what: str) -> HTMLResponse:
    return render(request, "not_found.html", {"what": what}, status_code=404)


def create_app(services: AppServices) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.start()
        try:
            yield
        finally:
            await services.close()

    app = FastAPI(title="Doki Chat", lifespan=lifespan)
    app.state.services = services
    if static_dir.exists():
        app.mount("/static", StaticFiles(directory=str(static_dir)), name="static")

    @app.get("/", response_class=HTMLResponse)
    async def gallery(request: Request):
        return render(request, "gallery.html", {"personas": services.catalog.all()})

    @app.post("/personas/{persona_id}/chat")
    async def start_chat(request: Request, persona_id: str):
        if services.catalog.get(persona_id) is None:
            return _not_found(request, "Persona")
        session = await services.controller.start_chat(persona_id)
        return _see_other(f"/chat/{session.id}")

    @app.get("/chat/{session_id}", response_class=HTMLResponse)
    async def chat_view(request: Request, session_id: str):
        session = services.state.select_session(session_id)
        if session is None:
            return _see_other("/")
        persona = services.catalog.get(session.persona_id)
        if persona is None:
            return _not_found(request, "Persona")
        controller = services.controller
        notice = request.query_params.get("notice", "")
        if controller.take_image_failure(session.id):
            notice = "image-failed"
        return render(
            request,
            "chat.html",
            {
                "session": session,
                "persona": persona,
                "voice": session.resolved_voice(persona, services.settings.speech_default_voice),
                "pending": controller.is_pending(session.id),
                "generating_image": controller.is_generating_image(session.id),
                "voices": VOICE_CHOICES,
                "styles": STYLE_CHOICES,
                "themes": THEME_CHOICES,
                "notice": notice,
            },
        )

    @app.post("/chat/{session_id}/messages")
    async def send_message(request: Request, session_id: str, text: str = Form("")):
        if services.state.get(session_id) is None:
            return _not_found(request, "Chat")
        await services.controller.send_message(session_id, text)
        return _see_other(f"/chat/{session_id}")

    @app.post("/chat/{session_id}/image")
    async def request_image(request: Request, session_id: str):
        if services.state.get(session_id) is None:
            return _not_found(request, "Chat")
        await services.controller.request_image(session_id)
        return _see_other(f"/chat/{session_id}")

    @app.post("/chat/{session_id}/preferences")
    async def update_preferences(
        request: Request,
        session_id: str,
        voice_override: str = Form(""),
        bubble_style: str = Form(BubbleStyle.ROUNDED.value),
        bubble_theme: str = Form(BubbleTheme.CLASSIC.value),
    ):
        if services.state.get(session_id) is None:
            return _not_found(request, "Chat")
        try:
            style = BubbleStyle(bubble_style)
            theme = BubbleTheme(bubble_theme)
        except ValueError:
            return HTMLResponse("Unknown bubble style or theme", status_code=400)
        voice = voice_override.strip() or None
        await services.state.update_preferences(
            session_id,
            voice_override=voice,
            bubble_style=style,
            bubble_theme=theme,
        )
        return _see_other(f"/chat/{session_id}")

    @app.post("/chat/{session_id}/intimacy")
    async def toggle_intimacy(request: Request, session_id: str):
        if await services.state.toggle_intimacy(session_id) is None:
            return _not_found(request, "Chat")
        return _see_other(f"/chat/{session_id}")

    @app.post("/chat/{session_id}/delete")
    async def delete_chat(session_id: str):
        call = services.calls.current
        if call is not None and call.session_id == session_id:
            await services.calls.hangup()
        await services.state.delete_session(session_id)
        services.controller.forget_session(session_id)
        return _see_other("/")

    @app.get("/chat/{session_id}/messages/{message_id}/speech")
    async def message_speech(session_id: str, message_id: str):
        clip = await services.controller.speak_message(session_id, message_id)
        if clip is None:
            return Response(status_code=status.HTTP_204_NO_CONTENT)
        return Response(content=clip.to_wav(), media_type="audio/wav")

    @app.post("/chat/{session_id}/dictation")
    async def dictation(session_id: str):
        if services.state.get(session_id) is None:
            return JSONResponse({"text": "", "error": "chat not found"}, status_code=404)
        text = await services.controller.dictate()
        return JSONResponse({"text": text})

    @app.get("/chat/{session_id}/call", response_class=HTMLResponse)
    async def call_view(request: Request, session_id: str):
        session = services.state.get(session_id)
        if session is None:
            return _see_other("/")
        persona = services.catalog.get(session.persona_id)
        if persona is None:
            return _not_found(request, "Persona")
        call = services.calls.current
        if call is not None and call.session_id != session_id:
            call = None
        return render(
            request,
            "call.html",
            {"session": session, "persona": persona, "call": call},
        )

    @app.post("/chat/{session_id}/call/start")
    async def call_start(request: Request, session_id: str):
        session = services.state.get(session_id)
        if session is None:
            return _not_found(request, "Chat")
        persona = services.catalog.get(session.persona_id)
        if persona is None:
            return _not_found(request, "Persona")
        await services.calls.open_call(session, persona, wait=False)
        return _see_other(f"/chat/{session_id}/call")

    def _current_call_url() -> str:
        call = services.calls.current
        return f"/chat/{call.session_id}/call" if call is not None else "/"

    @app.post("/call/mute")
    async def call_mute():
        call = services.calls.current
        if call is not None:
            call.toggle_mute()
        return _see_other(_current_call_url())

    @app.post("/call/camera")
    async def call_camera():
        call = services.calls.current
        if call is not None:
            call.toggle_camera()
        return _see_other(_current_call_url())

    @app.post("/call/hangup")
    async def call_hangup():
        call = services.calls.current
        target = f"/chat/{call.session_id}" if call is not None else "/"
        await services.calls.hangup()
        return _see_other(target)

    @app.post("/call/credential")
    async def call_credential(api_key: str = Form("")):
        try:
            services.credentials.supply(api_key)
        except ValueError as exc:
            return HTMLResponse(str(exc), status_code=400)
        call = services.calls.current
        if call is not None:
            await call.select_credential_and_retry()
        return _see_other(_current_call_url())

    @app.post("/call/retry")
    async def call_retry():
        call = services.calls.current
        if call is not None:
            await call.retry()
        return _see_other(_current_call_url())

    @app.get("/call/status")
    async def call_status():
        return JSONResponse(services.calls.status_snapshot())

    @app.get("/healthz")
    async def healthz():
        storage_ok = True
        try:
            await services.store.ping()
        except Exception as exc:
            logger.warning("Health check storage ping failed: %s", exc)
            storage_ok = False
        return JSONResponse(
            {
                "ok": storage_ok,
                "storage": storage_ok,
                "personas": len(services.catalog),
                "sessions": len(services.state.sessions()),
                "api_key_configured": services.settings.has_api_key(),
                "call": services.calls.status_snapshot()["status"],
            },
            status_code=200 if storage_ok else 503,
        )

    return app
