"""FastAPI server for the Maple dashboard.

Endpoints:
  WS   /ws                     : State snapshots on change, spectrum frames otherwise
  POST /api/voice/start        : Start listening without the wake phrase
  POST /api/voice/stop         : End the current voice turn
  GET  /api/voice/spectrum     : Current frequency bins (null before first turn)
  GET  /api/messages           : Shared conversation log
  POST /api/chat               : Text input, answered into the same log
  POST /api/settings           : Toggle wake word / spoken replies
"""

import asyncio
import json
import logging
import threading

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from config import DASHBOARD_PORT, FALLBACK_REPLY

logger = logging.getLogger("maple.dashboard")

# References set by create_app() / set_*()
_state = None
_voice = None
_assistant = None
_calendar = None


def create_app(state, voice=None, assistant=None, calendar=None) -> FastAPI:
    """Create the FastAPI app with references to Maple components."""
    global _state, _voice, _assistant, _calendar
    _state = state
    _voice = voice
    _assistant = assistant
    _calendar = calendar
    return app


app = FastAPI(title="Maple Dashboard", docs_url=None, redoc_url=None)


def _spectrum() -> list | None:
    if _voice is None:
        return None
    data = _voice.get_visualization_feed()
    return None if data is None else [int(v) for v in data]


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    """Stream real-time state updates to the dashboard."""
    await ws.accept()
    last_version = -1
    try:
        while True:
            if _state is None:
                await asyncio.sleep(0.5)
                continue

            current_version = _state.version
            if current_version != last_version:
                await ws.send_text(json.dumps({"type": "state", "data": _state.to_dict()}))
                last_version = current_version
            else:
                # Spectrum is not version-tracked
                await ws.send_text(json.dumps({"type": "spectrum", "data": {"bins": _spectrum()}}))

            await asyncio.sleep(0.05)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.debug("WebSocket closed: %s", e)


@app.post("/api/voice/start")
async def voice_start():
    """Dashboard mic button: listen now."""
    if _voice is None:
        return JSONResponse({"status": "error", "message": "Voice not available"}, status_code=503)
    if not await asyncio.to_thread(_voice.is_available):
        return JSONResponse({"status": "error", "message": "Speech recognition unavailable"}, status_code=503)
    # Transitions run on the calling thread and may block on audio hardware
    await asyncio.to_thread(_voice.force_start)
    return JSONResponse({"status": "ok"})


@app.post("/api/voice/stop")
async def voice_stop():
    if _voice is None:
        return JSONResponse({"status": "error", "message": "Voice not available"}, status_code=503)
    await asyncio.to_thread(_voice.stop)
    return JSONResponse({"status": "ok"})


@app.get("/api/voice/spectrum")
async def voice_spectrum():
    return JSONResponse({"bins": _spectrum()})


@app.get("/api/messages")
async def get_messages():
    if _state is None:
        return JSONResponse({"messages": []})
    return JSONResponse({"messages": [m.to_dict() for m in _state.get_messages()]})


@app.post("/api/chat")
async def chat(request: Request):
    """Typed message. Shares the message log with the voice loop."""
    if _state is None:
        return JSONResponse({"status": "error"}, status_code=503)
    body = await request.json()
    text = str(body.get("text", "")).strip()
    if not text:
        return JSONResponse({"status": "error", "message": "Message text required"}, status_code=400)

    history = _state.get_messages()
    _state.add_message("user", text)
    reply = await asyncio.to_thread(_answer, text, history)
    return JSONResponse({"status": "ok", "message": reply.to_dict()})


def _answer(text: str, history):
    """Ask the assistant and append its reply (or the fallback) to the log."""
    from brain.calendar_actions import execute_calendar_action

    if _assistant is None:
        return _state.add_message("assistant", FALLBACK_REPLY)
    try:
        intent = _assistant.process_message(text, history)
    except Exception as e:
        logger.error("Chat reply failed: %s", e)
        return _state.add_message("assistant", FALLBACK_REPLY)

    reply_text = intent.response
    calendar_intent = None
    if intent.is_calendar_mutation and _calendar is not None:
        cal = intent.calendar_intent()
        reply_text = execute_calendar_action(cal, _calendar)
        calendar_intent = cal.to_dict()
    return _state.add_message("assistant", reply_text, intent=intent.to_dict(), calendar_intent=calendar_intent)


@app.post("/api/settings")
async def update_settings(request: Request):
    """Toggle wakeWordEnabled / voiceEnabled."""
    if _state is None:
        return JSONResponse({"status": "error"}, status_code=503)
    body = await request.json()
    if "wakeWordEnabled" in body:
        enabled = bool(body["wakeWordEnabled"])
        if _voice is not None:
            await asyncio.to_thread(_voice.set_wake_word_enabled, enabled)
        else:
            _state.set_wake_word_enabled(enabled)
    if "voiceEnabled" in body:
        enabled = bool(body["voiceEnabled"])
        if _voice is not None:
            await asyncio.to_thread(_voice.set_voice_enabled, enabled)
        else:
            _state.set_voice_enabled(enabled)
    return JSONResponse(
        {"status": "ok", "wakeWordEnabled": _state.wake_word_enabled, "voiceEnabled": _state.voice_enabled}
    )


def start_server(application: FastAPI, port: int = DASHBOARD_PORT):
    """Run uvicorn in a daemon thread so it doesn't block the voice loop."""
    import uvicorn

    def _run():
        uvicorn.run(
            application,
            host="0.0.0.0",
            port=port,
            log_level="warning",
        )

    thread = threading.Thread(target=_run, daemon=True, name="dashboard-server")
    thread.start()
    logger.info("Dashboard server started at http://localhost:%d", port)
    return thread
