"""FastAPI server for hook events, session commands and the subscriber socket."""

import asyncio
import json
import logging
import time
from typing import Optional, List
from urllib.parse import urlparse

from fastapi import FastAPI, HTTPException, Body, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field
from starlette.middleware.base import BaseHTTPMiddleware

from .broadcaster import make_message
from .models import ClaudeEvent, LaunchFlags, ZonePosition
from .tmux_controller import TmuxError, ValidationError

logger = logging.getLogger(__name__)

LOCAL_HOSTNAMES = ("localhost", "127.0.0.1")


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log slow requests for debugging."""

    def __init__(self, app, config: Optional[dict] = None):
        super().__init__(app)
        self.config = config or {}

        timeouts = self.config.get("timeouts", {})
        server_timeouts = timeouts.get("server", {})
        self.slow_threshold = server_timeouts.get("slow_request_threshold_seconds", 1.0)
        self.timing_threshold = server_timeouts.get("request_timing_threshold_seconds", 0.1)

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start

        if elapsed > self.slow_threshold:
            logger.warning(
                f"SLOW REQUEST: {request.method} {request.url.path} "
                f"took {elapsed:.2f}s"
            )
        elif elapsed > self.timing_threshold:
            logger.debug(
                f"Request: {request.method} {request.url.path} "
                f"took {elapsed*1000:.0f}ms"
            )

        return response


class LaunchFlagsModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    continue_conversation: bool = Field(True, alias="continue")
    skip_permissions: bool = Field(True, alias="skipPermissions")
    chrome: bool = False


class CreateSessionRequest(BaseModel):
    """Request to create a new session."""
    name: Optional[str] = None
    cwd: Optional[str] = None
    flags: Optional[LaunchFlagsModel] = None


class ZonePositionModel(BaseModel):
    q: int
    r: int


class UpdateSessionRequest(BaseModel):
    """Rename a session or move its zone."""
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    zone_position: Optional[ZonePositionModel] = Field(None, alias="zonePosition")


class PromptRequest(BaseModel):
    prompt: str


class PermissionResponseRequest(BaseModel):
    response: str


class LinkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    claude_session_id: str = Field(alias="claudeSessionId")


def is_origin_allowed(origin: Optional[str], allowed_origins: List[str]) -> bool:
    """
    Check a WebSocket Origin header.

    Browsers always send Origin; a missing header means a local non-browser
    client. Any port on localhost is accepted, other origins must match
    the configured list exactly.
    """
    if not origin:
        return True
    if origin in allowed_origins:
        return True
    try:
        parsed = urlparse(origin)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and parsed.hostname in LOCAL_HOSTNAMES


def create_app(
    session_manager=None,
    broadcaster=None,
    config: Optional[dict] = None,
    lifespan=None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        session_manager: SessionManager instance
        broadcaster: Broadcaster instance for WebSocket subscribers
        config: Configuration dictionary
        lifespan: Optional ASGI lifespan context manager

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="agentdeck",
        description="Orchestrate Claude Code sessions running in tmux",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.config = config or {}
    server_config = app.state.config.get("server", {})
    allowed_origins = list(server_config.get("allowed_origins", []))

    app.add_middleware(RequestTimingMiddleware, config=config)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_origin_regex=r"https?://(localhost|127\.0\.0\.1)(:\d+)?",
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    app.state.session_manager = session_manager
    app.state.broadcaster = broadcaster or (session_manager.broadcaster if session_manager else None)
    app.state.ws_send_timeout = server_config.get("ws_send_timeout_seconds", 2.0)

    def _manager():
        if not app.state.session_manager:
            raise HTTPException(status_code=503, detail="Session manager not configured")
        return app.state.session_manager

    def _require_session(session_id: str):
        session = _manager().get_session(session_id)
        if not session:
            raise HTTPException(status_code=404, detail="Session not found")
        return session

    def _session_body(session) -> dict:
        return {"ok": True, "session": _manager().session_snapshot(session)}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        manager = app.state.session_manager
        broadcaster = app.state.broadcaster
        return {
            "ok": True,
            "status": "healthy",
            "sessions": len(manager.sessions) if manager else 0,
            "events": len(manager.ledger) if manager else 0,
            "clients": broadcaster.subscriber_count if broadcaster else 0,
        }

    @app.get("/stats")
    async def stats():
        """Tool usage and token statistics."""
        manager = _manager()
        result = manager.ledger.tool_stats()
        result["tokens"] = manager.token_totals()
        return result

    @app.post("/event")
    async def ingest_event(payload: dict = Body(...)):
        """Ingest one lifecycle event pushed by the hook command."""
        manager = _manager()
        try:
            event = ClaudeEvent.from_dict(payload)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        processed = manager.handle_event(event)
        return {"ok": True, "accepted": processed is not None}

    @app.post("/hooks/claude")
    async def claude_hook(payload: dict = Body(...)):
        """
        Webhook endpoint for raw Claude Code hook payloads.

        Converts the hook JSON into a lifecycle event and ingests it.
        """
        manager = _manager()
        hook_event = payload.get("hook_event_name", "unknown")
        logger.debug(f"Hook received: {hook_event}")
        try:
            event = ClaudeEvent.from_hook_payload(payload, timestamp=manager.clock())
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        processed = manager.handle_event(event)
        return {"ok": True, "accepted": processed is not None, "eventId": event.id}

    @app.get("/sessions")
    async def list_sessions():
        """List all managed sessions."""
        return {"ok": True, "sessions": _manager().sessions_payload()}

    @app.post("/sessions")
    async def create_session(request: CreateSessionRequest):
        """Create a new Claude session in tmux."""
        manager = _manager()
        flags = None
        if request.flags:
            flags = LaunchFlags(
                continue_conversation=request.flags.continue_conversation,
                skip_permissions=request.flags.skip_permissions,
                chrome=request.flags.chrome,
            )
        try:
            session = await manager.create_session(name=request.name, cwd=request.cwd, flags=flags)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except TmuxError as e:
            logger.error(f"Failed to create session: {e}")
            raise HTTPException(status_code=500, detail=f"Failed to create session: {e}")
        return _session_body(session)

    @app.post("/sessions/refresh")
    async def refresh_sessions():
        """Force a health check against tmux."""
        manager = _manager()
        checked = await manager.refresh_health()
        return {"ok": True, "checked": checked, "sessions": manager.sessions_payload()}

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str):
        """Get session details."""
        return _session_body(_require_session(session_id))

    @app.patch("/sessions/{session_id}")
    async def update_session(session_id: str, request: UpdateSessionRequest):
        """Rename a session or move its zone."""
        manager = _manager()
        zone = None
        if request.zone_position:
            zone = ZonePosition(q=request.zone_position.q, r=request.zone_position.r)
        try:
            session = manager.update_session(session_id, name=request.name, zone_position=zone)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if not session:
            raise HTTPException(status_code=404, detail="Session not found")
        return _session_body(session)

    @app.delete("/sessions/{session_id}")
    async def delete_session(session_id: str):
        """Kill a session and forget it."""
        if not await _manager().delete_session(session_id):
            raise HTTPException(status_code=404, detail="Session not found")
        return {"ok": True}

    async def _run_command(coro):
        try:
            found = await coro
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except TmuxError as e:
            raise HTTPException(status_code=500, detail=str(e))
        if not found:
            raise HTTPException(status_code=404, detail="Session not found")
        return found

    @app.post("/sessions/{session_id}/prompt")
    async def send_prompt(session_id: str, request: PromptRequest):
        """Send a prompt to a session."""
        await _run_command(_manager().send_prompt(session_id, request.prompt))
        return {"ok": True}

    @app.post("/sessions/{session_id}/cancel")
    async def cancel_session(session_id: str):
        """Interrupt a session with Ctrl+C."""
        await _run_command(_manager().cancel_session(session_id))
        return {"ok": True}

    @app.post("/sessions/{session_id}/permission")
    async def respond_permission(session_id: str, request: PermissionResponseRequest):
        """Answer a pending permission prompt."""
        await _run_command(_manager().respond_permission(session_id, request.response))
        return {"ok": True}

    @app.post("/sessions/{session_id}/restart")
    async def restart_session(session_id: str):
        """Kill and respawn a session's Claude process."""
        session = await _run_command(_manager().restart_session(session_id))
        return _session_body(session)

    @app.post("/sessions/{session_id}/link")
    async def link_session(session_id: str, request: LinkRequest):
        """Link a Claude conversation id to a session."""
        try:
            session = _manager().link_claude_session(session_id, request.claude_session_id)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if not session:
            raise HTTPException(status_code=404, detail="Session not found")
        return _session_body(session)

    @app.get("/sessions/{session_id}/output")
    async def session_output(session_id: str, lines: int = 50):
        """Capture the last lines of a session's pane."""
        manager = _manager()
        session = _require_session(session_id)
        lines = max(1, min(lines, 2000))
        try:
            output = await manager.tmux.capture_output(session.tmux_session, lines)
        except TmuxError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"ok": True, "output": output}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Subscriber channel for sessions, events, prompts and token updates."""
        origin = websocket.headers.get("origin")
        if not is_origin_allowed(origin, allowed_origins):
            logger.warning(f"Rejected WebSocket connection from origin: {origin}")
            await websocket.close(code=1008)
            return

        manager = app.state.session_manager
        broadcaster = app.state.broadcaster
        if not manager or not broadcaster:
            await websocket.close(code=1011)
            return

        await websocket.accept()

        last_event = manager.ledger.recent(1)
        initial = [
            make_message("connected", {
                "sessionId": last_event[0].session_id if last_event else "unknown",
            }),
            # Sessions before history so clients can link events to sessions
            make_message("sessions", manager.sessions_payload()),
            make_message("history", manager.history_for_linked_sessions(50)),
        ]
        subscription = broadcaster.subscribe(initial=initial)
        sender = asyncio.create_task(_pump(websocket, subscription, app.state.ws_send_timeout))

        try:
            while True:
                raw = await websocket.receive_text()
                await _handle_client_message(manager, subscription, raw)
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.unsubscribe(subscription)
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass

    return app


async def _pump(websocket: WebSocket, subscription, send_timeout: float):
    """Single writer for a socket: drain the subscription queue into it."""
    try:
        while True:
            message = await subscription.get()
            if message is None:
                if subscription.dropped:
                    await websocket.close(code=1013)
                break
            await asyncio.wait_for(websocket.send_json(message), timeout=send_timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Subscriber {subscription.id} send timed out, closing")
        await websocket.close(code=1011)
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug(f"Subscriber {subscription.id} send loop ended: {e}")


async def _handle_client_message(manager, subscription, raw: str):
    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("Ignoring non-JSON client message")
        return
    if not isinstance(message, dict):
        return

    msg_type = message.get("type")
    payload = message.get("payload")
    if not isinstance(payload, dict):
        payload = {}

    if msg_type == "subscribe":
        logger.debug(f"Subscriber {subscription.id} subscribed")
    elif msg_type == "ping":
        subscription.offer(make_message("pong"))
    elif msg_type == "get_history":
        try:
            limit = int(payload.get("limit", 100))
        except (TypeError, ValueError):
            limit = 100
        history = [e.to_dict() for e in manager.ledger.recent(limit)]
        subscription.offer(make_message("history", history))
    elif msg_type == "permission_response":
        session_id = payload.get("sessionId")
        try:
            found = await manager.respond_permission(session_id, payload.get("response"))
        except (ValidationError, TmuxError) as e:
            subscription.offer(make_message("error", {"message": str(e)}))
            return
        if not found:
            subscription.offer(make_message("error", {"message": "Session not found"}))
    else:
        logger.debug(f"Unknown client message type: {msg_type}")
