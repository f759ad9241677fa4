"""FastAPI application exposing the collaboration hub.

Routes:

* ``GET /ws`` (WebSocket) - attach a session; the handshake query carries
  ``user_id``, ``username``, ``project_id`` and an optional ``avatar``.
* ``GET /api/v1/health``
* ``GET /api/v1/rooms/{project_id}/users``
* ``POST /api/v1/rooms/{project_id}/system-message``
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping, NamedTuple

from fastapi import APIRouter, FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.websockets import WebSocketDisconnect, WebSocketState
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from devcollab import __version__
from devcollab.config import Settings
from devcollab.errors import DevCollabError, NotFoundError, ValidationError
from devcollab.hub import Hub
from devcollab.session import ClientSession, ConnectionClosed, read_pump, write_pump

__all__ = ["SERVICE_NAME", "StarletteTransport", "SystemMessageRequest", "create_app"]

logger = logging.getLogger(__name__)

SERVICE_NAME = "devcollab-hub"

# Policy violation; used when the server cannot answer the handshake with HTTP 400.
_CLOSE_POLICY_VIOLATION = 1008


class Handshake(NamedTuple):
    """Validated identity from the WebSocket handshake query."""

    user_id: int
    username: str
    project_id: int
    avatar: str = ""


class SystemMessageRequest(BaseModel):
    """Body of ``POST /api/v1/rooms/{project_id}/system-message``."""

    type: str = Field(..., description="Event type to broadcast, e.g. project_update")
    message: str = Field(default="", description="Human-readable text merged into the payload")
    data: Any = None


class StarletteTransport:
    """Adapt a Starlette :class:`~starlette.websockets.WebSocket` to the session pumps.

    Keepalive pings are emitted by the ASGI server (uvicorn's
    ``ws_ping_interval``); ASGI offers applications no way to send ping
    frames, so :meth:`ping` does nothing.  Pongs never reach the
    application either, so liveness is left to the server's
    ``ws_ping_timeout`` and the reader runs without its own deadline.
    """

    server_keepalive = True

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def receive_text(self) -> str:
        try:
            message = await self._websocket.receive()
        except RuntimeError as exc:
            raise ConnectionClosed(reason=str(exc)) from exc
        if message["type"] == "websocket.disconnect":
            raise ConnectionClosed(message.get("code"))
        if message.get("text") is not None:
            return message["text"]
        return (message.get("bytes") or b"").decode("utf-8", errors="replace")

    async def send_text(self, text: str) -> None:
        try:
            await self._websocket.send_text(text)
        except (WebSocketDisconnect, RuntimeError) as exc:
            raise ConnectionClosed(reason=str(exc)) from exc

    async def ping(self) -> None:
        return None

    async def close(self, code: int = 1000) -> None:
        if self._websocket.application_state is not WebSocketState.CONNECTED:
            return
        try:
            await self._websocket.close(code)
        except RuntimeError as exc:
            logger.debug("Close after disconnect: %s", exc)


def parse_handshake(params: Mapping[str, str]) -> Handshake:
    """Validate the handshake query.

    Raises:
        ValidationError: When ``user_id``/``project_id`` are missing or not
            positive integers, or ``username`` is empty.
    """
    username = (params.get("username") or "").strip()
    if not username:
        raise ValidationError("username is required")
    return Handshake(
        user_id=_positive_int(params.get("user_id"), "user_id"),
        username=username,
        project_id=_positive_int(params.get("project_id"), "project_id"),
        avatar=params.get("avatar") or "",
    )


def create_app(settings: Settings | None = None, hub: Hub | None = None) -> FastAPI:
    """Build the FastAPI application.

    The hub loop is started and stopped with the application lifespan; the
    hub is available as ``app.state.hub``.
    """
    settings = settings or Settings()
    hub = hub or Hub(command_queue_size=settings.hub_queue_size)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.started_at = time.monotonic()
        await hub.start()
        try:
            yield
        finally:
            await hub.stop()

    app = FastAPI(title="devcollab hub", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.hub = hub
    app.state.started_at = time.monotonic()
    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    @app.websocket("/ws")
    async def collaborate(websocket: WebSocket) -> None:
        try:
            identity = parse_handshake(websocket.query_params)
        except ValidationError as exc:
            await _refuse(websocket, str(exc))
            return

        await websocket.accept()
        session = ClientSession(
            user_id=identity.user_id,
            username=identity.username,
            room_id=identity.project_id,
            avatar=identity.avatar,
            queue_size=settings.queue_size,
        )
        transport = StarletteTransport(websocket)
        await hub.attach(session)
        writer = asyncio.create_task(
            write_pump(session, transport, settings.ping_interval, settings.write_timeout)
        )
        read_timeout = None if transport.server_keepalive else settings.read_timeout
        try:
            await read_pump(session, hub, transport, read_timeout)
        finally:
            if not writer.done():
                await asyncio.wait([writer], timeout=settings.write_timeout)
            writer.cancel()

    @app.get("/ws", include_in_schema=False)
    async def collaborate_over_http(request: Request) -> JSONResponse:
        try:
            parse_handshake(request.query_params)
        except ValidationError as exc:
            return _error(400, str(exc))
        return _error(426, "WebSocket upgrade required")

    app.include_router(_api_router(hub))
    return app


def _api_router(hub: Hub) -> APIRouter:
    router = APIRouter(prefix="/api/v1", tags=["hub"])

    @router.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        return {
            "success": True,
            "service": SERVICE_NAME,
            "version": __version__,
            "status": "healthy" if hub.running else "stopped",
            "rooms": hub.room_count(),
            "uptime": round(time.monotonic() - request.app.state.started_at, 3),
        }

    @router.get("/rooms/{project_id}/users")
    async def room_users(project_id: str) -> JSONResponse:
        try:
            room_id = _positive_int(project_id, "project_id")
            users = hub.room_occupants(room_id)
        except DevCollabError as exc:
            return _error_for(exc)
        return JSONResponse(
            {
                "success": True,
                "data": {"project_id": room_id, "online_count": len(users), "users": users},
            }
        )

    @router.post("/rooms/{project_id}/system-message")
    async def system_message(project_id: str, request: Request) -> JSONResponse:
        try:
            room_id = _positive_int(project_id, "project_id")
            body = SystemMessageRequest.model_validate_json(await request.body())
            event = await hub.post_system_event(
                room_id, body.type, _system_payload(body.message, body.data)
            )
        except PydanticValidationError as exc:
            return _error(400, _describe(exc))
        except DevCollabError as exc:
            return _error_for(exc)
        logger.info("System %s posted to room %s", event.type.value, room_id)
        return JSONResponse({"success": True, "message": "System message sent"})

    return router


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _positive_int(value: str | None, field: str) -> int:
    if value is None or value == "":
        raise ValidationError(f"{field} is required")
    try:
        number = int(value)
    except ValueError:
        raise ValidationError(f"{field} must be an integer") from None
    if number <= 0:
        raise ValidationError(f"{field} must be positive")
    return number


def _describe(exc: PydanticValidationError) -> str:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'body'}: {error['msg']}"
        for error in exc.errors()
    )
    return f"Invalid request body: {problems}"


def _system_payload(message: str, data: Any) -> Any:
    if not message:
        return data
    if data is None:
        return {"message": message}
    if isinstance(data, dict):
        return {"message": message, **data}
    return {"message": message, "data": data}


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


def _error_for(exc: DevCollabError) -> JSONResponse:
    status_code = 404 if isinstance(exc, NotFoundError) else 400
    return _error(status_code, str(exc))


async def _refuse(websocket: WebSocket, reason: str) -> None:
    logger.info("Refusing WebSocket handshake: %s", reason)
    if "websocket.http.response" in websocket.scope.get("extensions", {}):
        await websocket.send_denial_response(_error(400, reason))
    else:
        await websocket.close(code=_CLOSE_POLICY_VIOLATION, reason=reason)
