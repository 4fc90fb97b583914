from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Dict, Optional, TypeVar

from fastapi import Body, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from shared.errors import ValidationError
from shared.models import Role, RoleContext

from .session_store import InvalidTransition, SessionNotFound, SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


_ACTIVITY_LIMIT = 200
_activity = deque(maxlen=_ACTIVITY_LIMIT)


class _ActivityLogHandler(logging.Handler):
    """Keeps recent directory log records, tagged with the session they concern."""

    def emit(self, record: logging.LogRecord) -> None:
        _activity.append(
            {
                "message": record.getMessage(),
                "level": record.levelname.lower(),
                "logger": record.name,
                "session_id": getattr(record, "session_id", None),
                "timestamp": record.created,
            }
        )


def _install_activity_handler() -> None:
    directory_logger = logging.getLogger("directory")
    if any(isinstance(handler, _ActivityLogHandler) for handler in directory_logger.handlers):
        return
    directory_logger.addHandler(_ActivityLogHandler(level=logging.INFO))


def _activity_tail(limit: int = 50, session_id: Optional[str] = None) -> list[dict[str, object]]:
    if limit <= 0:
        return []
    entries = list(_activity)
    if session_id is not None:
        entries = [entry for entry in entries if entry["session_id"] == session_id]
    return entries[-limit:]


def _ok(data: Dict[str, Any]) -> Dict[str, Any]:
    return {"success": True, "data": data}


class DirectoryApp:
    """FastAPI application serving the virtual class endpoints."""

    def __init__(self, store: SessionStore) -> None:
        self._store = store
        self._app = FastAPI(title="Session Directory")
        _install_activity_handler()

        @self._app.exception_handler(HTTPException)
        async def http_error(request: Request, exc: HTTPException) -> JSONResponse:
            return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.detail})

        @self._app.get("/api/health")
        async def health() -> dict:
            snapshot = await self._store.snapshot()
            return {
                "status": "ok",
                "participant_count": snapshot.get("participant_count", 0),
                "timestamp": time.time(),
            }

        @self._app.get("/api/state")
        async def state(session_id: Optional[str] = None) -> dict:
            snapshot = await self._store.snapshot()
            snapshot["timestamp"] = time.time()
            snapshot["activity"] = _activity_tail(40, session_id)
            return snapshot

        @self._app.get("/api/virtualclass/my-sessions")
        async def my_sessions(
            principal_id: Optional[str] = Header(default=None, alias="X-Principal-Id"),
            principal_role: Optional[str] = Header(default=None, alias="X-Principal-Role"),
        ) -> dict:
            context = _principal(principal_id, principal_role)
            if context.role is Role.STUDENT:
                raise HTTPException(status_code=403, detail="Students use /virtualclass/student/sessions")
            sessions = await self._store.list_for(context)
            return _ok({"sessions": [session.to_dict() for session in sessions]})

        @self._app.get("/api/virtualclass/student/sessions")
        async def student_sessions(
            principal_id: Optional[str] = Header(default=None, alias="X-Principal-Id"),
            principal_role: Optional[str] = Header(default=None, alias="X-Principal-Role"),
        ) -> dict:
            context = _principal(principal_id, principal_role)
            if context.role is not Role.STUDENT:
                raise HTTPException(status_code=403, detail="Only students can list enrolled sessions")
            sessions = await self._store.list_for(context)
            return _ok({"sessions": [session.to_dict() for session in sessions]})

        @self._app.post("/api/virtualclass/create")
        async def create(
            payload: dict = Body(...),
            principal_id: Optional[str] = Header(default=None, alias="X-Principal-Id"),
            principal_role: Optional[str] = Header(default=None, alias="X-Principal-Role"),
        ) -> dict:
            context = _principal(principal_id, principal_role)
            course_id = payload.get("course_id") or payload.get("courseId")
            if not course_id:
                raise HTTPException(status_code=400, detail="course_id is required")
            session = await _call(
                self._store.create_session(
                    context,
                    course_id=str(course_id),
                    title=str(payload.get("title") or ""),
                    description=str(payload.get("description") or ""),
                    scheduled_at=payload.get("scheduled_at") or payload.get("scheduledDateTime"),
                    duration_minutes=payload.get("duration_minutes", payload.get("duration", 90)),
                    max_participants=payload.get("max_participants", payload.get("maxParticipants", 100)),
                )
            )
            return _ok({"session": session.to_dict()})

        @self._app.put("/api/virtualclass/{session_id}/start")
        async def start(
            session_id: str,
            principal_id: Optional[str] = Header(default=None, alias="X-Principal-Id"),
            principal_role: Optional[str] = Header(default=None, alias="X-Principal-Role"),
        ) -> dict:
            context = _principal(principal_id, principal_role)
            session = await _call(self._store.start_session(context, session_id))
            return _ok({"session": session.to_dict()})

        @self._app.put("/api/virtualclass/{session_id}/complete")
        async def complete(
            session_id: str,
            principal_id: Optional[str] = Header(default=None, alias="X-Principal-Id"),
            principal_role: Optional[str] = Header(default=None, alias="X-Principal-Role"),
        ) -> dict:
            context = _principal(principal_id, principal_role)
            session = await _call(self._store.complete_session(context, session_id))
            return _ok({"session": session.to_dict()})

        @self._app.put("/api/virtualclass/{session_id}/cancel")
        async def cancel(
            session_id: str,
            principal_id: Optional[str] = Header(default=None, alias="X-Principal-Id"),
            principal_role: Optional[str] = Header(default=None, alias="X-Principal-Role"),
        ) -> dict:
            context = _principal(principal_id, principal_role)
            session = await _call(self._store.cancel_session(context, session_id))
            return _ok({"session": session.to_dict()})

        @self._app.post("/api/virtualclass/{session_id}/join")
        async def join(
            session_id: str,
            principal_id: Optional[str] = Header(default=None, alias="X-Principal-Id"),
            principal_role: Optional[str] = Header(default=None, alias="X-Principal-Role"),
            principal_name: Optional[str] = Header(default=None, alias="X-Principal-Name"),
        ) -> dict:
            context = _principal(principal_id, principal_role, principal_name)
            room_id = await _call(self._store.join_session(context, session_id))
            return _ok({"room_id": room_id})

        @self._app.post("/api/virtualclass/{session_id}/leave")
        async def leave(
            session_id: str,
            principal_id: Optional[str] = Header(default=None, alias="X-Principal-Id"),
            principal_role: Optional[str] = Header(default=None, alias="X-Principal-Role"),
        ) -> dict:
            context = _principal(principal_id, principal_role)
            left = await _call(self._store.leave_session(context, session_id))
            return _ok({"left": left})

        @self._app.get("/api/export/events")
        async def export_events() -> JSONResponse:
            events = await self._store.get_recent_events(limit=600)
            response = JSONResponse(events)
            response.headers["Content-Disposition"] = "attachment; filename=\"session-events.json\""
            return response

    @property
    def app(self) -> FastAPI:
        return self._app


async def _call(awaitable: Awaitable[T]) -> T:
    """Await a store call, mapping its exceptions onto HTTP status codes."""

    try:
        return await awaitable
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PermissionError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except SessionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


def _principal(
    principal_id: Optional[str],
    principal_role: Optional[str],
    display_name: Optional[str] = None,
) -> RoleContext:
    if not principal_id:
        raise HTTPException(status_code=401, detail="X-Principal-Id header is required")
    try:
        role = Role((principal_role or "").strip().lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown role {principal_role!r}") from None
    return RoleContext(principal_id=principal_id, role=role, display_name=display_name or None)


class DirectoryServer:
    """Runs a :class:`DirectoryApp` under uvicorn and reports the address it bound.

    ``start`` returns only once the listener is up, so a port of 0 can be used
    and the chosen port read back from :attr:`url`.
    """

    def __init__(self, store: SessionStore, *, host: str, port: int, startup_timeout: float = 10.0) -> None:
        self.directory = DirectoryApp(store)
        self._host = host
        self._port = port
        self._startup_timeout = startup_timeout
        self._server: Optional[Any] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._bound_port: Optional[int] = None

    @property
    def url(self) -> Optional[str]:
        if self._bound_port is None:
            return None
        return f"http://{self._host}:{self._bound_port}/api"

    async def start(self) -> str:
        import uvicorn

        if self._server is not None and self.url is not None:
            return self.url
        config = uvicorn.Config(self.directory.app, host=self._host, port=self._port, log_level="info")
        server = uvicorn.Server(config)
        task = asyncio.create_task(server.serve())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._startup_timeout
        while not server.started:
            if task.done() or loop.time() >= deadline:
                server.should_exit = True
                await asyncio.gather(task, return_exceptions=True)
                raise RuntimeError(f"Session directory did not start on {self._host}:{self._port}")
            await asyncio.sleep(0.05)

        self._server = server
        self._task = task
        self._bound_port = server.servers[0].sockets[0].getsockname()[1]
        logger.info("Session directory available at %s", self.url)
        return self.url

    async def stop(self) -> None:
        if self._server is None:
            return
        assert self._task is not None
        self._server.should_exit = True
        await self._task
        logger.info("Session directory on port %s stopped", self._bound_port)
        self._server = None
        self._task = None
        self._bound_port = None
