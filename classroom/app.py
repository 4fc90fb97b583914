from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from fastapi import Body, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import Response
from starlette.websockets import WebSocketState

from shared.errors import MediaAccessError, NetworkError, TimingViolation, ValidationError
from shared.models import JoinIntent, RoleContext, Session, SessionStatus

from .config import ClassroomConfig
from .device_preview import DevicePreviewManager, MediaDevices
from .directory_client import SessionDirectoryClient
from .discovery import DiscoveryView, SessionDiscoveryPoller
from .eligibility import ensure_can_join, ensure_can_start, evaluate
from .engines import EngineLoader
from .meeting_bridge import BridgeError, BridgeState, MeetingBridge

logger = logging.getLogger(__name__)

VIEW_DASHBOARD = "dashboard"
VIEW_PREJOIN = "prejoin"
VIEW_CLASSROOM = "classroom"

_PASSTHROUGH_STATUS = {400, 403, 404, 409}


class WebSocketHub:
    """Tracks active UI WebSocket connections."""

    def __init__(self) -> None:
        self._connections: List[WebSocket] = []
        self._lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._connections.append(ws)

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            if ws in self._connections:
                self._connections.remove(ws)

    async def broadcast(self, message: Dict[str, object]) -> None:
        async with self._lock:
            for ws in list(self._connections):
                try:
                    if ws.application_state == WebSocketState.CONNECTED:
                        await ws.send_json(message)
                except Exception:
                    logger.exception("Failed to send WebSocket message")


class ClassroomApp:
    """Local classroom runtime: session dashboard, pre-join preview and the live room.

    The app is the only place where the three views meet. It releases the
    preview before the bridge starts and disposes the bridge before it tells
    the UI to navigate away.
    """

    def __init__(
        self,
        config: ClassroomConfig,
        context: RoleContext,
        *,
        directory: Optional[SessionDirectoryClient] = None,
        preview: Optional[DevicePreviewManager] = None,
        loader: Optional[EngineLoader] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config
        self._context = context
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._policy = config.eligibility_policy()
        self._directory = directory or SessionDirectoryClient(
            context,
            config.directory_url,
            timeout=config.request_timeout,
        )
        self._poller = SessionDiscoveryPoller(
            self._directory,
            interval=config.poll_interval,
            policy=self._policy,
            clock=self._clock,
        )
        self._poller.add_listener(self._on_discovery_view)
        self._preview = preview or DevicePreviewManager(MediaDevices(camera_index=config.camera_index))
        self._loader = loader or EngineLoader(config.engine)
        self._bridge: Optional[MeetingBridge] = None
        self._bridge_task: Optional[asyncio.Task[Any]] = None
        self._background: Set[asyncio.Task[Any]] = set()
        self._session: Optional[Session] = None
        self._room_id: Optional[str] = None
        self._intent: Optional[JoinIntent] = None
        self._view_name = VIEW_DASHBOARD
        self._ws_hub = WebSocketHub()
        self._uvicorn_server = None
        self._app = FastAPI(title="Virtual Classroom")
        self._configure_routes()

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def view_name(self) -> str:
        return self._view_name

    @property
    def bridge(self) -> Optional[MeetingBridge]:
        return self._bridge

    @property
    def poller(self) -> SessionDiscoveryPoller:
        return self._poller

    @property
    def preview(self) -> DevicePreviewManager:
        return self._preview

    def _configure_routes(self) -> None:
        @self._app.get("/api/config")
        async def config() -> Dict[str, object]:
            return {
                "principal_id": self._context.principal_id,
                "role": self._context.role.value,
                "display_name": self._context.display_name,
                "poll_interval": self._config.poll_interval,
                "start_lead_minutes": self._config.start_lead_minutes,
                "join_lead_minutes": self._config.join_lead_minutes,
            }

        @self._app.get("/api/sessions")
        async def sessions() -> Dict[str, object]:
            return self._poller.view.to_dict()

        @self._app.post("/api/sessions/refresh")
        async def refresh_sessions() -> Dict[str, object]:
            view = await self._poller.refresh()
            return view.to_dict()

        @self._app.post("/api/sessions/{session_id}/start")
        async def start_session(session_id: str) -> Dict[str, object]:
            session = self._find_session(session_id)
            try:
                ensure_can_start(session, evaluate(session, self._clock(), self._policy))
                if session.status is SessionStatus.SCHEDULED:
                    session = await self._directory.start_session(session_id)
                room_id = await self._directory.join_session(session_id)
            except TimingViolation as exc:
                raise HTTPException(status_code=409, detail=str(exc)) from exc
            except NetworkError as exc:
                raise _http_error(exc) from exc
            await self._enter_prejoin(session, room_id)
            return self._prejoin_payload()

        @self._app.post("/api/sessions/{session_id}/join")
        async def join_session(session_id: str) -> Dict[str, object]:
            session = self._find_session(session_id)
            try:
                ensure_can_join(session, evaluate(session, self._clock(), self._policy))
                room_id = await self._directory.join_session(session_id)
            except TimingViolation as exc:
                raise HTTPException(status_code=409, detail=str(exc)) from exc
            except NetworkError as exc:
                raise _http_error(exc) from exc
            await self._enter_prejoin(session, room_id)
            return self._prejoin_payload()

        @self._app.post("/api/preview/start")
        async def preview_start() -> Dict[str, object]:
            self._require_view(VIEW_PREJOIN)
            try:
                await self._preview.acquire()
            except MediaAccessError as exc:
                logger.info("Preview continues without devices: %s", exc)
            state = self._preview.state()
            await self._ws_hub.broadcast({"type": "preview", "payload": state})
            return state

        @self._app.post("/api/preview/toggle")
        async def preview_toggle(payload: Optional[Dict[str, Any]] = Body(default=None)) -> Dict[str, object]:
            payload = payload or {}
            if "video" in payload:
                self._preview.toggle_video(bool(payload["video"]))
            if "audio" in payload:
                self._preview.toggle_audio(bool(payload["audio"]))
            state = self._preview.state()
            await self._ws_hub.broadcast({"type": "preview", "payload": state})
            return state

        @self._app.get("/api/preview/state")
        async def preview_state() -> Dict[str, object]:
            return self._preview.state()

        @self._app.get("/api/preview/frame")
        async def preview_frame() -> Response:
            frame = await self._preview.read_preview_frame()
            if frame is None:
                return Response(status_code=204)
            return Response(content=frame, media_type="image/jpeg")

        @self._app.post("/api/preview/cancel")
        async def preview_cancel() -> Dict[str, object]:
            await self._return_to_dashboard("cancelled")
            return {"view": self._view_name}

        @self._app.post("/api/classroom/join")
        async def classroom_join(payload: Optional[Dict[str, Any]] = Body(default=None)) -> Dict[str, object]:
            payload = payload or {}
            self._require_view(VIEW_PREJOIN)
            try:
                intent = self._preview.validate_and_join(payload.get("display_name"))
            except ValidationError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            self._intent = intent
            self._view_name = VIEW_CLASSROOM
            await self._launch_bridge()
            await self._broadcast_navigate(VIEW_CLASSROOM)
            return self._classroom_payload()

        @self._app.get("/api/classroom/state")
        async def classroom_state() -> Dict[str, object]:
            return self._classroom_payload()

        @self._app.post("/api/classroom/media")
        async def classroom_media(payload: Optional[Dict[str, Any]] = Body(default=None)) -> Dict[str, object]:
            payload = payload or {}
            bridge = self._require_bridge()
            if "audio" in payload:
                bridge.set_audio(bool(payload["audio"]))
            if "video" in payload:
                bridge.set_video(bool(payload["video"]))
            return self._classroom_payload()

        @self._app.post("/api/classroom/leave")
        async def classroom_leave() -> Dict[str, object]:
            bridge = self._require_bridge()
            bridge.leave()
            await self._exit_classroom("left")
            return {"view": self._view_name}

        @self._app.post("/api/classroom/retry")
        async def classroom_retry() -> Dict[str, object]:
            self._require_view(VIEW_CLASSROOM)
            if self._intent is None or self._room_id is None:
                raise HTTPException(status_code=409, detail="Nothing to retry")
            await self._dispose_bridge()
            await self._launch_bridge()
            return self._classroom_payload()

        @self._app.post("/api/classroom/back")
        async def classroom_back() -> Dict[str, object]:
            self._require_view(VIEW_CLASSROOM)
            await self._exit_classroom("back")
            return {"view": self._view_name}

        @self._app.websocket("/ws/classroom")
        async def ws_classroom(websocket: WebSocket) -> None:
            await self._ws_hub.connect(websocket)
            try:
                await websocket.send_json({"type": "state_snapshot", "payload": self._build_snapshot()})
                while True:
                    data = await websocket.receive_json()
                    await self._handle_ui_message(data)
            except WebSocketDisconnect:
                pass
            finally:
                await self._ws_hub.disconnect(websocket)

    async def startup(self) -> None:
        self._poller.start(self._context)
        logger.info("Classroom app started for %s (%s)", self._context.principal_id, self._context.role.value)

    async def shutdown(self) -> None:
        self._poller.stop()
        for task in list(self._background):
            task.cancel()
        await self._dispose_bridge()
        self._preview.release()
        await self._directory.aclose()
        logger.info("Classroom app stopped")

    async def run(self, host: str = "127.0.0.1", port: int = 8100) -> None:
        import uvicorn

        config = uvicorn.Config(self._app, host=host, port=port, log_level="info")
        server = uvicorn.Server(config)
        self._uvicorn_server = server
        await self.startup()
        try:
            await server.serve()
        finally:
            self._uvicorn_server = None
            await self.shutdown()

    def _find_session(self, session_id: str) -> Session:
        view = self._poller.view.find(session_id)
        if view is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return view.session

    def _require_view(self, name: str) -> None:
        if self._view_name != name:
            raise HTTPException(status_code=409, detail=f"Not on the {name} view")

    def _require_bridge(self) -> MeetingBridge:
        if self._view_name != VIEW_CLASSROOM or self._bridge is None:
            raise HTTPException(status_code=409, detail="Not in a classroom")
        return self._bridge

    async def _enter_prejoin(self, session: Session, room_id: str) -> None:
        if self._view_name == VIEW_CLASSROOM:
            await self._dispose_bridge()
        self._preview.release()
        self._session = session
        self._room_id = room_id
        self._intent = None
        self._view_name = VIEW_PREJOIN
        await self._broadcast_navigate(VIEW_PREJOIN)

    async def _launch_bridge(self) -> None:
        assert self._intent is not None and self._room_id is not None
        session = self._session

        async def on_terminated(reason: str) -> None:
            if self._bridge is bridge:
                await self._exit_classroom(reason)

        bridge = MeetingBridge(
            self._loader,
            session_id=session.id if session else None,
            engine_config=self._config.engine_defaults(),
            load_timeout=self._config.engine_load_timeout,
            join_timeout=self._config.room_join_timeout,
            on_state_change=self._on_bridge_state,
            on_participants=self._on_participants,
            on_terminated=on_terminated,
        )
        self._bridge = bridge
        self._bridge_task = asyncio.create_task(
            bridge.start(
                self._intent,
                self._room_id,
                subject=session.title if session else None,
                email=self._context.email,
            )
        )

    async def _dispose_bridge(self) -> None:
        bridge, self._bridge = self._bridge, None
        task, self._bridge_task = self._bridge_task, None
        if bridge is not None:
            bridge.dispose()
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def _exit_classroom(self, reason: str) -> None:
        if self._view_name != VIEW_CLASSROOM:
            return
        await self._dispose_bridge()
        session = self._session
        if session is not None:
            try:
                await self._directory.leave_session(session.id)
            except NetworkError as exc:
                logger.warning("Failed to record leaving session %s: %s", session.id, exc)
        await self._return_to_dashboard(reason)

    async def _return_to_dashboard(self, reason: str) -> None:
        self._preview.release()
        self._session = None
        self._room_id = None
        self._intent = None
        self._view_name = VIEW_DASHBOARD
        await self._broadcast_navigate(VIEW_DASHBOARD, reason=reason)
        if self._poller.running:
            task = asyncio.create_task(self._poller.refresh())
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _broadcast_navigate(self, view: str, **payload: object) -> None:
        await self._ws_hub.broadcast({"type": "navigate", "payload": {"view": view, **payload}})

    async def _on_discovery_view(self, view: DiscoveryView) -> None:
        await self._ws_hub.broadcast({"type": "sessions", "payload": view.to_dict()})

    async def _on_bridge_state(self, state: BridgeState, error: Optional[BridgeError]) -> None:
        await self._ws_hub.broadcast(
            {
                "type": "classroom_state",
                "payload": {"state": state.value, "error": error.to_dict() if error else None},
            }
        )

    async def _on_participants(self, count: int) -> None:
        await self._ws_hub.broadcast({"type": "participants", "payload": {"count": count}})

    async def _handle_ui_message(self, data: object) -> None:
        if not isinstance(data, dict):
            logger.debug("Ignoring non-object UI message %r", data)
            return
        message_type = data.get("type")
        if message_type == "refresh":
            await self._poller.refresh()
        elif message_type == "snapshot":
            await self._ws_hub.broadcast({"type": "state_snapshot", "payload": self._build_snapshot()})
        else:
            logger.debug("Ignoring UI message %r", message_type)

    def _prejoin_payload(self) -> Dict[str, object]:
        return {
            "view": self._view_name,
            "session": self._session.to_dict() if self._session else None,
            "room_id": self._room_id,
            "preview": self._preview.state(),
        }

    def _classroom_payload(self) -> Dict[str, object]:
        return {
            "view": self._view_name,
            "session": self._session.to_dict() if self._session else None,
            "classroom": self._bridge.snapshot() if self._bridge else None,
        }

    def _build_snapshot(self) -> Dict[str, object]:
        return {
            "view": self._view_name,
            "sessions": self._poller.view.to_dict(),
            "session": self._session.to_dict() if self._session else None,
            "room_id": self._room_id,
            "preview": self._preview.state(),
            "classroom": self._bridge.snapshot() if self._bridge else None,
        }


def _http_error(exc: NetworkError) -> HTTPException:
    if exc.status_code in _PASSTHROUGH_STATUS:
        return HTTPException(status_code=exc.status_code, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))
