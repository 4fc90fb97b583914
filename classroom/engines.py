"""Conferencing engine contract and the default control-channel engine.

An engine is constructed from ``EngineOptions`` and reports its lifecycle
through named events. The bridge never talks to a transport directly; it only
subscribes to these events and issues commands.
"""
from __future__ import annotations

import asyncio
import importlib
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from shared.errors import ConferenceConnectionError
from shared.protocol import DEFAULT_TCP_PORT, ClientIdentity, ControlAction

from .config import DEFAULT_ENGINE
from .control_client import ControlClient

logger = logging.getLogger(__name__)


class EngineEvent(str, Enum):
    CONFERENCE_JOINED = "conferenceJoined"
    PARTICIPANT_JOINED = "participantJoined"
    PARTICIPANT_LEFT = "participantLeft"
    CONFERENCE_LEFT = "conferenceLeft"
    READY_TO_CLOSE = "readyToClose"
    ERROR = "error"


EngineListener = Callable[[Dict[str, Any]], None]


@dataclass(slots=True)
class EngineOptions:
    room_name: str
    display_name: str
    email: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)


class Subscription:
    """Handle for one listener registration; ``revoke`` is idempotent."""

    def __init__(self, engine: "ConferenceEngine", event: EngineEvent, listener: EngineListener) -> None:
        self._engine = engine
        self.event = event
        self._listener = listener
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def revoke(self) -> None:
        if not self._active:
            return
        self._active = False
        self._engine.remove_listener(self.event, self._listener)


class ConferenceEngine:
    """Base class for engines. Subclasses report lifecycle through ``_emit``."""

    def __init__(self, options: EngineOptions) -> None:
        self.options = options
        self._listeners: Dict[EngineEvent, List[EngineListener]] = defaultdict(list)
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def add_listener(self, event: EngineEvent, listener: EngineListener) -> Subscription:
        self._listeners[EngineEvent(event)].append(listener)
        return Subscription(self, EngineEvent(event), listener)

    def remove_listener(self, event: EngineEvent, listener: EngineListener) -> None:
        listeners = self._listeners.get(EngineEvent(event))
        if listeners and listener in listeners:
            listeners.remove(listener)

    def listener_count(self) -> int:
        return sum(len(listeners) for listeners in self._listeners.values())

    def get_number_of_participants(self) -> int:
        raise NotImplementedError

    def execute_command(self, name: str, *args: Any) -> None:
        raise NotImplementedError

    def dispose(self) -> None:
        self._disposed = True
        self._listeners.clear()

    def _emit(self, event: EngineEvent, payload: Optional[Dict[str, Any]] = None) -> None:
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(dict(payload or {}))
            except Exception:
                logger.exception("Engine listener for %s failed", event.value)


EngineFactory = Callable[[EngineOptions], ConferenceEngine]


def import_engine_factory(target: str) -> EngineFactory:
    """Resolve ``"package.module:attribute"`` to an engine factory."""

    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Engine target must look like 'module:attribute', got {target!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attribute)
    if not callable(factory):
        raise TypeError(f"Engine target {target!r} is not callable")
    return factory


class EngineLoader:
    """Loads the engine client library once and hands out its factory."""

    def __init__(self, target: str = DEFAULT_ENGINE, *, factory: Optional[EngineFactory] = None) -> None:
        self._target = target
        self._factory = factory
        self._lock = asyncio.Lock()
        self.load_count = 0

    @property
    def loaded(self) -> bool:
        return self._factory is not None

    async def load(self) -> EngineFactory:
        if self._factory is not None:
            return self._factory
        async with self._lock:
            if self._factory is not None:
                return self._factory
            self.load_count += 1
            try:
                factory = await asyncio.to_thread(import_engine_factory, self._target)
            except (ImportError, AttributeError, TypeError, ValueError) as exc:
                logger.error("Failed to load conferencing engine %s: %s", self._target, exc)
                raise ConferenceConnectionError(f"Failed to load video conferencing engine '{self._target}'") from exc
            logger.info("Conferencing engine %s loaded", self._target)
            self._factory = factory
            return factory


class ControlChannelEngine(ConferenceEngine):
    """Joins a room on a TCP control-channel room server.

    Membership comes from ``welcome``/``user_joined``/``user_left``; losing
    the connection after the room opened is reported as leaving the
    conference, losing it before is reported as an error.
    """

    def __init__(self, options: EngineOptions) -> None:
        super().__init__(options)
        config = options.config
        self._audio_enabled = not bool(config.get("start_with_audio_muted", False))
        self._video_enabled = not bool(config.get("start_with_video_muted", False))
        identity = ClientIdentity(
            username=options.display_name,
            desired_room=options.room_name,
            email=options.email,
            audio_enabled=self._audio_enabled,
            video_enabled=self._video_enabled,
        )
        self._client = ControlClient(
            host=str(config.get("server_host", "127.0.0.1")),
            port=int(config.get("server_port", DEFAULT_TCP_PORT)),
            identity=identity,
            on_message=self._handle_message,
            on_disconnect=self._handle_disconnect,
        )
        self._participants: Set[str] = set()
        self._joined = False
        self._left = False
        self._background: Set[asyncio.Task[None]] = set()
        self._closing: Optional[asyncio.Task[None]] = None
        self._spawn(self._connect())

    def get_number_of_participants(self) -> int:
        return len(self._participants)

    def execute_command(self, name: str, *args: Any) -> None:
        if self._disposed:
            return
        if name == "hangup":
            self._leave("hangup", farewell=True)
        elif name == "toggleAudio":
            self._audio_enabled = not self._audio_enabled
            self._spawn(self._client.send_media_state(audio_enabled=self._audio_enabled))
        elif name == "toggleVideo":
            self._video_enabled = not self._video_enabled
            self._spawn(self._client.send_media_state(video_enabled=self._video_enabled))
        else:
            logger.warning("Unsupported engine command %s", name)

    def dispose(self) -> None:
        if self._disposed:
            return
        super().dispose()
        self._left = True
        for task in list(self._background):
            task.cancel()
        self._background.clear()
        try:
            self._close_channel()
        except RuntimeError:
            logger.debug("No running loop while disposing control channel engine")

    async def _connect(self) -> None:
        try:
            await self._client.connect()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._disposed or self._left:
                return
            logger.warning("Unable to join room %s: %s", self.options.room_name, exc)
            self._emit(EngineEvent.ERROR, {"message": f"Unable to reach the classroom server: {exc}"})

    def _leave(self, reason: str, *, farewell: bool = False) -> None:
        if self._left:
            return
        self._left = True
        self._close_channel(farewell=farewell)
        self._emit(EngineEvent.CONFERENCE_LEFT, {"reason": reason})
        self._emit(EngineEvent.READY_TO_CLOSE, {"reason": reason})

    def _close_channel(self, *, farewell: bool = False) -> None:
        # Held outside _background so dispose() never cancels it.
        if self._closing is not None:
            return
        loop = asyncio.get_running_loop()
        if farewell:
            coro = self._client.send_and_close(ControlAction.HANGUP, {})
        else:
            coro = self._client.close()
        self._closing = loop.create_task(coro)

    def _handle_message(self, action: ControlAction, payload: Dict[str, Any]) -> None:
        if self._disposed:
            return
        me = self.options.display_name
        if action == ControlAction.WELCOME:
            peers = payload.get("peers") or []
            self._participants = {peer for peer in peers if isinstance(peer, str)}
            self._participants.add(me)
            self._joined = True
            self._emit(
                EngineEvent.CONFERENCE_JOINED,
                {"id": me, "display_name": me, "room_name": self.options.room_name},
            )
        elif action == ControlAction.USER_JOINED:
            username = payload.get("username")
            participants = payload.get("participants")
            if isinstance(participants, list):
                self._participants = {peer for peer in participants if isinstance(peer, str)} | {me}
            elif isinstance(username, str):
                self._participants.add(username)
            if isinstance(username, str) and username != me:
                self._emit(EngineEvent.PARTICIPANT_JOINED, {"id": username, "display_name": username})
        elif action == ControlAction.USER_LEFT:
            username = payload.get("username")
            participants = payload.get("participants")
            if isinstance(participants, list):
                self._participants = {peer for peer in participants if isinstance(peer, str)} | {me}
            elif isinstance(username, str):
                self._participants.discard(username)
            if isinstance(username, str) and username != me:
                self._emit(EngineEvent.PARTICIPANT_LEFT, {"id": username})
        elif action == ControlAction.KICKED:
            self._leave(str(payload.get("reason") or "removed"))
        elif action == ControlAction.ERROR:
            self._emit(EngineEvent.ERROR, {"message": str(payload.get("message") or "Room server error")})
        else:
            logger.debug("Ignoring control action %s", action.value)

    def _handle_disconnect(self, reason: Optional[str]) -> None:
        if self._disposed or not self._joined:
            return
        self._leave(reason or "connection_closed")

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
