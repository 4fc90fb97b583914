from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from shared.errors import ConferenceConnectionError
from shared.models import JoinIntent, Presence, format_timestamp

from .config import DEFAULT_ENGINE_LOAD_TIMEOUT, DEFAULT_ROOM_JOIN_TIMEOUT
from .engines import ConferenceEngine, EngineEvent, EngineLoader, EngineOptions, Subscription

logger = logging.getLogger(__name__)

RETRY_ACTION = "retry"
BACK_ACTION = "back"

LOAD_FAILED_MESSAGE = "Failed to load video conferencing. Please refresh the page."
LOAD_TIMEOUT_MESSAGE = "Timed out loading video conferencing. Please refresh the page."
JOIN_TIMEOUT_MESSAGE = "Timed out joining the classroom."
ROOM_FAILED_MESSAGE = "Failed to initialize video conference"


class BridgeState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING_ENGINE = "loading_engine"
    CREATING_ROOM = "creating_room"
    ACTIVE = "active"
    TERMINATED = "terminated"
    ERROR = "error"


_TRANSITIONS: Dict[BridgeState, frozenset] = {
    BridgeState.UNINITIALIZED: frozenset({BridgeState.LOADING_ENGINE}),
    BridgeState.LOADING_ENGINE: frozenset({BridgeState.CREATING_ROOM, BridgeState.ERROR}),
    BridgeState.CREATING_ROOM: frozenset({BridgeState.ACTIVE, BridgeState.TERMINATED, BridgeState.ERROR}),
    BridgeState.ACTIVE: frozenset({BridgeState.TERMINATED, BridgeState.ERROR}),
    BridgeState.TERMINATED: frozenset(),
    BridgeState.ERROR: frozenset(),
}


@dataclass(slots=True)
class BridgeError:
    """User-facing failure with the recovery actions the view should offer."""

    message: str
    actions: Tuple[str, ...] = (RETRY_ACTION, BACK_ACTION)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "actions": list(self.actions)}


StateListener = Callable[[BridgeState, Optional[BridgeError]], Awaitable[None] | None]
ParticipantListener = Callable[[int], Awaitable[None] | None]
TerminatedListener = Callable[[str], Awaitable[None] | None]
Clock = Callable[[], datetime]


class MeetingBridge:
    """Hosts one embedded conference for the lifetime of the classroom view.

    Engine events are relayed one way into bridge state. Once ``dispose()``
    has run, nothing the engine reports can change the bridge again.
    """

    def __init__(
        self,
        loader: EngineLoader,
        *,
        session_id: Optional[str] = None,
        engine_config: Optional[Dict[str, Any]] = None,
        load_timeout: float = DEFAULT_ENGINE_LOAD_TIMEOUT,
        join_timeout: float = DEFAULT_ROOM_JOIN_TIMEOUT,
        on_state_change: Optional[StateListener] = None,
        on_participants: Optional[ParticipantListener] = None,
        on_terminated: Optional[TerminatedListener] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._loader = loader
        self._session_id = session_id
        self._engine_config = dict(engine_config or {})
        self._load_timeout = load_timeout
        self._join_timeout = join_timeout
        self._on_state_change = on_state_change
        self._on_participants = on_participants
        self._on_terminated = on_terminated
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._state = BridgeState.UNINITIALIZED
        self._error: Optional[BridgeError] = None
        self._engine: Optional[ConferenceEngine] = None
        self._subscriptions: List[Subscription] = []
        self._watchdog: Optional[asyncio.Task[None]] = None
        self._load_task: Optional[asyncio.Task[Any]] = None
        self._presences: Dict[str, Presence] = {}
        self._history: List[Presence] = []
        self._participant_count = 1
        self._room_id: Optional[str] = None
        self._local: Optional[JoinIntent] = None
        self._disposed = False
        self._terminated_notified = False
        self._callbacks: Set[asyncio.Task[None]] = set()

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def error(self) -> Optional[BridgeError]:
        return self._error

    @property
    def participant_count(self) -> int:
        return self._participant_count

    @property
    def presences(self) -> List[Presence]:
        return list(self._history)

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def engine(self) -> Optional[ConferenceEngine]:
        return self._engine

    async def start(
        self,
        intent: JoinIntent,
        room_id: str,
        *,
        subject: Optional[str] = None,
        email: Optional[str] = None,
    ) -> BridgeState:
        if self._disposed or self._state is not BridgeState.UNINITIALIZED:
            logger.debug("Ignoring start() in state %s", self._state.value)
            return self._state
        self._room_id = room_id
        self._transition(BridgeState.LOADING_ENGINE)

        self._load_task = asyncio.ensure_future(self._loader.load())
        try:
            factory = await asyncio.wait_for(self._load_task, timeout=self._load_timeout)
        except asyncio.TimeoutError:
            logger.warning("Conferencing engine did not load within %.1fs", self._load_timeout)
            self._fail(LOAD_TIMEOUT_MESSAGE)
            return self._state
        except asyncio.CancelledError:
            if self._disposed:
                return self._state
            raise
        except ConferenceConnectionError as exc:
            self._fail(str(exc) or LOAD_FAILED_MESSAGE)
            return self._state
        except Exception:
            logger.exception("Unexpected error while loading the conferencing engine")
            self._fail(LOAD_FAILED_MESSAGE)
            return self._state
        finally:
            self._load_task = None

        if self._disposed:
            return self._state
        self._transition(BridgeState.CREATING_ROOM)

        options = EngineOptions(
            room_name=room_id,
            display_name=intent.display_name,
            email=email,
            config=self._build_config(intent, subject),
        )
        try:
            engine = factory(options)
        except Exception:
            logger.exception("Failed to create conference room %s", room_id)
            self._fail(ROOM_FAILED_MESSAGE)
            return self._state
        if self._disposed:
            _dispose_engine(engine)
            return self._state

        self._engine = engine
        self._local = JoinIntent(
            display_name=intent.display_name,
            video_enabled=intent.video_enabled,
            audio_enabled=intent.audio_enabled,
        )
        handlers = {
            EngineEvent.CONFERENCE_JOINED: self._handle_joined,
            EngineEvent.PARTICIPANT_JOINED: self._handle_participant_joined,
            EngineEvent.PARTICIPANT_LEFT: self._handle_participant_left,
            EngineEvent.CONFERENCE_LEFT: self._handle_left,
            EngineEvent.READY_TO_CLOSE: self._handle_left,
            EngineEvent.ERROR: self._handle_error,
        }
        for event, handler in handlers.items():
            self._subscriptions.append(engine.add_listener(event, self._relay(engine, event, handler)))
        self._watchdog = asyncio.create_task(self._watch_join())
        return self._state

    def leave(self) -> None:
        if self._engine is None or self._disposed:
            return
        self._execute("hangup")

    def set_audio(self, enabled: bool) -> None:
        if self._engine is None or self._disposed:
            return
        if self._local is not None and self._local.audio_enabled == enabled:
            return
        if self._local is not None:
            self._local.audio_enabled = enabled
        self._execute("toggleAudio")

    def set_video(self, enabled: bool) -> None:
        if self._engine is None or self._disposed:
            return
        if self._local is not None and self._local.video_enabled == enabled:
            return
        if self._local is not None:
            self._local.video_enabled = enabled
        self._execute("toggleVideo")

    def dispose(self) -> bool:
        """Tear down the engine. Returns False if already disposed."""

        if self._disposed:
            return False
        self._disposed = True
        for task in (self._watchdog, self._load_task):
            if task is not None and not task.done():
                task.cancel()
        self._watchdog = None
        self._release_engine()
        if self._state not in (BridgeState.TERMINATED, BridgeState.ERROR):
            self._state = BridgeState.TERMINATED
        logger.info("Meeting bridge for room %s disposed", self._room_id)
        return True

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "room_id": self._room_id,
            "participant_count": self._participant_count,
            "error": self._error.to_dict() if self._error else None,
            "presences": [presence.to_dict() for presence in self._history],
        }

    def _build_config(self, intent: JoinIntent, subject: Optional[str]) -> Dict[str, Any]:
        config = dict(self._engine_config)
        config.update(
            {
                "start_with_audio_muted": not intent.audio_enabled,
                "start_with_video_muted": not intent.video_enabled,
                "prejoin_page_enabled": False,
                "subject": subject or "Virtual Class",
            }
        )
        return config

    def _execute(self, command: str) -> None:
        engine = self._engine
        if engine is None:
            return
        try:
            engine.execute_command(command)
        except Exception:
            logger.exception("Engine command %s failed", command)

    def _relay(self, engine: ConferenceEngine, event: EngineEvent, handler: Callable[[Dict[str, Any]], None]):
        def relay(payload: Dict[str, Any]) -> None:
            if self._disposed or self._engine is not engine:
                logger.debug("Dropping %s event from a disposed engine", event.value)
                return
            handler(payload)

        return relay

    async def _watch_join(self) -> None:
        try:
            await asyncio.sleep(self._join_timeout)
        except asyncio.CancelledError:
            return
        if not self._disposed and self._state is BridgeState.CREATING_ROOM:
            logger.warning("Room %s was not joined within %.1fs", self._room_id, self._join_timeout)
            self._fail(JOIN_TIMEOUT_MESSAGE)

    def _handle_joined(self, payload: Dict[str, Any]) -> None:
        if not self._transition(BridgeState.ACTIVE):
            return
        self._cancel_watchdog()
        local = self._local
        participant = str(payload.get("id") or (local.display_name if local else "local"))
        self._open_presence(
            participant,
            display_name=payload.get("display_name") or (local.display_name if local else None),
            audio_enabled=local.audio_enabled if local else False,
            video_enabled=local.video_enabled if local else False,
        )
        logger.info("Joined room %s", self._room_id)
        self._refresh_participants()

    def _handle_participant_joined(self, payload: Dict[str, Any]) -> None:
        participant = payload.get("id")
        if participant:
            self._open_presence(str(participant), display_name=payload.get("display_name"))
        self._refresh_participants()

    def _handle_participant_left(self, payload: Dict[str, Any]) -> None:
        participant = payload.get("id")
        presence = self._presences.pop(str(participant), None) if participant else None
        if presence is not None:
            presence.finalize(self._clock())
        self._refresh_participants()

    def _handle_left(self, payload: Dict[str, Any]) -> None:
        reason = str(payload.get("reason") or "left")
        if self._state is not BridgeState.TERMINATED and not self._transition(BridgeState.TERMINATED):
            return
        self._cancel_watchdog()
        if self._terminated_notified:
            return
        self._terminated_notified = True
        logger.info("Left room %s (%s)", self._room_id, reason)
        self._notify(self._on_terminated, reason)

    def _handle_error(self, payload: Dict[str, Any]) -> None:
        self._fail(str(payload.get("message") or ROOM_FAILED_MESSAGE))

    def _open_presence(
        self,
        participant: str,
        *,
        display_name: Optional[str] = None,
        audio_enabled: bool = False,
        video_enabled: bool = False,
    ) -> None:
        if participant in self._presences:
            return
        presence = Presence(
            session_id=self._session_id or self._room_id or "",
            participant=participant,
            joined_at=self._clock(),
            audio_enabled=audio_enabled,
            video_enabled=video_enabled,
            display_name=display_name,
        )
        self._presences[participant] = presence
        self._history.append(presence)
        logger.debug("Presence opened for %s at %s", participant, format_timestamp(presence.joined_at))

    def _refresh_participants(self) -> None:
        engine = self._engine
        if engine is None:
            return
        try:
            reported = engine.get_number_of_participants()
        except Exception:
            logger.exception("Engine failed to report participant count")
            return
        count = max(1, int(reported or 0))
        if count == self._participant_count:
            return
        self._participant_count = count
        self._notify(self._on_participants, count)

    def _fail(self, message: str) -> None:
        error = BridgeError(message=message)
        if not self._transition(BridgeState.ERROR, error):
            return
        self._cancel_watchdog()
        self._release_engine()

    def _release_engine(self) -> None:
        """Detach from the engine and dispose it; open presences are finalized."""

        for subscription in self._subscriptions:
            subscription.revoke()
        self._subscriptions.clear()
        engine, self._engine = self._engine, None
        if engine is not None:
            _dispose_engine(engine)
        now = self._clock()
        for presence in self._presences.values():
            presence.finalize(now)
        self._presences.clear()

    def _cancel_watchdog(self) -> None:
        watchdog, self._watchdog = self._watchdog, None
        if watchdog is not None and not watchdog.done() and watchdog is not asyncio.current_task():
            watchdog.cancel()

    def _transition(self, target: BridgeState, error: Optional[BridgeError] = None) -> bool:
        if target not in _TRANSITIONS[self._state]:
            logger.debug("Ignoring bridge transition %s -> %s", self._state.value, target.value)
            return False
        self._state = target
        if target is BridgeState.ERROR:
            self._error = error
            logger.warning("Meeting bridge error: %s", error.message if error else "unknown")
        self._notify(self._on_state_change, target, self._error)
        return True

    def _notify(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
        except Exception:
            logger.exception("Meeting bridge listener failed")
            return
        if asyncio.iscoroutine(result):
            task = asyncio.create_task(result)
            self._callbacks.add(task)
            task.add_done_callback(self._callback_done)

    def _callback_done(self, task: "asyncio.Task[None]") -> None:
        self._callbacks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Meeting bridge listener failed", exc_info=exc)


def _dispose_engine(engine: ConferenceEngine) -> None:
    try:
        engine.dispose()
    except Exception:
        logger.exception("Conferencing engine dispose failed")
