import asyncio

import pytest

from classroom.engines import ConferenceEngine, EngineEvent, EngineLoader, EngineOptions
from classroom.meeting_bridge import (
    BACK_ACTION,
    JOIN_TIMEOUT_MESSAGE,
    LOAD_TIMEOUT_MESSAGE,
    RETRY_ACTION,
    BridgeState,
    MeetingBridge,
)
from shared.models import JoinIntent


class FakeEngine(ConferenceEngine):
    def __init__(self, options: EngineOptions) -> None:
        super().__init__(options)
        self.participants = 1
        self.commands: list[str] = []
        self.dispose_calls = 0

    def get_number_of_participants(self) -> int:
        return self.participants

    def execute_command(self, name: str, *args) -> None:
        self.commands.append(name)

    def dispose(self) -> None:
        self.dispose_calls += 1
        super().dispose()

    def fire(self, event: EngineEvent, payload=None) -> None:
        self._emit(event, payload)


class FakeFactory:
    def __init__(self) -> None:
        self.engines: list[FakeEngine] = []

    def __call__(self, options: EngineOptions) -> FakeEngine:
        engine = FakeEngine(options)
        self.engines.append(engine)
        return engine


class SlowLoader:
    def __init__(self) -> None:
        self.release = asyncio.Event()

    async def load(self):
        await self.release.wait()
        return FakeFactory()


class Recorder:
    def __init__(self) -> None:
        self.states: list[BridgeState] = []
        self.errors: list = []
        self.counts: list[int] = []
        self.terminated: list[str] = []

    def on_state_change(self, state, error) -> None:
        self.states.append(state)
        self.errors.append(error)

    def on_participants(self, count: int) -> None:
        self.counts.append(count)

    async def on_terminated(self, reason: str) -> None:
        self.terminated.append(reason)


def make_bridge(loader, recorder: Recorder, **kwargs) -> MeetingBridge:
    return MeetingBridge(
        loader,
        session_id="s1",
        engine_config={"server_port": 55001},
        on_state_change=recorder.on_state_change,
        on_participants=recorder.on_participants,
        on_terminated=recorder.on_terminated,
        **kwargs,
    )


INTENT = JoinIntent(display_name="Asha", video_enabled=True, audio_enabled=False)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.mark.anyio
async def test_start_creates_room_with_join_choices() -> None:
    factory = FakeFactory()
    recorder = Recorder()
    bridge = make_bridge(EngineLoader(factory=factory), recorder)

    state = await bridge.start(INTENT, "SPRC_CS101_ab12cd34", subject="Lecture 1", email="asha@example.edu")

    assert state is BridgeState.CREATING_ROOM
    options = factory.engines[0].options
    assert options.room_name == "SPRC_CS101_ab12cd34"
    assert options.display_name == "Asha"
    assert options.email == "asha@example.edu"
    assert options.config["start_with_audio_muted"] is True
    assert options.config["start_with_video_muted"] is False
    assert options.config["prejoin_page_enabled"] is False
    assert options.config["subject"] == "Lecture 1"
    assert options.config["server_port"] == 55001

    factory.engines[0].fire(EngineEvent.CONFERENCE_JOINED, {"id": "asha"})

    assert bridge.state is BridgeState.ACTIVE
    assert recorder.states == [BridgeState.LOADING_ENGINE, BridgeState.CREATING_ROOM, BridgeState.ACTIVE]
    assert [presence.participant for presence in bridge.presences] == ["asha"]
    bridge.dispose()


@pytest.mark.anyio
async def test_participant_count_never_drops_below_one() -> None:
    factory = FakeFactory()
    recorder = Recorder()
    bridge = make_bridge(EngineLoader(factory=factory), recorder)
    await bridge.start(INTENT, "ROOM")
    engine = factory.engines[0]
    engine.fire(EngineEvent.CONFERENCE_JOINED, {"id": "asha"})

    engine.participants = 3
    engine.fire(EngineEvent.PARTICIPANT_JOINED, {"id": "bob", "display_name": "Bob"})
    assert bridge.participant_count == 3

    engine.participants = 0
    engine.fire(EngineEvent.PARTICIPANT_LEFT, {"id": "bob"})
    assert bridge.participant_count == 1
    assert recorder.counts == [3, 1]

    bob = next(presence for presence in bridge.presences if presence.participant == "bob")
    assert bob.display_name == "Bob"
    assert bob.session_id == "s1"
    assert bob.is_active is False
    bridge.dispose()


@pytest.mark.anyio
async def test_terminated_listener_fires_once() -> None:
    factory = FakeFactory()
    recorder = Recorder()
    bridge = make_bridge(EngineLoader(factory=factory), recorder)
    await bridge.start(INTENT, "ROOM")
    engine = factory.engines[0]
    engine.fire(EngineEvent.CONFERENCE_JOINED, {"id": "asha"})

    engine.fire(EngineEvent.CONFERENCE_LEFT, {"reason": "hangup"})
    engine.fire(EngineEvent.READY_TO_CLOSE, {"reason": "hangup"})
    await asyncio.sleep(0)

    assert bridge.state is BridgeState.TERMINATED
    assert recorder.terminated == ["hangup"]
    bridge.dispose()


@pytest.mark.anyio
async def test_engine_error_offers_retry_and_back() -> None:
    factory = FakeFactory()
    recorder = Recorder()
    bridge = make_bridge(EngineLoader(factory=factory), recorder)
    await bridge.start(INTENT, "ROOM")
    engine = factory.engines[0]
    engine.fire(EngineEvent.CONFERENCE_JOINED, {"id": "asha"})

    engine.fire(EngineEvent.ERROR, {"message": "Room server error"})

    assert bridge.state is BridgeState.ERROR
    assert bridge.error.message == "Room server error"
    assert bridge.error.actions == (RETRY_ACTION, BACK_ACTION)
    assert recorder.errors[-1] is bridge.error
    assert engine.dispose_calls == 1
    assert engine.listener_count() == 0
    assert all(not presence.is_active for presence in bridge.presences)

    engine.fire(EngineEvent.CONFERENCE_JOINED, {"id": "asha"})
    assert bridge.state is BridgeState.ERROR
    bridge.dispose()
    assert engine.dispose_calls == 1


@pytest.mark.anyio
async def test_events_after_dispose_are_dropped() -> None:
    factory = FakeFactory()
    recorder = Recorder()
    bridge = make_bridge(EngineLoader(factory=factory), recorder)
    await bridge.start(INTENT, "ROOM")
    engine = factory.engines[0]
    engine.fire(EngineEvent.CONFERENCE_JOINED, {"id": "asha"})
    late_listener = engine._listeners[EngineEvent.PARTICIPANT_JOINED][0]
    states_before = list(recorder.states)

    assert bridge.dispose() is True
    engine.participants = 5
    late_listener({"id": "bob"})
    engine.fire(EngineEvent.PARTICIPANT_JOINED, {"id": "carol"})
    await asyncio.sleep(0)

    assert bridge.participant_count == 1
    assert [presence.participant for presence in bridge.presences] == ["asha"]
    assert recorder.states == states_before
    assert recorder.counts == []
    assert recorder.terminated == []
    assert engine.listener_count() == 0


@pytest.mark.anyio
async def test_dispose_twice_disposes_engine_once() -> None:
    factory = FakeFactory()
    bridge = make_bridge(EngineLoader(factory=factory), Recorder())
    await bridge.start(INTENT, "ROOM")
    factory.engines[0].fire(EngineEvent.CONFERENCE_JOINED, {"id": "asha"})

    assert bridge.dispose() is True
    assert bridge.dispose() is False

    assert factory.engines[0].dispose_calls == 1
    assert bridge.state is BridgeState.TERMINATED
    assert all(not presence.is_active for presence in bridge.presences)


@pytest.mark.anyio
async def test_engine_load_timeout_surfaces_error() -> None:
    recorder = Recorder()
    bridge = make_bridge(SlowLoader(), recorder, load_timeout=0.05)

    state = await bridge.start(INTENT, "ROOM")

    assert state is BridgeState.ERROR
    assert bridge.error.message == LOAD_TIMEOUT_MESSAGE
    assert bridge.engine is None
    assert recorder.states == [BridgeState.LOADING_ENGINE, BridgeState.ERROR]


@pytest.mark.anyio
async def test_unknown_engine_module_surfaces_error() -> None:
    bridge = make_bridge(EngineLoader("classroom.no_such_engine:Engine"), Recorder())

    state = await bridge.start(INTENT, "ROOM")

    assert state is BridgeState.ERROR
    assert "classroom.no_such_engine:Engine" in bridge.error.message


@pytest.mark.anyio
async def test_room_join_timeout_surfaces_error() -> None:
    factory = FakeFactory()
    bridge = make_bridge(EngineLoader(factory=factory), Recorder(), join_timeout=0.05)

    await bridge.start(INTENT, "ROOM")
    await asyncio.sleep(0.15)
    engine = factory.engines[0]

    assert bridge.state is BridgeState.ERROR
    assert bridge.error.message == JOIN_TIMEOUT_MESSAGE
    assert engine.disposed is True
    assert engine.listener_count() == 0
    assert bridge.engine is None

    engine.fire(EngineEvent.CONFERENCE_JOINED, {"id": "asha"})
    assert bridge.state is BridgeState.ERROR
    assert bridge.presences == []

    bridge.dispose()
    assert engine.dispose_calls == 1


@pytest.mark.anyio
async def test_dispose_during_engine_load_stops_start() -> None:
    loader = SlowLoader()
    bridge = make_bridge(loader, Recorder())

    task = asyncio.create_task(bridge.start(INTENT, "ROOM"))
    await asyncio.sleep(0)
    bridge.dispose()
    loader.release.set()

    assert await task is BridgeState.TERMINATED
    assert bridge.engine is None


@pytest.mark.anyio
async def test_engine_created_after_dispose_is_disposed() -> None:
    created: list[FakeEngine] = []
    bridge: MeetingBridge

    def factory(options: EngineOptions) -> FakeEngine:
        engine = FakeEngine(options)
        created.append(engine)
        bridge.dispose()
        return engine

    bridge = make_bridge(EngineLoader(factory=factory), Recorder())
    await bridge.start(INTENT, "ROOM")

    assert created[0].dispose_calls == 1
    assert created[0].listener_count() == 0
    assert bridge.engine is None


@pytest.mark.anyio
async def test_leave_and_media_commands_reach_engine() -> None:
    factory = FakeFactory()
    bridge = make_bridge(EngineLoader(factory=factory), Recorder())
    await bridge.start(INTENT, "ROOM")
    engine = factory.engines[0]
    engine.fire(EngineEvent.CONFERENCE_JOINED, {"id": "asha"})

    bridge.set_audio(False)
    bridge.set_audio(True)
    bridge.set_video(False)
    bridge.leave()

    assert engine.commands == ["toggleAudio", "toggleVideo", "hangup"]
    bridge.dispose()
    bridge.leave()
    assert engine.commands == ["toggleAudio", "toggleVideo", "hangup"]


@pytest.mark.anyio
async def test_loader_caches_the_factory() -> None:
    loader = EngineLoader("classroom.engines:ControlChannelEngine")

    first = await loader.load()
    second = await loader.load()

    assert first is second
    assert loader.load_count == 1
    assert loader.loaded is True
