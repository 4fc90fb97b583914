import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from classroom.discovery import FETCH_FAILED_MESSAGE, DiscoveryView, SessionDiscoveryPoller
from shared.errors import NetworkError
from shared.models import CourseRef, PersonRef, Role, RoleContext, Session, SessionStatus

T = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


def make_session(session_id: str, status: SessionStatus, *, starts_in: timedelta = timedelta(0)) -> Session:
    return Session(
        id=session_id,
        course=CourseRef(id="c1", code="CS101", name="Intro to Computing"),
        instructor=PersonRef(id="f1", name="Dr. Rao"),
        title=f"Lecture {session_id}",
        scheduled_at=T + starts_in,
        duration_minutes=60,
        status=status,
        room_id=f"SPRC_CS101_{session_id:0>8}",
    )


class FakeDirectory:
    """Stands in for SessionDirectoryClient and counts concurrent fetches."""

    def __init__(self, *results) -> None:
        self.results = list(results) or [[]]
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.contexts: list[Optional[RoleContext]] = []
        self.gate: Optional[asyncio.Event] = None

    async def list_sessions(self, context: Optional[RoleContext] = None):
        self.calls += 1
        self.contexts.append(context)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            result = self.results[min(self.calls - 1, len(self.results) - 1)]
            if isinstance(result, BaseException):
                raise result
            return list(result)
        finally:
            self.in_flight -= 1


class ManualSleeper:
    """Replaces asyncio.sleep so tests decide when the next tick happens."""

    def __init__(self) -> None:
        self.delays: list[float] = []
        self._waiters: list[asyncio.Future] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        await waiter

    async def tick(self) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)
        await settle()


async def settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.fixture
def anyio_backend():
    return "asyncio"


def make_poller(directory: FakeDirectory, sleeper: ManualSleeper, *, now: datetime = T - timedelta(minutes=5)):
    return SessionDiscoveryPoller(directory, interval=30.0, clock=lambda: now, sleep=sleeper)


@pytest.mark.anyio
async def test_first_fetch_partitions_sessions() -> None:
    sessions = [
        make_session("past", SessionStatus.COMPLETED, starts_in=-timedelta(days=1)),
        make_session("later", SessionStatus.SCHEDULED, starts_in=timedelta(days=2)),
        make_session("live", SessionStatus.ONGOING),
        make_session("soon", SessionStatus.SCHEDULED),
        make_session("gone", SessionStatus.CANCELLED, starts_in=-timedelta(days=3)),
    ]
    directory = FakeDirectory(sessions)
    sleeper = ManualSleeper()
    poller = make_poller(directory, sleeper)

    poller.start(RoleContext(principal_id="s1", role=Role.STUDENT))
    await settle()

    view = poller.view
    assert [item.session.id for item in view.live] == ["live"]
    assert [item.session.id for item in view.upcoming] == ["soon", "later"]
    assert [item.session.id for item in view.past] == ["past", "gone"]
    assert view.upcoming[0].eligibility.can_join is True
    assert view.upcoming[1].eligibility.can_join is False
    assert view.error is None
    assert directory.contexts[0].principal_id == "s1"
    assert sleeper.delays == [30.0]
    poller.stop()


@pytest.mark.anyio
async def test_ticks_during_slow_fetch_are_skipped() -> None:
    directory = FakeDirectory([make_session("live", SessionStatus.ONGOING)])
    directory.gate = asyncio.Event()
    sleeper = ManualSleeper()
    poller = make_poller(directory, sleeper)

    poller.start()
    await settle()
    for _ in range(3):
        await sleeper.tick()

    assert directory.calls == 1
    assert poller.skipped_ticks == 3

    directory.gate.set()
    await settle()
    await sleeper.tick()

    assert directory.calls == 2
    assert directory.max_in_flight == 1
    assert len(poller.view.live) == 1
    poller.stop()


@pytest.mark.anyio
async def test_failed_fetch_keeps_previous_sessions() -> None:
    first = [make_session("live", SessionStatus.ONGOING)]
    directory = FakeDirectory(first, NetworkError("Directory unavailable", status_code=503), [])
    sleeper = ManualSleeper()
    poller = make_poller(directory, sleeper)

    poller.start()
    await settle()
    fetched_at = poller.view.fetched_at
    await sleeper.tick()

    view = poller.view
    assert view.error == "Directory unavailable"
    assert [item.session.id for item in view.live] == ["live"]
    assert view.fetched_at == fetched_at
    assert view.to_dict()["retryable"] is True

    await sleeper.tick()

    assert poller.view.error is None
    assert poller.view.live == []
    poller.stop()


@pytest.mark.anyio
async def test_unexpected_fetch_error_uses_generic_message() -> None:
    directory = FakeDirectory(RuntimeError("boom"))
    poller = make_poller(directory, ManualSleeper())

    poller.start()
    await settle()

    assert poller.view.error == FETCH_FAILED_MESSAGE
    poller.stop()


@pytest.mark.anyio
async def test_stop_cancels_timer_and_in_flight_fetch() -> None:
    directory = FakeDirectory([make_session("live", SessionStatus.ONGOING)])
    directory.gate = asyncio.Event()
    sleeper = ManualSleeper()
    poller = make_poller(directory, sleeper)
    published: list[DiscoveryView] = []
    poller.add_listener(published.append)

    poller.start()
    await settle()
    poller.stop()
    directory.gate.set()
    await settle()
    await sleeper.tick()

    assert poller.running is False
    assert directory.calls == 1
    assert published == []
    assert poller.view.live == []


@pytest.mark.anyio
async def test_refresh_fetches_immediately_while_running() -> None:
    directory = FakeDirectory([], [make_session("live", SessionStatus.ONGOING)])
    poller = make_poller(directory, ManualSleeper())

    idle_view = await poller.refresh()
    assert idle_view is poller.view
    assert directory.calls == 0

    poller.start()
    await settle()
    view = await poller.refresh()

    assert directory.calls == 2
    assert [item.session.id for item in view.live] == ["live"]
    poller.stop()


@pytest.mark.anyio
async def test_listener_failure_does_not_break_polling() -> None:
    directory = FakeDirectory([make_session("live", SessionStatus.ONGOING)])
    poller = make_poller(directory, ManualSleeper())
    received: list[DiscoveryView] = []

    def broken(view: DiscoveryView) -> None:
        raise RuntimeError("listener failed")

    async def recording(view: DiscoveryView) -> None:
        received.append(view)

    poller.add_listener(broken)
    poller.add_listener(recording)
    poller.start()
    poller.start()
    await settle()

    assert directory.calls == 1
    assert len(received) == 1
    assert received[0].live[0].session.id == "live"
    poller.stop()
