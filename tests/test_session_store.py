import asyncio
import re

import pytest

from directory.session_store import InvalidTransition, SessionFull, SessionNotFound, SessionStore
from shared.errors import ValidationError
from shared.models import Role, RoleContext, SessionStatus

CATALOG = {
    "courses": [
        {
            "id": "c1",
            "code": "CS101",
            "name": "Intro to Computing",
            "instructor": {"id": "f1", "name": "Dr. Rao", "email": "rao@example.edu"},
            "students": ["s1", "s2"],
        },
        {
            "id": "c2",
            "code": "MA201",
            "name": "Linear Algebra",
            "instructor": {"id": "f2", "name": "Dr. Iyer"},
            "students": ["s3"],
        },
    ]
}

FACULTY = RoleContext(principal_id="f1", role=Role.FACULTY, display_name="Dr. Rao")
OTHER_FACULTY = RoleContext(principal_id="f2", role=Role.FACULTY)
STUDENT = RoleContext(principal_id="s1", role=Role.STUDENT, display_name="Asha")
OUTSIDER = RoleContext(principal_id="s3", role=Role.STUDENT)
ADMIN = RoleContext(principal_id="root", role=Role.ADMIN)


@pytest.fixture
def anyio_backend():
    return "asyncio"


async def schedule(store: SessionStore, **overrides):
    params = {
        "course_id": "c1",
        "title": "Lecture 1",
        "scheduled_at": "2025-03-10T09:00:00Z",
        "duration_minutes": 60,
    }
    params.update(overrides)
    return await store.create_session(FACULTY, **params)


@pytest.mark.anyio
async def test_create_assigns_room_and_scheduled_status() -> None:
    store = SessionStore.from_catalog(CATALOG)

    session = await schedule(store, description="  Vectors  ")

    assert session.status is SessionStatus.SCHEDULED
    assert re.fullmatch(r"SPRC_CS101_[0-9a-f]{8}", session.room_id)
    assert session.instructor.id == "f1"
    assert session.course.code == "CS101"
    assert session.description == "Vectors"
    snapshot = await store.snapshot()
    assert snapshot["status_counts"]["scheduled"] == 1
    assert snapshot["events"][-1]["type"] == "session_created"


@pytest.mark.anyio
async def test_create_validates_input_and_permissions() -> None:
    store = SessionStore.from_catalog(CATALOG)

    with pytest.raises(ValidationError):
        await schedule(store, title="  ")
    with pytest.raises(ValidationError):
        await schedule(store, duration_minutes=0)
    with pytest.raises(ValidationError):
        await schedule(store, scheduled_at="next week")
    with pytest.raises(ValidationError):
        await schedule(store, course_id="unknown")
    with pytest.raises(PermissionError):
        await store.create_session(OTHER_FACULTY, course_id="c1", title="Hijack", scheduled_at="2025-03-10T09:00:00Z")
    with pytest.raises(PermissionError):
        await store.create_session(STUDENT, course_id="c1", title="Study group", scheduled_at="2025-03-10T09:00:00Z")


@pytest.mark.anyio
async def test_listing_is_scoped_by_role() -> None:
    store = SessionStore.from_catalog(CATALOG)
    later = await schedule(store, title="Lecture 2", scheduled_at="2025-03-12T09:00:00Z")
    first = await schedule(store, title="Lecture 1", scheduled_at="2025-03-10T09:00:00Z")
    other = await store.create_session(
        OTHER_FACULTY, course_id="c2", title="Matrices", scheduled_at="2025-03-11T09:00:00Z"
    )

    assert [s.id for s in await store.list_for(FACULTY)] == [first.id, later.id]
    assert [s.id for s in await store.list_for(STUDENT)] == [first.id, later.id]
    assert [s.id for s in await store.list_for(OUTSIDER)] == [other.id]
    assert len(await store.list_for(ADMIN)) == 3


@pytest.mark.anyio
async def test_lifecycle_transitions_are_enforced() -> None:
    store = SessionStore.from_catalog(CATALOG)
    session = await schedule(store)

    with pytest.raises(InvalidTransition):
        await store.complete_session(FACULTY, session.id)
    with pytest.raises(PermissionError):
        await store.start_session(STUDENT, session.id)

    started = await store.start_session(FACULTY, session.id)
    assert started.status is SessionStatus.ONGOING
    with pytest.raises(InvalidTransition):
        await store.start_session(FACULTY, session.id)

    completed = await store.complete_session(ADMIN, session.id)
    assert completed.status is SessionStatus.COMPLETED
    with pytest.raises(InvalidTransition):
        await store.cancel_session(FACULTY, session.id)
    with pytest.raises(SessionNotFound):
        await store.start_session(FACULTY, "missing")


@pytest.mark.anyio
async def test_join_is_idempotent_and_room_is_stable() -> None:
    store = SessionStore.from_catalog(CATALOG)
    session = await schedule(store)

    room_ids = await asyncio.gather(*(store.join_session(STUDENT, session.id) for _ in range(3)))
    await store.start_session(FACULTY, session.id)
    room_ids.append(await store.join_session(STUDENT, session.id))
    room_ids.append(await store.join_session(FACULTY, session.id))

    assert set(room_ids) == {session.room_id}
    presences = await store.presences(session.id)
    assert [p.participant for p in presences] == ["s1", "f1"]
    assert presences[0].display_name == "Asha"
    assert (await store.get_session(session.id)).participant_count == 2


@pytest.mark.anyio
async def test_join_requires_enrolment_and_open_session() -> None:
    store = SessionStore.from_catalog(CATALOG)
    session = await schedule(store)

    with pytest.raises(PermissionError):
        await store.join_session(OUTSIDER, session.id)
    with pytest.raises(PermissionError):
        await store.join_session(OTHER_FACULTY, session.id)

    await store.cancel_session(FACULTY, session.id)
    with pytest.raises(InvalidTransition):
        await store.join_session(STUDENT, session.id)


@pytest.mark.anyio
async def test_leave_finalizes_presence_and_allows_rejoin() -> None:
    store = SessionStore.from_catalog(CATALOG)
    session = await schedule(store)
    await store.join_session(STUDENT, session.id)

    assert await store.leave_session(STUDENT, session.id) is True
    assert await store.leave_session(STUDENT, session.id) is False
    assert (await store.get_session(session.id)).participant_count == 0

    await store.join_session(STUDENT, session.id)
    presences = await store.presences(session.id)
    assert [p.is_active for p in presences] == [False, True]


@pytest.mark.anyio
async def test_full_session_rejects_new_participants() -> None:
    store = SessionStore.from_catalog(CATALOG)
    session = await schedule(store, max_participants=1)
    await store.join_session(STUDENT, session.id)

    with pytest.raises(SessionFull):
        await store.join_session(RoleContext(principal_id="s2", role=Role.STUDENT), session.id)
    assert await store.join_session(STUDENT, session.id) == session.room_id


@pytest.mark.anyio
async def test_terminal_transition_closes_presences() -> None:
    store = SessionStore.from_catalog(CATALOG)
    session = await schedule(store)
    await store.start_session(FACULTY, session.id)
    await store.join_session(STUDENT, session.id)

    completed = await store.complete_session(FACULTY, session.id)

    assert completed.participant_count == 0
    assert all(not p.is_active for p in await store.presences(session.id))
    event_types = [event["type"] for event in await store.get_recent_events()]
    assert event_types[-3:] == ["session_started", "participant_joined", "session_completed"]
