from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from shared.errors import ClassroomError, ValidationError
from shared.models import (
    CourseRef,
    PersonRef,
    Presence,
    Role,
    RoleContext,
    Session,
    SessionStatus,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MINUTES = 90
DEFAULT_MAX_PARTICIPANTS = 100
EVENT_LOG_LIMIT = 1000


class SessionNotFound(LookupError):
    """No session with the requested id exists."""


class InvalidTransition(ClassroomError):
    """The session's current status does not allow the requested change."""


class SessionFull(InvalidTransition):
    """The session already holds its maximum number of participants."""


@dataclass(slots=True)
class Course:
    id: str
    code: str
    name: str
    instructor: PersonRef
    students: Set[str] = field(default_factory=set)

    def ref(self) -> CourseRef:
        return CourseRef(id=self.id, code=self.code, name=self.name)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Course":
        course_id = raw.get("id")
        code = raw.get("code")
        if not course_id or not code:
            raise ValueError("Course entries need an id and a code")
        instructor = PersonRef.from_raw(raw.get("instructor"))
        students = {str(student) for student in raw.get("students") or []}
        return cls(id=str(course_id), code=str(code), name=str(raw.get("name") or code), instructor=instructor, students=students)


@dataclass(slots=True)
class _SessionRecord:
    session: Session
    max_participants: int
    created_at: float = field(default_factory=time.time)
    presences: List[Presence] = field(default_factory=list)

    def active_presence(self, principal_id: str) -> Optional[Presence]:
        for presence in self.presences:
            if presence.participant == principal_id and presence.is_active:
                return presence
        return None

    def active_count(self) -> int:
        return sum(1 for presence in self.presences if presence.is_active)


class SessionStore:
    """In-memory session directory for the virtual classroom."""

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._courses: Dict[str, Course] = {}
        self._sessions: Dict[str, _SessionRecord] = {}
        self._lock = asyncio.Lock()
        self._event_log: list[dict] = []
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._started_at = time.time()

    @classmethod
    def from_catalog(cls, catalog: Dict[str, Any], **kwargs: Any) -> "SessionStore":
        store = cls(**kwargs)
        for raw in catalog.get("courses") or []:
            course = Course.from_dict(raw)
            store._courses[course.id] = course
        logger.info("Loaded %d courses into the session directory", len(store._courses))
        return store

    async def list_for(self, context: RoleContext) -> List[Session]:
        async with self._lock:
            if context.role is Role.ADMIN:
                records = list(self._sessions.values())
            elif context.role is Role.FACULTY:
                records = [
                    record
                    for record in self._sessions.values()
                    if record.session.instructor.id == context.principal_id
                ]
            else:
                enrolled = {
                    course.id for course in self._courses.values() if context.principal_id in course.students
                }
                records = [record for record in self._sessions.values() if record.session.course.id in enrolled]
            records.sort(key=lambda record: record.session.scheduled_at)
            return [self._public(record) for record in records]

    async def get_session(self, session_id: str) -> Session:
        async with self._lock:
            return self._public(self._get(session_id))

    async def create_session(
        self,
        context: RoleContext,
        *,
        course_id: str,
        title: str,
        scheduled_at: object,
        duration_minutes: object = DEFAULT_DURATION_MINUTES,
        description: str = "",
        max_participants: object = DEFAULT_MAX_PARTICIPANTS,
    ) -> Session:
        title = (title or "").strip()
        if not title:
            raise ValidationError("title is required")
        try:
            when = parse_timestamp(scheduled_at)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        duration = _positive_int(duration_minutes, "duration_minutes")
        capacity = _positive_int(max_participants, "max_participants")

        async with self._lock:
            course = self._courses.get(str(course_id))
            if course is None:
                raise ValidationError(f"Unknown course '{course_id}'")
            if context.role is Role.STUDENT:
                raise PermissionError("Only instructors can schedule classes")
            if context.role is Role.FACULTY and course.instructor.id != context.principal_id:
                raise PermissionError(f"You are not the instructor of {course.code}")
            session = Session(
                id=uuid.uuid4().hex,
                course=course.ref(),
                instructor=dataclasses.replace(course.instructor),
                title=title,
                description=(description or "").strip(),
                scheduled_at=when,
                duration_minutes=duration,
                status=SessionStatus.SCHEDULED,
                room_id=f"SPRC_{course.code}_{uuid.uuid4().hex[:8]}",
            )
            record = _SessionRecord(session=session, max_participants=capacity)
            self._sessions[session.id] = record
            logger.info("Scheduled session %s for %s", session.id, course.code, extra={"session_id": session.id})
            self._record_event(
                "session_created",
                {"session_id": session.id, "course": course.code, "actor": context.principal_id},
            )
            return self._public(record)

    async def start_session(self, context: RoleContext, session_id: str) -> Session:
        return await self._transition(context, session_id, SessionStatus.ONGOING, "session_started")

    async def complete_session(self, context: RoleContext, session_id: str) -> Session:
        return await self._transition(context, session_id, SessionStatus.COMPLETED, "session_completed")

    async def cancel_session(self, context: RoleContext, session_id: str) -> Session:
        return await self._transition(context, session_id, SessionStatus.CANCELLED, "session_cancelled")

    async def join_session(self, context: RoleContext, session_id: str) -> str:
        """Record the caller's presence and return the room id. Repeated joins are no-ops."""

        async with self._lock:
            record = self._get(session_id)
            session = record.session
            self._require_participant(context, record)
            if session.status.is_terminal:
                raise InvalidTransition(f"Session is {session.status.value}")
            if record.active_presence(context.principal_id) is not None:
                return session.room_id
            if record.active_count() >= record.max_participants:
                raise SessionFull("Session is full")
            presence = Presence(
                session_id=session.id,
                participant=context.principal_id,
                joined_at=self._clock(),
                display_name=context.display_name,
            )
            record.presences.append(presence)
            session.participant_count = record.active_count()
            logger.info("%s joined session %s", context.principal_id, session.id, extra={"session_id": session.id})
            self._record_event(
                "participant_joined",
                {"session_id": session.id, "participant": context.principal_id, "role": context.role.value},
            )
            return session.room_id

    async def leave_session(self, context: RoleContext, session_id: str) -> bool:
        async with self._lock:
            record = self._get(session_id)
            presence = record.active_presence(context.principal_id)
            if presence is None:
                return False
            presence.finalize(self._clock())
            record.session.participant_count = record.active_count()
            logger.info("%s left session %s", context.principal_id, session_id, extra={"session_id": session_id})
            self._record_event(
                "participant_left",
                {"session_id": session_id, "participant": context.principal_id},
            )
            return True

    async def presences(self, session_id: str) -> List[Presence]:
        async with self._lock:
            return [dataclasses.replace(presence) for presence in self._get(session_id).presences]

    async def get_recent_events(self, limit: int = 300) -> list[dict[str, object]]:
        async with self._lock:
            if limit <= 0:
                return []
            return list(self._event_log[-limit:])

    async def snapshot(self) -> dict:
        async with self._lock:
            counts = {status.value: 0 for status in SessionStatus}
            sessions: list[dict[str, object]] = []
            for record in self._sessions.values():
                counts[record.session.status.value] += 1
                payload = record.session.to_dict()
                payload["max_participants"] = record.max_participants
                payload["presences"] = [presence.to_dict() for presence in record.presences]
                sessions.append(payload)
            return {
                "courses": [
                    {"id": course.id, "code": course.code, "name": course.name, "instructor": course.instructor.to_dict()}
                    for course in self._courses.values()
                ],
                "sessions": sessions,
                "status_counts": counts,
                "participant_count": sum(record.active_count() for record in self._sessions.values()),
                "events": list(self._event_log[-300:]),
                "started_at": self._started_at,
            }

    async def _transition(
        self,
        context: RoleContext,
        session_id: str,
        target: SessionStatus,
        event_type: str,
    ) -> Session:
        async with self._lock:
            record = self._get(session_id)
            session = record.session
            self._require_instructor(context, session)
            if not session.status.can_transition_to(target):
                raise InvalidTransition(f"Cannot move session from {session.status.value} to {target.value}")
            session.status = target
            if target.is_terminal:
                now = self._clock()
                for presence in record.presences:
                    presence.finalize(now)
                session.participant_count = 0
            logger.info("Session %s is now %s", session.id, target.value, extra={"session_id": session.id})
            self._record_event(event_type, {"session_id": session.id, "actor": context.principal_id})
            return self._public(record)

    def _get(self, session_id: str) -> _SessionRecord:
        record = self._sessions.get(session_id)
        if record is None:
            raise SessionNotFound(f"Session '{session_id}' not found")
        return record

    def _require_instructor(self, context: RoleContext, session: Session) -> None:
        if context.role is Role.ADMIN:
            return
        if context.role is not Role.FACULTY or session.instructor.id != context.principal_id:
            raise PermissionError("Only the instructor can change this session")

    def _require_participant(self, context: RoleContext, record: _SessionRecord) -> None:
        if context.role is Role.ADMIN:
            return
        session = record.session
        if context.role is Role.FACULTY:
            if session.instructor.id != context.principal_id:
                raise PermissionError("You are not the instructor of this session")
            return
        course = self._courses.get(session.course.id)
        if course is None or context.principal_id not in course.students:
            raise PermissionError("You are not enrolled in this course")

    def _public(self, record: _SessionRecord) -> Session:
        return dataclasses.replace(record.session)

    def _record_event(self, event_type: str, details: Dict[str, object]) -> None:
        event = {
            "type": event_type,
            "timestamp": time.time(),
            "details": details,
        }
        self._event_log.append(event)
        if len(self._event_log) > EVENT_LOG_LIMIT:
            self._event_log.pop(0)


def _positive_int(raw: object, name: str) -> int:
    try:
        value = int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer") from None
    if value <= 0:
        raise ValidationError(f"{name} must be positive")
    return value
